"""Reconstruct recordings left behind by an interrupted capture."""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from .models import Chunk, Recording
from .storage import RECORDING_PREFIX, ChunkStore

logger = logging.getLogger("chunkscribe")


def find_chunk_gaps(chunks: Iterable[Chunk]) -> List[int]:
    """Chunk numbers missing from the contiguous run starting at 0."""
    numbers = sorted({chunk.chunk_number for chunk in chunks})
    if not numbers:
        return []
    present = set(numbers)
    return [n for n in range(numbers[-1] + 1) if n not in present]


def started_at_from_id(recording_id: str) -> Optional[float]:
    if not recording_id.startswith(RECORDING_PREFIX):
        return None
    try:
        return int(recording_id[len(RECORDING_PREFIX) :]) / 1000.0
    except ValueError:
        return None


def aggregate_recording(
    recording_id: str,
    chunks: List[Chunk],
    started_at: Optional[float] = None,
    recovered: bool = False,
) -> Recording:
    """Build a Recording whose totals are derived from its chunks."""
    if not chunks:
        raise ValueError(f"No chunks for {recording_id}.")
    ordered = sorted(chunks, key=lambda chunk: chunk.chunk_number)
    first = ordered[0]
    total_samples = sum(chunk.samples_count for chunk in ordered)
    gaps = find_chunk_gaps(ordered)
    if gaps:
        logger.warning("Recording %s is missing chunks %s", recording_id, gaps)
    if started_at is None:
        started_at = started_at_from_id(recording_id) or first.created_at
    return Recording(
        recording_id=recording_id,
        started_at=started_at,
        duration_seconds=total_samples // first.sample_rate,
        total_samples=total_samples,
        chunks_count=len(ordered),
        sample_rate=first.sample_rate,
        channels=first.channels,
        file_size=sum(chunk.byte_size for chunk in ordered),
        recovered=recovered,
        corrupted=bool(gaps),
    )


@dataclass
class RecoveryReport:
    recovered: List[Recording] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    placeholder: Optional[Recording] = None


class RecoveryEngine:
    def __init__(self, chunks: ChunkStore, clock=time.time) -> None:
        self.chunks = chunks
        self.clock = clock

    async def run(self, active_recording_id: Optional[str] = None) -> RecoveryReport:
        recordings = await self.chunks.list_recordings()
        all_chunks = await self.chunks.list_chunks()
        return await self.recover(recordings, all_chunks, active_recording_id)

    async def recover(
        self,
        recordings: List[Recording],
        chunks: List[Chunk],
        active_recording_id: Optional[str] = None,
        active_started_at: Optional[float] = None,
    ) -> RecoveryReport:
        report = RecoveryReport()
        known = {recording.recording_id for recording in recordings}
        groups: Dict[str, List[Chunk]] = defaultdict(list)
        for chunk in chunks:
            groups[chunk.parent_recording_id].append(chunk)

        for parent_id, group in groups.items():
            if parent_id in known or parent_id == active_recording_id:
                continue
            try:
                recording = aggregate_recording(parent_id, group, recovered=True)
                # Re-check by id so a concurrent run cannot double-create.
                if await self.chunks.get_recording(parent_id) is not None:
                    continue
                await self.chunks.put_recording(recording)
            except Exception as exc:
                logger.error("Recovery of %s failed: %s", parent_id, exc)
                report.failed[parent_id] = str(exc)
                continue
            logger.info(
                "Recovered %s: %d chunks, %ss",
                parent_id,
                recording.chunks_count,
                recording.duration_seconds,
            )
            report.recovered.append(recording)

        if active_recording_id and not groups.get(active_recording_id):
            report.placeholder = self.placeholder(active_recording_id, active_started_at)
        return report

    def placeholder(
        self, recording_id: str, started_at: Optional[float] = None
    ) -> Recording:
        """In-progress capture with nothing persisted yet; never written to the store."""
        return Recording(
            recording_id=recording_id,
            started_at=started_at or started_at_from_id(recording_id) or self.clock(),
            duration_seconds=0,
            total_samples=0,
            chunks_count=0,
            sample_rate=0,
            channels=0,
            in_progress=True,
        )
