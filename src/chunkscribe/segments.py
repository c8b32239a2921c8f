"""Re-segment stored chunks into fixed-duration transcription segments."""

from __future__ import annotations

import logging
import math
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Sequence

import numpy as np

from .audio_utils import decode_payload, resample
from .models import Chunk, Segment
from .recovery import find_chunk_gaps

logger = logging.getLogger("chunkscribe")

ChunkLoader = Callable[[Chunk], Awaitable[Chunk]]


class SegmentBuilder:
    """
    Streams chunks in order and cuts them into segments of
    ``segment_seconds * source_rate`` samples, independent of chunk boundaries.

    Only one chunk and one segment worth of audio are held at a time.
    """

    def __init__(
        self,
        segment_seconds: float,
        target_sample_rate: Optional[int] = None,
    ) -> None:
        if segment_seconds <= 0:
            raise ValueError("segment_seconds must be > 0.")
        self.segment_seconds = segment_seconds
        self.target_sample_rate = target_sample_rate
        self.corrupted = False

    def samples_per_segment(self, sample_rate: int) -> int:
        return max(1, int(math.floor(self.segment_seconds * sample_rate)))

    def count_segments(self, chunks: Sequence[Chunk]) -> int:
        if not chunks:
            return 0
        total = sum(chunk.samples_count for chunk in chunks)
        per = self.samples_per_segment(chunks[0].sample_rate)
        return math.ceil(total / per)

    async def iter_segments(
        self,
        chunks: Sequence[Chunk],
        load: Optional[ChunkLoader] = None,
        start_index: int = 0,
    ) -> AsyncIterator[Segment]:
        ordered = sorted(chunks, key=lambda chunk: chunk.chunk_number)
        if not ordered:
            return
        gaps = find_chunk_gaps(ordered)
        if gaps:
            self.corrupted = True
            logger.warning(
                "Chunks %s missing for %s; concatenating what is available",
                gaps,
                ordered[0].parent_recording_id,
            )

        rate = ordered[0].sample_rate
        channels = ordered[0].channels
        per = self.samples_per_segment(rate)
        parts: List[np.ndarray] = []
        filled = 0
        index = 0
        skip_until = start_index * per
        skipped = 0

        for meta in ordered:
            # Chunks wholly inside already-transcribed segments are not loaded.
            if index == 0 and filled == 0 and skipped + meta.samples_count <= skip_until:
                skipped += meta.samples_count
                continue
            if skipped:
                index, filled = divmod(skipped, per)
                skipped = 0
            if meta.sample_rate != rate:
                logger.warning(
                    "Chunk %s sample rate %d differs from %d",
                    meta.key,
                    meta.sample_rate,
                    rate,
                )
            chunk = meta if meta.payload is not None or load is None else await load(meta)
            data = decode_payload(chunk.audio())
            offset = 0
            while offset < data.shape[0]:
                take = min(data.shape[0] - offset, per - filled)
                if index >= start_index:
                    parts.append(data[offset : offset + take])
                filled += take
                offset += take
                if filled == per:
                    if index >= start_index:
                        yield self._emit(index, parts, filled, rate, channels)
                    index += 1
                    parts = []
                    filled = 0

        if filled and index >= start_index:
            yield self._emit(index, parts, filled, rate, channels)

    def _emit(
        self,
        index: int,
        parts: List[np.ndarray],
        filled: int,
        rate: int,
        channels: int,
    ) -> Segment:
        samples = np.concatenate(parts) if parts else np.zeros(0, dtype=np.float32)
        target = self.target_sample_rate or rate
        if target != rate:
            samples = resample(samples, rate, target)
        logger.debug(
            "Segment %d: %d samples (%.2fs)", index, filled, filled / float(rate)
        )
        return Segment(
            index=index,
            samples=samples,
            sample_rate=target,
            source_samples=filled,
            source_sample_rate=rate,
            channels=channels,
        )
