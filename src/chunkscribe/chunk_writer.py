"""Incremental chunk persistence during capture."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Optional, Protocol

import numpy as np

from .audio_utils import concat_frames, encode_pcm16
from .buffer import SampleBuffer
from .models import Chunk, PayloadKind, Recording
from .recovery import aggregate_recording
from .storage import ChunkStore, StorageError, build_recording_id

logger = logging.getLogger("chunkscribe")


class CaptureError(RuntimeError):
    pass


class CaptureSource(Protocol):
    sample_rate: int
    channels: int

    def start(self, on_frame: Callable[[np.ndarray], None]) -> None: ...

    def stop(self) -> None: ...


class ChunkWriter:
    """Drains unsaved frames from the buffer into sequential chunks."""

    def __init__(
        self,
        chunks: ChunkStore,
        buffer: SampleBuffer,
        recording_id: str,
        sample_rate: int,
        channels: int = 1,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.chunks = chunks
        self.buffer = buffer
        self.recording_id = recording_id
        self.sample_rate = sample_rate
        self.channels = channels
        self.clock = clock
        self._lock = asyncio.Lock()

    async def flush(self) -> Optional[Chunk]:
        """Persist pending frames as one chunk. Failures leave them pending."""
        async with self._lock:
            count = self.buffer.pending_count
            if count == 0:
                return None
            samples = concat_frames(self.buffer.pending()[:count])
            try:
                number = await self.chunks.next_chunk_number(self.recording_id)
                chunk = Chunk(
                    parent_recording_id=self.recording_id,
                    chunk_number=number,
                    samples_count=int(samples.shape[0]) // self.channels,
                    sample_rate=self.sample_rate,
                    channels=self.channels,
                    created_at=self.clock(),
                    format=PayloadKind.PCM16,
                    payload=encode_pcm16(samples),
                )
                chunk.size = len(chunk.payload)
                await self.chunks.put_chunk(chunk)
            except (StorageError, OSError) as exc:
                logger.error(
                    "Flush of %s failed (%d frames kept for retry): %s",
                    self.recording_id,
                    count,
                    exc,
                )
                return None
            self.buffer.mark_persisted(count)
            logger.info(
                "Saved chunk %d of %s (%d samples)",
                chunk.chunk_number,
                self.recording_id,
                chunk.samples_count,
            )
            return chunk


class CaptureSession:
    """One capture: source -> buffer -> periodic flush -> final record."""

    def __init__(
        self,
        chunks: ChunkStore,
        source: CaptureSource,
        flush_interval_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
        final_flush_attempts: int = 3,
    ) -> None:
        self.chunks = chunks
        self.source = source
        self.flush_interval_seconds = flush_interval_seconds
        self.clock = clock
        self.final_flush_attempts = max(1, final_flush_attempts)
        self.buffer = SampleBuffer()
        self.recording_id: Optional[str] = None
        self.started_at: Optional[float] = None
        self.writer: Optional[ChunkWriter] = None
        self._stopping = asyncio.Event()
        self._timer: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self.recording_id is not None

    async def start(self) -> str:
        if self.active:
            raise CaptureError("Capture already in progress.")
        self.started_at = self.clock()
        self.recording_id = build_recording_id(self.started_at)
        self.buffer.clear()
        self.writer = ChunkWriter(
            self.chunks,
            self.buffer,
            self.recording_id,
            self.source.sample_rate,
            self.source.channels,
            clock=self.clock,
        )
        self._stopping.clear()
        try:
            self.source.start(self.buffer.append)
        except Exception:
            logger.error("Capture source failed to start for %s", self.recording_id)
            self._reset()
            raise
        if self.flush_interval_seconds > 0:
            self._timer = asyncio.create_task(self._flush_loop())
        else:
            logger.info("Crash-recovery chunks disabled for %s", self.recording_id)
        logger.info("Recording %s started", self.recording_id)
        return self.recording_id

    def _reset(self) -> None:
        self.buffer.clear()
        self.recording_id = None
        self.started_at = None
        self.writer = None

    async def _flush_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(
                    self._stopping.wait(), timeout=self.flush_interval_seconds
                )
            except asyncio.TimeoutError:
                await self._safe_flush()

    async def _safe_flush(self) -> None:
        # Pending frames stay in the buffer; the next flush picks them up.
        try:
            await self.writer.flush()
        except Exception:
            logger.exception("Unexpected error flushing %s", self.recording_id)

    async def stop(self) -> Optional[Recording]:
        """Stop capture, flush what is left, and write the final record."""
        if not self.active:
            raise CaptureError("No capture in progress.")
        try:
            self.source.stop()
        except Exception:
            logger.exception("Capture source failed to stop cleanly")
        # Let frames already handed to the loop land in the buffer.
        await asyncio.sleep(0)
        self._stopping.set()
        timer, self._timer = self._timer, None
        if timer is not None:
            try:
                await timer
            except Exception:
                logger.exception("Flush timer for %s ended with an error", self.recording_id)

        try:
            for _attempt in range(self.final_flush_attempts):
                await self._safe_flush()
                if self.buffer.pending_count == 0:
                    break
            if self.buffer.pending_count:
                logger.error(
                    "Final flush of %s left %d frames unsaved",
                    self.recording_id,
                    self.buffer.pending_count,
                )
            return await self._finalize()
        finally:
            self._reset()

    async def _finalize(self) -> Optional[Recording]:
        chunks = await self.chunks.get_recording_chunks(self.recording_id)
        if not chunks:
            logger.error("No chunks found for %s; nothing to finalize", self.recording_id)
            return None
        recording = aggregate_recording(self.recording_id, chunks, started_at=self.started_at)
        await self.chunks.put_recording(recording)
        logger.info(
            "Recording %s saved: %d chunks, %ss",
            recording.recording_id,
            recording.chunks_count,
            recording.duration_seconds,
        )
        return recording
