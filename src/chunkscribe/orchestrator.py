"""Resumable, rate-limited, segment-by-segment transcription."""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import contextmanager
from typing import Awaitable, Callable, Iterator, Optional, Set

from .audio_utils import wav_payload
from .models import TranscriptionState
from .segments import SegmentBuilder
from .storage import ChunkStore, TranscriptionStateStore
from .transcriber import (
    TranscriptionBackend,
    clean_transcription,
    segment_instruction,
)

logger = logging.getLogger("chunkscribe")

ProgressCallback = Callable[[str, int, int], None]


class TranscriptionError(RuntimeError):
    pass


class NothingToResumeError(TranscriptionError):
    def __init__(self, recording_id: str) -> None:
        super().__init__(f"No saved transcription progress for {recording_id}.")
        self.recording_id = recording_id


class ResumeRequiredError(TranscriptionError):
    def __init__(self, recording_id: str) -> None:
        super().__init__(
            f"{recording_id} has unfinished transcription progress; resume or clear it first."
        )
        self.recording_id = recording_id


class TranscriptionInProgressError(TranscriptionError):
    def __init__(self, recording_id: str) -> None:
        super().__init__(f"Transcription of {recording_id} is already running.")
        self.recording_id = recording_id


class TranscriptionStopped(TranscriptionError):
    pass


class SegmentFailedError(TranscriptionError):
    """A segment call failed; progress up to ``index - 1`` is saved."""

    def __init__(self, index: int, total: int, cause: BaseException) -> None:
        super().__init__(f"Segment {index + 1}/{total} failed: {cause}")
        self.index = index
        self.total = total
        self.cause = cause


class TranscriptionOrchestrator:
    """
    Drives one backend call per segment, strictly in order.

    Progress is checkpointed in a :class:`TranscriptionState` after every
    segment. Consecutive call starts are at least ``min_interval_seconds``
    apart, measured from the start of the previous call.
    """

    def __init__(
        self,
        chunks: ChunkStore,
        states: TranscriptionStateStore,
        backend: TranscriptionBackend,
        segment_seconds: float = 60.0,
        target_sample_rate: Optional[int] = 16000,
        min_interval_seconds: float = 4.0,
        repetition_threshold: int = 10,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self.chunks = chunks
        self.states = states
        self.backend = backend
        self.segment_seconds = segment_seconds
        self.target_sample_rate = target_sample_rate
        self.min_interval_seconds = min_interval_seconds
        self.repetition_threshold = repetition_threshold
        self.clock = clock
        self.sleep = sleep
        self.wall_clock = wall_clock
        self._running: Set[str] = set()
        self._stop_requested: Set[str] = set()

    @contextmanager
    def _claim(self, recording_id: str) -> Iterator[None]:
        if recording_id in self._running:
            raise TranscriptionInProgressError(recording_id)
        self._running.add(recording_id)
        try:
            yield
        finally:
            self._running.discard(recording_id)
            self._stop_requested.discard(recording_id)

    @property
    def active_recordings(self) -> frozenset:
        return frozenset(self._running)

    def is_running(self, recording_id: str) -> bool:
        return recording_id in self._running

    def request_stop(self, recording_id: str) -> bool:
        """Stop after the segment currently in flight. Returns False if idle."""
        if recording_id not in self._running:
            return False
        self._stop_requested.add(recording_id)
        return True

    async def has_incomplete_transcription(self, recording_id: str) -> bool:
        return await self.states.get(recording_id) is not None

    async def clear_transcription_state(self, recording_id: str) -> None:
        if recording_id in self._running:
            raise TranscriptionInProgressError(recording_id)
        await self.states.delete(recording_id)
        logger.info("Cleared transcription progress for %s", recording_id)

    async def transcribe(
        self, recording_id: str, on_progress: Optional[ProgressCallback] = None
    ) -> str:
        with self._claim(recording_id):
            if await self.states.get(recording_id) is not None:
                raise ResumeRequiredError(recording_id)
            await self.chunks.require_recording(recording_id)
            now = self.wall_clock()
            state = TranscriptionState(recording_id, started_at=now, updated_at=now)
            return await self._run(state, on_progress)

    async def resume(
        self, recording_id: str, on_progress: Optional[ProgressCallback] = None
    ) -> str:
        with self._claim(recording_id):
            state = await self.states.get(recording_id)
            if state is None:
                raise NothingToResumeError(recording_id)
            await self.chunks.require_recording(recording_id)
            logger.info(
                "Resuming %s after segment %d", recording_id, state.last_completed_segment
            )
            return await self._run(state, on_progress)

    async def _run(
        self, state: TranscriptionState, on_progress: Optional[ProgressCallback]
    ) -> str:
        recording_id = state.recording_id
        chunks = await self.chunks.get_recording_chunks(recording_id)
        if not chunks:
            raise TranscriptionError(f"No audio chunks stored for {recording_id}.")

        builder = SegmentBuilder(self.segment_seconds, self.target_sample_rate)
        total = builder.count_segments(chunks)
        start = state.last_completed_segment + 1
        logger.info(
            "Transcribing %s: %d segments of %ss, starting at %d",
            recording_id,
            total,
            self.segment_seconds,
            start,
        )

        last_call_started: Optional[float] = None
        next_index = start
        segments = builder.iter_segments(
            chunks, load=self.chunks.load_payload, start_index=start
        )
        try:
            while True:
                try:
                    segment = await anext(segments, None)
                except Exception as exc:
                    raise await self._segment_failed(state, next_index, total, exc) from exc
                if segment is None:
                    break

                if recording_id in self._stop_requested:
                    if state.last_completed_segment >= 0:
                        await self.states.save(state)
                    logger.info(
                        "Transcription of %s stopped before segment %d", recording_id, segment.index
                    )
                    raise TranscriptionStopped(
                        f"Stopped after segment {state.last_completed_segment + 1}/{total}."
                    )

                if last_call_started is not None:
                    wait = self.min_interval_seconds - (self.clock() - last_call_started)
                    if wait > 0:
                        await self.sleep(wait)

                if on_progress:
                    on_progress(
                        f"Transcribing segment {segment.index + 1}/{total}", segment.index, total
                    )
                try:
                    payload = wav_payload(segment.samples, segment.sample_rate, segment.channels)
                    last_call_started = self.clock()
                    result = await self.backend.transcribe(
                        payload, segment_instruction(segment.index + 1, self.segment_seconds)
                    )
                except Exception as exc:
                    raise await self._segment_failed(state, segment.index, total, exc) from exc

                if result.truncated:
                    logger.warning(
                        "Segment %d of %s hit the output limit; keeping partial text",
                        segment.index + 1,
                        recording_id,
                    )
                    if segment.index not in state.truncated_segments:
                        state.truncated_segments.append(segment.index)
                text = clean_transcription(result.text, self.repetition_threshold)
                if not text:
                    logger.info("Segment %d of %s has no speech", segment.index + 1, recording_id)
                state.record_success(segment.index, text, self.wall_clock())
                await self.states.save(state)
                next_index = segment.index + 1
        finally:
            await segments.aclose()

        if builder.corrupted:
            logger.warning("Transcript of %s was built from incomplete chunks", recording_id)

        transcript = " ".join(part for part in state.completed if part)
        await self.chunks.update_transcription(
            recording_id, transcript, truncated_segments=state.truncated_segments
        )
        await self.states.delete(recording_id)
        if on_progress:
            on_progress("Transcription complete", total, total)
        logger.info("Transcription of %s complete (%d chars)", recording_id, len(transcript))
        return transcript

    async def _segment_failed(
        self, state: TranscriptionState, index: int, total: int, exc: Exception
    ) -> SegmentFailedError:
        logger.error(
            "Segment %d/%d of %s failed: %s", index + 1, total, state.recording_id, exc
        )
        state.record_failure(index, str(exc) or type(exc).__name__, self.wall_clock())
        await self.states.save(state)
        return SegmentFailedError(index, total, exc)
