"""The application surface: capture, list, transcribe, export, play, delete."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from .audio_utils import decode_payload, encode_wav, resample
from .chunk_writer import CaptureError, CaptureSession, CaptureSource
from .config import Config
from .models import Chunk, Recording
from .orchestrator import (
    ProgressCallback,
    TranscriptionError,
    TranscriptionInProgressError,
    TranscriptionOrchestrator,
)
from .playback import ChunkPlayer, PlaybackSequencer, SoundDevicePlayer
from .recorder import SoundDeviceSource
from .recovery import RecoveryEngine, RecoveryReport, aggregate_recording
from .storage import (
    ChunkStore,
    FileStore,
    KeyValueStore,
    RecordingNotFoundError,
    TranscriptionStateStore,
    ensure_structure,
)
from .transcriber import TranscriptionBackend, create_backend

logger = logging.getLogger("chunkscribe")

TRANSCRIPTION_PLACEHOLDER = "{{TRANSCRIPTION}}"

BUILTIN_PROMPTS = {
    "summary": (
        "Please provide a clear and concise summary of the following transcription. "
        "Focus on the main points, key topics, and important details.\n\n"
        "Transcription:\n{{TRANSCRIPTION}}\n\n"
        "Provide the summary in a well-structured format with bullet points or "
        "paragraphs as appropriate."
    ),
    "action-items": (
        "Extract all action items, tasks, and to-dos from the following transcription. "
        "For each action item, identify the task, who is responsible and any deadline "
        "if mentioned.\n\n"
        "Transcription:\n{{TRANSCRIPTION}}\n\n"
        "Format the output as a numbered list."
    ),
    "key-points": (
        "Identify and extract the key points and main takeaways from the following "
        "transcription.\n\n"
        "Transcription:\n{{TRANSCRIPTION}}\n\n"
        "Present the key points as bullets organized by topic."
    ),
}


class ChunkscribeService:
    """
    Wires the stores, capture session, orchestrator and playback together.

    ``open()`` runs crash recovery once; every public operation awaits it
    first, so callers never observe un-repaired storage.
    """

    def __init__(
        self,
        config: Config,
        store: Optional[KeyValueStore] = None,
        state_store: Optional[KeyValueStore] = None,
        source: Optional[CaptureSource] = None,
        backend: Optional[TranscriptionBackend] = None,
        player_factory: Optional[Callable[[], ChunkPlayer]] = None,
        on_credentials_invalid: Optional[Callable[[], None]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        if store is None or state_store is None:
            paths = ensure_structure(config.base_dir)
            store = store or FileStore(paths["records"])
            state_store = state_store or FileStore(paths["state"])
        self.chunks = ChunkStore(store)
        self.states = TranscriptionStateStore(state_store)
        self.recovery = RecoveryEngine(self.chunks, clock=clock)
        self.clock = clock
        self.on_credentials_invalid = on_credentials_invalid
        self._source = source
        self._backend = backend
        self._player_factory = player_factory or (
            lambda: SoundDevicePlayer(config.playback.output_device)
        )
        self._orchestrator: Optional[TranscriptionOrchestrator] = None
        self._ready: Optional[asyncio.Future] = None
        self.capture: Optional[CaptureSession] = None
        self.playback: Optional[PlaybackSequencer] = None

    # -- lifecycle -------------------------------------------------------

    async def open(self) -> RecoveryReport:
        if self._ready is None:
            self._ready = asyncio.get_running_loop().create_future()
            try:
                report = await self.recovery.run(self._active_recording_id())
            except Exception as exc:
                self._ready.set_exception(exc)
            else:
                if report.recovered:
                    logger.info("Recovered %d interrupted recording(s)", len(report.recovered))
                self._ready.set_result(report)
        return await self._ready

    async def close(self) -> None:
        await self.close_playback()
        if self.capture is not None:
            await self.stop_capture()
        if self._backend is not None:
            await self._backend.aclose()

    def _active_recording_id(self) -> Optional[str]:
        if self.capture is not None and self.capture.active:
            return self.capture.recording_id
        return None

    @property
    def backend(self) -> TranscriptionBackend:
        if self._backend is None:
            self._backend = create_backend(
                self.config.transcription,
                on_credentials_invalid=self.on_credentials_invalid,
            )
        return self._backend

    @property
    def orchestrator(self) -> TranscriptionOrchestrator:
        if self._orchestrator is None:
            cfg = self.config.transcription
            self._orchestrator = TranscriptionOrchestrator(
                self.chunks,
                self.states,
                self.backend,
                segment_seconds=cfg.segment_seconds,
                target_sample_rate=cfg.target_sample_rate_hz,
                min_interval_seconds=cfg.min_request_interval_seconds,
                repetition_threshold=cfg.repetition_threshold,
            )
        return self._orchestrator

    # -- capture ---------------------------------------------------------

    async def start_capture(self) -> str:
        await self.open()
        if self.capture is not None and self.capture.active:
            raise CaptureError("Stop the current capture before starting a new one.")
        source = self._source or SoundDeviceSource(self.config.capture)
        self.capture = CaptureSession(
            self.chunks,
            source,
            flush_interval_seconds=self.config.capture.flush_interval_seconds,
            clock=self.clock,
        )
        try:
            return await self.capture.start()
        except Exception:
            self.capture = None
            raise

    async def stop_capture(self) -> Optional[Recording]:
        if self.capture is None or not self.capture.active:
            raise CaptureError("No capture in progress.")
        try:
            return await self.capture.stop()
        finally:
            self.capture = None

    # -- queries ---------------------------------------------------------

    async def list_recordings(self) -> List[Recording]:
        await self.open()
        recordings = await self.chunks.list_recordings()
        active_id = self._active_recording_id()
        if active_id is not None:
            started_at = self.capture.started_at
            active_chunks = await self.chunks.get_recording_chunks(active_id)
            if active_chunks:
                current = aggregate_recording(active_id, active_chunks, started_at=started_at)
                current.in_progress = True
            else:
                current = self.recovery.placeholder(active_id, started_at)
            recordings.insert(0, current)
        return recordings

    async def get_recording(self, recording_id: str) -> Recording:
        await self.open()
        return await self.chunks.require_recording(recording_id)

    async def get_recording_chunks(self, recording_id: str) -> List[Chunk]:
        await self.open()
        return await self.chunks.get_recording_chunks(recording_id)

    async def storage_info(self) -> Dict[str, Any]:
        await self.open()
        return await self.chunks.storage_info()

    # -- transcription ---------------------------------------------------

    async def transcribe(
        self, recording_id: str, on_progress: Optional[ProgressCallback] = None
    ) -> str:
        await self.open()
        return await self.orchestrator.transcribe(recording_id, on_progress)

    async def resume(
        self, recording_id: str, on_progress: Optional[ProgressCallback] = None
    ) -> str:
        await self.open()
        return await self.orchestrator.resume(recording_id, on_progress)

    async def has_incomplete_transcription(self, recording_id: str) -> bool:
        await self.open()
        return await self.orchestrator.has_incomplete_transcription(recording_id)

    async def clear_transcription_state(self, recording_id: str) -> None:
        await self.open()
        await self.orchestrator.clear_transcription_state(recording_id)

    async def post_process(
        self, recording_id: str, prompt_id: str, system_prompt: Optional[str] = None
    ) -> str:
        await self.open()
        recording = await self.chunks.require_recording(recording_id)
        if not recording.transcription:
            raise TranscriptionError(f"{recording_id} has no transcription to process.")
        template = system_prompt or BUILTIN_PROMPTS.get(prompt_id)
        if not template:
            raise ValueError(f"Unknown prompt: {prompt_id}")
        prompt = template.replace(TRANSCRIPTION_PLACEHOLDER, recording.transcription)
        text = await self.backend.process_text(prompt)
        await self.chunks.update_processed_transcription(recording_id, prompt_id, text)
        logger.info("Stored '%s' result for %s", prompt_id, recording_id)
        return text

    # -- export / playback -----------------------------------------------

    async def export_as_wav(
        self, recording_id: str, target_sample_rate: Optional[int] = None
    ) -> bytes:
        await self.open()
        chunks = await self.chunks.get_recording_chunks(recording_id, with_payload=True)
        if not chunks:
            raise RecordingNotFoundError(recording_id)
        rate = chunks[0].sample_rate
        channels = chunks[0].channels
        samples = np.concatenate([decode_payload(chunk.audio()) for chunk in chunks])
        target = target_sample_rate or rate
        if target != rate:
            samples = resample(samples, rate, target)
        logger.info(
            "Exporting %s: %d chunks at %d Hz -> %d Hz", recording_id, len(chunks), rate, target
        )
        return encode_wav(samples, target, channels)

    async def open_playback(
        self, recording_id: str, player: Optional[ChunkPlayer] = None
    ) -> PlaybackSequencer:
        """Replace any active playback with a new handle for ``recording_id``."""
        await self.open()
        chunks = await self.chunks.get_recording_chunks(recording_id)
        if not chunks:
            raise RecordingNotFoundError(recording_id)
        await self.close_playback()
        playback_cfg = self.config.playback
        self.playback = PlaybackSequencer(
            chunks,
            self.chunks.load_payload,
            player or self._player_factory(),
            estimate_seconds=self.config.capture.flush_interval_seconds or 60.0,
            seek_epsilon=playback_cfg.seek_epsilon_seconds,
            load_timeout=playback_cfg.load_timeout_seconds,
        )
        return self.playback

    async def close_playback(self) -> None:
        playback, self.playback = self.playback, None
        if playback is not None:
            await playback.stop()

    # -- deletion --------------------------------------------------------

    async def delete_recording(self, recording_id: str) -> int:
        await self.open()
        if recording_id == self._active_recording_id():
            raise CaptureError("Cannot delete a recording that is still being captured.")
        if self._orchestrator is not None and self._orchestrator.is_running(recording_id):
            raise TranscriptionInProgressError(recording_id)
        if self.playback is not None and any(
            chunk.parent_recording_id == recording_id for chunk in self.playback.chunks
        ):
            await self.close_playback()
        existed = await self.chunks.get_recording(recording_id) is not None
        removed = await self.chunks.delete_recording(recording_id)
        if not existed and not removed:
            raise RecordingNotFoundError(recording_id)
        await self.states.delete(recording_id)
        return removed

    async def delete_all(self) -> None:
        await self.open()
        if self._active_recording_id() is not None:
            raise CaptureError("Stop the current capture before deleting everything.")
        if self._orchestrator is not None and self._orchestrator.active_recordings:
            raise TranscriptionError("Wait for running transcriptions to finish first.")
        await self.close_playback()
        await self.chunks.clear()
        await self.states.clear()
        logger.info("Deleted all recordings")
