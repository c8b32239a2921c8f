"""Continuous, seekable playback over a recording's stored chunks."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Tuple

import numpy as np

from .audio_utils import decode_payload
from .models import Chunk

logger = logging.getLogger("chunkscribe")

ChunkLoader = Callable[[Chunk], Awaitable[Chunk]]


class ChunkPlayer(Protocol):
    async def load(self, chunk: Chunk) -> Optional[float]:
        """Prepare ``chunk`` for playback; return its measured duration if known."""

    async def play(self, offset: float) -> bool:
        """Play the loaded chunk from ``offset``. True on natural end, False if stopped."""

    def stop(self) -> None: ...

    def position(self) -> float: ...


class SoundDevicePlayer:
    """Plays one decoded chunk at a time through sounddevice."""

    def __init__(self, device: Optional[str] = None) -> None:
        self.device = device
        self._samples: Optional[np.ndarray] = None
        self._rate = 0
        self._offset = 0.0
        self._started: Optional[float] = None
        self._stopped = False

    async def load(self, chunk: Chunk) -> Optional[float]:
        samples = decode_payload(chunk.audio())
        self._samples = samples
        self._rate = chunk.sample_rate
        self._offset = 0.0
        self._started = None
        return samples.shape[0] / float(chunk.sample_rate)

    async def play(self, offset: float) -> bool:
        if self._samples is None:
            raise RuntimeError("No chunk loaded.")
        from .recorder import _import_sounddevice

        sd = _import_sounddevice()
        start = min(int(offset * self._rate), self._samples.shape[0])
        self._offset = start / float(self._rate)
        self._stopped = False
        self._started = time.monotonic()
        sd.play(self._samples[start:], self._rate, device=self.device)
        await asyncio.to_thread(sd.wait)
        finished = not self._stopped
        self._offset = self.position()
        self._started = None
        return finished

    def stop(self) -> None:
        self._offset = self.position()
        self._started = None
        self._stopped = True
        from .recorder import _import_sounddevice

        _import_sounddevice().stop()

    def position(self) -> float:
        if self._started is None:
            return self._offset
        return self._offset + (time.monotonic() - self._started)


class PlaybackSequencer:
    """
    Play/pause/seek across an ordered list of chunks as if they were one file.

    Durations start as estimates (the chunk's own sample count, or the
    configured flush interval) and are replaced by measured values as each
    chunk is loaded. Cumulative elapsed time is always recomputed from the
    current durations.
    """

    def __init__(
        self,
        chunks: List[Chunk],
        loader: ChunkLoader,
        player: ChunkPlayer,
        estimate_seconds: float = 60.0,
        seek_epsilon: float = 0.05,
        load_timeout: float = 3.0,
    ) -> None:
        self.chunks = sorted(chunks, key=lambda chunk: chunk.chunk_number)
        self.loader = loader
        self.player = player
        self.seek_epsilon = seek_epsilon
        self.load_timeout = load_timeout
        self.durations: List[float] = [
            chunk.duration_seconds if chunk.samples_count else float(estimate_seconds)
            for chunk in self.chunks
        ]
        self.measured: Dict[int, bool] = {}
        self.index = 0
        self.elapsed = 0.0
        self.playing = False
        self._offset = 0.0
        self._loaded: Optional[int] = None
        self._task: Optional[asyncio.Task] = None
        self._halt: Optional[asyncio.Event] = None
        self._in_chunk = False

    @property
    def total_duration(self) -> float:
        return sum(self.durations)

    def current_time(self) -> float:
        offset = self.player.position() if self._in_chunk else self._offset
        return self.elapsed + offset

    def locate(self, seconds: float) -> Tuple[int, float]:
        """Chunk index containing absolute ``seconds`` and the offset within it."""
        if not self.chunks:
            raise ValueError("Nothing to play.")
        target = max(0.0, float(seconds))
        start = 0.0
        for index, duration in enumerate(self.durations):
            if target < start + duration:
                return index, target - start
            start += duration
        last = len(self.durations) - 1
        return last, self.durations[last]

    def _elapsed_before(self, index: int) -> float:
        return sum(self.durations[:index])

    def _clamp(self, index: int, offset: float) -> float:
        limit = max(0.0, self.durations[index] - self.seek_epsilon)
        return min(max(0.0, offset), limit)

    async def _load(self, index: int) -> None:
        chunk = await self.loader(self.chunks[index])
        try:
            measured = await asyncio.wait_for(self.player.load(chunk), self.load_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Duration of chunk %d not known after %ss; using estimate %.2fs",
                index,
                self.load_timeout,
                self.durations[index],
            )
            measured = None
        if measured is not None and measured > 0:
            self.durations[index] = float(measured)
            self.measured[index] = True
        self._loaded = index

    async def _run(self, index: int, offset: float, halt: asyncio.Event) -> None:
        # ``halt`` is set by pause/stop/seek, possibly before this task first runs.
        try:
            while index < len(self.chunks):
                if halt.is_set():
                    return
                self.index = index
                self.elapsed = self._elapsed_before(index)
                self._offset = offset
                if self._loaded != index:
                    await self._load(index)
                    if halt.is_set():
                        return
                offset = self._clamp(index, offset) if offset else 0.0
                self._offset = offset
                self._in_chunk = True
                try:
                    finished = await self.player.play(offset)
                finally:
                    self._in_chunk = False
                if not finished or halt.is_set():
                    return
                index += 1
                offset = 0.0
        except Exception:
            self.playing = False
            raise
        logger.debug("Playback reached the end")
        self._reset()

    def _reset(self) -> None:
        self.playing = False
        self.index = 0
        self.elapsed = 0.0
        self._offset = 0.0
        self._loaded = None

    async def play(self) -> None:
        if self.playing or not self.chunks:
            return
        self.playing = True
        self._halt = asyncio.Event()
        self._task = asyncio.create_task(self._run(self.index, self._offset, self._halt))

    async def _interrupt(self) -> None:
        """End the current run; the position it reached is kept in ``_offset``."""
        if self._in_chunk:
            self._offset = self.player.position()
        self.playing = False
        if self._halt is not None:
            self._halt.set()
        if self._in_chunk:
            self.player.stop()
        await self._join()

    async def pause(self) -> None:
        if not self.playing:
            return
        await self._interrupt()

    async def stop(self) -> None:
        if self.playing:
            await self._interrupt()
        self._reset()

    async def seek(self, seconds: float) -> Tuple[int, float]:
        """Jump to absolute ``seconds``; playback resumes if it was running."""
        resume = self.playing
        if resume:
            await self._interrupt()

        index, offset = self.locate(seconds)
        await self._load(index)
        self.index = index
        self.elapsed = self._elapsed_before(index)
        self._offset = self._clamp(index, offset)
        logger.debug("Seek %.2fs -> chunk %d at %.2fs", seconds, index, self._offset)

        if resume:
            await self.play()
        return self.index, self._offset

    async def wait(self) -> None:
        """Block until the current playback run ends."""
        await self._join()

    async def _join(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            await task
