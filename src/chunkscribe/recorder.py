"""Audio capture sources."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

import numpy as np

from .config import CaptureConfig

logger = logging.getLogger("chunkscribe")

FrameCallback = Callable[[np.ndarray], None]


def _import_sounddevice():
    try:
        import sounddevice as sd
    except Exception as exc:  # pragma: no cover - environment-dependent
        raise RuntimeError("sounddevice is required for audio capture.") from exc
    return sd


def list_input_devices(loopback: bool = False) -> List[Dict[str, Any]]:
    sd = _import_sounddevice()
    devices = sd.query_devices()
    if loopback:
        return [d for d in devices if d.get("max_output_channels", 0) > 0]
    return [d for d in devices if d.get("max_input_channels", 0) > 0]


def select_preferred_device(
    candidates: List[Dict[str, Any]],
    prefer_name: Optional[str] = None,
) -> Dict[str, Any]:
    if not candidates:
        raise RuntimeError("No input devices found.")
    if prefer_name:
        preferred = [
            d for d in candidates if prefer_name.lower() in d.get("name", "").lower()
        ]
        if preferred:
            return preferred[0]
        logger.warning("Device matching '%s' not found; using %s", prefer_name, candidates[0].get("name"))
    return candidates[0]


def find_input_device(prefer_name: Optional[str] = None, loopback: bool = False) -> dict:
    candidates = list_input_devices(loopback=loopback)
    return select_preferred_device(candidates, prefer_name=prefer_name)


class FrameMixer:
    """
    Mixes the microphone and system streams into mono frames.

    Each stream's callback hands over blocks independently; a mixed frame is
    emitted once both sides have ``blocksize`` samples queued.
    """

    def __init__(
        self,
        blocksize: int,
        on_frame: FrameCallback,
        mic_gain: float = 1.5,
        system_gain: float = 1.0,
        dual: bool = False,
    ) -> None:
        self.blocksize = blocksize
        self.on_frame = on_frame
        self.mic_gain = mic_gain
        self.system_gain = system_gain
        self.dual = dual
        self._mic: Deque[np.ndarray] = deque()
        self._system: Deque[np.ndarray] = deque()

    @staticmethod
    def _to_mono(block: np.ndarray) -> np.ndarray:
        data = np.asarray(block, dtype=np.float32)
        if data.ndim > 1:
            data = data.mean(axis=1)
        return data

    def push_mic(self, block: np.ndarray) -> None:
        mono = self._to_mono(block) * self.mic_gain
        if not self.dual:
            self.on_frame(mono.astype(np.float32))
            return
        self._mic.append(mono)
        self._drain()

    def push_system(self, block: np.ndarray) -> None:
        self._system.append(self._to_mono(block) * self.system_gain)
        self._drain()

    @staticmethod
    def _take(queue: Deque[np.ndarray], count: int) -> np.ndarray:
        parts = []
        needed = count
        while needed > 0:
            head = queue[0]
            if head.shape[0] <= needed:
                parts.append(queue.popleft())
                needed -= head.shape[0]
            else:
                parts.append(head[:needed])
                queue[0] = head[needed:]
                needed = 0
        return np.concatenate(parts)

    @staticmethod
    def _queued(queue: Deque[np.ndarray]) -> int:
        return sum(block.shape[0] for block in queue)

    def _drain(self) -> None:
        while (
            self._queued(self._mic) >= self.blocksize
            and self._queued(self._system) >= self.blocksize
        ):
            mic = self._take(self._mic, self.blocksize)
            system = self._take(self._system, self.blocksize)
            self.on_frame((mic + system).astype(np.float32))


class SoundDeviceSource:
    """Capture source backed by sounddevice input streams.

    PortAudio callbacks run on their own thread; frames are handed to the
    event loop with ``call_soon_threadsafe``.
    """

    def __init__(self, config: CaptureConfig) -> None:
        self.config = config
        self.sample_rate = config.sample_rate_hz
        self.channels = 1
        self._streams: list = []

    def start(self, on_frame: FrameCallback) -> None:
        if self._streams:
            raise RuntimeError("Capture source already started.")
        sd = _import_sounddevice()
        loop = asyncio.get_running_loop()
        dual = bool(self.config.capture_system_audio)
        mixer = FrameMixer(
            self.config.blocksize,
            on_frame,
            mic_gain=self.config.mic_gain,
            system_gain=self.config.system_gain,
            dual=dual,
        )

        def _callback(push):
            def _inner(indata, _frames, _time, status):
                if status:
                    logger.warning("Capture status: %s", status)
                loop.call_soon_threadsafe(push, indata.copy())

            return _inner

        streams = []
        try:
            mic_device = find_input_device(self.config.mic_device, loopback=False)
            streams.append(
                sd.InputStream(
                    samplerate=self.sample_rate,
                    channels=1,
                    dtype="float32",
                    device=mic_device.get("index"),
                    blocksize=self.config.blocksize,
                    callback=_callback(mixer.push_mic),
                )
            )
            if dual:
                system_device = find_input_device(self.config.system_device, loopback=True)
                extra_settings = None
                if hasattr(sd, "WasapiSettings"):
                    try:
                        extra_settings = sd.WasapiSettings(loopback=True)
                    except TypeError:
                        extra_settings = None
                streams.append(
                    sd.InputStream(
                        samplerate=self.sample_rate,
                        channels=min(2, int(system_device.get("max_output_channels", 2)) or 2),
                        dtype="float32",
                        device=system_device.get("index"),
                        blocksize=self.config.blocksize,
                        callback=_callback(mixer.push_system),
                        extra_settings=extra_settings,
                    )
                )
            for stream in streams:
                stream.start()
        except Exception:
            for stream in streams:
                try:
                    stream.close()
                except Exception:
                    logger.exception("Could not close capture stream")
            raise
        self._streams = streams
        logger.info(
            "Capture started at %d Hz (%s)",
            self.sample_rate,
            "microphone + system" if dual else "microphone",
        )

    def stop(self) -> None:
        for stream in self._streams:
            try:
                stream.stop()
            finally:
                stream.close()
        self._streams = []
        logger.info("Capture stopped")
