"""In-memory buffer of captured frames with a persistence watermark."""

from __future__ import annotations

from typing import List

import numpy as np


class SampleBuffer:
    """
    Ordered list of captured frames.

    The watermark counts frames that are durably persisted. Persisted frames
    are released from memory; pending ones stay until a flush succeeds.
    """

    def __init__(self) -> None:
        self._frames: List[np.ndarray] = []
        self._released = 0
        self.watermark = 0

    def append(self, frame: np.ndarray) -> None:
        self._frames.append(np.asarray(frame, dtype=np.float32).reshape(-1))

    @property
    def total_frames(self) -> int:
        return self._released + len(self._frames)

    @property
    def pending_count(self) -> int:
        return self.total_frames - self.watermark

    def pending(self) -> List[np.ndarray]:
        """Frames not yet persisted, in arrival order."""
        return list(self._frames[self.watermark - self._released :])

    def mark_persisted(self, count: int) -> None:
        if count < 0 or count > self.pending_count:
            raise ValueError(f"Cannot persist {count} frames; {self.pending_count} pending.")
        self.watermark += count
        drop = self.watermark - self._released
        del self._frames[:drop]
        self._released += drop

    def clear(self) -> None:
        self._frames = []
        self._released = 0
        self.watermark = 0
