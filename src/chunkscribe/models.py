"""Data models for Chunkscribe."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import numpy as np


class RecordSource(str, Enum):
    RECORDING = "recording"
    CHUNK = "recording-chunk"
    UPLOAD = "upload"


class PayloadKind(str, Enum):
    PCM16 = "pcm-int16"
    PCM_F32 = "pcm-float32"
    WAV = "wav"


BYTES_PER_SAMPLE = {
    PayloadKind.PCM16: 2,
    PayloadKind.PCM_F32: 4,
}


@dataclass(frozen=True)
class AudioPayload:
    """Binary audio tagged with the single way it may be decoded."""

    kind: PayloadKind
    data: bytes
    sample_rate: int
    channels: int = 1

    def __post_init__(self) -> None:
        if not isinstance(self.kind, PayloadKind):
            object.__setattr__(self, "kind", PayloadKind(self.kind))
        if not isinstance(self.data, (bytes, bytearray, memoryview)):
            raise TypeError("Audio payload data must be bytes.")
        if self.sample_rate <= 0:
            raise ValueError("sample_rate must be > 0.")
        if self.channels <= 0:
            raise ValueError("channels must be > 0.")
        width = BYTES_PER_SAMPLE.get(self.kind)
        if width and len(self.data) % (width * self.channels):
            raise ValueError(
                f"{self.kind.value} payload length {len(self.data)} is not frame aligned."
            )

    @property
    def mime_type(self) -> str:
        if self.kind is PayloadKind.WAV:
            return "audio/wav"
        return "application/octet-stream"


def chunk_key(parent_recording_id: str, chunk_number: int) -> str:
    return f"{parent_recording_id}-chunk-{chunk_number}"


@dataclass
class Chunk:
    parent_recording_id: str
    chunk_number: int
    samples_count: int
    sample_rate: int
    channels: int
    created_at: float
    format: PayloadKind = PayloadKind.PCM16
    size: Optional[int] = None
    payload: Optional[bytes] = None

    @property
    def key(self) -> str:
        return chunk_key(self.parent_recording_id, self.chunk_number)

    @property
    def duration_seconds(self) -> float:
        return self.samples_count / float(self.sample_rate)

    @property
    def byte_size(self) -> int:
        """Stored size, or what the samples occupy when the size was never recorded."""
        if self.size is not None:
            return int(self.size)
        width = BYTES_PER_SAMPLE.get(PayloadKind(self.format), 2)
        return self.samples_count * width * self.channels

    def audio(self) -> AudioPayload:
        if self.payload is None:
            raise ValueError(f"Chunk {self.key} was loaded without its payload.")
        return AudioPayload(self.format, self.payload, self.sample_rate, self.channels)

    def to_record(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "source": RecordSource.CHUNK.value,
            "parent_recording_id": self.parent_recording_id,
            "chunk_number": self.chunk_number,
            "samples_count": self.samples_count,
            "sample_rate": self.sample_rate,
            "channels": self.channels,
            "timestamp": self.created_at,
            "format": PayloadKind(self.format).value,
            "size": self.size,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any], payload: Optional[bytes] = None) -> "Chunk":
        return cls(
            parent_recording_id=record["parent_recording_id"],
            chunk_number=int(record["chunk_number"]),
            samples_count=int(record.get("samples_count") or 0),
            sample_rate=int(record.get("sample_rate") or 48000),
            channels=int(record.get("channels") or 1),
            created_at=float(record.get("timestamp") or 0.0),
            format=PayloadKind(record.get("format") or PayloadKind.PCM16.value),
            size=record.get("size"),
            payload=payload,
        )


@dataclass
class Recording:
    recording_id: str
    started_at: float
    duration_seconds: int
    total_samples: int
    chunks_count: int
    sample_rate: int
    channels: int
    file_size: int = 0
    source: RecordSource = RecordSource.RECORDING
    recovered: bool = False
    corrupted: bool = False
    in_progress: bool = False
    transcription: Optional[str] = None
    processed_transcriptions: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    truncated_segments: List[int] = field(default_factory=list)

    def to_record(self) -> Dict[str, Any]:
        data = asdict(self)
        data["key"] = data.pop("recording_id")
        data["timestamp"] = data.pop("started_at")
        data["source"] = RecordSource(self.source).value
        data.pop("in_progress")
        return data

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Recording":
        return cls(
            recording_id=record["key"],
            started_at=float(record.get("timestamp") or 0.0),
            duration_seconds=int(record.get("duration_seconds") or 0),
            total_samples=int(record.get("total_samples") or 0),
            chunks_count=int(record.get("chunks_count") or 0),
            sample_rate=int(record.get("sample_rate") or 48000),
            channels=int(record.get("channels") or 1),
            file_size=int(record.get("file_size") or 0),
            source=RecordSource(record.get("source") or RecordSource.RECORDING.value),
            recovered=bool(record.get("recovered", False)),
            corrupted=bool(record.get("corrupted", False)),
            transcription=record.get("transcription"),
            processed_transcriptions=dict(record.get("processed_transcriptions") or {}),
            truncated_segments=list(record.get("truncated_segments") or []),
        )


@dataclass
class TranscriptionState:
    """Checkpoint for a chunked transcription that can be resumed."""

    recording_id: str
    completed: List[str] = field(default_factory=list)
    last_completed_segment: int = -1
    error: Optional[str] = None
    failed_segment: Optional[int] = None
    truncated_segments: List[int] = field(default_factory=list)
    started_at: float = 0.0
    updated_at: float = 0.0

    def record_success(self, index: int, text: str, now: float) -> None:
        if index != self.last_completed_segment + 1:
            raise ValueError(
                f"Segment {index} completed out of order "
                f"(last completed {self.last_completed_segment})."
            )
        del self.completed[index:]
        self.completed.append(text)
        self.last_completed_segment = index
        self.error = None
        self.failed_segment = None
        self.updated_at = now

    def record_failure(self, index: int, error: str, now: float) -> None:
        self.error = error
        self.failed_segment = index
        self.updated_at = now

    def to_record(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "TranscriptionState":
        last = int(record.get("last_completed_segment", -1))
        completed = list(record.get("completed") or [])[: last + 1]
        return cls(
            recording_id=record["recording_id"],
            completed=completed,
            last_completed_segment=last,
            error=record.get("error"),
            failed_segment=record.get("failed_segment"),
            truncated_segments=list(record.get("truncated_segments") or []),
            started_at=float(record.get("started_at") or 0.0),
            updated_at=float(record.get("updated_at") or 0.0),
        )


@dataclass
class Segment:
    """A fixed-duration slice of a recording, independent of chunk boundaries."""

    index: int
    samples: np.ndarray
    sample_rate: int
    source_samples: int
    source_sample_rate: int
    channels: int = 1

    @property
    def sample_count(self) -> int:
        return int(self.samples.shape[0])

    @property
    def duration_seconds(self) -> float:
        return self.source_samples / float(self.source_sample_rate)
