"""Configuration handling."""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field, fields
from typing import Optional

import yaml

MIN_SEGMENT_SECONDS = 15.0
MAX_SEGMENT_SECONDS = 600.0
MIN_OUTPUT_TOKENS = 1024
MAX_OUTPUT_TOKENS = 65536


@dataclass
class CaptureConfig:
    sample_rate_hz: int = 48000
    channels: int = 1
    flush_interval_seconds: float = 60.0
    blocksize: int = 4096
    mic_gain: float = 1.5
    system_gain: float = 1.0
    capture_system_audio: bool = False
    mic_device: Optional[str] = None
    system_device: Optional[str] = None


@dataclass
class TranscriptionConfig:
    backend: str = "gemini"
    segment_seconds: float = 60.0
    target_sample_rate_hz: int = 16000
    min_request_interval_seconds: float = 4.0
    max_output_tokens: int = 16384
    repetition_threshold: int = 10
    gemini_model: str = "gemini-2.5-flash"
    api_key: Optional[str] = None
    whisper_model: str = "small"
    language: Optional[str] = None
    max_request_bytes: int = 20 * 1024 * 1024
    timeout_seconds: float = 120.0


@dataclass
class PlaybackConfig:
    seek_epsilon_seconds: float = 0.05
    load_timeout_seconds: float = 3.0
    output_device: Optional[str] = None


@dataclass
class Config:
    base_dir: str = ""
    log_level: str = "INFO"
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    transcription: TranscriptionConfig = field(default_factory=TranscriptionConfig)
    playback: PlaybackConfig = field(default_factory=PlaybackConfig)


def sanitize_segment_seconds(value) -> float:
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return TranscriptionConfig.segment_seconds
    if numeric != numeric:  # NaN
        return TranscriptionConfig.segment_seconds
    return min(MAX_SEGMENT_SECONDS, max(MIN_SEGMENT_SECONDS, numeric))


def sanitize_max_output_tokens(value) -> int:
    try:
        numeric = int(round(float(value)))
    except (TypeError, ValueError, OverflowError):
        return TranscriptionConfig.max_output_tokens
    return min(MAX_OUTPUT_TOKENS, max(MIN_OUTPUT_TOKENS, numeric))


def _section(cls, data: Optional[dict]):
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in (data or {}).items() if k in known})


def build_config(data: dict) -> Config:
    capture = _section(CaptureConfig, data.get("capture"))
    transcription = _section(TranscriptionConfig, data.get("transcription"))
    playback = _section(PlaybackConfig, data.get("playback"))

    capture.flush_interval_seconds = max(0.0, float(capture.flush_interval_seconds))
    transcription.segment_seconds = sanitize_segment_seconds(transcription.segment_seconds)
    transcription.max_output_tokens = sanitize_max_output_tokens(
        transcription.max_output_tokens
    )
    transcription.api_key = os.getenv("GEMINI_API_KEY") or transcription.api_key

    return Config(
        base_dir=data.get("base_dir", ""),
        log_level=str(data.get("log_level", "INFO")).upper(),
        capture=capture,
        transcription=transcription,
        playback=playback,
    )


def load_config(path: str) -> Config:
    if not os.path.exists(path):
        return build_config({})
    with open(path, "r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    return build_config(data)


def save_config(path: str, config: Config) -> None:
    data = {
        "base_dir": config.base_dir,
        "log_level": config.log_level,
        "capture": asdict(config.capture),
        "transcription": asdict(config.transcription),
        "playback": asdict(config.playback),
    }
    with open(path, "w", encoding="utf-8") as handle:
        yaml.safe_dump(data, handle, sort_keys=False)
