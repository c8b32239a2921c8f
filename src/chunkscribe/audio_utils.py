"""Audio helpers: PCM codec, resampling and WAV encoding."""

from __future__ import annotations

import io
import wave
from typing import Iterable

import numpy as np

from .models import AudioPayload, PayloadKind

INT16_NEG_SCALE = 32768.0
INT16_POS_SCALE = 32767.0


def float_to_int16(samples: np.ndarray) -> np.ndarray:
    """Quantize float samples in [-1, 1] to int16.

    Negative values scale by 32768 and non-negative by 32767, so -1.0 maps to
    -32768 and 1.0 to 32767.
    """
    data = np.clip(np.asarray(samples, dtype=np.float64), -1.0, 1.0)
    scaled = np.where(data < 0, data * INT16_NEG_SCALE, data * INT16_POS_SCALE)
    return np.trunc(scaled).astype(np.int16)


def int16_to_float(samples: np.ndarray) -> np.ndarray:
    data = np.asarray(samples, dtype=np.int16).astype(np.float32)
    return np.where(data < 0, data / INT16_NEG_SCALE, data / INT16_POS_SCALE).astype(
        np.float32
    )


def encode_pcm16(samples: np.ndarray) -> bytes:
    return float_to_int16(samples).astype("<i2", copy=False).tobytes()


def decode_pcm16(raw: bytes) -> np.ndarray:
    return int16_to_float(np.frombuffer(raw, dtype="<i2"))


def concat_frames(frames: Iterable[np.ndarray]) -> np.ndarray:
    parts = [np.asarray(frame, dtype=np.float32).reshape(-1) for frame in frames]
    if not parts:
        return np.array([], dtype=np.float32)
    return np.concatenate(parts)


def resample(samples: np.ndarray, source_rate: int, target_rate: int) -> np.ndarray:
    """Linear-interpolation resampler.

    Output index ``i`` reads source position ``i * source_rate / target_rate``.
    Same-rate input is returned unchanged. Works on ``(n,)`` or ``(n, channels)``.
    """
    if source_rate <= 0 or target_rate <= 0:
        raise ValueError("Sample rates must be > 0.")
    if source_rate == target_rate:
        return samples

    data = np.asarray(samples, dtype=np.float32)
    length = data.shape[0]
    ratio = source_rate / float(target_rate)
    out_length = int(np.floor(length / ratio))
    if length == 0 or out_length == 0:
        return np.zeros((0,) + data.shape[1:], dtype=np.float32)

    positions = np.arange(out_length, dtype=np.float64) * ratio
    index0 = np.floor(positions).astype(np.int64)
    index0 = np.minimum(index0, length - 1)
    index1 = np.minimum(index0 + 1, length - 1)
    fraction = positions - index0
    if data.ndim > 1:
        fraction = fraction[:, None]
    out = data[index0] * (1.0 - fraction) + data[index1] * fraction
    return out.astype(np.float32)


def encode_wav(samples: np.ndarray, sample_rate: int, channels: int = 1) -> bytes:
    pcm = float_to_int16(samples)
    if channels > 1 and pcm.ndim == 1:
        pcm = pcm.reshape(-1, channels)

    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as handle:
        handle.setnchannels(channels)
        handle.setsampwidth(2)
        handle.setframerate(sample_rate)
        handle.writeframes(pcm.astype("<i2", copy=False).tobytes())
    return buffer.getvalue()


def wav_payload(samples: np.ndarray, sample_rate: int, channels: int = 1) -> AudioPayload:
    return AudioPayload(
        PayloadKind.WAV, encode_wav(samples, sample_rate, channels), sample_rate, channels
    )


def decode_wav(raw: bytes) -> tuple[np.ndarray, int, int]:
    with wave.open(io.BytesIO(raw), "rb") as handle:
        channels = handle.getnchannels()
        sampwidth = handle.getsampwidth()
        framerate = handle.getframerate()
        frames = handle.getnframes()
        if sampwidth != 2:
            raise ValueError("Only 16-bit PCM WAV is supported.")
        data = handle.readframes(frames)

    samples = decode_pcm16(data)
    if channels > 1:
        samples = samples.reshape(-1, channels)
    return samples, framerate, channels


def decode_payload(payload: AudioPayload) -> np.ndarray:
    """Decode any tagged payload to float32 samples, ``(n,)`` or ``(n, channels)``."""
    if payload.kind is PayloadKind.PCM16:
        samples = decode_pcm16(bytes(payload.data))
    elif payload.kind is PayloadKind.PCM_F32:
        samples = np.frombuffer(bytes(payload.data), dtype="<f4").astype(np.float32)
    elif payload.kind is PayloadKind.WAV:
        samples, _rate, _channels = decode_wav(bytes(payload.data))
        return samples
    else:  # pragma: no cover - enum is closed
        raise ValueError(f"Unsupported payload kind: {payload.kind}")

    if payload.channels > 1:
        samples = samples.reshape(-1, payload.channels)
    return samples
