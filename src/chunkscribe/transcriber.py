"""Transcription backends: Gemini over HTTP and local Faster-Whisper."""

from __future__ import annotations

import asyncio
import base64
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import httpx

from .audio_utils import decode_payload, decode_wav, resample
from .config import TranscriptionConfig
from .models import AudioPayload, PayloadKind

logger = logging.getLogger("chunkscribe")

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com"

BOILERPLATE_PREFIXES = (
    "Transcription:",
    "Here is the transcription:",
    "The transcription is:",
    "Audio transcription:",
)
TIMESTAMP_LINE = re.compile(r"^\d{2}:\d{2}(:\d{2})?$")


class TranscriptionServiceError(RuntimeError):
    pass


class AuthenticationError(TranscriptionServiceError):
    pass


class MissingCredentialsError(AuthenticationError):
    pass


class RateLimitError(TranscriptionServiceError):
    pass


class PayloadTooLargeError(TranscriptionServiceError):
    pass


@dataclass
class TranscriptionResult:
    text: str
    truncated: bool = False


def segment_instruction(segment_number: int, segment_seconds: float) -> str:
    return (
        f"Transcribe the audio exactly as spoken. This is segment {segment_number} "
        f"from a longer recording that has been split into {segment_seconds:g}-second "
        "chunks. Transcribe ONLY what is actually said in this audio segment - do not "
        "add commentary, explanations, or make assumptions about missing context. If "
        "the segment starts mid-word or mid-sentence, transcribe from exactly where it "
        "begins. Return only the raw transcription text."
    )


def strip_code_fences(text: str) -> str:
    cleaned = (text or "").strip()
    cleaned = re.sub(r"^```[a-zA-Z]*\n?", "", cleaned)
    cleaned = re.sub(r"\n?```$", "", cleaned)
    return cleaned.strip()


def collapse_repetitions(text: str, threshold: int = 10) -> str:
    """Collapse a token or phrase of up to four tokens repeated ``threshold``+ times in a row."""
    if threshold < 2:
        return text
    min_repeats = threshold - 1
    phrase = re.compile(r"(?<!\S)(\S+(?:\s+\S+){0,3}?)(?:\s+\1){%d,}(?=\s|$)" % min_repeats)
    result = text
    previous = None
    while previous != result:
        previous = result
        result = phrase.sub(r"\1", result)
    return re.sub(r"\s+", " ", result).strip()


def clean_transcription(text: str, repetition_threshold: int = 10) -> str:
    cleaned = (text or "").strip()
    for prefix in BOILERPLATE_PREFIXES:
        if cleaned.lower().startswith(prefix.lower()):
            cleaned = cleaned[len(prefix) :].strip()
    cleaned = strip_code_fences(cleaned)

    lines = [line.strip() for line in cleaned.split("\n") if line.strip()]
    if lines and all(TIMESTAMP_LINE.match(line) for line in lines):
        return ""

    return collapse_repetitions(cleaned, repetition_threshold)


class TranscriptionBackend(ABC):
    """Black-box speech-to-text RPC: audio + instruction in, text out."""

    name = "base"
    on_credentials_invalid: Optional[Callable[[], None]] = None

    @abstractmethod
    async def transcribe(self, audio: AudioPayload, instruction: str) -> TranscriptionResult:
        """Transcribe one segment. Raises TranscriptionServiceError on failure."""

    async def process_text(self, prompt: str) -> str:
        raise TranscriptionServiceError(f"{self.name} backend cannot post-process text.")

    def invalidate_credentials(self) -> None:
        return None

    async def aclose(self) -> None:
        return None


class GeminiBackend(TranscriptionBackend):
    name = "gemini"

    def __init__(
        self,
        config: TranscriptionConfig,
        *,
        client: Optional[httpx.AsyncClient] = None,
        on_credentials_invalid: Optional[Callable[[], None]] = None,
    ) -> None:
        self.config = config
        self.api_key = config.api_key
        self.model = config.gemini_model
        self.on_credentials_invalid = on_credentials_invalid
        self._client = client or httpx.AsyncClient(
            base_url=GEMINI_BASE_URL, timeout=config.timeout_seconds
        )

    def _headers(self) -> Dict[str, str]:
        if not self.api_key:
            raise MissingCredentialsError("Gemini API key required for transcription")
        return {"x-goog-api-key": self.api_key, "Content-Type": "application/json"}

    def invalidate_credentials(self) -> None:
        self.api_key = None
        self.config.api_key = None
        if self.on_credentials_invalid is not None:
            self.on_credentials_invalid()

    async def _generate(self, parts: list, generation_config: dict) -> dict:
        headers = self._headers()
        try:
            resp = await self._client.post(
                f"/v1beta/models/{self.model}:generateContent",
                headers=headers,
                json={"contents": [{"parts": parts}], "generationConfig": generation_config},
            )
        except httpx.HTTPError as exc:
            raise TranscriptionServiceError(f"Request failed: {exc}") from exc

        if resp.status_code in (401, 403):
            logger.error("Gemini rejected the API key (%s); clearing it", resp.status_code)
            self.invalidate_credentials()
            raise AuthenticationError(f"Unauthorized: {_error_message(resp)}")
        if resp.status_code == 429:
            raise RateLimitError(f"Rate limited: {_error_message(resp)}")
        if resp.status_code >= 400:
            raise TranscriptionServiceError(
                f"API request failed: {resp.status_code} {_error_message(resp)}"
            )
        try:
            return resp.json()
        except ValueError as exc:
            raise TranscriptionServiceError(f"Invalid response: {exc}") from exc

    async def transcribe(self, audio: AudioPayload, instruction: str) -> TranscriptionResult:
        if len(audio.data) > self.config.max_request_bytes:
            raise PayloadTooLargeError(
                f"Segment is {len(audio.data)} bytes; limit is {self.config.max_request_bytes}"
            )
        data = await self._generate(
            [
                {"text": instruction},
                {
                    "inline_data": {
                        "mime_type": audio.mime_type,
                        "data": base64.b64encode(bytes(audio.data)).decode("ascii"),
                    }
                },
            ],
            {
                "temperature": 0.1,
                "topK": 1,
                "topP": 0.95,
                "maxOutputTokens": self.config.max_output_tokens,
            },
        )
        candidate = (data.get("candidates") or [{}])[0]
        truncated = candidate.get("finishReason") == "MAX_TOKENS"
        return TranscriptionResult(text=_candidate_text(candidate), truncated=truncated)

    async def process_text(self, prompt: str) -> str:
        data = await self._generate(
            [{"text": prompt}],
            {"temperature": 0.3, "topK": 40, "topP": 0.95, "maxOutputTokens": 8192},
        )
        text = _candidate_text((data.get("candidates") or [{}])[0])
        if not text.strip():
            raise TranscriptionServiceError("No processed output received")
        return strip_code_fences(text)

    async def aclose(self) -> None:
        await self._client.aclose()


def _candidate_text(candidate: dict) -> str:
    parts = (candidate.get("content") or {}).get("parts") or []
    return "".join(part.get("text", "") for part in parts if isinstance(part, dict))


def _error_message(resp: httpx.Response) -> str:
    try:
        return resp.json().get("error", {}).get("message") or resp.reason_phrase
    except ValueError:
        return resp.reason_phrase


class WhisperBackend(TranscriptionBackend):
    """Local Faster-Whisper model; never truncates and has no credentials."""

    name = "whisper"
    SAMPLE_RATE = 16000

    def __init__(
        self,
        config: TranscriptionConfig,
        device: str | None = None,
        compute_type: str | None = None,
    ) -> None:
        self.config = config
        self.device = device
        self.compute_type = compute_type
        self._model = None

    def _load_model(self):
        if self._model is None:
            try:
                from faster_whisper import WhisperModel
            except Exception as exc:  # pragma: no cover - optional dependency
                raise RuntimeError("faster-whisper is required for transcription.") from exc

            kwargs = {}
            if self.device:
                kwargs["device"] = self.device
            if self.compute_type:
                kwargs["compute_type"] = self.compute_type
            self._model = WhisperModel(self.config.whisper_model, **kwargs)
        return self._model

    def _transcribe_sync(self, audio: AudioPayload) -> str:
        if audio.kind is PayloadKind.WAV:
            samples, rate, _channels = decode_wav(bytes(audio.data))
        else:
            samples, rate = decode_payload(audio), audio.sample_rate
        if samples.ndim > 1:
            samples = samples.mean(axis=1)
        samples = resample(samples, rate, self.SAMPLE_RATE)
        model = self._load_model()
        segments, _info = model.transcribe(samples, language=self.config.language)
        return " ".join(seg.text.strip() for seg in segments if seg.text.strip())

    async def transcribe(self, audio: AudioPayload, instruction: str) -> TranscriptionResult:
        try:
            text = await asyncio.to_thread(self._transcribe_sync, audio)
        except Exception as exc:
            raise TranscriptionServiceError(str(exc)) from exc
        return TranscriptionResult(text=text)


BACKENDS = {
    GeminiBackend.name: GeminiBackend,
    WhisperBackend.name: WhisperBackend,
}


def create_backend(
    config: TranscriptionConfig,
    on_credentials_invalid: Optional[Callable[[], None]] = None,
    **kwargs,
) -> TranscriptionBackend:
    try:
        factory = BACKENDS[config.backend]
    except KeyError as exc:
        raise ValueError(f"Unknown transcription backend: {config.backend}") from exc
    backend = factory(config, **kwargs)
    backend.on_credentials_invalid = on_credentials_invalid
    return backend
