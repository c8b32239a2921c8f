import asyncio
import base64
import json

import httpx
import numpy as np
import pytest

from chunkscribe.audio_utils import wav_payload
from chunkscribe.config import TranscriptionConfig
from chunkscribe.transcriber import (
    AuthenticationError,
    GeminiBackend,
    MissingCredentialsError,
    PayloadTooLargeError,
    RateLimitError,
    TranscriptionServiceError,
    WhisperBackend,
    clean_transcription,
    collapse_repetitions,
    create_backend,
    segment_instruction,
)


def test_repeated_token_collapses_to_one():
    assert collapse_repetitions(" ".join(["no"] * 15)) == "no"
    assert collapse_repetitions("so " + " ".join(["no"] * 15) + " way") == "so no way"


def test_repeated_phrase_collapses_to_one():
    text = "hello " + "thank you " * 12 + "bye"
    assert collapse_repetitions(text) == "hello thank you bye"


def test_collapse_starts_on_a_token_boundary():
    assert collapse_repetitions("xno " + "no " * 14) == "xno no"
    assert collapse_repetitions("ab " + "b " * 12 + "end") == "ab b end"


def test_short_runs_are_kept():
    text = " ".join(["no"] * 9)
    assert collapse_repetitions(text) == text


def test_clean_transcription_strips_boilerplate():
    assert clean_transcription("Transcription: hello there") == "hello there"
    assert clean_transcription("```text\nhello there\n```") == "hello there"
    assert clean_transcription("00:00\n00:01:02\n") == ""
    assert clean_transcription("") == ""


def test_segment_instruction_names_the_segment():
    text = segment_instruction(3, 60.0)
    assert "segment 3" in text
    assert "60-second" in text


def _gemini(handler, **overrides):
    config = TranscriptionConfig(api_key="secret", **overrides)
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler),
        base_url="https://generativelanguage.googleapis.com",
    )
    return config, client


def _reply(text, finish="STOP"):
    return httpx.Response(
        200,
        json={
            "candidates": [
                {"content": {"parts": [{"text": text}]}, "finishReason": finish}
            ]
        },
    )


def test_gemini_sends_audio_and_reads_text():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["key"] = request.headers.get("x-goog-api-key")
        seen["body"] = json.loads(request.content)
        return _reply("hello world")

    config, client = _gemini(handler)
    payload = wav_payload(np.zeros(160, dtype=np.float32), 16000)

    async def scenario():
        backend = GeminiBackend(config, client=client)
        try:
            return await backend.transcribe(payload, "Transcribe this.")
        finally:
            await backend.aclose()

    result = asyncio.run(scenario())
    assert result.text == "hello world"
    assert result.truncated is False
    assert seen["path"] == "/v1beta/models/gemini-2.5-flash:generateContent"
    assert seen["key"] == "secret"
    parts = seen["body"]["contents"][0]["parts"]
    assert parts[0]["text"] == "Transcribe this."
    assert parts[1]["inline_data"]["mime_type"] == "audio/wav"
    assert base64.b64decode(parts[1]["inline_data"]["data"]) == payload.data
    assert seen["body"]["generationConfig"]["maxOutputTokens"] == 16384


def test_gemini_flags_truncated_output():
    config, client = _gemini(lambda request: _reply("partial", finish="MAX_TOKENS"))
    payload = wav_payload(np.zeros(16, dtype=np.float32), 16000)

    result = asyncio.run(GeminiBackend(config, client=client).transcribe(payload, "x"))
    assert result.truncated is True
    assert result.text == "partial"


def test_gemini_auth_failure_clears_key():
    invalidated = []
    config, client = _gemini(
        lambda request: httpx.Response(401, json={"error": {"message": "bad key"}})
    )
    backend = GeminiBackend(
        config, client=client, on_credentials_invalid=lambda: invalidated.append(True)
    )
    payload = wav_payload(np.zeros(16, dtype=np.float32), 16000)

    with pytest.raises(AuthenticationError):
        asyncio.run(backend.transcribe(payload, "x"))
    assert backend.api_key is None
    assert config.api_key is None
    assert invalidated == [True]

    with pytest.raises(MissingCredentialsError):
        asyncio.run(backend.transcribe(payload, "x"))


def test_gemini_rate_limit_and_size_limit():
    config, client = _gemini(lambda request: httpx.Response(429, json={}))
    payload = wav_payload(np.zeros(16, dtype=np.float32), 16000)
    with pytest.raises(RateLimitError):
        asyncio.run(GeminiBackend(config, client=client).transcribe(payload, "x"))

    config, client = _gemini(lambda request: _reply("never"), max_request_bytes=10)
    with pytest.raises(PayloadTooLargeError):
        asyncio.run(GeminiBackend(config, client=client).transcribe(payload, "x"))


def test_gemini_process_text_strips_fences():
    config, client = _gemini(lambda request: _reply("```markdown\n- point\n```"))
    text = asyncio.run(GeminiBackend(config, client=client).process_text("Summarize"))
    assert text == "- point"


def test_create_backend_by_name():
    assert isinstance(create_backend(TranscriptionConfig(backend="whisper")), WhisperBackend)
    with pytest.raises(ValueError):
        create_backend(TranscriptionConfig(backend="nope"))


def test_whisper_errors_surface_as_service_errors(monkeypatch):
    backend = WhisperBackend(TranscriptionConfig(backend="whisper"))

    def bad_audio(audio):
        raise ValueError("not a WAV file")

    monkeypatch.setattr(backend, "_transcribe_sync", bad_audio)
    payload = wav_payload(np.zeros(16, dtype=np.float32), 16000)
    with pytest.raises(TranscriptionServiceError, match="not a WAV file"):
        asyncio.run(backend.transcribe(payload, "segment 1"))
