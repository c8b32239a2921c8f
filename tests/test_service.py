import asyncio

import pytest

from fakes import FakeBackend, FakePlayer, FakeSource, make_chunk

from chunkscribe.audio_utils import decode_wav
from chunkscribe.chunk_writer import CaptureError
from chunkscribe.config import Config
from chunkscribe.orchestrator import TranscriptionError
from chunkscribe.service import ChunkscribeService
from chunkscribe.storage import ChunkStore, MemoryStore, RecordingNotFoundError


def _config():
    config = Config()
    config.capture.flush_interval_seconds = 0
    config.transcription.segment_seconds = 60
    config.transcription.min_request_interval_seconds = 0
    return config


def _service(store=None, backend=None, source=None):
    return ChunkscribeService(
        _config(),
        store=store or MemoryStore(),
        state_store=MemoryStore(),
        source=source or FakeSource(sample_rate=48000),
        backend=backend or FakeBackend(),
        player_factory=FakePlayer,
    )


def test_capture_transcribe_export_and_delete():
    source = FakeSource(sample_rate=48000)
    backend = FakeBackend()
    service = _service(source=source, backend=backend)

    async def scenario():
        results = {}
        recording_id = await service.start_capture()
        listed = await service.list_recordings()
        results["placeholder"] = listed[0]

        source.feed(60)
        await service.capture.writer.flush()
        listed = await service.list_recordings()
        results["in_progress"] = listed[0]
        source.feed(60)
        await service.capture.writer.flush()
        source.feed(65)
        results["recording"] = await service.stop_capture()

        results["chunks"] = await service.get_recording_chunks(recording_id)
        results["text"] = await service.transcribe(recording_id)
        results["stored"] = await service.get_recording(recording_id)
        results["wav"] = await service.export_as_wav(recording_id, 16000)
        results["removed"] = await service.delete_recording(recording_id)
        results["after"] = await service.list_recordings()
        return results

    results = asyncio.run(scenario())
    assert results["placeholder"].in_progress is True
    assert results["placeholder"].chunks_count == 0
    assert results["in_progress"].in_progress is True
    assert results["in_progress"].chunks_count == 1

    recording = results["recording"]
    assert recording.duration_seconds == 185
    assert recording.chunks_count == 3
    assert [chunk.chunk_number for chunk in results["chunks"]] == [0, 1, 2]

    assert backend.calls == [0, 1, 2, 3]
    assert results["text"] == "segment 1 segment 2 segment 3 segment 4"
    assert results["stored"].transcription == results["text"]
    assert [payload.sample_rate for payload in backend.payloads] == [16000] * 4

    samples, rate, channels = decode_wav(results["wav"])
    assert rate == 16000
    assert channels == 1
    assert samples.shape[0] == 185 * 16000

    assert results["removed"] == 3
    assert results["after"] == []


def test_open_recovers_orphaned_chunks_once():
    store = MemoryStore()

    async def scenario():
        chunks = ChunkStore(store)
        for n in range(2):
            await chunks.put_chunk(make_chunk("recording-1700000000000", n, 1000))
        first = await _service(store=store).open()
        second_service = _service(store=store)
        second = await second_service.open()
        again = await second_service.open()
        return first, second, again, await second_service.list_recordings()

    first, second, again, recordings = asyncio.run(scenario())
    assert len(first.recovered) == 1
    assert second.recovered == []
    assert again is second
    assert recordings[0].recovered is True


def test_post_process_stores_variant():
    backend = FakeBackend()
    service = _service(backend=backend)

    async def scenario():
        chunks = service.chunks
        await chunks.put_chunk(make_chunk("recording-5", 0, 1000))
        await service.open()
        with pytest.raises(TranscriptionError):
            await service.post_process("recording-5", "summary")
        await service.chunks.update_transcription("recording-5", "we agreed on friday")
        text = await service.post_process(
            "recording-5", "custom", "Summarize:\n{{TRANSCRIPTION}}"
        )
        return text, await service.get_recording("recording-5")

    text, recording = asyncio.run(scenario())
    assert backend.prompts == ["Summarize:\nwe agreed on friday"]
    assert text == "processed: we agreed on friday"
    assert recording.processed_transcriptions["custom"]["text"] == text


def test_playback_handle_is_swapped_not_shared():
    service = _service()

    async def scenario():
        for n in range(2):
            await service.chunks.put_chunk(make_chunk("recording-7", n, 1000))
            await service.chunks.put_chunk(make_chunk("recording-8", n, 1000))
        first = await service.open_playback("recording-7")
        second = await service.open_playback("recording-8")
        with pytest.raises(RecordingNotFoundError):
            await service.open_playback("recording-missing")
        return first, second

    first, second = asyncio.run(scenario())
    assert service.playback is second
    assert first is not second
    assert second.chunks[0].parent_recording_id == "recording-8"


def test_delete_rules_and_storage_info():
    service = _service()

    async def scenario():
        for n in range(3):
            await service.chunks.put_chunk(make_chunk("recording-3", n, 1000))
        info = await service.storage_info()
        with pytest.raises(RecordingNotFoundError):
            await service.delete_recording("recording-nope")
        await service.start_capture()
        with pytest.raises(CaptureError):
            await service.delete_all()
        await service.stop_capture()
        await service.delete_all()
        return info, await service.storage_info()

    info, after = asyncio.run(scenario())
    assert info["count"] == 1
    assert info["chunks"] == 3
    assert after["count"] == 0
    assert after["chunks"] == 0


class _FlakySource(FakeSource):
    def __init__(self):
        super().__init__(sample_rate=48000)
        self.failures = 1

    def start(self, on_frame):
        if self.failures:
            self.failures -= 1
            raise RuntimeError("PortAudio error")
        super().start(on_frame)


def test_failed_capture_start_does_not_leave_a_phantom_recording():
    service = _service(source=_FlakySource())

    async def scenario():
        with pytest.raises(RuntimeError):
            await service.start_capture()
        state = (service.capture, await service.list_recordings())
        recording_id = await service.start_capture()
        await service.stop_capture()
        return state, recording_id

    (capture, listed), recording_id = asyncio.run(scenario())
    assert capture is None
    assert listed == []
    assert recording_id.startswith("recording-")
