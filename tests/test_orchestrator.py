import asyncio

import pytest

from fakes import FakeBackend, FakeClock, make_chunk

from chunkscribe.orchestrator import (
    NothingToResumeError,
    ResumeRequiredError,
    SegmentFailedError,
    TranscriptionInProgressError,
    TranscriptionOrchestrator,
    TranscriptionStopped,
)
from chunkscribe.recovery import aggregate_recording
from chunkscribe.storage import ChunkStore, MemoryStore, StorageError, TranscriptionStateStore

RECORDING_ID = "recording-1700000000000"


async def _setup(backend, clock=None, min_interval=0.0):
    chunks = ChunkStore(MemoryStore())
    states = TranscriptionStateStore(MemoryStore())
    parts = [make_chunk(RECORDING_ID, n, count) for n, count in enumerate([60000, 60000, 65000])]
    for chunk in parts:
        await chunks.put_chunk(chunk)
    await chunks.put_recording(aggregate_recording(RECORDING_ID, parts))
    clock = clock or FakeClock()
    orchestrator = TranscriptionOrchestrator(
        chunks,
        states,
        backend,
        segment_seconds=60,
        target_sample_rate=None,
        min_interval_seconds=min_interval,
        clock=clock,
        sleep=clock.sleep,
        wall_clock=clock,
    )
    return orchestrator, chunks, states


def test_transcribes_all_segments_in_order():
    backend = FakeBackend()
    progress = []

    async def scenario():
        orchestrator, chunks, states = await _setup(backend)
        text = await orchestrator.transcribe(
            RECORDING_ID, lambda message, done, total: progress.append((done, total))
        )
        return text, await chunks.get_recording(RECORDING_ID), await states.get(RECORDING_ID)

    text, recording, state = asyncio.run(scenario())
    assert backend.calls == [0, 1, 2, 3]
    assert text == "segment 1 segment 2 segment 3 segment 4"
    assert recording.transcription == text
    assert state is None
    assert progress[0] == (0, 4)
    assert progress[-1] == (4, 4)


def test_failure_halts_and_resume_finishes_remaining_segments():
    backend = FakeBackend(fail_on={2})

    async def scenario():
        orchestrator, chunks, states = await _setup(backend)
        with pytest.raises(SegmentFailedError) as info:
            await orchestrator.transcribe(RECORDING_ID)
        saved = await states.get(RECORDING_ID)
        incomplete = await orchestrator.has_incomplete_transcription(RECORDING_ID)
        with pytest.raises(ResumeRequiredError):
            await orchestrator.transcribe(RECORDING_ID)

        backend.fail_on.clear()
        backend.calls.clear()
        text = await orchestrator.resume(RECORDING_ID)
        done = await orchestrator.has_incomplete_transcription(RECORDING_ID)
        return info.value, saved, incomplete, text, done

    error, saved, incomplete, text, done = asyncio.run(scenario())
    assert error.index == 2
    assert error.total == 4
    assert saved.last_completed_segment == 1
    assert saved.completed == ["segment 1", "segment 2"]
    assert saved.failed_segment == 2
    assert "boom at 2" in saved.error
    assert incomplete is True
    # Last completed segment 1 of 4 leaves exactly two calls.
    assert backend.calls == [2, 3]
    assert text == "segment 1 segment 2 segment 3 segment 4"
    assert done is False


def test_resume_without_saved_state_is_rejected():
    async def scenario():
        orchestrator, _chunks, _states = await _setup(FakeBackend())
        with pytest.raises(NothingToResumeError):
            await orchestrator.resume(RECORDING_ID)

    asyncio.run(scenario())


def test_clear_state_allows_fresh_start():
    backend = FakeBackend(fail_on={0})

    async def scenario():
        orchestrator, _chunks, _states = await _setup(backend)
        with pytest.raises(SegmentFailedError):
            await orchestrator.transcribe(RECORDING_ID)
        await orchestrator.clear_transcription_state(RECORDING_ID)
        backend.fail_on.clear()
        return await orchestrator.transcribe(RECORDING_ID)

    assert asyncio.run(scenario()).startswith("segment 1")


def test_second_transcribe_while_running_is_rejected():
    class SlowBackend(FakeBackend):
        async def transcribe(self, audio, instruction):
            await self.gate.wait()
            return await super().transcribe(audio, instruction)

    async def scenario():
        backend = SlowBackend()
        backend.gate = asyncio.Event()
        orchestrator, _chunks, _states = await _setup(backend)
        first = asyncio.create_task(orchestrator.transcribe(RECORDING_ID))
        await asyncio.sleep(0)
        with pytest.raises(TranscriptionInProgressError):
            await orchestrator.transcribe(RECORDING_ID)
        with pytest.raises(TranscriptionInProgressError):
            await orchestrator.resume(RECORDING_ID)
        backend.gate.set()
        return await first

    assert asyncio.run(scenario()).endswith("segment 4")


def test_truncated_segment_is_accepted_and_recorded():
    backend = FakeBackend(truncated={1})

    async def scenario():
        orchestrator, chunks, _states = await _setup(backend)
        text = await orchestrator.transcribe(RECORDING_ID)
        return text, await chunks.get_recording(RECORDING_ID)

    text, recording = asyncio.run(scenario())
    assert backend.calls == [0, 1, 2, 3]
    assert "segment 2" in text
    assert recording.truncated_segments == [1]


def test_repetitive_segment_text_is_collapsed():
    backend = FakeBackend(text=lambda index: " ".join(["no"] * 15) if index == 3 else "ok")

    async def scenario():
        orchestrator, _chunks, _states = await _setup(backend)
        return await orchestrator.transcribe(RECORDING_ID)

    assert asyncio.run(scenario()) == "ok ok ok no"


def test_call_starts_respect_minimum_interval():
    clock = FakeClock()
    backend = FakeBackend(clock=clock, call_seconds=1.0)

    async def scenario():
        orchestrator, _chunks, _states = await _setup(backend, clock=clock, min_interval=4.0)
        await orchestrator.transcribe(RECORDING_ID)

    asyncio.run(scenario())
    starts = backend.call_starts
    gaps = [later - earlier for earlier, later in zip(starts, starts[1:])]
    assert all(gap >= 4.0 for gap in gaps)
    # A slow call uses up part of its own cool-down.
    assert clock.sleeps == [3.0, 3.0, 3.0]


def test_stop_request_halts_after_current_segment():
    async def scenario():
        backend = FakeBackend()
        orchestrator, _chunks, states = await _setup(backend)

        def text(index):
            if index == 1:
                orchestrator.request_stop(RECORDING_ID)
            return f"segment {index + 1}"

        backend.text = text
        with pytest.raises(TranscriptionStopped):
            await orchestrator.transcribe(RECORDING_ID)
        return backend.calls, await states.get(RECORDING_ID)

    calls, state = asyncio.run(scenario())
    assert calls == [0, 1]
    assert state.last_completed_segment == 1


def test_unreadable_chunk_is_reported_as_the_failing_segment():
    backend = FakeBackend()

    async def scenario():
        orchestrator, chunks, states = await _setup(backend)
        load_payload = chunks.load_payload

        async def unreadable_last_chunk(chunk):
            if chunk.chunk_number == 2:
                raise StorageError("unreadable chunk")
            return await load_payload(chunk)

        chunks.load_payload = unreadable_last_chunk
        with pytest.raises(SegmentFailedError) as info:
            await orchestrator.transcribe(RECORDING_ID)
        saved = await states.get(RECORDING_ID)

        chunks.load_payload = load_payload
        text = await orchestrator.resume(RECORDING_ID)
        return info.value, saved, text

    error, saved, text = asyncio.run(scenario())
    assert error.index == 2
    assert saved.failed_segment == 2
    assert saved.last_completed_segment == 1
    assert "unreadable chunk" in saved.error
    assert backend.calls == [0, 1, 2, 3]
    assert text == "segment 1 segment 2 segment 3 segment 4"


def test_unexpected_backend_error_is_recorded_against_its_segment():
    backend = FakeBackend()

    async def broken_transcribe(audio, instruction):
        raise ValueError("could not decode audio")

    async def scenario():
        orchestrator, _chunks, states = await _setup(backend)
        backend.transcribe = broken_transcribe
        with pytest.raises(SegmentFailedError) as info:
            await orchestrator.transcribe(RECORDING_ID)
        return info.value, await states.get(RECORDING_ID)

    error, saved = asyncio.run(scenario())
    assert error.index == 0
    assert isinstance(error.cause, ValueError)
    assert saved.failed_segment == 0
    assert saved.last_completed_segment == -1
    assert "could not decode audio" in saved.error
