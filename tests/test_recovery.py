import asyncio

from fakes import make_chunk

from chunkscribe.models import Chunk
from chunkscribe.recovery import RecoveryEngine, aggregate_recording, find_chunk_gaps
from chunkscribe.storage import ChunkStore, MemoryStore


def _store_with_orphans():
    chunks = ChunkStore(MemoryStore())

    async def fill():
        for n, count in enumerate([60000, 60000, 65500]):
            await chunks.put_chunk(make_chunk("recording-1700000000000", n, count))
        return chunks

    return fill


def test_recovery_rebuilds_orphaned_recording():
    async def scenario():
        chunks = await _store_with_orphans()()
        report = await RecoveryEngine(chunks).run()
        return report, await chunks.list_recordings()

    report, recordings = asyncio.run(scenario())
    assert len(report.recovered) == 1
    recording = recordings[0]
    assert recording.recording_id == "recording-1700000000000"
    assert recording.recovered is True
    assert recording.chunks_count == 3
    assert recording.total_samples == 185500
    assert recording.duration_seconds == 185
    assert recording.file_size == 185500 * 2
    assert recording.started_at == 1700000000.0


def test_recovery_is_idempotent():
    async def scenario():
        chunks = await _store_with_orphans()()
        engine = RecoveryEngine(chunks)
        first = await engine.run()
        second = await engine.run()
        return first, second, await chunks.list_recordings()

    first, second, recordings = asyncio.run(scenario())
    assert len(first.recovered) == 1
    assert second.recovered == []
    assert len(recordings) == 1


def test_one_bad_group_does_not_block_others():
    broken = Chunk("recording-2", 0, 100, 0, 1, 1.0, size=200)
    good = make_chunk("recording-3", 0, 1000)

    async def scenario():
        chunks = ChunkStore(MemoryStore())
        report = await RecoveryEngine(chunks).recover([], [broken, good])
        return report, await chunks.get_recording("recording-3")

    report, recovered = asyncio.run(scenario())
    assert "recording-2" in report.failed
    assert [rec.recording_id for rec in report.recovered] == ["recording-3"]
    assert recovered.recovered is True


def test_active_capture_is_skipped_or_shown_as_placeholder():
    async def scenario():
        chunks = ChunkStore(MemoryStore())
        engine = RecoveryEngine(chunks, clock=lambda: 42.0)
        active = make_chunk("recording-10", 0, 1000)
        with_chunks = await engine.recover([], [active], active_recording_id="recording-10")
        chunkless = await engine.recover([], [], active_recording_id="recording-11")
        return with_chunks, chunkless, await chunks.list_recordings()

    with_chunks, chunkless, recordings = asyncio.run(scenario())
    assert with_chunks.recovered == []
    assert with_chunks.placeholder is None
    assert chunkless.placeholder.in_progress is True
    assert chunkless.placeholder.chunks_count == 0
    assert recordings == []


def test_size_falls_back_to_sample_width_and_gaps_mark_corruption():
    chunks = [
        make_chunk("recording-4", 0, 1000, payload=False),
        make_chunk("recording-4", 2, 500, payload=False),
    ]
    assert find_chunk_gaps(chunks) == [1]

    recording = aggregate_recording("recording-4", chunks)
    assert recording.file_size == 3000
    assert recording.corrupted is True
    assert recording.duration_seconds == 1


def test_size_fallback_counts_every_channel():
    stereo = Chunk("recording-6", 0, 1000, 1000, 2, 1.0, size=None)
    store = MemoryStore()

    async def scenario():
        await store.put(stereo.key, stereo.to_record())
        return await ChunkStore(store).storage_info()

    info = asyncio.run(scenario())
    recording = aggregate_recording("recording-6", [stereo])
    assert recording.file_size == 1000 * 2 * 2
    assert info["total_bytes"] == recording.file_size
