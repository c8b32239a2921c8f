"""Durable key/value storage for recordings, chunks and transcription state."""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
import re
import time
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .models import (
    Chunk,
    RecordSource,
    Recording,
    TranscriptionState,
)

logger = logging.getLogger("chunkscribe")

RECORDING_PREFIX = "recording-"
STATE_PREFIX = "transcription_state_"
STATE_SOURCE = "transcription-state"


class StorageError(RuntimeError):
    pass


class RecordingNotFoundError(KeyError):
    def __init__(self, recording_id: str) -> None:
        super().__init__(recording_id)
        self.recording_id = recording_id

    def __str__(self) -> str:
        return f"Recording {self.recording_id} not found"


def build_recording_id(started_at: float) -> str:
    return f"{RECORDING_PREFIX}{int(started_at * 1000)}"


def export_basename(recording: Recording) -> str:
    started = datetime.fromtimestamp(recording.started_at)
    return f"{started.strftime('%Y-%m-%d--%H-%M-%S')}--{recording.recording_id}"


def ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)


def ensure_structure(base_dir: str) -> dict:
    root = base_dir or os.getcwd()
    paths = {
        "root": root,
        "records": os.path.join(root, "Records"),
        "state": os.path.join(root, "State"),
        "exports": os.path.join(root, "Exports"),
        "logs": os.path.join(root, "Logs"),
    }
    for path in paths.values():
        ensure_dir(path)
    return paths


class KeyValueStore(ABC):
    """Key/value records with a secondary lookup by ``source`` tag.

    A record may carry binary audio under ``"data"``. ``get`` returns it;
    ``get_all_by_source`` returns metadata only.
    """

    @abstractmethod
    async def put(self, key: str, record: Dict[str, Any]) -> None: ...

    @abstractmethod
    async def get(self, key: str) -> Optional[Dict[str, Any]]: ...

    @abstractmethod
    async def get_all_by_source(self, source: str) -> List[Dict[str, Any]]: ...

    @abstractmethod
    async def delete(self, key: str) -> None: ...

    @abstractmethod
    async def clear(self) -> None: ...


def _by_timestamp(records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return sorted(records, key=lambda item: (item.get("timestamp") or 0.0, item["key"]))


class MemoryStore(KeyValueStore):
    def __init__(self) -> None:
        self._records: Dict[str, Dict[str, Any]] = {}

    async def put(self, key: str, record: Dict[str, Any]) -> None:
        entry = copy.deepcopy(record)
        entry["key"] = key
        entry.setdefault("timestamp", time.time())
        self._records[key] = entry

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        record = self._records.get(key)
        return copy.deepcopy(record) if record is not None else None

    async def get_all_by_source(self, source: str) -> List[Dict[str, Any]]:
        matches = []
        for record in self._records.values():
            if record.get("source") != source:
                continue
            meta = {k: copy.deepcopy(v) for k, v in record.items() if k != "data"}
            matches.append(meta)
        return _by_timestamp(matches)

    async def delete(self, key: str) -> None:
        self._records.pop(key, None)

    async def clear(self) -> None:
        self._records.clear()


class FileStore(KeyValueStore):
    """One JSON document per key, binary payload in a ``.bin`` sidecar."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _paths(self, key: str) -> tuple[Path, Path]:
        safe = re.sub(r"[^\w\-\.]+", "_", key)
        return self.root / f"{safe}.json", self.root / f"{safe}.bin"

    def _write_atomic(self, path: Path, data: bytes) -> None:
        temp_path = path.with_suffix(path.suffix + ".tmp")
        temp_path.write_bytes(data)
        os.replace(temp_path, path)

    def _put_sync(self, key: str, record: Dict[str, Any]) -> None:
        meta_path, data_path = self._paths(key)
        entry = dict(record)
        entry["key"] = key
        entry.setdefault("timestamp", time.time())
        payload = entry.pop("data", None)
        if payload is not None:
            self._write_atomic(data_path, bytes(payload))
            entry["has_data"] = True
        elif data_path.exists():
            data_path.unlink()
        encoded = json.dumps(entry, ensure_ascii=False).encode("utf-8")
        self._write_atomic(meta_path, encoded)

    def _read_meta(self, meta_path: Path) -> Optional[Dict[str, Any]]:
        try:
            return json.loads(meta_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None

    def _get_sync(self, key: str) -> Optional[Dict[str, Any]]:
        meta_path, data_path = self._paths(key)
        record = self._read_meta(meta_path)
        if record is None:
            return None
        if record.pop("has_data", False):
            record["data"] = data_path.read_bytes()
        return record

    def _scan_sync(self, source: str) -> List[Dict[str, Any]]:
        matches = []
        for meta_path in self.root.glob("*.json"):
            record = self._read_meta(meta_path)
            if record is None or record.get("source") != source:
                continue
            record.pop("has_data", None)
            matches.append(record)
        return _by_timestamp(matches)

    def _delete_sync(self, key: str) -> None:
        for path in self._paths(key):
            path.unlink(missing_ok=True)

    def _clear_sync(self) -> None:
        for path in list(self.root.glob("*.json")) + list(self.root.glob("*.bin")):
            path.unlink(missing_ok=True)

    async def _run(self, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except (OSError, ValueError) as exc:
            raise StorageError(f"{func.__name__.strip('_')} failed: {exc}") from exc

    async def put(self, key: str, record: Dict[str, Any]) -> None:
        await self._run(self._put_sync, key, record)

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        return await self._run(self._get_sync, key)

    async def get_all_by_source(self, source: str) -> List[Dict[str, Any]]:
        return await self._run(self._scan_sync, source)

    async def delete(self, key: str) -> None:
        await self._run(self._delete_sync, key)

    async def clear(self) -> None:
        await self._run(self._clear_sync)


class ChunkStore:
    """Recordings and their raw chunks on top of a :class:`KeyValueStore`."""

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store

    async def put_chunk(self, chunk: Chunk) -> None:
        if chunk.payload is None:
            raise ValueError(f"Chunk {chunk.key} has no payload to store.")
        record = chunk.to_record()
        record["size"] = len(chunk.payload)
        record["data"] = bytes(chunk.payload)
        await self.store.put(chunk.key, record)

    async def list_chunks(self) -> List[Chunk]:
        records = await self.store.get_all_by_source(RecordSource.CHUNK.value)
        return [Chunk.from_record(record) for record in records]

    async def get_recording_chunks(
        self, recording_id: str, with_payload: bool = False
    ) -> List[Chunk]:
        chunks = [
            chunk
            for chunk in await self.list_chunks()
            if chunk.parent_recording_id == recording_id
        ]
        chunks.sort(key=lambda chunk: chunk.chunk_number)
        if with_payload:
            chunks = [await self.load_payload(chunk) for chunk in chunks]
        return chunks

    async def load_payload(self, chunk: Chunk) -> Chunk:
        record = await self.store.get(chunk.key)
        if record is None or record.get("data") is None:
            raise StorageError(f"Chunk {chunk.key} payload is missing.")
        return Chunk.from_record(record, payload=record["data"])

    async def next_chunk_number(self, recording_id: str) -> int:
        chunks = await self.get_recording_chunks(recording_id)
        if not chunks:
            return 0
        return chunks[-1].chunk_number + 1

    async def put_recording(self, recording: Recording) -> None:
        await self.store.put(recording.recording_id, recording.to_record())

    async def get_recording(self, recording_id: str) -> Optional[Recording]:
        record = await self.store.get(recording_id)
        if record is None or record.get("source") == RecordSource.CHUNK.value:
            return None
        return Recording.from_record(record)

    async def require_recording(self, recording_id: str) -> Recording:
        recording = await self.get_recording(recording_id)
        if recording is None:
            raise RecordingNotFoundError(recording_id)
        return recording

    async def list_recordings(self) -> List[Recording]:
        """Finalized recordings and uploads, newest first, without audio."""
        records = await self.store.get_all_by_source(RecordSource.RECORDING.value)
        records += await self.store.get_all_by_source(RecordSource.UPLOAD.value)
        recordings = [Recording.from_record(record) for record in records]
        recordings.sort(key=lambda rec: rec.started_at, reverse=True)
        return recordings

    async def update_transcription(
        self,
        recording_id: str,
        transcription: str,
        truncated_segments: Optional[List[int]] = None,
    ) -> Recording:
        recording = await self.require_recording(recording_id)
        recording.transcription = transcription
        recording.truncated_segments = list(truncated_segments or [])
        await self.put_recording(recording)
        return recording

    async def update_processed_transcription(
        self, recording_id: str, prompt_id: str, text: str
    ) -> Recording:
        recording = await self.require_recording(recording_id)
        recording.processed_transcriptions[prompt_id] = {
            "text": text,
            "timestamp": time.time(),
            "prompt_id": prompt_id,
        }
        await self.put_recording(recording)
        return recording

    async def delete_recording(self, recording_id: str) -> int:
        """Delete a recording and every chunk under it. Returns chunks removed."""
        chunks = await self.get_recording_chunks(recording_id)
        for chunk in chunks:
            await self.store.delete(chunk.key)
        await self.store.delete(recording_id)
        logger.info("Deleted %s (%d chunks)", recording_id, len(chunks))
        return len(chunks)

    async def storage_info(self) -> Dict[str, Any]:
        recordings = await self.list_recordings()
        chunks = await self.list_chunks()
        total_bytes = sum(chunk.byte_size for chunk in chunks)
        return {
            "count": len(recordings),
            "chunks": len(chunks),
            "total_bytes": total_bytes,
            "size_mb": round(total_bytes / (1024 * 1024), 2),
        }

    async def clear(self) -> None:
        await self.store.clear()


class TranscriptionStateStore:
    def __init__(self, store: KeyValueStore) -> None:
        self.store = store

    @staticmethod
    def _key(recording_id: str) -> str:
        return f"{STATE_PREFIX}{recording_id}"

    async def get(self, recording_id: str) -> Optional[TranscriptionState]:
        record = await self.store.get(self._key(recording_id))
        if record is None:
            return None
        return TranscriptionState.from_record(record)

    async def save(self, state: TranscriptionState) -> None:
        record = state.to_record()
        record["source"] = STATE_SOURCE
        record["timestamp"] = state.updated_at or state.started_at
        await self.store.put(self._key(state.recording_id), record)

    async def delete(self, recording_id: str) -> None:
        await self.store.delete(self._key(recording_id))

    async def clear(self) -> None:
        await self.store.clear()
