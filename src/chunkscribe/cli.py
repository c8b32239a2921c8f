"""CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
from datetime import datetime

from .chunk_writer import CaptureError
from .config import load_config, save_config
from .logging_utils import setup_logging
from .orchestrator import SegmentFailedError, TranscriptionError
from .recorder import list_input_devices
from .service import BUILTIN_PROMPTS, ChunkscribeService
from .storage import RecordingNotFoundError, StorageError, ensure_structure, export_basename
from .transcriber import TranscriptionServiceError


def _format_recording(recording) -> str:
    started = datetime.fromtimestamp(recording.started_at).strftime("%Y-%m-%d %H:%M:%S")
    flags = []
    if recording.in_progress:
        flags.append("recording")
    if recording.recovered:
        flags.append("recovered")
    if recording.corrupted:
        flags.append("corrupted")
    if recording.transcription:
        flags.append("transcribed")
    suffix = f" [{', '.join(flags)}]" if flags else ""
    return (
        f"{recording.recording_id}  {started}  {recording.duration_seconds}s  "
        f"{recording.chunks_count} chunks{suffix}"
    )


def _describe_device(device, loopback: bool, detail: bool) -> str:
    key = "max_output_channels" if loopback else "max_input_channels"
    kind = "outputs" if loopback else "inputs"
    line = f"[{device.get('index', '?')}] {device.get('name', 'Unknown')} ({kind}: {device.get(key, 0)})"
    if detail:
        extra = [
            f"{field}={device[field]}"
            for field in ("default_samplerate", "hostapi")
            if field in device
        ]
        if extra:
            line = f"{line} [{', '.join(extra)}]"
    return line


def _print_progress(message: str, done: int, total: int) -> None:
    print(f"[{done}/{total}] {message}")


def _build_service(args) -> ChunkscribeService:
    config = load_config(args.config)
    if args.base_dir:
        config.base_dir = args.base_dir
    paths = ensure_structure(config.base_dir)
    setup_logging(paths["logs"], config.log_level)

    def _drop_api_key() -> None:
        print("API key rejected; removed it from the configuration.", file=sys.stderr)
        if os.path.exists(args.config):
            stored = load_config(args.config)
            stored.transcription.api_key = None
            save_config(args.config, stored)

    return ChunkscribeService(config, on_credentials_invalid=_drop_api_key)


async def _record(service: ChunkscribeService, duration) -> int:
    recording_id = await service.start_capture()
    print(f"Recording {recording_id}" + ("" if duration else " (Ctrl+C to stop)"))
    try:
        if duration:
            await asyncio.sleep(duration)
        else:
            await asyncio.Event().wait()
    finally:
        recording = await service.stop_capture()
        if recording is not None:
            print(f"Saved {_format_recording(recording)}")
    return 0


async def _run(args) -> int:
    service = _build_service(args)
    try:
        report = await service.open()
        for recording in report.recovered:
            print(f"Recovered {_format_recording(recording)}")

        if args.command == "record":
            return await _record(service, args.duration)

        if args.command == "list":
            recordings = await service.list_recordings()
            if not recordings:
                print("No recordings.")
            for recording in recordings:
                print(_format_recording(recording))
            return 0

        if args.command == "chunks":
            chunks = await service.get_recording_chunks(args.recording_id)
            if not chunks:
                print(f"No chunks for {args.recording_id}")
                return 1
            for chunk in chunks:
                print(
                    f"#{chunk.chunk_number}  {chunk.samples_count} samples  "
                    f"{chunk.duration_seconds:.2f}s  {chunk.sample_rate} Hz  "
                    f"{chunk.format.value}  {chunk.size or 0} bytes"
                )
            return 0

        if args.command == "recover":
            if not report.recovered:
                print("Nothing to recover.")
            for parent_id, error in report.failed.items():
                print(f"Failed to recover {parent_id}: {error}")
            return 1 if report.failed else 0

        if args.command == "transcribe":
            recording_id = args.recording_id
            if args.discard:
                await service.clear_transcription_state(recording_id)
                print(f"Discarded saved progress for {recording_id}")
            if args.resume:
                text = await service.resume(recording_id, _print_progress)
            else:
                text = await service.transcribe(recording_id, _print_progress)
            print(text)
            return 0

        if args.command == "export":
            recording = await service.get_recording(args.recording_id)
            data = await service.export_as_wav(args.recording_id, args.rate)
            output_path = args.out
            if not output_path:
                exports = ensure_structure(service.config.base_dir)["exports"]
                output_path = os.path.join(exports, f"{export_basename(recording)}.wav")
            with open(output_path, "wb") as handle:
                handle.write(data)
            print(f"Wrote {output_path}")
            return 0

        if args.command == "play":
            handle = await service.open_playback(args.recording_id)
            if args.seek:
                index, offset = await handle.seek(args.seek)
                print(f"Starting at chunk {index} + {offset:.2f}s")
            print(f"Playing {args.recording_id} ({handle.total_duration:.1f}s)")
            await handle.play()
            await handle.wait()
            return 0

        if args.command == "post-process":
            system_prompt = None
            if args.prompt_file:
                with open(args.prompt_file, "r", encoding="utf-8") as handle:
                    system_prompt = handle.read()
            text = await service.post_process(args.recording_id, args.prompt, system_prompt)
            print(text)
            return 0

        if args.command == "delete":
            if args.all:
                await service.delete_all()
                print("Deleted all recordings.")
                return 0
            if not args.recording_id:
                print("Give a recording id or --all.")
                return 1
            removed = await service.delete_recording(args.recording_id)
            print(f"Deleted {args.recording_id} ({removed} chunks)")
            return 0

        if args.command == "info":
            info = await service.storage_info()
            print(f"Recordings: {info['count']}")
            print(f"Chunks: {info['chunks']}")
            print(f"Stored audio: {info['size_mb']} MB")
            return 0
    finally:
        await service.close()
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(prog="chunkscribe")
    parser.add_argument("--config", default="chunkscribe_config.yml", help="Config.")
    parser.add_argument("--base-dir", help="Storage directory.")
    sub = parser.add_subparsers(dest="command")

    devices_cmd = sub.add_parser("devices")
    devices_cmd.add_argument("--match", help="Filter device names by substring.")
    devices_cmd.add_argument(
        "--loopback",
        action="store_true",
        help="List output devices for system audio capture (WASAPI).",
    )
    devices_cmd.add_argument(
        "--detail",
        action="store_true",
        help="Show detailed device channel info.",
    )

    record_cmd = sub.add_parser("record")
    record_cmd.add_argument(
        "--duration", type=float, help="Seconds. Omit for manual stop."
    )

    sub.add_parser("list")
    chunks_cmd = sub.add_parser("chunks")
    chunks_cmd.add_argument("recording_id")
    sub.add_parser("recover")

    transcribe_cmd = sub.add_parser("transcribe")
    transcribe_cmd.add_argument("recording_id")
    transcribe_cmd.add_argument(
        "--resume", action="store_true", help="Continue from saved progress."
    )
    transcribe_cmd.add_argument(
        "--discard", action="store_true", help="Drop saved progress first."
    )

    export_cmd = sub.add_parser("export")
    export_cmd.add_argument("recording_id")
    export_cmd.add_argument("--rate", type=int, help="Output sample rate.")
    export_cmd.add_argument("--out", help="Output WAV path.")

    play_cmd = sub.add_parser("play")
    play_cmd.add_argument("recording_id")
    play_cmd.add_argument("--seek", type=float, help="Start position in seconds.")

    post_cmd = sub.add_parser("post-process")
    post_cmd.add_argument("recording_id")
    post_cmd.add_argument(
        "--prompt",
        default="summary",
        help=f"Prompt id ({', '.join(BUILTIN_PROMPTS)} or custom with --prompt-file).",
    )
    post_cmd.add_argument("--prompt-file", help="Prompt template with {{TRANSCRIPTION}}.")

    delete_cmd = sub.add_parser("delete")
    delete_cmd.add_argument("recording_id", nargs="?")
    delete_cmd.add_argument("--all", action="store_true", help="Delete everything.")

    sub.add_parser("info")

    args = parser.parse_args()
    if args.command == "devices":
        devices = list_input_devices(loopback=bool(args.loopback))
        if args.match:
            devices = [
                d for d in devices if args.match.lower() in d.get("name", "").lower()
            ]
        for device in devices:
            print(_describe_device(device, bool(args.loopback), bool(args.detail)))
        return 0

    if not args.command:
        parser.print_help()
        return 0

    try:
        return asyncio.run(_run(args))
    except KeyboardInterrupt:
        return 130
    except SegmentFailedError as exc:
        print(f"{exc}\nRun 'chunkscribe transcribe {args.recording_id} --resume' to continue.")
        return 1
    except (
        CaptureError,
        RecordingNotFoundError,
        StorageError,
        TranscriptionError,
        TranscriptionServiceError,
        ValueError,
    ) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
