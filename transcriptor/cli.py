"""Command-line entry point: start, stop, status, list, open, doctor, config."""
from __future__ import annotations

import argparse
import json
import shutil
import subprocess
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping, Sequence

import yaml

from . import __version__
from .audio_convert import ConversionError
from .audio_source import AudioSourceError
from .config import (
    ConfigPersistenceError,
    active_config_path,
    configure_logging,
    expand_path,
    get_cfg,
    primary_config_path,
    set_config_value,
)
from .session import AlreadyRecordingError, RecordingSession
from .session_state import STATE_FILENAME, is_stale, load_session_state
from .stop_channel import STOP_SIGNAL_FILENAME, FileStopChannel
from .transcript import TRANSCRIPT_FILENAME, TranscriptRecord, format_timestamp, slugify, split_front_matter
from .transcription import EngineUnavailableError, build_engine
from .wav_sink import SinkIOError


def _state_dir(cfg: Mapping[str, Any]) -> Path:
    return expand_path(cfg.get("paths", {}).get("state_dir", "~/.transcriptor"))


def _transcripts_dir(cfg: Mapping[str, Any]) -> Path:
    return expand_path(cfg.get("paths", {}).get("transcripts_dir", "~/transcripts"))


def _print_record(record: TranscriptRecord) -> None:
    stamp = format_timestamp(record.offset_seconds)
    if record.failed:
        print(f"   [{stamp}] chunk {record.sequence} failed, gap left in transcript", flush=True)
    elif record.text:
        print(f"   [{stamp}] chunk {record.sequence} transcribed", flush=True)
    else:
        print(f"   [{stamp}] chunk {record.sequence} was silent", flush=True)


def cmd_start(args: argparse.Namespace, cfg: Mapping[str, Any]) -> int:
    name = " ".join(args.name).strip()
    try:
        session = RecordingSession.from_config(cfg, on_record=_print_record)
        output_dir = session.start(name)
    except (
        AlreadyRecordingError,
        EngineUnavailableError,
        AudioSourceError,
        ConversionError,
        SinkIOError,
        ValueError,
        OSError,
    ) as exc:
        print(f"Cannot start recording: {exc}", file=sys.stderr)
        return 1
    chunk_seconds = cfg.get("session", {}).get("chunk_duration_seconds", 30)
    print(f"Output: {output_dir}")
    print(f'Recording "{name}" in {chunk_seconds}s chunks. Press Ctrl+C or run `transcriptor stop` to finish.')
    report = session.run_until_stopped()
    if report is None:
        return 0
    print(f"\nRecording saved to {report.output_dir}")
    print(f"   Transcript: {report.transcript_path}")
    print(f"   Duration: {format_timestamp(report.duration_seconds)} in {report.chunk_count} chunk(s)")
    if report.failed_sequences:
        print(f"   Chunks without transcript: {', '.join(str(s) for s in report.failed_sequences)}")
    if report.merged_path is not None:
        print(f"   Audio: {report.merged_path}")
    elif report.merge_error:
        print(f"   Audio not merged ({report.merge_error}); chunk files kept")
    return 0


def cmd_stop(args: argparse.Namespace, cfg: Mapping[str, Any]) -> int:
    state_dir = _state_dir(cfg)
    state_path = state_dir / STATE_FILENAME
    state = load_session_state(state_path)
    if not state.recording or is_stale(state):
        print("Not currently recording.")
        return 1
    FileStopChannel(state_dir / STOP_SIGNAL_FILENAME).request()
    print(f"Stop requested for {state.meeting_name!r}.")
    if not args.wait:
        return 0
    deadline = time.monotonic() + args.timeout
    while time.monotonic() < deadline:
        if not load_session_state(state_path).recording:
            print("Recording finalized.")
            return 0
        time.sleep(0.5)
    print("Timed out waiting for the recorder to finish.", file=sys.stderr)
    return 1


def cmd_status(args: argparse.Namespace, cfg: Mapping[str, Any]) -> int:
    state = load_session_state(_state_dir(cfg) / STATE_FILENAME)
    recording = state.recording and not is_stale(state)
    duration = None
    if recording and state.started_at is not None:
        started = state.started_at
        now = datetime.now(started.tzinfo) if started.tzinfo else datetime.now()
        duration = format_timestamp((now - started).total_seconds())

    if args.json:
        payload: dict[str, Any] = {"recording": recording}
        if recording:
            payload.update(
                meeting_name=state.meeting_name,
                duration=duration,
                output_dir=state.output_dir,
                status=state.status,
            )
        print(json.dumps(payload))
        return 0

    if not recording:
        print("Not recording")
        return 0
    print(f"Recording: {state.meeting_name}")
    if duration is not None:
        print(f"Duration: {duration}")
    if state.status and state.status != "recording":
        print(f"Status: {state.status}")
    if state.output_dir:
        print(f"Output: {state.output_dir}")
    return 0


def _read_front_matter(path: Path) -> dict[str, Any]:
    try:
        header, _ = split_front_matter(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError):
        return {}
    return header


def cmd_list(args: argparse.Namespace, cfg: Mapping[str, Any]) -> int:
    root = _transcripts_dir(cfg)
    entries = sorted(
        (p for p in root.iterdir() if (p / TRANSCRIPT_FILENAME).is_file()) if root.is_dir() else [],
        key=lambda p: p.name,
        reverse=True,
    )
    if not entries:
        print(f"No transcripts in {root}")
        return 0
    for entry in entries[: args.limit] if args.limit else entries:
        header = _read_front_matter(entry / TRANSCRIPT_FILENAME)
        title = header.get("title") or entry.name
        duration = header.get("duration") or "in progress"
        print(f"{entry.name}  {title}  ({duration})")
    return 0


def _find_transcript(root: Path, query: str) -> Path | None:
    """Newest session directory whose name contains ``query`` (or its slug)."""
    needles = {query.lower(), slugify(query)}
    if not root.is_dir():
        return None
    for entry in sorted(root.iterdir(), key=lambda p: p.name, reverse=True):
        if not (entry / TRANSCRIPT_FILENAME).is_file():
            continue
        if any(needle and needle in entry.name.lower() for needle in needles):
            return entry / TRANSCRIPT_FILENAME
    return None


def cmd_open(args: argparse.Namespace, cfg: Mapping[str, Any]) -> int:
    query = " ".join(args.name).strip()
    if not query:
        print("Transcript name required", file=sys.stderr)
        return 1
    root = _transcripts_dir(cfg)
    path = _find_transcript(root, query)
    if path is None:
        print(f"No transcript found matching {query!r} in {root}", file=sys.stderr)
        return 1
    if args.print_only:
        print(path)
        return 0
    opener = "open" if sys.platform == "darwin" else "xdg-open"
    try:
        subprocess.Popen([opener, str(path)], stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
    except OSError as exc:
        print(f"Cannot open {path}: {exc}", file=sys.stderr)
        return 1
    print(f"Opening {path}")
    return 0


def _doctor_line(ok: bool, label: str, detail: str) -> bool:
    mark = "ok " if ok else "ERR"
    print(f"[{mark}] {label}: {detail}")
    return ok


def cmd_doctor(args: argparse.Namespace, cfg: Mapping[str, Any]) -> int:
    healthy = True
    try:
        engine = build_engine(cfg)
        engine.check_ready()
    except EngineUnavailableError as exc:
        healthy = _doctor_line(False, "transcription", str(exc)) and healthy
    else:
        healthy = _doctor_line(True, "transcription", engine.name) and healthy

    audio = cfg.get("audio", {})
    backend = str(audio.get("backend", "arecord"))
    ffmpeg_path = str(cfg.get("merge", {}).get("ffmpeg_path", "ffmpeg"))
    capture_tool = "arecord" if backend == "arecord" else ffmpeg_path
    found = shutil.which(capture_tool)
    healthy = _doctor_line(
        bool(found), "capture", f"{capture_tool} -> {found}" if found else f"{capture_tool} not on PATH"
    ) and healthy

    if cfg.get("merge", {}).get("enabled", True):
        found = shutil.which(ffmpeg_path)
        # merge is optional: report, but do not fail
        _doctor_line(bool(found), "merge", found or f"{ffmpeg_path} not on PATH (audio.wav will be skipped)")

    state_dir = _state_dir(cfg)
    try:
        state_dir.mkdir(parents=True, exist_ok=True)
        probe = state_dir / ".doctor"
        probe.write_text("ok", encoding="utf-8")
        probe.unlink()
    except OSError as exc:
        healthy = _doctor_line(False, "state dir", f"{state_dir}: {exc}") and healthy
    else:
        _doctor_line(True, "state dir", str(state_dir))
    return 0 if healthy else 1


def cmd_config(args: argparse.Namespace, cfg: Mapping[str, Any]) -> int:
    if args.action == "set":
        try:
            value = set_config_value(args.key, args.value)
        except ConfigPersistenceError as exc:
            print(f"Cannot update config: {exc}", file=sys.stderr)
            return 1
        print(f"{args.key} = {value!r} (saved to {primary_config_path()})")
        return 0
    active = active_config_path()
    print(f"# config file: {active if active else 'none, using defaults'}")
    print(yaml.safe_dump(dict(cfg), sort_keys=False, default_flow_style=False), end="")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="transcriptor", description="Record and transcribe meetings")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    p_start = sub.add_parser("start", help="Start recording a meeting (foreground)")
    p_start.add_argument("name", nargs="+", help="Meeting name")
    p_start.set_defaults(func=cmd_start)

    p_stop = sub.add_parser("stop", help="Ask the running recorder to stop")
    p_stop.add_argument("--wait", action="store_true", help="Wait until the session is finalized")
    p_stop.add_argument("--timeout", type=float, default=600.0)
    p_stop.set_defaults(func=cmd_stop)

    p_status = sub.add_parser("status", help="Show the current recording")
    p_status.add_argument("--json", action="store_true")
    p_status.set_defaults(func=cmd_status)

    p_list = sub.add_parser("list", help="List recorded transcripts")
    p_list.add_argument("--limit", type=int, default=0)
    p_list.set_defaults(func=cmd_list)

    p_open = sub.add_parser("open", help="Open a transcript by (part of) its name")
    p_open.add_argument("name", nargs="+")
    p_open.add_argument("--print", dest="print_only", action="store_true", help="Only print the path")
    p_open.set_defaults(func=cmd_open)

    p_doctor = sub.add_parser("doctor", help="Check engine, capture tool and ffmpeg")
    p_doctor.set_defaults(func=cmd_doctor)

    p_config = sub.add_parser("config", help="Show or change configuration")
    p_config.add_argument("action", nargs="?", choices=["show", "set"], default="show")
    p_config.add_argument("key", nargs="?")
    p_config.add_argument("value", nargs="?")
    p_config.set_defaults(func=cmd_config)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "config" and args.action == "set" and (args.key is None or args.value is None):
        parser.error("config set requires KEY and VALUE")
    cfg = get_cfg()
    configure_logging(cfg)
    return int(args.func(args, cfg))


if __name__ == "__main__":
    sys.exit(main())
