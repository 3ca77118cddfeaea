"""Shared helpers for building capture and merge command lines."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable

from .audio_convert import SourceFormat

DEFAULT_THREAD_QUEUE_SIZE = 8192

_ARECORD_FORMATS = {
    "u8": "U8",
    "s16": "S16_LE",
    "s32": "S32_LE",
    "f32": "FLOAT_LE",
}
_FFMPEG_FORMATS = {
    "u8": "u8",
    "s16": "s16le",
    "s32": "s32le",
    "f32": "f32le",
}


def arecord_command(device: str, fmt: SourceFormat) -> list[str]:
    """Raw interleaved capture from ALSA to stdout."""
    return [
        "arecord",
        "-q",
        "-D", device,
        "-c", str(fmt.channels),
        "-f", _ARECORD_FORMATS[fmt.sample_type],
        "-r", str(fmt.sample_rate),
        "-t", "raw",
        "-",
    ]


def ffmpeg_capture_command(
    device: str,
    fmt: SourceFormat,
    *,
    input_format: str,
    ffmpeg_path: str = "ffmpeg",
    queue_size: int = DEFAULT_THREAD_QUEUE_SIZE,
) -> list[str]:
    """Capture ``device`` through ffmpeg and emit raw PCM on stdout.

    ffmpeg treats options appearing before ``-i`` as applying to that input,
    so ``-thread_queue_size`` must precede the device it targets.
    """
    return [
        ffmpeg_path,
        "-hide_banner",
        "-loglevel", "error",
        "-f", input_format,
        "-thread_queue_size", str(queue_size),
        "-i", device,
        "-vn",
        "-ac", str(fmt.channels),
        "-ar", str(fmt.sample_rate),
        "-f", _FFMPEG_FORMATS[fmt.sample_type],
        "pipe:1",
    ]


def concat_list_text(paths: Iterable[Path]) -> str:
    lines = []
    for path in paths:
        escaped = str(Path(path).resolve()).replace("'", "'\\''")
        lines.append(f"file '{escaped}'")
    return "\n".join(lines) + "\n"


def concat_command(list_path: Path, output_path: Path, *, ffmpeg_path: str = "ffmpeg") -> list[str]:
    return [
        ffmpeg_path,
        "-hide_banner",
        "-loglevel", "error",
        "-y",
        "-f", "concat",
        "-safe", "0",
        "-i", str(list_path),
        "-c", "copy",
        str(output_path),
    ]
