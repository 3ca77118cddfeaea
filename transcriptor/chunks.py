"""Chunk bookkeeping shared by the rotator, sequencer and finalizer."""
from __future__ import annotations

import enum
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

CHUNK_DIRNAME = "chunks"
CHUNK_NAME_FORMAT = "chunk_{:04d}.wav"
INCOMPLETE_SUFFIX = ".incomplete.wav"


class ChunkState(str, enum.Enum):
    RECORDING = "recording"
    CLOSED = "closed"
    TRANSCRIBING = "transcribing"
    TRANSCRIBED = "transcribed"
    FAILED = "failed"


def chunk_path(output_dir: Path, sequence: int) -> Path:
    return Path(output_dir) / CHUNK_DIRNAME / CHUNK_NAME_FORMAT.format(sequence)


@dataclass
class Chunk:
    sequence: int
    path: Path
    offset_seconds: float
    state: ChunkState = ChunkState.RECORDING
    duration_seconds: float = 0.0
    data_bytes: int = 0
    error: Optional[str] = None
    # False when the sink failed: the file must not be merged
    audio_ok: bool = True

    def mark_closed(self, data_bytes: int, byte_rate: int) -> None:
        self.data_bytes = data_bytes
        self.duration_seconds = data_bytes / float(byte_rate) if byte_rate else 0.0
        self.state = ChunkState.CLOSED

    def mark_failed(self, error: str, *, audio_ok: bool) -> None:
        self.state = ChunkState.FAILED
        self.error = error
        self.audio_ok = self.audio_ok and audio_ok

