"""
wav_sink.py
-----------
Incremental WAV writer for canonical PCM chunks.

- open() writes a valid 44-byte header that reports zero data.
- write() appends raw frames and only bumps a byte counter.
- close() seeks back and patches RIFF/data sizes.

A file left behind by a crash between open() and close() still parses as
WAV, but its header says zero data; see is_incomplete().
"""
from __future__ import annotations

import os
import struct
import threading
from dataclasses import dataclass
from pathlib import Path

from .audio_convert import CANONICAL_CHANNELS, CANONICAL_SAMPLE_RATE, CANONICAL_SAMPLE_WIDTH

HEADER_BYTES = 44
PCM_FORMAT_TAG = 1


class SinkIOError(Exception):
    """Raised when the chunk file cannot be created, written, or finalized."""


class SinkClosedError(SinkIOError):
    """Raised on write() after close()."""


@dataclass(frozen=True)
class WavHeader:
    format_tag: int
    channels: int
    sample_rate: int
    byte_rate: int
    block_align: int
    bits_per_sample: int
    riff_size: int
    data_size: int


def build_wav_header(
    data_size: int,
    *,
    sample_rate: int = CANONICAL_SAMPLE_RATE,
    channels: int = CANONICAL_CHANNELS,
    sample_width: int = CANONICAL_SAMPLE_WIDTH,
) -> bytes:
    block_align = channels * sample_width
    byte_rate = sample_rate * block_align
    return b"".join(
        [
            b"RIFF", struct.pack("<I", 36 + data_size), b"WAVE",
            b"fmt ", struct.pack("<I", 16),
            struct.pack(
                "<HHIIHH",
                PCM_FORMAT_TAG,
                channels,
                sample_rate,
                byte_rate,
                block_align,
                sample_width * 8,
            ),
            b"data", struct.pack("<I", data_size),
        ]
    )


def read_wav_header(path: str | os.PathLike[str]) -> WavHeader:
    with open(path, "rb") as handle:
        raw = handle.read(HEADER_BYTES)
    if len(raw) < HEADER_BYTES or raw[0:4] != b"RIFF" or raw[8:12] != b"WAVE":
        raise SinkIOError(f"not a canonical WAV file: {path}")
    riff_size = struct.unpack("<I", raw[4:8])[0]
    fmt_tag, channels, rate, byte_rate, block_align, bits = struct.unpack("<HHIIHH", raw[20:36])
    data_size = struct.unpack("<I", raw[40:44])[0]
    return WavHeader(fmt_tag, channels, rate, byte_rate, block_align, bits, riff_size, data_size)


def is_incomplete(path: str | os.PathLike[str]) -> bool:
    """True for a chunk whose header was never patched (crash mid-recording)."""
    try:
        size = os.path.getsize(path)
        header = read_wav_header(path)
    except (OSError, SinkIOError):
        return True
    return header.data_size == 0 and size > HEADER_BYTES


class WavSink:
    def __init__(
        self,
        sample_rate: int = CANONICAL_SAMPLE_RATE,
        channels: int = CANONICAL_CHANNELS,
        sample_width: int = CANONICAL_SAMPLE_WIDTH,
    ):
        self.sample_rate = sample_rate
        self.channels = channels
        self.sample_width = sample_width
        self.byte_rate = sample_rate * channels * sample_width
        self.path: Path | None = None
        self.data_bytes = 0
        self._f = None
        self._closed = False
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def duration_seconds(self) -> float:
        return self.data_bytes / float(self.byte_rate) if self.byte_rate else 0.0

    def open(self, path: str | os.PathLike[str]) -> "WavSink":
        if self._f is not None or self._closed:
            raise SinkIOError("sink already opened")
        self.path = Path(path)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._f = open(self.path, "wb")
            self._f.write(self._header(0))
        except OSError as exc:
            self._f = None
            raise SinkIOError(f"failed to open {self.path}: {exc}") from exc
        return self

    def write(self, frame: bytes) -> None:
        f = self._f
        if f is None:
            if self._closed:
                raise SinkClosedError(f"write after close: {self.path}")
            raise SinkIOError("write before open")
        try:
            f.write(frame)
        except (OSError, ValueError) as exc:
            raise SinkIOError(f"write failed for {self.path}: {exc}") from exc
        self.data_bytes += len(frame)

    def close(self) -> int:
        """Patch the header and close; returns the data size. Repeat calls are no-ops."""
        with self._lock:
            if self._closed:
                return self.data_bytes
            self._closed = True
            f, self._f = self._f, None
        if f is None:
            return self.data_bytes
        try:
            f.flush()
            f.seek(0)
            f.write(self._header(self.data_bytes))
            f.flush()
            os.fsync(f.fileno())
        except OSError as exc:
            raise SinkIOError(f"failed to finalize {self.path}: {exc}") from exc
        finally:
            f.close()
        return self.data_bytes

    def _header(self, data_size: int) -> bytes:
        return build_wav_header(
            data_size,
            sample_rate=self.sample_rate,
            channels=self.channels,
            sample_width=self.sample_width,
        )
