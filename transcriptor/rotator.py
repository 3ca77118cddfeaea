"""
rotator.py
----------
Slices one continuous capture into fixed-length WAV chunks.

Each chunk gets its own WavSink and CaptureSession. A rotation stops the old
session, closes its sink, hands the chunk to the transcription stage and only
then attaches the next session; the audio source holds anything that arrives
in between, so consecutive chunk files are contiguous.
"""
from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Callable, Optional

from .audio_convert import CANONICAL_CHANNELS, CANONICAL_SAMPLE_WIDTH, FormatConverter
from .audio_source import AudioSource
from .capture import CaptureSession
from .chunks import Chunk, ChunkState, chunk_path
from .wav_sink import SinkIOError, WavSink

LOG = logging.getLogger("transcriptor.rotator")


class ChunkRotator:
    def __init__(
        self,
        source: AudioSource,
        converter: FormatConverter,
        output_dir: Path,
        *,
        chunk_duration: Optional[float],
        submit: Callable[[Chunk], None],
        on_fatal: Optional[Callable[[Exception], None]] = None,
    ):
        self.source = source
        self.converter = converter
        self.output_dir = Path(output_dir)
        self.chunk_duration = chunk_duration if chunk_duration and chunk_duration > 0 else None
        self.submit = submit
        self.on_fatal = on_fatal
        self.sample_rate = converter.target_rate

        self._lock = threading.Lock()
        self._halt = threading.Event()
        self._timer: Optional[threading.Thread] = None
        self._chunks: list[Chunk] = []
        self._current: Optional[tuple[Chunk, WavSink, CaptureSession]] = None
        self._next_sequence = 1
        self._samples_total = 0
        self._started = False
        self._stopped = False

    @property
    def chunks(self) -> list[Chunk]:
        with self._lock:
            return list(self._chunks)

    @property
    def current_chunk(self) -> Optional[Chunk]:
        current = self._current
        return current[0] if current else None

    def start(self) -> Chunk:
        with self._lock:
            if self._started:
                raise RuntimeError("rotator already started")
            self._started = True
            self.converter.reset()
            chunk = self._open_next()
        if self.chunk_duration is not None:
            self._timer = threading.Thread(target=self._timer_loop, name="chunk-rotator", daemon=True)
            self._timer.start()
        return chunk

    def rotate(self) -> Optional[Chunk]:
        """Close the current chunk and open the next one. Returns the closed chunk."""
        with self._lock:
            if self._stopped or self._current is None:
                return None
            closed = self._close_current()
            try:
                self._open_next()
            except SinkIOError as exc:
                LOG.error("cannot open next chunk, recording halted: %s", exc)
                self._report_fatal(exc)
            return closed

    def stop(self) -> list[Chunk]:
        """Flush the partial chunk and stop rotating. Safe to call repeatedly."""
        with self._lock:
            if not self._stopped:
                self._stopped = True
                self._halt.set()
                if self._current is not None:
                    self._close_current(final=True)
            chunks = list(self._chunks)
        timer = self._timer
        if timer is not None and timer is not threading.current_thread():
            timer.join(timeout=5)
        return chunks

    def _timer_loop(self) -> None:
        assert self.chunk_duration is not None
        deadline = time.monotonic() + self.chunk_duration
        while not self._halt.wait(max(0.0, deadline - time.monotonic())):
            deadline += self.chunk_duration
            try:
                self.rotate()
            except Exception:
                LOG.exception("chunk rotation failed")

    def _open_next(self) -> Chunk:
        sequence = self._next_sequence
        path = chunk_path(self.output_dir, sequence)
        sink = WavSink(self.sample_rate, CANONICAL_CHANNELS, CANONICAL_SAMPLE_WIDTH)
        sink.open(path)
        self._next_sequence += 1
        chunk = Chunk(
            sequence=sequence,
            path=path,
            offset_seconds=self._samples_total / float(self.sample_rate),
        )
        session = CaptureSession(self.source, self.converter)
        self._chunks.append(chunk)
        self._current = (chunk, sink, session)
        session.start(sink)
        LOG.debug("chunk %d recording to %s", sequence, path)
        return chunk

    def _close_current(self, final: bool = False) -> Chunk:
        assert self._current is not None
        chunk, sink, session = self._current
        self._current = None
        session.stop()

        close_error: Optional[SinkIOError] = None
        if final and not session.failed:
            try:
                for frame in self.converter.flush():
                    sink.write(frame)
            except SinkIOError as exc:
                close_error = exc
        try:
            sink.close()
        except SinkIOError as exc:
            close_error = close_error or exc

        self._samples_total += sink.data_bytes // CANONICAL_SAMPLE_WIDTH
        chunk.mark_closed(sink.data_bytes, sink.byte_rate)
        if session.failed:
            chunk.mark_failed(str(session.error), audio_ok=False)
        elif close_error is not None:
            chunk.mark_failed(str(close_error), audio_ok=False)

        if chunk.state is ChunkState.FAILED:
            LOG.warning("chunk %d failed: %s", chunk.sequence, chunk.error)
        elif chunk.data_bytes == 0:
            LOG.info("chunk %d is empty, nothing to transcribe", chunk.sequence)
            return chunk
        else:
            LOG.info("chunk %d closed (%.1fs)", chunk.sequence, chunk.duration_seconds)
        try:
            self.submit(chunk)
        except Exception:
            LOG.exception("failed to submit chunk %d for transcription", chunk.sequence)
        return chunk

    def _report_fatal(self, exc: Exception) -> None:
        callback = self.on_fatal
        if callback is None:
            return
        try:
            callback(exc)
        except Exception:
            LOG.exception("on_fatal callback raised")
