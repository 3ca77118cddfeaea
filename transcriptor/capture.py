"""Capture session: one attachment of the audio source to one WAV sink."""
from __future__ import annotations

import logging
import threading
import time
from typing import Optional

from .audio_convert import ConversionError, FormatConverter, SampleBuffer
from .audio_source import AudioSource
from .wav_sink import SinkIOError, WavSink

LOG = logging.getLogger("transcriptor.capture")

CONVERSION_WARN_INTERVAL = 5.0


class CaptureSession:
    def __init__(
        self,
        source: AudioSource,
        converter: FormatConverter,
        *,
        clock=time.monotonic,
    ):
        self.source = source
        self.converter = converter
        self._clock = clock
        self._sink: Optional[WavSink] = None
        self._lock = threading.Lock()
        self._active = False
        self.failed = False
        self.error: Optional[SinkIOError] = None
        self.dropped_buffers = 0
        self._last_conversion_warning = float("-inf")

    def start(self, sink: WavSink) -> None:
        with self._lock:
            if self._active:
                raise RuntimeError("capture session already started")
            self._sink = sink
            self._active = True
        # The backlog held since the previous session is replayed from here.
        try:
            self.source.attach(self._on_buffer)
        except Exception:
            with self._lock:
                self._active = False
                self._sink = None
            raise

    def stop(self) -> None:
        """Detach from the source. No write reaches the sink after this returns."""
        if not self._active:
            return
        self.source.detach()
        with self._lock:
            self._active = False
            self._sink = None

    def _on_buffer(self, buffer: SampleBuffer) -> None:
        sink = self._sink
        if sink is None or self.failed:
            return
        try:
            frames = self.converter.convert(buffer)
        except ConversionError as exc:
            self.dropped_buffers += 1
            now = self._clock()
            if now - self._last_conversion_warning >= CONVERSION_WARN_INTERVAL:
                self._last_conversion_warning = now
                LOG.warning(
                    "dropping unconvertible audio buffer (%d so far): %s",
                    self.dropped_buffers,
                    exc,
                )
            return

        try:
            for frame in frames:
                sink.write(frame)
        except SinkIOError as exc:
            self.failed = True
            self.error = exc
            LOG.error("chunk sink failed, no further audio written to %s: %s", sink.path, exc)
