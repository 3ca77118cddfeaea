"""
Audio source boundary.

An AudioSource runs for the whole recording and hands SampleBuffers to at
most one attached consumer (the active CaptureSession). Buffers that arrive
while nobody is attached, i.e. during a chunk rotation, are kept in a bounded
backlog and replayed to the next consumer before any new audio.
"""
from __future__ import annotations

import collections
import logging
import os
import subprocess
import threading
import time
from typing import Any, Callable, Mapping, Optional

from .audio_convert import SampleBuffer, SourceFormat
from .ffmpeg_io import arecord_command, ffmpeg_capture_command

Consumer = Callable[[SampleBuffer], None]


class AudioSourceError(Exception):
    """Raised when the capture device cannot be started or dies mid-session."""


class AudioSource:
    """Base class: consumer binding, backlog and dispatch."""

    def __init__(self, source_format: SourceFormat, *, backlog_seconds: float = 10.0):
        self.source_format = source_format
        self.log = logging.getLogger("transcriptor.audio_source")
        self.on_failure: Optional[Callable[[Exception], None]] = None
        self._dispatch_lock = threading.Lock()
        self._consumer: Optional[Consumer] = None
        self._backlog: collections.deque[SampleBuffer] = collections.deque()
        self._backlog_bytes = 0
        bytes_per_sec = source_format.sample_rate * max(source_format.frame_bytes, 1)
        self._backlog_limit = max(0, int(backlog_seconds * bytes_per_sec))
        self._dropped_bytes = 0

    def start(self) -> None:
        raise NotImplementedError

    def stop(self) -> None:
        raise NotImplementedError

    def attach(self, consumer: Consumer) -> None:
        with self._dispatch_lock:
            if self._consumer is not None:
                raise AudioSourceError("audio source already has a consumer attached")
            self._consumer = consumer
            pending = list(self._backlog)
            self._backlog.clear()
            self._backlog_bytes = 0
            for buf in pending:
                self._call(consumer, buf)

    def detach(self) -> None:
        """Unbind the consumer; returns once no dispatch is in progress."""
        with self._dispatch_lock:
            self._consumer = None

    def discard_backlog(self) -> int:
        """Drop audio held for a consumer that never came. Returns bytes dropped."""
        with self._dispatch_lock:
            dropped = self._backlog_bytes
            self._backlog.clear()
            self._backlog_bytes = 0
        return dropped

    @property
    def attached(self) -> bool:
        return self._consumer is not None

    def deliver(self, samples: bytes, timestamp: float | None = None) -> None:
        buf = SampleBuffer(
            samples=samples,
            source_format=self.source_format,
            timestamp=time.monotonic() if timestamp is None else timestamp,
        )
        with self._dispatch_lock:
            consumer = self._consumer
            if consumer is None:
                self._hold(buf)
                return
            self._call(consumer, buf)

    def _hold(self, buf: SampleBuffer) -> None:
        self._backlog.append(buf)
        self._backlog_bytes += len(buf.samples)
        while self._backlog and self._backlog_bytes > self._backlog_limit:
            dropped = self._backlog.popleft()
            self._backlog_bytes -= len(dropped.samples)
            self._dropped_bytes += len(dropped.samples)
            self.log.warning(
                "no consumer attached; dropped %d bytes of audio (total %d)",
                len(dropped.samples),
                self._dropped_bytes,
            )

    def _call(self, consumer: Consumer, buf: SampleBuffer) -> None:
        try:
            consumer(buf)
        except Exception:
            self.log.exception("audio consumer raised; buffer lost")

    def _report_failure(self, exc: Exception) -> None:
        callback = self.on_failure
        if callback is None:
            self.log.error("audio source failed: %s", exc)
            return
        callback(exc)


def _scan_xruns(data: bytes, state: dict[str, str]) -> list[str]:
    """Pick overrun/underrun notices out of capture-tool stderr."""
    text = state.get("buffer", "") + data.decode("utf-8", errors="replace")
    lines = text.split("\n")
    state["buffer"] = lines.pop()
    events: list[str] = []
    for line in lines:
        lowered = line.lower()
        if "overrun" in lowered:
            events.append("overrun")
        elif "underrun" in lowered:
            events.append("underrun")
    return events


class SubprocessAudioSource(AudioSource):
    """Read raw PCM from a capture process (arecord, ffmpeg) on stdout."""

    def __init__(
        self,
        command: list[str],
        source_format: SourceFormat,
        *,
        read_block_bytes: int = 4096,
        backlog_seconds: float = 10.0,
    ):
        super().__init__(source_format, backlog_seconds=backlog_seconds)
        self.command = list(command)
        frame = max(source_format.frame_bytes, 1)
        self.read_block_bytes = max(frame, read_block_bytes - (read_block_bytes % frame))
        self._proc: subprocess.Popen | None = None
        self._reader: threading.Thread | None = None
        self._stderr_reader: threading.Thread | None = None
        self._stop = threading.Event()
        self._stderr_tail: collections.deque[str] = collections.deque(maxlen=20)

    def start(self) -> None:
        if self._proc is not None:
            return
        self.source_format.validate()
        try:
            self._proc = subprocess.Popen(
                self.command,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                bufsize=0,
                start_new_session=True,
                env=os.environ.copy(),
            )
        except OSError as exc:
            raise AudioSourceError(f"failed to launch {self.command[0]}: {exc}") from exc
        self._stop.clear()
        self._reader = threading.Thread(target=self._run, name="audio-source", daemon=True)
        self._stderr_reader = threading.Thread(
            target=self._drain_stderr, name="audio-source-stderr", daemon=True
        )
        self._reader.start()
        self._stderr_reader.start()
        self.log.info("capture started: %s", " ".join(self.command))

    def stop(self) -> None:
        self._stop.set()
        proc, self._proc = self._proc, None
        if proc is not None and proc.poll() is None:
            proc.terminate()
            try:
                proc.wait(timeout=2)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()
        for thread in (self._reader, self._stderr_reader):
            if thread is not None and thread is not threading.current_thread():
                thread.join(timeout=5)
        self._reader = None
        self._stderr_reader = None
        if proc is not None:
            for stream in (proc.stdout, proc.stderr):
                if stream is not None:
                    stream.close()
            self.log.info("capture stopped")

    def _run(self) -> None:
        proc = self._proc
        assert proc is not None and proc.stdout is not None
        frame = max(self.source_format.frame_bytes, 1)
        pending = bytearray()
        while not self._stop.is_set():
            try:
                chunk = proc.stdout.read(self.read_block_bytes)
            except (OSError, ValueError):
                break
            if not chunk:
                break
            pending.extend(chunk)
            usable = len(pending) - (len(pending) % frame)
            if usable:
                self.deliver(bytes(pending[:usable]))
                del pending[:usable]

        if self._stop.is_set():
            return
        returncode = proc.wait()
        tail = " | ".join(self._stderr_tail)
        self._report_failure(
            AudioSourceError(f"capture process exited with code {returncode}: {tail}")
        )

    def _drain_stderr(self) -> None:
        proc = self._proc
        if proc is None or proc.stderr is None:
            return
        state: dict[str, str] = {"buffer": ""}
        while True:
            try:
                data = proc.stderr.read(4096)
            except (OSError, ValueError):
                return
            if not data:
                return
            for event in _scan_xruns(data, state):
                self.log.warning("capture %s reported by %s", event, self.command[0])
            for line in data.decode("utf-8", errors="replace").splitlines():
                if line.strip():
                    self._stderr_tail.append(line.strip())


def build_audio_source(cfg: Mapping[str, Any]) -> SubprocessAudioSource:
    audio = cfg.get("audio", {})
    fmt = SourceFormat(
        sample_rate=int(audio.get("sample_rate", 48000)),
        channels=int(audio.get("channels", 1)),
        sample_type=str(audio.get("sample_type", "s16")),
        layout=str(audio.get("layout", "interleaved")),
    )
    fmt.validate()
    backend = str(audio.get("backend", "arecord")).strip().lower()
    device = str(audio.get("device", "default"))
    if backend == "arecord":
        command = arecord_command(device, fmt)
    elif backend == "ffmpeg":
        command = ffmpeg_capture_command(
            device,
            fmt,
            input_format=str(audio.get("input_format", "pulse")),
            ffmpeg_path=str(cfg.get("merge", {}).get("ffmpeg_path", "ffmpeg")),
        )
    else:
        raise AudioSourceError(f"Unsupported audio backend: {backend}")
    return SubprocessAudioSource(
        command,
        fmt,
        read_block_bytes=int(audio.get("read_block_bytes", 4096)),
        backlog_seconds=float(audio.get("backlog_seconds", 10.0)),
    )
