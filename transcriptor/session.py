"""
session.py
----------
The recording session state machine: IDLE -> RECORDING -> STOPPING -> IDLE.

One RecordingSession object owns the audio source, the chunk rotator, the
transcription sequencer and the transcript for the lifetime of a recording.
Every transition happens under one lock and is mirrored atomically into
``<state_dir>/state.json`` for external controllers.

Stop requests arrive from several places (the ``stop-signal`` marker file,
SIGINT/SIGTERM, a dead capture process, a chunk file that cannot be opened).
They are only queued; run_until_stopped() picks them up on its polling
thread and performs the single stop(). Because stop() goes through the
rotator lock, a rotation in flight always completes first.
"""
from __future__ import annotations

import enum
import logging
import os
import shutil
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Optional

from .audio_convert import CANONICAL_SAMPLE_RATE, FormatConverter
from .audio_source import AudioSource, AudioSourceError, build_audio_source
from .config import expand_path
from .finalizer import FinalizeReport, Finalizer
from .recovery import recover_stale_session
from .rotator import ChunkRotator
from .sequencer import TranscriptionSequencer
from .session_state import (
    STATE_FILENAME,
    STATUS_RECORDING,
    STATUS_STOPPING,
    SessionState,
    clear_session_state,
    load_session_state,
    store_session_state,
)
from .stop_channel import STOP_SIGNAL_FILENAME, FileStopChannel, SignalStopChannel, StopChannel
from .transcript import TranscriptDocument, TranscriptRecord, session_dirname
from .transcription import TranscriptionEngine, build_engine
from .wav_sink import SinkIOError

LOG = logging.getLogger("transcriptor.session")


class SessionStatus(str, enum.Enum):
    IDLE = "idle"
    RECORDING = "recording"
    STOPPING = "stopping"


class AlreadyRecordingError(Exception):
    """start() while a session (here or in another process) is active."""


class NotRecordingError(Exception):
    """stop() with nothing to stop."""


class RecordingSession:
    def __init__(
        self,
        *,
        source: AudioSource,
        engine: TranscriptionEngine,
        transcripts_dir: Path,
        state_dir: Path,
        chunk_duration: Optional[float] = 30.0,
        target_sample_rate: int = CANONICAL_SAMPLE_RATE,
        max_concurrent_jobs: Optional[int] = 4,
        stall_timeout: Optional[float] = None,
        merge_enabled: bool = True,
        ffmpeg_path: str = "ffmpeg",
        delete_chunks_after_merge: bool = False,
        stop_poll_interval: float = 0.5,
        stop_channels: Optional[Iterable[StopChannel]] = None,
        on_record: Optional[Callable[[TranscriptRecord], None]] = None,
        now: Callable[[], datetime] = datetime.now,
    ):
        self.source = source
        self.engine = engine
        self.transcripts_dir = Path(transcripts_dir)
        self.state_dir = Path(state_dir)
        self.state_path = self.state_dir / STATE_FILENAME
        self.chunk_duration = chunk_duration
        self.target_sample_rate = int(target_sample_rate)
        self.max_concurrent_jobs = max_concurrent_jobs
        self.stall_timeout = stall_timeout
        self.merge_enabled = merge_enabled
        self.ffmpeg_path = ffmpeg_path
        self.delete_chunks_after_merge = delete_chunks_after_merge
        self.stop_poll_interval = max(0.01, float(stop_poll_interval))
        self.stop_file = FileStopChannel(self.state_dir / STOP_SIGNAL_FILENAME)
        if stop_channels is None:
            self.stop_channels: list[StopChannel] = [self.stop_file]
        else:
            self.stop_channels = list(stop_channels)
        self.on_record = on_record
        self._now = now

        self._lock = threading.Lock()
        self._status = SessionStatus.IDLE
        self._stop_requested = threading.Event()
        self._stop_reason: Optional[str] = None

        self.meeting_name: Optional[str] = None
        self.started_at: Optional[datetime] = None
        self.output_dir: Optional[Path] = None
        self.document: Optional[TranscriptDocument] = None
        self.rotator: Optional[ChunkRotator] = None
        self.sequencer: Optional[TranscriptionSequencer] = None
        self.last_report: Optional[FinalizeReport] = None

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any], **overrides: Any) -> "RecordingSession":
        session_cfg = cfg.get("session", {})
        paths_cfg = cfg.get("paths", {})
        tx_cfg = cfg.get("transcription", {})
        merge_cfg = cfg.get("merge", {})
        kwargs: dict[str, Any] = {
            "source": build_audio_source(cfg),
            "engine": build_engine(cfg),
            "transcripts_dir": expand_path(paths_cfg.get("transcripts_dir", "~/transcripts")),
            "state_dir": expand_path(paths_cfg.get("state_dir", "~/.transcriptor")),
            "chunk_duration": float(session_cfg.get("chunk_duration_seconds", 30)),
            "target_sample_rate": int(cfg.get("audio", {}).get("target_sample_rate", CANONICAL_SAMPLE_RATE)),
            "max_concurrent_jobs": int(tx_cfg.get("max_concurrent_jobs", 4) or 0) or None,
            "stall_timeout": float(tx_cfg.get("stall_timeout_seconds", 0) or 0) or None,
            "merge_enabled": bool(merge_cfg.get("enabled", True)),
            "ffmpeg_path": str(merge_cfg.get("ffmpeg_path", "ffmpeg")),
            "delete_chunks_after_merge": bool(merge_cfg.get("delete_chunks_after_merge", False)),
            "stop_poll_interval": float(session_cfg.get("stop_poll_interval", 0.5)),
        }
        kwargs.update(overrides)
        if "stop_channels" not in kwargs:
            state_dir = Path(kwargs["state_dir"])
            kwargs["stop_channels"] = [
                FileStopChannel(state_dir / STOP_SIGNAL_FILENAME),
                SignalStopChannel(),
            ]
        return cls(**kwargs)

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def elapsed_seconds(self) -> float:
        started = self.started_at
        if started is None:
            return 0.0
        return max(0.0, (self._now() - started).total_seconds())

    @property
    def stop_reason(self) -> Optional[str]:
        return self._stop_reason

    def start(self, meeting_name: str) -> Path:
        """Begin recording. Returns the session's output directory."""
        meeting_name = meeting_name.strip()
        if not meeting_name:
            raise ValueError("meeting name must not be empty")
        with self._lock:
            if self._status is not SessionStatus.IDLE:
                raise AlreadyRecordingError(f"already {self._status.value}: {self.meeting_name!r}")
            recovery = recover_stale_session(self.state_path)
            if recovery.stale:
                LOG.warning(
                    "recovered crashed session %r (%d incomplete chunk(s))",
                    recovery.meeting_name,
                    len(recovery.incomplete_chunks),
                )
            persisted = load_session_state(self.state_path)
            if persisted.recording:
                raise AlreadyRecordingError(
                    f"already recording {persisted.meeting_name!r} in pid {persisted.pid}"
                )
            self.engine.check_ready()

            started = self._now()
            output_dir = self._allocate_output_dir(meeting_name, started)
            document = TranscriptDocument.create(output_dir, meeting_name, started)
            sequencer = TranscriptionSequencer(
                self.engine,
                document,
                max_workers=self.max_concurrent_jobs,
                stall_timeout=self.stall_timeout,
                on_record=self.on_record,
            )
            rotator = ChunkRotator(
                self.source,
                FormatConverter(self.target_sample_rate),
                output_dir,
                chunk_duration=self.chunk_duration,
                submit=sequencer.submit,
                on_fatal=self._on_rotator_fatal,
            )

            self._stop_requested.clear()
            self._stop_reason = None
            for channel in self.stop_channels:
                channel.open()
            self.source.on_failure = self._on_source_failure
            stale = self.source.discard_backlog()
            if stale:
                LOG.debug("discarded %d bytes of audio left from a previous session", stale)
            try:
                rotator.start()
                self.source.start()
            except (AudioSourceError, SinkIOError):
                rotator.stop()
                self.source.stop()
                sequencer.close(wait=False)
                self._close_channels()
                self._discard_output_dir(output_dir)
                raise

            self.meeting_name = meeting_name
            self.started_at = started
            self.output_dir = output_dir
            self.document = document
            self.rotator = rotator
            self.sequencer = sequencer
            self.last_report = None
            self._status = SessionStatus.RECORDING
            self._persist(STATUS_RECORDING)
        LOG.info("recording %r into %s", meeting_name, output_dir)
        return output_dir

    def request_stop(self, reason: str = "requested") -> None:
        """Queue a stop; safe from any thread."""
        if self._stop_reason is None:
            self._stop_reason = reason
        self._stop_requested.set()

    def poll_stop_channels(self) -> bool:
        for channel in self.stop_channels:
            if channel.consume():
                self.request_stop(channel.name)
                return True
        return self._stop_requested.is_set()

    def run_until_stopped(self, timeout: Optional[float] = None) -> Optional[FinalizeReport]:
        """Block until a stop request arrives, then stop. Returns the finalize report."""
        if self._status is SessionStatus.IDLE:
            raise NotRecordingError("no recording in progress")
        waited = 0.0
        while not self.poll_stop_channels():
            if timeout is not None and waited >= timeout:
                self.request_stop("timeout")
                break
            self._stop_requested.wait(self.stop_poll_interval)
            waited += self.stop_poll_interval
        LOG.info("stop requested (%s)", self._stop_reason)
        return self.stop()

    def stop(self) -> Optional[FinalizeReport]:
        """Finalize the session. A call while already stopping returns None."""
        with self._lock:
            if self._status is SessionStatus.IDLE:
                raise NotRecordingError("no recording in progress")
            if self._status is SessionStatus.STOPPING:
                LOG.debug("stop already in progress")
                return None
            self._status = SessionStatus.STOPPING
            self._persist(STATUS_STOPPING)
            rotator, sequencer, document = self.rotator, self.sequencer, self.document
            started = self.started_at
        assert rotator is not None and sequencer is not None and document is not None
        assert started is not None

        report: Optional[FinalizeReport] = None
        try:
            rotator.stop()
            self.source.stop()
            ended = self._now()
            finalizer = Finalizer(
                rotator,
                sequencer,
                document,
                merge_enabled=self.merge_enabled,
                ffmpeg_path=self.ffmpeg_path,
                delete_chunks_after_merge=self.delete_chunks_after_merge,
            )
            report = finalizer.run(ended, (ended - started).total_seconds())
        finally:
            with self._lock:
                self._close_channels()
                try:
                    clear_session_state(self.state_path)
                except OSError:
                    LOG.exception("failed to clear %s", self.state_path)
                self.last_report = report
                self._status = SessionStatus.IDLE
        LOG.info("session %r saved to %s", self.meeting_name, self.output_dir)
        return report

    def _persist(self, status: str) -> None:
        store_session_state(
            self.state_path,
            SessionState(
                recording=True,
                meeting_name=self.meeting_name,
                start_time=self.started_at.isoformat() if self.started_at else None,
                output_dir=str(self.output_dir) if self.output_dir else None,
                pid=os.getpid(),
                status=status,
            ),
        )

    def _allocate_output_dir(self, meeting_name: str, started: datetime) -> Path:
        base = session_dirname(meeting_name, started)
        candidate = self.transcripts_dir / base
        suffix = 2
        while candidate.exists():
            candidate = self.transcripts_dir / f"{base}-{suffix}"
            suffix += 1
        candidate.mkdir(parents=True)
        return candidate

    def _discard_output_dir(self, output_dir: Path) -> None:
        try:
            shutil.rmtree(output_dir)
        except OSError as exc:
            LOG.warning("could not remove %s: %s", output_dir, exc)

    def _close_channels(self) -> None:
        for channel in self.stop_channels:
            try:
                channel.close()
            except Exception:
                LOG.exception("failed to close stop channel %s", channel.name)

    def _on_rotator_fatal(self, exc: Exception) -> None:
        self.request_stop(f"chunk file failure: {exc}")

    def _on_source_failure(self, exc: Exception) -> None:
        LOG.error("audio source failed: %s", exc)
        self.request_stop(f"audio source failure: {exc}")
