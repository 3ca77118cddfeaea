"""
sequencer.py
------------
Runs one transcription job per closed chunk and appends the results to the
transcript strictly in chunk order.

Jobs complete in any order. Finished results park in a reorder buffer keyed
by sequence and are drained only while the lowest outstanding sequence is
ready. A failed job still fills its slot (as a visible gap) so it never
blocks later chunks. With a stall timeout configured, a job that has been
running too long while later results wait is given up on; its late result is
logged and discarded.
"""
from __future__ import annotations

import collections
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional

from .chunks import Chunk, ChunkState
from .transcript import TranscriptDocument, TranscriptRecord
from .transcription import EngineError, TranscriptionEngine

LOG = logging.getLogger("transcriptor.sequencer")

STALL_CHECK_INTERVAL = 0.25


class TranscriptionSequencer:
    def __init__(
        self,
        engine: TranscriptionEngine,
        document: TranscriptDocument,
        *,
        max_workers: Optional[int] = 4,
        stall_timeout: Optional[float] = None,
        on_record: Optional[Callable[[TranscriptRecord], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.engine = engine
        self.document = document
        self.stall_timeout = stall_timeout if stall_timeout and stall_timeout > 0 else None
        self.on_record = on_record
        self._clock = clock
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers if max_workers and max_workers > 0 else None,
            thread_name_prefix="transcribe",
        )
        self._cond = threading.Condition()
        self._outstanding: collections.deque[int] = collections.deque()
        self._ready: dict[int, TranscriptRecord] = {}
        self._running: dict[int, tuple[Chunk, float]] = {}
        self._abandoned: set[int] = set()
        self._given_up: list[int] = []
        self._last_submitted = 0
        self._failed: list[int] = []
        self._closed = False

    @property
    def failed_sequences(self) -> list[int]:
        with self._cond:
            return list(self._failed)

    @property
    def abandoned_sequences(self) -> list[int]:
        """Chunks given up on after the stall timeout, in order."""
        with self._cond:
            return list(self._given_up)

    @property
    def pending(self) -> int:
        with self._cond:
            return len(self._outstanding)

    def submit(self, chunk: Chunk) -> None:
        with self._cond:
            if self._closed:
                raise RuntimeError("sequencer is closed")
            if chunk.sequence <= self._last_submitted:
                raise ValueError(
                    f"chunk {chunk.sequence} submitted after {self._last_submitted}"
                )
            self._last_submitted = chunk.sequence
            self._outstanding.append(chunk.sequence)

            if chunk.state is ChunkState.FAILED:
                LOG.warning("chunk %d has no usable audio, leaving a gap", chunk.sequence)
                self._finish(chunk, "", failed=True)
                return

            chunk.state = ChunkState.TRANSCRIBING
            self._running[chunk.sequence] = (chunk, self._clock())
            self._check_stalls()
        self._executor.submit(self._job, chunk)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until every submitted chunk has been appended. False on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                self._check_stalls(force=True)
                if not self._outstanding:
                    return True
                wait_for = None
                if deadline is not None:
                    wait_for = deadline - time.monotonic()
                    if wait_for <= 0:
                        LOG.warning(
                            "gave up waiting for %d transcription(s)", len(self._outstanding)
                        )
                        return False
                if self.stall_timeout is not None:
                    wait_for = STALL_CHECK_INTERVAL if wait_for is None else min(wait_for, STALL_CHECK_INTERVAL)
                self._cond.wait(wait_for)

    def close(self, wait: bool = True) -> None:
        """Shut the worker pool down. Never joins a job that was given up on."""
        with self._cond:
            self._closed = True
            if wait and self._abandoned:
                LOG.warning(
                    "not waiting for %d abandoned transcription(s): %s",
                    len(self._abandoned),
                    sorted(self._abandoned),
                )
                wait = False
        self._executor.shutdown(wait=wait, cancel_futures=not wait)

    def _job(self, chunk: Chunk) -> None:
        failed = False
        try:
            text = self.engine.transcribe(chunk.path)
        except EngineError as exc:
            LOG.warning("transcription of chunk %d failed: %s", chunk.sequence, exc)
            chunk.error = str(exc)
            text, failed = "", True
        except Exception as exc:
            LOG.exception("transcription of chunk %d raised", chunk.sequence)
            chunk.error = str(exc)
            text, failed = "", True

        with self._cond:
            if chunk.sequence in self._abandoned:
                self._abandoned.discard(chunk.sequence)
                LOG.warning("discarding late result for chunk %d", chunk.sequence)
                self._cond.notify_all()
                return
            self._running.pop(chunk.sequence, None)
            self._finish(chunk, text, failed=failed)
            self._check_stalls()

    # Everything below runs with self._cond held.

    def _finish(self, chunk: Chunk, text: str, *, failed: bool) -> None:
        if failed:
            chunk.mark_failed(chunk.error or "transcription failed", audio_ok=True)
        else:
            chunk.state = ChunkState.TRANSCRIBED
            if not text.strip():
                LOG.info("chunk %d was silent", chunk.sequence)
        self._ready[chunk.sequence] = TranscriptRecord(
            sequence=chunk.sequence,
            offset_seconds=chunk.offset_seconds,
            text=text.strip(),
            failed=failed,
        )
        self._drain()
        self._cond.notify_all()

    def _drain(self) -> None:
        while self._outstanding and self._outstanding[0] in self._ready:
            record = self._ready.pop(self._outstanding.popleft())
            try:
                self.document.append(record)
            except OSError:
                LOG.exception("failed to append chunk %d to %s", record.sequence, self.document.path)
            if record.failed:
                self._failed.append(record.sequence)
            if self.on_record is not None:
                try:
                    self.on_record(record)
                except Exception:
                    LOG.exception("on_record callback raised")

    def _check_stalls(self, force: bool = False) -> None:
        if self.stall_timeout is None:
            return
        while self._outstanding:
            head = self._outstanding[0]
            entry = self._running.get(head)
            if entry is None:
                return
            if not force and not self._ready:
                return
            chunk, started = entry
            if self._clock() - started < self.stall_timeout:
                return
            LOG.error(
                "chunk %d still transcribing after %.0fs, leaving a gap",
                head,
                self.stall_timeout,
            )
            self._running.pop(head, None)
            self._abandoned.add(head)
            self._given_up.append(head)
            chunk.error = "transcription stalled"
            self._finish(chunk, "", failed=True)
