"""
Out-of-band stop requests.

A StopChannel is anything another actor can use to ask the recording process
to stop: a marker file dropped by ``transcriptor stop`` in another terminal,
or SIGINT/SIGTERM delivered to this process. The session polls every channel
and consumes a request exactly once.
"""
from __future__ import annotations

import abc
import logging
import os
import signal
import threading
from pathlib import Path
from typing import Iterable, Optional

LOG = logging.getLogger("transcriptor.stop_channel")

STOP_SIGNAL_FILENAME = "stop-signal"


class StopChannel(abc.ABC):
    name = "stop"

    @abc.abstractmethod
    def request(self) -> None:
        """Ask for a stop."""

    @abc.abstractmethod
    def poll(self) -> bool:
        """True while a request is pending. Does not consume it."""

    @abc.abstractmethod
    def consume(self) -> bool:
        """Take the pending request. True only for the caller that took it."""

    def open(self) -> None:
        pass

    def close(self) -> None:
        pass


class FileStopChannel(StopChannel):
    name = "stop-file"

    def __init__(self, path: str | os.PathLike[str]):
        self.path = Path(path)

    def open(self) -> None:
        # A marker left over from an earlier session must not stop this one.
        if self.consume():
            LOG.info("removed stale stop marker %s", self.path)

    def request(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(f".{os.getpid()}.tmp")
        tmp.write_text(f"{os.getpid()}\n", encoding="utf-8")
        os.replace(tmp, self.path)

    def poll(self) -> bool:
        return self.path.exists()

    def consume(self) -> bool:
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        return True


class SignalStopChannel(StopChannel):
    """SIGINT/SIGTERM as a stop channel. Handlers only set a flag."""

    name = "signal"

    def __init__(self, signals: Iterable[int] = (signal.SIGINT, signal.SIGTERM)):
        self.signals = tuple(signals)
        # plain flag: a handler must not take a lock the main thread may hold
        self._requested = False
        self._previous: dict[int, object] = {}
        self.last_signal: Optional[int] = None

    def open(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            LOG.debug("not on the main thread; signal handlers not installed")
            return
        for signum in self.signals:
            self._previous[signum] = signal.getsignal(signum)
            signal.signal(signum, self._handle)

    def close(self) -> None:
        for signum, handler in self._previous.items():
            signal.signal(signum, handler)
        self._previous.clear()

    def _handle(self, signum, _frame) -> None:
        self.last_signal = signum
        self._requested = True

    def request(self) -> None:
        self._requested = True

    def poll(self) -> bool:
        return self._requested

    def consume(self) -> bool:
        if not self._requested:
            return False
        self._requested = False
        return True
