from __future__ import annotations

import os
import subprocess
import sys
import threading
from datetime import datetime, timedelta
from pathlib import Path

import numpy as np
import pytest

from transcriptor import config as config_module
from transcriptor.audio_convert import SourceFormat
from transcriptor.audio_source import AudioSource
from transcriptor.transcription import EngineError, TranscriptionEngine


class FakeAudioSource(AudioSource):
    """Audio source driven synchronously by the test."""

    def __init__(self, fmt: SourceFormat | None = None, *, backlog_seconds: float = 10.0):
        super().__init__(fmt or SourceFormat(32000, 2, "s16"), backlog_seconds=backlog_seconds)
        self.started = False
        self.stopped = False
        self.fail_on_start: Exception | None = None

    def start(self) -> None:
        if self.fail_on_start is not None:
            raise self.fail_on_start
        self.started = True

    def stop(self) -> None:
        self.stopped = True

    def feed(self, seconds: float, *, block_seconds: float = 0.5, freq: float = 440.0) -> int:
        """Deliver a tone lasting ``seconds``; returns the number of source frames."""
        fmt = self.source_format
        total = int(round(seconds * fmt.sample_rate))
        block = max(1, int(block_seconds * fmt.sample_rate))
        sent = 0
        while sent < total:
            count = min(block, total - sent)
            t = (np.arange(sent, sent + count) / fmt.sample_rate).astype(np.float64)
            mono = (0.25 * np.sin(2 * np.pi * freq * t) * 32767).astype("<i2")
            frames = np.repeat(mono[:, None], fmt.channels, axis=1)
            self.deliver(frames.tobytes())
            sent += count
        return total

    def fail(self, exc: Exception) -> None:
        self._report_failure(exc)


class FakeEngine(TranscriptionEngine):
    name = "fake"

    def __init__(self, *, fail: set[int] | None = None, gates: dict[int, threading.Event] | None = None):
        self.fail = set(fail or ())
        self.gates = gates or {}
        self.calls: list[int] = []
        self.ready_error: Exception | None = None
        self._lock = threading.Lock()

    def check_ready(self) -> None:
        if self.ready_error is not None:
            raise self.ready_error

    def transcribe(self, path: Path) -> str:
        sequence = int(Path(path).stem.split("_")[-1])
        with self._lock:
            self.calls.append(sequence)
        gate = self.gates.get(sequence)
        if gate is not None:
            gate.wait(10)
        if sequence in self.fail:
            raise EngineError(f"engine crashed on chunk {sequence}")
        return f"words from chunk {sequence}"


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 10, 17, 9, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def fake_source():
    return FakeAudioSource()


@pytest.fixture
def fake_engine():
    return FakeEngine()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def ffmpeg_stub(tmp_path):
    """An executable that behaves like ``ffmpeg -f concat ... out`` for tests.

    It concatenates the PCM payload of every listed WAV after the first
    header, and leaves a copy of the concat list next to the output.
    """
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    script = bin_dir / "ffmpeg"
    script.write_text(
        f"#!{sys.executable}\n"
        "import sys\n"
        "from pathlib import Path\n"
        "args = sys.argv[1:]\n"
        "listing = Path(args[args.index('-i') + 1]).read_text()\n"
        "out = Path(args[-1])\n"
        "Path(str(out) + '.list').write_text(listing)\n"
        "files = [line[6:-1] for line in listing.splitlines() if line.startswith('file ')]\n"
        "data = b''.join(Path(f).read_bytes()[44:] for f in files)\n"
        "header = Path(files[0]).read_bytes()[:44]\n"
        "out.write_bytes(header + data)\n",
        encoding="utf-8",
    )
    script.chmod(0o755)
    return script


@pytest.fixture
def isolated_config(monkeypatch, tmp_path):
    """Point config discovery at an empty temp home and reset the cache."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.chdir(tmp_path)
    for key in (
        "TRANSCRIPTOR_CONFIG",
        "DEV",
        "AUDIO_DEV",
        "AUDIO_BACKEND",
        "AUDIO_SAMPLE_RATE",
        "AUDIO_CHANNELS",
        "CHUNK_DURATION_SECONDS",
        "TRANSCRIPTS_DIR",
        "STATE_DIR",
        "WHISPER_MODEL",
        "TRANSCRIPTION_ENGINE",
        "VOSK_MODEL_PATH",
        "LOG_LEVEL",
        "MERGE_ENABLED",
    ):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr(config_module, "_cfg_cache", None, raising=False)
    monkeypatch.setattr(config_module, "_active_config_path", None, raising=False)
    monkeypatch.setattr(config_module, "_primary_config_path", None, raising=False)
    return home


@pytest.fixture
def stale_pid():
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    return proc.pid


@pytest.fixture
def live_pid():
    return os.getpid()


@pytest.fixture
def source_factory():
    return FakeAudioSource


@pytest.fixture
def engine_factory():
    return FakeEngine
