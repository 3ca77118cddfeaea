"""
Speech-to-text engine boundary.

Every engine runs out of process: whisper.cpp is a native binary, Vosk runs
in a worker interpreter (``python -m transcriptor.transcription``) so a model
crash or a leak never takes the recorder down with it.
"""
from __future__ import annotations

import argparse
import contextlib
import importlib.util
import json
import logging
import os
import subprocess
import sys
import wave
from pathlib import Path
from typing import Any, Mapping, Sequence

from .audio_convert import (
    CANONICAL_SAMPLE_RATE,
    SourceFormat,
    StreamingResampler,
    decode_to_float,
    downmix_to_mono,
    float_to_pcm16,
)
from .config import expand_path

LOG = logging.getLogger("transcriptor.transcription")

_WAV_SAMPLE_TYPES = {1: "u8", 2: "s16", 4: "s32"}


class EngineError(Exception):
    """A single transcription job failed."""


class EngineUnavailableError(EngineError):
    """The engine binary, worker or model is missing; fatal at session start."""


class TranscriptionEngine:
    name = "engine"

    def check_ready(self) -> None:
        """Raise EngineUnavailableError when transcribe() cannot possibly work."""

    def transcribe(self, path: Path) -> str:
        raise NotImplementedError


class CommandEngine(TranscriptionEngine):
    """Base for engines that shell out once per chunk."""

    def __init__(self, *, timeout: float | None = 600.0):
        self.timeout = timeout if timeout and timeout > 0 else None

    def command(self, path: Path) -> list[str]:
        raise NotImplementedError

    def parse_output(self, stdout: str) -> str:
        return " ".join(line.strip() for line in stdout.splitlines() if line.strip())

    def transcribe(self, path: Path) -> str:
        cmd = self.command(Path(path))
        LOG.debug("running %s", " ".join(cmd))
        try:
            proc = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            raise EngineError(f"{cmd[0]} not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise EngineError(f"{self.name} timed out after {self.timeout}s on {path}") from exc
        except OSError as exc:
            raise EngineError(f"failed to run {cmd[0]}: {exc}") from exc
        if proc.returncode != 0:
            tail = (proc.stderr or "").strip().splitlines()[-3:]
            raise EngineError(
                f"{self.name} exited with code {proc.returncode}: {' | '.join(tail)}"
            )
        return self.parse_output(proc.stdout or "")


class WhisperCppEngine(CommandEngine):
    name = "whisper_cpp"

    def __init__(
        self,
        binary: Path,
        model_path: Path,
        *,
        language: str = "en",
        threads: int = 4,
        timeout: float | None = 600.0,
    ):
        super().__init__(timeout=timeout)
        self.binary = Path(binary)
        self.model_path = Path(model_path)
        self.language = language
        self.threads = int(threads)

    def check_ready(self) -> None:
        if not self.binary.is_file() or not os.access(self.binary, os.X_OK):
            raise EngineUnavailableError(f"whisper.cpp binary not found at {self.binary}")
        if not self.model_path.is_file():
            raise EngineUnavailableError(f"whisper model not found at {self.model_path}")

    def command(self, path: Path) -> list[str]:
        return [
            str(self.binary),
            "-m", str(self.model_path),
            "-f", str(path),
            "--no-timestamps",
            "--no-prints",
            "-l", self.language,
            "--threads", str(self.threads),
        ]


class VoskEngine(CommandEngine):
    name = "vosk"

    def __init__(
        self,
        model_path: Path,
        *,
        target_sample_rate: int = CANONICAL_SAMPLE_RATE,
        timeout: float | None = 600.0,
        python: str | None = None,
    ):
        super().__init__(timeout=timeout)
        self.model_path = Path(model_path)
        self.target_sample_rate = int(target_sample_rate)
        self.python = python or sys.executable

    def check_ready(self) -> None:
        if importlib.util.find_spec("vosk") is None:
            raise EngineUnavailableError("vosk is not installed (pip install 'transcriptor[vosk]')")
        if not self.model_path.is_dir():
            raise EngineUnavailableError(f"Vosk model not found at {self.model_path}")

    def command(self, path: Path) -> list[str]:
        return [
            self.python,
            "-m", "transcriptor.transcription",
            str(path),
            "--engine", "vosk",
            "--model", str(self.model_path),
            "--rate", str(self.target_sample_rate),
        ]

    def parse_output(self, stdout: str) -> str:
        try:
            payload = json.loads(stdout)
        except json.JSONDecodeError as exc:
            raise EngineError(f"vosk worker returned invalid JSON: {stdout[:200]!r}") from exc
        return str(payload.get("text", "")).strip()


def whisper_model_path(section: Mapping[str, Any]) -> Path:
    model_dir = expand_path(section.get("whisper_model_dir", "~/.transcriptor/bin/models"))
    return model_dir / f"ggml-{section.get('model', 'large-v3-turbo')}.bin"


def build_engine(cfg: Mapping[str, Any]) -> TranscriptionEngine:
    section = cfg.get("transcription", {})
    engine = str(section.get("engine", "whisper_cpp")).strip().lower()
    timeout = float(section.get("timeout_seconds", 600.0) or 0)
    if engine in {"whisper_cpp", "whisper", "whisper-cpp"}:
        return WhisperCppEngine(
            expand_path(section.get("whisper_bin", "~/.transcriptor/bin/whisper-cpp/main")),
            whisper_model_path(section),
            language=str(section.get("language", "en")),
            threads=int(section.get("threads", 4)),
            timeout=timeout,
        )
    if engine == "vosk":
        return VoskEngine(
            expand_path(section.get("vosk_model_path", "")),
            target_sample_rate=int(cfg.get("audio", {}).get("target_sample_rate", CANONICAL_SAMPLE_RATE)),
            timeout=timeout,
        )
    raise EngineUnavailableError(f"Unsupported transcription engine: {engine}")


# --- Vosk worker (runs in the child interpreter) ---------------------------


def _load_vosk_model(model_path: Path):  # pragma: no cover - exercised via stub
    from vosk import Model, SetLogLevel  # type: ignore[import-not-found]

    SetLogLevel(-1)
    return Model(str(model_path))


def _transcribe_with_vosk(
    source: Path,
    *,
    model_path: Path,
    target_sample_rate: int = CANONICAL_SAMPLE_RATE,
) -> tuple[str, dict[str, Any]]:
    try:
        model = _load_vosk_model(model_path)
    except Exception as exc:  # pragma: no cover - depends on installed vosk
        raise EngineError(f"Failed to load Vosk model: {exc}") from exc

    target_sample_rate = max(8000, int(target_sample_rate) if target_sample_rate else 16000)

    from vosk import KaldiRecognizer  # type: ignore[import-not-found]

    recognizer = KaldiRecognizer(model, float(target_sample_rate))

    try:
        wav_file = wave.open(str(source), "rb")
    except (OSError, EOFError, wave.Error) as exc:
        raise EngineError(f"Cannot read {source}: {exc}") from exc

    with contextlib.closing(wav_file):
        channels = wav_file.getnchannels()
        sample_width = wav_file.getsampwidth()
        input_rate = wav_file.getframerate()
        total_frames = wav_file.getnframes()

        sample_type = _WAV_SAMPLE_TYPES.get(sample_width)
        if sample_type is None:
            raise EngineError(f"Unsupported WAV sample width: {sample_width}")
        if input_rate <= 0:
            raise EngineError("Invalid WAV sample rate")

        fmt = SourceFormat(input_rate, channels, sample_type)
        resampler = StreamingResampler(input_rate, target_sample_rate)
        while True:
            block = wav_file.readframes(4000)
            if not block:
                break
            mono = resampler.process(downmix_to_mono(decode_to_float(block, fmt)))
            if mono.size:
                recognizer.AcceptWaveform(float_to_pcm16(mono))
        tail = resampler.flush()
        if tail.size:
            recognizer.AcceptWaveform(float_to_pcm16(tail))

    try:
        result = json.loads(recognizer.FinalResult())
    except json.JSONDecodeError as exc:
        raise EngineError("Recognizer returned invalid JSON") from exc

    text = str(result.get("text", "")).strip()
    duration = total_frames / float(input_rate) if total_frames > 0 else 0.0
    metadata: dict[str, Any] = {
        "input_sample_rate": int(input_rate),
        "target_sample_rate": int(target_sample_rate),
        "duration_seconds": float(duration),
    }
    return text, metadata


def _parse_cli_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Transcribe one audio chunk and print JSON")
    parser.add_argument("source", help="Path to the chunk WAV file")
    parser.add_argument("--engine", choices=["vosk"], default="vosk")
    parser.add_argument("--model", required=True, help="Vosk model directory")
    parser.add_argument("--rate", type=int, default=CANONICAL_SAMPLE_RATE)
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_cli_args(argv)
    source = Path(args.source)
    if not source.exists():
        print(f"[transcription] ERROR: source audio not found: {source}", file=sys.stderr, flush=True)
        return 1
    try:
        text, metadata = _transcribe_with_vosk(
            source,
            model_path=Path(args.model),
            target_sample_rate=args.rate,
        )
    except EngineError as exc:
        print(f"[transcription] ERROR: {exc}", file=sys.stderr, flush=True)
        return 1
    except Exception as exc:  # pragma: no cover - unexpected failure
        print(f"[transcription] ERROR: unexpected failure: {exc}", file=sys.stderr, flush=True)
        return 1
    payload = {"engine": args.engine, "text": text}
    payload.update(metadata)
    print(json.dumps(payload), flush=True)
    return 0


if __name__ == "__main__":
    sys.exit(main())
