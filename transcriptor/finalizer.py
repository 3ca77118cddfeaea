"""
finalizer.py
------------
End-of-session work, in order:

1. flush the partial chunk through the rotator,
2. wait for the sequencer to append every outstanding transcription,
3. rewrite the transcript front matter (ended, duration),
4. concatenate chunks with intact audio into ``audio.wav`` via ffmpeg.

A merge failure is logged and reported; the chunk files stay in place.
"""
from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

from .chunks import Chunk
from .ffmpeg_io import concat_command, concat_list_text
from .rotator import ChunkRotator
from .sequencer import TranscriptionSequencer
from .transcript import TranscriptDocument

LOG = logging.getLogger("transcriptor.finalizer")

MERGED_FILENAME = "audio.wav"
CONCAT_LIST_FILENAME = "chunks.txt"


class MergeError(Exception):
    """The combined audio artifact could not be produced."""


@dataclass
class FinalizeReport:
    output_dir: Path
    transcript_path: Path
    chunk_count: int
    records: int
    duration_seconds: float
    failed_sequences: list[int] = field(default_factory=list)
    merged_path: Optional[Path] = None
    merge_error: Optional[str] = None
    drained: bool = True


def merge_chunks(
    paths: Iterable[Path],
    output_path: Path,
    *,
    ffmpeg_path: str = "ffmpeg",
    timeout: float | None = 300.0,
) -> Path:
    paths = [Path(p) for p in paths]
    if not paths:
        raise MergeError("no chunk audio to merge")
    output_path = Path(output_path)
    list_path = output_path.parent / CONCAT_LIST_FILENAME
    list_path.write_text(concat_list_text(paths), encoding="utf-8")
    cmd = concat_command(list_path, output_path, ffmpeg_path=ffmpeg_path)
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout, check=False)
    except FileNotFoundError as exc:
        raise MergeError(f"{ffmpeg_path} not available: {exc}") from exc
    except (OSError, subprocess.TimeoutExpired) as exc:
        raise MergeError(f"ffmpeg concat failed: {exc}") from exc
    finally:
        list_path.unlink(missing_ok=True)
    if proc.returncode != 0:
        tail = (proc.stderr or "").strip().splitlines()[-3:]
        raise MergeError(f"ffmpeg concat exited with code {proc.returncode}: {' | '.join(tail)}")
    if not output_path.exists():
        raise MergeError(f"ffmpeg reported success but {output_path} is missing")
    return output_path


def mergeable_chunks(chunks: Iterable[Chunk]) -> list[Path]:
    """Chunk files with intact audio, in sequence order."""
    return [
        chunk.path
        for chunk in sorted(chunks, key=lambda c: c.sequence)
        if chunk.audio_ok and chunk.data_bytes > 0 and chunk.path.exists()
    ]


class Finalizer:
    def __init__(
        self,
        rotator: ChunkRotator,
        sequencer: TranscriptionSequencer,
        document: TranscriptDocument,
        *,
        merge_enabled: bool = True,
        ffmpeg_path: str = "ffmpeg",
        delete_chunks_after_merge: bool = False,
        drain_timeout: float | None = None,
    ):
        self.rotator = rotator
        self.sequencer = sequencer
        self.document = document
        self.merge_enabled = merge_enabled
        self.ffmpeg_path = ffmpeg_path
        self.delete_chunks_after_merge = delete_chunks_after_merge
        self.drain_timeout = drain_timeout

    def run(self, ended: datetime, duration_seconds: float) -> FinalizeReport:
        chunks = self.rotator.stop()
        LOG.info("recording stopped after %d chunk(s); waiting for transcriptions", len(chunks))

        drained = self.sequencer.wait_idle(self.drain_timeout)
        self.sequencer.close(wait=drained)

        try:
            self.document.finalize(ended, duration_seconds)
        except OSError:
            LOG.exception("failed to finalize %s", self.document.path)

        report = FinalizeReport(
            output_dir=self.rotator.output_dir,
            transcript_path=self.document.path,
            chunk_count=len(chunks),
            records=len([r for r in self.document.records if r.text and not r.failed]),
            duration_seconds=duration_seconds,
            failed_sequences=self.sequencer.failed_sequences,
            drained=drained,
        )

        if self.merge_enabled:
            paths = mergeable_chunks(chunks)
            try:
                report.merged_path = merge_chunks(
                    paths,
                    self.rotator.output_dir / MERGED_FILENAME,
                    ffmpeg_path=self.ffmpeg_path,
                )
            except MergeError as exc:
                report.merge_error = str(exc)
                LOG.warning("audio merge skipped, chunk files kept: %s", exc)
            else:
                LOG.info("merged %d chunk(s) into %s", len(paths), report.merged_path)
                if self.delete_chunks_after_merge:
                    self._delete(paths)
        return report

    def _delete(self, paths: list[Path]) -> None:
        for path in paths:
            try:
                path.unlink()
            except OSError as exc:
                LOG.warning("could not delete %s: %s", path, exc)
