"""Clean up after a recorder process that died without finalizing."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .chunks import CHUNK_DIRNAME, INCOMPLETE_SUFFIX
from .session_state import clear_session_state, is_stale, load_session_state
from .wav_sink import is_incomplete

LOG = logging.getLogger("transcriptor.recovery")


@dataclass
class RecoveryReport:
    """Summary of recovery actions performed before a new session."""

    stale: bool = False
    meeting_name: Optional[str] = None
    output_dir: Optional[Path] = None
    incomplete_chunks: list[Path] = field(default_factory=list)


def _quarantine_incomplete_chunks(output_dir: Path, report: RecoveryReport) -> None:
    chunks_dir = output_dir / CHUNK_DIRNAME
    if not chunks_dir.is_dir():
        return
    for wav_path in sorted(chunks_dir.glob("chunk_*.wav")):
        if wav_path.name.endswith(INCOMPLETE_SUFFIX) or not is_incomplete(wav_path):
            continue
        target = wav_path.with_name(wav_path.stem + INCOMPLETE_SUFFIX)
        try:
            wav_path.rename(target)
        except OSError as exc:
            LOG.warning("failed to rename incomplete chunk %s: %r", wav_path, exc)
            continue
        report.incomplete_chunks.append(target)
        LOG.warning("chunk %s was never finalized; kept as %s", wav_path.name, target.name)


def recover_stale_session(state_path: Path) -> RecoveryReport:
    """Reset a state record left behind by a crashed recorder.

    Returns an empty report when the record is idle or its owner is alive.
    """
    state = load_session_state(state_path)
    report = RecoveryReport()
    if not is_stale(state):
        return report

    report.stale = True
    report.meeting_name = state.meeting_name
    LOG.warning(
        "recorder pid %s for %r is gone; recovering its session",
        state.pid,
        state.meeting_name,
    )
    if state.output_dir:
        report.output_dir = Path(state.output_dir)
        _quarantine_incomplete_chunks(report.output_dir, report)
    clear_session_state(state_path)
    return report
