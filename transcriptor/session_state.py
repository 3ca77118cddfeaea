"""Persisted session record shared with external controllers (status, stop)."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

STATE_FILENAME = "state.json"
STATUS_RECORDING = "recording"
STATUS_STOPPING = "stopping"


@dataclass(slots=True)
class SessionState:
    """Either idle (``recording=False``) or a live recording."""

    recording: bool = False
    meeting_name: str | None = None
    start_time: str | None = None
    output_dir: str | None = None
    pid: int | None = None
    status: str | None = None

    @property
    def started_at(self) -> datetime | None:
        if not self.start_time:
            return None
        try:
            return datetime.fromisoformat(self.start_time)
        except ValueError:
            return None

    def to_payload(self) -> dict[str, Any]:
        if not self.recording:
            return {"recording": False}
        return {
            "recording": True,
            "meeting_name": self.meeting_name,
            "start_time": self.start_time,
            "output_dir": self.output_dir,
            "pid": self.pid,
            "status": self.status or STATUS_RECORDING,
        }


def load_session_state(path: str | os.PathLike[str]) -> SessionState:
    candidate = Path(path)
    try:
        with candidate.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
    except (FileNotFoundError, json.JSONDecodeError, OSError):
        return SessionState()
    if not isinstance(data, dict) or not data.get("recording"):
        return SessionState()

    pid_raw = data.get("pid")
    return SessionState(
        recording=True,
        meeting_name=data.get("meeting_name") if isinstance(data.get("meeting_name"), str) else None,
        start_time=data.get("start_time") if isinstance(data.get("start_time"), str) else None,
        output_dir=data.get("output_dir") if isinstance(data.get("output_dir"), str) else None,
        pid=int(pid_raw) if isinstance(pid_raw, int) else None,
        status=str(data.get("status") or STATUS_RECORDING),
    )


def store_session_state(path: str | os.PathLike[str], state: SessionState) -> SessionState:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = target.with_suffix(target.suffix + f".{os.getpid()}.tmp")
    with tmp_path.open("w", encoding="utf-8") as handle:
        json.dump(state.to_payload(), handle, indent=2)
        handle.write("\n")
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, target)
    return state


def clear_session_state(path: str | os.PathLike[str]) -> SessionState:
    return store_session_state(path, SessionState())


def pid_alive(pid: int | None) -> bool:
    if not pid or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # exists, owned by someone else
        return True
    except OSError:
        return False
    return True


def is_stale(state: SessionState) -> bool:
    """A recording record whose owning process is gone."""
    return state.recording and not pid_alive(state.pid)
