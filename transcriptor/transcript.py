"""
transcript.py
-------------
Markdown transcript with a YAML front matter block.

    ---
    title: Standup
    date: '2026-10-17'
    started: 9:00 AM
    ended: ''
    duration: ''
    ---

    # Standup

    **0:00** first chunk text

    **0:30** _[transcription unavailable]_

Records are only ever appended; finalize() rewrites the front matter once the
session has ended.
"""
from __future__ import annotations

import os
import re
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import yaml

TRANSCRIPT_FILENAME = "transcript.md"
GAP_MARKER = "_[transcription unavailable]_"
_FRONT_MATTER_KEYS = ("title", "date", "started", "ended", "duration")


def format_timestamp(seconds: float) -> str:
    """``m:ss`` below an hour, ``h:mm:ss`` above."""
    total = max(0, int(seconds))
    hours, rem = divmod(total, 3600)
    mins, secs = divmod(rem, 60)
    if hours:
        return f"{hours}:{mins:02d}:{secs:02d}"
    return f"{mins}:{secs:02d}"


def format_clock(moment: datetime) -> str:
    hour = moment.hour % 12 or 12
    suffix = "AM" if moment.hour < 12 else "PM"
    return f"{hour}:{moment.minute:02d} {suffix}"


def slugify(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-") or "meeting"


def session_dirname(title: str, started: datetime) -> str:
    return f"{started.date().isoformat()}_{slugify(title)}"


@dataclass(frozen=True)
class TranscriptRecord:
    sequence: int
    offset_seconds: float
    text: str
    failed: bool = False

    @property
    def visible(self) -> bool:
        return self.failed or bool(self.text.strip())

    def render(self) -> str:
        body = GAP_MARKER if self.failed else self.text.strip()
        return f"**{format_timestamp(self.offset_seconds)}** {body}\n\n"


def _render_front_matter(header: dict[str, Any]) -> str:
    dumped = yaml.safe_dump(
        {key: header.get(key, "") for key in _FRONT_MATTER_KEYS},
        sort_keys=False,
        default_flow_style=False,
        allow_unicode=True,
    )
    return f"---\n{dumped}---\n"


def split_front_matter(text: str) -> tuple[dict[str, Any], str]:
    """Return ``(header, body)``; header is empty when the block is missing."""
    if not text.startswith("---\n"):
        return {}, text
    end = text.find("\n---\n", 4)
    if end < 0:
        return {}, text
    header = yaml.safe_load(text[4:end + 1]) or {}
    if not isinstance(header, dict):
        header = {}
    return header, text[end + len("\n---\n"):]


class TranscriptDocument:
    def __init__(self, path: Path, title: str, started: datetime):
        self.path = Path(path)
        self.title = title
        self.started = started
        self.header: dict[str, Any] = {
            "title": title,
            "date": started.date().isoformat(),
            "started": format_clock(started),
            "ended": "",
            "duration": "",
        }
        self._records: list[TranscriptRecord] = []
        self._lock = threading.Lock()

    @classmethod
    def create(cls, output_dir: Path, title: str, started: datetime) -> "TranscriptDocument":
        doc = cls(Path(output_dir) / TRANSCRIPT_FILENAME, title, started)
        doc.path.parent.mkdir(parents=True, exist_ok=True)
        _atomic_write_text(doc.path, _render_front_matter(doc.header) + f"\n# {title}\n\n")
        return doc

    @property
    def records(self) -> list[TranscriptRecord]:
        with self._lock:
            return list(self._records)

    @property
    def last_sequence(self) -> int:
        with self._lock:
            return self._records[-1].sequence if self._records else 0

    def append(self, record: TranscriptRecord) -> None:
        with self._lock:
            if self._records and record.sequence <= self._records[-1].sequence:
                raise ValueError(
                    f"record {record.sequence} appended after {self._records[-1].sequence}"
                )
            self._records.append(record)
            if record.visible:
                with self.path.open("a", encoding="utf-8") as handle:
                    handle.write(record.render())

    def finalize(self, ended: datetime, duration_seconds: float | None = None) -> None:
        if duration_seconds is None:
            duration_seconds = (ended - self.started).total_seconds()
        with self._lock:
            self.header["ended"] = format_clock(ended)
            self.header["duration"] = format_timestamp(duration_seconds)
            text = self.path.read_text(encoding="utf-8")
            _, body = split_front_matter(text)
            _atomic_write_text(self.path, _render_front_matter(self.header) + body)


def _atomic_write_text(path: Path, text: str) -> None:
    tmp = path.with_suffix(path.suffix + ".tmp")
    with tmp.open("w", encoding="utf-8") as handle:
        handle.write(text)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp, path)
