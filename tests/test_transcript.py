from __future__ import annotations

from datetime import datetime

import pytest

from transcriptor.transcript import (
    GAP_MARKER,
    TranscriptDocument,
    TranscriptRecord,
    format_clock,
    format_timestamp,
    session_dirname,
    slugify,
    split_front_matter,
)


@pytest.mark.parametrize(
    "seconds,expected",
    [(0, "0:00"), (5.9, "0:05"), (95, "1:35"), (600, "10:00"), (3725, "1:02:05")],
)
def test_format_timestamp(seconds, expected):
    assert format_timestamp(seconds) == expected


def test_format_clock_uses_twelve_hour_time():
    assert format_clock(datetime(2026, 1, 1, 0, 5)) == "12:05 AM"
    assert format_clock(datetime(2026, 1, 1, 13, 30)) == "1:30 PM"


def test_slugify_and_session_dirname():
    assert slugify("  Q3 Planning / Budget!! ") == "q3-planning-budget"
    assert slugify("???") == "meeting"
    assert session_dirname("Standup", datetime(2026, 10, 17, 9, 0)) == "2026-10-17_standup"


def test_document_layout_and_finalize(tmp_path):
    started = datetime(2026, 10, 17, 9, 0)
    doc = TranscriptDocument.create(tmp_path, "Standup", started)

    header, body = split_front_matter(doc.path.read_text(encoding="utf-8"))
    assert header == {
        "title": "Standup",
        "date": "2026-10-17",
        "started": "9:00 AM",
        "ended": "",
        "duration": "",
    }
    assert body.strip() == "# Standup"

    doc.append(TranscriptRecord(1, 0.0, "good morning"))
    doc.append(TranscriptRecord(2, 30.0, "   "))
    doc.append(TranscriptRecord(3, 60.0, "", failed=True))
    doc.append(TranscriptRecord(4, 90.0, "see you tomorrow"))
    doc.finalize(datetime(2026, 10, 17, 9, 1, 35))

    text = doc.path.read_text(encoding="utf-8")
    header, body = split_front_matter(text)
    assert header["ended"] == "9:01 AM"
    assert header["duration"] == "1:35"
    assert body == (
        "\n# Standup\n\n"
        "**0:00** good morning\n\n"
        f"**1:00** {GAP_MARKER}\n\n"
        "**1:30** see you tomorrow\n\n"
    )
    assert [r.sequence for r in doc.records] == [1, 2, 3, 4]


def test_append_rejects_non_increasing_sequence(tmp_path):
    doc = TranscriptDocument.create(tmp_path, "Retro", datetime(2026, 10, 17, 15, 0))
    doc.append(TranscriptRecord(2, 30.0, "two"))
    with pytest.raises(ValueError):
        doc.append(TranscriptRecord(2, 30.0, "again"))
    with pytest.raises(ValueError):
        doc.append(TranscriptRecord(1, 0.0, "one"))


def test_finalize_keeps_quotes_and_colons_in_title(tmp_path):
    title = 'Design: "v2" review'
    doc = TranscriptDocument.create(tmp_path, title, datetime(2026, 10, 17, 15, 0))
    doc.finalize(datetime(2026, 10, 17, 16, 2, 3), duration_seconds=3723)
    header, _ = split_front_matter(doc.path.read_text(encoding="utf-8"))
    assert header["title"] == title
    assert header["duration"] == "1:02:03"
