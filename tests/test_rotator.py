from __future__ import annotations

import threading
import time

import pytest

from transcriptor.audio_convert import FormatConverter, SourceFormat
from transcriptor.chunks import ChunkState
from transcriptor.rotator import ChunkRotator
from transcriptor.wav_sink import read_wav_header


def _rotator(tmp_path, source, submitted, **kwargs):
    kwargs.setdefault("chunk_duration", None)
    return ChunkRotator(
        source,
        FormatConverter(16000),
        tmp_path / "session",
        submit=submitted.append,
        **kwargs,
    )


def test_rotation_closes_and_submits_in_order(tmp_path, fake_source):
    submitted = []
    rotator = _rotator(tmp_path, fake_source, submitted)
    rotator.start()
    fake_source.feed(2.0)
    first = rotator.rotate()
    fake_source.feed(1.5)
    chunks = rotator.stop()

    assert [c.sequence for c in submitted] == [1, 2]
    assert first is submitted[0]
    assert first.state is ChunkState.CLOSED
    assert first.path.name == "chunk_0001.wav"
    assert first.path.parent.name == "chunks"
    assert read_wav_header(first.path).data_size == 2 * 16000 * 2
    assert chunks[1].offset_seconds == pytest.approx(2.0)
    assert chunks[1].duration_seconds == pytest.approx(1.5)


def test_frames_arriving_during_rotation_land_in_next_chunk(tmp_path, fake_source):
    submitted = []
    rotator = _rotator(tmp_path, fake_source, submitted)
    rotator.start()
    fake_source.feed(1.0)

    # simulate the audio thread delivering while the handoff is detached
    original_close = rotator._close_current

    def close_with_traffic():
        chunk = original_close()
        fake_source.feed(0.5)
        return chunk

    rotator._close_current = close_with_traffic
    rotator.rotate()
    rotator._close_current = original_close
    chunks = rotator.stop()

    total = sum(c.data_bytes for c in chunks)
    assert total == int(1.5 * 16000) * 2
    assert chunks[1].data_bytes == 8000 * 2


def test_stop_is_idempotent_and_suppresses_rotation(tmp_path, fake_source):
    submitted = []
    rotator = _rotator(tmp_path, fake_source, submitted)
    rotator.start()
    fake_source.feed(0.5)
    first = rotator.stop()
    second = rotator.stop()

    assert [c.sequence for c in first] == [1]
    assert [c.sequence for c in second] == [1]
    assert len(submitted) == 1
    assert rotator.rotate() is None
    assert not fake_source.attached


def test_timer_drives_rotation(tmp_path, fake_source):
    submitted = []
    rotated = threading.Event()

    def submit(chunk):
        submitted.append(chunk)
        rotated.set()

    rotator = ChunkRotator(
        fake_source,
        FormatConverter(16000),
        tmp_path / "session",
        chunk_duration=0.05,
        submit=submit,
    )
    rotator.start()
    fake_source.feed(0.5)
    try:
        assert rotated.wait(5)
    finally:
        rotator.stop()
    assert submitted[0].sequence == 1
    assert len(rotator.chunks) >= 2


def test_failed_sink_marks_chunk_and_rotation_continues(tmp_path, fake_source):
    submitted = []
    rotator = _rotator(tmp_path, fake_source, submitted)
    rotator.start()
    session = rotator._current[2]
    session.failed = True
    session.error = OSError("No space left on device")
    rotator.rotate()
    fake_source.feed(0.5)
    chunks = rotator.stop()

    assert chunks[0].state is ChunkState.FAILED
    assert chunks[0].audio_ok is False
    assert chunks[1].state is ChunkState.CLOSED
    assert chunks[1].data_bytes == 8000 * 2


def test_open_failure_reports_fatal(tmp_path, fake_source):
    submitted = []
    fatal = []
    rotator = _rotator(tmp_path, fake_source, submitted, on_fatal=fatal.append)
    rotator.start()
    # a directory where chunk 2 should be created makes open() fail
    (tmp_path / "session" / "chunks" / "chunk_0002.wav").mkdir()
    rotator.rotate()

    assert len(fatal) == 1
    assert rotator.current_chunk is None
    assert [c.sequence for c in rotator.stop()] == [1]


def test_concurrent_rotate_and_stop_never_interleave(tmp_path, fake_source):
    submitted = []
    rotator = _rotator(tmp_path, fake_source, submitted)
    rotator.start()

    def rotate_many():
        for _ in range(20):
            fake_source.feed(0.01)
            rotator.rotate()
            time.sleep(0.001)

    worker = threading.Thread(target=rotate_many)
    worker.start()
    time.sleep(0.01)
    chunks = rotator.stop()
    worker.join(5)

    sequences = [c.sequence for c in submitted]
    assert sequences == sorted(sequences)
    assert sequences == [c.sequence for c in chunks if c.data_bytes]
    assert all(c.state is not ChunkState.RECORDING for c in chunks)


def test_empty_chunk_is_not_sent_for_transcription(tmp_path, fake_source):
    submitted = []
    rotator = _rotator(tmp_path, fake_source, submitted)
    rotator.start()
    fake_source.feed(0.5)
    rotator.rotate()
    chunks = rotator.stop()

    assert [c.sequence for c in chunks] == [1, 2]
    assert chunks[1].data_bytes == 0
    assert [c.sequence for c in submitted] == [1]


def test_final_chunk_receives_upsampler_tail(tmp_path, source_factory):
    source = source_factory(SourceFormat(8000, 1, "s16"))
    submitted = []
    rotator = _rotator(tmp_path, source, submitted)
    rotator.start()
    source.feed(0.5)
    rotator.rotate()
    source.feed(0.5)
    chunks = rotator.stop()

    # 4000 source frames per half second, doubled; only the last chunk is flushed
    assert chunks[0].data_bytes == (8000 - 1) * 2
    assert chunks[0].data_bytes + chunks[1].data_bytes == 16000 * 2
    assert read_wav_header(chunks[1].path).data_size == chunks[1].data_bytes
