import json
import os
import signal

from transcriptor.chunks import INCOMPLETE_SUFFIX
from transcriptor.recovery import recover_stale_session
from transcriptor.session_state import (
    STATE_FILENAME,
    SessionState,
    clear_session_state,
    is_stale,
    load_session_state,
    pid_alive,
    store_session_state,
)
from transcriptor.stop_channel import STOP_SIGNAL_FILENAME, FileStopChannel, SignalStopChannel
from transcriptor.wav_sink import WavSink


def test_state_round_trip_and_clear(tmp_path):
    path = tmp_path / STATE_FILENAME
    assert load_session_state(path).recording is False

    store_session_state(
        path,
        SessionState(
            recording=True,
            meeting_name="Standup",
            start_time="2026-10-17T09:00:00",
            output_dir="/tmp/x",
            pid=os.getpid(),
            status="recording",
        ),
    )
    loaded = load_session_state(path)
    assert loaded.recording is True
    assert loaded.meeting_name == "Standup"
    assert loaded.started_at.hour == 9
    assert not is_stale(loaded)
    assert not list(tmp_path.glob("*.tmp"))

    clear_session_state(path)
    assert json.loads(path.read_text(encoding="utf-8")) == {"recording": False}


def test_corrupt_state_reads_as_idle(tmp_path):
    path = tmp_path / STATE_FILENAME
    path.write_text("{not json", encoding="utf-8")
    assert load_session_state(path).recording is False
    path.write_text("[1, 2, 3]", encoding="utf-8")
    assert load_session_state(path).recording is False


def test_pid_alive(stale_pid):
    assert pid_alive(os.getpid())
    assert not pid_alive(stale_pid)
    assert not pid_alive(None)
    assert not pid_alive(0)


def test_file_stop_channel_is_consumed_once(tmp_path):
    channel = FileStopChannel(tmp_path / STOP_SIGNAL_FILENAME)
    assert channel.poll() is False
    assert channel.consume() is False

    FileStopChannel(tmp_path / STOP_SIGNAL_FILENAME).request()
    assert channel.poll() is True
    assert channel.consume() is True
    assert channel.consume() is False
    assert not (tmp_path / STOP_SIGNAL_FILENAME).exists()


def test_signal_stop_channel_turns_sigterm_into_request():
    channel = SignalStopChannel(signals=(signal.SIGTERM,))
    previous = signal.getsignal(signal.SIGTERM)
    channel.open()
    try:
        os.kill(os.getpid(), signal.SIGTERM)
        assert channel.poll() is True
        assert channel.last_signal == signal.SIGTERM
        assert channel.consume() is True
        assert channel.consume() is False
    finally:
        channel.close()
    assert signal.getsignal(signal.SIGTERM) is previous


def test_recovery_quarantines_unfinished_chunks(tmp_path, stale_pid):
    output_dir = tmp_path / "2026-10-17_crashed"
    finished = WavSink().open(output_dir / "chunks" / "chunk_0001.wav")
    finished.write(b"\x01\x00" * 100)
    finished.close()
    crashed = WavSink().open(output_dir / "chunks" / "chunk_0002.wav")
    crashed.write(b"\x01\x00" * 100)
    crashed._f.flush()

    state_path = tmp_path / STATE_FILENAME
    store_session_state(
        state_path,
        SessionState(
            recording=True,
            meeting_name="Crashed",
            start_time="2026-10-17T09:00:00",
            output_dir=str(output_dir),
            pid=stale_pid,
            status="recording",
        ),
    )

    report = recover_stale_session(state_path)
    crashed.close()

    assert report.stale is True
    assert report.meeting_name == "Crashed"
    assert [p.name for p in report.incomplete_chunks] == ["chunk_0002" + INCOMPLETE_SUFFIX]
    assert (output_dir / "chunks" / "chunk_0001.wav").exists()
    assert load_session_state(state_path).recording is False


def test_recovery_leaves_live_session_alone(tmp_path):
    state_path = tmp_path / STATE_FILENAME
    store_session_state(
        state_path,
        SessionState(recording=True, meeting_name="Live", pid=os.getpid(), status="recording"),
    )
    report = recover_stale_session(state_path)
    assert report.stale is False
    assert load_session_state(state_path).recording is True
