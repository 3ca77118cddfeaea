from __future__ import annotations

import numpy as np
import pytest

from transcriptor.audio_convert import (
    ConversionError,
    FormatConverter,
    SampleBuffer,
    SourceFormat,
    StreamingResampler,
    decode_to_float,
    downmix_to_mono,
)


def _tone(frames: int, rate: int, channels: int) -> np.ndarray:
    t = np.arange(frames) / rate
    mono = 0.3 * np.sin(2 * np.pi * 300 * t)
    return np.repeat(mono[:, None], channels, axis=1)


def _encode(matrix: np.ndarray, fmt: SourceFormat) -> bytes:
    if fmt.sample_type == "s16":
        data = (matrix * 32767).astype("<i2")
    elif fmt.sample_type == "s32":
        data = (matrix * 2147483647).astype("<i4")
    elif fmt.sample_type == "f32":
        data = matrix.astype("<f4")
    else:
        data = (matrix * 127 + 128).astype("u1")
    if fmt.layout == "planar":
        return data.T.tobytes()
    return data.tobytes()


def _convert_all(converter: FormatConverter, fmt: SourceFormat, payload: bytes, block_frames: list[int]) -> bytes:
    out = bytearray()
    offset = 0
    idx = 0
    while offset < len(payload):
        size = block_frames[idx % len(block_frames)] * fmt.frame_bytes
        buf = SampleBuffer(payload[offset:offset + size], fmt)
        for frame in converter.convert(buf):
            out.extend(frame)
        offset += size
        idx += 1
    for frame in converter.flush():
        out.extend(frame)
    return bytes(out)


@pytest.mark.parametrize(
    "rate,channels,sample_type",
    [
        (48000, 2, "s16"),
        (44100, 2, "f32"),
        (22050, 1, "s32"),
        (8000, 1, "u8"),
        (16000, 1, "s16"),
        (96000, 6, "f32"),
    ],
)
def test_converted_sample_count_matches_rate_ratio(rate, channels, sample_type):
    fmt = SourceFormat(rate, channels, sample_type)
    seconds = 1.7
    frames = int(rate * seconds)
    payload = _encode(_tone(frames, rate, channels), fmt)

    # irregular block sizes so the resampler phase crosses many boundaries
    out = _convert_all(FormatConverter(16000), fmt, payload, [331, 1024, 17, 4410])

    produced = len(out) // 2
    expected = frames * 16000 / rate
    assert abs(produced - expected) <= 1
    assert produced == (frames * 16000) // rate


def test_equal_rate_mono_s16_passes_through_unchanged():
    fmt = SourceFormat(16000, 1, "s16")
    payload = (np.arange(-500, 500, dtype="<i2") * 30).tobytes()
    out = FormatConverter(16000).convert(SampleBuffer(payload, fmt))
    assert b"".join(out) == payload


def test_planar_and_interleaved_are_normalized_identically():
    frames = 3000
    rng = np.random.default_rng(7)
    matrix = rng.uniform(-0.5, 0.5, size=(frames, 2))
    interleaved = SourceFormat(48000, 2, "f32", "interleaved")
    planar = SourceFormat(48000, 2, "f32", "planar")

    a = FormatConverter().convert(SampleBuffer(_encode(matrix, interleaved), interleaved))
    b = FormatConverter().convert(SampleBuffer(_encode(matrix, planar), planar))
    assert b"".join(a) == b"".join(b)


def test_downmix_averages_channels():
    matrix = np.array([[1.0, 0.0], [0.5, -0.5], [-1.0, -1.0]])
    assert downmix_to_mono(matrix).tolist() == [0.5, 0.0, -1.0]


def test_decode_trims_partial_trailing_frame():
    fmt = SourceFormat(16000, 2, "s16")
    data = np.array([100, -100, 200, -200], dtype="<i2").tobytes() + b"\x01"
    decoded = decode_to_float(data, fmt)
    assert decoded.shape == (2, 2)


def test_decode_u8_centres_on_128():
    fmt = SourceFormat(8000, 1, "u8")
    decoded = decode_to_float(bytes([128, 255, 0]), fmt)
    assert decoded[:, 0].tolist() == pytest.approx([0.0, 127 / 128, -1.0])


@pytest.mark.parametrize(
    "fmt",
    [
        SourceFormat(48000, 0, "s16"),
        SourceFormat(0, 2, "s16"),
        SourceFormat(48000, 2, "s24"),
        SourceFormat(48000, 2, "s16", "zigzag"),
    ],
)
def test_unrepresentable_formats_raise(fmt):
    with pytest.raises(ConversionError):
        FormatConverter().convert(SampleBuffer(b"\x00" * 64, fmt))


def test_downsampling_is_independent_of_block_boundaries():
    rate = 48000
    mono = _tone(rate, rate, 1)[:, 0]

    whole = StreamingResampler(rate, 16000).process(mono)

    split = StreamingResampler(rate, 16000)
    parts = []
    for start in range(0, mono.size, 997):
        parts.append(split.process(mono[start:start + 997]))
    pieced = np.concatenate(parts)

    assert pieced.size == whole.size == 16000
    assert np.allclose(pieced, whole)


def test_format_change_restarts_resampler():
    converter = FormatConverter(16000)
    first = SourceFormat(48000, 1, "s16")
    second = SourceFormat(32000, 1, "s16")
    converter.convert(SampleBuffer(b"\x00\x00" * 4800, first))
    out = converter.convert(SampleBuffer(b"\x00\x00" * 3200, second))
    assert len(b"".join(out)) // 2 == 1600


def test_reset_clears_phase():
    fmt = SourceFormat(44100, 1, "s16")
    converter = FormatConverter(16000)
    converter.convert(SampleBuffer(b"\x00\x00" * 1000, fmt))
    converter.reset()
    out = converter.convert(SampleBuffer(b"\x00\x00" * 44100, fmt))
    assert len(b"".join(out)) // 2 == 16000


def test_upsampling_interpolates_across_block_boundaries():
    ramp = np.arange(400, dtype=np.float64)

    resampler = StreamingResampler(8000, 16000)
    parts = [resampler.process(ramp[start:start + 37]) for start in range(0, ramp.size, 37)]
    parts.append(resampler.flush())
    pieced = np.concatenate(parts)

    assert pieced.size == 800
    # every output but the very last lies between two real input samples
    assert np.allclose(pieced[:-1], np.arange(799) / 2.0)
    assert pieced[-1] == ramp[-1]


def test_converter_flush_is_empty_when_nothing_is_held():
    converter = FormatConverter(16000)
    assert converter.flush() == []
    converter.convert(SampleBuffer(b"\x00\x00" * 4800, SourceFormat(48000, 1, "s16")))
    assert converter.flush() == []
