"""Source PCM to canonical PCM conversion (mono, int16, fixed rate)."""
from __future__ import annotations

from dataclasses import dataclass, field
import time

import numpy as np

CANONICAL_SAMPLE_RATE = 16000
CANONICAL_CHANNELS = 1
CANONICAL_SAMPLE_WIDTH = 2  # 16-bit

INT16_MAX = 2 ** 15 - 1
INT16_MIN = -2 ** 15

# sample_type -> (numpy dtype, scale to [-1.0, 1.0], offset)
_SAMPLE_TYPES: dict[str, tuple[str, float, float]] = {
    "u8": ("u1", 128.0, 128.0),
    "s16": ("<i2", 32768.0, 0.0),
    "s32": ("<i4", 2147483648.0, 0.0),
    "f32": ("<f4", 1.0, 0.0),
}
LAYOUTS = ("interleaved", "planar")


class ConversionError(Exception):
    """Raised when a source buffer cannot be represented in the canonical format."""


@dataclass(frozen=True)
class SourceFormat:
    sample_rate: int
    channels: int
    sample_type: str = "s16"
    layout: str = "interleaved"

    @property
    def sample_width(self) -> int:
        spec = _SAMPLE_TYPES.get(self.sample_type)
        return np.dtype(spec[0]).itemsize if spec else 0

    @property
    def frame_bytes(self) -> int:
        return self.sample_width * max(self.channels, 0)

    def validate(self) -> None:
        if self.channels <= 0:
            raise ConversionError(f"unsupported channel count: {self.channels}")
        if self.sample_rate <= 0:
            raise ConversionError(f"unsupported sample rate: {self.sample_rate}")
        if self.sample_type not in _SAMPLE_TYPES:
            raise ConversionError(f"unsupported sample type: {self.sample_type!r}")
        if self.layout not in LAYOUTS:
            raise ConversionError(f"unsupported layout: {self.layout!r}")


@dataclass
class SampleBuffer:
    samples: bytes
    source_format: SourceFormat
    timestamp: float = field(default_factory=time.monotonic)


def decode_to_float(data: bytes, fmt: SourceFormat) -> np.ndarray:
    """Return a ``(frames, channels)`` float64 array in [-1.0, 1.0].

    Trailing bytes that do not form a whole frame are trimmed. Planar input
    is expected as one contiguous block per channel, each the same length.
    """
    fmt.validate()
    dtype, scale, offset = _SAMPLE_TYPES[fmt.sample_type]
    frame_bytes = fmt.frame_bytes
    usable = len(data) - (len(data) % frame_bytes)
    if usable <= 0:
        return np.zeros((0, fmt.channels), dtype=np.float64)

    raw = np.frombuffer(data[:usable], dtype=dtype).astype(np.float64)
    frames = usable // frame_bytes
    if fmt.layout == "planar":
        matrix = raw.reshape(fmt.channels, frames).T
    else:
        matrix = raw.reshape(frames, fmt.channels)
    return (matrix - offset) / scale


def downmix_to_mono(matrix: np.ndarray) -> np.ndarray:
    """Average all channels into one.

    Channel averaging keeps both sides of a call audible (a remote speaker
    panned hard to one side is not lost) at the cost of -6 dB on
    single-sided sources.
    """
    if matrix.ndim == 1:
        return matrix
    if matrix.shape[1] == 1:
        return matrix[:, 0]
    return matrix.mean(axis=1)


def float_to_pcm16(samples: np.ndarray) -> bytes:
    scaled = np.rint(samples * 32768.0)
    return np.clip(scaled, INT16_MIN, INT16_MAX).astype("<i2").tobytes()


class StreamingResampler:
    """Linear-interpolation resampler whose phase survives block boundaries.

    After ``M`` input samples and a final ``flush()`` exactly
    ``floor(M * dst / src)`` output samples have been produced. When
    upsampling, the last output or two of a block are only emitted once the
    next block (or flush) supplies the sample they interpolate towards.
    """

    def __init__(self, src_rate: int, dst_rate: int):
        if src_rate <= 0 or dst_rate <= 0:
            raise ConversionError(f"invalid resample ratio {src_rate}->{dst_rate}")
        self.src_rate = int(src_rate)
        self.dst_rate = int(dst_rate)
        # enough history to interpolate the first output of the next block
        self._history = -(-self.src_rate // self.dst_rate) + 1
        self.reset()

    def reset(self) -> None:
        self._consumed = 0
        self._produced = 0
        self._carry: np.ndarray | None = None

    @property
    def produced(self) -> int:
        return self._produced

    def process(self, mono: np.ndarray) -> np.ndarray:
        if mono.size == 0:
            return mono.astype(np.float64)
        if self.src_rate == self.dst_rate:
            self._consumed += mono.size
            self._produced += mono.size
            return mono

        if self._carry is not None:
            window = np.concatenate([self._carry, mono])
            base = self._consumed - self._carry.size
        else:
            window = mono
            base = 0
        self._consumed += mono.size
        self._carry = window[-self._history:]

        target = (self._consumed * self.dst_rate) // self.src_rate
        # outputs that fall after the newest input sample wait for the next block
        ready = ((self._consumed - 1) * self.dst_rate) // self.src_rate + 1
        return self._emit(window, base, min(target, ready))

    def flush(self) -> np.ndarray:
        """Emit outputs held back at the end of the stream, holding the last sample."""
        if self._carry is None:
            return np.zeros(0, dtype=np.float64)
        target = (self._consumed * self.dst_rate) // self.src_rate
        return self._emit(self._carry, self._consumed - self._carry.size, target)

    def _emit(self, window: np.ndarray, base: int, upto: int) -> np.ndarray:
        if upto <= self._produced:
            return np.zeros(0, dtype=np.float64)
        out_index = np.arange(self._produced, upto, dtype=np.float64)
        positions = out_index * self.src_rate / self.dst_rate - base
        out = np.interp(positions, np.arange(window.size, dtype=np.float64), window)
        self._produced = upto
        return out


class FormatConverter:
    """Convert ``SampleBuffer`` objects into canonical frames.

    One converter serves one continuous stream: resampler phase is carried
    from buffer to buffer, including across chunk rotations. A change of
    source format flushes and restarts the resampler. Call flush() once at
    the end of the stream.
    """

    def __init__(self, target_rate: int = CANONICAL_SAMPLE_RATE):
        if target_rate <= 0:
            raise ValueError("target_rate must be positive")
        self.target_rate = int(target_rate)
        self._format: SourceFormat | None = None
        self._resampler: StreamingResampler | None = None

    def reset(self) -> None:
        self._format = None
        self._resampler = None

    def flush(self) -> list[bytes]:
        if self._resampler is None:
            return []
        out = self._resampler.flush()
        return [float_to_pcm16(out)] if out.size else []

    def convert(self, buffer: SampleBuffer) -> list[bytes]:
        fmt = buffer.source_format
        fmt.validate()
        frames: list[bytes] = []
        if self._resampler is None or fmt != self._format:
            frames.extend(self.flush())
            self._format = fmt
            self._resampler = StreamingResampler(fmt.sample_rate, self.target_rate)
        mono = downmix_to_mono(decode_to_float(buffer.samples, fmt))
        out = self._resampler.process(mono)
        if out.size:
            frames.append(float_to_pcm16(out))
        return frames
