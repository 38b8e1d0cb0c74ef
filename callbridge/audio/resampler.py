"""Audio sample rate conversion for callbridge.

Converts PCM16 little-endian mono audio between the telephony rate
(8kHz) and the AI provider rate (24kHz) by integer factors. Downsampling
is plain decimation without an anti-alias filter and upsampling is
linear interpolation; both are deliberately naive.
"""

from __future__ import annotations

import math
import struct

PCM16_MIN = -32768
PCM16_MAX = 32767


def _unpack(data: bytes) -> tuple[int, ...]:
    n_samples = len(data) // 2
    if n_samples == 0:
        return ()
    return struct.unpack(f"<{n_samples}h", data[: n_samples * 2])


def _pack(samples: list[int] | tuple[int, ...]) -> bytes:
    if not samples:
        return b""
    return struct.pack(f"<{len(samples)}h", *samples)


def downsample(data: bytes, ratio: int) -> bytes:
    """Decimate PCM16 audio by an integer factor.

    Output sample ``i`` is input sample ``i * ratio``. A trailing group of
    fewer than ``ratio`` input samples is dropped, as is a dangling odd byte.

    Args:
        data: PCM16 little-endian audio bytes.
        ratio: Integer decimation factor (>= 1).

    Returns:
        Downsampled PCM16 little-endian audio bytes (empty for empty input).
    """
    if ratio < 1:
        raise ValueError(f"Downsample ratio must be >= 1, got {ratio}")

    samples = _unpack(data)
    out_len = len(samples) // ratio
    if out_len == 0:
        return b""
    return _pack(samples[: out_len * ratio : ratio])


def upsample(data: bytes, ratio: int) -> bytes:
    """Upsample PCM16 audio by an integer factor using linear interpolation.

    Output sample ``p`` lies between input samples ``p // ratio`` and
    ``p // ratio + 1``, weighted by ``(p % ratio) / ratio``. The last input
    sample is held for the positions after the final complete interval.

    Args:
        data: PCM16 little-endian audio bytes.
        ratio: Integer interpolation factor (>= 1).

    Returns:
        Upsampled PCM16 little-endian audio bytes (empty for empty input).
    """
    if ratio < 1:
        raise ValueError(f"Upsample ratio must be >= 1, got {ratio}")

    samples = _unpack(data)
    n_samples = len(samples)
    if n_samples == 0:
        return b""
    if ratio == 1:
        return _pack(samples)

    out_samples: list[int] = []
    for idx in range(n_samples):
        current = samples[idx]
        if idx + 1 >= n_samples:
            out_samples.extend([current] * ratio)
            break
        step = samples[idx + 1] - current
        for offset in range(ratio):
            value = math.floor(current + step * offset / ratio + 0.5)
            # Clamp to int16 range
            out_samples.append(max(PCM16_MIN, min(PCM16_MAX, value)))

    return _pack(out_samples)


class Resampler:
    """Fixed-ratio resampler between two sample rates.

    The rates must be integer multiples of each other.

    Usage:
        to_ai = Resampler(from_rate=8000, to_rate=24000)
        audio_24k = to_ai.process(audio_8k)
    """

    def __init__(self, from_rate: int, to_rate: int) -> None:
        if from_rate <= 0 or to_rate <= 0:
            raise ValueError("Sample rates must be positive")
        high, low = max(from_rate, to_rate), min(from_rate, to_rate)
        if high % low:
            raise ValueError(
                f"Cannot resample {from_rate}Hz -> {to_rate}Hz: "
                f"rates are not integer multiples"
            )
        self.from_rate = from_rate
        self.to_rate = to_rate
        self.ratio = high // low

    def process(self, data: bytes) -> bytes:
        """Resample a chunk of PCM16 audio."""
        if self.to_rate > self.from_rate:
            return upsample(data, self.ratio)
        return downsample(data, self.ratio)

    @property
    def needs_resample(self) -> bool:
        """Whether this resampler actually changes the sample rate."""
        return self.from_rate != self.to_rate
