"""
Sample conversion between device float buffers and the PCM16 wire format.

All functions are pure and deterministic. They run once per captured or
received frame, so they stick to vectorised numpy and avoid copies where the
input already has the right dtype and layout.
"""

import numpy as np

PCM16_MAX = 32767
_PCM16_SCALE = 32768.0


def encode_pcm16(samples) -> bytes:
    """Float samples in [-1, 1] -> signed 16-bit little-endian bytes (clamped)."""
    arr = np.asarray(samples, dtype=np.float32)
    if arr.size == 0:
        return b""
    clipped = np.clip(arr, -1.0, 1.0)
    return (clipped * PCM16_MAX).astype("<i2").tobytes()


def pcm16_to_float(data: bytes) -> np.ndarray:
    """PCM16 little-endian bytes -> float32 in [-1.0, 1.0)."""
    if len(data) % 2 != 0:
        # Truncated trailing byte
        data = data[: len(data) - 1]
    return np.frombuffer(data, dtype="<i2").astype(np.float32) / _PCM16_SCALE


def decimate(samples: np.ndarray, ratio: int) -> np.ndarray:
    """
    Keep every ratio-th sample, no anti-aliasing filter.

    Yields exactly floor(len / ratio) samples in their original order.
    """
    if ratio <= 1:
        return samples
    count = len(samples) // ratio
    return samples[: count * ratio : ratio]


def resample_linear(samples: np.ndarray, source_rate: int, target_rate: int) -> np.ndarray:
    """Linear interpolation resampler for non-integer rate ratios."""
    if source_rate == target_rate or len(samples) == 0:
        return samples
    target_len = int(round(len(samples) * float(target_rate) / float(source_rate)))
    if target_len <= 0:
        return np.zeros(0, dtype=np.float32)
    src_positions = np.arange(len(samples), dtype=np.float64)
    dst_positions = np.linspace(0.0, len(samples) - 1, num=target_len, dtype=np.float64)
    return np.interp(dst_positions, src_positions, samples).astype(np.float32)


def to_wire_rate(samples: np.ndarray, source_rate: int, wire_rate: int) -> np.ndarray:
    """Bring a capture frame to the wire rate: decimate on exact multiples, interpolate otherwise."""
    if source_rate == wire_rate:
        return samples
    if source_rate > wire_rate and source_rate % wire_rate == 0:
        return decimate(samples, source_rate // wire_rate)
    return resample_linear(samples, source_rate, wire_rate)


def decode_pcm16(
    data: bytes,
    source_rate: int,
    channels: int = 1,
    target_rate=None,
    target_channels: int = 1,
) -> np.ndarray:
    """
    Wire bytes -> float32 frames shaped (frames, target_channels) at the device rate.

    Interleaved multi-channel input is downmixed to mono before being
    repeated across the target channels.
    """
    flat = pcm16_to_float(data)
    channels = max(1, int(channels))
    if channels > 1:
        usable = (len(flat) // channels) * channels
        mono = flat[:usable].reshape(-1, channels).mean(axis=1)
    else:
        mono = flat
    if target_rate and target_rate != source_rate:
        mono = resample_linear(mono, source_rate, target_rate)
    mono = np.ascontiguousarray(mono, dtype=np.float32)
    if target_channels <= 1:
        return mono.reshape(-1, 1)
    return np.repeat(mono.reshape(-1, 1), target_channels, axis=1)


def average_amplitude(samples: np.ndarray, stride: int = 4) -> float:
    """Coarse loudness: mean absolute value over every stride-th sample."""
    if samples is None or len(samples) == 0:
        return 0.0
    subset = samples[:: max(1, stride)]
    return float(np.mean(np.abs(subset)))
