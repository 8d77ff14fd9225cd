"""Calibration click track: schedule, synthesis and WAV encoding.

The click track is a sequence of short Hann-windowed sine bursts played at a
fixed interval, cycling through a small set of distinct frequencies so that a
detected click can be attributed to its position in the schedule.
"""

from __future__ import annotations

import io
import math
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Final

import numpy as np
from scipy.io import wavfile

WAV_HEADER_SIZE: Final[int] = 44
"""Size of the canonical RIFF/WAVE PCM header."""

_PCM_SCALE: Final[int] = 0x7FFF


@dataclass(frozen=True, slots=True)
class ClickTrackConfig:
    """Parameters of the calibration click track.

    click_interval_ms must be larger than click_duration_ms, otherwise
    consecutive clicks overlap in the rendered track.
    """

    sample_rate: int = 48000
    total_duration_s: float = 20.0
    click_duration_ms: float = 50.0
    click_interval_ms: float = 1000.0
    frequencies: tuple[float, ...] = (500.0, 1000.0, 2000.0, 3000.0)
    amplitude: float = 0.8
    channels: int = 2

    @property
    def num_clicks(self) -> int:
        """Number of clicks that fit in the track."""
        return math.floor(self.total_duration_s * 1000 / self.click_interval_ms)

    @property
    def total_samples(self) -> int:
        """Length of the rendered track in frames."""
        return math.floor(self.total_duration_s * self.sample_rate)


@dataclass(frozen=True, slots=True)
class ClickEvent:
    """One expected click, relative to the start of the track."""

    expected_time_ms: float
    frequency_hz: float


ClickSchedule = tuple[ClickEvent, ...]


@dataclass(frozen=True, slots=True)
class WavInfo:
    """Format fields parsed from a canonical WAV header."""

    sample_rate: int
    channels: int
    bits_per_sample: int
    num_frames: int


def generate_schedule(config: ClickTrackConfig) -> ClickSchedule:
    """Build the expected click schedule for a track configuration."""
    freqs = config.frequencies
    return tuple(
        ClickEvent(
            expected_time_ms=i * config.click_interval_ms,
            frequency_hz=float(freqs[i % len(freqs)]),
        )
        for i in range(config.num_clicks)
    )


def synthesize_click(
    frequency_hz: float,
    duration_ms: float,
    amplitude: float,
    sample_rate: int,
) -> np.ndarray:
    """Synthesize a single Hann-windowed sine burst.

    The same waveform is used as the reference template for
    cross-correlation.

    Args:
        frequency_hz: Tone frequency.
        duration_ms: Burst length.
        amplitude: Peak amplitude in [0, 1].
        sample_rate: Sample rate in Hz.

    Returns:
        Mono float32 array of floor(duration_ms / 1000 * sample_rate) samples.
    """
    n = math.floor(duration_ms / 1000 * sample_rate)
    if n <= 0:
        return np.zeros(0, dtype=np.float32)
    i = np.arange(n, dtype=np.float64)
    envelope = 0.5 * (1.0 - np.cos(2.0 * np.pi * i / n))
    tone = np.sin(2.0 * np.pi * frequency_hz * i / sample_rate)
    return (amplitude * envelope * tone).astype(np.float32)


def render_track(config: ClickTrackConfig) -> np.ndarray:
    """Render the full click track.

    Returns:
        float32 array of shape (total_samples, channels) with every channel
        carrying the same signal.
    """
    total = config.total_samples
    mono = np.zeros(total, dtype=np.float32)
    interval_samples = math.floor(config.click_interval_ms / 1000 * config.sample_rate)

    for i, event in enumerate(generate_schedule(config)):
        start = i * interval_samples
        if start >= total:
            break
        click = synthesize_click(
            event.frequency_hz, config.click_duration_ms, config.amplitude, config.sample_rate
        )
        end = min(start + len(click), total)
        mono[start:end] = click[: end - start]

    return np.repeat(mono[:, np.newaxis], config.channels, axis=1)


def to_pcm16(samples: np.ndarray) -> np.ndarray:
    """Clamp float samples to [-1, 1] and convert to 16-bit PCM."""
    return (np.clip(samples, -1.0, 1.0) * _PCM_SCALE).astype(np.int16)


def encode_wav(samples: np.ndarray, sample_rate: int) -> bytes:
    """Encode float samples as a 16-bit PCM WAV file in memory."""
    buffer = io.BytesIO()
    wavfile.write(buffer, sample_rate, to_pcm16(samples))
    return buffer.getvalue()


def write_wav(path: str | Path, samples: np.ndarray, sample_rate: int) -> None:
    """Write float samples to disk as a 16-bit PCM WAV file."""
    Path(path).write_bytes(encode_wav(samples, sample_rate))


def read_wav_info(data: bytes) -> WavInfo:
    """Parse the format fields of a canonical 44-byte-header PCM WAV buffer.

    Raises:
        ValueError: If the buffer is not a RIFF/WAVE PCM file.
    """
    if len(data) < WAV_HEADER_SIZE:
        raise ValueError(f"WAV buffer too short: {len(data)} bytes")
    riff, _size, wave = struct.unpack_from("<4sI4s", data, 0)
    if riff != b"RIFF" or wave != b"WAVE":
        raise ValueError("Not a RIFF/WAVE buffer")
    fmt_id, _fmt_size, audio_format, channels, sample_rate, _byte_rate, block_align, bits = (
        struct.unpack_from("<4sIHHIIHH", data, 12)
    )
    if fmt_id != b"fmt " or audio_format != 1:
        raise ValueError("WAV buffer is not PCM")
    data_id, data_size = struct.unpack_from("<4sI", data, 36)
    if data_id != b"data":
        raise ValueError("WAV data chunk not found at canonical offset")
    return WavInfo(
        sample_rate=sample_rate,
        channels=channels,
        bits_per_sample=bits,
        num_frames=data_size // block_align if block_align else 0,
    )


def read_wav(path: str | Path) -> tuple[np.ndarray, int]:
    """Read a recording as mono float32 samples.

    Integer PCM is scaled to [-1, 1]; multichannel audio is averaged.

    Returns:
        Tuple of (samples, sample_rate).
    """
    sample_rate, data = wavfile.read(str(path))
    if np.issubdtype(data.dtype, np.integer):
        samples = data.astype(np.float32) / float(np.iinfo(data.dtype).max)
    else:
        samples = data.astype(np.float32)
    if samples.ndim > 1:
        samples = samples.mean(axis=1)
    return samples, int(sample_rate)
