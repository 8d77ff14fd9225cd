"""Onset detection of calibration clicks in captured microphone audio.

The detector consumes fixed-size chunks of mono float samples. It first
measures the ambient noise floor, then reports a Detection whenever a chunk's
energy rises above the adaptive threshold and its dominant frequency matches
one of the expected click frequencies.

Time is derived from the number of samples consumed since start(), so the
detector never reads a wall clock and can be driven from recorded audio.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum, auto

import numpy as np

logger = logging.getLogger(__name__)


class DetectorState(Enum):
    """Lifecycle of an OnsetDetector."""

    IDLE = auto()
    """Not started, or stopped."""

    CAPTURING_NOISE_FLOOR = auto()
    """Accumulating audio until the noise floor window has elapsed."""

    LISTENING = auto()
    """Noise floor known, reporting detections."""


@dataclass(frozen=True, slots=True)
class Detection:
    """A detected click, relative to the start of the capture session."""

    timestamp_ms: float
    frequency_hz: float
    confidence: float


@dataclass(frozen=True, slots=True)
class DetectorConfig:
    """Detector tuning parameters."""

    sample_rate: int = 48000
    fft_size: int = 2048
    onset_threshold: float = 0.01
    """Lower bound on the RMS threshold."""
    frequency_tolerance_hz: float = 100.0
    min_click_gap_ms: float = 500.0
    expected_frequencies: tuple[float, ...] = (500.0, 1000.0, 2000.0, 3000.0)
    noise_floor_window_ms: float = 500.0
    noise_floor_multiplier: float = 3.0
    history_ms: float = 2000.0
    """How much trailing audio recent_samples() can return."""


def compute_rms(samples: np.ndarray) -> float:
    """Root mean square of a sample block (0.0 for an empty block)."""
    if samples.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(np.square(samples, dtype=np.float64))))


def dominant_frequency(samples: np.ndarray, sample_rate: int) -> float | None:
    """Frequency of the strongest spectral peak of a Hann-windowed block.

    Returns:
        The peak frequency in Hz, or None for an empty or silent block.
    """
    if samples.size < 2:
        return None
    block = samples.astype(np.float64) - float(np.mean(samples))
    spectrum = np.abs(np.fft.rfft(block * np.hanning(block.size)))
    spectrum[0] = 0.0
    peak = int(np.argmax(spectrum))
    if spectrum[peak] <= 0.0:
        return None
    return float(np.fft.rfftfreq(block.size, d=1.0 / sample_rate)[peak])


class OnsetDetector:
    """Chunked RMS onset detector with frequency gating."""

    def __init__(self, config: DetectorConfig | None = None) -> None:
        """Initialize an idle detector."""
        self._config = config or DetectorConfig()
        self._state = DetectorState.IDLE
        self._noise_floor = 0.0
        self._threshold = self._config.onset_threshold
        self._samples_consumed = 0
        self._last_detection_ms: float | None = None
        self._current_level = 0.0
        self._detections: list[Detection] = []
        self._history_size = max(
            self._config.fft_size,
            int(self._config.history_ms / 1000 * self._config.sample_rate),
        )
        self._history = np.zeros(0, dtype=np.float32)

    @property
    def config(self) -> DetectorConfig:
        return self._config

    @property
    def state(self) -> DetectorState:
        return self._state

    @property
    def noise_floor(self) -> float:
        return self._noise_floor

    @property
    def threshold(self) -> float:
        """Current onset threshold: max(onset_threshold, noise_floor * multiplier)."""
        return self._threshold

    @property
    def current_level(self) -> float:
        """RMS of the most recent chunk, for level meters."""
        return self._current_level

    @property
    def detections(self) -> list[Detection]:
        """Detections reported since the last start(), in order."""
        return list(self._detections)

    @property
    def elapsed_ms(self) -> float:
        """Audio time consumed since start()."""
        return self._samples_consumed / self._config.sample_rate * 1000

    def start(self) -> None:
        """Reset all state and begin capturing the noise floor."""
        self._state = DetectorState.CAPTURING_NOISE_FLOOR
        self._noise_floor = 0.0
        self._threshold = self._config.onset_threshold
        self._samples_consumed = 0
        self._last_detection_ms = None
        self._current_level = 0.0
        self._detections = []
        self._history = np.zeros(0, dtype=np.float32)
        logger.debug("Detector started, capturing noise floor")

    def stop(self) -> None:
        """Stop processing. Later chunks are ignored until start() is called."""
        self._state = DetectorState.IDLE

    def recent_samples(self, duration_ms: float | None = None) -> np.ndarray:
        """Return up to duration_ms of the most recently processed audio."""
        if duration_ms is None:
            return self._history.copy()
        count = int(duration_ms / 1000 * self._config.sample_rate)
        return self._history[-count:].copy() if count > 0 else np.zeros(0, dtype=np.float32)

    def process_chunk(self, samples: np.ndarray) -> Detection | None:
        """Process one chunk of mono float samples.

        Args:
            samples: Samples captured immediately after the previous chunk.

        Returns:
            A Detection if this chunk contains a new click, otherwise None.
        """
        if self._state is DetectorState.IDLE:
            return None

        chunk = np.asarray(samples, dtype=np.float32).reshape(-1)
        cfg = self._config
        chunk_start = self._samples_consumed
        self._samples_consumed += chunk.size
        self._history = np.concatenate((self._history, chunk))[-self._history_size :]
        rms = compute_rms(chunk)
        self._current_level = rms

        if self._state is DetectorState.CAPTURING_NOISE_FLOOR:
            if self.elapsed_ms >= cfg.noise_floor_window_ms:
                self._noise_floor = rms
                self._threshold = max(cfg.onset_threshold, rms * cfg.noise_floor_multiplier)
                self._state = DetectorState.LISTENING
                logger.info(
                    "Noise floor %.4f, onset threshold %.4f", self._noise_floor, self._threshold
                )
            return None

        if rms <= self._threshold:
            return None

        above = np.flatnonzero(np.abs(chunk) > self._threshold)
        onset = chunk_start + (int(above[0]) if above.size else 0)
        timestamp_ms = onset / cfg.sample_rate * 1000

        if (
            self._last_detection_ms is not None
            and timestamp_ms - self._last_detection_ms < cfg.min_click_gap_ms
        ):
            return None

        frequency = dominant_frequency(self._history[-cfg.fft_size :], cfg.sample_rate)
        if frequency is None or not self._is_expected_frequency(frequency):
            logger.debug(
                "Onset at %.1fms ignored, frequency %s not expected", timestamp_ms, frequency
            )
            return None

        detection = Detection(
            timestamp_ms=timestamp_ms,
            frequency_hz=frequency,
            confidence=min(1.0, rms / self._threshold),
        )
        self._last_detection_ms = timestamp_ms
        self._detections.append(detection)
        logger.debug(
            "Click detected at %.1fms, %.0fHz, confidence %.2f",
            timestamp_ms,
            frequency,
            detection.confidence,
        )
        return detection

    def _is_expected_frequency(self, frequency: float) -> bool:
        return any(
            abs(frequency - expected) <= self._config.frequency_tolerance_hz
            for expected in self._config.expected_frequencies
        )
