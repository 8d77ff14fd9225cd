"""Reduction of click detections to a single playback offset.

Detections are paired with the expected click schedule by greedy
nearest-neighbour matching gated on frequency, seeded with a coarse global
offset taken from the first detections. The matched pairs are then reduced to
a robust mean with two-sigma outlier rejection. A cross-correlation estimator
is also provided for refining a single click against its template.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass, field

import numpy as np
from scipy import signal

from groupsync.click_track import ClickEvent
from groupsync.detector import Detection

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class MatchConfig:
    """Parameters for matching and aggregation.

    The frequency tolerance here is independent of the detector's own
    tolerance; post-hoc matching is intentionally looser.
    """

    frequency_tolerance_hz: float = 150.0
    match_window_ms: float = 300.0
    seed_detections: int = 3
    """How many leading detections may seed the coarse offset."""
    outlier_std_devs: float = 2.0
    confidence_scale_ms: float = 50.0
    """Standard deviation at which confidence drops to zero."""
    fallback_confidence: float = 0.5
    """Confidence reported when every pair was rejected as an outlier."""
    prominence_scale: float = 10.0
    """Correlation peak prominence that maps to full confidence."""


@dataclass(frozen=True, slots=True)
class MatchedPair:
    """A detection paired with the schedule entry it was attributed to."""

    expected_time_ms: float
    detected_time_ms: float

    @property
    def offset_ms(self) -> float:
        return self.detected_time_ms - self.expected_time_ms


@dataclass(frozen=True, slots=True)
class OffsetSummary:
    """Robust offset estimate over a set of matched pairs.

    Attributes:
        offset_ms: Mean offset after outlier rejection.
        confidence: Confidence in [0, 1].
        std_dev_ms: Population standard deviation of the kept offsets.
        used_offsets: Offsets that contributed to the estimate.
        rejected_offsets: Offsets discarded as outliers.
    """

    offset_ms: float
    confidence: float
    std_dev_ms: float
    used_offsets: tuple[float, ...] = field(default=())
    rejected_offsets: tuple[float, ...] = field(default=())


@dataclass(frozen=True, slots=True)
class CorrelationResult:
    """Outcome of cross-correlating a template against a recording."""

    offset_ms: float
    confidence: float
    correlation_peak: float
    lag_samples: float


def _mean_std(values: Sequence[float]) -> tuple[float, float]:
    arr = np.asarray(values, dtype=np.float64)
    mean = float(arr.mean())
    return mean, float(np.sqrt(np.mean((arr - mean) ** 2)))


class OffsetCalculator:
    """Matches detections to a schedule and aggregates the resulting offsets."""

    def __init__(self, sample_rate: int = 48000, config: MatchConfig | None = None) -> None:
        """Initialize the calculator.

        Args:
            sample_rate: Sample rate used to convert correlation lags to time.
            config: Matching and aggregation parameters.
        """
        self._sample_rate = sample_rate
        self._config = config or MatchConfig()

    @property
    def config(self) -> MatchConfig:
        return self._config

    def _frequency_matches(self, detected_hz: float, expected_hz: float) -> bool:
        return abs(detected_hz - expected_hz) <= self._config.frequency_tolerance_hz

    def estimate_seed_offset(
        self, detections: Sequence[Detection], schedule: Sequence[ClickEvent]
    ) -> float | None:
        """Estimate a coarse global offset from the leading detections.

        For each of the first seed_detections detections, the first schedule
        entry with a matching frequency is looked up; the first such pairing
        found determines the seed.

        Returns:
            detected minus expected time of the seeding pair, or None if none
            of the leading detections matches any schedule frequency.
        """
        for detection in detections[: self._config.seed_detections]:
            for event in schedule:
                if self._frequency_matches(detection.frequency_hz, event.frequency_hz):
                    return detection.timestamp_ms - event.expected_time_ms
        return None

    def match_detections(
        self, detections: Sequence[Detection], schedule: Sequence[ClickEvent]
    ) -> list[MatchedPair]:
        """Pair detections with schedule entries.

        Each schedule entry is consumed by at most one detection. Detections
        with no frequency-compatible entry inside the match window are
        dropped.

        Returns:
            Matched pairs in detection order. Empty if no seed could be found.
        """
        seed = self.estimate_seed_offset(detections, schedule)
        if seed is None:
            logger.info("No detection matched the schedule frequencies; nothing to pair")
            return []

        consumed: set[int] = set()
        pairs: list[MatchedPair] = []
        for detection in detections:
            best_index: int | None = None
            best_distance = math.inf
            for index, event in enumerate(schedule):
                if index in consumed or not self._frequency_matches(
                    detection.frequency_hz, event.frequency_hz
                ):
                    continue
                distance = abs(detection.timestamp_ms - (event.expected_time_ms + seed))
                if distance < best_distance:
                    best_distance = distance
                    best_index = index

            if best_index is None or best_distance >= self._config.match_window_ms:
                logger.debug("Dropping unmatched detection at %.1fms", detection.timestamp_ms)
                continue

            consumed.add(best_index)
            pairs.append(
                MatchedPair(
                    expected_time_ms=schedule[best_index].expected_time_ms,
                    detected_time_ms=detection.timestamp_ms,
                )
            )

        logger.debug(
            "Matched %d of %d detections (seed offset %.1fms)", len(pairs), len(detections), seed
        )
        return pairs

    def calculate_average_offset(self, pairs: Sequence[MatchedPair]) -> OffsetSummary:
        """Reduce matched pairs to a robust mean offset.

        Offsets at or beyond outlier_std_devs standard deviations from the
        mean are rejected; when all offsets are identical nothing is rejected.
        """
        if not pairs:
            return OffsetSummary(offset_ms=0.0, confidence=0.0, std_dev_ms=0.0)

        cfg = self._config
        offsets = [pair.offset_ms for pair in pairs]
        mean, std = _mean_std(offsets)

        if std == 0.0:
            kept, rejected = offsets, []
        else:
            limit = cfg.outlier_std_devs * std
            kept = [o for o in offsets if abs(o - mean) < limit]
            rejected = [o for o in offsets if abs(o - mean) >= limit]

        if not kept:
            return OffsetSummary(
                offset_ms=mean,
                confidence=cfg.fallback_confidence,
                std_dev_ms=std,
                used_offsets=tuple(offsets),
            )

        final_mean, final_std = _mean_std(kept)
        confidence = min(1.0, max(0.0, 1.0 - final_std / cfg.confidence_scale_ms))
        if rejected:
            logger.info("Rejected %d outlier offsets: %s", len(rejected), rejected)

        return OffsetSummary(
            offset_ms=final_mean,
            confidence=confidence,
            std_dev_ms=final_std,
            used_offsets=tuple(kept),
            rejected_offsets=tuple(rejected),
        )

    def calculate_offset(self, reference: np.ndarray, recorded: np.ndarray) -> CorrelationResult:
        """Locate a reference click inside a recording by cross-correlation.

        The template is normalized to zero mean and unit variance, and each
        lag's correlation is averaged over the number of overlapping samples.
        The peak is refined with parabolic interpolation.

        Args:
            reference: Expected click waveform (template).
            recorded: Captured audio that should contain the click.

        Returns:
            Offset of the template's start within the recording. A positive
            offset means the click occurs after the start of the recording.
        """
        template = np.asarray(reference, dtype=np.float64).reshape(-1)
        audio = np.asarray(recorded, dtype=np.float64).reshape(-1)
        if template.size == 0 or audio.size == 0:
            return CorrelationResult(0.0, 0.0, 0.0, 0.0)

        std = template.std()
        if std > 0:
            normalized = (template - template.mean()) / std
        else:
            normalized = np.zeros_like(template)

        sums = signal.correlate(audio, normalized, mode="full")
        counts = signal.correlate(np.ones(audio.size), np.ones(template.size), mode="full")
        correlation = sums / np.maximum(np.rint(counts), 1.0)

        peak_index = int(np.argmax(correlation))
        peak_value = float(correlation[peak_index])
        position = float(peak_index)
        if 0 < peak_index < correlation.size - 1:
            y0, y1, y2 = correlation[peak_index - 1 : peak_index + 2]
            denom = 2 * (y0 - 2 * y1 + y2)
            if denom != 0:
                delta = (y0 - y2) / denom
                if abs(delta) < 1:
                    position += delta
                    peak_value = float(y1 - 0.25 * (y0 - y2) * delta)

        lag = position - (template.size - 1)
        corr_std = float(correlation.std())
        if corr_std > 0:
            prominence = (peak_value - float(correlation.mean())) / corr_std
            confidence = min(1.0, max(0.0, prominence / self._config.prominence_scale))
        else:
            confidence = 0.0

        return CorrelationResult(
            offset_ms=lag * 1000 / self._sample_rate,
            confidence=confidence,
            correlation_peak=peak_value,
            lag_samples=lag,
        )
