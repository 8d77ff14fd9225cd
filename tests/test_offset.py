"""
Tests for detection matching, offset aggregation and cross-correlation.
"""

import numpy as np
import pytest

from groupsync.click_track import ClickTrackConfig, generate_schedule, synthesize_click
from groupsync.detector import Detection
from groupsync.offset import MatchConfig, MatchedPair, OffsetCalculator


@pytest.fixture
def schedule():
    """Ten-click schedule cycling through the default frequencies."""
    return generate_schedule(ClickTrackConfig(total_duration_s=10.0))


@pytest.fixture
def calculator(sample_rate):
    return OffsetCalculator(sample_rate)


def detections_for(schedule, offsets_ms):
    """Detections at expected time plus per-click offset, with exact frequencies."""
    return [
        Detection(
            timestamp_ms=event.expected_time_ms + offset,
            frequency_hz=event.frequency_hz,
            confidence=1.0,
        )
        for event, offset in zip(schedule, offsets_ms)
    ]


class TestMatching:
    """Tests for seed estimation and greedy matching."""

    def test_seed_from_first_detection(self, calculator, schedule):
        """Seed is the offset of the first frequency-compatible pair."""
        detections = detections_for(schedule, [42.0] * 3)
        assert calculator.estimate_seed_offset(detections, schedule) == pytest.approx(42.0)

    def test_no_seed_without_matching_frequency(self, calculator, schedule):
        """Detections with foreign frequencies produce no seed and no pairs."""
        detections = [Detection(1000.0, 7000.0, 1.0), Detection(2000.0, 7000.0, 1.0)]
        assert calculator.estimate_seed_offset(detections, schedule) is None
        assert calculator.match_detections(detections, schedule) == []

    def test_each_schedule_entry_used_once(self, calculator, schedule):
        """Duplicate detections cannot claim the same schedule entry."""
        detections = detections_for(schedule, [10.0] * 4)
        detections.insert(1, Detection(12.0, 500.0, 1.0))
        pairs = calculator.match_detections(detections, schedule)

        expected = [pair.expected_time_ms for pair in pairs]
        assert len(expected) == len(set(expected))
        assert expected[:4] == [0.0, 1000.0, 2000.0, 3000.0]

    def test_detection_outside_window_is_dropped(self, calculator, schedule):
        """A detection far from any compatible click is not paired."""
        detections = detections_for(schedule, [10.0] * 3)
        detections.append(Detection(3000.0 + 10.0 + 400.0, 3000.0, 1.0))
        pairs = calculator.match_detections(detections, schedule)
        assert len(pairs) == 3

    def test_missing_clicks_still_match(self, calculator, schedule):
        """Skipped clicks leave gaps but the rest still pair correctly."""
        detections = [d for i, d in enumerate(detections_for(schedule, [25.0] * 10)) if i != 4]
        pairs = calculator.match_detections(detections, schedule)
        assert len(pairs) == 9
        assert all(pair.offset_ms == pytest.approx(25.0) for pair in pairs)


class TestAggregation:
    """Tests for calculate_average_offset."""

    def test_consistent_offsets(self, calculator, schedule):
        """Jitter of a millisecond still yields high confidence."""
        offsets = [10.0, 11.0, 9.0, 10.5, 9.5, 10.0, 10.0, 11.0, 9.0, 10.0]
        pairs = calculator.match_detections(detections_for(schedule, offsets), schedule)
        summary = calculator.calculate_average_offset(pairs)

        assert len(pairs) == 10
        assert summary.offset_ms == pytest.approx(10.0, abs=0.1)
        assert summary.confidence > 0.9
        assert summary.rejected_offsets == ()

    def test_default_track_end_to_end(self, calculator):
        """A full 20-click track heard 10 ms late matches every click."""
        config = ClickTrackConfig(
            sample_rate=48000,
            total_duration_s=20.0,
            click_interval_ms=1000.0,
            frequencies=(500.0, 1000.0, 2000.0, 3000.0),
        )
        schedule = generate_schedule(config)
        pairs = calculator.match_detections(detections_for(schedule, [10.0] * 20), schedule)
        summary = calculator.calculate_average_offset(pairs)

        assert len(schedule) == 20
        assert len(pairs) == 20
        assert summary.offset_ms == pytest.approx(10.0)
        assert summary.confidence > 0.9

    def test_outlier_rejected(self, calculator):
        """An offset exactly two standard deviations out is rejected."""
        pairs = [MatchedPair(i * 1000.0, i * 1000.0 + 10.0) for i in range(4)]
        pairs.append(MatchedPair(4000.0, 4500.0))
        summary = calculator.calculate_average_offset(pairs)

        assert summary.offset_ms == pytest.approx(10.0)
        assert summary.rejected_offsets == (500.0,)
        assert summary.confidence == pytest.approx(1.0)
        assert summary.std_dev_ms == pytest.approx(0.0)

    def test_identical_offsets_are_all_kept(self, calculator):
        """Zero spread rejects nothing."""
        pairs = [MatchedPair(i * 1000.0, i * 1000.0 - 5.0) for i in range(3)]
        summary = calculator.calculate_average_offset(pairs)
        assert summary.offset_ms == pytest.approx(-5.0)
        assert len(summary.used_offsets) == 3
        assert summary.confidence == 1.0

    def test_empty(self, calculator):
        """No pairs yields a zero-confidence result."""
        summary = calculator.calculate_average_offset([])
        assert summary.offset_ms == 0.0
        assert summary.confidence == 0.0

    def test_wide_spread_lowers_confidence(self):
        """Confidence falls linearly with the remaining spread."""
        calculator = OffsetCalculator(config=MatchConfig(outlier_std_devs=10.0))
        pairs = [MatchedPair(0.0, 0.0), MatchedPair(1000.0, 1050.0)]
        summary = calculator.calculate_average_offset(pairs)
        assert summary.offset_ms == pytest.approx(25.0)
        assert summary.std_dev_ms == pytest.approx(25.0)
        assert summary.confidence == pytest.approx(0.5)


class TestCorrelation:
    """Tests for calculate_offset."""

    def test_locates_template(self, calculator, sample_rate):
        """A click placed 10 ms into the recording is located at 10 ms."""
        template = synthesize_click(1000.0, 50.0, 0.8, sample_rate)
        recording = np.zeros(4800, dtype=np.float32)
        recording[480 : 480 + template.size] = template

        result = calculator.calculate_offset(template, recording)
        assert result.offset_ms == pytest.approx(10.0, abs=0.05)
        assert result.lag_samples == pytest.approx(480.0, abs=2.0)
        assert result.confidence > 0.0
        assert result.correlation_peak > 0.0

    def test_empty_input(self, calculator):
        """Empty buffers give a zero result."""
        result = calculator.calculate_offset(np.zeros(0), np.zeros(100))
        assert result.offset_ms == 0.0
        assert result.confidence == 0.0
