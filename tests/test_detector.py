"""
Tests for the onset detector.
"""

import numpy as np
import pytest

from groupsync.click_track import synthesize_click
from groupsync.detector import (
    DetectorConfig,
    DetectorState,
    OnsetDetector,
    compute_rms,
    dominant_frequency,
)

CHUNK = 1600
"""Chunk size that divides the one-second click interval at 48 kHz."""


def feed(detector, signal, chunk=CHUNK):
    """Feed a signal in fixed-size chunks and collect detections."""
    found = []
    for start in range(0, len(signal), chunk):
        detection = detector.process_chunk(signal[start : start + chunk])
        if detection is not None:
            found.append(detection)
    return found


class TestHelpers:
    """Tests for RMS and dominant frequency helpers."""

    def test_rms(self):
        """RMS of a constant block is its magnitude."""
        assert compute_rms(np.full(100, -0.5, dtype=np.float32)) == pytest.approx(0.5)
        assert compute_rms(np.zeros(0, dtype=np.float32)) == 0.0

    @pytest.mark.parametrize("frequency", [500.0, 1000.0, 2000.0, 3000.0])
    def test_dominant_frequency(self, frequency, sample_rate):
        """Peak bin lies within two bins of the tone frequency."""
        click = synthesize_click(frequency, 50.0, 0.8, sample_rate)
        found = dominant_frequency(click[:2048], sample_rate)
        assert found == pytest.approx(frequency, abs=2 * sample_rate / 2048)

    def test_dominant_frequency_of_silence(self, sample_rate):
        """Silence has no dominant frequency."""
        assert dominant_frequency(np.zeros(2048, dtype=np.float32), sample_rate) is None


class TestOnsetDetector:
    """Tests for OnsetDetector."""

    def test_idle_detector_ignores_audio(self, short_track_mono):
        """Nothing is processed before start()."""
        detector = OnsetDetector()
        assert detector.state is DetectorState.IDLE
        assert detector.process_chunk(short_track_mono[:CHUNK]) is None
        assert detector.elapsed_ms == 0.0

    def test_noise_floor_phase(self, silence):
        """Noise floor is measured over the first 500 ms."""
        detector = OnsetDetector()
        detector.start()
        assert detector.state is DetectorState.CAPTURING_NOISE_FLOOR

        feed(detector, silence(14 * CHUNK))
        assert detector.state is DetectorState.CAPTURING_NOISE_FLOOR

        feed(detector, silence(CHUNK))
        assert detector.state is DetectorState.LISTENING
        assert detector.noise_floor == 0.0
        assert detector.threshold == pytest.approx(0.01)

    def test_threshold_follows_noise(self):
        """A noisy room raises the onset threshold above its floor."""
        rng = np.random.default_rng(1)
        noise = (rng.standard_normal(16 * CHUNK) * 0.02).astype(np.float32)
        detector = OnsetDetector()
        detector.start()
        feed(detector, noise)
        assert detector.state is DetectorState.LISTENING
        assert detector.threshold == pytest.approx(detector.noise_floor * 3.0)
        assert detector.threshold > 0.05

    def test_detects_every_click(self, short_track_mono, silence, sample_rate):
        """Every click of the track is found at its position and frequency."""
        prefix_ms = 600.0
        prefix = silence(int(prefix_ms / 1000 * sample_rate))
        signal = np.concatenate((prefix, short_track_mono, silence(sample_rate // 2)))

        detector = OnsetDetector()
        detector.start()
        found = feed(detector, signal)

        assert len(found) == 4
        expected_freqs = [500.0, 1000.0, 2000.0, 3000.0]
        for i, detection in enumerate(found):
            assert detection.timestamp_ms == pytest.approx(prefix_ms + i * 1000.0, abs=10.0)
            assert detection.frequency_hz == pytest.approx(expected_freqs[i], abs=100.0)
            assert 0.0 < detection.confidence <= 1.0
        assert detector.detections == found

    def test_unexpected_frequency_is_ignored(self, silence, sample_rate):
        """A loud tone outside the expected set is not reported."""
        tone = synthesize_click(250.0, 50.0, 0.8, sample_rate)
        signal = np.concatenate((silence(18 * CHUNK), tone, silence(CHUNK)))

        detector = OnsetDetector()
        detector.start()
        assert feed(detector, signal) == []

    def test_min_gap_suppresses_repeats(self, silence, sample_rate):
        """Two clicks closer than the minimum gap count once."""
        click = synthesize_click(1000.0, 50.0, 0.8, sample_rate)
        gap = silence(int(0.2 * sample_rate) - click.size)
        signal = np.concatenate((silence(18 * CHUNK), click, gap, click, silence(CHUNK)))

        detector = OnsetDetector()
        detector.start()
        assert len(feed(detector, signal)) == 1

    def test_start_resets_state(self, short_track_mono, silence):
        """start() clears detections and elapsed time."""
        detector = OnsetDetector()
        detector.start()
        feed(detector, np.concatenate((silence(18 * CHUNK), short_track_mono)))
        assert detector.detections

        detector.start()
        assert detector.detections == []
        assert detector.elapsed_ms == 0.0
        assert detector.state is DetectorState.CAPTURING_NOISE_FLOOR

    def test_recent_samples(self):
        """History returns the trailing audio."""
        config = DetectorConfig(history_ms=100.0)
        detector = OnsetDetector(config)
        detector.start()
        ramp = np.linspace(0.0, 1.0, 10 * CHUNK, dtype=np.float32)
        feed(detector, ramp)
        recent = detector.recent_samples()
        assert recent.size == 4800
        assert recent[-1] == pytest.approx(1.0)
        assert detector.recent_samples(10.0).size == 480
