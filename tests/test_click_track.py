"""
Tests for click track schedule, synthesis and WAV encoding.
"""

import numpy as np
import pytest

from groupsync.click_track import (
    WAV_HEADER_SIZE,
    ClickTrackConfig,
    encode_wav,
    generate_schedule,
    read_wav,
    read_wav_info,
    render_track,
    synthesize_click,
    to_pcm16,
    write_wav,
)


class TestSchedule:
    """Tests for generate_schedule."""

    def test_default_schedule_has_twenty_clicks(self):
        """Default track: 20 s at one click per second."""
        schedule = generate_schedule(ClickTrackConfig())
        assert len(schedule) == 20
        assert schedule[0].expected_time_ms == 0.0
        assert schedule[-1].expected_time_ms == 19000.0

    def test_frequencies_cycle(self):
        """Frequencies repeat in configured order."""
        schedule = generate_schedule(ClickTrackConfig())
        freqs = [event.frequency_hz for event in schedule[:6]]
        assert freqs == [500.0, 1000.0, 2000.0, 3000.0, 500.0, 1000.0]

    def test_partial_interval_is_dropped(self):
        """Only whole intervals produce clicks."""
        config = ClickTrackConfig(total_duration_s=2.5, click_interval_ms=1000.0)
        assert config.num_clicks == 2
        assert len(generate_schedule(config)) == 2


class TestSynthesis:
    """Tests for click synthesis and track rendering."""

    def test_click_length_and_envelope(self, sample_rate):
        """A 50 ms click at 48 kHz is 2400 samples and starts silent."""
        click = synthesize_click(1000.0, 50.0, 0.8, sample_rate)
        assert click.dtype == np.float32
        assert click.shape == (2400,)
        assert click[0] == 0.0
        assert np.max(np.abs(click)) <= 0.8 + 1e-6
        assert np.max(np.abs(click)) > 0.7

    def test_zero_length_click(self, sample_rate):
        """A click shorter than one sample is empty."""
        assert synthesize_click(1000.0, 0.0, 0.8, sample_rate).size == 0

    def test_render_shape_and_placement(self, short_track_config):
        """Rendered track has one click per interval on every channel."""
        track = render_track(short_track_config)
        assert track.shape == (4 * 48000, 2)
        assert np.array_equal(track[:, 0], track[:, 1])

        click_len = 2400
        for i in range(4):
            start = i * 48000
            assert np.any(track[start : start + click_len, 0] != 0.0)
            assert np.all(track[start + click_len : start + 48000, 0] == 0.0)


class TestWav:
    """Tests for WAV encoding and decoding."""

    def test_header_is_canonical(self, short_track_config):
        """Encoded WAV carries a 44-byte header and 16-bit stereo PCM."""
        track = render_track(short_track_config)
        data = encode_wav(track, short_track_config.sample_rate)

        assert data[:4] == b"RIFF"
        assert data[8:12] == b"WAVE"
        assert len(data) == WAV_HEADER_SIZE + track.shape[0] * 2 * 2

        info = read_wav_info(data)
        assert info.sample_rate == 48000
        assert info.channels == 2
        assert info.bits_per_sample == 16
        assert info.num_frames == track.shape[0]

    def test_pcm_clamps(self):
        """Out of range samples are clamped rather than wrapped."""
        pcm = to_pcm16(np.array([2.0, -2.0, 0.0], dtype=np.float32))
        assert pcm.tolist() == [32767, -32767, 0]

    def test_read_wav_info_rejects_garbage(self):
        """Non-RIFF buffers are rejected."""
        with pytest.raises(ValueError):
            read_wav_info(b"\x00" * 64)
        with pytest.raises(ValueError):
            read_wav_info(b"RIFF")

    def test_write_and_read_back_mono(self, tmp_path, short_track_config):
        """Stereo files are read back as mono floats in [-1, 1]."""
        track = render_track(short_track_config)
        path = tmp_path / "track.wav"
        write_wav(path, track, short_track_config.sample_rate)

        samples, rate = read_wav(path)
        assert rate == 48000
        assert samples.ndim == 1
        assert samples.shape[0] == track.shape[0]
        assert np.max(np.abs(samples - track[:, 0])) < 1e-3
