"""
Pytest configuration and fixtures for groupsync tests.
"""

import sys
from pathlib import Path

import numpy as np
import pytest

# Add the repository root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from groupsync.click_track import ClickTrackConfig, render_track  # noqa: E402


@pytest.fixture
def sample_rate():
    """Standard sample rate for tests."""
    return 48000


@pytest.fixture
def short_track_config(sample_rate):
    """Four-click track, one click per second."""
    return ClickTrackConfig(
        sample_rate=sample_rate,
        total_duration_s=4.0,
        click_duration_ms=50.0,
        click_interval_ms=1000.0,
    )


@pytest.fixture
def short_track_mono(short_track_config):
    """Rendered mono signal of the short track."""
    return render_track(short_track_config)[:, 0].copy()


@pytest.fixture
def silence():
    """Factory for silent float32 buffers of a given length in samples."""

    def make(num_samples):
        return np.zeros(num_samples, dtype=np.float32)

    return make
