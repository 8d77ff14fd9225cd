"""Clock synchronization against a Sendspin server.

Estimates the offset and drift between the local monotonic clock and the
remote server clock from NTP-style four-timestamp exchanges, using a
two-state (offset, drift) Kalman filter. Measurement noise grows with the
round-trip time of each exchange, so samples taken over a congested link
carry less weight.

All timestamps are in microseconds.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ClockSyncConfig:
    """Tuning parameters for the clock filter."""

    process_noise_offset: float = 100.0
    """Offset process noise, in us^2 per second."""
    process_noise_drift: float = 1.0
    """Drift process noise, in (us/s)^2 per second."""
    measurement_noise: float = 10000.0
    """Base measurement noise in us^2, before the RTT term is added."""
    min_measurements: int = 3
    """Samples required before the estimate may be reported as converged."""
    max_offset_uncertainty_us: float = 2000.0
    """Offset standard deviation below which the estimate is converged."""
    initial_offset_variance: float = 1e12
    initial_drift_variance: float = 1e6
    offset_variance_floor: float = 1.0
    drift_variance_floor: float = 0.01


@dataclass(frozen=True, slots=True)
class TimeExchangeSample:
    """One round-trip time exchange.

    Attributes:
        t1: Client send time (local clock).
        t2: Server receive time (remote clock).
        t3: Server send time (remote clock).
        t4: Client receive time (local clock).
    """

    t1: float
    t2: float
    t3: float
    t4: float

    @property
    def measured_offset_us(self) -> float:
        """Offset implied by this exchange, assuming symmetric paths."""
        return ((self.t2 - self.t1) + (self.t3 - self.t4)) / 2

    @property
    def round_trip_us(self) -> float:
        """Network round-trip time, excluding server processing time."""
        return (self.t4 - self.t1) - (self.t3 - self.t2)


@dataclass(slots=True)
class ClockEstimate:
    """Mutable filter state owned by a single ClockSynchronizer."""

    offset_us: float = 0.0
    drift_us_per_s: float = 0.0
    offset_variance: float = 1e12
    drift_variance: float = 1e6
    covariance: float = 0.0
    last_update_us: float = 0.0
    sample_count: int = 0


@dataclass(frozen=True, slots=True)
class ClockSyncStatus:
    """Diagnostic snapshot of the clock estimate."""

    offset_us: float
    drift_us_per_s: float
    offset_uncertainty_us: float
    sample_count: int
    is_converged: bool


class ClockSynchronizer:
    """Kalman-filtered estimate of the remote clock relative to the local one."""

    def __init__(self, config: ClockSyncConfig | None = None) -> None:
        """Initialize the synchronizer with high-uncertainty priors."""
        self._config = config or ClockSyncConfig()
        self._estimate = self._initial_estimate()

    def _initial_estimate(self) -> ClockEstimate:
        return ClockEstimate(
            offset_variance=self._config.initial_offset_variance,
            drift_variance=self._config.initial_drift_variance,
        )

    def reset(self) -> None:
        """Discard all state and restore the initial priors."""
        self._estimate = self._initial_estimate()
        logger.debug("Clock synchronizer reset")

    @property
    def estimate(self) -> ClockEstimate:
        """Current filter state. Do not mutate."""
        return self._estimate

    @property
    def offset_us(self) -> float:
        """Estimated remote minus local clock offset."""
        return self._estimate.offset_us

    @property
    def offset_ms(self) -> float:
        return self._estimate.offset_us / 1000

    @property
    def drift_us_per_s(self) -> float:
        return self._estimate.drift_us_per_s

    @property
    def offset_uncertainty_us(self) -> float:
        """Standard deviation of the offset estimate."""
        return math.sqrt(self._estimate.offset_variance)

    @property
    def sample_count(self) -> int:
        return self._estimate.sample_count

    @property
    def is_converged(self) -> bool:
        """Whether enough samples were seen and the uncertainty is small enough."""
        return (
            self._estimate.sample_count >= self._config.min_measurements
            and self.offset_uncertainty_us < self._config.max_offset_uncertainty_us
        )

    def process_sample(self, sample: TimeExchangeSample) -> bool:
        """Feed one time exchange into the filter.

        Returns:
            True if the sample was applied, False if it was discarded because
            it did not advance the local clock past the previous update.
        """
        est = self._estimate
        cfg = self._config
        measured = sample.measured_offset_us
        rtt = sample.round_trip_us

        if est.sample_count == 0:
            est.offset_us = measured
            est.last_update_us = sample.t4
            est.sample_count = 1
            logger.info("Initial clock sync: offset=%.0fus, rtt=%.0fus", measured, rtt)
            return True

        dt = (sample.t4 - est.last_update_us) / 1_000_000
        if dt <= 0:
            logger.warning(
                "Discarding time sample with non-positive interval (t4=%.0f, last=%.0f)",
                sample.t4,
                est.last_update_us,
            )
            return False

        # Predict
        predicted_offset = est.offset_us + est.drift_us_per_s * dt
        p00 = (
            est.offset_variance
            + 2 * est.covariance * dt
            + est.drift_variance * dt * dt
            + cfg.process_noise_offset * dt
        )
        p01 = est.covariance + est.drift_variance * dt
        p11 = est.drift_variance + cfg.process_noise_drift * dt

        # Update
        noise = cfg.measurement_noise + (rtt * rtt) / 4
        innovation = measured - predicted_offset
        innovation_variance = p00 + noise
        k0 = p00 / innovation_variance
        k1 = p01 / innovation_variance

        est.offset_us = predicted_offset + k0 * innovation
        est.drift_us_per_s += k1 * innovation
        est.offset_variance = (1 - k0) * p00
        est.covariance = (1 - k0) * p01
        est.drift_variance = p11 - k1 * p01

        if est.offset_variance < 0:
            est.offset_variance = cfg.offset_variance_floor
        if est.drift_variance < 0:
            est.drift_variance = cfg.drift_variance_floor

        est.last_update_us = sample.t4
        est.sample_count += 1

        if est.sample_count <= 10 or est.sample_count % 10 == 0:
            logger.debug(
                "Clock sync #%d: offset=%.0fus (+/-%.0f), drift=%.2fus/s, rtt=%.0fus",
                est.sample_count,
                est.offset_us,
                self.offset_uncertainty_us,
                est.drift_us_per_s,
                rtt,
            )
        return True

    def process_measurement(self, t1: float, t2: float, t3: float, t4: float) -> bool:
        """Feed one time exchange given as its four timestamps."""
        return self.process_sample(TimeExchangeSample(t1, t2, t3, t4))

    def local_to_remote_time(self, local_us: float) -> float:
        """Project a local timestamp onto the remote clock."""
        est = self._estimate
        if est.sample_count == 0:
            return local_us + est.offset_us
        elapsed_s = (local_us - est.last_update_us) / 1_000_000
        return local_us + est.offset_us + est.drift_us_per_s * elapsed_s

    def remote_to_local_time(self, remote_us: float) -> float:
        """Project a remote timestamp onto the local clock."""
        est = self._estimate
        if est.sample_count == 0:
            return remote_us - est.offset_us
        approx_local = remote_us - est.offset_us
        elapsed_s = (approx_local - est.last_update_us) / 1_000_000
        return remote_us - (est.offset_us + est.drift_us_per_s * elapsed_s)

    def get_status(self) -> ClockSyncStatus:
        """Return a diagnostic snapshot of the current estimate."""
        return ClockSyncStatus(
            offset_us=self._estimate.offset_us,
            drift_us_per_s=self._estimate.drift_us_per_s,
            offset_uncertainty_us=self.offset_uncertainty_us,
            sample_count=self._estimate.sample_count,
            is_converged=self.is_converged,
        )
