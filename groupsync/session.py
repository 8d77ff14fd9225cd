"""Calibration session orchestration.

A CalibrationSession measures the acoustic latency of one endpoint:

1. Synchronize with the Sendspin server clock (optional, degrades gracefully).
2. Open the microphone and measure the noise floor.
3. Ask the playback controller to play the click track on the endpoint,
   falling back to local playback if that fails.
4. Listen until every click was heard or the deadline passes.
5. Match the detections against the schedule and reduce them to an offset.

Progress is reported as typed events on an asyncio.Queue. Every exit path
(success, failure, cancellation) releases the capture device, stops local
playback and disconnects the sync channel.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Protocol, TypeVar

import numpy as np

from groupsync.click_track import ClickTrackConfig, generate_schedule, render_track
from groupsync.clock_sync import ClockSynchronizer
from groupsync.detector import Detection, DetectorConfig, DetectorState, OnsetDetector
from groupsync.errors import CaptureError, ChannelError, GroupSyncError, PlaybackError
from groupsync.offset import MatchConfig, OffsetCalculator
from groupsync.utils import create_task, monotonic_us

logger = logging.getLogger(__name__)

_T = TypeVar("_T")


class AudioCapture(Protocol):
    """Microphone-like source of float samples."""

    async def open(self, sample_rate: int, channels: int) -> Any:
        """Open the device and return a handle. Raises CaptureError."""
        ...

    async def read_chunk(self, handle: Any) -> np.ndarray:
        """Return the next block of samples, waiting for it if necessary."""
        ...

    async def close(self, handle: Any) -> None: ...


class PlaybackController(Protocol):
    """Remote controller able to start playback on an endpoint."""

    async def play_media(self, target_id: str, uri: str, queue_mode: str = "replace") -> None:
        """Start playing uri on target_id. Raises PlaybackError."""
        ...


class LocalPlayback(Protocol):
    """Local output device used when the remote controller fails."""

    def play(self, samples: np.ndarray, sample_rate: int) -> None: ...

    def stop(self) -> None: ...


class ClockSource(Protocol):
    """Connection that keeps a ClockSynchronizer up to date."""

    @property
    def clock(self) -> ClockSynchronizer: ...

    async def connect(self, url: str) -> None: ...

    async def wait_for_sync(self, timeout: float) -> bool: ...

    async def disconnect(self) -> None: ...


class SessionState(Enum):
    """Lifecycle of a CalibrationSession."""

    IDLE = auto()
    CLOCK_SYNCING = auto()
    SYNCED = auto()
    SYNC_FAILED_FALLBACK = auto()
    """Clock sync unavailable; offsets use local timestamps only."""
    AUDIO_INIT = auto()
    LISTENING = auto()
    COMPLETING = auto()
    ERROR = auto()


@dataclass(frozen=True, slots=True)
class CalibrationConfig:
    """Immutable configuration snapshot for one calibration session."""

    click_track: ClickTrackConfig = field(default_factory=ClickTrackConfig)
    detector: DetectorConfig = field(default_factory=DetectorConfig)
    matching: MatchConfig = field(default_factory=MatchConfig)
    clock_sync_timeout_s: float = 5.0
    """Deadline for connecting to the clock source and converging."""
    require_clock_sync: bool = False
    """Treat a failed sync connection as fatal instead of falling back."""
    startup_slack_ms: float = 2000.0
    """Extra listening time beyond the track duration."""
    queue_mode: str = "replace"
    capture_channels: int = 1
    capture_timeout_s: float = 5.0
    """Longest wait for a single chunk before the device counts as stalled."""

    def detector_config(self) -> DetectorConfig:
        """Detector settings aligned with the click track's rate and frequencies."""
        return dataclasses.replace(
            self.detector,
            sample_rate=self.click_track.sample_rate,
            expected_frequencies=tuple(float(f) for f in self.click_track.frequencies),
        )


@dataclass(frozen=True, slots=True)
class CalibrationResult:
    """Outcome of a completed calibration.

    A low confidence signals poor data, not failure; failures raise instead.
    """

    endpoint_id: str
    endpoint_name: str
    offset_ms: float
    confidence: float
    detected_count: int
    total_expected: int
    matched_count: int = 0
    std_dev_ms: float = 0.0
    clock_synced: bool = False
    """False when the session ran without a converged clock estimate."""
    used_local_playback: bool = False


@dataclass(frozen=True, slots=True)
class StateChanged:
    state: SessionState


@dataclass(frozen=True, slots=True)
class ClickDetected:
    detection: Detection


@dataclass(frozen=True, slots=True)
class Progress:
    detected: int
    total: int

    @property
    def percentage(self) -> int:
        return round(self.detected / self.total * 100) if self.total else 0


@dataclass(frozen=True, slots=True)
class CalibrationCompleted:
    result: CalibrationResult


@dataclass(frozen=True, slots=True)
class CalibrationFailed:
    error: Exception
    message: str


SessionEvent = StateChanged | ClickDetected | Progress | CalibrationCompleted | CalibrationFailed


class _Cancelled(Exception):
    """Raised internally when cancel() interrupts a wait."""


class CalibrationSession:
    """Calibrates a single endpoint."""

    def __init__(
        self,
        endpoint_id: str,
        endpoint_name: str,
        *,
        capture: AudioCapture,
        playback: PlaybackController,
        media_uri: str,
        sync_client: ClockSource | None = None,
        sync_url: str | None = None,
        local_player: LocalPlayback | None = None,
        config: CalibrationConfig | None = None,
        clock_us: Callable[[], int] | None = None,
    ) -> None:
        """Initialize the session.

        Args:
            endpoint_id: Player/queue identifier of the endpoint.
            endpoint_name: Human-readable endpoint name.
            capture: Microphone source.
            playback: Controller used to start the click track on the endpoint.
            media_uri: URI of the rendered click track, as the controller sees it.
            sync_client: Optional clock source for the Sendspin server.
            sync_url: Server URL for sync_client.
            local_player: Optional fallback output when remote playback fails.
            config: Session configuration.
            clock_us: Local monotonic clock in microseconds. Defaults to the
                event loop clock.
        """
        self._config = config or CalibrationConfig()
        if self._config.require_clock_sync and (sync_client is None or not sync_url):
            raise ValueError("require_clock_sync needs a sync client and a sync URL")

        self.endpoint_id = endpoint_id
        self.endpoint_name = endpoint_name
        self._capture = capture
        self._playback = playback
        self._media_uri = media_uri
        self._sync_client = sync_client
        self._sync_url = sync_url
        self._local_player = local_player
        self._clock_us = clock_us or monotonic_us

        self._schedule = generate_schedule(self._config.click_track)
        self._detector = OnsetDetector(self._config.detector_config())
        self._calculator = OffsetCalculator(
            self._config.click_track.sample_rate, self._config.matching
        )

        self.events: asyncio.Queue[SessionEvent] = asyncio.Queue()
        self._state = SessionState.IDLE
        self._running = False
        self._cancel_event = asyncio.Event()
        self._detections: list[Detection] = []
        self._handle: Any = None
        self._local_playing = False
        self._sync_attempted = False

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def detections(self) -> list[Detection]:
        """Detections of the current or last run, relative to capture start."""
        return list(self._detections)

    @property
    def total_expected(self) -> int:
        return len(self._schedule)

    @property
    def current_level(self) -> float:
        return self._detector.current_level

    def cancel(self) -> None:
        """Stop a running session at the next scheduling point."""
        if self._running:
            logger.info("Cancelling calibration of %s", self.endpoint_name)
            self._cancel_event.set()

    def _set_state(self, state: SessionState) -> None:
        if state is self._state:
            return
        logger.debug("Session %s: %s -> %s", self.endpoint_id, self._state.name, state.name)
        self._state = state
        self.events.put_nowait(StateChanged(state))

    async def run(self) -> CalibrationResult | None:
        """Run the calibration.

        Returns:
            The result, or None if the session was cancelled.

        Raises:
            RuntimeError: If the session is already running.
            CaptureError: If the microphone cannot be used.
            PlaybackError: If playback failed and no local fallback exists.
            ChannelError: If clock sync is required but the server is unreachable.
        """
        if self._running:
            raise RuntimeError("Calibration already running")
        self._running = True
        self._cancel_event.clear()
        self._detections = []
        self._handle = None
        self._local_playing = False
        self._sync_attempted = False
        cancelled = False

        try:
            clock_synced = await self._synchronize_clock()

            self._set_state(SessionState.AUDIO_INIT)
            self._handle = await self._capture.open(
                self._config.click_track.sample_rate, self._config.capture_channels
            )
            capture_start_us = await self._capture_noise_floor(self._handle)

            play_cmd_us = await self._start_playback()

            self._set_state(SessionState.LISTENING)
            await self._listen(self._handle, play_cmd_us)

            self._set_state(SessionState.COMPLETING)
            result = self._complete(capture_start_us, play_cmd_us, clock_synced)
        except _Cancelled:
            logger.info("Calibration of %s cancelled", self.endpoint_name)
            cancelled = True
        except Exception as err:
            self._set_state(SessionState.ERROR)
            if isinstance(err, GroupSyncError):
                logger.error("Calibration of %s failed: %s", self.endpoint_name, err)
            else:
                logger.exception("Unexpected error calibrating %s", self.endpoint_name)
            self.events.put_nowait(CalibrationFailed(err, str(err)))
            raise
        finally:
            await self._cleanup()
            self._running = False

        if cancelled:
            self._set_state(SessionState.IDLE)
            return None
        self.events.put_nowait(CalibrationCompleted(result))
        self._set_state(SessionState.IDLE)
        return result

    async def _race(self, coro: Coroutine[Any, Any, _T], timeout: float | None = None) -> _T:
        """Await coro unless cancel() is called first.

        Raises:
            _Cancelled: If the session was cancelled.
            TimeoutError: If timeout elapsed first.
        """
        task = create_task(coro)
        cancel_task = create_task(self._cancel_event.wait())
        done, pending = await asyncio.wait(
            {task, cancel_task}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
        for pending_task in pending:
            pending_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await pending_task
        if cancel_task in done:
            if task in done and task.exception() is not None:
                logger.debug("Ignoring error after cancellation: %s", task.exception())
            raise _Cancelled
        if task in done:
            return task.result()
        raise TimeoutError

    async def _synchronize_clock(self) -> bool:
        """Connect the clock source and wait for convergence.

        Returns:
            Whether the clock estimate converged.
        """
        if self._sync_client is None or not self._sync_url:
            logger.info("No Sendspin server configured, using local timestamps only")
            self._set_state(SessionState.SYNC_FAILED_FALLBACK)
            return False

        self._set_state(SessionState.CLOCK_SYNCING)
        self._sync_attempted = True
        timeout = self._config.clock_sync_timeout_s
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        try:
            await self._race(self._sync_client.connect(self._sync_url), timeout=timeout)
        except TimeoutError as err:
            if self._config.require_clock_sync:
                raise ChannelError(f"No clock sync connection within {timeout:.1f}s") from err
            logger.warning("Clock sync connection timed out, continuing without it")
            self._set_state(SessionState.SYNC_FAILED_FALLBACK)
            return False
        except ChannelError as err:
            if self._config.require_clock_sync:
                raise
            logger.warning("Clock sync unavailable (%s), continuing without it", err)
            self._set_state(SessionState.SYNC_FAILED_FALLBACK)
            return False

        remaining = max(deadline - loop.time(), 0.0)
        converged = await self._race(self._sync_client.wait_for_sync(remaining))
        if converged:
            self._set_state(SessionState.SYNCED)
        else:
            logger.warning(
                "Clock did not converge within %.1fs, continuing with reduced accuracy",
                timeout,
            )
            self._set_state(SessionState.SYNC_FAILED_FALLBACK)
        return converged

    async def _read(self, handle: Any, timeout: float) -> np.ndarray:
        chunk = await self._race(self._capture.read_chunk(handle), timeout=timeout)
        samples = np.asarray(chunk, dtype=np.float32)
        if samples.ndim > 1:
            samples = samples.mean(axis=1)
        return samples

    async def _capture_noise_floor(self, handle: Any) -> int:
        """Start the detector and feed it until the noise floor is known.

        Returns:
            Local time of the first captured sample, in microseconds.
        """
        self._detector.start()
        capture_start_us: int | None = None
        sample_rate = self._config.click_track.sample_rate
        while self._detector.state is DetectorState.CAPTURING_NOISE_FLOOR:
            try:
                samples = await self._read(handle, self._config.capture_timeout_s)
            except TimeoutError as err:
                raise CaptureError("No audio received from the capture device") from err
            if capture_start_us is None:
                capture_start_us = self._clock_us() - round(samples.size / sample_rate * 1e6)
            self._detector.process_chunk(samples)
        assert capture_start_us is not None
        return capture_start_us

    async def _start_playback(self) -> int:
        """Start the click track on the endpoint, or locally as a fallback.

        Returns:
            Local time of the play command, in microseconds.
        """
        play_cmd_us = self._clock_us()
        try:
            await self._race(
                self._playback.play_media(
                    self.endpoint_id, self._media_uri, self._config.queue_mode
                )
            )
        except PlaybackError as err:
            if self._local_player is None:
                raise
            logger.warning("Remote playback failed (%s), playing the click track locally", err)
            track = render_track(self._config.click_track)
            play_cmd_us = self._clock_us()
            self._local_playing = True
            self._local_player.play(track, self._config.click_track.sample_rate)
            return play_cmd_us
        logger.info("Playing calibration track on %s", self.endpoint_name)
        return play_cmd_us

    async def _listen(self, handle: Any, play_cmd_us: int) -> None:
        total_ms = self._config.click_track.total_duration_s * 1000
        deadline_us = play_cmd_us + round((total_ms + self._config.startup_slack_ms) * 1000)
        total = len(self._schedule)

        while len(self._detections) < total:
            remaining_s = (deadline_us - self._clock_us()) / 1e6
            if remaining_s <= 0:
                logger.info("Listening deadline reached")
                break
            try:
                samples = await self._read(
                    handle, min(remaining_s, self._config.capture_timeout_s)
                )
            except TimeoutError:
                if self._clock_us() >= deadline_us:
                    logger.info("Listening deadline reached")
                    break
                raise CaptureError("Capture device stopped delivering audio") from None
            detection = self._detector.process_chunk(samples)
            if detection is not None:
                self._detections.append(detection)
                self.events.put_nowait(ClickDetected(detection))
                self.events.put_nowait(Progress(len(self._detections), total))
                logger.info("Detection %d/%d", len(self._detections), total)

    def _complete(
        self,
        capture_start_us: int,
        play_cmd_us: int,
        clock_synced: bool,
    ) -> CalibrationResult:
        self._detector.stop()
        clock = self._sync_client.clock if clock_synced and self._sync_client else None

        def to_reference(local_us: float) -> float:
            return clock.local_to_remote_time(local_us) if clock is not None else local_us

        play_ref = to_reference(play_cmd_us)
        rebased = [
            dataclasses.replace(
                detection,
                timestamp_ms=(
                    to_reference(capture_start_us + detection.timestamp_ms * 1000) - play_ref
                )
                / 1000,
            )
            for detection in self._detections
        ]

        pairs = self._calculator.match_detections(rebased, self._schedule)
        summary = self._calculator.calculate_average_offset(pairs)
        result = CalibrationResult(
            endpoint_id=self.endpoint_id,
            endpoint_name=self.endpoint_name,
            offset_ms=summary.offset_ms,
            confidence=summary.confidence,
            detected_count=len(self._detections),
            total_expected=len(self._schedule),
            matched_count=len(pairs),
            std_dev_ms=summary.std_dev_ms,
            clock_synced=clock_synced,
            used_local_playback=self._local_playing,
        )
        logger.info(
            "Calibration of %s complete: offset=%.1fms confidence=%.2f (%d/%d clicks, std %.1fms)",
            self.endpoint_name,
            result.offset_ms,
            result.confidence,
            result.detected_count,
            result.total_expected,
            result.std_dev_ms,
        )
        return result

    async def _cleanup(self) -> None:
        self._detector.stop()
        if self._handle is not None:
            handle, self._handle = self._handle, None
            try:
                await self._capture.close(handle)
            except Exception:
                logger.exception("Failed to close capture device")
        if self._local_playing and self._local_player is not None:
            try:
                self._local_player.stop()
            except Exception:
                logger.exception("Failed to stop local playback")
        if self._sync_attempted and self._sync_client is not None:
            try:
                await self._sync_client.disconnect()
            except Exception:
                logger.exception("Failed to disconnect from Sendspin server")
