"""Audio device access for calibration.

This module provides microphone capture and local fallback playback on top of
sounddevice, plus device enumeration for listing and resolving input and
output devices.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Final, Literal

import numpy as np
import sounddevice
from sounddevice import CallbackFlags

from groupsync.errors import CaptureError, PlaybackError

if TYPE_CHECKING:

    class CDataTimeInfo:
        """Type stub for sounddevice CFFI time info."""

        inputBufferAdcTime: float  # noqa: N815
        currentTime: float  # noqa: N815


logger = logging.getLogger(__name__)

DeviceKind = Literal["input", "output"]


@dataclass(slots=True)
class AudioDevice:
    """Represents an audio device.

    Attributes:
        index: Device index used for selection.
        name: Human-readable device name.
        input_channels: Number of input channels supported.
        output_channels: Number of output channels supported.
        sample_rate: Default sample rate in Hz.
        is_default_input: Whether this is the system default input device.
        is_default_output: Whether this is the system default output device.
    """

    index: int
    name: str
    input_channels: int
    output_channels: int
    sample_rate: float
    is_default_input: bool
    is_default_output: bool


def query_devices(kind: DeviceKind | None = None) -> list[AudioDevice]:
    """Query available audio devices.

    Args:
        kind: Restrict to devices with input or output channels. None lists all.

    Returns:
        List of AudioDevice objects.
    """
    devices = sounddevice.query_devices()
    default_input, default_output = (int(d) for d in sounddevice.default.device)

    result: list[AudioDevice] = []
    for i in range(len(devices)):
        dev = devices[i]
        inputs = int(dev["max_input_channels"])
        outputs = int(dev["max_output_channels"])
        if (kind == "input" and inputs == 0) or (kind == "output" and outputs == 0):
            continue
        result.append(
            AudioDevice(
                index=i,
                name=str(dev["name"]),
                input_channels=inputs,
                output_channels=outputs,
                sample_rate=float(dev["default_samplerate"]),
                is_default_input=(i == default_input),
                is_default_output=(i == default_output),
            )
        )
    return result


def resolve_device(selector: str | None, kind: DeviceKind) -> int | None:
    """Resolve a device index or name fragment to a device index.

    Returns:
        The device index, or None to use the system default.

    Raises:
        ValueError: If no device matches.
    """
    if selector is None or selector == "":
        return None
    candidates = query_devices(kind)
    if selector.isdigit():
        index = int(selector)
        if any(d.index == index for d in candidates):
            return index
        raise ValueError(f"No {kind} device with index {index}")
    needle = selector.lower()
    for device in candidates:
        if needle in device.name.lower():
            return device.index
    raise ValueError(f"No {kind} device matching '{selector}'")


@dataclass
class CaptureHandle:
    """An open microphone stream and its pending chunks."""

    stream: sounddevice.InputStream
    queue: asyncio.Queue[np.ndarray]
    sample_rate: int
    channels: int
    overflows: int = 0
    _closed: bool = field(default=False, repr=False)


class MicrophoneCapture:
    """Microphone capture through a sounddevice InputStream.

    The PortAudio callback runs on its own thread; it copies each block and
    hands it to the event loop, where read_chunk() consumes it.
    """

    _BLOCK_SIZE: Final[int] = 2048
    """Frames per callback block."""
    _MAX_QUEUED_BLOCKS: Final[int] = 256
    """Blocks buffered before the oldest are dropped (about 10s at 48kHz)."""

    def __init__(self, device: int | None = None) -> None:
        """Initialize the capture source.

        Args:
            device: Input device index. None for the system default.
        """
        self._device = device

    async def open(self, sample_rate: int, channels: int) -> CaptureHandle:
        """Open and start the input stream.

        Raises:
            CaptureError: If the device is unavailable or access is denied.
        """
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[np.ndarray] = asyncio.Queue(maxsize=self._MAX_QUEUED_BLOCKS)
        handle: CaptureHandle | None = None

        def enqueue(block: np.ndarray) -> None:
            if handle is None or handle._closed:
                return
            if queue.full():
                queue.get_nowait()
                handle.overflows += 1
            queue.put_nowait(block)

        def callback(
            indata: np.ndarray,
            _frames: int,
            _time_info: CDataTimeInfo,
            status: CallbackFlags,
        ) -> None:
            if status:
                logger.debug("Mic callback status: %s", status)
            loop.call_soon_threadsafe(enqueue, indata.copy())

        try:
            stream = sounddevice.InputStream(
                samplerate=sample_rate,
                channels=channels,
                dtype="float32",
                blocksize=self._BLOCK_SIZE,
                callback=callback,
                device=self._device,
            )
            stream.start()
        except (sounddevice.PortAudioError, ValueError) as err:
            raise CaptureError(f"Could not open microphone: {err}") from err

        handle = CaptureHandle(
            stream=stream, queue=queue, sample_rate=sample_rate, channels=channels
        )
        logger.info(
            "Microphone capture started: device=%s, sample_rate=%d, actual=%s",
            self._device,
            sample_rate,
            stream.samplerate,
        )
        return handle

    async def read_chunk(self, handle: CaptureHandle) -> np.ndarray:
        """Wait for the next captured block.

        Returns:
            Mono float32 samples (channels are averaged).
        """
        block = await handle.queue.get()
        if block.ndim > 1:
            block = block.mean(axis=1) if block.shape[1] > 1 else block[:, 0]
        return block

    async def close(self, handle: CaptureHandle) -> None:
        """Stop and close the stream."""
        if handle._closed:
            return
        handle._closed = True
        try:
            handle.stream.stop()
            handle.stream.close()
        except sounddevice.PortAudioError:
            logger.exception("Failed to close mic stream")
        if handle.overflows:
            logger.warning("Dropped %d capture blocks while processing", handle.overflows)
        logger.debug("Microphone capture stopped")


class LocalPlayer:
    """Plays the click track on a local output device."""

    def __init__(self, device: int | None = None) -> None:
        """Initialize the player.

        Args:
            device: Output device index. None for the system default.
        """
        self._device = device
        self._playing = False

    def play(self, samples: np.ndarray, sample_rate: int) -> None:
        """Start non-blocking playback.

        Raises:
            PlaybackError: If the output device cannot be opened.
        """
        try:
            sounddevice.play(samples, samplerate=sample_rate, device=self._device)
        except (sounddevice.PortAudioError, ValueError) as err:
            raise PlaybackError(f"Local playback failed: {err}") from err
        self._playing = True
        logger.info("Playing click track on local output device %s", self._device)

    def stop(self) -> None:
        """Stop playback if it is running."""
        if self._playing:
            sounddevice.stop()
            self._playing = False
