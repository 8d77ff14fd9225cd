"""Sendspin time-sync client.

Performs the Sendspin handshake over a MessageChannel and then exchanges
client/time and server/time messages at a fixed cadence, feeding each
completed exchange into a ClockSynchronizer.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
import socket
import uuid
from collections.abc import Callable
from enum import Enum, auto
from typing import Final
from urllib.parse import urlsplit, urlunsplit

from aiosendspin.models.core import DeviceInfo

from groupsync.channel import MessageChannel, RetryPolicy
from groupsync.clock_sync import ClockSynchronizer
from groupsync.errors import ChannelError, MessageError
from groupsync.messages import (
    ClientGoodbye,
    ClientHello,
    ClientTime,
    ServerHello,
    ServerTime,
    parse_message,
)
from groupsync.utils import create_task, get_device_info, monotonic_us

logger = logging.getLogger(__name__)

SENDSPIN_PATH: Final[str] = "/sendspin"


class SyncState(Enum):
    """Connection and synchronization state of a SendspinSyncClient."""

    DISCONNECTED = auto()
    CONNECTING = auto()
    HANDSHAKING = auto()
    SYNCING = auto()
    """Handshake done, time exchanges in progress, not yet converged."""
    SYNCED = auto()
    """Clock estimate converged."""


StateListener = Callable[[SyncState], None]


def sendspin_ws_url(server_url: str) -> str:
    """Derive the Sendspin WebSocket URL from a server URL.

    http and https map to ws and wss. A URL without a path gets the
    default Sendspin endpoint path.
    """
    parts = urlsplit(server_url if "://" in server_url else f"http://{server_url}")
    scheme = {"http": "ws", "https": "wss"}.get(parts.scheme, parts.scheme)
    path = parts.path if parts.path not in ("", "/") else SENDSPIN_PATH
    return urlunsplit((scheme, parts.netloc, path, parts.query, ""))


class SendspinSyncClient:
    """Keeps a ClockSynchronizer fed from a Sendspin server connection."""

    _HELLO_TIMEOUT_S: Final[float] = 10.0
    """Maximum wait for server/hello after sending client/hello."""
    _INITIAL_SYNC_COUNT: Final[int] = 5
    """Rapid time exchanges sent right after the handshake."""
    _INITIAL_SYNC_INTERVAL_S: Final[float] = 0.1
    _SYNC_INTERVAL_S: Final[float] = 1.0
    """Steady-state time exchange interval."""

    def __init__(
        self,
        clock: ClockSynchronizer | None = None,
        *,
        client_id: str | None = None,
        client_name: str | None = None,
        device_info: DeviceInfo | None = None,
        retry: RetryPolicy | None = None,
        hello_timeout_s: float | None = None,
        sync_interval_s: float | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            clock: Synchronizer to feed. A new one is created if omitted.
            client_id: Sendspin client identifier. Random if omitted.
            client_name: Friendly name. Defaults to "GroupSync (<hostname>)".
            device_info: Device description for the handshake.
            retry: Connection retry policy.
            hello_timeout_s: Override for the handshake timeout.
            sync_interval_s: Override for the steady-state exchange interval.
        """
        self._clock = clock or ClockSynchronizer()
        self._client_id = client_id or f"groupsync-{uuid.uuid4().hex[:12]}"
        self._client_name = client_name or f"GroupSync ({socket.gethostname()})"
        self._device_info = device_info or get_device_info()
        self._retry = retry
        self._hello_timeout_s = hello_timeout_s or self._HELLO_TIMEOUT_S
        self._sync_interval_s = sync_interval_s or self._SYNC_INTERVAL_S

        self._state = SyncState.DISCONNECTED
        self._listeners: list[StateListener] = []
        self._channel: MessageChannel | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._sync_task: asyncio.Task[None] | None = None
        self._hello: asyncio.Future[ServerHello] | None = None
        self._synced = asyncio.Event()
        self._server_hello: ServerHello | None = None

    @property
    def clock(self) -> ClockSynchronizer:
        return self._clock

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def server_hello(self) -> ServerHello | None:
        """Handshake reply of the current connection."""
        return self._server_hello

    @property
    def is_synced(self) -> bool:
        return self._state is SyncState.SYNCED

    def add_state_listener(self, listener: StateListener) -> Callable[[], None]:
        """Register a state-change listener.

        Listeners run on the event loop and must not block.

        Returns:
            A callable that removes the listener.
        """
        self._listeners.append(listener)

        def remove() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return remove

    def _set_state(self, state: SyncState) -> None:
        if state is self._state:
            return
        logger.debug("Sync state %s -> %s", self._state.name, state.name)
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Error in sync state listener")

    async def connect(self, url: str) -> None:
        """Connect, complete the handshake and start time exchanges.

        Returns once server/hello has been received; convergence is awaited
        separately with wait_for_sync().

        Raises:
            ChannelError: If the connection or handshake fails.
        """
        if self._channel is not None:
            await self.disconnect()

        self._clock.reset()
        self._synced.clear()
        self._server_hello = None
        ws_url = sendspin_ws_url(url)
        self._set_state(SyncState.CONNECTING)

        channel = MessageChannel(retry=self._retry)
        self._channel = channel
        try:
            await channel.connect(ws_url)
        except ChannelError:
            self._channel = None
            self._set_state(SyncState.DISCONNECTED)
            raise

        self._set_state(SyncState.HANDSHAKING)
        loop = asyncio.get_running_loop()
        self._hello = loop.create_future()
        self._reader_task = create_task(self._read_loop(channel), name="sendspin-sync-reader")

        try:
            await channel.send(
                ClientHello(
                    client_id=self._client_id,
                    name=self._client_name,
                    device_info=dataclasses.asdict(self._device_info),
                )
            )
            async with asyncio.timeout(self._hello_timeout_s):
                self._server_hello = await self._hello
        except TimeoutError as err:
            await self.disconnect(send_goodbye=False)
            raise ChannelError(f"No server/hello from {ws_url}") from err
        except ChannelError:
            await self.disconnect(send_goodbye=False)
            raise

        logger.info(
            "Connected to Sendspin server %s (%s)",
            self._server_hello.name,
            self._server_hello.server_id,
        )
        self._set_state(SyncState.SYNCING)
        self._sync_task = create_task(self._sync_loop(channel), name="sendspin-sync-loop")

    async def wait_for_sync(self, timeout: float) -> bool:
        """Wait until the clock estimate converges.

        Returns:
            True if converged within the timeout.
        """
        try:
            async with asyncio.timeout(timeout):
                await self._synced.wait()
        except TimeoutError:
            return False
        return True

    async def disconnect(self, *, send_goodbye: bool = True) -> None:
        """Stop time exchanges and close the connection."""
        channel = self._channel
        self._channel = None
        if self._sync_task is not None:
            self._sync_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sync_task
            self._sync_task = None

        if channel is not None:
            if send_goodbye and channel.connected:
                try:
                    await channel.send(ClientGoodbye())
                except ChannelError as err:
                    logger.debug("Could not send goodbye: %s", err)
            await channel.close()

        if self._reader_task is not None:
            self._reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task
            self._reader_task = None

        self._set_state(SyncState.DISCONNECTED)

    async def _sync_loop(self, channel: MessageChannel) -> None:
        try:
            for _ in range(self._INITIAL_SYNC_COUNT):
                await self._send_time(channel)
                await asyncio.sleep(self._INITIAL_SYNC_INTERVAL_S)
            while True:
                await asyncio.sleep(self._sync_interval_s)
                await self._send_time(channel)
        except ChannelError as err:
            logger.warning("Time exchange stopped: %s", err)

    async def _send_time(self, channel: MessageChannel) -> None:
        await channel.send(ClientTime(client_transmitted=monotonic_us()))

    async def _read_loop(self, channel: MessageChannel) -> None:
        try:
            async for data in channel.messages():
                try:
                    message = parse_message(data)
                except MessageError as err:
                    logger.warning("Dropping malformed message: %s", err)
                    continue
                if isinstance(message, ServerTime):
                    self._handle_server_time(message)
                elif isinstance(message, ServerHello):
                    if self._hello is not None and not self._hello.done():
                        self._hello.set_result(message)
        except ChannelError as err:
            logger.warning("Sendspin connection error: %s", err)
            if self._hello is not None and not self._hello.done():
                self._hello.set_exception(err)
        finally:
            if self._hello is not None and not self._hello.done():
                self._hello.set_exception(ChannelError("Connection closed during handshake"))
            if self._channel is channel:
                logger.info("Sendspin connection closed")
                self._set_state(SyncState.DISCONNECTED)

    def _handle_server_time(self, message: ServerTime) -> None:
        t4 = monotonic_us()
        self._clock.process_measurement(
            message.client_transmitted,
            message.server_received,
            message.server_transmitted,
            t4,
        )
        if self._state is SyncState.SYNCING and self._clock.is_converged:
            status = self._clock.get_status()
            logger.info(
                "Clock synchronized: offset=%.0fus (+/-%.0f), drift=%.2fus/s",
                status.offset_us,
                status.offset_uncertainty_us,
                status.drift_us_per_s,
            )
            self._set_state(SyncState.SYNCED)
            self._synced.set()
