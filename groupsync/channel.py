"""JSON message channel over an aiohttp WebSocket."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any, Protocol

from aiohttp import ClientError, ClientSession, ClientWebSocketResponse, WSMsgType

from groupsync.errors import ChannelError

logger = logging.getLogger(__name__)


class OutboundMessage(Protocol):
    """A message that can serialize itself to a JSON object."""

    def to_dict(self) -> dict[str, Any]: ...


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Bounded exponential backoff for connection attempts."""

    max_attempts: int = 5
    base_delay_s: float = 1.0
    multiplier: float = 2.0
    max_delay_s: float = 300.0

    def delay(self, attempt: int) -> float:
        """Delay before retrying after the given (1-based) failed attempt."""
        return min(self.base_delay_s * self.multiplier ** (attempt - 1), self.max_delay_s)


class MessageChannel:
    """Bidirectional JSON message channel on a single WebSocket connection.

    The channel owns its aiohttp ClientSession unless one is passed in.
    """

    def __init__(
        self,
        *,
        retry: RetryPolicy | None = None,
        session: ClientSession | None = None,
        connect_timeout: float = 10.0,
        heartbeat: float | None = 30.0,
    ) -> None:
        """Initialize an unconnected channel.

        Args:
            retry: Backoff policy for connect().
            session: Optional shared aiohttp session.
            connect_timeout: Timeout for a single connection attempt, in seconds.
            heartbeat: WebSocket ping interval, or None to disable.
        """
        self._retry = retry or RetryPolicy()
        self._session = session
        self._owns_session = session is None
        self._connect_timeout = connect_timeout
        self._heartbeat = heartbeat
        self._ws: ClientWebSocketResponse | None = None
        self._url: str | None = None

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    @property
    def url(self) -> str | None:
        return self._url

    async def connect(self, url: str) -> None:
        """Open the WebSocket, retrying according to the retry policy.

        Raises:
            ChannelError: If every attempt failed.
        """
        if self._session is None:
            self._session = ClientSession()

        try:
            await self._connect_with_retry(self._session, url)
        except BaseException:
            await self._close_session()
            raise

    async def _connect_with_retry(self, session: ClientSession, url: str) -> None:
        last_error: BaseException | None = None
        for attempt in range(1, self._retry.max_attempts + 1):
            try:
                async with asyncio.timeout(self._connect_timeout):
                    self._ws = await session.ws_connect(url, heartbeat=self._heartbeat)
            except (TimeoutError, OSError, ClientError) as err:
                last_error = err
                if attempt == self._retry.max_attempts:
                    break
                delay = self._retry.delay(attempt)
                logger.warning(
                    "Connection to %s failed (attempt %d/%d): %s, retrying in %.1fs",
                    url,
                    attempt,
                    self._retry.max_attempts,
                    err,
                    delay,
                )
                await asyncio.sleep(delay)
            else:
                self._url = url
                logger.debug("Connected to %s", url)
                return

        raise ChannelError(
            f"Could not connect to {url} after {self._retry.max_attempts} attempts: {last_error}"
        ) from last_error

    async def send_json(self, data: dict[str, Any]) -> None:
        """Send one JSON object.

        Raises:
            ChannelError: If the channel is not connected or the send fails.
        """
        if self._ws is None or self._ws.closed:
            raise ChannelError("Channel is not connected")
        try:
            await self._ws.send_str(json.dumps(data))
        except (ConnectionError, ClientError) as err:
            raise ChannelError(f"Send failed: {err}") from err

    async def send(self, message: OutboundMessage) -> None:
        """Send a typed message."""
        await self.send_json(message.to_dict())

    async def messages(self) -> AsyncIterator[dict[str, Any]]:
        """Yield inbound JSON objects until the connection closes.

        Text frames that are not valid JSON objects are logged and skipped.

        Raises:
            ChannelError: If the connection fails with an error frame.
        """
        if self._ws is None:
            raise ChannelError("Channel is not connected")
        async for msg in self._ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    data = json.loads(msg.data)
                except json.JSONDecodeError:
                    logger.warning("Ignoring non-JSON frame: %.100s", msg.data)
                    continue
                if isinstance(data, dict):
                    yield data
                else:
                    logger.warning("Ignoring non-object JSON frame: %.100s", msg.data)
            elif msg.type == WSMsgType.ERROR:
                raise ChannelError(f"WebSocket error: {self._ws.exception()}")
            elif msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED):
                break
        logger.debug("Channel to %s closed", self._url)

    async def close(self) -> None:
        """Close the WebSocket and the owned session. Safe to call repeatedly."""
        if self._ws is not None:
            if not self._ws.closed:
                await self._ws.close()
            self._ws = None
        await self._close_session()

    async def _close_session(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
