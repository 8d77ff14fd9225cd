"""Music Assistant WebSocket API client.

Music Assistant acts as the Playback Controller: it is asked to play the
calibration track on the endpoint being measured, and it stores the resulting
sync offset in the player configuration.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from typing import Any, Final
from urllib.parse import urlsplit, urlunsplit

from groupsync.channel import MessageChannel, RetryPolicy
from groupsync.errors import ChannelError, CommandError, PlaybackError
from groupsync.utils import create_task

logger = logging.getLogger(__name__)

EventHandler = Callable[[dict[str, Any]], None]

CALIBRATION_MEDIA_NAME: Final[str] = "GroupSync Calibration"


def music_assistant_ws_url(server_url: str) -> str:
    """Derive the Music Assistant API WebSocket URL (``/ws``) from a server URL."""
    url = server_url.rstrip("/")
    parts = urlsplit(url if "://" in url else f"http://{url}")
    scheme = {"https": "wss", "wss": "wss"}.get(parts.scheme, "ws")
    return urlunsplit((scheme, parts.netloc, "/ws", "", ""))


class MusicAssistantClient:
    """Request/response client for the Music Assistant WebSocket API."""

    _COMMAND_TIMEOUT_S: Final[float] = 10.0
    """Default time to wait for a command response."""

    def __init__(self, *, retry: RetryPolicy | None = None) -> None:
        """Initialize an unconnected client."""
        self._retry = retry
        self._channel: MessageChannel | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._message_id = 0
        self._pending: dict[int, tuple[str, asyncio.Future[Any]]] = {}
        self._event_handlers: dict[str, list[EventHandler]] = {}
        self._server_info: dict[str, Any] | None = None

    @property
    def connected(self) -> bool:
        return self._channel is not None and self._channel.connected

    @property
    def server_info(self) -> dict[str, Any] | None:
        """Server info message sent by Music Assistant on connect, if any."""
        return self._server_info

    async def connect(self, server_url: str) -> None:
        """Connect to the Music Assistant API.

        Raises:
            ChannelError: If the server cannot be reached.
        """
        await self.disconnect()
        channel = MessageChannel(retry=self._retry)
        await channel.connect(music_assistant_ws_url(server_url))
        self._channel = channel
        self._reader_task = create_task(self._read_loop(channel), name="music-assistant-reader")
        logger.info("Connected to Music Assistant at %s", server_url)

    async def disconnect(self) -> None:
        """Close the connection and fail all pending commands."""
        channel = self._channel
        self._channel = None
        if channel is not None:
            await channel.close()
        if self._reader_task is not None:
            self._reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task
            self._reader_task = None
        self._fail_pending(ChannelError("Connection closed"))

    def on_event(self, event: str, handler: EventHandler) -> Callable[[], None]:
        """Subscribe to a server event ("*" for all events).

        Returns:
            A callable that removes the subscription.
        """
        handlers = self._event_handlers.setdefault(event, [])
        handlers.append(handler)

        def remove() -> None:
            with contextlib.suppress(ValueError):
                handlers.remove(handler)

        return remove

    async def send_command(
        self,
        command: str,
        args: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        """Send a command and wait for its result.

        Raises:
            ChannelError: If not connected or the connection drops.
            CommandError: If the server reports an error or does not answer in time.
        """
        if self._channel is None or not self._channel.connected:
            raise ChannelError("Not connected to Music Assistant")

        self._message_id += 1
        message_id = self._message_id
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[message_id] = (command, future)

        logger.debug("Sending %s %s", command, args)
        try:
            await self._channel.send_json(
                {"message_id": message_id, "command": command, "args": args or {}}
            )
            async with asyncio.timeout(timeout or self._COMMAND_TIMEOUT_S):
                return await future
        except TimeoutError as err:
            raise CommandError(command, "request timed out") from err
        finally:
            self._pending.pop(message_id, None)

    async def get_all_players(self) -> list[dict[str, Any]]:
        result = await self.send_command("players/all")
        return list(result or [])

    async def get_player(self, player_id: str) -> dict[str, Any]:
        return await self.send_command("players/get", {"player_id": player_id})

    async def player_command(
        self,
        player_id: str,
        command: str,
        args: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        """Send ``players/cmd/<command>`` for a player."""
        return await self.send_command(
            f"players/cmd/{command}", {"player_id": player_id, **(args or {})}, timeout=timeout
        )

    async def save_player_config(
        self, player_id: str, values: dict[str, Any], *, timeout: float | None = None
    ) -> Any:
        """Merge values into a player's stored configuration."""
        return await self.send_command(
            "config/players/save", {"player_id": player_id, "values": values}, timeout=timeout
        )

    async def play_media(
        self,
        target_id: str,
        uri: str,
        queue_mode: str = "replace",
        *,
        media_type: str = "track",
    ) -> None:
        """Ask Music Assistant to play a media item on a player queue.

        Raises:
            PlaybackError: If the request fails for any reason.
        """
        try:
            await self.send_command(
                "player_queues/play_media",
                {
                    "queue_id": target_id,
                    "media": {
                        "uri": uri,
                        "media_type": media_type,
                        "name": CALIBRATION_MEDIA_NAME,
                    },
                    "option": queue_mode,
                },
            )
        except (ChannelError, CommandError) as err:
            raise PlaybackError(f"Could not start playback on {target_id}: {err}") from err

    async def _read_loop(self, channel: MessageChannel) -> None:
        try:
            async for message in channel.messages():
                self._handle_message(message)
        except ChannelError as err:
            logger.warning("Music Assistant connection error: %s", err)
        finally:
            if self._channel is channel:
                logger.info("Music Assistant connection closed")
                self._channel = None
            self._fail_pending(ChannelError("Connection closed"))

    def _handle_message(self, message: dict[str, Any]) -> None:
        message_id = message.get("message_id")
        pending = self._pending.get(message_id) if isinstance(message_id, int) else None
        if pending is not None:
            command, future = pending
            if not future.done():
                error = self._extract_error(message)
                if error is not None:
                    future.set_exception(CommandError(command, *error))
                else:
                    future.set_result(message.get("result"))
            return

        event = message.get("event")
        if isinstance(event, str):
            handlers = [*self._event_handlers.get(event, ()), *self._event_handlers.get("*", ())]
            for handler in handlers:
                try:
                    handler(message)
                except Exception:
                    logger.exception("Error in event handler for %s", event)
            return

        if "server_id" in message or "server_version" in message:
            self._server_info = message
            logger.debug("Music Assistant server info: %s", message)

    @staticmethod
    def _extract_error(message: dict[str, Any]) -> tuple[str, Any] | None:
        error = message.get("error")
        if isinstance(error, dict):
            return str(error.get("message", "unknown error")), error.get("code")
        if error:
            return str(error), None
        if "error_code" in message:
            return str(message.get("details", "unknown error")), message["error_code"]
        return None

    def _fail_pending(self, error: Exception) -> None:
        for _command, future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()
