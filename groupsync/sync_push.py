"""Delivery of measured sync offsets to Music Assistant.

The offset is first pushed with the ``players/cmd/sync_offset`` player
command. Servers that do not support it get the value written into the
player configuration through ``config/players/save`` instead.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Literal, Protocol

from groupsync.errors import ChannelError, CommandError
from groupsync.session import CalibrationResult

logger = logging.getLogger(__name__)

PushMethod = Literal["protocol", "config", "none"]

SYNC_OFFSET_SOURCE = "groupsync"


class CommandSender(Protocol):
    """The part of MusicAssistantClient used for pushing offsets."""

    @property
    def connected(self) -> bool: ...

    async def player_command(
        self,
        player_id: str,
        command: str,
        args: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> Any: ...

    async def save_player_config(
        self, player_id: str, values: dict[str, Any], *, timeout: float | None = None
    ) -> Any: ...


@dataclass(frozen=True, slots=True)
class SyncOffsetPayload:
    """Correction value for one endpoint."""

    endpoint_id: str
    offset_ms: float
    source: str = SYNC_OFFSET_SOURCE
    timestamp: int = 0
    """Milliseconds since the Unix epoch."""

    @classmethod
    def from_result(cls, result: CalibrationResult) -> SyncOffsetPayload:
        return cls(
            endpoint_id=result.endpoint_id,
            offset_ms=result.offset_ms,
            timestamp=int(time.time() * 1000),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "player_id": self.endpoint_id,
            "offset_ms": self.offset_ms,
            "source": self.source,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True, slots=True)
class PushResult:
    """Outcome of pushing one offset."""

    endpoint_id: str
    endpoint_name: str
    success: bool
    method: PushMethod
    applied_offset_ms: float
    error: str | None = None


class SyncOffsetPusher:
    """Pushes calibration results to Music Assistant players."""

    def __init__(
        self,
        client: CommandSender,
        *,
        use_config_fallback: bool = True,
        timeout_s: float = 5.0,
    ) -> None:
        """Initialize the pusher.

        Args:
            client: Connected Music Assistant client.
            use_config_fallback: Fall back to the player config API when the
                sync_offset player command is not supported.
            timeout_s: Per-command timeout.
        """
        self._client = client
        self._use_config_fallback = use_config_fallback
        self._timeout_s = timeout_s

    async def push(self, result: CalibrationResult) -> PushResult:
        """Push one calibration result, never raising for delivery failures."""
        payload = SyncOffsetPayload.from_result(result)

        def outcome(success: bool, method: PushMethod, error: str | None = None) -> PushResult:
            return PushResult(
                endpoint_id=result.endpoint_id,
                endpoint_name=result.endpoint_name,
                success=success,
                method=method,
                applied_offset_ms=payload.offset_ms,
                error=error,
            )

        if not self._client.connected:
            return outcome(False, "none", "Not connected to Music Assistant")

        try:
            await self._client.player_command(
                payload.endpoint_id,
                "sync_offset",
                {"offset_ms": payload.offset_ms, "source": payload.source},
                timeout=self._timeout_s,
            )
        except (ChannelError, CommandError) as err:
            logger.info("Protocol push not supported for %s: %s", payload.endpoint_id, err)
        else:
            logger.info(
                "Pushed sync offset %.1fms to %s", payload.offset_ms, payload.endpoint_id
            )
            return outcome(True, "protocol")

        if not self._use_config_fallback:
            return outcome(False, "none", "All push methods failed")

        try:
            await self._client.save_player_config(
                payload.endpoint_id,
                {
                    "sync_offset_ms": payload.offset_ms,
                    "sync_offset_source": payload.source,
                    "sync_offset_timestamp": payload.timestamp,
                },
                timeout=self._timeout_s,
            )
        except (ChannelError, CommandError) as err:
            logger.error("Config push failed for %s: %s", payload.endpoint_id, err)
            return outcome(False, "none", str(err))

        logger.info(
            "Saved sync offset %.1fms in player config of %s",
            payload.offset_ms,
            payload.endpoint_id,
        )
        return outcome(True, "config")

    async def push_all(self, results: Sequence[CalibrationResult]) -> list[PushResult]:
        """Push several results in order."""
        return [await self.push(result) for result in results]
