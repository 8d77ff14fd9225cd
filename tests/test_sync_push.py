"""
Tests for pushing sync offsets to Music Assistant.
"""

import asyncio

import pytest

from groupsync.errors import ChannelError, CommandError
from groupsync.music_assistant import MusicAssistantClient
from groupsync.session import CalibrationResult
from groupsync.sync_push import SyncOffsetPayload, SyncOffsetPusher


class FakeSender(MusicAssistantClient):
    """Client whose wire is replaced by a command log.

    Commands listed in `failing` are answered with an error.
    """

    def __init__(self, failing=(), connected=True):
        super().__init__()
        self.failing = set(failing)
        self.online = connected
        self.sent = []

    @property
    def connected(self):
        return self.online

    async def send_command(self, command, args=None, *, timeout=None):
        self.sent.append((command, args))
        if command in self.failing:
            raise CommandError(command, "not supported")
        return None


@pytest.fixture
def result():
    return CalibrationResult(
        endpoint_id="p1",
        endpoint_name="Kitchen",
        offset_ms=123.4,
        confidence=0.95,
        detected_count=20,
        total_expected=20,
    )


class TestPayload:
    """Tests for SyncOffsetPayload."""

    def test_from_result(self, result):
        payload = SyncOffsetPayload.from_result(result)
        data = payload.to_dict()
        assert data["player_id"] == "p1"
        assert data["offset_ms"] == 123.4
        assert data["source"] == "groupsync"
        assert data["timestamp"] > 0


class TestSyncOffsetPusher:
    """Tests for SyncOffsetPusher."""

    def test_protocol_push(self, result):
        """The sync_offset player command is tried first."""
        sender = FakeSender()
        outcome = asyncio.run(SyncOffsetPusher(sender).push(result))

        assert outcome.success
        assert outcome.method == "protocol"
        assert outcome.applied_offset_ms == 123.4
        assert sender.sent == [
            (
                "players/cmd/sync_offset",
                {"player_id": "p1", "offset_ms": 123.4, "source": "groupsync"},
            )
        ]

    def test_config_fallback(self, result):
        """Unsupported player command falls back to the player config."""
        sender = FakeSender(failing={"players/cmd/sync_offset"})
        outcome = asyncio.run(SyncOffsetPusher(sender).push(result))

        assert outcome.success
        assert outcome.method == "config"
        command, args = sender.sent[-1]
        assert command == "config/players/save"
        assert args["player_id"] == "p1"
        assert args["values"]["sync_offset_ms"] == 123.4
        assert args["values"]["sync_offset_source"] == "groupsync"

    def test_fallback_disabled(self, result):
        sender = FakeSender(failing={"players/cmd/sync_offset"})
        outcome = asyncio.run(SyncOffsetPusher(sender, use_config_fallback=False).push(result))
        assert not outcome.success
        assert outcome.method == "none"
        assert len(sender.sent) == 1

    def test_all_methods_fail(self, result):
        """Failures are reported, not raised."""
        sender = FakeSender(failing={"players/cmd/sync_offset", "config/players/save"})
        outcome = asyncio.run(SyncOffsetPusher(sender).push(result))
        assert not outcome.success
        assert outcome.method == "none"
        assert "config/players/save" in outcome.error

    def test_not_connected(self, result):
        sender = FakeSender(connected=False)
        outcome = asyncio.run(SyncOffsetPusher(sender).push(result))
        assert not outcome.success
        assert outcome.error == "Not connected to Music Assistant"
        assert sender.sent == []

    def test_push_all(self, result):
        """Each result is pushed in order."""

        class DroppingSender(FakeSender):
            async def send_command(self, command, args=None, *, timeout=None):
                if args and args.get("player_id") == "p2":
                    raise ChannelError("Connection closed")
                return await super().send_command(command, args, timeout=timeout)

        second = CalibrationResult("p2", "Bedroom", 80.0, 0.9, 18, 20)
        outcomes = asyncio.run(SyncOffsetPusher(DroppingSender()).push_all([result, second]))
        assert [o.endpoint_id for o in outcomes] == ["p1", "p2"]
        assert [o.success for o in outcomes] == [True, False]
