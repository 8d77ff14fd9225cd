"""
Tests for the Music Assistant API client.
"""

import asyncio
import json

import pytest
from aiohttp import WSMsgType, web
from aiohttp.test_utils import TestServer

from groupsync.errors import CommandError, PlaybackError
from groupsync.music_assistant import MusicAssistantClient, music_assistant_ws_url


class FakeMusicAssistant:
    """Scripted Music Assistant API server."""

    def __init__(self):
        self.commands = []
        self.server = None

    async def handler(self, request):
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        await ws.send_json({"server_id": "ma-1", "server_version": "2.5.0"})
        async for msg in ws:
            if msg.type != WSMsgType.TEXT:
                continue
            data = json.loads(msg.data)
            self.commands.append(data)
            await self.reply(ws, data)
        return ws

    async def reply(self, ws, data):
        message_id = data["message_id"]
        command = data["command"]
        if command == "players/all":
            await ws.send_json({"event": "player_updated", "data": {"player_id": "p1"}})
            await ws.send_json(
                {"message_id": message_id, "result": [{"player_id": "p1", "name": "Kitchen"}]}
            )
        elif command == "player_queues/play_media":
            if data["args"]["queue_id"] == "broken":
                await ws.send_json(
                    {"message_id": message_id, "error_code": 999, "details": "no such queue"}
                )
            else:
                await ws.send_json({"message_id": message_id, "result": None})
        elif command == "config/players/save":
            await ws.send_json({"message_id": message_id, "result": data["args"]["values"]})
        elif command == "slow":
            return
        else:
            await ws.send_json(
                {"message_id": message_id, "error": {"code": 404, "message": "unknown command"}}
            )

    async def start(self):
        app = web.Application()
        app.router.add_get("/ws", self.handler)
        self.server = TestServer(app)
        await self.server.start_server()
        return f"http://{self.server.host}:{self.server.port}"

    async def close(self):
        await self.server.close()


def with_client(scenario):
    """Run scenario(client, fake) against a connected client."""

    async def run():
        fake = FakeMusicAssistant()
        url = await fake.start()
        client = MusicAssistantClient()
        try:
            await client.connect(url)
            return await scenario(client, fake)
        finally:
            await client.disconnect()
            await fake.close()

    return asyncio.run(run())


class TestUrl:
    """Tests for music_assistant_ws_url."""

    @pytest.mark.parametrize(
        ("server_url", "expected"),
        [
            ("http://192.168.1.10:8095", "ws://192.168.1.10:8095/ws"),
            ("https://ma.example.com/", "wss://ma.example.com/ws"),
            ("192.168.1.10:8095", "ws://192.168.1.10:8095/ws"),
        ],
    )
    def test_url(self, server_url, expected):
        assert music_assistant_ws_url(server_url) == expected


class TestMusicAssistantClient:
    """Tests for MusicAssistantClient."""

    def test_command_result_and_events(self):
        """Results resolve their command and events reach subscribers."""
        events = []

        async def scenario(client, fake):
            client.on_event("player_updated", events.append)
            players = await client.get_all_players()
            return players, client.server_info

        players, info = with_client(scenario)
        assert players == [{"player_id": "p1", "name": "Kitchen"}]
        assert info["server_id"] == "ma-1"
        assert events == [{"event": "player_updated", "data": {"player_id": "p1"}}]

    def test_play_media_request(self):
        """play_media sends the queue, media and queue option."""

        async def scenario(client, fake):
            await client.play_media("p1", "http://host/cal.wav")
            return fake.commands[-1]

        sent = with_client(scenario)
        assert sent["command"] == "player_queues/play_media"
        assert sent["args"]["queue_id"] == "p1"
        assert sent["args"]["option"] == "replace"
        assert sent["args"]["media"]["uri"] == "http://host/cal.wav"

    def test_player_config_and_command_payloads(self):
        """Player helpers address the player by id on the wire."""

        async def scenario(client, fake):
            saved = await client.save_player_config("p1", {"sync_offset_ms": 12.5})
            with pytest.raises(CommandError):
                await client.player_command("p1", "sync_offset", {"offset_ms": 12.5})
            return saved, fake.commands[-2:]

        saved, (save, command) = with_client(scenario)
        assert saved == {"sync_offset_ms": 12.5}
        assert save["command"] == "config/players/save"
        assert save["args"] == {"player_id": "p1", "values": {"sync_offset_ms": 12.5}}
        assert command["command"] == "players/cmd/sync_offset"
        assert command["args"] == {"player_id": "p1", "offset_ms": 12.5}

    def test_play_media_failure(self):
        """Server errors surface as PlaybackError."""

        async def scenario(client, fake):
            with pytest.raises(PlaybackError):
                await client.play_media("broken", "http://host/cal.wav")

        with_client(scenario)

    def test_command_error(self):
        """Error replies carry the command and server code."""

        async def scenario(client, fake):
            with pytest.raises(CommandError) as excinfo:
                await client.send_command("players/cmd/sync_offset", {"player_id": "p1"})
            return excinfo.value

        error = with_client(scenario)
        assert error.command == "players/cmd/sync_offset"
        assert error.code == 404

    def test_command_timeout(self):
        """Unanswered commands time out with CommandError."""

        async def scenario(client, fake):
            with pytest.raises(CommandError):
                await client.send_command("slow", timeout=0.1)

        with_client(scenario)

    def test_unsubscribe(self):
        """Removed handlers stop receiving events."""
        events = []

        async def scenario(client, fake):
            remove = client.on_event("*", events.append)
            remove()
            await client.get_all_players()

        with_client(scenario)
        assert events == []
