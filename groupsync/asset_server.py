"""HTTP server that exposes the rendered click track to the playback controller."""

from __future__ import annotations

import logging
import socket
from typing import Final

from aiohttp import web

logger = logging.getLogger(__name__)

DEFAULT_ASSET_PORT: Final[int] = 8931
CALIBRATION_PATH: Final[str] = "/groupsync/calibration.wav"


def get_local_ip() -> str:
    """Get the LAN address of this machine as seen by other hosts."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            # Connect to a public DNS server (doesn't actually send data)
            s.connect(("8.8.8.8", 80))
            return s.getsockname()[0]
    except OSError:
        return "127.0.0.1"


class AssetServer:
    """Serves a WAV file from memory at a fixed path.

    Music Assistant fetches the calibration track from this server when it is
    asked to play the media URI returned by ``url``.
    """

    def __init__(
        self,
        wav_data: bytes,
        *,
        host: str = "0.0.0.0",
        port: int = DEFAULT_ASSET_PORT,
        public_host: str | None = None,
        path: str = CALIBRATION_PATH,
    ) -> None:
        """Initialize the asset server.

        Args:
            wav_data: Encoded WAV file to serve.
            host: Interface to bind to.
            port: Port to listen on. 0 picks a free port.
            public_host: Host name or address other devices use to reach this
                server. Defaults to the local LAN address.
            path: URL path of the file.
        """
        self._wav_data = wav_data
        self._host = host
        self._port = port
        self._public_host = public_host
        self._path = path
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None
        self._bound_port: int | None = None
        self.request_count = 0

    @property
    def url(self) -> str:
        """URL of the served file."""
        if self._bound_port is None:
            raise RuntimeError("Asset server is not running")
        host = self._public_host or get_local_ip()
        return f"http://{host}:{self._bound_port}{self._path}"

    async def start(self) -> None:
        """Start the HTTP server."""
        app = web.Application()
        app.router.add_get(self._path, self._handle_get)

        self._runner = web.AppRunner(app)
        await self._runner.setup()

        self._site = web.TCPSite(self._runner, self._host, self._port)
        await self._site.start()

        addresses = self._runner.addresses
        self._bound_port = int(addresses[0][1]) if addresses else self._port

        logger.info("Serving calibration track at %s", self.url)

    async def stop(self) -> None:
        """Stop the HTTP server."""
        if self._site is not None:
            await self._site.stop()
            self._site = None
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        self._bound_port = None
        logger.debug("Asset server stopped")

    async def _handle_get(self, request: web.Request) -> web.Response:
        self.request_count += 1
        logger.info("Calibration track requested by %s", request.remote or "unknown")
        return web.Response(body=self._wav_data, content_type="audio/wav")

    async def __aenter__(self) -> AssetServer:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        """Async context manager exit."""
        await self.stop()
