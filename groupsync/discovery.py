"""mDNS discovery of Sendspin servers."""

from __future__ import annotations

import asyncio
import logging
from typing import Final

from zeroconf import IPVersion, ServiceStateChange, Zeroconf
from zeroconf.asyncio import AsyncServiceBrowser, AsyncServiceInfo, AsyncZeroconf

from groupsync.utils import create_task

logger = logging.getLogger(__name__)

# Service type advertised by Sendspin servers
SERVER_SERVICE_TYPE: Final[str] = "_sendspin-server._tcp.local."
DEFAULT_SERVER_PATH: Final[str] = "/sendspin"
_INFO_TIMEOUT_MS: Final[int] = 3000


class ServiceDiscovery:
    """Browses the local network for Sendspin servers."""

    def __init__(self) -> None:
        """Initialize discovery."""
        self._zc: AsyncZeroconf | None = None
        self._browser: AsyncServiceBrowser | None = None
        self._servers: dict[str, str] = {}
        self._found = asyncio.Event()
        self._tasks: set[asyncio.Task[None]] = set()

    async def start(self) -> None:
        """Start browsing for servers."""
        self._zc = AsyncZeroconf(ip_version=IPVersion.V4Only)
        self._browser = AsyncServiceBrowser(
            self._zc.zeroconf, SERVER_SERVICE_TYPE, handlers=[self._on_service_state_change]
        )
        logger.debug("Browsing for %s", SERVER_SERVICE_TYPE)

    async def stop(self) -> None:
        """Stop browsing and release the mDNS socket."""
        for task in list(self._tasks):
            task.cancel()
        if self._browser is not None:
            await self._browser.async_cancel()
            self._browser = None
        if self._zc is not None:
            await self._zc.async_close()
            self._zc = None

    def current_url(self) -> str | None:
        """URL of a currently visible server, if any."""
        return next(iter(self._servers.values()), None)

    def servers(self) -> dict[str, str]:
        """Visible servers by mDNS service name."""
        return dict(self._servers)

    async def wait_for_first_server(self, timeout: float | None = None) -> str:
        """Wait until a server is visible and return its URL.

        Raises:
            TimeoutError: If no server appeared within the timeout.
        """
        while True:
            url = self.current_url()
            if url is not None:
                return url
            self._found.clear()
            async with asyncio.timeout(timeout):
                await self._found.wait()

    def _on_service_state_change(
        self,
        zeroconf: Zeroconf,
        service_type: str,
        name: str,
        state_change: ServiceStateChange,
    ) -> None:
        if state_change is ServiceStateChange.Removed:
            if self._servers.pop(name, None) is not None:
                logger.info("Sendspin server %s went away", name)
            return
        task = create_task(self._resolve(zeroconf, service_type, name))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _resolve(self, zeroconf: Zeroconf, service_type: str, name: str) -> None:
        info = AsyncServiceInfo(service_type, name)
        if not await info.async_request(zeroconf, _INFO_TIMEOUT_MS):
            logger.debug("Could not resolve %s", name)
            return
        addresses = info.parsed_addresses(IPVersion.V4Only)
        if not addresses or info.port is None:
            return
        raw_path = info.properties.get(b"path")
        path = raw_path.decode("utf-8") if raw_path else DEFAULT_SERVER_PATH
        url = f"ws://{addresses[0]}:{info.port}{path}"
        if self._servers.get(name) != url:
            logger.info("Discovered Sendspin server %s at %s", name, url)
        self._servers[name] = url
        self._found.set()
