"""Utility functions for GroupSync."""

from __future__ import annotations

import asyncio
import inspect
import platform
from collections.abc import Coroutine
from importlib.metadata import PackageNotFoundError, version
from typing import Any, Final, TypeVar

from aiosendspin.models.core import DeviceInfo

_T = TypeVar("_T")

_EAGER_START: Final[bool] = "eager_start" in inspect.signature(asyncio.create_task).parameters
"""Whether this interpreter's asyncio.create_task accepts eager_start."""


def create_task(coro: Coroutine[Any, Any, _T], *, name: str | None = None) -> asyncio.Task[_T]:
    """Schedule coro on the running loop, starting it eagerly where supported.

    An eager task runs synchronously up to its first suspension point, so
    state it sets before awaiting is visible as soon as this returns.
    """
    if _EAGER_START:
        return asyncio.create_task(coro, name=name, eager_start=True)
    return asyncio.create_task(coro, name=name)


def monotonic_us(loop: asyncio.AbstractEventLoop | None = None) -> int:
    """Current event loop time in integer microseconds."""
    loop = loop or asyncio.get_running_loop()
    return int(loop.time() * 1_000_000)


def get_package_version() -> str:
    """Installed version of groupsync, or "dev" when running from a checkout."""
    try:
        return version("groupsync")
    except PackageNotFoundError:
        return "dev"


def get_device_info() -> DeviceInfo:
    """Describe this host for the Sendspin client/hello handshake."""
    return DeviceInfo(
        product_name=f"{platform.system()} {platform.machine()}".strip(),
        manufacturer="GroupSync",
        software_version=f"groupsync {get_package_version()}",
    )
