"""Persistent defaults for the GroupSync CLI.

Values given on the command line win; anything left unset falls back to
``settings.json`` in the config directory. Successful runs write back the
server URLs they used, so repeat calibrations need fewer flags.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Final

logger = logging.getLogger(__name__)

SAVE_DELAY_S: Final[float] = 60.0
"""Quiet period after the last change before settings are written."""
SETTINGS_FILE_NAME: Final[str] = "settings.json"


def default_config_dir() -> Path:
    return Path.home() / ".config" / "groupsync"


@dataclass
class CalibratorSettings:
    """CLI defaults backed by a JSON file.

    Writes are coalesced: each change restarts a SAVE_DELAY_S timer, and
    flush() writes immediately. File I/O runs in the default executor; the
    snapshot written is taken on the event loop.
    """

    server_url: str | None = None
    """Music Assistant server URL."""
    sendspin_url: str | None = None
    """Sendspin server URL used for clock synchronization."""
    mic_device: str | None = None
    output_device: str | None = None
    asset_host: str | None = None
    """Address other devices use to reach the built-in asset server."""
    asset_port: int | None = None
    hook: str | None = None
    log_level: str | None = None

    _path: Path | None = field(default=None, repr=False, compare=False)
    _pending_save: asyncio.TimerHandle | None = field(default=None, repr=False, compare=False)

    @property
    def settings_file(self) -> Path | None:
        return self._path

    @classmethod
    def field_names(cls) -> list[str]:
        """Names of the persisted fields."""
        return [f.name for f in fields(cls) if not f.name.startswith("_")]

    def to_dict(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in self.field_names()}

    def update(self, **updates: Any) -> None:
        """Set fields and schedule a save if anything changed.

        None values are ignored so unset CLI options never erase a default.

        Raises:
            AttributeError: If a name is not a settings field.
        """
        known = self.field_names()
        dirty = False
        for name, value in updates.items():
            if name not in known:
                raise AttributeError(f"Unknown setting: {name}")
            if value is None or getattr(self, name) == value:
                continue
            setattr(self, name, value)
            dirty = True
        if dirty:
            self._restart_save_timer()

    async def load(self) -> None:
        """Read the settings file and apply the known keys."""
        loop = asyncio.get_running_loop()
        data = await loop.run_in_executor(None, self._read)
        if data is None:
            return
        for name in self.field_names():
            if name in data:
                setattr(self, name, data[name])
        logger.info("Loaded settings from %s", self._path)

    async def flush(self) -> None:
        """Write pending changes now."""
        if self._pending_save is None:
            return
        self._pending_save.cancel()
        self._pending_save = None
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._write, self.to_dict())

    def _restart_save_timer(self) -> None:
        if self._pending_save is not None:
            self._pending_save.cancel()
        loop = asyncio.get_running_loop()
        self._pending_save = loop.call_later(SAVE_DELAY_S, self._save_later, loop)

    def _save_later(self, loop: asyncio.AbstractEventLoop) -> None:
        self._pending_save = None
        loop.run_in_executor(None, self._write, self.to_dict())

    def _read(self) -> dict[str, Any] | None:
        if self._path is None or not self._path.is_file():
            logger.debug("No settings file at %s", self._path)
            return None
        try:
            data = json.loads(self._path.read_text())
        except (OSError, ValueError) as err:
            logger.warning("Ignoring unreadable settings file %s: %s", self._path, err)
            return None
        if not isinstance(data, dict):
            logger.warning("Ignoring malformed settings file %s", self._path)
            return None
        return data

    def _write(self, data: dict[str, Any]) -> None:
        if self._path is None:
            return
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(json.dumps(data, indent=2) + "\n")
        except OSError as err:
            logger.warning("Could not write settings to %s: %s", self._path, err)
        else:
            logger.debug("Wrote settings to %s", self._path)


async def get_settings(config_dir: str | Path | None = None) -> CalibratorSettings:
    """Create settings bound to config_dir and load them.

    Args:
        config_dir: Directory holding settings.json. Defaults to ~/.config/groupsync.
    """
    directory = Path(config_dir) if config_dir else default_config_dir()
    settings = CalibratorSettings(_path=directory / SETTINGS_FILE_NAME)
    await settings.load()
    return settings
