"""Hook execution for external script integration."""

from __future__ import annotations

import asyncio
import logging
import os

from groupsync.session import CalibrationResult

logger = logging.getLogger(__name__)


def build_hook_env(
    event: str,
    *,
    result: CalibrationResult | None = None,
    server_url: str | None = None,
    error: str | None = None,
) -> dict[str, str]:
    """Build the environment for a hook command.

    Args:
        event: Event type ("calibrated" or "failed").
        result: Calibration result for successful runs.
        server_url: Music Assistant server URL.
        error: Error message for failed runs.
    """
    # Build environment with GROUPSYNC_ prefixed variables
    env = os.environ.copy()
    env["GROUPSYNC_EVENT"] = event
    if server_url:
        env["GROUPSYNC_SERVER_URL"] = server_url
    if error:
        env["GROUPSYNC_ERROR"] = error
    if result is not None:
        env["GROUPSYNC_PLAYER_ID"] = result.endpoint_id
        env["GROUPSYNC_PLAYER_NAME"] = result.endpoint_name
        env["GROUPSYNC_OFFSET_MS"] = f"{result.offset_ms:.3f}"
        env["GROUPSYNC_CONFIDENCE"] = f"{result.confidence:.3f}"
        env["GROUPSYNC_DETECTED"] = str(result.detected_count)
        env["GROUPSYNC_EXPECTED"] = str(result.total_expected)
        env["GROUPSYNC_CLOCK_SYNCED"] = "1" if result.clock_synced else "0"
    return env


async def run_hook(
    command: str,
    *,
    event: str,
    result: CalibrationResult | None = None,
    server_url: str | None = None,
    error: str | None = None,
) -> int | None:
    """Run a shell hook for a calibration event.

    The command's combined output is logged. A non-zero exit status is logged
    as a warning and returned; it never aborts the calibration run.

    Returns:
        The exit status, or None if the shell could not be started.
    """
    env = build_hook_env(event, result=result, server_url=server_url, error=error)
    logger.debug("Hook (%s): %s", event, command)

    try:
        proc = await asyncio.create_subprocess_shell(
            command,
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        output, _ = await proc.communicate()
    except OSError:
        logger.exception("Could not start hook: %s", command)
        return None

    text = output.decode(errors="replace").strip() if output else ""
    if proc.returncode:
        logger.warning("Hook exited with %d: %s", proc.returncode, command)
        if text:
            logger.warning("Hook output: %s", text)
    elif text:
        logger.debug("Hook output: %s", text)
    return proc.returncode
