"""Exception types raised by GroupSync components."""

from __future__ import annotations


class GroupSyncError(Exception):
    """Base class for all GroupSync errors."""


class CaptureError(GroupSyncError):
    """The microphone could not be opened or read (permission, missing device)."""


class PlaybackError(GroupSyncError):
    """The remote playback controller rejected or failed a play request."""


class ChannelError(GroupSyncError):
    """A message channel could not be established or was lost."""


class MessageError(ChannelError):
    """An inbound message of a known type was malformed."""


class CommandError(GroupSyncError):
    """A Music Assistant command returned an error or timed out.

    Attributes:
        command: The command that failed.
        code: Error code reported by the server, if any.
    """

    def __init__(self, command: str, message: str, code: int | str | None = None) -> None:
        super().__init__(f"{command}: {message}")
        self.command = command
        self.code = code
