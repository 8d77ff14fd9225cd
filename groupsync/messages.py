"""Sendspin time-sync message types.

Messages travel as JSON objects of the form ``{"type": ..., "payload": {...}}``.
Only the handshake and time exchange subset of the protocol is modelled;
any other inbound type is ignored by the parser.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar

from groupsync.errors import MessageError

CLIENT_HELLO = "client/hello"
CLIENT_TIME = "client/time"
CLIENT_GOODBYE = "client/goodbye"
SERVER_HELLO = "server/hello"
SERVER_TIME = "server/time"


@dataclass(frozen=True, slots=True)
class ServerHello:
    """Handshake reply from the Sendspin server."""

    type: ClassVar[str] = SERVER_HELLO

    name: str
    server_id: str
    active_roles: tuple[str, ...] = ()
    connection_reason: str | None = None


@dataclass(frozen=True, slots=True)
class ServerTime:
    """Server half of a time exchange, timestamps in microseconds."""

    type: ClassVar[str] = SERVER_TIME

    client_transmitted: int
    server_received: int
    server_transmitted: int


@dataclass(frozen=True, slots=True)
class ClientHello:
    """Handshake request identifying this client."""

    type: ClassVar[str] = CLIENT_HELLO

    client_id: str
    name: str
    device_info: dict[str, Any] = field(default_factory=dict)
    version: int = 1
    supported_roles: tuple[str, ...] = ("controller@v1",)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "payload": {
                "client_id": self.client_id,
                "name": self.name,
                "version": self.version,
                "supported_roles": list(self.supported_roles),
                "device_info": self.device_info,
            },
        }


@dataclass(frozen=True, slots=True)
class ClientTime:
    """Client half of a time exchange."""

    type: ClassVar[str] = CLIENT_TIME

    client_transmitted: int

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "payload": {"client_transmitted": self.client_transmitted}}


@dataclass(frozen=True, slots=True)
class ClientGoodbye:
    """Sent before the client closes the connection."""

    type: ClassVar[str] = CLIENT_GOODBYE

    reason: str = "calibration_complete"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "payload": {"reason": self.reason}}


InboundMessage = ServerHello | ServerTime


def _require(
    payload: dict[str, Any], key: str, kind: type | tuple[type, ...], msg_type: str
) -> Any:
    value = payload.get(key)
    # bool is an int subclass
    if value is None or isinstance(value, bool) or not isinstance(value, kind):
        raise MessageError(f"{msg_type}: field '{key}' missing or invalid ({value!r})")
    return value


def parse_message(data: Any) -> InboundMessage | None:
    """Validate an inbound JSON object.

    Returns:
        The typed message, or None for message types this client ignores.

    Raises:
        MessageError: If the envelope or a known message's payload is malformed.
    """
    if not isinstance(data, dict) or not isinstance(data.get("type"), str):
        raise MessageError(f"Message without a type: {data!r}")

    msg_type = data["type"]
    if msg_type not in (SERVER_HELLO, SERVER_TIME):
        return None

    payload = data.get("payload")
    if not isinstance(payload, dict):
        raise MessageError(f"{msg_type}: payload missing")

    if msg_type == SERVER_TIME:
        return ServerTime(
            client_transmitted=int(_require(payload, "client_transmitted", (int, float), msg_type)),
            server_received=int(_require(payload, "server_received", (int, float), msg_type)),
            server_transmitted=int(_require(payload, "server_transmitted", (int, float), msg_type)),
        )

    roles = payload.get("active_roles") or []
    if not isinstance(roles, list):
        raise MessageError(f"{msg_type}: field 'active_roles' must be a list")
    reason = payload.get("connection_reason")
    return ServerHello(
        name=_require(payload, "name", str, msg_type),
        server_id=_require(payload, "server_id", str, msg_type),
        active_roles=tuple(str(role) for role in roles),
        connection_reason=reason if isinstance(reason, str) else None,
    )
