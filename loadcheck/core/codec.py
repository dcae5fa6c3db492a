"""Text framing for Socket.IO v4 carried over an Engine.IO v4 WebSocket.

Only the subset the harness needs is covered: open/ping/pong/close engine
packets and CONNECT/DISCONNECT/EVENT/ACK/CONNECT_ERROR socket packets with
JSON payloads. Binary attachments are not supported.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, List, Optional

from ..utils.errors import ChannelFailure


class EnginePacketType(IntEnum):
    OPEN = 0
    CLOSE = 1
    PING = 2
    PONG = 3
    MESSAGE = 4
    UPGRADE = 5
    NOOP = 6


class SocketPacketType(IntEnum):
    CONNECT = 0
    DISCONNECT = 1
    EVENT = 2
    ACK = 3
    CONNECT_ERROR = 4
    BINARY_EVENT = 5
    BINARY_ACK = 6


DEFAULT_NAMESPACE = "/"


@dataclass(frozen=True)
class Packet:
    """A decoded frame."""

    engine_type: EnginePacketType
    socket_type: Optional[SocketPacketType] = None
    namespace: str = DEFAULT_NAMESPACE
    ack_id: Optional[int] = None
    data: Any = None

    @property
    def is_event(self) -> bool:
        return self.socket_type == SocketPacketType.EVENT

    @property
    def event(self) -> Optional[str]:
        if self.is_event and isinstance(self.data, list) and self.data:
            return str(self.data[0])
        return None

    @property
    def args(self) -> List[Any]:
        if self.is_event and isinstance(self.data, list):
            return list(self.data[1:])
        return []


def _socket_frame(
    socket_type: SocketPacketType,
    payload: Any = None,
    namespace: str = DEFAULT_NAMESPACE,
    ack_id: Optional[int] = None,
) -> str:
    parts = [str(int(EnginePacketType.MESSAGE)), str(int(socket_type))]
    if namespace and namespace != DEFAULT_NAMESPACE:
        parts.append(f"{namespace},")
    if ack_id is not None:
        parts.append(str(ack_id))
    if payload is not None:
        parts.append(json.dumps(payload, separators=(",", ":"), default=str))
    return "".join(parts)


def encode_connect(namespace: str = DEFAULT_NAMESPACE, auth: Optional[dict] = None) -> str:
    return _socket_frame(SocketPacketType.CONNECT, auth, namespace)


def encode_disconnect(namespace: str = DEFAULT_NAMESPACE) -> str:
    return _socket_frame(SocketPacketType.DISCONNECT, None, namespace)


def encode_event(
    event: str,
    *args: Any,
    namespace: str = DEFAULT_NAMESPACE,
    ack_id: Optional[int] = None,
) -> str:
    """``42["event",arg,...]`` style frame."""
    if not event:
        raise ValueError("event name must not be empty")
    return _socket_frame(SocketPacketType.EVENT, [event, *args], namespace, ack_id)


def encode_pong() -> str:
    return str(int(EnginePacketType.PONG))


def encode_close() -> str:
    return str(int(EnginePacketType.CLOSE))


def decode(frame: Any) -> Packet:
    """Parse one text frame. Raises ``ChannelFailure`` on malformed input."""
    if isinstance(frame, (bytes, bytearray)):
        raise ChannelFailure("binary frames are not supported")
    if not frame:
        raise ChannelFailure("empty frame")

    try:
        engine_type = EnginePacketType(int(frame[0]))
    except ValueError as e:
        raise ChannelFailure(f"unknown engine packet type in {frame[:16]!r}") from e

    rest = frame[1:]
    if engine_type != EnginePacketType.MESSAGE:
        # OPEN carries a JSON handshake, PING/PONG may carry a bare "probe"
        try:
            data = json.loads(rest) if rest else None
        except json.JSONDecodeError:
            data = rest
        return Packet(engine_type=engine_type, data=data)

    if not rest:
        raise ChannelFailure("message frame without socket packet type")
    try:
        socket_type = SocketPacketType(int(rest[0]))
    except ValueError as e:
        raise ChannelFailure(f"unknown socket packet type in {frame[:16]!r}") from e

    pos = 1
    namespace = DEFAULT_NAMESPACE
    if pos < len(rest) and rest[pos] == "/":
        end = rest.find(",", pos)
        if end == -1:
            namespace, pos = rest[pos:], len(rest)
        else:
            namespace, pos = rest[pos:end], end + 1

    digits_start = pos
    while pos < len(rest) and rest[pos].isdigit():
        pos += 1
    ack_id = int(rest[digits_start:pos]) if pos > digits_start else None

    body = rest[pos:]
    return Packet(
        engine_type=engine_type,
        socket_type=socket_type,
        namespace=namespace,
        ack_id=ack_id,
        data=_loads(body) if body else None,
    )


def _loads(body: str) -> Any:
    try:
        return json.loads(body)
    except json.JSONDecodeError as e:
        raise ChannelFailure(f"malformed JSON payload: {e}") from e
