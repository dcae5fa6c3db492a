"""Client for the two protocols under test: HTTP request/response and a
Socket.IO real-time channel.

Every public coroutine on ``TargetClient`` returns a ``Result``; transport
errors, timeouts and unexpected statuses are captured in the result instead
of being raised, so one failing call never takes a virtual user down.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, Protocol, TypeVar

import httpx
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from . import codec
from .codec import EnginePacketType, SocketPacketType
from .config import ClientConfig
from ..utils.errors import AuthFailure, CallFailure, ChannelFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Result(Generic[T]):
    """Outcome of one client operation."""

    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    latency_ms: float = 0.0
    status: Optional[int] = None
    attempts: int = 1

    @classmethod
    def success(cls, value: T, latency_ms: float, status: Optional[int] = None, attempts: int = 1) -> "Result[T]":
        return cls(ok=True, value=value, latency_ms=latency_ms, status=status, attempts=attempts)

    @classmethod
    def failure(cls, error: str, latency_ms: float, status: Optional[int] = None, attempts: int = 1) -> "Result[T]":
        return cls(ok=False, error=error, latency_ms=latency_ms, status=status, attempts=attempts)


@dataclass(frozen=True)
class Credentials:
    """Identifier/secret pair for the login endpoint."""

    identifier: str
    secret: str
    name: Optional[str] = None


class SocketLike(Protocol):
    """The part of a websocket connection the channel relies on."""

    async def send(self, message: str) -> None: ...

    async def recv(self) -> Any: ...

    async def close(self) -> None: ...


Connector = Callable[[str, float], Awaitable[SocketLike]]
EventCallback = Callable[..., Any]


async def default_connector(url: str, timeout: float) -> SocketLike:
    """Open a raw WebSocket; Engine.IO does its own heartbeats."""
    return await ws_connect(url, open_timeout=timeout, ping_interval=None, max_size=2 ** 22)


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000


def _extract_field(body: Any, dotted: str) -> Any:
    value = body
    for part in dotted.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


class ChannelHandle:
    """An open Socket.IO connection owned by a single virtual user."""

    def __init__(self, socket: SocketLike, ack_event: str = "receive_message", sid: Optional[str] = None):
        self._socket = socket
        self.ack_event = ack_event
        self.sid = sid
        self.connected = True
        self.dropped = False
        self._closing = False
        self._handlers: Dict[str, List[EventCallback]] = {}
        self._pending: Dict[str, Any] = {}  # message_id -> (future, timer handle, sent_at)
        self._reader: Optional[asyncio.Task] = None

    def start(self) -> None:
        """Begin consuming inbound frames in a background task."""
        if self._reader is None:
            self._reader = asyncio.create_task(self._read_loop())

    def on(self, event: str, callback: EventCallback) -> None:
        """Register a callback for an inbound event."""
        self._handlers.setdefault(event, []).append(callback)

    async def send(self, event: str, payload: Any = None) -> None:
        """Emit an event. Fire-and-forget: there is no synchronous acknowledgment."""
        if not self.connected:
            raise ChannelFailure("channel is not connected")
        frame = codec.encode_event(event, payload) if payload is not None else codec.encode_event(event)
        try:
            await self._socket.send(frame)
        except (ConnectionClosed, WebSocketException, OSError) as e:
            self._mark_disconnected(dropped=True)
            raise ChannelFailure(f"send failed: {e}") from e

    async def join(self, room: str, event: str = "join") -> None:
        await self.send(event, room)

    def track(self, message_id: str, timeout: float) -> "asyncio.Future[float]":
        """Future resolved with the delivery latency (ms) when the ack for
        ``message_id`` arrives; fails with ``asyncio.TimeoutError`` otherwise.
        """
        if not self.connected:
            raise ChannelFailure("channel is not connected")
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        timer = loop.call_later(timeout, self._expire, message_id, timeout)
        self._pending[message_id] = (future, timer, time.perf_counter())
        return future

    def discard(self, message_id: str) -> None:
        """Stop tracking ``message_id`` (e.g. the emit itself failed)."""
        entry = self._pending.pop(message_id, None)
        if entry is None:
            return
        future, timer, _ = entry
        timer.cancel()
        future.cancel()

    @property
    def pending_deliveries(self) -> int:
        return len(self._pending)

    def _expire(self, message_id: str, timeout: float) -> None:
        entry = self._pending.pop(message_id, None)
        if entry is None:
            return
        future = entry[0]
        if not future.done():
            future.set_exception(asyncio.TimeoutError(f"no acknowledgment within {timeout:.1f}s"))

    def _acknowledge(self, message_id: str) -> None:
        entry = self._pending.pop(message_id, None)
        if entry is None:
            return
        future, timer, sent_at = entry
        timer.cancel()
        if not future.done():
            future.set_result(_elapsed_ms(sent_at))

    def _fail_pending(self, reason: str) -> None:
        pending, self._pending = self._pending, {}
        for future, timer, _ in pending.values():
            timer.cancel()
            if not future.done():
                future.set_exception(ChannelFailure(reason))

    def _mark_disconnected(self, dropped: bool) -> None:
        if self.connected and dropped and not self._closing:
            self.dropped = True
            logger.debug(f"Channel {self.sid} dropped by server")
        self.connected = False

    async def _read_loop(self) -> None:
        try:
            while True:
                frame = await self._socket.recv()
                try:
                    packet = codec.decode(frame)
                except ChannelFailure as e:
                    logger.debug(f"Ignoring undecodable frame on {self.sid}: {e}")
                    continue
                await self._handle(packet)
                if not self.connected:
                    break
        except ConnectionClosed:
            self._mark_disconnected(dropped=True)
        except (WebSocketException, OSError) as e:
            logger.debug(f"Channel {self.sid} read error: {e}")
            self._mark_disconnected(dropped=True)
        finally:
            self._fail_pending("channel closed before acknowledgment")

    async def _handle(self, packet: codec.Packet) -> None:
        if packet.engine_type == EnginePacketType.PING:
            await self._socket.send(codec.encode_pong())
            return
        if packet.engine_type == EnginePacketType.CLOSE:
            self._mark_disconnected(dropped=True)
            return
        if packet.socket_type == SocketPacketType.DISCONNECT:
            self._mark_disconnected(dropped=True)
            return
        if not packet.is_event:
            return

        event, args = packet.event, packet.args
        if event == self.ack_event and args and isinstance(args[0], dict):
            message_id = args[0].get("message_id")
            if message_id is not None:
                self._acknowledge(str(message_id))
        for callback in self._handlers.get(event or "", []):
            try:
                result = callback(*args)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Channel handler for {event!r} failed: {e}")

    async def close(self) -> None:
        """Disconnect and stop the reader. Safe to call more than once."""
        if self._closing:
            return
        self._closing = True
        if self.connected:
            try:
                await self._socket.send(codec.encode_disconnect())
            except (ConnectionClosed, WebSocketException, OSError):
                pass
        self.connected = False
        try:
            await self._socket.close()
        except (WebSocketException, OSError) as e:
            logger.debug(f"Error closing channel {self.sid}: {e}")
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        self._fail_pending("channel closed before acknowledgment")


class TargetClient:
    """Per-user client for the system under test.

    Args:
        config: Endpoints, timeouts and retry policy.
        http: Optional pre-built ``httpx.AsyncClient`` (tests pass one backed
            by ``httpx.MockTransport``). When omitted the client owns one.
        connector: Coroutine opening the raw channel socket.
        sleep: Backoff sleep, replaceable in tests.
    """

    _ids = itertools.count(1)

    def __init__(
        self,
        config: ClientConfig,
        http: Optional[httpx.AsyncClient] = None,
        connector: Optional[Connector] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(
            base_url=config.base_url,
            timeout=config.call_timeout_seconds,
        )
        self._connector = connector or default_connector
        self._sleep = sleep
        self.client_id = next(TargetClient._ids)

    async def __aenter__(self) -> "TargetClient":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def authenticate(self, credentials: Credentials, timeout: Optional[float] = None) -> Result[str]:
        """Log in and return the bearer token (or opaque session id)."""
        timeout = timeout or self.config.auth_timeout_seconds
        body = {
            self.config.identifier_field: credentials.identifier,
            self.config.secret_field: credentials.secret,
        }
        start = time.perf_counter()
        try:
            response = await self._http.post(self.config.auth_path, json=body, timeout=timeout)
        except httpx.TimeoutException:
            error = AuthFailure(f"auth timeout after {timeout:.1f}s")
            return Result.failure(str(error), _elapsed_ms(start))
        except httpx.HTTPError as e:
            error = AuthFailure(f"auth transport error: {e}")
            return Result.failure(str(error), _elapsed_ms(start))

        latency = _elapsed_ms(start)
        if not response.is_success:
            error = AuthFailure(f"{_describe_error_body(response)} (status={response.status_code})")
            return Result.failure(str(error), latency, status=response.status_code)
        try:
            token = self._extract_token(response.json())
        except ValueError:
            token = None
        if not token:
            error = AuthFailure("response did not contain a token")
            return Result.failure(str(error), latency, status=response.status_code)
        return Result.success(token, latency, status=response.status_code)

    async def call(self, endpoint: str, token: Optional[str] = None, timeout: Optional[float] = None) -> Result[int]:
        """Single GET; the value is the HTTP status."""
        timeout = timeout or self.config.call_timeout_seconds
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        start = time.perf_counter()
        try:
            response = await self._http.get(endpoint, headers=headers, timeout=timeout)
            latency = _elapsed_ms(start)
            if not response.is_success:
                error = CallFailure(_describe_error_body(response), endpoint=endpoint, status=response.status_code)
                return Result.failure(str(error), latency, status=response.status_code)
            return Result.success(response.status_code, latency, status=response.status_code)
        except httpx.TimeoutException:
            error = CallFailure(f"timeout after {timeout:.1f}s", endpoint=endpoint)
            return Result.failure(str(error), _elapsed_ms(start))
        except httpx.HTTPError as e:
            error = CallFailure(f"transport error: {e}", endpoint=endpoint)
            return Result.failure(str(error), _elapsed_ms(start))

    async def health_check(self, timeout: float = 5.0) -> Result[int]:
        return await self.call(self.config.health_path, timeout=timeout)

    async def register(self, credentials: Credentials, extra: Optional[Dict[str, Any]] = None) -> Result[str]:
        """Create an account; the value is the token returned, if any."""
        body = {
            "name": credentials.name or credentials.identifier,
            self.config.identifier_field: credentials.identifier,
            self.config.secret_field: credentials.secret,
            **(extra or {}),
        }
        start = time.perf_counter()
        try:
            response = await self._http.post(
                self.config.register_path, json=body, timeout=self.config.auth_timeout_seconds
            )
            latency = _elapsed_ms(start)
            if not response.is_success:
                return Result.failure(_describe_error_body(response), latency, status=response.status_code)
            try:
                token = self._extract_token(response.json())
            except ValueError:
                token = None
            return Result.success(str(token) if token else "", latency, status=response.status_code)
        except httpx.TimeoutException:
            return Result.failure("register timeout", _elapsed_ms(start))
        except httpx.HTTPError as e:
            return Result.failure(f"register error: {e}", _elapsed_ms(start))

    async def open_channel(
        self,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        on_attempt: Optional[Callable[[int, Optional[str]], None]] = None,
    ) -> Result[ChannelHandle]:
        """Connect the real-time channel, retrying with a fixed backoff.

        Makes at most ``1 + max_retries`` attempts. Latency spans every
        attempt and backoff sleep.
        """
        timeout = timeout or self.config.channel_timeout_seconds
        retries = self.config.channel_retries if max_retries is None else max_retries
        start = time.perf_counter()
        last_error = "no connection attempt made"

        for attempt in range(1, retries + 2):
            try:
                handle = await asyncio.wait_for(self._connect_once(timeout), timeout)
                if on_attempt is not None:
                    on_attempt(attempt, None)
                handle.start()
                return Result.success(handle, _elapsed_ms(start), attempts=attempt)
            except asyncio.TimeoutError:
                last_error = f"connect timeout after {timeout:.1f}s"
            except (ChannelFailure, WebSocketException, OSError) as e:
                last_error = f"connect error: {e}"

            if on_attempt is not None:
                on_attempt(attempt, last_error)
            if attempt <= retries:
                logger.debug(f"Client {self.client_id}: channel retry {attempt}/{retries} ({last_error})")
                await self._sleep(self.config.retry_backoff_seconds)

        error = ChannelFailure(f"{last_error} after {retries + 1} attempts")
        return Result.failure(str(error), _elapsed_ms(start), attempts=retries + 1)

    async def _connect_once(self, timeout: float) -> ChannelHandle:
        socket = await self._connector(self.config.channel_url, timeout)
        try:
            opening = codec.decode(await socket.recv())
            if opening.engine_type != EnginePacketType.OPEN:
                raise ChannelFailure(f"expected engine OPEN, got {opening.engine_type.name}")
            await socket.send(codec.encode_connect())
            while True:
                packet = codec.decode(await socket.recv())
                if packet.engine_type == EnginePacketType.PING:
                    await socket.send(codec.encode_pong())
                    continue
                if packet.socket_type == SocketPacketType.CONNECT:
                    sid = packet.data.get("sid") if isinstance(packet.data, dict) else None
                    return ChannelHandle(socket, ack_event=self.config.ack_event, sid=sid)
                if packet.socket_type == SocketPacketType.CONNECT_ERROR:
                    message = packet.data.get("message") if isinstance(packet.data, dict) else packet.data
                    raise ChannelFailure(f"connect refused: {message}")
        except BaseException:
            try:
                await socket.close()
            except (WebSocketException, OSError):
                pass
            raise

    def _extract_token(self, body: Any) -> Optional[str]:
        for field_path in self.config.token_fields:
            value = _extract_field(body, field_path)
            if value:
                return str(value)
        return None


def _describe_error_body(response: httpx.Response) -> str:
    try:
        body = response.json()
        if isinstance(body, dict) and body.get("message"):
            return str(body["message"])
    except ValueError:
        pass
    return f"HTTP {response.status_code}"
