"""Event-driven layer over WebSocket connections with a shared connection pool."""

from __future__ import annotations

import asyncio
import inspect
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable
from uuid import uuid4

from webcontrib.websocket import (
    ASGIApp,
    CloseCode,
    Config,
    Conn,
    MessageType,
    format_close_message,
)
from webcontrib.websocket import new as _new_endpoint

# Interval between pong frames sent to the client.
PONG_TIMEOUT = 1.0
# Delay before a message is queued again when there is no connection.
RETRY_SEND_TIMEOUT = 0.02
# Maximum number of retries for a message that could not be sent.
MAX_SEND_RETRY = 5
# Pause between read attempts while there is no connection.
READ_TIMEOUT = 0.01


class Event(str, Enum):
    """Built-in events fired by a connection."""

    MESSAGE = "message"
    PING = "ping"
    PONG = "pong"
    DISCONNECT = "disconnect"
    CONNECT = "connect"
    CLOSE = "close"
    ERROR = "error"


class InvalidConnectionError(Exception):
    """The addressed connection is not available any more."""

    def __init__(self, uuid: str = "") -> None:
        self.uuid = uuid
        super().__init__("message cannot be delivered invalid/gone connection")


class UUIDDuplicationError(Exception):
    """The UUID already exists in the pool of connections."""

    def __init__(self, uuid: str = "") -> None:
        self.uuid = uuid
        super().__init__("UUID already exists in the available connections pool")


@dataclass
class EventPayload:
    """Everything a listener learns about a fired event."""

    kws: "Websocket"
    name: str
    socket_uuid: str
    socket_attributes: dict[str, Any] = field(default_factory=dict)
    error: BaseException | None = None
    data: bytes | None = None


EventCallback = Callable[[EventPayload], Any]


@dataclass
class _Message:
    kind: int
    data: bytes
    retries: int = 0


_pool_lock = threading.RLock()
_pool: dict[str, "Websocket"] = {}

_listeners_lock = threading.RLock()
_listeners: dict[str, list[EventCallback]] = {}


def _event_name(event: Event | str) -> str:
    return event.value if isinstance(event, Event) else str(event)


def _pool_snapshot() -> dict[str, "Websocket"]:
    with _pool_lock:
        return dict(_pool)


def _pool_get(uuid: str) -> "Websocket":
    with _pool_lock:
        try:
            return _pool[uuid]
        except KeyError:
            raise InvalidConnectionError(uuid) from None


def _pool_remove(kws: "Websocket") -> None:
    with _pool_lock:
        if _pool.get(kws.uuid) is kws:
            del _pool[kws.uuid]


def _callbacks(event: str) -> list[EventCallback]:
    with _listeners_lock:
        return list(_listeners.get(event, ()))


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class Websocket:
    """A pooled connection that queues outgoing messages and fires events."""

    def __init__(self, conn: Conn | None = None, *, uuid: str | None = None) -> None:
        self.conn = conn
        self._uuid = uuid or str(uuid4())
        self._alive = True
        self._attributes: dict[str, Any] = {}
        self._queue: asyncio.Queue[_Message] = asyncio.Queue()
        self._done = asyncio.Event()
        self._retry_tasks: set[asyncio.Task[None]] = set()
        with _pool_lock:
            if self._uuid in _pool:
                raise UUIDDuplicationError(self._uuid)
            _pool[self._uuid] = self

    @property
    def uuid(self) -> str:
        """Unique identifier of the connection."""
        return self._uuid

    @property
    def is_alive(self) -> bool:
        return self._alive

    def set_uuid(self, uuid: str) -> None:
        """Change the identifier; raise UUIDDuplicationError if it is taken."""
        with _pool_lock:
            if uuid in _pool:
                raise UUIDDuplicationError(uuid)
            if _pool.get(self._uuid) is self:
                del _pool[self._uuid]
                _pool[uuid] = self
            self._uuid = uuid

    def set_attribute(self, key: str, value: Any) -> None:
        self._attributes[key] = value

    def get_attribute(self, key: str) -> Any:
        """The attribute under key, or None."""
        return self._attributes.get(key)

    def get_int_attribute(self, key: str) -> int:
        """The attribute as an int, 0 if unset; TypeError if it is not an int."""
        if key not in self._attributes:
            return 0
        value = self._attributes[key]
        if not isinstance(value, int) or isinstance(value, bool):
            raise TypeError(f"attribute {key!r} is not an int")
        return value

    def get_string_attribute(self, key: str) -> str:
        """The attribute as a str, "" if unset; TypeError if it is not a str."""
        if key not in self._attributes:
            return ""
        value = self._attributes[key]
        if not isinstance(value, str):
            raise TypeError(f"attribute {key!r} is not a string")
        return value

    def emit_to_list(
        self,
        uuids: Iterable[str],
        message: bytes,
        message_type: int = MessageType.TEXT,
    ) -> None:
        """Emit to every listed connection, firing an error event for failures."""
        for target in uuids:
            try:
                self.emit_to(target, message, message_type)
            except InvalidConnectionError as err:
                self._fire_event(Event.ERROR, message, err)

    def emit_to(
        self, uuid: str, message: bytes, message_type: int = MessageType.TEXT
    ) -> None:
        """Emit to one connection; raise InvalidConnectionError if it is gone."""
        target = _pool_get(uuid)
        if not target.is_alive:
            err = InvalidConnectionError(uuid)
            self._fire_event(Event.ERROR, uuid.encode("utf-8"), err)
            raise err
        target.emit(message, message_type)

    def broadcast(
        self,
        message: bytes,
        except_self: bool = False,
        message_type: int = MessageType.TEXT,
    ) -> None:
        """Emit to every pooled connection, optionally skipping this one."""
        for target in _pool_snapshot():
            if except_self and target == self._uuid:
                continue
            try:
                self.emit_to(target, message, message_type)
            except InvalidConnectionError as err:
                self._fire_event(Event.ERROR, message, err)

    def fire(self, event: Event | str, data: bytes | None = None) -> None:
        """Fire a custom event on this connection."""
        self._fire_event(event, data)

    def emit(self, message: bytes, message_type: int = MessageType.TEXT) -> None:
        """Queue a message for this connection."""
        self._write(message_type, message)

    def close(self) -> None:
        """Actively close the connection from the server side."""
        self._write(
            MessageType.CLOSE,
            format_close_message(CloseCode.NORMAL_CLOSURE, "Connection closed"),
        )
        self._fire_event(Event.CLOSE)

    async def run(self) -> None:
        """Serve the connection until it disconnects."""
        tasks = [
            asyncio.create_task(self._pong()),
            asyncio.create_task(self._read()),
            asyncio.create_task(self._send()),
        ]
        try:
            await self._done.wait()
        finally:
            pending = tasks + list(self._retry_tasks)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    def _write(self, message_type: int, data: bytes) -> None:
        self._queue.put_nowait(_Message(int(message_type), bytes(data)))

    async def _pong(self) -> None:
        while True:
            await asyncio.sleep(PONG_TIMEOUT)
            self._write(MessageType.PONG, b"")

    async def _requeue(self, message: _Message) -> None:
        await asyncio.sleep(RETRY_SEND_TIMEOUT)
        message.retries += 1
        self._queue.put_nowait(message)

    async def _send(self) -> None:
        while True:
            message = await self._queue.get()
            if self.conn is None:
                if message.retries <= MAX_SEND_RETRY:
                    task = asyncio.create_task(self._requeue(message))
                    self._retry_tasks.add(task)
                    task.add_done_callback(self._retry_tasks.discard)
                continue
            try:
                await self.conn.write_message(message.kind, message.data)
            except Exception as err:  # noqa: BLE001
                self._disconnected(err)

    async def _read(self) -> None:
        while True:
            if self.conn is None:
                await asyncio.sleep(READ_TIMEOUT)
                continue
            try:
                kind, data = await self.conn.read_message()
            except Exception as err:  # noqa: BLE001
                self._disconnected(err)
                return
            if kind == MessageType.PING:
                self._fire_event(Event.PING)
            elif kind == MessageType.PONG:
                self._fire_event(Event.PONG)
            elif kind == MessageType.CLOSE:
                self._disconnected(None)
                return
            else:
                self._fire_event(Event.MESSAGE, data)

    def _disconnected(self, err: BaseException | None) -> None:
        self._fire_event(Event.DISCONNECT, None, err)
        if self._alive:
            self._alive = False
            self._done.set()
        if err is not None:
            self._fire_event(Event.ERROR, None, err)
        _pool_remove(self)

    def _fire_event(
        self,
        event: Event | str,
        data: bytes | None = None,
        error: BaseException | None = None,
    ) -> None:
        name = _event_name(event)
        for callback in _callbacks(name):
            callback(
                EventPayload(
                    kws=self,
                    name=name,
                    socket_uuid=self._uuid,
                    socket_attributes=self._attributes,
                    error=error,
                    data=data,
                )
            )


def on(event: Event | str, callback: EventCallback) -> None:
    """Register a listener for an event."""
    name = _event_name(event)
    with _listeners_lock:
        _listeners.setdefault(name, []).append(callback)


def emit_to(uuid: str, message: bytes, message_type: int = MessageType.TEXT) -> None:
    """Emit to one connection; raise InvalidConnectionError if it is gone."""
    target = _pool_get(uuid)
    if not target.is_alive:
        raise InvalidConnectionError(uuid)
    target.emit(message, message_type)


def emit_to_list(
    uuids: Iterable[str], message: bytes, message_type: int = MessageType.TEXT
) -> None:
    """Emit to every listed connection, ignoring connections that are gone."""
    for target in uuids:
        try:
            emit_to(target, message, message_type)
        except InvalidConnectionError:
            pass


def broadcast(message: bytes, message_type: int = MessageType.TEXT) -> None:
    """Emit to every pooled connection."""
    for kws in _pool_snapshot().values():
        kws.emit(message, message_type)


def fire(event: Event | str, data: bytes | None = None) -> None:
    """Fire a custom event on every pooled connection."""
    for kws in _pool_snapshot().values():
        kws._fire_event(event, data)


def reset() -> None:
    """Drop every pooled connection and every registered listener."""
    with _pool_lock:
        _pool.clear()
    with _listeners_lock:
        _listeners.clear()


def new(
    callback: Callable[[Websocket], Any], config: Config | None = None
) -> ASGIApp:
    """Build an ASGI endpoint that pools each connection and serves it."""

    async def handler(conn: Conn) -> None:
        kws = Websocket(conn)
        await _maybe_await(callback(kws))
        kws._fire_event(Event.CONNECT)
        await kws.run()

    return _new_endpoint(handler, config)