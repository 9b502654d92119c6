"""WebSocket endpoint for ASGI servers with per-connection request data."""

from __future__ import annotations

import asyncio
import inspect
import json
import sys
import traceback
from dataclasses import dataclass, field
from enum import IntEnum
from http.cookies import CookieError, SimpleCookie
from typing import Any, Awaitable, Callable
from urllib.parse import parse_qsl

Scope = dict[str, Any]
Receive = Callable[[], Awaitable[dict[str, Any]]]
Send = Callable[[dict[str, Any]], Awaitable[None]]
ASGIApp = Callable[[Scope, Receive, Send], Awaitable[None]]


class CloseCode(IntEnum):
    """Close codes defined in RFC 6455, section 11.7."""

    NORMAL_CLOSURE = 1000
    GOING_AWAY = 1001
    PROTOCOL_ERROR = 1002
    UNSUPPORTED_DATA = 1003
    NO_STATUS_RECEIVED = 1005
    ABNORMAL_CLOSURE = 1006
    INVALID_FRAME_PAYLOAD_DATA = 1007
    POLICY_VIOLATION = 1008
    MESSAGE_TOO_BIG = 1009
    MANDATORY_EXTENSION = 1010
    INTERNAL_SERVER_ERR = 1011
    SERVICE_RESTART = 1012
    TRY_AGAIN_LATER = 1013
    TLS_HANDSHAKE = 1015


class MessageType(IntEnum):
    """Message types defined in RFC 6455, section 11.8."""

    TEXT = 1
    BINARY = 2
    CLOSE = 8
    PING = 9
    PONG = 10


_CLOSE_CODE_NAMES = {
    CloseCode.NORMAL_CLOSURE: "normal",
    CloseCode.GOING_AWAY: "going away",
    CloseCode.PROTOCOL_ERROR: "protocol error",
    CloseCode.UNSUPPORTED_DATA: "unsupported data",
    CloseCode.NO_STATUS_RECEIVED: "no status",
    CloseCode.ABNORMAL_CLOSURE: "abnormal closure",
    CloseCode.INVALID_FRAME_PAYLOAD_DATA: "invalid payload data",
    CloseCode.POLICY_VIOLATION: "policy violation",
    CloseCode.MESSAGE_TOO_BIG: "message too big",
    CloseCode.MANDATORY_EXTENSION: "mandatory extension missing",
    CloseCode.INTERNAL_SERVER_ERR: "internal server error",
    CloseCode.TLS_HANDSHAKE: "TLS handshake error",
}


class CloseError(Exception):
    """The peer closed the connection with the given code and text."""

    def __init__(self, code: int, text: str = "") -> None:
        self.code = int(code)
        self.text = text
        super().__init__(self.code, text)

    def __str__(self) -> str:
        message = f"websocket: close {self.code}"
        name = _CLOSE_CODE_NAMES.get(self.code)  # type: ignore[call-overload]
        if name:
            message += f" ({name})"
        if self.text:
            message += f": {self.text}"
        return message


class BadHandshakeError(Exception):
    """The opening handshake did not follow the protocol."""

    def __init__(self, message: str = "websocket: bad handshake") -> None:
        super().__init__(message)


class Conn:
    """One accepted WebSocket connection plus the data of its upgrade request."""

    def __init__(
        self,
        receive: Receive,
        send: Send,
        *,
        locals: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
        queries: dict[str, str] | None = None,
        cookies: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
        ip: str = "",
        subprotocol: str | None = None,
    ) -> None:
        self._receive = receive
        self._send = send
        self._locals = dict(locals or {})
        self._params = dict(params or {})
        self._queries = dict(queries or {})
        self._cookies = dict(cookies or {})
        self._headers = {k.lower(): v for k, v in (headers or {}).items()}
        self._ip = ip
        self.subprotocol = subprotocol
        self._closed = False

    @property
    def ip(self) -> str:
        """The client's network address."""
        return self._ip

    @property
    def closed(self) -> bool:
        return self._closed

    def locals(self, key: str, *args: Any) -> Any:
        """Get the value under key, or set it when a value is given."""
        if not args:
            return self._locals.get(key)
        self._locals[key] = args[0]
        return args[0]

    def params(self, key: str, default: str = "") -> str:
        """Route parameter, or default when it does not exist."""
        return self._params.get(key, default)

    def query(self, key: str, default: str = "") -> str:
        """Query string parameter, or default when it does not exist."""
        return self._queries.get(key, default)

    def cookies(self, key: str, default: str = "") -> str:
        """Cookie value, or default when it does not exist."""
        return self._cookies.get(key, default)

    def headers(self, key: str, default: str = "") -> str:
        """Request header value (case-insensitive), or default when absent."""
        return self._headers.get(key.lower(), default)

    async def read_message(self) -> tuple[MessageType, bytes]:
        """Wait for the next data message; raise CloseError when the peer closes."""
        if self._closed:
            raise CloseError(CloseCode.ABNORMAL_CLOSURE)
        while True:
            message = await self._receive()
            kind = message.get("type")
            if kind == "websocket.receive":
                text = message.get("text")
                if text is not None:
                    return MessageType.TEXT, text.encode("utf-8")
                return MessageType.BINARY, bytes(message.get("bytes") or b"")
            if kind == "websocket.disconnect":
                self._closed = True
                raise CloseError(
                    message.get("code", CloseCode.NORMAL_CLOSURE),
                    message.get("reason") or "",
                )

    async def write_message(self, message_type: int, data: bytes | str) -> None:
        """Send a message of the given type.

        Ping and pong frames are handled by the ASGI server and are dropped here.
        """
        message_type = MessageType(message_type)
        if message_type is MessageType.CLOSE:
            payload = data.encode("utf-8") if isinstance(data, str) else bytes(data)
            if len(payload) >= 2:
                code = int.from_bytes(payload[:2], "big")
                reason = payload[2:].decode("utf-8", errors="replace")
            else:
                code, reason = CloseCode.NORMAL_CLOSURE, ""
            await self.close(code, reason)
            return
        self._check_open()
        if message_type in (MessageType.PING, MessageType.PONG):
            return
        if message_type is MessageType.TEXT:
            text = data if isinstance(data, str) else bytes(data).decode("utf-8")
            await self._send({"type": "websocket.send", "text": text})
        else:
            payload = data.encode("utf-8") if isinstance(data, str) else bytes(data)
            await self._send({"type": "websocket.send", "bytes": payload})

    async def write_json(self, value: Any) -> None:
        """Send value encoded as JSON in a text message."""
        self._check_open()
        await self._send({"type": "websocket.send", "text": json.dumps(value)})

    async def close(
        self, code: int = CloseCode.NORMAL_CLOSURE, reason: str = ""
    ) -> None:
        """Send a close frame; closing twice does nothing."""
        if self._closed:
            return
        self._closed = True
        await self._send({"type": "websocket.close", "code": int(code), "reason": reason})

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("websocket: close sent")


RecoverHandler = Callable[[Conn, BaseException], Any]


@dataclass
class Config:
    """Options for the WebSocket endpoint."""

    # Returning False skips this endpoint for the request.
    filter: Callable[[Scope], bool] | None = None
    handshake_timeout: float | None = None
    subprotocols: list[str] = field(default_factory=list)
    # Allowed values of the Origin header; everything is allowed if empty.
    origins: list[str] = field(default_factory=list)
    # Called with the connection and the exception raised by the handler.
    recover_handler: RecoverHandler | None = None
    # Application that receives requests skipped by filter or not upgrading.
    next_app: ASGIApp | None = None


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


async def _default_recover(conn: Conn, exc: BaseException) -> None:
    trace = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    sys.stderr.write(f"panic: {exc}\n{trace}\n")
    try:
        await conn.write_json({"error": str(exc)})
    except Exception as write_error:  # noqa: BLE001
        sys.stderr.write(f"could not write error response: {write_error}\n")


def format_close_message(close_code: int, text: str) -> bytes:
    """Encode a close frame payload; empty for NO_STATUS_RECEIVED."""
    if close_code == CloseCode.NO_STATUS_RECEIVED:
        return b""
    return int(close_code).to_bytes(2, "big") + text.encode("utf-8")


def is_close_error(err: BaseException | None, *args: int) -> bool:
    """True if err is a CloseError with one of the given codes."""
    return isinstance(err, CloseError) and err.code in args


def is_unexpected_close_error(err: BaseException | None, *args: int) -> bool:
    """True if err is a CloseError whose code is not among the expected ones."""
    return isinstance(err, CloseError) and err.code not in args


def _decoded_headers(scope: Scope) -> dict[str, str]:
    headers: dict[str, str] = {}
    for name, value in scope.get("headers", []):
        headers[name.decode("latin-1").lower()] = value.decode("latin-1")
    return headers


def _header_tokens(value: str) -> set[str]:
    return {token.strip().lower() for token in value.split(",") if token.strip()}


def is_websocket_upgrade(scope: Scope) -> bool:
    """True if the request asks for an upgrade to the WebSocket protocol."""
    kind = scope.get("type")
    if kind == "websocket":
        return True
    if kind != "http":
        return False
    headers = _decoded_headers(scope)
    return "upgrade" in _header_tokens(headers.get("connection", "")) and (
        "websocket" in _header_tokens(headers.get("upgrade", ""))
    )


def _parse_cookies(scope: Scope) -> dict[str, str]:
    raw = "; ".join(
        value.decode("latin-1")
        for name, value in scope.get("headers", [])
        if name.lower() == b"cookie"
    )
    jar = SimpleCookie()
    try:
        jar.load(raw)
    except CookieError:
        return {}
    return {key: morsel.value for key, morsel in jar.items()}


def _select_subprotocol(offered: list[str], requested: list[str]) -> str | None:
    return next((proto for proto in offered if proto in requested), None)


async def _upgrade_required(send: Send) -> None:
    body = b"Upgrade Required"
    await send(
        {
            "type": "http.response.start",
            "status": 426,
            "headers": [
                (b"content-type", b"text/plain; charset=utf-8"),
                (b"content-length", str(len(body)).encode()),
            ],
        }
    )
    await send({"type": "http.response.body", "body": body})


def new(
    handler: Callable[[Conn], Any], config: Config | None = None
) -> ASGIApp:
    """Build an ASGI application that runs handler for every accepted connection."""
    cfg = config or Config()
    origins = list(cfg.origins) or ["*"]
    recover = cfg.recover_handler or _default_recover

    def origin_allowed(headers: dict[str, str]) -> bool:
        if origins[0] == "*":
            return True
        return headers.get("origin", "") in origins

    async def app(scope: Scope, receive: Receive, send: Send) -> None:
        skipped = cfg.filter is not None and not cfg.filter(scope)
        if skipped or scope.get("type") != "websocket":
            if cfg.next_app is not None:
                await cfg.next_app(scope, receive, send)
            elif scope.get("type") == "http":
                await _upgrade_required(send)
            elif scope.get("type") == "websocket":
                await send({"type": "websocket.close", "code": CloseCode.POLICY_VIOLATION})
            return

        if cfg.handshake_timeout:
            first = await asyncio.wait_for(receive(), cfg.handshake_timeout)
        else:
            first = await receive()
        if first.get("type") != "websocket.connect":
            raise BadHandshakeError()

        headers = _decoded_headers(scope)
        if not origin_allowed(headers):
            await send({"type": "websocket.close", "code": CloseCode.POLICY_VIOLATION})
            return

        subprotocol = _select_subprotocol(
            cfg.subprotocols, list(scope.get("subprotocols", []))
        )
        client = scope.get("client")
        conn = Conn(
            receive,
            send,
            locals=scope.get("state") or {},
            params={str(k): str(v) for k, v in (scope.get("path_params") or {}).items()},
            queries=dict(
                parse_qsl(
                    scope.get("query_string", b"").decode("latin-1"),
                    keep_blank_values=True,
                )
            ),
            cookies=_parse_cookies(scope),
            headers=headers,
            ip=client[0] if client else "",
            subprotocol=subprotocol,
        )
        await send({"type": "websocket.accept", "subprotocol": subprotocol})
        try:
            await _maybe_await(handler(conn))
        except Exception as exc:  # noqa: BLE001
            await _maybe_await(recover(conn, exc))
        finally:
            if not conn.closed:
                await conn.close()

    return app