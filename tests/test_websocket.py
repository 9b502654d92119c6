import json

import pytest

from webcontrib.websocket import (
    BadHandshakeError,
    CloseCode,
    CloseError,
    Config,
    Conn,
    MessageType,
    format_close_message,
    is_close_error,
    is_unexpected_close_error,
    is_websocket_upgrade,
    new,
)


def make_scope(
    *,
    query=b"",
    headers=(),
    path_params=None,
    state=None,
    subprotocols=(),
    client=("127.0.0.1", 50000),
):
    return {
        "type": "websocket",
        "path": "/ws/message",
        "query_string": query,
        "headers": [(k.encode(), v.encode()) for k, v in headers],
        "path_params": path_params or {},
        "state": state if state is not None else {"local1": "value1", "local2": "value2"},
        "subprotocols": list(subprotocols),
        "client": client,
    }


async def run_app(app, scope, incoming=None):
    queue = list(incoming) if incoming is not None else [{"type": "websocket.connect"}]
    sent = []

    async def receive():
        if queue:
            return queue.pop(0)
        return {"type": "websocket.disconnect", "code": 1000}

    async def send(message):
        sent.append(message)

    await app(scope, receive, send)
    return sent


async def hello(conn):
    await conn.write_json({"message": "hello websocket"})


def json_messages(sent):
    return [json.loads(m["text"]) for m in sent if m["type"] == "websocket.send"]


@pytest.mark.asyncio
async def test_default_config():
    sent = await run_app(new(hello), make_scope())
    assert sent[0]["type"] == "websocket.accept"
    assert json_messages(sent) == [{"message": "hello websocket"}]
    assert sent[-1] == {"type": "websocket.close", "code": 1000, "reason": ""}


@pytest.mark.asyncio
async def test_allow_all_origins():
    app = new(hello, Config(origins=["*"]))
    sent = await run_app(app, make_scope(headers=[("Origin", "http://localhost:3000")]))
    assert sent[0]["type"] == "websocket.accept"
    assert json_messages(sent) == [{"message": "hello websocket"}]


@pytest.mark.asyncio
async def test_allowed_origin():
    app = new(hello, Config(origins=["http://localhost:3000"]))
    sent = await run_app(app, make_scope(headers=[("Origin", "http://localhost:3000")]))
    assert sent[0]["type"] == "websocket.accept"
    assert json_messages(sent) == [{"message": "hello websocket"}]


@pytest.mark.asyncio
async def test_disallowed_origin():
    called = []
    app = new(lambda conn: called.append(conn), Config(origins=["http://localhost:3000"]))
    sent = await run_app(app, make_scope(headers=[("Origin", "http://localhost:5000")]))
    assert len(sent) == 1
    assert sent[0]["type"] == "websocket.close"
    assert sent[0]["code"] == 1008
    assert called == []


@pytest.mark.asyncio
async def test_params():
    async def handler(conn):
        await conn.write_json(
            {
                "param1": conn.params("param1"),
                "param2": conn.params("param2"),
                "default": conn.params("paramDefault", "default"),
                "missing": conn.params("missing"),
            }
        )

    scope = make_scope(path_params={"param1": "value1", "param2": "value2"})
    sent = await run_app(new(handler), scope)
    assert json_messages(sent) == [
        {"param1": "value1", "param2": "value2", "default": "default", "missing": ""}
    ]


@pytest.mark.asyncio
async def test_query():
    async def handler(conn):
        await conn.write_json(
            {
                "q1": conn.query("query1"),
                "q2": conn.query("query2"),
                "default": conn.query("queryDefault", "default"),
            }
        )

    sent = await run_app(new(handler), make_scope(query=b"query1=value1&query2=value2"))
    assert json_messages(sent) == [{"q1": "value1", "q2": "value2", "default": "default"}]


@pytest.mark.asyncio
async def test_headers():
    async def handler(conn):
        await conn.write_json(
            {
                "h1": conn.headers("Header1"),
                "h2": conn.headers("Header2"),
                "default": conn.headers("HeaderDefault", "valueDefault"),
            }
        )

    scope = make_scope(headers=[("header1", "value1"), ("header2", "value2")])
    sent = await run_app(new(handler), scope)
    assert json_messages(sent) == [{"h1": "value1", "h2": "value2", "default": "valueDefault"}]


@pytest.mark.asyncio
async def test_cookies():
    async def handler(conn):
        await conn.write_json(
            {
                "c1": conn.cookies("Cookie1"),
                "c2": conn.cookies("Cookie2"),
                "default": conn.headers("CookieDefault", "valueDefault"),
            }
        )

    scope = make_scope(headers=[("Cookie", "Cookie1=value1; Cookie2=value2")])
    sent = await run_app(new(handler), scope)
    assert json_messages(sent) == [{"c1": "value1", "c2": "value2", "default": "valueDefault"}]


@pytest.mark.asyncio
async def test_locals():
    async def handler(conn):
        l1 = conn.locals("local1")
        l2 = conn.locals("local2")
        stored = conn.locals("local3", 7)
        after = conn.locals("local3")
        await conn.write_json({"l1": l1, "l2": l2, "set": stored, "after": after})

    sent = await run_app(new(handler), make_scope())
    assert json_messages(sent) == [{"l1": "value1", "l2": "value2", "set": 7, "after": 7}]


@pytest.mark.asyncio
async def test_ip():
    async def handler(conn):
        await conn.write_json({"ip": conn.ip})

    sent = await run_app(new(handler), make_scope())
    assert json_messages(sent) == [{"ip": "127.0.0.1"}]


def test_is_close_error():
    err = CloseError(CloseCode.NORMAL_CLOSURE)
    assert is_close_error(err, CloseCode.NORMAL_CLOSURE) is True
    assert is_close_error(err, CloseCode.GOING_AWAY) is False
    assert is_close_error(ValueError("x"), 1000) is False


def test_is_unexpected_close_error():
    err = CloseError(CloseCode.NORMAL_CLOSURE)
    assert is_unexpected_close_error(err, CloseCode.ABNORMAL_CLOSURE) is True
    assert is_unexpected_close_error(err, CloseCode.NORMAL_CLOSURE) is False


def test_format_close_message():
    assert format_close_message(CloseCode.NORMAL_CLOSURE, "test") == bytes(
        [0x3, 0xE8, 0x74, 0x65, 0x73, 0x74]
    )
    assert format_close_message(CloseCode.NO_STATUS_RECEIVED, "ignored") == b""


def test_close_error_text():
    assert str(CloseError(1000, "bye")) == "websocket: close 1000 (normal): bye"
    assert str(CloseError(4000)) == "websocket: close 4000"


@pytest.mark.asyncio
async def test_default_recover_handler(capsys):
    async def handler(conn):
        raise RuntimeError("test panic")

    sent = await run_app(new(handler), make_scope())
    assert json_messages(sent) == [{"error": "test panic"}]
    assert "panic: test panic" in capsys.readouterr().err


@pytest.mark.asyncio
async def test_custom_recover_handler():
    async def recover(conn, exc):
        await conn.write_json({"customError": "error occurred"})

    async def handler(conn):
        raise RuntimeError("test panic")

    sent = await run_app(new(handler, Config(recover_handler=recover)), make_scope())
    assert json_messages(sent) == [{"customError": "error occurred"}]


@pytest.mark.asyncio
async def test_read_messages_until_close():
    seen = {}

    async def handler(conn):
        seen["first"] = await conn.read_message()
        seen["second"] = await conn.read_message()
        try:
            await conn.read_message()
        except CloseError as err:
            seen["code"] = err.code

    incoming = [
        {"type": "websocket.connect"},
        {"type": "websocket.receive", "text": "hi"},
        {"type": "websocket.receive", "bytes": b"\x01\x02"},
        {"type": "websocket.disconnect", "code": 1001},
    ]
    sent = await run_app(new(handler), make_scope(), incoming)
    assert seen == {
        "first": (MessageType.TEXT, b"hi"),
        "second": (MessageType.BINARY, b"\x01\x02"),
        "code": 1001,
    }
    assert [m["type"] for m in sent] == ["websocket.accept"]


@pytest.mark.asyncio
async def test_write_message_types_and_close_payload():
    async def handler(conn):
        await conn.write_message(MessageType.TEXT, b"text")
        await conn.write_message(MessageType.BINARY, b"\x00")
        await conn.write_message(MessageType.PONG, b"")
        await conn.write_message(MessageType.CLOSE, format_close_message(1001, "away"))

    sent = await run_app(new(handler), make_scope())
    assert sent[1:] == [
        {"type": "websocket.send", "text": "text"},
        {"type": "websocket.send", "bytes": b"\x00"},
        {"type": "websocket.close", "code": 1001, "reason": "away"},
    ]


@pytest.mark.asyncio
async def test_write_after_close_fails():
    seen = {}

    async def handler(conn):
        await conn.close()
        try:
            await conn.write_json({"late": True})
        except RuntimeError as err:
            seen["error"] = str(err)

    sent = await run_app(new(handler), make_scope())
    assert seen["error"] == "websocket: close sent"
    assert [m["type"] for m in sent] == ["websocket.accept", "websocket.close"]


@pytest.mark.asyncio
async def test_subprotocol_negotiation():
    seen = {}

    async def handler(conn):
        seen["proto"] = conn.subprotocol

    app = new(handler, Config(subprotocols=["chat", "json"]))
    sent = await run_app(app, make_scope(subprotocols=["json", "chat"]))
    assert sent[0] == {"type": "websocket.accept", "subprotocol": "chat"}
    assert seen["proto"] == "chat"


@pytest.mark.asyncio
async def test_filter_delegates_to_next_app():
    reached = []

    async def next_app(scope, receive, send):
        reached.append(scope["path"])
        await send({"type": "websocket.close", "code": 4000})

    app = new(hello, Config(filter=lambda scope: False, next_app=next_app))
    sent = await run_app(app, make_scope())
    assert reached == ["/ws/message"]
    assert sent == [{"type": "websocket.close", "code": 4000}]


@pytest.mark.asyncio
async def test_plain_http_request_gets_upgrade_required():
    scope = {"type": "http", "path": "/ws/message", "headers": []}
    sent = await run_app(new(hello), scope, [])
    assert sent[0]["status"] == 426
    assert sent[1]["body"] == b"Upgrade Required"


@pytest.mark.asyncio
async def test_bad_handshake():
    with pytest.raises(BadHandshakeError):
        await run_app(new(hello), make_scope(), [{"type": "websocket.receive", "text": "x"}])


def test_is_websocket_upgrade():
    upgrade = {
        "type": "http",
        "headers": [(b"connection", b"keep-alive, Upgrade"), (b"upgrade", b"websocket")],
    }
    plain = {"type": "http", "headers": [(b"connection", b"keep-alive")]}
    assert is_websocket_upgrade(upgrade) is True
    assert is_websocket_upgrade(plain) is False
    assert is_websocket_upgrade({"type": "websocket"}) is True


def test_conn_defaults_without_request_data():
    async def receive():
        return {}

    async def send(message):
        return None

    conn = Conn(receive, send)
    assert conn.params("x", "d") == "d"
    assert conn.query("x") == ""
    assert conn.locals("missing") is None
    assert conn.ip == ""