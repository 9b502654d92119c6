# webcontrib

Building blocks for ASGI web applications: WebSocket endpoints that carry
the data of their upgrade request, a shared pool of connections driven by
named events, middleware that serves an OpenAPI specification with a
Swagger UI page, and services that tie a container's lifecycle to an
application's configuration.

| Module                  | What it gives you                                                       |
|-------------------------|-------------------------------------------------------------------------|
| `webcontrib.websocket`  | An ASGI WebSocket endpoint and a `Conn` object with request data        |
| `webcontrib.socketio`   | A pool of live connections with named events, broadcast and direct send |
| `webcontrib.swagger`    | ASGI middleware serving a JSON or YAML spec and a Swagger UI page       |
| `webcontrib.containers` | Container services with a start / state / terminate lifecycle           |

The only runtime dependency is PyYAML, used to validate YAML specifications.

## Installation

```
pip install webcontrib
```

To run the test suite:

```
pip install "webcontrib[test]"
pytest
```

## WebSocket endpoint

`websocket.new(handler, config=None)` returns an ASGI application. For each
accepted connection it builds a `Conn` and calls `handler(conn)`; the
handler may be a plain function or a coroutine function.

```python
from webcontrib import websocket

async def echo(conn):
    kind, data = await conn.read_message()
    await conn.write_message(kind, data)

app = websocket.new(echo, websocket.Config(origins=["https://app.example.com"]))
```

### The connection

A `Conn` keeps a copy of the request it was upgraded from:

- `conn.params(key, default="")` — route parameters (from the scope's `path_params`)
- `conn.query(key, default="")` — query-string values
- `conn.cookies(key, default="")` — cookies from the `Cookie` header
- `conn.headers(key, default="")` — request headers, looked up case-insensitively
- `conn.locals(key)` reads a value taken from the scope's `state`;
  `conn.locals(key, value)` sets one and returns it
- `conn.ip` — the client address
- `conn.subprotocol` — the negotiated subprotocol, or `None`

Messaging:

- `await conn.read_message()` returns `(MessageType, bytes)` for the next
  text or binary message. When the client disconnects it raises
  `CloseError` carrying the close code and reason.
- `await conn.write_message(message_type, data)` sends a text or binary
  message. A `MessageType.CLOSE` payload is decoded into a code and reason
  and closes the connection; ping and pong frames are left to the ASGI
  server and are dropped.
- `await conn.write_json(value)` sends `value` as JSON text.
- `await conn.close(code=CloseCode.NORMAL_CLOSURE, reason="")` closes the
  connection; closing twice does nothing. Writing after a close raises
  `RuntimeError`.

### Configuration

`Config` fields:

- `filter` — called with the scope; returning `False` skips the endpoint
- `handshake_timeout` — seconds to wait for the client's connect message
- `subprotocols` — subprotocols the server offers; the first one the client
  also asked for is selected
- `origins` — allowed values of the `Origin` header; everything is allowed
  when empty. A connection from another origin is closed with
  `CloseCode.POLICY_VIOLATION`.
- `recover_handler` — called as `recover_handler(conn, exc)` when the
  handler raises. The default writes the traceback to stderr and sends
  `{"error": "<message>"}` to the client.
- `next_app` — an ASGI application that receives skipped requests and
  plain HTTP requests. Without it, HTTP requests get `426 Upgrade Required`
  and skipped WebSocket requests are closed with a policy violation.

If the first message of a WebSocket session is not a connect message, the
endpoint raises `BadHandshakeError`. The connection is closed when the
handler returns.

### Helpers

- `format_close_message(close_code, text)` builds a close frame payload:
  `format_close_message(CloseCode.NORMAL_CLOSURE, "test") == b"\x03\xe8test"`.
  It is empty for `CloseCode.NO_STATUS_RECEIVED`.
- `is_close_error(err, *codes)` — whether `err` is a `CloseError` with one
  of the codes.
- `is_unexpected_close_error(err, *codes)` — whether `err` is a
  `CloseError` with a code *not* among them.
- `is_websocket_upgrade(scope)` — whether a scope is a WebSocket session,
  or an HTTP request with `Connection: upgrade` and `Upgrade: websocket`.

`MessageType` lists the message types (text, binary, close, ping, pong)
and `CloseCode` the close codes of RFC 6455.

## Event-driven connection pool

`webcontrib.socketio` keeps every open connection in a shared pool under a
UUID and dispatches named events to listeners registered with
`on(event, callback)`. The built-in events are listed in `Event`:
`message`, `ping`, `pong`, `connect`, `disconnect`, `close` and `error`.
Any other string works as a custom event.

```python
from webcontrib import socketio

def on_message(payload):
    payload.kws.emit(b"echo: " + payload.data)

socketio.on(socketio.Event.MESSAGE, on_message)

app = socketio.new(lambda kws: kws.set_attribute("user", "guest"))
```

Listeners are called synchronously with an `EventPayload` holding `kws`
(the `Websocket`), `name`, `socket_uuid`, `socket_attributes`, `data` and
`error`.

`new(callback, config=None)` builds the endpoint on top of
`websocket.new`: for each connection it creates a `Websocket`, calls
`callback` (sync or async), fires `connect` and then awaits `run()`, which
reads incoming messages, sends queued ones and sends a pong frame every
second until the connection is gone. Incoming data fires `message`; a
failed read or write fires `disconnect` and `error` and removes the
connection from the pool.

### Per connection (`Websocket`)

A `Websocket` joins the pool when it is created, under a random UUID or the
one passed as `uuid=`; a UUID already in the pool raises
`UUIDDuplicationError`.

- `emit(message, message_type=MessageType.TEXT)` queues a message for this client
- `emit_to(uuid, message, message_type)` sends to another connection; an
  unknown UUID raises `InvalidConnectionError`, and a connection that is no
  longer alive also fires `error` on the sender before raising
- `emit_to_list(uuids, message, message_type)` sends to each listed
  connection, firing `error` for those that fail
- `broadcast(message, except_self=False, message_type)` sends to every
  pooled connection
- `fire(event, data=None)` fires an event on this connection
- `set_attribute`, `get_attribute` (returns `None` when unset),
  `get_int_attribute` (0 when unset) and `get_string_attribute` (`""` when
  unset) keep per-connection values; the typed getters raise `TypeError`
  for a value of the wrong type
- `set_uuid(uuid)` renames the connection in the pool, raising
  `UUIDDuplicationError` if the UUID is taken
- `close()` queues a normal-closure close frame with reason
  `"Connection closed"` and fires `close`
- `uuid` and `is_alive` are read-only properties

### Across the pool

Module-level `emit_to`, `emit_to_list`, `broadcast` and `fire` work on the
whole pool without a sending connection; `emit_to` raises
`InvalidConnectionError` for an unknown or dead connection, and
`emit_to_list` skips such connections silently. `reset()` empties the pool
and removes every listener.

The timing constants `PONG_TIMEOUT`, `RETRY_SEND_TIMEOUT`, `MAX_SEND_RETRY`
and `READ_TIMEOUT` are module attributes.

## Swagger UI middleware

`swagger.new(app=None, config=None)` wraps an ASGI application. Two HTTP
paths are answered by the middleware and every other request is passed to
`app` (or answered with 404 when there is none):

- `<base_path>/<path>` (default `/docs`) — the Swagger UI page, built by
  `render_ui(config, spec_url)`
- `<base_path>/<file_path>` (default `/swagger.json`) — the specification,
  served as `application/json` for `.json` and `application/yaml` for
  `.yaml`/`.yml`, with `Cache-Control: public, max-age=<cache_age>`; other
  extensions get 404

```python
from webcontrib import swagger

app = swagger.new(api_app, swagger.Config(base_path="/api/v1", file_path="openapi.yaml"))
# UI at /api/v1/docs, spec at /api/v1/openapi.yaml
```

`Config` fields: `next` (returning `True` passes the request on),
`base_path` (`/`), `file_path` (`./swagger.json`), `file_content` (taken
instead of reading `file_path` when given), `path` (`docs`), `title`
(`Fiber API documentation`), `cache_age` (3600), and the asset URLs
`swagger_url`, `swagger_preset_url`, `swagger_styles_url`, `favicon32`,
`favicon16`, which default to the `swagger-ui-dist` files on unpkg. Empty
values fall back to these defaults.

The specification is loaded when `new` is called: a missing file raises
`FileNotFoundError`, and content that is neither a JSON object nor a YAML
mapping raises `InvalidSpecError`.

## Container services

`webcontrib.containers` gives a function that starts a container a
lifecycle inside an application configuration.

```python
from webcontrib import containers

cfg = containers.AppConfig()
redis = containers.add_service(
    cfg, containers.new_module_config("redis", "redis:alpine", run_redis)
)
redis.key            # 'redis (using testcontainers)'
redis.start()
redis.state()        # e.g. 'running'
redis.terminate()
```

- `new_module_config(service_key, image, run, *options)` returns a `Config`.
  `run` is called as `run(image, *options)` and must return an object with
  `state()` (returning something with a `status` attribute, or `None`) and
  `terminate()`.
- `add_service(cfg, container_config)` adds a `ContainerService` to
  `cfg.services` of an `AppConfig` and returns it. It raises
  `NilConfigError`, `EmptyServiceKeyError`, `ImageEmptyError` or
  `RunNilError` for a missing config, key, image or run function.
- `ContainerService.start()` calls `run` with the configured options plus a
  `WithLabels({"org.testcontainers.framework": "webcontrib"})` option; the
  configured options themselves are left unchanged. Starting twice, or a
  failing `run`, raises `ContainerError`.
- `ContainerService.state()` returns the container's status.
- `ContainerService.terminate()` stops the container; afterwards
  `container` is `None` and the service can be started again.
- `key`, `image`, `options` and `container` are read-only properties, and
  `str(service)` is the key.

`state()` and `terminate()` raise `ContainerNotRunningError` when the
service is not started. All these errors derive from `ContainerError`.

`build_key(key)` appends the `" (using testcontainers)"` suffix
(`SERVICE_SUFFIX`) once, leaving keys that already end with it unchanged.

## What this package does not do

- It is not a server. The WebSocket and Swagger pieces are ASGI
  applications; run them under an ASGI server of your choice.
- It does not talk to a container engine. You supply the `run` function
  that starts a container; `webcontrib.containers` only manages its
  lifecycle and registration.