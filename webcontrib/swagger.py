"""ASGI middleware that serves a Swagger UI page and the API specification."""

from __future__ import annotations

import html
import json
import os
import posixpath
import string
from dataclasses import dataclass, replace
from typing import Any, Callable

import yaml

from webcontrib.websocket import ASGIApp, Receive, Scope, Send

DEFAULT_SWAGGER_URL = "https://unpkg.com/swagger-ui-dist/swagger-ui-bundle.js"
DEFAULT_SWAGGER_PRESET_URL = (
    "https://unpkg.com/swagger-ui-dist/swagger-ui-standalone-preset.js"
)
DEFAULT_SWAGGER_STYLES_URL = "https://unpkg.com/swagger-ui-dist/swagger-ui.css"
DEFAULT_FAVICON_32 = "https://unpkg.com/swagger-ui-dist/favicon-32x32.png"
DEFAULT_FAVICON_16 = "https://unpkg.com/swagger-ui-dist/favicon-16x16.png"

_UI_TEMPLATE = string.Template(
    """<!DOCTYPE html>
<html lang="en">
  <head>
    <meta charset="UTF-8">
    <title>$title</title>
    <link rel="stylesheet" type="text/css" href="$styles_url" >
    <link rel="icon" type="image/png" href="$favicon32" sizes="32x32" />
    <link rel="icon" type="image/png" href="$favicon16" sizes="16x16" />
    <style>
      html { box-sizing: border-box; overflow-y: scroll; }
      *, *:before, *:after { box-sizing: inherit; }
      body { margin: 0; background: #fafafa; }
    </style>
  </head>
  <body>
    <div id="swagger-ui"></div>
    <script src="$bundle_url"> </script>
    <script src="$preset_url"> </script>
    <script>
    window.onload = function() {
      const ui = SwaggerUIBundle({
        url: $spec_url,
        dom_id: '#swagger-ui',
        deepLinking: true,
        presets: [
          SwaggerUIBundle.presets.apis,
          SwaggerUIStandalonePreset
        ],
        plugins: [
          SwaggerUIBundle.plugins.DownloadUrl
        ],
        layout: "StandaloneLayout"
      })
      window.ui = ui
    }
    </script>
  </body>
</html>
"""
)


class InvalidSpecError(ValueError):
    """The specification is neither a JSON nor a YAML document."""


@dataclass
class Config:
    """Options for the Swagger middleware; empty values fall back to defaults."""

    # Returning True passes the request on without handling it.
    next: Callable[[Scope], bool] | None = None
    base_path: str = "/"
    file_path: str = "./swagger.json"
    # When given, the specification is taken from here and file_path is not read.
    file_content: bytes = b""
    path: str = "docs"
    title: str = "Fiber API documentation"
    cache_age: int = 3600
    swagger_url: str = ""
    swagger_preset_url: str = ""
    swagger_styles_url: str = ""
    favicon32: str = ""
    favicon16: str = ""


_DEFAULTS = Config()


def _with_defaults(cfg: Config) -> Config:
    return replace(
        cfg,
        base_path=cfg.base_path or _DEFAULTS.base_path,
        file_path=cfg.file_path or _DEFAULTS.file_path,
        path=cfg.path or _DEFAULTS.path,
        title=cfg.title or _DEFAULTS.title,
        cache_age=cfg.cache_age or _DEFAULTS.cache_age,
    )


def _clean(path: str) -> str:
    if not path:
        return "."
    cleaned = posixpath.normpath(path)
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    return cleaned


def _join(*parts: str) -> str:
    joined = "/".join(part for part in parts if part)
    return _clean(joined) if joined else ""


def _load_spec(cfg: Config) -> bytes:
    if cfg.file_content:
        raw = bytes(cfg.file_content)
    else:
        if not os.path.exists(cfg.file_path):
            raise FileNotFoundError(f"{cfg.file_path} file does not exist")
        with open(cfg.file_path, "rb") as handle:
            raw = handle.read()

    if _is_json_object(raw) or _is_yaml_mapping(raw):
        return raw
    if cfg.file_content:
        raise InvalidSpecError(
            f"Invalid Swagger spec: {raw.decode('utf-8', errors='replace')}"
        )
    raise InvalidSpecError(f"Invalid Swagger spec file: {cfg.file_path}")


def _is_json_object(raw: bytes) -> bool:
    try:
        return isinstance(json.loads(raw), dict)
    except ValueError:
        return False


def _is_yaml_mapping(raw: bytes) -> bool:
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError:
        return False
    return data is None or isinstance(data, dict)


def render_ui(config: Config, spec_url: str) -> str:
    """The HTML page that loads Swagger UI for the given specification URL."""
    script_url = json.dumps(spec_url).replace("</", "<\\/")
    return _UI_TEMPLATE.substitute(
        title=html.escape(config.title or _DEFAULTS.title),
        styles_url=html.escape(config.swagger_styles_url or DEFAULT_SWAGGER_STYLES_URL),
        favicon32=html.escape(config.favicon32 or DEFAULT_FAVICON_32),
        favicon16=html.escape(config.favicon16 or DEFAULT_FAVICON_16),
        bundle_url=html.escape(config.swagger_url or DEFAULT_SWAGGER_URL),
        preset_url=html.escape(config.swagger_preset_url or DEFAULT_SWAGGER_PRESET_URL),
        spec_url=script_url,
    )


async def _respond(
    send: Send,
    status: int,
    content_type: str,
    body: bytes,
    extra_headers: tuple[tuple[bytes, bytes], ...] = (),
) -> None:
    headers = [
        (b"content-type", content_type.encode("latin-1")),
        (b"content-length", str(len(body)).encode("latin-1")),
        *extra_headers,
    ]
    await send({"type": "http.response.start", "status": status, "headers": headers})
    await send({"type": "http.response.body", "body": body})


async def _not_found(send: Send) -> None:
    await _respond(send, 404, "text/plain; charset=utf-8", b"404 page not found\n")


def new(app: ASGIApp | None = None, config: Config | None = None) -> ASGIApp:
    """Wrap app so that the UI page and the specification are served in front of it.

    Raises FileNotFoundError when the specification file is missing and
    InvalidSpecError when it is neither JSON nor YAML.
    """
    cfg = _with_defaults(config) if config is not None else Config()
    raw_spec = _load_spec(cfg)

    spec_url = _join(cfg.base_path, cfg.file_path)
    ui_path = _join(cfg.base_path, cfg.path)
    page = render_ui(cfg, spec_url).encode("utf-8")
    cache_header = (b"cache-control", f"public, max-age={cfg.cache_age}".encode())

    if spec_url.endswith((".yaml", ".yml")):
        spec_type: str | None = "application/yaml"
    elif spec_url.endswith(".json"):
        spec_type = "application/json"
    else:
        spec_type = None

    async def pass_on(scope: Scope, receive: Receive, send: Send) -> None:
        if app is not None:
            await app(scope, receive, send)
        elif scope.get("type") == "http":
            await _not_found(send)

    async def middleware(scope: Scope, receive: Receive, send: Send) -> None:
        if scope.get("type") != "http":
            await pass_on(scope, receive, send)
            return
        if cfg.next is not None and cfg.next(scope):
            await pass_on(scope, receive, send)
            return

        request_path = scope.get("path", "")
        if request_path == ui_path:
            await _respond(send, 200, "text/html; charset=utf-8", page)
        elif request_path == spec_url:
            if spec_type is None:
                await _not_found(send)
            else:
                await _respond(send, 200, spec_type, raw_spec, (cache_header,))
        else:
            await pass_on(scope, receive, send)

    return middleware


def _config_fields() -> dict[str, Any]:
    return {name: getattr(_DEFAULTS, name) for name in _DEFAULTS.__dataclass_fields__}