"""Request/response envelopes and the aiohttp host runtime.

Key classes:
    Request: Inbound envelope handed to the dispatcher.
    Response: The ``{status, body}`` envelope returned for every request.

Key functions:
    create_app: Wrap a request handler in an aiohttp Application.
    serve: Run the application until interrupted.
"""

from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Optional

import structlog
from aiohttp import web

logger = structlog.get_logger("hookwire.dispatch")

DEFAULT_PORT = 8072
HEALTH_PATH = "/health"
JSON_CONTENT_TYPE = "application/json"


@dataclass
class Request:
    """Transport-independent view of an inbound HTTP request."""
    body: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    method: str = "POST"
    path: str = "/"
    query: str = ""


@dataclass
class Response:
    """Envelope returned to the host runtime.

    ``status`` is left as None by handlers that accept the default; the
    dispatcher fills it in before returning.
    """
    status: Optional[int] = None
    body: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)


RequestHandler = Callable[[Request], Awaitable[Optional[Response]]]


async def _to_request(http_request: web.Request) -> Request:
    body = await http_request.text() if http_request.can_read_body else None
    return Request(
        body=body,
        headers={key.lower(): value for key, value in http_request.headers.items()},
        method=http_request.method,
        path=http_request.path,
        query=http_request.query_string,
    )


def create_app(handler: RequestHandler) -> web.Application:
    """Build an aiohttp Application forwarding every request to ``handler``.

    ``GET /health`` answers 200 without touching the handler. A handler
    returning None is answered with a bare 200. Bodies are sent as JSON
    unless the handler set its own Content-Type.
    """

    async def health(_: web.Request) -> web.Response:
        return web.Response(status=200)

    async def dispatch(http_request: web.Request) -> web.Response:
        request = await _to_request(http_request)
        response = await handler(request)
        if response is None:
            return web.Response(status=200)
        headers = response.headers or {}
        content_type = None
        if response.body is not None and not any(k.lower() == "content-type" for k in headers):
            content_type = JSON_CONTENT_TYPE
        return web.Response(
            status=response.status or 200,
            text=response.body,
            content_type=content_type,
            headers=headers or None,
        )

    app = web.Application()
    app.router.add_get(HEALTH_PATH, health)
    app.router.add_route("*", "/{tail:.*}", dispatch)
    return app


def serve(handler: RequestHandler, host: str = "0.0.0.0", port: int = DEFAULT_PORT) -> None:
    """Serve ``handler`` over HTTP (blocking)."""
    logger.info("server_listening", host=host, port=port)
    web.run_app(create_app(handler), host=host, port=port, print=None)
