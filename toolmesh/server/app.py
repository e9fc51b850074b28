"""
HTTP binding for the protocol server.

This module builds the FastAPI application that exposes a ``ProtocolServer``
to remote protocol clients:

- ``POST /rpc``: request channel. Requests get their reply in the response
  body; notifications and responses are accepted with ``202``.
  ``initialize`` without an ``Mcp-Session-Id`` header is answered with a new
  session id; later requests carrying it share one connection scope.
- ``GET /events``: server-push channel (Server-Sent Events). The first event is
  ``endpoint`` carrying the request-channel path; server notifications follow
  as ``message`` events.
- ``GET /health``: liveness and capability count.
"""

import sys
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional
from uuid import uuid4

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from sse_starlette.sse import EventSourceResponse

from ..core.config import ToolmeshSettings
from ..core.logging_config import get_logger, setup_logging
from ..errors import ProtocolError
from ..factory import RuntimeContext, build_context
from ..protocol.messages import INITIALIZE, ProtocolMessage
from ..protocol.transport.http import SESSION_HEADER
from ..service import ToolService
from .dispatcher import ProtocolServer

logger = get_logger(__name__)

RPC_PATH = "/rpc"
EVENTS_PATH = "/events"


def _is_initialize(body: bytes) -> bool:
    try:
        message = ProtocolMessage.decode(body)
    except ProtocolError:
        return False
    return message.is_request and message.method == INITIALIZE


async def event_stream(
    server: ProtocolServer, request: Optional[Request] = None, *, endpoint: str = RPC_PATH
) -> AsyncIterator[Dict[str, Any]]:
    """
    Yield SSE events for one push-channel subscriber.

    The subscription is dropped when the client disconnects or the server
    closes its subscribers.
    """
    channel = server.subscribe()
    try:
        yield {"event": "endpoint", "data": endpoint}
        async for message in channel:
            if request is not None and await request.is_disconnected():
                logger.info("Event stream client disconnected")
                break
            yield {"event": "message", "data": message.encode().decode("utf-8")}
    finally:
        server.unsubscribe(channel)


def create_app(
    server: ProtocolServer,
    *,
    context: Optional[RuntimeContext] = None,
    title: str = "toolmesh",
) -> FastAPI:
    """
    Build the FastAPI app serving ``server``.

    Args:
        server: The dispatcher behind every route.
        context: Runtime context the app owns. Its configured servers are
            registered on startup and it is closed on shutdown.
        title: OpenAPI title.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting toolmesh protocol server...")
        if context is not None:
            await ToolService(context).start()
        yield
        logger.info("Shutting down toolmesh protocol server...")
        server.close()
        if context is not None:
            await context.aclose()

    app = FastAPI(
        title=title,
        description="Capability execution over the JSON message protocol (request channel + SSE push channel).",
        version="0.1.0",
        lifespan=lifespan,
    )

    @app.post(RPC_PATH, summary="Protocol request channel")
    async def rpc(request: Request) -> Response:
        """
        Handle one protocol message.

        Returns the JSON reply for requests, ``202`` for notifications and
        responses, and ``400`` with a JSON-RPC error for undecodable bodies.
        """
        body = await request.body()
        session = request.headers.get(SESSION_HEADER)
        headers: Dict[str, str] = {}
        if session is None and _is_initialize(body):
            session = uuid4().hex
            headers[SESSION_HEADER] = session
        reply = await server.handle_raw(body, connection=session)
        if reply is None:
            return Response(status_code=202)
        status = 400 if reply.id is None and reply.error is not None else 200
        return JSONResponse(reply.to_wire(), status_code=status, headers=headers)

    @app.get(EVENTS_PATH, summary="Protocol push channel")
    async def events(request: Request):
        """
        Subscribe to server notifications via Server-Sent Events (SSE).

        The stream starts with an ``endpoint`` event naming the request channel.
        """
        return EventSourceResponse(event_stream(server, request))

    @app.get("/health", summary="Health Check")
    async def health_check():
        """Return a status indicator and the number of registered capabilities."""
        return {"status": "ok", "capabilities": len(server.registry)}

    return app


def build_app(settings: Optional[ToolmeshSettings] = None) -> FastAPI:
    """Build an app serving the builtin and configured-server capabilities; the app owns its runtime context."""
    settings = settings or ToolmeshSettings()
    context = build_context(settings, include_builtins=True)
    server = ProtocolServer(context.engine, context.registry)
    return create_app(server, context=context)


def main() -> None:
    settings = ToolmeshSettings()
    setup_logging(settings.log_level, settings.log_format, settings.log_file_dir, stream=sys.stderr)
    logger.info("Serving %s on http://%s:%d", settings.workspace_root, settings.http_host, settings.http_port)
    uvicorn.run(build_app(settings), host=settings.http_host, port=settings.http_port, log_config=None)


if __name__ == "__main__":
    main()
