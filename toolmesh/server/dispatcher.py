"""Protocol server dispatcher.

``ProtocolServer`` answers the JSON message protocol on behalf of a local
``CapabilityRegistry``. It is transport-agnostic: the HTTP app and the stdio
loop both hand it decoded ``ProtocolMessage`` values and write back whatever
it returns.

Supported methods:

- ``initialize`` / ``ping``
- ``tools/list``: paginated with an opaque ``cursor``/``nextCursor``
- ``tools/call``: goes through the ``ExecutionEngine``, so validation,
  confirmation, checkpoints and timeouts apply exactly as for local callers
- ``notifications/cancelled``: cancels the matching in-flight call

Request ids are only unique per client, so in-flight calls are tracked by
``(connection, request id)``. Bindings pass a ``connection`` key that
identifies the peer (one per stdio stream, the session id over HTTP).

Server notifications (``notifications/tools/list_changed``) are published to
every subscriber channel.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Set, Tuple, Union
from uuid import uuid4

from mcp.types import CallToolResult, Implementation, TextContent

from ..capabilities.base import CapabilityCall, CapabilityResult, PermissionClass
from ..capabilities.registry import CapabilityRegistry
from ..errors import ProtocolError, ToolmeshError
from ..protocol.messages import (
    INITIALIZE,
    INTERNAL_ERROR,
    INVALID_PARAMS,
    METHOD_NOT_FOUND,
    NOTIFY_CANCELLED,
    NOTIFY_INITIALIZED,
    NOTIFY_TOOLS_CHANGED,
    PARSE_ERROR,
    PING,
    PROTOCOL_VERSION,
    TOOLS_CALL,
    TOOLS_LIST,
    ProtocolMessage,
)
from ..protocol.transport.base import MessageChannel
from ..runtime.engine import ExecutionEngine
from ..runtime.results import error_object_for, error_object_for_result
from ..schemas.definitions import CapabilityDefinition

logger = logging.getLogger(__name__)

SERVER_NAME = "toolmesh"
SERVER_VERSION = "0.1.0"

RequestId = Union[int, str]
CallKey = Tuple[Optional[str], RequestId]


def call_tool_result(result: CapabilityResult) -> Dict[str, Any]:
    """Render a successful ``CapabilityResult`` as a ``CallToolResult`` payload."""
    output = result.output
    structured: Optional[Dict[str, Any]] = None
    if output is None:
        content: List[TextContent] = []
    elif isinstance(output, str):
        content = [TextContent(type="text", text=output)]
    else:
        if isinstance(output, dict):
            structured = output
        content = [TextContent(type="text", text=json.dumps(output, default=str))]
    payload = CallToolResult(content=content, structuredContent=structured, isError=False)
    return payload.model_dump(mode="json", by_alias=True, exclude_none=True)


class ProtocolServer:
    """Answer protocol messages from the capabilities of one registry."""

    def __init__(
        self,
        engine: ExecutionEngine,
        registry: Optional[CapabilityRegistry] = None,
        *,
        trust_level: Optional[PermissionClass] = None,
        page_size: int = 100,
        server_info: Optional[Implementation] = None,
    ) -> None:
        """
        Args:
            engine: Runs ``tools/call`` requests.
            registry: Source of ``tools/list``; defaults to the engine's registry.
            trust_level: Trust granted to remote callers (engine default if None).
            page_size: Tools per ``tools/list`` page.
            server_info: Name/version returned from ``initialize``.
        """
        if page_size < 1:
            raise ValueError("page_size must be >= 1")
        self._engine = engine
        self._registry = registry or engine.registry
        self._trust_level = trust_level
        self._page_size = page_size
        self._server_info = server_info or Implementation(name=SERVER_NAME, version=SERVER_VERSION)
        self._calls: Dict[CallKey, str] = {}
        self._subscribers: Set[MessageChannel[ProtocolMessage]] = set()

    @property
    def registry(self) -> CapabilityRegistry:
        return self._registry

    @property
    def engine(self) -> ExecutionEngine:
        return self._engine

    # ---------------------------------------------------------------
    # Server push
    # ---------------------------------------------------------------

    def subscribe(self) -> MessageChannel[ProtocolMessage]:
        channel: MessageChannel[ProtocolMessage] = MessageChannel("server notifications")
        self._subscribers.add(channel)
        return channel

    def unsubscribe(self, channel: MessageChannel[ProtocolMessage]) -> None:
        self._subscribers.discard(channel)
        channel.close()

    def publish(self, message: ProtocolMessage) -> int:
        """Deliver a notification to every open subscriber; returns how many got it."""
        delivered = 0
        for channel in list(self._subscribers):
            if channel.put(message):
                delivered += 1
            else:
                self._subscribers.discard(channel)
        return delivered

    def notify_tools_changed(self) -> int:
        return self.publish(ProtocolMessage.notification(NOTIFY_TOOLS_CHANGED))

    def close(self) -> None:
        for channel in list(self._subscribers):
            self.unsubscribe(channel)

    # ---------------------------------------------------------------
    # Dispatch
    # ---------------------------------------------------------------

    async def handle_raw(
        self, raw: Union[bytes, str], *, connection: Optional[str] = None
    ) -> Optional[ProtocolMessage]:
        """Decode and handle one wire message; undecodable input yields an error reply."""
        try:
            message = ProtocolMessage.decode(raw)
        except ProtocolError as e:
            logger.debug("Rejecting malformed message: %s", e)
            return ProtocolMessage.error_response(None, e.code or PARSE_ERROR, e.message)
        return await self.handle(message, connection=connection)

    async def handle(self, message: ProtocolMessage, *, connection: Optional[str] = None) -> Optional[ProtocolMessage]:
        """
        Handle one decoded message.

        Args:
            message: The decoded message.
            connection: Identifies the peer that sent it; request ids are
                scoped to it.

        Returns:
            The reply for a request, or None for notifications and responses.
        """
        if message.is_notification:
            self._on_notification(message, connection)
            return None
        if not message.is_request:
            logger.debug("Ignoring unsolicited response id=%r", message.id)
            return None

        assert message.id is not None
        try:
            result = await self._dispatch(message.method or "", message.params, (connection, message.id))
        except ProtocolError as e:
            return ProtocolMessage.error_response(message.id, e.code or INTERNAL_ERROR, e.message, e.details)
        except ToolmeshError as e:
            err = error_object_for(e.kind, e.message, output=e.output)
            return ProtocolMessage.error_response(message.id, err.code, err.message, err.data)
        except Exception as e:
            logger.exception("Unhandled error while serving %s", message.method)
            return ProtocolMessage.error_response(message.id, INTERNAL_ERROR, f"internal error: {e}")
        if isinstance(result, CapabilityResult):
            err = error_object_for_result(result)
            return ProtocolMessage.error_response(message.id, err.code, err.message, err.data)
        return ProtocolMessage.response(message.id, result)

    async def _dispatch(self, method: str, params: Any, key: CallKey) -> Any:
        params = params if isinstance(params, dict) else {}
        if method == INITIALIZE:
            return self._initialize(params)
        if method == PING:
            return {}
        if method == TOOLS_LIST:
            return self._list_tools(params)
        if method == TOOLS_CALL:
            return await self._call_tool(params, key=key)
        raise ProtocolError(f"method not found: {method}", code=METHOD_NOT_FOUND)

    def _initialize(self, params: Dict[str, Any]) -> Dict[str, Any]:
        client = params.get("clientInfo") or {}
        logger.info("Client '%s' %s initializing", client.get("name", "?"), client.get("version", ""))
        return {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {"tools": {"listChanged": True}},
            "serverInfo": self._server_info.model_dump(exclude_none=True),
        }

    def _list_tools(self, params: Dict[str, Any]) -> Dict[str, Any]:
        descriptors = sorted(self._registry.list(), key=lambda d: d.name)
        cursor = params.get("cursor")
        offset = 0
        if cursor is not None:
            if not isinstance(cursor, str) or not cursor.isdigit() or int(cursor) > len(descriptors):
                raise ProtocolError(f"invalid cursor {cursor!r}", code=INVALID_PARAMS)
            offset = int(cursor)
        page = descriptors[offset : offset + self._page_size]
        result: Dict[str, Any] = {"tools": [CapabilityDefinition.from_descriptor(d).to_wire() for d in page]}
        if offset + self._page_size < len(descriptors):
            result["nextCursor"] = str(offset + self._page_size)
        return result

    async def _call_tool(self, params: Dict[str, Any], *, key: CallKey) -> Any:
        name = params.get("name")
        arguments = params.get("arguments") or {}
        if not isinstance(name, str) or not name:
            raise ProtocolError("tools/call requires a 'name'", code=INVALID_PARAMS)
        if not isinstance(arguments, dict):
            raise ProtocolError("tools/call 'arguments' must be an object", code=INVALID_PARAMS)

        call = CapabilityCall(id=str(uuid4()), capability_name=name, arguments=arguments)
        self._calls[key] = call.id
        try:
            result = await self._engine.execute(call, trust_level=self._trust_level)
        finally:
            if self._calls.get(key) == call.id:
                del self._calls[key]
        if not result.success:
            return result
        return call_tool_result(result)

    def _on_notification(self, message: ProtocolMessage, connection: Optional[str]) -> None:
        if message.method == NOTIFY_CANCELLED:
            params = message.params if isinstance(message.params, dict) else {}
            request_id = params.get("requestId")
            call_id = self._calls.get((connection, request_id)) if isinstance(request_id, (int, str)) else None
            if call_id is None:
                logger.debug("Cancellation for unknown request %r on %s", request_id, connection)
                return
            self._engine.cancel(call_id)
        elif message.method == NOTIFY_INITIALIZED:
            logger.debug("Client finished initialization")
        else:
            logger.debug("Ignoring notification %s", message.method)
