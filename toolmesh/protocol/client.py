"""Protocol client.

``ProtocolClient`` speaks the JSON message protocol to one remote server over
one transport at a time and owns that server's ``ServerConnection``.

Lifecycle
---------

``initialize()``: ``disconnected -> connecting -> initializing -> connected``.
The client sends ``initialize``, then ``notifications/initialized``, pages
through ``tools/list`` and, if it owns discovery for the server, syncs the
registry with the advertised tools (tagged with the server's identity).
Connect failures are retried with the retry policy.

Transport loss while ``connected`` moves to ``reconnecting``: every pending
request is rejected with ``NetworkError`` and the connection is re-established
with exponential backoff. Success re-runs discovery and diffs the registry;
exhaustion settles in ``disconnected`` and removes the server's capabilities.

Requests
--------

``call(method, params)`` allocates a fresh token, registers a
``PendingRequest`` with a deadline and sends. Whichever comes first settles the
call: the matching response, the deadline (``CapabilityTimeoutError``) or
caller cancellation (``notifications/cancelled`` is sent best-effort). Late
responses are dropped and logged.

``NetworkError`` is retried for idempotent methods, and for every method when
the request never reached the wire. An ``AuthenticationError`` triggers one
credential refresh and a single retry.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import httpx
from mcp.types import Implementation
from pydantic import ValidationError

from ..capabilities.base import Capability, CapabilityDescriptor
from ..capabilities.registry import CapabilityRegistry
from ..capabilities.remote import RemoteCapability, SingleClientLeaser
from ..errors import AuthenticationError, CapabilityTimeoutError, NetworkError, ProtocolError, ToolmeshError
from ..runtime.retry import RetryPolicy
from ..schemas.config import ServerConfig
from ..schemas.definitions import CapabilityDefinition
from .auth import AuthHandle, TokenProvider, auth_from_config
from .connection import ConnectionState, ServerConnection
from .messages import (
    INITIALIZE,
    METHOD_NOT_FOUND,
    NOTIFY_CANCELLED,
    NOTIFY_INITIALIZED,
    NOTIFY_TOOLS_CHANGED,
    PING,
    PROTOCOL_VERSION,
    TOOLS_CALL,
    TOOLS_LIST,
    ProtocolMessage,
)
from .transport.base import MessageChannel, Transport
from .transport.factory import create_transport

logger = logging.getLogger(__name__)

T = TypeVar("T")

TransportFactory = Callable[[], Transport]
CapabilityFactory = Callable[[CapabilityDescriptor, str], Capability]

CLIENT_NAME = "toolmesh"
CLIENT_VERSION = "0.1.0"

_IDEMPOTENT_METHODS = frozenset({INITIALIZE, TOOLS_LIST, PING})
_MAX_DISCOVERY_PAGES = 1000


class ConnectionUnavailableError(NetworkError):
    """The request was not sent because the connection is not usable."""


class ProtocolClient:
    """One protocol session with one remote server."""

    def __init__(
        self,
        config: ServerConfig,
        transport_factory: TransportFactory,
        *,
        registry: Optional[CapabilityRegistry] = None,
        owns_discovery: bool = True,
        auth: Optional[AuthHandle] = None,
        retry_policy: Optional[RetryPolicy] = None,
        capability_factory: Optional[CapabilityFactory] = None,
        client_info: Optional[Implementation] = None,
    ) -> None:
        """
        Initialize the client. Nothing is connected until ``initialize()``.

        Args:
            config: Server configuration (identity, filters, deadlines).
            transport_factory: Builds a fresh transport for each (re)connect.
            registry: Registry to keep in sync with the server's tools.
            owns_discovery: Only the owning client of a server writes to the
                registry; pooled siblings skip it.
            auth: Auth handle shared with the transport, used for one-shot
                re-authentication.
            retry_policy: Backoff for connect, reconnect and request retries.
            capability_factory: Builds registry entries for discovered tools;
                defaults to a ``RemoteCapability`` bound to this client.
            client_info: Name/version sent in ``initialize``.
        """
        self._config = config
        self._transport_factory = transport_factory
        self._registry = registry
        self._owns_discovery = owns_discovery
        self._auth = auth
        self._retry = retry_policy or RetryPolicy(max_attempts=max(1, config.retry_attempts))
        self._capability_factory = capability_factory or self._default_capability
        self._client_info = client_info or Implementation(name=CLIENT_NAME, version=CLIENT_VERSION)
        self._conn = ServerConnection(config.name)
        self._reader: Optional[asyncio.Task] = None
        self._background: set[asyncio.Task] = set()
        self._reconnect_task: Optional[asyncio.Task] = None
        self._closing = False
        self._registered: List[str] = []

    @classmethod
    def from_config(
        cls,
        config: ServerConfig,
        *,
        registry: Optional[CapabilityRegistry] = None,
        owns_discovery: bool = True,
        http_client: Optional[httpx.AsyncClient] = None,
        token_provider: Optional[TokenProvider] = None,
        retry_policy: Optional[RetryPolicy] = None,
        capability_factory: Optional[CapabilityFactory] = None,
    ) -> "ProtocolClient":
        """Build a client whose transport binding follows ``config.transport``."""
        auth = auth_from_config(config.auth, token_provider=token_provider)
        policy = retry_policy or RetryPolicy(max_attempts=max(1, config.retry_attempts))

        def _factory() -> Transport:
            return create_transport(config, http_client=http_client, auth=auth, retry_policy=policy)

        return cls(
            config,
            _factory,
            registry=registry,
            owns_discovery=owns_discovery,
            auth=auth,
            retry_policy=policy,
            capability_factory=capability_factory,
        )

    # ---------------------------------------------------------------
    # Introspection
    # ---------------------------------------------------------------

    @property
    def server_id(self) -> str:
        return self._config.name

    @property
    def config(self) -> ServerConfig:
        return self._config

    @property
    def connection(self) -> ServerConnection:
        return self._conn

    @property
    def state(self) -> ConnectionState:
        return self._conn.state

    @property
    def is_connected(self) -> bool:
        return self._conn.state == ConnectionState.connected

    @property
    def owns_discovery(self) -> bool:
        return self._owns_discovery

    @property
    def registered_names(self) -> List[str]:
        return list(self._registered)

    def capability_definitions(self) -> List[CapabilityDefinition]:
        return list(self._conn.capabilities.values())

    def notifications(self) -> MessageChannel[ProtocolMessage]:
        """Channel of server notifications; it closes when the client closes."""
        return self._conn.notifications

    # ---------------------------------------------------------------
    # Lifecycle
    # ---------------------------------------------------------------

    async def initialize(self) -> List[str]:
        """
        Connect, handshake and discover capabilities.

        Returns:
            Registry names of the discovered capabilities.

        Raises:
            NetworkError: If the server cannot be reached within the retry budget.
            AuthenticationError: If credentials are rejected after one refresh.
            ProtocolError: If the server answers the handshake incorrectly.
        """
        if self.is_connected:
            return self.registered_names
        self._closing = False
        await self._with_reauth(lambda: self._retry.run(self._connect_once, retry_on=(NetworkError,)))
        self._sync_registry()
        return self.registered_names

    async def _connect_once(self) -> None:
        self._conn.transition(ConnectionState.connecting)
        try:
            await self._establish()
        except BaseException:
            await self._close_transport()
            if self._conn.can_transition(ConnectionState.disconnected):
                self._conn.transition(ConnectionState.disconnected)
            raise

    async def _establish(self) -> None:
        """Open a transport, handshake and discover; ends in ``connected``."""
        await self._open_transport()
        self._conn.transition(ConnectionState.initializing)
        await self._handshake()
        await self._discover()
        self._conn.transition(ConnectionState.connected)

    async def _open_transport(self) -> None:
        transport = self._transport_factory()
        self._conn.attach(transport)
        try:
            await transport.connect()
        except BaseException:
            self._conn.detach()
            raise
        self._reader = asyncio.create_task(self._read_loop(transport), name=f"{self.server_id}-reader")

    async def _close_transport(self) -> None:
        transport = self._conn.detach()
        reader, self._reader = self._reader, None
        if transport is not None:
            try:
                await transport.close()
            except Exception as e:
                logger.debug("Server '%s': error while closing transport: %s", self.server_id, e)
        if reader is not None and reader is not asyncio.current_task() and not reader.done():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass

    async def _handshake(self) -> None:
        result = await self._request(
            INITIALIZE,
            {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": self._client_info.model_dump(exclude_none=True),
            },
        )
        if not isinstance(result, dict):
            raise ProtocolError(f"server '{self.server_id}' sent an invalid initialize result", details=result)
        self._conn.server_info = dict(result.get("serverInfo") or {})
        self._conn.server_capabilities = dict(result.get("capabilities") or {})
        version = result.get("protocolVersion")
        if version and version != PROTOCOL_VERSION:
            logger.info("Server '%s' negotiated protocol version %s", self.server_id, version)
        await self._notify(NOTIFY_INITIALIZED)

    async def _discover(self) -> List[CapabilityDefinition]:
        definitions: List[CapabilityDefinition] = []
        cursor: Optional[str] = None
        seen: set[str] = set()
        for _page in range(_MAX_DISCOVERY_PAGES):
            result = await self._request(TOOLS_LIST, {"cursor": cursor} if cursor else None)
            tools = result.get("tools") if isinstance(result, dict) else None
            if not isinstance(tools, list):
                raise ProtocolError(f"server '{self.server_id}' sent an invalid tools/list result", details=result)
            for raw in tools:
                try:
                    definitions.append(CapabilityDefinition.model_validate(raw))
                except ValidationError as e:
                    logger.warning("Server '%s' advertised an invalid tool: %s", self.server_id, e.errors()[0].get("msg"))
            cursor = result.get("nextCursor")
            if not cursor:
                break
            if cursor in seen:
                raise ProtocolError(f"server '{self.server_id}' repeated tools/list cursor {cursor!r}")
            seen.add(cursor)
        accepted = [d for d in definitions if self._config.accepts_tool(d.name)]
        self._conn.capabilities = {d.name: d for d in accepted}
        logger.debug("Server '%s' advertises %d tools (%d accepted)", self.server_id, len(definitions), len(accepted))
        return accepted

    def _default_capability(self, descriptor: CapabilityDescriptor, tool_name: str) -> Capability:
        return RemoteCapability(
            descriptor=descriptor,
            leaser=SingleClientLeaser(self),
            server_id=self.server_id,
            tool_name=tool_name,
        )

    def _build_capabilities(self) -> List[Capability]:
        cfg = self._config
        caps: List[Capability] = []
        for definition in self._conn.capabilities.values():
            descriptor = definition.to_descriptor(
                name=cfg.qualified_name(definition.name),
                source=cfg.name,
                default_timeout_ms=cfg.timeout_ms,
                trusted=cfg.trust,
            )
            caps.append(self._capability_factory(descriptor, definition.name))
        return caps

    def _sync_registry(self) -> None:
        caps = self._build_capabilities()
        self._registered = sorted(c.descriptor.name for c in caps)
        if self._registry is None or not self._owns_discovery:
            return
        self._registry.sync_source(self.server_id, caps)

    async def refresh_capabilities(self) -> List[str]:
        """Re-run discovery and apply the diff to the registry."""
        await self._discover()
        self._sync_registry()
        return self.registered_names

    async def close(self) -> None:
        """Disconnect, reject pending requests and drop this server's capabilities."""
        self._closing = True
        tasks = list(self._background)
        if self._reconnect_task is not None:
            tasks.append(self._reconnect_task)
        for task in tasks:
            if task is not asyncio.current_task() and not task.done():
                task.cancel()
        for task in tasks:
            if task is not asyncio.current_task():
                try:
                    await task
                except (asyncio.CancelledError, Exception):
                    pass
        self._reconnect_task = None

        if self._conn.can_transition(ConnectionState.disconnecting):
            self._conn.transition(ConnectionState.disconnecting)
        self._conn.fail_all(NetworkError(f"connection to '{self.server_id}' closed"))
        await self._close_transport()
        if self._conn.can_transition(ConnectionState.disconnected):
            self._conn.transition(ConnectionState.disconnected)
        self._conn.notifications.close()
        self._unregister()

    def _unregister(self) -> None:
        if self._registry is not None and self._owns_discovery:
            self._registry.unregister_source(self.server_id)
        self._registered = []

    # ---------------------------------------------------------------
    # Inbound dispatch
    # ---------------------------------------------------------------

    async def _read_loop(self, transport: Transport) -> None:
        error: Optional[BaseException] = None
        try:
            async for message in transport.inbound:
                self._on_message(message)
        except asyncio.CancelledError:
            raise
        except ToolmeshError as e:
            error = e
        except Exception as e:
            error = NetworkError(f"transport failure: {e}")
        if self._closing or self._conn.transport is not transport:
            return
        self._on_transport_lost(error or NetworkError(f"connection to '{self.server_id}' closed"))

    def _on_message(self, message: ProtocolMessage) -> None:
        if message.is_response:
            self._conn.resolve(message)
        elif message.is_request:
            self._spawn(self._answer_server_request(message))
        elif message.is_notification:
            self._conn.notifications.put(message)
            if message.method == NOTIFY_TOOLS_CHANGED and self.is_connected:
                self._spawn(self._rediscover())

    async def _answer_server_request(self, message: ProtocolMessage) -> None:
        assert message.id is not None
        if message.method == PING:
            reply = ProtocolMessage.response(message.id, {})
        else:
            reply = ProtocolMessage.error_response(message.id, METHOD_NOT_FOUND, f"method not supported: {message.method}")
        transport = self._conn.transport
        if transport is None:
            return
        try:
            await transport.send(reply)
        except ToolmeshError as e:
            logger.debug("Server '%s': failed to answer %s: %s", self.server_id, message.method, e)

    async def _rediscover(self) -> None:
        try:
            await self.refresh_capabilities()
        except ToolmeshError as e:
            logger.warning("Server '%s': rediscovery after list_changed failed: %s", self.server_id, e)

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ---------------------------------------------------------------
    # Reconnect
    # ---------------------------------------------------------------

    def _on_transport_lost(self, error: BaseException) -> None:
        state = self._conn.state
        self._conn.fail_all(NetworkError(f"connection to '{self.server_id}' lost: {error}"))
        if state != ConnectionState.connected:
            return
        self._conn.transition(ConnectionState.reconnecting)
        logger.warning("Server '%s': connection lost (%s); reconnecting", self.server_id, error)
        self._reconnect_task = asyncio.create_task(self._reconnect(), name=f"{self.server_id}-reconnect")

    async def _reconnect(self) -> None:
        try:
            await self._retry.run(
                self._reconnect_once,
                retry_on=(ToolmeshError,),
                should_retry=lambda _e: not self._closing,
                on_retry=self._log_reconnect_retry,
            )
        except ToolmeshError as e:
            if self._closing:
                return
            logger.warning("Server '%s': giving up after %d reconnect attempts: %s", self.server_id, self._retry.max_attempts, e)
            await self._close_transport()
            if self._conn.can_transition(ConnectionState.disconnected):
                self._conn.transition(ConnectionState.disconnected)
            self._unregister()
            return
        logger.info("Server '%s': reconnected", self.server_id)
        self._sync_registry()

    async def _reconnect_once(self) -> None:
        await self._close_transport()
        try:
            await self._establish()
        except BaseException:
            await self._close_transport()
            if self._conn.state == ConnectionState.initializing:
                self._conn.transition(ConnectionState.reconnecting)
            raise

    async def _log_reconnect_retry(self, attempt: int, error: BaseException, delay: float) -> None:
        logger.warning(
            "Server '%s': reconnect attempt %d/%d failed (%s); next in %.2fs",
            self.server_id,
            attempt,
            self._retry.max_attempts,
            error,
            delay,
        )

    # ---------------------------------------------------------------
    # Requests
    # ---------------------------------------------------------------

    async def call(self, method: str, params: Optional[Dict[str, Any]] = None, *, timeout: Optional[float] = None) -> Any:
        """
        Send a request and return its ``result``.

        Args:
            method: Protocol method name.
            params: Request parameters.
            timeout: Deadline in seconds; defaults to the server's ``timeout_ms``.

        Raises:
            CapabilityTimeoutError: No response before the deadline.
            NetworkError: The connection failed and retries were exhausted.
            AuthenticationError: Credentials rejected after one refresh.
            ToolmeshError: The typed error for a JSON-RPC error response.
        """
        deadline = timeout if timeout is not None else self._config.timeout_seconds
        idempotent = method in _IDEMPOTENT_METHODS

        async def _attempt() -> Any:
            if not self.is_connected:
                raise ConnectionUnavailableError(f"server '{self.server_id}' is {self._conn.state.value}")
            return await self._request(method, params, timeout=deadline)

        def _should_retry(error: BaseException) -> bool:
            if self._closing or self._conn.state == ConnectionState.disconnected:
                return False
            return idempotent or isinstance(error, ConnectionUnavailableError)

        return await self._with_reauth(
            lambda: self._retry.run(_attempt, retry_on=(NetworkError,), should_retry=_should_retry)
        )

    async def call_tool(self, name: str, arguments: Dict[str, Any], *, timeout: Optional[float] = None) -> Any:
        return await self.call(TOOLS_CALL, {"name": name, "arguments": arguments}, timeout=timeout)

    async def ping(self, *, timeout: Optional[float] = None) -> None:
        await self.call(PING, timeout=timeout)

    async def _request(self, method: str, params: Optional[Dict[str, Any]] = None, *, timeout: Optional[float] = None) -> Any:
        transport = self._conn.transport
        if transport is None:
            raise ConnectionUnavailableError(f"server '{self.server_id}' has no transport")
        pending = self._conn.register(method, timeout if timeout is not None else self._config.timeout_seconds)
        message = ProtocolMessage.request(pending.id, method, params)
        sender = asyncio.ensure_future(self._send_request(transport, message))
        try:
            return await pending.future
        except asyncio.CancelledError:
            if self._conn.cancel(pending.id) is not None:
                self._send_cancelled(pending.id, "cancelled by caller")
            raise
        except CapabilityTimeoutError:
            self._send_cancelled(pending.id, "request timed out")
            raise
        finally:
            if not sender.done():
                sender.cancel()

    async def _send_request(self, transport: Transport, message: ProtocolMessage) -> None:
        assert isinstance(message.id, int)
        try:
            reply = await transport.send(message)
        except asyncio.CancelledError:
            raise
        except ToolmeshError as e:
            self._conn.fail(message.id, e)
            return
        except Exception as e:
            self._conn.fail(message.id, NetworkError(f"send to '{self.server_id}' failed: {e}"))
            return
        if reply is not None:
            self._on_message(reply)

    async def _notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        transport = self._conn.transport
        if transport is None:
            raise ConnectionUnavailableError(f"server '{self.server_id}' has no transport")
        reply = await transport.send(ProtocolMessage.notification(method, params))
        if reply is not None:
            self._on_message(reply)

    def _send_cancelled(self, token: int, reason: str) -> None:
        if self._conn.transport is None:
            return

        async def _send() -> None:
            try:
                await self._notify(NOTIFY_CANCELLED, {"requestId": token, "reason": reason})
            except ToolmeshError as e:
                logger.debug("Server '%s': could not send cancellation for %d: %s", self.server_id, token, e)

        self._spawn(_send())

    async def _with_reauth(self, operation: Callable[[], Awaitable[T]]) -> T:
        try:
            return await operation()
        except AuthenticationError as e:
            if self._auth is None:
                raise
            try:
                refreshed = await self._auth.refresh()
            except Exception as refresh_error:
                logger.warning("Server '%s': credential refresh failed: %s", self.server_id, refresh_error)
                raise e from refresh_error
            if not refreshed:
                raise
            logger.info("Server '%s' rejected credentials; retrying once with refreshed credentials", self.server_id)
        return await operation()
