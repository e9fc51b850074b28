from __future__ import annotations

"""Convenience factories for wiring the toolmesh core.

``build_context`` builds one explicit ``RuntimeContext`` (registry, policy,
limiter, engine, connection pool) from ``ToolmeshSettings``. Nothing here is
module-level state: every context is isolated and is torn down with
``RuntimeContext.aclose()``, so tests can build as many as they like.

The smaller ``build_*`` helpers keep application wiring and tests concise while
still letting deployments swap individual pieces.
"""

import dataclasses
import logging
from dataclasses import dataclass
from typing import Callable, Optional

import httpx

from .capabilities.builtin import builtin_capabilities
from .capabilities.registry import CapabilityRegistry
from .capabilities.remote import RemoteCapability
from .core.config import ToolmeshSettings
from .policy.confirmation import ApprovalHandler, ConfirmationGate, DefaultRiskHeuristic, RiskHeuristic
from .policy.validator import Validator
from .protocol.auth import TokenProvider, auth_from_config
from .protocol.client import ProtocolClient
from .protocol.pool import ClientFactory, ConnectionPool
from .protocol.transport.base import Transport
from .protocol.transport.factory import create_transport
from .runtime.engine import CheckpointHook, ExecutionEngine
from .runtime.limiter import ConcurrencyLimiter
from .schemas.config import ServerConfig

logger = logging.getLogger(__name__)

TransportFactory = Callable[[ServerConfig], Transport]


@dataclass
class RuntimeContext:
    """Everything one toolmesh instance owns.

    The registry and the pool are the only shared mutable state; both are
    scoped to this context.
    """

    settings: ToolmeshSettings
    registry: CapabilityRegistry
    validator: Validator
    gate: ConfirmationGate
    limiter: ConcurrencyLimiter
    engine: ExecutionEngine
    pool: ConnectionPool
    http_client: Optional[httpx.AsyncClient] = None
    owns_http_client: bool = False

    async def aclose(self) -> None:
        """Close every pooled client and the owned HTTP client."""
        await self.pool.aclose()
        if self.owns_http_client and self.http_client is not None:
            await self.http_client.aclose()


def build_registry(
    settings: ToolmeshSettings,
    *,
    include_builtins: bool = True,
    http_client: Optional[httpx.AsyncClient] = None,
) -> CapabilityRegistry:
    """Build a registry, optionally pre-loaded with the builtin capabilities."""
    registry = CapabilityRegistry(allow_overwrite=settings.allow_capability_overwrite)
    if include_builtins:
        for cap in builtin_capabilities(
            settings.workspace_root,
            http_client=http_client,
            timeout_ms=settings.default_timeout_ms,
        ):
            registry.register(cap)
    return registry


def build_client_factory(
    settings: ToolmeshSettings,
    registry: CapabilityRegistry,
    pool_ref: Callable[[], ConnectionPool],
    *,
    transport_factory: Optional[TransportFactory] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    token_provider: Optional[TokenProvider] = None,
) -> ClientFactory:
    """
    Build the pool's ``(config, owns_discovery) -> ProtocolClient`` factory.

    Registered remote capabilities are ``RemoteCapability`` proxies that lease
    a client from the pool per invocation instead of holding one.
    """

    def _factory(config: ServerConfig, owns_discovery: bool) -> ProtocolClient:
        policy = dataclasses.replace(settings.retry_policy(), max_attempts=max(1, config.retry_attempts))
        auth = auth_from_config(config.auth, token_provider=token_provider)

        def _transport() -> Transport:
            if transport_factory is not None:
                return transport_factory(config)
            return create_transport(config, http_client=http_client, auth=auth, retry_policy=policy)

        def _capability(descriptor, tool_name: str) -> RemoteCapability:
            return RemoteCapability(descriptor=descriptor, leaser=pool_ref(), server_id=config.name, tool_name=tool_name)

        return ProtocolClient(
            config,
            _transport,
            registry=registry,
            owns_discovery=owns_discovery,
            auth=auth,
            retry_policy=policy,
            capability_factory=_capability,
        )

    return _factory


def build_context(
    settings: Optional[ToolmeshSettings] = None,
    *,
    approval_handler: Optional[ApprovalHandler] = None,
    checkpoint_hook: Optional[CheckpointHook] = None,
    risk_heuristic: Optional[RiskHeuristic] = None,
    transport_factory: Optional[TransportFactory] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    token_provider: Optional[TokenProvider] = None,
    include_builtins: bool = True,
) -> RuntimeContext:
    """
    Wire a complete runtime from settings.

    Args:
        settings: Runtime settings; loaded from the environment when None.
        approval_handler: Asked whenever a call needs confirmation. Without
            one, every call that needs confirmation is rejected.
        checkpoint_hook: Awaited before write-class actions.
        risk_heuristic: Scorer for the ``adaptive`` confirmation policy.
        transport_factory: Builds the transport for a server configuration
            (tests inject in-memory transports); the config-driven factory is
            used otherwise.
        http_client: Shared HTTP client for remote servers and ``web_fetch``.
            A client is created (and closed by ``aclose``) when omitted.
        token_provider: Refresh callable for OAuth-configured servers.
        include_builtins: Register the builtin workspace capabilities.
    """
    settings = settings or ToolmeshSettings()
    owns_http = http_client is None
    if http_client is None:
        http_client = httpx.AsyncClient(timeout=settings.request_timeout_ms / 1000.0, follow_redirects=True)

    registry = build_registry(settings, include_builtins=include_builtins, http_client=http_client)
    validator = Validator(settings.validation_config())
    confirmation = settings.confirmation_config()
    gate = ConfirmationGate(
        approval_handler,
        config=confirmation,
        risk_heuristic=risk_heuristic
        or DefaultRiskHeuristic(settings.workspace_root, large_argument_bytes=confirmation.large_argument_bytes),
    )
    limiter = ConcurrencyLimiter(settings.max_concurrency)
    engine = ExecutionEngine(registry, validator, gate, limiter, checkpoint_hook=checkpoint_hook)

    pool: Optional[ConnectionPool] = None

    def _pool() -> ConnectionPool:
        assert pool is not None
        return pool

    client_factory = build_client_factory(
        settings,
        registry,
        _pool,
        transport_factory=transport_factory,
        http_client=http_client,
        token_provider=token_provider,
    )
    pool = ConnectionPool(client_factory, max_clients_per_server=settings.pool_max_clients_per_server)
    logger.debug(
        "Runtime context built: concurrency=%d trust=%s builtins=%s",
        settings.max_concurrency,
        settings.trust_level.value,
        include_builtins,
    )
    return RuntimeContext(
        settings=settings,
        registry=registry,
        validator=validator,
        gate=gate,
        limiter=limiter,
        engine=engine,
        pool=pool,
        http_client=http_client,
        owns_http_client=owns_http,
    )
