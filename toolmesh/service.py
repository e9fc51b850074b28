from __future__ import annotations

"""High-level entry points for hosts embedding toolmesh.

``ToolService`` is the programmatic surface a model loop talks to:

- ``submit(call)`` / ``submit_batch(calls)``: run capability calls through the
  execution engine. Every call produces exactly one ``CapabilityResult``.
- ``start()``: register every server named by ``TOOLMESH_SERVERS_FILE``; also
  run on ``async with``.
- ``register_server(config)``: add a remote server to the connection pool and
  lease one client so its capabilities are discovered and registered.
- ``unregister_server(name)``: close the server's clients (in-flight calls
  resolve with ``NetworkError``) and bulk-unregister its capabilities.
- ``register_local(capability)`` / ``cancel(call_id)``.

``ToolService`` is intentionally thin: validation, confirmation, timeouts and
reconnects all live in the engine and protocol layers.
"""

import logging
from typing import AsyncIterator, List, Optional, Sequence

from .capabilities.base import Capability, CapabilityCall, CapabilityResult, PermissionClass
from .capabilities.registry import CapabilityRegistry
from .core.config import ToolmeshSettings
from .factory import RuntimeContext, build_context
from .schemas.config import ServerConfig

logger = logging.getLogger(__name__)


class ToolService:
    """Submit capability calls and manage remote servers for one runtime."""

    def __init__(self, context: RuntimeContext) -> None:
        self._ctx = context

    @classmethod
    def from_settings(cls, settings: Optional[ToolmeshSettings] = None, **kwargs) -> "ToolService":
        """Build a service on a fresh context; ``kwargs`` go to ``build_context``."""
        return cls(build_context(settings, **kwargs))

    @property
    def context(self) -> RuntimeContext:
        return self._ctx

    @property
    def registry(self) -> CapabilityRegistry:
        return self._ctx.registry

    # ---------------------------------------------------------------
    # Calls
    # ---------------------------------------------------------------

    async def submit(self, call: CapabilityCall, *, trust_level: Optional[PermissionClass] = None) -> CapabilityResult:
        return await self._ctx.engine.execute(call, trust_level=trust_level)

    async def submit_batch(
        self, calls: Sequence[CapabilityCall], *, trust_level: Optional[PermissionClass] = None
    ) -> List[CapabilityResult]:
        """Run a batch; results come back in submission order."""
        return await self._ctx.engine.execute_batch(calls, trust_level=trust_level)

    def stream_batch(
        self, calls: Sequence[CapabilityCall], *, trust_level: Optional[PermissionClass] = None
    ) -> AsyncIterator[CapabilityResult]:
        """Run a batch and yield results as they complete."""
        return self._ctx.engine.iter_batch(calls, trust_level=trust_level)

    def cancel(self, call_id: str) -> bool:
        return self._ctx.engine.cancel(call_id)

    # ---------------------------------------------------------------
    # Capabilities and servers
    # ---------------------------------------------------------------

    def register_local(self, capability: Capability) -> None:
        self._ctx.registry.register(capability)

    def servers(self) -> List[str]:
        return self._ctx.pool.servers()

    async def register_server(self, config: ServerConfig) -> List[str]:
        """
        Connect to a remote server and register its capabilities.

        Returns:
            Registry names of the server's capabilities.

        Raises:
            ValueError: If a server with the same name is already registered.
            NetworkError: If the server cannot be reached within the retry budget.
            AuthenticationError: If the server rejects the credentials.
            ProtocolError: If the server's handshake or discovery is malformed.
        """
        if "timeout_ms" not in config.model_fields_set:
            config = config.model_copy(update={"timeout_ms": self._ctx.settings.request_timeout_ms})
        pool = self._ctx.pool
        pool.add_server(config)
        try:
            async with pool.lease(config.name) as client:
                names = client.registered_names
        except BaseException:
            if pool.has_server(config.name):
                await pool.remove_server(config.name)
            raise
        logger.info("Registered server '%s' with %d capabilities", config.name, len(names))
        return names

    async def register_servers(self, configs: Sequence[ServerConfig]) -> List[str]:
        names: List[str] = []
        for config in configs:
            names.extend(await self.register_server(config))
        return names

    async def start(self) -> List[str]:
        """
        Register the servers listed in the configured servers file.

        Servers are registered in file order and the first failure propagates;
        servers registered before it stay registered.

        Returns:
            Registry names of every capability the servers contributed.
        """
        configs = self._ctx.settings.server_configs()
        if not configs:
            return []
        names = await self.register_servers(configs)
        logger.info("Started %d configured server(s)", len(configs))
        return names

    async def unregister_server(self, name: str) -> List[str]:
        """
        Disconnect a server and remove exactly the capabilities it registered.

        Returns:
            The removed capability names.

        Raises:
            ServerNotFoundError: If no server is registered under ``name``.
        """
        registry = self._ctx.registry
        owned = [n for n in registry.names() if registry.source_of(n) == name]
        await self._ctx.pool.remove_server(name)
        registry.unregister_source(name)
        logger.info("Unregistered server '%s' (%d capabilities removed)", name, len(owned))
        return owned

    # ---------------------------------------------------------------
    # Lifecycle
    # ---------------------------------------------------------------

    async def aclose(self) -> None:
        await self._ctx.aclose()

    async def __aenter__(self) -> "ToolService":
        try:
            await self.start()
        except BaseException:
            await self.aclose()
            raise
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
