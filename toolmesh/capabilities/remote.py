from __future__ import annotations

"""Remote-proxy capability.

A ``RemoteCapability`` holds no live connection. It closes over a
``ClientLeaser`` (normally the ``ConnectionPool``) plus the server identity and
the tool's remote name, leases a protocol client for each invocation and hands
the raw ``tools/call`` reply to the result pipeline.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncContextManager, AsyncIterator, Dict, Optional, Protocol

from ..runtime.results import normalize_tool_result
from .base import Capability, CapabilityDescriptor

logger = logging.getLogger(__name__)


class ToolCaller(Protocol):
    async def call_tool(self, name: str, arguments: Dict[str, Any], *, timeout: Optional[float] = None) -> Any: ...


class ClientLeaser(Protocol):
    def lease(self, server_id: str) -> AsyncContextManager[ToolCaller]: ...


class SingleClientLeaser(ClientLeaser):
    """Lease the same client every time (a client used without a pool)."""

    def __init__(self, client: ToolCaller) -> None:
        self._client = client

    @asynccontextmanager
    async def _lease(self) -> AsyncIterator[ToolCaller]:
        yield self._client

    def lease(self, server_id: str) -> AsyncContextManager[ToolCaller]:
        return self._lease()


@dataclass(frozen=True)
class RemoteCapability(Capability):
    descriptor: CapabilityDescriptor
    leaser: ClientLeaser
    server_id: str
    tool_name: str

    async def invoke(self, args: Dict[str, Any]) -> Any:
        async with self.leaser.lease(self.server_id) as client:
            logger.debug("Calling '%s' on server '%s' args_keys=%s", self.tool_name, self.server_id, list(args))
            raw = await client.call_tool(self.tool_name, args, timeout=self.descriptor.timeout_seconds)
        return normalize_tool_result(raw)
