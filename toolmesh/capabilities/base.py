from __future__ import annotations

"""Capability data model and the executable capability protocol.

A capability is a named, schema-described action the execution engine can
perform. It is described by an immutable ``CapabilityDescriptor`` and executed
through the ``Capability`` protocol, which has exactly one operation:
``invoke(args)``.

Two variants implement the protocol:

- ``LocalCapability``: wraps an in-process callable (sync callables run in a
  worker thread so they never block the event loop).
- ``RemoteCapability`` (``capabilities.remote``): proxies a tool advertised by
  a remote server through the connection pool.

Capabilities should avoid policy decisions of their own. Validation,
confirmation, checkpointing and timeouts are enforced by the engine before and
around ``invoke``.
"""

import asyncio
import functools
import inspect
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, runtime_checkable
from uuid import uuid4

from pydantic import Field

from ..errors import ErrorKind
from ..schemas.base import FrozenSchema


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PermissionClass(str, Enum):
    """What a capability may touch. Ordered from least to most privileged."""

    none = "none"
    read = "read"
    network = "network"
    write = "write"
    shell = "shell"

    @property
    def rank(self) -> int:
        return _PERMISSION_ORDER[self]

    def exceeds(self, trust: "PermissionClass") -> bool:
        """Return True if this class needs more privilege than ``trust`` grants."""
        return self.rank > trust.rank


_PERMISSION_ORDER = {
    PermissionClass.none: 0,
    PermissionClass.read: 1,
    PermissionClass.network: 2,
    PermissionClass.write: 3,
    PermissionClass.shell: 4,
}


class ConfirmationPolicy(str, Enum):
    never = "never"
    always = "always"
    destructive_only = "destructive-only"
    adaptive = "adaptive"


def _empty_object_schema() -> Dict[str, Any]:
    return {"type": "object", "properties": {}}


class CapabilityDescriptor(FrozenSchema):
    """Immutable description of a registered capability.

    ``source`` is ``None`` for local capabilities and the server identity for
    capabilities discovered on a remote server, so they can be bulk-removed
    when that server goes away.
    """

    name: str = Field(min_length=1)
    description: str = ""
    param_schema: Dict[str, Any] = Field(default_factory=_empty_object_schema)
    permission_class: PermissionClass = PermissionClass.none
    confirmation_policy: ConfirmationPolicy = ConfirmationPolicy.never
    timeout_ms: int = Field(default=30_000, gt=0)
    source: Optional[str] = None

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0


class CapabilityCall(FrozenSchema):
    """A single model-issued request to run a capability.

    ``id`` is the correlation token linking the call to its result; it must not
    be reused while the result is outstanding. ``depends_on`` lists ids of calls
    in the same batch that must finish before this one starts.
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    capability_name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    issued_at: datetime = Field(default_factory=_utc_now)
    depends_on: List[str] = Field(default_factory=list)


class ResultMetadata(FrozenSchema):
    duration_ms: float = 0.0
    bytes_produced: int = 0
    attempts: int = 1
    abandoned: bool = False
    source: Optional[str] = None


class CapabilityResult(FrozenSchema):
    """Structured outcome of exactly one ``CapabilityCall``."""

    call_id: str
    success: bool
    output: Any = None
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    metadata: ResultMetadata = Field(default_factory=ResultMetadata)

    @classmethod
    def failure(
        cls,
        call_id: str,
        kind: ErrorKind,
        message: str,
        *,
        output: Any = None,
        metadata: Optional[ResultMetadata] = None,
    ) -> "CapabilityResult":
        return cls(
            call_id=call_id,
            success=False,
            output=output,
            error_kind=kind,
            error_message=message,
            metadata=metadata or ResultMetadata(),
        )


@runtime_checkable
class Capability(Protocol):
    """Protocol for executable capabilities."""

    descriptor: CapabilityDescriptor

    async def invoke(self, args: Dict[str, Any]) -> Any: ...


@dataclass(frozen=True)
class LocalCapability(Capability):
    """In-process capability backed by a plain callable.

    The handler receives the call arguments as keyword arguments. Coroutine
    functions are awaited; ordinary functions run via ``asyncio.to_thread``, so
    a timed-out sync handler keeps running in its thread until it returns and
    its late result is discarded by the engine.
    """

    descriptor: CapabilityDescriptor
    handler: Callable[..., Any]

    async def invoke(self, args: Dict[str, Any]) -> Any:
        if inspect.iscoroutinefunction(self.handler):
            return await self.handler(**args)
        result = await asyncio.to_thread(functools.partial(self.handler, **args))
        if inspect.isawaitable(result):
            return await result
        return result


def define_capability(
    handler: Callable[..., Any],
    *,
    name: Optional[str] = None,
    description: Optional[str] = None,
    param_schema: Optional[Dict[str, Any]] = None,
    permission_class: PermissionClass = PermissionClass.none,
    confirmation_policy: ConfirmationPolicy = ConfirmationPolicy.never,
    timeout_ms: int = 30_000,
) -> LocalCapability:
    """Wrap ``handler`` as a ``LocalCapability``.

    ``name`` defaults to the handler's ``__name__`` and ``description`` to the
    first line of its docstring.
    """
    doc = inspect.getdoc(handler) or ""
    descriptor = CapabilityDescriptor(
        name=name or handler.__name__,
        description=description if description is not None else (doc.splitlines()[0] if doc else ""),
        param_schema=param_schema or _empty_object_schema(),
        permission_class=permission_class,
        confirmation_policy=confirmation_policy,
        timeout_ms=timeout_ms,
    )
    return LocalCapability(descriptor=descriptor, handler=handler)
