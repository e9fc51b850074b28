"""Per-server connection state owned by exactly one ``ProtocolClient``.

``ServerConnection`` holds:

- the lifecycle state machine (illegal transitions raise ``RuntimeError``);
- the single active transport handle;
- the pending-request table keyed by correlation token, each entry with its
  own deadline timer;
- the capability set discovered on the last ``initializing -> connected``
  transition;
- the notification channel subscribers read server notifications from.

Correlation tokens come from a per-connection counter and are never reused for
the lifetime of the connection. A small memory of expired/cancelled tokens lets
late responses be told apart from responses with tokens never issued; both are
dropped and logged.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, FrozenSet, List, Optional, Union

from ..errors import CapabilityTimeoutError, ToolmeshError
from ..runtime.results import exception_for_error
from ..schemas.definitions import CapabilityDefinition
from .messages import ProtocolMessage
from .transport.base import MessageChannel, Transport

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    disconnected = "disconnected"
    connecting = "connecting"
    initializing = "initializing"
    connected = "connected"
    reconnecting = "reconnecting"
    disconnecting = "disconnecting"


_S = ConnectionState

_TRANSITIONS: Dict[ConnectionState, FrozenSet[ConnectionState]] = {
    _S.disconnected: frozenset({_S.connecting}),
    _S.connecting: frozenset({_S.initializing, _S.disconnected, _S.disconnecting}),
    _S.initializing: frozenset({_S.connected, _S.disconnected, _S.disconnecting, _S.reconnecting}),
    _S.connected: frozenset({_S.reconnecting, _S.disconnecting}),
    _S.reconnecting: frozenset({_S.initializing, _S.connecting, _S.disconnected, _S.disconnecting}),
    _S.disconnecting: frozenset({_S.disconnected}),
}


@dataclass
class PendingRequest:
    id: int
    method: str
    submitted_at: float
    deadline: float
    future: "asyncio.Future[Any]"
    timer: Optional[asyncio.TimerHandle] = field(default=None, repr=False)


class ServerConnection:
    def __init__(self, server_id: str, *, expired_memory: int = 256) -> None:
        self.server_id = server_id
        self._state = ConnectionState.disconnected
        self._next_token = 0
        self._pending: Dict[int, PendingRequest] = {}
        self._expired: Deque[int] = deque(maxlen=expired_memory)
        self._transport: Optional[Transport] = None
        self.capabilities: Dict[str, CapabilityDefinition] = {}
        self.server_info: Dict[str, Any] = {}
        self.server_capabilities: Dict[str, Any] = {}
        self.notifications: MessageChannel[ProtocolMessage] = MessageChannel(f"{server_id} notifications")
        self.state_changed = asyncio.Event()

    # ---------------------------------------------------------------
    # State machine
    # ---------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    def can_transition(self, new: ConnectionState) -> bool:
        return new in _TRANSITIONS[self._state]

    def transition(self, new: ConnectionState) -> ConnectionState:
        """Move to ``new`` and return the previous state.

        Raises:
            RuntimeError: If the transition is not allowed from the current state.
        """
        old = self._state
        if new not in _TRANSITIONS[old]:
            raise RuntimeError(f"illegal connection transition {old.value} -> {new.value} ({self.server_id})")
        self._state = new
        log = logger.info if new in (_S.connected, _S.disconnected) else logger.debug
        log("Server '%s': %s -> %s", self.server_id, old.value, new.value)
        self.state_changed.set()
        self.state_changed = asyncio.Event()
        return old

    # ---------------------------------------------------------------
    # Transport handle
    # ---------------------------------------------------------------

    @property
    def transport(self) -> Optional[Transport]:
        return self._transport

    def attach(self, transport: Transport) -> None:
        if self._transport is not None:
            raise RuntimeError(f"server '{self.server_id}' already has an active transport")
        self._transport = transport

    def detach(self) -> Optional[Transport]:
        transport, self._transport = self._transport, None
        return transport

    # ---------------------------------------------------------------
    # Pending requests
    # ---------------------------------------------------------------

    @property
    def pending_ids(self) -> List[int]:
        return list(self._pending)

    def __len__(self) -> int:
        return len(self._pending)

    def register(self, method: str, timeout: float) -> PendingRequest:
        """Allocate a fresh token and track a request until it settles or expires."""
        loop = asyncio.get_running_loop()
        self._next_token += 1
        token = self._next_token
        now = loop.time()
        pending = PendingRequest(
            id=token,
            method=method,
            submitted_at=now,
            deadline=now + timeout,
            future=loop.create_future(),
        )
        pending.timer = loop.call_at(pending.deadline, self._expire, token)
        self._pending[token] = pending
        return pending

    def _expire(self, token: int) -> None:
        pending = self._pop(token)
        if pending is None:
            return
        self._expired.append(token)
        logger.debug("Server '%s': request %d (%s) expired", self.server_id, token, pending.method)
        if not pending.future.done():
            pending.future.set_exception(
                CapabilityTimeoutError(f"request {token} ({pending.method}) to '{self.server_id}' timed out")
            )

    def _pop(self, token: int) -> Optional[PendingRequest]:
        pending = self._pending.pop(token, None)
        if pending is not None and pending.timer is not None:
            pending.timer.cancel()
        return pending

    @staticmethod
    def _token_of(raw: Union[int, str, None]) -> Optional[int]:
        if isinstance(raw, int):
            return raw
        if isinstance(raw, str) and raw.isdigit():
            return int(raw)
        return None

    def resolve(self, message: ProtocolMessage) -> bool:
        """Settle the pending request a response belongs to.

        Returns:
            False if the token is unknown or already expired; the response is
            dropped.
        """
        token = self._token_of(message.id)
        pending = self._pop(token) if token is not None else None
        if pending is None:
            if token is not None and token in self._expired:
                logger.debug("Server '%s': dropping late response for expired request %s", self.server_id, message.id)
            else:
                logger.warning("Server '%s': dropping response with unknown id %r", self.server_id, message.id)
            return False
        if pending.future.done():
            return False
        if message.error is not None:
            pending.future.set_exception(exception_for_error(message.error))
        else:
            pending.future.set_result(message.result)
        return True

    def fail(self, token: int, error: BaseException) -> bool:
        pending = self._pop(token)
        if pending is None:
            return False
        if not pending.future.done():
            pending.future.set_exception(error)
        return True

    def cancel(self, token: int) -> Optional[PendingRequest]:
        """Forget a request the caller gave up on; a late reply is then dropped."""
        pending = self._pop(token)
        if pending is not None:
            self._expired.append(token)
            if not pending.future.done():
                pending.future.cancel()
        return pending

    def fail_all(self, error: ToolmeshError) -> int:
        """Reject every pending request with ``error``. Returns how many were pending."""
        tokens = list(self._pending)
        for token in tokens:
            self.fail(token, error)
        if tokens:
            logger.debug("Server '%s': failed %d pending requests: %s", self.server_id, len(tokens), error)
        return len(tokens)
