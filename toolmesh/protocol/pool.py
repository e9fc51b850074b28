"""Connection pool.

Maps server identity to a bounded set of ``ProtocolClient`` instances.

- ``acquire(server_id)`` returns an idle client if there is one, creates (and
  initializes) a new one while the per-server cap allows, and otherwise queues
  the caller.
- ``release(client)`` hands the client straight to the longest-waiting caller,
  or returns it to the idle set.

A client is never handed to two callers at once: every client is either idle,
leased to exactly one caller, or being created. Clients that ended up
``disconnected`` are discarded on release or acquire, which frees capacity for
a fresh one.

The first client created for a server owns discovery (it writes the server's
capabilities to the registry). When the owner is discarded, the next client
created takes over.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Deque, Dict, List, Optional, Set

from ..errors import NetworkError, ServerNotFoundError
from ..schemas.config import ServerConfig
from .client import ProtocolClient
from .connection import ConnectionState

logger = logging.getLogger(__name__)

ClientFactory = Callable[[ServerConfig, bool], ProtocolClient]


@dataclass
class _ServerSlot:
    config: ServerConfig
    idle: Deque[ProtocolClient] = field(default_factory=deque)
    leased: Set[ProtocolClient] = field(default_factory=set)
    waiters: Deque["asyncio.Future[Optional[ProtocolClient]]"] = field(default_factory=deque)
    size: int = 0
    owner: Optional[ProtocolClient] = None
    closed: bool = False


class ConnectionPool:
    def __init__(self, client_factory: ClientFactory, *, max_clients_per_server: int = 2) -> None:
        """
        Initialize an empty pool.

        Args:
            client_factory: ``(config, owns_discovery) -> ProtocolClient``;
                called when a server needs another client.
            max_clients_per_server: Upper bound of clients per server (>= 1).
        """
        if max_clients_per_server < 1:
            raise ValueError("max_clients_per_server must be >= 1")
        self._factory = client_factory
        self._cap = max_clients_per_server
        self._servers: Dict[str, _ServerSlot] = {}
        self._closing: Set[asyncio.Task] = set()

    @property
    def max_clients_per_server(self) -> int:
        return self._cap

    def servers(self) -> List[str]:
        return sorted(self._servers)

    def has_server(self, server_id: str) -> bool:
        return server_id in self._servers

    def config_for(self, server_id: str) -> ServerConfig:
        return self._slot(server_id).config

    def stats(self, server_id: str) -> Dict[str, int]:
        slot = self._slot(server_id)
        return {
            "size": slot.size,
            "idle": len(slot.idle),
            "leased": len(slot.leased),
            "waiters": sum(1 for w in slot.waiters if not w.done()),
        }

    def add_server(self, config: ServerConfig) -> None:
        """
        Make ``config.name`` available for ``acquire``. No connection is opened yet.

        Raises:
            ValueError: If a server with the same name is already registered.
        """
        if config.name in self._servers:
            raise ValueError(f"server '{config.name}' is already registered")
        self._servers[config.name] = _ServerSlot(config=config)

    async def remove_server(self, server_id: str) -> None:
        """Close every client of ``server_id``; in-flight calls fail with ``NetworkError``.

        Raises:
            ServerNotFoundError: If the server is not registered.
        """
        slot = self._servers.pop(server_id, None)
        if slot is None:
            raise ServerNotFoundError(server_id)
        slot.closed = True
        while slot.waiters:
            waiter = slot.waiters.popleft()
            if not waiter.done():
                waiter.set_exception(NetworkError(f"server '{server_id}' was removed"))
        clients = list(slot.idle) + list(slot.leased)
        slot.idle.clear()
        slot.leased.clear()
        slot.size = 0
        slot.owner = None
        logger.info("Removing server '%s' (%d clients)", server_id, len(clients))
        for client in clients:
            await client.close()

    async def aclose(self) -> None:
        for server_id in list(self._servers):
            await self.remove_server(server_id)
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)

    # ---------------------------------------------------------------
    # Leasing
    # ---------------------------------------------------------------

    async def acquire(self, server_id: str) -> ProtocolClient:
        """
        Lease a client for ``server_id``, waiting if the server is at capacity.

        Raises:
            ServerNotFoundError: If the server is not registered.
            NetworkError: If a new client cannot connect, or the server is
                removed while waiting.
        """
        slot = self._slot(server_id)
        loop = asyncio.get_running_loop()
        while True:
            if slot.closed:
                raise NetworkError(f"server '{server_id}' was removed")
            while slot.idle:
                client = slot.idle.popleft()
                if client.state == ConnectionState.disconnected:
                    self._discard(slot, client)
                    continue
                slot.leased.add(client)
                return client

            if slot.size < self._cap:
                return await self._create(slot)

            waiter: "asyncio.Future[Optional[ProtocolClient]]" = loop.create_future()
            slot.waiters.append(waiter)
            try:
                client = await waiter
            except asyncio.CancelledError:
                if waiter.done() and not waiter.cancelled() and waiter.exception() is None:
                    handed = waiter.result()
                    if handed is not None:
                        self.release(handed)
                    else:
                        self._wake_one(slot)
                elif waiter in slot.waiters:
                    slot.waiters.remove(waiter)
                raise
            if client is not None:
                return client

    async def _create(self, slot: _ServerSlot) -> ProtocolClient:
        owns = slot.owner is None
        slot.size += 1
        client = self._factory(slot.config, owns)
        if owns:
            slot.owner = client
        try:
            await client.initialize()
        except BaseException:
            slot.size -= 1
            if slot.owner is client:
                slot.owner = None
            self._wake_one(slot)
            await client.close()
            raise
        if slot.closed:
            await client.close()
            raise NetworkError(f"server '{slot.config.name}' was removed")
        logger.debug("Server '%s': created client %d/%d", slot.config.name, slot.size, self._cap)
        slot.leased.add(client)
        return client

    def release(self, client: ProtocolClient) -> None:
        """
        Return a leased client.

        Raises:
            ValueError: If ``client`` is not currently leased from this pool.
        """
        slot = self._servers.get(client.server_id)
        if slot is None:
            # Server was removed while the client was leased; it is already closed.
            return
        if client not in slot.leased:
            if client.state == ConnectionState.disconnected:
                return
            raise ValueError(f"client for '{client.server_id}' is not leased from this pool")
        slot.leased.discard(client)
        if client.state == ConnectionState.disconnected:
            self._discard(slot, client)
            self._wake_one(slot)
            return
        while slot.waiters:
            waiter = slot.waiters.popleft()
            if waiter.done():
                continue
            slot.leased.add(client)
            waiter.set_result(client)
            return
        slot.idle.append(client)

    @asynccontextmanager
    async def lease(self, server_id: str) -> AsyncIterator[ProtocolClient]:
        client = await self.acquire(server_id)
        try:
            yield client
        finally:
            self.release(client)

    def _wake_one(self, slot: _ServerSlot) -> None:
        """Tell the longest waiter that capacity was freed (it retries acquire)."""
        while slot.waiters:
            waiter = slot.waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return

    def _discard(self, slot: _ServerSlot, client: ProtocolClient) -> None:
        slot.size -= 1
        if slot.owner is client:
            slot.owner = None
        logger.debug("Server '%s': discarding disconnected client", slot.config.name)
        task = asyncio.ensure_future(client.close())
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    def _slot(self, server_id: str) -> _ServerSlot:
        slot = self._servers.get(server_id)
        if slot is None:
            raise ServerNotFoundError(server_id)
        return slot
