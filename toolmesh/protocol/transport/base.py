"""Transport contract shared by the pipe, request/response and push-stream bindings.

A transport moves ``ProtocolMessage`` values and nothing else: correlation,
deadlines and retries belong to the protocol client.

Lifecycle
---------

- ``connect()`` opens the underlying channel and a fresh ``inbound`` channel.
- ``send(message)`` writes one message. Request/response bindings return the
  correlated reply directly; streaming bindings return None and deliver
  replies on ``inbound``.
- ``inbound`` yields unsolicited messages (and streamed replies). It ends
  cleanly after ``close()`` and raises ``NetworkError`` when the channel is
  lost.
- ``close()`` is idempotent.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Generic, Optional, Protocol, TypeVar

from ...errors import NetworkError
from ..messages import ProtocolMessage

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CLOSED = object()


class MessageChannel(Generic[T]):
    """Unbounded FIFO with an explicit, observable close signal.

    Producers call ``put``; consumers iterate. Closing wakes every consumer;
    a close with an error re-raises that error at the end of iteration.
    """

    def __init__(self, name: str = "channel") -> None:
        self._name = name
        self._queue: "asyncio.Queue[object]" = asyncio.Queue()
        self._closed = False
        self._error: Optional[BaseException] = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def error(self) -> Optional[BaseException]:
        return self._error

    def put(self, item: T) -> bool:
        """Enqueue ``item``. Returns False (and drops it) once closed."""
        if self._closed:
            logger.debug("Dropping item on closed %s", self._name)
            return False
        self._queue.put_nowait(item)
        return True

    def close(self, error: Optional[BaseException] = None) -> None:
        if self._closed:
            return
        self._closed = True
        self._error = error
        self._queue.put_nowait(_CLOSED)

    async def get(self) -> T:
        """Return the next item.

        Raises:
            The close error, or ``NetworkError`` if closed cleanly.
        """
        item = await self._queue.get()
        if item is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            raise self._error or NetworkError(f"{self._name} closed")
        return item  # type: ignore[return-value]

    def __aiter__(self) -> AsyncIterator[T]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[T]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                self._queue.put_nowait(_CLOSED)
                if self._error is not None:
                    raise self._error
                return
            yield item  # type: ignore[misc]


class Transport(Protocol):
    """Message exchange contract implemented by every binding."""

    @property
    def inbound(self) -> MessageChannel[ProtocolMessage]: ...

    @property
    def is_connected(self) -> bool: ...

    async def connect(self) -> None: ...

    async def send(self, message: ProtocolMessage) -> Optional[ProtocolMessage]: ...

    async def close(self) -> None: ...
