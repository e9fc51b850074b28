"""Server-Sent Events (SSE) utilities.

- ``SseStream``: streamed GET over ``httpx.AsyncClient`` yielding decoded lines.
- ``parse_sse_lines`` / ``parse_sse_text``: fold raw lines into ``SseEvent``
  records (``id``, ``event``, ``data``), following the event-stream framing
  rules: blank line ends an event, ``:`` lines are comments, repeated
  ``data`` fields are joined with newlines.

Reconnect policy is left to the caller (the push-stream transport), which
resends the last seen event id through ``SseStream.open(last_event_id=...)``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Dict, Iterable, Iterator, List, Optional

import httpx

from ...errors import AuthenticationError, NetworkError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SseEvent:
    data: str
    event: Optional[str] = None
    id: Optional[str] = None
    retry: Optional[int] = None

    @property
    def type(self) -> str:
        return self.event or "message"


class _EventBuilder:
    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self.id: Optional[str] = None
        self.event: Optional[str] = None
        self.retry: Optional[int] = None
        self.data: List[str] = []

    def has_content(self) -> bool:
        return self.id is not None or self.event is not None or bool(self.data)

    def feed(self, line: str) -> Optional[SseEvent]:
        """Consume one line; return the finished event on a blank line."""
        if not line.strip():
            if not self.has_content():
                return None
            event = self.build()
            self.reset()
            return event
        if line.startswith(":"):
            return None
        if ":" in line:
            key, val = line.split(":", 1)
            val = val[1:] if val.startswith(" ") else val
        else:
            key, val = line, ""
        key = key.strip()
        if key == "id":
            self.id = val
        elif key == "event":
            self.event = val
        elif key == "data":
            self.data.append(val)
        elif key == "retry" and val.isdigit():
            self.retry = int(val)
        return None

    def build(self) -> SseEvent:
        return SseEvent(data="\n".join(self.data), event=self.event, id=self.id, retry=self.retry)


async def parse_sse_lines(lines: AsyncIterator[str]) -> AsyncIterator[SseEvent]:
    builder = _EventBuilder()
    async for line in lines:
        event = builder.feed(line)
        if event is not None:
            yield event
    if builder.has_content():
        yield builder.build()


def iter_sse_text(lines: Iterable[str]) -> Iterator[SseEvent]:
    builder = _EventBuilder()
    for line in lines:
        event = builder.feed(line)
        if event is not None:
            yield event
    if builder.has_content():
        yield builder.build()


def parse_sse_text(text: str) -> List[SseEvent]:
    """Parse a complete ``text/event-stream`` body."""
    return list(iter_sse_text(text.splitlines()))


class SseStream:
    """One streamed ``GET`` on an event-stream endpoint.

    Args:
        client: Shared ``httpx.AsyncClient``.
        url: Absolute URL of the event stream.
        headers: Callable producing request headers (re-evaluated per open so
            refreshed credentials are picked up).
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        url: str,
        *,
        headers: Optional[Callable[[], Dict[str, str]]] = None,
    ) -> None:
        self._client = client
        self._url = url
        self._headers = headers or dict
        self._response: Optional[httpx.Response] = None

    @property
    def url(self) -> str:
        return self._url

    async def open(self, *, last_event_id: Optional[str] = None) -> None:
        """Start the streamed request.

        Raises:
            AuthenticationError: On HTTP 401/403.
            NetworkError: On connection failure or any other non-2xx status.
        """
        await self.close()
        headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache", **self._headers()}
        if last_event_id is not None:
            headers["Last-Event-ID"] = last_event_id
        logger.debug("SSE connect: GET %s (last id %s)", self._url, last_event_id)
        request = self._client.build_request("GET", self._url, headers=headers)
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise NetworkError(f"event stream connect failed: {e}") from e
        if response.status_code >= 400:
            await response.aclose()
            if response.status_code in (401, 403):
                raise AuthenticationError("event stream rejected credentials", status_code=response.status_code)
            raise NetworkError(f"event stream returned HTTP {response.status_code}")
        self._response = response

    async def lines(self) -> AsyncIterator[str]:
        """Yield decoded lines, blank lines included (they delimit events).

        Raises:
            RuntimeError: If ``open()`` was not called first.
            NetworkError: If the stream breaks while reading.
        """
        if self._response is None:
            raise RuntimeError("SSE not connected. Call open() first.")
        try:
            async for line in self._response.aiter_lines():
                yield line
        except httpx.HTTPError as e:
            raise NetworkError(f"event stream read failed: {e}") from e

    async def events(self) -> AsyncIterator[SseEvent]:
        async for event in parse_sse_lines(self.lines()):
            yield event

    async def close(self) -> None:
        if self._response is not None:
            await self._response.aclose()
            self._response = None
