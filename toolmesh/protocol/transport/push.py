"""Push-stream transport: server-sent events in, HTTP POST out.

Two channels share one lifecycle:

- push channel: a long-lived ``GET`` on the event stream. ``message`` events
  carry protocol messages and go to ``inbound``. An ``endpoint`` event names
  the URL (possibly relative) that requests must be posted to.
- request channel: a ``RequestResponseTransport`` posting to that endpoint.
  Replies in the POST body are returned directly; a 202 means the reply will
  arrive on the push channel.

The channels fail independently. When the push channel drops, it is reopened
with the retry policy (resending ``Last-Event-ID``) while requests keep
flowing. Only when reopen attempts are exhausted does ``inbound`` close with
``NetworkError``. The attempt counter resets once a reopened stream delivers
an event.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional
from urllib.parse import urljoin

import httpx

from ...errors import AuthenticationError, NetworkError, ProtocolError
from ...runtime.retry import RetryPolicy
from ..auth import AuthHandle
from ..messages import ProtocolMessage
from .base import MessageChannel
from .http import RequestResponseTransport
from .sse import SseEvent, SseStream

logger = logging.getLogger(__name__)


class PushStreamTransport:
    """Event-stream push channel plus a separate request channel.

    Args:
        url: Server URL. Without ``events_url`` this is the event stream and
            requests go to the URL announced by its ``endpoint`` event.
        events_url: Explicit event-stream URL; requests then go to ``url``
            unless an ``endpoint`` event says otherwise.
        retry_policy: Backoff for reopening the push channel.
        endpoint_timeout: Seconds to wait for the ``endpoint`` event on connect.
    """

    def __init__(
        self,
        url: str,
        *,
        events_url: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        auth: Optional[AuthHandle] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        retry_policy: Optional[RetryPolicy] = None,
        endpoint_timeout: float = 10.0,
        name: str = "stream",
    ) -> None:
        self._name = name
        self._url = url
        self._events_url = events_url or url
        self._await_endpoint = events_url is None
        self._headers = dict(headers or {})
        self._auth = auth
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout
        self._retry = retry_policy or RetryPolicy()
        self._endpoint_timeout = endpoint_timeout
        self._inbound: MessageChannel[ProtocolMessage] = MessageChannel(f"{name} inbound")
        self._requests: Optional[RequestResponseTransport] = None
        self._stream: Optional[SseStream] = None
        self._push_task: Optional[asyncio.Task] = None
        self._endpoint_ready = asyncio.Event()
        self._endpoint = url
        self._last_event_id: Optional[str] = None
        self._closing = False

    @property
    def inbound(self) -> MessageChannel[ProtocolMessage]:
        return self._inbound

    @property
    def is_connected(self) -> bool:
        return self._requests is not None and self._requests.is_connected and not self._inbound.closed

    @property
    def endpoint(self) -> str:
        return self._endpoint

    @property
    def last_event_id(self) -> Optional[str]:
        return self._last_event_id

    @property
    def push_active(self) -> bool:
        return self._push_task is not None and not self._push_task.done()

    def _request_headers(self) -> Dict[str, str]:
        h = dict(self._headers)
        if self._auth is not None:
            h.update(self._auth.headers())
        return h

    async def connect(self) -> None:
        """Open the push channel and wait for the request endpoint.

        Raises:
            AuthenticationError: The event stream rejected the credentials.
            NetworkError: The event stream could not be opened, or no
                ``endpoint`` event arrived in time.
        """
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self._timeout, read=None), follow_redirects=True)
            self._owns_client = True
        self._closing = False
        self._inbound = MessageChannel(f"{self._name} inbound")
        self._requests = RequestResponseTransport(
            self._endpoint,
            headers=self._headers,
            auth=self._auth,
            client=self._client,
            timeout=self._timeout,
            name=self._name,
            inbound=self._inbound,
        )
        await self._requests.connect()
        self._endpoint_ready = asyncio.Event()
        if not self._await_endpoint:
            self._endpoint_ready.set()

        self._stream = SseStream(self._client, self._events_url, headers=self._request_headers)
        await self._stream.open(last_event_id=self._last_event_id)
        self._push_task = asyncio.create_task(self._pump(), name=f"{self._name}-push")

        if self._await_endpoint:
            try:
                await asyncio.wait_for(self._endpoint_ready.wait(), timeout=self._endpoint_timeout)
            except asyncio.TimeoutError as e:
                await self.close()
                raise NetworkError(f"server '{self._name}' did not announce a request endpoint") from e
            if self._inbound.closed:
                error = self._inbound.error
                await self.close()
                raise NetworkError(f"server '{self._name}' event stream closed during connect: {error}")

    async def send(self, message: ProtocolMessage) -> Optional[ProtocolMessage]:
        if self._requests is None or not self._endpoint_ready.is_set():
            raise NetworkError(f"server '{self._name}' request endpoint is not known yet")
        return await self._requests.send(message)

    async def close(self) -> None:
        self._closing = True
        task = self._push_task
        self._push_task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._stream is not None:
            await self._stream.close()
            self._stream = None
        if self._requests is not None:
            await self._requests.close()
        self._inbound.close()
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    # ---------------------------------------------------------------
    # Push channel
    # ---------------------------------------------------------------

    def _on_event(self, event: SseEvent) -> None:
        if event.id is not None:
            self._last_event_id = event.id
        if event.type == "endpoint":
            endpoint = urljoin(self._events_url, event.data.strip())
            if endpoint != self._endpoint:
                logger.debug("Server '%s' request endpoint: %s", self._name, endpoint)
            self._endpoint = endpoint
            if self._requests is not None:
                self._requests.url = endpoint
            self._endpoint_ready.set()
            return
        if event.type != "message" or not event.data.strip():
            return
        try:
            self._inbound.put(ProtocolMessage.decode(event.data))
        except ProtocolError as e:
            logger.warning("Server '%s' pushed an invalid message: %s", self._name, e)

    async def _pump(self) -> None:
        assert self._stream is not None
        attempt = 1
        while True:
            error: BaseException
            try:
                async for event in self._stream.events():
                    attempt = 1
                    self._on_event(event)
                error = NetworkError("event stream ended")
            except NetworkError as e:
                error = e
            if self._closing:
                return

            while True:
                if attempt >= self._retry.max_attempts:
                    logger.warning("Server '%s' push channel lost: %s", self._name, error)
                    self._inbound.close(NetworkError(f"server '{self._name}' push channel lost: {error}"))
                    self._endpoint_ready.set()
                    return
                delay = self._retry.delay_for(attempt)
                logger.warning(
                    "Server '%s' push channel dropped (%s); reopening in %.2fs (attempt %d/%d)",
                    self._name,
                    error,
                    delay,
                    attempt,
                    self._retry.max_attempts - 1,
                )
                attempt += 1
                await asyncio.sleep(delay)
                try:
                    await self._stream.open(last_event_id=self._last_event_id)
                    break
                except (NetworkError, AuthenticationError) as e:
                    error = e
