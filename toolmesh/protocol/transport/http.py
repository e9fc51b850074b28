"""Request/response transport: one HTTP POST per message.

Each ``send`` posts a single encoded message and returns the correlated reply
from the response body, so no separate push channel exists. Two body shapes
are accepted:

- ``application/json``: one message (or a JSON array of messages);
- ``text/event-stream``: a short event stream whose ``message`` events carry
  messages.

The reply whose id matches the request is returned; anything else in the body
(server notifications, unrelated replies) is put on ``inbound``.

Status mapping: 401/403 -> ``AuthenticationError``; 429 and 5xx (and
connection failures) -> ``NetworkError``; other 4xx or unparseable bodies ->
``ProtocolError``. A 202/204 or empty body means "accepted, no reply".
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from ...errors import AuthenticationError, NetworkError, ProtocolError
from ..auth import AuthHandle
from ..messages import ProtocolMessage
from .base import MessageChannel
from .sse import parse_sse_text

logger = logging.getLogger(__name__)

SESSION_HEADER = "Mcp-Session-Id"


class RequestResponseTransport:
    """POST-per-message transport for stateless remote servers."""

    def __init__(
        self,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        auth: Optional[AuthHandle] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        name: str = "request",
        inbound: Optional[MessageChannel[ProtocolMessage]] = None,
    ) -> None:
        self._url = url
        self._static_headers = dict(headers or {})
        self._auth = auth
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout
        self._name = name
        self._shared_inbound = inbound
        self._inbound: MessageChannel[ProtocolMessage] = inbound or MessageChannel(f"{name} inbound")
        self._session_id: Optional[str] = None
        self._connected = False

    @property
    def url(self) -> str:
        return self._url

    @url.setter
    def url(self, value: str) -> None:
        self._url = value

    @property
    def inbound(self) -> MessageChannel[ProtocolMessage]:
        return self._inbound

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def auth(self) -> Optional[AuthHandle]:
        return self._auth

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    def bind_inbound(self, channel: MessageChannel[ProtocolMessage]) -> None:
        self._shared_inbound = channel
        self._inbound = channel

    def headers(self) -> Dict[str, str]:
        h = dict(self._static_headers)
        if self._auth is not None:
            h.update(self._auth.headers())
        return h

    async def connect(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout, follow_redirects=True)
            self._owns_client = True
        if self._shared_inbound is None and (self._inbound.closed or not self._connected):
            self._inbound = MessageChannel(f"{self._name} inbound")
        self._session_id = None
        self._connected = True

    async def send(self, message: ProtocolMessage) -> Optional[ProtocolMessage]:
        """POST ``message`` and return the matching reply, if the body has one.

        Raises:
            AuthenticationError: HTTP 401/403.
            NetworkError: Connection failures, HTTP 429 and 5xx.
            ProtocolError: Other HTTP errors or an unparseable body.
        """
        if not self._connected or self._client is None:
            raise NetworkError(f"server '{self._name}' is not connected")
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
            **self.headers(),
        }
        if self._session_id is not None:
            headers[SESSION_HEADER] = self._session_id
        logger.debug("POST %s method=%s id=%s", self._url, message.method, message.id)
        try:
            response = await self._client.post(self._url, content=message.encode(), headers=headers)
        except httpx.HTTPError as e:
            raise NetworkError(f"request to '{self._name}' failed: {e}") from e

        session = response.headers.get(SESSION_HEADER)
        if session:
            self._session_id = session

        status = response.status_code
        if status in (401, 403):
            raise AuthenticationError(f"server '{self._name}' rejected credentials (HTTP {status})", status_code=status)
        if status == 429 or status >= 500:
            raise NetworkError(f"server '{self._name}' returned HTTP {status}", details=response.text[:500])
        if status in (202, 204) or not response.content.strip():
            if status >= 400:
                raise ProtocolError(f"server '{self._name}' returned HTTP {status}")
            return None

        messages = self._parse_body(response)
        reply: Optional[ProtocolMessage] = None
        for msg in messages:
            if reply is None and message.id is not None and msg.is_response and msg.id == message.id:
                reply = msg
            else:
                self._inbound.put(msg)
        if status >= 400 and reply is None:
            raise ProtocolError(f"server '{self._name}' returned HTTP {status}", details=response.text[:500])
        return reply

    def _parse_body(self, response: httpx.Response) -> List[ProtocolMessage]:
        content_type = response.headers.get("content-type", "")
        if "text/event-stream" in content_type:
            out: List[ProtocolMessage] = []
            for event in parse_sse_text(response.text):
                if event.type != "message" or not event.data.strip():
                    continue
                out.extend(self._decode_payload(event.data))
            return out
        return self._decode_payload(response.content)

    @staticmethod
    def _decode_payload(raw: Any) -> List[ProtocolMessage]:
        try:
            data = json.loads(raw)
        except (ValueError, UnicodeDecodeError) as e:
            raise ProtocolError(f"response body is not JSON: {e}") from e
        if isinstance(data, list):
            return [ProtocolMessage.decode(item) for item in data]
        return [ProtocolMessage.decode(data)]

    async def close(self) -> None:
        self._connected = False
        if self._shared_inbound is None:
            self._inbound.close()
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
