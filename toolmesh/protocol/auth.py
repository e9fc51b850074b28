"""Authentication handles for HTTP-based transports.

A handle only knows how to decorate outgoing requests and, optionally, how to
obtain fresh credentials. The interactive side of any auth flow lives outside
this core.

``refresh()`` is what the protocol client calls for its one-shot
re-authentication after an ``AuthenticationError``: it returns True when new
credentials were obtained and a retry makes sense.
"""

from __future__ import annotations

import base64
import logging
from typing import Awaitable, Callable, Dict, Optional, Protocol

from ..schemas.config import AuthConfig

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Awaitable[str]]


class AuthHandle(Protocol):
    def headers(self) -> Dict[str, str]: ...

    async def refresh(self) -> bool: ...


class ApiKeyAuth(AuthHandle):
    def __init__(self, api_key: str, *, header_name: str = "X-API-Key") -> None:
        self._api_key = api_key
        self._header = header_name

    def headers(self) -> Dict[str, str]:
        return {self._header: self._api_key}

    async def refresh(self) -> bool:
        return False


class BasicAuth(AuthHandle):
    def __init__(self, username: str, password: str) -> None:
        raw = f"{username}:{password}".encode("utf-8")
        self._value = "Basic " + base64.b64encode(raw).decode("ascii")

    def headers(self) -> Dict[str, str]:
        return {"Authorization": self._value}

    async def refresh(self) -> bool:
        return False


class OAuthTokenAuth(AuthHandle):
    """Bearer token handle.

    Args:
        token: Initial access token. May be None when a provider is given;
            the first ``refresh()`` then fetches it.
        token_provider: Async callable returning a fresh access token.
    """

    def __init__(self, token: Optional[str] = None, *, token_provider: Optional[TokenProvider] = None) -> None:
        self._token = token
        self._provider = token_provider

    @property
    def token(self) -> Optional[str]:
        return self._token

    def headers(self) -> Dict[str, str]:
        if not self._token:
            return {}
        return {"Authorization": f"Bearer {self._token}"}

    async def refresh(self) -> bool:
        if self._provider is None:
            return False
        token = await self._provider()
        if not token:
            logger.warning("Token provider returned an empty token")
            return False
        changed = token != self._token
        self._token = token
        return changed


def auth_from_config(config: Optional[AuthConfig], *, token_provider: Optional[TokenProvider] = None) -> Optional[AuthHandle]:
    """Build the auth handle described by a server's ``auth`` block."""
    if config is None:
        return None
    if config.type == "api-key":
        return ApiKeyAuth(config.api_key or "", header_name=config.header_name)
    if config.type == "basic":
        return BasicAuth(config.username or "", config.password or "")
    return OAuthTokenAuth(config.token, token_provider=token_provider)
