from __future__ import annotations

from typing import Optional

import httpx

from ...runtime.retry import RetryPolicy
from ...schemas.config import ServerConfig
from ..auth import AuthHandle, TokenProvider, auth_from_config
from .base import Transport
from .http import RequestResponseTransport
from .push import PushStreamTransport
from .stdio import PipeTransport


def create_transport(
    config: ServerConfig,
    *,
    http_client: Optional[httpx.AsyncClient] = None,
    auth: Optional[AuthHandle] = None,
    token_provider: Optional[TokenProvider] = None,
    retry_policy: Optional[RetryPolicy] = None,
) -> Transport:
    """
    Build the transport binding described by a server configuration.

    Args:
        config: The server configuration.
        http_client: Shared client for HTTP-based bindings (tests pass one
            wrapping ``httpx.MockTransport``).
        auth: Explicit auth handle; defaults to one built from ``config.auth``.
        token_provider: Refresh callable for OAuth handles.
        retry_policy: Push-channel reopen policy for the stream binding.

    Returns:
        An unconnected transport.
    """
    if config.transport == "pipe":
        assert config.command is not None
        return PipeTransport(config.command, config.args, env=config.env, cwd=config.cwd, name=config.name)

    handle = auth if auth is not None else auth_from_config(config.auth, token_provider=token_provider)
    assert config.url is not None
    if config.transport == "request":
        return RequestResponseTransport(
            config.url,
            headers=config.headers,
            auth=handle,
            client=http_client,
            timeout=config.timeout_seconds,
            name=config.name,
        )
    return PushStreamTransport(
        config.url,
        events_url=config.events_url,
        headers=config.headers,
        auth=handle,
        client=http_client,
        timeout=config.timeout_seconds,
        retry_policy=retry_policy or RetryPolicy(max_attempts=max(1, config.retry_attempts)),
        name=config.name,
    )
