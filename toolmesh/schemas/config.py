"""Remote server configuration schemas.

``ServerConfig`` is consumed (never produced) by the core. It describes how to
reach one remote capability server:

- ``transport="pipe"``: spawn ``command`` with ``args``/``env``/``cwd`` and talk
  newline-delimited JSON over its standard streams.
- ``transport="request"``: POST each message to ``url`` and read the reply.
- ``transport="stream"``: hold a server-push event stream open on ``url`` (or
  ``events_url``) and POST requests on a separate channel.

``load_server_configs`` accepts either a ``{"servers": [...]}`` document or the
``{"mcpServers": {name: {...}}}`` mapping used by most assistant settings
files.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import Field, model_validator

from .base import BaseSchema


class AuthConfig(BaseSchema):
    """Authentication handle configuration for HTTP-based transports."""

    type: Literal["oauth", "api-key", "basic"]
    token: Optional[str] = Field(default=None, description="Bearer access token (oauth)")
    api_key: Optional[str] = Field(default=None, description="API key value (api-key)")
    header_name: str = Field(default="X-API-Key", description="Header carrying the API key")
    username: Optional[str] = None
    password: Optional[str] = None

    @model_validator(mode="after")
    def _check_fields(self) -> "AuthConfig":
        if self.type == "api-key" and not self.api_key:
            raise ValueError("api-key auth requires 'apiKey'")
        if self.type == "basic" and (self.username is None or self.password is None):
            raise ValueError("basic auth requires 'username' and 'password'")
        return self


class ServerConfig(BaseSchema):
    """Configuration for one remote capability server."""

    name: str = Field(min_length=1)
    transport: Literal["pipe", "request", "stream"]

    command: Optional[str] = None
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    cwd: Optional[str] = None

    url: Optional[str] = None
    events_url: Optional[str] = Field(
        default=None,
        description="Push channel URL for stream transport; defaults to 'url'.",
    )
    headers: Dict[str, str] = Field(default_factory=dict)
    auth: Optional[AuthConfig] = None

    timeout_ms: int = Field(default=30_000, gt=0, description="Per-request deadline for protocol calls")
    retry_attempts: int = Field(default=3, ge=0, le=20)

    trust: bool = Field(default=False, description="Skip confirmation for this server's capabilities")
    include_tools: Optional[List[str]] = None
    exclude_tools: List[str] = Field(default_factory=list)
    name_prefix: Optional[str] = Field(
        default=None,
        description="Prefix for registered capability names; defaults to the server name. Empty disables.",
    )

    @model_validator(mode="after")
    def _check_transport_fields(self) -> "ServerConfig":
        if self.transport == "pipe" and not self.command:
            raise ValueError(f"server '{self.name}': pipe transport requires 'command'")
        if self.transport in ("request", "stream") and not self.url:
            raise ValueError(f"server '{self.name}': {self.transport} transport requires 'url'")
        return self

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0

    def qualified_name(self, tool_name: str) -> str:
        """Return the registry name for a tool advertised by this server."""
        prefix = self.name if self.name_prefix is None else self.name_prefix
        return f"{prefix}:{tool_name}" if prefix else tool_name

    def accepts_tool(self, tool_name: str) -> bool:
        """Apply the include/exclude filters to an advertised tool name."""
        if tool_name in self.exclude_tools:
            return False
        if self.include_tools is not None:
            return tool_name in self.include_tools
        return True


def _from_settings_entry(name: str, entry: Dict[str, Any]) -> ServerConfig:
    """Translate one ``mcpServers`` entry into a ``ServerConfig``."""
    data: Dict[str, Any] = {"name": name}
    if entry.get("command"):
        data.update(
            transport="pipe",
            command=entry["command"],
            args=list(entry.get("args") or []),
            env=dict(entry.get("env") or {}),
            cwd=entry.get("cwd"),
        )
    elif entry.get("httpUrl"):
        data.update(transport="request", url=entry["httpUrl"])
    elif entry.get("url"):
        data.update(transport="stream", url=entry["url"])
    else:
        raise ValueError(f"server '{name}': one of command, httpUrl or url is required")

    if entry.get("headers"):
        data["headers"] = dict(entry["headers"])
    if "timeout" in entry:
        data["timeout_ms"] = int(entry["timeout"])
    for key in ("auth", "trust", "includeTools", "excludeTools", "retryAttempts", "namePrefix", "eventsUrl"):
        if key in entry:
            data[key] = entry[key]
    return ServerConfig.model_validate(data)


def parse_server_configs(document: Union[Dict[str, Any], List[Any]]) -> List[ServerConfig]:
    """Parse server configurations from an already-decoded JSON document."""
    if isinstance(document, list):
        return [ServerConfig.model_validate(item) for item in document]
    if "servers" in document:
        return [ServerConfig.model_validate(item) for item in document["servers"] or []]
    if "mcpServers" in document:
        return [_from_settings_entry(name, dict(entry)) for name, entry in (document["mcpServers"] or {}).items()]
    raise ValueError("expected a 'servers' list or an 'mcpServers' mapping")


def load_server_configs(path: Union[str, Path]) -> List[ServerConfig]:
    """Load server configurations from a JSON file.

    Raises:
        FileNotFoundError: If ``path`` does not exist.
        ValueError: If the document shape is not recognized.
        pydantic.ValidationError: If an entry fails validation.
    """
    raw = Path(path).read_text(encoding="utf-8")
    return parse_server_configs(json.loads(raw))
