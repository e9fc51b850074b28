from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set

import httpx
import pytest

from toolmesh.core.config import ToolmeshSettings
from toolmesh.errors import NetworkError
from toolmesh.protocol.messages import PROTOCOL_VERSION, ProtocolMessage
from toolmesh.protocol.transport.base import MessageChannel


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """A throwaway workspace root with one file and one subdirectory."""
    (tmp_path / "notes.txt").write_text("hello workspace\n", encoding="utf-8")
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "main.py").write_text("print('hi')\n", encoding="utf-8")
    return tmp_path


@pytest.fixture
def settings(workspace: Path) -> ToolmeshSettings:
    """Settings isolated from the process environment and any .env file."""
    return ToolmeshSettings(
        _env_file=None,
        workspace_root=workspace,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
        retry_jitter=0.0,
    )


@pytest.fixture(autouse=True)
def _global_offline_http_guard(monkeypatch: pytest.MonkeyPatch):
    allowed_prefixes: Iterable[str] = (
        "http://mock",
        "https://mock",
        "http://localhost",
        "http://127.0.0.1",
        "http://0.0.0.0",
        "/",  # Allow relative paths (used by ASGI transport)
    )

    orig_sync = httpx._client.Client.request
    orig_async = httpx._client.AsyncClient.request

    def _is_allowed(url_str: str) -> bool:
        return any(url_str.startswith(p) for p in allowed_prefixes)

    def offline_sync(self, method, url, *args, **kwargs):
        url_str = str(url)
        if _is_allowed(url_str):
            return orig_sync(self, method, url, *args, **kwargs)
        raise RuntimeError(f"External HTTP blocked by global offline guard: {url_str}")

    async def offline_async(self, method, url, *args, **kwargs):
        url_str = str(url)
        if _is_allowed(url_str):
            return await orig_async(self, method, url, *args, **kwargs)
        raise RuntimeError(f"External HTTP blocked by global offline guard (async): {url_str}")

    monkeypatch.setattr(httpx._client.Client, "request", offline_sync, raising=True)
    monkeypatch.setattr(httpx._client.AsyncClient, "request", offline_async, raising=True)


# ---------------------------------------------------------------------------
# In-memory protocol server
# ---------------------------------------------------------------------------

DEFAULT_TOOLS: List[Dict[str, Any]] = [
    {
        "name": "query",
        "description": "Run a read-only SQL query",
        "inputSchema": {"type": "object", "properties": {"sql": {"type": "string"}}, "required": ["sql"]},
        "annotations": {"readOnlyHint": True},
    },
    {
        "name": "migrate",
        "description": "Apply pending migrations",
        "inputSchema": {"type": "object", "properties": {}},
    },
]


class FakeTransport:
    """Streaming-style transport wired straight into a ``FakeServer``."""

    def __init__(self, server: "FakeServer") -> None:
        self.server = server
        self._inbound: MessageChannel[ProtocolMessage] = MessageChannel("fake inbound")
        self.connected = False

    @property
    def inbound(self) -> MessageChannel[ProtocolMessage]:
        return self._inbound

    @property
    def is_connected(self) -> bool:
        return self.connected

    async def connect(self) -> None:
        if self.server.connect_failures > 0:
            self.server.connect_failures -= 1
            raise NetworkError("connection refused")
        self._inbound = MessageChannel("fake inbound")
        self.connected = True
        self.server.transports.append(self)

    async def send(self, message: ProtocolMessage) -> Optional[ProtocolMessage]:
        if not self.connected:
            raise NetworkError("not connected")
        self.server.received.append(message)
        reply = self.server.reply(message)
        if reply is not None:
            self._inbound.put(reply)
        return None

    async def close(self) -> None:
        self.connected = False
        self._inbound.close()

    def push(self, message: ProtocolMessage) -> None:
        self._inbound.put(message)

    def drop(self) -> None:
        self.connected = False
        self._inbound.close(NetworkError("connection reset by peer"))


class FakeServer:
    """Scriptable remote server speaking the message protocol.

    ``hold`` names tools whose calls are parked in ``held`` without a reply;
    ``errors`` maps tool names to JSON-RPC error objects.
    """

    def __init__(self) -> None:
        self.tools: List[Dict[str, Any]] = [dict(t) for t in DEFAULT_TOOLS]
        self.page_size: Optional[int] = None
        self.received: List[ProtocolMessage] = []
        self.transports: List[FakeTransport] = []
        self.connect_failures = 0
        self.hold: Set[str] = set()
        self.held: List[ProtocolMessage] = []
        self.errors: Dict[str, Dict[str, Any]] = {}

    @property
    def current(self) -> FakeTransport:
        return self.transports[-1]

    def transport(self, *_args: Any) -> FakeTransport:
        return FakeTransport(self)

    def methods(self) -> List[str]:
        return [m.method or "" for m in self.received]

    def reply(self, message: ProtocolMessage) -> Optional[ProtocolMessage]:
        if not message.is_request:
            return None
        params = message.params or {}
        if message.method == "initialize":
            return ProtocolMessage.response(
                message.id,
                {
                    "protocolVersion": PROTOCOL_VERSION,
                    "capabilities": {"tools": {"listChanged": True}},
                    "serverInfo": {"name": "fake", "version": "1.0"},
                },
            )
        if message.method == "ping":
            return ProtocolMessage.response(message.id, {})
        if message.method == "tools/list":
            start = int(params.get("cursor") or 0)
            size = self.page_size or len(self.tools) or 1
            page = self.tools[start : start + size]
            result: Dict[str, Any] = {"tools": page}
            if start + size < len(self.tools):
                result["nextCursor"] = str(start + size)
            return ProtocolMessage.response(message.id, result)
        if message.method == "tools/call":
            name = params.get("name")
            if name in self.hold:
                self.held.append(message)
                return None
            if name in self.errors:
                err = self.errors[name]
                return ProtocolMessage.error_response(message.id, err["code"], err["message"], err.get("data"))
            return ProtocolMessage.response(
                message.id,
                {
                    "content": [{"type": "text", "text": f"{name} ok"}],
                    "structuredContent": {"tool": name, "arguments": params.get("arguments") or {}},
                },
            )
        return ProtocolMessage.error_response(message.id, -32601, f"unknown method {message.method}")

    def answer_held(self, result: Any = None) -> None:
        """Reply to every parked call on the current transport."""
        for message in self.held:
            self.current.push(
                ProtocolMessage.response(message.id, result or {"content": [{"type": "text", "text": "late"}]})
            )
        self.held.clear()


@pytest.fixture
def fake_server() -> FakeServer:
    return FakeServer()
