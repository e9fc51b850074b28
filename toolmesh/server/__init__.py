"""Serve local capabilities over the JSON message protocol.

- ``ProtocolServer`` (``server.dispatcher``): transport-agnostic dispatcher.
- ``create_app`` (``server.app``): FastAPI request channel + SSE push channel.
- ``serve_lines`` / ``main`` (``server.stdio``): newline-delimited pipe binding.
"""

from .dispatcher import ProtocolServer, call_tool_result

__all__ = ["ProtocolServer", "call_tool_result"]
