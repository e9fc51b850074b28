"""Transport bindings.

- ``PipeTransport`` (``stdio.py``): subprocess, newline-delimited frames.
- ``RequestResponseTransport`` (``http.py``): one HTTP POST per message.
- ``PushStreamTransport`` (``push.py``): server-sent events plus POST requests.

``create_transport`` picks the binding for a ``ServerConfig``.
"""

from .base import MessageChannel, Transport
from .factory import create_transport
from .http import RequestResponseTransport
from .push import PushStreamTransport
from .sse import SseEvent, SseStream, parse_sse_text
from .stdio import LineFramer, PipeTransport

__all__ = [
    "MessageChannel",
    "Transport",
    "create_transport",
    "RequestResponseTransport",
    "PushStreamTransport",
    "SseEvent",
    "SseStream",
    "parse_sse_text",
    "LineFramer",
    "PipeTransport",
]
