"""Pipe binding for the protocol server.

Reads newline-delimited messages from an input stream and writes one reply
line per request. Requests are handled concurrently so that a
``notifications/cancelled`` can reach a long-running ``tools/call``; replies
are written as they complete. Logging goes to stderr because stdout carries
protocol frames.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import AsyncIterable, Awaitable, Callable, Optional, Set
from uuid import uuid4

from ..core.config import ToolmeshSettings
from ..core.logging_config import setup_logging
from ..factory import build_context
from ..protocol.transport.stdio import DEFAULT_MAX_LINE_BYTES
from ..service import ToolService
from .dispatcher import ProtocolServer

logger = logging.getLogger(__name__)

WriteLine = Callable[[bytes], Awaitable[None]]


async def serve_lines(server: ProtocolServer, lines: AsyncIterable[bytes], write: WriteLine) -> None:
    """
    Serve every message in ``lines`` until the input ends.

    Each call is one connection: request ids from ``lines`` never clash with
    those of another stream served by the same ``server``.

    Args:
        server: Dispatcher that answers the messages.
        lines: One encoded message per item (trailing newline optional).
        write: Writes one encoded reply; called with the newline appended.
    """
    connection = uuid4().hex
    lock = asyncio.Lock()
    tasks: Set[asyncio.Task] = set()

    async def _handle(raw: bytes) -> None:
        reply = await server.handle_raw(raw, connection=connection)
        if reply is None:
            return
        async with lock:
            await write(reply.encode() + b"\n")

    async for line in lines:
        line = line.strip()
        if not line:
            continue
        task = asyncio.create_task(_handle(line))
        tasks.add(task)
        task.add_done_callback(tasks.discard)
    if tasks:
        await asyncio.gather(*tasks)


async def _stdin_lines(limit: int = DEFAULT_MAX_LINE_BYTES) -> AsyncIterable[bytes]:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=limit)
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    while True:
        line = await reader.readline()
        if not line:
            return
        yield line


async def _stdout_write(data: bytes) -> None:
    sys.stdout.buffer.write(data)
    sys.stdout.buffer.flush()


async def run_stdio_server(settings: Optional[ToolmeshSettings] = None) -> None:
    """Serve builtin and configured-server capabilities over stdin/stdout until stdin closes."""
    settings = settings or ToolmeshSettings()
    context = build_context(settings, include_builtins=True)
    server = ProtocolServer(context.engine, context.registry)
    try:
        await ToolService(context).start()
        await serve_lines(server, _stdin_lines(), _stdout_write)
    finally:
        server.close()
        await context.aclose()


def main() -> None:
    settings = ToolmeshSettings()
    setup_logging(settings.log_level, settings.log_format, settings.log_file_dir, stream=sys.stderr)
    logger.info("Serving %s on stdio", settings.workspace_root)
    try:
        asyncio.run(run_stdio_server(settings))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
