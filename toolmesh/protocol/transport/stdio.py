"""Pipe transport: newline-delimited messages over a subprocess's standard streams.

Frames are one encoded message per line. Reads arrive in arbitrary chunks, so
``LineFramer`` keeps any trailing partial line and prefixes it to the next
chunk until the newline arrives.

The child's stderr is logged at DEBUG and never parsed. When stdout reaches
EOF (the process exited or closed it) the inbound channel closes with a
``NetworkError`` unless ``close()`` was called first.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Dict, List, Optional, Sequence

from ...errors import NetworkError, ProtocolError
from ..messages import ProtocolMessage
from .base import MessageChannel

logger = logging.getLogger(__name__)

DEFAULT_MAX_LINE_BYTES = 4 * 1024 * 1024


class LineFramer:
    """Split a byte stream into newline-terminated frames.

    A line longer than ``max_line_bytes`` is dropped whole: its buffered bytes
    are discarded and so is the rest of it, up to the next newline. Frames
    completed before it are still returned.
    """

    def __init__(self, max_line_bytes: int = DEFAULT_MAX_LINE_BYTES) -> None:
        self._buffer = bytearray()
        self._max = max_line_bytes
        self._skipping = False
        self.discarded = 0

    @property
    def pending(self) -> bytes:
        """Bytes of the incomplete trailing line, if any."""
        return bytes(self._buffer)

    def feed(self, data: bytes) -> List[bytes]:
        """Add a chunk and return every complete, non-blank frame it finishes."""
        self._buffer.extend(data)
        frames: List[bytes] = []
        while True:
            idx = self._buffer.find(b"\n")
            if idx < 0:
                break
            if self._skipping:
                self._skipping = False
            elif idx > self._max:
                self._drop(idx)
            else:
                line = bytes(self._buffer[:idx]).rstrip(b"\r")
                if line.strip():
                    frames.append(line)
            del self._buffer[: idx + 1]
        if len(self._buffer) > self._max:
            if not self._skipping:
                self._drop(len(self._buffer))
                self._skipping = True
            self._buffer.clear()
        return frames

    def _drop(self, size: int) -> None:
        self.discarded += 1
        logger.warning("Discarding frame over %d bytes (%d buffered)", self._max, size)


class PipeTransport:
    """Spawn a server process and exchange messages over stdin/stdout."""

    def __init__(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[str] = None,
        name: str = "pipe",
        read_chunk_size: int = 65_536,
        max_line_bytes: int = DEFAULT_MAX_LINE_BYTES,
        stop_timeout: float = 2.0,
    ) -> None:
        self._command = command
        self._args = list(args)
        self._env = dict(env or {})
        self._cwd = cwd
        self._name = name
        self._chunk = read_chunk_size
        self._max_line = max_line_bytes
        self._stop_timeout = stop_timeout
        self._process: Optional[asyncio.subprocess.Process] = None
        self._reader: Optional[asyncio.Task] = None
        self._stderr_reader: Optional[asyncio.Task] = None
        self._inbound: MessageChannel[ProtocolMessage] = MessageChannel(f"{name} inbound")
        self._closing = False
        self._write_lock = asyncio.Lock()

    @property
    def inbound(self) -> MessageChannel[ProtocolMessage]:
        return self._inbound

    @property
    def is_connected(self) -> bool:
        return self._process is not None and self._process.returncode is None and not self._inbound.closed

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    async def connect(self) -> None:
        """Spawn the process and start the reader tasks.

        Raises:
            NetworkError: If the executable cannot be started.
        """
        if self.is_connected:
            return
        self._closing = False
        self._inbound = MessageChannel(f"{self._name} inbound")
        env = {**os.environ, **self._env}
        try:
            self._process = await asyncio.create_subprocess_exec(
                self._command,
                *self._args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                cwd=self._cwd,
            )
        except OSError as e:
            raise NetworkError(f"failed to start '{self._command}': {e}") from e
        logger.debug("Server '%s' spawned (PID %d)", self._name, self._process.pid)
        self._reader = asyncio.create_task(self._read_stdout(), name=f"{self._name}-stdout")
        self._stderr_reader = asyncio.create_task(self._read_stderr(), name=f"{self._name}-stderr")

    async def send(self, message: ProtocolMessage) -> Optional[ProtocolMessage]:
        """Write one frame. Replies arrive on ``inbound``.

        Raises:
            NetworkError: If the process is gone or its stdin is closed.
        """
        proc = self._process
        if proc is None or proc.stdin is None or not self.is_connected:
            raise NetworkError(f"server '{self._name}' is not connected")
        async with self._write_lock:
            try:
                proc.stdin.write(message.encode() + b"\n")
                await proc.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                raise NetworkError(f"server '{self._name}' closed its input: {e}") from e
        return None

    async def close(self) -> None:
        self._closing = True
        proc = self._process
        if proc is not None:
            if proc.stdin is not None and not proc.stdin.is_closing():
                proc.stdin.close()
            if proc.returncode is None:
                try:
                    await asyncio.wait_for(proc.wait(), timeout=self._stop_timeout)
                except asyncio.TimeoutError:
                    logger.warning("Server '%s' did not exit; terminating", self._name)
                    proc.terminate()
                    try:
                        await asyncio.wait_for(proc.wait(), timeout=self._stop_timeout)
                    except asyncio.TimeoutError:
                        proc.kill()
                        await proc.wait()
        for task in (self._reader, self._stderr_reader):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._reader = self._stderr_reader = None
        self._inbound.close()
        self._process = None

    async def _read_stdout(self) -> None:
        proc = self._process
        assert proc is not None and proc.stdout is not None
        framer = LineFramer(self._max_line)
        error: Optional[BaseException] = None
        try:
            while True:
                chunk = await proc.stdout.read(self._chunk)
                if not chunk:
                    break
                for frame in framer.feed(chunk):
                    try:
                        self._inbound.put(ProtocolMessage.decode(frame))
                    except ProtocolError as e:
                        logger.warning("Server '%s' sent an invalid frame: %s", self._name, e)
            if framer.pending.strip():
                logger.debug("Server '%s' closed stdout mid-frame (%d bytes dropped)", self._name, len(framer.pending))
            code = await proc.wait()
            error = NetworkError(f"server '{self._name}' exited (code {code})")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = NetworkError(f"server '{self._name}' stdout failed: {e}")
        if self._closing:
            self._inbound.close()
        else:
            logger.warning("%s", error)
            self._inbound.close(error)

    async def _read_stderr(self) -> None:
        proc = self._process
        assert proc is not None and proc.stderr is not None
        while True:
            line = await proc.stderr.readline()
            if not line:
                return
            logger.debug("Server '%s' stderr: %s", self._name, line.decode("utf-8", errors="replace").rstrip())
