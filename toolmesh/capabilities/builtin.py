from __future__ import annotations

"""Builtin local capabilities.

Every filesystem capability is rooted at a ``Workspace``; a path that resolves
outside the root raises ``PermissionDeniedError`` before any I/O happens.

========================  ==========  ==================
name                      permission  confirmation
========================  ==========  ==================
``read_file``             read        never
``list_directory``        read        never
``write_file``            write       destructive-only
``run_shell_command``     shell       destructive-only
``web_fetch``             network     adaptive
========================  ==========  ==================
"""

import asyncio
import dataclasses
import logging
import os
import signal
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import httpx

from ..errors import CapabilityTimeoutError, NetworkError, PermissionDeniedError, ToolmeshError
from .base import Capability, CapabilityDescriptor, ConfirmationPolicy, PermissionClass

logger = logging.getLogger(__name__)

MAX_READ_BYTES = 1_000_000
MAX_OUTPUT_CHARS = 100_000


@dataclass(frozen=True)
class Workspace:
    """Filesystem root that builtin capabilities are confined to."""

    root: Path

    @classmethod
    def at(cls, root: Union[str, Path, None] = None) -> "Workspace":
        return cls(root=Path(root or os.getcwd()).resolve())

    def resolve(self, path: str) -> Path:
        """
        Resolve ``path`` (relative paths are taken from the root).

        Raises:
            PermissionDeniedError: If the result lies outside the root.
        """
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = self.root / candidate
        resolved = candidate.resolve()
        if resolved != self.root and self.root not in resolved.parents:
            raise PermissionDeniedError(f"path '{path}' is outside the workspace root")
        return resolved

    def relative(self, path: Path) -> str:
        rel = path.relative_to(self.root).as_posix()
        return rel or "."


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + f"\n... [truncated {len(text) - limit} characters]"


async def _kill_process_tree(proc: asyncio.subprocess.Process) -> None:
    """Kill a shell started in its own session, with everything it spawned, and reap it."""
    if sys.platform == "win32":
        if proc.returncode is None:
            proc.kill()
    else:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
    await proc.wait()


@dataclass(frozen=True)
class ReadFileCapability(Capability):
    """
    Read a UTF-8 text file inside the workspace.

    Args (call arguments):
        path (str): File path, relative to the workspace root.
        max_bytes (int): Optional read limit; longer files are truncated.
    """

    workspace: Workspace
    descriptor: CapabilityDescriptor = field(
        default_factory=lambda: CapabilityDescriptor(
            name="read_file",
            description="Read a UTF-8 text file from the workspace",
            param_schema={
                "type": "object",
                "properties": {
                    "path": {"type": "string", "minLength": 1},
                    "max_bytes": {"type": "integer", "minimum": 1},
                },
                "required": ["path"],
                "additionalProperties": False,
            },
            permission_class=PermissionClass.read,
            confirmation_policy=ConfirmationPolicy.never,
        )
    )

    async def invoke(self, args: Dict[str, Any]) -> Dict[str, Any]:
        target = self.workspace.resolve(args["path"])
        limit = int(args.get("max_bytes") or MAX_READ_BYTES)
        if not target.is_file():
            raise ToolmeshError(f"not a file: {args['path']}")

        def _read() -> bytes:
            with target.open("rb") as fh:
                return fh.read(limit + 1)

        raw = await asyncio.to_thread(_read)
        truncated = len(raw) > limit
        return {
            "path": self.workspace.relative(target),
            "content": raw[:limit].decode("utf-8", errors="replace"),
            "truncated": truncated,
        }


@dataclass(frozen=True)
class ListDirectoryCapability(Capability):
    """List the entries of a workspace directory, directories first."""

    workspace: Workspace
    descriptor: CapabilityDescriptor = field(
        default_factory=lambda: CapabilityDescriptor(
            name="list_directory",
            description="List files and directories in a workspace directory",
            param_schema={
                "type": "object",
                "properties": {"path": {"type": "string"}},
                "additionalProperties": False,
            },
            permission_class=PermissionClass.read,
            confirmation_policy=ConfirmationPolicy.never,
        )
    )

    async def invoke(self, args: Dict[str, Any]) -> Dict[str, Any]:
        target = self.workspace.resolve(args.get("path") or ".")
        if not target.is_dir():
            raise ToolmeshError(f"not a directory: {args.get('path') or '.'}")

        def _scan() -> List[Dict[str, Any]]:
            entries = []
            for child in target.iterdir():
                is_dir = child.is_dir()
                entries.append(
                    {
                        "name": child.name,
                        "type": "directory" if is_dir else "file",
                        "size": None if is_dir else child.stat().st_size,
                    }
                )
            entries.sort(key=lambda e: (e["type"] != "directory", e["name"]))
            return entries

        return {"path": self.workspace.relative(target), "entries": await asyncio.to_thread(_scan)}


@dataclass(frozen=True)
class WriteFileCapability(Capability):
    """
    Write (create or overwrite) a UTF-8 text file inside the workspace.

    Parent directories are created when ``create_dirs`` is true (default).
    """

    workspace: Workspace
    descriptor: CapabilityDescriptor = field(
        default_factory=lambda: CapabilityDescriptor(
            name="write_file",
            description="Create or overwrite a UTF-8 text file in the workspace",
            param_schema={
                "type": "object",
                "properties": {
                    "path": {"type": "string", "minLength": 1},
                    "content": {"type": "string"},
                    "create_dirs": {"type": "boolean"},
                },
                "required": ["path", "content"],
                "additionalProperties": False,
            },
            permission_class=PermissionClass.write,
            confirmation_policy=ConfirmationPolicy.destructive_only,
        )
    )

    async def invoke(self, args: Dict[str, Any]) -> Dict[str, Any]:
        target = self.workspace.resolve(args["path"])
        data = str(args["content"]).encode("utf-8")
        create_dirs = args.get("create_dirs", True)

        def _write() -> None:
            if create_dirs:
                target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        await asyncio.to_thread(_write)
        logger.debug("Wrote %d bytes to %s", len(data), target)
        return {"path": self.workspace.relative(target), "bytes_written": len(data)}


@dataclass(frozen=True)
class RunShellCommandCapability(Capability):
    """
    Run a shell command in the workspace.

    The child process gets its own timeout (``timeout_seconds``, default 60);
    when it expires, or the engine abandons the call, the process is killed.
    Output streams are truncated to ``MAX_OUTPUT_CHARS`` characters each.
    """

    workspace: Workspace
    default_timeout: float = 60.0
    descriptor: CapabilityDescriptor = field(
        default_factory=lambda: CapabilityDescriptor(
            name="run_shell_command",
            description="Run a shell command in the workspace and capture its output",
            param_schema={
                "type": "object",
                "properties": {
                    "command": {"type": "string", "minLength": 1},
                    "cwd": {"type": "string"},
                    "timeout_seconds": {"type": "number", "exclusiveMinimum": 0},
                },
                "required": ["command"],
                "additionalProperties": False,
            },
            permission_class=PermissionClass.shell,
            confirmation_policy=ConfirmationPolicy.destructive_only,
            timeout_ms=120_000,
        )
    )

    async def invoke(self, args: Dict[str, Any]) -> Dict[str, Any]:
        cwd = self.workspace.resolve(args.get("cwd") or ".")
        timeout = float(args.get("timeout_seconds") or self.default_timeout)
        proc = await asyncio.create_subprocess_shell(
            args["command"],
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd),
            start_new_session=sys.platform != "win32",
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError as e:
            await _kill_process_tree(proc)
            raise CapabilityTimeoutError(f"command exceeded {timeout:g}s") from e
        except asyncio.CancelledError:
            await asyncio.shield(_kill_process_tree(proc))
            raise
        return {
            "exit_code": proc.returncode,
            "stdout": _truncate(stdout.decode("utf-8", errors="replace"), MAX_OUTPUT_CHARS),
            "stderr": _truncate(stderr.decode("utf-8", errors="replace"), MAX_OUTPUT_CHARS),
        }


@dataclass(frozen=True)
class WebFetchCapability(Capability):
    """
    Fetch a URL over HTTP(S) and return its text body.

    Pass ``client`` to share an ``httpx.AsyncClient`` (and its transport);
    otherwise a short-lived client is used per call.
    """

    client: Optional[httpx.AsyncClient] = None
    timeout: float = 20.0
    descriptor: CapabilityDescriptor = field(
        default_factory=lambda: CapabilityDescriptor(
            name="web_fetch",
            description="Fetch the content of an http(s) URL",
            param_schema={
                "type": "object",
                "properties": {
                    "url": {"type": "string", "pattern": "^https?://"},
                    "max_chars": {"type": "integer", "minimum": 1},
                },
                "required": ["url"],
                "additionalProperties": False,
            },
            permission_class=PermissionClass.network,
            confirmation_policy=ConfirmationPolicy.adaptive,
        )
    )

    async def invoke(self, args: Dict[str, Any]) -> Dict[str, Any]:
        url = args["url"]
        limit = int(args.get("max_chars") or MAX_OUTPUT_CHARS)
        try:
            if self.client is not None:
                response = await self.client.get(url)
            else:
                async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                    response = await client.get(url)
        except httpx.HTTPError as e:
            raise NetworkError(f"fetch failed for {url}: {e}") from e
        return {
            "url": str(response.url),
            "status_code": response.status_code,
            "content_type": response.headers.get("content-type", ""),
            "content": _truncate(response.text, limit),
        }


def builtin_capabilities(
    workspace_root: Union[str, Path, None] = None,
    *,
    http_client: Optional[httpx.AsyncClient] = None,
    timeout_ms: Optional[int] = None,
) -> List[Capability]:
    """Instantiate every builtin capability for one workspace.

    ``timeout_ms`` replaces the default deadline of every builtin except
    ``run_shell_command``, which keeps its longer one.
    """
    workspace = Workspace.at(workspace_root)
    caps: List[Capability] = [
        ReadFileCapability(workspace=workspace),
        ListDirectoryCapability(workspace=workspace),
        WriteFileCapability(workspace=workspace),
        RunShellCommandCapability(workspace=workspace),
        WebFetchCapability(client=http_client),
    ]
    if timeout_ms is None:
        return caps
    return [
        cap
        if isinstance(cap, RunShellCommandCapability)
        else dataclasses.replace(cap, descriptor=cap.descriptor.model_copy(update={"timeout_ms": timeout_ms}))
        for cap in caps
    ]
