from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path

import httpx
import pytest

from toolmesh.capabilities.base import ConfirmationPolicy, PermissionClass
from toolmesh.capabilities.builtin import (
    ListDirectoryCapability,
    ReadFileCapability,
    RunShellCommandCapability,
    WebFetchCapability,
    WriteFileCapability,
    Workspace,
    builtin_capabilities,
)
from toolmesh.errors import CapabilityTimeoutError, NetworkError, PermissionDeniedError, ToolmeshError


class TestWorkspace:
    def test_relative_paths_resolve_under_root(self, workspace: Path) -> None:
        ws = Workspace.at(workspace)
        assert ws.resolve("src/main.py") == workspace.resolve() / "src" / "main.py"
        assert ws.relative(ws.resolve(".")) == "."

    @pytest.mark.parametrize("path", ["../outside.txt", "src/../../x", "/etc/passwd"])
    def test_escaping_paths_are_denied(self, workspace: Path, path: str) -> None:
        with pytest.raises(PermissionDeniedError, match="outside the workspace root"):
            Workspace.at(workspace).resolve(path)

    def test_symlink_out_of_root_is_denied(self, workspace: Path, tmp_path_factory) -> None:
        outside = tmp_path_factory.mktemp("outside")
        (workspace / "link").symlink_to(outside, target_is_directory=True)
        with pytest.raises(PermissionDeniedError):
            Workspace.at(workspace).resolve("link/secret.txt")


class TestFileCapabilities:
    @pytest.mark.asyncio
    async def test_read_file(self, workspace: Path) -> None:
        cap = ReadFileCapability(workspace=Workspace.at(workspace))
        out = await cap.invoke({"path": "notes.txt"})
        assert out == {"path": "notes.txt", "content": "hello workspace\n", "truncated": False}

    @pytest.mark.asyncio
    async def test_read_file_truncates(self, workspace: Path) -> None:
        cap = ReadFileCapability(workspace=Workspace.at(workspace))
        out = await cap.invoke({"path": "notes.txt", "max_bytes": 5})
        assert out["content"] == "hello"
        assert out["truncated"] is True

    @pytest.mark.asyncio
    async def test_read_directory_is_an_error(self, workspace: Path) -> None:
        cap = ReadFileCapability(workspace=Workspace.at(workspace))
        with pytest.raises(ToolmeshError, match="not a file"):
            await cap.invoke({"path": "src"})

    @pytest.mark.asyncio
    async def test_list_directory_puts_directories_first(self, workspace: Path) -> None:
        cap = ListDirectoryCapability(workspace=Workspace.at(workspace))
        out = await cap.invoke({})
        assert out["path"] == "."
        assert out["entries"] == [
            {"name": "src", "type": "directory", "size": None},
            {"name": "notes.txt", "type": "file", "size": len("hello workspace\n")},
        ]

    @pytest.mark.asyncio
    async def test_write_file_creates_parents(self, workspace: Path) -> None:
        cap = WriteFileCapability(workspace=Workspace.at(workspace))
        out = await cap.invoke({"path": "out/deep/report.md", "content": "# done"})
        assert out == {"path": "out/deep/report.md", "bytes_written": 6}
        assert (workspace / "out" / "deep" / "report.md").read_text(encoding="utf-8") == "# done"

    @pytest.mark.asyncio
    async def test_write_outside_root_touches_nothing(self, workspace: Path) -> None:
        cap = WriteFileCapability(workspace=Workspace.at(workspace))
        with pytest.raises(PermissionDeniedError):
            await cap.invoke({"path": "../escaped.txt", "content": "x"})
        assert not (workspace.parent / "escaped.txt").exists()


class TestShell:
    @pytest.mark.asyncio
    async def test_captures_output_and_exit_code(self, workspace: Path) -> None:
        cap = RunShellCommandCapability(workspace=Workspace.at(workspace))
        out = await cap.invoke({"command": f'"{sys.executable}" -c "import sys; print(\'hi\'); sys.exit(3)"'})
        assert out["exit_code"] == 3
        assert out["stdout"].strip() == "hi"

    @pytest.mark.asyncio
    async def test_runs_in_workspace(self, workspace: Path) -> None:
        cap = RunShellCommandCapability(workspace=Workspace.at(workspace))
        out = await cap.invoke({"command": f'"{sys.executable}" -c "import os; print(os.listdir())"', "cwd": "src"})
        assert "main.py" in out["stdout"]

    @pytest.mark.asyncio
    async def test_child_is_killed_on_timeout(self, workspace: Path) -> None:
        cap = RunShellCommandCapability(workspace=Workspace.at(workspace))
        with pytest.raises(CapabilityTimeoutError):
            await cap.invoke({"command": f'"{sys.executable}" -c "import time; time.sleep(10)"', "timeout_seconds": 0.2})

    @pytest.mark.asyncio
    @pytest.mark.skipif(sys.platform == "win32", reason="process groups are POSIX only")
    async def test_background_children_die_on_timeout(self, workspace: Path) -> None:
        cap = RunShellCommandCapability(workspace=Workspace.at(workspace))
        with pytest.raises(CapabilityTimeoutError):
            await cap.invoke({"command": _BACKGROUND_SLEEPER, "timeout_seconds": 1.0})

        await _assert_exits(_child_pid(workspace))

    @pytest.mark.asyncio
    @pytest.mark.skipif(sys.platform == "win32", reason="process groups are POSIX only")
    async def test_background_children_die_on_cancel(self, workspace: Path) -> None:
        cap = RunShellCommandCapability(workspace=Workspace.at(workspace))
        task = asyncio.create_task(cap.invoke({"command": _BACKGROUND_SLEEPER, "timeout_seconds": 30}))
        pid_file = workspace / "child.pid"
        for _ in range(500):
            if pid_file.exists() and pid_file.read_text():
                break
            await asyncio.sleep(0.01)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        await _assert_exits(_child_pid(workspace))


_BACKGROUND_SLEEPER = (
    f'"{sys.executable}" -c "import os, time; '
    f"open('child.pid', 'w').write(str(os.getpid())); time.sleep(30)\" & wait"
)


def _child_pid(workspace: Path) -> int:
    return int((workspace / "child.pid").read_text())


def _alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    stat = Path(f"/proc/{pid}/stat")
    if stat.exists():
        # reparented zombies wait for init to reap them
        return stat.read_text().rsplit(")", 1)[-1].split()[0] != "Z"
    return True


async def _assert_exits(pid: int) -> None:
    for _ in range(200):
        if not _alive(pid):
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"process {pid} still running")


class TestWebFetch:
    @pytest.mark.asyncio
    async def test_fetch_through_shared_client(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<h1>docs</h1>", headers={"content-type": "text/html"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            out = await WebFetchCapability(client=client).invoke({"url": "http://mock/docs", "max_chars": 4})

        assert out["status_code"] == 200
        assert out["url"] == "http://mock/docs"
        assert out["content_type"] == "text/html"
        assert out["content"].startswith("<h1>")
        assert "truncated" in out["content"]

    @pytest.mark.asyncio
    async def test_transport_failure_is_network_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("unreachable", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(NetworkError, match="fetch failed"):
                await WebFetchCapability(client=client).invoke({"url": "http://mock/down"})


def test_builtin_set_and_timeout_override(workspace: Path) -> None:
    caps = {c.descriptor.name: c.descriptor for c in builtin_capabilities(workspace, timeout_ms=5_000)}

    assert sorted(caps) == ["list_directory", "read_file", "run_shell_command", "web_fetch", "write_file"]
    assert caps["read_file"].permission_class is PermissionClass.read
    assert caps["write_file"].confirmation_policy is ConfirmationPolicy.destructive_only
    assert caps["web_fetch"].permission_class is PermissionClass.network
    assert caps["run_shell_command"].permission_class is PermissionClass.shell
    assert caps["read_file"].timeout_ms == 5_000
    assert caps["run_shell_command"].timeout_ms == 120_000
