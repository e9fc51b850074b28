from __future__ import annotations

import asyncio
import dataclasses
from pathlib import Path
from typing import List

import pytest

from toolmesh.capabilities.base import (
    CapabilityCall,
    CapabilityDescriptor,
    ConfirmationPolicy,
    PermissionClass,
    define_capability,
)
from toolmesh.capabilities.builtin import ReadFileCapability, Workspace, WriteFileCapability
from toolmesh.capabilities.registry import CapabilityRegistry
from toolmesh.errors import ErrorKind, NetworkError
from toolmesh.policy.confirmation import ConfirmationGate
from toolmesh.policy.models import ConfirmationDecision, ConfirmationRequest, ValidationConfig
from toolmesh.policy.validator import Validator
from toolmesh.runtime.engine import ExecutionEngine
from toolmesh.runtime.limiter import ConcurrencyLimiter

_ECHO_SCHEMA = {"type": "object", "properties": {"text": {"type": "string"}}, "required": ["text"]}


def _engine(registry: CapabilityRegistry, **kwargs) -> ExecutionEngine:
    limiter = kwargs.pop("limiter", None) or ConcurrencyLimiter(4)
    return ExecutionEngine(registry, kwargs.pop("validator", None), kwargs.pop("gate", None), limiter, **kwargs)


def _registry(*caps) -> CapabilityRegistry:
    reg = CapabilityRegistry()
    for cap in caps:
        reg.register(cap)
    return reg


async def _echo(text: str) -> str:
    return text


@pytest.mark.asyncio
async def test_read_file_success(workspace: Path) -> None:
    engine = _engine(_registry(ReadFileCapability(workspace=Workspace.at(workspace))))
    call = CapabilityCall(capability_name="read_file", arguments={"path": "notes.txt"})

    result = await engine.execute(call)

    assert result.success is True
    assert result.call_id == call.id
    assert result.output["content"] == "hello workspace\n"
    assert result.metadata.bytes_produced > 0
    assert result.metadata.duration_ms >= 0
    assert engine.in_flight() == []


@pytest.mark.asyncio
async def test_unknown_capability_is_not_found() -> None:
    engine = _engine(CapabilityRegistry())
    result = await engine.execute(CapabilityCall(capability_name="nope"))
    assert result.success is False
    assert result.error_kind is ErrorKind.not_found


@pytest.mark.asyncio
async def test_schema_violation_is_validation_error() -> None:
    engine = _engine(_registry(define_capability(_echo, name="echo", param_schema=_ECHO_SCHEMA)))
    result = await engine.execute(CapabilityCall(capability_name="echo", arguments={"text": 5}))
    assert result.error_kind is ErrorKind.validation_error
    assert "text" in (result.error_message or "")


@pytest.mark.asyncio
async def test_permission_denied_never_invokes_action() -> None:
    invoked: List[str] = []

    async def wipe() -> None:
        invoked.append("wipe")

    cap = define_capability(wipe, permission_class=PermissionClass.shell)
    engine = _engine(_registry(cap), validator=Validator(ValidationConfig(trust_level=PermissionClass.read)))

    result = await engine.execute(CapabilityCall(capability_name="wipe"))

    assert result.error_kind is ErrorKind.permission_denied
    assert invoked == []


@pytest.mark.asyncio
async def test_rejected_write_leaves_workspace_untouched(workspace: Path) -> None:
    write = WriteFileCapability(workspace=Workspace.at(workspace))
    write = dataclasses.replace(
        write, descriptor=write.descriptor.model_copy(update={"confirmation_policy": ConfirmationPolicy.always})
    )
    requests: List[ConfirmationRequest] = []

    async def reject(request: ConfirmationRequest) -> ConfirmationDecision:
        requests.append(request)
        return ConfirmationDecision.reject("not today")

    engine = _engine(_registry(write), gate=ConfirmationGate(reject))
    call = CapabilityCall(capability_name="write_file", arguments={"path": "out.txt", "content": "data"})

    result = await engine.execute(call)

    assert result.error_kind is ErrorKind.user_rejected
    assert result.error_message == "not today"
    assert len(requests) == 1
    assert requests[0].call.id == call.id
    assert not (workspace / "out.txt").exists()


@pytest.mark.asyncio
async def test_write_without_approval_handler_is_rejected(workspace: Path) -> None:
    engine = _engine(_registry(WriteFileCapability(workspace=Workspace.at(workspace))))
    call = CapabilityCall(capability_name="write_file", arguments={"path": "out.txt", "content": "data"})
    result = await engine.execute(call)
    assert result.error_kind is ErrorKind.user_rejected
    assert not (workspace / "out.txt").exists()


@pytest.mark.asyncio
async def test_modified_arguments_are_revalidated_and_used() -> None:
    cap = define_capability(_echo, name="echo", param_schema=_ECHO_SCHEMA, confirmation_policy=ConfirmationPolicy.always)

    async def rewrite(request: ConfirmationRequest) -> ConfirmationDecision:
        return ConfirmationDecision.modify({"text": "edited"})

    engine = _engine(_registry(cap), gate=ConfirmationGate(rewrite))
    result = await engine.execute(CapabilityCall(capability_name="echo", arguments={"text": "original"}))
    assert result.success is True
    assert result.output == "edited"

    async def break_it(request: ConfirmationRequest) -> ConfirmationDecision:
        return ConfirmationDecision.modify({"text": 1})

    engine.gate.set_approval_handler(break_it)
    result = await engine.execute(CapabilityCall(capability_name="echo", arguments={"text": "original"}))
    assert result.error_kind is ErrorKind.validation_error
    assert (result.error_message or "").startswith("modified arguments")


@pytest.mark.asyncio
async def test_action_errors_are_mapped() -> None:
    async def explode() -> None:
        raise ValueError("boom")

    async def offline() -> None:
        raise NetworkError("link down")

    engine = _engine(_registry(define_capability(explode), define_capability(offline)))

    failed = await engine.execute(CapabilityCall(capability_name="explode"))
    assert failed.error_kind is ErrorKind.execution_error
    assert failed.error_message == "ValueError: boom"

    network = await engine.execute(CapabilityCall(capability_name="offline"))
    assert network.error_kind is ErrorKind.network_error
    assert network.error_message == "link down"


@pytest.mark.asyncio
async def test_timeout_abandons_action_and_frees_slot() -> None:
    async def slow() -> str:
        await asyncio.sleep(5)
        return "late"

    limiter = ConcurrencyLimiter(1)
    reg = _registry(define_capability(slow, timeout_ms=50), define_capability(_echo, name="echo"))
    engine = _engine(reg, limiter=limiter)

    result = await engine.execute(CapabilityCall(capability_name="slow"))

    assert result.error_kind is ErrorKind.timeout
    assert result.error_message == "capability 'slow' exceeded 50 ms"
    assert result.metadata.abandoned is True
    assert limiter.in_flight == 0

    follow_up = await asyncio.wait_for(engine.execute(CapabilityCall(capability_name="echo", arguments={"text": "ok"})), 1)
    assert follow_up.output == "ok"


@pytest.mark.asyncio
async def test_cancel_in_flight_call() -> None:
    started = asyncio.Event()

    async def wait_forever() -> None:
        started.set()
        await asyncio.sleep(30)

    limiter = ConcurrencyLimiter(2)
    engine = _engine(_registry(define_capability(wait_forever)), limiter=limiter)
    call = CapabilityCall(capability_name="wait_forever")

    task = asyncio.create_task(engine.execute(call))
    await asyncio.wait_for(started.wait(), 1)
    assert engine.in_flight() == [call.id]

    assert engine.cancel(call.id) is True
    result = await asyncio.wait_for(task, 1)

    assert result.error_kind is ErrorKind.cancelled
    assert result.metadata.abandoned is True
    assert limiter.in_flight == 0
    assert engine.cancel(call.id) is False


@pytest.mark.asyncio
async def test_concurrency_limit_is_never_exceeded() -> None:
    async def work(n: int) -> int:
        await asyncio.sleep(0.02)
        return n

    limiter = ConcurrencyLimiter(3)
    engine = _engine(_registry(define_capability(work)), limiter=limiter)
    calls = [CapabilityCall(capability_name="work", arguments={"n": i}) for i in range(10)]

    results = await engine.execute_batch(calls)

    assert [r.output for r in results] == list(range(10))
    assert all(r.success for r in results)
    assert 1 <= limiter.peak <= 3
    assert limiter.in_flight == 0


@pytest.mark.asyncio
async def test_duplicate_in_flight_id_is_rejected() -> None:
    release = asyncio.Event()

    async def hold() -> str:
        await release.wait()
        return "done"

    engine = _engine(_registry(define_capability(hold)))
    call = CapabilityCall(capability_name="hold")
    first = asyncio.create_task(engine.execute(call))
    await asyncio.sleep(0.01)

    second = await engine.execute(call)
    release.set()

    assert second.error_kind is ErrorKind.validation_error
    assert (await first).success is True


class TestCheckpoint:
    @pytest.mark.asyncio
    async def test_checkpoint_runs_before_write_actions(self, workspace: Path) -> None:
        seen: List[str] = []

        async def checkpoint(call: CapabilityCall, descriptor: CapabilityDescriptor) -> None:
            seen.append(descriptor.name)
            assert not (workspace / "out.txt").exists()

        async def approve(request: ConfirmationRequest) -> ConfirmationDecision:
            return ConfirmationDecision.approve()

        ws = Workspace.at(workspace)
        engine = _engine(
            _registry(WriteFileCapability(workspace=ws), ReadFileCapability(workspace=ws)),
            gate=ConfirmationGate(approve),
            checkpoint_hook=checkpoint,
        )

        write = await engine.execute(
            CapabilityCall(capability_name="write_file", arguments={"path": "out.txt", "content": "x"})
        )
        read = await engine.execute(CapabilityCall(capability_name="read_file", arguments={"path": "out.txt"}))

        assert write.success is True
        assert read.success is True
        assert seen == ["write_file"]

    @pytest.mark.asyncio
    async def test_failed_checkpoint_skips_action(self) -> None:
        invoked: List[int] = []

        async def mutate() -> None:
            invoked.append(1)

        async def failing_checkpoint(call: CapabilityCall, descriptor: CapabilityDescriptor) -> None:
            raise OSError("snapshot store full")

        limiter = ConcurrencyLimiter(1)
        engine = _engine(
            _registry(define_capability(mutate, permission_class=PermissionClass.write)),
            limiter=limiter,
            checkpoint_hook=failing_checkpoint,
        )

        result = await engine.execute(CapabilityCall(capability_name="mutate"))

        assert result.error_kind is ErrorKind.checkpoint_failed
        assert "snapshot store full" in (result.error_message or "")
        assert invoked == []
        assert limiter.in_flight == 0


class TestBatch:
    @pytest.mark.asyncio
    async def test_dependencies_run_after_their_prerequisites(self) -> None:
        order: List[str] = []

        async def step(label: str, delay: float = 0.0) -> str:
            await asyncio.sleep(delay)
            order.append(label)
            return label

        engine = _engine(_registry(define_capability(step)))
        a = CapabilityCall(id="a", capability_name="step", arguments={"label": "a", "delay": 0.05})
        b = CapabilityCall(id="b", capability_name="step", arguments={"label": "b"}, depends_on=["a"])
        c = CapabilityCall(id="c", capability_name="step", arguments={"label": "c"})

        results = await engine.execute_batch([b, a, c])

        assert [r.call_id for r in results] == ["b", "a", "c"]
        assert order.index("a") < order.index("b")
        assert order[0] == "c"

    @pytest.mark.asyncio
    async def test_dependent_runs_even_if_dependency_failed(self) -> None:
        async def fail() -> None:
            raise RuntimeError("nope")

        engine = _engine(_registry(define_capability(fail), define_capability(_echo, name="echo")))
        first = CapabilityCall(id="first", capability_name="fail")
        second = CapabilityCall(id="second", capability_name="echo", arguments={"text": "hi"}, depends_on=["first"])

        results = await engine.execute_batch([first, second])

        assert results[0].success is False
        assert results[1].output == "hi"

    @pytest.mark.asyncio
    async def test_cycle_and_unknown_dependency_are_validation_errors(self) -> None:
        engine = _engine(_registry(define_capability(_echo, name="echo")))
        x = CapabilityCall(id="x", capability_name="echo", arguments={"text": "x"}, depends_on=["y"])
        y = CapabilityCall(id="y", capability_name="echo", arguments={"text": "y"}, depends_on=["x"])
        orphan = CapabilityCall(id="o", capability_name="echo", arguments={"text": "o"}, depends_on=["ghost"])
        ok = CapabilityCall(id="ok", capability_name="echo", arguments={"text": "ok"})

        results = await engine.execute_batch([x, y, orphan, ok])

        assert results[0].error_message == "dependency cycle detected"
        assert results[1].error_message == "dependency cycle detected"
        assert results[2].error_kind is ErrorKind.validation_error
        assert results[2].error_message == "unknown dependency ids: ghost"
        assert results[3].output == "ok"

    @pytest.mark.asyncio
    async def test_duplicate_ids_in_batch(self) -> None:
        engine = _engine(_registry(define_capability(_echo, name="echo")))
        one = CapabilityCall(id="same", capability_name="echo", arguments={"text": "1"})
        two = CapabilityCall(id="same", capability_name="echo", arguments={"text": "2"})

        results = await engine.execute_batch([one, two])

        assert results[0].output == "1"
        assert results[1].error_kind is ErrorKind.validation_error

    @pytest.mark.asyncio
    async def test_iter_batch_yields_in_completion_order(self) -> None:
        async def nap(label: str, delay: float) -> str:
            await asyncio.sleep(delay)
            return label

        engine = _engine(_registry(define_capability(nap)))
        slow = CapabilityCall(id="slow", capability_name="nap", arguments={"label": "slow", "delay": 0.1})
        fast = CapabilityCall(id="fast", capability_name="nap", arguments={"label": "fast", "delay": 0.0})

        seen = [r.call_id async for r in engine.iter_batch([slow, fast])]

        assert seen == ["fast", "slow"]
