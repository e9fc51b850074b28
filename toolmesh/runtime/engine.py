from __future__ import annotations

"""Execution engine.

``ExecutionEngine.execute`` runs one ``CapabilityCall`` end to end and always
returns a ``CapabilityResult``; every failure mode is encoded in
``result.error_kind``.

Pipeline per call
-----------------

1. Resolve the capability (``NotFound`` if missing).
2. Validate arguments and trust (``ValidationError`` / ``PermissionDenied``).
3. Confirmation gate (``UserRejected``). ``modified`` arguments are
   re-validated.
4. Acquire a concurrency slot. Only the calling task waits.
5. Checkpoint hook for write-class capabilities (``CheckpointFailed``); runs
   before the action so a failed checkpoint means no mutation happened.
6. Run ``capability.invoke`` under ``descriptor.timeout_ms``.

Timeouts and cancellation
-------------------------

When the deadline passes (or ``cancel(call_id)`` is called) the action task is
signalled to cancel, the call is marked abandoned, the slot is released at once
and any late result is logged and dropped.

Batches
-------

``execute_batch`` / ``iter_batch`` start independent calls together (the
limiter bounds how many run) and hold a call back until every id in its
``depends_on`` has produced a result, successful or not.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import (
    AbstractSet,
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Sequence,
    Tuple,
)

from ..capabilities.base import CapabilityCall, CapabilityDescriptor, CapabilityResult, PermissionClass
from ..capabilities.registry import CapabilityRegistry
from ..errors import CallCancelledError, ErrorKind, ToolmeshError
from ..policy.confirmation import ConfirmationGate
from ..policy.models import ConfirmationOutcome
from ..policy.validator import Validator
from .limiter import ConcurrencyLimiter
from .results import failure_result, success_result

logger = logging.getLogger(__name__)

CheckpointHook = Callable[[CapabilityCall, CapabilityDescriptor], Awaitable[None]]

DEFAULT_CHECKPOINT_CLASSES: AbstractSet[PermissionClass] = frozenset({PermissionClass.write})


@dataclass
class _InFlight:
    call: CapabilityCall
    started: float
    cancelled: asyncio.Event = field(default_factory=asyncio.Event)


class ExecutionEngine:
    """Run validated, confirmed calls with bounded concurrency and deadlines."""

    def __init__(
        self,
        registry: CapabilityRegistry,
        validator: Optional[Validator] = None,
        gate: Optional[ConfirmationGate] = None,
        limiter: Optional[ConcurrencyLimiter] = None,
        *,
        checkpoint_hook: Optional[CheckpointHook] = None,
        checkpoint_classes: AbstractSet[PermissionClass] = DEFAULT_CHECKPOINT_CLASSES,
    ) -> None:
        """
        Initialize the engine.

        Args:
            registry: Source of capabilities, resolved per call.
            validator: Argument/trust validator; defaults to ``Validator()``.
            gate: Confirmation gate; defaults to a gate with no approval
                handler (every solicited call is rejected).
            limiter: Shared concurrency limiter; defaults to 4 slots.
            checkpoint_hook: Awaited before actions whose permission class is
                in ``checkpoint_classes``.
            checkpoint_classes: Permission classes that require a checkpoint.
        """
        self._registry = registry
        self._validator = validator or Validator()
        self._gate = gate or ConfirmationGate()
        self._limiter = limiter or ConcurrencyLimiter(4)
        self._checkpoint_hook = checkpoint_hook
        self._checkpoint_classes = frozenset(checkpoint_classes)
        self._in_flight: Dict[str, _InFlight] = {}

    @property
    def registry(self) -> CapabilityRegistry:
        return self._registry

    @property
    def limiter(self) -> ConcurrencyLimiter:
        return self._limiter

    @property
    def gate(self) -> ConfirmationGate:
        return self._gate

    def in_flight(self) -> List[str]:
        """Ids of calls that have been accepted and have not produced a result yet."""
        return list(self._in_flight)

    def cancel(self, call_id: str) -> bool:
        """Request cancellation of an in-flight call.

        Best effort: the call resolves with ``Cancelled`` at its next
        suspension point, and a running action is signalled to stop.

        Returns:
            False if no call with ``call_id`` is in flight.
        """
        entry = self._in_flight.get(call_id)
        if entry is None:
            return False
        logger.info("Cancellation requested for call %s ('%s')", call_id, entry.call.capability_name)
        entry.cancelled.set()
        return True

    # ---------------------------------------------------------------
    # Single call
    # ---------------------------------------------------------------

    async def execute(self, call: CapabilityCall, *, trust_level: Optional[PermissionClass] = None) -> CapabilityResult:
        """
        Execute one call and return its result. Never raises for call failures.

        Args:
            call: The call to run. Its id must not belong to another in-flight call.
            trust_level: Caller trust override for this call.
        """
        if call.id in self._in_flight:
            return failure_result(call.id, ErrorKind.validation_error, f"call id '{call.id}' is already in flight")

        entry = _InFlight(call=call, started=time.monotonic())
        self._in_flight[call.id] = entry
        try:
            return await self._run(call, entry, trust_level)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Unexpected failure while executing call %s", call.id)
            return self._fail(entry, ErrorKind.execution_error, f"{type(e).__name__}: {e}")
        finally:
            self._in_flight.pop(call.id, None)

    async def _run(
        self, call: CapabilityCall, entry: _InFlight, trust_level: Optional[PermissionClass]
    ) -> CapabilityResult:
        try:
            cap = self._registry.get(call.capability_name)
        except ToolmeshError as e:
            return self._fail(entry, e.kind, e.message)
        descriptor = cap.descriptor

        validation = self._validator.validate(call, descriptor, trust_level=trust_level)
        if not validation.ok:
            kind = ErrorKind.permission_denied if validation.permission_denied else ErrorKind.validation_error
            return self._fail(entry, kind, "; ".join(validation.errors), descriptor=descriptor)

        try:
            decision = await self._await_or_cancel(asyncio.ensure_future(self._gate.confirm(call, descriptor)), entry)
        except CallCancelledError as e:
            return self._fail(entry, e.kind, e.message, descriptor=descriptor)

        if decision.outcome == ConfirmationOutcome.rejected:
            logger.info("Call %s to '%s' rejected: %s", call.id, descriptor.name, decision.reason or "no reason given")
            return self._fail(entry, ErrorKind.user_rejected, decision.reason or "call rejected", descriptor=descriptor)
        if decision.outcome == ConfirmationOutcome.modified:
            call = call.model_copy(update={"arguments": dict(decision.arguments or {})})
            validation = self._validator.validate(call, descriptor, trust_level=trust_level)
            if not validation.ok:
                kind = ErrorKind.permission_denied if validation.permission_denied else ErrorKind.validation_error
                return self._fail(entry, kind, "modified arguments: " + "; ".join(validation.errors), descriptor=descriptor)

        try:
            await self._acquire_slot(entry)
        except CallCancelledError as e:
            return self._fail(entry, e.kind, e.message, descriptor=descriptor)

        try:
            if self._checkpoint_hook is not None and descriptor.permission_class in self._checkpoint_classes:
                try:
                    await self._checkpoint_hook(call, descriptor)
                except Exception as e:
                    logger.warning("Checkpoint failed before call %s to '%s': %s", call.id, descriptor.name, e)
                    return self._fail(entry, ErrorKind.checkpoint_failed, f"checkpoint failed: {e}", descriptor=descriptor)
            if entry.cancelled.is_set():
                return self._fail(entry, ErrorKind.cancelled, "call cancelled", descriptor=descriptor)
            return await self._invoke(cap.invoke(dict(call.arguments)), entry, descriptor)
        finally:
            self._limiter.release()

    async def _invoke(self, action_coro: Awaitable[Any], entry: _InFlight, descriptor: CapabilityDescriptor) -> CapabilityResult:
        action = asyncio.ensure_future(action_coro)
        cancel_waiter = asyncio.ensure_future(entry.cancelled.wait())
        try:
            done, _ = await asyncio.wait(
                {action, cancel_waiter},
                timeout=descriptor.timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            action.cancel()
            raise
        finally:
            cancel_waiter.cancel()

        if action not in done:
            action.cancel()
            action.add_done_callback(self._discard_late_result(entry.call.id, descriptor.name))
            if entry.cancelled.is_set():
                kind, message = ErrorKind.cancelled, "call cancelled"
            else:
                kind, message = ErrorKind.timeout, f"capability '{descriptor.name}' exceeded {descriptor.timeout_ms} ms"
                logger.warning("Call %s to '%s' timed out; abandoning the action", entry.call.id, descriptor.name)
            return self._fail(entry, kind, message, descriptor=descriptor, abandoned=True)

        try:
            output = action.result()
        except asyncio.CancelledError:
            return self._fail(entry, ErrorKind.cancelled, "action was cancelled", descriptor=descriptor)
        except ToolmeshError as e:
            return self._fail(entry, e.kind, e.message, descriptor=descriptor, output=e.output)
        except Exception as e:
            logger.debug("Capability '%s' raised", descriptor.name, exc_info=True)
            return self._fail(entry, ErrorKind.execution_error, f"{type(e).__name__}: {e}", descriptor=descriptor)

        return success_result(
            entry.call.id,
            output,
            duration_ms=self._elapsed_ms(entry),
            source=descriptor.source,
        )

    async def _acquire_slot(self, entry: _InFlight) -> None:
        acquire = asyncio.ensure_future(self._limiter.acquire())
        try:
            await self._await_or_cancel(acquire, entry)
        except BaseException:
            if acquire.done() and not acquire.cancelled() and acquire.exception() is None:
                self._limiter.release()
            raise

    @staticmethod
    async def _await_or_cancel(task: "asyncio.Future[Any]", entry: _InFlight) -> Any:
        """Wait for ``task`` unless the call is cancelled first."""
        waiter = asyncio.ensure_future(entry.cancelled.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()
        if task.done():
            return task.result()
        task.cancel()
        raise CallCancelledError("call cancelled")

    @staticmethod
    def _discard_late_result(call_id: str, name: str) -> Callable[["asyncio.Future[Any]"], None]:
        def _callback(task: "asyncio.Future[Any]") -> None:
            if task.cancelled():
                logger.debug("Abandoned call %s to '%s' stopped after cancellation", call_id, name)
                return
            exc = task.exception()
            if exc is not None:
                logger.debug("Abandoned call %s to '%s' failed late: %s", call_id, name, exc)
            else:
                logger.warning("Discarding late result of abandoned call %s to '%s'", call_id, name)

        return _callback

    @staticmethod
    def _elapsed_ms(entry: _InFlight) -> float:
        return (time.monotonic() - entry.started) * 1000.0

    def _fail(
        self,
        entry: _InFlight,
        kind: ErrorKind,
        message: str,
        *,
        descriptor: Optional[CapabilityDescriptor] = None,
        output: Any = None,
        abandoned: bool = False,
    ) -> CapabilityResult:
        return failure_result(
            entry.call.id,
            kind,
            message,
            output=output,
            duration_ms=self._elapsed_ms(entry),
            abandoned=abandoned,
            source=descriptor.source if descriptor is not None else None,
        )

    # ---------------------------------------------------------------
    # Batches
    # ---------------------------------------------------------------

    async def execute_batch(
        self, calls: Sequence[CapabilityCall], *, trust_level: Optional[PermissionClass] = None
    ) -> List[CapabilityResult]:
        """Run a batch and return the results in submission order."""
        results: List[Optional[CapabilityResult]] = [None] * len(calls)
        async for index, result in self._run_batch(calls, trust_level):
            results[index] = result
        return [r for r in results if r is not None]

    async def iter_batch(
        self, calls: Sequence[CapabilityCall], *, trust_level: Optional[PermissionClass] = None
    ) -> AsyncIterator[CapabilityResult]:
        """Run a batch and yield each result as soon as it is available."""
        async for _index, result in self._run_batch(calls, trust_level):
            yield result

    def _plan_batch(self, calls: Sequence[CapabilityCall]) -> Tuple[Dict[str, int], Dict[int, CapabilityResult]]:
        """Index the batch and pre-resolve calls that cannot run."""
        index_of: Dict[str, int] = {}
        rejected: Dict[int, CapabilityResult] = {}
        for i, call in enumerate(calls):
            if call.id in index_of:
                rejected[i] = failure_result(call.id, ErrorKind.validation_error, f"duplicate call id '{call.id}' in batch")
            else:
                index_of[call.id] = i

        for i, call in enumerate(calls):
            if i in rejected:
                continue
            missing = [dep for dep in call.depends_on if dep not in index_of]
            if missing:
                rejected[i] = failure_result(
                    call.id, ErrorKind.validation_error, f"unknown dependency ids: {', '.join(missing)}"
                )

        # Kahn's algorithm: whatever cannot be peeled off sits on or behind a cycle.
        pending = {i for i in range(len(calls)) if i not in rejected}
        deps = {i: {index_of[d] for d in calls[i].depends_on} & pending for i in pending}
        ready = [i for i in pending if not deps[i]]
        resolved = set()
        while ready:
            i = ready.pop()
            resolved.add(i)
            for j in pending - resolved:
                if i in deps[j]:
                    deps[j].discard(i)
                    if not deps[j]:
                        ready.append(j)
        for i in sorted(pending - resolved):
            rejected[i] = failure_result(calls[i].id, ErrorKind.validation_error, "dependency cycle detected")
        return index_of, rejected

    async def _run_batch(
        self, calls: Sequence[CapabilityCall], trust_level: Optional[PermissionClass]
    ) -> AsyncIterator[Tuple[int, CapabilityResult]]:
        calls = list(calls)
        index_of, rejected = self._plan_batch(calls)
        finished = [asyncio.Event() for _ in calls]
        queue: "asyncio.Queue[Tuple[int, CapabilityResult]]" = asyncio.Queue()

        for i, result in rejected.items():
            finished[i].set()
            queue.put_nowait((i, result))

        async def _run_one(i: int) -> None:
            try:
                for dep in calls[i].depends_on:
                    await finished[index_of[dep]].wait()
                result = await self.execute(calls[i], trust_level=trust_level)
                queue.put_nowait((i, result))
            finally:
                finished[i].set()

        tasks = [asyncio.create_task(_run_one(i)) for i in range(len(calls)) if i not in rejected]
        try:
            for _ in range(len(calls)):
                yield await queue.get()
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
