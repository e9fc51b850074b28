from __future__ import annotations

"""Confirmation gate.

The gate decides, per call, whether explicit approval is required before the
call runs, and if so asks the injected ``ApprovalHandler``.

State machine per call: ``pending -> approved | modified | rejected``.

Solicitation rules by ``ConfirmationPolicy``:

- ``never``: auto-approve.
- ``always``: always solicit.
- ``destructive-only``: solicit iff the permission class is write or shell.
- ``adaptive``: solicit iff the ``RiskHeuristic`` scores the call at or above
  ``ConfirmationConfig.adaptive_risk_threshold``.

Capabilities approved with ``approved_always`` skip solicitation for the rest
of the session. When approval is needed and no handler is configured, the call
is rejected.
"""

import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterator, Optional, Protocol, Set, Tuple, Union

from ..capabilities.base import CapabilityCall, CapabilityDescriptor, ConfirmationPolicy, PermissionClass
from .models import (
    ConfirmationConfig,
    ConfirmationDecision,
    ConfirmationOutcome,
    ConfirmationRequest,
    RiskLevel,
    escalate,
    risk_from_permission,
    risk_ge,
)

logger = logging.getLogger(__name__)

ApprovalHandler = Callable[[ConfirmationRequest], Awaitable[ConfirmationDecision]]

_DESTRUCTIVE_PATTERNS = (
    re.compile(r"\brm\s"),
    re.compile(r"\bsudo\b"),
    re.compile(r"\bmkfs"),
    re.compile(r"\bdd\s"),
    re.compile(r">\s*/"),
    re.compile(r"\bchmod\b"),
    re.compile(r"\bchown\b"),
    re.compile(r":\(\)\s*\{"),
    re.compile(r"\b(curl|wget)\b[^|]*\|\s*(ba|z)?sh\b"),
)

_PATH_KEYS = {"path", "file", "filename", "directory", "dir", "cwd", "target", "destination", "source"}


class RiskHeuristic(Protocol):
    """Deterministic risk assessment used by the adaptive confirmation policy."""

    def assess(self, call: CapabilityCall, descriptor: CapabilityDescriptor) -> RiskLevel: ...


def _iter_strings(value: Any, key: str = "") -> Iterator[Tuple[str, str]]:
    if isinstance(value, str):
        yield key, value
    elif isinstance(value, dict):
        for k, v in value.items():
            yield from _iter_strings(v, str(k))
    elif isinstance(value, (list, tuple)):
        for v in value:
            yield from _iter_strings(v, key)


def _is_path_key(key: str) -> bool:
    k = key.lower()
    return k in _PATH_KEYS or k.endswith("_path") or k.endswith("path")


class DefaultRiskHeuristic(RiskHeuristic):
    """Score a call from its permission class and its arguments.

    1. Baseline from the permission class (none/read low, network/write
       medium, shell high).
    2. High if any string argument matches a destructive command pattern.
    3. High if a path-like argument escapes ``workspace_root``.
    4. One level up if the serialized arguments exceed ``large_argument_bytes``.

    Only string operations are used, so identical inputs always score the same.
    """

    def __init__(self, workspace_root: Optional[Union[str, Path]] = None, *, large_argument_bytes: int = 16_384) -> None:
        self._root = os.path.normpath(os.path.abspath(str(workspace_root))) if workspace_root is not None else None
        self._large = large_argument_bytes

    def assess(self, call: CapabilityCall, descriptor: CapabilityDescriptor) -> RiskLevel:
        risk = risk_from_permission(descriptor.permission_class)
        strings = list(_iter_strings(call.arguments))

        for _key, text in strings:
            if any(p.search(text) for p in _DESTRUCTIVE_PATTERNS):
                return RiskLevel.high

        if self._root is not None:
            for key, text in strings:
                if _is_path_key(key) and self._escapes_root(text):
                    return RiskLevel.high

        size = len(json.dumps(call.arguments, default=str).encode("utf-8"))
        if size > self._large:
            risk = escalate(risk)
        return risk

    def _escapes_root(self, value: str) -> bool:
        candidate = value if os.path.isabs(value) else os.path.join(self._root, value)
        normalized = os.path.normpath(candidate)
        try:
            return os.path.commonpath([self._root, normalized]) != self._root
        except ValueError:
            return True


class ConfirmationGate:
    """Decide whether a call needs approval and obtain the decision."""

    def __init__(
        self,
        approval_handler: Optional[ApprovalHandler] = None,
        *,
        config: Optional[ConfirmationConfig] = None,
        risk_heuristic: Optional[RiskHeuristic] = None,
    ) -> None:
        self._handler = approval_handler
        self._cfg = config or ConfirmationConfig()
        self._heuristic: RiskHeuristic = risk_heuristic or DefaultRiskHeuristic(
            large_argument_bytes=self._cfg.large_argument_bytes
        )
        self._always_allowed: Set[str] = set()

    @property
    def config(self) -> ConfirmationConfig:
        return self._cfg

    def set_approval_handler(self, handler: Optional[ApprovalHandler]) -> None:
        self._handler = handler

    def reset_session(self) -> None:
        """Forget every ``approved_always`` decision."""
        self._always_allowed.clear()

    def is_always_allowed(self, name: str) -> bool:
        return name in self._always_allowed

    def requires_confirmation(
        self, call: CapabilityCall, descriptor: CapabilityDescriptor
    ) -> Tuple[bool, Optional[RiskLevel], str]:
        """
        Apply the descriptor's confirmation policy to a call.

        Returns:
            ``(solicit, risk, reason)``; ``risk`` is only computed for the
            adaptive policy.
        """
        policy = descriptor.confirmation_policy
        if policy == ConfirmationPolicy.never:
            return False, None, "policy=never"
        if descriptor.name in self._always_allowed:
            return False, None, "approved for session"
        if policy == ConfirmationPolicy.always:
            return True, None, "policy=always"
        if policy == ConfirmationPolicy.destructive_only:
            destructive = descriptor.permission_class in (PermissionClass.write, PermissionClass.shell)
            return destructive, None, f"policy=destructive-only permission={descriptor.permission_class.value}"
        risk = self._heuristic.assess(call, descriptor)
        solicit = risk_ge(risk, self._cfg.adaptive_risk_threshold)
        return solicit, risk, f"policy=adaptive risk={risk.value}"

    async def confirm(self, call: CapabilityCall, descriptor: CapabilityDescriptor) -> ConfirmationDecision:
        """
        Resolve the confirmation state machine for ``call``.

        Returns:
            The decision. Auto-approved calls return ``approved`` without
            consulting the handler.
        """
        solicit, risk, reason = self.requires_confirmation(call, descriptor)
        if not solicit:
            return ConfirmationDecision.approve()

        if self._handler is None:
            logger.info("Confirmation needed for '%s' (%s) but no approval handler is configured", descriptor.name, reason)
            return ConfirmationDecision.reject("no approval handler configured")

        request = ConfirmationRequest(call=call, descriptor=descriptor, risk=risk, reason=reason)
        logger.debug("Soliciting approval for call %s to '%s' (%s)", call.id, descriptor.name, reason)
        try:
            decision = await self._handler(request)
        except Exception as e:
            logger.warning("Approval handler failed for call %s: %s", call.id, e, exc_info=True)
            return ConfirmationDecision.reject(f"approval handler failed: {e}")

        if decision.outcome == ConfirmationOutcome.modified and decision.arguments is None:
            return ConfirmationDecision.reject("modified decision without arguments")
        if decision.outcome == ConfirmationOutcome.approved_always:
            self._always_allowed.add(descriptor.name)
        return decision
