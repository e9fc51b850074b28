from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import Field

from ..capabilities.base import CapabilityCall, CapabilityDescriptor, PermissionClass
from ..schemas.base import BaseSchema


class RiskLevel(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"


class ConfirmationOutcome(str, Enum):
    """
    Terminal states of the per-call confirmation state machine.

    Attributes:
        approved: Run the call as issued.
        approved_always: Run the call and stop soliciting for this capability
            for the rest of the session.
        modified: Run the call with replacement arguments.
        rejected: Do not run the call.
    """
    approved = "approved"
    approved_always = "approved_always"
    modified = "modified"
    rejected = "rejected"


class ValidationConfig(BaseSchema):
    """
    Configuration for argument validation.

    Includes the caller's trust level and basic size guardrails.
    """
    trust_level: PermissionClass = PermissionClass.write
    max_argument_bytes: int = Field(default=64_000, ge=1, le=5_000_000)


class ConfirmationConfig(BaseSchema):
    """
    Configuration for the confirmation gate.

    ``adaptive_risk_threshold`` is the lowest risk level at which the adaptive
    policy solicits approval.
    """
    adaptive_risk_threshold: RiskLevel = RiskLevel.medium
    large_argument_bytes: int = Field(default=16_384, ge=1)


@dataclass(frozen=True)
class ValidationResult:
    """
    Outcome of validating a call against its descriptor.

    Attributes:
        ok: True when the call may proceed to confirmation.
        errors: Human-readable violations; at most one schema violation is
            reported because the first one short-circuits.
        permission_denied: True when the call failed the trust check.
    """
    ok: bool
    errors: tuple[str, ...] = ()
    permission_denied: bool = False

    @classmethod
    def success(cls) -> "ValidationResult":
        return cls(ok=True)


@dataclass(frozen=True)
class ConfirmationRequest:
    """What an approval handler is asked to decide on."""
    call: CapabilityCall
    descriptor: CapabilityDescriptor
    risk: Optional[RiskLevel] = None
    reason: str = ""


@dataclass(frozen=True)
class ConfirmationDecision:
    """
    Decision returned by an approval handler.

    ``arguments`` is required for ``modified`` and ignored otherwise.
    """
    outcome: ConfirmationOutcome
    arguments: Optional[Dict[str, Any]] = None
    reason: Optional[str] = None

    @classmethod
    def approve(cls) -> "ConfirmationDecision":
        return cls(outcome=ConfirmationOutcome.approved)

    @classmethod
    def reject(cls, reason: Optional[str] = None) -> "ConfirmationDecision":
        return cls(outcome=ConfirmationOutcome.rejected, reason=reason)

    @classmethod
    def modify(cls, arguments: Dict[str, Any]) -> "ConfirmationDecision":
        return cls(outcome=ConfirmationOutcome.modified, arguments=dict(arguments))


_RISK_ORDER = {RiskLevel.low: 0, RiskLevel.medium: 1, RiskLevel.high: 2}


def risk_ge(a: RiskLevel, b: RiskLevel) -> bool:
    """Check if risk level 'a' is greater than or equal to 'b'."""
    return _RISK_ORDER[a] >= _RISK_ORDER[b]


def escalate(risk: RiskLevel) -> RiskLevel:
    """Return the next risk level up, saturating at high."""
    if risk == RiskLevel.low:
        return RiskLevel.medium
    return RiskLevel.high


def risk_from_permission(permission: PermissionClass) -> RiskLevel:
    """Map a permission class to its baseline RiskLevel."""
    if permission in (PermissionClass.none, PermissionClass.read):
        return RiskLevel.low
    if permission in (PermissionClass.network, PermissionClass.write):
        return RiskLevel.medium
    return RiskLevel.high
