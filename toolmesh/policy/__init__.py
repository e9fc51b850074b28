"""Policy layer: argument validation, trust checks and confirmation gating.

Policy decisions live outside capability implementations:

- ``Validator`` checks argument shape (JSON Schema) and the caller's trust
  level; a trust failure never reaches the confirmation gate.
- ``ConfirmationGate`` applies each descriptor's confirmation policy and asks an
  injected approval handler when approval is needed.
- ``DefaultRiskHeuristic`` is the deterministic scorer behind the ``adaptive``
  policy.
"""

from .confirmation import ApprovalHandler, ConfirmationGate, DefaultRiskHeuristic, RiskHeuristic
from .models import (
    ConfirmationConfig,
    ConfirmationDecision,
    ConfirmationOutcome,
    ConfirmationRequest,
    RiskLevel,
    ValidationConfig,
    ValidationResult,
)
from .validator import Validator

__all__ = [
    "ApprovalHandler",
    "ConfirmationGate",
    "DefaultRiskHeuristic",
    "RiskHeuristic",
    "ConfirmationConfig",
    "ConfirmationDecision",
    "ConfirmationOutcome",
    "ConfirmationRequest",
    "RiskLevel",
    "ValidationConfig",
    "ValidationResult",
    "Validator",
]
