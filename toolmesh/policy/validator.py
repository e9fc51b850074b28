"""Argument and permission validation.

``Validator.validate`` runs two checks in order:

1. Argument shape against the descriptor's JSON Schema (Draft 7). The first
   violation short-circuits. Oversized arguments also fail here.
2. Permission class against the caller's trust level. A call that needs more
   privilege than the caller holds fails with ``permission_denied`` and never
   reaches the confirmation gate.

The validator has no network or filesystem side effects.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError

from ..capabilities.base import CapabilityCall, CapabilityDescriptor, PermissionClass
from .models import ValidationConfig, ValidationResult

logger = logging.getLogger(__name__)


def _error_path(error: Any) -> str:
    return ".".join(str(p) for p in error.path) if error.path else "root"


class Validator:
    """Check calls against descriptor schemas and the caller's trust level."""

    def __init__(self, config: Optional[ValidationConfig] = None) -> None:
        self._cfg = config or ValidationConfig()

    @property
    def config(self) -> ValidationConfig:
        return self._cfg

    def validate(
        self,
        call: CapabilityCall,
        descriptor: CapabilityDescriptor,
        *,
        trust_level: Optional[PermissionClass] = None,
    ) -> ValidationResult:
        """
        Validate a call against its descriptor.

        Args:
            call: The call whose ``arguments`` are checked.
            descriptor: The resolved descriptor.
            trust_level: Caller trust override; defaults to the configured level.

        Returns:
            A ``ValidationResult``; ``permission_denied`` is set when the trust
            check failed.
        """
        err = self.check_arguments(call.arguments, descriptor)
        if err is not None:
            return ValidationResult(ok=False, errors=(err,))

        trust = trust_level or self._cfg.trust_level
        if descriptor.permission_class.exceeds(trust):
            return ValidationResult(
                ok=False,
                errors=(
                    f"capability '{descriptor.name}' requires '{descriptor.permission_class.value}' "
                    f"permission but caller trust is '{trust.value}'",
                ),
                permission_denied=True,
            )
        return ValidationResult.success()

    def check_arguments(self, arguments: Dict[str, Any], descriptor: CapabilityDescriptor) -> Optional[str]:
        """Return the first schema violation for ``arguments``, or None."""
        if not isinstance(arguments, dict):
            return "arguments must be an object"
        raw = json.dumps(arguments, default=str).encode("utf-8")
        if len(raw) > self._cfg.max_argument_bytes:
            return f"arguments too large ({len(raw)} bytes > {self._cfg.max_argument_bytes})"

        try:
            Draft7Validator.check_schema(descriptor.param_schema)
        except SchemaError as e:
            logger.warning("Capability '%s' has an invalid parameter schema: %s", descriptor.name, e.message)
            return f"invalid parameter schema: {e.message}"
        error = next(Draft7Validator(descriptor.param_schema).iter_errors(arguments), None)
        if error is None:
            return None
        return f"{_error_path(error)}: {error.message}"
