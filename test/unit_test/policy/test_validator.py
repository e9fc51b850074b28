from __future__ import annotations

import pytest

from toolmesh.capabilities.base import CapabilityCall, CapabilityDescriptor, PermissionClass
from toolmesh.policy.models import ValidationConfig
from toolmesh.policy.validator import Validator


def _descriptor(permission: PermissionClass = PermissionClass.read) -> CapabilityDescriptor:
    return CapabilityDescriptor(
        name="read_file",
        param_schema={
            "type": "object",
            "properties": {"path": {"type": "string"}, "limit": {"type": "integer", "minimum": 1}},
            "required": ["path"],
            "additionalProperties": False,
        },
        permission_class=permission,
    )


def _call(**arguments) -> CapabilityCall:
    return CapabilityCall(capability_name="read_file", arguments=arguments)


def test_valid_call_passes() -> None:
    result = Validator().validate(_call(path="a.txt"), _descriptor())
    assert result.ok is True
    assert result.errors == ()
    assert result.permission_denied is False


@pytest.mark.parametrize(
    "arguments,fragment",
    [
        ({}, "'path' is a required property"),
        ({"path": 3}, "path: 3 is not of type 'string'"),
        ({"path": "a", "limit": 0}, "limit:"),
        ({"path": "a", "extra": True}, "Additional properties"),
    ],
)
def test_schema_violations_are_reported(arguments, fragment) -> None:
    result = Validator().validate(_call(**arguments), _descriptor())
    assert result.ok is False
    assert result.permission_denied is False
    assert len(result.errors) == 1
    assert fragment in result.errors[0]


def test_schema_is_checked_before_trust() -> None:
    validator = Validator(ValidationConfig(trust_level=PermissionClass.none))
    result = validator.validate(_call(), _descriptor(PermissionClass.shell))
    assert result.ok is False
    assert result.permission_denied is False


def test_trust_level_below_permission_class_is_denied() -> None:
    validator = Validator(ValidationConfig(trust_level=PermissionClass.read))
    result = validator.validate(_call(path="a"), _descriptor(PermissionClass.write))
    assert result.ok is False
    assert result.permission_denied is True
    assert "requires 'write'" in result.errors[0]


def test_trust_override_per_call() -> None:
    validator = Validator(ValidationConfig(trust_level=PermissionClass.read))
    result = validator.validate(_call(path="a"), _descriptor(PermissionClass.shell), trust_level=PermissionClass.shell)
    assert result.ok is True


def test_oversized_arguments_fail() -> None:
    validator = Validator(ValidationConfig(max_argument_bytes=32))
    result = validator.validate(_call(path="x" * 100), _descriptor())
    assert result.ok is False
    assert "arguments too large" in result.errors[0]


def test_invalid_schema_is_a_validation_error() -> None:
    descriptor = CapabilityDescriptor(name="broken", param_schema={"type": "not-a-type"})
    err = Validator().check_arguments({}, descriptor)
    assert err is not None
    assert err.startswith("invalid parameter schema")
