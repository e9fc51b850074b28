"""Capability definition DTOs exchanged with local sources and remote servers.

A ``CapabilityDefinition`` is the wire shape of a tool:

.. code-block:: json

    {
      "name": "read_file",
      "description": "Read a UTF-8 text file",
      "inputSchema": {"type": "object", "properties": {...}, "required": [...]},
      "permissions": {"filesystem": "read", "network": false, "shell": false},
      "confirmation": "never"
    }

Servers that do not send ``permissions`` are classified from the MCP tool
``annotations`` hints; tools with no hints at all are treated as mutating.
"""

from __future__ import annotations

from typing import Any, Dict, Literal, Optional

from pydantic import ConfigDict, Field

from ..capabilities.base import CapabilityDescriptor, ConfirmationPolicy, PermissionClass
from .base import BaseSchema, _to_camel


class PermissionsSpec(BaseSchema):
    filesystem: Literal["none", "read", "write"] = "none"
    network: bool = False
    shell: bool = False

    def to_permission_class(self) -> PermissionClass:
        if self.shell:
            return PermissionClass.shell
        if self.filesystem == "write":
            return PermissionClass.write
        if self.network:
            return PermissionClass.network
        if self.filesystem == "read":
            return PermissionClass.read
        return PermissionClass.none

    @classmethod
    def from_permission_class(cls, permission: PermissionClass) -> "PermissionsSpec":
        if permission == PermissionClass.shell:
            return cls(filesystem="write", shell=True)
        if permission == PermissionClass.write:
            return cls(filesystem="write")
        if permission == PermissionClass.network:
            return cls(network=True)
        if permission == PermissionClass.read:
            return cls(filesystem="read")
        return cls()


def _permission_from_annotations(annotations: Optional[Dict[str, Any]]) -> PermissionClass:
    """Classify a remote tool from MCP ``ToolAnnotations`` hints."""
    if not annotations:
        return PermissionClass.write
    if annotations.get("destructiveHint") is True:
        return PermissionClass.write
    if annotations.get("readOnlyHint") is True:
        if annotations.get("openWorldHint") is True:
            return PermissionClass.network
        return PermissionClass.read
    return PermissionClass.write


class CapabilityDefinition(BaseSchema):
    """Wire-level capability definition (tools/list entry)."""

    # Remote servers add fields of their own (title, outputSchema, _meta, ...).
    model_config = ConfigDict(populate_by_name=True, extra="ignore", alias_generator=_to_camel)

    name: str = Field(min_length=1)
    description: Optional[str] = None
    input_schema: Dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})
    permissions: Optional[PermissionsSpec] = None
    confirmation: Optional[ConfirmationPolicy] = None
    annotations: Optional[Dict[str, Any]] = None
    timeout_ms: Optional[int] = Field(default=None, gt=0)

    def permission_class(self) -> PermissionClass:
        if self.permissions is not None:
            return self.permissions.to_permission_class()
        return _permission_from_annotations(self.annotations)

    def to_descriptor(
        self,
        *,
        name: Optional[str] = None,
        source: Optional[str] = None,
        default_timeout_ms: int = 30_000,
        trusted: bool = False,
    ) -> CapabilityDescriptor:
        """Build the registry descriptor for this definition.

        Args:
            name: Registry name override (e.g. server-qualified name).
            source: Owning server identity for remote definitions.
            default_timeout_ms: Timeout used when the definition has none.
            trusted: Force ``confirmation_policy=never`` (trusted servers).
        """
        confirmation = self.confirmation or ConfirmationPolicy.destructive_only
        if trusted:
            confirmation = ConfirmationPolicy.never
        schema = dict(self.input_schema or {})
        schema.setdefault("type", "object")
        return CapabilityDescriptor(
            name=name or self.name,
            description=self.description or "",
            param_schema=schema,
            permission_class=self.permission_class(),
            confirmation_policy=confirmation,
            timeout_ms=self.timeout_ms or default_timeout_ms,
            source=source,
        )

    @classmethod
    def from_descriptor(cls, descriptor: CapabilityDescriptor) -> "CapabilityDefinition":
        return cls(
            name=descriptor.name,
            description=descriptor.description or None,
            input_schema=dict(descriptor.param_schema),
            permissions=PermissionsSpec.from_permission_class(descriptor.permission_class),
            confirmation=descriptor.confirmation_policy,
            timeout_ms=descriptor.timeout_ms,
        )

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")
