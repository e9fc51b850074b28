from .base import (
    Capability,
    CapabilityCall,
    CapabilityDescriptor,
    CapabilityResult,
    ConfirmationPolicy,
    LocalCapability,
    PermissionClass,
    ResultMetadata,
    define_capability,
)
from .registry import CapabilityRegistry, CapabilityView

__all__ = [
    "Capability",
    "CapabilityCall",
    "CapabilityDescriptor",
    "CapabilityResult",
    "ConfirmationPolicy",
    "LocalCapability",
    "PermissionClass",
    "ResultMetadata",
    "define_capability",
    "CapabilityRegistry",
    "CapabilityView",
]
