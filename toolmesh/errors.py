"""Error taxonomy for the capability execution core.

Every failure mode of a capability call maps onto one ``ErrorKind``. The
registry, protocol and transport layers raise the typed exceptions below; the
execution engine is the single place that converts them into
``CapabilityResult.error_kind`` so callers never see a raw exception.

Retry semantics
---------------

- ``NetworkError`` is retryable (the protocol client retries it with backoff).
- ``AuthenticationError`` triggers one re-authentication attempt.
- All other kinds are terminal for the call that produced them.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    validation_error = "ValidationError"
    permission_denied = "PermissionDenied"
    user_rejected = "UserRejected"
    checkpoint_failed = "CheckpointFailed"
    timeout = "Timeout"
    network_error = "NetworkError"
    protocol_error = "ProtocolError"
    authentication_error = "AuthenticationError"
    not_found = "NotFound"
    cancelled = "Cancelled"
    execution_error = "ExecutionError"


class ToolmeshError(Exception):
    """Base error for all toolmesh exceptions.

    Args:
        message: Human-readable error description.
        details: Optional structured context (e.g. a remote error payload).
        output: Optional partial output to surface on the failed result.
    """

    kind: ErrorKind = ErrorKind.execution_error
    retryable: bool = False

    def __init__(self, message: str, *, details: Optional[Any] = None, output: Optional[Any] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details
        self.output = output


class CapabilityNotFoundError(ToolmeshError):
    """Raised when a capability name cannot be resolved."""

    kind = ErrorKind.not_found

    def __init__(self, name: str) -> None:
        super().__init__(f"Capability not found: '{name}'")
        self.name = name


class DuplicateCapabilityError(ToolmeshError):
    """Raised when the registry forbids overwriting an existing capability."""

    kind = ErrorKind.validation_error

    def __init__(self, name: str) -> None:
        super().__init__(f"Capability already registered: '{name}'")
        self.name = name


class ArgumentValidationError(ToolmeshError):
    """Raised for arguments that do not satisfy a capability's schema."""

    kind = ErrorKind.validation_error


class PermissionDeniedError(ToolmeshError):
    """Raised when a call's permission class exceeds the caller's trust."""

    kind = ErrorKind.permission_denied


class UserRejectedError(ToolmeshError):
    """Raised when a confirmation request is rejected."""

    kind = ErrorKind.user_rejected


class CheckpointFailedError(ToolmeshError):
    """Raised when the pre-mutation checkpoint hook fails."""

    kind = ErrorKind.checkpoint_failed


class CapabilityTimeoutError(ToolmeshError):
    """Raised when a call or a pending protocol request exceeds its deadline."""

    kind = ErrorKind.timeout
    retryable = True


class CallCancelledError(ToolmeshError):
    """Raised when a call is cancelled by caller request."""

    kind = ErrorKind.cancelled


class NetworkError(ToolmeshError):
    """Transport-level failure: connect refused, broken pipe, dropped stream."""

    kind = ErrorKind.network_error
    retryable = True


class ProtocolError(ToolmeshError):
    """Malformed or unexpected message from a remote server."""

    kind = ErrorKind.protocol_error

    def __init__(
        self,
        message: str,
        *,
        code: Optional[int] = None,
        details: Optional[Any] = None,
        output: Optional[Any] = None,
    ) -> None:
        super().__init__(message, details=details, output=output)
        self.code = code


class AuthenticationError(ToolmeshError):
    """Raised when a remote server rejects the configured credentials."""

    kind = ErrorKind.authentication_error

    def __init__(self, message: str, *, status_code: Optional[int] = None, details: Optional[Any] = None) -> None:
        super().__init__(message, details=details)
        self.status_code = status_code


class RemoteToolError(ToolmeshError):
    """Raised when a remote server reports a failure for a tool call.

    ``kind`` is assigned per instance by the result pipeline so that the
    remote's own error classification survives the round trip.
    """

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind = ErrorKind.execution_error,
        code: Optional[int] = None,
        details: Optional[Any] = None,
        output: Optional[Any] = None,
    ) -> None:
        super().__init__(message, details=details, output=output)
        self.kind = kind
        self.code = code


class ServerNotFoundError(ToolmeshError):
    """Raised when no server is registered under the requested identity."""

    kind = ErrorKind.not_found

    def __init__(self, server_id: str) -> None:
        super().__init__(f"Server not found: '{server_id}'")
        self.server_id = server_id
