"""Result pipeline.

Turns raw capability output and remote protocol replies into
``CapabilityResult`` values, and maps wire error codes onto the shared
``ErrorKind`` taxonomy in both directions:

- ``normalize_output`` / ``bytes_produced``: local output shaping.
- ``normalize_tool_result``: MCP ``CallToolResult`` payload -> output value
  (``isError`` becomes a ``RemoteToolError``).
- ``exception_for_error``: JSON-RPC error object -> typed exception; the
  remote's own ``data.errorKind`` wins over the numeric code.
- ``code_for_kind`` / ``error_object_for``: the reverse mapping used when this
  core answers as a server.

Transport-specific error shapes never get past this module.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Mapping, Optional, Union

from mcp.types import CallToolResult, TextContent
from pydantic import BaseModel, ValidationError

from ..capabilities.base import CapabilityResult, ResultMetadata
from ..errors import AuthenticationError, ErrorKind, ProtocolError, RemoteToolError, ToolmeshError
from ..protocol.messages import (
    AUTHENTICATION_FAILED,
    CHECKPOINT_FAILED,
    CONNECTION_CLOSED,
    EXECUTION_FAILED,
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    PERMISSION_DENIED,
    REQUEST_TIMEOUT,
    USER_REJECTED,
    ErrorObject,
)

logger = logging.getLogger(__name__)

_KIND_BY_CODE: Dict[int, ErrorKind] = {
    PARSE_ERROR: ErrorKind.protocol_error,
    INVALID_REQUEST: ErrorKind.protocol_error,
    METHOD_NOT_FOUND: ErrorKind.not_found,
    INVALID_PARAMS: ErrorKind.validation_error,
    INTERNAL_ERROR: ErrorKind.protocol_error,
    CONNECTION_CLOSED: ErrorKind.network_error,
    REQUEST_TIMEOUT: ErrorKind.timeout,
    PERMISSION_DENIED: ErrorKind.permission_denied,
    USER_REJECTED: ErrorKind.user_rejected,
    CHECKPOINT_FAILED: ErrorKind.checkpoint_failed,
    EXECUTION_FAILED: ErrorKind.execution_error,
    AUTHENTICATION_FAILED: ErrorKind.authentication_error,
}

_CODE_BY_KIND: Dict[ErrorKind, int] = {
    ErrorKind.validation_error: INVALID_PARAMS,
    ErrorKind.not_found: METHOD_NOT_FOUND,
    ErrorKind.protocol_error: INTERNAL_ERROR,
    ErrorKind.network_error: CONNECTION_CLOSED,
    ErrorKind.timeout: REQUEST_TIMEOUT,
    ErrorKind.permission_denied: PERMISSION_DENIED,
    ErrorKind.user_rejected: USER_REJECTED,
    ErrorKind.checkpoint_failed: CHECKPOINT_FAILED,
    ErrorKind.execution_error: EXECUTION_FAILED,
    ErrorKind.cancelled: EXECUTION_FAILED,
    ErrorKind.authentication_error: AUTHENTICATION_FAILED,
}


def normalize_output(value: Any) -> Any:
    """Convert capability output into a JSON-friendly value."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True)
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, tuple):
        return [normalize_output(v) for v in value]
    return value


def bytes_produced(output: Any) -> int:
    if output is None:
        return 0
    if isinstance(output, str):
        return len(output.encode("utf-8"))
    return len(json.dumps(output, default=str).encode("utf-8"))


def success_result(
    call_id: str,
    output: Any,
    *,
    duration_ms: float = 0.0,
    attempts: int = 1,
    source: Optional[str] = None,
) -> CapabilityResult:
    output = normalize_output(output)
    return CapabilityResult(
        call_id=call_id,
        success=True,
        output=output,
        metadata=ResultMetadata(
            duration_ms=duration_ms,
            bytes_produced=bytes_produced(output),
            attempts=attempts,
            source=source,
        ),
    )


def failure_result(
    call_id: str,
    kind: ErrorKind,
    message: str,
    *,
    output: Any = None,
    duration_ms: float = 0.0,
    abandoned: bool = False,
    source: Optional[str] = None,
) -> CapabilityResult:
    output = normalize_output(output)
    return CapabilityResult.failure(
        call_id,
        kind,
        message,
        output=output,
        metadata=ResultMetadata(
            duration_ms=duration_ms,
            bytes_produced=bytes_produced(output),
            abandoned=abandoned,
            source=source,
        ),
    )


def normalize_tool_result(raw: Any) -> Any:
    """Extract the output value from a ``tools/call`` result payload.

    Preference order: ``structuredContent``, then the text of the content
    blocks (joined with newlines when they are all text), then the blocks
    themselves as plain dicts.

    Raises:
        ProtocolError: If ``raw`` is not a valid ``CallToolResult``.
        RemoteToolError: If the remote flagged the result with ``isError``.
    """
    try:
        parsed = CallToolResult.model_validate(raw)
    except ValidationError as e:
        raise ProtocolError("malformed tools/call result", details=raw) from e

    if parsed.structuredContent is not None:
        output: Any = parsed.structuredContent
    elif parsed.content and all(isinstance(block, TextContent) for block in parsed.content):
        output = "\n".join(block.text for block in parsed.content)  # type: ignore[union-attr]
    elif not parsed.content:
        output = None
    else:
        output = [block.model_dump(mode="json", by_alias=True, exclude_none=True) for block in parsed.content]

    if parsed.isError:
        message = output if isinstance(output, str) and output else "remote tool reported an error"
        raise RemoteToolError(message, kind=ErrorKind.execution_error, output=output)
    return output


def kind_for_code(code: int) -> ErrorKind:
    return _KIND_BY_CODE.get(code, ErrorKind.execution_error)


def code_for_kind(kind: ErrorKind) -> int:
    return _CODE_BY_KIND.get(kind, EXECUTION_FAILED)


def exception_for_error(error: Union[ErrorObject, Mapping[str, Any]]) -> ToolmeshError:
    """Build the typed exception for a JSON-RPC error object."""
    err = error if isinstance(error, ErrorObject) else ErrorObject.model_validate(error)
    kind: Optional[ErrorKind] = None
    output: Any = None
    if isinstance(err.data, dict):
        raw_kind = err.data.get("errorKind")
        if raw_kind is not None:
            try:
                kind = ErrorKind(raw_kind)
            except ValueError:
                logger.debug("Ignoring unknown remote errorKind %r", raw_kind)
        output = err.data.get("output")
    if kind is None:
        kind = kind_for_code(err.code)

    if kind == ErrorKind.authentication_error:
        return AuthenticationError(err.message, details=err.data)
    if kind == ErrorKind.protocol_error:
        return ProtocolError(err.message, code=err.code, details=err.data)
    return RemoteToolError(err.message, kind=kind, code=err.code, details=err.data, output=output)


def error_object_for(kind: ErrorKind, message: str, *, output: Any = None) -> ErrorObject:
    """Wire error for a failed call, tagged with ``data.errorKind``."""
    data: Dict[str, Any] = {"errorKind": kind.value}
    if output is not None:
        data["output"] = normalize_output(output)
    return ErrorObject(code=code_for_kind(kind), message=message, data=data)


def error_object_for_result(result: CapabilityResult) -> ErrorObject:
    kind = result.error_kind or ErrorKind.execution_error
    return error_object_for(kind, result.error_message or kind.value, output=result.output)
