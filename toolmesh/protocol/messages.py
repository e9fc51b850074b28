"""JSON-RPC style wire messages shared by every transport.

A ``ProtocolMessage`` is classified by which members are present:

- response: ``id`` plus ``result`` or ``error``;
- request: ``method`` and ``id`` (a reply is expected);
- notification: ``method`` without ``id`` (no reply).

Presence is tracked through pydantic's ``model_fields_set`` so that a response
whose result is literally ``null`` is still a response.

Standard protocol error codes come from the ``mcp`` package; the
implementation-defined range used by this core is declared here.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Optional, Union

from mcp.types import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    LATEST_PROTOCOL_VERSION,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
)
from pydantic import BaseModel, ConfigDict, ValidationError

from ..errors import ProtocolError

JSONRPC_VERSION = "2.0"
PROTOCOL_VERSION = LATEST_PROTOCOL_VERSION

# Implementation-defined error range
CONNECTION_CLOSED = -32000
REQUEST_TIMEOUT = -32001
PERMISSION_DENIED = -32002
USER_REJECTED = -32003
CHECKPOINT_FAILED = -32004
EXECUTION_FAILED = -32005
AUTHENTICATION_FAILED = -32010

# Standard method names
INITIALIZE = "initialize"
PING = "ping"
TOOLS_LIST = "tools/list"
TOOLS_CALL = "tools/call"
NOTIFY_INITIALIZED = "notifications/initialized"
NOTIFY_CANCELLED = "notifications/cancelled"
NOTIFY_TOOLS_CHANGED = "notifications/tools/list_changed"

__all__ = [
    "PARSE_ERROR",
    "INVALID_REQUEST",
    "METHOD_NOT_FOUND",
    "INVALID_PARAMS",
    "INTERNAL_ERROR",
    "CONNECTION_CLOSED",
    "REQUEST_TIMEOUT",
    "PERMISSION_DENIED",
    "USER_REJECTED",
    "CHECKPOINT_FAILED",
    "EXECUTION_FAILED",
    "AUTHENTICATION_FAILED",
    "PROTOCOL_VERSION",
    "ErrorObject",
    "ProtocolMessage",
]


class ErrorObject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    code: int
    message: str
    data: Optional[Any] = None


class ProtocolMessage(BaseModel):
    """One wire message: request, notification or response."""

    model_config = ConfigDict(extra="ignore")

    jsonrpc: str = JSONRPC_VERSION
    id: Optional[Union[int, str]] = None
    method: Optional[str] = None
    params: Optional[Any] = None
    result: Optional[Any] = None
    error: Optional[ErrorObject] = None

    # ---------------------------------------------------------------
    # Constructors
    # ---------------------------------------------------------------

    @classmethod
    def request(cls, id: Union[int, str], method: str, params: Optional[Dict[str, Any]] = None) -> "ProtocolMessage":
        if params is None:
            return cls(id=id, method=method)
        return cls(id=id, method=method, params=params)

    @classmethod
    def notification(cls, method: str, params: Optional[Dict[str, Any]] = None) -> "ProtocolMessage":
        if params is None:
            return cls(method=method)
        return cls(method=method, params=params)

    @classmethod
    def response(cls, id: Union[int, str], result: Any) -> "ProtocolMessage":
        return cls(id=id, result=result)

    @classmethod
    def error_response(
        cls, id: Optional[Union[int, str]], code: int, message: str, data: Optional[Any] = None
    ) -> "ProtocolMessage":
        return cls(id=id, error=ErrorObject(code=code, message=message, data=data))

    # ---------------------------------------------------------------
    # Classification
    # ---------------------------------------------------------------

    @property
    def is_response(self) -> bool:
        return self.method is None and ("result" in self.model_fields_set or self.error is not None)

    @property
    def is_request(self) -> bool:
        return self.method is not None and self.id is not None

    @property
    def is_notification(self) -> bool:
        return self.method is not None and self.id is None

    # ---------------------------------------------------------------
    # Encoding
    # ---------------------------------------------------------------

    def to_wire(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"jsonrpc": JSONRPC_VERSION}
        if self.id is not None or (self.error is not None and "id" in self.model_fields_set):
            data["id"] = self.id
        if self.method is not None:
            data["method"] = self.method
        if "params" in self.model_fields_set and self.params is not None:
            data["params"] = self.params
        if "result" in self.model_fields_set:
            data["result"] = self.result
        if self.error is not None:
            data["error"] = self.error.model_dump(exclude_none=True)
        return data

    def encode(self) -> bytes:
        return json.dumps(self.to_wire(), separators=(",", ":"), default=str).encode("utf-8")

    @classmethod
    def decode(cls, raw: Union[bytes, str, Dict[str, Any]]) -> "ProtocolMessage":
        """Parse one wire message.

        Raises:
            ProtocolError: ``code=PARSE_ERROR`` for undecodable JSON,
                ``code=INVALID_REQUEST`` for JSON that is not a valid message.
        """
        if isinstance(raw, dict):
            data: Any = raw
        else:
            try:
                data = json.loads(raw)
            except (ValueError, UnicodeDecodeError) as e:
                raise ProtocolError(f"unparseable message: {e}", code=PARSE_ERROR) from e
        if not isinstance(data, dict):
            raise ProtocolError("message must be a JSON object", code=INVALID_REQUEST, details=data)
        try:
            msg = cls.model_validate(data)
        except ValidationError as e:
            raise ProtocolError(f"invalid message: {e.errors()[0].get('msg')}", code=INVALID_REQUEST, details=data) from e
        has_result = "result" in data
        if msg.method is not None and (has_result or msg.error is not None):
            raise ProtocolError("message has both method and result/error", code=INVALID_REQUEST, details=data)
        if msg.method is None and not (has_result or msg.error is not None):
            raise ProtocolError("message is neither a request nor a response", code=INVALID_REQUEST, details=data)
        if msg.method is None and msg.id is None and msg.error is None:
            raise ProtocolError("response without id", code=INVALID_REQUEST, details=data)
        return msg
