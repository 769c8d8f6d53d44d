"""
Exception hierarchy for electrumsync.

Provides:
- Coded exceptions for each failure class of the Electrum client
- Error categorization (retryable vs fatal) used by callers deciding on retries
- Conversion between exceptions and the tagged RpcError carried by CallResult
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from .protocol import RpcError


class ErrorCategory(Enum):
    """Error categories for classification."""
    RETRYABLE = "retryable"
    FATAL = "fatal"
    PROTOCOL = "protocol"
    TIMEOUT = "timeout"
    SERVER = "server"


CONNECT_FAILED = "CONNECT_FAILED"
WRITE_FAILED = "WRITE_FAILED"
CONNECTION_CLOSED = "CONNECTION_CLOSED"
PROTOCOL_ERROR = "PROTOCOL_ERROR"
TIMEOUT = "TIMEOUT"
SERVER_ERROR = "SERVER_ERROR"


class ElectrumError(Exception):
    """Base exception for all electrumsync errors."""

    def __init__(
        self,
        message: str,
        code: str = SERVER_ERROR,
        category: ErrorCategory = ErrorCategory.FATAL,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.category = category
        self.details = details or {}

    @property
    def retryable(self) -> bool:
        return self.category in (ErrorCategory.RETRYABLE, ErrorCategory.TIMEOUT)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "category": self.category.value,
            "details": self.details,
        }

    def to_rpc_error(self) -> RpcError:
        return RpcError(code=self.code, message=self.message, data=self.details or None)

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class ConnectError(ElectrumError):
    """Transport could not be established (refused, unreachable, TLS handshake)."""

    def __init__(self, host: str, port: int, reason: str):
        super().__init__(
            f"cannot connect to {host}:{port}: {reason}",
            code=CONNECT_FAILED,
            category=ErrorCategory.RETRYABLE,
            details={"host": host, "port": port},
        )


class WriteError(ElectrumError):
    """Write attempted on a transport that is not open."""

    def __init__(self, message: str = "transport is not open"):
        super().__init__(message, code=WRITE_FAILED, category=ErrorCategory.RETRYABLE)


class ConnectionClosed(ElectrumError):
    """Connection dropped while the request was pending."""

    def __init__(self, message: str = "connection closed", method: str | None = None):
        details = {"method": method} if method else {}
        super().__init__(message, code=CONNECTION_CLOSED, category=ErrorCategory.RETRYABLE, details=details)


class ProtocolError(ElectrumError):
    """Malformed or unexpected response shape."""

    def __init__(self, message: str, method: str | None = None):
        details = {"method": method} if method else {}
        super().__init__(message, code=PROTOCOL_ERROR, category=ErrorCategory.PROTOCOL, details=details)


class RequestTimeout(ElectrumError):
    """Request did not resolve before its deadline."""

    def __init__(self, method: str, timeout_seconds: float):
        super().__init__(
            f"'{method}' timed out after {timeout_seconds}s",
            code=TIMEOUT,
            category=ErrorCategory.TIMEOUT,
            details={"method": method, "timeout_seconds": timeout_seconds},
        )


class ServerError(ElectrumError):
    """Error object returned by the server for a request."""

    def __init__(self, code: str, message: str, data: dict[str, Any] | None = None):
        super().__init__(message, code=code, category=ErrorCategory.SERVER, details=data)


_BY_CODE: dict[str, type[ElectrumError]] = {
    WRITE_FAILED: WriteError,
    CONNECTION_CLOSED: ConnectionClosed,
    PROTOCOL_ERROR: ProtocolError,
}


def from_rpc_error(error: RpcError, *, method: str) -> ElectrumError:
    """Rebuild an exception from the tagged error of a failed call."""
    if error.code == TIMEOUT:
        timeout = (error.data or {}).get("timeout_seconds", 0.0)
        return RequestTimeout(method, float(timeout))
    if error.code == CONNECT_FAILED:
        data = error.data or {}
        return ConnectError(str(data.get("host", "")), int(data.get("port", 0)), error.message)
    cls = _BY_CODE.get(error.code)
    if cls is WriteError:
        return WriteError(error.message)
    if cls is not None:
        return cls(error.message, method=method)
    return ServerError(error.code, error.message, error.data)
