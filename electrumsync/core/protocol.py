"""Electrum JSON-RPC wire models."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True)
class RpcError:
    """Normalized error payload carried by a failed call."""

    code: str
    message: str
    data: dict[str, Any] | None = None


@dataclass(slots=True)
class RpcRequest:
    """JSON-RPC request frame."""

    id: int
    method: str
    params: list[Any] = field(default_factory=list)


@dataclass(slots=True)
class RpcResponse:
    """JSON-RPC response frame."""

    id: int | None
    ok: bool
    result: Any = None
    error: RpcError | None = None


@dataclass(slots=True)
class RpcNotification:
    """Server push: a method and params without an id."""

    method: str
    params: list[Any] = field(default_factory=list)


@dataclass(slots=True)
class CallResult:
    """Outcome of one call. Failures are tagged instead of raised."""

    id: int | None
    method: str
    ok: bool
    result: Any = None
    error: RpcError | None = None

    @property
    def error_code(self) -> str | None:
        return self.error.code if self.error else None
