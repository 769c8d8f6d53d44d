"""Shared protocol types, errors and helpers."""

from .errors import (
    ConnectError,
    ConnectionClosed,
    ElectrumError,
    ErrorCategory,
    ProtocolError,
    RequestTimeout,
    ServerError,
    WriteError,
)
from .protocol import CallResult, RpcError, RpcNotification, RpcRequest, RpcResponse
from .retry import PersistencePolicy, RetryBudget
from .scheduler import LoopScheduler, Scheduler, TimerHandle
from .serialization import (
    decode_line,
    decode_notification,
    decode_response_payload,
    encode_batch_line,
    encode_request_line,
    normalize_rpc_error,
    safe_dict,
)

__all__ = [
    "CallResult",
    "ConnectError",
    "ConnectionClosed",
    "ElectrumError",
    "ErrorCategory",
    "LoopScheduler",
    "PersistencePolicy",
    "ProtocolError",
    "RequestTimeout",
    "RetryBudget",
    "RpcError",
    "RpcNotification",
    "RpcRequest",
    "RpcResponse",
    "Scheduler",
    "ServerError",
    "TimerHandle",
    "WriteError",
    "decode_line",
    "decode_notification",
    "decode_response_payload",
    "encode_batch_line",
    "encode_request_line",
    "normalize_rpc_error",
    "safe_dict",
]
