"""Serialization helpers for Electrum JSON-RPC frames."""

from __future__ import annotations

import json
from typing import Any

from .errors import PROTOCOL_ERROR, ProtocolError
from .protocol import RpcError, RpcNotification, RpcRequest, RpcResponse

JSONRPC_VERSION = "2.0"


def safe_dict(value: Any) -> dict[str, Any]:
    """Return the value when dict-like, otherwise an empty dict."""
    return value if isinstance(value, dict) else {}


def request_payload(request: RpcRequest) -> dict[str, Any]:
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": request.id,
        "method": request.method,
        "params": list(request.params),
    }


def encode_request_line(request: RpcRequest) -> str:
    """Encode a request frame into one line of JSON."""
    return json.dumps(request_payload(request), ensure_ascii=False)


def encode_batch_line(requests: list[RpcRequest]) -> str:
    """Encode several requests as one JSON array line."""
    return json.dumps([request_payload(r) for r in requests], ensure_ascii=False)


def encode_message(message: Any) -> bytes:
    """Encode an arbitrary JSON message into a newline-terminated frame."""
    return (json.dumps(message, ensure_ascii=False) + "\n").encode("utf-8")


def decode_line(line: bytes | str) -> Any:
    """Decode one frame. Raises ProtocolError for anything that is not a JSON object or array."""
    text = line.decode("utf-8", errors="replace") if isinstance(line, bytes) else line
    text = text.strip()
    if not text:
        raise ProtocolError("empty frame")
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ProtocolError(f"invalid JSON frame: {exc.msg}") from exc
    if not isinstance(payload, (dict, list)):
        raise ProtocolError(f"unexpected frame type: {type(payload).__name__}")
    return payload


def normalize_rpc_error(error: Any) -> RpcError:
    """Normalize unknown error payloads into RpcError.

    ElectrumX sends ``{"code": 1, "message": "..."}``; older servers send a bare string.
    """
    if isinstance(error, str) and error.strip():
        return RpcError(code="RPC_ERROR", message=error.strip())
    row = safe_dict(error)
    data = row.get("data")
    code = row.get("code")
    return RpcError(
        code=str(code) if code is not None and code != "" else "RPC_ERROR",
        message=str(row.get("message") or "rpc failed"),
        data=data if isinstance(data, dict) else None,
    )


def response_id(payload: Any) -> int | None:
    """Return the integer id of a response-shaped payload, if any."""
    row = safe_dict(payload)
    raw = row.get("id")
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str) and raw.isdigit():
        return int(raw)
    return None


def decode_response_payload(payload: Any) -> RpcResponse:
    """Decode raw dict payload into normalized RpcResponse."""
    row = safe_dict(payload)
    req_id = response_id(row)
    error = row.get("error")
    if error is not None:
        return RpcResponse(id=req_id, ok=False, error=normalize_rpc_error(error))
    if "result" not in row:
        return RpcResponse(
            id=req_id,
            ok=False,
            error=RpcError(code=PROTOCOL_ERROR, message="response carries neither result nor error"),
        )
    return RpcResponse(id=req_id, ok=True, result=row.get("result"))


def decode_notification(payload: Any) -> RpcNotification | None:
    """Decode a server push; None when the payload carries no method."""
    row = safe_dict(payload)
    method = row.get("method")
    if not isinstance(method, str) or not method:
        return None
    params = row.get("params")
    if params is None:
        params = []
    elif not isinstance(params, list):
        params = [params]
    return RpcNotification(method=method, params=params)
