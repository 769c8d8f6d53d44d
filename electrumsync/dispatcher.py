"""Request dispatcher: id allocation, pending table and response demultiplexing."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any
from collections.abc import Awaitable, Callable

from loguru import logger

from electrumsync.core.errors import ConnectionClosed, ElectrumError, RequestTimeout, WriteError, from_rpc_error
from electrumsync.core.protocol import CallResult, RpcError, RpcRequest
from electrumsync.core.scheduler import LoopScheduler, Scheduler, TimerHandle
from electrumsync.core.serialization import decode_response_payload, request_payload, response_id

SendFn = Callable[[Any], Awaitable[None]]

USE_DEFAULT_TIMEOUT: Any = object()


@dataclass(slots=True)
class PendingRequest:
    """One issued call awaiting its response."""

    id: int
    method: str
    issued_at: float
    future: asyncio.Future[CallResult]
    timeout: float | None = None
    timer: TimerHandle | None = field(default=None, repr=False)


class RequestDispatcher:
    """Turns fire-and-forget sends into call/response semantics.

    One dispatcher lives exactly as long as one connection. Responses are
    matched strictly by id; arrival order is irrelevant.
    """

    def __init__(
        self,
        send: SendFn,
        *,
        scheduler: Scheduler | None = None,
        default_timeout: float | None = 30.0,
        use_batch: bool = True,
        on_timeout: Callable[[PendingRequest], None] | None = None,
    ):
        self._send = send
        self.scheduler = scheduler or LoopScheduler()
        self.default_timeout = default_timeout
        self.use_batch = use_batch
        self._on_timeout = on_timeout
        self._pending: dict[int, PendingRequest] = {}
        self._next_id = 0
        self._closed: ElectrumError | None = None
        self.last_activity = self.scheduler.now()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def closed(self) -> bool:
        return self._closed is not None

    def _allocate_id(self) -> int:
        self._next_id += 1
        while self._next_id in self._pending:
            self._next_id += 1
        return self._next_id

    def _register(self, method: str, timeout: float | None) -> PendingRequest:
        loop = asyncio.get_running_loop()
        req_id = self._allocate_id()
        pending = PendingRequest(
            id=req_id,
            method=method,
            issued_at=self.scheduler.now(),
            future=loop.create_future(),
            timeout=timeout,
        )
        if timeout is not None:
            pending.timer = self.scheduler.call_later(timeout, self._expire, req_id)
        self._pending[req_id] = pending
        return pending

    def _resolve_timeout(self, timeout: Any) -> float | None:
        return self.default_timeout if timeout is USE_DEFAULT_TIMEOUT else timeout

    def _settle(self, req_id: int, result: CallResult) -> bool:
        pending = self._pending.pop(req_id, None)
        if pending is None:
            return False
        if pending.timer is not None:
            pending.timer.cancel()
        if not pending.future.done():
            pending.future.set_result(result)
        return True

    def _fail(self, pending: PendingRequest, error: ElectrumError) -> None:
        self._settle(
            pending.id,
            CallResult(id=pending.id, method=pending.method, ok=False, error=error.to_rpc_error()),
        )

    def _expire(self, req_id: int) -> None:
        pending = self._pending.get(req_id)
        if pending is None:
            return
        logger.warning("Request {} ({}) timed out after {}s", req_id, pending.method, pending.timeout)
        self._fail(pending, RequestTimeout(pending.method, pending.timeout or 0.0))
        if self._on_timeout is not None:
            self._on_timeout(pending)

    def _closed_result(self, method: str) -> CallResult:
        message = self._closed.message if self._closed else "connection closed"
        error = ConnectionClosed(message, method=method)
        return CallResult(id=None, method=method, ok=False, error=error.to_rpc_error())

    async def call(self, method: str, params: list[Any] | None = None, *, timeout: Any = USE_DEFAULT_TIMEOUT) -> CallResult:
        """Issue one request and wait for its tagged outcome. Never raises for call failures."""
        if self._closed is not None:
            return self._closed_result(method)
        pending = self._register(method, self._resolve_timeout(timeout))
        frame = request_payload(RpcRequest(id=pending.id, method=method, params=list(params or [])))
        try:
            await self._send(frame)
        except WriteError as exc:
            self._fail(pending, exc)
        return await pending.future

    async def request(self, method: str, params: list[Any] | None = None, *, timeout: Any = USE_DEFAULT_TIMEOUT) -> Any:
        """Like call(), but returns the bare result and raises ElectrumError on failure."""
        result = await self.call(method, params, timeout=timeout)
        if not result.ok:
            raise from_rpc_error(result.error or RpcError(code="RPC_ERROR", message="rpc failed"), method=method)
        return result.result

    async def call_batch(
        self,
        method: str,
        param_sets: list[list[Any]],
        *,
        timeout: Any = USE_DEFAULT_TIMEOUT,
    ) -> list[CallResult]:
        """Same method over many param sets; output order matches input order."""
        if not param_sets:
            return []
        if not self.use_batch or self._closed is not None:
            results = await asyncio.gather(*(self.call(method, params, timeout=timeout) for params in param_sets))
            return list(results)
        resolved_timeout = self._resolve_timeout(timeout)
        pendings = [self._register(method, resolved_timeout) for _ in param_sets]
        frame = [
            request_payload(RpcRequest(id=p.id, method=method, params=list(params or [])))
            for p, params in zip(pendings, param_sets)
        ]
        try:
            await self._send(frame)
        except WriteError as exc:
            for pending in pendings:
                self._fail(pending, exc)
        results = await asyncio.gather(*(p.future for p in pendings))
        return list(results)

    def handle_message(self, payload: Any) -> bool:
        """Resolve the pending request matching this response.

        Returns False when the payload is not a response to a pending id; the
        caller then treats it as a notification.
        """
        req_id = response_id(payload)
        if req_id is None:
            return False
        pending = self._pending.get(req_id)
        if pending is None:
            return False
        response = decode_response_payload(payload)
        self.last_activity = self.scheduler.now()
        return self._settle(
            req_id,
            CallResult(
                id=req_id,
                method=pending.method,
                ok=response.ok,
                result=response.result,
                error=response.error,
            ),
        )

    def fail_all(self, error: ElectrumError | None = None) -> int:
        """Reject every pending call exactly once and refuse new ones."""
        self._closed = error or ConnectionClosed()
        doomed = list(self._pending.values())
        for pending in doomed:
            self._fail(pending, ConnectionClosed(self._closed.message, method=pending.method))
        if doomed:
            logger.debug("Rejected {} pending request(s): {}", len(doomed), self._closed.message)
        return len(doomed)
