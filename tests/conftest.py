"""Pytest hooks and fixtures."""

from __future__ import annotations

import asyncio
import itertools
import os
from typing import Any
from collections.abc import Callable

import pytest

from electrumsync.client import ElectrumClient
from electrumsync.config.schema import KeepAliveConfig, RequestsConfig, ServerConfig
from electrumsync.core.errors import ConnectError, WriteError
from electrumsync.core.retry import PersistencePolicy


def pytest_configure(config):
    """Register custom markers (also in pyproject.toml)."""
    config.addinivalue_line(
        "markers",
        "requires_network: talks to public Electrum servers (skipped unless ELECTRUMSYNC_LIVE=1)",
    )


def pytest_collection_modifyitems(config, items):
    """Skip requires_network tests unless live runs are enabled."""
    if os.environ.get("ELECTRUMSYNC_LIVE") == "1":
        return
    skip = pytest.mark.skip(reason="Live Electrum servers disabled (set ELECTRUMSYNC_LIVE=1)")
    for item in items:
        if "requires_network" in item.keywords:
            item.add_marker(skip)


async def settle(rounds: int = 20) -> None:
    """Let callbacks and spawned tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Manual clock
# ---------------------------------------------------------------------------


class ManualTimer:
    def __init__(self, when: float, seq: int, callback: Callable[..., Any], args: tuple[Any, ...]):
        self.when = when
        self.seq = seq
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Scheduler whose time only moves when a test advances it."""

    def __init__(self, start: float = 1000.0):
        self._now = start
        self._seq = itertools.count()
        self._timers: list[ManualTimer] = []

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> ManualTimer:
        timer = ManualTimer(self._now + max(0.0, delay), next(self._seq), callback, args)
        self._timers.append(timer)
        return timer

    def pending(self) -> list[ManualTimer]:
        return [t for t in self._timers if not t.cancelled]

    async def advance(self, seconds: float) -> None:
        """Move the clock forward, firing due timers in order and letting tasks run."""
        target = self._now + seconds
        while True:
            due = [t for t in self._timers if not t.cancelled and t.when <= target]
            if not due:
                break
            timer = min(due, key=lambda t: (t.when, t.seq))
            self._timers.remove(timer)
            self._now = max(self._now, timer.when)
            timer.callback(*timer.args)
            await settle()
        self._now = target
        self._timers = [t for t in self._timers if not t.cancelled]
        await settle()


# ---------------------------------------------------------------------------
# Scripted server behind a fake transport
# ---------------------------------------------------------------------------


class Reject(Exception):
    """Raised by a FakeServer handler to answer with a JSON-RPC error."""

    def __init__(self, code: int, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


class FakeTransport:
    """In-memory Transport replacement wired to a FakeServer."""

    def __init__(self, server: "FakeServer", *, on_message, on_close, **options: Any):
        self.server = server
        self.on_message = on_message
        self.on_close = on_close
        self.options = options
        self.is_open = False
        self.closed_by_client = False
        self.sent: list[Any] = []
        self.endpoint: str | None = None

    async def connect(self, host: str, port: int, secure: bool = False) -> None:
        self.server.connect_attempts += 1
        if self.server.refuse_connects:
            self.server.refuse_connects -= 1
            raise ConnectError(host, port, "connection refused")
        self.endpoint = f"{host}:{port}"
        self.is_open = True

    async def send(self, message: Any) -> None:
        if not self.is_open:
            raise WriteError()
        self.sent.append(message)
        self.server.sent.append(message)
        if self.server.auto_reply:
            asyncio.get_running_loop().call_soon(self._reply, message)

    def _reply(self, message: Any) -> None:
        if not self.is_open:
            return
        items = message if isinstance(message, list) else [message]
        responses = [r for r in (self.server.answer(item) for item in items) if r is not None]
        if not responses:
            return
        if isinstance(message, list):
            self.on_message(list(reversed(responses)) if self.server.reverse_batches else responses)
        else:
            for response in responses:
                self.on_message(response)
        if any(isinstance(item, dict) and item.get("method") in self.server.drop_after for item in items):
            self.drop()

    def push(self, payload: Any) -> None:
        """Deliver a frame from the server side."""
        self.on_message(payload)

    def drop(self, error: BaseException | None = None) -> None:
        """Simulate the peer closing the socket."""
        self.is_open = False
        self.on_close(error)

    async def close(self) -> None:
        self.is_open = False
        self.closed_by_client = True


class FakeServer:
    """Scripted Electrum server: method handlers, silent methods, connect refusals and
    methods after whose reply the socket is closed."""

    def __init__(self) -> None:
        self.handlers: dict[str, Callable[[list[Any]], Any]] = {
            "server.version": lambda params: ["FakeElectrum 1.9", "1.4"],
            "server.ping": lambda params: None,
        }
        self.silent: set[str] = set()
        self.drop_after: set[str] = set()
        self.auto_reply = True
        self.reverse_batches = False
        self.refuse_connects = 0
        self.connect_attempts = 0
        self.sent: list[Any] = []
        self.transports: list[FakeTransport] = []

    def factory(self, **kwargs: Any) -> FakeTransport:
        transport = FakeTransport(self, **kwargs)
        self.transports.append(transport)
        return transport

    @property
    def transport(self) -> FakeTransport:
        return self.transports[-1]

    def requests(self, method: str | None = None) -> list[dict[str, Any]]:
        flat: list[dict[str, Any]] = []
        for frame in self.sent:
            flat.extend(frame if isinstance(frame, list) else [frame])
        return [r for r in flat if method is None or r.get("method") == method]

    def answer(self, request: dict[str, Any]) -> dict[str, Any] | None:
        method = request.get("method")
        if method in self.silent:
            return None
        handler = self.handlers.get(method)
        if handler is None:
            return {"jsonrpc": "2.0", "id": request["id"], "error": {"code": -32601, "message": f"unknown method {method}"}}
        try:
            result = handler(request.get("params", []))
        except Reject as exc:
            return {"jsonrpc": "2.0", "id": request["id"], "error": {"code": exc.code, "message": exc.message}}
        return {"jsonrpc": "2.0", "id": request["id"], "result": result}


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def fake_server() -> FakeServer:
    return FakeServer()


@pytest.fixture
def make_client(scheduler, fake_server):
    """Build ElectrumClients wired to the manual clock and the scripted server."""

    def _make(**kwargs: Any) -> ElectrumClient:
        kwargs.setdefault("persistence_policy", PersistencePolicy(max_retry=3))
        kwargs.setdefault("keepalive", KeepAliveConfig(enabled=False))
        kwargs.setdefault("requests", RequestsConfig(timeout_seconds=30.0))
        return ElectrumClient(
            ServerConfig(host="electrum.test", port=50002),
            scheduler=scheduler,
            transport_factory=fake_server.factory,
            **kwargs,
        )

    return _make
