"""Connection lifecycle manager for one Electrum server.

In the overall architecture: the only component that mutates connection state.
It composes a Transport, a RequestDispatcher (both recreated per connection)
and a long-lived SubscriptionRouter, drives connect -> handshake -> connected,
reconnects per the persistence policy and probes idle connections.
"""

from __future__ import annotations

import asyncio
import json
from enum import Enum
from typing import Any
from collections.abc import Awaitable, Callable

from loguru import logger

from electrumsync.config.schema import Config, HandshakeConfig, KeepAliveConfig, RequestsConfig, ServerConfig
from electrumsync.core.errors import CONNECTION_CLOSED, TIMEOUT, WRITE_FAILED, ConnectionClosed, ElectrumError, RequestTimeout
from electrumsync.core.protocol import CallResult, RpcNotification
from electrumsync.core.retry import PersistencePolicy, RetryBudget
from electrumsync.core.scheduler import LoopScheduler, Scheduler, TimerHandle
from electrumsync.dispatcher import USE_DEFAULT_TIMEOUT, PendingRequest, RequestDispatcher
from electrumsync.peers import candidate_servers
from electrumsync.subscriptions import NotificationHandler, SubscriptionHandle, SubscriptionRouter
from electrumsync.transport import Transport

StateListener = Callable[["ConnectionState", "ConnectionState"], None]


class ConnectionState(str, Enum):
    """Connection lifecycle states."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"
    EXHAUSTED = "exhausted"


class ElectrumClient:
    """Long-lived Electrum connection with reconnect and keep-alive."""

    def __init__(
        self,
        server: ServerConfig,
        *,
        handshake: HandshakeConfig | None = None,
        persistence_policy: PersistencePolicy | None = None,
        keepalive: KeepAliveConfig | None = None,
        requests: RequestsConfig | None = None,
        resubscribe_on_reconnect: bool = True,
        scheduler: Scheduler | None = None,
        transport_factory: Callable[..., Transport] | None = None,
    ):
        self.server = server
        self.handshake = handshake or HandshakeConfig()
        self.policy = persistence_policy or PersistencePolicy()
        self.keepalive = keepalive or KeepAliveConfig()
        self.requests = requests or RequestsConfig()
        self.resubscribe_on_reconnect = resubscribe_on_reconnect
        self.scheduler = scheduler or LoopScheduler()
        self._transport_factory = transport_factory or Transport
        self.router = SubscriptionRouter()

        self._state = ConnectionState.DISCONNECTED
        self._budget = RetryBudget(self.policy)
        self._generation = 0
        self._transport: Transport | None = None
        self._dispatcher: RequestDispatcher | None = None
        self._retry_timer: TimerHandle | None = None
        self._keepalive_timer: TimerHandle | None = None
        self._probe_in_flight = False
        self._exhausted_notified = False
        self._connected = asyncio.Event()
        self._server_subscriptions: dict[str, tuple[str, list[Any]]] = {}
        self._subscription_keys: dict[SubscriptionHandle, str] = {}
        self._state_listeners: list[StateListener] = []
        self._tasks: set[asyncio.Task[Any]] = set()
        self.server_version: Any = None

    @classmethod
    def from_config(
        cls,
        config: Config,
        *,
        server: ServerConfig | None = None,
        on_exhausted: Callable[[], None] | None = None,
        scheduler: Scheduler | None = None,
        transport_factory: Callable[..., Transport] | None = None,
    ) -> "ElectrumClient":
        """Build a client from the loaded configuration, picking a server when none is given."""
        if server is None:
            server = candidate_servers(config)[0]
        return cls(
            server,
            handshake=config.handshake,
            persistence_policy=config.persistence.to_policy(on_exhausted),
            keepalive=config.keepalive,
            requests=config.requests,
            resubscribe_on_reconnect=config.persistence.resubscribe_on_reconnect,
            scheduler=scheduler,
            transport_factory=transport_factory,
        )

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def retries_left(self) -> int | None:
        return self._budget.remaining

    @property
    def dispatcher(self) -> RequestDispatcher | None:
        return self._dispatcher

    def on_state_change(self, listener: StateListener) -> Callable[[], None]:
        """Register a (old, new) state listener; returns a function that removes it."""
        self._state_listeners.append(listener)

        def _remove() -> None:
            if listener in self._state_listeners:
                self._state_listeners.remove(listener)

        return _remove

    def _set_state(self, new: ConnectionState) -> None:
        old = self._state
        if old is new:
            return
        self._state = new
        logger.debug("Electrum {} state {} -> {}", self.server.key, old.value, new.value)
        if new is ConnectionState.CONNECTED:
            self._connected.set()
        else:
            self._connected.clear()
        for listener in list(self._state_listeners):
            try:
                listener(old, new)
            except Exception:
                logger.exception("State listener failed")

    async def wait_connected(self, timeout: float | None = None) -> bool:
        """Wait until the client is connected; False on timeout."""
        if self.connected:
            return True
        try:
            await asyncio.wait_for(self._connected.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    # ------------------------------------------------------------------
    # Connect / reconnect
    # ------------------------------------------------------------------

    async def init_electrum(
        self,
        handshake: HandshakeConfig | None = None,
        persistence_policy: PersistencePolicy | None = None,
    ) -> bool:
        """Connect and handshake. Returns whether this first attempt connected.

        A failed attempt is retried in the background per the persistence policy.
        """
        if self._state is ConnectionState.CLOSING:
            logger.warning("init_electrum called on a closed client")
            return False
        if self._state is ConnectionState.CONNECTED:
            return True
        if self._state is ConnectionState.EXHAUSTED and persistence_policy is None:
            logger.warning("Retry budget exhausted; call reset_retry_budget() or pass a new policy")
            return False
        if handshake is not None:
            self.handshake = handshake
        if persistence_policy is not None:
            self.policy = persistence_policy
            self._budget = RetryBudget(persistence_policy)
        self._exhausted_notified = False
        if self._state is ConnectionState.EXHAUSTED:
            self._set_state(ConnectionState.DISCONNECTED)
        self._cancel_retry()
        return await self._attempt()

    async def reset_retry_budget(self) -> bool:
        """Restore the retry budget; reconnects immediately when exhausted."""
        if self._state is ConnectionState.CLOSING:
            return False
        self._budget.reset()
        self._exhausted_notified = False
        if self._state is ConnectionState.EXHAUSTED:
            self._set_state(ConnectionState.DISCONNECTED)
            return await self._attempt()
        return self.connected

    def _new_connection(self) -> tuple[int, Transport, RequestDispatcher]:
        self._generation += 1
        generation = self._generation
        transport = self._transport_factory(
            on_message=lambda payload: self._on_message(generation, payload),
            on_close=lambda error: self._on_transport_closed(generation, error),
            connect_timeout=self.requests.connect_timeout_seconds,
            verify_tls=self.requests.verify_tls,
            max_line_bytes=self.requests.max_line_bytes,
        )
        dispatcher = RequestDispatcher(
            transport.send,
            scheduler=self.scheduler,
            default_timeout=self.requests.timeout_seconds,
            use_batch=self.requests.use_batch,
            on_timeout=self._on_request_timeout,
        )
        self._transport, self._dispatcher = transport, dispatcher
        return generation, transport, dispatcher

    async def _attempt(self) -> bool:
        if self._state in (ConnectionState.CLOSING, ConnectionState.EXHAUSTED, ConnectionState.CONNECTING):
            return self.connected
        self._set_state(ConnectionState.CONNECTING)
        generation, transport, dispatcher = self._new_connection()
        logger.info("Connecting to Electrum server {}", self.server)
        try:
            await transport.connect(self.server.host, self.server.port, self.server.secure)
            if generation != self._generation:
                await transport.close()
                return False
            version = await dispatcher.request(
                "server.version",
                [self.handshake.client_name, self.handshake.protocol_version],
            )
        except ElectrumError as exc:
            return await self._fail_attempt(generation, transport, exc)
        if generation != self._generation:
            return False
        if dispatcher.closed or not transport.is_open:
            return await self._fail_attempt(generation, transport, ConnectionClosed("closed by peer after handshake"))
        self.server_version = version
        self._budget.reset()
        self._set_state(ConnectionState.CONNECTED)
        logger.info("Connected to {} (server.version={})", self.server.key, version)
        self._arm_keepalive()
        self._resubscribe()
        return True

    async def _fail_attempt(self, generation: int, transport: Transport, error: ElectrumError) -> bool:
        if generation != self._generation:
            return False
        logger.warning("Electrum connect to {} failed: {}", self.server.key, error)
        self._detach(error)
        await transport.close()
        if generation != self._generation or self._state is not ConnectionState.CONNECTING:
            return False
        self._set_state(ConnectionState.DISCONNECTED)
        self._after_failure()
        return False

    def _detach(self, error: ElectrumError) -> Transport | None:
        """Forget the current connection and reject its pending calls."""
        self._cancel_keepalive()
        transport, dispatcher = self._transport, self._dispatcher
        self._transport = None
        self._dispatcher = None
        if dispatcher is not None:
            dispatcher.fail_all(ConnectionClosed(error.message))
        return transport

    def _handle_drop(self, error: ElectrumError) -> None:
        if self._state is not ConnectionState.CONNECTED:
            return
        logger.warning("Lost connection to {}: {}", self.server.key, error)
        self._generation += 1
        transport = self._detach(error)
        if transport is not None:
            self._spawn(transport.close())
        self._set_state(ConnectionState.DISCONNECTED)
        self._after_failure()

    def _after_failure(self) -> None:
        if self._budget.take():
            delay = self.policy.retry_delay_seconds
            left = "unlimited" if self._budget.remaining is None else self._budget.remaining
            logger.info("Reconnecting to {} in {}s ({} retries left)", self.server.key, delay, left)
            self._retry_timer = self.scheduler.call_later(delay, self._on_retry_timer)
            return
        self._set_state(ConnectionState.EXHAUSTED)
        logger.error("Giving up on {}: retry budget exhausted", self.server.key)
        if self._exhausted_notified:
            return
        self._exhausted_notified = True
        callback = self.policy.on_exhausted
        if callback is not None:
            try:
                callback()
            except Exception:
                logger.exception("on_exhausted callback failed")

    def _on_retry_timer(self) -> None:
        self._retry_timer = None
        if self._state is not ConnectionState.DISCONNECTED:
            return
        self._spawn(self._attempt())

    def _cancel_retry(self) -> None:
        if self._retry_timer is not None:
            self._retry_timer.cancel()
            self._retry_timer = None

    def _on_transport_closed(self, generation: int, error: BaseException | None) -> None:
        if generation != self._generation:
            return
        reason = str(error) if error else "closed by peer"
        if self._state is ConnectionState.CONNECTING:
            # The pending handshake sees the rejection and runs the retry path.
            if self._dispatcher is not None:
                self._dispatcher.fail_all(ConnectionClosed(reason))
            return
        self._handle_drop(ConnectionClosed(reason))

    def _on_message(self, generation: int, payload: Any) -> None:
        if generation != self._generation:
            return
        items = payload if isinstance(payload, list) else [payload]
        for item in items:
            dispatcher = self._dispatcher
            if dispatcher is not None and dispatcher.handle_message(item):
                continue
            if isinstance(item, dict) and item.get("method"):
                self.router.dispatch(item)
            else:
                logger.debug("Dropping unmatched message from {}: {}", self.server.key, str(item)[:200])

    def _on_request_timeout(self, pending: PendingRequest) -> None:
        if not self.requests.teardown_on_timeout or pending.method == "server.ping":
            return
        self._handle_drop(RequestTimeout(pending.method, pending.timeout or 0.0))

    # ------------------------------------------------------------------
    # Keep-alive
    # ------------------------------------------------------------------

    def _arm_keepalive(self) -> None:
        self._cancel_keepalive()
        if not self.keepalive.enabled or self._state is not ConnectionState.CONNECTED:
            return
        self._keepalive_timer = self.scheduler.call_later(self.keepalive.interval_seconds, self._on_keepalive_tick)

    def _cancel_keepalive(self) -> None:
        if self._keepalive_timer is not None:
            self._keepalive_timer.cancel()
            self._keepalive_timer = None

    def _on_keepalive_tick(self) -> None:
        self._keepalive_timer = None
        dispatcher = self._dispatcher
        if self._state is not ConnectionState.CONNECTED or dispatcher is None:
            return
        idle = self.scheduler.now() - dispatcher.last_activity
        if idle > self.keepalive.idle_seconds and not self._probe_in_flight:
            self._spawn(self._probe(self._generation, dispatcher))
        self._arm_keepalive()

    async def _probe(self, generation: int, dispatcher: RequestDispatcher) -> None:
        self._probe_in_flight = True
        try:
            result = await dispatcher.call("server.ping", [], timeout=self.keepalive.ping_timeout_seconds)
        finally:
            self._probe_in_flight = False
        if result.ok or generation != self._generation:
            return
        if result.error_code == TIMEOUT:
            self._handle_drop(RequestTimeout("server.ping", self.keepalive.ping_timeout_seconds))
        elif result.error_code in (CONNECTION_CLOSED, WRITE_FAILED):
            self._handle_drop(ConnectionClosed(f"keep-alive ping failed: {result.error.message}"))
        else:
            logger.warning("Keep-alive ping to {} failed: {}", self.server.key, result.error)

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    def _not_connected(self, method: str) -> CallResult:
        error = ConnectionClosed(f"not connected ({self._state.value})", method=method)
        return CallResult(id=None, method=method, ok=False, error=error.to_rpc_error())

    async def call(self, method: str, params: list[Any] | None = None, *, timeout: Any = USE_DEFAULT_TIMEOUT) -> CallResult:
        """One protocol call; failures come back tagged, never raised."""
        dispatcher = self._dispatcher
        if dispatcher is None or self._state is not ConnectionState.CONNECTED:
            return self._not_connected(method)
        return await dispatcher.call(method, params, timeout=timeout)

    async def request(self, method: str, params: list[Any] | None = None, *, timeout: Any = USE_DEFAULT_TIMEOUT) -> Any:
        """One protocol call returning the bare result; raises ElectrumError on failure."""
        dispatcher = self._dispatcher
        if dispatcher is None or self._state is not ConnectionState.CONNECTED:
            raise ConnectionClosed(f"not connected ({self._state.value})", method=method)
        return await dispatcher.request(method, params, timeout=timeout)

    async def call_batch(
        self,
        method: str,
        param_sets: list[list[Any]],
        *,
        timeout: Any = USE_DEFAULT_TIMEOUT,
    ) -> list[CallResult]:
        dispatcher = self._dispatcher
        if dispatcher is None or self._state is not ConnectionState.CONNECTED:
            return [self._not_connected(method) for _ in param_sets]
        return await dispatcher.call_batch(method, param_sets, timeout=timeout)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, method: str, handler: NotificationHandler) -> SubscriptionHandle:
        """Register a local notification handler without calling the server."""
        return self.router.subscribe(method, handler)

    def unsubscribe(self, handle: SubscriptionHandle) -> bool:
        return self.router.unsubscribe(handle)

    @staticmethod
    def _subscription_key(method: str, params: list[Any]) -> str:
        return f"{method}:{json.dumps(params, sort_keys=True)}"

    async def subscribe_server(
        self,
        method: str,
        params: list[Any] | None,
        handler: NotificationHandler,
    ) -> tuple[SubscriptionHandle, CallResult]:
        """Register a handler and issue the server-side ``*.subscribe`` call.

        The subscription is remembered and re-issued after reconnects.
        """
        params = list(params or [])
        handle = self.router.subscribe(method, handler)
        key = self._subscription_key(method, params)
        self._server_subscriptions[key] = (method, params)
        self._subscription_keys[handle] = key
        result = await self.call(method, params)
        if not result.ok:
            logger.warning("Subscribe {} {} failed: {}", method, params, result.error)
        return handle, result

    async def unsubscribe_server(self, handle: SubscriptionHandle, params: list[Any] | None = None) -> bool:
        """Remove a handler; forget its server subscription once no handle for it is left.

        ``params`` is only needed for handles not created by subscribe_server().
        """
        removed = self.router.unsubscribe(handle)
        key = self._subscription_keys.pop(handle, None)
        if key is None:
            key = self._subscription_key(handle.method, list(params or []))
        if any(other == key for other in self._subscription_keys.values()):
            return removed
        entry = self._server_subscriptions.pop(key, None)
        if entry is None:
            return removed
        method, subscribed_params = entry
        if method == "blockchain.scripthash.subscribe" and subscribed_params and self.connected:
            await self.call("blockchain.scripthash.unsubscribe", subscribed_params[:1])
        return removed

    def server_subscriptions(self) -> list[tuple[str, list[Any]]]:
        return list(self._server_subscriptions.values())

    def _resubscribe(self) -> None:
        if not self.resubscribe_on_reconnect:
            return
        live = {key for handle, key in self._subscription_keys.items() if self.router.is_active(handle)}
        for key, (method, params) in list(self._server_subscriptions.items()):
            if key in live:
                self._spawn(self._reissue(method, params))

    async def _reissue(self, method: str, params: list[Any]) -> None:
        result = await self.call(method, params)
        if not result.ok:
            logger.warning("Re-subscribe {} {} failed: {}", method, params, result.error)
            return
        # The subscribe result is the current status; hand it to handlers so
        # changes missed while disconnected are not lost.
        self.router.dispatch(RpcNotification(method=method, params=[*params, result.result]))

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Close permanently. Idempotent; no reconnect happens afterwards."""
        if self._state is ConnectionState.CLOSING:
            return
        self._set_state(ConnectionState.CLOSING)
        self._generation += 1
        self._cancel_retry()
        transport = self._detach(ConnectionClosed("client closed"))
        if transport is not None:
            await transport.close()
        tasks = [t for t in self._tasks if t is not asyncio.current_task()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Electrum client for {} closed", self.server.key)

    async def __aenter__(self) -> "ElectrumClient":
        await self.init_electrum()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)

        def _done(t: asyncio.Task[Any]) -> None:
            self._tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.opt(exception=exc).error("Background task failed")

        task.add_done_callback(_done)
