"""
Realtime Session

Composite connection for one ticket view: health probe, push channel,
bounded reconnection, single-ticket subscription, event dispatch and
the permanent pull-channel fallback, driven by one state machine.

Usage:
    session = RealtimeSession(config, EventHandlers(on_ticket_update=print), ticket_id=42)
    session.connect()
    ...
    await session.disconnect()
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Coroutine, Dict, FrozenSet, List, Optional, Tuple

from erp_prime.core.config import RealtimeConfig, load_config
from erp_prime.core.exceptions import (
    ConnectionTimeoutError,
    CredentialError,
    ReachabilityError,
    TransportError,
)
from erp_prime.core.structured_logging import LogContext, generate_session_id
from erp_prime.realtime.credentials import Credential
from erp_prime.realtime.dispatcher import EventDispatcher, EventHandlers
from erp_prime.realtime.endpoints import EndpointCache, EndpointResolver, get_endpoint_cache
from erp_prime.realtime.events import heartbeat_frame
from erp_prime.realtime.fallback import SSEFallbackTransport
from erp_prime.realtime.health import HealthProber
from erp_prime.realtime.reconnect import ReconnectionController, ReconnectPolicy
from erp_prime.realtime.state import ConnectionState, ConnectionStateMachine, ScopedResource
from erp_prime.realtime.subscription import SubscriptionManager
from erp_prime.realtime.transport import (
    INTENTIONAL_DISCONNECT,
    PrimaryTransport,
    is_normal_close,
)

logger = logging.getLogger(__name__)

S = ConnectionState

# connect() is ignored while an attempt is in flight, scheduled or the channel is up
_BUSY_STATES = frozenset({S.CONNECTING, S.OPEN, S.RECONNECT_PENDING, S.FALLBACK_ACTIVE})

StateListener = Callable[[ConnectionState, ConnectionState, str], None]


class RealtimeSession:
    """
    Realtime channel for one view.

    Args:
        config: Realtime configuration (``load_config()`` if omitted)
        handlers: Caller callbacks
        ticket_id: Ticket to subscribe to once open
        token_provider: Returns the current bearer token; defaults to
            ``config.get_token``
        endpoints: Resolved endpoints; taken from the process-wide cache if omitted
        prober: Object with ``async probe(base_url) -> bool``
        transport_factory: Returns a fresh PrimaryTransport per attempt
        fallback: Pull-channel transport; built from config on first use
        on_state_change: Called with (previous, new, reason) on every transition
    """

    def __init__(
        self,
        config: Optional[RealtimeConfig] = None,
        handlers: Optional[EventHandlers] = None,
        *,
        ticket_id: Optional[int] = None,
        token_provider: Optional[Callable[[], Optional[str]]] = None,
        endpoints: Optional[EndpointResolver] = None,
        endpoint_cache: Optional[EndpointCache] = None,
        prober: Optional[Any] = None,
        transport_factory: Optional[Callable[[], PrimaryTransport]] = None,
        fallback: Optional[Any] = None,
        on_state_change: Optional[StateListener] = None,
        session_id: Optional[str] = None,
    ):
        self.config = config or load_config()
        self.handlers = handlers or EventHandlers()
        self.session_id = session_id or generate_session_id()

        self._token_provider = token_provider or self.config.get_token
        if endpoints is None:
            cache = endpoint_cache or get_endpoint_cache()
            endpoints = cache.get(
                self.config.origin,
                default_port=self.config.default_port,
                websocket_path=self.config.websocket_path,
                health_path=self.config.health_path,
                realtime_path=self.config.realtime_path,
            )
        self._endpoints = endpoints
        self._prober = prober or HealthProber(
            timeout=self.config.probe_timeout, path=self.config.health_path
        )
        self._transport_factory = transport_factory or self._default_transport
        self._fallback = fallback
        self._on_state_change = on_state_change

        self._machine = ConnectionStateMachine(self.session_id, on_transition=self._on_transition)
        self._controller = ReconnectionController(
            ReconnectPolicy(
                max_attempts=self.config.max_reconnect_attempts,
                base_delay=self.config.reconnect_base_delay,
                max_delay=self.config.reconnect_max_delay,
            )
        )
        self._subscriptions = SubscriptionManager(
            self, ticket_id, retry_delay=self.config.subscribe_retry_delay
        )
        self._dispatcher = EventDispatcher(self.handlers, source="push")

        self._transport: Optional[PrimaryTransport] = None
        self._error: Optional[str] = None
        self._waiters: List[Tuple[FrozenSet[ConnectionState], "asyncio.Future[ConnectionState]"]] = []
        self._stats = {"attempts": 0, "opens": 0, "abnormal_closes": 0, "fallbacks": 0}

    # ------------------------------------------------------------------
    # Observable state
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._machine.state

    @property
    def endpoints(self) -> EndpointResolver:
        return self._endpoints

    @property
    def ticket_id(self) -> Optional[int]:
        return self._subscriptions.ticket_id

    @property
    def retry_count(self) -> int:
        return self._controller.retry_count

    @property
    def fallback_active(self) -> bool:
        return self.state is S.FALLBACK_ACTIVE

    @property
    def connected(self) -> bool:
        if self.fallback_active:
            return bool(self._fallback is not None and self._fallback.connected)
        return self.state is S.OPEN

    @property
    def error(self) -> Optional[str]:
        """Last error of the push channel; always None while the fallback is active."""
        if self.fallback_active:
            return None
        return self._error

    @property
    def fallback_error(self) -> Optional[str]:
        if self._fallback is None:
            return None
        return self._fallback.error

    @property
    def stats(self) -> Dict[str, int]:
        return self._stats.copy()

    # Members used by SubscriptionManager

    @property
    def is_open(self) -> bool:
        return self.state is S.OPEN

    @property
    def transport_ready(self) -> bool:
        return self._transport is not None and self._transport.ready

    async def send_frame(self, frame: Dict[str, Any]) -> bool:
        transport = self._transport
        if transport is None:
            return False
        return await transport.send_frame(frame)

    def call_later_in_state(
        self, name: str, delay: float, callback: Callable[..., Any], *args: Any
    ) -> ScopedResource:
        return self._machine.scope.call_later(self.state, name, delay, callback, *args)

    def spawn_in_state(self, name: str, coro: Coroutine[Any, Any, Any]) -> ScopedResource:
        return self._machine.scope.spawn(self.state, name, coro)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def connect(self) -> bool:
        """
        Start a connection attempt without blocking.

        Must be called from inside a running event loop. Ignored while an
        attempt is in flight or scheduled, while open, and once the
        fallback is active.

        Returns:
            bool: True if an attempt was started
        """
        with LogContext(session_id=self.session_id):
            if self.state in _BUSY_STATES or self._controller.is_connecting:
                logger.debug(
                    "[RealtimeSession] connect() ignored in state %s", self.state.value
                )
                return False

            try:
                self._validate_credential()
            except CredentialError as e:
                logger.error("[RealtimeSession] %s", e.message)
                self._error = e.message
                return False

            self._begin_attempt("connect()")
            return True

    async def set_ticket(self, ticket_id: Optional[int]) -> bool:
        """
        Switch the subscribed ticket.

        Returns:
            bool: True if a subscribe frame was sent on the push channel
        """
        previous = self._subscriptions.ticket_id
        sent = await self._subscriptions.subscribe(ticket_id)

        if (
            self.fallback_active
            and self._fallback is not None
            and ticket_id is not None
            and ticket_id != previous
        ):
            logger.info("[RealtimeSession] Reopening fallback stream for ticket %s", ticket_id)
            await self._fallback.switch_ticket(ticket_id)
        return sent

    async def disconnect(self) -> None:
        """
        Tear everything down and return to IDLE. Idempotent.

        Leaving the current state releases its reconnect timer or
        keep-alive; the transport is then closed with code 1000.
        """
        with LogContext(session_id=self.session_id):
            if self.state is not S.IDLE:
                self._machine.transition(S.IDLE, "disconnect()")
            self._machine.scope.release_all()

            transport, self._transport = self._transport, None
            if transport is not None:
                await transport.close(1000, INTENTIONAL_DISCONNECT)

            if self._fallback is not None:
                await self._fallback.disconnect()

            self._controller.attempt_finished()
            self._controller.reset()
            self._subscriptions.on_close()
            self._error = None

    async def close(self) -> None:
        """Disconnect and dispose; the session cannot be reused afterwards."""
        await self.disconnect()
        self._subscriptions.close()
        for _, future in self._waiters:
            if not future.done():
                future.cancel()
        self._waiters.clear()

    async def wait_for_state(
        self, *states: ConnectionState, timeout: Optional[float] = None
    ) -> ConnectionState:
        """
        Wait until the session enters one of ``states``.

        Raises:
            asyncio.TimeoutError: ``timeout`` elapsed first
        """
        if self.state in states:
            return self.state

        future: "asyncio.Future[ConnectionState]" = asyncio.get_running_loop().create_future()
        waiter = (frozenset(states), future)
        self._waiters.append(waiter)
        try:
            return await asyncio.wait_for(future, timeout)
        finally:
            if waiter in self._waiters:
                self._waiters.remove(waiter)

    def status(self) -> Dict[str, Any]:
        """JSON-serialisable snapshot for diagnostics."""
        fallback = None
        if self._fallback is not None:
            fallback = {
                "connected": bool(self._fallback.connected),
                "error": self._fallback.error,
            }
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "connected": self.connected,
            "error": self.error,
            "retry_count": self.retry_count,
            "ticket_id": self.ticket_id,
            "subscribed_to": self._subscriptions.subscribed_to,
            "fallback_active": self.fallback_active,
            "fallback": fallback,
            "pending": [r.to_dict() for r in self._machine.scope.pending()],
            "stats": self.stats,
        }

    async def __aenter__(self) -> "RealtimeSession":
        self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Attempt lifecycle
    # ------------------------------------------------------------------

    def _default_transport(self) -> PrimaryTransport:
        return PrimaryTransport(close_timeout=self.config.close_timeout)

    def _validate_credential(self) -> Credential:
        return Credential.parse(self._token_provider())

    def _begin_attempt(self, reason: str) -> None:
        self._error = None
        self._machine.transition(S.CONNECTING, reason)
        self._controller.attempt_started()
        self._stats["attempts"] += 1
        self._machine.scope.spawn(S.CONNECTING, "connect_attempt", self._attempt())

    async def _attempt(self) -> None:
        try:
            credential = self._validate_credential()
        except CredentialError as e:
            self._fail_terminal(e.message)
            return

        base_url = self._endpoints.server_base_url
        if not await self._prober.probe(base_url):
            error = ReachabilityError("Server not reachable", details={"base_url": base_url})
            self._fail_terminal(error.message)
            return

        self._machine.scope.call_later(
            S.CONNECTING, "connect_timeout", self.config.connect_timeout, self._on_connect_timeout
        )

        transport = self._transport_factory()
        self._transport = transport
        logger.info("[RealtimeSession] Connecting to %s", self._endpoints.server_base_url)
        try:
            await transport.open(self._endpoints.websocket_url(credential.token), credential)
        except CredentialError as e:
            self._transport = None
            self._fail_terminal(e.message)
            return
        except TransportError as e:
            self._on_transport_error(e, transport)
            return

        await self._on_open(transport)

    async def _on_open(self, transport: PrimaryTransport) -> None:
        self._machine.transition(S.OPEN, "handshake complete")
        self._controller.attempt_finished()
        self._controller.reset()
        self._error = None
        self._stats["opens"] += 1
        logger.info("[RealtimeSession] Connected")

        self._dispatcher.emit_connection_ack({"message": "Connected to the realtime service"})
        if self.state is not S.OPEN:
            return

        scope = self._machine.scope
        scope.spawn(S.OPEN, "keepalive", self._keepalive_loop(transport))
        scope.spawn(S.OPEN, "receive", self._receive_loop(transport))
        await self._subscriptions.on_open()

    def _fail_terminal(self, message: str) -> None:
        """Credential or reachability failure: CLOSED, no retry, no fallback."""
        logger.error("[RealtimeSession] %s", message)
        self._error = message
        self._controller.attempt_finished()
        self._machine.transition(S.CLOSED, message)

    def _on_connect_timeout(self) -> None:
        if self.state is not S.CONNECTING:
            return
        error = ConnectionTimeoutError(
            "Connection timeout", details={"timeout": self.config.connect_timeout}
        )
        logger.error(
            "[RealtimeSession] Connection timeout after %.1fs", self.config.connect_timeout
        )
        self._error = error.message
        self._transport = None
        self._handle_retryable_failure("establishment timeout")

    def _handle_retryable_failure(self, reason: str) -> None:
        self._controller.attempt_finished()
        self._subscriptions.on_close()

        delay = self._controller.record_failure()
        if delay is None:
            self._error = None
            self._enter_fallback("reconnect budget exhausted")
            return

        self._machine.transition(S.RECONNECT_PENDING, reason)
        self._machine.scope.call_later(
            S.RECONNECT_PENDING, "reconnect", delay, self._on_reconnect_timer
        )

    def _on_reconnect_timer(self) -> None:
        if self.state is not S.RECONNECT_PENDING or not self._controller.should_fire():
            return
        self._begin_attempt(f"reconnect attempt {self.retry_count}")

    def _on_transport_error(
        self, error: TransportError, transport: Optional[PrimaryTransport] = None
    ) -> None:
        logger.error("[RealtimeSession] %s", error.message)
        self._error = error.message
        self._controller.attempt_finished()
        self._subscriptions.on_close()
        if transport is not None and self._transport is transport:
            self._transport = None

        self._enter_fallback("transport error")

        if transport is not None and transport.is_open:
            self._machine.scope.spawn(
                S.FALLBACK_ACTIVE, "close_primary", transport.close(1000, "Switching to fallback")
            )

        if self.handlers.on_error is not None:
            try:
                self.handlers.on_error(error)
            except Exception:
                logger.exception("[RealtimeSession] on_error handler raised")

    def _enter_fallback(self, reason: str) -> None:
        self._machine.transition(S.FALLBACK_ACTIVE, reason)
        self._stats["fallbacks"] += 1
        logger.warning("[RealtimeSession] Switching to fallback transport (%s)", reason)

        fallback = self._get_fallback()
        self._machine.scope.spawn(
            S.FALLBACK_ACTIVE,
            "fallback_connect",
            fallback.connect(self.ticket_id, self.handlers),
        )

    def _get_fallback(self) -> Any:
        if self._fallback is None:
            self._fallback = SSEFallbackTransport(
                self._endpoints,
                self._token_provider,
                max_reconnect_attempts=self.config.fallback_max_reconnect_attempts,
                reconnect_delay=self.config.fallback_reconnect_delay,
                heartbeat_interval=self.config.fallback_heartbeat_interval,
                connect_timeout=self.config.connect_timeout,
                client_id=self.config.client_id,
            )
        return self._fallback

    # ------------------------------------------------------------------
    # Open-state tasks
    # ------------------------------------------------------------------

    def _owns(self, transport: PrimaryTransport) -> bool:
        return self._transport is transport and self.state is S.OPEN

    async def _receive_loop(self, transport: PrimaryTransport) -> None:
        try:
            async for raw in transport.frames():
                if not self._owns(transport):
                    return
                self._dispatcher.dispatch(raw)
        except TransportError as e:
            if self._owns(transport):
                self._on_transport_error(e, transport)
            return

        if self._owns(transport):
            self._on_close(transport.close_code, transport.close_reason)

    def _on_close(self, code: int, reason: str) -> None:
        logger.info("[RealtimeSession] Connection closed: code=%d reason=%r", code, reason)
        self._transport = None
        self._subscriptions.on_close()

        if is_normal_close(code):
            self._machine.transition(S.CLOSED, f"close code {code}")
            return

        self._stats["abnormal_closes"] += 1
        self._error = f"Connection lost (code {code})"
        self._handle_retryable_failure(f"abnormal close code {code}")

    async def _keepalive_loop(self, transport: PrimaryTransport) -> None:
        while True:
            await asyncio.sleep(self.config.heartbeat_interval)
            if not self._owns(transport) or not transport.ready:
                return
            if await transport.send_frame(heartbeat_frame()):
                logger.debug("[RealtimeSession] Heartbeat sent")

    def _on_transition(self, previous: ConnectionState, new: ConnectionState, reason: str) -> None:
        for states, future in list(self._waiters):
            if new in states and not future.done():
                future.set_result(new)

        if self._on_state_change is not None:
            try:
                self._on_state_change(previous, new, reason)
            except Exception:
                logger.exception("[RealtimeSession] on_state_change listener raised")

    def __repr__(self) -> str:
        return (
            f"RealtimeSession(id={self.session_id}, state={self.state.value}, "
            f"ticket={self.ticket_id})"
        )
