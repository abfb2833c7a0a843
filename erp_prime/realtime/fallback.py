"""
Fallback Transport (pull channel)

Server-sent-events stream used once the push channel is abandoned.
Delivers the same event kinds through its own dispatcher, keeps itself
alive with an HTTP heartbeat and reconnects on its own schedule
(3s, 6s, 12s, ... up to 5 attempts).
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, List, Optional, Set

import aiohttp

from erp_prime.core.exceptions import TransportError, wrap_exception
from erp_prime.realtime.dispatcher import EventDispatcher, EventHandlers
from erp_prime.realtime.endpoints import EndpointResolver

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Optional[str]]


class SSEFallbackTransport:
    """
    Pull-channel client exposing ``connected`` and ``error``.

    Args:
        endpoints: Resolver for stream and heartbeat URLs
        token_provider: Returns the current bearer token
        max_reconnect_attempts: Own retry budget
        reconnect_delay: First retry delay in seconds, doubled per attempt
        heartbeat_interval: Seconds between heartbeat POSTs
        client_id: Reported in the heartbeat body
        session: Shared aiohttp session; one is created (and owned) if omitted
    """

    def __init__(
        self,
        endpoints: EndpointResolver,
        token_provider: TokenProvider,
        *,
        max_reconnect_attempts: int = 5,
        reconnect_delay: float = 3.0,
        heartbeat_interval: float = 30.0,
        connect_timeout: float = 10.0,
        client_id: str = "erp-prime-client",
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._endpoints = endpoints
        self._token_provider = token_provider
        self.max_reconnect_attempts = max_reconnect_attempts
        self.reconnect_delay = reconnect_delay
        self.heartbeat_interval = heartbeat_interval
        self.connect_timeout = connect_timeout
        self.client_id = client_id

        self._session = session
        self._owns_session = session is None
        self._dispatcher = EventDispatcher(source="fallback")
        self._response: Optional[aiohttp.ClientResponse] = None
        self._tasks: Set["asyncio.Task[Any]"] = set()
        self._reconnect_handle: Optional[asyncio.TimerHandle] = None

        self._ticket_id: Optional[int] = None
        self._connected = False
        self._error: Optional[str] = None
        self._reconnect_attempts = 0
        self._is_connecting = False
        self._closed = True

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def ticket_id(self) -> Optional[int]:
        return self._ticket_id

    async def connect(
        self,
        ticket_id: Optional[int] = None,
        handlers: Optional[EventHandlers] = None,
    ) -> bool:
        """
        Open the stream for ``ticket_id`` (notifications stream if None).

        Returns:
            bool: True if the stream was opened
        """
        if handlers is not None:
            self._dispatcher.handlers = handlers
        self._ticket_id = ticket_id
        self._closed = False
        return await self._open()

    async def switch_ticket(self, ticket_id: Optional[int]) -> bool:
        """Streams are ticket-scoped: reopen for the new ticket."""
        if ticket_id == self._ticket_id and self._connected:
            return True
        await self.disconnect()
        return await self.connect(ticket_id)

    async def disconnect(self) -> None:
        self._closed = True
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

        current = asyncio.current_task()
        pending: List["asyncio.Task[Any]"] = [t for t in self._tasks if t is not current]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        self._release_response()
        self._connected = False
        self._error = None
        self._is_connecting = False
        self._reconnect_attempts = 0

        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
            self._session = None
        logger.info("[FallbackTransport] Disconnected (ticket=%s)", self._ticket_id)

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def _open(self) -> bool:
        if self._connected or self._is_connecting:
            logger.debug("[FallbackTransport] Already connected or connecting")
            return self._connected

        token = self._token_provider()
        if not token:
            self._error = "Authentication token not found"
            return False

        self._is_connecting = True
        url = self._endpoints.stream_url(self._ticket_id, token)
        logger.info("[FallbackTransport] Connecting (ticket=%s)", self._ticket_id)

        try:
            session = await self._ensure_session()
            response = await session.get(
                url,
                headers={"Accept": "text/event-stream", "Cache-Control": "no-cache"},
                timeout=aiohttp.ClientTimeout(total=None, sock_connect=self.connect_timeout),
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self._is_connecting = False
            error = wrap_exception(e, TransportError, "Error connecting to the realtime service")
            logger.error("[FallbackTransport] Connection failed: %s", error)
            self._error = error.message
            self._schedule_reconnect()
            return False

        self._is_connecting = False
        if self._closed:
            response.release()
            return False

        if response.status != 200:
            logger.error("[FallbackTransport] Stream rejected: HTTP %d", response.status)
            response.release()
            self._error = f"Realtime stream rejected (HTTP {response.status})"
            self._schedule_reconnect()
            return False

        self._response = response
        self._connected = True
        self._error = None
        self._reconnect_attempts = 0
        logger.info("[FallbackTransport] Connected (ticket=%s)", self._ticket_id)

        self._spawn(self._read_loop(response))
        self._spawn(self._heartbeat_loop())
        return True

    async def _read_loop(self, response: aiohttp.ClientResponse) -> None:
        data_lines: List[str] = []
        try:
            async for raw_line in response.content:
                line = raw_line.decode("utf-8", errors="replace").rstrip("\r\n")
                if not line:
                    if data_lines:
                        self._dispatcher.dispatch("\n".join(data_lines))
                        data_lines = []
                    continue
                if line.startswith(":"):
                    continue
                field, _, value = line.partition(":")
                if value.startswith(" "):
                    value = value[1:]
                if field == "data":
                    data_lines.append(value)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.error("[FallbackTransport] Stream error: %s", e or type(e).__name__)

        if response is self._response and not self._closed:
            self._on_stream_closed()

    def _on_stream_closed(self) -> None:
        logger.warning("[FallbackTransport] Stream closed by server (ticket=%s)", self._ticket_id)
        self._release_response()
        self._connected = False
        self._error = "Connection closed by server"
        for task in [t for t in self._tasks if t is not asyncio.current_task()]:
            task.cancel()
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._closed:
            return
        if self._reconnect_attempts >= self.max_reconnect_attempts:
            logger.error(
                "[FallbackTransport] Max reconnect attempts (%d) reached",
                self.max_reconnect_attempts,
            )
            self._error = "Could not reconnect to the realtime service"
            return

        self._reconnect_attempts += 1
        delay = self.reconnect_delay * (2 ** (self._reconnect_attempts - 1))
        logger.info(
            "[FallbackTransport] Reconnecting in %.1fs (attempt %d/%d)",
            delay,
            self._reconnect_attempts,
            self.max_reconnect_attempts,
        )
        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(delay, self._fire_reconnect)

    def _fire_reconnect(self) -> None:
        self._reconnect_handle = None
        if not self._closed:
            self._spawn(self._open())

    async def _heartbeat_loop(self) -> None:
        while self._connected:
            await asyncio.sleep(self.heartbeat_interval)
            if not self._connected:
                return
            await self._send_heartbeat()

    async def _send_heartbeat(self) -> bool:
        token = self._token_provider()
        try:
            session = await self._ensure_session()
            async with session.post(
                self._endpoints.heartbeat_url,
                json={"clientId": self.client_id},
                headers={"Authorization": f"Bearer {token}"},
                timeout=aiohttp.ClientTimeout(total=self.connect_timeout),
            ) as response:
                if response.status >= 400:
                    logger.warning("[FallbackTransport] Heartbeat failed: HTTP %d", response.status)
                    return False
                return True
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("[FallbackTransport] Heartbeat error: %s", e or type(e).__name__)
            return False

    def _spawn(self, coro) -> "asyncio.Task[Any]":
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _release_response(self) -> None:
        response, self._response = self._response, None
        if response is not None:
            response.close()
