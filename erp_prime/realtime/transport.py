"""
Primary Transport (push channel)

Thin wrapper around a ``websockets`` client connection. Library-level
ping frames are disabled: keep-alive is the application heartbeat frame
sent by the session.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Union

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException
from websockets.protocol import State

from erp_prime.core.exceptions import TransportError
from erp_prime.realtime.credentials import Credential

logger = logging.getLogger(__name__)

NORMAL_CLOSE_CODES = frozenset({1000, 1001})
ABNORMAL_CLOSURE = 1006
INTENTIONAL_DISCONNECT = "Intentional disconnect"

Connector = Callable[..., Awaitable[Any]]


def is_normal_close(code: Optional[int]) -> bool:
    """1000 (normal) and 1001 (going away) suppress reconnection."""
    return code in NORMAL_CLOSE_CODES


class PrimaryTransport:
    """
    One push-channel connection.

    Args:
        connector: Coroutine factory opening the socket, called as
            ``connector(url, **options)``; defaults to ``websockets.connect``
        close_timeout: Seconds to wait for the closing handshake
    """

    def __init__(
        self,
        connector: Optional[Connector] = None,
        close_timeout: float = 10.0,
    ):
        self._connector = connector or websockets.connect
        self.close_timeout = close_timeout
        self._ws: Any = None
        self._url: Optional[str] = None

    @property
    def url(self) -> Optional[str]:
        return self._url

    @property
    def is_open(self) -> bool:
        return self._ws is not None

    @property
    def ready(self) -> bool:
        """True when frames can be written right now."""
        return self._ws is not None and getattr(self._ws, "state", None) is State.OPEN

    @property
    def close_code(self) -> int:
        code = getattr(self._ws, "close_code", None) if self._ws is not None else None
        return code if code is not None else ABNORMAL_CLOSURE

    @property
    def close_reason(self) -> str:
        if self._ws is None:
            return ""
        return getattr(self._ws, "close_reason", None) or ""

    async def open(self, url: str, credential: Credential) -> None:
        """
        Open the socket.

        Raises:
            CredentialError: token expired since it was parsed (no socket is opened)
            TransportError: handshake or network failure
        """
        credential.ensure_valid()

        self._url = url
        try:
            self._ws = await self._connector(
                url,
                ping_interval=None,  # heartbeat frames are sent by the session
                ping_timeout=None,
                close_timeout=self.close_timeout,
            )
        except (OSError, WebSocketException) as e:
            raise TransportError(
                f"WebSocket connection failed: {e or type(e).__name__}", cause=e
            ) from e

        logger.debug("[PrimaryTransport] Opened %s", _redact(url))

    async def send_frame(self, frame: Union[Dict[str, Any], str]) -> bool:
        """
        Send one frame (dicts are JSON-encoded).

        Returns:
            bool: True if sent
        """
        if not self.ready:
            logger.warning("[PrimaryTransport] Cannot send: not open")
            return False

        data = frame if isinstance(frame, str) else json.dumps(frame, separators=(",", ":"))
        try:
            await self._ws.send(data)
            return True
        except (ConnectionClosed, OSError) as e:
            logger.error("[PrimaryTransport] Send failed: %s", e)
            return False

    async def frames(self) -> AsyncIterator[Union[str, bytes]]:
        """
        Yield inbound frames in wire order until the socket closes.

        Close details are available afterwards through ``close_code`` and
        ``close_reason``. Protocol and network failures raise TransportError.
        """
        if self._ws is None:
            return
        try:
            async for message in self._ws:
                yield message
        except ConnectionClosed:
            return
        except (OSError, WebSocketException) as e:
            raise TransportError(
                f"WebSocket receive failed: {e or type(e).__name__}", cause=e
            ) from e

    async def close(self, code: int = 1000, reason: str = INTENTIONAL_DISCONNECT) -> None:
        """
        Close with ``code``; errors while closing are logged only.

        A close cancelled mid-handshake aborts the underlying TCP transport.
        """
        ws, self._ws = self._ws, None
        if ws is None:
            return
        try:
            await ws.close(code=code, reason=reason)
        except asyncio.CancelledError:
            logger.debug("[PrimaryTransport] Close cancelled, aborting connection")
            ws.transport.abort()
            raise
        except (ConnectionClosed, OSError) as e:
            logger.debug("[PrimaryTransport] Error closing connection: %s", e)


def _redact(url: str) -> str:
    """Hide the token query parameter in log lines."""
    head, sep, _ = url.partition("token=")
    return f"{head}{sep}***" if sep else url
