"""
Endpoint resolution for the realtime channel.

All URLs derive from one origin (the page the client is hosted on):
the push channel upgrades its scheme, the health probe and the pull
channel reuse it. Resolved endpoints are cached process-wide in an
``EndpointCache`` whose lifecycle is explicit (lazy init, invalidate,
reset through the state manager).
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Dict, Optional, Tuple
from urllib.parse import quote, urlsplit

from erp_prime.core.exceptions import InvalidConfigError
from erp_prime.core.state_manager import register_state_reset

logger = logging.getLogger(__name__)

LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1"})
WS_SCHEMES = {"http": "ws", "https": "wss"}


@dataclass(frozen=True)
class EndpointResolver:
    """URLs of the realtime endpoints for one origin."""

    scheme: str
    hostname: str
    port: Optional[int]
    default_port: int = 3000
    websocket_path: str = "/ws"
    health_path: str = "/health"
    realtime_path: str = "/api/realtime"

    @classmethod
    def from_origin(
        cls,
        origin: str,
        *,
        default_port: int = 3000,
        websocket_path: str = "/ws",
        health_path: str = "/health",
        realtime_path: str = "/api/realtime",
    ) -> "EndpointResolver":
        """
        Parse an origin such as ``https://erp.example.com:8443``.

        Raises:
            InvalidConfigError: scheme is not http/https or host is missing
        """
        parts = urlsplit(origin)
        scheme = parts.scheme.lower()
        if scheme not in WS_SCHEMES:
            raise InvalidConfigError(
                f"Unsupported origin scheme: {parts.scheme or '<none>'}",
                details={"origin": origin},
            )
        if not parts.hostname:
            raise InvalidConfigError("Origin has no host", details={"origin": origin})
        try:
            port = parts.port
        except ValueError as exc:
            raise InvalidConfigError(
                "Origin has an invalid port", details={"origin": origin}, cause=exc
            ) from exc

        return cls(
            scheme=scheme,
            hostname=parts.hostname,
            port=port,
            default_port=default_port,
            websocket_path=websocket_path,
            health_path=health_path,
            realtime_path=realtime_path,
        )

    @property
    def is_local(self) -> bool:
        return self.hostname in LOCAL_HOSTS

    @property
    def effective_port(self) -> int:
        return self.port or self.default_port

    @property
    def server_base_url(self) -> str:
        """Backend base URL; loopback addresses normalise to localhost."""
        host = "localhost" if self.is_local else self.hostname
        return f"{self.scheme}://{host}:{self.effective_port}"

    @property
    def health_url(self) -> str:
        return f"{self.server_base_url}{self.health_path}"

    def websocket_url(self, token: str) -> str:
        """Push channel URL carrying the bearer token as a query parameter."""
        ws_scheme = WS_SCHEMES[self.scheme]
        return (
            f"{ws_scheme}://{self.hostname}:{self.effective_port}"
            f"{self.websocket_path}?token={quote(token, safe='')}"
        )

    @property
    def realtime_base_url(self) -> str:
        """
        Pull channel base.

        Local origins reach it through the origin itself; remote origins
        go to the backend port directly.
        """
        if self.is_local:
            port = f":{self.port}" if self.port else ""
            return f"{self.scheme}://{self.hostname}{port}{self.realtime_path}"
        return f"{self.scheme}://{self.hostname}:{self.default_port}{self.realtime_path}"

    def stream_url(self, ticket_id: Optional[int], token: str) -> str:
        """Ticket-scoped stream when a ticket is given, else the notifications stream."""
        if ticket_id is not None:
            path = f"/ticket/{ticket_id}"
        else:
            path = "/notifications"
        return f"{self.realtime_base_url}{path}?token={quote(token, safe='')}"

    @property
    def heartbeat_url(self) -> str:
        return f"{self.realtime_base_url}/heartbeat"


class EndpointCache:
    """
    Process-wide cache of resolvers keyed by origin.

    Initialised lazily on first ``get``; ``invalidate`` drops one origin
    or everything.
    """

    def __init__(self) -> None:
        self._resolvers: Dict[Tuple[str, tuple], EndpointResolver] = {}
        self._lock = threading.Lock()

    def get(self, origin: str, **options) -> EndpointResolver:
        base = origin.rstrip("/")
        key = (base, tuple(sorted(options.items())))
        with self._lock:
            resolver = self._resolvers.get(key)
            if resolver is None:
                resolver = EndpointResolver.from_origin(base, **options)
                self._resolvers[key] = resolver
                logger.debug("[EndpointCache] Resolved %s", resolver.server_base_url)
            return resolver

    def invalidate(self, origin: Optional[str] = None) -> None:
        with self._lock:
            if origin is None:
                self._resolvers.clear()
                return
            base = origin.rstrip("/")
            for key in [k for k in self._resolvers if k[0] == base]:
                del self._resolvers[key]

    def __len__(self) -> int:
        return len(self._resolvers)


_endpoint_cache: Optional[EndpointCache] = None


def get_endpoint_cache() -> EndpointCache:
    """Return the process-wide cache, creating it on first use."""
    global _endpoint_cache
    if _endpoint_cache is None:
        _endpoint_cache = EndpointCache()
    return _endpoint_cache


def reset_endpoint_cache() -> None:
    global _endpoint_cache
    _endpoint_cache = None


register_state_reset("endpoint_cache", reset_endpoint_cache)
