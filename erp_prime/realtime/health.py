"""
Connection Health Prober

Pre-flight reachability check run before each push-channel attempt.
"""

from __future__ import annotations

import logging
from typing import Optional

import aiohttp

logger = logging.getLogger(__name__)


class HealthProber:
    """
    Short-timeout ``GET <base>/health``.

    ``probe`` never raises. With ``require_ok=False`` (the default) any
    HTTP response counts as reachable, whatever its status; with
    ``require_ok=True`` only 2xx does. Exceptions always mean unreachable.
    """

    def __init__(
        self,
        timeout: float = 2.0,
        *,
        path: str = "/health",
        require_ok: bool = False,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.timeout = timeout
        self.path = path
        self.require_ok = require_ok
        self._session = session

    async def probe(self, base_url: str) -> bool:
        """
        Check that the backend answers.

        Args:
            base_url: Server base URL, e.g. ``http://localhost:3000``

        Returns:
            bool: True if reachable
        """
        url = f"{base_url.rstrip('/')}{self.path}"
        try:
            status = await self._get_status(url)
        except Exception as e:
            logger.warning("[HealthProber] %s unreachable: %s", url, e or type(e).__name__)
            return False

        reachable = 200 <= status < 300 if self.require_ok else True
        logger.debug("[HealthProber] %s answered %d (reachable=%s)", url, status, reachable)
        return reachable

    async def _get_status(self, url: str) -> int:
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        headers = {"Cache-Control": "no-cache"}
        if self._session is not None and not self._session.closed:
            async with self._session.get(url, timeout=timeout, headers=headers) as response:
                return response.status

        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(url, headers=headers) as response:
                return response.status
