"""
Reconnection Controller

Bounded linear backoff for abnormal closes of the push channel:
attempt n waits min(base * n, cap) -> 2s, 4s, 6s with the defaults.
Once the budget is spent the session falls back for good.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconnectPolicy:
    """
    Attributes:
        max_attempts: Retry budget before permanent fallback
        base_delay: Delay unit in seconds, multiplied by the attempt number
        max_delay: Cap in seconds
    """

    max_attempts: int = 3
    base_delay: float = 2.0
    max_delay: float = 10.0

    def delay_for(self, attempt: int) -> float:
        """Delay before reconnect attempt ``attempt`` (1-based)."""
        if attempt < 1:
            raise ValueError(f"attempt must be >= 1, got {attempt}")
        return min(self.base_delay * attempt, self.max_delay)


class ReconnectionController:
    """Owns the retry counter and the retry-or-fallback decision."""

    def __init__(self, policy: Optional[ReconnectPolicy] = None):
        self.policy = policy or ReconnectPolicy()
        self._retry_count = 0
        self._is_connecting = False

    @property
    def retry_count(self) -> int:
        return self._retry_count

    @property
    def exhausted(self) -> bool:
        return self._retry_count >= self.policy.max_attempts

    @property
    def is_connecting(self) -> bool:
        return self._is_connecting

    def attempt_started(self) -> None:
        self._is_connecting = True

    def attempt_finished(self) -> None:
        self._is_connecting = False

    def reset(self) -> None:
        """Called on every successful open."""
        self._retry_count = 0

    def record_failure(self) -> Optional[float]:
        """
        Account for one abnormal close.

        Returns:
            Delay in seconds before the next attempt, or None when the
            budget is exhausted and the session must fall back
        """
        if self.exhausted:
            logger.warning(
                "[ReconnectionController] Max reconnect attempts (%d) reached",
                self.policy.max_attempts,
            )
            return None

        self._retry_count += 1
        delay = self.policy.delay_for(self._retry_count)
        logger.info(
            "[ReconnectionController] Reconnecting in %.1fs (attempt %d/%d)",
            delay,
            self._retry_count,
            self.policy.max_attempts,
        )
        return delay

    def should_fire(self) -> bool:
        """A reconnect timer firing during an in-flight attempt is dropped."""
        if self._is_connecting:
            logger.debug("[ReconnectionController] Attempt in flight, skipping reconnect")
            return False
        return True
