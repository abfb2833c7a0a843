"""
Subscription Manager

At most one ticket subscription per connection. Subscribe frames are
idempotent and override the previous one server-side, so a ticket change
sends a new subscribe and never an unsubscribe.
"""

from __future__ import annotations

import logging
import weakref
from typing import TYPE_CHECKING, Optional

from erp_prime.realtime.events import subscribe_frame

if TYPE_CHECKING:
    from erp_prime.realtime.session import RealtimeSession

logger = logging.getLogger(__name__)


class SubscriptionManager:
    """
    Tracks the requested ticket id and (re)issues subscribe frames.

    Holds only a weak reference to its session; once the session is gone
    or ``close()`` was called every operation is a no-op.
    """

    def __init__(
        self,
        session: "RealtimeSession",
        ticket_id: Optional[int] = None,
        retry_delay: float = 0.1,
    ):
        self._session_ref: Optional["weakref.ReferenceType[RealtimeSession]"] = weakref.ref(session)
        self.ticket_id = ticket_id
        self.retry_delay = retry_delay
        self._subscribed_to: Optional[int] = None

    @property
    def subscribed_to(self) -> Optional[int]:
        """Ticket id acknowledged by a sent frame on the current connection."""
        return self._subscribed_to

    def _session(self) -> Optional["RealtimeSession"]:
        if self._session_ref is None:
            return None
        return self._session_ref()

    async def subscribe(self, ticket_id: Optional[int]) -> bool:
        """
        Request ``ticket_id``.

        No-op for None. Sent immediately while open, otherwise deferred
        until the next open.

        Returns:
            bool: True if a subscribe frame was sent now
        """
        if ticket_id is None:
            return False

        changed = ticket_id != self.ticket_id
        self.ticket_id = ticket_id

        session = self._session()
        if session is None or not session.is_open:
            logger.debug("[SubscriptionManager] Ticket %s deferred until open", ticket_id)
            return False
        if not changed and self._subscribed_to == ticket_id:
            return False

        logger.info("[SubscriptionManager] Resubscribing to ticket %s", ticket_id)
        return await self._send(ticket_id, allow_retry=False)

    async def on_open(self) -> bool:
        """Send the current subscription, retrying once if the handle is not ready."""
        self._subscribed_to = None
        if self.ticket_id is None:
            return False
        return await self._send(self.ticket_id, allow_retry=True)

    def on_close(self) -> None:
        self._subscribed_to = None

    def close(self) -> None:
        """Drop the session reference; called when the session is disposed."""
        self._subscribed_to = None
        self._session_ref = None

    async def _send(self, ticket_id: int, *, allow_retry: bool) -> bool:
        session = self._session()
        if session is None:
            return False

        if session.transport_ready:
            sent = await session.send_frame(subscribe_frame(ticket_id))
            if sent:
                self._subscribed_to = ticket_id
                logger.info("[SubscriptionManager] Subscribed to ticket %s", ticket_id)
            return sent

        if allow_retry:
            logger.debug(
                "[SubscriptionManager] Handle not ready, retrying in %.2fs",
                self.retry_delay,
            )
            session.call_later_in_state("subscribe_retry", self.retry_delay, self._retry)
        return False

    def _retry(self) -> None:
        session = self._session()
        if session is None or not session.is_open or self.ticket_id is None:
            return
        if not session.transport_ready:
            logger.warning(
                "[SubscriptionManager] Handle still not ready, subscription to %s skipped",
                self.ticket_id,
            )
            return
        session.spawn_in_state(
            "subscribe_send", self._send(self.ticket_id, allow_retry=False)
        )
