"""
Event Dispatcher

Routes each inbound frame to at most one caller handler, synchronously
and in wire order. Malformed and unknown frames are logged and dropped;
they never reach the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Union

from erp_prime.core.exceptions import FrameDecodeError, UnknownFrameTypeError
from erp_prime.realtime.events import EventKind, InboundEvent, parse_frame

logger = logging.getLogger(__name__)

Handler = Callable[[Any], None]


@dataclass
class EventHandlers:
    """Caller callbacks. Each receives the frame's ``data`` payload."""

    on_message: Optional[Handler] = None
    on_ticket_update: Optional[Handler] = None
    on_notification: Optional[Handler] = None
    on_connection: Optional[Handler] = None
    on_heartbeat: Optional[Handler] = None
    on_error: Optional[Callable[[BaseException], None]] = None

    def for_kind(self, kind: EventKind) -> Optional[Handler]:
        return {
            EventKind.MESSAGE: self.on_message,
            EventKind.TICKET_UPDATE: self.on_ticket_update,
            EventKind.NOTIFICATION: self.on_notification,
            EventKind.CONNECTION: self.on_connection,
            EventKind.HEARTBEAT: self.on_heartbeat,
        }[kind]


class EventDispatcher:
    """Parses raw frames into InboundEvent and invokes the matching handler."""

    def __init__(self, handlers: Optional[EventHandlers] = None, source: str = "push"):
        self.handlers = handlers or EventHandlers()
        self.source = source
        self._stats = {"dispatched": 0, "dropped": 0, "ignored": 0}

    @property
    def stats(self) -> dict:
        return self._stats.copy()

    def dispatch(self, raw: Union[str, bytes]) -> Optional[InboundEvent]:
        """
        Dispatch one raw frame.

        Returns:
            The event that was delivered, or None when the frame was dropped
        """
        try:
            event = parse_frame(raw)
        except UnknownFrameTypeError as e:
            self._stats["ignored"] += 1
            logger.warning("[EventDispatcher:%s] Unknown event type: %r", self.source, e.frame_type)
            return None
        except FrameDecodeError as e:
            self._stats["dropped"] += 1
            logger.error(
                "[EventDispatcher:%s] Dropping malformed frame (%s): %.100r",
                self.source,
                e.message,
                raw,
            )
            return None

        self.deliver(event)
        return event

    def deliver(self, event: InboundEvent) -> None:
        """Invoke the handler for ``event.kind`` with its payload."""
        self._stats["dispatched"] += 1
        logger.debug(
            "[EventDispatcher:%s] %s ticket=%s",
            self.source,
            event.kind.value,
            event.ticket_id,
        )

        handler = self.handlers.for_kind(event.kind)
        if handler is None:
            return

        try:
            handler(event.payload)
        except Exception:
            # handler bugs must not take the receive loop down
            logger.exception(
                "[EventDispatcher:%s] %s handler raised", self.source, event.kind.value
            )

    def emit_connection_ack(self, payload: Any = None) -> InboundEvent:
        """Deliver a locally generated connection ack."""
        event = InboundEvent(
            kind=EventKind.CONNECTION,
            payload=payload,
            timestamp=datetime.now(timezone.utc),
        )
        self.deliver(event)
        return event
