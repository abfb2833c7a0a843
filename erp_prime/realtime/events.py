"""
Realtime frames.

Inbound:  {"type": <kind>, "ticketId"?: int, "data": any, "timestamp": ISO-8601}
Outbound: {"type": "subscribe_ticket", "ticketId": int}
          {"type": "heartbeat"}
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union

from erp_prime.core.exceptions import FrameDecodeError, UnknownFrameTypeError


class EventKind(str, Enum):
    """Inbound event kinds, keyed by the frame ``type`` tag."""

    MESSAGE = "message"  # chat message on a ticket
    TICKET_UPDATE = "ticket_update"
    NOTIFICATION = "notification"  # user notification
    HEARTBEAT = "heartbeat"  # keep-alive
    CONNECTION = "connection"  # connection ack


SUBSCRIBE_TICKET = "subscribe_ticket"


@dataclass(frozen=True)
class InboundEvent:
    kind: EventKind
    payload: Any = None
    ticket_id: Optional[int] = None
    timestamp: Optional[datetime] = None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string (``Z`` suffix accepted); None if unparsable."""
    if not isinstance(value, str) or not value:
        return None
    text = value[:-1] + "+00:00" if value.endswith("Z") else value
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def parse_frame(raw: Union[str, bytes, bytearray]) -> InboundEvent:
    """
    Decode one inbound frame.

    Raises:
        FrameDecodeError: not JSON, not an object, or no ``type``
        UnknownFrameTypeError: ``type`` outside EventKind
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise FrameDecodeError("Frame is not UTF-8", cause=exc) from exc

    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise FrameDecodeError("Frame is not valid JSON", cause=exc) from exc

    if not isinstance(data, dict):
        raise FrameDecodeError("Frame is not a JSON object")

    frame_type = data.get("type")
    if frame_type is None:
        raise FrameDecodeError("Frame has no type")

    try:
        kind = EventKind(frame_type)
    except ValueError:
        raise UnknownFrameTypeError(
            f"Unknown frame type: {frame_type}", frame_type=frame_type
        ) from None

    ticket_id = data.get("ticketId")
    if isinstance(ticket_id, bool) or not isinstance(ticket_id, int):
        ticket_id = None

    return InboundEvent(
        kind=kind,
        payload=data.get("data"),
        ticket_id=ticket_id,
        timestamp=parse_timestamp(data.get("timestamp")),
    )


def subscribe_frame(ticket_id: int) -> Dict[str, Any]:
    return {"type": SUBSCRIBE_TICKET, "ticketId": ticket_id}


def heartbeat_frame() -> Dict[str, Any]:
    return {"type": EventKind.HEARTBEAT.value}


def encode_frame(frame: Dict[str, Any]) -> str:
    return json.dumps(frame, separators=(",", ":"))
