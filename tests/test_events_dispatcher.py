"""
Tests for frame parsing and event dispatch.
"""

import json
from unittest.mock import MagicMock

import pytest

from erp_prime.core.exceptions import FrameDecodeError, UnknownFrameTypeError
from erp_prime.realtime.dispatcher import EventDispatcher, EventHandlers
from erp_prime.realtime.events import (
    EventKind,
    encode_frame,
    heartbeat_frame,
    parse_frame,
    subscribe_frame,
)


def _handlers() -> EventHandlers:
    return EventHandlers(
        on_message=MagicMock(),
        on_ticket_update=MagicMock(),
        on_notification=MagicMock(),
        on_connection=MagicMock(),
        on_heartbeat=MagicMock(),
    )


class TestParseFrame:
    def test_ticket_update(self):
        event = parse_frame(
            '{"type":"ticket_update","ticketId":42,"data":{"status":"closed"},'
            '"timestamp":"2024-01-01T00:00:00Z"}'
        )
        assert event.kind is EventKind.TICKET_UPDATE
        assert event.ticket_id == 42
        assert event.payload == {"status": "closed"}
        assert event.timestamp.year == 2024
        assert event.timestamp.utcoffset().total_seconds() == 0

    def test_bytes_frame(self):
        event = parse_frame(b'{"type":"heartbeat"}')
        assert event.kind is EventKind.HEARTBEAT
        assert event.payload is None

    def test_bad_timestamp_and_ticket_id_are_tolerated(self):
        event = parse_frame('{"type":"message","ticketId":"42","data":1,"timestamp":"soon"}')
        assert event.ticket_id is None
        assert event.timestamp is None

    @pytest.mark.parametrize("raw", ["not json", "[1, 2]", '{"data": 1}', b"\xff\xfe"])
    def test_malformed(self, raw):
        with pytest.raises(FrameDecodeError):
            parse_frame(raw)

    def test_unknown_type(self):
        with pytest.raises(UnknownFrameTypeError) as exc_info:
            parse_frame('{"type":"typing"}')
        assert exc_info.value.frame_type == "typing"

    def test_outbound_frames(self):
        assert subscribe_frame(9) == {"type": "subscribe_ticket", "ticketId": 9}
        assert heartbeat_frame() == {"type": "heartbeat"}
        assert encode_frame(subscribe_frame(9)) == '{"type":"subscribe_ticket","ticketId":9}'


class TestEventDispatcher:
    def test_ticket_update_round_trip(self):
        """Only on_ticket_update fires, with the data payload."""
        handlers = _handlers()
        dispatcher = EventDispatcher(handlers)

        dispatcher.dispatch(
            json.dumps(
                {
                    "type": "ticket_update",
                    "ticketId": 42,
                    "data": {"status": "closed"},
                    "timestamp": "2024-01-01T00:00:00Z",
                }
            )
        )

        handlers.on_ticket_update.assert_called_once_with({"status": "closed"})
        handlers.on_message.assert_not_called()
        handlers.on_notification.assert_not_called()
        handlers.on_connection.assert_not_called()
        handlers.on_heartbeat.assert_not_called()

    @pytest.mark.parametrize(
        "kind,attr",
        [
            ("message", "on_message"),
            ("notification", "on_notification"),
            ("connection", "on_connection"),
            ("heartbeat", "on_heartbeat"),
        ],
    )
    def test_routing(self, kind, attr):
        handlers = _handlers()
        EventDispatcher(handlers).dispatch(json.dumps({"type": kind, "data": {"k": kind}}))
        getattr(handlers, attr).assert_called_once_with({"k": kind})

    def test_malformed_frame_is_dropped(self):
        """A broken frame is logged and the next one still dispatches."""
        handlers = _handlers()
        dispatcher = EventDispatcher(handlers)

        assert dispatcher.dispatch("{not json") is None
        dispatcher.dispatch('{"type":"message","data":"hi"}')

        handlers.on_message.assert_called_once_with("hi")
        assert dispatcher.stats == {"dispatched": 1, "dropped": 1, "ignored": 0}

    def test_unknown_type_is_ignored(self, caplog):
        handlers = _handlers()
        dispatcher = EventDispatcher(handlers)

        with caplog.at_level("WARNING"):
            assert dispatcher.dispatch('{"type":"typing"}') is None

        assert "Unknown event type" in caplog.text
        assert dispatcher.stats["ignored"] == 1

    def test_missing_handler_is_fine(self):
        dispatcher = EventDispatcher(EventHandlers())
        event = dispatcher.dispatch('{"type":"notification","data":1}')
        assert event.kind is EventKind.NOTIFICATION

    def test_handler_exception_does_not_propagate(self, caplog):
        handlers = EventHandlers(on_message=MagicMock(side_effect=RuntimeError("boom")))
        dispatcher = EventDispatcher(handlers)

        with caplog.at_level("ERROR"):
            dispatcher.dispatch('{"type":"message","data":1}')

        assert "message handler raised" in caplog.text

    def test_connection_ack(self):
        handlers = _handlers()
        event = EventDispatcher(handlers).emit_connection_ack({"message": "hello"})

        assert event.kind is EventKind.CONNECTION
        assert event.timestamp is not None
        handlers.on_connection.assert_called_once_with({"message": "hello"})
