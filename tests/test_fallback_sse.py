"""
Fallback Transport Tests
SSE stream, heartbeat and own reconnect schedule against a local aiohttp server.
"""

import asyncio
from unittest.mock import MagicMock

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from erp_prime.realtime.dispatcher import EventHandlers
from erp_prime.realtime.endpoints import EndpointResolver
from erp_prime.realtime.fallback import SSEFallbackTransport


async def _wait_until(predicate, timeout: float = 1.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def _realtime_app(status: int = 200, close_after_events: bool = False) -> web.Application:
    async def stream(request):
        request.app["streams"].append(
            {"path": request.path, "token": request.query.get("token")}
        )
        if status != 200:
            return web.Response(status=status)

        response = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
        await response.prepare(request)
        await response.write(b": keep-alive comment\n\n")
        await response.write(b'data: {"type":"connection","data":{"message":"hello"}}\n\n')
        await response.write(
            b'data: {"type":"ticket_update","ticketId":42,\n'
            b'data: "data":{"status":"closed"}}\n\n'
        )
        await response.write(b"data: not json\n\n")
        await response.write(b'data: {"type":"notification","data":{"id":1}}\n\n')
        if close_after_events:
            return response
        await request.app["release"].wait()
        return response

    async def heartbeat(request):
        request.app["heartbeats"].append(
            {"auth": request.headers.get("Authorization"), "body": await request.json()}
        )
        return web.json_response({"ok": True})

    app = web.Application()
    app["streams"] = []
    app["heartbeats"] = []
    app["release"] = asyncio.Event()
    app.router.add_get("/api/realtime/ticket/{ticket_id}", stream)
    app.router.add_get("/api/realtime/notifications", stream)
    app.router.add_post("/api/realtime/heartbeat", heartbeat)
    return app


@pytest.fixture
async def serve():
    servers = []

    async def _serve(app: web.Application) -> EndpointResolver:
        server = TestServer(app)
        await server.start_server()
        servers.append((server, app))
        return EndpointResolver.from_origin(f"http://127.0.0.1:{server.port}")

    yield _serve

    for server, app in servers:
        app["release"].set()
        await server.close()


@pytest.fixture
async def make_fallback():
    transports = []

    def _make(endpoints, **kwargs) -> SSEFallbackTransport:
        kwargs.setdefault("heartbeat_interval", 30.0)
        transport = SSEFallbackTransport(endpoints, lambda: "tok-1", **kwargs)
        transports.append(transport)
        return transport

    yield _make

    for transport in transports:
        await transport.disconnect()


def _handlers() -> EventHandlers:
    return EventHandlers(
        on_ticket_update=MagicMock(),
        on_notification=MagicMock(),
        on_connection=MagicMock(),
    )


@pytest.mark.asyncio
async def test_ticket_stream_delivers_events(serve, make_fallback):
    app = _realtime_app()
    fallback = make_fallback(await serve(app))
    handlers = _handlers()

    assert await fallback.connect(42, handlers) is True
    await _wait_until(lambda: handlers.on_notification.called)

    assert fallback.connected is True
    assert fallback.error is None
    assert app["streams"][0] == {"path": "/api/realtime/ticket/42", "token": "tok-1"}
    handlers.on_connection.assert_called_once_with({"message": "hello"})
    handlers.on_ticket_update.assert_called_once_with({"status": "closed"})
    handlers.on_notification.assert_called_once_with({"id": 1})


@pytest.mark.asyncio
async def test_notifications_stream_without_ticket(serve, make_fallback):
    app = _realtime_app()
    fallback = make_fallback(await serve(app))

    assert await fallback.connect(None, _handlers()) is True
    assert app["streams"][0]["path"] == "/api/realtime/notifications"


@pytest.mark.asyncio
async def test_heartbeat_posts_client_id(serve, make_fallback):
    app = _realtime_app()
    fallback = make_fallback(await serve(app), heartbeat_interval=0.02, client_id="desk-3")

    await fallback.connect(42, _handlers())
    await _wait_until(lambda: app["heartbeats"])

    assert app["heartbeats"][0] == {"auth": "Bearer tok-1", "body": {"clientId": "desk-3"}}


@pytest.mark.asyncio
async def test_rejected_stream_retries_then_gives_up(serve, make_fallback):
    app = _realtime_app(status=401)
    fallback = make_fallback(
        await serve(app), max_reconnect_attempts=2, reconnect_delay=0.01
    )

    assert await fallback.connect(42, _handlers()) is False
    assert "HTTP 401" in fallback.error
    assert fallback.reconnect_attempts == 1

    await _wait_until(lambda: fallback.error == "Could not reconnect to the realtime service")

    assert len(app["streams"]) == 3
    assert fallback.connected is False


@pytest.mark.asyncio
async def test_stream_end_reconnects(serve, make_fallback):
    app = _realtime_app(close_after_events=True)
    fallback = make_fallback(await serve(app), reconnect_delay=0.01)

    await fallback.connect(42, _handlers())
    await _wait_until(lambda: len(app["streams"]) >= 2)


@pytest.mark.asyncio
async def test_unreachable_server(make_fallback):
    server = TestServer(web.Application())
    await server.start_server()
    endpoints = EndpointResolver.from_origin(f"http://127.0.0.1:{server.port}")
    await server.close()

    fallback = make_fallback(endpoints, max_reconnect_attempts=0)

    assert await fallback.connect(42, _handlers()) is False
    assert fallback.error == "Could not reconnect to the realtime service"


@pytest.mark.asyncio
async def test_missing_token():
    endpoints = EndpointResolver.from_origin("http://127.0.0.1:1")
    fallback = SSEFallbackTransport(endpoints, lambda: None)

    assert await fallback.connect(42) is False
    assert fallback.error == "Authentication token not found"


@pytest.mark.asyncio
async def test_switch_ticket_reopens(serve, make_fallback):
    app = _realtime_app()
    fallback = make_fallback(await serve(app))

    await fallback.connect(42, _handlers())
    assert await fallback.switch_ticket(43) is True

    assert [s["path"] for s in app["streams"]] == [
        "/api/realtime/ticket/42",
        "/api/realtime/ticket/43",
    ]
    assert fallback.ticket_id == 43


@pytest.mark.asyncio
async def test_disconnect_stops_everything(serve, make_fallback):
    app = _realtime_app()
    fallback = make_fallback(await serve(app), heartbeat_interval=0.01)

    await fallback.connect(42, _handlers())
    await fallback.disconnect()
    beats = len(app["heartbeats"])
    await asyncio.sleep(0.05)

    assert fallback.connected is False
    assert fallback.error is None
    assert len(app["heartbeats"]) == beats
