"""
ERP PRIME Test Configuration
- Environment isolation
- Global State Reset
- Tokens, fake push-channel sockets and session factory
"""

import asyncio
import json
import time
from collections import deque
from typing import Any, List, Optional
from unittest.mock import AsyncMock, MagicMock

import jwt
import pytest
from websockets.protocol import State

from erp_prime.core.config import RealtimeConfig
from erp_prime.realtime.session import RealtimeSession
from erp_prime.realtime.transport import PrimaryTransport

HANG = "hang"
_CLOSED = object()


@pytest.fixture(autouse=True)
def isolate_prime_env(monkeypatch):
    """Keep a developer .env (loaded at import) out of the tests."""
    for name in ("PRIME_TOKEN", "PRIME_ORIGIN", "PRIME_CLIENT_ID", "PRIME_HEARTBEAT_SEC"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def reset_global_state():
    """Reset all registered global state after each test."""
    yield
    from erp_prime.core.state_manager import reset_all_state

    reset_all_state()


def make_token(exp_offset: Optional[int] = 3600, **claims) -> str:
    payload = {"sub": "agent-7", **claims}
    if exp_offset is not None:
        payload["exp"] = int(time.time()) + exp_offset
    return jwt.encode(payload, "test-secret", algorithm="HS256")


@pytest.fixture
def token():
    return make_token()


@pytest.fixture
def expired_token():
    return make_token(exp_offset=-60)


class FakeSocket:
    """Stands in for a websockets client connection."""

    def __init__(self):
        self.state = State.OPEN
        self.sent: List[str] = []
        self.close_code: Optional[int] = None
        self.close_reason: Optional[str] = None
        self._inbox: "asyncio.Queue[Any]" = asyncio.Queue()
        self.transport = MagicMock()
        self.close_hangs = False

    def feed(self, frame: Any) -> None:
        """Queue an inbound frame (dicts are JSON-encoded)."""
        if isinstance(frame, dict):
            frame = json.dumps(frame)
        self._inbox.put_nowait(frame)

    def server_close(self, code: int = 1006, reason: str = "") -> None:
        self.close_code = code
        self.close_reason = reason
        self.state = State.CLOSED
        self._inbox.put_nowait(_CLOSED)

    def fail(self, exc: BaseException) -> None:
        self._inbox.put_nowait(exc)

    def sent_frames(self) -> List[dict]:
        return [json.loads(raw) for raw in self.sent]

    async def send(self, data: str) -> None:
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.close_hangs:
            await asyncio.Event().wait()
        if self.close_code is None:
            self.close_code = code
            self.close_reason = reason
        self.state = State.CLOSED
        self._inbox.put_nowait(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._inbox.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item


class FakeConnector:
    """
    Replacement for ``websockets.connect``.

    Each call consumes one queued outcome: a FakeSocket to return, an
    exception to raise, or HANG to never complete. Without a queued
    outcome a fresh FakeSocket is returned.
    """

    def __init__(self):
        self.calls: List[tuple] = []
        self.sockets: List[FakeSocket] = []
        self._outcomes: deque = deque()

    def queue(self, *outcomes: Any) -> None:
        self._outcomes.extend(outcomes)

    async def __call__(self, url: str, **options: Any) -> FakeSocket:
        self.calls.append((url, options))
        outcome = self._outcomes.popleft() if self._outcomes else FakeSocket()
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome == HANG:
            await asyncio.Event().wait()
        self.sockets.append(outcome)
        return outcome


async def settle(rounds: int = 20) -> None:
    """Let scheduled callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def prober():
    fake = MagicMock()
    fake.probe = AsyncMock(return_value=True)
    return fake


@pytest.fixture
def fake_fallback():
    fake = MagicMock()
    fake.connect = AsyncMock(return_value=True)
    fake.disconnect = AsyncMock()
    fake.switch_ticket = AsyncMock(return_value=True)
    fake.connected = True
    fake.error = None
    return fake


@pytest.fixture
def config():
    return RealtimeConfig(origin="http://localhost:3000", heartbeat_interval=30.0)


@pytest.fixture
async def make_session(config, connector, prober, fake_fallback, token):
    """Build sessions wired to the fakes; all are closed at teardown."""
    sessions: List[RealtimeSession] = []

    def _make(**kwargs) -> RealtimeSession:
        kwargs.setdefault("token_provider", lambda: token)
        kwargs.setdefault("prober", prober)
        kwargs.setdefault("fallback", fake_fallback)
        kwargs.setdefault("transport_factory", lambda: PrimaryTransport(connector=connector))
        handlers = kwargs.pop("handlers", None)
        session_config = kwargs.pop("config", config)
        session = RealtimeSession(session_config, handlers, **kwargs)
        sessions.append(session)
        return session

    yield _make

    for session in sessions:
        await session.close()
