"""
Connection state machine with state-scoped timers.

One current state, one transition table. Every timer and background
task is registered against the state that owns it and is released by
``StateScope.release`` when the machine leaves that state, so no code
path has to remember to clear a handle.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Coroutine, Deque, Dict, FrozenSet, List, Optional, Tuple, Union

from erp_prime.core.exceptions import InvalidTransitionError

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    """Composite connection states."""

    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"  # terminal close: normal close, config or reachability failure
    RECONNECT_PENDING = "reconnect_pending"  # retryable close, reconnect timer armed
    FALLBACK_ACTIVE = "fallback_active"  # terminal for the session


S = ConnectionState

TRANSITIONS: Dict[ConnectionState, FrozenSet[ConnectionState]] = {
    S.IDLE: frozenset({S.CONNECTING}),
    S.CONNECTING: frozenset(
        {S.OPEN, S.RECONNECT_PENDING, S.CLOSED, S.FALLBACK_ACTIVE, S.IDLE}
    ),
    S.OPEN: frozenset({S.CLOSED, S.RECONNECT_PENDING, S.FALLBACK_ACTIVE, S.IDLE}),
    S.RECONNECT_PENDING: frozenset({S.CONNECTING, S.FALLBACK_ACTIVE, S.IDLE}),
    S.CLOSED: frozenset({S.CONNECTING, S.IDLE}),
    S.FALLBACK_ACTIVE: frozenset({S.IDLE}),
}


@dataclass
class ScopedResource:
    """A timer or task owned by one state."""

    name: str
    owner: ConnectionState
    handle: Union[asyncio.TimerHandle, "asyncio.Task[Any]"]
    delay: Optional[float] = None
    callback: Optional[Callable[[], None]] = field(default=None, repr=False)
    created_at: float = field(default_factory=time.monotonic)

    @property
    def is_task(self) -> bool:
        return isinstance(self.handle, asyncio.Task)

    def cancel(self) -> None:
        self.handle.cancel()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "owner": self.owner.value,
            "kind": "task" if self.is_task else "timer",
            "delay": self.delay,
        }


class StateScope:
    """Registry of timers/tasks keyed by owning state."""

    def __init__(self) -> None:
        self._resources: List[ScopedResource] = []

    def call_later(
        self,
        owner: ConnectionState,
        name: str,
        delay: float,
        callback: Callable[..., Any],
        *args: Any,
    ) -> ScopedResource:
        """Arm a one-shot timer owned by ``owner``."""
        loop = asyncio.get_running_loop()
        armed: List[ScopedResource] = []

        def _fire() -> None:
            self._discard(armed[0])
            callback(*args)

        resource = ScopedResource(
            name=name,
            owner=owner,
            handle=loop.call_later(delay, _fire),
            delay=delay,
            callback=_fire,
        )
        armed.append(resource)
        self._resources.append(resource)
        return resource

    def spawn(
        self,
        owner: ConnectionState,
        name: str,
        coro: Coroutine[Any, Any, Any],
    ) -> ScopedResource:
        """Run ``coro`` as a task owned by ``owner``."""
        task = asyncio.get_running_loop().create_task(coro)
        resource = ScopedResource(name=name, owner=owner, handle=task)
        self._resources.append(resource)
        task.add_done_callback(lambda _t: self._discard(resource))
        return resource

    def release(self, owner: ConnectionState) -> List[str]:
        """
        Cancel everything owned by ``owner``.

        The task currently running is left alone; it is the one driving
        the transition and finishes on its own.
        """
        current = _current_task()
        released = []
        for resource in [r for r in self._resources if r.owner is owner]:
            if resource.handle is current:
                continue
            resource.cancel()
            self._discard(resource)
            released.append(resource.name)
        return released

    def release_all(self) -> List[str]:
        released: List[str] = []
        for owner in ConnectionState:
            released.extend(self.release(owner))
        return released

    def pending(self, owner: Optional[ConnectionState] = None) -> List[ScopedResource]:
        return [r for r in self._resources if owner is None or r.owner is owner]

    def find(self, name: str) -> Optional[ScopedResource]:
        for resource in self._resources:
            if resource.name == name:
                return resource
        return None

    def fire_now(self, name: str) -> bool:
        """Run the pending timer ``name`` immediately instead of at its deadline."""
        resource = self.find(name)
        if resource is None or resource.callback is None:
            return False
        resource.handle.cancel()
        resource.callback()
        return True

    def _discard(self, resource: ScopedResource) -> None:
        if resource in self._resources:
            self._resources.remove(resource)


def _current_task() -> Optional["asyncio.Task[Any]"]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class ConnectionStateMachine:
    """
    Single current state plus transition table.

    Example:
        machine = ConnectionStateMachine("ticket-42")
        machine.transition(ConnectionState.CONNECTING, "connect()")
    """

    def __init__(
        self,
        name: str = "session",
        on_transition: Optional[
            Callable[[ConnectionState, ConnectionState, str], None]
        ] = None,
    ):
        self.name = name
        self.scope = StateScope()
        self._state = ConnectionState.IDLE
        self._on_transition = on_transition
        self._history: Deque[Tuple[float, ConnectionState, ConnectionState, str]] = deque(
            maxlen=50
        )

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def history(self) -> List[Tuple[float, ConnectionState, ConnectionState, str]]:
        return list(self._history)

    def can_transition(self, target: ConnectionState) -> bool:
        return target in TRANSITIONS[self._state]

    def transition(self, target: ConnectionState, reason: str = "") -> ConnectionState:
        """
        Move to ``target`` and release the resources of the state left.

        Returns:
            The previous state

        Raises:
            InvalidTransitionError: ``target`` not reachable from the current state
        """
        previous = self._state
        if target not in TRANSITIONS[previous]:
            raise InvalidTransitionError(
                f"Illegal transition {previous.value} -> {target.value}",
                details={"machine": self.name, "reason": reason},
            )

        self._state = target
        released = self.scope.release(previous)
        self._history.append((time.time(), previous, target, reason))

        logger.info(
            "[StateMachine:%s] %s -> %s%s",
            self.name,
            previous.value,
            target.value,
            f" ({reason})" if reason else "",
        )
        if released:
            logger.debug("[StateMachine:%s] Released %s", self.name, released)

        if self._on_transition:
            self._on_transition(previous, target, reason)
        return previous
