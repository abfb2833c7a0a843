"""
Global State Management for ERP PRIME.

Process-wide state (caches, resolved endpoints) registers a reset
function here, so it has an explicit lifecycle and tests can return
it to a clean state.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, List

logger = logging.getLogger(__name__)

# Registry of reset functions for global state
_state_reset_functions: Dict[str, Callable[[], None]] = {}


def register_state_reset(name: str, reset_fn: Callable[[], None]) -> None:
    """
    Register a function to reset global state.

    Args:
        name: Unique name for this state component
        reset_fn: Function that resets the state when called
    """
    _state_reset_functions[name] = reset_fn
    logger.debug("[StateManager] Registered reset function: %s", name)


def unregister_state_reset(name: str) -> bool:
    """
    Unregister a state reset function.

    Returns:
        True if the function was found and removed
    """
    if name in _state_reset_functions:
        del _state_reset_functions[name]
        return True
    return False


def reset_all_state() -> List[str]:
    """
    Reset all registered global state.

    A failing reset function is logged and the remaining ones still run.

    Returns:
        List of state component names that were reset
    """
    reset_names = []

    for name, reset_fn in list(_state_reset_functions.items()):
        try:
            reset_fn()
            reset_names.append(name)
            logger.debug("[StateManager] Reset: %s", name)
        except Exception as e:
            logger.error("[StateManager] Failed to reset %s: %s", name, e)

    return reset_names


def get_registered_state() -> List[str]:
    """Get list of registered state names."""
    return list(_state_reset_functions.keys())


class StateContext:
    """
    Context manager for temporary state changes.

    Example:
        with StateContext():
            resolver = get_endpoint_cache().get("https://erp.example.com")
        # Cache is reset when exiting
    """

    def __init__(self, reset_on_enter: bool = True, reset_on_exit: bool = True):
        self._reset_on_enter = reset_on_enter
        self._reset_on_exit = reset_on_exit

    def __enter__(self) -> "StateContext":
        if self._reset_on_enter:
            reset_all_state()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._reset_on_exit:
            reset_all_state()
