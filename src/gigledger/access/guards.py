"""Execution guards — pausability and non-reentrancy for custody entry points.

Both guards are owned flags, not runtime locks. Execution is serialised;
the hazard is logical reentrancy, i.e. a token transfer calling back into
the component before the triggering operation has finished.

Components expose the guards as ``self._pause`` and ``self._reentrancy``
and decorate their state-changing methods:

    @when_not_paused
    @non_reentrant
    def release_funds(self, caller, job_id): ...
"""

from __future__ import annotations

import functools
import logging
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional, TypeVar

from gigledger.access.roles import Role, RoleRegistry
from gigledger.errors import PausedError, ReentrancyError, StateError

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


class PauseSwitch:
    """Global stop switch, settable only by ADMIN holders.

    One switch may be shared by several components; pausing it halts every
    state-changing entry point of each, while reads stay available.
    """

    def __init__(self, roles: RoleRegistry, paused: bool = False) -> None:
        self._roles = roles
        self._paused = paused

    @property
    def paused(self) -> bool:
        return self._paused

    def pause(self, caller: str) -> None:
        self._roles.require(Role.ADMIN, caller)
        if self._paused:
            raise StateError("Already paused")
        self._paused = True
        logger.warning("settlement paused by %s", caller)

    def unpause(self, caller: str) -> None:
        self._roles.require(Role.ADMIN, caller)
        if not self._paused:
            raise StateError("Not paused")
        self._paused = False
        logger.warning("settlement unpaused by %s", caller)

    def require_not_paused(self, operation: str) -> None:
        if self._paused:
            raise PausedError(f"Cannot {operation}: settlement is paused")


class NonReentrantGuard:
    """Owned lock flag held for the full duration of a guarded call."""

    def __init__(self) -> None:
        self._entered: Optional[str] = None

    @property
    def entered(self) -> bool:
        return self._entered is not None

    @contextmanager
    def hold(self, operation: str) -> Iterator[None]:
        if self._entered is not None:
            raise ReentrancyError(
                f"Reentrant call to {operation} while {self._entered} is in flight"
            )
        self._entered = operation
        try:
            yield
        finally:
            self._entered = None


def when_not_paused(method: F) -> F:
    """Reject the call with PausedError while the component's switch is on."""

    @functools.wraps(method)
    def wrapper(self: Any, *args: Any, **kwargs: Any) -> Any:
        self._pause.require_not_paused(method.__name__)
        return method(self, *args, **kwargs)

    return wrapper  # type: ignore[return-value]


def non_reentrant(method: F) -> F:
    """Hold the component's reentrancy guard while the method runs."""

    @functools.wraps(method)
    def wrapper(self: Any, *args: Any, **kwargs: Any) -> Any:
        with self._reentrancy.hold(method.__name__):
            return method(self, *args, **kwargs)

    return wrapper  # type: ignore[return-value]
