"""Shared authority record for the tracked aircraft.

There is exactly one :class:`NetworkAuthorityState` per bridge. Readers may
look at it at any time, but changes only happen inside
``async with state.transition() as tx`` which holds the state's lock for the
whole check-decide-send-commit step and exposes a single
:meth:`AuthorityTransition.commit`.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from atcbridge.core.models import Backend, Controller
from atcbridge.core.time import RealTimeSource, TimeSource

__all__ = ["AuthorityError", "AuthoritySnapshot", "AuthorityTransition", "NetworkAuthorityState"]

logger = logging.getLogger(__name__)


class AuthorityError(RuntimeError):
    """Raised when a commit would break the authority invariant."""


@dataclass(slots=True, frozen=True)
class AuthoritySnapshot:
    backend: Backend
    controller: Optional[Controller]
    changed_at: float

    @property
    def is_vatsim(self) -> bool:
        return self.backend is Backend.VATSIM


class NetworkAuthorityState:
    """Current authority (BeyondATC or VATSIM) and the VATSIM holder, if any."""

    def __init__(self, ts: TimeSource | None = None) -> None:
        self._ts = ts or RealTimeSource()
        self._backend = Backend.BEYONDATC
        self._controller: Optional[Controller] = None
        self._changed_at = self._ts.monotonic()
        self._lock = asyncio.Lock()
        self._active: Optional[AuthorityTransition] = None

    @property
    def backend(self) -> Backend:
        return self._backend

    @property
    def controller(self) -> Optional[Controller]:
        return self._controller

    def snapshot(self) -> AuthoritySnapshot:
        return AuthoritySnapshot(self._backend, self._controller, self._changed_at)

    @asynccontextmanager
    async def transition(self) -> AsyncIterator["AuthorityTransition"]:
        """Hold the authority lock for one read-modify-write step."""
        async with self._lock:
            tx = AuthorityTransition(self, self.snapshot())
            self._active = tx
            try:
                yield tx
            finally:
                self._active = None
                tx._open = False

    def _commit(
        self, tx: "AuthorityTransition", backend: Backend, controller: Optional[Controller]
    ) -> bool:
        if self._active is not tx or not tx._open:
            raise AuthorityError("commit outside of an active transition")
        if backend is Backend.VATSIM and controller is None:
            raise AuthorityError("VATSIM authority requires a resolved controller")
        if backend is Backend.BEYONDATC:
            controller = None
        changed = backend is not self._backend or controller != self._controller
        if changed:
            logger.info(
                "Authority %s -> %s%s",
                self._backend.value,
                backend.value,
                f" ({controller.callsign})" if controller else "",
            )
            self._backend = backend
            self._controller = controller
            self._changed_at = self._ts.monotonic()
        return changed


class AuthorityTransition:
    """Handle passed to the body of :meth:`NetworkAuthorityState.transition`."""

    __slots__ = ("_state", "current", "_open", "committed")

    def __init__(self, state: NetworkAuthorityState, current: AuthoritySnapshot) -> None:
        self._state = state
        self.current = current
        self._open = True
        self.committed = False

    def commit(self, backend: Backend, controller: Optional[Controller] = None) -> bool:
        """Commit the new authority; returns True when anything changed."""
        changed = self._state._commit(self, backend, controller)
        self.committed = self.committed or changed
        return changed
