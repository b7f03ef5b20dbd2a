"""
Session confirmation gate.

Lets a checkout run pause until an external ``confirm_settlement`` action
arrives, or until the run's abort signal fires.

Race policy:
    A run registers its session id before the id is published to the client,
    so a confirm can only reference a registered session. A confirm that
    lands after ``register`` but before ``wait`` latches: the later ``wait``
    returns True immediately. A confirm for an unknown, already resolved or
    cleaned-up session is a no-op that returns False.

One gate lives per process instance and is injected where needed; there is no
module-level registry.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from xsettle.core.json_utils import dumps

log = logging.getLogger("xsettle")


class ConfirmState(Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    ABORTED = "aborted"


@dataclass
class _Session:
    session_id: str
    state: ConfirmState = ConfirmState.PENDING
    created_at: float = field(default_factory=time.time)
    resolved: asyncio.Event = field(default_factory=asyncio.Event)


class ConfirmationGate:
    """
    Registry of sessions waiting for a human confirmation.

    Usage:
        gate = ConfirmationGate()
        gate.register(session_id)
        ...publish session_id to the client...
        confirmed = await gate.wait(session_id, abort_event)

        # from the action endpoint
        gate.confirm(session_id)
    """

    def __init__(self, log_event: Optional[Callable[..., None]] = None) -> None:
        self._sessions: Dict[str, _Session] = {}
        self._log_event = log_event or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(dumps({"event": event, **kwargs}))

    def register(self, session_id: str) -> None:
        """Register a session; re-registering a pending session keeps its state."""
        if session_id in self._sessions:
            return
        self._sessions[session_id] = _Session(session_id=session_id)
        self._log_event("gate_registered", session_id=session_id)

    def confirm(self, session_id: str) -> bool:
        """Resolve a pending session. Returns False if there was nothing to resolve."""
        session = self._sessions.get(session_id)
        if session is None or session.state is not ConfirmState.PENDING:
            self._log_event("gate_confirm_ignored", session_id=session_id)
            return False
        session.state = ConfirmState.CONFIRMED
        session.resolved.set()
        self._log_event("gate_confirmed", session_id=session_id)
        return True

    async def wait(self, session_id: str, abort_event: Optional[asyncio.Event] = None) -> bool:
        """
        Suspend until the session is confirmed (True) or aborted (False).

        The session is always removed from the registry on return, including
        when the waiting task itself is cancelled.
        """
        self.register(session_id)
        session = self._sessions[session_id]
        try:
            if session.state is ConfirmState.CONFIRMED:
                return True
            if abort_event is not None and abort_event.is_set():
                session.state = ConfirmState.ABORTED
                return False

            waiters = [asyncio.ensure_future(session.resolved.wait())]
            if abort_event is not None:
                waiters.append(asyncio.ensure_future(abort_event.wait()))
            try:
                await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for waiter in waiters:
                    waiter.cancel()

            if session.state is ConfirmState.CONFIRMED:
                return True
            session.state = ConfirmState.ABORTED
            self._log_event("gate_aborted", session_id=session_id)
            return False
        finally:
            self.cleanup(session_id)

    def cleanup(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    def state(self, session_id: str) -> Optional[ConfirmState]:
        session = self._sessions.get(session_id)
        return session.state if session else None

    def pending(self) -> List[str]:
        return [s.session_id for s in self._sessions.values() if s.state is ConfirmState.PENDING]

    def __len__(self) -> int:
        return len(self._sessions)
