"""Session Manager — owns the table of live sessions.

State machine per session::

    Pending -> Active -> {Expired, Revoked, Dead}      (all terminal)

Writers (create / renew / revoke / report_health) serialise on an
``asyncio.Lock`` acquired with a bounded wait.  Readers (``lookup``) take no
lock: they only ever see whole ``SessionView`` snapshots, and the event loop
runs every await-free section atomically, so a reader can never observe a
partially updated session.

Expiration is enforced lazily: every lookup, renew and tick transitions
overdue sessions to Expired before answering.  A background sweep is not
required for correctness.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import secrets
import time
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from typing import AsyncIterator, Callable

from trustkernel.errors import LockTimeout, SessionNotActive, UnknownSession
from trustkernel.tokens import Token, TokenAuthority

logger = logging.getLogger(__name__)


class SessionState(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"
    DEAD = "dead"


TERMINAL_STATES = frozenset({SessionState.EXPIRED, SessionState.REVOKED, SessionState.DEAD})


class HealthStatus(str, enum.Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    DEAD = "dead"


@dataclass(frozen=True)
class SessionView:
    """Immutable snapshot of a session, handed to every caller outside the manager."""

    session_id: str
    identity: str
    ttl: float
    created_at: float
    expires_at: float
    health: HealthStatus
    state: SessionState

    @property
    def is_active(self) -> bool:
        return self.state == SessionState.ACTIVE


@dataclass(frozen=True)
class _Entry:
    view: SessionView
    token: Token


class SessionManager:
    """Creates, renews, revokes and looks up sessions bound to validated tokens.

    Args:
        authority: Token Authority used to validate tokens on ``create``.
        default_ttl: Session idle lifetime in seconds.
        max_lifetime: Absolute cap on a session's lifetime, measured from
            creation.  Renewals never extend past it.
        lock_timeout: Bounded wait for the writer lock.
        terminal_retention: How many terminal session ids are remembered so
            that ``renew`` can report NotActive and ``revoke`` stays idempotent.
        clock: Time source (seconds since the epoch).
    """

    def __init__(
        self,
        authority: TokenAuthority,
        *,
        default_ttl: float = 300,
        max_lifetime: float = 3600,
        lock_timeout: float = 1.0,
        terminal_retention: int = 10_000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_lifetime < default_ttl:
            raise ValueError("max_lifetime must be >= default_ttl")
        self._authority = authority
        self._default_ttl = default_ttl
        self._max_lifetime = max_lifetime
        self._lock_timeout = lock_timeout
        self._terminal_retention = terminal_retention
        self._clock = clock

        self._lock = asyncio.Lock()
        self._active: dict[str, _Entry] = {}
        self._terminal: OrderedDict[str, SessionState] = OrderedDict()

    # ── Locking ───────────────────────────────────────────────────────────────

    @asynccontextmanager
    async def _guard(self) -> AsyncIterator[None]:
        try:
            await asyncio.wait_for(self._lock.acquire(), timeout=self._lock_timeout)
        except asyncio.TimeoutError:
            raise LockTimeout("session table", self._lock_timeout) from None
        try:
            yield
        finally:
            self._lock.release()

    # ── Internal transitions (callers must be in an await-free section) ──────

    def _retire(self, session_id: str, state: SessionState) -> SessionView | None:
        entry = self._active.pop(session_id, None)
        self._terminal[session_id] = state
        self._terminal.move_to_end(session_id)
        while len(self._terminal) > self._terminal_retention:
            self._terminal.popitem(last=False)
        if entry is None:
            return None
        return replace(entry.view, state=state)

    def _expire_if_due(self, session_id: str, now: float) -> _Entry | None:
        entry = self._active.get(session_id)
        if entry is None:
            return None
        if now >= entry.view.expires_at:
            self._retire(session_id, SessionState.EXPIRED)
            logger.info(
                "Session %s… (%s) expired at %.3f", session_id[:8], entry.view.identity, entry.view.expires_at
            )
            return None
        return entry

    # ── Operations ────────────────────────────────────────────────────────────

    async def create(self, token: Token | str, ttl: float | None = None) -> SessionView:
        """Validate *token* and open an Active session bound to it.

        Raises:
            TokenError: the token failed validation; no session is created.
        """
        if isinstance(token, str):
            token = Token.decode(token)
        ttl = self._default_ttl if ttl is None else min(ttl, self._max_lifetime)
        if ttl <= 0:
            raise ValueError("session ttl must be positive")

        identity = self._authority.validate(token)

        async with self._guard():
            now = self._clock()
            session_id = secrets.token_urlsafe(24)
            view = SessionView(
                session_id=session_id,
                identity=identity,
                ttl=ttl,
                created_at=now,
                expires_at=now + ttl,
                health=HealthStatus.HEALTHY,
                state=SessionState.PENDING,
            )
            view = replace(view, state=SessionState.ACTIVE)
            self._active[session_id] = _Entry(view=view, token=token)

        logger.info("Session %s… created for %s (ttl=%ss)", session_id[:8], identity, ttl)
        return view

    async def renew(self, session_id: str) -> SessionView:
        """Extend an Active session's expiry.  Never shortens it.

        Raises:
            UnknownSession: the id was never issued (or has been forgotten).
            SessionNotActive: the session reached a terminal state.
        """
        async with self._guard():
            now = self._clock()
            entry = self._expire_if_due(session_id, now)
            if entry is None:
                state = self._terminal.get(session_id)
                if state is None:
                    raise UnknownSession(session_id)
                raise SessionNotActive(session_id, state.value)

            view = entry.view
            ceiling = view.created_at + self._max_lifetime
            expires_at = max(view.expires_at, min(now + view.ttl, ceiling))
            renewed = replace(view, expires_at=expires_at)
            self._active[session_id] = replace(entry, view=renewed)

        logger.debug("Session %s… renewed until %.3f", session_id[:8], expires_at)
        return renewed

    async def revoke(self, session_id: str, reason: str = "") -> None:
        """Revoke a session.  Idempotent; terminal states are never left."""
        async with self._guard():
            self.mark_revoked(session_id, reason)

    def mark_revoked(self, session_id: str, reason: str = "") -> None:
        """Revoke without waiting for the writer lock.

        The retirement is a single await-free step, like lazy expiry in
        ``lookup``.
        """
        if session_id not in self._active:
            return
        view = self._retire(session_id, SessionState.REVOKED)
        logger.warning(
            "Session %s… (%s) revoked%s",
            session_id[:8],
            view.identity if view else "?",
            f": {reason}" if reason else "",
        )

    async def report_health(self, session_id: str, status: HealthStatus) -> None:
        """Record a health classification from the Heartbeat Monitor.

        Degraded is advisory.  Dead removes the session from the active table
        immediately.  Reports about terminal sessions are ignored.

        Raises:
            UnknownSession: the id was never issued.
        """
        async with self._guard():
            entry = self._active.get(session_id)
            if entry is None:
                if session_id in self._terminal:
                    return
                raise UnknownSession(session_id)

            if status == HealthStatus.DEAD:
                self._retire(session_id, SessionState.DEAD)
                identity = entry.view.identity
            else:
                self._active[session_id] = replace(entry, view=replace(entry.view, health=status))
                identity = None

        if identity is not None:
            logger.error("Session %s… (%s) declared dead and evicted", session_id[:8], identity)
        elif status == HealthStatus.DEGRADED:
            logger.warning("Session %s… (%s) degraded", session_id[:8], entry.view.identity)

    def lookup(self, session_id: str) -> SessionView | None:
        """Return the live session, or None if unknown, terminal or just expired."""
        entry = self._expire_if_due(session_id, self._clock())
        return entry.view if entry else None

    def state_of(self, session_id: str) -> SessionState | None:
        """Lifecycle state for audit purposes — distinguishes terminal from unknown."""
        if self.lookup(session_id) is not None:
            return SessionState.ACTIVE
        return self._terminal.get(session_id)

    async def tick(self) -> int:
        """Expire every overdue session.  Returns how many were expired."""
        async with self._guard():
            now = self._clock()
            before = len(self._active)
            for session_id in list(self._active):
                self._expire_if_due(session_id, now)
            return before - len(self._active)

    def active_sessions(self) -> list[SessionView]:
        """Snapshot of currently Active sessions (already-expired ones excluded)."""
        now = self._clock()
        return [e.view for e in list(self._active.values()) if now < e.view.expires_at]

    def __len__(self) -> int:
        return len(self._active)
