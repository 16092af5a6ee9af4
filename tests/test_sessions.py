"""Tests for the session manager's state machine and lazy expiration."""

from __future__ import annotations

import asyncio

import pytest

from trustkernel.errors import LockTimeout, SessionNotActive, TokenError, TokenErrorKind, UnknownSession
from trustkernel.sessions import HealthStatus, SessionManager, SessionState


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_is_active(self, authority, sessions, clock):
        view = await sessions.create(authority.issue("svc-A"))
        assert view.state == SessionState.ACTIVE
        assert view.identity == "svc-A"
        assert view.health == HealthStatus.HEALTHY
        assert view.expires_at == clock.now + 300
        assert sessions.lookup(view.session_id) == view

    @pytest.mark.asyncio
    async def test_explicit_ttl(self, authority, sessions, clock):
        view = await sessions.create(authority.issue("svc-A"), ttl=60)
        assert view.expires_at == clock.now + 60

    @pytest.mark.asyncio
    async def test_ttl_capped_by_max_lifetime(self, authority, sessions, clock):
        view = await sessions.create(authority.issue("svc-A"), ttl=10**6)
        assert view.expires_at == clock.now + 3600

    @pytest.mark.asyncio
    async def test_invalid_token_creates_nothing(self, authority, sessions, clock):
        token = authority.issue("svc-A", ttl=1)
        clock.advance(2)
        with pytest.raises(TokenError) as exc_info:
            await sessions.create(token)
        assert exc_info.value.kind == TokenErrorKind.EXPIRED
        assert len(sessions) == 0

    @pytest.mark.asyncio
    async def test_session_ids_are_unique(self, authority, sessions):
        token = authority.issue("svc-A")
        ids = {(await sessions.create(token)).session_id for _ in range(50)}
        assert len(ids) == 50

    def test_max_lifetime_below_ttl_rejected(self, authority):
        with pytest.raises(ValueError):
            SessionManager(authority, default_ttl=100, max_lifetime=10)


class TestExpiry:
    @pytest.mark.asyncio
    async def test_lazy_expiry_on_lookup(self, authority, sessions, clock):
        view = await sessions.create(authority.issue("svc-A"), ttl=60)
        clock.advance(59)
        assert sessions.lookup(view.session_id) is not None
        clock.advance(2)
        assert sessions.lookup(view.session_id) is None
        assert sessions.state_of(view.session_id) == SessionState.EXPIRED

    @pytest.mark.asyncio
    async def test_renew_after_expiry_is_not_active(self, authority, sessions, clock):
        view = await sessions.create(authority.issue("svc-A"), ttl=60)
        clock.advance(61)
        with pytest.raises(SessionNotActive) as exc_info:
            await sessions.renew(view.session_id)
        assert exc_info.value.state == "expired"

    @pytest.mark.asyncio
    async def test_tick_expires_overdue(self, authority, sessions, clock):
        token = authority.issue("svc-A")
        short = await sessions.create(token, ttl=10)
        long = await sessions.create(token, ttl=100)
        clock.advance(50)
        assert await sessions.tick() == 1
        assert sessions.state_of(short.session_id) == SessionState.EXPIRED
        assert sessions.lookup(long.session_id) is not None

    @pytest.mark.asyncio
    async def test_active_sessions_excludes_overdue(self, authority, sessions, clock):
        token = authority.issue("svc-A")
        await sessions.create(token, ttl=10)
        keep = await sessions.create(token, ttl=100)
        clock.advance(50)
        assert [s.session_id for s in sessions.active_sessions()] == [keep.session_id]


class TestRenew:
    @pytest.mark.asyncio
    async def test_renew_extends(self, authority, sessions, clock):
        view = await sessions.create(authority.issue("svc-A"), ttl=60)
        clock.advance(30)
        renewed = await sessions.renew(view.session_id)
        assert renewed.expires_at == clock.now + 60

    @pytest.mark.asyncio
    async def test_renew_never_decreases(self, authority, sessions, clock):
        view = await sessions.create(authority.issue("svc-A"), ttl=60)
        previous = view.expires_at
        for step in (0, 5, 0, 59, 1, 30, 0, 50):
            clock.advance(step)
            renewed = await sessions.renew(view.session_id)
            assert renewed.expires_at >= previous
            previous = renewed.expires_at

    @pytest.mark.asyncio
    async def test_renew_capped_by_max_lifetime(self, authority, clock):
        sessions = SessionManager(authority, default_ttl=60, max_lifetime=100, clock=clock)
        view = await sessions.create(authority.issue("svc-A"))
        for _ in range(4):
            clock.advance(20)
            renewed = await sessions.renew(view.session_id)
        assert renewed.expires_at == view.created_at + 100
        clock.advance(30)
        assert sessions.lookup(view.session_id) is None

    @pytest.mark.asyncio
    async def test_unknown_session(self, sessions):
        with pytest.raises(UnknownSession):
            await sessions.renew("nope")


class TestRevoke:
    @pytest.mark.asyncio
    async def test_revoke_removes_before_return(self, authority, sessions):
        view = await sessions.create(authority.issue("svc-A"))
        await sessions.revoke(view.session_id)
        assert sessions.lookup(view.session_id) is None
        assert sessions.state_of(view.session_id) == SessionState.REVOKED

    @pytest.mark.asyncio
    async def test_mark_revoked_ignores_held_lock(self, authority, sessions):
        view = await sessions.create(authority.issue("svc-A"))
        async with sessions._lock:
            sessions.mark_revoked(view.session_id, "anomaly")
            assert sessions.lookup(view.session_id) is None
        assert sessions.state_of(view.session_id) == SessionState.REVOKED
        await sessions.revoke(view.session_id)
        assert sessions.state_of(view.session_id) == SessionState.REVOKED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("times", [1, 2, 5])
    async def test_revoke_is_idempotent(self, authority, sessions, times):
        view = await sessions.create(authority.issue("svc-A"))
        other = await sessions.create(authority.issue("svc-B"))
        for _ in range(times):
            await sessions.revoke(view.session_id)
        assert sessions.state_of(view.session_id) == SessionState.REVOKED
        assert [s.session_id for s in sessions.active_sessions()] == [other.session_id]
        with pytest.raises(SessionNotActive):
            await sessions.renew(view.session_id)

    @pytest.mark.asyncio
    async def test_terminal_state_is_never_left(self, authority, sessions, clock):
        view = await sessions.create(authority.issue("svc-A"), ttl=10)
        clock.advance(20)
        assert sessions.lookup(view.session_id) is None
        await sessions.revoke(view.session_id)
        assert sessions.state_of(view.session_id) == SessionState.EXPIRED

    @pytest.mark.asyncio
    async def test_revoke_unknown_is_noop(self, sessions):
        await sessions.revoke("never-issued")
        assert sessions.state_of("never-issued") is None

    @pytest.mark.asyncio
    async def test_terminal_retention_is_bounded(self, authority, clock):
        sessions = SessionManager(authority, terminal_retention=3, clock=clock)
        token = authority.issue("svc-A")
        ids = [(await sessions.create(token)).session_id for _ in range(5)]
        for sid in ids:
            await sessions.revoke(sid)
        assert sessions.state_of(ids[0]) is None
        assert sessions.state_of(ids[-1]) == SessionState.REVOKED


class TestHealth:
    @pytest.mark.asyncio
    async def test_degraded_is_advisory(self, authority, sessions):
        view = await sessions.create(authority.issue("svc-A"))
        await sessions.report_health(view.session_id, HealthStatus.DEGRADED)
        current = sessions.lookup(view.session_id)
        assert current is not None
        assert current.health == HealthStatus.DEGRADED
        assert current.state == SessionState.ACTIVE

    @pytest.mark.asyncio
    async def test_dead_evicts(self, authority, sessions):
        view = await sessions.create(authority.issue("svc-A"))
        await sessions.report_health(view.session_id, HealthStatus.DEAD)
        assert sessions.lookup(view.session_id) is None
        assert sessions.state_of(view.session_id) == SessionState.DEAD

    @pytest.mark.asyncio
    async def test_report_for_terminal_session_ignored(self, authority, sessions):
        view = await sessions.create(authority.issue("svc-A"))
        await sessions.revoke(view.session_id)
        await sessions.report_health(view.session_id, HealthStatus.HEALTHY)
        assert sessions.state_of(view.session_id) == SessionState.REVOKED

    @pytest.mark.asyncio
    async def test_report_for_unknown_session(self, sessions):
        with pytest.raises(UnknownSession):
            await sessions.report_health("nope", HealthStatus.HEALTHY)


class TestLocking:
    @pytest.mark.asyncio
    async def test_writer_lock_wait_is_bounded(self, authority, clock):
        sessions = SessionManager(authority, lock_timeout=0.05, clock=clock)
        view = await sessions.create(authority.issue("svc-A"))
        await sessions._lock.acquire()
        try:
            with pytest.raises(LockTimeout):
                await sessions.renew(view.session_id)
        finally:
            sessions._lock.release()
        # Readers are unaffected by a held writer lock.
        assert sessions.lookup(view.session_id) is not None

    @pytest.mark.asyncio
    async def test_concurrent_renewals_are_monotonic(self, authority, sessions, clock):
        view = await sessions.create(authority.issue("svc-A"), ttl=60)
        clock.advance(10)
        results = await asyncio.gather(*(sessions.renew(view.session_id) for _ in range(20)))
        assert all(r.expires_at == clock.now + 60 for r in results)
