"""Heartbeat Monitor — periodic liveness probes feeding the Session Manager.

Every ``interval`` seconds each Active session is probed with the probe
registered for its identity (or the default probe).  Probes are bounded by
``probe_timeout``; a timeout or transport failure counts as Degraded.
``degraded_threshold`` consecutive Degraded results escalate to Dead, which
evicts the session.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from trustkernel.errors import LockTimeout, SessionError
from trustkernel.sessions import HealthStatus, SessionManager, SessionView

logger = logging.getLogger(__name__)

HealthProbe = Callable[[SessionView], Awaitable[HealthStatus]]


class HeartbeatMonitor:
    """Runs as a background task alongside the loop adapters."""

    def __init__(
        self,
        sessions: SessionManager,
        *,
        interval: float = 10.0,
        probe_timeout: float = 2.0,
        degraded_threshold: int = 3,
        default_probe: HealthProbe | None = None,
    ) -> None:
        if degraded_threshold < 1:
            raise ValueError("degraded_threshold must be >= 1")
        self._sessions = sessions
        self.interval = interval
        self.probe_timeout = probe_timeout
        self.degraded_threshold = degraded_threshold
        self._default_probe = default_probe
        self._probes: dict[str, HealthProbe] = {}
        self._streaks: dict[str, int] = {}
        self._task: asyncio.Task | None = None
        self._running = False

    def register_probe(self, identity: str, probe: HealthProbe) -> None:
        self._probes[identity] = probe

    def unregister_probe(self, identity: str) -> None:
        self._probes.pop(identity, None)

    async def _probe(self, probe: HealthProbe, session: SessionView) -> HealthStatus:
        try:
            return await asyncio.wait_for(probe(session), timeout=self.probe_timeout)
        except asyncio.TimeoutError:
            logger.warning("Heartbeat probe for %s timed out after %.1fs", session.identity, self.probe_timeout)
            return HealthStatus.DEGRADED
        except (ConnectionError, OSError) as exc:
            logger.warning("Heartbeat probe for %s failed: %s", session.identity, exc)
            return HealthStatus.DEGRADED
        except Exception:
            logger.exception("Heartbeat probe for %s raised", session.identity)
            return HealthStatus.DEGRADED

    def _classify(self, session_id: str, result: HealthStatus) -> HealthStatus:
        if result == HealthStatus.HEALTHY:
            self._streaks.pop(session_id, None)
            return result
        if result == HealthStatus.DEAD:
            self._streaks.pop(session_id, None)
            return result
        streak = self._streaks.get(session_id, 0) + 1
        if streak >= self.degraded_threshold:
            self._streaks.pop(session_id, None)
            logger.error(
                "Session %s… degraded %d times in a row — escalating to dead", session_id[:8], streak
            )
            return HealthStatus.DEAD
        self._streaks[session_id] = streak
        return HealthStatus.DEGRADED

    async def run_once(self) -> dict[str, HealthStatus]:
        """Probe every Active session once and report the outcome.

        Returns the classification reported per session id.
        """
        sessions = self._sessions.active_sessions()
        live_ids = {s.session_id for s in sessions}
        for stale in set(self._streaks) - live_ids:
            del self._streaks[stale]

        targets = []
        for session in sessions:
            probe = self._probes.get(session.identity, self._default_probe)
            if probe is not None:
                targets.append((session, probe))
        if not targets:
            return {}

        results = await asyncio.gather(*(self._probe(probe, s) for s, probe in targets))

        reported: dict[str, HealthStatus] = {}
        for (session, _), result in zip(targets, results):
            status = self._classify(session.session_id, result)
            try:
                await self._sessions.report_health(session.session_id, status)
            except (SessionError, LockTimeout) as exc:
                logger.debug("Heartbeat: %s", exc)
                continue
            reported[session.session_id] = status
        return reported

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._monitor_loop(), name="heartbeat-monitor")
        logger.info("Heartbeat monitor started (interval=%.1fs)", self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Heartbeat monitor stopped")

    async def _monitor_loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
                await self._sessions.tick()
                await asyncio.sleep(self.interval)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Heartbeat monitor error")
                await asyncio.sleep(self.interval)
