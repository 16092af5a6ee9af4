"""Sandbox Controller — readiness barrier and crypto-region lock.

Cryptographic execution is only allowed while the sandbox is
*synchronized*: every registered loop has reported readiness and all of those
reports fall within ``sync_window`` seconds of each other.  Any loop dropping
readiness (or a new loop registering) makes the sandbox unsynchronized at
once.  Every flip of the flag bumps ``version`` so that a reader can detect a
change between two snapshots.

A report that finds the other loops' reports older than ``sync_window``
starts a new readiness round: every loop adapter following ``next_round``
reports again, so one loop recovering from a fault can resynchronize the
whole sandbox.  Rounds are started at most once per ``sync_window``.

Separately, ``crypto_region(loop_id)`` gives one loop at a time exclusive use
of the sandboxed crypto resource, with a bounded wait.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Callable

from trustkernel.errors import LockTimeout, SandboxSyncTimeout

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SandboxPolicy:
    """Isolation rules in force while loops run inside the sandbox."""

    allow_network: bool = False
    allow_filesystem: bool = True
    allow_ipc: bool = True
    allow_signals: bool = False

    @classmethod
    def for_network_service(cls) -> SandboxPolicy:
        return cls(allow_network=True, allow_filesystem=False, allow_ipc=False, allow_signals=False)

    @classmethod
    def for_device_driver(cls) -> SandboxPolicy:
        return cls(allow_network=False, allow_filesystem=False, allow_ipc=True, allow_signals=True)


@dataclass(frozen=True)
class SandboxSnapshot:
    """Consistent view of the sandbox state, read in one step."""

    synchronized: bool
    version: int
    registered: tuple[str, ...]
    ready: tuple[str, ...]
    active_locks: tuple[str, ...]
    policy: SandboxPolicy


class SandboxController:
    """Owns ``SandboxState``.  Mutations serialise on a bounded-wait lock."""

    def __init__(
        self,
        *,
        sync_window: float = 1.0,
        lock_timeout: float = 1.0,
        alert_after_timeouts: int = 3,
        policy: SandboxPolicy | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.sync_window = sync_window
        self.lock_timeout = lock_timeout
        self.alert_after_timeouts = alert_after_timeouts
        self._policy = policy or SandboxPolicy()
        self._clock = clock

        self._state_lock = asyncio.Lock()
        self._reports: dict[str, float | None] = {}
        self._synchronized = False
        self._version = 0
        self._in_sync = asyncio.Event()
        self._round = 0
        self._round_event = asyncio.Event()
        self._last_round_at: float | None = None

        self._crypto_lock = asyncio.Lock()
        self._crypto_holder: str | None = None

        self._consecutive_timeouts = 0
        self.alerts = 0

    # ── Locking ───────────────────────────────────────────────────────────────

    @asynccontextmanager
    async def _guard(self) -> AsyncIterator[None]:
        try:
            await asyncio.wait_for(self._state_lock.acquire(), timeout=self.lock_timeout)
        except asyncio.TimeoutError:
            raise LockTimeout("sandbox state", self.lock_timeout) from None
        try:
            yield
        finally:
            self._state_lock.release()

    def _set_synchronized(self, value: bool, reason: str) -> None:
        if value == self._synchronized:
            return
        self._synchronized = value
        self._version += 1
        if value:
            self._in_sync.set()
            self._consecutive_timeouts = 0
            logger.info("Sandbox synchronized (version %d, loops=%s)", self._version, sorted(self._reports))
        else:
            self._in_sync.clear()
            logger.warning("Sandbox desynchronized (version %d): %s", self._version, reason)

    def _evaluate(self) -> bool:
        if not self._reports:
            return False
        stamps = list(self._reports.values())
        if any(ts is None for ts in stamps):
            return False
        return max(stamps) - min(stamps) <= self.sync_window

    # ── Registration and readiness ───────────────────────────────────────────

    async def register(self, loop_id: str) -> None:
        async with self._guard():
            if loop_id in self._reports:
                return
            self._reports[loop_id] = None
            self._set_synchronized(False, f"loop {loop_id} registered")
        logger.debug("Sandbox: registered loop %s", loop_id)

    async def unregister(self, loop_id: str) -> None:
        async with self._guard():
            if self._reports.pop(loop_id, False) is False:
                return
            self._set_synchronized(self._evaluate(), f"loop {loop_id} unregistered")
        logger.debug("Sandbox: unregistered loop %s", loop_id)

    async def sync(self, loop_id: str) -> bool:
        """Record *loop_id*'s readiness report.  Returns the resulting flag.

        Raises:
            KeyError: the loop was never registered.
        """
        async with self._guard():
            if loop_id not in self._reports:
                raise KeyError(f"loop {loop_id!r} is not registered")
            now = self._clock()
            self._reports[loop_id] = now
            in_sync = self._evaluate()
            self._set_synchronized(in_sync, "readiness reports fall outside the sync window")
            if not in_sync:
                stale = sorted(
                    k for k, ts in self._reports.items() if ts is not None and now - ts > self.sync_window
                )
                if stale and (self._last_round_at is None or now - self._last_round_at > self.sync_window):
                    self._start_round(now, f"stale reports from {', '.join(stale)}")
            return in_sync

    async def drop_readiness(self, loop_id: str, reason: str = "") -> None:
        async with self._guard():
            if loop_id not in self._reports:
                return
            self._reports[loop_id] = None
            self._set_synchronized(False, f"loop {loop_id} dropped readiness{': ' + reason if reason else ''}")

    def _start_round(self, now: float, reason: str) -> None:
        self._round += 1
        self._last_round_at = now
        self._round_event.set()
        self._round_event = asyncio.Event()
        logger.info("Sandbox: readiness round %d requested (%s)", self._round, reason)

    async def next_round(self, seen: int) -> int:
        """Wait for a readiness round newer than *seen* and return its number."""
        while self._round <= seen:
            await self._round_event.wait()
        return self._round

    @property
    def round(self) -> int:
        return self._round

    def snapshot(self) -> SandboxSnapshot:
        return SandboxSnapshot(
            synchronized=self._synchronized,
            version=self._version,
            registered=tuple(sorted(self._reports)),
            ready=tuple(sorted(k for k, ts in self._reports.items() if ts is not None)),
            active_locks=(self._crypto_holder,) if self._crypto_holder else (),
            policy=self._policy,
        )

    @property
    def synchronized(self) -> bool:
        return self._synchronized

    @property
    def version(self) -> int:
        return self._version

    async def wait_synchronized(self, timeout: float) -> SandboxSnapshot:
        """Block until the sandbox is synchronized or *timeout* elapses.

        Raises:
            SandboxSyncTimeout: listing the loops that have not reported.
        """
        try:
            await asyncio.wait_for(self._in_sync.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            missing = sorted(k for k, ts in self._reports.items() if ts is None)
            self._consecutive_timeouts += 1
            if self._consecutive_timeouts > self.alert_after_timeouts:
                self.alerts += 1
                logger.error(
                    "SANDBOX ALERT — %d consecutive sync timeouts (waiting on: %s)",
                    self._consecutive_timeouts,
                    ", ".join(missing) or "-",
                )
            raise SandboxSyncTimeout(timeout, missing) from None
        self._consecutive_timeouts = 0
        return self.snapshot()

    # ── Crypto region ────────────────────────────────────────────────────────

    async def acquire_lock(self, loop_id: str, timeout: float | None = None) -> None:
        timeout = self.lock_timeout if timeout is None else timeout
        try:
            await asyncio.wait_for(self._crypto_lock.acquire(), timeout=timeout)
        except asyncio.TimeoutError:
            raise LockTimeout(f"crypto region (held by {self._crypto_holder})", timeout) from None
        self._crypto_holder = loop_id

    def release_lock(self, loop_id: str) -> None:
        if self._crypto_holder != loop_id:
            raise RuntimeError(f"crypto region is not held by {loop_id!r}")
        self._crypto_holder = None
        self._crypto_lock.release()

    @asynccontextmanager
    async def crypto_region(self, loop_id: str, timeout: float | None = None) -> AsyncIterator[None]:
        await self.acquire_lock(loop_id, timeout)
        try:
            yield
        finally:
            self.release_lock(loop_id)
