"""TrustKernel — builds, starts and stops every trust component.

Startup sequence:
1. Load key material from the root secret (fatal if absent)
2. Seed honeypot decoys from the boot token, then discard it
3. Open the audit log (if enabled)
4. Start loop adapters and drive them through the readiness barrier
5. Start the heartbeat monitor

Shutdown:
1. Stop the heartbeat monitor
2. Stop all loops (unregistering them from the sandbox)
3. Destroy key material
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable

from trustkernel.admission import AdmissionPipeline, AdmittedMessage, ServerLockState
from trustkernel.anomaly import AnomalyDetector, BurstDetector, CompositeDetector, HoneypotDetector
from trustkernel.client import LocalTransport, TLSClient
from trustkernel.config import Secrets, TrustKernelConfig
from trustkernel.credentials import CredentialBundle
from trustkernel.errors import SandboxSyncTimeout
from trustkernel.heartbeat import HealthProbe, HeartbeatMonitor
from trustkernel.keys import KeyMaterialStore
from trustkernel.loops import Handler, LoopAdapter, LoopKind
from trustkernel.sandbox.audit import AdmissionAuditLog
from trustkernel.sandbox.controller import SandboxController, SandboxPolicy
from trustkernel.server import TLSServer
from trustkernel.sessions import SessionManager
from trustkernel.tokens import Token, TokenAuthority

logger = logging.getLogger(__name__)

_POLICIES = {
    "default": SandboxPolicy,
    "network_service": SandboxPolicy.for_network_service,
    "device_driver": SandboxPolicy.for_device_driver,
}


async def _log_only(message: AdmittedMessage) -> None:
    logger.debug("Loop %s: %d bytes from %s", message.loop, len(message.payload), message.identity)


class TrustKernel:
    """Owns the shared trust state and hands it to every component by injection."""

    def __init__(
        self,
        config: TrustKernelConfig,
        secrets: Secrets,
        *,
        handlers: dict[LoopKind, Handler] | None = None,
        default_probe: HealthProbe | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        handlers = handlers or {}

        self.keys = KeyMaterialStore(secrets.root_secret)
        self.tokens = TokenAuthority(
            self.keys,
            default_ttl=config.tokens.default_ttl,
            max_clock_skew=config.tokens.max_clock_skew,
            clock=clock,
        )
        self.sessions = SessionManager(
            self.tokens,
            default_ttl=config.sessions.default_ttl,
            max_lifetime=config.sessions.max_lifetime,
            lock_timeout=config.sessions.lock_timeout,
            terminal_retention=config.sessions.terminal_retention,
            clock=clock,
        )
        self.sandbox = SandboxController(
            sync_window=config.sandbox.sync_window,
            lock_timeout=config.sandbox.lock_timeout,
            alert_after_timeouts=config.sandbox.alert_after_timeouts,
            policy=_POLICIES[config.sandbox.policy](),
            clock=clock,
        )
        self.lock_state = ServerLockState(locked=config.server.start_locked)
        self.audit = AdmissionAuditLog(Path(config.audit.log_dir)) if config.audit.enabled else None

        self.honeypot: HoneypotDetector | None = None
        detectors: list[AnomalyDetector] = []
        if config.anomaly.honeypot:
            # The boot token is used once, here, and not kept.
            self.honeypot = HoneypotDetector(secrets.boot_token, batch=config.anomaly.decoy_batch)
            detectors.append(self.honeypot)
        if config.anomaly.burst:
            detectors.append(
                BurstDetector(config.anomaly.burst_max_messages, config.anomaly.burst_window, clock=clock)
            )

        self.pipeline = AdmissionPipeline(
            self.keys,
            self.tokens,
            self.sessions,
            self.sandbox,
            self.lock_state,
            anomaly=CompositeDetector(detectors),
            audit=self.audit,
            auto_lock_after_invalid=config.server.auto_lock_after_invalid,
            clock=clock,
        )

        self.loops: dict[str, LoopAdapter] = {}
        for kind in config.loops.enabled:
            self.loops[kind.value] = LoopAdapter(
                kind,
                self.pipeline,
                self.sandbox,
                handlers.get(kind, _log_only),
                queue_size=config.loops.queue_size,
            )

        external = self.loops.get(LoopKind.EXTERNAL.value)
        self.server = TLSServer(
            self.pipeline,
            self.sessions,
            self.lock_state,
            CredentialBundle.from_pem(secrets.cert_pem, secrets.key_pem),
            loop_id=external.loop_id if external else None,
            dispatch=external.deliver if external else None,
            audit=self.audit,
        )

        self.heartbeat = HeartbeatMonitor(
            self.sessions,
            interval=config.heartbeat.interval,
            probe_timeout=config.heartbeat.probe_timeout,
            degraded_threshold=config.heartbeat.degraded_threshold,
            default_probe=default_probe,
        )

    async def start(self) -> None:
        if self.audit is not None:
            await self.audit.start()
        for loop in self.loops.values():
            await loop.start()
        for loop in self.loops.values():
            await loop.report_ready()
        try:
            await self.sandbox.wait_synchronized(self.config.sandbox.startup_timeout)
        except SandboxSyncTimeout as exc:
            logger.error("Kernel started with an unsynchronized sandbox: %s", exc)
        if self.config.heartbeat.enabled:
            await self.heartbeat.start()
        logger.info(
            "TrustKernel started (loops=%s, locked=%s, credentials=%s…)",
            ",".join(self.loops) or "-",
            self.lock_state.locked,
            self.server.credentials.fingerprint[:16],
        )

    async def stop(self) -> None:
        if self.config.heartbeat.enabled:
            await self.heartbeat.stop()
        for loop in self.loops.values():
            await loop.stop()
        self.keys.destroy()
        logger.info("TrustKernel stopped")

    def issue_token(self, identity: str, ttl: float | None = None) -> Token:
        return self.tokens.issue(identity, ttl)

    def local_client(self, identity: str, destination: str = "local") -> TLSClient:
        """A client wired straight to this kernel's server."""
        return TLSClient(identity, self.keys, self.tokens, {destination: LocalTransport(self.server)})

    def health(self) -> dict:
        snap = self.sandbox.snapshot()
        return {
            "status": "locked" if self.lock_state.locked else ("ok" if snap.synchronized else "degraded"),
            "locked": self.lock_state.locked,
            "lock_reason": self.lock_state.reason or None,
            "sandbox": {
                "synchronized": snap.synchronized,
                "version": snap.version,
                "registered": list(snap.registered),
                "ready": list(snap.ready),
                "active_locks": list(snap.active_locks),
                "alerts": self.sandbox.alerts,
            },
            "sessions": {"active": len(self.sessions.active_sessions())},
            "admission": {
                "admitted": self.pipeline.admitted,
                "rejected": dict(self.pipeline.rejected),
            },
            "honeypot_attempts": self.honeypot.attempts if self.honeypot else 0,
            "credential_fingerprint": self.server.credentials.fingerprint,
        }
