"""TLS Server — external boundary of the trust kernel.

Owns the server lock state and the active credential bundle.  Every inbound
message goes through the admission pipeline on behalf of the External loop;
the reply carries the fingerprint of the credential bundle that was current
when the message arrived, so a reload can never split one message across
two bundles.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from trustkernel.admission import AdmissionPipeline, AdmittedMessage, ServerLockState
from trustkernel.credentials import CredentialBundle
from trustkernel.errors import AdmissionError, AdmissionReason, CredentialError
from trustkernel.sandbox.audit import AdmissionAuditLog
from trustkernel.sessions import SessionManager, SessionView
from trustkernel.tokens import Token

logger = logging.getLogger(__name__)

Dispatch = Callable[[AdmittedMessage], Awaitable[None]]


@dataclass(frozen=True)
class ServerReply:
    accepted: bool
    credential_fingerprint: str
    reason: AdmissionReason | None = None
    detail: str = ""
    identity: str | None = None

    @property
    def server_locked(self) -> bool:
        return self.reason == AdmissionReason.SERVER_LOCKED

    def to_dict(self) -> dict[str, Any]:
        return {
            "accepted": self.accepted,
            "credential_fingerprint": self.credential_fingerprint,
            "reason": self.reason.value if self.reason else None,
            "detail": self.detail,
            "identity": self.identity,
        }


class TLSServer:
    def __init__(
        self,
        pipeline: AdmissionPipeline,
        sessions: SessionManager,
        lock_state: ServerLockState,
        credentials: CredentialBundle,
        *,
        loop_id: str | None = "external",
        dispatch: Dispatch | None = None,
        audit: AdmissionAuditLog | None = None,
    ) -> None:
        self._pipeline = pipeline
        self._sessions = sessions
        self._lock_state = lock_state
        self._credentials = credentials
        self.loop_id = loop_id
        self._dispatch = dispatch
        self._audit = audit

    # ── Lock state ───────────────────────────────────────────────────────────

    @property
    def is_locked(self) -> bool:
        return self._lock_state.locked

    @property
    def lock_reason(self) -> str:
        return self._lock_state.reason

    async def lock(self, reason: str = "operator request") -> None:
        self._lock_state.lock(reason)
        logger.warning("TLS server LOCKED: %s", reason)
        if self._audit is not None:
            await self._audit.record("server_locked", reason=reason)

    async def unlock(self) -> None:
        self._lock_state.unlock()
        logger.info("TLS server unlocked")
        if self._audit is not None:
            await self._audit.record("server_unlocked")

    # ── Credentials ──────────────────────────────────────────────────────────

    @property
    def credentials(self) -> CredentialBundle:
        return self._credentials

    async def reload_credentials(self, cert_pem: bytes | str, key_pem: bytes | str) -> CredentialBundle:
        """Validate a new cert/key pair and install it atomically.

        Raises:
            CredentialError: the old bundle stays installed.
        """
        try:
            bundle = CredentialBundle.from_pem(cert_pem, key_pem)
        except CredentialError as exc:
            logger.error("Credential reload rejected, keeping %s: %s", self._credentials.fingerprint[:16], exc)
            raise
        previous, self._credentials = self._credentials, bundle
        logger.info(
            "Credentials reloaded: %s… -> %s…", previous.fingerprint[:16], bundle.fingerprint[:16]
        )
        if self._audit is not None:
            await self._audit.record("credentials_reloaded", detail=bundle.fingerprint)
        return bundle

    # ── Sessions and messages ────────────────────────────────────────────────

    async def open_session(self, token: Token | str, ttl: float | None = None) -> SessionView:
        """Open a session for a validated token.

        Raises:
            AdmissionError: SERVER_LOCKED while locked.
            TokenError: the token failed validation.
        """
        if self._lock_state.locked:
            raise AdmissionError(AdmissionReason.SERVER_LOCKED, self._lock_state.reason)
        session = await self._sessions.create(token, ttl)
        if self._audit is not None:
            await self._audit.record("session_opened", identity=session.identity)
        return session

    async def handle(self, raw: str | bytes | dict) -> ServerReply:
        bundle = self._credentials
        try:
            message = await self._pipeline.admit(raw, self.loop_id)
        except AdmissionError as exc:
            return ServerReply(
                accepted=False,
                credential_fingerprint=bundle.fingerprint,
                reason=exc.reason,
                detail=exc.token_error.value if exc.token_error else exc.detail,
            )

        if self._dispatch is not None:
            await self._dispatch(message)
        return ServerReply(accepted=True, credential_fingerprint=bundle.fingerprint, identity=message.identity)
