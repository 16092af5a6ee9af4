"""Admission Pipeline — the per-message gate.

Every inbound message walks the same fail-fast sequence::

    server lock -> token -> session -> sandbox -> decrypt -> anomaly

and is released only after the sandbox version is re-checked and the
session renewed.  A rejection at any step raises ``AdmissionError`` with the
step's reason; nothing after the failed step runs.
"""

from __future__ import annotations

import logging
import os
import time
from collections import Counter
from dataclasses import dataclass
from typing import Any, Callable

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from pydantic import BaseModel, ValidationError

from trustkernel.anomaly import AnomalyDetector, NullDetector, Observation
from trustkernel.errors import (
    AdmissionError,
    AdmissionReason,
    LockTimeout,
    SessionError,
    TokenError,
    TokenErrorKind,
)
from trustkernel.keys import KeyMaterialStore
from trustkernel.sandbox.audit import AdmissionAuditLog
from trustkernel.sandbox.controller import SandboxController
from trustkernel.sessions import SessionManager, SessionView
from trustkernel.tokens import Token, TokenAuthority, b64d, b64e, token_fingerprint

logger = logging.getLogger(__name__)

_NONCE_LEN = 12


class SecureEnvelope(BaseModel):
    """Wire message: a session-key encrypted payload plus the sender's token."""

    session_id: str
    token: str
    nonce: str
    ciphertext: str
    sender: str | None = None


def _aad(session_id: str, identity: str) -> bytes:
    return f"{session_id}|{identity}".encode()


def seal(
    keys: KeyMaterialStore,
    session_id: str,
    identity: str,
    token: Token | str,
    payload: bytes,
    sender: str | None = None,
) -> SecureEnvelope:
    """Encrypt *payload* under the session key and wrap it for admission."""
    nonce = os.urandom(_NONCE_LEN)
    ciphertext = AESGCM(keys.session_key(session_id)).encrypt(nonce, payload, _aad(session_id, identity))
    return SecureEnvelope(
        session_id=session_id,
        token=token.encode() if isinstance(token, Token) else token,
        nonce=b64e(nonce),
        ciphertext=b64e(ciphertext),
        sender=sender,
    )


class ServerLockState:
    """Lock flag owned by the TLS Server.  While locked, admission fails closed."""

    def __init__(self, locked: bool = False) -> None:
        self._locked = locked
        self.reason = ""

    @property
    def locked(self) -> bool:
        return self._locked

    def lock(self, reason: str = "") -> None:
        self._locked = True
        self.reason = reason

    def unlock(self) -> None:
        self._locked = False
        self.reason = ""


@dataclass(frozen=True)
class AdmittedMessage:
    payload: bytes
    identity: str
    session: SessionView
    loop: str | None
    sandbox_version: int


@dataclass
class _Trace:
    identity: str = ""
    token_hash: str = ""


class AdmissionPipeline:
    """Decides, per message, whether it may reach loop-local logic.

    Args:
        auto_lock_after_invalid: Lock the server after this many consecutive
            INVALID_TOKEN rejections.  0 disables.
    """

    def __init__(
        self,
        keys: KeyMaterialStore,
        tokens: TokenAuthority,
        sessions: SessionManager,
        sandbox: SandboxController,
        lock_state: ServerLockState,
        *,
        anomaly: AnomalyDetector | None = None,
        audit: AdmissionAuditLog | None = None,
        auto_lock_after_invalid: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._keys = keys
        self._tokens = tokens
        self._sessions = sessions
        self._sandbox = sandbox
        self._lock_state = lock_state
        self._anomaly = anomaly or NullDetector()
        self._audit = audit
        self._clock = clock
        self.auto_lock_after_invalid = auto_lock_after_invalid
        self._invalid_streak = 0
        self.admitted = 0
        self.rejected: Counter[str] = Counter()

    async def admit(self, raw: str | bytes | dict | SecureEnvelope, loop_id: str | None = None) -> AdmittedMessage:
        """Run *raw* through the pipeline.

        Raises:
            AdmissionError: with the reason of the first failed step.
        """
        trace = _Trace()
        try:
            message = await self._run(raw, loop_id, trace)
        except LockTimeout as exc:
            err = AdmissionError(AdmissionReason.BUSY, str(exc))
            await self._record_rejection(err, trace, loop_id)
            raise err from exc
        except AdmissionError as err:
            await self._record_rejection(err, trace, loop_id)
            raise

        self.admitted += 1
        if self._audit is not None:
            await self._audit.record(
                "admit", identity=message.identity, token_hash=trace.token_hash, loop=loop_id or ""
            )
        return message

    async def _record_rejection(self, err: AdmissionError, trace: _Trace, loop_id: str | None) -> None:
        self.rejected[err.reason.value] += 1
        logger.warning(
            "Rejected message from %s on %s: %s", trace.identity or "?", loop_id or "-", err
        )
        if self._audit is not None:
            await self._audit.record(
                "reject",
                identity=trace.identity,
                token_hash=trace.token_hash,
                loop=loop_id or "",
                reason=err.reason.value,
                detail=err.detail or (err.token_error.value if err.token_error else ""),
            )

    def _parse(self, raw: Any) -> SecureEnvelope:
        if isinstance(raw, SecureEnvelope):
            return raw
        try:
            if isinstance(raw, (str, bytes)):
                return SecureEnvelope.model_validate_json(raw)
            return SecureEnvelope.model_validate(raw)
        except ValidationError as exc:
            raise AdmissionError(
                AdmissionReason.INVALID_TOKEN,
                f"unparseable envelope ({exc.error_count()} errors)",
                token_error=TokenErrorKind.MALFORMED,
            ) from None

    def _note_invalid(self, raw_token: str) -> None:
        self._anomaly.observe_rejection(raw_token)
        self._invalid_streak += 1
        threshold = self.auto_lock_after_invalid
        if threshold and self._invalid_streak >= threshold and not self._lock_state.locked:
            self._lock_state.lock(f"{self._invalid_streak} consecutive invalid tokens")
            logger.error(
                "SERVER AUTO-LOCK — %d consecutive invalid tokens; admission closed until unlocked",
                self._invalid_streak,
            )
            self._invalid_streak = 0

    def _decrypt(self, envelope: SecureEnvelope, identity: str) -> bytes:
        try:
            nonce = b64d(envelope.nonce)
            ciphertext = b64d(envelope.ciphertext)
            if len(nonce) != _NONCE_LEN:
                raise ValueError("bad nonce length")
            return AESGCM(self._keys.session_key(envelope.session_id)).decrypt(
                nonce, ciphertext, _aad(envelope.session_id, identity)
            )
        except (InvalidTag, ValueError) as exc:
            raise AdmissionError(AdmissionReason.DECRYPTION_FAILED, type(exc).__name__) from None

    async def _run(self, raw: Any, loop_id: str | None, trace: _Trace) -> AdmittedMessage:
        # 1. server lock
        if self._lock_state.locked:
            raise AdmissionError(AdmissionReason.SERVER_LOCKED, self._lock_state.reason)

        # 2. token
        envelope = self._parse(raw)
        trace.token_hash = token_fingerprint(envelope.token)
        # unverified until the token validates
        trace.identity = f"claimed:{envelope.sender}" if envelope.sender else ""
        try:
            identity = self._tokens.validate(envelope.token)
        except TokenError as exc:
            self._note_invalid(envelope.token)
            raise AdmissionError(AdmissionReason.INVALID_TOKEN, exc.detail, token_error=exc.kind) from None
        self._invalid_streak = 0
        trace.identity = identity

        # 3. session
        session = self._sessions.lookup(envelope.session_id)
        if session is None:
            raise AdmissionError(AdmissionReason.NO_ACTIVE_SESSION, "unknown, expired or terminated session")
        if session.identity != identity:
            raise AdmissionError(AdmissionReason.NO_ACTIVE_SESSION, "session belongs to another identity")

        # 4. sandbox
        before = self._sandbox.snapshot()
        if not before.synchronized:
            raise AdmissionError(AdmissionReason.SANDBOX_NOT_SYNCHRONIZED)

        # 5. decrypt
        if loop_id is not None:
            async with self._sandbox.crypto_region(loop_id):
                payload = self._decrypt(envelope, identity)
        else:
            payload = self._decrypt(envelope, identity)

        # 6. anomaly
        reason = self._anomaly.inspect(
            Observation(
                identity=identity,
                session_id=session.session_id,
                payload=payload,
                loop=loop_id,
                timestamp=self._clock(),
            )
        )
        if reason:
            logger.error("ANOMALY — %s from %s; revoking session %s…", reason, identity, session.session_id[:8])
            try:
                await self._sessions.revoke(session.session_id, reason)
            except LockTimeout:
                self._sessions.mark_revoked(session.session_id, reason)
            if self._audit is not None:
                await self._audit.record(
                    "session_revoked", identity=identity, token_hash=trace.token_hash, reason="anomaly", detail=reason
                )
            raise AdmissionError(AdmissionReason.ANOMALY_DETECTED, reason)

        # Release gate: nothing changed underneath us while decrypting.
        if self._lock_state.locked:
            raise AdmissionError(AdmissionReason.SERVER_LOCKED, self._lock_state.reason)
        after = self._sandbox.snapshot()
        if not after.synchronized or after.version != before.version:
            raise AdmissionError(AdmissionReason.SANDBOX_NOT_SYNCHRONIZED, "sandbox changed during admission")

        try:
            session = await self._sessions.renew(session.session_id)
        except SessionError as exc:
            raise AdmissionError(AdmissionReason.NO_ACTIVE_SESSION, str(exc)) from None

        return AdmittedMessage(
            payload=payload,
            identity=identity,
            session=session,
            loop=loop_id,
            sandbox_version=after.version,
        )
