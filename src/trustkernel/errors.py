"""Error taxonomy for the trust kernel.

Only ``MissingRootSecret`` is fatal to the process.  Every other error
rejects exactly one message or one operation and is reported back to the
caller (usually a loop adapter) for its own handling.
"""

from __future__ import annotations

import enum


class TrustKernelError(Exception):
    """Base class for every error raised by the trust kernel."""


class MissingRootSecret(TrustKernelError):
    """The root secret is absent — the kernel must not reach a ready state."""


# ── Tokens ───────────────────────────────────────────────────────────────────


class TokenErrorKind(str, enum.Enum):
    MALFORMED = "malformed"
    SIGNATURE_MISMATCH = "signature_mismatch"
    EXPIRED = "expired"


class TokenError(TrustKernelError):
    """A presented token failed validation."""

    def __init__(self, kind: TokenErrorKind, detail: str = "") -> None:
        self.kind = kind
        self.detail = detail
        super().__init__(f"{kind.value}: {detail}" if detail else kind.value)


# ── Sessions ─────────────────────────────────────────────────────────────────


class SessionError(TrustKernelError):
    """Base class for session lifecycle errors."""

    def __init__(self, session_id: str, message: str) -> None:
        self.session_id = session_id
        super().__init__(message)


class UnknownSession(SessionError):
    def __init__(self, session_id: str) -> None:
        super().__init__(session_id, f"unknown session {session_id[:8]}…")


class SessionNotActive(SessionError):
    def __init__(self, session_id: str, state: str) -> None:
        self.state = state
        super().__init__(session_id, f"session {session_id[:8]}… is {state}")


# ── Admission ────────────────────────────────────────────────────────────────


class AdmissionReason(str, enum.Enum):
    SERVER_LOCKED = "server_locked"
    INVALID_TOKEN = "invalid_token"
    NO_ACTIVE_SESSION = "no_active_session"
    SANDBOX_NOT_SYNCHRONIZED = "sandbox_not_synchronized"
    DECRYPTION_FAILED = "decryption_failed"
    ANOMALY_DETECTED = "anomaly_detected"
    BUSY = "busy"  # a bounded wait expired


class AdmissionError(TrustKernelError):
    """A message was rejected by the admission pipeline."""

    def __init__(
        self,
        reason: AdmissionReason,
        detail: str = "",
        *,
        token_error: TokenErrorKind | None = None,
    ) -> None:
        self.reason = reason
        self.detail = detail
        self.token_error = token_error
        label = reason.value
        if token_error is not None:
            label = f"{label}({token_error.value})"
        super().__init__(f"{label}: {detail}" if detail else label)


# ── Sandbox / concurrency ────────────────────────────────────────────────────


class SandboxSyncTimeout(TrustKernelError):
    """Loops did not reach the readiness barrier in time."""

    def __init__(self, timeout: float, missing: list[str]) -> None:
        self.timeout = timeout
        self.missing = missing
        super().__init__(
            f"sandbox not synchronized after {timeout:.2f}s (waiting on: {', '.join(missing) or '-'})"
        )


class LockTimeout(TrustKernelError):
    """A bounded lock acquisition expired.  Treated as a rejection."""

    def __init__(self, resource: str, timeout: float) -> None:
        self.resource = resource
        self.timeout = timeout
        super().__init__(f"timed out after {timeout:.2f}s waiting for {resource}")


class CredentialError(TrustKernelError):
    """A credential bundle could not be parsed or does not form a valid pair."""
