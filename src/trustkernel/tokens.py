"""Token Authority — issues and verifies component tokens.

A token proves a component's identity for a bounded time.  It carries the
identity and issue time in clear, plus an AES-256-GCM encrypted payload holding
the authoritative claims (identity, issued_at, expires_at, token id).  An
HMAC-SHA256 signature over the clear fields and the ciphertext binds them.

Wire form (URL-safe, no padding)::

    tk1.<base64url(json {"sub", "iat", "ep"})>.<base64url(signature)>

The authority keeps no per-token state: every message re-validates its token
and freshness is the Session Manager's job.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import os
import secrets
import time
from dataclasses import dataclass
from typing import Callable

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from trustkernel.errors import TokenError, TokenErrorKind
from trustkernel.keys import KeyMaterialStore, KeyPurpose

logger = logging.getLogger(__name__)

TOKEN_PREFIX = "tk1"
_NONCE_LEN = 12
_MAX_TOKEN_LEN = 8192
_MAX_IDENTITY_LEN = 128


def b64e(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64d(text: str) -> bytes:
    padded = text + "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def token_fingerprint(raw: str) -> str:
    """Short, non-reversible label for a token — safe for logs."""
    return hashlib.sha256(raw.encode()).hexdigest()[:12]


def _canonical(obj: dict) -> bytes:
    return json.dumps(obj, sort_keys=True, separators=(",", ":")).encode()


def _signing_input(identity: str, issued_at: float, encrypted_payload: bytes) -> bytes:
    return b"|".join(
        [TOKEN_PREFIX.encode(), identity.encode(), repr(float(issued_at)).encode(), encrypted_payload]
    )


@dataclass(frozen=True)
class Token:
    """An issued token.  Immutable; validity is decided only by the authority."""

    component_identity: str
    issued_at: float
    signature: bytes
    encrypted_payload: bytes

    def encode(self) -> str:
        body = _canonical(
            {
                "sub": self.component_identity,
                "iat": self.issued_at,
                "ep": b64e(self.encrypted_payload),
            }
        )
        return f"{TOKEN_PREFIX}.{b64e(body)}.{b64e(self.signature)}"

    @classmethod
    def decode(cls, raw: str) -> Token:
        """Parse the wire form.  Raises ``TokenError(MALFORMED)`` on any structural problem."""
        if not isinstance(raw, str) or len(raw) > _MAX_TOKEN_LEN:
            raise TokenError(TokenErrorKind.MALFORMED, "token is not a string of acceptable length")
        parts = raw.split(".")
        if len(parts) != 3 or parts[0] != TOKEN_PREFIX:
            raise TokenError(TokenErrorKind.MALFORMED, "unexpected token layout")
        try:
            body = json.loads(b64d(parts[1]))
            signature = b64d(parts[2])
            identity = body["sub"]
            issued_at = float(body["iat"])
            encrypted_payload = b64d(body["ep"])
        except (ValueError, KeyError, TypeError, binascii.Error) as exc:
            raise TokenError(TokenErrorKind.MALFORMED, f"undecodable token: {exc}") from None
        if not isinstance(identity, str) or not identity:
            raise TokenError(TokenErrorKind.MALFORMED, "missing component identity")
        return cls(
            component_identity=identity,
            issued_at=issued_at,
            signature=signature,
            encrypted_payload=encrypted_payload,
        )

    def __str__(self) -> str:
        return self.encode()


class TokenAuthority:
    """Issues, signs, encrypts and validates component tokens.

    Args:
        keys: Key Material Store providing the signing and encryption subkeys.
        default_ttl: Lifetime embedded in tokens issued without an explicit ttl.
        max_clock_skew: How far in the future ``issued_at`` may be before the
            token is considered implausible.
        clock: Time source (seconds since the epoch).
    """

    def __init__(
        self,
        keys: KeyMaterialStore,
        *,
        default_ttl: float = 3600,
        max_clock_skew: float = 30,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._keys = keys
        self._default_ttl = default_ttl
        self._max_clock_skew = max_clock_skew
        self._clock = clock

    @property
    def default_ttl(self) -> float:
        return self._default_ttl

    def _sign(self, data: bytes) -> bytes:
        return hmac.new(self._keys.derive(KeyPurpose.SIGNING), data, hashlib.sha256).digest()

    def issue(self, component_identity: str, ttl: float | None = None) -> Token:
        """Issue a token for *component_identity* valid for *ttl* seconds."""
        if not component_identity or len(component_identity) > _MAX_IDENTITY_LEN:
            raise ValueError("component identity must be 1-128 characters")
        ttl = self._default_ttl if ttl is None else ttl
        if ttl <= 0:
            raise ValueError("token ttl must be positive")

        issued_at = float(self._clock())
        claims = {
            "sub": component_identity,
            "iat": issued_at,
            "exp": issued_at + ttl,
            "jti": secrets.token_hex(8),
        }
        nonce = os.urandom(_NONCE_LEN)
        aead = AESGCM(self._keys.derive(KeyPurpose.ENCRYPTION))
        encrypted_payload = nonce + aead.encrypt(nonce, _canonical(claims), component_identity.encode())
        signature = self._sign(_signing_input(component_identity, issued_at, encrypted_payload))

        logger.debug("TokenAuthority: issued token for %s (ttl=%ss)", component_identity, ttl)
        return Token(
            component_identity=component_identity,
            issued_at=issued_at,
            signature=signature,
            encrypted_payload=encrypted_payload,
        )

    def _open(self, token: Token) -> dict:
        if len(token.encrypted_payload) <= _NONCE_LEN:
            raise TokenError(TokenErrorKind.MALFORMED, "payload too short")
        nonce, ciphertext = token.encrypted_payload[:_NONCE_LEN], token.encrypted_payload[_NONCE_LEN:]
        try:
            plaintext = AESGCM(self._keys.derive(KeyPurpose.ENCRYPTION)).decrypt(
                nonce, ciphertext, token.component_identity.encode()
            )
            claims = json.loads(plaintext)
            return {
                "sub": claims["sub"],
                "iat": float(claims["iat"]),
                "exp": float(claims["exp"]),
            }
        except InvalidTag:
            raise TokenError(TokenErrorKind.MALFORMED, "payload decryption failed") from None
        except (ValueError, KeyError, TypeError) as exc:
            raise TokenError(TokenErrorKind.MALFORMED, f"bad claims: {exc}") from None

    def validate(self, token: Token | str) -> str:
        """Validate *token* and return the component identity it proves.

        Raises:
            TokenError: with kind MALFORMED, SIGNATURE_MISMATCH or EXPIRED.
        """
        if isinstance(token, str):
            token = Token.decode(token)

        expected = self._sign(
            _signing_input(token.component_identity, token.issued_at, token.encrypted_payload)
        )
        # Constant-time with respect to the secret-derived signature.
        if not hmac.compare_digest(expected, token.signature):
            raise TokenError(TokenErrorKind.SIGNATURE_MISMATCH)

        claims = self._open(token)
        if claims["sub"] != token.component_identity or claims["iat"] != token.issued_at:
            raise TokenError(TokenErrorKind.MALFORMED, "clear fields disagree with sealed claims")
        if claims["exp"] < claims["iat"]:
            raise TokenError(TokenErrorKind.MALFORMED, "expiry precedes issuance")

        now = self._clock()
        if claims["iat"] > now + self._max_clock_skew:
            raise TokenError(TokenErrorKind.MALFORMED, "issued_at lies in the future")
        if now > claims["exp"]:
            raise TokenError(TokenErrorKind.EXPIRED)
        return claims["sub"]

    def expires_at(self, token: Token | str) -> float:
        """Embedded expiry of a token (no validity checks)."""
        if isinstance(token, str):
            token = Token.decode(token)
        return self._open(token)["exp"]
