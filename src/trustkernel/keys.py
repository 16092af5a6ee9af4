"""Key Material Store — root secret and purpose-scoped subkeys.

All subkeys are derived from the root secret with HKDF-SHA256.  Derivation is
deterministic for a given root secret + purpose, so two processes holding the
same root secret agree on every key without exchanging them.

The root secret and every derived key are kept in ``bytearray`` buffers so
``destroy()`` can overwrite them on teardown.
"""

from __future__ import annotations

import enum
import logging

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from trustkernel.errors import MissingRootSecret

logger = logging.getLogger(__name__)

MIN_ROOT_SECRET_BYTES = 16
SUBKEY_BYTES = 32  # AES-256 / HMAC-SHA256

_HKDF_SALT = b"trustkernel-v1"


class KeyPurpose(str, enum.Enum):
    ENCRYPTION = "encryption"
    SIGNING = "signing"
    SESSION = "session"


def _hkdf(key_material: bytes, info: bytes) -> bytes:
    return HKDF(
        algorithm=hashes.SHA256(),
        length=SUBKEY_BYTES,
        salt=_HKDF_SALT,
        info=info,
    ).derive(key_material)


class KeyMaterialStore:
    """Owns the root secret and derives subkeys from it.

    Usage::

        keys = KeyMaterialStore(root_secret)
        signing_key = keys.derive(KeyPurpose.SIGNING)
        session_key = keys.session_key(session_id)
        ...
        keys.destroy()
    """

    def __init__(self, root_secret: bytes | str | None) -> None:
        if root_secret is None or len(root_secret) == 0:
            raise MissingRootSecret("root secret is absent — refusing to start")
        if isinstance(root_secret, str):
            root_secret = root_secret.encode()
        if len(root_secret) < MIN_ROOT_SECRET_BYTES:
            raise ValueError(
                f"root secret must be at least {MIN_ROOT_SECRET_BYTES} bytes, got {len(root_secret)}"
            )
        self._root = bytearray(root_secret)
        self._subkeys: dict[KeyPurpose, bytearray] = {}
        logger.info("KeyMaterialStore: root secret loaded (%d bytes)", len(self._root))

    def __repr__(self) -> str:
        state = "destroyed" if not self._root else "loaded"
        return f"<KeyMaterialStore {state} purposes={sorted(p.value for p in self._subkeys)}>"

    @property
    def destroyed(self) -> bool:
        return not self._root

    def derive(self, purpose: KeyPurpose) -> bytes:
        """Return the subkey for *purpose*, deriving and caching it on first use."""
        cached = self._subkeys.get(purpose)
        if cached is not None:
            return bytes(cached)
        if self.destroyed:
            raise MissingRootSecret("key material has been destroyed")
        subkey = bytearray(_hkdf(bytes(self._root), f"purpose:{purpose.value}".encode()))
        self._subkeys[purpose] = subkey
        logger.debug("KeyMaterialStore: derived %s subkey", purpose.value)
        return bytes(subkey)

    def session_key(self, session_id: str) -> bytes:
        """Per-session payload key, derived from the session subkey."""
        return _hkdf(self.derive(KeyPurpose.SESSION), f"session:{session_id}".encode())

    def destroy(self) -> None:
        """Overwrite all key material.  Later derivations raise MissingRootSecret."""
        for buf in (self._root, *self._subkeys.values()):
            for i in range(len(buf)):
                buf[i] = 0
        self._subkeys.clear()
        self._root = bytearray()
        logger.info("KeyMaterialStore: key material destroyed")
