"""Shared fixtures: a controllable clock and a fully wired admission stack."""

from __future__ import annotations

from dataclasses import dataclass

import pytest
import pytest_asyncio

from trustkernel.admission import AdmissionPipeline, SecureEnvelope, ServerLockState, seal
from trustkernel.credentials import CredentialBundle, generate_self_signed
from trustkernel.keys import KeyMaterialStore
from trustkernel.sandbox.controller import SandboxController
from trustkernel.sessions import SessionManager, SessionView
from trustkernel.tokens import Token, TokenAuthority

ROOT_SECRET = b"unit-test-root-secret-0123456789"


class FakeClock:
    """Deterministic time source; advance it explicitly."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def keys() -> KeyMaterialStore:
    return KeyMaterialStore(ROOT_SECRET)


@pytest.fixture
def authority(keys: KeyMaterialStore, clock: FakeClock) -> TokenAuthority:
    return TokenAuthority(keys, default_ttl=3600, max_clock_skew=30, clock=clock)


@pytest.fixture
def sessions(authority: TokenAuthority, clock: FakeClock) -> SessionManager:
    return SessionManager(authority, default_ttl=300, max_lifetime=3600, lock_timeout=0.5, clock=clock)


@pytest.fixture
def sandbox(clock: FakeClock) -> SandboxController:
    return SandboxController(sync_window=1.0, lock_timeout=0.2, alert_after_timeouts=2, clock=clock)


@pytest.fixture
def lock_state() -> ServerLockState:
    return ServerLockState()


@pytest.fixture
def pipeline(keys, authority, sessions, sandbox, lock_state, clock) -> AdmissionPipeline:
    return AdmissionPipeline(keys, authority, sessions, sandbox, lock_state, clock=clock)


@pytest_asyncio.fixture
async def synced_sandbox(sandbox: SandboxController) -> SandboxController:
    """Sandbox with a single registered, ready loop ("primary")."""
    await sandbox.register("primary")
    await sandbox.sync("primary")
    assert sandbox.synchronized
    return sandbox


@dataclass
class Peer:
    """A component holding a token and an open session."""

    token: Token
    session: SessionView
    keys: KeyMaterialStore

    def envelope(self, payload: bytes = b"ping") -> SecureEnvelope:
        return seal(self.keys, self.session.session_id, self.session.identity, self.token, payload)

    def raw(self, payload: bytes = b"ping") -> str:
        return self.envelope(payload).model_dump_json()


@pytest.fixture
def make_peer(keys: KeyMaterialStore, authority: TokenAuthority, sessions: SessionManager):
    async def _make(identity: str = "svc-A", session_ttl: float | None = None, token_ttl: float | None = None) -> Peer:
        token = authority.issue(identity, token_ttl)
        session = await sessions.create(token, session_ttl)
        return Peer(token=token, session=session, keys=keys)

    return _make


@pytest.fixture(scope="session")
def credential_pair() -> tuple[bytes, bytes]:
    return generate_self_signed("trustkernel-test", 1)


@pytest.fixture(scope="session")
def other_credential_pair() -> tuple[bytes, bytes]:
    return generate_self_signed("trustkernel-rotated", 1)


@pytest.fixture
def bundle(credential_pair) -> CredentialBundle:
    return CredentialBundle.from_pem(*credential_pair)


@pytest.fixture
def secrets(credential_pair):
    from trustkernel.config import Secrets

    cert, key = credential_pair
    return Secrets(root_secret=ROOT_SECRET, boot_token=b"boot-token-for-tests", cert_pem=cert, key_pem=key)


@pytest.fixture
def kernel_config(tmp_path):
    from trustkernel.config import TrustKernelConfig

    return TrustKernelConfig(
        heartbeat={"enabled": False},
        audit={"enabled": True, "log_dir": str(tmp_path / "audit")},
        anomaly={"decoy_batch": 10},
    )


@pytest_asyncio.fixture
async def kernel(kernel_config, secrets):
    from trustkernel.kernel import TrustKernel

    k = TrustKernel(kernel_config, secrets)
    await k.start()
    yield k
    await k.stop()
