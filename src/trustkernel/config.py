"""Configuration models and loader for trustkernel.yaml.

Every section is optional; an empty file yields a working configuration.
Secrets never live in the YAML file: it only names the environment
variables (or files) they are read from.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from trustkernel.errors import CredentialError, MissingRootSecret
from trustkernel.loops import LoopKind

logger = logging.getLogger(__name__)


class SecretsConfig(BaseModel):
    root_secret_env: str = "TRUSTKERNEL_ROOT_SECRET"
    root_secret_file: str | None = None
    boot_token_env: str = "TRUSTKERNEL_BOOT_TOKEN"
    boot_token_file: str | None = None
    cert_path: str = "certs/server.crt"
    key_path: str = "certs/server.key"


class TokensConfig(BaseModel):
    default_ttl: float = Field(default=3600, gt=0)
    max_clock_skew: float = Field(default=30, ge=0)


class SessionsConfig(BaseModel):
    default_ttl: float = Field(default=300, gt=0)
    max_lifetime: float = Field(default=3600, gt=0)
    lock_timeout: float = Field(default=1.0, gt=0)
    terminal_retention: int = Field(default=10_000, ge=0)

    @model_validator(mode="after")
    def _lifetime_covers_ttl(self) -> SessionsConfig:
        if self.max_lifetime < self.default_ttl:
            raise ValueError("sessions.max_lifetime must be >= sessions.default_ttl")
        return self


class HeartbeatConfig(BaseModel):
    enabled: bool = True
    interval: float = Field(default=10.0, gt=0)
    probe_timeout: float = Field(default=2.0, gt=0)
    degraded_threshold: int = Field(default=3, ge=1)


class SandboxSettings(BaseModel):
    sync_window: float = Field(default=1.0, gt=0)
    lock_timeout: float = Field(default=1.0, gt=0)
    alert_after_timeouts: int = Field(default=3, ge=0)
    startup_timeout: float = Field(default=5.0, gt=0)
    # default | network_service | device_driver
    policy: str = "default"

    @field_validator("policy")
    @classmethod
    def _known_policy(cls, v: str) -> str:
        if v not in ("default", "network_service", "device_driver"):
            raise ValueError(f"unknown sandbox policy {v!r}")
        return v


class AnomalyConfig(BaseModel):
    honeypot: bool = True
    decoy_batch: int = Field(default=100, ge=1)
    burst: bool = True
    burst_max_messages: int = Field(default=200, ge=1)
    burst_window: float = Field(default=1.0, gt=0)


class ServerConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8443
    start_locked: bool = False
    auto_lock_after_invalid: int = Field(default=0, ge=0)


class LoopsConfig(BaseModel):
    enabled: list[LoopKind] = Field(default_factory=lambda: list(LoopKind))
    queue_size: int = Field(default=1000, ge=1)


class AuditConfig(BaseModel):
    enabled: bool = False
    log_dir: str = ".trustkernel/audit"


class TrustKernelConfig(BaseModel):
    secrets: SecretsConfig = Field(default_factory=SecretsConfig)
    tokens: TokensConfig = Field(default_factory=TokensConfig)
    sessions: SessionsConfig = Field(default_factory=SessionsConfig)
    heartbeat: HeartbeatConfig = Field(default_factory=HeartbeatConfig)
    sandbox: SandboxSettings = Field(default_factory=SandboxSettings)
    anomaly: AnomalyConfig = Field(default_factory=AnomalyConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    loops: LoopsConfig = Field(default_factory=LoopsConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)


def apply_env_overrides(config: TrustKernelConfig) -> TrustKernelConfig:
    """Environment variable overrides for deployment."""
    audit_dir = os.environ.get("TRUSTKERNEL_AUDIT_DIR")
    if audit_dir:
        config.audit.log_dir = audit_dir

    audit_enabled = os.environ.get("TRUSTKERNEL_AUDIT_ENABLED")
    if audit_enabled is not None:
        config.audit.enabled = audit_enabled.lower() in ("1", "true", "yes")

    start_locked = os.environ.get("TRUSTKERNEL_START_LOCKED")
    if start_locked is not None:
        config.server.start_locked = start_locked.lower() in ("1", "true", "yes")
    return config


def load_config(config_path: Path) -> TrustKernelConfig:
    """Load configuration from a trustkernel.yaml file.

    Raises:
        FileNotFoundError: If the file doesn't exist.
        ValueError: If validation fails.
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"trustkernel config not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"{config_path}: top level must be a mapping")

    config = apply_env_overrides(TrustKernelConfig(**raw))
    logger.info("Loaded trustkernel config from %s", config_path)
    return config


@dataclass(frozen=True)
class Secrets:
    root_secret: bytes
    boot_token: bytes | None
    cert_pem: bytes
    key_pem: bytes

    def __repr__(self) -> str:
        return f"<Secrets root=({len(self.root_secret)} bytes) boot_token={'set' if self.boot_token else 'absent'}>"


def _read_secret(env_name: str, file_path: str | None) -> bytes | None:
    if file_path:
        path = Path(file_path)
        if path.exists():
            return path.read_bytes().strip() or None
        logger.warning("Secret file %s does not exist", path)
    value = os.environ.get(env_name)
    return value.encode() if value else None


def load_root_secret(config: TrustKernelConfig) -> bytes:
    """Raises MissingRootSecret if neither the env var nor the file provides one."""
    sc = config.secrets
    root_secret = _read_secret(sc.root_secret_env, sc.root_secret_file)
    if root_secret is None:
        raise MissingRootSecret(f"root secret not found (set {sc.root_secret_env} or secrets.root_secret_file)")
    return root_secret


def load_secrets(config: TrustKernelConfig) -> Secrets:
    """Resolve the startup secrets named by *config*.

    Raises:
        MissingRootSecret: the root secret is absent.
        CredentialError: the certificate or key file cannot be read.
    """
    sc = config.secrets
    root_secret = load_root_secret(config)

    boot_token = _read_secret(sc.boot_token_env, sc.boot_token_file)
    if boot_token is None:
        logger.warning("Boot token not provided (%s) — honeypot decoys disabled", sc.boot_token_env)

    try:
        cert_pem = Path(sc.cert_path).read_bytes()
        key_pem = Path(sc.key_path).read_bytes()
    except OSError as exc:
        raise CredentialError(f"cannot read TLS credentials: {exc}") from None

    return Secrets(root_secret=root_secret, boot_token=boot_token, cert_pem=cert_pem, key_pem=key_pem)
