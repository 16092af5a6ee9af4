"""trustkernel CLI entry point."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

_DEFAULT_CONFIG_PATH = Path("trustkernel.yaml")

# Exit status when the root secret is absent.
EXIT_MISSING_ROOT_SECRET = 2


def _load_config(path: Path | None):
    from trustkernel.config import TrustKernelConfig, apply_env_overrides, load_config

    if path is not None:
        return load_config(path)
    if _DEFAULT_CONFIG_PATH.exists():
        return load_config(_DEFAULT_CONFIG_PATH)
    return apply_env_overrides(TrustKernelConfig())


def _serve(args) -> None:
    from trustkernel.config import load_secrets
    from trustkernel.errors import CredentialError, MissingRootSecret

    try:
        config = _load_config(args.config)
    except (FileNotFoundError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    try:
        secrets = load_secrets(config)
    except MissingRootSecret as exc:
        print(f"Fatal: {exc}", file=sys.stderr)
        sys.exit(EXIT_MISSING_ROOT_SECRET)
    except CredentialError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        print("Run 'trustkernel gen-credentials' to create a self-signed pair.", file=sys.stderr)
        sys.exit(1)

    import uvicorn

    from trustkernel.api import create_app
    from trustkernel.kernel import TrustKernel

    try:
        kernel = TrustKernel(config, secrets)
    except CredentialError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    app = create_app(kernel)
    host = args.host or config.server.host
    port = args.port or config.server.port
    tls = {} if args.no_tls else {
        "ssl_certfile": config.secrets.cert_path,
        "ssl_keyfile": config.secrets.key_path,
    }
    uvicorn.run(app, host=host, port=port, log_level=args.log_level.lower(), **tls)


def _gen_credentials(args) -> None:
    from trustkernel.credentials import generate_self_signed

    out_dir: Path = args.out_dir
    out_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
    cert_path = out_dir / "server.crt"
    key_path = out_dir / "server.key"
    if (cert_path.exists() or key_path.exists()) and not args.force:
        print(f"Error: credentials already exist in {out_dir} (use --force to overwrite)", file=sys.stderr)
        sys.exit(1)

    cert_pem, key_pem = generate_self_signed(args.common_name, args.days)
    key_path.write_bytes(key_pem)
    os.chmod(str(key_path), 0o600)
    cert_path.write_bytes(cert_pem)
    os.chmod(str(cert_path), 0o644)
    print(f"Wrote {cert_path} and {key_path}")


def _issue_token(args) -> None:
    from trustkernel.config import load_root_secret
    from trustkernel.errors import MissingRootSecret
    from trustkernel.keys import KeyMaterialStore
    from trustkernel.tokens import TokenAuthority

    config = _load_config(args.config)
    try:
        keys = KeyMaterialStore(load_root_secret(config))
    except MissingRootSecret as exc:
        print(f"Fatal: {exc}", file=sys.stderr)
        sys.exit(EXIT_MISSING_ROOT_SECRET)

    authority = TokenAuthority(keys, default_ttl=config.tokens.default_ttl)
    print(authority.issue(args.identity, args.ttl).encode())
    keys.destroy()


def _verify_audit(args) -> None:
    from trustkernel.sandbox.audit import verify_chain

    ok, message = verify_chain(args.log_file)
    print(message)
    sys.exit(0 if ok else 1)


def main():
    parser = argparse.ArgumentParser(
        prog="trustkernel",
        description="trustkernel — session & trust engine for internal loops and external peers",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    subparsers = parser.add_subparsers(dest="command")

    serve_parser = subparsers.add_parser("serve", help="Start the trust kernel and its HTTP surface")
    serve_parser.add_argument("--config", type=Path, help="Path to trustkernel.yaml (default: ./trustkernel.yaml)")
    serve_parser.add_argument("--host", help="Host to bind to (default: server.host)")
    serve_parser.add_argument("--port", type=int, help="Port to bind to (default: server.port)")
    serve_parser.add_argument(
        "--no-tls",
        action="store_true",
        help="Serve plain HTTP (e.g. behind a TLS-terminating proxy)",
    )

    gen_parser = subparsers.add_parser("gen-credentials", help="Generate a self-signed certificate and key")
    gen_parser.add_argument("--out-dir", type=Path, default=Path("certs"), help="Output directory (default: certs)")
    gen_parser.add_argument("--common-name", default="trustkernel", help="Certificate CN / DNS name")
    gen_parser.add_argument("--days", type=int, default=30, help="Validity in days (default: 30)")
    gen_parser.add_argument("--force", action="store_true", help="Overwrite existing files")

    token_parser = subparsers.add_parser("issue-token", help="Issue a component token")
    token_parser.add_argument("identity", help="Component identity")
    token_parser.add_argument("--ttl", type=float, help="Token lifetime in seconds (default: tokens.default_ttl)")
    token_parser.add_argument("--config", type=Path, help="Path to trustkernel.yaml")

    audit_parser = subparsers.add_parser("verify-audit", help="Verify an admission audit log's hash chain")
    audit_parser.add_argument("log_file", type=Path, help="Path to an admission-YYYY-MM-DD.ndjson file")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if args.command == "serve":
        _serve(args)
    elif args.command == "gen-credentials":
        _gen_credentials(args)
    elif args.command == "issue-token":
        _issue_token(args)
    elif args.command == "verify-audit":
        _verify_audit(args)


if __name__ == "__main__":
    main()
