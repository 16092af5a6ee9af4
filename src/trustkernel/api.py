"""HTTP surface of the TLS Server.

Endpoints:
    Peers:
    - POST /sessions            - open a session with a component token
    - POST /admit               - submit a SecureEnvelope for admission

    Control (Bearer key from TRUSTKERNEL_CONTROL_API_KEY):
    - POST /control/lock        - lock the server (admission fails closed)
    - POST /control/unlock      - unlock the server
    - PUT  /control/credentials - install a new certificate/key pair

    Status:
    - GET /health

Security:
    Control routes fail closed: when TRUSTKERNEL_CONTROL_API_KEY is not set
    they answer 403 to everyone.
"""

from __future__ import annotations

import logging
import os
import secrets
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Callable, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from trustkernel.errors import AdmissionError, AdmissionReason, CredentialError, LockTimeout, TokenError

if TYPE_CHECKING:
    from trustkernel.kernel import TrustKernel
    from trustkernel.server import TLSServer

logger = logging.getLogger(__name__)

CONTROL_API_KEY_ENV = "TRUSTKERNEL_CONTROL_API_KEY"

_bearer_scheme = HTTPBearer(auto_error=False)

router = APIRouter()

# Module-level references (configured at startup)
_server: "TLSServer | None" = None
_health: Callable[[], dict] | None = None


def configure(server: "TLSServer", health: Callable[[], dict]) -> None:
    """Wire the routes to a running server and its health reporter."""
    global _server, _health
    _server = server
    _health = health


def _require_server() -> "TLSServer":
    if _server is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="kernel not ready")
    return _server


async def require_control_key(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> bool:
    """FastAPI dependency guarding the control routes."""
    expected_key = os.environ.get(CONTROL_API_KEY_ENV)
    client = request.client.host if request.client else "unknown"

    if not expected_key:
        logger.warning("Control request from %s refused — %s is not set", client, CONTROL_API_KEY_ENV)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Control API disabled.")

    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required. Provide Authorization: Bearer <api_key> header.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not secrets.compare_digest(credentials.credentials, expected_key):
        logger.warning("Invalid control API key from %s", client)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return True


class OpenSessionRequest(BaseModel):
    token: str
    ttl: float | None = Field(default=None, gt=0)


class LockRequest(BaseModel):
    reason: str = "operator request"


class CredentialsRequest(BaseModel):
    cert_pem: str
    key_pem: str


_REPLY_STATUS = {
    None: status.HTTP_200_OK,
    AdmissionReason.SERVER_LOCKED: status.HTTP_423_LOCKED,
    AdmissionReason.BUSY: status.HTTP_503_SERVICE_UNAVAILABLE,
}


@router.post("/sessions", status_code=status.HTTP_201_CREATED)
async def open_session(body: OpenSessionRequest):
    server = _require_server()
    try:
        session = await server.open_session(body.token, body.ttl)
    except AdmissionError as exc:
        raise HTTPException(status_code=status.HTTP_423_LOCKED, detail=exc.detail or exc.reason.value)
    except TokenError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=exc.kind.value)
    except LockTimeout:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=AdmissionReason.BUSY.value)
    return {
        "session_id": session.session_id,
        "identity": session.identity,
        "expires_at": session.expires_at,
    }


@router.post("/admit")
async def admit(request: Request):
    server = _require_server()
    reply = await server.handle(await request.body())
    code = _REPLY_STATUS.get(reply.reason, status.HTTP_403_FORBIDDEN)
    return JSONResponse(status_code=code, content=reply.to_dict())


@router.post("/control/lock")
async def lock(body: LockRequest | None = None, authorized: bool = Depends(require_control_key)):
    server = _require_server()
    await server.lock(body.reason if body else "operator request")
    return {"locked": True}


@router.post("/control/unlock")
async def unlock(authorized: bool = Depends(require_control_key)):
    server = _require_server()
    await server.unlock()
    return {"locked": False}


@router.put("/control/credentials")
async def reload_credentials(body: CredentialsRequest, authorized: bool = Depends(require_control_key)):
    server = _require_server()
    try:
        bundle = await server.reload_credentials(body.cert_pem, body.key_pem)
    except CredentialError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    return {"fingerprint": bundle.fingerprint}


@router.get("/health")
async def health():
    if _health is None:
        return {"status": "starting"}
    return _health()


def create_app(kernel: "TrustKernel") -> FastAPI:
    """Create the FastAPI application around *kernel*."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await kernel.start()
        configure(kernel.server, kernel.health)
        yield
        await kernel.stop()

    app = FastAPI(
        title="trustkernel",
        version="0.1.0",
        description="Session & trust engine — admission control for internal loops and external peers",
        lifespan=lifespan,
    )
    app.include_router(router)
    return app
