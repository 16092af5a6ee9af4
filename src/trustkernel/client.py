"""TLS Client — outbound side of the trust boundary.

The client issues itself a token, opens a session at each destination and
seals every payload under that session's key.  It remembers, per
destination, whether the server last reported itself locked and refuses to
send while that is the case; calling ``connect`` again re-probes the server.

Transports:

- ``LocalTransport``: an in-process ``TLSServer``.
- ``HttpTransport``: the FastAPI surface over httpx.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

import httpx

from trustkernel.admission import SecureEnvelope, seal
from trustkernel.errors import AdmissionError, AdmissionReason, TokenError, TokenErrorKind
from trustkernel.keys import KeyMaterialStore
from trustkernel.server import ServerReply, TLSServer
from trustkernel.tokens import Token, TokenAuthority

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionHandle:
    session_id: str
    identity: str
    expires_at: float


class Transport(Protocol):
    async def open_session(self, token: str, ttl: float | None = None) -> SessionHandle:
        """Raises AdmissionError (SERVER_LOCKED, INVALID_TOKEN or BUSY) on refusal."""
        ...

    async def send(self, envelope: SecureEnvelope) -> ServerReply: ...


class LocalTransport:
    def __init__(self, server: TLSServer) -> None:
        self._server = server

    async def open_session(self, token: str, ttl: float | None = None) -> SessionHandle:
        try:
            session = await self._server.open_session(token, ttl)
        except TokenError as exc:
            raise AdmissionError(AdmissionReason.INVALID_TOKEN, exc.detail, token_error=exc.kind) from None
        return SessionHandle(session.session_id, session.identity, session.expires_at)

    async def send(self, envelope: SecureEnvelope) -> ServerReply:
        return await self._server.handle(envelope)


# /admit answers every admission decision with a ServerReply body.
_REPLY_STATUSES = (200, 403, 423, 503)


def _reply_from_json(data: dict) -> ServerReply:
    reason = data.get("reason")
    return ServerReply(
        accepted=bool(data.get("accepted")),
        credential_fingerprint=data.get("credential_fingerprint", ""),
        reason=AdmissionReason(reason) if reason else None,
        detail=data.get("detail", ""),
        identity=data.get("identity"),
    )


class HttpTransport:
    """Talks to ``trustkernel.api`` over HTTP(S)."""

    def __init__(self, base_url: str, *, client: httpx.AsyncClient | None = None, timeout: float = 10.0) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def open_session(self, token: str, ttl: float | None = None) -> SessionHandle:
        body: dict = {"token": token}
        if ttl is not None:
            body["ttl"] = ttl
        resp = await self._client.post("/sessions", json=body)
        if resp.status_code == 423:
            raise AdmissionError(AdmissionReason.SERVER_LOCKED, resp.json().get("detail", ""))
        if resp.status_code == 401:
            kind = resp.json().get("detail", TokenErrorKind.MALFORMED.value)
            try:
                token_error = TokenErrorKind(kind)
            except ValueError:
                token_error = TokenErrorKind.MALFORMED
            raise AdmissionError(AdmissionReason.INVALID_TOKEN, token_error=token_error)
        if resp.status_code == 503:
            raise AdmissionError(AdmissionReason.BUSY, resp.json().get("detail", ""))
        resp.raise_for_status()
        data = resp.json()
        return SessionHandle(data["session_id"], data["identity"], data["expires_at"])

    async def send(self, envelope: SecureEnvelope) -> ServerReply:
        resp = await self._client.post("/admit", content=envelope.model_dump_json(),
                                       headers={"Content-Type": "application/json"})
        if resp.status_code in _REPLY_STATUSES:
            data = resp.json()
            if "accepted" in data:
                return _reply_from_json(data)
        resp.raise_for_status()
        raise httpx.HTTPStatusError(
            f"unexpected /admit response {resp.status_code}", request=resp.request, response=resp
        )


class TLSClient:
    def __init__(
        self,
        identity: str,
        keys: KeyMaterialStore,
        authority: TokenAuthority,
        transports: dict[str, Transport] | None = None,
        *,
        session_ttl: float | None = None,
    ) -> None:
        self.identity = identity
        self._keys = keys
        self._authority = authority
        self._transports: dict[str, Transport] = dict(transports or {})
        self._session_ttl = session_ttl
        self._tokens: dict[str, Token] = {}
        self._sessions: dict[str, SessionHandle] = {}
        self._server_locked: dict[str, bool] = {}

    def add_destination(self, destination: str, transport: Transport) -> None:
        self._transports[destination] = transport

    def server_locked(self, destination: str) -> bool:
        return self._server_locked.get(destination, False)

    def session(self, destination: str) -> SessionHandle | None:
        return self._sessions.get(destination)

    def _transport(self, destination: str) -> Transport:
        try:
            return self._transports[destination]
        except KeyError:
            raise KeyError(f"unknown destination {destination!r}") from None

    async def connect(self, destination: str) -> bool:
        """Issue a fresh token and open a session at *destination*."""
        transport = self._transport(destination)
        token = self._authority.issue(self.identity)
        try:
            handle = await transport.open_session(token.encode(), self._session_ttl)
        except AdmissionError as exc:
            if exc.reason == AdmissionReason.SERVER_LOCKED:
                self._server_locked[destination] = True
            logger.warning("%s: connect to %s refused: %s", self.identity, destination, exc)
            return False
        except httpx.HTTPError as exc:
            logger.warning("%s: connect to %s failed: %s", self.identity, destination, exc)
            return False
        self._tokens[destination] = token
        self._sessions[destination] = handle
        self._server_locked[destination] = False
        logger.info("%s: connected to %s (session %s…)", self.identity, destination, handle.session_id[:8])
        return True

    async def send(self, payload: bytes, destination: str) -> bool:
        """Seal and send *payload*.  Returns True only if the server admitted it."""
        if self.server_locked(destination):
            logger.warning("%s: not sending to %s — server is locked", self.identity, destination)
            return False
        if destination not in self._sessions and not await self.connect(destination):
            return False

        handle = self._sessions[destination]
        envelope = seal(
            self._keys, handle.session_id, handle.identity, self._tokens[destination], payload, sender=self.identity
        )
        try:
            reply = await self._transport(destination).send(envelope)
        except httpx.HTTPError as exc:
            logger.warning("%s: sending to %s failed: %s", self.identity, destination, exc)
            return False

        if reply.accepted:
            self._server_locked[destination] = False
            return True
        if reply.server_locked:
            self._server_locked[destination] = True
        elif reply.reason in (AdmissionReason.NO_ACTIVE_SESSION, AdmissionReason.INVALID_TOKEN):
            # Reconnect on the next send.
            self._sessions.pop(destination, None)
            self._tokens.pop(destination, None)
        logger.warning("%s: message to %s rejected: %s", self.identity, destination, reply.reason)
        return False
