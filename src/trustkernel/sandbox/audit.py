"""Hash-chained append-only audit log for admission decisions.

Every entry is SHA-256 hashed and chained to the previous one, so any edit
or deletion inside a file breaks the chain.

Log format (one JSON object per line)::

    {
        "seq": <int>,              // monotonic sequence number
        "ts": "<iso8601>",         // UTC timestamp
        "event": "<str>",          // admit | reject | session_<x> | server_<x>
        "identity": "<str>",
        "token_hash": "<hex>",     // SHA-256 prefix of the raw token, never the token
        "loop": "<str>",
        "reason": "<str>",
        "detail": "<str>",
        "prev_hash": "<hex>",
        "hash": "<hex>"            // SHA-256 of the entry without "hash"
    }
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

_DETAIL_MAX = 256
_GENESIS = "0" * 64


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _sha256_hex(data: str | bytes) -> str:
    if isinstance(data, str):
        data = data.encode()
    return hashlib.sha256(data).hexdigest()


def _truncate(value: object, max_len: int = _DETAIL_MAX) -> str:
    text = str(value)
    if len(text) > max_len:
        return text[:max_len] + "…[truncated]"
    return text


class AdmissionAuditLog:
    """Append-only, hash-chained record of admissions and session events.

    Writes serialise on an asyncio.Lock.  One file per UTC day.
    """

    def __init__(self, log_dir: Path) -> None:
        self._log_dir = Path(log_dir)
        self._lock = asyncio.Lock()
        self._seq = 0
        self._prev_hash = _GENESIS
        self._day: str | None = None

    def _log_file(self) -> Path:
        date_str = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        return self._log_dir / f"admission-{date_str}.ndjson"

    async def start(self) -> None:
        """Create the log directory and resume the chain from today's file."""
        self._log_dir.mkdir(parents=True, exist_ok=True)
        log_file = self._log_file()
        self._day = log_file.name
        if log_file.exists():
            self._resume_from(log_file)

    def _resume_from(self, log_file: Path) -> None:
        last_line: str | None = None
        try:
            with open(log_file) as fh:
                for line in fh:
                    line = line.strip()
                    if line:
                        last_line = line
            if last_line:
                entry = json.loads(last_line)
                self._seq = entry.get("seq", 0)
                self._prev_hash = entry.get("hash", _GENESIS)
        except (OSError, json.JSONDecodeError):
            logger.warning("Could not resume audit log from %s — starting a new chain", log_file)

    async def record(
        self,
        event: str,
        *,
        identity: str = "",
        token_hash: str = "",
        loop: str = "",
        reason: str = "",
        detail: object = "",
    ) -> None:
        """Append one entry."""
        async with self._lock:
            log_file = self._log_file()
            if log_file.name != self._day:
                # New day, new file, new chain.
                self._day = log_file.name
                self._seq = 0
                self._prev_hash = _GENESIS

            entry: dict = {
                "seq": self._seq + 1,
                "ts": _now_iso(),
                "event": event,
                "identity": identity,
                "token_hash": token_hash,
                "loop": loop,
                "reason": reason,
                "detail": _truncate(detail),
                "prev_hash": self._prev_hash,
            }
            entry_hash = _sha256_hex(json.dumps(entry, sort_keys=True))
            entry["hash"] = entry_hash

            try:
                with open(log_file, "a") as fh:
                    fh.write(json.dumps(entry, sort_keys=True) + "\n")
            except OSError:
                logger.error("Failed to write audit entry %s for %s", event, identity or "-")
                return
            self._seq += 1
            self._prev_hash = entry_hash

    def verify_chain(self, log_file: Path | None = None) -> tuple[bool, str]:
        """Verify the hash chain of *log_file* (default: today's file).

        Returns:
            (ok, message) where ok=True means the chain is intact.
        """
        return verify_chain(log_file or self._log_file())


def verify_chain(log_file: Path) -> tuple[bool, str]:
    log_file = Path(log_file)
    if not log_file.exists():
        return True, "no log file"

    prev_hash = _GENESIS
    prev_seq = 0
    try:
        with open(log_file) as fh:
            for lineno, line in enumerate(fh, 1):
                line = line.strip()
                if not line:
                    continue
                entry = json.loads(line)
                stored_hash = entry.pop("hash", "")
                computed = _sha256_hex(json.dumps(entry, sort_keys=True))
                if computed != stored_hash:
                    return (
                        False,
                        f"line {lineno}: hash mismatch (stored={stored_hash[:16]}…, computed={computed[:16]}…)",
                    )
                if entry.get("prev_hash") != prev_hash:
                    return False, f"line {lineno}: chain broken (expected prev_hash={prev_hash[:16]}…)"
                if entry.get("seq", 0) != prev_seq + 1:
                    return False, f"line {lineno}: sequence gap (expected {prev_seq + 1}, got {entry.get('seq')})"
                prev_hash = stored_hash
                prev_seq = entry["seq"]
    except (json.JSONDecodeError, OSError) as exc:
        return False, f"read error: {exc}"

    return True, f"chain intact ({prev_seq} entries)"
