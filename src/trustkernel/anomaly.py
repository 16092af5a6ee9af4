"""Pluggable anomaly heuristics consulted by the admission pipeline.

A detector sees every message that passed token, session, sandbox and
decryption checks.  Returning a reason string flags the message; the
pipeline then rejects it and revokes the sender's session.

Strategies:

- ``HoneypotDetector``: decoy credentials seeded from the boot token.  Any
  message that carries a decoy, or any attempt to present one as a token,
  is hostile by construction.  Every attempt grows the decoy pool.
- ``BurstDetector``: per-identity message rate over a sliding window.
- ``CompositeDetector``: first flag wins.
- ``NullDetector``: never flags.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Callable, Protocol, Sequence

logger = logging.getLogger(__name__)

DECOY_BATCH = 100
_DECOY_RE = re.compile(rb"tkd_[0-9a-f]{32}")


@dataclass(frozen=True)
class Observation:
    identity: str
    session_id: str
    payload: bytes
    loop: str | None
    timestamp: float


class AnomalyDetector(Protocol):
    def inspect(self, obs: Observation) -> str | None:
        """Return a reason if *obs* looks hostile, else None."""
        ...

    def observe_rejection(self, raw_token: str) -> None:
        """Called with the raw token of every message rejected as INVALID_TOKEN."""
        ...


class NullDetector:
    def inspect(self, obs: Observation) -> str | None:
        return None

    def observe_rejection(self, raw_token: str) -> None:
        return None


class HoneypotDetector:
    """Decoy credentials derived from a one-time bootstrap seed.

    Decoys look like ``tkd_<32 hex>``; they are never issued to a real
    component, so seeing one means a credential store was scraped.
    """

    def __init__(self, seed: bytes | None, batch: int = DECOY_BATCH) -> None:
        self._seed = seed
        self._batch = batch
        self._decoys: set[bytes] = set()
        self._next_id = 1
        self.attempts = 0
        if seed is None:
            logger.warning("Honeypot: no boot token — running without decoys")
        else:
            self._generate(batch)
            logger.info("Honeypot: seeded %d decoy credentials", len(self._decoys))

    def _generate(self, n: int) -> None:
        if self._seed is None:
            return
        for _ in range(n):
            digest = hmac.new(self._seed, f"hp_{self._next_id:08}".encode(), hashlib.sha256).hexdigest()
            self._decoys.add(f"tkd_{digest[:32]}".encode())
            self._next_id += 1

    def decoys(self) -> list[str]:
        """Current decoy pool, for planting where real credentials would live."""
        return sorted(d.decode() for d in self._decoys)

    def is_decoy(self, value: str | bytes) -> bool:
        if isinstance(value, str):
            value = value.encode()
        return value in self._decoys

    def _signal_attempt(self) -> None:
        self.attempts += 1
        target = self.attempts * self._batch
        if target > len(self._decoys):
            self._generate(target - len(self._decoys))

    def inspect(self, obs: Observation) -> str | None:
        for match in _DECOY_RE.finditer(obs.payload):
            if match.group(0) in self._decoys:
                self._signal_attempt()
                return "honeypot credential in payload"
        return None

    def observe_rejection(self, raw_token: str) -> None:
        if self.is_decoy(raw_token):
            self._signal_attempt()
            logger.error("HONEYPOT — decoy credential presented as a token (attempt %d)", self.attempts)


class BurstDetector:
    """Flags an identity sending more than *max_messages* within *window* seconds."""

    def __init__(
        self,
        max_messages: int = 200,
        window: float = 1.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_messages = max_messages
        self.window = window
        self._clock = clock
        self._seen: dict[str, deque[float]] = defaultdict(deque)

    def inspect(self, obs: Observation) -> str | None:
        now = self._clock()
        seen = self._seen[obs.identity]
        seen.append(now)
        while seen and seen[0] <= now - self.window:
            seen.popleft()
        if len(seen) > self.max_messages:
            seen.clear()
            return f"burst of more than {self.max_messages} messages in {self.window:g}s"
        return None

    def observe_rejection(self, raw_token: str) -> None:
        return None


class CompositeDetector:
    def __init__(self, detectors: Sequence[AnomalyDetector]) -> None:
        self.detectors = list(detectors)

    def inspect(self, obs: Observation) -> str | None:
        for detector in self.detectors:
            reason = detector.inspect(obs)
            if reason:
                return reason
        return None

    def observe_rejection(self, raw_token: str) -> None:
        for detector in self.detectors:
            detector.observe_rejection(raw_token)
