"""Tests for the anomaly detectors."""

from __future__ import annotations

import pytest

from trustkernel.anomaly import BurstDetector, CompositeDetector, HoneypotDetector, NullDetector, Observation

SEED = b"boot-token-for-tests"


def _obs(payload: bytes = b"hello", identity: str = "svc-A", timestamp: float = 0.0) -> Observation:
    return Observation(identity=identity, session_id="s1", payload=payload, loop=None, timestamp=timestamp)


class TestHoneypot:
    def test_decoys_are_deterministic(self):
        assert HoneypotDetector(SEED).decoys() == HoneypotDetector(SEED).decoys()

    def test_decoy_shape(self):
        decoys = HoneypotDetector(SEED, batch=5).decoys()
        assert len(decoys) == 5
        for decoy in decoys:
            assert decoy.startswith("tkd_")
            assert len(decoy) == 4 + 32
            int(decoy[4:], 16)

    def test_different_seed_gives_different_pool(self):
        assert set(HoneypotDetector(SEED).decoys()).isdisjoint(HoneypotDetector(b"other-seed").decoys())

    def test_clean_payload_passes(self):
        assert HoneypotDetector(SEED).inspect(_obs(b"tkd_" + b"0" * 32)) is None

    def test_decoy_in_payload_flags(self):
        detector = HoneypotDetector(SEED, batch=10)
        decoy = detector.decoys()[3]
        reason = detector.inspect(_obs(f"Authorization: {decoy}".encode()))
        assert reason is not None
        assert detector.attempts == 1

    def test_attempts_grow_pool(self):
        detector = HoneypotDetector(SEED, batch=10)
        decoy = detector.decoys()[0]
        detector.observe_rejection(decoy)
        detector.observe_rejection(decoy)
        assert detector.attempts == 2
        assert len(detector.decoys()) == 20
        assert detector.is_decoy(decoy)

    def test_non_decoy_rejection_is_ignored(self):
        detector = HoneypotDetector(SEED, batch=10)
        detector.observe_rejection("tk1.garbage.token")
        assert detector.attempts == 0
        assert len(detector.decoys()) == 10

    def test_no_seed_means_no_decoys(self, caplog):
        detector = HoneypotDetector(None)
        assert detector.decoys() == []
        detector.observe_rejection("tkd_" + "a" * 32)
        assert detector.attempts == 0
        assert "no boot token" in caplog.text


class TestBurst:
    def test_under_limit(self):
        now = [0.0]
        detector = BurstDetector(max_messages=3, window=1.0, clock=lambda: now[0])
        for _ in range(3):
            assert detector.inspect(_obs()) is None

    def test_over_limit_flags(self):
        now = [0.0]
        detector = BurstDetector(max_messages=3, window=1.0, clock=lambda: now[0])
        for _ in range(3):
            detector.inspect(_obs())
        assert detector.inspect(_obs()) is not None

    def test_window_slides(self):
        now = [0.0]
        detector = BurstDetector(max_messages=2, window=1.0, clock=lambda: now[0])
        for _ in range(2):
            detector.inspect(_obs())
        now[0] = 1.5
        assert detector.inspect(_obs()) is None

    def test_counts_per_identity(self):
        now = [0.0]
        detector = BurstDetector(max_messages=1, window=1.0, clock=lambda: now[0])
        assert detector.inspect(_obs(identity="svc-A")) is None
        assert detector.inspect(_obs(identity="svc-B")) is None


class TestComposite:
    def test_first_flag_wins(self):
        honeypot = HoneypotDetector(SEED, batch=1)
        decoy = honeypot.decoys()[0].encode()
        composite = CompositeDetector([NullDetector(), honeypot])
        assert composite.inspect(_obs(decoy)) == "honeypot credential in payload"
        assert composite.inspect(_obs(b"fine")) is None

    def test_rejections_fan_out(self):
        first = HoneypotDetector(SEED, batch=1)
        second = HoneypotDetector(SEED, batch=1)
        CompositeDetector([first, second]).observe_rejection(first.decoys()[0])
        assert first.attempts == second.attempts == 1

    @pytest.mark.parametrize("payload", [b"", b"\x00" * 64])
    def test_null_never_flags(self, payload):
        assert NullDetector().inspect(_obs(payload)) is None
