"""Tests for the sandbox controller and the admission audit log."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from trustkernel.errors import LockTimeout, SandboxSyncTimeout
from trustkernel.sandbox import AdmissionAuditLog, SandboxController, SandboxPolicy, verify_chain


# -- Readiness barrier ------------------------------------------------------


class TestBarrier:
    @pytest.mark.asyncio
    async def test_no_loops_is_not_synchronized(self, sandbox):
        assert not sandbox.synchronized
        assert sandbox.snapshot().registered == ()

    @pytest.mark.asyncio
    async def test_unanimity_required(self, sandbox):
        for loop in ("primary", "secondary", "third"):
            await sandbox.register(loop)
        assert await sandbox.sync("primary") is False
        assert await sandbox.sync("secondary") is False
        assert not sandbox.synchronized
        assert sandbox.snapshot().ready == ("primary", "secondary")
        assert await sandbox.sync("third") is True
        assert sandbox.synchronized

    @pytest.mark.asyncio
    async def test_reports_must_fall_within_window(self, sandbox, clock):
        await sandbox.register("primary")
        await sandbox.register("secondary")
        await sandbox.sync("primary")
        clock.advance(5)
        assert await sandbox.sync("secondary") is False
        assert await sandbox.sync("primary") is True

    @pytest.mark.asyncio
    async def test_drop_readiness_desynchronizes(self, synced_sandbox):
        version = synced_sandbox.version
        await synced_sandbox.drop_readiness("primary", "maintenance")
        assert not synced_sandbox.synchronized
        assert synced_sandbox.version == version + 1

    @pytest.mark.asyncio
    async def test_new_loop_desynchronizes(self, synced_sandbox):
        await synced_sandbox.register("secondary")
        assert not synced_sandbox.synchronized

    @pytest.mark.asyncio
    async def test_unregister_can_resynchronize(self, sandbox):
        await sandbox.register("primary")
        await sandbox.register("secondary")
        await sandbox.sync("primary")
        await sandbox.unregister("secondary")
        assert sandbox.synchronized

    @pytest.mark.asyncio
    async def test_version_bumps_only_on_flip(self, synced_sandbox):
        version = synced_sandbox.version
        await synced_sandbox.sync("primary")
        await synced_sandbox.sync("primary")
        assert synced_sandbox.version == version

    @pytest.mark.asyncio
    async def test_stale_reports_start_a_round(self, sandbox, clock):
        for loop in ("a", "b", "c"):
            await sandbox.register(loop)
            await sandbox.sync(loop)
        assert sandbox.synchronized
        await sandbox.drop_readiness("a", "handler fault")
        clock.advance(10)
        waiter = asyncio.create_task(sandbox.next_round(sandbox.round))
        assert await sandbox.sync("a") is False
        assert await asyncio.wait_for(waiter, 1.0) == 1
        assert await sandbox.sync("b") is False
        assert await sandbox.sync("c") is True
        assert sandbox.round == 1

    @pytest.mark.asyncio
    async def test_rounds_are_rate_limited(self, sandbox, clock):
        await sandbox.register("a")
        await sandbox.register("b")
        await sandbox.sync("b")
        clock.advance(5)
        await sandbox.sync("a")
        await sandbox.sync("a")
        assert sandbox.round == 1
        clock.advance(5)
        await sandbox.sync("a")
        assert sandbox.round == 2

    @pytest.mark.asyncio
    async def test_sync_unregistered_loop(self, sandbox):
        with pytest.raises(KeyError):
            await sandbox.sync("ghost")

    @pytest.mark.asyncio
    async def test_snapshot_carries_policy(self, clock):
        sandbox = SandboxController(policy=SandboxPolicy.for_network_service(), clock=clock)
        assert sandbox.snapshot().policy.allow_network is True


class TestWaitSynchronized:
    @pytest.mark.asyncio
    async def test_returns_once_synchronized(self, sandbox):
        await sandbox.register("primary")

        async def report_later():
            await asyncio.sleep(0.01)
            await sandbox.sync("primary")

        task = asyncio.create_task(report_later())
        snap = await sandbox.wait_synchronized(1.0)
        await task
        assert snap.synchronized

    @pytest.mark.asyncio
    async def test_timeout_names_missing_loops(self, sandbox):
        await sandbox.register("primary")
        await sandbox.register("secondary")
        await sandbox.sync("primary")
        with pytest.raises(SandboxSyncTimeout) as exc_info:
            await sandbox.wait_synchronized(0.01)
        assert exc_info.value.missing == ["secondary"]

    @pytest.mark.asyncio
    async def test_repeated_timeouts_raise_alert(self, sandbox, caplog):
        await sandbox.register("primary")
        for _ in range(3):
            with pytest.raises(SandboxSyncTimeout):
                await sandbox.wait_synchronized(0.001)
        assert sandbox.alerts == 1
        assert "SANDBOX ALERT" in caplog.text


class TestCryptoRegion:
    @pytest.mark.asyncio
    async def test_mutual_exclusion(self, sandbox):
        inside: list[str] = []
        overlaps = 0

        async def worker(loop_id: str):
            nonlocal overlaps
            async with sandbox.crypto_region(loop_id, timeout=1.0):
                inside.append(loop_id)
                if len(inside) > 1:
                    overlaps += 1
                assert sandbox.snapshot().active_locks == (loop_id,)
                await asyncio.sleep(0.001)
                inside.remove(loop_id)

        await asyncio.gather(*(worker(f"loop-{i}") for i in range(5)))
        assert overlaps == 0
        assert sandbox.snapshot().active_locks == ()

    @pytest.mark.asyncio
    async def test_wait_is_bounded(self, sandbox):
        await sandbox.acquire_lock("primary")
        with pytest.raises(LockTimeout):
            await sandbox.acquire_lock("secondary", timeout=0.01)
        sandbox.release_lock("primary")

    @pytest.mark.asyncio
    async def test_release_by_non_holder(self, sandbox):
        await sandbox.acquire_lock("primary")
        with pytest.raises(RuntimeError):
            sandbox.release_lock("secondary")
        sandbox.release_lock("primary")


# -- Audit log --------------------------------------------------------------


class TestAdmissionAuditLog:
    @pytest.mark.asyncio
    async def test_record_and_verify(self, tmp_path: Path):
        audit = AdmissionAuditLog(tmp_path / "audit")
        await audit.start()
        await audit.record("admit", identity="svc-A", token_hash="abc123", loop="primary")
        await audit.record("reject", identity="svc-B", reason="invalid_token")
        ok, msg = audit.verify_chain()
        assert ok, msg
        assert "2 entries" in msg

    @pytest.mark.asyncio
    async def test_tampering_detected(self, tmp_path: Path):
        audit = AdmissionAuditLog(tmp_path / "audit")
        await audit.start()
        await audit.record("admit", identity="svc-A")
        await audit.record("admit", identity="svc-B")
        log_file = audit._log_file()
        lines = log_file.read_text().splitlines()
        entry = json.loads(lines[0])
        entry["identity"] = "mallory"
        lines[0] = json.dumps(entry, sort_keys=True)
        log_file.write_text("\n".join(lines) + "\n")
        ok, msg = verify_chain(log_file)
        assert not ok
        assert "hash mismatch" in msg

    @pytest.mark.asyncio
    async def test_deleted_line_detected(self, tmp_path: Path):
        audit = AdmissionAuditLog(tmp_path / "audit")
        await audit.start()
        for i in range(3):
            await audit.record("admit", identity=f"svc-{i}")
        log_file = audit._log_file()
        lines = log_file.read_text().splitlines()
        log_file.write_text("\n".join([lines[0], lines[2]]) + "\n")
        ok, msg = verify_chain(log_file)
        assert not ok

    @pytest.mark.asyncio
    async def test_resume_continues_chain(self, tmp_path: Path):
        first = AdmissionAuditLog(tmp_path / "audit")
        await first.start()
        await first.record("admit", identity="svc-A")

        second = AdmissionAuditLog(tmp_path / "audit")
        await second.start()
        await second.record("admit", identity="svc-B")
        ok, msg = second.verify_chain()
        assert ok, msg
        assert "2 entries" in msg

    @pytest.mark.asyncio
    async def test_long_detail_truncated(self, tmp_path: Path):
        audit = AdmissionAuditLog(tmp_path / "audit")
        await audit.start()
        await audit.record("reject", detail="x" * 5000)
        entry = json.loads(audit._log_file().read_text().splitlines()[0])
        assert entry["detail"].endswith("[truncated]")
        assert len(entry["detail"]) < 300

    def test_missing_file_is_trivially_intact(self, tmp_path: Path):
        ok, msg = verify_chain(tmp_path / "absent.ndjson")
        assert ok
        assert msg == "no log file"
