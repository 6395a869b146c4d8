"""
Tests for the expiration sweep and its ARQ task wrapper.
"""

from __future__ import annotations

from datetime import timedelta, timezone

import pytest

from app.core.errors import Conflict, InvalidRequest
from app.tasks.transfer_expiration import WorkerSettings, expire_overdue_transfers
from orgtree_shared.schemas.common import Role
from orgtree_shared.schemas.transfers import TransferStatus

from conftest import role_in, seed_org

REASON = "Handing the archive to my cousin"


async def _pending_in_new_org(manager, session_factory, name):
    org = await seed_org(session_factory, name)
    transfer = await manager.initiate(org.org_id, org.owner, org.admin, REASON)
    return org, transfer


class TestExpireOverdue:

    async def test_expires_only_overdue(self, manager, session_factory, clock):
        org_a, old_a = await _pending_in_new_org(manager, session_factory, "Alpha")
        org_b, old_b = await _pending_in_new_org(manager, session_factory, "Bravo")
        clock.advance(days=3)
        org_c, fresh = await _pending_in_new_org(manager, session_factory, "Charlie")
        clock.advance(days=5)

        assert await manager.expire_overdue() == 2

        assert (await manager.get_transfer(old_a.id, org_a.owner)).status == TransferStatus.EXPIRED.value
        assert (await manager.get_transfer(old_b.id, org_b.owner)).status == TransferStatus.EXPIRED.value
        assert (await manager.get_transfer(fresh.id, org_c.owner)).status == TransferStatus.PENDING.value
        assert await role_in(session_factory, org_a.org_id, org_a.owner) is Role.OWNER

    async def test_sweep_is_idempotent(self, manager, session_factory, clock):
        await _pending_in_new_org(manager, session_factory, "Alpha")
        clock.advance(days=8)

        assert await manager.expire_overdue() == 1
        assert await manager.expire_overdue() == 0

    async def test_nothing_overdue(self, manager, session_factory):
        await _pending_in_new_org(manager, session_factory, "Alpha")
        assert await manager.expire_overdue() == 0

    async def test_explicit_now(self, manager, session_factory, clock):
        await _pending_in_new_org(manager, session_factory, "Alpha")
        assert await manager.expire_overdue(clock.now + timedelta(days=6)) == 0
        assert await manager.expire_overdue(clock.now + timedelta(days=7, minutes=1)) == 1

    async def test_naive_now_is_rejected(self, manager, session_factory, clock):
        org, transfer = await _pending_in_new_org(manager, session_factory, "Alpha")
        naive = (clock.now + timedelta(days=8)).replace(tzinfo=None)

        with pytest.raises(InvalidRequest) as exc_info:
            await manager.expire_overdue(naive)
        assert exc_info.value.status_code == 422
        assert (await manager.get_transfer(transfer.id, org.owner)).status == TransferStatus.PENDING.value

    async def test_non_utc_now_is_normalised(self, manager, session_factory, clock):
        org, transfer = await _pending_in_new_org(manager, session_factory, "Alpha")
        new_york = timezone(timedelta(hours=-5))

        assert await manager.expire_overdue((clock.now + timedelta(days=6)).astimezone(new_york)) == 0
        assert await manager.expire_overdue((clock.now + timedelta(days=8)).astimezone(new_york)) == 1
        assert (await manager.get_transfer(transfer.id, org.owner)).status == TransferStatus.EXPIRED.value

    async def test_expiry_audit_entry(self, manager, session_factory, clock):
        org, transfer = await _pending_in_new_org(manager, session_factory, "Alpha")
        clock.advance(days=9)
        await manager.expire_overdue()

        trail = await manager.audit_trail(transfer.id, org.owner)
        expired = trail[-1]
        assert expired.event_type == "expired"
        assert expired.actor_id == "system"
        assert expired.actor_role == "system"
        assert expired.reason == "Auto-expired after 7 days"
        assert "expires_at" in expired.details

    async def test_one_failing_row_does_not_stop_the_sweep(self, manager, session_factory, clock, monkeypatch):
        org_a, bad = await _pending_in_new_org(manager, session_factory, "Alpha")
        org_b, good = await _pending_in_new_org(manager, session_factory, "Bravo")
        clock.advance(days=8)

        original = manager._expire_one

        async def flaky(session, *, transfer_id, now):
            if transfer_id == bad.id:
                raise RuntimeError("row is wedged")
            return await original(session, transfer_id=transfer_id, now=now)

        monkeypatch.setattr(manager, "_expire_one", flaky)

        assert await manager.expire_overdue() == 1
        assert (await manager.get_transfer(bad.id, org_a.owner)).status == TransferStatus.PENDING.value
        assert (await manager.get_transfer(good.id, org_b.owner)).status == TransferStatus.EXPIRED.value

        monkeypatch.undo()
        assert await manager.expire_overdue() == 1

    async def test_sweep_skips_rows_answered_meanwhile(self, manager, session_factory, clock):
        org, transfer = await _pending_in_new_org(manager, session_factory, "Alpha")
        clock.advance(days=8)
        with pytest.raises(Conflict):
            await manager.accept(transfer.id, org.admin)

        assert await manager.expire_overdue() == 0
        trail = await manager.audit_trail(transfer.id, org.owner)
        assert [e.event_type for e in trail] == ["initiated", "expired"]


class TestExpirationTask:

    async def test_task_uses_worker_manager(self, manager, session_factory):
        # Transfers are created on the fixed test clock, far in the past.
        await _pending_in_new_org(manager, session_factory, "Alpha")
        await _pending_in_new_org(manager, session_factory, "Bravo")

        count = await expire_overdue_transfers({"transfer_manager": manager})
        assert count == 2
        assert await expire_overdue_transfers({"transfer_manager": manager}) == 0

    def test_cron_schedule(self):
        job = WorkerSettings.cron_jobs[0]
        assert job.coroutine is expire_overdue_transfers
        assert job.hour == {3}
        assert job.minute == {0}
        assert expire_overdue_transfers in WorkerSettings.functions
