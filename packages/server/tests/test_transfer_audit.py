"""
Tests for the transfer audit trail and its hash chain.
"""

from __future__ import annotations

import uuid

import pytest

from app.core.errors import Forbidden
from app.models.transfer_audit import TransferAuditEntry
from app.services.transfer_audit import build_entry_hash, verify_trail

from conftest import START

REASON = "Moving abroad, handing over the tree"


class TestAuditTrail:

    async def test_one_entry_per_event(self, manager, org, clock):
        transfer = await manager.initiate(
            org.org_id, org.owner, org.admin, REASON,
            ip_address="203.0.113.7", user_agent="pytest",
        )
        clock.advance(hours=2)
        await manager.accept(transfer.id, org.admin, ip_address="198.51.100.2")

        trail = await manager.audit_trail(transfer.id, org.owner)
        assert [e.event_type for e in trail] == ["initiated", "accepted"]

        initiated, accepted = trail
        assert initiated.actor_id == str(org.owner)
        assert initiated.actor_role == "owner"
        assert initiated.reason == REASON
        assert initiated.ip_address == "203.0.113.7"
        assert initiated.user_agent == "pytest"
        assert initiated.details["recipient_id"] == str(org.admin)

        assert accepted.actor_id == str(org.admin)
        assert accepted.actor_role == "admin"
        assert accepted.ip_address == "198.51.100.2"
        assert accepted.details == {
            "previous_owner_id": str(org.owner),
            "new_owner_id": str(org.admin),
        }

    async def test_reject_records_response_reason(self, manager, org):
        transfer = await manager.initiate(org.org_id, org.owner, org.editor, REASON)
        await manager.reject(transfer.id, org.editor, "I only edit")

        trail = await manager.audit_trail(transfer.id, org.editor)
        assert trail[-1].event_type == "rejected"
        assert trail[-1].actor_role == "editor"
        assert trail[-1].reason == "I only edit"

    async def test_failed_action_writes_nothing(self, manager, org):
        transfer = await manager.initiate(org.org_id, org.owner, org.admin, REASON)
        with pytest.raises(Forbidden):
            await manager.accept(transfer.id, org.editor)

        trail = await manager.audit_trail(transfer.id, org.owner)
        assert [e.event_type for e in trail] == ["initiated"]

    async def test_trail_visibility_follows_transfer(self, manager, org):
        transfer = await manager.initiate(org.org_id, org.owner, org.admin, REASON)
        with pytest.raises(Forbidden):
            await manager.audit_trail(transfer.id, org.viewer)


class TestHashChain:

    async def test_chain_links_entries(self, manager, org):
        transfer = await manager.initiate(org.org_id, org.owner, org.admin, REASON)
        await manager.cancel(transfer.id, org.owner, "Later")

        first, second = await manager.audit_trail(transfer.id, org.owner)
        assert first.prev_hash == ""
        assert second.prev_hash == first.entry_hash
        assert first.entry_hash == build_entry_hash(first, "")
        assert len(first.entry_hash) == 64
        assert verify_trail([first, second])

    async def test_chains_are_per_transfer(self, manager, org):
        one = await manager.initiate(org.org_id, org.owner, org.admin, REASON)
        await manager.cancel(one.id, org.owner)
        two = await manager.initiate(org.org_id, org.owner, org.admin, REASON)

        trail_two = await manager.audit_trail(two.id, org.owner)
        assert trail_two[0].prev_hash == ""

    async def test_tampering_is_detected(self, manager, org):
        transfer = await manager.initiate(org.org_id, org.owner, org.admin, REASON)
        await manager.reject(transfer.id, org.admin, "Not now")
        trail = list(await manager.audit_trail(transfer.id, org.owner))

        trail[1].reason = "Sure, why not"
        assert not verify_trail(trail)

    async def test_dropped_entry_is_detected(self, manager, org):
        transfer = await manager.initiate(org.org_id, org.owner, org.admin, REASON)
        await manager.accept(transfer.id, org.admin)
        trail = list(await manager.audit_trail(transfer.id, org.owner))

        assert not verify_trail(trail[1:])

    def test_hash_ignores_timezone_representation(self):
        transfer_id = uuid.uuid4()
        aware = TransferAuditEntry(
            transfer_id=transfer_id, event_type="initiated", actor_id="u", actor_role="owner",
            created_at=START, entry_hash="x",
        )
        naive = TransferAuditEntry(
            transfer_id=transfer_id, event_type="initiated", actor_id="u", actor_role="owner",
            created_at=START.replace(tzinfo=None), entry_hash="x",
        )
        assert build_entry_hash(aware, "") == build_entry_hash(naive, "")

    def test_empty_trail_verifies(self):
        assert verify_trail([])
