"""
Tests for operator actions — seeding, approve / reject, reset, work requests.
"""

import asyncio
from unittest.mock import patch

import pytest

from vendorflow.errors import (
    ConflictError,
    InvalidTransitionError,
    ValidationError,
    VendorNotFoundError,
)
from vendorflow.schemas import ActivityType, TaskStatus, TaskType
from vendorflow.services.state_machine import Transition


# ═══════════════════════════════════════════════════════════
# SEEDING
# ═══════════════════════════════════════════════════════════

class TestSeedVendor:
    async def test_seed_sample(self, admin, lifecycle, vendor_id):
        vendor = await lifecycle.get_vendor(vendor_id)
        assert vendor.status == "PENDING_REVIEW"
        assert vendor.company_name == "Acme HVAC Services"
        assert vendor.fit_score == 85
        assert vendor.status_updated_at is not None

    async def test_seed_legacy_shape(self, admin, lifecycle):
        vid = await admin.seed_vendor({
            "businessName": "  Bolt Electric  ",
            "aiScore": "72.6",
            "city": "Dallas",
            "state": "TX",
            "capabilities": ["Electrical", "Lighting"],
            "contactEmail": "ops@boltelectric.com",
        })
        vendor = await lifecycle.get_vendor(vid)
        assert vendor.company_name == "Bolt Electric"
        assert vendor.fit_score == 73
        assert vendor.location == "Dallas, TX"
        assert vendor.specialty == "Electrical, Lighting"
        assert vendor.email == "ops@boltelectric.com"

    async def test_invalid_email_rejected(self, admin):
        with pytest.raises(ValidationError):
            await admin.seed_vendor({"companyName": "Acme", "email": "not-an-email"})

    async def test_name_required(self, admin):
        with pytest.raises(ValidationError):
            await admin.seed_vendor({"email": "a@b.com"})

    async def test_fit_score_range(self, admin):
        with pytest.raises(ValidationError):
            await admin.seed_vendor({"companyName": "Acme", "fitScore": 140})


# ═══════════════════════════════════════════════════════════
# LIFECYCLE ACTIONS
# ═══════════════════════════════════════════════════════════

class TestLifecycleActions:
    async def test_approve(self, admin, queue, activity, lifecycle, vendor_id):
        t = await admin.approve(vendor_id, actor="ops@example.com")
        assert isinstance(t, Transition)
        assert (await lifecycle.get_vendor(vendor_id)).status == "APPROVED"

        tasks = await queue.find_open(vendor_id, TaskType.GENERATE)
        assert len(tasks) == 1
        assert tasks[0].metadata == {"purpose": "outreach", "trigger": "APPROVE"}

        entries = await activity.list_for_vendor(vendor_id)
        assert [a.type for a in entries] == ["STATUS_CHANGE"]
        assert entries[0].metadata["actor"] == "ops@example.com"
        assert entries[0].metadata["from"] == "PENDING_REVIEW"
        assert entries[0].metadata["to"] == "APPROVED"

    async def test_approve_twice_is_illegal(self, admin, queue, vendor_id):
        await admin.approve(vendor_id)
        with pytest.raises(InvalidTransitionError):
            await admin.approve(vendor_id)
        assert len(await queue.find_open(vendor_id, TaskType.GENERATE)) == 1

    async def test_concurrent_approvals_apply_once(self, admin, queue, activity, vendor_id):
        results = await asyncio.gather(
            admin.approve(vendor_id), admin.approve(vendor_id), return_exceptions=True
        )
        assert sum(isinstance(r, Transition) for r in results) == 1
        assert all(isinstance(r, (Transition, ConflictError, InvalidTransitionError)) for r in results)
        assert len(await queue.find_open(vendor_id, TaskType.GENERATE)) == 1
        changes = [a for a in await activity.list_for_vendor(vendor_id) if a.type == "STATUS_CHANGE"]
        assert len(changes) == 1

    async def test_reject_cancels_pending_work(self, admin, queue, lifecycle, vendor_id):
        await admin.approve(vendor_id)
        task = (await queue.find_open(vendor_id, TaskType.GENERATE))[0]

        await admin.reject(vendor_id)
        assert (await lifecycle.get_vendor(vendor_id)).status == "REJECTED"
        cancelled = await queue.get(task.id)
        assert cancelled.status == TaskStatus.CANCELLED.value
        assert cancelled.error == "vendor rejected"

        with pytest.raises(InvalidTransitionError):
            await admin.reject(vendor_id)

    async def test_illegal_event_is_noted_and_raised(self, admin, activity, lifecycle, vendor_id):
        with pytest.raises(InvalidTransitionError):
            await admin.apply_event(vendor_id, "CONTRACT_SIGNED")

        assert (await lifecycle.get_vendor(vendor_id)).status == "PENDING_REVIEW"
        entries = await activity.list_for_vendor(vendor_id)
        assert len(entries) == 1
        assert entries[0].type == "NOTE"
        assert entries[0].metadata["event"] == "CONTRACT_SIGNED"
        assert entries[0].metadata["status"] == "PENDING_REVIEW"

    async def test_unknown_event(self, admin, vendor_id):
        with pytest.raises(ValidationError):
            await admin.apply_event(vendor_id, "TELEPORT")

    async def test_unknown_vendor(self, admin):
        with pytest.raises(VendorNotFoundError):
            await admin.approve("ghost")

    async def test_full_lifecycle_to_contracted(self, admin, lifecycle, vendor_id):
        for event in ("APPROVE", "OUTREACH_SENT", "VENDOR_REPLIED", "CONTRACT_SIGNED"):
            await admin.apply_event(vendor_id, event)
        assert (await lifecycle.get_vendor(vendor_id)).status == "CONTRACTED"
        with pytest.raises(InvalidTransitionError):
            await admin.reject(vendor_id)


# ═══════════════════════════════════════════════════════════
# RESET
# ═══════════════════════════════════════════════════════════

class TestReset:
    async def test_reset_clears_everything(self, admin, store, queue, activity, lifecycle, dispatcher, vendor_id):
        await admin.approve(vendor_id)
        await dispatcher.run_cycle()  # GENERATE → SEND queued
        await store.update("vendors", vendor_id, {"onboarding": {"step": "INSURANCE_CHECK"}})
        await store.add("vendor_messages", {"vendor_id": vendor_id, "sender": "user", "text": "hello"})

        result = await admin.reset_vendor(vendor_id)
        assert result == {"vendorId": vendor_id, "previousStatus": "APPROVED", "cleared": 2, "cancelled": 1}

        vendor = await lifecycle.get_vendor(vendor_id)
        assert vendor.status == "PENDING_REVIEW"
        assert vendor.onboarding is None
        assert await activity.list_for_vendor(vendor_id) == []
        assert await store.count("vendor_messages", {"vendor_id": vendor_id}) == 0
        assert await queue.find_open(vendor_id, TaskType.SEND) == []

    async def test_reset_removes_entries_written_while_resetting(self, admin, store, activity, vendor_id):
        await admin.approve(vendor_id)
        real_commit = store.commit

        async def commit_after_late_write(batch):
            if any(op.kind == "delete_where" for op in batch.ops):
                await activity.log(vendor_id, ActivityType.NOTE, "written mid-reset")
            await real_commit(batch)

        with patch.object(store, "commit", new=commit_after_late_write):
            result = await admin.reset_vendor(vendor_id)

        assert result["cleared"] == 2
        assert await activity.list_for_vendor(vendor_id) == []

    async def test_reset_from_terminal_allows_new_approval(self, admin, lifecycle, vendor_id):
        await admin.reject(vendor_id)
        await admin.reset_vendor(vendor_id)
        await admin.approve(vendor_id)
        assert (await lifecycle.get_vendor(vendor_id)).status == "APPROVED"

    async def test_reset_unknown_vendor(self, admin):
        with pytest.raises(VendorNotFoundError):
            await admin.reset_vendor("ghost")


# ═══════════════════════════════════════════════════════════
# WORK REQUESTS
# ═══════════════════════════════════════════════════════════

class TestWorkRequests:
    async def test_document_verification(self, admin, queue, vendor_id):
        task_id = await admin.request_document_verification(vendor_id, "w9")
        task = await queue.get(task_id)
        assert task.type == "VERIFY_DOCUMENT"
        assert task.metadata == {"docType": "W9"}

    async def test_document_type_validated(self, admin, vendor_id):
        with pytest.raises(ValidationError):
            await admin.request_document_verification(vendor_id, "PASSPORT")

    async def test_document_for_unknown_vendor(self, admin):
        with pytest.raises(VendorNotFoundError):
            await admin.request_document_verification("ghost", "COI")

    async def test_vendor_message(self, admin, queue, vendor_id):
        task_id = await admin.submit_vendor_message(vendor_id, "  Yes, we are an LLC  ")
        task = await queue.get(task_id)
        assert task.type == "CHAT_TURN"
        assert task.metadata == {"message": "Yes, we are an LLC"}

    async def test_one_chat_turn_at_a_time(self, admin, vendor_id):
        await admin.submit_vendor_message(vendor_id, "first")
        with pytest.raises(ConflictError):
            await admin.submit_vendor_message(vendor_id, "second")

    async def test_empty_message(self, admin, vendor_id):
        with pytest.raises(ValidationError):
            await admin.submit_vendor_message(vendor_id, "   ")

    async def test_cancel_tasks(self, admin, queue, vendor_id):
        await admin.request_document_verification(vendor_id, "COI")
        await admin.request_document_verification(vendor_id, "W9")
        assert await admin.cancel_tasks(vendor_id) == 2
        assert await queue.find_open(vendor_id, TaskType.VERIFY_DOCUMENT) == []


class TestDescribe:
    async def test_describe_uses_wire_layout(self, admin, vendor_id):
        await admin.approve(vendor_id)
        info = await admin.describe(vendor_id)

        assert info["vendor"]["companyName"] == "Acme HVAC Services"
        assert info["vendor"]["status"] == "APPROVED"
        assert info["vendor"]["fitScore"] == 85
        assert info["activities"][0]["type"] == "STATUS_CHANGE"
        assert "vendorId" in info["activities"][0]
        assert [t["type"] for t in info["tasks"]] == ["GENERATE"]
        assert info["tasks"][0]["status"] == "PENDING"
