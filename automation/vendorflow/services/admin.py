"""
Vendor Admin — operator actions on vendors and their queue.

Every action goes through the lifecycle / queue / activity services, so an
operator can never move a vendor in a way the state machine forbids. The one
deliberate exception is reset_vendor(), which puts a vendor back to
PENDING_REVIEW and wipes its activity history in a single batch.
"""

import logging
from typing import Optional

from pydantic import ValidationError as PydanticValidationError

from vendorflow.adapters import normalize_vendor_fields
from vendorflow.database import utcnow
from vendorflow.errors import ConflictError, ValidationError
from vendorflow.schemas import (
    DocumentType,
    SeedVendor,
    TaskType,
    VendorEvent,
    VendorStatus,
)
from vendorflow.services.activity import ActivityLogger
from vendorflow.services.lifecycle import VendorLifecycle
from vendorflow.services.queue import TaskQueue
from vendorflow.services.state_machine import Transition
from vendorflow.services.store import DocumentStore

logger = logging.getLogger("vendorflow.admin")

VENDORS = "vendors"
MESSAGES = "vendor_messages"


class VendorAdmin:
    def __init__(
        self,
        store: DocumentStore,
        queue: TaskQueue,
        activity: ActivityLogger,
        lifecycle: VendorLifecycle,
    ):
        self._store = store
        self._queue = queue
        self._activity = activity
        self._lifecycle = lifecycle

    # ── Lifecycle ──────────────────────────────────────────────────────

    async def apply_event(self, vendor_id: str, event, actor: str = "admin") -> Transition:
        return await self._lifecycle.apply_event(vendor_id, event, actor=actor)

    async def approve(self, vendor_id: str, actor: str = "admin") -> Transition:
        """PENDING_REVIEW → APPROVED; enqueues the outreach GENERATE task."""
        return await self.apply_event(vendor_id, VendorEvent.APPROVE, actor)

    async def reject(self, vendor_id: str, actor: str = "admin") -> Transition:
        """Move any non-terminal vendor to REJECTED and cancel its pending work."""
        t = await self.apply_event(vendor_id, VendorEvent.REJECT, actor)
        await self._queue.cancel_vendor_tasks(vendor_id, reason="vendor rejected")
        return t

    async def reset_vendor(self, vendor_id: str) -> dict:
        """Back to PENDING_REVIEW with a clean slate.

        Status, onboarding progress, the chat transcript and every activity
        entry are reset in one batch. Pending tasks are cancelled first.
        """
        vendor = await self._lifecycle.get_vendor(vendor_id)
        cancelled = await self._queue.cancel_vendor_tasks(vendor_id, reason="vendor reset")

        async with self._store.batch() as batch:
            batch.update(
                VENDORS,
                vendor_id,
                {
                    "status": VendorStatus.PENDING_REVIEW.value,
                    "status_updated_at": utcnow(),
                    "onboarding": None,
                },
            )
            cleared_op = self._activity.stage_clear(batch, vendor_id)
            batch.delete_where(MESSAGES, {"vendor_id": vendor_id})
        cleared = cleared_op.affected or 0

        logger.warning(
            "Vendor %s (%s) reset from %s: cleared %d activities, cancelled %d tasks",
            vendor_id, vendor.company_name, vendor.status, cleared, cancelled,
        )
        return {"vendorId": vendor_id, "previousStatus": vendor.status, "cleared": cleared, "cancelled": cancelled}

    # ── Seeding ────────────────────────────────────────────────────────

    async def seed_vendor(self, fields: dict) -> str:
        """Create a PENDING_REVIEW vendor from (possibly legacy-shaped) fields."""
        normalized = normalize_vendor_fields(fields)
        try:
            data = SeedVendor(**normalized)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid vendor: {e.errors()[0].get('msg', e)}") from e

        now = utcnow()
        doc = data.model_dump()
        doc.update(status=VendorStatus.PENDING_REVIEW.value, status_updated_at=now, created_at=now)
        vendor_id = await self._store.add(VENDORS, doc)
        logger.info("Seeded vendor %s (%s)", data.company_name, vendor_id)
        return vendor_id

    # ── Work requests ──────────────────────────────────────────────────

    async def request_document_verification(self, vendor_id: str, doc_type) -> str:
        try:
            doc = DocumentType(str(getattr(doc_type, "value", doc_type)).upper())
        except ValueError:
            raise ValidationError(f"Unsupported document type: {doc_type!r}") from None
        await self._lifecycle.get_vendor(vendor_id)
        return await self._queue.enqueue(vendor_id, TaskType.VERIFY_DOCUMENT, {"docType": doc.value})

    async def submit_vendor_message(self, vendor_id: str, message: str) -> str:
        """Queue one onboarding chat turn. Turns are processed one at a time."""
        if not message or not message.strip():
            raise ValidationError("Message text is required")
        await self._lifecycle.get_vendor(vendor_id)
        task_id = await self._queue.enqueue_unique(vendor_id, TaskType.CHAT_TURN, {"message": message.strip()})
        if task_id is None:
            raise ConflictError(f"Vendor {vendor_id} already has a chat message being processed")
        return task_id

    async def cancel_tasks(self, vendor_id: str, reason: str = "cancelled by operator") -> int:
        return await self._queue.cancel_vendor_tasks(vendor_id, reason=reason)

    # ── Inspection ─────────────────────────────────────────────────────

    async def describe(self, vendor_id: str, activity_limit: Optional[int] = 20) -> dict:
        """Vendor record with its recent activity and tasks, in wire layout."""
        vendor = await self._lifecycle.get_vendor(vendor_id)
        activities = await self._activity.list_for_vendor(vendor_id, limit=activity_limit)
        tasks = await self._store.query(
            "outreach_queue", {"vendor_id": vendor_id}, order_by=("-created_at",)
        )
        return {
            "vendor": vendor.model_dump(by_alias=True, mode="json"),
            "activities": [a.model_dump(by_alias=True, mode="json") for a in activities],
            "tasks": [
                {"id": t["id"], "type": t["type"], "status": t["status"], "retryCount": t["retry_count"],
                 "scheduledAt": t["scheduled_at"].isoformat(), "error": t["error"]}
                for t in tasks
            ],
        }
