"""
Vendor Lifecycle — applies state-machine transitions to stored vendors.

Every status change is staged into a write batch as:
  1. a compare-and-set update on (status, statusUpdatedAt),
  2. exactly one STATUS_CHANGE activity,
  3. the transition's follow-up tasks, skipping any the vendor already has open.
A concurrent writer that moved the vendor first makes the batch fail with
ConflictError instead of regressing the vendor to a stale status.
"""

import logging
from datetime import datetime
from typing import Iterable, Optional

from vendorflow.database import utcnow
from vendorflow.errors import InvalidTransitionError, VendorNotFoundError
from vendorflow.schemas import ActivityType, Vendor
from vendorflow.services.activity import ActivityLogger
from vendorflow.services.queue import TaskQueue
from vendorflow.services.state_machine import Transition, transition
from vendorflow.services.store import DocumentStore, WriteBatch

logger = logging.getLogger("vendorflow.lifecycle")

VENDORS = "vendors"


class VendorLifecycle:
    def __init__(self, store: DocumentStore, queue: TaskQueue, activity: ActivityLogger):
        self._store = store
        self._queue = queue
        self._activity = activity

    async def get_vendor(self, vendor_id: str) -> Vendor:
        doc = await self._store.get(VENDORS, vendor_id)
        if doc is None:
            raise VendorNotFoundError(vendor_id)
        return Vendor.model_validate(doc)

    async def stage_follow_up(
        self,
        batch: WriteBatch,
        vendor_id: str,
        task_type,
        metadata: Optional[dict] = None,
        scheduled_at: Optional[datetime] = None,
        exclude_task_ids: Iterable[str] = (),
    ) -> Optional[str]:
        """Stage a task unless one of the same type is already open for the vendor."""
        exclude = set(exclude_task_ids)
        open_tasks = [t for t in await self._queue.find_open(vendor_id, task_type) if t.id not in exclude]
        if open_tasks:
            logger.info(
                "Follow-up %s for vendor %s suppressed — task %s still open",
                task_type, vendor_id, open_tasks[0].id,
            )
            return None
        return self._queue.stage(batch, vendor_id, task_type, metadata, scheduled_at)

    async def stage_event(
        self,
        batch: WriteBatch,
        vendor: Vendor,
        event,
        actor: str = "system",
        task_id: Optional[str] = None,
        now: Optional[datetime] = None,
        exclude_task_ids: Iterable[str] = (),
    ) -> Transition:
        """Validate ``event`` and stage its writes. Raises InvalidTransitionError."""
        t = transition(vendor.status, event)
        now = now or utcnow()

        batch.update(
            VENDORS,
            vendor.id,
            {"status": t.next_status.value, "status_updated_at": now},
            expect={"status": vendor.status, "status_updated_at": vendor.status_updated_at},
        )
        await self._activity.log(
            vendor.id,
            ActivityType.STATUS_CHANGE,
            f"Status changed {t.previous_status.value} → {t.next_status.value} ({t.event.value} by {actor})",
            metadata={
                "from": t.previous_status.value,
                "to": t.next_status.value,
                "event": t.event.value,
                "actor": actor,
            },
            task_id=task_id,
            batch=batch,
        )
        for follow_up in t.follow_ups:
            await self.stage_follow_up(
                batch,
                vendor.id,
                follow_up.type,
                dict(follow_up.metadata, trigger=t.event.value),
                exclude_task_ids=exclude_task_ids,
            )

        logger.info(
            "Vendor %s (%s): %s → %s on %s",
            vendor.id, vendor.company_name, t.previous_status.value, t.next_status.value, t.event.value,
        )
        return t

    async def apply_event(self, vendor_id: str, event, actor: str = "admin") -> Transition:
        """Load, transition and persist in one batch.

        An illegal event is recorded as a NOTE for audit and then re-raised.
        """
        vendor = await self.get_vendor(vendor_id)
        try:
            async with self._store.batch() as batch:
                t = await self.stage_event(batch, vendor, event, actor=actor)
        except InvalidTransitionError as e:
            await self._activity.log(
                vendor.id,
                ActivityType.NOTE,
                f"Rejected lifecycle event: {e}",
                metadata={"event": str(getattr(event, "value", event)), "status": vendor.status, "actor": actor},
            )
            logger.warning("Vendor %s: %s", vendor_id, e)
            raise
        return t
