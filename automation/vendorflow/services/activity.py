"""
Vendorflow — Activity Logger.

Append-only audit of every status change and task outcome per vendor.
Entries written while processing a task carry ``metadata.taskId``; the
dispatcher uses that to detect work that was applied but never marked done.
"""

import logging
from typing import Optional

from vendorflow.database import utcnow
from vendorflow.schemas import Activity, ActivityType
from vendorflow.services.store import BatchOp, DocumentStore, WriteBatch

logger = logging.getLogger("vendorflow.activity")

COLLECTION = "vendor_activities"


class ActivityLogger:
    def __init__(self, store: DocumentStore):
        self._store = store

    @staticmethod
    def entry(
        vendor_id: str,
        activity_type,
        description: str = "",
        metadata: Optional[dict] = None,
        task_id: Optional[str] = None,
    ) -> dict:
        meta = dict(metadata or {})
        if task_id:
            meta["taskId"] = task_id
        return {
            "vendor_id": vendor_id,
            "type": ActivityType(activity_type).value,
            "description": description,
            "metadata": meta,
            "created_at": utcnow(),
        }

    async def log(
        self,
        vendor_id: str,
        activity_type,
        description: str = "",
        metadata: Optional[dict] = None,
        task_id: Optional[str] = None,
        batch: Optional[WriteBatch] = None,
    ) -> str:
        """Record an activity entry.

        With ``batch`` the entry joins the caller's atomic write; otherwise it
        is written immediately.
        """
        fields = self.entry(vendor_id, activity_type, description, metadata, task_id)
        if batch is not None:
            return batch.add(COLLECTION, fields)
        activity_id = await self._store.add(COLLECTION, fields)
        logger.debug("Activity %s for vendor %s: %s", fields["type"], vendor_id, description[:80])
        return activity_id

    async def list_for_vendor(self, vendor_id: str, limit: Optional[int] = None) -> list[Activity]:
        """Newest first."""
        docs = await self._store.query(
            COLLECTION,
            {"vendor_id": vendor_id},
            order_by=("-created_at",),
            limit=limit,
        )
        return [Activity.model_validate(d) for d in docs]

    async def for_task(self, vendor_id: str, task_id: str) -> list[Activity]:
        """Entries already written on behalf of ``task_id``."""
        entries = await self.list_for_vendor(vendor_id)
        return [a for a in entries if a.metadata.get("taskId") == task_id]

    def stage_clear(self, batch: WriteBatch, vendor_id: str) -> BatchOp:
        """Queue deletion of every entry for a vendor. Used only by vendor reset.

        Matches at commit time, so entries appended after staging go too.
        ``.affected`` on the returned op is the number removed.
        """
        return batch.delete_where(COLLECTION, {"vendor_id": vendor_id})
