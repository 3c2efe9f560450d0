"""
Vendorflow — Durable outreach task queue.

A thin mailbox over the document store. It owns task status transitions
(enqueue, claim, complete, fail, retry, cancel) but no retry policy; the
dispatcher decides when a failure is retried and for how long to wait.

Terminal marks are idempotent: marking a COMPLETED / FAILED / CANCELLED task
again is a logged no-op, so double delivery cannot regress a task.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from vendorflow.database import utcnow
from vendorflow.errors import NotFoundError, TaskNotFoundError, ValidationError
from vendorflow.schemas import (
    DUE_STATUSES,
    OPEN_STATUSES,
    TERMINAL_STATUSES,
    Task,
    TaskStatus,
    TaskType,
)
from vendorflow.services.store import DocumentStore, WriteBatch

logger = logging.getLogger("vendorflow.queue")

COLLECTION = "outreach_queue"


def _task_type(value) -> str:
    try:
        return TaskType(value).value
    except ValueError:
        raise ValidationError(f"Unknown task type: {value!r}") from None


class TaskQueue:
    """Enqueue / fetch-due / claim / mark operations on ``outreach_queue``."""

    def __init__(self, store: DocumentStore):
        self._store = store

    # ── Enqueue ────────────────────────────────────────────────────────

    def task_fields(
        self,
        vendor_id: str,
        task_type,
        metadata: Optional[dict] = None,
        scheduled_at: Optional[datetime] = None,
    ) -> dict:
        """Validated fields for a new PENDING task (shared by enqueue and batches)."""
        if not vendor_id or not str(vendor_id).strip():
            raise ValidationError("vendor_id is required to enqueue a task")
        now = utcnow()
        return {
            "vendor_id": str(vendor_id),
            "type": _task_type(task_type),
            "status": TaskStatus.PENDING.value,
            "scheduled_at": scheduled_at or now,
            "created_at": now,
            "retry_count": 0,
            "error": None,
            "metadata": dict(metadata or {}),
        }

    async def enqueue(
        self,
        vendor_id: str,
        task_type,
        metadata: Optional[dict] = None,
        scheduled_at: Optional[datetime] = None,
    ) -> str:
        """Create a PENDING task. No duplicate detection — see enqueue_unique()."""
        fields = self.task_fields(vendor_id, task_type, metadata, scheduled_at)
        task_id = await self._store.add(COLLECTION, fields)
        logger.info(
            "Enqueued %s task %s for vendor %s (due %s)",
            fields["type"], task_id, vendor_id, fields["scheduled_at"].isoformat(),
        )
        return task_id

    def stage(
        self,
        batch: WriteBatch,
        vendor_id: str,
        task_type,
        metadata: Optional[dict] = None,
        scheduled_at: Optional[datetime] = None,
    ) -> str:
        """Add a new task to a write batch instead of writing it immediately."""
        return batch.add(COLLECTION, self.task_fields(vendor_id, task_type, metadata, scheduled_at))

    async def find_open(self, vendor_id: str, task_type) -> list[Task]:
        """Non-terminal tasks of one type for one vendor."""
        docs = await self._store.query(
            COLLECTION,
            {"vendor_id": vendor_id, "type": _task_type(task_type), "status": ("in", OPEN_STATUSES)},
        )
        return [Task.model_validate(d) for d in docs]

    async def enqueue_unique(
        self,
        vendor_id: str,
        task_type,
        metadata: Optional[dict] = None,
        scheduled_at: Optional[datetime] = None,
    ) -> Optional[str]:
        """Enqueue unless the vendor already has an open task of this type."""
        existing = await self.find_open(vendor_id, task_type)
        if existing:
            logger.info(
                "Skipping %s for vendor %s — task %s already open",
                _task_type(task_type), vendor_id, existing[0].id,
            )
            return None
        return await self.enqueue(vendor_id, task_type, metadata, scheduled_at)

    # ── Fetch / Claim ──────────────────────────────────────────────────

    async def get(self, task_id: str) -> Task:
        doc = await self._store.get(COLLECTION, task_id)
        if doc is None:
            raise TaskNotFoundError(task_id)
        return Task.model_validate(doc)

    async def fetch_due(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> list[Task]:
        """PENDING / RETRY tasks due at ``now``, oldest schedule first."""
        now = now or utcnow()
        docs = await self._store.query(
            COLLECTION,
            {"status": ("in", DUE_STATUSES), "scheduled_at": ("<=", now)},
            order_by=("scheduled_at", "created_at"),
            limit=limit,
        )
        return [Task.model_validate(d) for d in docs]

    async def claim(self, task_id: str, now: Optional[datetime] = None) -> bool:
        """Atomically move a due task to CLAIMED. Exactly one racing caller wins."""
        won = await self._store.update(
            COLLECTION,
            task_id,
            {"status": TaskStatus.CLAIMED.value, "claimed_at": now or utcnow()},
            expect={"status": ("in", DUE_STATUSES)},
        )
        if not won:
            logger.debug("Task %s already claimed or finished", task_id)
        return won

    # ── Outcomes ───────────────────────────────────────────────────────

    def completion_fields(self, now: Optional[datetime] = None) -> dict:
        return {
            "status": TaskStatus.COMPLETED.value,
            "completed_at": now or utcnow(),
            "error": None,
        }

    def failure_fields(self, error: str, now: Optional[datetime] = None) -> dict:
        return {
            "status": TaskStatus.FAILED.value,
            "error": str(error)[:500],
            "completed_at": now or utcnow(),
        }

    @staticmethod
    def _owner_guard(claimed_at: Optional[datetime]) -> dict:
        if claimed_at is None:
            return {"status": ("in", OPEN_STATUSES)}
        return {"status": TaskStatus.CLAIMED.value, "claimed_at": claimed_at}

    def stage_completed(
        self,
        batch: WriteBatch,
        task_id: str,
        now: Optional[datetime] = None,
        claimed_at: Optional[datetime] = None,
    ) -> None:
        """Completion as the last write of an atomic batch.

        The ``expect`` guard aborts the batch if another delivery already
        finished the task, so effects are never applied twice. Passing the
        ``claimed_at`` of our own claim also rejects a claim that was
        recovered and re-taken by another worker.
        """
        batch.update(COLLECTION, task_id, self.completion_fields(now), expect=self._owner_guard(claimed_at))

    def stage_failed(
        self,
        batch: WriteBatch,
        task_id: str,
        error: str,
        now: Optional[datetime] = None,
        claimed_at: Optional[datetime] = None,
    ) -> None:
        batch.update(COLLECTION, task_id, self.failure_fields(error, now), expect=self._owner_guard(claimed_at))

    async def _finish(self, task_id: str, fields: dict, expect: Optional[dict] = None) -> bool:
        guard = {"status": ("in", OPEN_STATUSES)}
        guard.update(expect or {})
        try:
            changed = await self._store.update(COLLECTION, task_id, fields, expect=guard)
        except NotFoundError:
            raise TaskNotFoundError(task_id) from None
        if not changed:
            logger.info("Task %s already terminal — %s ignored", task_id, fields["status"])
        return changed

    async def mark_completed(self, task_id: str, now: Optional[datetime] = None) -> bool:
        return await self._finish(task_id, self.completion_fields(now))

    async def mark_failed(self, task_id: str, error: str, now: Optional[datetime] = None) -> bool:
        changed = await self._finish(task_id, self.failure_fields(error, now))
        if changed:
            logger.warning("Task %s FAILED: %s", task_id, str(error)[:200])
        return changed

    async def mark_retry(
        self,
        task_id: str,
        error: str,
        next_scheduled_at: datetime,
        claimed_at: Optional[datetime] = None,
    ) -> bool:
        """Schedule another attempt and bump retryCount."""
        task = await self.get(task_id)
        if task.status in TERMINAL_STATUSES:
            logger.info("Task %s already terminal — RETRY ignored", task_id)
            return False
        expect = {"retry_count": task.retry_count}
        if claimed_at is not None:
            expect["claimed_at"] = claimed_at
        changed = await self._finish(
            task_id,
            {
                "status": TaskStatus.RETRY.value,
                "error": str(error)[:500],
                "retry_count": task.retry_count + 1,
                "scheduled_at": next_scheduled_at,
            },
            expect=expect,
        )
        if changed:
            logger.info(
                "Task %s → RETRY #%d at %s (%s)",
                task_id, task.retry_count + 1, next_scheduled_at.isoformat(), str(error)[:120],
            )
        return changed

    # ── Maintenance ────────────────────────────────────────────────────

    async def cancel_vendor_tasks(self, vendor_id: str, reason: str = "cancelled") -> int:
        """Cancel every PENDING / RETRY task of a vendor in one batch."""
        docs = await self._store.query(
            COLLECTION, {"vendor_id": vendor_id, "status": ("in", DUE_STATUSES)}
        )
        if not docs:
            return 0
        now = utcnow()
        async with self._store.batch() as batch:
            for doc in docs:
                batch.update(
                    COLLECTION,
                    doc["id"],
                    {"status": TaskStatus.CANCELLED.value, "error": reason, "completed_at": now},
                    expect={"status": ("in", DUE_STATUSES)},
                )
        logger.info("Cancelled %d open tasks for vendor %s", len(docs), vendor_id)
        return len(docs)

    async def purge_vendor_tasks(self, vendor_id: str) -> int:
        """Delete a vendor's terminal tasks. Open tasks are left alone."""
        docs = await self._store.query(
            COLLECTION, {"vendor_id": vendor_id, "status": ("in", TERMINAL_STATUSES)}
        )
        return await self._store.batch_delete(COLLECTION, [d["id"] for d in docs])

    async def recover_stale_claims(self, older_than: timedelta, now: Optional[datetime] = None) -> int:
        """Return tasks stuck in CLAIMED (worker died mid-task) to RETRY."""
        now = now or utcnow()
        cutoff = now - older_than
        docs = await self._store.query(
            COLLECTION,
            {"status": TaskStatus.CLAIMED.value, "claimed_at": ("<", cutoff)},
        )
        recovered = 0
        for doc in docs:
            changed = await self._store.update(
                COLLECTION,
                doc["id"],
                {
                    "status": TaskStatus.RETRY.value,
                    "scheduled_at": now,
                    "error": f"[AUTO-RECOVERED] claim abandoned at {doc['claimed_at'].isoformat()}",
                },
                expect={"status": TaskStatus.CLAIMED.value, "claimed_at": doc["claimed_at"]},
            )
            if changed:
                recovered += 1
                logger.warning("Recovered stale claim on task %s (vendor %s)", doc["id"], doc["vendor_id"])
        return recovered

    async def stats(self) -> dict:
        """Task counts per status, for operator tooling."""
        return {
            status.value: await self._store.count(COLLECTION, {"status": status.value})
            for status in TaskStatus
        }
