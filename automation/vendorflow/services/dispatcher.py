"""
Task Dispatcher — Autonomous Outreach Task Processing Engine.

Drains the outreach queue one claimed task at a time:

  fetch due → claim → load vendor → [replay check] → handler (with timeout)
            → Success:          chat turn + event + activities + follow-ups + COMPLETED in one batch
            → RetryableFailure: RETRY with exponential backoff, FAILED when exhausted
            → PermanentFailure: FAILED immediately

Every FAILED task leaves a NOTE activity on its vendor. Handler errors, and
effects that cannot be applied, are turned into outcomes and never escape a
cycle; only StoreUnavailableError does, so the worker loop can back off when
the database is gone.

Supports MULTI-AGENT mode: DispatcherPool runs N workers against the same
queue. Claims are conditional updates, so a task is processed by one worker.
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Optional

from vendorflow.database import utcnow
from vendorflow.errors import (
    ConflictError,
    InvalidTransitionError,
    StoreUnavailableError,
    VendorflowError,
    VendorNotFoundError,
)
from vendorflow.handlers.base import (
    Effects,
    HandlerRegistry,
    Outcome,
    PermanentFailure,
    RetryableFailure,
    Success,
    TaskHandler,
)
from vendorflow.schemas import ActivityType, Task, TaskStatus, Vendor
from vendorflow.services.activity import ActivityLogger
from vendorflow.services.capabilities import NotificationChannel
from vendorflow.services.lifecycle import VendorLifecycle
from vendorflow.services.onboarding_chat import stage_turn
from vendorflow.services.queue import TaskQueue
from vendorflow.services.store import DocumentStore

logger = logging.getLogger("vendorflow.dispatcher")

# ─── Configuration ─────────────────────────────────────────────────────
MAX_AGENTS = 8                       # Upper bound for DispatcherPool
MAX_BACKOFF_SEC = 600                # Cap on the store-outage backoff
AGENT_STAGGER_SEC = 2                # Delay between agent start-ups

# process() results, also the keys of run_cycle() stats
COMPLETED = "completed"
RETRIED = "retried"
FAILED = "failed"
SKIPPED = "skipped"


class RetryPolicy:
    """Bounded exponential backoff: ``now + base * 2^retryCount``."""

    def __init__(self, max_retries: int = 3, base_delay_seconds: float = 60, handler_timeout_seconds: float = 30):
        self.max_retries = max_retries
        self.base_delay_seconds = base_delay_seconds
        self.handler_timeout_seconds = handler_timeout_seconds

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_retries=settings.max_retries,
            base_delay_seconds=settings.retry_base_seconds,
            handler_timeout_seconds=settings.handler_timeout_seconds,
        )

    def should_retry(self, retry_count: int) -> bool:
        return retry_count < self.max_retries

    def next_attempt(self, retry_count: int, now: datetime) -> datetime:
        return now + timedelta(seconds=self.base_delay_seconds * (2 ** retry_count))


class TaskDispatcher:
    """Runs handlers for claimed tasks and persists their outcomes."""

    def __init__(
        self,
        store: DocumentStore,
        queue: TaskQueue,
        activity: ActivityLogger,
        lifecycle: VendorLifecycle,
        handlers: HandlerRegistry,
        policy: Optional[RetryPolicy] = None,
        notifier: Optional[NotificationChannel] = None,
        batch_size: int = 10,
    ):
        self._store = store
        self._queue = queue
        self._activity = activity
        self._lifecycle = lifecycle
        self._handlers = handlers
        self._policy = policy or RetryPolicy()
        self._notifier = notifier
        self._batch_size = batch_size

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def run_cycle(self, now: Optional[datetime] = None) -> dict:
        """Process up to ``batch_size`` due tasks. Returns per-outcome counts.

        ``now`` pins the clock for due-ness and backoff (tests); without it each
        task reads the clock when it is processed.
        """
        due = await self._queue.fetch_due(now or utcnow(), limit=self._batch_size)
        stats = {"fetched": len(due), "claimed": 0, COMPLETED: 0, RETRIED: 0, FAILED: 0, SKIPPED: 0}

        for task in due:
            result = await self.process(task, now)
            stats[result] += 1
            if result != SKIPPED:
                stats["claimed"] += 1

        if stats["fetched"]:
            logger.info(
                "Cycle done: fetched=%d completed=%d retried=%d failed=%d skipped=%d",
                stats["fetched"], stats[COMPLETED], stats[RETRIED], stats[FAILED], stats[SKIPPED],
            )
        return stats

    async def process(self, task: Task, now: Optional[datetime] = None) -> str:
        """Claim and run a single task. Returns one of completed/retried/failed/skipped."""
        now = now or utcnow()
        # Claim stamp is always the real clock: stale recovery measures from it
        claimed_at = utcnow()
        if not await self._queue.claim(task.id, claimed_at):
            return SKIPPED

        try:
            vendor = await self._lifecycle.get_vendor(task.vendor_id)
        except VendorNotFoundError as e:
            return await self._fail(task, str(e), now, claimed_at)

        # Effects already on record for this task → it was applied, just finish it
        if await self._activity.for_task(task.vendor_id, task.id):
            logger.info("Task %s already applied — marking COMPLETED without re-running", task.id)
            await self._queue.mark_completed(task.id, now)
            return COMPLETED

        handler = self._handlers.get(task.type)
        if handler is None:
            outcome = PermanentFailure(f"No handler registered for task type {task.type}")
        else:
            outcome = await self._invoke(handler, vendor, task)

        if isinstance(outcome, Success):
            return await self._apply_success(vendor, task, outcome.effects, now, claimed_at)
        if isinstance(outcome, RetryableFailure):
            return await self._retry_or_fail(task, outcome.reason, now, claimed_at)
        if isinstance(outcome, PermanentFailure):
            return await self._fail(task, outcome.reason, now, claimed_at)
        return await self._fail(task, f"Handler returned {type(outcome).__name__}, not an outcome", now, claimed_at)

    # ── Handler invocation ─────────────────────────────────────────────

    async def _invoke(self, handler: TaskHandler, vendor: Vendor, task: Task) -> Outcome:
        timeout = self._policy.handler_timeout_seconds
        try:
            return await asyncio.wait_for(handler.handle(vendor, task), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Task %s (%s) timed out after %ss", task.id, task.type, timeout)
            return RetryableFailure(f"Handler timed out after {timeout}s")
        except VendorflowError as e:
            if e.retryable:
                return RetryableFailure(f"{type(e).__name__}: {e}")
            return PermanentFailure(f"{type(e).__name__}: {e}")
        except Exception as e:
            logger.error("Task %s (%s) handler crashed: %s", task.id, task.type, e, exc_info=True)
            return RetryableFailure(f"{type(e).__name__}: {e}")

    # ── Outcomes ───────────────────────────────────────────────────────

    async def _apply_success(
        self, vendor: Vendor, task: Task, effects: Effects, now: datetime, claimed_at: datetime
    ) -> str:
        try:
            async with self._store.batch() as batch:
                # Before the event: its status write moves statusUpdatedAt
                if effects.chat_turn is not None:
                    turn = effects.chat_turn
                    stage_turn(
                        batch, vendor.id, turn.message, turn.reply, turn.onboarding,
                        expect={"status": vendor.status, "status_updated_at": vendor.status_updated_at},
                    )

                if effects.event is not None:
                    try:
                        await self._lifecycle.stage_event(
                            batch, vendor, effects.event,
                            actor="dispatcher", task_id=task.id, now=now, exclude_task_ids=[task.id],
                        )
                    except InvalidTransitionError as e:
                        logger.warning("Task %s: %s — recorded as NOTE", task.id, e)
                        await self._activity.log(
                            vendor.id,
                            ActivityType.NOTE,
                            f"Ignored lifecycle event from {task.type} task: {e}",
                            metadata={"event": e.event, "status": e.status},
                            task_id=task.id,
                            batch=batch,
                        )

                for spec in effects.activities:
                    await self._activity.log(
                        vendor.id, spec.type, spec.description, spec.metadata, task_id=task.id, batch=batch
                    )

                for follow_up in effects.follow_ups:
                    await self._lifecycle.stage_follow_up(
                        batch,
                        vendor.id,
                        follow_up.type,
                        follow_up.metadata,
                        follow_up.scheduled_at,
                        exclude_task_ids=[task.id],
                    )

                self._queue.stage_completed(batch, task.id, now, claimed_at=claimed_at)
        except StoreUnavailableError:
            raise
        except ConflictError as e:
            if not await self._still_owned(task.id, claimed_at):
                logger.info("Task %s was finished or re-claimed elsewhere — outcome dropped", task.id)
                return SKIPPED
            return await self._retry_or_fail(task, f"Concurrent update: {e}", now, claimed_at)
        except VendorflowError as e:
            logger.error("Task %s (%s): effects rejected: %s", task.id, task.type, e)
            return await self._fail(task, f"Effects not applied: {type(e).__name__}: {e}", now, claimed_at)

        logger.info("✅ Task %s (%s) COMPLETED for %s", task.id, task.type, vendor.company_name)

        if effects.review_reason:
            await self._request_review(vendor, task, effects.review_reason)
        return COMPLETED

    async def _retry_or_fail(self, task: Task, reason: str, now: datetime, claimed_at: datetime) -> str:
        if self._policy.should_retry(task.retry_count):
            next_at = self._policy.next_attempt(task.retry_count, now)
            if await self._queue.mark_retry(task.id, reason, next_at, claimed_at=claimed_at):
                return RETRIED
            return SKIPPED
        return await self._fail(
            task, f"{reason} (gave up after {task.retry_count + 1} attempts)", now, claimed_at
        )

    async def _fail(self, task: Task, reason: str, now: datetime, claimed_at: datetime) -> str:
        try:
            async with self._store.batch() as batch:
                self._queue.stage_failed(batch, task.id, reason, now, claimed_at=claimed_at)
                await self._activity.log(
                    task.vendor_id,
                    ActivityType.NOTE,
                    f"{task.type} task failed: {reason}",
                    metadata={"taskType": task.type, "error": reason[:500], "retryCount": task.retry_count},
                    task_id=task.id,
                    batch=batch,
                )
        except ConflictError:
            logger.info("Task %s was finished or re-claimed elsewhere — FAILED dropped", task.id)
            return SKIPPED
        logger.warning("❌ Task %s (%s) FAILED: %s", task.id, task.type, reason[:200])
        return FAILED

    async def _still_owned(self, task_id: str, claimed_at: datetime) -> bool:
        current = await self._queue.get(task_id)
        return current.status == TaskStatus.CLAIMED.value and current.claimed_at == claimed_at

    async def _request_review(self, vendor: Vendor, task: Task, reason: str) -> None:
        if self._notifier is None:
            logger.info("Review requested for %s but no notifier configured: %s", vendor.company_name, reason)
            return
        try:
            await self._notifier.notify_operator(f"🔎 Review needed — {vendor.company_name}\n{reason}\nTask: {task.id}")
        except Exception as e:
            logger.warning("Operator notification failed for task %s: %s", task.id, e)


# ─── Worker Loop ───────────────────────────────────────────────────────

class DispatcherWorker:
    """
    Background worker that runs dispatcher cycles on a timer.

    Each cycle first returns abandoned claims to RETRY, then drains due tasks.
    A full batch loops again immediately; otherwise it sleeps for the poll
    interval. Store outages back off exponentially up to MAX_BACKOFF_SEC.
    """

    def __init__(
        self,
        dispatcher: TaskDispatcher,
        queue: TaskQueue,
        worker_id: int = 0,
        poll_interval: float = 60,
        stale_claim_minutes: float = 15,
        batch_size: int = 10,
        startup_delay: float = 0,
    ):
        self._dispatcher = dispatcher
        self._queue = queue
        self._worker_id = worker_id
        self._poll_interval = poll_interval
        self._stale_after = timedelta(minutes=stale_claim_minutes)
        self._batch_size = batch_size
        self._startup_delay = startup_delay
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._cycle_count = 0
        self._consecutive_errors = 0
        self._stats = {
            "completed": 0,
            "retried": 0,
            "failed": 0,
            "skipped": 0,
            "recoveries": 0,
            "errors": 0,
            "last_cycle": None,
            "started_at": None,
        }

    @property
    def worker_id(self) -> int:
        return self._worker_id

    @property
    def running(self) -> bool:
        return self._running

    @property
    def stats(self) -> dict:
        return {
            **self._stats,
            "running": self._running,
            "cycle_count": self._cycle_count,
            "worker_id": self._worker_id,
        }

    def start(self):
        """Start the worker loop."""
        if self._running:
            logger.warning("Dispatcher worker #%d already running", self._worker_id)
            return
        self._running = True
        self._stats["started_at"] = utcnow().isoformat()
        self._task = asyncio.create_task(self._loop())
        logger.info("🚀 Dispatcher worker #%d started (interval=%ss)", self._worker_id, self._poll_interval)

    def stop(self):
        """Stop the worker gracefully."""
        self._running = False
        if self._task:
            self._task.cancel()
        logger.info("Dispatcher worker #%d stopped", self._worker_id)

    async def wait(self):
        """Wait for a stopped worker's loop to unwind."""
        if self._task:
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def _loop(self):
        """Main worker loop — runs until stopped."""
        await asyncio.sleep(self._startup_delay)

        while self._running:
            delay = self._poll_interval
            try:
                cycle = await self.run_once()
                self._consecutive_errors = 0
                if cycle["fetched"] >= self._batch_size:
                    delay = 0
            except asyncio.CancelledError:
                logger.info("Dispatcher worker #%d cancelled", self._worker_id)
                break
            except StoreUnavailableError as e:
                self._stats["errors"] += 1
                self._consecutive_errors += 1
                delay = min(self._poll_interval * (2 ** self._consecutive_errors), MAX_BACKOFF_SEC)
                logger.error(
                    "Dispatcher worker #%d: store unavailable (%s) — backing off %ss",
                    self._worker_id, e, delay,
                )
            except Exception as e:
                self._stats["errors"] += 1
                logger.error("Dispatcher worker #%d cycle error: %s", self._worker_id, e, exc_info=True)

            await asyncio.sleep(delay)

    async def run_once(self, now: Optional[datetime] = None) -> dict:
        """Single cycle: recover stale claims → dispatch due tasks."""
        self._cycle_count += 1
        now = now or utcnow()
        self._stats["last_cycle"] = now.isoformat()
        cycle_start = time.time()

        recovered = await self._queue.recover_stale_claims(self._stale_after, now)
        cycle = await self._dispatcher.run_cycle(now)

        self._stats["recoveries"] += recovered
        for key in (COMPLETED, RETRIED, FAILED, SKIPPED):
            self._stats[key] += cycle[key]

        if recovered or cycle["fetched"]:
            logger.info(
                "Worker #%d cycle #%d done in %.1fs: recovered=%d, completed=%d, retried=%d, failed=%d",
                self._worker_id, self._cycle_count, time.time() - cycle_start,
                recovered, cycle[COMPLETED], cycle[RETRIED], cycle[FAILED],
            )
        return cycle

    async def run(self, iterations: int, interval: float = 0) -> dict:
        """Run a fixed number of cycles in the foreground (CLI / tests)."""
        for i in range(iterations):
            await self.run_once()
            if interval and i < iterations - 1:
                await asyncio.sleep(interval)
        return self.stats


class DispatcherPool:
    """
    Manages multiple concurrent DispatcherWorker agents.

    Workers are staggered on start-up; stats are aggregated across all of them.
    """

    def __init__(self, dispatcher: TaskDispatcher, queue: TaskQueue, **worker_kwargs):
        self._dispatcher = dispatcher
        self._queue = queue
        self._worker_kwargs = worker_kwargs
        self._workers: dict[int, DispatcherWorker] = {}

    @property
    def worker_count(self) -> int:
        return sum(1 for w in self._workers.values() if w.running)

    @property
    def stats(self) -> dict:
        """Aggregated stats across all workers."""
        agg = {
            "completed": 0,
            "retried": 0,
            "failed": 0,
            "skipped": 0,
            "recoveries": 0,
            "errors": 0,
            "cycle_count": 0,
            "running": False,
            "worker_count": self.worker_count,
            "workers": [],
        }
        for worker in self._workers.values():
            s = worker.stats
            for key in ("completed", "retried", "failed", "skipped", "recoveries", "errors", "cycle_count"):
                agg[key] += s.get(key, 0)
            if s.get("running"):
                agg["running"] = True
            agg["workers"].append(s)
        return agg

    def start_worker(self, worker_id: int = 0) -> DispatcherWorker:
        """Start a specific worker. Creates it if it doesn't exist."""
        if worker_id >= MAX_AGENTS:
            raise ValueError(f"Max {MAX_AGENTS} workers allowed")
        if worker_id not in self._workers:
            self._workers[worker_id] = DispatcherWorker(
                self._dispatcher,
                self._queue,
                worker_id=worker_id,
                startup_delay=worker_id * AGENT_STAGGER_SEC,
                **self._worker_kwargs,
            )
        worker = self._workers[worker_id]
        worker.start()
        return worker

    def start_multiple(self, count: int) -> list[int]:
        """Start N workers (0 through count-1). Returns the ids started."""
        count = min(count, MAX_AGENTS)
        return [self.start_worker(i).worker_id for i in range(count)]

    def stop_all(self):
        for worker in self._workers.values():
            worker.stop()

    async def wait(self):
        for worker in self._workers.values():
            await worker.wait()
