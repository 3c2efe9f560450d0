"""
Vendorflow runtime — wires settings, database, services and workers.
"""

import asyncio
import logging
import signal
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from vendorflow.config import Settings, settings as default_settings
from vendorflow.database import build_engine, build_session_factory, close_db, init_db
from vendorflow.handlers import HandlerRegistry, default_registry
from vendorflow.services.activity import ActivityLogger
from vendorflow.services.admin import VendorAdmin
from vendorflow.services.ai import LLMCapability
from vendorflow.services.capabilities import AICapability, NotificationChannel
from vendorflow.services.dispatcher import DispatcherPool, DispatcherWorker, RetryPolicy, TaskDispatcher
from vendorflow.services.lifecycle import VendorLifecycle
from vendorflow.services.notify import Notifier
from vendorflow.services.onboarding_chat import OnboardingChat
from vendorflow.services.queue import TaskQueue
from vendorflow.services.store import SqlDocumentStore

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s  %(message)s"


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)


@dataclass
class Runtime:
    settings: Settings
    engine: AsyncEngine
    store: SqlDocumentStore
    queue: TaskQueue
    activity: ActivityLogger
    lifecycle: VendorLifecycle
    ai: AICapability
    notifier: NotificationChannel
    handlers: HandlerRegistry
    dispatcher: TaskDispatcher
    admin: VendorAdmin

    def _worker_options(self) -> dict:
        return {
            "poll_interval": self.settings.poll_interval_seconds,
            "stale_claim_minutes": self.settings.stale_claim_minutes,
            "batch_size": self.settings.batch_size,
        }

    def pool(self) -> DispatcherPool:
        return DispatcherPool(self.dispatcher, self.queue, **self._worker_options())

    def worker(self, worker_id: int = 0) -> DispatcherWorker:
        """A single worker for foreground use (``run(iterations)``)."""
        return DispatcherWorker(self.dispatcher, self.queue, worker_id=worker_id, **self._worker_options())

    async def close(self) -> None:
        await close_db(self.engine)


async def build_runtime(
    config: Optional[Settings] = None,
    ai: Optional[AICapability] = None,
    notifier: Optional[NotificationChannel] = None,
    create_tables: bool = True,
) -> Runtime:
    """Build every service once for this process.

    ``ai`` / ``notifier`` default to the LLM and SMTP/Telegram implementations.
    """
    cfg = config or default_settings
    engine = build_engine(cfg.database_url)
    if create_tables:
        await init_db(engine)

    store = SqlDocumentStore(build_session_factory(engine))
    queue = TaskQueue(store)
    activity = ActivityLogger(store)
    lifecycle = VendorLifecycle(store, queue, activity)

    if ai is None:
        llm = LLMCapability(config=cfg)
        llm.attach_chat(OnboardingChat(store, llm.classify))
        ai = llm
    notifier = notifier or Notifier(config=cfg)

    handlers = default_registry(
        ai,
        notifier,
        review_invalid_documents=cfg.review_invalid_documents,
        onboarding_url=cfg.onboarding_url,
        drip_days=cfg.drip_follow_up_days,
    )
    dispatcher = TaskDispatcher(
        store,
        queue,
        activity,
        lifecycle,
        handlers,
        policy=RetryPolicy.from_settings(cfg),
        notifier=notifier,
        batch_size=cfg.batch_size,
    )
    admin = VendorAdmin(store, queue, activity, lifecycle)
    logger.info("✅ Runtime ready (db=%s, handlers=%d)", cfg.database_url.split("://")[0], len(handlers))
    return Runtime(cfg, engine, store, queue, activity, lifecycle, ai, notifier, handlers, dispatcher, admin)


async def serve(runtime: Runtime, worker_count: Optional[int] = None) -> dict:
    """Run dispatcher workers until SIGINT / SIGTERM. Returns aggregated stats."""
    pool = runtime.pool()
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:  # Windows
            pass

    started = pool.start_multiple(worker_count or runtime.settings.worker_count)
    logger.info("🚀 %d dispatcher workers running — Ctrl+C to stop", len(started))
    try:
        await stop.wait()
    finally:
        pool.stop_all()
        await pool.wait()
    return pool.stats
