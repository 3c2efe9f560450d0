"""
Shared test fixtures — per-test SQLite database, wired services, fake capabilities.

Each test gets its own database file under tmp_path (not :memory:) so that
concurrent sessions really contend for the same rows, as in production.

Usage:
    python -m pytest automation/tests -v
"""

from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from vendorflow.database import build_engine, build_session_factory, close_db, init_db
from vendorflow.handlers import default_registry
from vendorflow.schemas import ConversationTurn, VerificationResult
from vendorflow.services.activity import ActivityLogger
from vendorflow.services.admin import VendorAdmin
from vendorflow.services.capabilities import AICapability, NotificationChannel
from vendorflow.services.dispatcher import RetryPolicy, TaskDispatcher
from vendorflow.services.lifecycle import VendorLifecycle
from vendorflow.services.queue import TaskQueue
from vendorflow.services.store import SqlDocumentStore

ONBOARDING_URL = "https://example.com/contractor?vid={vendor_id}"

SAMPLE_VENDOR = {
    "companyName": "Acme HVAC Services",
    "specialty": "HVAC",
    "location": "Austin, TX",
    "phone": "+15125550199",
    "email": "contact@acmehvac.com",
    "website": "https://acmehvac.com",
    "fitScore": 85,
    "hasActiveContract": False,
    "aiReasoning": "Strong match for HVAC queries. Valid contact info.",
}


# ── Database ────────────────────────────────────────────

@pytest_asyncio.fixture()
async def db_engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'vendorflow.db'}")
    await init_db(engine)
    yield engine
    await close_db(engine)


@pytest.fixture
def store(db_engine):
    return SqlDocumentStore(build_session_factory(db_engine))


# ── Services ────────────────────────────────────────────

@pytest.fixture
def queue(store):
    return TaskQueue(store)


@pytest.fixture
def activity(store):
    return ActivityLogger(store)


@pytest.fixture
def lifecycle(store, queue, activity):
    return VendorLifecycle(store, queue, activity)


@pytest.fixture
def admin(store, queue, activity, lifecycle):
    return VendorAdmin(store, queue, activity, lifecycle)


# ── Fake Capabilities ───────────────────────────────────

@pytest.fixture
def fake_ai():
    ai = AsyncMock(spec=AICapability)
    ai.generate_message.return_value = (
        "We are expanding our HVAC network in Austin.\nOpen to a brief intro?"
    )
    ai.verify_document.return_value = VerificationResult(
        valid=True,
        reasoning="Name matches and General Liability is $2,000,000.",
        extracted={"generalLiability": 2000000},
    )
    ai.advance_conversation.return_value = ConversationTurn(
        reply="Great. Do you carry at least $2M General Liability Insurance?",
        status="onboarding",
    )
    return ai


@pytest.fixture
def fake_notifier():
    notifier = AsyncMock(spec=NotificationChannel)
    notifier.send.return_value = "msg-001"
    notifier.notify_operator.return_value = True
    return notifier


@pytest.fixture
def policy():
    return RetryPolicy(max_retries=3, base_delay_seconds=60, handler_timeout_seconds=5)


@pytest.fixture
def dispatcher(store, queue, activity, lifecycle, fake_ai, fake_notifier, policy):
    handlers = default_registry(fake_ai, fake_notifier, onboarding_url=ONBOARDING_URL)
    return TaskDispatcher(
        store, queue, activity, lifecycle, handlers,
        policy=policy, notifier=fake_notifier, batch_size=10,
    )


# ── Sample Data ─────────────────────────────────────────

@pytest.fixture
def sample_vendor():
    return dict(SAMPLE_VENDOR)


@pytest_asyncio.fixture()
async def vendor_id(admin, sample_vendor):
    """A seeded PENDING_REVIEW vendor."""
    return await admin.seed_vendor(sample_vendor)
