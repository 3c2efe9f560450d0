"""
Unit tests for task handlers — pure functions of (vendor, task) with fake capabilities.
"""

from datetime import datetime, timedelta, timezone

import pytest

from vendorflow.database import utcnow
from vendorflow.errors import CapabilityError, DeliveryError, ValidationError
from vendorflow.handlers import (
    HandlerRegistry,
    PermanentFailure,
    RetryableFailure,
    Success,
    default_registry,
)
from vendorflow.handlers.conversation import ConversationHandler
from vendorflow.handlers.follow_up import DRIP_SUBJECTS, FollowUpHandler, next_follow_up
from vendorflow.handlers.generate import GenerateMessageHandler, pick_channel
from vendorflow.handlers.send import SendMessageHandler
from vendorflow.handlers.verify_document import VerifyDocumentHandler
from vendorflow.schemas import (
    ActivityType,
    ConversationTurn,
    Task,
    TaskType,
    Vendor,
    VendorEvent,
    VerificationResult,
)


def make_vendor(**overrides) -> Vendor:
    fields = {
        "id": "v1",
        "status": "APPROVED",
        "company_name": "Acme HVAC Services",
        "specialty": "HVAC",
        "location": "Austin, TX",
        "email": "contact@acmehvac.com",
        "phone": "+15125550199",
    }
    fields.update(overrides)
    return Vendor(**fields)


def make_task(task_type, metadata=None) -> Task:
    return Task(
        id="t1",
        vendor_id="v1",
        type=task_type,
        status="CLAIMED",
        scheduled_at=utcnow(),
        metadata=metadata or {},
    )


DRAFT = {"subject": "Partnership opportunity", "body": "Hello there"}


# ═══════════════════════════════════════════════════════════
# GENERATE
# ═══════════════════════════════════════════════════════════

class TestGenerate:
    def test_pick_channel(self):
        assert pick_channel(make_vendor()) == "EMAIL"
        assert pick_channel(make_vendor(email=None)) == "SMS"
        assert pick_channel(make_vendor(email=None, phone=None)) is None

    async def test_success_schedules_send(self, fake_ai):
        handler = GenerateMessageHandler(fake_ai, onboarding_url="https://example.com/join?vid={vendor_id}")
        outcome = await handler.handle(make_vendor(), make_task(TaskType.GENERATE, {"sequence": 2}))

        assert isinstance(outcome, Success)
        effects = outcome.effects
        assert effects.event is None
        assert [a.type for a in effects.activities] == [ActivityType.OUTREACH_QUEUED]
        follow_up = effects.follow_ups[0]
        assert follow_up.type == TaskType.SEND
        assert follow_up.metadata["sequence"] == 2
        assert follow_up.metadata["channel"] == "EMAIL"
        assert follow_up.metadata["draft"]["body"].endswith("https://example.com/join?vid=v1")

        profile = fake_ai.generate_message.await_args.args[0]
        assert profile["companyName"] == "Acme HVAC Services"
        assert "id" not in profile

    async def test_link_not_duplicated(self, fake_ai):
        fake_ai.generate_message.return_value = "Join here: https://example.com/join?vid=v1"
        handler = GenerateMessageHandler(fake_ai, onboarding_url="https://example.com/join?vid={vendor_id}")
        outcome = await handler.handle(make_vendor(), make_task(TaskType.GENERATE))
        body = outcome.effects.follow_ups[0].metadata["draft"]["body"]
        assert body.count("https://example.com/join?vid=v1") == 1

    async def test_subject_override(self, fake_ai):
        handler = GenerateMessageHandler(fake_ai)
        outcome = await handler.handle(make_vendor(), make_task(TaskType.GENERATE, {"subject": "Quick question"}))
        assert outcome.effects.follow_ups[0].metadata["draft"]["subject"] == "Quick question"

    async def test_ai_failure_is_retryable(self, fake_ai):
        fake_ai.generate_message.side_effect = CapabilityError("HTTP 503")
        outcome = await GenerateMessageHandler(fake_ai).handle(make_vendor(), make_task(TaskType.GENERATE))
        assert isinstance(outcome, RetryableFailure)
        assert "HTTP 503" in outcome.reason

    async def test_empty_draft_is_retryable(self, fake_ai):
        fake_ai.generate_message.return_value = "   "
        outcome = await GenerateMessageHandler(fake_ai).handle(make_vendor(), make_task(TaskType.GENERATE))
        assert isinstance(outcome, RetryableFailure)

    async def test_no_contact_is_permanent(self, fake_ai):
        vendor = make_vendor(email=None, phone=None)
        outcome = await GenerateMessageHandler(fake_ai).handle(vendor, make_task(TaskType.GENERATE))
        assert isinstance(outcome, PermanentFailure)
        fake_ai.generate_message.assert_not_awaited()


# ═══════════════════════════════════════════════════════════
# SEND
# ═══════════════════════════════════════════════════════════

class TestSend:
    async def test_success_emits_outreach_sent(self, fake_notifier):
        task = make_task(TaskType.SEND, {"draft": DRAFT, "channel": "EMAIL", "sequence": 1})
        outcome = await SendMessageHandler(fake_notifier).handle(make_vendor(), task)

        assert isinstance(outcome, Success)
        assert outcome.effects.event == VendorEvent.OUTREACH_SENT
        sent = outcome.effects.activities[0]
        assert sent.type == ActivityType.OUTREACH_SENT
        assert sent.metadata["to"] == "contact@acmehvac.com"
        assert sent.metadata["deliveryId"] == "msg-001"
        fake_notifier.send.assert_awaited_once_with("EMAIL", "contact@acmehvac.com", DRAFT)

        follow_up = outcome.effects.follow_ups[0]
        assert follow_up.type == TaskType.FOLLOW_UP
        assert follow_up.metadata["sequence"] == 1
        assert follow_up.metadata["channel"] == "EMAIL"
        assert follow_up.scheduled_at == datetime.fromisoformat(follow_up.metadata["startedAt"]) + timedelta(days=3)

    async def test_drip_can_be_disabled(self, fake_notifier):
        task = make_task(TaskType.SEND, {"draft": DRAFT, "channel": "EMAIL"})
        outcome = await SendMessageHandler(fake_notifier, drip_days=()).handle(make_vendor(), task)
        assert outcome.effects.follow_ups == []

    async def test_sms_goes_to_phone(self, fake_notifier):
        task = make_task(TaskType.SEND, {"draft": DRAFT, "channel": "sms"})
        await SendMessageHandler(fake_notifier).handle(make_vendor(), task)
        fake_notifier.send.assert_awaited_once_with("SMS", "+15125550199", DRAFT)

    async def test_missing_recipient_is_permanent(self, fake_notifier):
        task = make_task(TaskType.SEND, {"draft": DRAFT, "channel": "EMAIL"})
        outcome = await SendMessageHandler(fake_notifier).handle(make_vendor(email=None), task)
        assert isinstance(outcome, PermanentFailure)
        fake_notifier.send.assert_not_awaited()

    async def test_missing_draft_is_permanent(self, fake_notifier):
        outcome = await SendMessageHandler(fake_notifier).handle(make_vendor(), make_task(TaskType.SEND))
        assert isinstance(outcome, PermanentFailure)

    async def test_delivery_error_is_retryable(self, fake_notifier):
        fake_notifier.send.side_effect = DeliveryError("SMTP timeout")
        task = make_task(TaskType.SEND, {"draft": DRAFT})
        outcome = await SendMessageHandler(fake_notifier).handle(make_vendor(), task)
        assert isinstance(outcome, RetryableFailure)

    async def test_unsupported_channel_is_permanent(self, fake_notifier):
        fake_notifier.send.side_effect = ValidationError("SMS delivery is not configured")
        task = make_task(TaskType.SEND, {"draft": DRAFT, "channel": "SMS"})
        outcome = await SendMessageHandler(fake_notifier).handle(make_vendor(), task)
        assert isinstance(outcome, PermanentFailure)


# ═══════════════════════════════════════════════════════════
# FOLLOW_UP
# ═══════════════════════════════════════════════════════════

STARTED = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)
LINK = "https://example.com/contractor?vid={vendor_id}"


def follow_up_task(sequence, channel="EMAIL"):
    return make_task(
        TaskType.FOLLOW_UP,
        {"sequence": sequence, "channel": channel, "startedAt": STARTED.isoformat()},
    )


class TestFollowUp:
    def test_schedule_counts_from_first_message(self):
        assert next_follow_up(1, STARTED, "EMAIL").scheduled_at == STARTED + timedelta(days=3)
        assert next_follow_up(3, STARTED, "EMAIL").scheduled_at == STARTED + timedelta(days=14)
        assert next_follow_up(4, STARTED, "EMAIL") is None
        assert next_follow_up(1, STARTED, "EMAIL", drip_days=()) is None

    async def test_sends_reminder_and_schedules_next(self, fake_notifier):
        handler = FollowUpHandler(fake_notifier, onboarding_url=LINK)
        outcome = await handler.handle(make_vendor(status="CONTACTED"), follow_up_task(1))

        assert isinstance(outcome, Success)
        channel, to, draft = fake_notifier.send.await_args.args
        assert (channel, to) == ("EMAIL", "contact@acmehvac.com")
        assert draft["subject"] == DRIP_SUBJECTS[0]
        assert draft["body"].endswith("https://example.com/contractor?vid=v1")

        sent = outcome.effects.activities[0]
        assert sent.type == ActivityType.OUTREACH_SENT
        assert sent.metadata["followUp"] is True
        assert sent.metadata["sequence"] == 1
        assert outcome.effects.event is None

        upcoming = outcome.effects.follow_ups[0]
        assert upcoming.metadata["sequence"] == 2
        assert upcoming.metadata["startedAt"] == STARTED.isoformat()
        assert upcoming.scheduled_at == STARTED + timedelta(days=7)

    async def test_last_reminder_ends_drip(self, fake_notifier):
        outcome = await FollowUpHandler(fake_notifier).handle(make_vendor(status="CONTACTED"), follow_up_task(3))
        assert outcome.effects.follow_ups == []
        draft = fake_notifier.send.await_args.args[2]
        assert draft["subject"] == DRIP_SUBJECTS[2]
        assert "last note" in draft["body"]

    @pytest.mark.parametrize("status", ["NEGOTIATING", "REJECTED", "PENDING_REVIEW"])
    async def test_skipped_unless_contacted(self, fake_notifier, status):
        outcome = await FollowUpHandler(fake_notifier).handle(make_vendor(status=status), follow_up_task(2))

        assert isinstance(outcome, Success)
        fake_notifier.send.assert_not_awaited()
        assert outcome.effects.follow_ups == []
        note = outcome.effects.activities[0]
        assert note.type == ActivityType.NOTE
        assert note.metadata["reason"] == "status"

    async def test_no_contact_is_skipped(self, fake_notifier):
        outcome = await FollowUpHandler(fake_notifier).handle(
            make_vendor(status="CONTACTED", phone=None), follow_up_task(1, channel="SMS")
        )
        fake_notifier.send.assert_not_awaited()
        assert outcome.effects.activities[0].metadata["reason"] == "no-contact"

    async def test_refused_address_goes_to_review(self, fake_notifier):
        fake_notifier.send.side_effect = ValidationError("mailbox does not exist")
        outcome = await FollowUpHandler(fake_notifier).handle(make_vendor(status="CONTACTED"), follow_up_task(1))

        assert isinstance(outcome, Success)
        assert "Manual outreach needed" in outcome.effects.review_reason
        assert outcome.effects.activities[0].metadata["reason"] == "undeliverable"
        assert outcome.effects.follow_ups == []

    async def test_delivery_error_is_retryable(self, fake_notifier):
        fake_notifier.send.side_effect = DeliveryError("SMTP timeout")
        outcome = await FollowUpHandler(fake_notifier).handle(make_vendor(status="CONTACTED"), follow_up_task(1))
        assert isinstance(outcome, RetryableFailure)


# ═══════════════════════════════════════════════════════════
# VERIFY_DOCUMENT
# ═══════════════════════════════════════════════════════════

class TestVerifyDocument:
    async def test_valid_document(self, fake_ai):
        outcome = await VerifyDocumentHandler(fake_ai).handle(
            make_vendor(), make_task(TaskType.VERIFY_DOCUMENT, {"docType": "coi"})
        )
        assert isinstance(outcome, Success)
        note = outcome.effects.activities[0]
        assert note.type == ActivityType.NOTE
        assert note.metadata["docType"] == "COI"
        assert note.metadata["valid"] is True
        assert outcome.effects.review_reason is None
        assert outcome.effects.event is None

    async def test_invalid_document_requests_review(self, fake_ai):
        fake_ai.verify_document.return_value = VerificationResult(valid=False, reasoning="No TIN")
        outcome = await VerifyDocumentHandler(fake_ai).handle(
            make_vendor(), make_task(TaskType.VERIFY_DOCUMENT, {"docType": "W9"})
        )
        assert isinstance(outcome, Success)
        assert "No TIN" in outcome.effects.review_reason
        assert outcome.effects.activities[0].description == "AI flagged W9: No TIN"

    async def test_review_can_be_disabled(self, fake_ai):
        fake_ai.verify_document.return_value = VerificationResult(valid=False, reasoning="expired")
        outcome = await VerifyDocumentHandler(fake_ai, review_invalid=False).handle(
            make_vendor(), make_task(TaskType.VERIFY_DOCUMENT, {"docType": "COI"})
        )
        assert outcome.effects.review_reason is None

    async def test_unknown_doc_type_is_permanent(self, fake_ai):
        outcome = await VerifyDocumentHandler(fake_ai).handle(
            make_vendor(), make_task(TaskType.VERIFY_DOCUMENT, {"docType": "PASSPORT"})
        )
        assert isinstance(outcome, PermanentFailure)

    async def test_ai_failure_is_retryable(self, fake_ai):
        fake_ai.verify_document.side_effect = CapabilityError("unreadable verdict")
        outcome = await VerifyDocumentHandler(fake_ai).handle(
            make_vendor(), make_task(TaskType.VERIFY_DOCUMENT, {"docType": "COI"})
        )
        assert isinstance(outcome, RetryableFailure)


# ═══════════════════════════════════════════════════════════
# CHAT_TURN
# ═══════════════════════════════════════════════════════════

class TestConversation:
    @pytest.mark.parametrize("status,event", [
        ("onboarding", None),
        ("DISQUALIFIED", None),
        ("COMPLETED", VendorEvent.VENDOR_REPLIED),
        ("ready", VendorEvent.VENDOR_REPLIED),
    ])
    async def test_status_mapping(self, fake_ai, status, event):
        fake_ai.advance_conversation.return_value = ConversationTurn(reply="ok", status=status)
        outcome = await ConversationHandler(fake_ai).handle(
            make_vendor(status="CONTACTED"), make_task(TaskType.CHAT_TURN, {"message": "yes"})
        )
        assert isinstance(outcome, Success)
        assert outcome.effects.event == event
        assert outcome.effects.activities[0].metadata["chatStatus"] == status

    async def test_turn_is_returned_not_written(self, fake_ai):
        progress = {"status": "onboarding", "currentStep": "INSURANCE_CHECK", "entityType": "LLC/Inc"}
        fake_ai.advance_conversation.return_value = ConversationTurn(
            reply="Do you carry $2M?", status="onboarding", onboarding=progress
        )
        outcome = await ConversationHandler(fake_ai).handle(
            make_vendor(), make_task(TaskType.CHAT_TURN, {"message": "We're an LLC"})
        )
        turn = outcome.effects.chat_turn
        assert (turn.message, turn.reply, turn.onboarding) == ("We're an LLC", "Do you carry $2M?", progress)

    async def test_empty_message_is_permanent(self, fake_ai):
        outcome = await ConversationHandler(fake_ai).handle(make_vendor(), make_task(TaskType.CHAT_TURN))
        assert isinstance(outcome, PermanentFailure)

    async def test_chat_failure_is_retryable(self, fake_ai):
        fake_ai.advance_conversation.side_effect = CapabilityError("rate limited")
        outcome = await ConversationHandler(fake_ai).handle(
            make_vendor(), make_task(TaskType.CHAT_TURN, {"message": "hello"})
        )
        assert isinstance(outcome, RetryableFailure)


# ═══════════════════════════════════════════════════════════
# REGISTRY
# ═══════════════════════════════════════════════════════════

class TestRegistry:
    def test_default_registry_covers_every_type(self, fake_ai, fake_notifier):
        registry = default_registry(fake_ai, fake_notifier)
        assert len(registry) == len(TaskType)
        for task_type in TaskType:
            assert task_type in registry
            assert task_type.value in registry

    def test_unknown_type(self):
        assert HandlerRegistry().get("FAX") is None

    def test_replace_handler(self, fake_ai):
        first = ConversationHandler(fake_ai)
        second = ConversationHandler(fake_ai)
        registry = HandlerRegistry([first])
        registry.register(second)
        assert registry.get(TaskType.CHAT_TURN) is second
        assert len(registry) == 1
