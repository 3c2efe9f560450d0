"""
Onboarding Chat — conversational eligibility check for vendors.

Steps:
  WELCOME → ENTITY_CHECK → INSURANCE_CHECK → DONE

Each message is classified (YES / NO) by the AI and advances the step. The
progress lives in ``vendor.onboarding`` ({status, currentStep, ...}), never in
the lifecycle status; the CHAT_TURN handler decides whether a finished chat
moves the vendor. The transcript is kept in ``vendor_messages``.

next_turn() only reads: it returns the reply together with the new progress.
stage_turn() puts that progress and both transcript lines into a write batch,
so the dispatcher commits a turn in the same transaction that completes its
task. A failed AI call or a failed commit leaves the vendor on the same step.
"""

import logging
from datetime import timedelta
from typing import Awaitable, Callable, Optional

from vendorflow.database import utcnow
from vendorflow.errors import VendorNotFoundError
from vendorflow.schemas import ConversationTurn
from vendorflow.services.store import DocumentStore, WriteBatch

logger = logging.getLogger("vendorflow.onboarding")

VENDORS = "vendors"
MESSAGES = "vendor_messages"

# Onboarding steps
WELCOME = "WELCOME"
ENTITY_CHECK = "ENTITY_CHECK"
INSURANCE_CHECK = "INSURANCE_CHECK"
DONE = "DONE"

# Onboarding statuses
NOT_STARTED = "NOT_STARTED"
IN_PROGRESS = "onboarding"
COMPLETED = "COMPLETED"
DISQUALIFIED = "DISQUALIFIED"

ENTITY_QUESTION = "Is the user confirming they are an LLC or Inc? Answer YES_CORRECT_ENTITY or NO."
INSURANCE_QUESTION = (
    "Is the user confirming they have at least $2M in liability insurance? Answer YES or NO."
)

Classifier = Callable[[str, str], Awaitable[str]]


def stage_turn(
    batch: WriteBatch,
    vendor_id: str,
    user_message: str,
    reply: str,
    onboarding: Optional[dict] = None,
    expect: Optional[dict] = None,
) -> None:
    """Queue the progress update (if any) and the user / AI transcript lines."""
    if onboarding is not None:
        batch.update(VENDORS, vendor_id, {"onboarding": onboarding}, expect=expect)
    now = utcnow()
    batch.add(MESSAGES, {"vendor_id": vendor_id, "sender": "user", "text": user_message, "created_at": now})
    batch.add(MESSAGES, {
        "vendor_id": vendor_id,
        "sender": "ai",
        "text": reply,
        "created_at": now + timedelta(microseconds=1),
    })


class OnboardingChat:
    def __init__(self, store: DocumentStore, classify: Classifier):
        self._store = store
        self._classify = classify

    async def next_turn(self, vendor_id: str, user_message: str) -> ConversationTurn:
        """Reply, chat status and resulting progress for one message. Writes nothing."""
        vendor = await self._store.get(VENDORS, vendor_id)
        if vendor is None:
            raise VendorNotFoundError(vendor_id)

        onboarding = dict(vendor.get("onboarding") or {"status": NOT_STARTED, "currentStep": WELCOME})
        status = onboarding.get("status", NOT_STARTED)
        step = onboarding.get("currentStep", WELCOME)
        name = vendor.get("company_name")

        if status == NOT_STARTED or step == WELCOME:
            status, step = IN_PROGRESS, ENTITY_CHECK
            where = vendor.get("location") or "contracts"
            reply = f"Hi {name}. To verify eligibility for {where}, are you a registered LLC or Inc?"

        elif step == ENTITY_CHECK:
            label = await self._classify(user_message, ENTITY_QUESTION)
            if "YES" in label:
                step = INSURANCE_CHECK
                onboarding["entityType"] = "LLC/Inc"
                reply = "Great. Do you carry at least $2M General Liability Insurance?"
            else:
                status, step = DISQUALIFIED, DONE
                onboarding["disqualificationReason"] = "Entity Type (Not LLC/Inc)"
                reply = "We currently require vendors to be incorporated (LLC or Inc) to join our network."

        elif step == INSURANCE_CHECK:
            label = await self._classify(user_message, INSURANCE_QUESTION)
            if "YES" in label:
                status, step = COMPLETED, DONE
                onboarding["hasInsurance"] = True
                reply = (
                    "✅ Verified. You are now in our Preferred Network. "
                    "We will contact you when a job matches your profile."
                )
            else:
                status, step = DISQUALIFIED, DONE
                onboarding["hasInsurance"] = False
                onboarding["disqualificationReason"] = "Insufficient Insurance"
                reply = "We currently require $2M General Liability coverage for our commercial contracts."

        else:
            reply = "You have already completed the verification process. We will be in touch."

        onboarding["status"] = status
        onboarding["currentStep"] = step

        logger.info("💬 Onboarding chat %s: step=%s status=%s", vendor_id, step, status)
        return ConversationTurn(reply=reply, status=status, onboarding=onboarding)

    async def process_message(self, vendor_id: str, user_message: str) -> ConversationTurn:
        """next_turn() and persist it right away (outside the task queue)."""
        turn = await self.next_turn(vendor_id, user_message)
        async with self._store.batch() as batch:
            stage_turn(batch, vendor_id, user_message, turn.reply, turn.onboarding)
        return turn

    async def transcript(self, vendor_id: str) -> list[dict]:
        """Messages in the order they were written."""
        return await self._store.query(MESSAGES, {"vendor_id": vendor_id}, order_by=("created_at",))
