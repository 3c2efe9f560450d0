"""
CHAT_TURN: one conversational onboarding message.

The chat capability reports its own status; only statuses listed in
STATUS_EVENTS move the vendor lifecycle. Everything else is conversation.
The turn itself (progress + transcript) travels back as an effect and is
committed together with the task's completion.
"""

import logging

from vendorflow.errors import CapabilityError
from vendorflow.handlers.base import (
    ActivitySpec,
    ChatTurnSpec,
    Effects,
    PermanentFailure,
    RetryableFailure,
    Success,
    TaskHandler,
)
from vendorflow.schemas import ActivityType, Task, TaskType, Vendor, VendorEvent
from vendorflow.services.capabilities import AICapability

logger = logging.getLogger(__name__)

# Chat status → lifecycle event ("ready to proceed")
STATUS_EVENTS = {
    "READY": VendorEvent.VENDOR_REPLIED,
    "COMPLETED": VendorEvent.VENDOR_REPLIED,
}


class ConversationHandler(TaskHandler):
    task_type = TaskType.CHAT_TURN

    def __init__(self, ai: AICapability):
        self._ai = ai

    async def handle(self, vendor: Vendor, task: Task):
        message = str(task.metadata.get("message") or "").strip()
        if not message:
            return PermanentFailure("CHAT_TURN task carries no message")

        try:
            turn = await self._ai.advance_conversation(vendor.id, message)
        except CapabilityError as e:
            return RetryableFailure(f"Onboarding chat failed: {e}")

        event = STATUS_EVENTS.get(turn.status.upper())
        if event:
            logger.info("💬 %s is ready to proceed (chat status %s)", vendor.company_name, turn.status)

        return Success(Effects(
            event=event,
            chat_turn=ChatTurnSpec(message, turn.reply, turn.onboarding),
            activities=[
                ActivitySpec(
                    ActivityType.NOTE,
                    f"Onboarding chat ({turn.status}): {turn.reply[:200]}",
                    {"message": message, "reply": turn.reply, "chatStatus": turn.status},
                )
            ],
        ))
