"""
GENERATE: draft the outreach message and schedule its SEND.
"""

import logging
from typing import Optional

from vendorflow.errors import CapabilityError
from vendorflow.handlers.base import (
    ActivitySpec,
    Effects,
    FollowUpSpec,
    PermanentFailure,
    RetryableFailure,
    Success,
    TaskHandler,
)
from vendorflow.schemas import ActivityType, Channel, Task, TaskType, Vendor
from vendorflow.services.capabilities import AICapability

logger = logging.getLogger(__name__)


def pick_channel(vendor: Vendor) -> Optional[str]:
    """Email first; SMS only when there is no address on file."""
    if vendor.email:
        return Channel.EMAIL.value
    if vendor.phone:
        return Channel.SMS.value
    return None


def with_onboarding_link(body: str, onboarding_url: Optional[str], vendor_id: str) -> str:
    """Append the vendor's onboarding link unless the body already has it."""
    if not onboarding_url:
        return body
    link = onboarding_url.format(vendor_id=vendor_id)
    if link in body:
        return body
    return f"{body}\n\n{link}"


class GenerateMessageHandler(TaskHandler):
    task_type = TaskType.GENERATE

    def __init__(self, ai: AICapability, onboarding_url: Optional[str] = None):
        self._ai = ai
        self._onboarding_url = onboarding_url  # may contain {vendor_id}

    async def handle(self, vendor: Vendor, task: Task):
        channel = pick_channel(vendor)
        if channel is None:
            return PermanentFailure(f"Vendor {vendor.company_name} has no email or phone for outreach")

        sequence = task.metadata.get("sequence", 1)
        logger.info("✍️ Generating outreach draft for %s (sequence %s)", vendor.company_name, sequence)

        try:
            body = await self._ai.generate_message(vendor.profile())
        except CapabilityError as e:
            return RetryableFailure(f"Message generation failed: {e}")

        body = (body or "").strip()
        if not body:
            return RetryableFailure("Message generation returned an empty draft")

        draft = {
            "subject": task.metadata.get("subject") or f"Partnership opportunity for {vendor.company_name}",
            "body": with_onboarding_link(body, self._onboarding_url, vendor.id),
        }
        return Success(Effects(
            activities=[
                ActivitySpec(
                    ActivityType.OUTREACH_QUEUED,
                    f"Outreach {channel} draft generated (sequence {sequence}).",
                    {"draft": draft, "channel": channel, "sequence": sequence},
                )
            ],
            follow_ups=[
                FollowUpSpec(TaskType.SEND, {"draft": draft, "channel": channel, "sequence": sequence})
            ],
        ))
