"""
SEND: deliver a generated draft, advance the vendor to CONTACTED and start
the follow-up drip.
"""

import logging
from typing import Sequence

from vendorflow.database import utcnow
from vendorflow.errors import DeliveryError, ValidationError
from vendorflow.handlers.base import (
    ActivitySpec,
    Effects,
    PermanentFailure,
    RetryableFailure,
    Success,
    TaskHandler,
)
from vendorflow.handlers.follow_up import DRIP_DAYS, next_follow_up
from vendorflow.schemas import ActivityType, Channel, Task, TaskType, Vendor, VendorEvent
from vendorflow.services.capabilities import NotificationChannel

logger = logging.getLogger(__name__)


class SendMessageHandler(TaskHandler):
    task_type = TaskType.SEND

    def __init__(self, notifier: NotificationChannel, drip_days: Sequence[int] = DRIP_DAYS):
        self._notifier = notifier
        self._drip_days = tuple(drip_days)

    async def handle(self, vendor: Vendor, task: Task):
        draft = task.metadata.get("draft") or {}
        channel = str(task.metadata.get("channel") or Channel.EMAIL.value).upper()
        recipient = vendor.email if channel == Channel.EMAIL.value else vendor.phone

        if not recipient:
            return PermanentFailure(f"No {channel} recipient on file for {vendor.company_name}")
        if not draft.get("body"):
            return PermanentFailure("SEND task carries no draft body")

        logger.info("📧 Sending %s to %s (%s)", channel, vendor.company_name, recipient)
        try:
            delivery_id = await self._notifier.send(channel, recipient, draft)
        except ValidationError as e:
            return PermanentFailure(str(e))
        except DeliveryError as e:
            return RetryableFailure(f"Delivery failed: {e}")

        follow_up = next_follow_up(1, utcnow(), channel, self._drip_days)
        return Success(Effects(
            event=VendorEvent.OUTREACH_SENT,
            activities=[
                ActivitySpec(
                    ActivityType.OUTREACH_SENT,
                    f"Automated {channel} sent to {recipient}.",
                    {
                        "channel": channel,
                        "to": recipient,
                        "subject": draft.get("subject"),
                        "deliveryId": delivery_id,
                        "sequence": task.metadata.get("sequence", 1),
                    },
                )
            ],
            follow_ups=[follow_up] if follow_up else [],
        ))
