"""
FOLLOW_UP: drip reminders after the first outreach.

  SEND (first message) ──+3d──▶ follow-up #1 ──+7d──▶ #2 ──+14d──▶ #3
                                (days counted from the first message)

Each follow-up schedules the next one. A vendor that is no longer CONTACTED
(replied, rejected, reset) gets no further reminders: the task completes with
a NOTE and the chain stops. An address the channel refuses is flagged for
manual outreach instead of being retried.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, Sequence

from vendorflow.database import utcnow
from vendorflow.errors import DeliveryError, ValidationError
from vendorflow.handlers.base import (
    ActivitySpec,
    Effects,
    FollowUpSpec,
    RetryableFailure,
    Success,
    TaskHandler,
)
from vendorflow.handlers.generate import pick_channel, with_onboarding_link
from vendorflow.schemas import ActivityType, Channel, Task, TaskType, Vendor, VendorStatus

logger = logging.getLogger(__name__)

DRIP_DAYS = (3, 7, 14)
DRIP_SUBJECTS = (
    "Quick reminder: complete your vendor profile",
    "Just checking in on your partnership application",
    "Final follow-up: don't miss out on work opportunities",
)


def next_follow_up(
    sequence: int,
    started_at: datetime,
    channel: str,
    drip_days: Sequence[int] = DRIP_DAYS,
) -> Optional[FollowUpSpec]:
    """FOLLOW_UP #``sequence`` of the drip started at ``started_at``, or None past the end."""
    if sequence < 1 or sequence > len(drip_days):
        return None
    return FollowUpSpec(
        TaskType.FOLLOW_UP,
        {"sequence": sequence, "channel": channel, "startedAt": started_at.isoformat()},
        scheduled_at=started_at + timedelta(days=drip_days[sequence - 1]),
    )


def follow_up_draft(vendor: Vendor, sequence: int, total: int) -> dict:
    subject = DRIP_SUBJECTS[min(sequence, len(DRIP_SUBJECTS)) - 1]
    work = f"{vendor.specialty} work" if vendor.specialty else "work"
    if vendor.location:
        work += f" in {vendor.location}"

    if sequence >= total:
        body = (
            f"Hi {vendor.company_name},\n\n"
            f"This is my last note about joining our vendor network for {work}. "
            "If the timing isn't right, no problem. The link below stays open if you change your mind."
        )
    else:
        body = (
            f"Hi {vendor.company_name},\n\n"
            f"Just following up on my earlier note about {work}. "
            "Completing your profile takes a few minutes and puts you in line for upcoming jobs."
        )
    return {"subject": subject, "body": body}


class FollowUpHandler(TaskHandler):
    task_type = TaskType.FOLLOW_UP

    def __init__(self, notifier, onboarding_url: Optional[str] = None, drip_days: Sequence[int] = DRIP_DAYS):
        self._notifier = notifier
        self._onboarding_url = onboarding_url
        self._drip_days = tuple(drip_days)

    @staticmethod
    def _skipped(sequence: int, why: str, **metadata) -> Success:
        logger.info("Follow-up #%s skipped: %s", sequence, why)
        return Success(Effects(activities=[
            ActivitySpec(
                ActivityType.NOTE,
                f"Follow-up #{sequence} skipped: {why}.",
                {"sequence": sequence, **metadata},
            )
        ]))

    async def handle(self, vendor: Vendor, task: Task):
        sequence = int(task.metadata.get("sequence") or 1)

        if vendor.status != VendorStatus.CONTACTED.value:
            return self._skipped(sequence, f"vendor is {vendor.status}", reason="status", status=vendor.status)

        channel = str(task.metadata.get("channel") or pick_channel(vendor) or "").upper()
        recipient = vendor.email if channel == Channel.EMAIL.value else vendor.phone
        if not channel or not recipient:
            return self._skipped(sequence, "no contact on file", reason="no-contact")

        draft = follow_up_draft(vendor, sequence, len(self._drip_days))
        draft["body"] = with_onboarding_link(draft["body"], self._onboarding_url, vendor.id)

        logger.info("🔁 Follow-up #%s to %s via %s", sequence, vendor.company_name, channel)
        try:
            delivery_id = await self._notifier.send(channel, recipient, draft)
        except ValidationError as e:
            return Success(Effects(
                activities=[
                    ActivitySpec(
                        ActivityType.NOTE,
                        f"Follow-up #{sequence} not delivered to {recipient}. Manual outreach needed.",
                        {"sequence": sequence, "reason": "undeliverable", "error": str(e)[:500]},
                    )
                ],
                review_reason=f"Follow-up #{sequence} to {recipient} was refused ({e}). Manual outreach needed.",
            ))
        except DeliveryError as e:
            return RetryableFailure(f"Follow-up delivery failed: {e}")

        started_at = _parse_time(task.metadata.get("startedAt")) or utcnow()
        upcoming = next_follow_up(sequence + 1, started_at, channel, self._drip_days)
        return Success(Effects(
            activities=[
                ActivitySpec(
                    ActivityType.OUTREACH_SENT,
                    f"Follow-up #{sequence} {channel} sent to {recipient}.",
                    {
                        "channel": channel,
                        "to": recipient,
                        "subject": draft["subject"],
                        "deliveryId": delivery_id,
                        "sequence": sequence,
                        "followUp": True,
                    },
                )
            ],
            follow_ups=[upcoming] if upcoming else [],
        ))


def _parse_time(value) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None
