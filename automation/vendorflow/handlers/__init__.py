from typing import Sequence

from vendorflow.handlers.base import (  # noqa: F401
    ActivitySpec,
    ChatTurnSpec,
    Effects,
    FollowUpSpec,
    HandlerRegistry,
    Outcome,
    PermanentFailure,
    RetryableFailure,
    Success,
    TaskHandler,
)
from vendorflow.handlers.conversation import ConversationHandler
from vendorflow.handlers.follow_up import DRIP_DAYS, FollowUpHandler
from vendorflow.handlers.generate import GenerateMessageHandler
from vendorflow.handlers.send import SendMessageHandler
from vendorflow.handlers.verify_document import VerifyDocumentHandler


def default_registry(
    ai,
    notifier,
    review_invalid_documents: bool = True,
    onboarding_url: str | None = None,
    drip_days: Sequence[int] = DRIP_DAYS,
) -> HandlerRegistry:
    """One handler per task type, wired to the given capabilities."""
    return HandlerRegistry([
        GenerateMessageHandler(ai, onboarding_url=onboarding_url),
        SendMessageHandler(notifier, drip_days=drip_days),
        VerifyDocumentHandler(ai, review_invalid=review_invalid_documents),
        ConversationHandler(ai),
        FollowUpHandler(notifier, onboarding_url=onboarding_url, drip_days=drip_days),
    ])
