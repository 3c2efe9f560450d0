"""
VERIFY_DOCUMENT: AI compliance check of a COI or W-9.

A negative verdict is still a successful task: it is recorded as a NOTE
and, when enabled, raises a human-review signal.
"""

import logging

from vendorflow.errors import CapabilityError
from vendorflow.handlers.base import (
    ActivitySpec,
    Effects,
    PermanentFailure,
    RetryableFailure,
    Success,
    TaskHandler,
)
from vendorflow.schemas import ActivityType, DocumentType, Task, TaskType, Vendor
from vendorflow.services.capabilities import AICapability

logger = logging.getLogger(__name__)


class VerifyDocumentHandler(TaskHandler):
    task_type = TaskType.VERIFY_DOCUMENT

    def __init__(self, ai: AICapability, review_invalid: bool = True):
        self._ai = ai
        self._review_invalid = review_invalid

    async def handle(self, vendor: Vendor, task: Task):
        raw = task.metadata.get("docType")
        try:
            doc_type = DocumentType(str(raw).upper())
        except ValueError:
            return PermanentFailure(f"Unsupported document type: {raw!r}")

        try:
            result = await self._ai.verify_document(doc_type.value, vendor.company_name, vendor.specialty or "")
        except CapabilityError as e:
            return RetryableFailure(f"{doc_type.value} verification failed: {e}")

        verdict = "verified" if result.valid else "flagged"
        logger.info("🔎 %s for %s %s: %s", doc_type.value, vendor.company_name, verdict, result.reasoning[:120])

        effects = Effects(activities=[
            ActivitySpec(
                ActivityType.NOTE,
                f"AI {verdict} {doc_type.value}: {result.reasoning}",
                {
                    "docType": doc_type.value,
                    "valid": result.valid,
                    "reasoning": result.reasoning,
                    "extracted": result.extracted,
                },
            )
        ])
        if not result.valid and self._review_invalid:
            effects.review_reason = (
                f"{doc_type.value} for {vendor.company_name} needs human review: {result.reasoning}"
            )
        return Success(effects)
