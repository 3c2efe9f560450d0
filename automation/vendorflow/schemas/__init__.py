"""
Vendorflow — Enumerations and Pydantic snapshots of stored documents.

Snapshots are built from store documents (snake_case keys) and dump to the
camelCase wire layout with ``model_dump(by_alias=True)``.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel


class VendorStatus(str, Enum):
    PENDING_REVIEW = "PENDING_REVIEW"
    APPROVED = "APPROVED"
    CONTACTED = "CONTACTED"
    NEGOTIATING = "NEGOTIATING"
    CONTRACTED = "CONTRACTED"
    REJECTED = "REJECTED"


class VendorEvent(str, Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    OUTREACH_SENT = "OUTREACH_SENT"
    VENDOR_REPLIED = "VENDOR_REPLIED"
    NEGOTIATION_STARTED = "NEGOTIATION_STARTED"
    CONTRACT_SIGNED = "CONTRACT_SIGNED"


class TaskType(str, Enum):
    GENERATE = "GENERATE"
    SEND = "SEND"
    VERIFY_DOCUMENT = "VERIFY_DOCUMENT"
    CHAT_TURN = "CHAT_TURN"
    FOLLOW_UP = "FOLLOW_UP"


class TaskStatus(str, Enum):
    PENDING = "PENDING"
    CLAIMED = "CLAIMED"
    RETRY = "RETRY"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


# Eligible for fetch / claim
DUE_STATUSES = (TaskStatus.PENDING.value, TaskStatus.RETRY.value)
# Not yet finished (counts for duplicate suppression)
OPEN_STATUSES = DUE_STATUSES + (TaskStatus.CLAIMED.value,)
TERMINAL_STATUSES = (
    TaskStatus.COMPLETED.value,
    TaskStatus.FAILED.value,
    TaskStatus.CANCELLED.value,
)


class ActivityType(str, Enum):
    STATUS_CHANGE = "STATUS_CHANGE"
    OUTREACH_QUEUED = "OUTREACH_QUEUED"
    OUTREACH_SENT = "OUTREACH_SENT"
    NOTE = "NOTE"


class DocumentType(str, Enum):
    COI = "COI"
    W9 = "W9"


class Channel(str, Enum):
    EMAIL = "EMAIL"
    SMS = "SMS"
    TELEGRAM = "TELEGRAM"


class _Snapshot(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
    )


class Vendor(_Snapshot):
    id: str
    status: VendorStatus = VendorStatus.PENDING_REVIEW
    company_name: str
    specialty: str | None = None
    location: str | None = None
    email: str | None = None
    phone: str | None = None
    website: str | None = None
    fit_score: int | None = None
    ai_reasoning: str | None = None
    has_active_contract: bool = False
    onboarding: dict[str, Any] | None = None
    status_updated_at: datetime | None = None
    created_at: datetime | None = None

    def profile(self) -> dict:
        """Fields handed to the AI capability — no ids or timestamps."""
        return {
            "companyName": self.company_name,
            "specialty": self.specialty,
            "location": self.location,
            "fitScore": self.fit_score,
            "aiReasoning": self.ai_reasoning,
            "hasActiveContract": self.has_active_contract,
        }


class Task(_Snapshot):
    id: str
    vendor_id: str
    type: TaskType
    status: TaskStatus
    scheduled_at: datetime
    created_at: datetime | None = None
    claimed_at: datetime | None = None
    completed_at: datetime | None = None
    retry_count: int = 0
    error: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class Activity(_Snapshot):
    id: str
    vendor_id: str
    type: ActivityType
    description: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None


class VerificationResult(BaseModel):
    valid: bool
    reasoning: str = ""
    extracted: dict[str, Any] = Field(default_factory=dict)


class ConversationTurn(BaseModel):
    reply: str
    status: str
    # Onboarding progress after this turn; persisted with the turn's transcript
    onboarding: dict[str, Any] | None = None


class SeedVendor(BaseModel):
    """Input for the seed admin operation (already normalized field names)."""

    company_name: str = Field(..., min_length=2, max_length=255)
    specialty: str | None = Field(None, max_length=255)
    location: str | None = Field(None, max_length=255)
    email: EmailStr | None = None
    phone: str | None = Field(None, max_length=30)
    website: str | None = Field(None, max_length=512)
    fit_score: int | None = Field(None, ge=0, le=100)
    ai_reasoning: str | None = Field(None, max_length=2000)
    has_active_contract: bool = False
