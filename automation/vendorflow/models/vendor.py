"""
Vendor models — the vendor record and its onboarding chat transcript.

Column names are the persisted wire layout (camelCase) shared with external
inspection tooling; Python attributes stay snake_case.
"""

import uuid

from sqlalchemy import Boolean, Column, Integer, JSON, String, Text

from vendorflow.database import Base, UTCDateTime, utcnow


class Vendor(Base):
    """A prospective or engaged service provider."""

    __tablename__ = "vendors"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    # ── Lifecycle ──
    status = Column(String(20), nullable=False, default="PENDING_REVIEW", index=True)
    # PENDING_REVIEW → APPROVED → CONTACTED → NEGOTIATING → CONTRACTED
    # any non-terminal → REJECTED
    status_updated_at = Column("statusUpdatedAt", UTCDateTime, default=utcnow)

    # ── Profile ──
    company_name = Column("companyName", String(255), nullable=False)
    specialty = Column(String(255))  # "HVAC", "Plumbing", "Janitorial"
    location = Column(String(255))
    email = Column(String(255))
    phone = Column(String(30))
    website = Column(Text)
    fit_score = Column("fitScore", Integer)  # 0-100, AI computed
    ai_reasoning = Column("aiReasoning", Text)
    has_active_contract = Column("hasActiveContract", Boolean, default=False)

    # ── Conversational onboarding progress (never the lifecycle status) ──
    onboarding = Column(JSON)

    created_at = Column("createdAt", UTCDateTime, default=utcnow)

    def __repr__(self):
        return f"<Vendor {self.company_name} [{self.status}]>"


class VendorMessage(Base):
    """One line of the onboarding chat transcript."""

    __tablename__ = "vendor_messages"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    vendor_id = Column("vendorId", String(36), nullable=False, index=True)
    sender = Column(String(10), nullable=False)  # "user" or "ai"
    text = Column(Text, default="")
    created_at = Column("createdAt", UTCDateTime, default=utcnow)
