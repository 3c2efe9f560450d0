"""
Outreach queue task model.
"""

import uuid

from sqlalchemy import Column, Index, Integer, JSON, String, Text

from vendorflow.database import Base, UTCDateTime, utcnow


class OutreachTask(Base):
    """A unit of asynchronous work owned by exactly one vendor.

    Deleting a vendor's activities does not touch its tasks; cleanup is explicit.
    """

    __tablename__ = "outreach_queue"
    __table_args__ = (
        Index("ix_outreach_queue_due", "status", "scheduledAt"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    vendor_id = Column("vendorId", String(36), nullable=False, index=True)
    type = Column(String(20), nullable=False)  # GENERATE, SEND, VERIFY_DOCUMENT, CHAT_TURN, FOLLOW_UP

    status = Column(String(12), nullable=False, default="PENDING")
    # PENDING → CLAIMED → COMPLETED | RETRY | FAILED ; RETRY → CLAIMED ; open → CANCELLED

    scheduled_at = Column("scheduledAt", UTCDateTime, nullable=False, default=utcnow)
    created_at = Column("createdAt", UTCDateTime, nullable=False, default=utcnow)
    claimed_at = Column("claimedAt", UTCDateTime)
    completed_at = Column("completedAt", UTCDateTime)

    retry_count = Column("retryCount", Integer, nullable=False, default=0)
    error = Column(Text)
    extra_data = Column("metadata", JSON, default=dict)

    def __repr__(self):
        return f"<OutreachTask {self.type} vendor={self.vendor_id} [{self.status}]>"
