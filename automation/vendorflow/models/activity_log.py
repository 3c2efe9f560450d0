"""
Vendor activity log model.
Append-only audit trail of status changes and task outcomes per vendor.
"""

import uuid

from sqlalchemy import Column, JSON, String, Text

from vendorflow.database import Base, UTCDateTime, utcnow


class VendorActivity(Base):
    """Immutable audit entry. Only the vendor reset operation deletes these."""

    __tablename__ = "vendor_activities"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    # What vendor this entry belongs to
    vendor_id = Column("vendorId", String(36), nullable=False, index=True)

    # What happened
    type = Column(String(20), nullable=False)  # STATUS_CHANGE, OUTREACH_QUEUED, OUTREACH_SENT, NOTE
    description = Column(Text, default="")

    # Transition details, drafts, verdicts; includes taskId when written by the dispatcher
    extra_data = Column("metadata", JSON, default=dict)

    created_at = Column("createdAt", UTCDateTime, default=utcnow, index=True)

    def __repr__(self):
        return f"<VendorActivity {self.vendor_id} — {self.type}>"
