"""UsageRecord model for the append-only credits audit trail."""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship

from database import Base


class UsageRecord(Base):
    """Immutable ledger entry.

    ``credits_used`` is positive for consumption and negative for grants
    (purchases, provisioning, resets that raise the balance).
    """

    __tablename__ = "usage_records"
    __table_args__ = (
        Index("ix_usage_records_user_created", "user_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    action_type = Column(String, nullable=False)
    credits_used = Column(Integer, nullable=False)
    credits_remaining_after = Column(Integer, nullable=False)
    reference_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), index=True)

    user = relationship("User", back_populates="usage_records")
