"""PaymentEvent model: dedup guard for reconciled payments."""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from database import Base


class PaymentEvent(Base):
    """One row per external payment whose credits were applied."""

    __tablename__ = "payment_events"

    payment_id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    credits_granted = Column(Integer, nullable=False)
    source = Column(String, nullable=False, default="webhook")
    processed_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    user = relationship("User", back_populates="payment_events")
