"""AccountBalance model: one spendable credit balance per user."""

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class AccountBalance(Base):
    """Per-user credit balance and the bounds of its current billing cycle.

    Only the consumption, reset and reconciliation services write to this row.
    """

    __tablename__ = "account_balances"
    __table_args__ = (
        CheckConstraint("credits_remaining >= 0", name="ck_account_balances_non_negative"),
    )

    user_id = Column(String, ForeignKey("users.id"), primary_key=True)
    credits_remaining = Column(Integer, nullable=False, default=0)
    last_reset_at = Column(DateTime(timezone=True), nullable=False)
    next_reset_at = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    user = relationship("User", back_populates="balance")
