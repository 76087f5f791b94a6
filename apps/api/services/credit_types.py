"""Result types and errors shared by the credits and payments services."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional


class CreditStoreUnavailable(RuntimeError):
    """The balance store failed or timed out; nothing was applied."""


class PaymentVerificationError(ValueError):
    """A payment could not be confirmed as completed by the processor."""


class PaymentOwnershipError(PermissionError):
    """A payment belongs to a different user than the caller."""


class PaymentProviderUnavailable(RuntimeError):
    """The payment processor could not be reached."""


@dataclass(frozen=True)
class ConsumeResult:
    success: bool
    credits_remaining: int
    credits_required: Optional[int] = None
    credits_used: int = 0
    next_reset_at: Optional[datetime] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": self.success,
            "credits_remaining": self.credits_remaining,
            "next_reset_at": self.next_reset_at.isoformat() if self.next_reset_at else None,
        }
        if self.success:
            payload["credits_used"] = self.credits_used
        else:
            payload["credits_required"] = self.credits_required
            payload["message"] = "Insufficient credits"
        return payload


@dataclass(frozen=True)
class ReconcileResult:
    applied: bool
    payment_id: str
    credits_granted: int = 0
    credits_remaining: Optional[int] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "applied": self.applied,
            "payment_id": self.payment_id,
            "credits_granted": self.credits_granted if self.applied else 0,
            "credits_remaining": self.credits_remaining,
        }


@dataclass(frozen=True)
class CheckoutSessionStatus:
    """Processor-side view of a checkout session."""

    session_id: str
    payment_status: str
    user_id: Optional[str]
    credits: int
    pack_size: Optional[str] = None
    amount_total: Optional[int] = None

    @property
    def is_paid(self) -> bool:
        return self.payment_status == "paid"


@dataclass(frozen=True)
class CheckoutSessionLink:
    session_id: str
    url: Optional[str]
