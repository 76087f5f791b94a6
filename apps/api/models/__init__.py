"""Models package."""

from .user import User
from .account_balance import AccountBalance
from .usage_record import UsageRecord
from .payment_event import PaymentEvent
