"""Monthly credit reset, applied lazily whenever a balance is touched."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.account_balance import AccountBalance
from models.usage_record import UsageRecord
from services.credit_types import CreditStoreUnavailable

logger = logging.getLogger(__name__)

RESET_ACTION_TYPE = "monthly_reset"
MAX_RESET_ATTEMPTS = 5


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything is stored as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_now(now: Optional[datetime] = None) -> datetime:
    return as_utc(now) if now is not None else datetime.now(timezone.utc)


def start_of_next_month(now: datetime) -> datetime:
    current = as_utc(now)
    if current.month == 12:
        return datetime(current.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(current.year, current.month + 1, 1, tzinfo=timezone.utc)


def credits_baseline() -> int:
    return max(int(settings.CREDITS_BASELINE), 0)


async def apply_due_reset(
    user_id: str,
    db: AsyncSession,
    *,
    now: Optional[datetime] = None,
    baseline: Optional[int] = None,
) -> Optional[UsageRecord]:
    """Reset the balance to the baseline if its cycle boundary has passed.

    Runs inside the caller's transaction and does not commit. The write is a
    compare-and-set on the observed balance, so among concurrent readers only
    one performs a given reset; the others see the advanced ``next_reset_at``.
    """
    current = utc_now(now)
    target = credits_baseline() if baseline is None else max(int(baseline), 0)

    for _ in range(MAX_RESET_ATTEMPTS):
        result = await db.execute(
            select(AccountBalance.credits_remaining, AccountBalance.next_reset_at)
            .where(AccountBalance.user_id == user_id)
            .with_for_update()
        )
        row = result.first()
        if row is None or as_utc(row.next_reset_at) > current:
            return None

        swapped = await db.execute(
            update(AccountBalance)
            .where(
                AccountBalance.user_id == user_id,
                AccountBalance.next_reset_at <= current,
                AccountBalance.credits_remaining == row.credits_remaining,
            )
            .values(
                credits_remaining=target,
                last_reset_at=current,
                next_reset_at=start_of_next_month(current),
            )
            .execution_options(synchronize_session=False)
        )
        if swapped.rowcount != 1:
            continue

        record = UsageRecord(
            user_id=user_id,
            action_type=RESET_ACTION_TYPE,
            credits_used=int(row.credits_remaining) - target,
            credits_remaining_after=target,
        )
        db.add(record)
        await db.flush()
        logger.info(
            "Credits reset for user=%s: %s -> %s (next reset %s)",
            user_id,
            row.credits_remaining,
            target,
            start_of_next_month(current).isoformat(),
        )
        return record

    raise CreditStoreUnavailable(f"Credit reset for user {user_id} kept conflicting; retry later.")
