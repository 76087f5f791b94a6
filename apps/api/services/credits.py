"""Credit balance, provisioning and consumption helpers."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.account_balance import AccountBalance
from models.usage_record import UsageRecord
from models.user import User
from services.credit_cycle import apply_due_reset, as_utc, credits_baseline, start_of_next_month, utc_now
from services.credit_types import ConsumeResult, CreditStoreUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")

INITIAL_GRANT_ACTION_TYPE = "initial_grant"


def _store_timeout() -> float:
    return max(float(settings.CREDITS_STORE_TIMEOUT_SECONDS), 0.1)


async def run_guarded(db: AsyncSession, operation: str, work: Callable[[], Awaitable[T]]) -> T:
    """Run one unit of work against the store, failing closed on faults.

    Timeouts and driver errors roll the session back and surface as
    ``CreditStoreUnavailable`` so callers never see a half-applied change.
    """
    try:
        return await asyncio.wait_for(work(), timeout=_store_timeout())
    except asyncio.TimeoutError as exc:
        await db.rollback()
        logger.error("Credits store timed out during %s", operation)
        raise CreditStoreUnavailable(f"Credits store timed out during {operation}.") from exc
    except CreditStoreUnavailable:
        await db.rollback()
        raise
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("Credits store failure during %s", operation)
        raise CreditStoreUnavailable(f"Credits store unavailable during {operation}.") from exc


def require_positive_int(value: Any, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"{field} must be a positive integer")
    return value


async def load_account(user_id: str, db: AsyncSession) -> Optional[AccountBalance]:
    result = await db.execute(
        select(AccountBalance)
        .where(AccountBalance.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _upsert_user(
    user_id: str,
    db: AsyncSession,
    *,
    email: Optional[str] = None,
    name: Optional[str] = None,
) -> User:
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user is None:
        user = User(id=user_id, email=email, name=name)
        db.add(user)
    else:
        if email:
            user.email = email
        if name:
            user.name = name
    await db.flush()
    return user


async def ensure_account(
    user_id: str,
    db: AsyncSession,
    *,
    email: Optional[str] = None,
    name: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Tuple[AccountBalance, bool]:
    """Provision the user's balance with the baseline grant if it is missing.

    Returns ``(account, created)``. Safe to call on every request: a
    concurrent provisioner losing the insert race re-reads the winner's row.
    """
    current = utc_now(now)

    async def _work() -> Tuple[AccountBalance, bool]:
        for _ in range(2):
            try:
                await _upsert_user(user_id, db, email=email, name=name)
                account = await load_account(user_id, db)
                if account is not None:
                    await db.commit()
                    return account, False

                baseline = credits_baseline()
                account = AccountBalance(
                    user_id=user_id,
                    credits_remaining=baseline,
                    last_reset_at=current,
                    next_reset_at=start_of_next_month(current),
                )
                db.add(account)
                db.add(
                    UsageRecord(
                        user_id=user_id,
                        action_type=INITIAL_GRANT_ACTION_TYPE,
                        credits_used=-baseline,
                        credits_remaining_after=baseline,
                    )
                )
                await db.commit()
                logger.info("Provisioned credits account for user=%s with %s credits", user_id, baseline)
                return account, True
            except IntegrityError:
                await db.rollback()
                logger.info("Concurrent provisioning detected for user=%s; re-reading", user_id)

        account = await load_account(user_id, db)
        if account is None:
            raise CreditStoreUnavailable(f"Could not provision credits account for user {user_id}.")
        await db.commit()
        return account, False

    return await run_guarded(db, "provisioning", _work)


async def consume_credits(
    user_id: str,
    db: AsyncSession,
    *,
    action_type: str,
    cost: int,
    now: Optional[datetime] = None,
) -> ConsumeResult:
    """Atomically debit ``cost`` credits, or report the shortfall.

    The debit is a single conditional UPDATE that only matches while the
    balance covers the cost, so concurrent calls can never push it below zero.
    A missing account behaves like a zero balance.
    """
    debit = require_positive_int(cost, "cost")
    action = (action_type or "").strip()
    if not action:
        raise ValueError("action_type is required")

    async def _work() -> ConsumeResult:
        await apply_due_reset(user_id, db, now=now)

        result = await db.execute(
            update(AccountBalance)
            .where(
                AccountBalance.user_id == user_id,
                AccountBalance.credits_remaining >= debit,
            )
            .values(credits_remaining=AccountBalance.credits_remaining - debit)
            .returning(AccountBalance.credits_remaining, AccountBalance.next_reset_at)
            .execution_options(synchronize_session=False)
        )
        row = result.first()

        if row is None:
            current = await db.execute(
                select(AccountBalance.credits_remaining, AccountBalance.next_reset_at).where(
                    AccountBalance.user_id == user_id
                )
            )
            snapshot = current.first()
            await db.commit()
            available = int(snapshot.credits_remaining) if snapshot else 0
            logger.info(
                "Insufficient credits for user=%s action=%s: required=%s available=%s",
                user_id,
                action,
                debit,
                available,
            )
            return ConsumeResult(
                success=False,
                credits_remaining=available,
                credits_required=debit,
                next_reset_at=as_utc(snapshot.next_reset_at) if snapshot else None,
            )

        remaining = int(row.credits_remaining)
        db.add(
            UsageRecord(
                user_id=user_id,
                action_type=action,
                credits_used=debit,
                credits_remaining_after=remaining,
            )
        )
        await db.commit()
        logger.info("Consumed %s credits for user=%s action=%s; remaining=%s", debit, user_id, action, remaining)
        return ConsumeResult(
            success=True,
            credits_remaining=remaining,
            credits_used=debit,
            next_reset_at=as_utc(row.next_reset_at),
        )

    return await run_guarded(db, "consumption", _work)


async def get_usage_records(user_id: str, db: AsyncSession, *, limit: Optional[int] = None) -> List[UsageRecord]:
    cap = int(limit if limit is not None else settings.CREDITS_USAGE_LOG_LIMIT)
    cap = max(1, min(cap, 100))
    result = await db.execute(
        select(UsageRecord)
        .where(UsageRecord.user_id == user_id)
        .order_by(UsageRecord.id.desc())
        .limit(cap)
    )
    return list(result.scalars().all())


def _serialize_usage_record(record: UsageRecord) -> Dict[str, Any]:
    created_at = as_utc(record.created_at)
    return {
        "id": record.id,
        "action_type": record.action_type,
        "credits_used": record.credits_used,
        "credits_remaining_after": record.credits_remaining_after,
        "reference_id": record.reference_id,
        "created_at": created_at.isoformat() if created_at else None,
    }


async def get_balance_summary(
    user_id: str,
    db: AsyncSession,
    *,
    include_logs: bool = False,
    limit: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Read the balance, applying a pending monthly reset first."""

    async def _work() -> Dict[str, Any]:
        await apply_due_reset(user_id, db, now=now)
        await db.commit()

        account = await load_account(user_id, db)
        last_reset_at = as_utc(account.last_reset_at) if account else None
        next_reset_at = as_utc(account.next_reset_at) if account else None
        summary: Dict[str, Any] = {
            "credits_remaining": int(account.credits_remaining) if account else 0,
            "last_reset_at": last_reset_at.isoformat() if last_reset_at else None,
            "next_reset_at": next_reset_at.isoformat() if next_reset_at else None,
        }
        if include_logs:
            records = await get_usage_records(user_id, db, limit=limit)
            summary["usage_records"] = [_serialize_usage_record(record) for record in records]
        await db.commit()
        return summary

    return await run_guarded(db, "balance query", _work)
