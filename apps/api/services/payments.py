"""Payment provider integration and exactly-once credit reconciliation."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

import stripe
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.account_balance import AccountBalance
from models.payment_event import PaymentEvent
from models.usage_record import UsageRecord
from services.credit_cycle import apply_due_reset
from services.credit_types import (
    CheckoutSessionLink,
    CheckoutSessionStatus,
    CreditStoreUnavailable,
    PaymentOwnershipError,
    PaymentProviderUnavailable,
    PaymentVerificationError,
    ReconcileResult,
)
from services.credits import ensure_account, require_positive_int, run_guarded

logger = logging.getLogger(__name__)

PURCHASE_ACTION_TYPE = "purchase"
CHECKOUT_COMPLETED_EVENT = "checkout.session.completed"
CHECKOUT_SESSION_PLACEHOLDER = "{CHECKOUT_SESSION_ID}"


@dataclass(frozen=True)
class CreditPack:
    size: str
    credits: int
    price_cents: int

    def to_payload(self) -> Dict[str, Any]:
        return {
            "pack_size": self.size,
            "credits": self.credits,
            "price_cents": self.price_cents,
            "currency": settings.STRIPE_CURRENCY,
        }


CREDIT_PACKS: Dict[str, CreditPack] = {
    "small": CreditPack(size="small", credits=100, price_cents=1000),
    "medium": CreditPack(size="medium", credits=300, price_cents=2500),
    "large": CreditPack(size="large", credits=1000, price_cents=7500),
}


def list_credit_packs() -> List[Dict[str, Any]]:
    return [pack.to_payload() for pack in CREDIT_PACKS.values()]


def get_credit_pack(pack_size: str) -> CreditPack:
    pack = CREDIT_PACKS.get((pack_size or "").strip().lower())
    if pack is None:
        raise ValueError(f"Pack size must be one of: {', '.join(CREDIT_PACKS)}")
    return pack


def _plain_dict(value: Any) -> Dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, dict):
        return dict(value)
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return dict(to_dict())
    return {}


def _parse_credits(raw: Any) -> int:
    try:
        return int(str(raw).strip())
    except (TypeError, ValueError):
        return 0


def _session_owner(metadata: Dict[str, Any], client_reference_id: Optional[str]) -> Optional[str]:
    owner = metadata.get("user_id") or metadata.get("userId") or client_reference_id
    owner = str(owner or "").strip()
    return owner or None


class StripePaymentProvider:
    """Payment processor handle backed by the Stripe API.

    Keys are held per instance; the module-level ``stripe.api_key`` is
    never set.
    """

    def __init__(
        self,
        *,
        secret_key: str,
        webhook_secret: str,
        webhook_tolerance_seconds: int = 300,
        currency: str = "eur",
    ):
        self._secret_key = (secret_key or "").strip()
        self._webhook_secret = (webhook_secret or "").strip()
        self._tolerance = int(webhook_tolerance_seconds)
        self._currency = currency

    @property
    def configured(self) -> bool:
        return bool(self._secret_key)

    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify the Stripe signature header and decode the event body."""
        if not self._webhook_secret:
            raise PaymentVerificationError("Stripe webhook secret is not configured.")
        if not signature:
            raise PaymentVerificationError("Missing Stripe-Signature header.")

        try:
            body = payload.decode("utf-8") if isinstance(payload, bytes) else str(payload)
        except UnicodeDecodeError as exc:
            raise PaymentVerificationError("Webhook payload is not valid UTF-8.") from exc
        try:
            stripe.WebhookSignature.verify_header(body, signature, self._webhook_secret, self._tolerance)
        except stripe.SignatureVerificationError as exc:
            raise PaymentVerificationError(f"Webhook signature verification failed: {exc}") from exc

        try:
            event = json.loads(body)
        except json.JSONDecodeError as exc:
            raise PaymentVerificationError("Webhook payload is not valid JSON.") from exc
        if not isinstance(event, dict) or not event.get("type"):
            raise PaymentVerificationError("Webhook payload is missing an event type.")
        return event

    async def retrieve_checkout_session(self, session_id: str) -> CheckoutSessionStatus:
        if not self.configured:
            raise PaymentProviderUnavailable("Stripe is not configured.")
        try:
            session = await asyncio.to_thread(
                stripe.checkout.Session.retrieve,
                session_id,
                api_key=self._secret_key,
            )
        except stripe.InvalidRequestError as exc:
            raise PaymentVerificationError(f"Unknown checkout session {session_id}.") from exc
        except stripe.StripeError as exc:
            logger.error("Stripe session lookup failed for %s: %s", session_id, exc)
            raise PaymentProviderUnavailable("Stripe is unavailable; retry later.") from exc

        metadata = _plain_dict(getattr(session, "metadata", None))
        return CheckoutSessionStatus(
            session_id=str(session.id),
            payment_status=str(getattr(session, "payment_status", "") or ""),
            user_id=_session_owner(metadata, getattr(session, "client_reference_id", None)),
            credits=_parse_credits(metadata.get("credits")),
            pack_size=metadata.get("pack_size"),
            amount_total=getattr(session, "amount_total", None),
        )

    async def create_checkout_session(
        self,
        *,
        user_id: str,
        pack: CreditPack,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSessionLink:
        if not self.configured:
            raise PaymentProviderUnavailable("Stripe is not configured.")
        try:
            session = await asyncio.to_thread(
                stripe.checkout.Session.create,
                api_key=self._secret_key,
                mode="payment",
                payment_method_types=["card"],
                line_items=[
                    {
                        "price_data": {
                            "currency": self._currency,
                            "product_data": {
                                "name": f"{pack.credits} Credits Pack",
                                "description": f"Purchase of {pack.credits} credits for your account",
                            },
                            "unit_amount": pack.price_cents,
                        },
                        "quantity": 1,
                    }
                ],
                success_url=success_url,
                cancel_url=cancel_url,
                client_reference_id=user_id,
                metadata={
                    "user_id": user_id,
                    "pack_size": pack.size,
                    "credits": str(pack.credits),
                },
            )
        except stripe.StripeError as exc:
            logger.error("Stripe checkout session creation failed for user=%s: %s", user_id, exc)
            raise PaymentProviderUnavailable("Stripe checkout session creation failed.") from exc
        return CheckoutSessionLink(session_id=str(session.id), url=getattr(session, "url", None))


def get_payment_provider() -> StripePaymentProvider:
    """FastAPI dependency returning the configured payment provider."""
    return StripePaymentProvider(
        secret_key=settings.STRIPE_SECRET_KEY,
        webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
        webhook_tolerance_seconds=settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
        currency=settings.STRIPE_CURRENCY,
    )


def build_checkout_urls(success_url: Optional[str], cancel_url: Optional[str], pack_size: str) -> Dict[str, str]:
    base_url = settings.APP_BASE_URL.rstrip("/")
    if success_url:
        if CHECKOUT_SESSION_PLACEHOLDER in success_url:
            final_success = success_url
        else:
            separator = "&" if "?" in success_url else "?"
            final_success = f"{success_url}{separator}session_id={CHECKOUT_SESSION_PLACEHOLDER}"
    else:
        final_success = (
            f"{base_url}/dashboard/credits?success=true&pack={pack_size}"
            f"&session_id={CHECKOUT_SESSION_PLACEHOLDER}"
        )
    final_cancel = cancel_url or f"{base_url}/dashboard/credits?canceled=true"
    return {"success_url": final_success, "cancel_url": final_cancel}


async def start_checkout(
    *,
    user_id: str,
    pack_size: str,
    provider: StripePaymentProvider,
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
) -> Dict[str, Any]:
    pack = get_credit_pack(pack_size)
    urls = build_checkout_urls(success_url, cancel_url, pack.size)
    link = await provider.create_checkout_session(
        user_id=user_id,
        pack=pack,
        success_url=urls["success_url"],
        cancel_url=urls["cancel_url"],
    )
    logger.info("Checkout session %s created for user=%s pack=%s", link.session_id, user_id, pack.size)
    return {"session_id": link.session_id, "url": link.url, "pack": pack.to_payload()}


async def reconcile_payment(
    payment_id: str,
    user_id: str,
    credits_granted: int,
    db: AsyncSession,
    *,
    source: str = "webhook",
    now: Optional[datetime] = None,
) -> ReconcileResult:
    """Apply a completed payment's credits exactly once.

    The ``PaymentEvent`` insert is the first write of the transaction and its
    primary key is the payment id, so whichever delivery path (webhook or
    client polling) commits first wins and every other attempt is a no-op.
    """
    reference = (payment_id or "").strip()
    if not reference:
        raise ValueError("payment_id is required")
    grant = require_positive_int(credits_granted, "credits_granted")

    await ensure_account(user_id, db, now=now)

    async def _work() -> ReconcileResult:
        existing = await db.execute(select(PaymentEvent.payment_id).where(PaymentEvent.payment_id == reference))
        if existing.scalar_one_or_none() is not None:
            await db.commit()
            logger.warning("Payment %s already reconciled; skipping (%s)", reference, source)
            return ReconcileResult(applied=False, payment_id=reference)

        db.add(PaymentEvent(payment_id=reference, user_id=user_id, credits_granted=grant, source=source))
        try:
            await db.flush()
        except IntegrityError:
            await db.rollback()
            logger.warning("Payment %s reconciled concurrently; skipping (%s)", reference, source)
            return ReconcileResult(applied=False, payment_id=reference)

        await apply_due_reset(user_id, db, now=now)
        result = await db.execute(
            update(AccountBalance)
            .where(AccountBalance.user_id == user_id)
            .values(credits_remaining=AccountBalance.credits_remaining + grant)
            .returning(AccountBalance.credits_remaining)
            .execution_options(synchronize_session=False)
        )
        remaining = result.scalar_one_or_none()
        if remaining is None:
            raise CreditStoreUnavailable(f"Credits account for user {user_id} disappeared during reconciliation.")

        db.add(
            UsageRecord(
                user_id=user_id,
                action_type=PURCHASE_ACTION_TYPE,
                credits_used=-grant,
                credits_remaining_after=int(remaining),
                reference_id=reference,
            )
        )
        await db.commit()
        logger.info(
            "Applied payment %s via %s: +%s credits for user=%s; balance=%s",
            reference,
            source,
            grant,
            user_id,
            remaining,
        )
        return ReconcileResult(
            applied=True,
            payment_id=reference,
            credits_granted=grant,
            credits_remaining=int(remaining),
        )

    return await run_guarded(db, "reconciliation", _work)


async def handle_webhook_event(event: Dict[str, Any], db: AsyncSession) -> Dict[str, Any]:
    """Reconcile a verified processor event; other event types are acknowledged."""
    event_type = str(event.get("type", ""))
    if event_type != CHECKOUT_COMPLETED_EVENT:
        logger.info("Ignoring webhook event type %s", event_type)
        return {"received": True, "applied": False}

    data = event.get("data")
    session = data.get("object") if isinstance(data, dict) else None
    if not isinstance(session, dict):
        raise PaymentVerificationError("Checkout session object missing from webhook payload.")
    session_id = str(session.get("id") or "").strip()
    if not session_id:
        raise PaymentVerificationError("Checkout session id missing from webhook payload.")

    if session.get("payment_status") != "paid":
        logger.info("Checkout session %s completed without payment (%s)", session_id, session.get("payment_status"))
        return {"received": True, "applied": False}

    metadata = _plain_dict(session.get("metadata"))
    user_id = _session_owner(metadata, session.get("client_reference_id"))
    credits = _parse_credits(metadata.get("credits"))
    if not user_id:
        raise PaymentVerificationError("User id not found in checkout session data.")
    if credits <= 0:
        raise PaymentVerificationError("Credits amount not found in checkout session data.")

    result = await reconcile_payment(session_id, user_id, credits, db, source="webhook")
    payload = result.to_payload()
    payload["received"] = True
    return payload


async def reconcile_checkout_session(
    session_id: str,
    user_id: str,
    provider: StripePaymentProvider,
    db: AsyncSession,
) -> ReconcileResult:
    """Fallback path: re-verify a session with the processor, then reconcile."""
    reference = (session_id or "").strip()
    if not reference:
        raise ValueError("payment_id is required")

    status = await provider.retrieve_checkout_session(reference)
    if status.user_id != user_id:
        raise PaymentOwnershipError("This payment session belongs to another user.")
    if not status.is_paid:
        raise PaymentVerificationError(f"Payment status is {status.payment_status or 'unknown'}.")
    if status.credits <= 0:
        raise PaymentVerificationError("Checkout session carries no credits.")

    return await reconcile_payment(reference, user_id, status.credits, db, source="manual")
