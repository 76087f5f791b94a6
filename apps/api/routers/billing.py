"""Billing router: credit packs, checkout and payment reconciliation."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import require_caller, scoped_user_id
from routers.credits import store_unavailable
from routers.rate_limit import rate_limit
from services.credit_types import (
    CreditStoreUnavailable,
    PaymentOwnershipError,
    PaymentProviderUnavailable,
    PaymentVerificationError,
)
from services.payments import (
    StripePaymentProvider,
    get_payment_provider,
    handle_webhook_event,
    list_credit_packs,
    reconcile_checkout_session,
    start_checkout,
)
from services.session_token import SessionClaims

router = APIRouter()
logger = logging.getLogger(__name__)


class CheckoutRequest(BaseModel):
    user_id: Optional[str] = None
    pack_size: str = "small"
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class ReconcileRequest(BaseModel):
    payment_id: str = Field(min_length=1, max_length=255)


def _require_billing_enabled() -> None:
    if not settings.BILLING_ENABLED:
        raise HTTPException(status_code=503, detail="Billing is disabled. Enable BILLING_ENABLED to purchase credits.")


@router.get("/packs")
async def credit_packs():
    return {"packs": list_credit_packs()}


@router.post("/checkout")
async def create_checkout_session(
    request: CheckoutRequest,
    _rate_limit: None = Depends(rate_limit("billing_checkout", limit=20, window_seconds=3600)),
    caller: SessionClaims = Depends(require_caller),
    provider: StripePaymentProvider = Depends(get_payment_provider),
):
    user_id = scoped_user_id(caller, request.user_id)
    _require_billing_enabled()

    try:
        return await start_checkout(
            user_id=user_id,
            pack_size=request.pack_size,
            provider=provider,
            success_url=request.success_url,
            cancel_url=request.cancel_url,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except PaymentProviderUnavailable as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc


@router.post("/webhook")
async def payment_webhook(
    request: Request,
    provider: StripePaymentProvider = Depends(get_payment_provider),
    db: AsyncSession = Depends(get_db),
):
    """Processor webhook; the signature is checked before anything is read."""
    payload = await request.body()
    try:
        event = provider.parse_webhook(payload, request.headers.get("stripe-signature"))
        return await handle_webhook_event(event, db)
    except PaymentVerificationError as exc:
        logger.warning("Rejected payment webhook: %s", exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except CreditStoreUnavailable as exc:
        raise store_unavailable(exc) from exc


@router.post("/reconcile")
async def reconcile_payment_session(
    request: ReconcileRequest,
    _rate_limit: None = Depends(rate_limit("billing_reconcile", limit=60, window_seconds=3600)),
    caller: SessionClaims = Depends(require_caller),
    provider: StripePaymentProvider = Depends(get_payment_provider),
    db: AsyncSession = Depends(get_db),
):
    """Client-side fallback when the webhook has not landed yet."""
    _require_billing_enabled()
    try:
        result = await reconcile_checkout_session(request.payment_id, caller.user_id, provider, db)
    except PaymentOwnershipError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except PaymentProviderUnavailable as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    except CreditStoreUnavailable as exc:
        raise store_unavailable(exc) from exc
    return result.to_payload()
