import hashlib
import hmac
import json
import time
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base, get_db
from main import app
from routers import rate_limit
from services.credit_types import (
    CheckoutSessionLink,
    CheckoutSessionStatus,
    PaymentProviderUnavailable,
    PaymentVerificationError,
)
from services.payments import StripePaymentProvider, get_payment_provider
from services.session_token import issue_session_token


TEST_WEBHOOK_SECRET = "whsec_test_instagen_secret"


def auth_header(user_id: str, email: Optional[str] = None) -> Dict[str, str]:
    return {"Authorization": f"Bearer {issue_session_token(user_id, email=email)}"}


def sign_stripe_payload(payload: str, secret: str = TEST_WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header the way Stripe signs webhook bodies."""
    ts = int(timestamp if timestamp is not None else time.time())
    digest = hmac.new(secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def checkout_completed_event(
    session_id: str,
    user_id: str,
    credits: int,
    payment_status: str = "paid",
) -> str:
    return json.dumps(
        {
            "id": f"evt_{session_id}",
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": session_id,
                    "object": "checkout.session",
                    "payment_status": payment_status,
                    "client_reference_id": user_id,
                    "metadata": {"user_id": user_id, "pack_size": "small", "credits": str(credits)},
                }
            },
        }
    )


class FakePaymentProvider:
    """Stands in for Stripe; webhook signatures are still verified for real."""

    def __init__(self):
        self._verifier = StripePaymentProvider(secret_key="", webhook_secret=TEST_WEBHOOK_SECRET)
        self.sessions: Dict[str, CheckoutSessionStatus] = {}
        self.created: List[Dict[str, Any]] = []
        self.unavailable = False

    def add_session(self, session_id: str, user_id: str, credits: int, payment_status: str = "paid") -> None:
        self.sessions[session_id] = CheckoutSessionStatus(
            session_id=session_id,
            payment_status=payment_status,
            user_id=user_id,
            credits=credits,
            pack_size="small",
        )

    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        return self._verifier.parse_webhook(payload, signature)

    async def retrieve_checkout_session(self, session_id: str) -> CheckoutSessionStatus:
        if self.unavailable:
            raise PaymentProviderUnavailable("Stripe is unavailable; retry later.")
        status = self.sessions.get(session_id)
        if status is None:
            raise PaymentVerificationError(f"Unknown checkout session {session_id}.")
        return status

    async def create_checkout_session(self, *, user_id, pack, success_url, cancel_url) -> CheckoutSessionLink:
        if self.unavailable:
            raise PaymentProviderUnavailable("Stripe checkout session creation failed.")
        session_id = f"cs_test_{len(self.created) + 1}"
        self.created.append(
            {
                "session_id": session_id,
                "user_id": user_id,
                "pack": pack,
                "success_url": success_url,
                "cancel_url": cancel_url,
            }
        )
        return CheckoutSessionLink(session_id=session_id, url=f"https://checkout.stripe.test/{session_id}")


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "credits.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest.fixture
def payment_provider():
    return FakePaymentProvider()


@pytest_asyncio.fixture
async def api_client(session_maker, payment_provider):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_provider] = lambda: payment_provider
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(get_payment_provider, None)
