import asyncio
import time

import pytest

from config import settings
from conftest import auth_header, checkout_completed_event, sign_stripe_payload


BUYER = "billing-buyer"


async def _post_webhook(api_client, payload, signature=None):
    headers = {"Content-Type": "application/json"}
    if signature is not None:
        headers["Stripe-Signature"] = signature
    return await api_client.post("/billing/webhook", content=payload, headers=headers)


async def _balance(api_client, user_id=BUYER):
    response = await api_client.get("/credits/balance", params={"include_logs": "true"}, headers=auth_header(user_id))
    return response.json()


@pytest.mark.asyncio
async def test_list_credit_packs(api_client):
    response = await api_client.get("/billing/packs")
    assert response.status_code == 200
    packs = {pack["pack_size"]: pack for pack in response.json()["packs"]}
    assert packs["small"]["credits"] == 100
    assert packs["medium"]["credits"] == 300
    assert packs["large"]["price_cents"] == 7500


@pytest.mark.asyncio
async def test_checkout_creates_session_with_placeholder_return_url(api_client, payment_provider):
    response = await api_client.post(
        "/billing/checkout",
        json={"pack_size": "medium", "success_url": "https://app.test/credits"},
        headers=auth_header(BUYER),
    )

    assert response.status_code == 200
    body = response.json()
    assert body["session_id"] == "cs_test_1"
    assert body["pack"]["credits"] == 300
    created = payment_provider.created[0]
    assert created["user_id"] == BUYER
    assert created["success_url"] == "https://app.test/credits?session_id={CHECKOUT_SESSION_ID}"


@pytest.mark.asyncio
async def test_checkout_error_mapping(api_client, payment_provider, monkeypatch):
    headers = auth_header(BUYER)

    invalid = await api_client.post("/billing/checkout", json={"pack_size": "huge"}, headers=headers)
    assert invalid.status_code == 400

    payment_provider.unavailable = True
    down = await api_client.post("/billing/checkout", json={"pack_size": "small"}, headers=headers)
    assert down.status_code == 502

    monkeypatch.setattr(settings, "BILLING_ENABLED", False)
    disabled = await api_client.post("/billing/checkout", json={"pack_size": "small"}, headers=headers)
    assert disabled.status_code == 503


@pytest.mark.asyncio
async def test_signed_webhook_applies_credits_once(api_client):
    payload = checkout_completed_event("cs_test_hook", BUYER, 300)

    first = await _post_webhook(api_client, payload, sign_stripe_payload(payload))
    assert first.status_code == 200
    assert first.json()["applied"] is True
    assert first.json()["credits_remaining"] == settings.CREDITS_BASELINE + 300

    replay = await _post_webhook(api_client, payload, sign_stripe_payload(payload))
    assert replay.status_code == 200
    assert replay.json()["applied"] is False
    assert replay.json()["received"] is True

    balance = await _balance(api_client)
    assert balance["credits_remaining"] == settings.CREDITS_BASELINE + 300
    purchases = [record for record in balance["usage_records"] if record["action_type"] == "purchase"]
    assert len(purchases) == 1
    assert purchases[0]["reference_id"] == "cs_test_hook"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "signature",
    [
        None,
        "t=1,v1=deadbeef",
        "not-a-signature",
    ],
)
async def test_webhook_rejects_unverified_payloads(api_client, signature):
    payload = checkout_completed_event("cs_test_forged", BUYER, 1000)

    response = await _post_webhook(api_client, payload, signature)

    assert response.status_code == 400
    assert (await _balance(api_client))["credits_remaining"] == settings.CREDITS_BASELINE


@pytest.mark.asyncio
async def test_webhook_rejects_wrong_secret_and_stale_timestamp(api_client):
    payload = checkout_completed_event("cs_test_stale", BUYER, 100)

    wrong_secret = await _post_webhook(api_client, payload, sign_stripe_payload(payload, secret="whsec_other"))
    assert wrong_secret.status_code == 400

    stale = await _post_webhook(api_client, payload, sign_stripe_payload(payload, timestamp=int(time.time()) - 3600))
    assert stale.status_code == 400

    tampered = payload.replace('"credits": "100"', '"credits": "1000"')
    forged = await _post_webhook(api_client, tampered, sign_stripe_payload(payload))
    assert forged.status_code == 400

    assert (await _balance(api_client))["credits_remaining"] == settings.CREDITS_BASELINE


@pytest.mark.asyncio
async def test_webhook_acknowledges_ignored_events(api_client):
    other = '{"id": "evt_other", "type": "customer.created", "data": {"object": {}}}'
    response = await _post_webhook(api_client, other, sign_stripe_payload(other))
    assert response.status_code == 200
    assert response.json() == {"received": True, "applied": False}

    unpaid = checkout_completed_event("cs_test_unpaid", BUYER, 100, payment_status="unpaid")
    response = await _post_webhook(api_client, unpaid, sign_stripe_payload(unpaid))
    assert response.status_code == 200
    assert response.json()["applied"] is False


@pytest.mark.asyncio
async def test_webhook_with_missing_metadata_is_rejected(api_client):
    payload = checkout_completed_event("cs_test_nometa", BUYER, 100).replace(
        '"credits": "100"', '"credits": ""'
    )
    response = await _post_webhook(api_client, payload, sign_stripe_payload(payload))
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_manual_reconcile_applies_paid_session(api_client, payment_provider):
    payment_provider.add_session("cs_test_manual", BUYER, 100)

    response = await api_client.post(
        "/billing/reconcile", json={"payment_id": "cs_test_manual"}, headers=auth_header(BUYER)
    )

    assert response.status_code == 200
    assert response.json()["applied"] is True
    assert response.json()["credits_remaining"] == settings.CREDITS_BASELINE + 100

    again = await api_client.post(
        "/billing/reconcile", json={"payment_id": "cs_test_manual"}, headers=auth_header(BUYER)
    )
    assert again.status_code == 200
    assert again.json()["applied"] is False


@pytest.mark.asyncio
async def test_webhook_and_manual_reconcile_race_applies_once(api_client, payment_provider):
    payment_provider.add_session("cs_test_race", BUYER, 300)
    payload = checkout_completed_event("cs_test_race", BUYER, 300)

    webhook, manual = await asyncio.gather(
        _post_webhook(api_client, payload, sign_stripe_payload(payload)),
        api_client.post("/billing/reconcile", json={"payment_id": "cs_test_race"}, headers=auth_header(BUYER)),
    )

    assert webhook.status_code == 200
    assert manual.status_code == 200
    assert [webhook.json()["applied"], manual.json()["applied"]].count(True) == 1
    assert (await _balance(api_client))["credits_remaining"] == settings.CREDITS_BASELINE + 300


@pytest.mark.asyncio
async def test_manual_reconcile_error_mapping(api_client, payment_provider):
    headers = auth_header(BUYER)
    payment_provider.add_session("cs_test_foreign", "another-user", 100)
    payment_provider.add_session("cs_test_pending", BUYER, 100, payment_status="unpaid")

    foreign = await api_client.post("/billing/reconcile", json={"payment_id": "cs_test_foreign"}, headers=headers)
    assert foreign.status_code == 403

    pending = await api_client.post("/billing/reconcile", json={"payment_id": "cs_test_pending"}, headers=headers)
    assert pending.status_code == 400

    unknown = await api_client.post("/billing/reconcile", json={"payment_id": "cs_test_unknown"}, headers=headers)
    assert unknown.status_code == 400

    payment_provider.unavailable = True
    down = await api_client.post("/billing/reconcile", json={"payment_id": "cs_test_pending"}, headers=headers)
    assert down.status_code == 502

    unauthenticated = await api_client.post("/billing/reconcile", json={"payment_id": "cs_test_pending"})
    assert unauthenticated.status_code == 401

    assert (await _balance(api_client))["credits_remaining"] == settings.CREDITS_BASELINE


@pytest.mark.asyncio
async def test_webhook_rejects_non_utf8_body(api_client):
    response = await _post_webhook(api_client, b"\xff\xfe\xfa garbage", "t=1,v1=deadbeef")

    assert response.status_code == 400
    assert (await _balance(api_client))["credits_remaining"] == settings.CREDITS_BASELINE


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        '{"id": "evt_bad", "type": "checkout.session.completed", "data": "oops"}',
        '{"id": "evt_bad", "type": "checkout.session.completed", "data": {"object": ["x"]}}',
        '{"id": "evt_bad", "type": "checkout.session.completed"}',
    ],
)
async def test_signed_webhook_with_malformed_session_is_rejected(api_client, payload):
    response = await _post_webhook(api_client, payload, sign_stripe_payload(payload))

    assert response.status_code == 400
    assert (await _balance(api_client))["credits_remaining"] == settings.CREDITS_BASELINE
