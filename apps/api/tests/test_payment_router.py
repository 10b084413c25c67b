import base64
import json
import os
from contextlib import asynccontextmanager
from unittest.mock import patch

import pytest
import pytest_asyncio
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from httpx import ASGITransport, AsyncClient
from redis.exceptions import RedisError

from conftest import FakePaymentProvider, make_registry
from database import get_db
from main import app
from routers.payment_deps import get_provider_registry, get_region
from services.payment_store import StoreUnavailableError
from services.session_token import create_session_token


BUYER_ID = "buyer-user"
BUYER_EMAIL = "buyer@example.com"
API_V3_KEY = "0123456789abcdef0123456789abcdef"


def _auth_header(user_id: str, email: str, region: str) -> dict:
    return {"Authorization": f"Bearer {create_session_token(user_id, email=email, region=region)['token']}"}


BUYER_AUTH_HEADER = _auth_header(BUYER_ID, BUYER_EMAIL, "INTL")
CN_BUYER_AUTH_HEADER = _auth_header(BUYER_ID, BUYER_EMAIL, "CN")
OTHER_AUTH_HEADER = _auth_header("other-user", "other@example.com", "INTL")


@asynccontextmanager
async def _payment_client(session_maker, region, registry):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_region] = lambda: region
    app.dependency_overrides[get_provider_registry] = lambda: registry
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            yield client
    finally:
        app.dependency_overrides.pop(get_db, None)
        app.dependency_overrides.pop(get_region, None)
        app.dependency_overrides.pop(get_provider_registry, None)


@pytest_asyncio.fixture
async def intl_client(session_maker, seed_user):
    await seed_user(BUYER_EMAIL, user_id=BUYER_ID)
    registry = make_registry("INTL", stripe=FakePaymentProvider("stripe"))
    async with _payment_client(session_maker, "INTL", registry) as client:
        yield client, registry


@pytest_asyncio.fixture
async def cn_client(session_maker, seed_user):
    await seed_user(BUYER_EMAIL, user_id=BUYER_ID)
    registry = make_registry("CN", wechatpay=FakePaymentProvider("wechatpay", currency="CNY"))
    async with _payment_client(session_maker, "CN", registry) as client:
        yield client, registry


def _encrypted_notification(resource: dict, *, key: str = API_V3_KEY) -> bytes:
    nonce = "a1b2c3d4e5f6"
    associated_data = "transaction"
    ciphertext = AESGCM(key.encode()).encrypt(
        nonce.encode(), json.dumps(resource).encode(), associated_data.encode()
    )
    return json.dumps(
        {
            "id": "EV-2026",
            "event_type": "TRANSACTION.SUCCESS",
            "resource_type": "encrypt-resource",
            "resource": {
                "algorithm": "AEAD_AES_256_GCM",
                "ciphertext": base64.b64encode(ciphertext).decode(),
                "nonce": nonce,
                "associated_data": associated_data,
            },
        }
    ).encode()


@pytest.mark.asyncio
async def test_checkout_then_confirm_grants_credits_once(intl_client):
    client, registry = intl_client

    create_resp = await client.post(
        "/payment/create",
        json={"plan_id": "pro", "billing_cycle": "yearly"},
        headers=BUYER_AUTH_HEADER,
    )
    assert create_resp.status_code == 200
    order = create_resp.json()
    assert order["payment_method"] == "stripe"
    assert order["currency"] == "USD"
    assert order["payment_url"].startswith("https://checkout.stripe.test/")
    reference_id = order["reference_id"]

    status_resp = await client.get(f"/payment/status?reference_id={reference_id}", headers=BUYER_AUTH_HEADER)
    assert status_resp.status_code == 200
    assert status_resp.json()["status"] == "pending"

    confirm_body = {"session_id": reference_id, "user_email": BUYER_EMAIL}
    first = await client.post("/payment/confirm", json=confirm_body, headers={"Accept-Language": "en-US"})
    assert first.status_code == 200
    payload = first.json()
    assert payload["success"] is True
    assert payload["already_processed"] is False
    assert payload["credits_to_add"] == 10800
    assert payload["message"] == "Payment confirmed and credits added."

    second = await client.post("/payment/confirm", json=confirm_body)
    assert second.status_code == 200
    assert second.json()["already_processed"] is True

    credits_resp = await client.get("/billing/credits", headers=BUYER_AUTH_HEADER)
    assert credits_resp.status_code == 200
    credits_payload = credits_resp.json()
    assert credits_payload["balance"] == 10800
    assert len(credits_payload["recent_entries"]) == 1
    assert credits_payload["recent_entries"][0]["reference_id"] == reference_id

    history_resp = await client.get("/payment/history", headers=BUYER_AUTH_HEADER)
    assert history_resp.status_code == 200
    items = history_resp.json()["items"]
    assert [item["reference_id"] for item in items] == [reference_id]
    assert items[0]["credits_applied"] is True


@pytest.mark.asyncio
async def test_confirm_business_failures_return_200_with_localized_message(intl_client):
    client, _registry = intl_client

    resp = await client.post(
        "/payment/confirm",
        json={"reference_id": "cs_x", "plan_id": "pro"},
        headers={"Accept-Language": "zh-CN"},
    )
    assert resp.status_code == 200
    payload = resp.json()
    assert payload["success"] is False
    assert payload["error"] == "missing_recipient"
    assert payload["message"] == "缺少支付账户信息。"

    unknown = await client.post(
        "/payment/confirm",
        json={"session_id": "cs_y", "user_email": BUYER_EMAIL, "plan_id": "nonexistent"},
    )
    assert unknown.status_code == 200
    assert unknown.json()["error"] == "unknown_plan"


@pytest.mark.asyncio
async def test_confirm_rejects_method_from_other_region(cn_client):
    client, _registry = cn_client

    resp = await client.post(
        "/payment/confirm",
        json={"session_id": "cs_test_abc", "user_email": BUYER_EMAIL, "plan_id": "pro"},
    )
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_confirm_ignores_skip_flag_from_public_body(cn_client, load_credits):
    client, registry = cn_client
    registry.get("wechatpay").success = False

    resp = await client.post(
        "/payment/confirm",
        json={
            "out_trade_no": "MT20261019101010AAAA0000",
            "user_email": BUYER_EMAIL,
            "plan_id": "pro",
            "skip_provider_verification": True,
        },
    )
    assert resp.status_code == 200
    assert resp.json()["error"] == "payment_not_verified"
    assert await load_credits(BUYER_EMAIL) == 0


@pytest.mark.asyncio
async def test_store_outage_is_reported_as_retryable(intl_client):
    client, _registry = intl_client

    with patch(
        "services.payment_store.SqlPaymentStore.find_payment_by_reference",
        side_effect=StoreUnavailableError("down"),
    ):
        resp = await client.post(
            "/payment/confirm",
            json={"session_id": "cs_outage", "user_email": BUYER_EMAIL, "plan_id": "pro"},
        )
    assert resp.status_code == 503
    assert resp.json()["error"] == "store_unavailable"


@pytest.mark.asyncio
async def test_payment_status_is_private_and_cancel_closes_pending(intl_client):
    client, _registry = intl_client
    order = (await client.post("/payment/create", json={"plan_id": "basic"}, headers=BUYER_AUTH_HEADER)).json()

    foreign = await client.get(f"/payment/status?reference_id={order['reference_id']}", headers=OTHER_AUTH_HEADER)
    assert foreign.status_code == 404

    cancel = await client.post(
        "/payment/cancel",
        json={"reference_id": order["reference_id"]},
        headers=BUYER_AUTH_HEADER,
    )
    assert cancel.status_code == 200
    assert cancel.json()["cancelled"] is True

    status = await client.get(f"/payment/status?reference_id={order['reference_id']}", headers=BUYER_AUTH_HEADER)
    assert status.json()["status"] == "failed"


@pytest.mark.asyncio
async def test_create_rejects_unknown_plan_and_foreign_method(intl_client):
    client, _registry = intl_client

    unknown = await client.post("/payment/create", json={"plan_id": "platinum"}, headers=BUYER_AUTH_HEADER)
    assert unknown.status_code == 422

    foreign = await client.post(
        "/payment/create",
        json={"plan_id": "pro", "payment_method": "wechatpay"},
        headers=BUYER_AUTH_HEADER,
    )
    assert foreign.status_code == 403

    alipay = await client.post(
        "/payment/create",
        json={"plan_id": "pro", "payment_method": "alipay"},
        headers=BUYER_AUTH_HEADER,
    )
    assert alipay.status_code == 503


@pytest.mark.asyncio
async def test_plans_endpoint_lists_region_rails(cn_client):
    client, _registry = cn_client

    resp = await client.get("/billing/plans")
    assert resp.status_code == 200
    payload = resp.json()
    assert payload["region"] == "CN"
    assert payload["payment_methods"] == ["wechatpay", "alipay"]
    assert {plan["id"] for plan in payload["plans"]} == {"basic", "pro", "business"}


@pytest.mark.asyncio
async def test_wechat_notification_credits_pending_order_once(cn_client, load_credits, load_payment):
    client, registry = cn_client
    order = (await client.post("/payment/create", json={"plan_id": "pro"}, headers=CN_BUYER_AUTH_HEADER)).json()
    assert order["code_url"].startswith("weixin://")
    out_trade_no = order["reference_id"]
    body = _encrypted_notification(
        {"out_trade_no": out_trade_no, "transaction_id": "4200002026101900001", "trade_state": "SUCCESS"}
    )

    with patch("routers.payment.settings.WECHAT_PAY_API_V3_KEY", API_V3_KEY):
        first = await client.post("/payment/webhook/wechat", content=body)
        second = await client.post("/payment/webhook/wechat", content=body)

    assert first.status_code == 200
    assert first.json() == {"code": "SUCCESS", "message": "Ok"}
    assert second.status_code == 200
    assert await load_credits(BUYER_EMAIL) == 900
    record = await load_payment(out_trade_no)
    assert record.credits_applied is True
    assert record.provider_transaction_id == "4200002026101900001"
    assert registry.get("wechatpay").verify_calls == []


@pytest.mark.asyncio
async def test_wechat_notification_with_wrong_key_is_rejected(cn_client, load_credits):
    client, _registry = cn_client
    body = _encrypted_notification(
        {"out_trade_no": "MT1", "transaction_id": "4200", "trade_state": "SUCCESS"},
        key=os.urandom(16).hex(),
    )

    with patch("routers.payment.settings.WECHAT_PAY_API_V3_KEY", API_V3_KEY):
        resp = await client.post("/payment/webhook/wechat", content=body)

    assert resp.status_code == 400
    assert resp.json()["code"] == "FAIL"
    assert await load_credits(BUYER_EMAIL) == 0


@pytest.mark.asyncio
async def test_wechat_webhook_unavailable_outside_cn(intl_client):
    client, _registry = intl_client
    resp = await client.post("/payment/webhook/wechat", content=b"{}")
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_stripe_webhook_confirms_paid_session(intl_client, load_credits):
    client, registry = intl_client
    order = (await client.post("/payment/create", json={"plan_id": "business"}, headers=BUYER_AUTH_HEADER)).json()
    event = {
        "id": "evt_123",
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": order["reference_id"],
                "payment_status": "paid",
                "customer_details": {"email": BUYER_EMAIL},
                "metadata": {"plan_id": "business", "billing_cycle": "monthly"},
                "payment_intent": "pi_123",
            }
        },
    }

    with patch("routers.payment.construct_webhook_event", return_value=event):
        first = await client.post("/payment/webhook/stripe", content=b"{}", headers={"stripe-signature": "t=1,v1=x"})
        duplicate = await client.post("/payment/webhook/stripe", content=b"{}", headers={"stripe-signature": "t=1,v1=x"})

    assert first.status_code == 200
    assert first.json()["result"]["credits_to_add"] == 2800
    assert duplicate.json()["duplicate"] is True
    assert await load_credits(BUYER_EMAIL) == 2800
    assert registry.get("stripe").verify_calls == []


@pytest.mark.asyncio
async def test_stripe_webhook_rejects_bad_signature(intl_client):
    client, _registry = intl_client

    with patch("routers.payment.settings.STRIPE_WEBHOOK_SECRET", "whsec_test"):
        resp = await client.post(
            "/payment/webhook/stripe",
            content=b'{"id": "evt_forged"}',
            headers={"stripe-signature": "t=1,v1=deadbeef"},
        )
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_wechat_query_passthrough(cn_client):
    client, _registry = cn_client
    resp = await client.get("/payment/wechat/query?out_trade_no=MT42", headers=CN_BUYER_AUTH_HEADER)
    assert resp.status_code == 200
    payload = resp.json()
    assert payload["trade_state"] == "SUCCESS"
    assert payload["transaction_id"] == "wx_MT42"


@pytest.mark.asyncio
async def test_payment_endpoints_require_session_token(intl_client):
    client, _registry = intl_client

    assert (await client.post("/payment/create", json={"plan_id": "pro"})).status_code == 401
    assert (await client.get("/payment/history")).status_code == 401
    assert (await client.get("/billing/credits", headers={"Authorization": "Bearer nope"})).status_code == 401
    foreign_scope = await client.get("/payment/history?user_id=someone-else", headers=BUYER_AUTH_HEADER)
    assert foreign_scope.status_code == 403


@pytest.mark.asyncio
async def test_confirm_is_rate_limited_per_caller(intl_client):
    client, _registry = intl_client
    app.state.disable_rate_limits = False

    with patch("routers.rate_limit._hit_redis", side_effect=RedisError("offline")):
        statuses = []
        for _ in range(61):
            resp = await client.post("/payment/confirm", json={"reference_id": "cs_flood"})
            statuses.append(resp.status_code)

    assert statuses[:60] == [200] * 60
    assert statuses[60] == 429


@pytest.mark.asyncio
async def test_session_from_other_region_is_forbidden(intl_client):
    client, _registry = intl_client

    history = await client.get("/payment/history", headers=CN_BUYER_AUTH_HEADER)
    assert history.status_code == 403
    create = await client.post("/payment/create", json={"plan_id": "pro"}, headers=CN_BUYER_AUTH_HEADER)
    assert create.status_code == 403


@pytest.mark.asyncio
async def test_confirm_rejects_reference_that_differs_from_session(intl_client, load_credits):
    client, registry = intl_client
    order = (await client.post("/payment/create", json={"plan_id": "basic"}, headers=BUYER_AUTH_HEADER)).json()

    resp = await client.post(
        "/payment/confirm",
        json={
            "reference_id": "cs_fresh_reference",
            "session_id": order["reference_id"],
            "user_email": BUYER_EMAIL,
            "plan_id": "business",
        },
    )
    assert resp.status_code == 200
    assert resp.json()["error"] == "payment_not_verified"
    assert await load_credits(BUYER_EMAIL) == 0
    assert registry.get("stripe").verify_calls == []
