import base64
import json
from datetime import datetime, timedelta, UTC

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from standardwebhooks.webhooks import Webhook

from canvas_billing.app import app
from canvas_billing.config import get_settings
from canvas_billing.constants import COOKIE_NAME
from canvas_billing.db.session import get_db
from canvas_billing.http_client import build_polar_client
from canvas_billing.models.subscription import Subscription
from canvas_billing.services.auth_service import create_jwt
from canvas_billing.utils import now_utc


@pytest_asyncio.fixture
async def client(session_maker):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.pop(get_db, None)


def _login(client, user):
    client.cookies.set(COOKIE_NAME, create_jwt(user.id))


def _subscription_payload(email="alice@example.com", status="active"):
    return {
        "type": "subscription.created",
        "id": "evt_1",
        "data": {
            "id": "sub_A",
            "status": status,
            "customer": {"id": "cus_1", "email": email},
            "current_period_end": (now_utc() + timedelta(days=30)).isoformat(),
        },
    }


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_api_requires_session(client):
    assert (await client.get("/api/credits")).status_code == 401

    client.cookies.set(COOKIE_NAME, "garbage")
    assert (await client.get("/api/entitlement")).status_code == 401


@pytest.mark.asyncio
async def test_webhook_reconciles_and_grants(client, make_user, db):
    user = await make_user("alice@example.com")

    payload = _subscription_payload()
    response = await client.post("/webhooks/polar", json=payload)

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["action"] == "synced"
    assert body["user_id"] == user.id
    assert body["grant"]["granted"] == 10

    _login(client, user)
    summary = (await client.get("/api/credits")).json()
    assert summary["balance"] == 10
    assert summary["entitled"] is True
    assert [e["entry_type"] for e in summary["recent_entries"]] == ["grant"]

    again = await client.post("/webhooks/polar", json=payload)
    assert again.json()["grant"]["skipped"] is True
    assert (await client.get("/api/credits")).json()["balance"] == 10


@pytest.mark.asyncio
async def test_webhook_ignores_unknown_payloads(client):
    for payload in ({"type": "customer.created", "data": {"email": "x@y.z"}}, {"nope": True}):
        response = await client.post("/webhooks/polar", json=payload)
        assert response.status_code == 200
        assert response.json()["status"] == "ignored"

    response = await client.post("/webhooks/polar", content=b"not json")
    assert response.status_code == 200
    assert response.json()["status"] == "ignored"


@pytest.mark.asyncio
async def test_webhook_for_unknown_customer_is_noop(client, db):
    response = await client.post("/webhooks/polar", json=_subscription_payload("ghost@example.com"))

    assert response.status_code == 200
    assert response.json()["action"] == "ignored"
    assert (await db.execute(Subscription.__table__.select())).first() is None


@pytest.mark.asyncio
async def test_webhook_signature(client, make_user, monkeypatch):
    await make_user("alice@example.com")
    secret = "polar_whs_test"
    settings = get_settings().model_copy(update={"polar_webhook_secret": secret})
    monkeypatch.setattr("canvas_billing.routers.webhooks.get_settings", lambda: settings)

    body = json.dumps(_subscription_payload())
    signer = Webhook(base64.b64encode(secret.encode()).decode())
    timestamp = datetime.now(UTC)
    headers = {
        "content-type": "application/json",
        "webhook-id": "msg_1",
        "webhook-timestamp": str(int(timestamp.timestamp())),
        "webhook-signature": signer.sign("msg_1", timestamp, body),
    }

    response = await client.post("/webhooks/polar", content=body, headers=headers)
    assert response.status_code == 200
    assert response.json()["action"] == "synced"

    tampered = await client.post("/webhooks/polar", content=body.replace("active", "trialing"), headers=headers)
    assert tampered.status_code == 400

    unsigned = await client.post("/webhooks/polar", content=body)
    assert unsigned.status_code == 400


@pytest.mark.asyncio
async def test_consume_endpoint_status_codes(client, make_user, make_subscription):
    user = await make_user("alice@example.com")
    await make_subscription(user, credits_balance=3)
    _login(client, user)

    ok = await client.post("/api/credits/consume", json={"amount": 2, "idempotency_key": "job-1"})
    assert ok.status_code == 200
    assert ok.json()["balance"] == 1

    replay = await client.post("/api/credits/consume", json={"amount": 2, "idempotency_key": "job-1"})
    assert replay.status_code == 200
    assert replay.json()["idempotent"] is True

    short = await client.post("/api/credits/consume", json={"amount": 5})
    assert short.status_code == 402
    assert short.json() == {"ok": False, "idempotent": False, "balance": 1, "error": "insufficient-credits"}

    invalid = await client.post("/api/credits/consume", json={"amount": 0})
    assert invalid.status_code == 422
    assert invalid.json()["error"] == "invalid-amount"


@pytest.mark.asyncio
async def test_consume_endpoint_without_entitlement(client, make_user, make_subscription):
    lapsed = await make_user("lapsed@example.com")
    nobody = await make_user("nobody@example.com")
    await make_subscription(lapsed, status="canceled", credits_balance=10)

    _login(client, lapsed)
    assert (await client.post("/api/credits/consume", json={"amount": 1})).status_code == 403
    assert (await client.get("/api/entitlement")).json() == {"entitled": False}

    _login(client, nobody)
    assert (await client.post("/api/credits/consume", json={"amount": 1})).status_code == 404


@pytest.mark.asyncio
async def test_checkout_redirects_to_polar(client, make_user, monkeypatch):
    import httpx

    user = await make_user("alice@example.com")
    _login(client, user)
    settings = get_settings().model_copy(
        update={"polar_access_token": "polar_at_test", "polar_server": "sandbox", "polar_business_plan": "prod_biz"}
    )
    monkeypatch.setattr("canvas_billing.services.checkout_service.get_settings", lambda: settings)

    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(201, json={"url": "https://sandbox.polar.sh/checkout/abc"})

    provider = build_polar_client(settings, transport=httpx.MockTransport(handler))
    monkeypatch.setattr("canvas_billing.http_client._client", provider)

    response = await client.post("/api/billing/checkout?plan=business")

    assert response.status_code == 303
    assert response.headers["location"] == "https://sandbox.polar.sh/checkout/abc"
    sent = json.loads(requests[0].content)
    assert requests[0].url == "https://sandbox-api.polar.sh/v1/checkouts/"
    assert requests[0].headers["authorization"] == "Bearer polar_at_test"
    assert sent["products"] == ["prod_biz"]
    assert sent["metadata"] == {"userId": str(user.id), "plan": "business"}
    await provider.aclose()


@pytest.mark.asyncio
async def test_checkout_unconfigured(client, make_user):
    user = await make_user("alice@example.com")
    _login(client, user)

    response = await client.post("/api/billing/checkout")

    assert response.status_code == 503


def test_session_token_requires_billing_audience():
    import jwt

    from canvas_billing.services.auth_service import session_user_id

    settings = get_settings()
    assert session_user_id(create_jwt(7)) == 7
    assert session_user_id(None) is None

    foreign = jwt.encode(
        {"sub": "7", "aud": "other-app", "exp": datetime.now(UTC) + timedelta(minutes=5)},
        settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
    )
    expired = jwt.encode(
        {"sub": "7", "aud": "canvas-billing", "exp": datetime.now(UTC) - timedelta(minutes=5)},
        settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
    )
    assert session_user_id(foreign) is None
    assert session_user_id(expired) is None
