from __future__ import annotations

import base64
import hashlib
import hmac
from urllib.parse import parse_qs, urlsplit

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import delete, select

import shop_connect.main as main_module
from shop_connect.config import settings
from shop_connect.db import StateSession, create_state_tables
from shop_connect.errors import DownstreamError, TokenExchangeFailed
from shop_connect.models import OAuthState, ProcessedWebhookEvent

ORDER_BODY = b'{"id":123,"name":"#1001"}'


def _oauth_callback_params(*, shop: str, code: str, state: str, secret: str = "test_secret") -> dict[str, str]:
    items = [("code", code), ("shop", shop), ("state", state), ("timestamp", "1710000000")]
    message = "&".join(f"{key}={value}" for key, value in sorted(items, key=lambda item: item[0]))
    digest = hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()
    return {**dict(items), "hmac": digest}


def _webhook_headers(body: bytes, secret: bytes, **overrides: str) -> dict[str, str]:
    headers = {
        "Content-Type": "application/json",
        "X-Shopify-Hmac-Sha256": base64.b64encode(hmac.new(secret, body, hashlib.sha256).digest()).decode(),
        "X-Shopify-Topic": "orders/create",
        "X-Shopify-Shop-Domain": "example.myshopify.com",
        "X-Shopify-Webhook-Id": "wh-1",
    }
    headers.update(overrides)
    return headers


class FakeBase44Client:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.saved: list = []
        self.forwarded: list = []

    can_save_connections = True
    can_forward_webhooks = True

    async def save_shopify_connection(self, credential):
        if self.fail:
            raise DownstreamError("Base44 request failed (503)")
        self.saved.append(credential)
        return {"ok": True, "id": "conn_1"}

    async def forward_webhook(self, webhook):
        if self.fail:
            raise DownstreamError("Base44 request failed: connection refused")
        self.forwarded.append(webhook)
        return {"ok": True}


@pytest.fixture()
def db_session():
    create_state_tables()
    session = StateSession()
    session.execute(delete(ProcessedWebhookEvent))
    session.execute(delete(OAuthState))
    session.commit()
    try:
        yield session
    finally:
        session.execute(delete(ProcessedWebhookEvent))
        session.execute(delete(OAuthState))
        session.commit()
        session.close()


@pytest.fixture()
def api_client(db_session):
    with TestClient(main_module.app) as client:
        yield client
    main_module.app.dependency_overrides.clear()


def _use_settings(**updates):
    overridden = settings.model_copy(update=updates)
    main_module.app.dependency_overrides[main_module.get_settings] = lambda: overridden
    return overridden


def _use_base44(fake: FakeBase44Client) -> FakeBase44Client:
    main_module.app.dependency_overrides[main_module.get_base44_client] = lambda: fake
    return fake


def _start_install(api_client, shop: str = "example.myshopify.com") -> str:
    response = api_client.get(
        "/shopify/auth/start",
        params={"shop": shop, "brandId": "brand-1"},
        follow_redirects=False,
    )
    assert response.status_code == 302
    return parse_qs(urlsplit(response.headers["location"]).query)["state"][0]


def test_health(api_client):
    assert api_client.get("/health").json() == {"ok": True}


def test_auth_start_redirects_to_authorize_url(api_client, db_session):
    response = api_client.get(
        "/shopify/auth/start",
        params={"shop": "Example.myshopify.com", "brandId": "brand-1"},
        follow_redirects=False,
    )

    assert response.status_code == 302
    location = urlsplit(response.headers["location"])
    assert location.netloc == "example.myshopify.com"
    assert location.path == "/admin/oauth/authorize"
    query = parse_qs(location.query)
    assert query["client_id"] == ["test_key"]
    assert query["scope"] == ["read_orders,write_discounts"]
    assert query["redirect_uri"] == ["https://api.example.com/shopify/auth/callback"]

    pending = db_session.get(OAuthState, query["state"][0])
    assert pending is not None
    assert pending.correlation_id == "brand-1"


def test_auth_start_rejects_invalid_shop(api_client):
    response = api_client.get(
        "/shopify/auth/start",
        params={"shop": "evil.com", "brandId": "brand-1"},
        follow_redirects=False,
    )

    assert response.status_code == 400
    assert response.json() == {"ok": False, "error": "shop must be a valid *.myshopify.com domain"}


def test_auth_start_requires_brand_id(api_client):
    response = api_client.get("/shopify/auth/start", params={"shop": "example.myshopify.com"})

    assert response.status_code == 400
    assert response.json()["ok"] is False


def test_auth_start_refuses_to_run_without_client_credentials(api_client):
    _use_settings(SHOPIFY_API_KEY=None)

    response = api_client.get(
        "/shopify/auth/start",
        params={"shop": "example.myshopify.com", "brandId": "brand-1"},
        follow_redirects=False,
    )

    assert response.status_code == 500
    assert response.json() == {"ok": False, "error": "Missing SHOPIFY_API_KEY or SHOPIFY_API_SECRET env vars"}


def test_auth_callback_saves_credential_downstream(api_client, db_session, monkeypatch):
    base44 = _use_base44(FakeBase44Client())

    async def fake_exchange_code_for_access_token(*, shop_domain, client_id, client_secret, code):
        assert shop_domain == "example.myshopify.com"
        assert code == "oauth_code"
        return "shpat_token", "read_orders,write_discounts"

    monkeypatch.setattr(
        main_module.shopify_api,
        "exchange_code_for_access_token",
        fake_exchange_code_for_access_token,
    )
    state = _start_install(api_client)

    response = api_client.get(
        "/shopify/auth/callback",
        params=_oauth_callback_params(shop="example.myshopify.com", code="oauth_code", state=state),
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["ok"] is True
    assert payload["shop"] == "example.myshopify.com"
    assert payload["brandId"] == "brand-1"
    assert payload["scope"] == ["read_orders", "write_discounts"]
    assert payload["base44"] == {"ok": True, "id": "conn_1"}
    assert "shpat_token" not in response.text
    assert [credential.access_token for credential in base44.saved] == ["shpat_token"]
    assert db_session.get(OAuthState, state) is None


def test_auth_callback_reports_failed_save_without_failing_install(api_client, monkeypatch):
    _use_base44(FakeBase44Client(fail=True))

    async def fake_exchange_code_for_access_token(**kwargs):
        return "shpat_token", "read_orders"

    monkeypatch.setattr(
        main_module.shopify_api,
        "exchange_code_for_access_token",
        fake_exchange_code_for_access_token,
    )
    state = _start_install(api_client)

    response = api_client.get(
        "/shopify/auth/callback",
        params=_oauth_callback_params(shop="example.myshopify.com", code="oauth_code", state=state),
    )

    assert response.status_code == 200
    assert response.json()["base44Error"] == "Base44 request failed (503)"


def test_auth_callback_rejects_unknown_state(api_client, monkeypatch):
    calls: list[str] = []

    async def fake_exchange_code_for_access_token(**kwargs):
        calls.append(kwargs["code"])
        return "shpat_token", "read_orders"

    monkeypatch.setattr(
        main_module.shopify_api,
        "exchange_code_for_access_token",
        fake_exchange_code_for_access_token,
    )

    response = api_client.get(
        "/shopify/auth/callback",
        params=_oauth_callback_params(shop="example.myshopify.com", code="oauth_code", state="brand-1"),
    )

    assert response.status_code == 400
    assert response.json() == {"ok": False, "error": "Invalid OAuth state"}
    assert calls == []


def test_auth_callback_rejects_replayed_state(api_client, monkeypatch):
    async def fake_exchange_code_for_access_token(**kwargs):
        return "shpat_token", "read_orders"

    monkeypatch.setattr(
        main_module.shopify_api,
        "exchange_code_for_access_token",
        fake_exchange_code_for_access_token,
    )
    state = _start_install(api_client)
    params = _oauth_callback_params(shop="example.myshopify.com", code="oauth_code", state=state)

    assert api_client.get("/shopify/auth/callback", params=params).status_code == 200
    replay = api_client.get("/shopify/auth/callback", params=params)

    assert replay.status_code == 400
    assert replay.json()["error"] == "Invalid OAuth state"


def test_auth_callback_requires_shop_code_and_state(api_client):
    response = api_client.get("/shopify/auth/callback", params={"shop": "example.myshopify.com", "code": "abc"})

    assert response.status_code == 400
    assert response.json() == {"ok": False, "error": "Missing 'shop', 'code' or 'state' in callback query"}


def test_auth_callback_rejects_invalid_query_hmac(api_client):
    state = _start_install(api_client)
    params = _oauth_callback_params(shop="example.myshopify.com", code="oauth_code", state=state, secret="wrong")

    response = api_client.get("/shopify/auth/callback", params=params)

    assert response.status_code == 401
    assert response.json() == {"ok": False, "error": "Invalid OAuth HMAC"}


def test_auth_callback_null_token_fails_without_saving(api_client, monkeypatch):
    base44 = _use_base44(FakeBase44Client())

    async def fake_exchange_code_for_access_token(**kwargs):
        raise TokenExchangeFailed(
            "No access token returned from Shopify",
            upstream_status=200,
            upstream_body={"access_token": None},
        )

    monkeypatch.setattr(
        main_module.shopify_api,
        "exchange_code_for_access_token",
        fake_exchange_code_for_access_token,
    )
    state = _start_install(api_client)

    response = api_client.get(
        "/shopify/auth/callback",
        params=_oauth_callback_params(shop="example.myshopify.com", code="oauth_code", state=state),
    )

    assert response.status_code == 502
    assert response.json() == {
        "ok": False,
        "error": "No access token returned from Shopify",
        "details": {"status": 200, "body": {"access_token": None}},
    }
    assert "test_secret" not in response.text
    assert base44.saved == []


def test_orders_webhook_accepts_valid_signature_and_forwards(api_client, db_session):
    _use_settings(SHOPIFY_API_SECRET="topsecret")
    base44 = _use_base44(FakeBase44Client())

    response = api_client.post(
        "/shopify/webhooks/orders/create",
        content=ORDER_BODY,
        headers=_webhook_headers(ORDER_BODY, b"topsecret"),
    )

    assert response.status_code == 200
    assert response.json() == {"ok": True}
    assert len(base44.forwarded) == 1
    forwarded = base44.forwarded[0]
    assert forwarded.topic == "orders/create"
    assert forwarded.shop_domain == "example.myshopify.com"
    assert forwarded.payload == {"id": 123, "name": "#1001"}

    recorded = db_session.scalars(select(ProcessedWebhookEvent)).all()
    assert [(event.topic, event.event_id) for event in recorded] == [("orders/create", "wh-1")]


def test_orders_webhook_rejects_digest_from_another_secret(api_client):
    _use_settings(SHOPIFY_API_SECRET="topsecret")
    base44 = _use_base44(FakeBase44Client())

    response = api_client.post(
        "/shopify/webhooks/orders/create",
        content=ORDER_BODY,
        headers=_webhook_headers(ORDER_BODY, b"othersecret"),
    )

    assert response.status_code == 401
    assert response.json() == {"ok": False, "error": "Invalid HMAC"}
    assert base44.forwarded == []


def test_orders_webhook_rejects_missing_signature(api_client):
    headers = _webhook_headers(ORDER_BODY, b"test_secret")
    del headers["X-Shopify-Hmac-Sha256"]

    response = api_client.post("/shopify/webhooks/orders/create", content=ORDER_BODY, headers=headers)

    assert response.status_code == 401
    assert response.json() == {"ok": False, "error": "Missing X-Shopify-Hmac-Sha256 header"}


def test_orders_webhook_refuses_to_run_without_secret(api_client):
    _use_settings(SHOPIFY_API_SECRET=None)

    response = api_client.post(
        "/shopify/webhooks/orders/create",
        content=ORDER_BODY,
        headers=_webhook_headers(ORDER_BODY, b""),
    )

    assert response.status_code == 500
    assert response.json() == {"ok": False, "error": "Missing SHOPIFY_API_SECRET env var"}


def test_orders_webhook_rejects_malformed_body_after_valid_signature(api_client):
    body = b'{"id": 123'

    response = api_client.post(
        "/shopify/webhooks/orders/create",
        content=body,
        headers=_webhook_headers(body, b"test_secret"),
    )

    assert response.status_code == 400
    assert response.json() == {"ok": False, "error": "Invalid JSON payload"}


def test_orders_webhook_requires_shop_header(api_client):
    headers = _webhook_headers(ORDER_BODY, b"test_secret")
    del headers["X-Shopify-Shop-Domain"]

    response = api_client.post("/shopify/webhooks/orders/create", content=ORDER_BODY, headers=headers)

    assert response.status_code == 400
    assert response.json() == {"ok": False, "error": "Missing x-shopify-shop-domain header"}


def test_generic_webhook_requires_topic_header(api_client):
    headers = _webhook_headers(ORDER_BODY, b"test_secret")
    del headers["X-Shopify-Topic"]

    response = api_client.post("/shopify/webhooks", content=ORDER_BODY, headers=headers)

    assert response.status_code == 400
    assert response.json() == {"ok": False, "error": "Missing x-shopify-topic header"}


def test_webhook_redelivery_is_acknowledged_without_forwarding_twice(api_client):
    base44 = _use_base44(FakeBase44Client())
    headers = _webhook_headers(ORDER_BODY, b"test_secret")

    first = api_client.post("/shopify/webhooks/orders/create", content=ORDER_BODY, headers=headers)
    second = api_client.post("/shopify/webhooks/orders/create", content=ORDER_BODY, headers=headers)

    assert first.json() == {"ok": True}
    assert second.status_code == 200
    assert second.json() == {"ok": True, "duplicate": True}
    assert len(base44.forwarded) == 1


def test_webhook_is_accepted_when_forwarding_fails(api_client):
    _use_base44(FakeBase44Client(fail=True))

    response = api_client.post(
        "/shopify/webhooks",
        content=ORDER_BODY,
        headers=_webhook_headers(ORDER_BODY, b"test_secret", **{"X-Shopify-Topic": "orders/paid"}),
    )

    assert response.status_code == 200
    assert response.json() == {"ok": True}


def test_webhook_is_accepted_when_forwarding_is_not_configured(api_client):
    response = api_client.post(
        "/shopify/webhooks/orders/create",
        content=ORDER_BODY,
        headers=_webhook_headers(ORDER_BODY, b"test_secret"),
    )

    assert response.status_code == 200
    assert response.json() == {"ok": True}


def test_auth_callback_rejects_non_ascii_query_hmac(api_client):
    response = api_client.get(
        "/shopify/auth/callback",
        params={"shop": "example.myshopify.com", "code": "c", "state": "s", "hmac": "é"},
    )

    assert response.status_code == 401
    assert response.json() == {"ok": False, "error": "Invalid OAuth HMAC"}


def test_auth_callback_rejects_non_ascii_state(api_client):
    _use_settings(SHOPIFY_VERIFY_CALLBACK_HMAC=False)

    response = api_client.get(
        "/shopify/auth/callback",
        params={"shop": "example.myshopify.com", "code": "c", "state": "x.é"},
    )

    assert response.status_code == 400
    assert response.json() == {"ok": False, "error": "Invalid OAuth state"}
