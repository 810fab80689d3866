import json
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
import stripe
from fastapi.testclient import TestClient

from gatehouse.app import create_app
from gatehouse.service.billing import BillingService, WebhookError
from gatehouse.service.errors import BillingUnavailableError
from gatehouse.service.runtime import Runtime
from gatehouse.storage.cache import CacheService
from gatehouse.storage.users import MemoryUserRepository


@pytest.fixture
def billing_settings(settings):
    return settings.model_copy(
        update={
            "stripe_secret_key": "sk_test_123",
            "stripe_webhook_secret": "whsec_test",
            "stripe_price_id": "price_basic",
            "app_url": "https://app.example.com",
        }
    )


def _subscription_list():
    return {
        "data": [
            {
                "id": "sub_1",
                "status": "active",
                "items": {"data": [{"price": {"id": "price_basic"}}]},
                "current_period_start": 1700000000,
                "current_period_end": 1702592000,
                "cancel_at_period_end": False,
                "default_payment_method": {"card": {"brand": "visa", "last4": "4242"}},
            }
        ]
    }


@pytest.fixture
def stripe_client():
    client = MagicMock()
    client.Customer.create.return_value = SimpleNamespace(id="cus_123")
    client.checkout.Session.create.return_value = SimpleNamespace(
        url="https://checkout.stripe.com/c/pay/cs_test"
    )
    client.Subscription.list.return_value = _subscription_list()
    return client


@pytest.fixture
def cache(kv):
    return CacheService(kv)


@pytest.fixture
def billing(billing_settings, cache, stripe_client):
    return BillingService(billing_settings, cache, client=stripe_client)


def _event(event_type, obj):
    return {"id": "evt_1", "type": event_type, "created": 1700000000, "data": {"object": obj}}


class TestBillingService:
    def test_requires_secret_key(self, settings, cache):
        with pytest.raises(BillingUnavailableError):
            BillingService(settings, cache)

    async def test_customer_is_created_once(self, billing, stripe_client, kv):
        assert await billing.get_or_create_customer("1", "a@example.com") == "cus_123"
        assert await billing.get_or_create_customer("1", "a@example.com") == "cus_123"
        assert stripe_client.Customer.create.call_count == 1
        assert await kv.get("stripe:customer_of:1") == "cus_123"
        kwargs = stripe_client.Customer.create.call_args.kwargs
        assert kwargs["metadata"] == {"userId": "1"}
        assert kwargs["api_key"] == "sk_test_123"

    async def test_checkout_session(self, billing, stripe_client):
        url = await billing.create_checkout_session("1", "a@example.com")
        assert url == "https://checkout.stripe.com/c/pay/cs_test"
        kwargs = stripe_client.checkout.Session.create.call_args.kwargs
        assert kwargs["customer"] == "cus_123"
        assert kwargs["mode"] == "subscription"
        assert kwargs["line_items"] == [{"price": "price_basic", "quantity": 1}]
        assert kwargs["success_url"] == (
            "https://app.example.com/success?session_id={CHECKOUT_SESSION_ID}"
        )
        assert kwargs["cancel_url"] == "https://app.example.com/cancel"
        assert kwargs["subscription_data"] == {"metadata": {"userId": "1"}}

    async def test_sync_caches_summary(self, billing, cache):
        summary = await billing.sync_subscription("cus_123")
        assert summary == {
            "subscriptionId": "sub_1",
            "status": "active",
            "priceId": "price_basic",
            "currentPeriodStart": 1700000000,
            "currentPeriodEnd": 1702592000,
            "cancelAtPeriodEnd": False,
            "paymentMethod": {"brand": "visa", "last4": "4242"},
        }
        assert await cache.get("stripe:customer:cus_123") == summary

    async def test_sync_without_subscriptions(self, billing, stripe_client):
        stripe_client.Subscription.list.return_value = {"data": []}
        assert await billing.sync_subscription("cus_123") == {"status": "none"}

    async def test_subscription_event_syncs_its_customer(self, billing, stripe_client):
        stripe_client.Webhook.construct_event.return_value = _event(
            "customer.subscription.updated", {"id": "sub_1", "customer": "cus_123"}
        )
        assert await billing.handle_webhook(b"{}", "sig") == "cus_123"
        stripe_client.Webhook.construct_event.assert_called_once_with(b"{}", "sig", "whsec_test")
        assert stripe_client.Subscription.list.call_args.kwargs["customer"] == "cus_123"

    async def test_customer_event_uses_object_id(self, billing):
        billing.client.Webhook.construct_event.return_value = _event(
            "customer.updated", {"id": "cus_999", "object": "customer"}
        )
        assert await billing.handle_webhook(b"{}", "sig") == "cus_999"

    async def test_unlisted_event_is_ignored(self, billing, stripe_client):
        stripe_client.Webhook.construct_event.return_value = _event(
            "product.created", {"id": "prod_1"}
        )
        assert await billing.handle_webhook(b"{}", "sig") is None
        stripe_client.Subscription.list.assert_not_called()

    async def test_bad_signature(self, billing, stripe_client):
        stripe_client.Webhook.construct_event.side_effect = stripe.SignatureVerificationError(
            "No signatures found", "sig"
        )
        with pytest.raises(WebhookError):
            await billing.handle_webhook(b"{}", "sig")

    async def test_cached_subscription_lookup(self, billing, kv, stripe_client):
        assert await billing.get_customer_subscription("1") is None
        await kv.set("stripe:customer_of:1", "cus_123")
        first = await billing.get_customer_subscription("1")
        second = await billing.get_customer_subscription("1")
        assert first == second
        assert first["status"] == "active"
        assert stripe_client.Subscription.list.call_count == 1


@pytest.fixture
def billing_client(billing_settings, kv, stripe_client):
    runtime = Runtime(
        billing_settings,
        kv=kv,
        repository=MemoryUserRepository(),
        stripe_client=stripe_client,
    )
    with TestClient(create_app(billing_settings, runtime=runtime)) as client:
        yield client


class TestBillingRoutes:
    def test_webhook_requires_signature_header(self, billing_client):
        response = billing_client.post("/webhook", content=b"{}")
        assert response.status_code == 400
        assert response.json()["error"] == "Missing stripe-signature"

    def test_webhook_accepts_verified_event(self, billing_client, stripe_client):
        stripe_client.Webhook.construct_event.return_value = _event(
            "invoice.paid", {"id": "in_1", "customer": "cus_123"}
        )
        response = billing_client.post(
            "/webhook", content=json.dumps({}).encode(), headers={"stripe-signature": "t=1,v1=x"}
        )
        assert response.status_code == 200
        assert response.json() == {"received": True}

    def test_webhook_rejects_bad_signature(self, billing_client, stripe_client):
        stripe_client.Webhook.construct_event.side_effect = stripe.SignatureVerificationError(
            "bad", "sig"
        )
        response = billing_client.post("/webhook", content=b"{}", headers={"stripe-signature": "x"})
        assert response.status_code == 400
        assert response.json()["error"] == "Webhook error"
        assert response.json()["details"] == "Invalid webhook signature"

    def test_webhook_without_billing_configured(self, client):
        response = client.post("/webhook", content=b"{}", headers={"stripe-signature": "x"})
        assert response.status_code == 500
        assert response.json()["error"] == "Stripe service not available"

    def test_checkout_requires_session(self, billing_client):
        response = billing_client.post("/api/create-checkout")
        assert response.status_code == 401
        assert response.json()["error"] == "Unauthorized"

    def test_checkout_returns_url(self, billing_client):
        billing_client.post(
            "/api/auth/register",
            json={"username": "payer", "email": "payer@example.com", "password": "secret123"},
        )
        response = billing_client.post("/api/create-checkout")
        assert response.status_code == 200
        assert response.json() == {"url": "https://checkout.stripe.com/c/pay/cs_test"}

    def test_checkout_failure_is_generic(self, billing_client, stripe_client):
        stripe_client.checkout.Session.create.side_effect = RuntimeError("card network down")
        billing_client.post(
            "/api/auth/register",
            json={"username": "payer", "email": "payer@example.com", "password": "secret123"},
        )
        response = billing_client.post("/api/create-checkout")
        assert response.status_code == 500
        assert response.json() == {"error": "Checkout failed", "code": "server_error"}

    def test_subscription_state_for_session_user(self, billing_client):
        billing_client.post(
            "/api/auth/register",
            json={"username": "payer", "email": "payer@example.com", "password": "secret123"},
        )
        billing_client.post("/api/create-checkout")
        response = billing_client.get("/api/billing/subscription")
        assert response.status_code == 200
        assert response.json()["subscription"]["subscriptionId"] == "sub_1"

    def test_password_change_keeps_customer_link(self, billing_client, stripe_client, kv):
        billing_client.post(
            "/api/auth/register",
            json={"username": "payer", "email": "payer@example.com", "password": "secret123"},
        )
        billing_client.post("/api/create-checkout")
        link_keys = [key for key in kv._values if key.startswith("stripe:customer_of:")]
        assert len(link_keys) == 1

        changed = billing_client.post(
            "/api/auth/change-password",
            json={"currentPassword": "secret123", "newPassword": "secret456"},
        )
        assert changed.status_code == 200
        assert kv._values[link_keys[0]] == "cus_123"

        billing_client.post("/api/create-checkout")
        assert stripe_client.Customer.create.call_count == 1
        assert billing_client.get("/api/billing/subscription").json()["subscription"] is not None


@pytest.mark.parametrize("user_id", ["1", "10", "42"])
async def test_customer_link_survives_user_tag_invalidation(billing, cache, kv, user_id):
    await billing.get_or_create_customer(user_id, "payer@example.com")
    await cache.invalidate_by_tag("user:1")
    await cache.invalidate_by_tag(f"user:{user_id}")
    assert await billing.get_or_create_customer(user_id, "payer@example.com") == "cus_123"
    assert kv._values[f"stripe:customer_of:{user_id}"] == "cus_123"
