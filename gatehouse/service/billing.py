from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import stripe

from gatehouse.config import Settings
from gatehouse.logging import get_logger
from gatehouse.service.errors import BillingUnavailableError
from gatehouse.storage.cache import CacheService

ALLOWED_EVENTS = frozenset(
    {
        "checkout.session.completed",
        "checkout.session.expired",
        "payment_intent.succeeded",
        "payment_intent.payment_failed",
        "payment_intent.requires_action",
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
        "customer.subscription.trial_will_end",
        "invoice.paid",
        "invoice.payment_failed",
        "invoice.upcoming",
        "customer.created",
        "customer.updated",
        "customer.deleted",
        "charge.succeeded",
        "charge.failed",
        "charge.refunded",
        "charge.dispute.created",
        "charge.dispute.closed",
    }
)


class WebhookError(Exception):
    """A webhook payload failed verification or could not be processed."""


def _field(obj: Any, name: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def _customer_key(customer_id: str) -> str:
    return f"stripe:customer:{customer_id}"


def _user_key(user_id: str) -> str:
    # Must not contain "user:<id>", which UserService invalidates by substring
    return f"stripe:customer_of:{user_id}"


class BillingService:
    """Stripe checkout plus a cached copy of each customer's subscription state.

    All SDK calls pass the API key and version explicitly and run in a worker
    thread. ``client`` defaults to the ``stripe`` module.
    """

    def __init__(self, settings: Settings, cache: CacheService, *, client: Any = None) -> None:
        if not settings.stripe_secret_key:
            raise BillingUnavailableError("Stripe is not configured")
        self.settings = settings
        self.cache = cache
        self.client = client if client is not None else stripe
        self.logger = get_logger(__name__)

    @property
    def _request_options(self) -> Dict[str, Any]:
        return {
            "api_key": self.settings.stripe_secret_key,
            "stripe_version": self.settings.stripe_api_version,
        }

    async def get_or_create_customer(self, user_id: str, email: Optional[str]) -> str:
        existing = await self.cache.store.get(_user_key(user_id))
        if existing:
            return existing
        customer = await asyncio.to_thread(
            self.client.Customer.create,
            email=email,
            metadata={"userId": str(user_id)},
            **self._request_options,
        )
        await self.cache.store.set(_user_key(user_id), customer.id)
        self.logger.info("stripe_customer_created", user_id=str(user_id))
        return customer.id

    async def create_checkout_session(self, user_id: str, email: Optional[str]) -> str:
        customer_id = await self.get_or_create_customer(user_id, email)
        app_url = self.settings.app_url
        session = await asyncio.to_thread(
            self.client.checkout.Session.create,
            customer=customer_id,
            mode="subscription",
            payment_method_types=["card"],
            line_items=[{"price": self.settings.stripe_price_id, "quantity": 1}],
            success_url=f"{app_url}/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{app_url}/cancel",
            allow_promotion_codes=True,
            subscription_data={"metadata": {"userId": str(user_id)}},
            **self._request_options,
        )
        self.logger.info("checkout_session_created", user_id=str(user_id))
        return session.url or ""

    async def sync_subscription(self, customer_id: str) -> Dict[str, Any]:
        """Fetch the newest subscription for ``customer_id`` and cache its summary."""
        subscriptions = await asyncio.to_thread(
            self.client.Subscription.list,
            customer=customer_id,
            limit=1,
            status="all",
            expand=["data.default_payment_method"],
            **self._request_options,
        )
        data = _field(subscriptions, "data") or []
        if not data:
            summary: Dict[str, Any] = {"status": "none"}
        else:
            subscription = data[0]
            items = _field(_field(subscription, "items"), "data") or []
            price = _field(items[0], "price") if items else None
            method = _field(subscription, "default_payment_method")
            card = _field(method, "card") if method is not None and not isinstance(method, str) else None
            summary = {
                "subscriptionId": _field(subscription, "id"),
                "status": _field(subscription, "status"),
                "priceId": _field(price, "id"),
                "currentPeriodStart": _field(subscription, "current_period_start"),
                "currentPeriodEnd": _field(subscription, "current_period_end"),
                "cancelAtPeriodEnd": bool(_field(subscription, "cancel_at_period_end")),
                "paymentMethod": (
                    {"brand": _field(card, "brand"), "last4": _field(card, "last4")}
                    if method is not None and not isinstance(method, str)
                    else None
                ),
            }
        await self.cache.set(_customer_key(customer_id), summary)
        return summary

    def construct_event(self, payload: bytes, signature: str) -> Any:
        secret = self.settings.stripe_webhook_secret
        if not secret:
            raise WebhookError("Missing STRIPE_WEBHOOK_SECRET")
        try:
            return self.client.Webhook.construct_event(payload, signature, secret)
        except stripe.SignatureVerificationError as exc:
            self.logger.warning("stripe_signature_invalid")
            raise WebhookError("Invalid webhook signature") from exc
        except ValueError as exc:
            raise WebhookError(f"Invalid payload: {exc}") from exc

    async def handle_webhook(self, payload: bytes, signature: str) -> Optional[str]:
        """Verify and apply one webhook; returns the customer id that was synced."""
        event = self.construct_event(payload, signature)
        event_type = _field(event, "type") or ""
        created = _field(event, "created")
        self.logger.info(
            "stripe_webhook_received",
            event_type=event_type,
            event_id=_field(event, "id"),
            created=(
                datetime.fromtimestamp(created, tz=timezone.utc).isoformat()
                if isinstance(created, (int, float))
                else None
            ),
        )
        if event_type not in ALLOWED_EVENTS:
            self.logger.info("stripe_webhook_skipped", event_type=event_type)
            return None

        obj = _field(_field(event, "data"), "object")
        if event_type.startswith("customer.") and not event_type.startswith("customer.subscription."):
            customer_id = _field(obj, "id")
        else:
            customer_id = _field(obj, "customer")
        if not customer_id:
            self.logger.info("stripe_webhook_no_customer", event_type=event_type)
            return None

        try:
            await self.sync_subscription(customer_id)
        except Exception as exc:
            self.logger.error("stripe_sync_failed", event_type=event_type, error=str(exc))
            raise WebhookError(str(exc)) from exc
        self.logger.info("stripe_webhook_processed", event_type=event_type)
        return customer_id

    async def get_customer_subscription(self, user_id: str) -> Optional[Dict[str, Any]]:
        try:
            customer_id = await self.cache.store.get(_user_key(user_id))
            if not customer_id:
                return None
            cached = await self.cache.get(_customer_key(customer_id))
            if cached:
                return cached
            return await self.sync_subscription(customer_id)
        except Exception as exc:
            self.logger.error("stripe_subscription_lookup_failed", user_id=str(user_id), error=str(exc))
            return None
