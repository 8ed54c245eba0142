# Overview: Stripe client wrapper; the only module that talks to the Stripe API.

"""
Stripe payment gateway.

WHY a wrapper instead of calling stripe.* from services:
- Constructed once per process in create_app() and stored on
  app.extensions, so tests can inject a fake with the same interface.
- Every Stripe failure is surfaced as PaymentGatewayError, which the
  services translate into their own errors and compensations.
- Responses are returned as plain dicts, so services never depend on
  StripeObject behaviour.

Calls pass api_key per request rather than mutating stripe.api_key.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import stripe
from flask import current_app

log = logging.getLogger(__name__)

GATEWAY_EXTENSION_KEY = "academy.payment_gateway"

# Signed webhook timestamps older than this are rejected (replay protection)
WEBHOOK_TOLERANCE_SECONDS = 300


class PaymentGatewayError(Exception):
    """A Stripe API call failed (network, auth, invalid request, timeout)."""


class WebhookSignatureError(Exception):
    """Webhook payload could not be verified against the signing secret."""


def _plain(obj: Any) -> Any:
    """StripeObject -> plain JSON-compatible dict/list."""
    if obj is None or isinstance(obj, (dict, list)):
        return obj
    return json.loads(str(obj))


class StripeGateway:
    def __init__(self, api_key: str, webhook_secret: str, *, tax_code: str, timeout: int = 20):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.tax_code = tax_code
        # A hung Stripe call surfaces as a failed request instead of blocking a worker
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)

    @classmethod
    def from_config(cls, config) -> "StripeGateway":
        return cls(
            api_key=config.get("STRIPE_SECRET_KEY", ""),
            webhook_secret=config.get("STRIPE_WEBHOOK_SECRET", ""),
            tax_code=config.get("STRIPE_TAX_CODE", "txcd_20030000"),
            timeout=config.get("STRIPE_TIMEOUT_SECONDS", 20),
        )

    def _call(self, description: str, func, *args, **kwargs) -> Any:
        try:
            return _plain(func(*args, api_key=self.api_key, **kwargs))
        except stripe.StripeError as exc:
            log.warning("stripe.%s failed: %s", description, exc)
            message = getattr(exc, "user_message", None) or str(exc)
            raise PaymentGatewayError(f"Stripe {description} failed: {message}") from exc

    # =========================================================================
    # Webhooks
    # =========================================================================

    def construct_event(self, payload: bytes, signature: str | None) -> dict:
        """
        Verify the Stripe-Signature header and return the event as a dict.

        Raises WebhookSignatureError on a missing header, a missing secret,
        a bad signature, a stale timestamp, or a malformed body.
        """
        if not signature:
            raise WebhookSignatureError("Missing Stripe-Signature header")
        if not self.webhook_secret:
            raise WebhookSignatureError("Webhook signing secret is not configured")
        try:
            stripe.Webhook.construct_event(
                payload, signature, self.webhook_secret, tolerance=WEBHOOK_TOLERANCE_SECONDS
            )
            return json.loads(payload)
        except stripe.SignatureVerificationError as exc:
            raise WebhookSignatureError("Invalid signature") from exc
        except ValueError as exc:
            raise WebhookSignatureError("Invalid payload") from exc

    def retrieve_event(self, event_id: str) -> dict:
        return self._call("event.retrieve", stripe.Event.retrieve, event_id)

    # =========================================================================
    # Customers / checkout
    # =========================================================================

    def retrieve_customer(self, customer_id: str) -> dict:
        return self._call("customer.retrieve", stripe.Customer.retrieve, customer_id)

    def create_customer(self, *, email: str, name: str | None, metadata: dict) -> dict:
        return self._call(
            "customer.create", stripe.Customer.create,
            email=email, name=name or None, metadata=metadata,
        )

    def retrieve_payment_intent(self, payment_intent_id: str) -> dict:
        return self._call("payment_intent.retrieve", stripe.PaymentIntent.retrieve, payment_intent_id)

    def create_checkout_session(self, **params) -> dict:
        return self._call("checkout.session.create", stripe.checkout.Session.create, **params)

    def list_line_items(self, session_id: str) -> list[dict]:
        result = self._call(
            "checkout.session.list_line_items",
            stripe.checkout.Session.list_line_items, session_id, limit=100,
        )
        return result.get("data", [])

    # =========================================================================
    # Catalog
    # =========================================================================

    def retrieve_product(self, product_id: str) -> dict:
        return self._call("product.retrieve", stripe.Product.retrieve, product_id)

    def list_active_product_ids(self) -> set[str]:
        """Ids of every active Stripe product (follows pagination)."""
        try:
            page = stripe.Product.list(active=True, limit=100, api_key=self.api_key)
            return {product["id"] for product in page.auto_paging_iter()}
        except stripe.StripeError as exc:
            log.warning("stripe.product.list failed: %s", exc)
            raise PaymentGatewayError(f"Stripe product.list failed: {exc}") from exc

    def create_product(self, *, name: str, description: str | None, metadata: dict) -> dict:
        params: dict[str, Any] = {"name": name, "metadata": metadata, "tax_code": self.tax_code}
        if description:
            params["description"] = description
        return self._call("product.create", stripe.Product.create, **params)

    def update_product(self, product_id: str, **fields) -> dict:
        return self._call("product.modify", stripe.Product.modify, product_id, **fields)

    def set_product_active(self, product_id: str, active: bool) -> dict:
        return self.update_product(product_id, active=active)

    def create_price(self, *, product_id: str, unit_amount: int, currency: str) -> dict:
        return self._call(
            "price.create", stripe.Price.create,
            product=product_id, unit_amount=unit_amount, currency=currency,
        )

    def set_price_active(self, price_id: str, active: bool) -> dict:
        return self._call("price.modify", stripe.Price.modify, price_id, active=active)

    # =========================================================================
    # Refunds
    # =========================================================================

    def create_refund(self, *, payment_intent_id: str, amount: int, idempotency_key: str) -> dict:
        return self._call(
            "refund.create", stripe.Refund.create,
            payment_intent=payment_intent_id,
            amount=amount,
            reason="requested_by_customer",
            idempotency_key=idempotency_key,
        )


def get_gateway():
    """Gateway constructed at startup (or injected by tests)."""
    return current_app.extensions[GATEWAY_EXTENSION_KEY]
