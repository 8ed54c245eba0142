# Overview: Builds the Stripe-hosted checkout session from the server-side cart.

"""
Checkout Service

Preconditions, all checked server-side regardless of what the client shows:
1. waiver signed
2. cart not empty
3. every cart product is active locally AND in Stripe

Creating the checkout session does not change payment state. The payment
row appears only when the checkout.session.completed webhook arrives
(see webhook_service).
"""

from __future__ import annotations

import logging

from ..extensions import db
from ..models import CartItem, User
from .stripe_gateway import PaymentGatewayError
from academy.log_utils import pii

log = logging.getLogger(__name__)

SUCCESS_PATH = "/member/dashboard?success=true"
CANCEL_PATH = "/cart?canceled=true"


class CheckoutError(Exception):
    status_code = 400


class WaiverRequiredError(CheckoutError):
    status_code = 403


class EmptyCartError(CheckoutError):
    pass


class ProductUnavailableError(CheckoutError):
    pass


class CheckoutGatewayError(CheckoutError):
    status_code = 502


def session_metadata(user_id: int, items: list[CartItem]) -> dict[str, str]:
    """
    Metadata the webhook uses to map Stripe line items back to athletes.

    Index i matches the i-th line item of the checkout session.
    """
    metadata = {"user_id": str(user_id)}
    for i, item in enumerate(items):
        metadata[f"athlete_{i}_id"] = str(item.athlete_id)
        metadata[f"athlete_{i}_name"] = (item.athlete.name if item.athlete else "")[:500]
        metadata[f"athlete_{i}_product_id"] = str(item.product_id)
    return metadata


def _ensure_customer(user: User, gateway) -> str | None:
    if user.stripe_customer_id:
        return user.stripe_customer_id
    try:
        customer = gateway.create_customer(
            email=user.email,
            name=user.full_name,
            metadata={"user_id": str(user.id)},
        )
    except PaymentGatewayError as exc:
        # Checkout still works with customer_email; the webhook falls back to session metadata
        log.warning("checkout.customer_create_failed user=%s error=%s", pii(user.email), exc)
        return None
    user.stripe_customer_id = customer["id"]
    db.session.commit()
    return user.stripe_customer_id


def _verify_available(items: list[CartItem], gateway) -> None:
    try:
        remote_active = gateway.list_active_product_ids()
    except PaymentGatewayError as exc:
        raise CheckoutGatewayError("Unable to verify session availability, please try again") from exc

    for item in items:
        product = item.product
        if (
            product is None
            or not product.is_active
            or not product.stripe_price_id
            or product.stripe_product_id not in remote_active
        ):
            log.info("checkout.unavailable product_id=%s", item.product_id)
            raise ProductUnavailableError("One or more items are no longer available")


def create_checkout_session(user: User, *, gateway, site_url: str) -> dict:
    """
    Create a Stripe checkout session for the user's cart.

    Returns:
        {"session_id": ..., "url": ...}

    Raises:
        WaiverRequiredError (403), EmptyCartError (400),
        ProductUnavailableError (400), CheckoutGatewayError (502)
    """
    if not user.waiver_signed:
        raise WaiverRequiredError("Waiver must be signed before checkout")

    items = (
        db.session.query(CartItem)
        .filter_by(user_id=user.id)
        .order_by(CartItem.id.asc())
        .all()
    )
    if not items:
        raise EmptyCartError("No items in cart")

    _verify_available(items, gateway)

    params = {
        "mode": "payment",
        "line_items": [
            {"price": item.product.stripe_price_id, "quantity": item.quantity}
            for item in items
        ],
        "metadata": session_metadata(user.id, items),
        "success_url": f"{site_url}{SUCCESS_PATH}",
        "cancel_url": f"{site_url}{CANCEL_PATH}",
    }

    customer_id = _ensure_customer(user, gateway)
    if customer_id:
        params["customer"] = customer_id
    else:
        params["customer_email"] = user.email

    try:
        session = gateway.create_checkout_session(**params)
    except PaymentGatewayError as exc:
        raise CheckoutGatewayError("Unable to start checkout, please try again") from exc

    log.info("checkout.session_created user_id=%s session_id=%s items=%s",
             user.id, session.get("id"), len(items))
    return {"session_id": session.get("id"), "url": session.get("url")}
