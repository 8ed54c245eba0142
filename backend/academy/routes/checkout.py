# Overview: Flask API route that starts a Stripe-hosted checkout.

from flask import Blueprint, current_app, g, jsonify

from ..decorators import require_auth
from ..services import checkout_service
from ..services.checkout_service import CheckoutError
from ..services.stripe_gateway import get_gateway

checkout_bp = Blueprint("checkout", __name__, url_prefix="/api/checkout")


@checkout_bp.post("/session")
@require_auth
def create_checkout_session_route():
    """
    Create a checkout session for the caller's cart.

    403 waiver not signed, 400 empty cart / unavailable items,
    502 Stripe unavailable.
    """
    try:
        result = checkout_service.create_checkout_session(
            g.current_user,
            gateway=get_gateway(),
            site_url=current_app.config["SITE_URL"],
        )
        return jsonify(result), 200
    except CheckoutError as e:
        return jsonify({"error": str(e)}), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create checkout session")
        return jsonify({"error": "Internal server error"}), 500
