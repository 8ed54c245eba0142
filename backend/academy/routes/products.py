# Overview: Public session catalog.

from flask import Blueprint, current_app, jsonify

from ..services import products_service
from ..services.stripe_gateway import get_gateway

products_bp = Blueprint("products", __name__, url_prefix="/api/products")


@products_bp.get("")
def list_products_route():
    """Sessions that are active locally and in Stripe, with spots remaining."""
    try:
        items = products_service.list_public_catalog(gateway=get_gateway())
        return jsonify({"items": items, "count": len(items)}), 200
    except Exception:
        current_app.logger.exception("Failed to list products")
        return jsonify({"error": "Internal server error"}), 500
