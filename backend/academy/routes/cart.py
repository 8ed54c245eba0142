# Overview: Flask API routes for the cart; parses input and returns JSON responses.

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_auth
from ..services import cart_service
from ..services.cart_service import CartError
from ..validation import ConflictError, NotFoundError, ValidationError, parse_positive_int

cart_bp = Blueprint("cart", __name__, url_prefix="/api/cart")


@cart_bp.get("")
@require_auth
def get_cart_route():
    return jsonify(cart_service.list_cart(g.current_user)), 200


@cart_bp.post("/items")
@require_auth
def add_cart_item_route():
    """
    Body: {"product_id": int, "athlete_id": int, "quantity": int (default 1)}
    """
    data = request.get_json(silent=True) or {}
    try:
        item = cart_service.add_to_cart(
            g.current_user,
            product_id=parse_positive_int(data.get("product_id"), "product_id"),
            athlete_id=parse_positive_int(data.get("athlete_id"), "athlete_id"),
            quantity=parse_positive_int(data.get("quantity"), "quantity", default=1),
        )
        return jsonify(item.to_dict()), 201
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except CartError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to add cart item")
        return jsonify({"error": "Internal server error"}), 500


@cart_bp.patch("/items/<int:item_id>")
@require_auth
def update_cart_item_route(item_id: int):
    data = request.get_json(silent=True) or {}
    try:
        item = cart_service.update_cart_item(
            g.current_user,
            item_id,
            quantity=parse_positive_int(data.get("quantity"), "quantity"),
        )
        return jsonify(item.to_dict()), 200
    except (ValidationError, CartError) as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to update cart item")
        return jsonify({"error": "Internal server error"}), 500


@cart_bp.delete("/items/<int:item_id>")
@require_auth
def remove_cart_item_route(item_id: int):
    try:
        cart_service.remove_cart_item(g.current_user, item_id)
        return jsonify({"success": True}), 200
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404


@cart_bp.post("/clear")
@require_auth
def clear_cart_route():
    deleted = cart_service.clear_cart(g.current_user)
    return jsonify({"success": True, "removed": deleted}), 200
