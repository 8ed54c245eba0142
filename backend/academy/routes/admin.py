# Overview: Flask API routes for the admin console (catalog sync, rosters, refunds, broadcasts).

# backend/academy/routes/admin.py
"""
Admin routes.

SECURITY: Every route requires @require_admin (401 without a session,
403 for non-admin accounts).
"""

from flask import Blueprint, Response, current_app, jsonify, request

from ..decorators import require_admin
from ..services import feature_flags, products_service, refund_service, roster_service
from ..services.email_service import EmailError, FeatureDisabledError, get_mailer
from ..services.products_service import CatalogSyncError
from ..services.refund_service import RefundError, RefundReconciliationError
from ..services.roster_service import RosterError
from ..services.stripe_gateway import get_gateway
from ..validation import ConflictError, NotFoundError, ValidationError, parse_positive_int

admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")


def _sync_error_response(e: CatalogSyncError):
    body = {"error": str(e)}
    if e.needs_reconciliation:
        body["needs_reconciliation"] = True
    return jsonify(body), e.status_code


# =============================================================================
# CATALOG
# =============================================================================

@admin_bp.get("/products")
@require_admin
def list_products_route():
    items = products_service.list_admin_products()
    return jsonify({"items": items, "count": len(items)}), 200


@admin_bp.post("/products")
@require_admin
def create_product_route():
    try:
        product = products_service.create_product(request.get_json(silent=True), gateway=get_gateway())
        return jsonify(products_service.product_summary(product)), 201
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except CatalogSyncError as e:
        return _sync_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create product")
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.put("/products/<int:product_id>")
@require_admin
def update_product_route(product_id: int):
    try:
        product = products_service.update_product(
            product_id, request.get_json(silent=True), gateway=get_gateway()
        )
        return jsonify(products_service.product_summary(product)), 200
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except CatalogSyncError as e:
        return _sync_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update product")
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.delete("/products/<int:product_id>")
@require_admin
def archive_product_route(product_id: int):
    try:
        result = products_service.archive_product(product_id, gateway=get_gateway())
        return jsonify({"success": True, "changed": result.changed}), 200
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except CatalogSyncError as e:
        return _sync_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to archive product")
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.post("/products/<int:product_id>/active")
@require_admin
def set_product_active_route(product_id: int):
    """Body: {"is_active": bool}. No-op (changed=false) when already in that state."""
    data = request.get_json(silent=True) or {}
    is_active = data.get("is_active")
    if not isinstance(is_active, bool):
        return jsonify({"error": "is_active must be true or false"}), 400

    try:
        result = products_service.set_product_active(product_id, is_active, gateway=get_gateway())
        return jsonify({
            "success": True,
            "changed": result.changed,
            "message": None if result.changed else "Already in desired state",
            "product": result.product.to_dict(),
        }), 200
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except CatalogSyncError as e:
        return _sync_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to toggle product")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# ROSTER / CASH REGISTRATION
# =============================================================================

@admin_bp.get("/products/<int:product_id>/roster")
@require_admin
def roster_route(product_id: int):
    try:
        roster = roster_service.get_roster(product_id)
        return jsonify({"items": roster, "count": len(roster)}), 200
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404


@admin_bp.get("/products/<int:product_id>/roster.csv")
@require_admin
def roster_csv_route(product_id: int):
    try:
        body = roster_service.roster_csv(product_id)
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    return Response(
        body,
        mimetype="text/csv",
        headers={"Content-Disposition": f"attachment; filename=roster-{product_id}.csv"},
    )


@admin_bp.get("/products/<int:product_id>/available-athletes")
@require_admin
def available_athletes_route(product_id: int):
    try:
        items = roster_service.available_athletes(product_id, request.args.get("search"))
        return jsonify({"items": items, "count": len(items)}), 200
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404


@admin_bp.post("/products/<int:product_id>/cash-registrations")
@require_admin
def cash_registration_route(product_id: int):
    """Body: {"athlete_id": int, "quantity": int (default 1)}"""
    data = request.get_json(silent=True) or {}
    try:
        payment = roster_service.register_cash(
            product_id=product_id,
            athlete_id=parse_positive_int(data.get("athlete_id"), "athlete_id"),
            quantity=parse_positive_int(data.get("quantity"), "quantity", default=1),
        )
        return jsonify({"success": True, "payment": payment.to_dict()}), 201
    except (ValidationError, RosterError) as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to register athlete for cash")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# REFUNDS
# =============================================================================

@admin_bp.post("/refunds")
@require_admin
def refund_route():
    """
    Body: {"payment_athlete_ids": [int, ...]}

    500 with refund_id when Stripe refunded but the database update failed
    (manual reconciliation).
    """
    data = request.get_json(silent=True) or {}
    raw_ids = data.get("payment_athlete_ids")
    if not isinstance(raw_ids, list):
        return jsonify({"error": "payment_athlete_ids must be a list"}), 400

    try:
        ids = [parse_positive_int(i, "payment_athlete_ids") for i in raw_ids]
        result = refund_service.refund_line_items(ids, gateway=get_gateway())
        return jsonify(result.to_dict()), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except RefundReconciliationError as e:
        return jsonify({"error": str(e), "refund_id": e.refund_id, "needs_reconciliation": True}), 500
    except RefundError as e:
        return jsonify({"error": str(e)}), e.status_code
    except Exception:
        current_app.logger.exception("Failed to process refund")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# BROADCAST
# =============================================================================

@admin_bp.post("/broadcasts")
@require_admin
def broadcast_route():
    """Body: {"subject": str, "body_text": str}. 503 when the feature flag is off."""
    if not feature_flags.is_enabled(feature_flags.BROADCAST):
        return jsonify({"error": "Broadcast feature is disabled"}), 503

    data = request.get_json(silent=True) or {}
    subject = (data.get("subject") or "").strip()
    body_text = (data.get("body_text") or "").strip()
    if not subject or not body_text:
        return jsonify({"error": "subject and body_text are required"}), 400

    try:
        broadcast_id = get_mailer().send_broadcast(subject=subject, body_text=body_text)
        return jsonify({"success": True, "broadcast_id": broadcast_id}), 200
    except FeatureDisabledError as e:
        return jsonify({"error": str(e)}), 503
    except EmailError as e:
        current_app.logger.error("Broadcast failed: %s", e)
        return jsonify({"error": str(e)}), 502
    except Exception:
        current_app.logger.exception("Failed to send broadcast")
        return jsonify({"error": "Internal server error"}), 500
