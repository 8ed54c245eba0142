# Overview: Member-facing purchase history.

from flask import Blueprint, g, jsonify

from ..decorators import require_auth
from ..extensions import db
from ..models import Payment
from ..services.email_service import order_number_for

payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


@payments_bp.get("")
@require_auth
def list_my_payments_route():
    """Caller's payments, newest first, with line items (failed attempts excluded)."""
    payments = (
        db.session.query(Payment)
        .filter(Payment.user_id == g.current_user.id, Payment.status != "failed")
        .order_by(Payment.created_at.desc(), Payment.id.desc())
        .all()
    )
    items = []
    for payment in payments:
        data = payment.to_dict()
        data["order_number"] = order_number_for(payment.id)
        items.append(data)
    return jsonify({"items": items, "count": len(items)}), 200
