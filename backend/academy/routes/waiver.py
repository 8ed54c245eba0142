# Overview: Flask API routes for the liability waiver.

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_auth
from ..services import waiver_service

waiver_bp = Blueprint("waiver", __name__, url_prefix="/api/waiver")


@waiver_bp.post("/sign")
@require_auth
def sign_waiver_route():
    try:
        ip_address = waiver_service.client_ip(
            request.headers.get("X-Forwarded-For"), request.remote_addr
        )
        user = waiver_service.sign_waiver(g.current_user, ip_address)
        return jsonify({
            "success": True,
            "waiver_signed": user.waiver_signed,
            "waiver_signed_at": user.to_dict()["waiver_signed_at"],
        }), 200
    except Exception:
        current_app.logger.exception("Failed to sign waiver")
        return jsonify({"error": "Internal server error"}), 500


@waiver_bp.get("/status")
@require_auth
def waiver_status_route():
    return jsonify(waiver_service.waiver_status(g.current_user)), 200
