# backend/academy/routes/system.py
"""
Health check and public feature-flag endpoints.
"""

import time

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy import text

from ..extensions import db
from ..services import feature_flags
from ..services.feature_flags import UnknownFeatureFlagError
from academy.time_utils import to_utc_z, utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """Ping the database. Returns dict with status and latency."""
    start_time = time.time()
    try:
        db.session.execute(text("SELECT 1"))
        elapsed_ms = (time.time() - start_time) * 1000
        return {"status": "healthy", "latency_ms": round(elapsed_ms, 2)}
    except Exception:
        db.session.rollback()
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


@system_bp.get("/health")
def health():
    database = check_database_health()
    healthy = database["status"] == "healthy"
    body = {
        "status": "healthy" if healthy else "unhealthy",
        "timestamp": to_utc_z(utcnow()),
        "checks": {"database": database},
    }
    return jsonify(body), 200 if healthy else 503


@system_bp.get("/api/feature-flags")
def feature_flags_route():
    """
    GET /api/feature-flags            -> all allow-listed flags
    GET /api/feature-flags?flag=NAME  -> {"flag": NAME, "enabled": bool}
    """
    flag = request.args.get("flag")
    if not flag:
        return jsonify({"flags": feature_flags.all_flags()}), 200
    try:
        return jsonify({"flag": flag, "enabled": feature_flags.is_enabled(flag)}), 200
    except UnknownFeatureFlagError as e:
        return jsonify({"error": str(e)}), 400
