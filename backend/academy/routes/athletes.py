# Overview: Flask API routes for athlete profiles; parses input and returns JSON responses.

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_auth
from ..services import athlete_service
from ..validation import ConflictError, NotFoundError, ValidationError

athletes_bp = Blueprint("athletes", __name__, url_prefix="/api/athletes")


@athletes_bp.get("")
@require_auth
def list_athletes_route():
    athletes = athlete_service.list_athletes(g.current_user)
    return jsonify({"items": [a.to_dict() for a in athletes], "count": len(athletes)}), 200


@athletes_bp.post("")
@require_auth
def create_athlete_route():
    try:
        athlete = athlete_service.create_athlete(g.current_user, request.get_json(silent=True))
        return jsonify(athlete.to_dict()), 201
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to create athlete")
        return jsonify({"error": "Internal server error"}), 500


@athletes_bp.put("/<int:athlete_id>")
@require_auth
def update_athlete_route(athlete_id: int):
    try:
        athlete = athlete_service.update_athlete(g.current_user, athlete_id, request.get_json(silent=True))
        return jsonify(athlete.to_dict()), 200
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to update athlete")
        return jsonify({"error": "Internal server error"}), 500


@athletes_bp.delete("/<int:athlete_id>")
@require_auth
def delete_athlete_route(athlete_id: int):
    try:
        athlete_service.delete_athlete(g.current_user, athlete_id)
        return jsonify({"success": True}), 200
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to delete athlete")
        return jsonify({"error": "Internal server error"}), 500
