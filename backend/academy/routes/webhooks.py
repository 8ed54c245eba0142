# Overview: Stripe webhook endpoint.

"""
The HTTP status is read by Stripe's retry policy:
- 400: signature/payload rejected (Stripe will not fix it by retrying)
- 500: user resolution or infrastructure failure (Stripe retries)
- 200: processed, duplicate, ignored, or unprocessable checkout data
"""

from flask import Blueprint, current_app, jsonify, request

from ..services import webhook_service
from ..services.email_service import get_mailer
from ..services.stripe_gateway import WebhookSignatureError, get_gateway
from ..services.webhook_service import MalformedEventError, UserResolutionError

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/api/webhooks")


@webhooks_bp.post("/stripe")
def stripe_webhook_route():
    payload = request.get_data()
    signature = request.headers.get("Stripe-Signature")

    try:
        result = webhook_service.handle_stripe_webhook(
            payload,
            signature,
            gateway=get_gateway(),
            mailer=get_mailer(),
        )
        return jsonify(result.to_dict()), 200
    except WebhookSignatureError as e:
        current_app.logger.warning("Rejected Stripe webhook: %s", e)
        return jsonify({"error": str(e)}), 400
    except MalformedEventError as e:
        return jsonify({"error": str(e)}), 400
    except UserResolutionError:
        current_app.logger.exception("Stripe webhook user resolution failed")
        return jsonify({"error": "Unable to resolve user"}), 500
    except Exception:
        current_app.logger.exception("Stripe webhook processing failed")
        return jsonify({"error": "Webhook processing failed"}), 500
