# Overview: Transactional and broadcast email through the Resend REST API.

"""
Email dispatch.

WHY decoupled: email is secondary to payments. send_purchase_confirmation
never raises; callers on the payment path only see True/False. Contact
sync and broadcasts are feature-flagged and off unless explicitly enabled.

The Mailer is constructed once in create_app() and stored on
app.extensions (tests inject a fake with the same interface).
"""

from __future__ import annotations

import logging
import re

import requests
from flask import current_app, render_template

from . import feature_flags
from academy.log_utils import pii

log = logging.getLogger(__name__)

MAILER_EXTENSION_KEY = "academy.mailer"
RESEND_API_BASE = "https://api.resend.com"

_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)


class EmailError(Exception):
    """Email could not be sent (configuration or provider failure)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class FeatureDisabledError(EmailError):
    """The feature flag guarding this operation is off."""


def format_cents(amount_cents: int, currency: str = "usd") -> str:
    if currency.lower() == "usd":
        return f"${amount_cents / 100:,.2f}"
    return f"{amount_cents / 100:,.2f} {currency.upper()}"


def order_number_for(payment_id: int) -> str:
    """Customer-facing order number, e.g. EXP-0000002A."""
    return f"EXP-{payment_id:08x}".upper()


class Mailer:
    def __init__(self, api_key: str, from_email: str, audience_id: str = "", *,
                 timeout: int = 10, session: requests.Session | None = None):
        self.api_key = api_key
        self.from_email = from_email
        self.audience_id = audience_id
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, config) -> "Mailer":
        return cls(
            api_key=config.get("RESEND_API_KEY", ""),
            from_email=config.get("RESEND_FROM_EMAIL", "hello@thelacrosselab.com"),
            audience_id=config.get("RESEND_AUDIENCE_ID", ""),
            timeout=config.get("RESEND_TIMEOUT_SECONDS", 10),
        )

    def _post(self, path: str, payload: dict) -> dict:
        if not self.api_key:
            raise EmailError("RESEND_API_KEY is not configured")
        try:
            resp = self.session.post(
                f"{RESEND_API_BASE}{path}",
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise EmailError(f"Resend request to {path} failed: {exc}") from exc

        if resp.status_code >= 400:
            try:
                message = resp.json().get("message") or resp.text
            except ValueError:
                message = resp.text
            raise EmailError(f"Resend {path} returned {resp.status_code}: {message}", resp.status_code)

        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError:
            return {}

    # =========================================================================
    # Transactional
    # =========================================================================

    def send_purchase_confirmation(
        self,
        *,
        to: str,
        customer_name: str | None,
        order_number: str,
        items: list[dict],
        total_cents: int,
        currency: str = "usd",
    ) -> bool:
        """
        Send the order confirmation email.

        Args:
            to: recipient address
            customer_name: greeting name (falls back to "there")
            order_number: customer-facing order number (EXP-XXXXXXXX)
            items: [{"product_name", "athlete_name", "quantity", "unit_price_cents"}]
            total_cents: amount charged
            currency: ISO currency code

        Returns:
            True if the provider accepted the message, False otherwise.
            Never raises.
        """
        if not to or "@" not in to:
            log.warning("purchase_confirmation.skipped reason=invalid_recipient order=%s", order_number)
            return False
        if not order_number or not items:
            log.warning("purchase_confirmation.skipped reason=missing_order_data order=%s", order_number)
            return False

        try:
            rows = [
                {
                    "product_name": item.get("product_name") or "Training session",
                    "athlete_name": item.get("athlete_name") or "",
                    "quantity": item.get("quantity", 1),
                    "line_total": format_cents(
                        int(item.get("unit_price_cents", 0)) * int(item.get("quantity", 1)), currency
                    ),
                }
                for item in items
            ]
            html = render_template(
                "email/purchase_confirmation.html",
                customer_name=customer_name or "there",
                order_number=order_number,
                items=rows,
                total=format_cents(total_cents, currency),
                site_url=current_app.config.get("SITE_URL", ""),
            )
            self._post("/emails", {
                "from": self.from_email,
                "to": [to],
                "subject": f"Order Confirmation - {order_number}",
                "html": html,
            })
        except Exception as exc:
            log.error("purchase_confirmation.failed order=%s to=%s error=%s", order_number, pii(to), exc)
            return False

        log.info("purchase_confirmation.sent order=%s to=%s", order_number, pii(to))
        return True

    # =========================================================================
    # Marketing audience
    # =========================================================================

    def add_contact(self, *, email: str, full_name: str | None = None) -> bool:
        """
        Add a customer to the marketing audience.

        Returns False when the feature is off or no audience is configured.
        An "already exists" response counts as success. Other provider
        errors raise EmailError (callers on the payment path swallow it).
        """
        if not feature_flags.is_enabled(feature_flags.CONTACT_SYNC):
            log.debug("contact_sync.skipped reason=flag_disabled")
            return False
        if not self.audience_id:
            log.warning("contact_sync.skipped reason=no_audience_id")
            return False

        first_name, _, last_name = (full_name or "").strip().partition(" ")
        try:
            self._post(f"/audiences/{self.audience_id}/contacts", {
                "email": email,
                "first_name": first_name or None,
                "last_name": last_name or None,
                "unsubscribed": False,
            })
        except EmailError as exc:
            if "already exists" in str(exc).lower():
                log.info("contact_sync.exists email=%s", pii(email))
                return True
            raise

        log.info("contact_sync.added email=%s", pii(email))
        return True

    def send_broadcast(self, *, subject: str, body_text: str) -> str:
        """
        Create and send a broadcast to the whole audience.

        Returns the broadcast id.

        Raises:
            FeatureDisabledError: ENABLE_BROADCAST_FEATURE is off
            EmailError: bad audience id or provider failure
        """
        if not feature_flags.is_enabled(feature_flags.BROADCAST):
            raise FeatureDisabledError("Broadcast feature is disabled")
        if not self.audience_id or not _UUID_RE.match(self.audience_id):
            raise EmailError("RESEND_AUDIENCE_ID must be a valid UUID")

        paragraphs = [p.strip() for p in body_text.split("\n\n") if p.strip()]
        html = render_template(
            "email/broadcast.html",
            subject=subject,
            paragraphs=paragraphs,
            site_url=current_app.config.get("SITE_URL", ""),
        )
        created = self._post("/broadcasts", {
            "audience_id": self.audience_id,
            "from": self.from_email,
            "subject": subject,
            "html": html,
            "text": body_text,
        })
        broadcast_id = created.get("id")
        if not broadcast_id:
            raise EmailError("Resend did not return a broadcast id")

        self._post(f"/broadcasts/{broadcast_id}/send", {})
        log.info("broadcast.sent id=%s subject=%r", broadcast_id, subject)
        return broadcast_id


def get_mailer():
    """Mailer constructed at startup (or injected by tests)."""
    return current_app.extensions[MAILER_EXTENSION_KEY]
