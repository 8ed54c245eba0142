# Overview: Logging setup and helpers that keep credentials and PII out of log output.

from __future__ import annotations

import logging
import re
import secrets

from flask import current_app, has_app_context

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_SENSITIVE_PAIR = re.compile(
    r"(?i)\b([\w-]*(?:password|token|secret|api_?key|authorization)[\w-]*)(\s*[=:]\s*)(\"[^\"]*\"|'[^']*'|[^\s,;]+)"
)
_BEARER = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/=-]+")
_STRIPE_KEY = re.compile(r"\b(sk|rk|whsec)_(test_|live_)?[A-Za-z0-9]{8,}\b")


class RedactingFilter(logging.Filter):
    """
    Scrub credentials from every record before it reaches a handler.

    Matches key=value / key: value pairs whose key looks sensitive, bearer
    tokens, and Stripe secret/restricted/webhook keys.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            return True
        redacted = redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = ()
        return True


def redact(text: str) -> str:
    text = _BEARER.sub("Bearer [REDACTED]", text)
    text = _SENSITIVE_PAIR.sub(lambda m: f"{m.group(1)}{m.group(2)}[REDACTED]", text)
    return _STRIPE_KEY.sub("[REDACTED]", text)


def configure_logging(app) -> None:
    logging.basicConfig(level=app.config.get("LOG_LEVEL", "INFO"), format=LOG_FORMAT)
    logging.getLogger("academy").setLevel(app.config.get("LOG_LEVEL", "INFO"))

    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, RedactingFilter) for f in handler.filters):
            handler.addFilter(RedactingFilter())


def mask_email(email: str | None) -> str:
    """
    Mask the local part of an email address: "test@x.com" -> "t**t@x.com".

    Local parts of two characters or fewer become "x**@domain".
    """
    if not email or "@" not in email:
        return "[no-email]"
    local, domain = email.rsplit("@", 1)
    if len(local) <= 2:
        return f"x**@{domain}"
    return f"{local[0]}**{local[-1]}@{domain}"


def pii(email: str | None) -> str:
    """Email as it should appear in logs (masked unless ENABLE_PII_LOGS)."""
    if has_app_context() and current_app.config.get("ENABLE_PII_LOGS"):
        return email or "[no-email]"
    return mask_email(email)


def new_trace_id() -> str:
    return secrets.token_hex(6)
