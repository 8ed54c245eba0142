# backend/academy/config.py
from __future__ import annotations
import os


def _env_flag(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).strip().lower() == "true"


def _env_list(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip().lower() for item in raw.split(",") if item.strip()]


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/academy.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///academy.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Stripe
    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY", "")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET", "")
    STRIPE_TAX_CODE = os.environ.get("STRIPE_TAX_CODE", "txcd_20030000")
    STRIPE_TIMEOUT_SECONDS = int(os.environ.get("STRIPE_TIMEOUT_SECONDS", "20"))

    # Resend (transactional + broadcast email)
    RESEND_API_KEY = os.environ.get("RESEND_API_KEY", "")
    RESEND_FROM_EMAIL = os.environ.get("RESEND_FROM_EMAIL", "hello@thelacrosselab.com")
    RESEND_AUDIENCE_ID = os.environ.get("RESEND_AUDIENCE_ID", "")
    RESEND_TIMEOUT_SECONDS = int(os.environ.get("RESEND_TIMEOUT_SECONDS", "10"))

    SITE_URL = os.environ.get("SITE_URL", "http://localhost:3000").rstrip("/")

    # Accounts with an email at one of these domains get the admin console
    ADMIN_EMAIL_DOMAINS = _env_list(
        "ADMIN_EMAIL_DOMAINS", "thelacrosselab.com,experimentlacrosse.com"
    )

    CORS_ALLOWED_ORIGINS = _env_list(
        "CORS_ALLOWED_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000"
    )

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
    ENABLE_PII_LOGS = _env_flag("ENABLE_PII_LOGS")

    # Feature flags
    ENABLE_BROADCAST_FEATURE = _env_flag("ENABLE_BROADCAST_FEATURE")
    ENABLE_RESEND_CONTACT_ADDITION = _env_flag("ENABLE_RESEND_CONTACT_ADDITION")
