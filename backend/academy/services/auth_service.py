# Overview: Account registration, password hashing, login, and admin detection.

"""
Authentication Service

WHY: Every cart, athlete, and payment is tied to an account. Uses bcrypt
for password hashing and validates password strength on registration.

SECURITY NOTES:
- Passwords hashed with bcrypt (cost factor 12)
- Minimum 8 characters with upper, lower, and digit
- Emails are stored lower-cased; lookups are case-insensitive
- Session tokens managed separately (see session_service.py)
- Admin access is derived from the email domain (ADMIN_EMAIL_DOMAINS)
"""

from __future__ import annotations

import logging
import re

import bcrypt
from flask import current_app

from ..extensions import db
from ..models import User
from ..validation import ConflictError, ValidationError
from academy.log_utils import pii
from academy.time_utils import utcnow

log = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class PasswordValidationError(Exception):
    """Raised when password doesn't meet strength requirements."""
    pass


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def validate_password_strength(password: str) -> None:
    """
    Validate password meets strength requirements.

    Requirements:
    - Minimum 8 characters
    - At least one uppercase letter
    - At least one lowercase letter
    - At least one digit

    Raises PasswordValidationError if requirements not met.
    """
    if len(password) < 8:
        raise PasswordValidationError("Password must be at least 8 characters long")

    if not re.search(r'[A-Z]', password):
        raise PasswordValidationError("Password must contain at least one uppercase letter")

    if not re.search(r'[a-z]', password):
        raise PasswordValidationError("Password must contain at least one lowercase letter")

    if not re.search(r'\d', password):
        raise PasswordValidationError("Password must contain at least one digit")


def hash_password(password: str) -> str:
    """
    Hash password using bcrypt with cost factor 12.

    Password is validated for strength before hashing.
    """
    validate_password_strength(password)
    salt = bcrypt.gensalt(rounds=12)
    hashed = bcrypt.hashpw(password.encode('utf-8'), salt)
    return hashed.decode('utf-8')  # Store as string in database


def verify_password(password: str, password_hash: str) -> bool:
    """
    Verify password against bcrypt hash.

    WHY timing-safe: bcrypt.checkpw() prevents timing attacks automatically.
    A malformed stored hash counts as a mismatch.
    """
    try:
        return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))
    except ValueError:
        return False


def is_admin_email(email: str | None, admin_domains: list[str] | None = None) -> bool:
    if admin_domains is None:
        admin_domains = current_app.config.get("ADMIN_EMAIL_DOMAINS", [])
    email = normalize_email(email)
    if "@" not in email:
        return False
    domain = email.rsplit("@", 1)[1]
    return domain in {d.lower() for d in admin_domains}


def is_admin_user(user: User | None) -> bool:
    return bool(user and user.is_active and is_admin_email(user.email))


def get_user_by_email(email: str | None) -> User | None:
    email = normalize_email(email)
    if not email:
        return None
    return db.session.query(User).filter(db.func.lower(User.email) == email).first()


def create_user(email: str, password: str, full_name: str | None = None) -> User:
    """
    Create new account with bcrypt password hashing.

    Args:
        email: Unique email (case-insensitive)
        password: Password meeting strength requirements
        full_name: Display name used in emails

    Returns:
        Created User object

    Raises:
        ValidationError: malformed email
        ConflictError: email already registered
        PasswordValidationError: weak password
    """
    email = normalize_email(email)
    if not _EMAIL_RE.match(email):
        raise ValidationError("A valid email address is required")

    if get_user_by_email(email):
        raise ConflictError("An account with this email already exists")

    password_hash = hash_password(password)

    user = User(
        email=email,
        full_name=(full_name or "").strip() or None,
        password_hash=password_hash,
    )

    db.session.add(user)
    db.session.commit()
    log.info("user.created id=%s email=%s", user.id, pii(email))
    return user


def authenticate(email: str, password: str) -> User | None:
    """
    Authenticate by email and password.

    Returns User if credentials valid, None otherwise.
    Updates last_login_at timestamp on successful authentication.
    """
    user = get_user_by_email(email)

    if not user or not user.is_active:
        return None

    if verify_password(password, user.password_hash):
        user.last_login_at = utcnow()
        db.session.commit()
        return user

    log.info("auth.failed email=%s", pii(email))
    return None
