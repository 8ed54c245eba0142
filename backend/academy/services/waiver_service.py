# Overview: Liability waiver signing and status.

from __future__ import annotations

import logging

from ..extensions import db
from ..models import Athlete, User
from academy.time_utils import to_utc_z, utcnow

log = logging.getLogger(__name__)

ADULT_AGE = 18


def client_ip(forwarded_for: str | None, remote_addr: str | None) -> str | None:
    """First address in X-Forwarded-For (the original client), else the socket peer."""
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first[:64]
    return remote_addr


def sign_waiver(user: User, ip_address: str | None) -> User:
    """
    Record the waiver signature.

    Signing again refreshes the timestamp and IP (a re-sign after the
    waiver text changes is a new signature).
    """
    user.waiver_signed = True
    user.waiver_signed_at = utcnow()
    user.waiver_ip_address = ip_address
    db.session.commit()
    log.info("waiver.signed user_id=%s", user.id)
    return user


def waiver_status(user: User) -> dict:
    """
    Waiver state plus which athletes are minors.

    An athlete with no age on file is treated as a minor.
    """
    athletes = db.session.query(Athlete).filter_by(user_id=user.id).order_by(Athlete.name).all()
    minors = [a for a in athletes if a.age is None or a.age < ADULT_AGE]
    return {
        "waiver_signed": bool(user.waiver_signed),
        "waiver_signed_at": to_utc_z(user.waiver_signed_at),
        "has_minors": bool(minors),
        "minor_athletes": [{"id": a.id, "name": a.name} for a in minors],
    }
