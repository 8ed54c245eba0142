# Overview: Athlete profile CRUD for account owners.

from __future__ import annotations

from ..extensions import db
from ..models import Athlete, CartItem, PaymentAthlete, User
from ..validation import (
    ConflictError,
    ModelValidationPolicy,
    NotFoundError,
    enforce_rules_athlete,
    validate_payload,
)

ATHLETE_POLICY = ModelValidationPolicy(
    writable_fields={"name", "age", "school", "position", "grade"},
    required_on_create={"name"},
)


def list_athletes(user: User) -> list[Athlete]:
    return (
        db.session.query(Athlete)
        .filter_by(user_id=user.id)
        .order_by(Athlete.name.asc(), Athlete.id.asc())
        .all()
    )


def get_owned_athlete(user: User, athlete_id: int) -> Athlete:
    """Athletes are only visible to their owner; anything else is a 404."""
    athlete = db.session.query(Athlete).filter_by(id=athlete_id, user_id=user.id).first()
    if athlete is None:
        raise NotFoundError("Athlete not found")
    return athlete


def create_athlete(user: User, payload: dict) -> Athlete:
    patch = validate_payload(model=Athlete, payload=payload, policy=ATHLETE_POLICY, partial=False)
    enforce_rules_athlete(patch)

    athlete = Athlete(user_id=user.id, **patch)
    db.session.add(athlete)
    db.session.commit()
    return athlete


def update_athlete(user: User, athlete_id: int, payload: dict) -> Athlete:
    athlete = get_owned_athlete(user, athlete_id)
    patch = validate_payload(model=Athlete, payload=payload, policy=ATHLETE_POLICY, partial=True)
    enforce_rules_athlete(patch)

    for key, value in patch.items():
        setattr(athlete, key, value)
    db.session.commit()
    return athlete


def delete_athlete(user: User, athlete_id: int) -> None:
    """
    Delete an athlete and any cart rows for it.

    Raises ConflictError if the athlete appears on any payment (registration
    history is kept for refunds and rosters).
    """
    athlete = get_owned_athlete(user, athlete_id)

    has_registrations = (
        db.session.query(PaymentAthlete.id).filter_by(athlete_id=athlete.id).first() is not None
    )
    if has_registrations:
        raise ConflictError("Athletes with registrations cannot be deleted")

    db.session.query(CartItem).filter_by(athlete_id=athlete.id).delete(synchronize_session=False)
    db.session.delete(athlete)
    db.session.commit()
