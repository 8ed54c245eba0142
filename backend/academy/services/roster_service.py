# Overview: Admin roster views, CSV export, and cash registrations.

from __future__ import annotations

import csv
import io
import logging

from ..extensions import db
from ..models import Athlete, Payment, PaymentAthlete, User
from ..validation import ConflictError, NotFoundError
from . import transactions
from .products_service import get_product
from .transactions import AlreadyRegisteredError, InsufficientStockError, TransactionError

log = logging.getLogger(__name__)

AVAILABLE_ATHLETES_LIMIT = 50

ROSTER_CSV_COLUMNS = [
    "line_item_id", "athlete_name", "age", "grade", "school", "position",
    "parent_email", "quantity", "unit_price_cents", "payment_method",
    "payment_status", "refunded", "registered_at",
]


class RosterError(Exception):
    """400-level roster rule violation."""


def get_roster(product_id: int, *, include_refunded: bool = True) -> list[dict]:
    """Every line item for the product with athlete, parent, and payment details."""
    get_product(product_id)

    query = (
        db.session.query(PaymentAthlete, Athlete, Payment, User)
        .join(Athlete, Athlete.id == PaymentAthlete.athlete_id)
        .join(Payment, Payment.id == PaymentAthlete.payment_id)
        .outerjoin(User, User.id == Athlete.user_id)
        .filter(
            PaymentAthlete.product_id == product_id,
            Payment.status.in_(transactions.ACTIVE_STATUSES + (transactions.STATUS_REFUNDED,)),
        )
        .order_by(Athlete.name.asc(), PaymentAthlete.id.asc())
    )
    if not include_refunded:
        query = query.filter(PaymentAthlete.refunded_at.is_(None))

    roster = []
    for line, athlete, payment, parent in query.all():
        roster.append({
            "line_item_id": line.id,
            "payment_id": payment.id,
            "athlete_id": athlete.id,
            "athlete_name": athlete.name,
            "age": athlete.age,
            "grade": athlete.grade,
            "school": athlete.school,
            "position": athlete.position,
            "parent_email": parent.email if parent else None,
            "quantity": line.quantity,
            "unit_price_cents": line.unit_price_cents,
            "payment_method": payment.payment_method,
            "payment_status": payment.status,
            "refunded": line.refunded_at is not None,
            "registered_at": line.to_dict()["created_at"],
        })
    return roster


def roster_csv(product_id: int) -> str:
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=ROSTER_CSV_COLUMNS, extrasaction="ignore")
    writer.writeheader()
    for row in get_roster(product_id):
        writer.writerow(row)
    return buffer.getvalue()


def available_athletes(product_id: int, search: str | None = None) -> list[dict]:
    """
    Athletes an admin can register for the product (cash).

    Excludes athletes that already hold an active spot. Optional
    case-insensitive name search. Capped at AVAILABLE_ATHLETES_LIMIT.
    """
    get_product(product_id)

    registered_ids = {
        athlete_id
        for (athlete_id,) in transactions.active_registrations_query()
        .filter(PaymentAthlete.product_id == product_id)
        .with_entities(PaymentAthlete.athlete_id)
        .all()
    }

    query = db.session.query(Athlete, User).outerjoin(User, User.id == Athlete.user_id)
    if search and search.strip():
        query = query.filter(Athlete.name.ilike(f"%{search.strip()}%"))
    if registered_ids:
        query = query.filter(Athlete.id.notin_(registered_ids))

    rows = query.order_by(Athlete.name.asc()).limit(AVAILABLE_ATHLETES_LIMIT).all()
    return [
        {**athlete.to_dict(), "parent_email": parent.email if parent else None}
        for athlete, parent in rows
    ]


def register_cash(*, product_id: int, athlete_id: int, quantity: int = 1) -> Payment:
    """
    Register an athlete for a product as a cash payment.

    Raises:
        NotFoundError: unknown athlete or product
        ConflictError: already registered
        RosterError: not enough spots
    """
    product = get_product(product_id)
    if db.session.get(Athlete, athlete_id) is None:
        raise NotFoundError("Athlete not found")

    try:
        payment = transactions.add_athlete_to_session_cash(
            athlete_id=athlete_id,
            product_id=product.id,
            quantity=quantity,
        )
    except AlreadyRegisteredError as exc:
        raise ConflictError(str(exc)) from exc
    except InsufficientStockError as exc:
        raise RosterError(str(exc)) from exc
    except TransactionError as exc:
        raise RosterError(str(exc)) from exc

    log.info("roster.cash_registration payment_id=%s athlete_id=%s product_id=%s qty=%s",
             payment.id, athlete_id, product.id, quantity)
    return payment
