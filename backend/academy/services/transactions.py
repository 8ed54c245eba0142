# Overview: Atomic payment procedures (webhook payment insert, refund marking, cash registration).

"""
Transactional procedures.

Each public procedure here is ONE database transaction: it either commits
every row it touches or none of them. Callers (webhook_service,
refund_service, roster_service) do the external API work and resolution;
these functions only write.

STATUS MODEL:
Payment.status is derived from line-item refund state by
derive_payment_status(). It is recomputed inside process_refund() and is
never assigned from request input.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Athlete, CartItem, Payment, PaymentAthlete, Product
from .concurrency import lock_for_update, run_with_retry
from academy.time_utils import utcnow

log = logging.getLogger(__name__)


# =============================================================================
# PAYMENT STATUS / METHOD CONSTANTS
# =============================================================================

STATUS_SUCCEEDED = "succeeded"
STATUS_CASH = "cash"
STATUS_FAILED = "failed"
STATUS_REFUNDED = "refunded"
STATUS_PARTIAL_REFUND = "partial_refund"

PAYMENT_STATUSES = (STATUS_SUCCEEDED, STATUS_CASH, STATUS_FAILED, STATUS_REFUNDED, STATUS_PARTIAL_REFUND)

# Payments whose non-refunded line items hold a spot on the roster
ACTIVE_STATUSES = (STATUS_SUCCEEDED, STATUS_CASH, STATUS_PARTIAL_REFUND)

METHOD_CARD = "card"
METHOD_CASH = "cash"


class TransactionError(Exception):
    """A procedure refused to write (nothing was committed)."""


class AlreadyRegisteredError(TransactionError):
    pass


class InsufficientStockError(TransactionError):
    pass


@dataclass(frozen=True)
class ResolvedLineItem:
    athlete_id: int
    product_id: int
    quantity: int
    unit_price_cents: int


@dataclass
class RefundMarking:
    payment: Payment
    refunded_lines: list[PaymentAthlete]
    all_refunded: bool


# =============================================================================
# STATUS DERIVATION
# =============================================================================

def derive_payment_status(base_status: str, line_refund_flags: Iterable[bool]) -> str:
    """
    Derive a payment's status from its line items.

    - no line items, or none refunded -> base_status (succeeded / cash / failed)
    - every line item refunded        -> refunded
    - some but not all refunded       -> partial_refund
    """
    flags = list(line_refund_flags)
    if not flags or not any(flags):
        return base_status
    if all(flags):
        return STATUS_REFUNDED
    return STATUS_PARTIAL_REFUND


def base_status_for(payment: Payment) -> str:
    return STATUS_CASH if payment.payment_method == METHOD_CASH else STATUS_SUCCEEDED


# =============================================================================
# ROSTER AGGREGATES
# =============================================================================

def active_registrations_query():
    """Line items that currently hold a roster spot."""
    return (
        db.session.query(PaymentAthlete)
        .join(Payment, Payment.id == PaymentAthlete.payment_id)
        .filter(
            Payment.status.in_(ACTIVE_STATUSES),
            PaymentAthlete.refunded_at.is_(None),
        )
    )


def registered_quantity(product_id: int) -> int:
    total = (
        db.session.query(func.coalesce(func.sum(PaymentAthlete.quantity), 0))
        .join(Payment, Payment.id == PaymentAthlete.payment_id)
        .filter(
            PaymentAthlete.product_id == product_id,
            Payment.status.in_(ACTIVE_STATUSES),
            PaymentAthlete.refunded_at.is_(None),
        )
        .scalar()
    )
    return int(total or 0)


def spots_remaining(product: Product) -> int:
    """Stock is a ceiling: stock_quantity minus active registrations (never < 0)."""
    return max(0, (product.stock_quantity or 0) - registered_quantity(product.id))


def has_active_registration(athlete_id: int, product_id: int) -> bool:
    return (
        active_registrations_query()
        .filter(PaymentAthlete.athlete_id == athlete_id, PaymentAthlete.product_id == product_id)
        .first()
        is not None
    )


# =============================================================================
# PROCEDURES
# =============================================================================

def process_payment_webhook(
    *,
    stripe_payment_intent_id: str,
    user_id: int,
    amount_cents: int,
    currency: str,
    line_items: list[ResolvedLineItem],
) -> Payment:
    """
    Record a completed card payment and its line items atomically.

    WHY upsert: Stripe delivers at least once. A replay (or a concurrent
    duplicate that slipped past the event ledger) finds the existing
    payment by intent id and only inserts line items that are missing,
    so a payment never ends up with duplicate lines.

    The buyer's matching cart items are removed in the same transaction.

    Raises:
        TransactionError: no line items given
    """
    if not line_items:
        raise TransactionError("A payment requires at least one line item")

    def _op() -> Payment:
        try:
            payment = lock_for_update(
                db.session.query(Payment).filter_by(stripe_payment_intent_id=stripe_payment_intent_id)
            ).first()

            if payment is None:
                payment = Payment(
                    user_id=user_id,
                    amount_cents=amount_cents,
                    currency=currency,
                    stripe_payment_intent_id=stripe_payment_intent_id,
                    payment_method=METHOD_CARD,
                    status=STATUS_SUCCEEDED,
                )
                db.session.add(payment)
                db.session.flush()
            elif payment.status == STATUS_FAILED:
                # An intent that failed once can still succeed on a later attempt
                payment.status = STATUS_SUCCEEDED
                payment.user_id = user_id
                payment.amount_cents = amount_cents
                payment.currency = currency

            existing = {
                (line.athlete_id, line.product_id)
                for line in db.session.query(PaymentAthlete).filter_by(payment_id=payment.id)
            }
            for item in line_items:
                key = (item.athlete_id, item.product_id)
                if key in existing:
                    continue
                db.session.add(PaymentAthlete(
                    payment_id=payment.id,
                    athlete_id=item.athlete_id,
                    product_id=item.product_id,
                    quantity=item.quantity,
                    unit_price_cents=item.unit_price_cents,
                ))
                existing.add(key)

                db.session.query(CartItem).filter_by(
                    user_id=user_id,
                    product_id=item.product_id,
                    athlete_id=item.athlete_id,
                ).delete(synchronize_session=False)

            db.session.commit()
            return payment
        except Exception:
            db.session.rollback()
            raise

    try:
        return run_with_retry(_op)
    except IntegrityError:
        # Concurrent duplicate inserted the payment first; retry against that row
        log.info("payment upsert raced for intent %s, retrying", stripe_payment_intent_id)
        return run_with_retry(_op)


def record_failed_payment(
    *,
    stripe_payment_intent_id: str,
    user_id: int | None,
    amount_cents: int,
    currency: str,
) -> Payment | None:
    """
    Record a failed card payment (no line items).

    Returns None when a payment with this intent id already exists
    (a late failure event must never downgrade a succeeded payment).
    """
    def _op() -> Payment | None:
        try:
            existing = db.session.query(Payment).filter_by(
                stripe_payment_intent_id=stripe_payment_intent_id
            ).first()
            if existing is not None:
                return None
            payment = Payment(
                user_id=user_id,
                amount_cents=amount_cents,
                currency=currency,
                stripe_payment_intent_id=stripe_payment_intent_id,
                payment_method=METHOD_CARD,
                status=STATUS_FAILED,
            )
            db.session.add(payment)
            db.session.commit()
            return payment
        except Exception:
            db.session.rollback()
            raise

    try:
        return run_with_retry(_op)
    except IntegrityError:
        return None


def process_refund(*, payment_athlete_ids: Iterable[int], refund_id: str) -> RefundMarking:
    """
    Mark line items refunded and recompute the parent payment status.

    Only rows that are still unrefunded are touched; refunded_at is never
    overwritten. Rows are locked (where the database supports it) so two
    overlapping refunds cannot both mark the same line.

    Raises:
        TransactionError: nothing left to mark, or ids span several payments
    """
    ids = sorted(set(payment_athlete_ids))

    def _op() -> RefundMarking:
        try:
            lines = lock_for_update(
                db.session.query(PaymentAthlete)
                .filter(PaymentAthlete.id.in_(ids), PaymentAthlete.refunded_at.is_(None))
                .order_by(PaymentAthlete.id)
            ).all()
            if not lines:
                raise TransactionError("No refundable line items")

            payment_ids = {line.payment_id for line in lines}
            if len(payment_ids) != 1:
                raise TransactionError("Line items must belong to a single payment")

            payment = lock_for_update(
                db.session.query(Payment).filter_by(id=payment_ids.pop())
            ).one()

            now = utcnow()
            for line in lines:
                line.refunded_at = now
                line.stripe_refund_id = refund_id
            db.session.flush()

            all_lines = db.session.query(PaymentAthlete).filter_by(payment_id=payment.id).all()
            flags = [line.refunded_at is not None for line in all_lines]
            payment.status = derive_payment_status(base_status_for(payment), flags)

            all_refunded = payment.status == STATUS_REFUNDED
            if all_refunded:
                payment.refunded_at = now
                payment.stripe_refund_id = refund_id

            db.session.commit()
            return RefundMarking(payment=payment, refunded_lines=lines, all_refunded=all_refunded)
        except Exception:
            db.session.rollback()
            raise

    return run_with_retry(_op)


def add_athlete_to_session_cash(*, athlete_id: int, product_id: int, quantity: int = 1) -> Payment:
    """
    Register an athlete for a product as a cash payment.

    Creates the cash Payment (amount = price x quantity) and its line item in
    one transaction. Duplicate registration and the stock ceiling are checked
    again here with the product row locked.

    Raises:
        TransactionError: athlete or product missing, bad quantity
        AlreadyRegisteredError: athlete already holds an active spot
        InsufficientStockError: not enough spots remaining
    """
    if quantity <= 0:
        raise TransactionError("Quantity must be positive")

    def _op() -> Payment:
        try:
            product = lock_for_update(db.session.query(Product).filter_by(id=product_id)).first()
            if product is None:
                raise TransactionError("Product not found")
            athlete = db.session.get(Athlete, athlete_id)
            if athlete is None:
                raise TransactionError("Athlete not found")

            if has_active_registration(athlete_id, product_id):
                raise AlreadyRegisteredError("Athlete is already registered for this session")
            if spots_remaining(product) < quantity:
                raise InsufficientStockError(f"Not enough spots remaining for {product.name}")

            payment = Payment(
                user_id=athlete.user_id,
                amount_cents=product.price_cents * quantity,
                currency=product.currency or "usd",
                stripe_payment_intent_id=None,
                payment_method=METHOD_CASH,
                status=STATUS_CASH,
            )
            db.session.add(payment)
            db.session.flush()

            db.session.add(PaymentAthlete(
                payment_id=payment.id,
                athlete_id=athlete_id,
                product_id=product_id,
                quantity=quantity,
                unit_price_cents=product.price_cents,
            ))
            db.session.commit()
            return payment
        except Exception:
            db.session.rollback()
            raise

    return run_with_retry(_op)
