# Overview: Admin refunds of individual line items (card via Stripe, cash locally).

"""
Refund Service

ORDER OF OPERATIONS:
1. load the selected line items, drop the ones already refunded
2. card payment: Stripe refund for the summed amount. If Stripe fails,
   stop here (no local change without provider confirmation)
   cash payment: no Stripe call, synthetic cash_refund_<ms> id
3. transactions.process_refund marks the lines and recomputes status

If step 3 fails after Stripe refunded the money, the failure is logged as
refund.reconciliation_required with the Stripe refund id and surfaced to
the admin. It is NOT retried: a second Stripe call would refund twice.

The Stripe idempotency key is derived from the payment id and the sorted
line ids, so a concurrent duplicate request for the same selection
collapses into one Stripe refund.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import Payment, PaymentAthlete
from ..validation import ValidationError
from . import transactions
from .stripe_gateway import PaymentGatewayError
from .transactions import METHOD_CASH, TransactionError
from academy.time_utils import epoch_millis

log = logging.getLogger(__name__)


class RefundError(Exception):
    status_code = 400


class RefundNotFoundError(RefundError):
    status_code = 404


class NothingToRefundError(RefundError):
    pass


class RefundGatewayError(RefundError):
    status_code = 502


class RefundReconciliationError(RefundError):
    """Money moved at Stripe but local state was not updated."""
    status_code = 500

    def __init__(self, message: str, refund_id: str):
        super().__init__(message)
        self.refund_id = refund_id


@dataclass
class RefundResult:
    refund_id: str
    total_refunded_cents: int
    items_refunded: int
    all_items_refunded: bool
    payment_id: int
    payment_status: str

    def to_dict(self) -> dict:
        return {
            "success": True,
            "refund_id": self.refund_id,
            "total_refunded_cents": self.total_refunded_cents,
            "items_refunded": self.items_refunded,
            "all_items_refunded": self.all_items_refunded,
            "payment_id": self.payment_id,
            "payment_status": self.payment_status,
        }


def _refund_idempotency_key(payment_id: int, line_ids: list[int]) -> str:
    return f"refund-{payment_id}-" + "-".join(str(i) for i in sorted(line_ids))


def _previously_refunded_cents(payment_id: int) -> int:
    lines = (
        db.session.query(PaymentAthlete)
        .filter(PaymentAthlete.payment_id == payment_id, PaymentAthlete.refunded_at.isnot(None))
        .all()
    )
    return sum(line.line_total_cents for line in lines)


def refund_line_items(payment_athlete_ids: list[int], *, gateway) -> RefundResult:
    """
    Refund the given line items.

    Args:
        payment_athlete_ids: PaymentAthlete ids, all from one payment
        gateway: Stripe gateway

    Returns:
        RefundResult (only the newly refunded items are counted)

    Raises:
        ValidationError: empty selection, mixed payments, over-refund
        RefundNotFoundError: unknown ids
        NothingToRefundError: everything selected was already refunded
        RefundGatewayError: Stripe refused (nothing changed locally)
        RefundReconciliationError: Stripe refunded, local update failed
    """
    ids = sorted({int(i) for i in payment_athlete_ids or []})
    if not ids:
        raise ValidationError("At least one line item is required")

    lines = db.session.query(PaymentAthlete).filter(PaymentAthlete.id.in_(ids)).all()
    if len(lines) != len(ids):
        found = {line.id for line in lines}
        missing = [i for i in ids if i not in found]
        raise RefundNotFoundError(f"Line items not found: {', '.join(map(str, missing))}")

    payment_ids = {line.payment_id for line in lines}
    if len(payment_ids) != 1:
        raise ValidationError("Line items must belong to a single payment")
    payment = db.session.get(Payment, payment_ids.pop())

    refundable = [line for line in lines if line.refunded_at is None]
    if not refundable:
        raise NothingToRefundError("All selected items have already been refunded")

    total = sum(line.line_total_cents for line in refundable)
    if _previously_refunded_cents(payment.id) + total > payment.amount_cents:
        raise ValidationError("Refund would exceed the original payment amount")

    refundable_ids = [line.id for line in refundable]

    if payment.payment_method != METHOD_CASH and payment.stripe_payment_intent_id:
        try:
            refund = gateway.create_refund(
                payment_intent_id=payment.stripe_payment_intent_id,
                amount=total,
                idempotency_key=_refund_idempotency_key(payment.id, refundable_ids),
            )
        except PaymentGatewayError as exc:
            log.error("refund.stripe_failed payment_id=%s amount=%s error=%s", payment.id, total, exc)
            raise RefundGatewayError(f"Refund failed at payment provider: {exc}") from exc
        refund_id = refund["id"]
        log.info("refund.stripe_ok payment_id=%s refund_id=%s amount=%s", payment.id, refund_id, total)
    else:
        refund_id = f"cash_refund_{epoch_millis()}"
        log.info("refund.cash payment_id=%s refund_id=%s amount=%s", payment.id, refund_id, total)

    try:
        marking = transactions.process_refund(payment_athlete_ids=refundable_ids, refund_id=refund_id)
    except (SQLAlchemyError, TransactionError) as exc:
        log.critical(
            "refund.reconciliation_required payment_id=%s refund_id=%s line_ids=%s amount=%s error=%s",
            payment.id, refund_id, refundable_ids, total, exc,
        )
        raise RefundReconciliationError(
            f"Refund {refund_id} was issued but the database update failed; "
            "manual reconciliation required",
            refund_id=refund_id,
        ) from exc

    refunded_total = sum(line.line_total_cents for line in marking.refunded_lines)
    return RefundResult(
        refund_id=refund_id,
        total_refunded_cents=refunded_total,
        items_refunded=len(marking.refunded_lines),
        all_items_refunded=marking.all_refunded,
        payment_id=marking.payment.id,
        payment_status=marking.payment.status,
    )
