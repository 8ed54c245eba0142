"""
Refund tests.

Verifies:
- Card refunds go through Stripe for exactly the selected line totals
- Payment status follows line-item refund state (partial -> refunded)
- Cash refunds never call Stripe
- Already-refunded items are never refunded twice
- A local failure after Stripe refunded surfaces the refund id
"""

import pytest
from sqlalchemy.exc import OperationalError

from conftest import make_payment

from academy.models import Payment, PaymentAthlete
from academy.services import refund_service, transactions
from academy.services.refund_service import (
    NothingToRefundError,
    RefundGatewayError,
    RefundNotFoundError,
    RefundReconciliationError,
)
from academy.services.transactions import registered_quantity
from academy.validation import ValidationError


def line_ids(payment):
    return [line.id for line in payment.line_items]


# =============================================================================
# CARD REFUNDS
# =============================================================================


class TestCardRefunds:
    def test_partial_refund(self, db_session, gateway, user, athlete, second_athlete, product):
        payment = make_payment(db_session, user, [(athlete, product, 1), (second_athlete, product, 1)],
                               intent_id="pi_card")
        first, second = line_ids(payment)

        result = refund_service.refund_line_items([first], gateway=gateway)

        refunds = gateway.calls_named("refund.create")
        assert refunds == [{
            "payment_intent_id": "pi_card",
            "amount": 5000,
            "idempotency_key": f"refund-{payment.id}-{first}",
        }]
        assert result.items_refunded == 1
        assert result.total_refunded_cents == 5000
        assert result.all_items_refunded is False
        assert result.payment_status == "partial_refund"

        refunded = db_session.get(PaymentAthlete, first)
        assert refunded.refunded_at is not None
        assert refunded.stripe_refund_id == result.refund_id
        assert db_session.get(PaymentAthlete, second).refunded_at is None

    def test_refunding_remaining_items_completes_refund(self, db_session, gateway, user,
                                                        athlete, second_athlete, product):
        payment = make_payment(db_session, user, [(athlete, product, 1), (second_athlete, product, 1)],
                               intent_id="pi_card")
        first, second = line_ids(payment)

        refund_service.refund_line_items([first], gateway=gateway)
        result = refund_service.refund_line_items([second], gateway=gateway)

        assert result.all_items_refunded is True
        payment = db_session.get(Payment, payment.id)
        assert payment.status == "refunded"
        assert payment.refunded_at is not None
        assert payment.stripe_refund_id == result.refund_id

    def test_refund_frees_roster_spot(self, db_session, gateway, user, athlete, product):
        payment = make_payment(db_session, user, [(athlete, product, 2)], intent_id="pi_card")
        assert registered_quantity(product.id) == 2

        refund_service.refund_line_items(line_ids(payment), gateway=gateway)

        assert registered_quantity(product.id) == 0

    def test_already_refunded_items_are_skipped(self, db_session, gateway, user,
                                                athlete, second_athlete, product):
        payment = make_payment(db_session, user, [(athlete, product, 1), (second_athlete, product, 1)],
                               intent_id="pi_card")
        first, second = line_ids(payment)
        refund_service.refund_line_items([first], gateway=gateway)

        result = refund_service.refund_line_items([first, second], gateway=gateway)

        assert result.items_refunded == 1
        assert gateway.calls_named("refund.create")[-1]["amount"] == 5000
        assert gateway.calls_named("refund.create")[-1]["idempotency_key"] == f"refund-{payment.id}-{second}"

    def test_everything_already_refunded(self, db_session, gateway, user, athlete, product):
        payment = make_payment(db_session, user, [(athlete, product, 1)], intent_id="pi_card")
        refund_service.refund_line_items(line_ids(payment), gateway=gateway)
        stripe_calls = len(gateway.calls_named("refund.create"))

        with pytest.raises(NothingToRefundError):
            refund_service.refund_line_items(line_ids(payment), gateway=gateway)

        assert len(gateway.calls_named("refund.create")) == stripe_calls

    def test_stripe_failure_changes_nothing(self, db_session, gateway, user, athlete, product):
        payment = make_payment(db_session, user, [(athlete, product, 1)], intent_id="pi_card")
        gateway.fail_on.add("refund.create")

        with pytest.raises(RefundGatewayError):
            refund_service.refund_line_items(line_ids(payment), gateway=gateway)

        assert db_session.get(Payment, payment.id).status == "succeeded"
        assert db_session.query(PaymentAthlete).filter(PaymentAthlete.refunded_at.isnot(None)).count() == 0

    def test_local_failure_after_stripe_needs_reconciliation(self, db_session, gateway, monkeypatch,
                                                             user, athlete, product):
        payment = make_payment(db_session, user, [(athlete, product, 1)], intent_id="pi_card")

        def broken_marking(**kwargs):
            raise OperationalError("UPDATE payment_athletes", {}, Exception("database is locked"))

        monkeypatch.setattr(transactions, "process_refund", broken_marking)

        with pytest.raises(RefundReconciliationError) as excinfo:
            refund_service.refund_line_items(line_ids(payment), gateway=gateway)

        issued = gateway.calls_named("refund.create")
        assert len(issued) == 1
        assert excinfo.value.refund_id.startswith("re_")
        assert db_session.get(Payment, payment.id).status == "succeeded"


# =============================================================================
# CASH REFUNDS
# =============================================================================


class TestCashRefunds:
    def test_cash_refund_skips_stripe(self, db_session, gateway, user, athlete, product):
        payment = make_payment(db_session, user, [(athlete, product, 1)], method="cash")

        result = refund_service.refund_line_items(line_ids(payment), gateway=gateway)

        assert gateway.calls_named("refund.create") == []
        assert result.refund_id.startswith("cash_refund_")
        assert result.payment_status == "refunded"
        assert db_session.get(Payment, payment.id).payment_method == "cash"

    def test_partial_cash_refund(self, db_session, gateway, user, athlete, second_athlete, product):
        payment = make_payment(db_session, user, [(athlete, product, 1), (second_athlete, product, 1)],
                               method="cash")

        result = refund_service.refund_line_items(line_ids(payment)[:1], gateway=gateway)

        assert result.payment_status == "partial_refund"


# =============================================================================
# INPUT VALIDATION
# =============================================================================


class TestRefundValidation:
    def test_empty_selection(self, db_session, gateway):
        with pytest.raises(ValidationError):
            refund_service.refund_line_items([], gateway=gateway)

    def test_unknown_line_items(self, db_session, gateway):
        with pytest.raises(RefundNotFoundError):
            refund_service.refund_line_items([9999], gateway=gateway)

    def test_items_from_two_payments_rejected(self, db_session, gateway, user,
                                              athlete, second_athlete, product):
        first = make_payment(db_session, user, [(athlete, product, 1)], intent_id="pi_a")
        second = make_payment(db_session, user, [(second_athlete, product, 1)], intent_id="pi_b")

        with pytest.raises(ValidationError):
            refund_service.refund_line_items(line_ids(first) + line_ids(second), gateway=gateway)

        assert gateway.calls_named("refund.create") == []

    def test_refund_never_exceeds_payment_amount(self, db_session, gateway, user,
                                                 athlete, second_athlete, product):
        # A discounted checkout: Stripe collected less than the line totals
        payment = make_payment(db_session, user, [(athlete, product, 1), (second_athlete, product, 1)],
                               intent_id="pi_discount")
        payment.amount_cents = 8000
        db_session.commit()
        first, second = line_ids(payment)

        refund_service.refund_line_items([first], gateway=gateway)

        with pytest.raises(ValidationError, match="exceed"):
            refund_service.refund_line_items([second], gateway=gateway)

        assert len(gateway.calls_named("refund.create")) == 1
        assert db_session.get(PaymentAthlete, second).refunded_at is None

    def test_over_refund_rejected_before_stripe(self, db_session, gateway, user, athlete, product):
        payment = make_payment(db_session, user, [(athlete, product, 2)], intent_id="pi_short")
        payment.amount_cents = 5000
        db_session.commit()

        with pytest.raises(ValidationError):
            refund_service.refund_line_items(line_ids(payment), gateway=gateway)

        assert gateway.calls_named("refund.create") == []
        assert db_session.get(PaymentAthlete, line_ids(payment)[0]).refunded_at is None
        assert db_session.get(Payment, payment.id).status == "succeeded"
