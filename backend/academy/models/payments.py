from __future__ import annotations

from ..extensions import db
from academy.time_utils import to_utc_z


class Payment(db.Model):
    """
    One purchase transaction (card via Stripe checkout, or cash via admin).

    STATUS is derived, never set ad hoc:
    - card payments start SUCCEEDED, cash payments start CASH
    - refunds recompute status from line items (transactions.derive_payment_status)

    payment_method keeps the card/cash distinction once status moves to
    refunded / partial_refund.
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.Index("ix_payments_user_status", "user_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="usd")

    # Null for cash payments
    stripe_payment_intent_id = db.Column(db.String(255), nullable=True, unique=True, index=True)

    payment_method = db.Column(db.String(16), nullable=False, default="card")
    status = db.Column(db.String(32), nullable=False, index=True)

    stripe_refund_id = db.Column(db.String(255), nullable=True)
    refunded_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Claimed before the confirmation email is sent (at most one email per payment)
    email_sent_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    user = db.relationship("User", backref=db.backref("payments", lazy=True))
    line_items = db.relationship(
        "PaymentAthlete",
        backref="payment",
        lazy=True,
        order_by="PaymentAthlete.id",
    )

    def __repr__(self) -> str:
        return f"<Payment id={self.id} status={self.status} amount_cents={self.amount_cents}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "amount_cents": self.amount_cents,
            "currency": self.currency,
            "stripe_payment_intent_id": self.stripe_payment_intent_id,
            "payment_method": self.payment_method,
            "status": self.status,
            "stripe_refund_id": self.stripe_refund_id,
            "refunded_at": to_utc_z(self.refunded_at),
            "email_sent_at": to_utc_z(self.email_sent_at),
            "created_at": to_utc_z(self.created_at),
            "line_items": [line.to_dict() for line in self.line_items],
        }


class PaymentAthlete(db.Model):
    """
    Line item: one (athlete, product) registration within a payment.

    Refunds are per line item. unit_price_cents is snapshotted at purchase
    so later catalog price changes never alter refund amounts.
    """
    __tablename__ = "payment_athletes"
    __table_args__ = (
        db.UniqueConstraint("payment_id", "athlete_id", "product_id", name="uq_payment_athletes_line"),
        db.Index("ix_payment_athletes_product_refunded", "product_id", "refunded_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=False, index=True)
    athlete_id = db.Column(db.Integer, db.ForeignKey("athletes.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)

    quantity = db.Column(db.Integer, nullable=False, default=1)
    unit_price_cents = db.Column(db.Integer, nullable=False)

    refunded_at = db.Column(db.DateTime(timezone=True), nullable=True)
    stripe_refund_id = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    athlete = db.relationship("Athlete")
    product = db.relationship("Product")

    @property
    def line_total_cents(self) -> int:
        return self.unit_price_cents * self.quantity

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "payment_id": self.payment_id,
            "athlete_id": self.athlete_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.line_total_cents,
            "refunded_at": to_utc_z(self.refunded_at),
            "stripe_refund_id": self.stripe_refund_id,
            "created_at": to_utc_z(self.created_at),
        }


class WebhookEvent(db.Model):
    """
    Idempotency ledger for Stripe webhook deliveries.

    A row with processed_at set means "do not reprocess". A row with
    processed_at NULL is an event that was received but not completed;
    last_error says why (see `flask webhooks pending`).
    """
    __tablename__ = "webhook_events"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    stripe_event_id = db.Column(db.String(255), nullable=False, unique=True, index=True)
    event_type = db.Column(db.String(128), nullable=False)
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_error = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "stripe_event_id": self.stripe_event_id,
            "event_type": self.event_type,
            "processed_at": to_utc_z(self.processed_at),
            "last_error": self.last_error,
            "created_at": to_utc_z(self.created_at),
        }
