from __future__ import annotations

from ..extensions import db
from academy.time_utils import to_utc_z


class Product(db.Model):
    """
    A purchasable training session offering.

    STRIPE MIRROR: Every product is mirrored by a Stripe product + default
    price. stripe_product_id / stripe_price_id link the two. The local
    is_active flag and the Stripe product's active flag must agree; all
    changes go through products_service so that a failed local write rolls
    the Stripe side back.

    STOCK: stock_quantity is a ceiling, not a counter. Spots remaining are
    derived from active registrations (see products_service.spots_remaining).
    """
    __tablename__ = "products"
    __table_args__ = (
        db.Index("ix_products_active_name", "is_active", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)

    # Authoritative storage in cents (frontend may only format for display)
    price_cents = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="usd")

    stock_quantity = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    stripe_product_id = db.Column(db.String(255), nullable=True, unique=True, index=True)
    stripe_price_id = db.Column(db.String(255), nullable=True, index=True)

    # Demographic targeting (display/filter only)
    gender = db.Column(db.String(16), nullable=True)
    min_grade = db.Column(db.Integer, nullable=True)
    max_grade = db.Column(db.Integer, nullable=True)
    skill_level = db.Column(db.String(16), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    sessions = db.relationship(
        "ProductSession",
        backref="product",
        lazy=True,
        cascade="all, delete-orphan",
        order_by=lambda: [ProductSession.session_date, ProductSession.session_time],
    )

    def __repr__(self) -> str:
        return f"<Product id={self.id} name={self.name!r} active={self.is_active}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "price_cents": self.price_cents,
            "currency": self.currency,
            "stock_quantity": self.stock_quantity,
            "is_active": self.is_active,
            "stripe_product_id": self.stripe_product_id,
            "stripe_price_id": self.stripe_price_id,
            "gender": self.gender,
            "min_grade": self.min_grade,
            "max_grade": self.max_grade,
            "skill_level": self.skill_level,
            "sessions": [s.to_dict() for s in self.sessions],
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class ProductSession(db.Model):
    """One scheduled occurrence (date, time, location) of a product."""
    __tablename__ = "product_sessions"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    session_date = db.Column(db.Date, nullable=False)
    session_time = db.Column(db.Time, nullable=True)
    location = db.Column(db.String(255), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "session_date": self.session_date.isoformat() if self.session_date else None,
            "session_time": self.session_time.strftime("%H:%M") if self.session_time else None,
            "location": self.location,
        }
