from __future__ import annotations

from ..extensions import db
from academy.time_utils import to_utc_z


class Athlete(db.Model):
    """Registrant profile owned by a parent/guardian user."""
    __tablename__ = "athletes"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    age = db.Column(db.Integer, nullable=True)
    school = db.Column(db.String(255), nullable=True)
    position = db.Column(db.String(64), nullable=True)
    grade = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    user = db.relationship("User", backref=db.backref("athletes", lazy=True))

    def __repr__(self) -> str:
        return f"<Athlete id={self.id} name={self.name!r} user_id={self.user_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "age": self.age,
            "school": self.school,
            "position": self.position,
            "grade": self.grade,
            "created_at": to_utc_z(self.created_at),
        }


class CartItem(db.Model):
    """
    Intent to purchase a product for one athlete.

    At most one row per (user, product, athlete). Rows are removed when
    the matching payment is recorded by the webhook.
    """
    __tablename__ = "cart_items"
    __table_args__ = (
        db.UniqueConstraint("user_id", "product_id", "athlete_id", name="uq_cart_items_user_product_athlete"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    athlete_id = db.Column(db.Integer, db.ForeignKey("athletes.id"), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product")
    athlete = db.relationship("Athlete")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "product_id": self.product_id,
            "athlete_id": self.athlete_id,
            "quantity": self.quantity,
            "product_name": self.product.name if self.product else None,
            "athlete_name": self.athlete.name if self.athlete else None,
            "unit_price_cents": self.product.price_cents if self.product else None,
            "line_total_cents": (self.product.price_cents * self.quantity) if self.product else None,
            "created_at": to_utc_z(self.created_at),
        }
