# Overview: Server-side cart (one row per athlete per session).

"""
Cart Service

STOCK CHECK: Adding to the cart compares (quantity already in this user's
cart for the product + requested quantity) against spots remaining. The
read is not locked, so two families racing for the last spot can both
add it; checkout and the webhook do not re-check. See DESIGN.md.
"""

from __future__ import annotations

import logging

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import CartItem, Product, User
from ..validation import ConflictError, NotFoundError
from .athlete_service import get_owned_athlete
from .transactions import has_active_registration, spots_remaining

log = logging.getLogger(__name__)

MAX_QUANTITY_PER_ITEM = 10


class CartError(Exception):
    """400-level cart rule violation (availability / stock)."""


def _quantity_in_cart(user_id: int, product_id: int, *, exclude_item_id: int | None = None) -> int:
    query = db.session.query(func.coalesce(func.sum(CartItem.quantity), 0)).filter(
        CartItem.user_id == user_id,
        CartItem.product_id == product_id,
    )
    if exclude_item_id is not None:
        query = query.filter(CartItem.id != exclude_item_id)
    return int(query.scalar() or 0)


def _check_stock(product: Product, user_id: int, quantity: int, *, exclude_item_id: int | None = None) -> None:
    remaining = spots_remaining(product)
    if remaining <= 0:
        raise CartError(f"{product.name} is sold out")
    if _quantity_in_cart(user_id, product.id, exclude_item_id=exclude_item_id) + quantity > remaining:
        raise CartError("No spots left for this session")


def _get_owned_item(user: User, item_id: int) -> CartItem:
    item = db.session.query(CartItem).filter_by(id=item_id, user_id=user.id).first()
    if item is None:
        raise NotFoundError("Cart item not found")
    return item


def list_cart(user: User) -> dict:
    items = (
        db.session.query(CartItem)
        .filter_by(user_id=user.id)
        .order_by(CartItem.created_at.asc(), CartItem.id.asc())
        .all()
    )
    rows = [item.to_dict() for item in items]
    return {
        "items": rows,
        "count": sum(row["quantity"] for row in rows),
        "subtotal_cents": sum(row["line_total_cents"] or 0 for row in rows),
    }


def add_to_cart(user: User, *, product_id: int, athlete_id: int, quantity: int = 1) -> CartItem:
    """
    Add a session for one athlete.

    Raises:
        NotFoundError: athlete not owned by user, or unknown product
        ConflictError: already in cart, or already purchased
        CartError: inactive product, sold out, not enough spots
    """
    if quantity > MAX_QUANTITY_PER_ITEM:
        raise CartError(f"Quantity cannot exceed {MAX_QUANTITY_PER_ITEM}")

    athlete = get_owned_athlete(user, athlete_id)
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError("Session not found")

    existing = db.session.query(CartItem).filter_by(
        user_id=user.id, product_id=product.id, athlete_id=athlete.id
    ).first()
    if existing:
        raise ConflictError("This athlete already has this session in their cart")

    if has_active_registration(athlete.id, product.id):
        raise ConflictError("This athlete has already purchased this session")

    if not product.is_active:
        raise CartError("This session is no longer available")

    _check_stock(product, user.id, quantity)

    item = CartItem(user_id=user.id, product_id=product.id, athlete_id=athlete.id, quantity=quantity)
    db.session.add(item)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("This athlete already has this session in their cart")

    log.info("cart.added user_id=%s product_id=%s athlete_id=%s qty=%s",
             user.id, product.id, athlete.id, quantity)
    return item


def update_cart_item(user: User, item_id: int, *, quantity: int) -> CartItem:
    if quantity > MAX_QUANTITY_PER_ITEM:
        raise CartError(f"Quantity cannot exceed {MAX_QUANTITY_PER_ITEM}")

    item = _get_owned_item(user, item_id)
    if quantity > item.quantity:
        product = item.product
        if not product.is_active:
            raise CartError("This session is no longer available")
        _check_stock(product, user.id, quantity, exclude_item_id=item.id)

    item.quantity = quantity
    db.session.commit()
    return item


def remove_cart_item(user: User, item_id: int) -> None:
    item = _get_owned_item(user, item_id)
    db.session.delete(item)
    db.session.commit()


def clear_cart(user: User) -> int:
    deleted = db.session.query(CartItem).filter_by(user_id=user.id).delete(synchronize_session=False)
    db.session.commit()
    return deleted
