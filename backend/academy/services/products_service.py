# backend/academy/services/products_service.py
"""
Products Service (session catalog + Stripe product/price sync)

INVARIANT: Product.is_active and the Stripe product's `active` flag agree.

Every write that touches both systems runs as a Saga:
- Stripe first (the step that can fail for reasons we don't control)
- local database second
- on local failure, the Stripe step is compensated and the outcome of
  that compensation is logged on its own line

A failed compensation is reported as needs_reconciliation; it is not
retried automatically.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import Product, ProductSession
from ..validation import (
    ModelValidationPolicy,
    NotFoundError,
    ValidationError,
    enforce_rules_product,
    validate_payload,
)
from .saga import Saga, SagaError
from .stripe_gateway import PaymentGatewayError
from .transactions import registered_quantity

log = logging.getLogger(__name__)

PRODUCT_POLICY = ModelValidationPolicy(
    writable_fields={
        "name", "description", "price_cents", "stock_quantity",
        "gender", "min_grade", "max_grade", "skill_level",
    },
    required_on_create={"name", "price_cents", "stock_quantity"},
)

SESSION_POLICY = ModelValidationPolicy(
    writable_fields={"session_date", "session_time", "location"},
    required_on_create={"session_date"},
)

DEFAULT_CURRENCY = "usd"

# Upper-cased when they appear as a word in a location (service-area states only)
US_STATE_ABBREVIATIONS = frozenset({
    "VA", "NC", "SC", "MD", "DC", "NY", "NJ", "PA", "DE", "WV", "KY", "TN",
})

_WORD_CORE = re.compile(r"^([^\w]*)([\w'.-]*?)([^\w]*)$")


class CatalogSyncError(Exception):
    """
    Stripe and local catalog could not be updated together.

    status_code: 502 when Stripe refused the change (nothing changed),
                 500 when the local write failed after Stripe succeeded
    needs_reconciliation: the compensating Stripe call also failed
    """

    def __init__(self, message: str, *, status_code: int = 502, needs_reconciliation: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.needs_reconciliation = needs_reconciliation


@dataclass
class ToggleResult:
    product: Product
    changed: bool


# =============================================================================
# HELPERS
# =============================================================================

def normalize_location(value: str | None) -> str | None:
    """
    Normalize a free-text location for display.

    "123 main st, unit 4, richmond va" -> "123 Main St, Unit 4, Richmond VA"
    """
    if value is None:
        return None
    words = value.split()
    if not words:
        return None

    out = []
    for word in words:
        match = _WORD_CORE.match(word)
        if match is None:
            out.append(word[:1].upper() + word[1:].lower())
            continue
        lead, core, trail = match.groups()
        if core.upper() in US_STATE_ABBREVIATIONS and len(core) == 2:
            core = core.upper()
        elif core:
            core = core[0].upper() + core[1:].lower()
        out.append(f"{lead}{core}{trail}")
    return " ".join(out)


def get_product(product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError("Product not found")
    return product


def _validated_sessions(raw_sessions) -> list[dict]:
    if raw_sessions is None:
        return []
    if not isinstance(raw_sessions, list):
        raise ValidationError("sessions must be a list")

    sessions = []
    for raw in raw_sessions:
        patch = validate_payload(model=ProductSession, payload=raw, policy=SESSION_POLICY, partial=False)
        patch["location"] = normalize_location(patch.get("location"))
        sessions.append(patch)
    return sessions


def _sync_error(exc: SagaError) -> CatalogSyncError:
    if exc.failed_step.startswith("stripe."):
        if exc.needs_reconciliation:
            return CatalogSyncError(
                f"Payment provider update failed and rollback failed: {exc.cause}",
                status_code=502,
                needs_reconciliation=True,
            )
        return CatalogSyncError(f"Payment provider update failed: {exc.cause}", status_code=502)
    if exc.needs_reconciliation:
        return CatalogSyncError(
            "Database update failed and the payment provider could not be rolled back; "
            "manual reconciliation required",
            status_code=500,
            needs_reconciliation=True,
        )
    return CatalogSyncError(
        "Database update failed; payment provider changes were rolled back",
        status_code=500,
    )


def product_summary(product: Product) -> dict:
    data = product.to_dict()
    registered = registered_quantity(product.id)
    data["registered_quantity"] = registered
    data["spots_remaining"] = max(0, (product.stock_quantity or 0) - registered)
    data["sold_out"] = data["spots_remaining"] <= 0
    return data


# =============================================================================
# QUERIES
# =============================================================================

def list_public_catalog(*, gateway) -> list[dict]:
    """
    Products a family can buy right now.

    Locally active AND active in Stripe (stale local rows are hidden).
    If Stripe cannot be reached the local flag is used alone; checkout
    re-verifies every product against Stripe before charging.
    """
    products = (
        db.session.query(Product)
        .filter(Product.is_active.is_(True), Product.stripe_price_id.isnot(None))
        .order_by(Product.name.asc(), Product.id.asc())
        .all()
    )

    try:
        remote_active = gateway.list_active_product_ids()
    except PaymentGatewayError:
        log.warning("catalog.remote_check_unavailable - falling back to local active flags")
        remote_active = None

    items = []
    for product in products:
        if remote_active is not None and product.stripe_product_id not in remote_active:
            log.info("catalog.hidden product_id=%s reason=inactive_in_stripe", product.id)
            continue
        items.append(product_summary(product))

    items.sort(key=lambda p: (p["sessions"][0]["session_date"] if p["sessions"] else "9999-12-31", p["name"]))
    return items


def list_admin_products(include_inactive: bool = True) -> list[dict]:
    query = db.session.query(Product)
    if not include_inactive:
        query = query.filter(Product.is_active.is_(True))
    return [product_summary(p) for p in query.order_by(Product.name.asc(), Product.id.asc()).all()]


# =============================================================================
# ACTIVE FLAG (toggle / archive)
# =============================================================================

def _apply_local_active(product: Product, is_active: bool) -> None:
    try:
        product.is_active = is_active
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        raise


def set_product_active(product_id: int, is_active: bool, *, gateway) -> ToggleResult:
    """
    Activate or deactivate a product in Stripe and locally.

    Idempotent: if the local flag already matches, returns changed=False
    without calling Stripe.

    Order: Stripe first, then local. A local failure rolls Stripe back to the
    previous value; the rollback outcome is logged either way.

    Raises:
        NotFoundError: unknown product
        CatalogSyncError: Stripe refused (502) or local write failed (500)
    """
    product = get_product(product_id)

    if product.is_active == is_active:
        log.info("product_toggle.noop product_id=%s is_active=%s", product.id, is_active)
        return ToggleResult(product=product, changed=False)

    previous = product.is_active
    stripe_product_id = product.stripe_product_id

    saga = Saga("product.set_active", context={"product_id": product.id, "is_active": is_active})
    if stripe_product_id:
        saga.step(
            "stripe.set_product_active",
            lambda: gateway.set_product_active(stripe_product_id, is_active),
            compensate=lambda: gateway.set_product_active(stripe_product_id, previous),
        )
    else:
        log.warning("product_toggle.local_only product_id=%s reason=no_stripe_product", product.id)
    saga.step("db.set_product_active", lambda: _apply_local_active(product, is_active))

    try:
        saga.run()
    except SagaError as exc:
        raise _sync_error(exc) from exc

    log.info("product_toggle.ok product_id=%s is_active=%s", product.id, is_active)
    return ToggleResult(product=product, changed=True)


def archive_product(product_id: int, *, gateway) -> ToggleResult:
    """Archive = deactivate in both systems. Rows are kept for payment history."""
    return set_product_active(product_id, False, gateway=gateway)


# =============================================================================
# CREATE / UPDATE
# =============================================================================

def _insert_local_product(patch: dict, sessions: list[dict], stripe_ids: dict) -> Product:
    try:
        product = Product(
            currency=DEFAULT_CURRENCY,
            is_active=True,
            stripe_product_id=stripe_ids["product_id"],
            stripe_price_id=stripe_ids["price_id"],
            **patch,
        )
        for session in sessions:
            product.sessions.append(ProductSession(**session))
        db.session.add(product)
        db.session.commit()
        return product
    except SQLAlchemyError:
        db.session.rollback()
        raise


def create_product(payload: dict, *, gateway) -> Product:
    """
    Create a session product: Stripe product, Stripe price, then local row.

    If the local insert fails the orphaned Stripe price and product are
    deactivated (compensation), so nothing purchasable is left behind.

    Raises:
        ValidationError: bad payload
        CatalogSyncError: Stripe or database failure
    """
    payload = dict(payload or {})
    raw_sessions = payload.pop("sessions", None)
    patch = validate_payload(model=Product, payload=payload, policy=PRODUCT_POLICY, partial=False)
    enforce_rules_product(patch)
    sessions = _validated_sessions(raw_sessions)

    stripe_ids: dict = {}

    def create_remote_product():
        remote = gateway.create_product(
            name=patch["name"],
            description=patch.get("description"),
            metadata={"source": "academy"},
        )
        stripe_ids["product_id"] = remote["id"]

    def create_remote_price():
        price = gateway.create_price(
            product_id=stripe_ids["product_id"],
            unit_amount=patch["price_cents"],
            currency=DEFAULT_CURRENCY,
        )
        stripe_ids["price_id"] = price["id"]
        gateway.update_product(stripe_ids["product_id"], default_price=price["id"])

    saga = Saga("product.create", context={"name": patch["name"]})
    saga.step(
        "stripe.create_product",
        create_remote_product,
        compensate=lambda: gateway.set_product_active(stripe_ids["product_id"], False),
    )
    saga.step(
        "stripe.create_price",
        create_remote_price,
        compensate=lambda: gateway.set_price_active(stripe_ids["price_id"], False),
    )
    saga.step("db.insert_product", lambda: _insert_local_product(patch, sessions, stripe_ids))

    try:
        results = saga.run()
    except SagaError as exc:
        raise _sync_error(exc) from exc

    product = results["db.insert_product"]
    log.info("product.created id=%s stripe_product_id=%s", product.id, product.stripe_product_id)
    return product


def _apply_local_update(product: Product, patch: dict, sessions: list[dict] | None,
                        new_price_id: str | None) -> Product:
    try:
        for key, value in patch.items():
            setattr(product, key, value)
        if new_price_id:
            product.stripe_price_id = new_price_id
        if sessions is not None:
            product.sessions.clear()
            db.session.flush()
            for session in sessions:
                product.sessions.append(ProductSession(**session))
        db.session.commit()
        return product
    except SQLAlchemyError:
        db.session.rollback()
        raise


def update_product(product_id: int, payload: dict, *, gateway) -> Product:
    """
    Update a session product.

    - name/description changes are pushed to the Stripe product
    - a price change creates a new Stripe price, makes it the default,
      and (after the local write succeeds) archives the old price
    - "sessions", when present, replaces the schedule

    Each Stripe step is compensated if a later step fails.

    Raises:
        NotFoundError, ValidationError, CatalogSyncError
    """
    product = get_product(product_id)

    payload = dict(payload or {})
    has_sessions = "sessions" in payload
    raw_sessions = payload.pop("sessions", None)
    patch = validate_payload(model=Product, payload=payload, policy=PRODUCT_POLICY, partial=True)

    merged = {
        "min_grade": product.min_grade,
        "max_grade": product.max_grade,
        **patch,
    }
    enforce_rules_product(merged)
    sessions = _validated_sessions(raw_sessions) if has_sessions else None

    stripe_product_id = product.stripe_product_id
    old_name, old_description = product.name, product.description
    old_price_id = product.stripe_price_id

    remote_fields = {}
    if "name" in patch and patch["name"] != old_name:
        remote_fields["name"] = patch["name"]
    if "description" in patch and patch["description"] != old_description:
        remote_fields["description"] = patch["description"] or ""
    price_changed = "price_cents" in patch and patch["price_cents"] != product.price_cents

    new_price: dict = {}
    saga = Saga("product.update", context={"product_id": product.id})

    if stripe_product_id and remote_fields:
        saga.step(
            "stripe.update_product",
            lambda: gateway.update_product(stripe_product_id, **remote_fields),
            compensate=lambda: gateway.update_product(
                stripe_product_id, name=old_name, description=old_description or ""
            ),
        )

    if stripe_product_id and price_changed:
        def create_price():
            price = gateway.create_price(
                product_id=stripe_product_id,
                unit_amount=patch["price_cents"],
                currency=product.currency or DEFAULT_CURRENCY,
            )
            new_price["id"] = price["id"]

        saga.step(
            "stripe.create_price",
            create_price,
            compensate=lambda: gateway.set_price_active(new_price["id"], False),
        )
        saga.step(
            "stripe.set_default_price",
            lambda: gateway.update_product(stripe_product_id, default_price=new_price["id"]),
            compensate=(
                (lambda: gateway.update_product(stripe_product_id, default_price=old_price_id))
                if old_price_id else None
            ),
        )

    saga.step(
        "db.update_product",
        lambda: _apply_local_update(product, patch, sessions, new_price.get("id")),
    )

    try:
        saga.run()
    except SagaError as exc:
        raise _sync_error(exc) from exc

    if new_price.get("id") and old_price_id:
        try:
            gateway.set_price_active(old_price_id, False)
        except PaymentGatewayError as exc:
            # Old price stays purchasable only via stale links; checkout uses stripe_price_id
            log.warning("product_update.archive_old_price_failed price_id=%s error=%s", old_price_id, exc)

    log.info("product.updated id=%s fields=%s", product.id, sorted(patch))
    return product
