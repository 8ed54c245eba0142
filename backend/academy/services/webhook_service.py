# Overview: Stripe webhook ingestion (signature check, idempotency ledger, payment recording, confirmation email).

"""
Webhook Service

FLOW for one delivery:
1. verify signature (WebhookSignatureError -> 400, nothing written)
2. ledger: processed_at set -> duplicate, return immediately;
   otherwise upsert the ledger row (processed_at NULL) and commit
3. dispatch by event type
4. mark the ledger row processed (failure only logged)
5. post-commit side effects: confirmation email (at most once per
   payment), audience contact sync (feature-flagged); failures only logged

FAILURE MODES:
- UserResolutionError: no local user for the checkout -> 500 so Stripe
  retries; the ledger row stays unprocessed with last_error set
- zero resolvable line items: nothing written, ledger row unprocessed,
  200 with processed=false (retrying cannot fix the metadata)
- anything else unexpected (Stripe or DB outage) -> 500, Stripe retries
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..extensions import db
from ..models import Athlete, Payment, Product, User, WebhookEvent
from . import feature_flags
from . import transactions
from .auth_service import get_user_by_email
from .email_service import order_number_for
from .transactions import ResolvedLineItem
from academy.log_utils import new_trace_id, pii
from academy.time_utils import utcnow

log = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
PAYMENT_FAILED = "payment_intent.payment_failed"


class WebhookError(Exception):
    """Event could not be processed; the ledger row stays unprocessed."""


class MalformedEventError(WebhookError):
    pass


class UserResolutionError(WebhookError):
    pass


class UnprocessableCheckoutError(WebhookError):
    """Checkout data Stripe will never correct by retrying; answered with a 200."""


class LineItemResolutionError(UnprocessableCheckoutError):
    pass


class MissingPaymentIntentError(UnprocessableCheckoutError):
    pass


@dataclass
class WebhookResult:
    event_id: str
    event_type: str
    duplicate: bool = False
    processed: bool = True
    payment_id: int | None = None
    message: str | None = None

    def to_dict(self) -> dict:
        return {"received": True, **asdict(self)}


# =============================================================================
# ENTRY POINTS
# =============================================================================

def handle_stripe_webhook(payload: bytes, signature: str | None, *, gateway, mailer) -> WebhookResult:
    """
    Verify and process one webhook delivery.

    Raises:
        WebhookSignatureError: bad/missing signature (no mutation)
        MalformedEventError: verified payload without id/type
        UserResolutionError: checkout could not be tied to a user
    """
    event = gateway.construct_event(payload, signature)
    return process_event(event, gateway=gateway, mailer=mailer)


def process_event(event: dict, *, gateway, mailer, trace_id: str | None = None) -> WebhookResult:
    """Process an already-verified event (also used by `flask webhooks reprocess`)."""
    trace_id = trace_id or new_trace_id()
    event_id = event.get("id")
    event_type = event.get("type")
    if not event_id or not event_type:
        raise MalformedEventError("Event is missing id or type")

    log.info("[%s] webhook.received event_id=%s type=%s", trace_id, event_id, event_type)

    if not _claim_ledger(event_id, event_type):
        log.info("[%s] webhook.duplicate event_id=%s", trace_id, event_id)
        return WebhookResult(event_id=event_id, event_type=event_type, duplicate=True)

    obj = (event.get("data") or {}).get("object") or {}
    outcome = None
    try:
        if event_type == CHECKOUT_COMPLETED:
            outcome = _handle_checkout_completed(obj, gateway=gateway, trace_id=trace_id)
        elif event_type == PAYMENT_FAILED:
            _handle_payment_failed(obj, trace_id=trace_id)
        else:
            log.info("[%s] webhook.ignored type=%s", trace_id, event_type)
    except UnprocessableCheckoutError as exc:
        log.error("[%s] webhook.failed event_id=%s error=%s", trace_id, event_id, exc)
        _record_error(event_id, str(exc))
        return WebhookResult(event_id=event_id, event_type=event_type, processed=False, message=str(exc))
    except Exception as exc:
        log.error("[%s] webhook.failed event_id=%s error=%s", trace_id, event_id, exc)
        _record_error(event_id, str(exc))
        raise

    _mark_processed(event_id, trace_id)

    result = WebhookResult(event_id=event_id, event_type=event_type)
    if outcome is not None:
        payment_id, user, customer = outcome
        result.payment_id = payment_id
        email = (customer or {}).get("email") or user.email
        _send_confirmation_once(payment_id, email, user.full_name, mailer=mailer, trace_id=trace_id)
        _sync_contact(email, user.full_name, mailer=mailer, trace_id=trace_id)
    return result


# =============================================================================
# LEDGER
# =============================================================================

def _claim_ledger(event_id: str, event_type: str) -> bool:
    """
    Return False when the event was already processed.

    Otherwise make sure a ledger row exists (processed_at NULL) before
    any work starts, so a crash leaves a visible unprocessed row.
    """
    row = db.session.query(WebhookEvent).filter_by(stripe_event_id=event_id).first()
    if row is not None:
        return row.processed_at is None

    db.session.add(WebhookEvent(stripe_event_id=event_id, event_type=event_type))
    try:
        db.session.commit()
    except IntegrityError:
        # Concurrent delivery inserted the row first
        db.session.rollback()
        row = db.session.query(WebhookEvent).filter_by(stripe_event_id=event_id).first()
        return row is None or row.processed_at is None
    return True


def _stamp_processed(event_id: str) -> None:
    db.session.query(WebhookEvent).filter_by(stripe_event_id=event_id).update(
        {WebhookEvent.processed_at: utcnow(), WebhookEvent.last_error: None},
        synchronize_session=False,
    )
    db.session.commit()


def _mark_processed(event_id: str, trace_id: str) -> None:
    """The payment is already committed; a failed stamp is logged, never raised."""
    try:
        _stamp_processed(event_id)
    except SQLAlchemyError as exc:
        db.session.rollback()
        log.error("[%s] webhook.mark_processed_failed event_id=%s error=%s", trace_id, event_id, exc)


def _record_error(event_id: str, message: str) -> None:
    try:
        db.session.rollback()
        db.session.query(WebhookEvent).filter_by(stripe_event_id=event_id).update(
            {WebhookEvent.last_error: message[:2000]},
            synchronize_session=False,
        )
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        log.error("webhook.record_error_failed event_id=%s error=%s", event_id, exc)


def list_unprocessed_events(limit: int = 100) -> list[WebhookEvent]:
    return (
        db.session.query(WebhookEvent)
        .filter(WebhookEvent.processed_at.is_(None))
        .order_by(WebhookEvent.created_at.asc(), WebhookEvent.id.asc())
        .limit(limit)
        .all()
    )


# =============================================================================
# RESOLUTION
# =============================================================================

def _lookup_by_id(model, raw):
    try:
        return db.session.get(model, int(str(raw).strip()))
    except (TypeError, ValueError):
        return None


def _resolve_user(session: dict, customer: dict | None, trace_id: str) -> User:
    """
    Customer metadata, then session metadata, then email lookup.

    Raises UserResolutionError when nothing matches.
    """
    sources = (
        ("customer_metadata", (customer or {}).get("metadata") or {}),
        ("session_metadata", session.get("metadata") or {}),
    )
    for source, metadata in sources:
        raw = metadata.get("user_id") or metadata.get("userId")
        if not raw:
            continue
        user = _lookup_by_id(User, raw)
        if user is not None:
            log.info("[%s] webhook.user_resolved via=%s user_id=%s", trace_id, source, user.id)
            return user
        log.warning("[%s] webhook.user_id_unknown via=%s value=%s", trace_id, source, raw)

    emails = (
        (customer or {}).get("email"),
        (session.get("customer_details") or {}).get("email"),
        session.get("customer_email"),
    )
    for email in emails:
        if not email:
            continue
        user = get_user_by_email(email)
        if user is not None:
            log.info("[%s] webhook.user_resolved via=email user_id=%s", trace_id, user.id)
            return user

    raise UserResolutionError(
        f"Unable to resolve user for checkout session {session.get('id')} "
        f"(email={pii(next((e for e in emails if e), None))})"
    )


def _resolve_line_items(raw_lines: list[dict], metadata: dict, user: User,
                        trace_id: str) -> list[ResolvedLineItem]:
    """
    Map Stripe line items to (athlete, product) pairs.

    Line i uses metadata athlete_{i}_id / athlete_{i}_product_id. The product
    falls back to the line's price id. Unresolvable lines are skipped.
    """
    resolved = []
    for i, line in enumerate(raw_lines):
        price = line.get("price") or {}

        athlete_raw = metadata.get(f"athlete_{i}_id")
        if not athlete_raw:
            log.warning("[%s] webhook.line_skipped index=%s reason=missing_athlete_metadata", trace_id, i)
            continue
        athlete = _lookup_by_id(Athlete, athlete_raw)
        if athlete is None or athlete.user_id != user.id:
            log.warning("[%s] webhook.line_skipped index=%s reason=unknown_athlete athlete=%s",
                        trace_id, i, athlete_raw)
            continue

        product = None
        product_raw = metadata.get(f"athlete_{i}_product_id")
        if product_raw:
            product = _lookup_by_id(Product, product_raw)
        if product is None and price.get("id"):
            product = db.session.query(Product).filter_by(stripe_price_id=price["id"]).first()
        if product is None:
            log.warning("[%s] webhook.line_skipped index=%s reason=unknown_product price=%s",
                        trace_id, i, price.get("id"))
            continue

        quantity = int(line.get("quantity") or 1)
        unit_amount = price.get("unit_amount")
        if unit_amount is None:
            unit_amount = product.price_cents

        resolved.append(ResolvedLineItem(
            athlete_id=athlete.id,
            product_id=product.id,
            quantity=quantity,
            unit_price_cents=int(unit_amount),
        ))

    return resolved


# =============================================================================
# EVENT HANDLERS
# =============================================================================

def _handle_checkout_completed(session: dict, *, gateway, trace_id: str):
    """Returns (payment_id, user, customer) or None when nothing was paid."""
    if session.get("payment_status") != "paid":
        log.info("[%s] webhook.checkout_unpaid session=%s payment_status=%s",
                 trace_id, session.get("id"), session.get("payment_status"))
        return None

    customer = None
    if session.get("customer"):
        customer = gateway.retrieve_customer(session["customer"])
        if customer.get("deleted"):
            customer = None

    user = _resolve_user(session, customer, trace_id)

    intent_id = session.get("payment_intent")
    if not intent_id:
        raise MissingPaymentIntentError(f"Checkout session {session.get('id')} has no payment intent")
    intent = gateway.retrieve_payment_intent(intent_id)

    raw_lines = gateway.list_line_items(session["id"])
    line_items = _resolve_line_items(raw_lines, session.get("metadata") or {}, user, trace_id)
    if not line_items:
        raise LineItemResolutionError(
            f"No line items could be resolved for checkout session {session.get('id')}"
        )
    if len(line_items) < len(raw_lines):
        log.warning("[%s] webhook.partial_resolution resolved=%s total=%s",
                    trace_id, len(line_items), len(raw_lines))

    amount = (
        intent.get("amount_received")
        or intent.get("amount")
        or session.get("amount_total")
        or sum(item.unit_price_cents * item.quantity for item in line_items)
    )
    currency = (session.get("currency") or intent.get("currency") or "usd").lower()

    payment = transactions.process_payment_webhook(
        stripe_payment_intent_id=intent_id,
        user_id=user.id,
        amount_cents=int(amount),
        currency=currency,
        line_items=line_items,
    )
    log.info("[%s] webhook.payment_recorded payment_id=%s user_id=%s lines=%s amount=%s",
             trace_id, payment.id, user.id, len(line_items), amount)
    return payment.id, user, customer


def _handle_payment_failed(intent: dict, *, trace_id: str) -> None:
    intent_id = intent.get("id")
    if not intent_id:
        raise MalformedEventError("payment_intent.payment_failed without an intent id")

    metadata = intent.get("metadata") or {}
    raw_user = metadata.get("user_id") or metadata.get("userId")
    user = _lookup_by_id(User, raw_user) if raw_user else None

    payment = transactions.record_failed_payment(
        stripe_payment_intent_id=intent_id,
        user_id=user.id if user else None,
        amount_cents=int(intent.get("amount") or 0),
        currency=(intent.get("currency") or "usd").lower(),
    )
    reason = (intent.get("last_payment_error") or {}).get("message")
    if payment is None:
        log.info("[%s] webhook.payment_failed_ignored intent=%s reason=existing_payment", trace_id, intent_id)
    else:
        log.warning("[%s] webhook.payment_failed intent=%s payment_id=%s reason=%s",
                    trace_id, intent_id, payment.id, reason)


# =============================================================================
# POST-COMMIT SIDE EFFECTS (never raise)
# =============================================================================

def _claim_confirmation(payment_id: int) -> bool:
    """Atomically set email_sent_at if still NULL; True for the single winner."""
    claimed = (
        db.session.query(Payment)
        .filter(Payment.id == payment_id, Payment.email_sent_at.is_(None))
        .update({Payment.email_sent_at: utcnow()}, synchronize_session=False)
    )
    db.session.commit()
    return claimed == 1


def _send_confirmation_once(payment_id: int, email: str, customer_name: str | None, *,
                            mailer, trace_id: str) -> bool:
    try:
        if not _claim_confirmation(payment_id):
            log.info("[%s] purchase_confirmation.already_sent payment_id=%s", trace_id, payment_id)
            return False

        payment = db.session.get(Payment, payment_id)
        items = [
            {
                "product_name": line.product.name if line.product else None,
                "athlete_name": line.athlete.name if line.athlete else None,
                "quantity": line.quantity,
                "unit_price_cents": line.unit_price_cents,
            }
            for line in payment.line_items
        ]
        sent = mailer.send_purchase_confirmation(
            to=email,
            customer_name=customer_name,
            order_number=order_number_for(payment.id),
            items=items,
            total_cents=payment.amount_cents,
            currency=payment.currency,
        )
    except Exception as exc:
        db.session.rollback()
        log.error("[%s] purchase_confirmation.error payment_id=%s error=%s", trace_id, payment_id, exc)
        return False

    if not sent:
        # The claim is kept: a resend is a manual decision, never automatic
        log.error("[%s] purchase_confirmation.not_delivered payment_id=%s to=%s",
                  trace_id, payment_id, pii(email))
    return sent


def _sync_contact(email: str, full_name: str | None, *, mailer, trace_id: str) -> None:
    if not feature_flags.is_enabled(feature_flags.CONTACT_SYNC):
        return
    try:
        mailer.add_contact(email=email, full_name=full_name)
    except Exception as exc:
        log.warning("[%s] contact_sync.failed email=%s error=%s", trace_id, pii(email), exc)
