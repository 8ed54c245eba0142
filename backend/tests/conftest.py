"""
Pytest fixtures for the academy backend tests.

Provides the test app (in-memory SQLite), fake Stripe / email clients,
and account, athlete, and catalog fixtures.
"""

import json

import pytest

from academy import create_app
from academy.extensions import db
from academy.models import Athlete, Payment, PaymentAthlete, Product, ProductSession, User
from academy.services import session_service
from academy.services.auth_service import hash_password
from academy.services.email_service import MAILER_EXTENSION_KEY, EmailError
from academy.services.stripe_gateway import (
    GATEWAY_EXTENSION_KEY,
    PaymentGatewayError,
    WebhookSignatureError,
)
from academy.time_utils import parse_session_date, utcnow

PASSWORD = "Password123"
VALID_SIGNATURE = "t=1,v1=valid"


class TestConfig:
    TESTING = True
    SECRET_KEY = "test-secret"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    STRIPE_SECRET_KEY = "sk_test_dummy"
    STRIPE_WEBHOOK_SECRET = "whsec_test_secret"
    STRIPE_TAX_CODE = "txcd_20030000"
    STRIPE_TIMEOUT_SECONDS = 5

    RESEND_API_KEY = "re_test_key"
    RESEND_FROM_EMAIL = "hello@thelacrosselab.com"
    RESEND_AUDIENCE_ID = "3f2b1c4d-5e6f-4a7b-8c9d-0e1f2a3b4c5d"
    RESEND_TIMEOUT_SECONDS = 5

    SITE_URL = "https://academy.test"
    ADMIN_EMAIL_DOMAINS = ["thelacrosselab.com"]
    CORS_ALLOWED_ORIGINS = ["https://academy.test"]

    LOG_LEVEL = "INFO"
    ENABLE_PII_LOGS = False
    ENABLE_BROADCAST_FEATURE = False
    ENABLE_RESEND_CONTACT_ADDITION = False


class FakeStripeGateway:
    """
    In-memory stand-in for StripeGateway.

    Every call is recorded as (name, kwargs). Adding a call name to
    fail_on makes that call raise PaymentGatewayError.
    """

    def __init__(self):
        self.reset()

    def reset(self):
        self.calls = []
        self.fail_on = set()
        self.active_products = set()
        self.customers = {}
        self.payment_intents = {}
        self.line_items = {}
        self.events = {}
        self.refunds_by_key = {}
        self._seq = 0

    def _record(self, name, /, **kwargs):
        self.calls.append((name, kwargs))
        if name in self.fail_on:
            raise PaymentGatewayError(f"Stripe {name} failed: simulated outage")

    def _next_id(self, prefix):
        self._seq += 1
        return f"{prefix}_{self._seq:04d}"

    def calls_named(self, name):
        return [kwargs for call, kwargs in self.calls if call == name]

    def construct_event(self, payload, signature):
        if not signature:
            raise WebhookSignatureError("Missing Stripe-Signature header")
        if signature != VALID_SIGNATURE:
            raise WebhookSignatureError("Invalid signature")
        try:
            return json.loads(payload)
        except ValueError as exc:
            raise WebhookSignatureError("Invalid payload") from exc

    def retrieve_event(self, event_id):
        self._record("event.retrieve", event_id=event_id)
        return self.events[event_id]

    def retrieve_customer(self, customer_id):
        self._record("customer.retrieve", customer_id=customer_id)
        return self.customers.get(customer_id, {"id": customer_id, "email": None, "metadata": {}})

    def create_customer(self, *, email, name, metadata):
        self._record("customer.create", email=email, name=name, metadata=metadata)
        customer_id = self._next_id("cus")
        self.customers[customer_id] = {"id": customer_id, "email": email, "name": name, "metadata": metadata}
        return self.customers[customer_id]

    def retrieve_payment_intent(self, payment_intent_id):
        self._record("payment_intent.retrieve", payment_intent_id=payment_intent_id)
        return self.payment_intents.get(payment_intent_id, {"id": payment_intent_id})

    def create_checkout_session(self, **params):
        self._record("checkout.session.create", **params)
        session_id = self._next_id("cs_test")
        return {"id": session_id, "url": f"https://checkout.stripe.test/{session_id}"}

    def list_line_items(self, session_id):
        self._record("checkout.session.list_line_items", session_id=session_id)
        return self.line_items.get(session_id, [])

    def retrieve_product(self, product_id):
        self._record("product.retrieve", product_id=product_id)
        return {"id": product_id, "active": product_id in self.active_products}

    def list_active_product_ids(self):
        self._record("product.list")
        return set(self.active_products)

    def create_product(self, *, name, description, metadata):
        self._record("product.create", name=name, description=description, metadata=metadata)
        product_id = self._next_id("prod")
        self.active_products.add(product_id)
        return {"id": product_id, "name": name, "active": True}

    def update_product(self, product_id, **fields):
        self._record("product.modify", product_id=product_id, **fields)
        if "active" in fields:
            if fields["active"]:
                self.active_products.add(product_id)
            else:
                self.active_products.discard(product_id)
        return {"id": product_id, **fields}

    def set_product_active(self, product_id, active):
        return self.update_product(product_id, active=active)

    def create_price(self, *, product_id, unit_amount, currency):
        self._record("price.create", product_id=product_id, unit_amount=unit_amount, currency=currency)
        return {"id": self._next_id("price"), "product": product_id, "unit_amount": unit_amount}

    def set_price_active(self, price_id, active):
        self._record("price.modify", price_id=price_id, active=active)
        return {"id": price_id, "active": active}

    def create_refund(self, *, payment_intent_id, amount, idempotency_key):
        self._record(
            "refund.create",
            payment_intent_id=payment_intent_id,
            amount=amount,
            idempotency_key=idempotency_key,
        )
        if idempotency_key not in self.refunds_by_key:
            self.refunds_by_key[idempotency_key] = {
                "id": self._next_id("re"),
                "amount": amount,
                "payment_intent": payment_intent_id,
                "status": "succeeded",
            }
        return self.refunds_by_key[idempotency_key]


class FakeMailer:
    """Records outgoing email instead of calling Resend."""

    def __init__(self):
        self.reset()

    def reset(self):
        self.confirmations = []
        self.contacts = []
        self.broadcasts = []
        self.confirmation_result = True
        self.raise_on_confirmation = False
        self.fail_contacts = False

    def send_purchase_confirmation(self, **kwargs):
        self.confirmations.append(kwargs)
        if self.raise_on_confirmation:
            raise RuntimeError("mail provider exploded")
        return self.confirmation_result

    def add_contact(self, *, email, full_name=None):
        if self.fail_contacts:
            raise EmailError("Resend /audiences returned 500: boom", 500)
        self.contacts.append({"email": email, "full_name": full_name})
        return True

    def send_broadcast(self, *, subject, body_text):
        self.broadcasts.append({"subject": subject, "body_text": body_text})
        return f"bc_{len(self.broadcasts):04d}"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TestConfig, payment_gateway=FakeStripeGateway(), mailer=FakeMailer())

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def gateway(app):
    fake = app.extensions[GATEWAY_EXTENSION_KEY]
    fake.reset()
    return fake


@pytest.fixture(scope='function')
def mailer(app):
    fake = app.extensions[MAILER_EXTENSION_KEY]
    fake.reset()
    return fake


@pytest.fixture(scope='function')
def db_session(app, gateway, mailer):
    """Fresh database (and fresh fakes) for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='session')
def password_hash():
    """bcrypt is slow on purpose; hash the shared test password once."""
    return hash_password(PASSWORD)


@pytest.fixture(scope='function')
def user(db_session, password_hash):
    """Parent account with a signed waiver."""
    user = User(
        email="parent@example.com",
        full_name="Pat Parent",
        password_hash=password_hash,
        waiver_signed=True,
        waiver_signed_at=utcnow(),
    )
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def other_user(db_session, password_hash):
    user = User(email="other@example.com", full_name="Olive Other", password_hash=password_hash)
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def admin_user(db_session, password_hash):
    """Staff account on an admin email domain."""
    user = User(email="coach@thelacrosselab.com", full_name="Casey Coach", password_hash=password_hash)
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def athlete(db_session, user):
    athlete = Athlete(user_id=user.id, name="Riley Parent", age=12, grade=6, position="attack")
    db_session.add(athlete)
    db_session.commit()
    return athlete


@pytest.fixture(scope='function')
def second_athlete(db_session, user):
    athlete = Athlete(user_id=user.id, name="Jordan Parent", age=10, grade=4)
    db_session.add(athlete)
    db_session.commit()
    return athlete


@pytest.fixture(scope='function')
def product(db_session, gateway):
    """Active session product mirrored in the fake Stripe catalog."""
    product = Product(
        name="Fall Skills Clinic",
        description="Stick skills and footwork",
        price_cents=5000,
        currency="usd",
        stock_quantity=10,
        is_active=True,
        stripe_product_id="prod_fall",
        stripe_price_id="price_fall",
    )
    product.sessions.append(ProductSession(
        session_date=parse_session_date("2026-11-07"),
        location="Richmond VA",
    ))
    db_session.add(product)
    db_session.commit()
    gateway.active_products.add("prod_fall")
    return product


def make_payment(db_session, user, lines, *, method="card", intent_id="pi_seed"):
    """
    Insert a payment directly.

    lines: [(athlete, product, quantity), ...]
    """
    payment = Payment(
        user_id=user.id,
        amount_cents=sum(p.price_cents * qty for _, p, qty in lines),
        currency="usd",
        stripe_payment_intent_id=intent_id if method == "card" else None,
        payment_method=method,
        status="succeeded" if method == "card" else "cash",
    )
    db_session.add(payment)
    db_session.flush()
    for athlete, product, quantity in lines:
        db_session.add(PaymentAthlete(
            payment_id=payment.id,
            athlete_id=athlete.id,
            product_id=product.id,
            quantity=quantity,
            unit_price_cents=product.price_cents,
        ))
    db_session.commit()
    return payment


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture(scope='function')
def user_headers(user):
    _, token = session_service.create_session(user.id)
    return auth_headers(token)


@pytest.fixture(scope='function')
def admin_headers(admin_user):
    _, token = session_service.create_session(admin_user.id)
    return auth_headers(token)
