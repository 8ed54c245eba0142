"""
HTTP-level tests.

Verifies:
- Unauthenticated requests return 401, non-admins get 403 on /api/admin
- Webhook endpoint status codes (400 signature, 500 unresolved user, 200 otherwise)
- Auth, waiver, product toggle, refund, broadcast, and feature-flag endpoints
"""

import json

import pytest

from conftest import PASSWORD, VALID_SIGNATURE, auth_headers, make_payment

from academy.models import Payment, Product, WebhookEvent


# =============================================================================
# UNAUTHENTICATED ACCESS (401)
# =============================================================================


class TestUnauthenticatedAccess:
    """All protected endpoints return 401 without a token."""

    @pytest.mark.parametrize(
        "method,path",
        [
            ("GET", "/api/auth/me"),
            ("GET", "/api/athletes"),
            ("GET", "/api/cart"),
            ("POST", "/api/cart/items"),
            ("POST", "/api/checkout/session"),
            ("GET", "/api/payments"),
            ("POST", "/api/waiver/sign"),
            ("GET", "/api/admin/products"),
            ("POST", "/api/admin/refunds"),
            ("POST", "/api/admin/broadcasts"),
        ],
    )
    def test_requires_auth(self, client, db_session, method, path):
        resp = getattr(client, method.lower())(path)
        assert resp.status_code == 401, f"{method} {path} returned {resp.status_code}"

    def test_bogus_token(self, client, db_session):
        resp = client.get("/api/auth/me", headers=auth_headers("not-a-real-token"))
        assert resp.status_code == 401
        assert resp.get_json()["error"] == "Invalid or expired token"


# =============================================================================
# NON-ADMIN DENIED (403)
# =============================================================================


class TestParentDeniedAdmin:
    @pytest.mark.parametrize(
        "method,path",
        [
            ("GET", "/api/admin/products"),
            ("POST", "/api/admin/products"),
            ("POST", "/api/admin/products/1/active"),
            ("GET", "/api/admin/products/1/roster"),
            ("POST", "/api/admin/refunds"),
            ("POST", "/api/admin/broadcasts"),
        ],
    )
    def test_forbidden(self, client, user_headers, method, path):
        resp = getattr(client, method.lower())(path, json={}, headers=user_headers)
        assert resp.status_code == 403


# =============================================================================
# AUTH
# =============================================================================


class TestAuthFlow:
    def test_register_login_me_logout(self, client, db_session):
        resp = client.post("/api/auth/register", json={
            "email": "New.Parent@Example.com", "password": "Sup3rSecret", "full_name": "New Parent",
        })
        assert resp.status_code == 201
        body = resp.get_json()
        assert body["user"]["email"] == "new.parent@example.com"
        assert body["user"]["is_admin"] is False

        resp = client.post("/api/auth/login", json={"email": "new.parent@example.com", "password": "Sup3rSecret"})
        assert resp.status_code == 200
        headers = auth_headers(resp.get_json()["token"])

        assert client.get("/api/auth/me", headers=headers).status_code == 200
        assert client.post("/api/auth/logout", headers=headers).status_code == 200
        assert client.get("/api/auth/me", headers=headers).status_code == 401

    def test_weak_password(self, client, db_session):
        resp = client.post("/api/auth/register", json={"email": "a@example.com", "password": "short"})
        assert resp.status_code == 400

    def test_duplicate_email(self, client, user):
        resp = client.post("/api/auth/register", json={"email": "parent@example.com", "password": "Sup3rSecret"})
        assert resp.status_code == 409

    def test_wrong_password(self, client, user):
        resp = client.post("/api/auth/login", json={"email": "parent@example.com", "password": "Wrong1234"})
        assert resp.status_code == 401
        assert resp.get_json()["error"] == "Invalid credentials"

    def test_admin_flag_from_email_domain(self, client, admin_user):
        resp = client.post("/api/auth/login", json={"email": admin_user.email, "password": PASSWORD})
        assert resp.get_json()["user"]["is_admin"] is True


# =============================================================================
# WAIVER / ATHLETES
# =============================================================================


class TestWaiverAndAthletes:
    def test_sign_waiver_records_forwarded_ip(self, client, db_session, other_user):
        from academy.services import session_service
        _, token = session_service.create_session(other_user.id)
        headers = {**auth_headers(token), "X-Forwarded-For": "203.0.113.9, 10.0.0.1"}

        resp = client.post("/api/waiver/sign", headers=headers)

        assert resp.status_code == 200
        assert other_user.waiver_signed is True
        assert other_user.waiver_ip_address == "203.0.113.9"

    def test_waiver_status_lists_minors(self, client, user_headers, athlete):
        resp = client.get("/api/waiver/status", headers=user_headers)
        body = resp.get_json()
        assert body["has_minors"] is True
        assert body["minor_athletes"] == [{"id": athlete.id, "name": "Riley Parent"}]

    def test_create_athlete_validation(self, client, user_headers):
        resp = client.post("/api/athletes", json={"name": "Sam", "age": 40}, headers=user_headers)
        assert resp.status_code == 400

        resp = client.post("/api/athletes", json={"name": "Sam", "age": 9, "grade": 3}, headers=user_headers)
        assert resp.status_code == 201

    def test_registered_athlete_cannot_be_deleted(self, client, db_session, user, user_headers, athlete, product):
        make_payment(db_session, user, [(athlete, product, 1)], intent_id="pi_r")

        resp = client.delete(f"/api/athletes/{athlete.id}", headers=user_headers)
        assert resp.status_code == 409


# =============================================================================
# CART / CHECKOUT
# =============================================================================


class TestCartCheckoutRoutes:
    def test_add_to_cart_and_checkout(self, client, user_headers, gateway, athlete, product):
        resp = client.post("/api/cart/items", json={"product_id": product.id, "athlete_id": athlete.id},
                           headers=user_headers)
        assert resp.status_code == 201

        resp = client.post("/api/cart/items", json={"product_id": product.id, "athlete_id": athlete.id},
                           headers=user_headers)
        assert resp.status_code == 409

        resp = client.post("/api/checkout/session", headers=user_headers)
        assert resp.status_code == 200
        assert resp.get_json()["url"].startswith("https://checkout.stripe.test/")

    def test_checkout_without_waiver(self, client, db_session, user, user_headers, athlete, product):
        client.post("/api/cart/items", json={"product_id": product.id, "athlete_id": athlete.id},
                    headers=user_headers)
        user.waiver_signed = False
        db_session.commit()

        resp = client.post("/api/checkout/session", headers=user_headers)
        assert resp.status_code == 403
        assert resp.get_json()["error"] == "Waiver must be signed before checkout"

    def test_bad_product_id(self, client, user_headers, athlete):
        resp = client.post("/api/cart/items", json={"product_id": "abc", "athlete_id": athlete.id},
                           headers=user_headers)
        assert resp.status_code == 400


# =============================================================================
# WEBHOOK ENDPOINT
# =============================================================================


class TestWebhookEndpoint:
    def post_event(self, client, event, signature=VALID_SIGNATURE):
        headers = {"Stripe-Signature": signature} if signature else {}
        return client.post("/api/webhooks/stripe", data=json.dumps(event),
                           headers=headers, content_type="application/json")

    def completed_event(self, user, athlete, product, *, email=None):
        return {
            "id": "evt_http_1",
            "type": "checkout.session.completed",
            "data": {"object": {
                "id": "cs_http",
                "payment_status": "paid",
                "payment_intent": "pi_http",
                "customer_email": email or user.email,
                "amount_total": 5000,
                "currency": "usd",
                "metadata": {"athlete_0_id": str(athlete.id), "athlete_0_product_id": str(product.id)},
            }},
        }

    def test_missing_signature(self, client, db_session):
        resp = self.post_event(client, {"id": "evt_1", "type": "customer.created"}, signature=None)
        assert resp.status_code == 400
        assert db_session.query(WebhookEvent).count() == 0

    def test_bad_signature(self, client, db_session):
        resp = self.post_event(client, {"id": "evt_1", "type": "customer.created"}, signature="t=1,v1=forged")
        assert resp.status_code == 400
        assert db_session.query(WebhookEvent).count() == 0

    def test_event_without_id(self, client, db_session):
        resp = self.post_event(client, {"type": "customer.created"})
        assert resp.status_code == 400

    def test_processes_checkout(self, client, gateway, mailer, db_session, user, athlete, product):
        gateway.line_items["cs_http"] = [{"price": {"id": "price_fall", "unit_amount": 5000}, "quantity": 1}]

        resp = self.post_event(client, self.completed_event(user, athlete, product))

        assert resp.status_code == 200
        body = resp.get_json()
        assert body["received"] is True
        assert body["processed"] is True
        assert db_session.query(Payment).count() == 1
        assert len(mailer.confirmations) == 1

        resp = self.post_event(client, self.completed_event(user, athlete, product))
        assert resp.status_code == 200
        assert resp.get_json()["duplicate"] is True

    def test_unresolved_user_returns_500(self, client, gateway, db_session, user, athlete, product):
        resp = self.post_event(client, self.completed_event(user, athlete, product, email="ghost@example.com"))

        assert resp.status_code == 500
        assert resp.get_json()["error"] == "Unable to resolve user"
        assert db_session.query(WebhookEvent).one().processed_at is None

    def test_unresolvable_lines_return_200(self, client, gateway, db_session, user, athlete, product):
        resp = self.post_event(client, self.completed_event(user, athlete, product))

        assert resp.status_code == 200
        assert resp.get_json()["processed"] is False

    def test_checkout_without_payment_intent_returns_200(self, client, gateway, db_session,
                                                          user, athlete, product):
        event = self.completed_event(user, athlete, product)
        del event["data"]["object"]["payment_intent"]

        resp = self.post_event(client, event)

        assert resp.status_code == 200
        assert resp.get_json()["processed"] is False
        assert db_session.query(Payment).count() == 0
        assert db_session.query(WebhookEvent).one().processed_at is None

    def test_stripe_outage_returns_500(self, client, gateway, db_session, user, athlete, product):
        gateway.fail_on.add("checkout.session.list_line_items")

        resp = self.post_event(client, self.completed_event(user, athlete, product))

        assert resp.status_code == 500
        assert db_session.query(WebhookEvent).one().last_error


# =============================================================================
# ADMIN
# =============================================================================


class TestAdminRoutes:
    def test_toggle_reports_noop(self, client, admin_headers, gateway, product):
        resp = client.post(f"/api/admin/products/{product.id}/active", json={"is_active": True},
                           headers=admin_headers)

        body = resp.get_json()
        assert resp.status_code == 200
        assert body["changed"] is False
        assert body["message"] == "Already in desired state"

    def test_toggle_requires_boolean(self, client, admin_headers, product):
        resp = client.post(f"/api/admin/products/{product.id}/active", json={"is_active": "false"},
                           headers=admin_headers)
        assert resp.status_code == 400

    def test_toggle_stripe_failure_is_502(self, client, admin_headers, gateway, db_session, product):
        gateway.fail_on.add("product.modify")

        resp = client.post(f"/api/admin/products/{product.id}/active", json={"is_active": False},
                           headers=admin_headers)

        assert resp.status_code == 502
        assert db_session.get(Product, product.id).is_active is True

    def test_create_product(self, client, admin_headers, gateway):
        resp = client.post("/api/admin/products", json={
            "name": "Spring League", "price_cents": 15000, "stock_quantity": 40,
            "sessions": [{"session_date": "2027-03-01", "session_time": "17:30", "location": "north field"}],
        }, headers=admin_headers)

        assert resp.status_code == 201
        body = resp.get_json()
        assert body["spots_remaining"] == 40
        assert body["sessions"][0]["session_time"] == "17:30"

    def test_refund(self, client, admin_headers, gateway, db_session, user, athlete, product):
        payment = make_payment(db_session, user, [(athlete, product, 1)], intent_id="pi_r")
        line_id = payment.line_items[0].id

        resp = client.post("/api/admin/refunds", json={"payment_athlete_ids": [line_id]}, headers=admin_headers)

        assert resp.status_code == 200
        body = resp.get_json()
        assert body["success"] is True
        assert body["all_items_refunded"] is True
        assert body["payment_status"] == "refunded"

        resp = client.post("/api/admin/refunds", json={"payment_athlete_ids": [line_id]}, headers=admin_headers)
        assert resp.status_code == 400

    def test_refund_requires_list(self, client, admin_headers):
        resp = client.post("/api/admin/refunds", json={"payment_athlete_ids": 5}, headers=admin_headers)
        assert resp.status_code == 400

    def test_cash_registration_and_roster(self, client, admin_headers, athlete, product):
        resp = client.post(f"/api/admin/products/{product.id}/cash-registrations",
                           json={"athlete_id": athlete.id}, headers=admin_headers)
        assert resp.status_code == 201
        assert resp.get_json()["payment"]["status"] == "cash"

        resp = client.post(f"/api/admin/products/{product.id}/cash-registrations",
                           json={"athlete_id": athlete.id}, headers=admin_headers)
        assert resp.status_code == 409

        roster = client.get(f"/api/admin/products/{product.id}/roster", headers=admin_headers).get_json()
        assert [row["athlete_name"] for row in roster["items"]] == ["Riley Parent"]

        csv_resp = client.get(f"/api/admin/products/{product.id}/roster.csv", headers=admin_headers)
        assert csv_resp.mimetype == "text/csv"
        assert "Riley Parent" in csv_resp.get_data(as_text=True)

        available = client.get(f"/api/admin/products/{product.id}/available-athletes",
                               headers=admin_headers).get_json()
        assert available["items"] == []

    def test_broadcast_disabled(self, client, admin_headers, mailer):
        resp = client.post("/api/admin/broadcasts", json={"subject": "Hi", "body_text": "Hello"},
                           headers=admin_headers)
        assert resp.status_code == 503
        assert mailer.broadcasts == []

    def test_broadcast_enabled(self, app, monkeypatch, client, admin_headers, mailer):
        monkeypatch.setitem(app.config, "ENABLE_BROADCAST_FEATURE", True)

        resp = client.post("/api/admin/broadcasts", json={"subject": "Hi", "body_text": ""},
                           headers=admin_headers)
        assert resp.status_code == 400

        resp = client.post("/api/admin/broadcasts", json={"subject": "Spring signups", "body_text": "Open now."},
                           headers=admin_headers)
        assert resp.status_code == 200
        assert mailer.broadcasts == [{"subject": "Spring signups", "body_text": "Open now."}]


# =============================================================================
# PUBLIC
# =============================================================================


class TestPublicRoutes:
    def test_health(self, client, db_session):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.get_json()["checks"]["database"]["status"] == "healthy"

    def test_feature_flags(self, client, db_session):
        body = client.get("/api/feature-flags").get_json()
        assert body["flags"] == {
            "ENABLE_BROADCAST_FEATURE": False,
            "ENABLE_RESEND_CONTACT_ADDITION": False,
        }

        resp = client.get("/api/feature-flags?flag=ENABLE_BROADCAST_FEATURE")
        assert resp.get_json() == {"flag": "ENABLE_BROADCAST_FEATURE", "enabled": False}

        resp = client.get("/api/feature-flags?flag=SECRET_KEY")
        assert resp.status_code == 400

    def test_catalog(self, client, gateway, product):
        body = client.get("/api/products").get_json()
        assert body["count"] == 1
        assert body["items"][0]["spots_remaining"] == 10

    def test_cors_for_allowed_origin(self, client, db_session):
        resp = client.get("/health", headers={"Origin": "https://academy.test"})
        assert resp.headers["Access-Control-Allow-Origin"] == "https://academy.test"

        resp = client.get("/health", headers={"Origin": "https://evil.test"})
        assert "Access-Control-Allow-Origin" not in resp.headers
