"""
Payload validation tests for the admin product and athlete forms.
"""

from datetime import date, time

import pytest

from academy.models import Athlete, Product, ProductSession
from academy.services.athlete_service import ATHLETE_POLICY
from academy.services.products_service import PRODUCT_POLICY, SESSION_POLICY
from academy.validation import ModelValidationPolicy, ValidationError, validate_payload


class TestValidatePayload:
    def test_policy_without_required_fields(self):
        policy = ModelValidationPolicy(writable_fields={"name"})

        assert policy.required_on_create == set()
        assert validate_payload(model=Athlete, payload={}, policy=policy, partial=False) == {}

    def test_create_requires_fields(self):
        with pytest.raises(ValidationError, match="price_cents"):
            validate_payload(model=Product, payload={"name": "Clinic", "stock_quantity": 5},
                             policy=PRODUCT_POLICY, partial=False)

    def test_patch_skips_required_fields(self):
        patch = validate_payload(model=Product, payload={"stock_quantity": "12"},
                                 policy=PRODUCT_POLICY, partial=True)

        assert patch == {"stock_quantity": 12}

    def test_active_flag_is_not_writable(self):
        with pytest.raises(ValidationError, match="Field not allowed: is_active"):
            validate_payload(model=Product, payload={"is_active": False},
                             policy=PRODUCT_POLICY, partial=True)

    @pytest.mark.parametrize("raw", [12.5, "1e3", "12.0", "twelve"])
    def test_integer_fields_reject_non_integers(self, raw):
        with pytest.raises(ValidationError):
            validate_payload(model=Athlete, payload={"age": raw}, policy=ATHLETE_POLICY, partial=True)

    def test_session_date_and_time(self):
        patch = validate_payload(
            model=ProductSession,
            payload={"session_date": "2026-11-07", "session_time": "09:30", "location": " Field 2 "},
            policy=SESSION_POLICY,
            partial=False,
        )

        assert patch == {"session_date": date(2026, 11, 7), "session_time": time(9, 30), "location": "Field 2"}

    @pytest.mark.parametrize("field,raw", [("session_date", "11/07/2026"), ("session_time", "9.30am")])
    def test_bad_session_date_or_time(self, field, raw):
        payload = {"session_date": "2026-11-07", field: raw}

        with pytest.raises(ValidationError):
            validate_payload(model=ProductSession, payload=payload, policy=SESSION_POLICY, partial=False)
