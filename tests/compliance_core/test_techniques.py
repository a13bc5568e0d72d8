"""
Tests for the Anonymization Technique Library.

============================================================
PURPOSE
============================================================
Field-level transforms:
1. Redaction and masking
2. Field-aware generalization and its sentinels
3. Age brackets and cost buckets
4. Keyed pseudonymization and hashing

============================================================
"""

import pytest
from datetime import date, datetime, timezone
from decimal import Decimal


# ============================================================
# STATELESS TECHNIQUES
# ============================================================

class TestRedactAndMask:
    """Tests for redaction and masking."""

    def test_redact_any_value(self):
        """Redaction ignores the input entirely."""
        from compliance_core.techniques import redact, REDACTED

        assert redact("John") == REDACTED
        assert redact(42) == REDACTED

    def test_mask_keeps_edges(self):
        """Long strings keep two characters on each side."""
        from compliance_core.techniques import mask

        assert mask("5551234567") == "55******67"
        assert len(mask("abcdefgh")) == len("abcdefgh")

    def test_mask_short_and_non_strings(self):
        """Short strings are fully masked, non-strings become the sentinel."""
        from compliance_core.techniques import mask, MASKED

        assert mask("abcd") == "****"
        assert mask(12345) == MASKED


class TestGeneralize:
    """Tests for field-aware generalization."""

    def test_email_keeps_domain(self):
        from compliance_core.techniques import generalize

        assert generalize("jane@clinic.example", "email") == "user@clinic.example"

    def test_malformed_email(self):
        from compliance_core.techniques import generalize, GENERALIZED_EMAIL

        assert generalize("not-an-email", "email") == GENERALIZED_EMAIL
        assert generalize("jane@", "contact_email") == GENERALIZED_EMAIL

    def test_phone_keeps_area_code(self):
        from compliance_core.techniques import generalize, GENERALIZED_PHONE

        assert generalize("(555) 123-4567", "phone") == "(555) XXX-XXXX"
        assert generalize("12", "phone") == GENERALIZED_PHONE

    def test_address_and_city_sentinels(self):
        from compliance_core.techniques import generalize, GENERALIZED_ADDRESS, GENERALIZED_CITY

        assert generalize("1 Main St", "address") == GENERALIZED_ADDRESS
        assert generalize("Springfield", "city") == GENERALIZED_CITY

    def test_timestamp_to_date(self):
        """Timestamps lose their time of day."""
        from compliance_core.techniques import generalize, GENERALIZED_DATE

        assert generalize("2026-03-04T10:30:00+00:00", "start_time") == "2026-03-04"
        assert generalize("garbage", "created_at") == GENERALIZED_DATE

    def test_unknown_field(self):
        from compliance_core.techniques import generalize, GENERALIZED

        assert generalize("anything", "notes") == GENERALIZED


class TestAgeAndCost:
    """Tests for age brackets and cost buckets."""

    def test_birthday_not_yet_reached(self):
        """A birthday later in the year does not count yet."""
        from compliance_core.techniques import calculate_age

        assert calculate_age(date(2000, 6, 15), date(2018, 6, 14)) == 17
        assert calculate_age(date(2000, 6, 15), date(2018, 6, 15)) == 18

    def test_leap_day_birthday(self):
        from compliance_core.techniques import calculate_age

        assert calculate_age(date(2000, 2, 29), date(2018, 2, 28)) == 17
        assert calculate_age(date(2000, 2, 29), date(2018, 3, 1)) == 18

    @pytest.mark.parametrize("dob,bracket", [
        ("2010-01-01", "0-17"),
        ("2000-01-01", "18-29"),
        ("1985-01-01", "30-49"),
        ("1970-01-01", "50-69"),
        ("1940-01-01", "70+"),
    ])
    def test_age_brackets(self, dob, bracket):
        from compliance_core.techniques import generalize_age

        assert generalize_age(dob, today=date(2026, 6, 1)) == bracket

    def test_unparseable_or_future_birth_date(self):
        from compliance_core.techniques import generalize_age, GENERALIZED_AGE

        assert generalize_age("yesterday-ish") == GENERALIZED_AGE
        assert generalize_age("2030-01-01", today=date(2026, 1, 1)) == GENERALIZED_AGE

    @pytest.mark.parametrize("amount,bucket", [
        (0, "$0-99"),
        (99.99, "$0-99"),
        (100, "$100-499"),
        (Decimal("750.00"), "$500-999"),
        ("1500", "$1000-1999"),
        (2000, "$2000+"),
    ])
    def test_cost_buckets(self, amount, bucket):
        from compliance_core.techniques import generalize_cost

        assert generalize_cost(amount) == bucket

    def test_cost_rejects_non_numbers(self):
        """Booleans and free text are not amounts."""
        from compliance_core.techniques import generalize_cost, GENERALIZED_COST

        assert generalize_cost(True) == GENERALIZED_COST
        assert generalize_cost("about fifty") == GENERALIZED_COST
        assert generalize_cost(None) == GENERALIZED_COST


class TestKAnonymityGeneralization:
    """Tests for the coarser k-anonymity generalization."""

    def test_age_range_widens(self):
        from compliance_core.techniques import generalize_for_k_anonymity

        assert generalize_for_k_anonymity("18-29", "age_range") == "18-24"
        assert generalize_for_k_anonymity("30-49", "age_range") == "25-34"
        assert generalize_for_k_anonymity("70+", "age_range") == "65+"

    @pytest.mark.parametrize("age_range", ["0-17", "17", "5"])
    def test_minors_are_not_relabelled_as_adults(self, age_range):
        from compliance_core.techniques import generalize_for_k_anonymity

        assert generalize_for_k_anonymity(age_range, "age_range") == "0-17"

    def test_city_gender_and_other(self):
        from compliance_core.techniques import (
            generalize_for_k_anonymity,
            GENERALIZED,
            GENERALIZED_REGION,
        )

        assert generalize_for_k_anonymity("Lyon", "city") == GENERALIZED_REGION
        assert generalize_for_k_anonymity("female", "gender") == "female"
        assert generalize_for_k_anonymity("x", "zip") == GENERALIZED
        assert generalize_for_k_anonymity("unknown", "age_range") == GENERALIZED


# ============================================================
# KEYED TECHNIQUES
# ============================================================

class TestTechniqueLibrary:
    """Tests for keyed pseudonymization and hashing."""

    def test_pseudonym_is_deterministic(self):
        """Same value, field and salt give the same token."""
        from compliance_core.techniques import TechniqueLibrary

        library = TechniqueLibrary("master", salt="fixed")
        token = library.pseudonymize("patient-1", "id")

        assert token == library.pseudonymize("patient-1", "id")
        assert token.startswith("PSEUDO_")
        assert len(token) == len("PSEUDO_") + 12

    def test_pseudonym_depends_on_field(self):
        from compliance_core.techniques import TechniqueLibrary

        library = TechniqueLibrary("master", salt="fixed")

        assert library.pseudonymize("x", "id") != library.pseudonymize("x", "patient_id")

    def test_persisted_salt_is_stable_across_instances(self):
        from compliance_core.techniques import TechniqueLibrary

        first = TechniqueLibrary("master", salt="persisted")
        second = TechniqueLibrary("master", salt="persisted")

        assert first.pseudonymize("a", "id") == second.pseudonymize("a", "id")

    def test_ephemeral_salts_differ(self):
        from compliance_core.techniques import TechniqueLibrary

        first = TechniqueLibrary("master")
        second = TechniqueLibrary("master")

        assert first.salt != second.salt
        assert first.pseudonymize("a", "id") != second.pseudonymize("a", "id")

    def test_rotate_salt_breaks_linkage(self):
        from compliance_core.techniques import TechniqueLibrary

        library = TechniqueLibrary("master", salt="old")
        before = library.pseudonymize("a", "id")
        library.rotate_salt("new")

        assert library.pseudonymize("a", "id") != before

    def test_hash_format(self):
        from compliance_core.techniques import TechniqueLibrary

        library = TechniqueLibrary("master", salt="fixed")
        digest = library.hash("secret")

        assert digest.startswith("HASH_")
        assert len(digest) == len("HASH_") + 16
        assert digest == library.hash("secret")

    def test_apply_passes_none_through(self):
        from compliance_core.models import AnonymizationTechnique
        from compliance_core.techniques import TechniqueLibrary

        library = TechniqueLibrary("master", salt="fixed")

        assert library.apply(None, AnonymizationTechnique.REDACTION, "name") is None
        assert library.apply("Jane", AnonymizationTechnique.REDACTION, "name") == "[REDACTED]"
        assert library.apply("a@b.com", AnonymizationTechnique.GENERALIZATION, "email") == "user@b.com"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
