"""
Tests for the Anonymization Engine.

============================================================
PURPOSE
============================================================
Covers:
1. Per-entity policies and post-processing
2. Metadata and salt epochs
3. Options (levels, technique restriction, custom rules)
4. Classification and entity detection
5. k-anonymity
6. Differential privacy
7. Batch processing, progress and cancellation

============================================================
"""

import asyncio
import random
import pytest
from datetime import datetime, timezone
from unittest.mock import MagicMock


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def clock():
    from compliance_core.clock import MockClock

    return MockClock(datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def engine(clock):
    from compliance_core.anonymizer import AnonymizationEngine

    return AnonymizationEngine(
        master_key="test-master-key",
        salt="test-salt",
        salt_epoch="2026-q2",
        clock=clock,
        rng=random.Random(42),
        batch_size=2,
    )


@pytest.fixture
def patient():
    return {
        "id": "p-1",
        "first_name": "Jane",
        "last_name": "Doe",
        "email": "jane.doe@mail.example",
        "phone": "555-123-4567",
        "date_of_birth": "1990-07-15",
        "gender": "female",
        "city": "Springfield",
        "insurance_number": "INS-0001",
        "medical_history": {"allergies": ["penicillin"], "medications": [], "notes": "anxious"},
        "notes": "prefers mornings",
        "clinic_id": "c-1",
    }


@pytest.fixture
def appointment():
    return {
        "id": "a-1",
        "patient_id": "p-1",
        "dentist_id": "u-9",
        "start_time": "2026-05-20T09:30:00+00:00",
        "end_time": "2026-05-20T10:00:00+00:00",
        "status": "completed",
        "notes": "bring x-rays",
    }


# ============================================================
# ENTITY ANONYMIZATION
# ============================================================

class TestEntityAnonymization:
    """Tests for per-entity field policies."""

    def test_patient_fields(self, engine, patient):
        """Names pseudonymized, contact generalized, notes redacted."""
        result = engine.anonymize_patient(patient)

        assert result["first_name"].startswith("PSEUDO_")
        assert result["email"] == "user@mail.example"
        assert result["phone"] == "(555) XXX-XXXX"
        assert result["city"] == "[GENERALIZED_CITY]"
        assert result["insurance_number"].startswith("HASH_")
        assert result["notes"] == "[REDACTED]"
        assert result["id"] == "p-1"

    def test_patient_age_range_from_original_dob(self, engine, patient):
        """The precise birth date is replaced by an age range."""
        result = engine.anonymize_patient(patient)

        assert "date_of_birth" not in result
        assert result["age_range"] == "30-49"

    def test_patient_medical_history_flags(self, engine, patient):
        """Medical history content never survives, only presence flags."""
        result = engine.anonymize_patient(patient)

        assert result["medical_history"] == {
            "has_allergies": True,
            "has_medications": False,
            "has_conditions": False,
            "has_notes": True,
            "anonymized": True,
        }

    def test_source_record_untouched(self, engine, patient):
        snapshot = dict(patient)
        engine.anonymize_patient(patient)

        assert patient == snapshot

    def test_unlisted_fields_pass_through(self, engine):
        result = engine.anonymize_clinic({"name": "Smile", "favourite_colour": "blue"})

        assert result["favourite_colour"] == "blue"
        assert result["name"] == "[GENERALIZED]"

    def test_none_values_stay_none(self, engine):
        result = engine.anonymize_patient({"first_name": None, "email": None})

        assert result["first_name"] is None
        assert result["email"] is None

    def test_appointment_date_from_start_time(self, engine, appointment):
        result = engine.anonymize_appointment(appointment)

        assert result["appointment_date"] == "2026-05-20"
        assert "start_time" not in result
        assert "end_time" not in result
        assert result["notes"] == "[REDACTED]"

    def test_relationship_keys_join_across_entities(self, engine, appointment):
        """The same patient_id pseudonymizes identically in every child entity."""
        appt = engine.anonymize_appointment(appointment)
        treatment = engine.anonymize_treatment({"patient_id": "p-1", "cost": 250})
        invoice = engine.anonymize_invoice({"patient_id": "p-1", "amount": 1200})

        assert appt["patient_id"] == treatment["patient_id"] == invoice["patient_id"]
        assert appt["patient_id"] != "p-1"

    def test_treatment_cost_range(self, engine):
        result = engine.anonymize_treatment({"name": "Crown", "cost": 750.0})

        assert result["cost_range"] == "$500-999"
        assert "cost" not in result

    def test_invoice_amount_range(self, engine):
        result = engine.anonymize_invoice({"amount": "2500.00", "stripe_payment_intent_id": "pi_123"})

        assert result["amount_range"] == "$2000+"
        assert "amount" not in result
        assert result["stripe_payment_intent_id"].startswith("HASH_")

    def test_consent_metadata_generic_redaction(self, engine):
        result = engine.anonymize_consent({
            "user_id": "u-1",
            "consent_type": "marketing",
            "metadata": {"source_email": "x@y.com", "campaign": "spring", "nested": {"api_token": "t"}},
        })

        assert result["metadata"] == {
            "source_email": "[REDACTED]",
            "campaign": "spring",
            "nested": {"api_token": "[REDACTED]"},
        }

    def test_entity_type_as_string(self, engine):
        result = engine.anonymize("user", {"first_name": "Al"})

        assert result["_anonymization"]["data_type"] == "user"

    def test_unknown_entity_type(self, engine):
        with pytest.raises(ValueError):
            engine.anonymize("spaceship", {"name": "x"})


# ============================================================
# METADATA & SALT
# ============================================================

class TestMetadataAndSalt:
    """Tests for the anonymization metadata block and salt epochs."""

    def test_metadata_block(self, engine, patient, clock):
        meta = engine.anonymize_patient(patient)["_anonymization"]

        assert meta["data_type"] == "patient"
        assert meta["anonymization_version"] == "1.0"
        assert meta["salt_epoch"] == "2026-q2"
        assert meta["anonymized_at"] == clock.now().isoformat()

    def test_techniques_in_first_use_order_without_duplicates(self, engine, patient):
        techniques = engine.anonymize_patient(patient)["_anonymization"]["techniques_applied"]

        assert techniques == ["pseudonymization", "generalization", "hashing", "redaction"]

    def test_existing_metadata_replaced(self, engine):
        result = engine.anonymize_user({"first_name": "Al", "_anonymization": {"stale": True}})

        assert "stale" not in result["_anonymization"]

    def test_ephemeral_epoch(self):
        from compliance_core.anonymizer import AnonymizationEngine

        assert AnonymizationEngine("key").salt_epoch == "ephemeral"
        assert AnonymizationEngine("key", salt="s").salt_epoch == "persisted"

    def test_master_key_required(self):
        from compliance_core.anonymizer import AnonymizationEngine

        with pytest.raises(ValueError):
            AnonymizationEngine("")

    def test_rotate_salt(self, engine):
        before = engine.pseudonymize("p-1", "patient_id")
        epoch = engine.rotate_salt("new-salt")

        assert epoch.startswith("rotated-")
        assert engine.salt_epoch == epoch
        assert engine.pseudonymize("p-1", "patient_id") != before


# ============================================================
# OPTIONS
# ============================================================

class TestOptions:
    """Tests for levels, technique restriction and custom rules."""

    def test_custom_rule_overrides_policy(self, engine):
        from compliance_core.models import AnonymizationOptions, AnonymizationTechnique

        options = AnonymizationOptions(custom_rules={"first_name": AnonymizationTechnique.MASKING})
        result = engine.anonymize_user({"first_name": "Alexander"}, options)

        assert result["first_name"] == "Al*****er"

    def test_custom_rule_applies_to_unlisted_field(self, engine):
        from compliance_core.models import AnonymizationOptions, AnonymizationTechnique

        options = AnonymizationOptions(custom_rules={"nickname": AnonymizationTechnique.REDACTION})
        result = engine.anonymize_user({"nickname": "Sandy"}, options)

        assert result["nickname"] == "[REDACTED]"

    def test_disabled_technique_falls_back_to_strongest_enabled(self, engine):
        """Pseudonymization is not part of the minimal level; generalization is stronger than masking."""
        from compliance_core.anonymization_config import options_for_level
        from compliance_core.models import AnonymizationLevel

        result = engine.anonymize_user(
            {"first_name": "Alexander"},
            options_for_level(AnonymizationLevel.MINIMAL),
        )

        assert result["first_name"] == "[GENERALIZED]"


# ============================================================
# CLASSIFICATION & DETECTION
# ============================================================

class TestClassification:
    """Tests for field classification, ad-hoc policies and entity detection."""

    def test_classify_fields(self, engine):
        classification = engine.classify_fields({
            "id": 1,
            "email": "a@b.c",
            "age": 40,
            "zip_code": "12345",
            "diagnosis": "x",
            "favourite_colour": "blue",
        })

        assert classification.identifiers == ["id", "email"]
        assert classification.quasi_identifiers == ["age", "zip_code"]
        assert classification.sensitive_attributes == ["diagnosis"]
        assert classification.non_sensitive == ["favourite_colour"]

    def test_suggest_policy(self, engine):
        from compliance_core.models import AnonymizationTechnique

        policy = engine.suggest_policy({"member_id": "m", "city": "Lyon", "salary": 10})

        assert policy.entity_type is None
        assert policy.technique_for("member_id") == AnonymizationTechnique.PSEUDONYMIZATION
        assert policy.technique_for("city") == AnonymizationTechnique.GENERALIZATION
        assert policy.technique_for("salary") == AnonymizationTechnique.REDACTION

    def test_anonymize_adhoc(self, engine):
        result = engine.anonymize_adhoc({"member_id": "m-1", "salary": 50000, "plan": "gold"})

        assert result["member_id"].startswith("PSEUDO_")
        assert result["salary"] == "[REDACTED]"
        assert result["plan"] == "gold"
        assert result["_anonymization"]["data_type"] == "generic"

    @pytest.mark.parametrize("record,expected", [
        ({"patient_id": "p", "start_time": "2026-01-01T09:00:00"}, "appointment"),
        ({"patient_id": "p", "procedure": "filling"}, "treatment"),
        ({"patient_id": "p", "amount": 0}, "invoice"),
        ({"user_id": "u", "consent_type": "marketing"}, "consent"),
        ({"date_of_birth": "1990-01-01"}, "patient"),
        ({"first_name": "Al", "role": "staff"}, "user"),
    ])
    def test_detect_entity_type(self, engine, record, expected):
        """Child entity markers win over the patient_id they carry."""
        assert engine.detect_entity_type(record).value == expected


# ============================================================
# K-ANONYMITY
# ============================================================

class TestKAnonymity:
    """Tests for k-anonymity grouping."""

    def test_already_k_anonymous_records_untouched(self, engine):
        records = [{"age_range": "30-49", "city": "A", "gender": "f"} for _ in range(3)]
        result = engine.anonymize_with_k_anonymity(records, k=3)

        assert result.anonymized_records == records
        assert result.quality_metrics.k_anonymity_level == 3
        assert result.quality_metrics.information_loss == 0
        assert result.quality_metrics.data_utility == 100

    def test_regeneralization_merges_groups(self, engine):
        """Different cities collapse into one region and the group reaches k."""
        records = [
            {"age_range": "30-49", "city": "A", "gender": "f"},
            {"age_range": "30-49", "city": "B", "gender": "f"},
            {"age_range": "30-49", "city": "C", "gender": "f"},
        ]
        result = engine.anonymize_with_k_anonymity(records, k=3)

        assert all(r["city"] == "[GENERALIZED_REGION]" for r in result.anonymized_records)
        assert all(r["age_range"] == "25-34" for r in result.anonymized_records)
        assert result.quality_metrics.k_anonymity_level == 3
        assert result.quality_metrics.information_loss == 100

    def test_every_group_reaches_k(self, engine):
        """Outliers are suppressed and the smallest compliant group tops up the suppressed group."""
        records = (
            [{"age_range": "30-49", "city": "A", "gender": "f"}] * 4
            + [{"age_range": "18-29", "city": "B", "gender": "m"}]
            + [{"age_range": "70+", "city": "C", "gender": "x"}]
            + [{"age_range": "50-69", "city": "D", "gender": "m"}] * 3
        )
        result = engine.anonymize_with_k_anonymity(records, k=3)
        output = result.anonymized_records

        assert len(output) == len(records)
        assert result.quality_metrics.k_anonymity_level >= 3
        assert output[0]["city"] == "A"
        assert output[4]["gender"] == "[SUPPRESSED]"
        assert output[6]["city"] == "[SUPPRESSED]"
        assert result.quality_metrics.information_loss == pytest.approx(500 / 9)

    def test_input_order_preserved(self, engine):
        records = [{"age_range": "30-49", "city": c, "gender": "f", "row": i} for i, c in enumerate("ABCD")]
        result = engine.anonymize_with_k_anonymity(records, k=2)

        assert [r["row"] for r in result.anonymized_records] == [0, 1, 2, 3]

    def test_missing_values_group_as_unknown(self, engine):
        records = [{"age_range": None, "city": None, "gender": None}, {}]
        result = engine.anonymize_with_k_anonymity(records, k=2)

        assert result.quality_metrics.k_anonymity_level == 2

    def test_empty_input(self, engine):
        result = engine.anonymize_with_k_anonymity([], k=5)

        assert result.anonymized_records == []
        assert result.quality_metrics.k_anonymity_level == 0
        assert result.quality_metrics.data_utility == 100

    def test_invalid_k(self, engine):
        with pytest.raises(ValueError):
            engine.anonymize_with_k_anonymity([{"city": "A"}], k=0)


# ============================================================
# DIFFERENTIAL PRIVACY
# ============================================================

class TestDifferentialPrivacy:
    """Tests for the Laplace mechanism."""

    def test_seeded_noise_is_reproducible(self, clock):
        from compliance_core.anonymizer import AnonymizationEngine

        first = AnonymizationEngine("key", clock=clock, rng=random.Random(7))
        second = AnonymizationEngine("key", clock=clock, rng=random.Random(7))

        assert first.apply_differential_privacy(100.0) == second.apply_differential_privacy(100.0)

    def test_noise_is_centred(self, engine):
        samples = [engine.apply_differential_privacy(50.0, epsilon=1.0) for _ in range(5000)]
        mean = sum(samples) / len(samples)

        assert abs(mean - 50.0) < 0.2

    def test_larger_epsilon_means_less_noise(self, engine):
        tight = [abs(engine.apply_differential_privacy(0.0, epsilon=10.0)) for _ in range(2000)]
        loose = [abs(engine.apply_differential_privacy(0.0, epsilon=0.1)) for _ in range(2000)]

        assert sum(tight) < sum(loose)

    def test_zero_sensitivity_adds_no_noise(self, engine):
        assert engine.apply_differential_privacy(12.5, sensitivity=0.0) == 12.5

    def test_extreme_uniform_draws_are_finite(self, clock):
        """A uniform draw of exactly 0 must not produce infinity."""
        from compliance_core.anonymizer import AnonymizationEngine

        rng = MagicMock()
        rng.random.side_effect = [0.1, 0.0]
        engine = AnonymizationEngine("key", clock=clock, rng=rng)

        noise = engine.laplace_noise(1.0)

        assert noise > 0
        assert noise < 100

    @pytest.mark.parametrize("epsilon,sensitivity", [(0, 1), (-1, 1), (1, -0.5)])
    def test_invalid_parameters(self, engine, epsilon, sensitivity):
        with pytest.raises(ValueError):
            engine.apply_differential_privacy(1.0, epsilon=epsilon, sensitivity=sensitivity)


# ============================================================
# BATCH
# ============================================================

class TestBatchAnonymize:
    """Tests for chunked batch anonymization."""

    @pytest.mark.asyncio
    async def test_batch_with_detection_and_progress(self, engine, patient, appointment):
        progress = []
        records = [patient, appointment, {"first_name": "Al"}]

        result = await engine.batch_anonymize(
            records,
            progress_callback=lambda pct, done, total: progress.append((round(pct, 1), done, total)),
        )

        assert result.stats.success_count == 3
        assert result.stats.error_count == 0
        assert result.stats.total_processed == 3
        assert [r["_anonymization"]["data_type"] for r in result.anonymized_records] == [
            "patient", "appointment", "user",
        ]
        assert progress == [(66.7, 2, 3), (100.0, 3, 3)]

    @pytest.mark.asyncio
    async def test_failed_record_is_isolated(self, engine, patient):
        """One bad record is counted and the rest still come out."""
        from compliance_core.models import EntityType

        result = await engine.batch_anonymize(
            [patient, None, patient],
            entity_type=EntityType.PATIENT,
        )

        assert result.stats.success_count == 2
        assert result.stats.error_count == 1
        assert len(result.anonymized_records) == 2

    @pytest.mark.asyncio
    async def test_cancellation_between_chunks(self, engine, patient):
        cancel = asyncio.Event()

        def on_progress(pct, done, total):
            if done >= 2:
                cancel.set()

        result = await engine.batch_anonymize(
            [patient] * 6,
            progress_callback=on_progress,
            cancel_event=cancel,
        )

        assert result.stats.cancelled is True
        assert result.stats.total_processed == 2
        assert len(result.anonymized_records) == 2

    @pytest.mark.asyncio
    async def test_empty_batch(self, engine):
        result = await engine.batch_anonymize([])

        assert result.anonymized_records == []
        assert result.stats.total_processed == 0
        assert result.stats.cancelled is False


class TestQualityMetrics:
    """Tests for running quality counters."""

    def test_counters(self, engine):
        engine.anonymize_user({"first_name": "Al", "favourite_colour": "blue"})
        metrics = engine.get_quality_metrics()

        assert metrics["total_fields"] == 2
        assert metrics["anonymized_fields"] == 1
        assert metrics["anonymization_rate"] == 50.0
        assert metrics["techniques_used"] == ["pseudonymization"]
        assert metrics["data_types"] == ["user"]

    def test_reset(self, engine):
        engine.anonymize_user({"first_name": "Al"})
        engine.reset_quality_metrics()

        assert engine.get_quality_metrics()["total_fields"] == 0


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
