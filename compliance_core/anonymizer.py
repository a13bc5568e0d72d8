"""
Anonymization Engine.

============================================================
PURPOSE
============================================================
Applies per-entity anonymization policies to clinical records.

- Field policies dispatch every non-null field to one technique
- Entity post-processors derive coarse attributes (age range,
  cost range, appointment date) from the ORIGINAL values and
  drop the precise source fields
- Every output carries an ``_anonymization`` metadata block
- k-anonymity grouping with iterative re-generalization
- Laplace noise for aggregate statistics
- Chunked batch processing with progress and cancellation

Pseudonymized foreign keys join across entities anonymized
by the same engine (same salt epoch).

============================================================
"""

import asyncio
import logging
import math
import random
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Union

from .anonymization_config import (
    DEFAULT_QUASI_IDENTIFIERS,
    GENERIC_SENSITIVE_KEYS,
    IDENTIFIER_PATTERNS,
    QUASI_IDENTIFIER_PATTERNS,
    SENSITIVE_PATTERNS,
    TECHNIQUE_FALLBACK_ORDER,
    FieldPolicy,
    default_options,
    get_field_policy,
)
from .clock import ClockProtocol, SystemClock
from .config import ComplianceConfig
from .models import (
    AnonymizationMetadata,
    AnonymizationOptions,
    AnonymizationTechnique,
    BatchResult,
    BatchStats,
    EntityType,
    FieldClassification,
    KAnonymityMetrics,
    KAnonymityResult,
)
from .techniques import (
    REDACTED,
    SUPPRESSED,
    TechniqueLibrary,
    generalize_age,
    generalize_cost,
    generalize_for_k_anonymity,
    generalize_timestamp,
)


logger = logging.getLogger(__name__)


METADATA_KEY = "_anonymization"
UNKNOWN_GROUP_VALUE = "unknown"

# Clamp for the uniform draw of the Laplace sampler; -ln(0) is infinite.
_UNIFORM_EPSILON = 1e-12

ProgressCallback = Callable[[float, int, int], None]
PostProcessor = Callable[[Dict[str, Any], Dict[str, Any], List[AnonymizationTechnique]], None]


# ============================================================
# QUALITY COUNTERS
# ============================================================

@dataclass
class QualityCounters:
    """Running counters over everything an engine has anonymized."""
    total_fields: int = 0
    anonymized_fields: int = 0
    techniques_used: Set[str] = field(default_factory=set)
    data_types: Set[str] = field(default_factory=set)

    def to_dict(self) -> Dict[str, Any]:
        rate = (self.anonymized_fields / self.total_fields * 100) if self.total_fields else 0.0
        return {
            "total_fields": self.total_fields,
            "anonymized_fields": self.anonymized_fields,
            "anonymization_rate": round(rate, 2),
            "techniques_used": sorted(self.techniques_used),
            "data_types": sorted(self.data_types),
        }


# ============================================================
# ENGINE
# ============================================================

class AnonymizationEngine:
    """
    Policy-driven record anonymizer.

    One engine holds one salt. Records anonymized by the same
    engine share pseudonyms for equal key values, so appointments
    still join to their (pseudonymized) patient.

    Usage:
        engine = AnonymizationEngine(master_key="...")
        anonymized = engine.anonymize(EntityType.PATIENT, patient_row)
    """

    def __init__(
        self,
        master_key: str,
        salt: Optional[str] = None,
        salt_epoch: Optional[str] = None,
        clock: Optional[ClockProtocol] = None,
        rng: Optional[random.Random] = None,
        batch_size: int = 100,
    ):
        if not master_key:
            raise ValueError("master_key is required")
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")

        self._techniques = TechniqueLibrary(master_key, salt)
        self._salt_epoch = salt_epoch or ("persisted" if salt else "ephemeral")
        self._clock = clock or SystemClock()
        self._rng = rng or random.SystemRandom()
        self._batch_size = batch_size
        self._quality = QualityCounters()

        self._post_processors: Dict[EntityType, PostProcessor] = {
            EntityType.USER: self._post_process_user,
            EntityType.PATIENT: self._post_process_patient,
            EntityType.APPOINTMENT: self._post_process_appointment,
            EntityType.TREATMENT: self._post_process_treatment,
            EntityType.INVOICE: self._post_process_invoice,
            EntityType.CONSENT: self._post_process_consent,
            EntityType.CLINIC: self._post_process_clinic,
        }

        logger.info(f"AnonymizationEngine initialized (salt epoch: {self._salt_epoch})")

    # --------------------------------------------------------
    # SALT
    # --------------------------------------------------------

    @property
    def salt_epoch(self) -> str:
        return self._salt_epoch

    def rotate_salt(self, new_salt: Optional[str] = None, epoch: Optional[str] = None) -> str:
        """
        Replace the pseudonymization salt.

        Pseudonyms issued before rotation no longer match new
        ones. Returns the new salt epoch label.
        """
        previous = self._salt_epoch
        self._techniques.rotate_salt(new_salt)
        self._salt_epoch = epoch or f"rotated-{self._clock.now().strftime('%Y%m%dT%H%M%S')}"
        logger.warning(f"Pseudonymization salt rotated: {previous} -> {self._salt_epoch}")
        return self._salt_epoch

    def pseudonymize(self, value: Any, field_name: str) -> str:
        return self._techniques.pseudonymize(value, field_name)

    # --------------------------------------------------------
    # RECORD ANONYMIZATION
    # --------------------------------------------------------

    def anonymize(
        self,
        entity_type: Union[EntityType, str],
        record: Dict[str, Any],
        options: Optional[AnonymizationOptions] = None,
    ) -> Dict[str, Any]:
        """
        Anonymize one record of a known entity type.

        Args:
            entity_type: Entity variant (or its string value)
            record: Source record; never modified
            options: Per-call options, defaults to full level

        Returns:
            Anonymized copy with ``_anonymization`` metadata
        """
        entity = EntityType(entity_type)
        policy = get_field_policy(entity)
        options = options or default_options()

        anonymized, applied = self._apply_policy(record, policy, options)
        self._post_processors[entity](record, anonymized, applied)

        return self._finish(anonymized, entity.value, applied)

    def anonymize_user(self, record: Dict[str, Any], options: Optional[AnonymizationOptions] = None) -> Dict[str, Any]:
        return self.anonymize(EntityType.USER, record, options)

    def anonymize_patient(self, record: Dict[str, Any], options: Optional[AnonymizationOptions] = None) -> Dict[str, Any]:
        return self.anonymize(EntityType.PATIENT, record, options)

    def anonymize_appointment(self, record: Dict[str, Any], options: Optional[AnonymizationOptions] = None) -> Dict[str, Any]:
        return self.anonymize(EntityType.APPOINTMENT, record, options)

    def anonymize_treatment(self, record: Dict[str, Any], options: Optional[AnonymizationOptions] = None) -> Dict[str, Any]:
        return self.anonymize(EntityType.TREATMENT, record, options)

    def anonymize_invoice(self, record: Dict[str, Any], options: Optional[AnonymizationOptions] = None) -> Dict[str, Any]:
        return self.anonymize(EntityType.INVOICE, record, options)

    def anonymize_consent(self, record: Dict[str, Any], options: Optional[AnonymizationOptions] = None) -> Dict[str, Any]:
        return self.anonymize(EntityType.CONSENT, record, options)

    def anonymize_clinic(self, record: Dict[str, Any], options: Optional[AnonymizationOptions] = None) -> Dict[str, Any]:
        return self.anonymize(EntityType.CLINIC, record, options)

    def anonymize_adhoc(
        self,
        record: Dict[str, Any],
        options: Optional[AnonymizationOptions] = None,
    ) -> Dict[str, Any]:
        """Anonymize a record no static policy covers, using its field classification."""
        policy = self.suggest_policy(record)
        options = options or default_options()

        anonymized, applied = self._apply_policy(record, policy, options)
        return self._finish(anonymized, "generic", applied)

    def _apply_policy(
        self,
        record: Dict[str, Any],
        policy: FieldPolicy,
        options: AnonymizationOptions,
    ):
        anonymized = {k: v for k, v in record.items() if k != METADATA_KEY}
        applied: List[AnonymizationTechnique] = []

        for field_name, value in anonymized.items():
            self._quality.total_fields += 1

            technique = options.custom_rules.get(field_name)
            if technique is None:
                technique = policy.technique_for(field_name)
                if technique is not None:
                    technique = self._resolve_technique(technique, options)

            if technique is None or value is None:
                continue

            anonymized[field_name] = self._techniques.apply(value, technique, field_name)
            self._quality.anonymized_fields += 1
            _note(applied, technique)

        return anonymized, applied

    def _resolve_technique(
        self,
        technique: AnonymizationTechnique,
        options: AnonymizationOptions,
    ) -> AnonymizationTechnique:
        if options.allows(technique):
            return technique

        for candidate in TECHNIQUE_FALLBACK_ORDER:
            if options.allows(candidate):
                return candidate

        return AnonymizationTechnique.REDACTION

    def _finish(
        self,
        anonymized: Dict[str, Any],
        data_type: str,
        applied: List[AnonymizationTechnique],
    ) -> Dict[str, Any]:
        metadata = AnonymizationMetadata(
            data_type=data_type,
            anonymized_at=self._clock.now(),
            techniques_applied=list(applied),
            salt_epoch=self._salt_epoch,
        )
        anonymized[METADATA_KEY] = metadata.to_dict()

        self._quality.data_types.add(data_type)
        self._quality.techniques_used.update(t.value for t in applied)
        return anonymized

    # --------------------------------------------------------
    # ENTITY POST-PROCESSING
    # --------------------------------------------------------

    def _post_process_user(self, original, anonymized, applied) -> None:
        self._anonymize_metadata_field(original, anonymized, applied)

    def _post_process_patient(self, original, anonymized, applied) -> None:
        if original.get("medical_history") is not None:
            anonymized["medical_history"] = self._flatten_medical_history(original["medical_history"])
            _note(applied, AnonymizationTechnique.GENERALIZATION)

        if original.get("date_of_birth") is not None:
            anonymized["age_range"] = generalize_age(original["date_of_birth"], today=self._clock.today())
            _note(applied, AnonymizationTechnique.GENERALIZATION)
        anonymized.pop("date_of_birth", None)

    def _post_process_appointment(self, original, anonymized, applied) -> None:
        if original.get("start_time") is None:
            return

        anonymized["appointment_date"] = generalize_timestamp(original["start_time"])
        anonymized.pop("start_time", None)
        anonymized.pop("end_time", None)
        _note(applied, AnonymizationTechnique.GENERALIZATION)

    def _post_process_treatment(self, original, anonymized, applied) -> None:
        if original.get("cost") is not None:
            anonymized["cost_range"] = generalize_cost(original["cost"])
            _note(applied, AnonymizationTechnique.GENERALIZATION)
        anonymized.pop("cost", None)

    def _post_process_invoice(self, original, anonymized, applied) -> None:
        if original.get("amount") is not None:
            anonymized["amount_range"] = generalize_cost(original["amount"])
            _note(applied, AnonymizationTechnique.GENERALIZATION)
        anonymized.pop("amount", None)

    def _post_process_consent(self, original, anonymized, applied) -> None:
        self._anonymize_metadata_field(original, anonymized, applied)

    def _post_process_clinic(self, original, anonymized, applied) -> None:
        pass

    def _anonymize_metadata_field(self, original, anonymized, applied) -> None:
        metadata = original.get("metadata")
        if isinstance(metadata, dict):
            anonymized["metadata"] = self.anonymize_generic(metadata)
            _note(applied, AnonymizationTechnique.REDACTION)

    @staticmethod
    def _flatten_medical_history(history: Any) -> Dict[str, Any]:
        """Collapse a medical history into presence flags. Content never survives."""
        if not isinstance(history, dict):
            history = {}

        return {
            "has_allergies": bool(history.get("allergies")),
            "has_medications": bool(history.get("medications")),
            "has_conditions": bool(history.get("conditions")),
            "has_notes": bool(history.get("notes")),
            "anonymized": True,
        }

    def anonymize_generic(self, data: Any) -> Any:
        """
        Redact sensitive string values inside a free-form object.

        Keys containing a sensitive fragment (email, name, token,
        ...) have string values replaced; nested dicts and lists
        are walked.
        """
        if isinstance(data, list):
            return [self.anonymize_generic(item) for item in data]
        if not isinstance(data, dict):
            return data

        result = {}
        for key, value in data.items():
            lowered = str(key).lower()
            if isinstance(value, str) and any(fragment in lowered for fragment in GENERIC_SENSITIVE_KEYS):
                result[key] = REDACTED
            elif isinstance(value, (dict, list)):
                result[key] = self.anonymize_generic(value)
            else:
                result[key] = value
        return result

    # --------------------------------------------------------
    # CLASSIFICATION
    # --------------------------------------------------------

    def classify_fields(self, record: Dict[str, Any]) -> FieldClassification:
        """Partition field names into identifiers, quasi-identifiers, sensitive and the rest."""
        classification = FieldClassification()

        for field_name in record:
            if field_name == METADATA_KEY:
                continue
            if any(p.search(field_name) for p in IDENTIFIER_PATTERNS):
                classification.identifiers.append(field_name)
            elif any(p.search(field_name) for p in QUASI_IDENTIFIER_PATTERNS):
                classification.quasi_identifiers.append(field_name)
            elif any(p.search(field_name) for p in SENSITIVE_PATTERNS):
                classification.sensitive_attributes.append(field_name)
            else:
                classification.non_sensitive.append(field_name)

        return classification

    def suggest_policy(self, record: Dict[str, Any]) -> FieldPolicy:
        """Derive an ad-hoc field policy from a record's classification."""
        classification = self.classify_fields(record)

        fields: Dict[str, AnonymizationTechnique] = {}
        for name in classification.identifiers:
            fields[name] = AnonymizationTechnique.PSEUDONYMIZATION
        for name in classification.quasi_identifiers:
            fields[name] = AnonymizationTechnique.GENERALIZATION
        for name in classification.sensitive_attributes:
            fields[name] = AnonymizationTechnique.REDACTION

        return FieldPolicy(entity_type=None, fields=fields)

    def detect_entity_type(self, record: Dict[str, Any]) -> EntityType:
        """
        Guess the entity type from distinguishing fields.

        Child entities carry ``patient_id`` too, so their own
        markers are checked before the patient markers.
        """
        if record.get("appointment_date") or record.get("start_time"):
            return EntityType.APPOINTMENT
        if record.get("treatment_type") or record.get("procedure"):
            return EntityType.TREATMENT
        if record.get("invoice_number") or record.get("amount") is not None:
            return EntityType.INVOICE
        if record.get("consent_type") or record.get("consent_status"):
            return EntityType.CONSENT
        if record.get("medical_history") or record.get("patient_id") or record.get("date_of_birth"):
            return EntityType.PATIENT
        return EntityType.USER

    # --------------------------------------------------------
    # K-ANONYMITY
    # --------------------------------------------------------

    def anonymize_with_k_anonymity(
        self,
        records: Sequence[Dict[str, Any]],
        k: int = 3,
        quasi_identifiers: Optional[List[str]] = None,
    ) -> KAnonymityResult:
        """
        Make a record set k-anonymous over the quasi-identifiers.

        1. Members of groups smaller than k are re-generalized
           (ten-year age bands, region sentinel)
        2. Members of groups still smaller than k have their
           quasi-identifiers suppressed
        3. If the suppressed group itself is smaller than k, the
           smallest remaining groups are folded into it

        Input order is preserved; every record appears once.
        """
        if k < 1:
            raise ValueError(f"k must be at least 1, got {k}")

        qis = list(quasi_identifiers or DEFAULT_QUASI_IDENTIFIERS)
        output = [dict(r) for r in records]

        if not output:
            return KAnonymityResult(
                anonymized_records=[],
                quality_metrics=KAnonymityMetrics(k_anonymity_level=0, information_loss=0.0, data_utility=100.0),
            )

        changed: Set[int] = set()

        # Pass 1: re-generalize
        for indices in self._group_indices(output, qis).values():
            if len(indices) >= k:
                continue
            for i in indices:
                for qi in qis:
                    value = output[i].get(qi)
                    if value is not None and value != "":
                        output[i][qi] = generalize_for_k_anonymity(value, qi)
                changed.add(i)

        # Pass 2: suppress
        groups = self._group_indices(output, qis)
        small = [i for indices in groups.values() if len(indices) < k for i in indices]
        if small:
            for i in small:
                self._suppress(output[i], qis)
                changed.add(i)

            # Pass 3: absorb
            groups = self._group_indices(output, qis)
            suppressed_key = self._group_key({qi: SUPPRESSED for qi in qis}, qis)
            suppressed_size = len(groups.get(suppressed_key, []))
            remaining = sorted(
                (indices for key, indices in groups.items() if key != suppressed_key),
                key=len,
            )
            for indices in remaining:
                if suppressed_size >= k:
                    break
                for i in indices:
                    self._suppress(output[i], qis)
                    changed.add(i)
                suppressed_size += len(indices)

        final_groups = self._group_indices(output, qis)
        level = min(len(indices) for indices in final_groups.values())
        if level < k:
            logger.warning(f"k-anonymity: only {len(output)} records, cannot reach k={k}")

        information_loss = len(changed) / len(output) * 100
        metrics = KAnonymityMetrics(
            k_anonymity_level=level,
            information_loss=information_loss,
            data_utility=100 - information_loss,
        )

        logger.info(
            f"k-anonymity applied: k={k}, level={level}, "
            f"regeneralized={len(changed)}/{len(output)}"
        )
        return KAnonymityResult(anonymized_records=output, quality_metrics=metrics)

    @staticmethod
    def _group_key(record: Dict[str, Any], qis: List[str]) -> str:
        parts = []
        for qi in qis:
            value = record.get(qi)
            parts.append(UNKNOWN_GROUP_VALUE if value is None or value == "" else str(value))
        return "|".join(parts)

    def _group_indices(self, records: List[Dict[str, Any]], qis: List[str]) -> "OrderedDict[str, List[int]]":
        groups: "OrderedDict[str, List[int]]" = OrderedDict()
        for i, record in enumerate(records):
            groups.setdefault(self._group_key(record, qis), []).append(i)
        return groups

    @staticmethod
    def _suppress(record: Dict[str, Any], qis: List[str]) -> None:
        for qi in qis:
            record[qi] = SUPPRESSED

    # --------------------------------------------------------
    # DIFFERENTIAL PRIVACY
    # --------------------------------------------------------

    def apply_differential_privacy(
        self,
        value: float,
        epsilon: float = 1.0,
        sensitivity: float = 1.0,
    ) -> float:
        """
        Add Laplace noise with scale sensitivity / epsilon.

        Larger epsilon means less noise and less privacy. Meant for
        aggregate statistics, not raw records.
        """
        if epsilon <= 0:
            raise ValueError(f"epsilon must be positive, got {epsilon}")
        if sensitivity < 0:
            raise ValueError(f"sensitivity cannot be negative, got {sensitivity}")

        return value + self.laplace_noise(sensitivity / epsilon)

    def laplace_noise(self, scale: float) -> float:
        # Two independent uniforms: one picks the sign, the other an Exp(1) magnitude.
        sign = 1.0 if self._rng.random() < 0.5 else -1.0
        u = min(max(self._rng.random(), _UNIFORM_EPSILON), 1.0 - _UNIFORM_EPSILON)
        return sign * scale * -math.log(u)

    # --------------------------------------------------------
    # BATCH
    # --------------------------------------------------------

    async def batch_anonymize(
        self,
        records: Sequence[Dict[str, Any]],
        options: Optional[AnonymizationOptions] = None,
        progress_callback: Optional[ProgressCallback] = None,
        entity_type: Optional[Union[EntityType, str]] = None,
        batch_size: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> BatchResult:
        """
        Anonymize records in chunks.

        A failing record is counted and logged; the batch goes on.
        The cancel event is checked between chunks. A cancelled
        batch returns what it finished with ``stats.cancelled``.
        """
        size = batch_size or self._batch_size
        if size < 1:
            raise ValueError("batch_size must be at least 1")

        started = time.perf_counter()
        total = len(records)
        explicit_type = EntityType(entity_type) if entity_type is not None else None

        anonymized: List[Dict[str, Any]] = []
        stats = BatchStats()

        for offset in range(0, total, size):
            if cancel_event is not None and cancel_event.is_set():
                stats.cancelled = True
                logger.warning(f"Batch anonymization cancelled after {offset}/{total} records")
                break

            chunk = records[offset:offset + size]
            for position, record in enumerate(chunk, start=offset):
                try:
                    record_type = explicit_type or self.detect_entity_type(record)
                    anonymized.append(self.anonymize(record_type, record, options))
                    stats.success_count += 1
                except Exception as e:
                    stats.error_count += 1
                    logger.error(f"Failed to anonymize record {position}: {e}")

            stats.total_processed = offset + len(chunk)
            if progress_callback is not None:
                progress_callback(stats.total_processed / total * 100, stats.total_processed, total)

            await asyncio.sleep(0)

        stats.processing_time_ms = (time.perf_counter() - started) * 1000

        logger.info(
            f"Batch anonymization finished: {stats.success_count} ok, "
            f"{stats.error_count} failed, {stats.total_processed}/{total} processed"
        )
        return BatchResult(anonymized_records=anonymized, stats=stats)

    # --------------------------------------------------------
    # QUALITY
    # --------------------------------------------------------

    def get_quality_metrics(self) -> Dict[str, Any]:
        return self._quality.to_dict()

    def reset_quality_metrics(self) -> None:
        self._quality = QualityCounters()


def _note(applied: List[AnonymizationTechnique], technique: AnonymizationTechnique) -> None:
    if technique not in applied:
        applied.append(technique)


# ============================================================
# FACTORY
# ============================================================

def create_anonymization_engine(
    config: Optional[ComplianceConfig] = None,
    clock: Optional[ClockProtocol] = None,
    rng: Optional[random.Random] = None,
) -> AnonymizationEngine:
    """Create an engine from configuration (environment by default)."""
    config = config or ComplianceConfig.from_env()
    return AnonymizationEngine(
        master_key=config.master_key,
        salt=config.salt,
        salt_epoch=config.salt_epoch,
        clock=clock,
        rng=rng,
        batch_size=config.batch_size,
    )
