"""
Anonymization Configuration.

============================================================
PURPOSE
============================================================
Static anonymization rules per entity type.

- One FieldPolicy per entity: field name -> technique
- Unlisted fields pass through unchanged
- Relationship keys are pseudonymized so anonymized entities
  still join on the same pseudonymized identifiers
- Level presets decide which techniques a call may use

This table is process-wide and never mutated at runtime.

============================================================
"""

import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Pattern

from .models import (
    AnonymizationLevel,
    AnonymizationOptions,
    AnonymizationTechnique,
    EntityType,
)


P = AnonymizationTechnique.PSEUDONYMIZATION
G = AnonymizationTechnique.GENERALIZATION
R = AnonymizationTechnique.REDACTION
H = AnonymizationTechnique.HASHING
M = AnonymizationTechnique.MASKING


# ============================================================
# FIELD POLICY
# ============================================================

@dataclass(frozen=True)
class FieldPolicy:
    """Field -> technique mapping for one entity type (None for ad-hoc records)."""
    entity_type: Optional[EntityType]
    fields: Mapping[str, AnonymizationTechnique]
    preserve_structure: bool = True
    preserve_relationships: bool = True

    def technique_for(self, field_name: str) -> Optional[AnonymizationTechnique]:
        return self.fields.get(field_name)


def _policy(entity_type: EntityType, fields: Dict[str, AnonymizationTechnique]) -> FieldPolicy:
    return FieldPolicy(entity_type=entity_type, fields=MappingProxyType(dict(fields)))


_AUDIT_FIELDS = {
    "created_by": P,
    "updated_by": P,
    "created_at": G,
    "updated_at": G,
}


FIELD_POLICIES: Mapping[EntityType, FieldPolicy] = MappingProxyType({
    EntityType.USER: _policy(EntityType.USER, {
        "first_name": P,
        "last_name": P,
        "phone": G,
        "avatar_url": R,
        "role": G,
        "default_clinic_id": P,
        "created_at": G,
        "updated_at": G,
    }),
    EntityType.PATIENT: _policy(EntityType.PATIENT, {
        "first_name": P,
        "last_name": P,
        "email": G,
        "phone": G,
        "date_of_birth": G,
        "gender": G,
        "address": G,
        "city": G,
        "insurance_provider": G,
        "insurance_number": H,
        "medical_history": G,
        "notes": R,
        "status": G,
        "risk_level": G,
        "clinic_id": P,
        **_AUDIT_FIELDS,
    }),
    EntityType.APPOINTMENT: _policy(EntityType.APPOINTMENT, {
        "patient_id": P,
        "dentist_id": P,
        "clinic_id": P,
        "treatment_id": P,
        "start_time": G,
        "end_time": G,
        "status": G,
        "reminder_sent": G,
        "notes": R,
        **_AUDIT_FIELDS,
    }),
    EntityType.TREATMENT: _policy(EntityType.TREATMENT, {
        "patient_id": P,
        "name": G,
        "description": G,
        "cost": G,
        "status": G,
        "start_date": G,
        "completion_date": G,
        "notes": R,
        **_AUDIT_FIELDS,
    }),
    EntityType.INVOICE: _policy(EntityType.INVOICE, {
        "patient_id": P,
        "treatment_id": P,
        "amount": G,
        "status": G,
        "due_date": G,
        "payment_method": G,
        "stripe_payment_intent_id": H,
        "notes": R,
        **_AUDIT_FIELDS,
    }),
    EntityType.CONSENT: _policy(EntityType.CONSENT, {
        "user_id": P,
        "patient_id": P,
        "consent_type": G,
        "status": G,
        "version": G,
        "granted_at": G,
        "withdrawn_at": G,
        "ip_address": H,
        "user_agent": G,
        "consent_text": R,
        "metadata": G,
        "created_at": G,
        "updated_at": G,
    }),
    EntityType.CLINIC: _policy(EntityType.CLINIC, {
        "name": G,
        "description": G,
        "type": G,
        "address": G,
        "city": G,
        "postal_code": G,
        "country": G,
        "phone": G,
        "email": G,
        "website": R,
        "license_number": H,
        "tax_id": H,
        "logo_url": R,
        "settings": G,
        "working_hours": G,
        "timezone": G,
        "owner_id": P,
        **_AUDIT_FIELDS,
    }),
})


def get_field_policy(entity_type: EntityType) -> FieldPolicy:
    return FIELD_POLICIES[entity_type]


# ============================================================
# LEVELS
# ============================================================

LEVEL_TECHNIQUES: Mapping[AnonymizationLevel, frozenset] = MappingProxyType({
    AnonymizationLevel.MINIMAL: frozenset({M, G}),
    AnonymizationLevel.STANDARD: frozenset({P, G, M}),
    AnonymizationLevel.FULL: frozenset({P, G, R, H}),
})

# Strongest first; used when a policy technique is not enabled for a call.
TECHNIQUE_FALLBACK_ORDER: List[AnonymizationTechnique] = [R, H, P, G, M]


def options_for_level(level: AnonymizationLevel) -> AnonymizationOptions:
    """Build the preset options for an anonymization level."""
    return AnonymizationOptions(
        level=level,
        preserve_format=level != AnonymizationLevel.FULL,
        preserve_length=level == AnonymizationLevel.MINIMAL,
        techniques=set(LEVEL_TECHNIQUES[level]),
    )


def default_options() -> AnonymizationOptions:
    """Default options: full level, format preserved."""
    options = options_for_level(AnonymizationLevel.FULL)
    options.preserve_format = True
    return options


# ============================================================
# FIELD CLASSIFICATION PATTERNS
# ============================================================

IDENTIFIER_PATTERNS: List[Pattern] = [
    re.compile(p, re.IGNORECASE)
    for p in (r"^id$", r"^.*_id$", r"^uuid$", r"^email$", r"^ssn$", r"^passport$")
]

QUASI_IDENTIFIER_PATTERNS: List[Pattern] = [
    re.compile(p, re.IGNORECASE)
    for p in ("age", "birth", "zip", "postal", "city", "gender", "occupation")
]

SENSITIVE_PATTERNS: List[Pattern] = [
    re.compile(p, re.IGNORECASE)
    for p in (
        "medical", "health", "diagnosis", "treatment", "medication",
        "income", "salary", "financial", "credit", "insurance",
    )
]

# Key fragments whose string values are redacted inside free-form objects.
GENERIC_SENSITIVE_KEYS = ("email", "phone", "address", "name", "ssn", "id", "token", "key", "secret")

DEFAULT_QUASI_IDENTIFIERS = ["age_range", "city", "gender"]
