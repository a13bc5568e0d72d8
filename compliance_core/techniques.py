"""
Anonymization Technique Library.

============================================================
PURPOSE
============================================================
Field-level anonymization transforms.

Techniques:
- Redaction: constant sentinel, all information removed
- Pseudonymization: deterministic keyed token, joins preserved
- Hashing: one-way digest, equality comparable
- Masking: format-preserving partial obfuscation
- Generalization: field-aware coarsening into ranges/buckets

Malformed input never raises: every generalization rule falls
back to a named sentinel so that a record is never abandoned
half-way through anonymization.

============================================================
"""

import hashlib
import hmac
import logging
import math
import re
import secrets
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from .models import AnonymizationTechnique, parse_datetime


logger = logging.getLogger(__name__)


# ============================================================
# SENTINELS
# ============================================================

REDACTED = "[REDACTED]"
MASKED = "[MASKED]"
GENERALIZED = "[GENERALIZED]"
GENERALIZED_EMAIL = "[GENERALIZED_EMAIL]"
GENERALIZED_PHONE = "[GENERALIZED_PHONE]"
GENERALIZED_ADDRESS = "[GENERALIZED_ADDRESS]"
GENERALIZED_CITY = "[GENERALIZED_CITY]"
GENERALIZED_AGE = "[GENERALIZED_AGE]"
GENERALIZED_COST = "[GENERALIZED_COST]"
GENERALIZED_DATE = "[GENERALIZED_DATE]"
GENERALIZED_REGION = "[GENERALIZED_REGION]"
SUPPRESSED = "[SUPPRESSED]"

PSEUDONYM_PREFIX = "PSEUDO_"
HASH_PREFIX = "HASH_"

AGE_BRACKETS = ("0-17", "18-29", "30-49", "50-69", "70+")
COST_BUCKETS = ("$0-99", "$100-499", "$500-999", "$1000-1999", "$2000+")
K_ANONYMITY_AGE_BANDS = ("18-24", "25-34", "35-44", "45-54", "55-64", "65+")

_NON_DIGITS = re.compile(r"\D")
_LEADING_INT = re.compile(r"^\s*(\d+)")


# ============================================================
# STATELESS TECHNIQUES
# ============================================================

def redact(value: Any) -> str:
    return REDACTED


def mask(value: Any) -> str:
    """
    Mask a value preserving its length.

    Strings of five or more characters keep their first and last
    two characters; shorter strings are fully masked.
    """
    if not isinstance(value, str):
        return MASKED

    if len(value) <= 4:
        return "*" * len(value)

    return value[:2] + "*" * (len(value) - 4) + value[-2:]


def generalize(value: Any, field_name: str) -> str:
    """Generalize a value based on the field it came from."""
    name = field_name.lower()

    if "email" in name:
        return generalize_email(value)
    if "phone" in name:
        return generalize_phone(value)
    if "address" in name:
        return GENERALIZED_ADDRESS
    if "city" in name:
        return GENERALIZED_CITY
    if "birth" in name:
        return generalize_age(value)
    if name.endswith(("_at", "_date", "_time")):
        return generalize_timestamp(value)

    return GENERALIZED


def generalize_email(value: Any) -> str:
    """Keep only the domain of an email address."""
    if not isinstance(value, str) or "@" not in value:
        return GENERALIZED_EMAIL

    domain = value.rsplit("@", 1)[1].strip()
    if not domain:
        return GENERALIZED_EMAIL
    return f"user@{domain}"


def generalize_phone(value: Any) -> str:
    """Keep only the area code of a phone number."""
    if value is None:
        return GENERALIZED_PHONE

    digits = _NON_DIGITS.sub("", str(value))
    if len(digits) >= 3:
        return f"({digits[:3]}) XXX-XXXX"
    return GENERALIZED_PHONE


def _to_date(value: Any) -> Optional[date]:
    if isinstance(value, date) and not isinstance(value, datetime):
        return value

    parsed = parse_datetime(value)
    if parsed is None:
        return None
    return parsed.astimezone(timezone.utc).date()


def calculate_age(birth: date, today: date) -> int:
    """Age in whole years, accounting for a birthday not yet reached this year."""
    age = today.year - birth.year
    if (today.month, today.day) < (birth.month, birth.day):
        age -= 1
    return age


def generalize_age(date_of_birth: Any, today: Optional[date] = None) -> str:
    """Map a date of birth to an age bracket."""
    birth = _to_date(date_of_birth)
    if birth is None:
        return GENERALIZED_AGE

    today = today or datetime.now(timezone.utc).date()
    age = calculate_age(birth, today)
    if age < 0:
        return GENERALIZED_AGE

    if age < 18:
        return "0-17"
    if age < 30:
        return "18-29"
    if age < 50:
        return "30-49"
    if age < 70:
        return "50-69"
    return "70+"


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None

    if isinstance(value, (int, float, Decimal)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(Decimal(value.strip()))
        except (InvalidOperation, ValueError):
            return None
    else:
        return None

    if math.isnan(number) or math.isinf(number):
        return None
    return number


def generalize_cost(value: Any) -> str:
    """Map a monetary amount to a cost bucket."""
    cost = _to_number(value)
    if cost is None:
        return GENERALIZED_COST

    if cost < 100:
        return "$0-99"
    if cost < 500:
        return "$100-499"
    if cost < 1000:
        return "$500-999"
    if cost < 2000:
        return "$1000-1999"
    return "$2000+"


def generalize_timestamp(value: Any) -> str:
    """Reduce a timestamp to its UTC calendar date."""
    day = _to_date(value)
    if day is None:
        return GENERALIZED_DATE
    return day.isoformat()


def generalize_for_k_anonymity(value: Any, field_name: str) -> Any:
    """
    Coarser generalization used for groups below k.

    Adult ages widen to ten-year bands while minors stay in their
    own band. Cities collapse to a region sentinel; gender is kept
    as-is.
    """
    name = field_name.lower()

    if "age" in name:
        match = _LEADING_INT.match(str(value))
        if not match:
            return GENERALIZED
        age = int(match.group(1))
        if age < 18:
            return "0-17"
        if age < 25:
            return "18-24"
        if age < 35:
            return "25-34"
        if age < 45:
            return "35-44"
        if age < 55:
            return "45-54"
        if age < 65:
            return "55-64"
        return "65+"

    if "city" in name:
        return GENERALIZED_REGION

    if "gender" in name:
        return value

    return GENERALIZED


# ============================================================
# KEYED TECHNIQUES
# ============================================================

class TechniqueLibrary:
    """
    Applies anonymization techniques to single values.

    Pseudonymization and hashing depend on the salt held here:
    the same (value, field, salt) always yields the same token,
    so records anonymized independently with one library still
    join on their pseudonymized keys.
    """

    def __init__(self, master_key: str, salt: Optional[str] = None):
        self._master_key = master_key
        self._salt = salt or secrets.token_hex(32)

    @property
    def salt(self) -> str:
        return self._salt

    def rotate_salt(self, new_salt: Optional[str] = None) -> None:
        """Replace the salt. Tokens issued before rotation no longer match."""
        self._salt = new_salt or secrets.token_hex(32)

    def field_salt(self, field_name: str) -> str:
        return hashlib.sha256((field_name + self._salt).encode("utf-8")).hexdigest()[:16]

    def pseudonymize(self, value: Any, field_name: str) -> str:
        key = (self._master_key + self.field_salt(field_name)).encode("utf-8")
        digest = hmac.new(key, str(value).encode("utf-8"), hashlib.sha256).hexdigest()
        return f"{PSEUDONYM_PREFIX}{digest[:12]}"

    def hash(self, value: Any) -> str:
        digest = hashlib.sha256((str(value) + self._salt).encode("utf-8")).hexdigest()
        return f"{HASH_PREFIX}{digest[:16]}"

    def apply(
        self,
        value: Any,
        technique: AnonymizationTechnique,
        field_name: str,
    ) -> Any:
        """Apply one technique to one value. None passes through."""
        if value is None:
            return None

        if technique == AnonymizationTechnique.REDACTION:
            return redact(value)
        if technique == AnonymizationTechnique.PSEUDONYMIZATION:
            return self.pseudonymize(value, field_name)
        if technique == AnonymizationTechnique.GENERALIZATION:
            return generalize(value, field_name)
        if technique == AnonymizationTechnique.HASHING:
            return self.hash(value)
        if technique == AnonymizationTechnique.MASKING:
            return mask(value)

        logger.warning(f"Unknown anonymization technique {technique}, redacting {field_name}")
        return REDACTED
