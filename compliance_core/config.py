"""
Compliance Core - Configuration.

============================================================
RESPONSIBILITY
============================================================
Loads compliance configuration from the environment and sets
up process logging.

- Values come from environment variables (.env supported)
- Defaults are never mutated at runtime
- validate() reports problems instead of raising

============================================================
"""

import json
import logging
import os
import sys
from dataclasses import dataclass, field
from typing import List, Optional, TextIO

from dotenv import load_dotenv


load_dotenv()


DEFAULT_REQUIRED_TABLES = ["patients", "users", "audit_logs"]


# ============================================================
# CONFIGURATION
# ============================================================

@dataclass
class ComplianceConfig:
    """Configuration for the compliance core."""

    # Pseudonymization
    master_key: str = ""
    """Key material for pseudonymization tokens."""

    salt: Optional[str] = None
    """Persisted pseudonymization salt. None means a fresh salt per engine."""

    salt_epoch: Optional[str] = None
    """Label of the persisted salt, stamped into anonymization metadata."""

    # Persistence
    database_url: Optional[str] = None
    """SQLAlchemy URL. None selects the in-memory store."""

    # Audit
    audit_retention_years: int = 7
    """Retention period assigned to every audit event."""

    report_expiry_days: int = 30

    # Retention
    max_retention_days: int = 2555
    """Legal maximum retention period (7 years)."""

    retention_lookahead_days: int = 30
    """Window for upcoming retention forecasts."""

    required_tables: List[str] = field(default_factory=lambda: list(DEFAULT_REQUIRED_TABLES))

    # Data subject rights
    data_subject_response_days: int = 30
    """Deadline for answering a data subject request (GDPR Art. 12(3))."""

    # Anonymization
    batch_size: int = 100

    # Email
    sendgrid_api_key: Optional[str] = None
    email_from: str = "privacy@localhost"
    privacy_center_url: str = "http://localhost/privacy-center"

    # Logging
    log_level: str = "INFO"
    log_format: str = "text"

    @classmethod
    def from_env(cls) -> "ComplianceConfig":
        """Load configuration from environment variables."""
        required = os.getenv("REQUIRED_RETENTION_TABLES")
        return cls(
            master_key=os.getenv("COMPLIANCE_MASTER_KEY", ""),
            salt=os.getenv("COMPLIANCE_SALT") or None,
            salt_epoch=os.getenv("COMPLIANCE_SALT_EPOCH") or None,
            database_url=os.getenv("DATABASE_URL") or None,
            audit_retention_years=int(os.getenv("AUDIT_RETENTION_YEARS", "7")),
            report_expiry_days=int(os.getenv("REPORT_EXPIRY_DAYS", "30")),
            max_retention_days=int(os.getenv("MAX_RETENTION_DAYS", "2555")),
            retention_lookahead_days=int(os.getenv("RETENTION_LOOKAHEAD_DAYS", "30")),
            required_tables=(
                [t.strip() for t in required.split(",") if t.strip()]
                if required else list(DEFAULT_REQUIRED_TABLES)
            ),
            data_subject_response_days=int(os.getenv("DATA_SUBJECT_RESPONSE_DAYS", "30")),
            batch_size=int(os.getenv("ANONYMIZATION_BATCH_SIZE", "100")),
            sendgrid_api_key=os.getenv("SENDGRID_API_KEY") or None,
            email_from=os.getenv("EMAIL_FROM", "privacy@localhost"),
            privacy_center_url=os.getenv("PRIVACY_CENTER_URL", "http://localhost/privacy-center"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "text"),
        )

    def validate(self) -> List[str]:
        """Validate configuration, return list of errors."""
        errors = []

        if not self.master_key:
            errors.append("master_key is required (COMPLIANCE_MASTER_KEY)")

        if self.salt_epoch and not self.salt:
            errors.append("salt_epoch set without a persisted salt")

        if self.audit_retention_years < 1:
            errors.append("audit_retention_years must be at least 1")

        if self.max_retention_days < 1:
            errors.append("max_retention_days must be at least 1")

        if self.retention_lookahead_days < 0:
            errors.append("retention_lookahead_days cannot be negative")

        if self.data_subject_response_days < 1:
            errors.append("data_subject_response_days must be at least 1")

        if self.batch_size < 1:
            errors.append("batch_size must be at least 1")

        if self.log_format not in ("json", "text"):
            errors.append(f"log_format must be json or text, got {self.log_format}")

        return errors


# ============================================================
# LOGGING
# ============================================================

def setup_logging(
    level: str = "INFO",
    log_format: str = "text",
    stream: Optional[TextIO] = None,
) -> logging.Logger:
    """
    Set up process logging.

    Args:
        level: Log level
        log_format: Output format (json or text)
        stream: Output stream (default: stdout)

    Returns:
        The compliance_core logger
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    if log_format == "json":
        formatter = logging.Formatter(
            json.dumps({
                "timestamp": "%(asctime)s",
                "level": "%(levelname)s",
                "logger": "%(name)s",
                "message": "%(message)s",
            })
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
        )

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [handler]

    return logging.getLogger("compliance_core")
