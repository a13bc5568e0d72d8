"""
Compliance ORM Models.

============================================================
PURPOSE
============================================================
SQLAlchemy models for the tables the compliance core owns.

- data_retention_policies / data_retention_jobs
- compliance_audit_logs / compliance_reports
- consent_records / consent_workflows / workflow_executions
  / consent_notifications
- data_subject_requests / privacy_settings

Domain tables (patients, users, appointments, ...) belong to
the host application and are reflected at runtime.

Column names match the row dicts produced by the models'
``to_row()`` methods.

============================================================
"""

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JsonType = JSON().with_variant(JSONB(), "postgresql")


def _uuid() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Declarative base for the compliance tables. All timestamps are timezone-aware."""

    type_annotation_map = {
        datetime: DateTime(timezone=True),
    }


# ============================================================
# RETENTION
# ============================================================

class RetentionPolicyRow(Base):
    """
    Retention policy definitions.

    ============================================================
    DATA LIFECYCLE
    ============================================================
    - Mutability: MUTABLE (audited updates only)
    - Retention: while referenced by jobs
    - Source: administrators

    ============================================================
    """

    __tablename__ = "data_retention_policies"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)

    name: Mapped[str] = mapped_column(String(200), nullable=False, comment="Policy display name")

    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    table_name: Mapped[str] = mapped_column(String(100), nullable=False, comment="Registered table the policy governs")

    retention_period_days: Mapped[int] = mapped_column(Integer, nullable=False, comment="Days before the action applies")

    action: Mapped[str] = mapped_column(String(20), nullable=False, comment="archive, anonymize or delete")

    conditions: Mapped[Optional[Any]] = mapped_column(JsonType, nullable=True, comment="Equality filters on the table")

    legal_basis: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    created_at: Mapped[datetime] = mapped_column(nullable=False, server_default=func.now())

    updated_at: Mapped[datetime] = mapped_column(nullable=False, server_default=func.now())

    __table_args__ = (
        Index("idx_retention_policy_active", "is_active"),
        Index("idx_retention_policy_table", "table_name"),
    )


class RetentionJobRow(Base):
    """
    One execution of a retention policy.

    ============================================================
    DATA LIFECYCLE
    ============================================================
    - Mutability: terminal status written once, then IMMUTABLE
    - Source: retention executor

    ============================================================
    """

    __tablename__ = "data_retention_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)

    policy_id: Mapped[str] = mapped_column(String(36), nullable=False, comment="Executed policy")

    status: Mapped[str] = mapped_column(String(20), nullable=False, comment="pending, running, completed, failed")

    records_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    records_affected: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    started_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    completed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    metadata_: Mapped[Optional[Any]] = mapped_column("metadata", JsonType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(nullable=False, server_default=func.now())

    __table_args__ = (
        Index("idx_retention_job_policy", "policy_id"),
        Index("idx_retention_job_created", "created_at"),
    )


# ============================================================
# AUDIT
# ============================================================

class AuditLogRow(Base):
    """
    Append-only audit trail.

    ============================================================
    DATA LIFECYCLE
    ============================================================
    - Mutability: IMMUTABLE
    - Retention: per row, ``retention_date`` (default 7 years)
    - Removal: audited expiry cleanup only

    ============================================================
    """

    __tablename__ = "compliance_audit_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)

    user_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, comment="Acting user")

    session_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    action: Mapped[str] = mapped_column(String(100), nullable=False)

    resource_type: Mapped[str] = mapped_column(String(100), nullable=False)

    resource_id: Mapped[str] = mapped_column(String(100), nullable=False)

    old_data: Mapped[Optional[Any]] = mapped_column(JsonType, nullable=True)

    new_data: Mapped[Optional[Any]] = mapped_column(JsonType, nullable=True)

    ip_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    location: Mapped[Optional[Any]] = mapped_column(JsonType, nullable=True)

    risk_level: Mapped[str] = mapped_column(String(20), nullable=False, comment="low, medium, high, critical")

    compliance_flags: Mapped[Optional[Any]] = mapped_column(JsonType, nullable=True, comment="List of flag strings")

    retention_date: Mapped[datetime] = mapped_column(nullable=False, comment="Row may be purged after this instant")

    created_at: Mapped[datetime] = mapped_column(nullable=False, server_default=func.now())

    __table_args__ = (
        Index("idx_audit_created", "created_at"),
        Index("idx_audit_resource", "resource_type", "resource_id"),
        Index("idx_audit_risk", "risk_level"),
        Index("idx_audit_retention", "retention_date"),
    )


class ComplianceReportRow(Base):
    __tablename__ = "compliance_reports"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)

    report_type: Mapped[str] = mapped_column(String(50), nullable=False)

    title: Mapped[str] = mapped_column(String(200), nullable=False)

    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    parameters: Mapped[Optional[Any]] = mapped_column(JsonType, nullable=True)

    generated_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    file_path: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    file_size: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False, comment="generating, completed, failed")

    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    expires_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    created_at: Mapped[datetime] = mapped_column(nullable=False, server_default=func.now())


# ============================================================
# CONSENT
# ============================================================

class ConsentRecordRow(Base):
    """
    Consent history. New statuses are appended, never written in place;
    the newest row of a (subject, consent type) pair is in force.
    """

    __tablename__ = "consent_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)

    user_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    patient_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    consent_type: Mapped[str] = mapped_column(String(50), nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False, comment="granted, denied, pending, withdrawn")

    granted_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    withdrawn_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    expires_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    ip_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    consent_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    version: Mapped[str] = mapped_column(String(20), nullable=False, default="1.0")

    metadata_: Mapped[Optional[Any]] = mapped_column("metadata", JsonType, nullable=True)

    anonymized_at: Mapped[Optional[datetime]] = mapped_column(nullable=True, comment="Set by retention anonymization")

    created_at: Mapped[datetime] = mapped_column(nullable=False, server_default=func.now())

    updated_at: Mapped[datetime] = mapped_column(nullable=False, server_default=func.now())

    __table_args__ = (
        Index("idx_consent_user_type", "user_id", "consent_type"),
        Index("idx_consent_patient_type", "patient_id", "consent_type"),
    )


class ConsentWorkflowRow(Base):
    __tablename__ = "consent_workflows"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)

    name: Mapped[str] = mapped_column(String(200), nullable=False)

    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    trigger: Mapped[str] = mapped_column(String(20), nullable=False, comment="expiration, renewal, withdrawal, new_user")

    status: Mapped[str] = mapped_column(String(20), nullable=False, comment="active, paused, draft")

    conditions: Mapped[Optional[Any]] = mapped_column(JsonType, nullable=True)

    actions: Mapped[Optional[Any]] = mapped_column(JsonType, nullable=True)

    schedule: Mapped[Optional[Any]] = mapped_column(JsonType, nullable=True)

    scheduled_for: Mapped[Optional[datetime]] = mapped_column(nullable=True, comment="Next run requested from the external scheduler")

    created_at: Mapped[datetime] = mapped_column(nullable=False, server_default=func.now())

    updated_at: Mapped[datetime] = mapped_column(nullable=False, server_default=func.now())


class WorkflowExecutionRow(Base):
    __tablename__ = "workflow_executions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)

    workflow_id: Mapped[str] = mapped_column(String(36), nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False)

    started_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    completed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    results: Mapped[Optional[Any]] = mapped_column(JsonType, nullable=True)

    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("idx_workflow_execution_workflow", "workflow_id"),
    )


class ConsentNotificationRow(Base):
    __tablename__ = "consent_notifications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)

    user_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    patient_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    notification_type: Mapped[str] = mapped_column("type", String(50), nullable=False)

    consent_types: Mapped[Optional[Any]] = mapped_column(JsonType, nullable=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False, comment="pending, sent, failed")

    scheduled_for: Mapped[datetime] = mapped_column(nullable=False)

    sent_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)


# ============================================================
# DATA SUBJECT RIGHTS
# ============================================================

class DataSubjectRequestRow(Base):
    """
    Data subject requests.

    ============================================================
    DATA LIFECYCLE
    ============================================================
    - Mutability: status moves forward only
    - Subject ids carry no foreign key; erasure may anonymize the subject row
    """

    __tablename__ = "data_subject_requests"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)

    request_type: Mapped[str] = mapped_column(String(20), nullable=False, comment="access, rectification, erasure, portability, restriction")

    requester_email: Mapped[str] = mapped_column(String(320), nullable=False)

    requester_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    user_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    patient_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", comment="pending, in_progress, completed, rejected")

    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    verification_token: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, unique=True)

    verified_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    processed_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    processed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    response_data: Mapped[Optional[Any]] = mapped_column(JsonType, nullable=True)

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    due_date: Mapped[Optional[datetime]] = mapped_column(nullable=True, comment="Statutory response deadline")

    created_at: Mapped[datetime] = mapped_column(nullable=False, server_default=func.now())

    updated_at: Mapped[datetime] = mapped_column(nullable=False, server_default=func.now())

    __table_args__ = (
        Index("idx_dsr_status_due", "status", "due_date"),
    )


class PrivacySettingsRow(Base):
    __tablename__ = "privacy_settings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)

    user_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, unique=True)

    patient_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, unique=True)

    data_processing_consent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    marketing_consent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    analytics_consent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    third_party_sharing_consent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    profile_visibility: Mapped[str] = mapped_column(String(20), nullable=False, default="private")

    data_export_format: Mapped[str] = mapped_column(String(10), nullable=False, default="json")

    notification_preferences: Mapped[Optional[Any]] = mapped_column(JsonType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(nullable=False, server_default=func.now())

    updated_at: Mapped[datetime] = mapped_column(nullable=False, server_default=func.now())


COMPLIANCE_TABLES = tuple(sorted(Base.metadata.tables))
