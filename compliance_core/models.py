"""
Compliance Core Models.

============================================================
PURPOSE
============================================================
Core data models for the clinical data compliance layer.

This module defines:
1. Anonymization techniques, levels and per-call options
2. Retention policies and retention jobs
3. Audit events, search results and compliance reports
4. Consent records, preferences and consent workflows
5. Data subject requests and privacy settings

Every persisted model maps to one store row through
``to_row()`` / ``from_row()``. ``to_dict()`` is the plain
structured form handed to external collaborators.

============================================================
"""

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set


# ============================================================
# HELPERS
# ============================================================

def utc_now() -> datetime:
    """Current UTC time, timezone-aware."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Generate a new record identifier."""
    return str(uuid.uuid4())


def parse_datetime(value: Any) -> Optional[datetime]:
    """
    Coerce a stored value into an aware UTC datetime.

    Accepts datetimes, dates and ISO 8601 strings (including a
    trailing ``Z``). Returns None for anything unparseable.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# ============================================================
# ANONYMIZATION
# ============================================================

class AnonymizationTechnique(Enum):
    """Field-level anonymization techniques."""
    REDACTION = "redaction"
    PSEUDONYMIZATION = "pseudonymization"
    GENERALIZATION = "generalization"
    HASHING = "hashing"
    MASKING = "masking"


class AnonymizationLevel(Enum):
    """Anonymization strength presets."""
    MINIMAL = "minimal"
    STANDARD = "standard"
    FULL = "full"


class EntityType(Enum):
    """Entity variants the anonymization engine knows how to process."""
    USER = "user"
    PATIENT = "patient"
    APPOINTMENT = "appointment"
    TREATMENT = "treatment"
    INVOICE = "invoice"
    CONSENT = "consent"
    CLINIC = "clinic"


@dataclass
class AnonymizationOptions:
    """
    Per-call anonymization options.

    ``techniques`` restricts which techniques may be applied;
    ``custom_rules`` overrides the static field policy for
    individual fields.
    """
    level: AnonymizationLevel = AnonymizationLevel.FULL
    preserve_format: bool = True
    preserve_length: bool = False
    techniques: Set[AnonymizationTechnique] = field(default_factory=set)
    custom_rules: Dict[str, AnonymizationTechnique] = field(default_factory=dict)

    def allows(self, technique: AnonymizationTechnique) -> bool:
        """Empty technique set means every technique is allowed."""
        return not self.techniques or technique in self.techniques

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level.value,
            "preserve_format": self.preserve_format,
            "preserve_length": self.preserve_length,
            "techniques": sorted(t.value for t in self.techniques),
            "custom_rules": {k: v.value for k, v in self.custom_rules.items()},
        }


@dataclass
class AnonymizationMetadata:
    """Metadata attached to every anonymized record."""
    data_type: str
    anonymized_at: datetime
    techniques_applied: List[AnonymizationTechnique] = field(default_factory=list)
    version: str = "1.0"
    salt_epoch: str = "ephemeral"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "data_type": self.data_type,
            "anonymized_at": self.anonymized_at.isoformat(),
            "techniques_applied": [t.value for t in self.techniques_applied],
            "anonymization_version": self.version,
            "salt_epoch": self.salt_epoch,
        }


@dataclass
class FieldClassification:
    """Four-way partition of a record's field names."""
    identifiers: List[str] = field(default_factory=list)
    quasi_identifiers: List[str] = field(default_factory=list)
    sensitive_attributes: List[str] = field(default_factory=list)
    non_sensitive: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identifiers": list(self.identifiers),
            "quasi_identifiers": list(self.quasi_identifiers),
            "sensitive_attributes": list(self.sensitive_attributes),
            "non_sensitive": list(self.non_sensitive),
        }


@dataclass
class KAnonymityMetrics:
    """Quality metrics of a k-anonymity pass."""
    k_anonymity_level: int
    information_loss: float
    data_utility: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "k_anonymity_level": self.k_anonymity_level,
            "information_loss": round(self.information_loss, 4),
            "data_utility": round(self.data_utility, 4),
        }


@dataclass
class KAnonymityResult:
    anonymized_records: List[Dict[str, Any]]
    quality_metrics: KAnonymityMetrics


@dataclass
class BatchStats:
    """Statistics of a batch anonymization run."""
    total_processed: int = 0
    success_count: int = 0
    error_count: int = 0
    processing_time_ms: float = 0.0
    cancelled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_processed": self.total_processed,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "processing_time_ms": round(self.processing_time_ms, 3),
            "cancelled": self.cancelled,
        }


@dataclass
class BatchResult:
    anonymized_records: List[Dict[str, Any]]
    stats: BatchStats


# ============================================================
# RETENTION
# ============================================================

class RetentionAction(Enum):
    """What happens to a record once its retention period ends."""
    ARCHIVE = "archive"
    ANONYMIZE = "anonymize"
    DELETE = "delete"


class JobStatus(Enum):
    """
    Status of a retention job or workflow execution.

    pending -> running -> completed | failed
    Terminal states are final.
    """
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


ALLOWED_JOB_TRANSITIONS: Dict[JobStatus, Set[JobStatus]] = {
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.FAILED},
    JobStatus.RUNNING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


@dataclass
class RetentionPolicy:
    """
    Retention policy for one table.

    Created by an administrator; mutated only through explicit,
    audited update calls.
    """
    policy_id: str
    name: str
    table_name: str
    retention_period_days: int
    action: RetentionAction = RetentionAction.ARCHIVE
    conditions: Dict[str, Any] = field(default_factory=dict)
    legal_basis: Optional[str] = None
    description: Optional[str] = None
    is_active: bool = True
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def cutoff_date(self, now: datetime) -> datetime:
        """Records created before this instant are expired."""
        return now - timedelta(days=self.retention_period_days)

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.policy_id,
            "name": self.name,
            "description": self.description,
            "table_name": self.table_name,
            "retention_period_days": self.retention_period_days,
            "action": self.action.value,
            "conditions": dict(self.conditions),
            "legal_basis": self.legal_basis,
            "is_active": self.is_active,
            "created_by": self.created_by,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def to_dict(self) -> Dict[str, Any]:
        row = self.to_row()
        row["created_at"] = _iso(self.created_at)
        row["updated_at"] = _iso(self.updated_at)
        return row

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "RetentionPolicy":
        return cls(
            policy_id=str(row["id"]),
            name=row["name"],
            table_name=row["table_name"],
            retention_period_days=int(row["retention_period_days"]),
            action=RetentionAction(row.get("action") or "archive"),
            conditions=dict(row.get("conditions") or {}),
            legal_basis=row.get("legal_basis"),
            description=row.get("description"),
            is_active=bool(row.get("is_active", True)),
            created_by=row.get("created_by"),
            created_at=parse_datetime(row.get("created_at")) or utc_now(),
            updated_at=parse_datetime(row.get("updated_at")) or utc_now(),
        )


@dataclass
class RetentionJob:
    """
    One execution of a retention policy.

    The terminal state is set exactly once.
    """
    job_id: str
    policy_id: str
    status: JobStatus = JobStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    records_processed: int = 0
    records_affected: int = 0
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)

    def can_transition_to(self, status: JobStatus) -> bool:
        return status in ALLOWED_JOB_TRANSITIONS[self.status]

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.job_id,
            "policy_id": self.policy_id,
            "status": self.status.value,
            "records_processed": self.records_processed,
            "records_affected": self.records_affected,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "error_message": self.error_message,
            "metadata": dict(self.metadata),
            "created_at": self.created_at,
        }

    def to_dict(self) -> Dict[str, Any]:
        row = self.to_row()
        row["started_at"] = _iso(self.started_at)
        row["completed_at"] = _iso(self.completed_at)
        row["created_at"] = _iso(self.created_at)
        return row

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "RetentionJob":
        return cls(
            job_id=str(row["id"]),
            policy_id=str(row["policy_id"]),
            status=JobStatus(row.get("status") or "pending"),
            started_at=parse_datetime(row.get("started_at")),
            completed_at=parse_datetime(row.get("completed_at")),
            records_processed=int(row.get("records_processed") or 0),
            records_affected=int(row.get("records_affected") or 0),
            error_message=row.get("error_message"),
            metadata=dict(row.get("metadata") or {}),
            created_at=parse_datetime(row.get("created_at")) or utc_now(),
        )


@dataclass
class RetentionJobResult:
    """Outcome of executing one policy, also produced when no job row exists."""
    policy_id: str
    status: JobStatus
    job_id: Optional[str] = None
    records_processed: int = 0
    records_affected: int = 0
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "policy_id": self.policy_id,
            "status": self.status.value,
            "records_processed": self.records_processed,
            "records_affected": self.records_affected,
            "error_message": self.error_message,
        }

    @classmethod
    def from_job(cls, job: RetentionJob) -> "RetentionJobResult":
        return cls(
            policy_id=job.policy_id,
            status=job.status,
            job_id=job.job_id,
            records_processed=job.records_processed,
            records_affected=job.records_affected,
            error_message=job.error_message,
        )


@dataclass
class UpcomingRetention:
    """Records that will hit their retention action inside the lookahead window."""
    policy_id: str
    table_name: str
    record_count: int
    retention_date: datetime
    action: RetentionAction

    def to_dict(self) -> Dict[str, Any]:
        return {
            "policy_id": self.policy_id,
            "table_name": self.table_name,
            "record_count": self.record_count,
            "retention_date": self.retention_date.isoformat(),
            "action": self.action.value,
        }


@dataclass
class ComplianceStatus:
    gdpr_compliant: bool
    hipaa_compliant: bool
    issues: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "gdpr_compliant": self.gdpr_compliant,
            "hipaa_compliant": self.hipaa_compliant,
            "issues": list(self.issues),
        }


@dataclass
class DataLifecycleReport:
    total_policies: int
    active_policies: int
    recent_jobs: List[RetentionJob]
    upcoming_retentions: List[UpcomingRetention]
    compliance_status: ComplianceStatus
    generated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_policies": self.total_policies,
            "active_policies": self.active_policies,
            "recent_jobs": [j.to_dict() for j in self.recent_jobs],
            "upcoming_retentions": [u.to_dict() for u in self.upcoming_retentions],
            "compliance_status": self.compliance_status.to_dict(),
            "generated_at": self.generated_at.isoformat(),
        }


# ============================================================
# AUDIT
# ============================================================

class RiskLevel(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ComplianceFlag(Enum):
    """Well-known compliance flags. Callers may attach others as plain strings."""
    GDPR = "gdpr"
    HIPAA = "hipaa"
    AUDIT_TRAIL = "audit_trail"
    DATA_PROTECTION = "data_protection"
    DATA_RETENTION = "data_retention"
    POLICY_MANAGEMENT = "policy_management"
    AUTOMATED_PROCESSING = "automated_processing"
    CONSENT_MANAGEMENT = "consent_management"
    HOUSEKEEPING = "housekeeping"


@dataclass
class AuditEvent:
    """
    One immutable audit trail entry.

    Append-only. Removed only by the audited expiry cleanup.
    """
    event_id: str
    action: str
    resource_type: str
    resource_id: str
    risk_level: RiskLevel
    compliance_flags: List[str]
    created_at: datetime
    retention_date: datetime
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    old_data: Optional[Dict[str, Any]] = None
    new_data: Optional[Dict[str, Any]] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    location: Optional[Dict[str, Any]] = None

    @property
    def is_high_risk(self) -> bool:
        return self.risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL)

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.event_id,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "action": self.action,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "old_data": self.old_data,
            "new_data": self.new_data,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "location": self.location,
            "risk_level": self.risk_level.value,
            "compliance_flags": list(self.compliance_flags),
            "retention_date": self.retention_date,
            "created_at": self.created_at,
        }

    def to_dict(self) -> Dict[str, Any]:
        row = self.to_row()
        row["retention_date"] = _iso(self.retention_date)
        row["created_at"] = _iso(self.created_at)
        return row

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "AuditEvent":
        return cls(
            event_id=str(row["id"]),
            action=row["action"],
            resource_type=row["resource_type"],
            resource_id=str(row["resource_id"]),
            risk_level=RiskLevel(row.get("risk_level") or "low"),
            compliance_flags=list(row.get("compliance_flags") or []),
            created_at=parse_datetime(row.get("created_at")) or utc_now(),
            retention_date=parse_datetime(row.get("retention_date")) or utc_now(),
            user_id=row.get("user_id"),
            session_id=row.get("session_id"),
            old_data=row.get("old_data"),
            new_data=row.get("new_data"),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            location=row.get("location"),
        )


@dataclass
class AuditSearchResult:
    logs: List[AuditEvent]
    total_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "logs": [e.to_dict() for e in self.logs],
            "total_count": self.total_count,
        }


@dataclass
class AuditStatistics:
    total_events: int = 0
    events_by_action: Dict[str, int] = field(default_factory=dict)
    events_by_resource_type: Dict[str, int] = field(default_factory=dict)
    events_by_risk_level: Dict[str, int] = field(default_factory=dict)
    compliance_flags: Dict[str, int] = field(default_factory=dict)
    recent_activity: List[AuditEvent] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_events": self.total_events,
            "events_by_action": dict(self.events_by_action),
            "events_by_resource_type": dict(self.events_by_resource_type),
            "events_by_risk_level": dict(self.events_by_risk_level),
            "compliance_flags": dict(self.compliance_flags),
            "recent_activity": [e.to_dict() for e in self.recent_activity],
        }


class ReportStatus(Enum):
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


class ReportType(Enum):
    AUDIT_SUMMARY = "audit_summary"
    GDPR_COMPLIANCE = "gdpr_compliance"
    DATA_ACCESS_LOG = "data_access_log"


@dataclass
class ComplianceReport:
    """Compliance report record; its payload is assembled asynchronously."""
    report_id: str
    report_type: str
    title: str
    status: ReportStatus = ReportStatus.GENERATING
    description: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict)
    generated_by: Optional[str] = None
    file_path: Optional[str] = None
    file_size: Optional[int] = None
    error_message: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.report_id,
            "report_type": self.report_type,
            "title": self.title,
            "description": self.description,
            "parameters": dict(self.parameters),
            "generated_by": self.generated_by,
            "file_path": self.file_path,
            "file_size": self.file_size,
            "status": self.status.value,
            "error_message": self.error_message,
            "expires_at": self.expires_at,
            "created_at": self.created_at,
        }

    def to_dict(self) -> Dict[str, Any]:
        row = self.to_row()
        row["expires_at"] = _iso(self.expires_at)
        row["created_at"] = _iso(self.created_at)
        return row

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ComplianceReport":
        return cls(
            report_id=str(row["id"]),
            report_type=row["report_type"],
            title=row["title"],
            status=ReportStatus(row.get("status") or "generating"),
            description=row.get("description"),
            parameters=dict(row.get("parameters") or {}),
            generated_by=row.get("generated_by"),
            file_path=row.get("file_path"),
            file_size=row.get("file_size"),
            error_message=row.get("error_message"),
            expires_at=parse_datetime(row.get("expires_at")),
            created_at=parse_datetime(row.get("created_at")) or utc_now(),
        )


# ============================================================
# CONSENT
# ============================================================

class ConsentType(Enum):
    COOKIES = "cookies"
    ANALYTICS = "analytics"
    MARKETING = "marketing"
    DATA_PROCESSING = "data_processing"
    THIRD_PARTY_SHARING = "third_party_sharing"

    @property
    def label(self) -> str:
        return self.value.replace("_", " ")


class ConsentStatus(Enum):
    GRANTED = "granted"
    DENIED = "denied"
    PENDING = "pending"
    WITHDRAWN = "withdrawn"


@dataclass
class ConsentRecord:
    """
    One consent row.

    New statuses are appended as new rows so the history of a
    (subject, consent type) pair is reconstructible.
    """
    consent_id: str
    consent_type: ConsentType
    status: ConsentStatus
    user_id: Optional[str] = None
    patient_id: Optional[str] = None
    version: str = "1.0"
    granted_at: Optional[datetime] = None
    withdrawn_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    consent_text: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def subject_ref(self) -> str:
        if self.user_id:
            return f"user:{self.user_id}"
        return f"patient:{self.patient_id}"

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.consent_id,
            "user_id": self.user_id,
            "patient_id": self.patient_id,
            "consent_type": self.consent_type.value,
            "status": self.status.value,
            "granted_at": self.granted_at,
            "withdrawn_at": self.withdrawn_at,
            "expires_at": self.expires_at,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "consent_text": self.consent_text,
            "version": self.version,
            "metadata": dict(self.metadata),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def to_dict(self) -> Dict[str, Any]:
        row = self.to_row()
        for key in ("granted_at", "withdrawn_at", "expires_at", "created_at", "updated_at"):
            row[key] = _iso(row[key])
        return row

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ConsentRecord":
        return cls(
            consent_id=str(row["id"]),
            consent_type=ConsentType(row["consent_type"]),
            status=ConsentStatus(row.get("status") or "pending"),
            user_id=row.get("user_id"),
            patient_id=row.get("patient_id"),
            version=row.get("version") or "1.0",
            granted_at=parse_datetime(row.get("granted_at")),
            withdrawn_at=parse_datetime(row.get("withdrawn_at")),
            expires_at=parse_datetime(row.get("expires_at")),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            consent_text=row.get("consent_text"),
            metadata=dict(row.get("metadata") or {}),
            created_at=parse_datetime(row.get("created_at")) or utc_now(),
            updated_at=parse_datetime(row.get("updated_at")) or utc_now(),
        )


@dataclass
class ConsentPreferences:
    cookies: bool = False
    analytics: bool = False
    marketing: bool = False
    data_processing: bool = False
    third_party_sharing: bool = False

    def get(self, consent_type: ConsentType) -> bool:
        return getattr(self, consent_type.value)

    def set(self, consent_type: ConsentType, granted: bool) -> None:
        setattr(self, consent_type.value, granted)

    def to_dict(self) -> Dict[str, bool]:
        return {t.value: self.get(t) for t in ConsentType}


# ============================================================
# CONSENT WORKFLOWS
# ============================================================

class WorkflowTrigger(Enum):
    EXPIRATION = "expiration"
    RENEWAL = "renewal"
    WITHDRAWAL = "withdrawal"
    NEW_USER = "new_user"


class WorkflowStatus(Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    DRAFT = "draft"


class NotificationType(Enum):
    EXPIRATION_REMINDER = "expiration_reminder"
    RENEWAL_REQUEST = "renewal_request"
    WITHDRAWAL_CONFIRMATION = "withdrawal_confirmation"


class NotificationStatus(Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


@dataclass
class ConsentWorkflow:
    """A time-triggered consent workflow definition."""
    workflow_id: str
    name: str
    trigger: WorkflowTrigger
    status: WorkflowStatus = WorkflowStatus.DRAFT
    description: str = ""
    consent_types: List[ConsentType] = field(default_factory=list)
    days_before_expiration: int = 30
    user_segments: List[str] = field(default_factory=list)
    send_email: bool = True
    send_notification: bool = False
    frequency: str = "daily"
    run_at: str = "09:00"
    scheduled_for: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.workflow_id,
            "name": self.name,
            "description": self.description,
            "trigger": self.trigger.value,
            "status": self.status.value,
            "conditions": {
                "days_before_expiration": self.days_before_expiration,
                "consent_types": [t.value for t in self.consent_types],
                "user_segments": list(self.user_segments),
            },
            "actions": {
                "send_email": self.send_email,
                "send_notification": self.send_notification,
            },
            "schedule": {"frequency": self.frequency, "time": self.run_at},
            "scheduled_for": self.scheduled_for,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def to_dict(self) -> Dict[str, Any]:
        row = self.to_row()
        row["scheduled_for"] = _iso(self.scheduled_for)
        row["created_at"] = _iso(self.created_at)
        row["updated_at"] = _iso(self.updated_at)
        return row

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ConsentWorkflow":
        conditions = row.get("conditions") or {}
        actions = row.get("actions") or {}
        schedule = row.get("schedule") or {}
        return cls(
            workflow_id=str(row["id"]),
            name=row["name"],
            trigger=WorkflowTrigger(row["trigger"]),
            status=WorkflowStatus(row.get("status") or "draft"),
            description=row.get("description") or "",
            consent_types=[ConsentType(t) for t in conditions.get("consent_types", [])],
            days_before_expiration=int(conditions.get("days_before_expiration", 30)),
            user_segments=list(conditions.get("user_segments") or []),
            send_email=bool(actions.get("send_email", True)),
            send_notification=bool(actions.get("send_notification", False)),
            frequency=schedule.get("frequency", "daily"),
            run_at=schedule.get("time", "09:00"),
            scheduled_for=parse_datetime(row.get("scheduled_for")),
            created_at=parse_datetime(row.get("created_at")) or utc_now(),
            updated_at=parse_datetime(row.get("updated_at")) or utc_now(),
        )


@dataclass
class WorkflowResults:
    processed: int = 0
    successful: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "successful": self.successful,
            "failed": self.failed,
            "errors": list(self.errors),
        }


@dataclass
class WorkflowExecution:
    execution_id: str
    workflow_id: str
    status: JobStatus = JobStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    results: WorkflowResults = field(default_factory=WorkflowResults)
    error_message: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.execution_id,
            "workflow_id": self.workflow_id,
            "status": self.status.value,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "results": self.results.to_dict(),
            "error_message": self.error_message,
        }

    def to_dict(self) -> Dict[str, Any]:
        row = self.to_row()
        row["started_at"] = _iso(self.started_at)
        row["completed_at"] = _iso(self.completed_at)
        return row

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "WorkflowExecution":
        results = row.get("results") or {}
        return cls(
            execution_id=str(row["id"]),
            workflow_id=str(row["workflow_id"]),
            status=JobStatus(row.get("status") or "pending"),
            started_at=parse_datetime(row.get("started_at")),
            completed_at=parse_datetime(row.get("completed_at")),
            results=WorkflowResults(
                processed=int(results.get("processed", 0)),
                successful=int(results.get("successful", 0)),
                failed=int(results.get("failed", 0)),
                errors=list(results.get("errors") or []),
            ),
            error_message=row.get("error_message"),
        )


@dataclass
class ConsentNotification:
    notification_id: str
    notification_type: NotificationType
    consent_types: List[ConsentType]
    user_id: Optional[str] = None
    patient_id: Optional[str] = None
    status: NotificationStatus = NotificationStatus.PENDING
    scheduled_for: datetime = field(default_factory=utc_now)
    sent_at: Optional[datetime] = None

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.notification_id,
            "user_id": self.user_id,
            "patient_id": self.patient_id,
            "type": self.notification_type.value,
            "consent_types": [t.value for t in self.consent_types],
            "status": self.status.value,
            "scheduled_for": self.scheduled_for,
            "sent_at": self.sent_at,
        }

    def to_dict(self) -> Dict[str, Any]:
        row = self.to_row()
        row["scheduled_for"] = _iso(self.scheduled_for)
        row["sent_at"] = _iso(self.sent_at)
        return row

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ConsentNotification":
        return cls(
            notification_id=str(row["id"]),
            notification_type=NotificationType(row["type"]),
            consent_types=[ConsentType(t) for t in row.get("consent_types") or []],
            user_id=row.get("user_id"),
            patient_id=row.get("patient_id"),
            status=NotificationStatus(row.get("status") or "pending"),
            scheduled_for=parse_datetime(row.get("scheduled_for")) or utc_now(),
            sent_at=parse_datetime(row.get("sent_at")),
        )


# ============================================================
# DATA SUBJECT RIGHTS
# ============================================================

class DataSubjectRequestType(Enum):
    ACCESS = "access"
    RECTIFICATION = "rectification"
    ERASURE = "erasure"
    PORTABILITY = "portability"
    RESTRICTION = "restriction"


class DataSubjectRequestStatus(Enum):
    """
    Status of a data subject request.

    pending -> in_progress (identity verified) -> completed | rejected
    A pending request may also be rejected outright.
    """
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    REJECTED = "rejected"


ALLOWED_REQUEST_TRANSITIONS: Dict[DataSubjectRequestStatus, Set[DataSubjectRequestStatus]] = {
    DataSubjectRequestStatus.PENDING: {DataSubjectRequestStatus.IN_PROGRESS, DataSubjectRequestStatus.REJECTED},
    DataSubjectRequestStatus.IN_PROGRESS: {DataSubjectRequestStatus.COMPLETED, DataSubjectRequestStatus.REJECTED},
    DataSubjectRequestStatus.COMPLETED: set(),
    DataSubjectRequestStatus.REJECTED: set(),
}


@dataclass
class DataSubjectRequest:
    """An access, erasure, rectification, portability or restriction request."""
    request_id: str
    request_type: DataSubjectRequestType
    requester_email: str
    status: DataSubjectRequestStatus = DataSubjectRequestStatus.PENDING
    requester_name: Optional[str] = None
    user_id: Optional[str] = None
    patient_id: Optional[str] = None
    description: Optional[str] = None
    verification_token: Optional[str] = None
    verified_at: Optional[datetime] = None
    processed_by: Optional[str] = None
    processed_at: Optional[datetime] = None
    response_data: Optional[Dict[str, Any]] = None
    notes: Optional[str] = None
    due_date: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def can_transition_to(self, status: DataSubjectRequestStatus) -> bool:
        return status in ALLOWED_REQUEST_TRANSITIONS[self.status]

    def is_overdue(self, now: datetime) -> bool:
        if self.status in (DataSubjectRequestStatus.COMPLETED, DataSubjectRequestStatus.REJECTED):
            return False
        return self.due_date is not None and self.due_date < now

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.request_id,
            "request_type": self.request_type.value,
            "requester_email": self.requester_email,
            "requester_name": self.requester_name,
            "user_id": self.user_id,
            "patient_id": self.patient_id,
            "status": self.status.value,
            "description": self.description,
            "verification_token": self.verification_token,
            "verified_at": self.verified_at,
            "processed_by": self.processed_by,
            "processed_at": self.processed_at,
            "response_data": self.response_data,
            "notes": self.notes,
            "due_date": self.due_date,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def to_dict(self) -> Dict[str, Any]:
        row = self.to_row()
        # the token is a bearer secret
        del row["verification_token"]
        for key in ("verified_at", "processed_at", "due_date", "created_at", "updated_at"):
            row[key] = _iso(row[key])
        return row

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "DataSubjectRequest":
        return cls(
            request_id=str(row["id"]),
            request_type=DataSubjectRequestType(row["request_type"]),
            requester_email=row["requester_email"],
            status=DataSubjectRequestStatus(row.get("status") or "pending"),
            requester_name=row.get("requester_name"),
            user_id=row.get("user_id"),
            patient_id=row.get("patient_id"),
            description=row.get("description"),
            verification_token=row.get("verification_token"),
            verified_at=parse_datetime(row.get("verified_at")),
            processed_by=row.get("processed_by"),
            processed_at=parse_datetime(row.get("processed_at")),
            response_data=row.get("response_data"),
            notes=row.get("notes"),
            due_date=parse_datetime(row.get("due_date")),
            created_at=parse_datetime(row.get("created_at")) or utc_now(),
            updated_at=parse_datetime(row.get("updated_at")) or utc_now(),
        )


@dataclass
class PrivacySettings:
    """Per-subject privacy settings. Exactly one of user_id or patient_id is set."""
    settings_id: str
    user_id: Optional[str] = None
    patient_id: Optional[str] = None
    data_processing_consent: bool = False
    marketing_consent: bool = False
    analytics_consent: bool = False
    third_party_sharing_consent: bool = False
    profile_visibility: str = "private"
    data_export_format: str = "json"
    notification_preferences: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.settings_id,
            "user_id": self.user_id,
            "patient_id": self.patient_id,
            "data_processing_consent": self.data_processing_consent,
            "marketing_consent": self.marketing_consent,
            "analytics_consent": self.analytics_consent,
            "third_party_sharing_consent": self.third_party_sharing_consent,
            "profile_visibility": self.profile_visibility,
            "data_export_format": self.data_export_format,
            "notification_preferences": dict(self.notification_preferences),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def to_dict(self) -> Dict[str, Any]:
        row = self.to_row()
        row["created_at"] = _iso(self.created_at)
        row["updated_at"] = _iso(self.updated_at)
        return row

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PrivacySettings":
        return cls(
            settings_id=str(row["id"]),
            user_id=row.get("user_id"),
            patient_id=row.get("patient_id"),
            data_processing_consent=bool(row.get("data_processing_consent")),
            marketing_consent=bool(row.get("marketing_consent")),
            analytics_consent=bool(row.get("analytics_consent")),
            third_party_sharing_consent=bool(row.get("third_party_sharing_consent")),
            profile_visibility=row.get("profile_visibility") or "private",
            data_export_format=row.get("data_export_format") or "json",
            notification_preferences=dict(row.get("notification_preferences") or {}),
            created_at=parse_datetime(row.get("created_at")) or utc_now(),
            updated_at=parse_datetime(row.get("updated_at")) or utc_now(),
        )
