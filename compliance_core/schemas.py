"""
Pydantic Schemas for Compliance Service Inputs.

Inputs arriving from outside (CLI, HTTP wrappers, schedulers) are
validated here before any job, row or event is created.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from .exceptions import ValidationError
from .models import (
    ConsentStatus,
    ConsentType,
    DataSubjectRequestType,
    RetentionAction,
    RiskLevel,
    WorkflowStatus,
    WorkflowTrigger,
)


M = TypeVar("M", bound=BaseModel)


# =============================================================
# RETENTION
# =============================================================

class RetentionPolicyCreate(BaseModel):
    """New retention policy."""
    name: str = Field(min_length=1, max_length=200)
    table_name: str = Field(min_length=1, max_length=100)
    retention_period_days: int = Field(gt=0)
    action: RetentionAction = RetentionAction.ARCHIVE
    conditions: Dict[str, Any] = Field(default_factory=dict)
    legal_basis: Optional[str] = None
    description: Optional[str] = None
    is_active: bool = True
    created_by: Optional[str] = None


class RetentionPolicyUpdate(BaseModel):
    """Partial policy update. Only fields that are set are applied."""
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    table_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    retention_period_days: Optional[int] = Field(default=None, gt=0)
    action: Optional[RetentionAction] = None
    conditions: Optional[Dict[str, Any]] = None
    legal_basis: Optional[str] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None


# =============================================================
# AUDIT
# =============================================================

class AuditEventInput(BaseModel):
    """An event to append to the audit trail. Risk level is derived when omitted."""
    action: str = Field(min_length=1, max_length=100)
    resource_type: str = Field(min_length=1, max_length=100)
    resource_id: str = Field(min_length=1, max_length=100)
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    old_data: Optional[Dict[str, Any]] = None
    new_data: Optional[Dict[str, Any]] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    location: Optional[Dict[str, Any]] = None
    risk_level: Optional[RiskLevel] = None
    compliance_flags: List[str] = Field(default_factory=list)


class AuditSearchFilters(BaseModel):
    """Audit log search filters with offset/limit pagination."""
    user_id: Optional[str] = None
    action: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    risk_level: Optional[RiskLevel] = None
    ip_address: Optional[str] = None
    compliance_flags: List[str] = Field(default_factory=list)
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    offset: int = Field(default=0, ge=0)
    limit: int = Field(default=50, ge=1, le=1000)

    @model_validator(mode="after")
    def check_date_range(self) -> "AuditSearchFilters":
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValueError("date_from must not be after date_to")
        return self


class ComplianceReportRequest(BaseModel):
    report_type: str = Field(min_length=1)
    title: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)
    generated_by: Optional[str] = None


# =============================================================
# CONSENT
# =============================================================

class ConsentRequest(BaseModel):
    """One consent decision for exactly one subject (user or patient)."""
    consent_type: ConsentType
    status: ConsentStatus
    user_id: Optional[str] = None
    patient_id: Optional[str] = None
    version: str = "1.0"
    expires_at: Optional[datetime] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    consent_text: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_subject(self) -> "ConsentRequest":
        if bool(self.user_id) == bool(self.patient_id):
            raise ValueError("exactly one of user_id or patient_id is required")
        return self


class WorkflowCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    trigger: WorkflowTrigger
    description: str = ""
    status: WorkflowStatus = WorkflowStatus.DRAFT
    consent_types: List[ConsentType] = Field(default_factory=list)
    days_before_expiration: int = Field(default=30, ge=0)
    user_segments: List[str] = Field(default_factory=list)
    send_email: bool = True
    send_notification: bool = False
    frequency: Literal["daily", "weekly", "monthly"] = "daily"
    run_at: str = Field(default="09:00", pattern=r"^([01]\d|2[0-3]):[0-5]\d$")


# =============================================================
# DATA SUBJECT RIGHTS
# =============================================================

class DataSubjectRequestCreate(BaseModel):
    """A request from a data subject. The subject ids are optional for anonymous requesters."""
    request_type: DataSubjectRequestType
    requester_email: str = Field(min_length=3, max_length=320, pattern=r"^[^@\s]+@[^@\s]+$")
    requester_name: Optional[str] = Field(default=None, max_length=200)
    user_id: Optional[str] = None
    patient_id: Optional[str] = None
    description: Optional[str] = None

    @model_validator(mode="after")
    def check_subject(self) -> "DataSubjectRequestCreate":
        if self.user_id and self.patient_id:
            raise ValueError("at most one of user_id or patient_id may be given")
        return self


class PrivacySettingsUpdate(BaseModel):
    """Partial privacy settings update. Unknown fields are rejected."""
    model_config = ConfigDict(extra="forbid")

    data_processing_consent: Optional[bool] = None
    marketing_consent: Optional[bool] = None
    analytics_consent: Optional[bool] = None
    third_party_sharing_consent: Optional[bool] = None
    profile_visibility: Optional[Literal["private", "public"]] = None
    data_export_format: Optional[Literal["json", "csv", "xml"]] = None
    notification_preferences: Optional[Dict[str, Any]] = None


# =============================================================
# VALIDATION ENTRY POINT
# =============================================================

def parse_input(schema: Type[M], data: Union[M, Dict[str, Any]]) -> M:
    """
    Validate raw input against a schema.

    Raises:
        ValidationError: listing every failing field
    """
    if isinstance(data, schema):
        return data

    try:
        return schema.model_validate(data)
    except PydanticValidationError as e:
        errors = [
            f"{'.'.join(str(part) for part in err['loc']) or 'input'}: {err['msg']}"
            for err in e.errors()
        ]
        raise ValidationError(f"Invalid {schema.__name__}: {'; '.join(errors)}", errors=errors) from e
