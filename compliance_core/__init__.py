"""
Compliance Core Package.

============================================================
PURPOSE
============================================================
Data compliance core of the clinical record system.

PRINCIPLES:
1. AUDITED - Every compliance-relevant mutation leaves an audit event
2. POLICY-DRIVEN - Fields and tables are handled by declared policy
3. IDEMPOTENT - Re-running a retention policy never re-processes rows
4. INJECTED - Services receive their collaborators, no singletons

============================================================
COMPONENTS
============================================================
- techniques: Redaction, masking, generalization, pseudonymization
- anonymizer: Anonymization engine (entities, k-anonymity, DP, batches)
- retention: Retention policies, executor, lifecycle report
- audit: Audit trail, statistics, compliance reports
- consent / workflows: Consent state and consent workflows
- data_subject: Data subject requests, export, erasure, privacy settings
- manager: Wires everything together

============================================================
"""

from .models import (
    # Anonymization
    AnonymizationTechnique,
    AnonymizationLevel,
    AnonymizationOptions,
    EntityType,
    KAnonymityResult,
    BatchResult,

    # Retention
    RetentionAction,
    RetentionPolicy,
    RetentionJob,
    RetentionJobResult,
    JobStatus,
    DataLifecycleReport,

    # Audit
    RiskLevel,
    ComplianceFlag,
    AuditEvent,
    ComplianceReport,
    ReportType,

    # Consent
    ConsentType,
    ConsentStatus,
    ConsentRecord,
    ConsentWorkflow,
    WorkflowExecution,

    # Data subject rights
    DataSubjectRequestType,
    DataSubjectRequestStatus,
    DataSubjectRequest,
    PrivacySettings,
)

from .exceptions import (
    ComplianceException,
    ValidationError,
    AuditWriteError,
    UnsupportedTableError,
    InvalidJobTransitionError,
    OperationCancelledError,
    WorkflowError,
    ReportNotFoundError,
    DataSubjectRequestError,
    StoreException,
)

from .config import ComplianceConfig, setup_logging
from .clock import SystemClock, MockClock
from .techniques import TechniqueLibrary
from .anonymizer import AnonymizationEngine, create_anonymization_engine
from .store import RecordFilter, RecordStore, InMemoryRecordStore
from .sql_store import SqlAlchemyRecordStore, create_sql_store
from .audit import AuditService
from .retention import RetentionService, RetentionTable, RetentionTableRegistry
from .consent import ConsentService
from .data_subject import DataSubjectService
from .notifications import EmailSender, SendGridEmailSender, LoggingEmailSender
from .workflows import ConsentWorkflowService
from .manager import ComplianceManager, create_compliance_manager


__all__ = [
    # Models
    "AnonymizationTechnique",
    "AnonymizationLevel",
    "AnonymizationOptions",
    "EntityType",
    "KAnonymityResult",
    "BatchResult",
    "RetentionAction",
    "RetentionPolicy",
    "RetentionJob",
    "RetentionJobResult",
    "JobStatus",
    "DataLifecycleReport",
    "RiskLevel",
    "ComplianceFlag",
    "AuditEvent",
    "ComplianceReport",
    "ReportType",
    "ConsentType",
    "ConsentStatus",
    "ConsentRecord",
    "ConsentWorkflow",
    "WorkflowExecution",
    "DataSubjectRequestType",
    "DataSubjectRequestStatus",
    "DataSubjectRequest",
    "PrivacySettings",

    # Exceptions
    "ComplianceException",
    "ValidationError",
    "AuditWriteError",
    "UnsupportedTableError",
    "InvalidJobTransitionError",
    "OperationCancelledError",
    "WorkflowError",
    "ReportNotFoundError",
    "DataSubjectRequestError",
    "StoreException",

    # Services
    "ComplianceConfig",
    "setup_logging",
    "SystemClock",
    "MockClock",
    "TechniqueLibrary",
    "AnonymizationEngine",
    "create_anonymization_engine",
    "RecordFilter",
    "RecordStore",
    "InMemoryRecordStore",
    "SqlAlchemyRecordStore",
    "create_sql_store",
    "AuditService",
    "RetentionService",
    "RetentionTable",
    "RetentionTableRegistry",
    "ConsentService",
    "DataSubjectService",
    "EmailSender",
    "SendGridEmailSender",
    "LoggingEmailSender",
    "ConsentWorkflowService",
    "ComplianceManager",
    "create_compliance_manager",
]
