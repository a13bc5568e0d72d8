"""
Compliance Core - Exceptions.

============================================================
RESPONSIBILITY
============================================================
Defines the exception hierarchy of the compliance core.

- Transform errors never surface: they are resolved by
  sentinel substitution inside the technique library
- Validation errors reject bad input before anything runs
- Audit write errors are fatal and always propagate
- Store errors wrap backend failures with context

============================================================
EXCEPTION HIERARCHY
============================================================
ComplianceException (base)
├── ValidationError
├── AuditWriteError
├── UnsupportedTableError
├── InvalidJobTransitionError
├── OperationCancelledError
├── WorkflowError
├── ReportNotFoundError
├── DataSubjectRequestError
└── StoreException
    ├── RecordNotFoundError
    ├── QueryError
    ├── StoreConnectionError
    ├── TransactionError
    └── UnknownColumnError

============================================================
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class Severity(Enum):
    """Exception severity levels."""

    LOW = "low"
    """Minor issue, informational."""

    MEDIUM = "medium"
    """Moderate issue, requires attention."""

    HIGH = "high"
    """Serious issue, compliance posture may be affected."""

    CRITICAL = "critical"
    """A compliance obligation was not met."""


# ============================================================
# BASE EXCEPTION
# ============================================================

class ComplianceException(Exception):
    """
    Base exception for all compliance core errors.

    All exceptions carry:
    - severity: for alerting
    - context: for debugging
    - recoverable: for error handling decisions
    - timestamp: when the error occurred
    """

    default_severity: Severity = Severity.MEDIUM
    default_recoverable: bool = True

    def __init__(
        self,
        message: str,
        severity: Optional[Severity] = None,
        context: Optional[Dict[str, Any]] = None,
        recoverable: Optional[bool] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message)

        self.message = message
        self.severity = severity or self.default_severity
        self.context = context or {}
        self.recoverable = recoverable if recoverable is not None else self.default_recoverable
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

        if cause:
            self.context["cause_type"] = type(cause).__name__
            self.context["cause_message"] = str(cause)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for logging/storage."""
        return {
            "type": type(self).__name__,
            "message": self.message,
            "severity": self.severity.value,
            "recoverable": self.recoverable,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "cause": str(self.cause) if self.cause else None,
        }


# ============================================================
# DOMAIN ERRORS
# ============================================================

class ValidationError(ComplianceException):
    """Invalid policy, consent or workflow definition. Raised before anything is scheduled."""

    default_severity = Severity.LOW

    def __init__(self, message: str, errors: Optional[List[str]] = None, **kwargs):
        self.errors = errors or [message]
        context = kwargs.pop("context", None) or {}
        context["errors"] = self.errors
        super().__init__(message, context=context, **kwargs)


class AuditWriteError(ComplianceException):
    """
    Writing to the audit trail failed.

    An unaudited compliance mutation is itself a violation, so
    this error is never swallowed.
    """

    default_severity = Severity.CRITICAL
    default_recoverable = False


class UnsupportedTableError(ComplianceException):
    """The table is not registered for the requested retention action."""

    default_severity = Severity.HIGH

    def __init__(self, table_name: str, action: Optional[str] = None, reason: Optional[str] = None):
        detail = f" for action '{action}'" if action else ""
        if reason:
            detail += f": {reason}"
        super().__init__(
            f"Table '{table_name}' is not supported{detail}",
            context={"table_name": table_name, "action": action, "reason": reason},
        )
        self.table_name = table_name
        self.action = action


class InvalidJobTransitionError(ComplianceException):
    """A job was moved along an edge its state machine does not allow."""

    default_severity = Severity.HIGH
    default_recoverable = False

    def __init__(self, job_id: str, current: str, requested: str):
        super().__init__(
            f"Job {job_id} cannot transition from {current} to {requested}",
            context={"job_id": job_id, "current": current, "requested": requested},
        )


class OperationCancelledError(ComplianceException):
    """A cancellation signal was observed between chunks."""

    default_severity = Severity.LOW

    def __init__(self, operation: str, completed: int = 0):
        super().__init__(
            f"{operation} cancelled after {completed} records",
            context={"operation": operation, "completed": completed},
        )
        self.completed = completed


class WorkflowError(ComplianceException):
    """A consent workflow could not be executed."""


class ReportNotFoundError(ComplianceException):
    def __init__(self, report_id: str):
        super().__init__(f"Compliance report {report_id} not found", context={"report_id": report_id})
        self.report_id = report_id


class DataSubjectRequestError(ComplianceException):
    """A data subject request was moved along a disallowed edge or cannot be fulfilled automatically."""

    def __init__(self, request_id: str, message: str, status: Optional[str] = None):
        super().__init__(
            f"Data subject request {request_id}: {message}",
            context={"request_id": request_id, "status": status},
        )
        self.request_id = request_id


# ============================================================
# STORE ERRORS
# ============================================================

class StoreException(ComplianceException):
    """
    Base exception for all store operations.

    Backends catch their native errors and re-raise as one of
    these with the table and operation attached.
    """

    default_severity = Severity.HIGH

    def __init__(
        self,
        message: str,
        store_name: str,
        operation: str,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ) -> None:
        self.store_name = store_name
        self.operation = operation
        self.details = details or {}
        super().__init__(
            f"[{store_name}] {operation}: {message}",
            context=dict(self.details),
            cause=cause,
        )


class RecordNotFoundError(StoreException):
    def __init__(self, store_name: str, table: str, record_id: Any) -> None:
        super().__init__(
            message=f"Record with id={record_id} not found in {table}",
            store_name=store_name,
            operation="get",
            details={"table": table, "id": str(record_id)},
        )
        self.record_id = record_id


class QueryError(StoreException):
    def __init__(self, store_name: str, operation: str, table: str, original_error: str, cause=None) -> None:
        super().__init__(
            message=f"Query on {table} failed: {original_error}",
            store_name=store_name,
            operation=operation,
            details={"table": table, "original_error": original_error},
            cause=cause,
        )


class StoreConnectionError(StoreException):
    default_recoverable = True

    def __init__(self, store_name: str, operation: str, original_error: str, cause=None) -> None:
        super().__init__(
            message=f"Store connection failed: {original_error}",
            store_name=store_name,
            operation=operation,
            details={"original_error": original_error},
            cause=cause,
        )


class TransactionError(StoreException):
    def __init__(self, store_name: str, phase: str, original_error: str, cause=None) -> None:
        super().__init__(
            message=f"Transaction {phase} failed: {original_error}",
            store_name=store_name,
            operation=phase,
            details={"phase": phase, "original_error": original_error},
            cause=cause,
        )
        self.phase = phase


class UnknownColumnError(StoreException):
    """The patch or filter names columns the table does not have."""

    default_severity = Severity.MEDIUM

    def __init__(self, store_name: str, table: str, columns: List[str]) -> None:
        super().__init__(
            message=f"Unknown columns on {table}: {', '.join(sorted(columns))}",
            store_name=store_name,
            operation="validate_columns",
            details={"table": table, "columns": sorted(columns)},
        )
        self.table = table
        self.columns = columns
