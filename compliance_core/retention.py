"""
Data Retention Service.

============================================================
PURPOSE
============================================================
Retention policy store and executor.

- Policy CRUD, every mutation audited
- Cutoff = now - retention period; records created before the
  cutoff are expired
- Actions dispatched per policy: delete, anonymize, archive
- One job row per execution: pending -> running ->
  completed | failed, terminal state written once
- Lifecycle report with upcoming retentions and a compliance
  self-check

============================================================
IDEMPOTENCY
============================================================
Re-running a policy only touches records that still match
"older than cutoff, not yet processed": deleted rows are gone,
anonymized rows carry ``anonymized_at``, archived rows carry
``archived``.

Concurrent runs of the SAME policy must be serialized by the
caller. Different policies touch disjoint table scopes.

============================================================
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from .anonymizer import AnonymizationEngine
from .audit import AuditService
from .clock import ClockProtocol, SystemClock
from .config import ComplianceConfig
from .exceptions import (
    AuditWriteError,
    ComplianceException,
    InvalidJobTransitionError,
    OperationCancelledError,
    RecordNotFoundError,
    UnknownColumnError,
    UnsupportedTableError,
    ValidationError,
)
from .models import (
    ComplianceFlag,
    ComplianceStatus,
    DataLifecycleReport,
    EntityType,
    JobStatus,
    RetentionAction,
    RetentionJob,
    RetentionJobResult,
    RetentionPolicy,
    RiskLevel,
    UpcomingRetention,
    new_id,
)
from .schemas import RetentionPolicyCreate, RetentionPolicyUpdate, parse_input
from .store import RecordFilter, RecordStore


logger = logging.getLogger(__name__)


POLICIES_TABLE = "data_retention_policies"
JOBS_TABLE = "data_retention_jobs"

POLICY_AUDIT_FLAGS = [
    ComplianceFlag.DATA_RETENTION.value,
    ComplianceFlag.GDPR.value,
    ComplianceFlag.POLICY_MANAGEMENT.value,
]
EXECUTION_AUDIT_FLAGS = [
    ComplianceFlag.DATA_RETENTION.value,
    ComplianceFlag.GDPR.value,
    ComplianceFlag.AUTOMATED_PROCESSING.value,
]

HIGH_RISK_RECORD_THRESHOLD = 100
RECENT_JOBS_LIMIT = 10

# Update fields that cannot be cleared once set.
_REQUIRED_POLICY_FIELDS = ("name", "table_name", "retention_period_days", "action", "conditions", "is_active")


# ============================================================
# TABLE REGISTRY
# ============================================================

@dataclass(frozen=True)
class RetentionTable:
    """A table retention policies may govern."""
    name: str
    entity_type: Optional[EntityType] = None
    timestamp_column: str = "created_at"
    archivable: bool = True


DEFAULT_RETENTION_TABLES = (
    RetentionTable("patients", EntityType.PATIENT),
    RetentionTable("users", EntityType.USER),
    RetentionTable("appointments", EntityType.APPOINTMENT),
    RetentionTable("treatments", EntityType.TREATMENT),
    RetentionTable("invoices", EntityType.INVOICE),
    RetentionTable("consent_records", EntityType.CONSENT),
    RetentionTable("clinics", EntityType.CLINIC),
    RetentionTable("audit_logs"),
)


class RetentionTableRegistry:
    """
    Closed set of retention targets.

    Table names are resolved here once, at policy creation and
    at execution; anything unregistered is rejected.
    """

    def __init__(self, tables: Optional[Iterable[RetentionTable]] = None):
        self._tables: Dict[str, RetentionTable] = {}
        for table in (DEFAULT_RETENTION_TABLES if tables is None else tables):
            self.register(table)

    def register(self, table: RetentionTable) -> None:
        self._tables[table.name] = table

    def get(self, name: str) -> RetentionTable:
        table = self._tables.get(name)
        if table is None:
            raise UnsupportedTableError(name)
        return table

    def __contains__(self, name: str) -> bool:
        return name in self._tables

    def names(self) -> List[str]:
        return sorted(self._tables)


def anonymized_patch(
    row: Dict[str, Any],
    anonymized: Dict[str, Any],
    keep: Set[str],
    columns: Optional[Set[str]],
) -> Dict[str, Any]:
    """In-place form of an anonymized row: dropped source fields become NULL."""
    patch = {k: v for k, v in anonymized.items() if k not in keep}
    for key in row:
        if key not in anonymized and key not in keep:
            patch[key] = None

    if columns is not None:
        patch = {k: v for k, v in patch.items() if k in columns}
    return patch


# ============================================================
# SERVICE
# ============================================================

ActionHandler = Callable[
    [RetentionPolicy, RetentionTable, datetime, Optional[asyncio.Event]],
    Awaitable[Tuple[int, int]],
]


class RetentionService:
    """
    Retention policy store and executor.

    Usage:
        retention = RetentionService(store, audit, engine)
        policy_id = await retention.create_retention_policy({
            "name": "Patient records",
            "table_name": "patients",
            "retention_period_days": 2555,
            "action": "anonymize",
            "legal_basis": "HIPAA 45 CFR 164.316",
        })
        results = await retention.execute_retention_policies()
    """

    def __init__(
        self,
        store: RecordStore,
        audit: AuditService,
        engine: AnonymizationEngine,
        registry: Optional[RetentionTableRegistry] = None,
        config: Optional[ComplianceConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._store = store
        self._audit = audit
        self._engine = engine
        self._registry = registry or RetentionTableRegistry()
        self._config = config or ComplianceConfig()
        self._clock = clock or SystemClock()

        self._action_handlers: Dict[RetentionAction, ActionHandler] = {
            RetentionAction.DELETE: self._delete_expired,
            RetentionAction.ANONYMIZE: self._anonymize_expired,
            RetentionAction.ARCHIVE: self._archive_expired,
        }

    @property
    def registry(self) -> RetentionTableRegistry:
        return self._registry

    # --------------------------------------------------------
    # POLICY CRUD
    # --------------------------------------------------------

    def _check_table(self, table_name: str) -> None:
        if table_name not in self._registry:
            raise ValidationError(
                f"Table '{table_name}' is not supported for retention",
                errors=[f"table_name: unsupported table {table_name}; expected one of {self._registry.names()}"],
            )

    async def create_retention_policy(
        self,
        data: Union[RetentionPolicyCreate, Dict[str, Any]],
        created_by: Optional[str] = None,
    ) -> str:
        """
        Create a retention policy.

        Raises:
            ValidationError: non-positive period, unknown action or unsupported table
            AuditWriteError: the creation could not be audited
        """
        request = parse_input(RetentionPolicyCreate, data)
        self._check_table(request.table_name)

        now = self._clock.now()
        policy = RetentionPolicy(
            policy_id=new_id(),
            name=request.name,
            table_name=request.table_name,
            retention_period_days=request.retention_period_days,
            action=request.action,
            conditions=dict(request.conditions),
            legal_basis=request.legal_basis,
            description=request.description,
            is_active=request.is_active,
            created_by=created_by or request.created_by,
            created_at=now,
            updated_at=now,
        )
        await self._store.insert(POLICIES_TABLE, policy.to_row())

        await self._audit.log(
            "create_retention_policy",
            "data_retention_policy",
            policy.policy_id,
            user_id=policy.created_by,
            new_data=policy.to_dict(),
            compliance_flags=POLICY_AUDIT_FLAGS,
        )

        logger.info(
            f"Retention policy created: {policy.policy_id} "
            f"({policy.table_name}, {policy.retention_period_days} days, {policy.action.value})"
        )
        return policy.policy_id

    async def get_retention_policy(self, policy_id: str) -> RetentionPolicy:
        row = await self._store.get(POLICIES_TABLE, policy_id)
        if row is None:
            raise RecordNotFoundError(self._store.name, POLICIES_TABLE, policy_id)
        return RetentionPolicy.from_row(row)

    async def get_retention_policies(self, active_only: bool = False) -> List[RetentionPolicy]:
        record_filter = RecordFilter(order_by="created_at", descending=True)
        if active_only:
            record_filter.eq["is_active"] = True
        rows = await self._store.select(POLICIES_TABLE, record_filter)
        return [RetentionPolicy.from_row(r) for r in rows]

    async def update_retention_policy(
        self,
        policy_id: str,
        updates: Union[RetentionPolicyUpdate, Dict[str, Any]],
        updated_by: Optional[str] = None,
    ) -> RetentionPolicy:
        """Apply a partial update. Returns the updated policy."""
        request = parse_input(RetentionPolicyUpdate, updates)
        changes = {
            key: value
            for key, value in request.model_dump(exclude_unset=True).items()
            if not (value is None and key in _REQUIRED_POLICY_FIELDS)
        }
        if "table_name" in changes:
            self._check_table(changes["table_name"])

        current = await self.get_retention_policy(policy_id)

        patch = {
            key: (value.value if isinstance(value, RetentionAction) else value)
            for key, value in changes.items()
        }
        patch["updated_at"] = self._clock.now()
        await self._store.update(POLICIES_TABLE, RecordFilter(eq={"id": policy_id}), patch)

        updated = await self.get_retention_policy(policy_id)

        await self._audit.log(
            "update_retention_policy",
            "data_retention_policy",
            policy_id,
            user_id=updated_by,
            old_data=current.to_dict(),
            new_data={k: v for k, v in patch.items() if k != "updated_at"},
            compliance_flags=POLICY_AUDIT_FLAGS,
        )

        logger.info(f"Retention policy updated: {policy_id} ({', '.join(sorted(changes)) or 'no changes'})")
        return updated

    async def delete_retention_policy(self, policy_id: str, deleted_by: Optional[str] = None) -> bool:
        current = await self.get_retention_policy(policy_id)
        await self._store.delete(POLICIES_TABLE, RecordFilter(eq={"id": policy_id}))

        await self._audit.log(
            "delete_retention_policy",
            "data_retention_policy",
            policy_id,
            user_id=deleted_by,
            old_data=current.to_dict(),
            compliance_flags=POLICY_AUDIT_FLAGS,
        )

        logger.info(f"Retention policy deleted: {policy_id}")
        return True

    async def get_retention_jobs(
        self,
        policy_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[RetentionJob]:
        record_filter = RecordFilter(order_by="created_at", descending=True, limit=limit)
        if policy_id:
            record_filter.eq["policy_id"] = policy_id
        rows = await self._store.select(JOBS_TABLE, record_filter)
        return [RetentionJob.from_row(r) for r in rows]

    # --------------------------------------------------------
    # EXECUTION
    # --------------------------------------------------------

    async def execute_retention_policies(
        self,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> List[RetentionJobResult]:
        """
        Execute every active policy.

        Policies are isolated: a failing policy yields a failed
        result and the rest still run. Audit write failures are
        the exception and propagate.
        """
        policies = await self.get_retention_policies(active_only=True)
        results: List[RetentionJobResult] = []

        for policy in policies:
            if cancel_event is not None and cancel_event.is_set():
                logger.warning(f"Retention run cancelled, {len(policies) - len(results)} policies not started")
                break

            try:
                results.append(await self.execute_retention_policy(policy, cancel_event))
            except AuditWriteError:
                raise
            except Exception as e:
                logger.error(f"Failed to execute retention policy {policy.policy_id}: {e}", exc_info=True)
                results.append(RetentionJobResult(
                    policy_id=policy.policy_id,
                    status=JobStatus.FAILED,
                    error_message=str(e),
                ))

        completed = sum(1 for r in results if r.status == JobStatus.COMPLETED)
        logger.info(
            f"Retention policies executed: {len(policies)} active, "
            f"{completed} completed, {len(results) - completed} failed"
        )
        return results

    async def execute_retention_policy(
        self,
        policy: RetentionPolicy,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> RetentionJobResult:
        """
        Execute one policy as one job.

        Action failures end the job ``failed`` with the error
        message; the job is audited either way.
        """
        now = self._clock.now()
        cutoff = policy.cutoff_date(now)

        job = RetentionJob(job_id=new_id(), policy_id=policy.policy_id, created_at=now)
        await self._store.insert(JOBS_TABLE, job.to_row())
        await self._transition(job, JobStatus.RUNNING, started_at=now)

        logger.info(
            f"Retention job {job.job_id} started: {policy.action.value} on "
            f"{policy.table_name} before {cutoff.isoformat()}"
        )

        try:
            table = self._registry.get(policy.table_name)
            handler = self._action_handlers[policy.action]
            processed, affected = await handler(policy, table, cutoff, cancel_event)

        except OperationCancelledError as e:
            logger.warning(f"Retention job {job.job_id} cancelled: {e.message}")
            await self._transition(
                job,
                JobStatus.FAILED,
                completed_at=self._clock.now(),
                records_processed=e.completed,
                records_affected=e.completed,
                error_message=e.message,
            )

        except Exception as e:
            logger.error(f"Retention job {job.job_id} failed: {e}", exc_info=True)
            await self._transition(
                job,
                JobStatus.FAILED,
                completed_at=self._clock.now(),
                error_message=str(e) or type(e).__name__,
            )

        else:
            await self._transition(
                job,
                JobStatus.COMPLETED,
                completed_at=self._clock.now(),
                records_processed=processed,
                records_affected=affected,
            )
            logger.info(f"Retention job {job.job_id} completed: {affected}/{processed} records affected")

        await self._audit.log(
            "execute_retention_policy",
            "data_retention_job",
            job.job_id,
            new_data={
                "policy_id": policy.policy_id,
                "table_name": policy.table_name,
                "action": policy.action.value,
                "status": job.status.value,
                "records_processed": job.records_processed,
                "records_affected": job.records_affected,
                "cutoff_date": cutoff.isoformat(),
                "error_message": job.error_message,
            },
            compliance_flags=EXECUTION_AUDIT_FLAGS,
            risk_level=RiskLevel.HIGH if job.records_affected > HIGH_RISK_RECORD_THRESHOLD else RiskLevel.MEDIUM,
        )

        return RetentionJobResult.from_job(job)

    async def _transition(self, job: RetentionJob, status: JobStatus, **fields: Any) -> None:
        if not job.can_transition_to(status):
            raise InvalidJobTransitionError(job.job_id, job.status.value, status.value)

        previous = job.status
        job.status = status
        for name, value in fields.items():
            setattr(job, name, value)

        await self._store.update(
            JOBS_TABLE,
            RecordFilter(eq={"id": job.job_id, "status": previous.value}),
            {"status": status.value, **fields},
        )

    @staticmethod
    def _expired_filter(policy: RetentionPolicy, table: RetentionTable, cutoff: datetime) -> RecordFilter:
        return RecordFilter(eq=dict(policy.conditions), lt={table.timestamp_column: cutoff})

    @staticmethod
    def _check_cancelled(cancel_event: Optional[asyncio.Event], operation: str, completed: int) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelledError(operation, completed)

    # --------------------------------------------------------
    # ACTIONS
    # --------------------------------------------------------

    async def _delete_expired(self, policy, table, cutoff, cancel_event) -> Tuple[int, int]:
        self._check_cancelled(cancel_event, f"delete on {table.name}", 0)
        deleted = await self._store.delete(table.name, self._expired_filter(policy, table, cutoff))
        return deleted, deleted

    def _check_anonymizable(self, table: RetentionTable) -> Optional[Set[str]]:
        """
        In-place anonymization needs an entity policy and an
        ``anonymized_at`` marker column, which keeps re-runs from
        anonymizing a row twice.

        Returns:
            The table's known columns (None when schemaless)
        """
        if table.entity_type is None:
            raise UnsupportedTableError(table.name, RetentionAction.ANONYMIZE.value)

        columns = self._store.columns(table.name)
        if columns is not None and "anonymized_at" not in columns:
            raise UnsupportedTableError(
                table.name,
                RetentionAction.ANONYMIZE.value,
                reason="no anonymized_at column",
            )
        return columns

    async def _anonymize_expired(self, policy, table, cutoff, cancel_event) -> Tuple[int, int]:
        columns = self._check_anonymizable(table)

        record_filter = self._expired_filter(policy, table, cutoff)
        record_filter.is_null["anonymized_at"] = True
        rows = await self._store.select(table.name, record_filter)

        batch_size = self._config.batch_size
        processed = affected = 0

        for offset in range(0, len(rows), batch_size):
            self._check_cancelled(cancel_event, f"anonymize on {table.name}", processed)

            for row in rows[offset:offset + batch_size]:
                anonymized = self._engine.anonymize(table.entity_type, row)
                patch = anonymized_patch(row, anonymized, {"id", table.timestamp_column}, columns)
                patch["anonymized_at"] = self._clock.now()

                affected += await self._store.update(
                    table.name,
                    RecordFilter(eq={"id": row["id"]}, is_null={"anonymized_at": True}),
                    patch,
                )
                processed += 1

            await asyncio.sleep(0)

        return processed, affected

    async def _archive_expired(self, policy, table, cutoff, cancel_event) -> Tuple[int, int]:
        if not table.archivable:
            logger.info(f"Table {table.name} is not archivable, nothing to do")
            return 0, 0

        columns = self._store.columns(table.name)
        if columns is not None and not {"archived", "archived_at"} <= columns:
            logger.info(f"Table {table.name} has no archival columns, nothing to do")
            return 0, 0

        self._check_cancelled(cancel_event, f"archive on {table.name}", 0)

        record_filter = self._expired_filter(policy, table, cutoff)
        record_filter.not_true.append("archived")
        try:
            archived = await self._store.update(
                table.name,
                record_filter,
                {"archived": True, "archived_at": self._clock.now()},
            )
        except UnknownColumnError:
            logger.info(f"Table {table.name} has no archival columns, nothing to do")
            return 0, 0

        return archived, archived

    # --------------------------------------------------------
    # LIFECYCLE REPORT
    # --------------------------------------------------------

    async def get_data_lifecycle_report(self) -> DataLifecycleReport:
        policies = await self.get_retention_policies()
        active = [p for p in policies if p.is_active]

        return DataLifecycleReport(
            total_policies=len(policies),
            active_policies=len(active),
            recent_jobs=await self.get_retention_jobs(limit=RECENT_JOBS_LIMIT),
            upcoming_retentions=await self.calculate_upcoming_retentions(active),
            compliance_status=self.check_compliance(policies),
            generated_at=self._clock.now(),
        )

    async def calculate_upcoming_retentions(self, policies: List[RetentionPolicy]) -> List[UpcomingRetention]:
        """
        Records each policy will act on within the lookahead window.

        Overdue records (already past the cutoff) are included.
        A policy whose table cannot be counted, or whose action the
        table does not support, is skipped.
        """
        now = self._clock.now()
        lookahead = timedelta(days=self._config.retention_lookahead_days)
        upcoming: List[UpcomingRetention] = []

        for policy in policies:
            try:
                table = self._registry.get(policy.table_name)
                record_filter = self._expired_filter(policy, table, policy.cutoff_date(now) + lookahead)

                columns = self._store.columns(table.name)
                if policy.action == RetentionAction.ANONYMIZE:
                    self._check_anonymizable(table)
                    record_filter.is_null["anonymized_at"] = True
                if policy.action == RetentionAction.ARCHIVE and (columns is None or "archived" in columns):
                    record_filter.not_true.append("archived")

                count = await self._store.count(table.name, record_filter)
            except ComplianceException as e:
                logger.warning(f"Cannot forecast retention for policy {policy.policy_id}: {e.message}")
                continue

            if count > 0:
                upcoming.append(UpcomingRetention(
                    policy_id=policy.policy_id,
                    table_name=policy.table_name,
                    record_count=count,
                    retention_date=now + lookahead,
                    action=policy.action,
                ))

        return upcoming

    def check_compliance(self, policies: List[RetentionPolicy]) -> ComplianceStatus:
        """Required tables covered, no period above the legal maximum, HIPAA basis present."""
        issues: List[str] = []

        covered = {p.table_name for p in policies}
        for table_name in self._config.required_tables:
            if table_name not in covered:
                issues.append(f"Missing retention policy for {table_name} table")

        too_long = [p.name for p in policies if p.retention_period_days > self._config.max_retention_days]
        if too_long:
            issues.append(
                f"Policies exceed the maximum retention of {self._config.max_retention_days} days: "
                f"{', '.join(sorted(too_long))}"
            )

        return ComplianceStatus(
            gdpr_compliant=not issues,
            hipaa_compliant=any("HIPAA" in (p.legal_basis or "") for p in policies),
            issues=issues,
        )
