"""
Consent Workflow Scheduler.

============================================================
PURPOSE
============================================================
Time-triggered consent workflows.

TRIGGERS:
- expiration: granted consents expiring within the window
- renewal: active users asked to renew their consents
- new_user: active users created in the last day with no
  consent history yet
- withdrawal: consents withdrawn in the last day

ACTIONS:
- send_email through the email collaborator
- send_notification as a pending consent_notifications row

Every execution is recorded in workflow_executions
(running -> completed | failed). Scheduling is a timestamp on
the workflow; an external scheduler polls get_due_workflows.

============================================================
"""

import calendar
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from .clock import ClockProtocol, SystemClock
from .config import ComplianceConfig
from .consent import CONSENT_TABLE, ConsentService
from .exceptions import RecordNotFoundError, ValidationError, WorkflowError
from .models import (
    ConsentNotification,
    ConsentRecord,
    ConsentStatus,
    ConsentType,
    ConsentWorkflow,
    JobStatus,
    NotificationType,
    WorkflowExecution,
    WorkflowResults,
    WorkflowStatus,
    WorkflowTrigger,
    new_id,
)
from .notifications import PrivacyEmailFormatter, EmailMessage, EmailSender
from .schemas import WorkflowCreate, parse_input
from .store import RecordFilter, RecordStore


logger = logging.getLogger(__name__)


WORKFLOWS_TABLE = "consent_workflows"
EXECUTIONS_TABLE = "workflow_executions"
NOTIFICATIONS_TABLE = "consent_notifications"
USERS_TABLE = "users"
PATIENTS_TABLE = "patients"

RECENT_WINDOW = timedelta(days=1)


def next_run_time(frequency: str, run_at: str, after: datetime) -> datetime:
    """
    First ``run_at`` wall-clock time strictly after ``after`` for
    the given frequency (daily, weekly, monthly).
    """
    hour, minute = (int(part) for part in run_at.split(":"))
    candidate = after.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate > after:
        return candidate

    if frequency == "daily":
        return candidate + timedelta(days=1)
    if frequency == "weekly":
        return candidate + timedelta(days=7)
    if frequency == "monthly":
        year = candidate.year + candidate.month // 12
        month = candidate.month % 12 + 1
        day = min(candidate.day, calendar.monthrange(year, month)[1])
        return candidate.replace(year=year, month=month, day=day)

    raise ValidationError(f"Unknown workflow frequency: {frequency}")


class ConsentWorkflowService:
    """
    Creates, schedules and executes consent workflows.

    Usage:
        workflows = ConsentWorkflowService(store, consent, email_sender, config)
        workflow_id = await workflows.create_workflow({
            "name": "Expiry reminders",
            "trigger": "expiration",
            "status": "active",
            "consent_types": ["marketing"],
        })
        execution = await workflows.execute_workflow(workflow_id)
    """

    def __init__(
        self,
        store: RecordStore,
        consent: ConsentService,
        email_sender: EmailSender,
        config: Optional[ComplianceConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._store = store
        self._consent = consent
        self._email = email_sender
        self._config = config or ComplianceConfig()
        self._clock = clock or SystemClock()
        self._formatter = PrivacyEmailFormatter(self._config.privacy_center_url)

        self._trigger_handlers: Dict[WorkflowTrigger, Callable[[ConsentWorkflow], Awaitable[WorkflowResults]]] = {
            WorkflowTrigger.EXPIRATION: self._run_expiration,
            WorkflowTrigger.RENEWAL: self._run_renewal,
            WorkflowTrigger.NEW_USER: self._run_new_user,
            WorkflowTrigger.WITHDRAWAL: self._run_withdrawal,
        }

    # --------------------------------------------------------
    # DEFINITIONS
    # --------------------------------------------------------

    async def create_workflow(self, data: Union[WorkflowCreate, Dict[str, Any]]) -> str:
        request = parse_input(WorkflowCreate, data)
        now = self._clock.now()

        workflow = ConsentWorkflow(
            workflow_id=new_id(),
            name=request.name,
            trigger=request.trigger,
            status=request.status,
            description=request.description,
            consent_types=list(request.consent_types),
            days_before_expiration=request.days_before_expiration,
            user_segments=list(request.user_segments),
            send_email=request.send_email,
            send_notification=request.send_notification,
            frequency=request.frequency,
            run_at=request.run_at,
            created_at=now,
            updated_at=now,
        )
        await self._store.insert(WORKFLOWS_TABLE, workflow.to_row())

        logger.info(f"Consent workflow created: {workflow.workflow_id} ({workflow.name}, trigger={workflow.trigger.value})")
        return workflow.workflow_id

    async def get_workflows(self, status: Optional[WorkflowStatus] = None) -> List[ConsentWorkflow]:
        record_filter = RecordFilter(order_by="created_at", descending=True)
        if status is not None:
            record_filter.eq["status"] = WorkflowStatus(status).value
        rows = await self._store.select(WORKFLOWS_TABLE, record_filter)
        return [ConsentWorkflow.from_row(r) for r in rows]

    async def get_workflow(self, workflow_id: str) -> ConsentWorkflow:
        row = await self._store.get(WORKFLOWS_TABLE, workflow_id)
        if row is None:
            raise RecordNotFoundError(self._store.name, WORKFLOWS_TABLE, workflow_id)
        return ConsentWorkflow.from_row(row)

    async def update_workflow_status(self, workflow_id: str, status: WorkflowStatus) -> None:
        status = WorkflowStatus(status)
        affected = await self._store.update(
            WORKFLOWS_TABLE,
            RecordFilter(eq={"id": workflow_id}),
            {"status": status.value, "updated_at": self._clock.now()},
        )
        if not affected:
            raise RecordNotFoundError(self._store.name, WORKFLOWS_TABLE, workflow_id)

        logger.info(f"Workflow status updated: {workflow_id} -> {status.value}")

    # --------------------------------------------------------
    # SCHEDULING
    # --------------------------------------------------------

    async def schedule_workflow(self, workflow_id: str, scheduled_for: datetime) -> None:
        """Record when the workflow should next run."""
        affected = await self._store.update(
            WORKFLOWS_TABLE,
            RecordFilter(eq={"id": workflow_id}),
            {"scheduled_for": scheduled_for, "updated_at": self._clock.now()},
        )
        if not affected:
            raise RecordNotFoundError(self._store.name, WORKFLOWS_TABLE, workflow_id)

        logger.info(f"Workflow scheduled: {workflow_id} at {scheduled_for.isoformat()}")

    async def get_due_workflows(self, now: Optional[datetime] = None) -> List[ConsentWorkflow]:
        """Active workflows whose scheduled time has passed."""
        now = now or self._clock.now()
        rows = await self._store.select(WORKFLOWS_TABLE, RecordFilter(
            eq={"status": WorkflowStatus.ACTIVE.value},
            lte={"scheduled_for": now},
            order_by="scheduled_for",
        ))
        return [ConsentWorkflow.from_row(r) for r in rows]

    async def run_due_workflows(self, now: Optional[datetime] = None) -> List[WorkflowExecution]:
        """
        Execute every due workflow once and schedule its next run
        from its frequency and time of day.
        """
        now = now or self._clock.now()
        executions = []

        for workflow in await self.get_due_workflows(now):
            executions.append(await self.execute_workflow(workflow.workflow_id))
            await self.schedule_workflow(
                workflow.workflow_id,
                next_run_time(workflow.frequency, workflow.run_at, now),
            )

        return executions

    # --------------------------------------------------------
    # EXECUTION
    # --------------------------------------------------------

    async def execute_workflow(self, workflow_id: str) -> WorkflowExecution:
        """
        Run one workflow.

        Raises:
            WorkflowError: the workflow does not exist or is not active

        Failures inside the run are recorded on the returned
        execution (status failed) rather than raised.
        """
        try:
            workflow = await self.get_workflow(workflow_id)
        except RecordNotFoundError as e:
            raise WorkflowError(f"Workflow {workflow_id} not found", context={"workflow_id": workflow_id}, cause=e) from e

        if workflow.status != WorkflowStatus.ACTIVE:
            raise WorkflowError(
                f"Workflow {workflow_id} is not active (status={workflow.status.value})",
                context={"workflow_id": workflow_id, "status": workflow.status.value},
            )

        execution = WorkflowExecution(
            execution_id=new_id(),
            workflow_id=workflow_id,
            status=JobStatus.RUNNING,
            started_at=self._clock.now(),
        )
        await self._store.insert(EXECUTIONS_TABLE, execution.to_row())

        logger.info(
            f"Starting workflow execution {execution.execution_id} "
            f"(workflow={workflow_id}, trigger={workflow.trigger.value})"
        )

        try:
            execution.results = await self._trigger_handlers[workflow.trigger](workflow)
            execution.status = JobStatus.COMPLETED
        except Exception as e:
            logger.error(f"Workflow execution {execution.execution_id} failed: {e}", exc_info=True)
            execution.status = JobStatus.FAILED
            execution.error_message = str(e)

        execution.completed_at = self._clock.now()
        row = execution.to_row()
        await self._store.update(
            EXECUTIONS_TABLE,
            RecordFilter(eq={"id": execution.execution_id}),
            {k: row[k] for k in ("status", "completed_at", "results", "error_message")},
        )

        results = execution.results
        logger.info(
            f"Workflow execution {execution.execution_id} {execution.status.value}: "
            f"processed={results.processed} successful={results.successful} failed={results.failed}"
        )
        return execution

    async def get_workflow_executions(self, workflow_id: Optional[str] = None) -> List[WorkflowExecution]:
        record_filter = RecordFilter(order_by="started_at", descending=True)
        if workflow_id:
            record_filter.eq["workflow_id"] = workflow_id
        rows = await self._store.select(EXECUTIONS_TABLE, record_filter)
        return [WorkflowExecution.from_row(r) for r in rows]

    async def get_notifications(
        self,
        user_id: Optional[str] = None,
        patient_id: Optional[str] = None,
    ) -> List[ConsentNotification]:
        record_filter = RecordFilter(order_by="scheduled_for", descending=True)
        if user_id:
            record_filter.eq["user_id"] = user_id
        if patient_id:
            record_filter.eq["patient_id"] = patient_id
        rows = await self._store.select(NOTIFICATIONS_TABLE, record_filter)
        return [ConsentNotification.from_row(r) for r in rows]

    # --------------------------------------------------------
    # TRIGGERS
    # --------------------------------------------------------

    async def _process_items(
        self,
        kind: str,
        items: List[Any],
        item_id: Callable[[Any], str],
        process: Callable[[Any], Awaitable[None]],
    ) -> WorkflowResults:
        """Run ``process`` per item. One failing item never stops the others."""
        results = WorkflowResults(processed=len(items))

        for item in items:
            try:
                await process(item)
                results.successful += 1
            except Exception as e:
                results.failed += 1
                results.errors.append(f"Failed to process {kind} {item_id(item)}: {e}")
                logger.warning(f"Workflow item failed: {kind} {item_id(item)}: {e}")

        return results

    def _consent_types(self, workflow: ConsentWorkflow) -> List[ConsentType]:
        return list(workflow.consent_types) or list(ConsentType)

    async def _active_users(self, workflow: ConsentWorkflow, created_since: Optional[datetime] = None) -> List[Dict[str, Any]]:
        record_filter = RecordFilter(eq={"status": "active"}, order_by="created_at")
        if workflow.user_segments:
            record_filter.any_of["role"] = list(workflow.user_segments)
        if created_since is not None:
            record_filter.gte["created_at"] = created_since
        return await self._store.select(USERS_TABLE, record_filter)

    async def _run_expiration(self, workflow: ConsentWorkflow) -> WorkflowResults:
        threshold = self._clock.now() + timedelta(days=workflow.days_before_expiration)
        rows = await self._store.select(CONSENT_TABLE, RecordFilter(
            any_of={"consent_type": [t.value for t in self._consent_types(workflow)]},
            eq={"status": ConsentStatus.GRANTED.value},
            is_null={"withdrawn_at": True},
            lt={"expires_at": threshold},
            order_by="expires_at",
        ))
        consents = []
        for row in rows:
            grant = ConsentRecord.from_row(row)
            # a later withdrawal or denial row supersedes the grant
            latest = await self._consent.get_latest_consent(grant.consent_type, grant.user_id, grant.patient_id)
            if latest is not None and latest.consent_id == grant.consent_id:
                consents.append(grant)

        async def process(consent: ConsentRecord) -> None:
            if workflow.send_email:
                to = await self._subject_email(consent.user_id, consent.patient_id)
                await self._send(self._formatter.expiration_reminder(
                    to, consent.consent_id, consent.consent_type, consent.expires_at,
                ))
            if workflow.send_notification:
                await self._notify(
                    NotificationType.EXPIRATION_REMINDER,
                    [consent.consent_type],
                    user_id=consent.user_id,
                    patient_id=consent.patient_id,
                )

        return await self._process_items("consent", consents, lambda c: c.consent_id, process)

    async def _run_renewal(self, workflow: ConsentWorkflow) -> WorkflowResults:
        consent_types = self._consent_types(workflow)
        users = await self._active_users(workflow)

        async def process(user: Dict[str, Any]) -> None:
            if workflow.send_email:
                await self._send(self._formatter.renewal_request(
                    self._require_email(user, "user"), str(user["id"]), user.get("first_name"), consent_types,
                ))
            if workflow.send_notification:
                await self._notify(NotificationType.RENEWAL_REQUEST, consent_types, user_id=str(user["id"]))

        return await self._process_items("user", users, lambda u: u["id"], process)

    async def _run_new_user(self, workflow: ConsentWorkflow) -> WorkflowResults:
        consent_types = self._consent_types(workflow)
        candidates = await self._active_users(workflow, created_since=self._clock.now() - RECENT_WINDOW)
        users = [
            u for u in candidates
            if await self._consent.should_show_consent_banner(user_id=str(u["id"]))
        ]

        async def process(user: Dict[str, Any]) -> None:
            if workflow.send_email:
                await self._send(self._formatter.new_user_welcome(
                    self._require_email(user, "user"), str(user["id"]), user.get("first_name"), consent_types,
                ))

        return await self._process_items("new user", users, lambda u: u["id"], process)

    async def _run_withdrawal(self, workflow: ConsentWorkflow) -> WorkflowResults:
        rows = await self._store.select(CONSENT_TABLE, RecordFilter(
            eq={"status": ConsentStatus.WITHDRAWN.value},
            gte={"updated_at": self._clock.now() - RECENT_WINDOW},
            order_by="updated_at",
        ))
        withdrawals = [ConsentRecord.from_row(r) for r in rows]

        async def process(consent: ConsentRecord) -> None:
            if workflow.send_email:
                to = await self._subject_email(consent.user_id, consent.patient_id)
                await self._send(self._formatter.withdrawal_confirmation(
                    to, consent.consent_id, consent.consent_type, consent.withdrawn_at or consent.updated_at,
                ))
            if workflow.send_notification:
                await self._notify(
                    NotificationType.WITHDRAWAL_CONFIRMATION,
                    [consent.consent_type],
                    user_id=consent.user_id,
                    patient_id=consent.patient_id,
                )

        return await self._process_items("withdrawal", withdrawals, lambda c: c.consent_id, process)

    # --------------------------------------------------------
    # ACTIONS
    # --------------------------------------------------------

    @staticmethod
    def _require_email(row: Dict[str, Any], kind: str) -> str:
        email = row.get("email")
        if not email:
            raise WorkflowError(f"No email address for {kind} {row.get('id')}")
        return email

    async def _subject_email(self, user_id: Optional[str], patient_id: Optional[str]) -> str:
        table, kind, subject_id = (
            (USERS_TABLE, "user", user_id) if user_id else (PATIENTS_TABLE, "patient", patient_id)
        )
        row = await self._store.get(table, subject_id)
        if row is None:
            raise WorkflowError(f"No {kind} record {subject_id}")
        return self._require_email(row, kind)

    async def _send(self, message: EmailMessage) -> None:
        result = await self._email.send(message)
        if not result.success:
            raise WorkflowError(result.error or "Failed to send email")

    async def _notify(
        self,
        notification_type: NotificationType,
        consent_types: List[ConsentType],
        user_id: Optional[str] = None,
        patient_id: Optional[str] = None,
    ) -> str:
        notification = ConsentNotification(
            notification_id=new_id(),
            notification_type=notification_type,
            consent_types=list(consent_types),
            user_id=user_id,
            patient_id=patient_id,
            scheduled_for=self._clock.now(),
        )
        await self._store.insert(NOTIFICATIONS_TABLE, notification.to_row())
        logger.debug(f"Consent notification created: {notification.notification_id} ({notification_type.value})")
        return notification.notification_id
