"""
Audit Service.

============================================================
PURPOSE
============================================================
Immutable, risk-classified audit trail of every compliance
relevant operation.

- Risk level derived from action and resource type when the
  caller does not supply one
- Compliance flags attached automatically (gdpr, hipaa,
  data_protection, audit_trail)
- High/critical events surface as warnings at log time
- Filtered search with exact totals, aggregate statistics
- Asynchronous compliance report generation
- Expiry cleanup, itself audited

============================================================
FAILURE POLICY
============================================================
A failed audit write raises AuditWriteError to the caller of
the triggering action. It is never swallowed.

============================================================
"""

import asyncio
import json
import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from .clock import ClockProtocol, SystemClock
from .config import ComplianceConfig
from .exceptions import AuditWriteError, ComplianceException, ReportNotFoundError
from .models import (
    AuditEvent,
    AuditSearchResult,
    AuditStatistics,
    ComplianceFlag,
    ComplianceReport,
    ReportStatus,
    ReportType,
    RiskLevel,
    new_id,
    parse_datetime,
)
from .schemas import (
    AuditEventInput,
    AuditSearchFilters,
    ComplianceReportRequest,
    parse_input,
)
from .store import RecordFilter, RecordStore


logger = logging.getLogger(__name__)


AUDIT_TABLE = "compliance_audit_logs"
REPORTS_TABLE = "compliance_reports"

CRITICAL_ACTIONS = frozenset({"admin_access", "system_config_change", "security_breach"})
HIGH_RISK_ACTIONS = frozenset({"delete", "export", "anonymize", "bulk_update"})
SENSITIVE_RESOURCES = frozenset({"patient", "user", "payment", "medical_record"})
HIPAA_RESOURCES = frozenset({"medical_record", "treatment", "diagnosis"})
DATA_PROTECTION_ACTIONS = frozenset({"export", "delete", "anonymize"})

RECENT_ACTIVITY_LIMIT = 10
ACCESS_LOG_LIMIT = 1000


# ============================================================
# CLASSIFICATION
# ============================================================

def assess_risk_level(action: str, resource_type: str) -> RiskLevel:
    if action in CRITICAL_ACTIONS:
        return RiskLevel.CRITICAL
    if action in HIGH_RISK_ACTIONS:
        return RiskLevel.HIGH
    if resource_type in SENSITIVE_RESOURCES:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def automatic_compliance_flags(action: str, resource_type: str) -> List[str]:
    flags = []
    if resource_type == "patient" or "consent" in action:
        flags.append(ComplianceFlag.GDPR.value)
    if resource_type in HIPAA_RESOURCES:
        flags.append(ComplianceFlag.HIPAA.value)
    flags.append(ComplianceFlag.AUDIT_TRAIL.value)
    if action in DATA_PROTECTION_ACTIONS:
        flags.append(ComplianceFlag.DATA_PROTECTION.value)
    return flags


def _merge_flags(*groups: List[str]) -> List[str]:
    merged: List[str] = []
    for group in groups:
        for flag in group:
            if flag not in merged:
                merged.append(flag)
    return merged


def _add_years(moment: datetime, years: int) -> datetime:
    try:
        return moment.replace(year=moment.year + years)
    except ValueError:
        # 29 February in a non-leap target year
        return moment.replace(year=moment.year + years, day=28)


# ============================================================
# SERVICE
# ============================================================

class AuditService:
    """
    Writes and queries the compliance audit trail.

    Usage:
        audit = AuditService(store, config)
        event_id = await audit.log_event({
            "action": "delete",
            "resource_type": "patient",
            "resource_id": patient_id,
        })
    """

    def __init__(
        self,
        store: RecordStore,
        config: Optional[ComplianceConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._store = store
        self._config = config or ComplianceConfig()
        self._clock = clock or SystemClock()

        self._report_tasks: Set[asyncio.Task] = set()
        self._report_payloads: Dict[str, Dict[str, Any]] = {}
        self._report_builders: Dict[str, Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]] = {
            ReportType.AUDIT_SUMMARY.value: self._build_audit_summary,
            ReportType.GDPR_COMPLIANCE.value: self._build_gdpr_compliance,
            ReportType.DATA_ACCESS_LOG.value: self._build_data_access_log,
        }

    # --------------------------------------------------------
    # LOGGING
    # --------------------------------------------------------

    async def log_event(self, event: Union[AuditEventInput, Dict[str, Any]]) -> str:
        """
        Append one event to the audit trail.

        Returns:
            The new event id

        Raises:
            ValidationError: malformed event
            AuditWriteError: the event could not be persisted
        """
        event = parse_input(AuditEventInput, event)

        risk_level = event.risk_level or assess_risk_level(event.action, event.resource_type)
        flags = _merge_flags(
            event.compliance_flags,
            automatic_compliance_flags(event.action, event.resource_type),
        )
        now = self._clock.now()

        record = AuditEvent(
            event_id=new_id(),
            action=event.action,
            resource_type=event.resource_type,
            resource_id=event.resource_id,
            risk_level=risk_level,
            compliance_flags=flags,
            created_at=now,
            retention_date=_add_years(now, self._config.audit_retention_years),
            user_id=event.user_id,
            session_id=event.session_id,
            old_data=event.old_data,
            new_data=event.new_data,
            ip_address=event.ip_address,
            user_agent=event.user_agent,
            location=event.location,
        )

        try:
            await self._store.insert(AUDIT_TABLE, record.to_row())
        except Exception as e:
            logger.error(
                f"Failed to write audit event {event.action} on "
                f"{event.resource_type}/{event.resource_id}: {e}"
            )
            raise AuditWriteError(
                f"Audit write failed for {event.action} on {event.resource_type}",
                context={"action": event.action, "resource_type": event.resource_type},
                cause=e,
            ) from e

        if record.is_high_risk:
            logger.warning(
                f"High-risk audit event: {record.action} on {record.resource_type}/"
                f"{record.resource_id} (risk={risk_level.value}, flags={flags}, id={record.event_id})"
            )
        else:
            logger.debug(f"Audit event {record.event_id}: {record.action} on {record.resource_type}")

        return record.event_id

    async def log(
        self,
        action: str,
        resource_type: str,
        resource_id: Any,
        **fields: Any,
    ) -> str:
        """Shorthand for log_event with keyword fields."""
        return await self.log_event({
            "action": action,
            "resource_type": resource_type,
            "resource_id": str(resource_id),
            **fields,
        })

    # --------------------------------------------------------
    # QUERIES
    # --------------------------------------------------------

    async def search_logs(
        self,
        filters: Union[AuditSearchFilters, Dict[str, Any], None] = None,
    ) -> AuditSearchResult:
        """Search the audit trail, newest first. ``total_count`` ignores the page window."""
        filters = parse_input(AuditSearchFilters, filters or {})

        record_filter = RecordFilter(order_by="created_at", descending=True,
                                     offset=filters.offset, limit=filters.limit)
        for column in ("user_id", "action", "resource_type", "resource_id", "ip_address"):
            value = getattr(filters, column)
            if value is not None:
                record_filter.eq[column] = value
        if filters.risk_level is not None:
            record_filter.eq["risk_level"] = filters.risk_level.value
        if filters.compliance_flags:
            record_filter.overlaps["compliance_flags"] = list(filters.compliance_flags)
        if filters.date_from is not None:
            record_filter.gte["created_at"] = parse_datetime(filters.date_from)
        if filters.date_to is not None:
            record_filter.lte["created_at"] = parse_datetime(filters.date_to)

        total = await self._store.count(AUDIT_TABLE, record_filter.without_window())
        rows = await self._store.select(AUDIT_TABLE, record_filter)

        return AuditSearchResult(logs=[AuditEvent.from_row(r) for r in rows], total_count=total)

    async def _events_between(
        self,
        date_from: Optional[datetime],
        date_to: Optional[datetime],
    ) -> List[AuditEvent]:
        record_filter = RecordFilter(order_by="created_at", descending=True)
        if date_from is not None:
            record_filter.gte["created_at"] = date_from
        if date_to is not None:
            record_filter.lte["created_at"] = date_to

        rows = await self._store.select(AUDIT_TABLE, record_filter)
        return [AuditEvent.from_row(r) for r in rows]

    async def get_statistics(
        self,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> AuditStatistics:
        """Aggregate counts over an optional date range, plus the latest events."""
        events = await self._events_between(date_from, date_to)

        flags: Counter = Counter()
        for event in events:
            flags.update(event.compliance_flags)

        return AuditStatistics(
            total_events=len(events),
            events_by_action=dict(Counter(e.action for e in events)),
            events_by_resource_type=dict(Counter(e.resource_type for e in events)),
            events_by_risk_level=dict(Counter(e.risk_level.value for e in events)),
            compliance_flags=dict(flags),
            recent_activity=events[:RECENT_ACTIVITY_LIMIT],
        )

    # --------------------------------------------------------
    # REPORTS
    # --------------------------------------------------------

    async def generate_compliance_report(
        self,
        report_type: str,
        title: str,
        parameters: Optional[Dict[str, Any]] = None,
        generated_by: Optional[str] = None,
    ) -> str:
        """
        Create a report in ``generating`` state and assemble it in the background.

        The report always ends ``completed`` or ``failed``; use
        wait_for_reports() to await in-flight generation.
        """
        request = parse_input(ComplianceReportRequest, {
            "report_type": report_type,
            "title": title,
            "description": f"Compliance report: {title}",
            "parameters": parameters or {},
            "generated_by": generated_by,
        })

        now = self._clock.now()
        report = ComplianceReport(
            report_id=new_id(),
            report_type=request.report_type,
            title=request.title,
            description=request.description,
            parameters=request.parameters,
            generated_by=request.generated_by,
            expires_at=now + timedelta(days=self._config.report_expiry_days),
            created_at=now,
        )
        await self._store.insert(REPORTS_TABLE, report.to_row())

        task = asyncio.create_task(self._process_report(report))
        self._report_tasks.add(task)
        task.add_done_callback(self._report_tasks.discard)

        logger.info(f"Compliance report generation started: {report.report_id} ({report.report_type})")
        return report.report_id

    async def _process_report(self, report: ComplianceReport) -> None:
        try:
            builder = self._report_builders.get(report.report_type)
            if builder is None:
                raise ComplianceException(f"Unknown report type: {report.report_type}")

            payload = await builder(report.parameters)
            body = json.dumps(payload, default=str)

            self._report_payloads[report.report_id] = payload
            await self._store.update(REPORTS_TABLE, RecordFilter(eq={"id": report.report_id}), {
                "status": ReportStatus.COMPLETED.value,
                "file_path": f"/reports/{report.report_id}.json",
                "file_size": len(body),
            })
            logger.info(f"Compliance report generated: {report.report_id} ({report.report_type})")

        except Exception as e:
            logger.error(f"Failed to process compliance report {report.report_id}: {e}")
            try:
                await self._store.update(REPORTS_TABLE, RecordFilter(eq={"id": report.report_id}), {
                    "status": ReportStatus.FAILED.value,
                    "error_message": str(e) or type(e).__name__,
                })
            except Exception as mark_error:
                logger.error(
                    f"Could not mark report {report.report_id} failed: {mark_error}",
                    exc_info=True,
                )

    async def wait_for_reports(self) -> None:
        """Await every report still being generated."""
        if self._report_tasks:
            await asyncio.gather(*list(self._report_tasks), return_exceptions=True)

    async def get_compliance_reports(self) -> List[ComplianceReport]:
        rows = await self._store.select(REPORTS_TABLE, RecordFilter(order_by="created_at", descending=True))
        return [ComplianceReport.from_row(r) for r in rows]

    async def get_compliance_report(self, report_id: str) -> ComplianceReport:
        row = await self._store.get(REPORTS_TABLE, report_id)
        if row is None:
            raise ReportNotFoundError(report_id)
        return ComplianceReport.from_row(row)

    def get_report_payload(self, report_id: str) -> Dict[str, Any]:
        """Assembled payload of a completed report generated by this service."""
        if report_id not in self._report_payloads:
            raise ReportNotFoundError(report_id)
        return self._report_payloads[report_id]

    def _report_range(self, parameters: Dict[str, Any]):
        return parse_datetime(parameters.get("date_from")), parse_datetime(parameters.get("date_to"))

    async def _build_audit_summary(self, parameters: Dict[str, Any]) -> Dict[str, Any]:
        date_from, date_to = self._report_range(parameters)
        statistics = await self.get_statistics(date_from, date_to)
        return {
            "type": ReportType.AUDIT_SUMMARY.value,
            "generated_at": self._clock.now().isoformat(),
            "parameters": parameters,
            "statistics": statistics.to_dict(),
        }

    async def _build_gdpr_compliance(self, parameters: Dict[str, Any]) -> Dict[str, Any]:
        date_from, date_to = self._report_range(parameters)
        events = await self._events_between(date_from, date_to)

        def flagged(flag: ComplianceFlag) -> int:
            return sum(1 for e in events if flag.value in e.compliance_flags)

        return {
            "type": ReportType.GDPR_COMPLIANCE.value,
            "generated_at": self._clock.now().isoformat(),
            "parameters": parameters,
            "metrics": {
                "total_events": len(events),
                "gdpr_events": flagged(ComplianceFlag.GDPR),
                "consent_events": sum(1 for e in events if "consent" in e.action),
                "data_protection_events": flagged(ComplianceFlag.DATA_PROTECTION),
                "data_retention_events": flagged(ComplianceFlag.DATA_RETENTION),
                "high_risk_events": sum(1 for e in events if e.is_high_risk),
            },
        }

    async def _build_data_access_log(self, parameters: Dict[str, Any]) -> Dict[str, Any]:
        date_from, date_to = self._report_range(parameters)
        result = await self.search_logs({
            "action": "access",
            "date_from": date_from,
            "date_to": date_to,
            "limit": ACCESS_LOG_LIMIT,
        })
        return {
            "type": ReportType.DATA_ACCESS_LOG.value,
            "generated_at": self._clock.now().isoformat(),
            "parameters": parameters,
            "total_count": result.total_count,
            "access_logs": [e.to_dict() for e in result.logs],
        }

    # --------------------------------------------------------
    # HOUSEKEEPING
    # --------------------------------------------------------

    async def cleanup_expired_logs(self) -> int:
        """Delete events past their retention date, then audit the cleanup."""
        now = self._clock.now()
        deleted = await self._store.delete(AUDIT_TABLE, RecordFilter(lt={"retention_date": now}))

        logger.info(f"Expired audit logs cleaned up: {deleted}")

        await self.log(
            "cleanup_expired_audit_logs",
            "audit_log",
            AUDIT_TABLE,
            new_data={"deleted_count": deleted, "cutoff": now.isoformat()},
            compliance_flags=[ComplianceFlag.HOUSEKEEPING.value, ComplianceFlag.DATA_RETENTION.value],
        )
        return deleted
