"""
Data Subject Rights Service.

============================================================
PURPOSE
============================================================
GDPR data subject requests and privacy settings.

- A request is stored pending with a single-use verification
  token and a statutory due date; the requester confirms it
  by email
- Access and portability requests are answered with an export
  of every row held about the subject, optionally anonymized
  through the anonymization engine
- Erasure anonymizes the subject row in place and stamps
  anonymized_at; rows referencing the subject stay joinable
- Exports and erasures are audited as high-risk data
  protection events before their result is released
- Privacy settings are one row per subject, upserted

============================================================
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple, Union

from .anonymizer import AnonymizationEngine
from .audit import AuditService
from .clock import ClockProtocol, SystemClock
from .config import ComplianceConfig
from .consent import CONSENT_TABLE, subject_key
from .exceptions import DataSubjectRequestError, RecordNotFoundError, UnsupportedTableError
from .models import (
    ComplianceFlag,
    DataSubjectRequest,
    DataSubjectRequestStatus,
    DataSubjectRequestType,
    EntityType,
    PrivacySettings,
    new_id,
)
from .notifications import EmailSender, PrivacyEmailFormatter
from .retention import anonymized_patch
from .schemas import DataSubjectRequestCreate, PrivacySettingsUpdate, parse_input
from .store import RecordFilter, RecordStore


logger = logging.getLogger(__name__)


REQUESTS_TABLE = "data_subject_requests"
PRIVACY_SETTINGS_TABLE = "privacy_settings"

DSR_AUDIT_FLAGS = [ComplianceFlag.GDPR.value]

OPEN_REQUEST_STATUSES = [DataSubjectRequestStatus.PENDING.value, DataSubjectRequestStatus.IN_PROGRESS.value]

EXPORT_REQUEST_TYPES = frozenset({DataSubjectRequestType.ACCESS, DataSubjectRequestType.PORTABILITY})


# ============================================================
# SUBJECTS
# ============================================================

@dataclass(frozen=True)
class ExportSection:
    """Rows of ``table`` whose ``column`` holds the subject id."""
    name: str
    table: str
    entity_type: EntityType
    column: str


@dataclass(frozen=True)
class DataSubject:
    kind: str
    subject_id: str
    table: str
    entity_type: EntityType
    sections: Tuple[ExportSection, ...]

    @property
    def reference_field(self) -> str:
        """Column that points at the subject from consent and settings rows."""
        return f"{self.kind}_id"

    @property
    def consent_filter(self) -> Dict[str, str]:
        return {self.reference_field: self.subject_id}


USER_EXPORT_SECTIONS = (
    ExportSection("appointments", "appointments", EntityType.APPOINTMENT, "dentist_id"),
)

PATIENT_EXPORT_SECTIONS = (
    ExportSection("appointments", "appointments", EntityType.APPOINTMENT, "patient_id"),
    ExportSection("treatments", "treatments", EntityType.TREATMENT, "patient_id"),
    ExportSection("invoices", "invoices", EntityType.INVOICE, "patient_id"),
)


def resolve_subject(user_id: Optional[str] = None, patient_id: Optional[str] = None) -> DataSubject:
    """Exactly one id must be given."""
    subject_key(user_id, patient_id)
    if user_id:
        return DataSubject("user", user_id, "users", EntityType.USER, USER_EXPORT_SECTIONS)
    return DataSubject("patient", patient_id, "patients", EntityType.PATIENT, PATIENT_EXPORT_SECTIONS)


# ============================================================
# SERVICE
# ============================================================

class DataSubjectService:
    """
    Handles data subject requests, exports, erasure and privacy settings.

    Usage:
        subjects = DataSubjectService(store, audit, engine, email_sender=sender)
        request_id = await subjects.submit_request({
            "request_type": "access",
            "requester_email": "jane@example.com",
            "patient_id": patient_id,
        })
        await subjects.verify_request(token_from_email)
        export = await subjects.fulfil_request(request_id, processed_by=officer_id)
    """

    def __init__(
        self,
        store: RecordStore,
        audit: AuditService,
        engine: AnonymizationEngine,
        config: Optional[ComplianceConfig] = None,
        clock: Optional[ClockProtocol] = None,
        email_sender: Optional[EmailSender] = None,
    ):
        self._store = store
        self._audit = audit
        self._engine = engine
        self._config = config or ComplianceConfig()
        self._clock = clock or SystemClock()
        self._email_sender = email_sender
        self._formatter = PrivacyEmailFormatter(self._config.privacy_center_url)

    # --------------------------------------------------------
    # REQUESTS
    # --------------------------------------------------------

    async def submit_request(self, data: Union[DataSubjectRequestCreate, Dict[str, Any]]) -> str:
        """
        Store a pending request and email its verification link.

        Returns:
            The new request id

        Raises:
            ValidationError: malformed request
            AuditWriteError: the submission could not be audited
        """
        request = parse_input(DataSubjectRequestCreate, data)
        now = self._clock.now()

        record = DataSubjectRequest(
            request_id=new_id(),
            request_type=request.request_type,
            requester_email=request.requester_email,
            requester_name=request.requester_name,
            user_id=request.user_id,
            patient_id=request.patient_id,
            description=request.description,
            verification_token=secrets.token_urlsafe(32),
            due_date=now + timedelta(days=self._config.data_subject_response_days),
            created_at=now,
            updated_at=now,
        )
        await self._store.insert(REQUESTS_TABLE, record.to_row())

        await self._audit.log(
            "submit_data_subject_request",
            "data_subject_request",
            record.request_id,
            user_id=record.user_id,
            new_data={
                "request_type": record.request_type.value,
                "due_date": record.due_date.isoformat(),
            },
            compliance_flags=DSR_AUDIT_FLAGS,
        )

        await self._send_verification(record)

        logger.info(
            f"Data subject request submitted: {record.request_id} "
            f"({record.request_type.value}, due {record.due_date:%Y-%m-%d})"
        )
        return record.request_id

    async def _send_verification(self, record: DataSubjectRequest) -> None:
        if self._email_sender is None:
            logger.debug(f"No email sender, verification for {record.request_id} not sent")
            return

        message = self._formatter.data_subject_verification(
            record.requester_email,
            record.request_id,
            record.request_type,
            record.verification_token,
            record.due_date,
        )
        result = await self._email_sender.send(message)
        if not result.success:
            logger.warning(f"Verification email for {record.request_id} failed: {result.error}")

    async def verify_request(self, token: str) -> bool:
        """
        Confirm a pending request by its token.

        The token is single-use. Returns False for an unknown,
        used or non-pending token.
        """
        if not token:
            return False

        rows = await self._store.select(REQUESTS_TABLE, RecordFilter(
            eq={"verification_token": token, "status": DataSubjectRequestStatus.PENDING.value},
            limit=1,
        ))
        if not rows:
            logger.warning("Verification attempted with an unknown or used token")
            return False

        record = DataSubjectRequest.from_row(rows[0])
        now = self._clock.now()
        affected = await self._store.update(
            REQUESTS_TABLE,
            RecordFilter(eq={"id": record.request_id, "status": DataSubjectRequestStatus.PENDING.value}),
            {
                "status": DataSubjectRequestStatus.IN_PROGRESS.value,
                "verified_at": now,
                "verification_token": None,
                "updated_at": now,
            },
        )
        if affected == 0:
            return False

        await self._audit.log(
            "verify_data_subject_request",
            "data_subject_request",
            record.request_id,
            user_id=record.user_id,
            old_data={"status": DataSubjectRequestStatus.PENDING.value},
            new_data={"status": DataSubjectRequestStatus.IN_PROGRESS.value},
            compliance_flags=DSR_AUDIT_FLAGS,
        )

        logger.info(f"Data subject request verified: {record.request_id}")
        return True

    async def get_request(self, request_id: str) -> DataSubjectRequest:
        row = await self._store.get(REQUESTS_TABLE, request_id)
        if row is None:
            raise RecordNotFoundError(self._store.name, REQUESTS_TABLE, request_id)
        return DataSubjectRequest.from_row(row)

    async def get_pending_requests(self) -> List[DataSubjectRequest]:
        """Open requests, nearest deadline first."""
        rows = await self._store.select(REQUESTS_TABLE, RecordFilter(
            any_of={"status": OPEN_REQUEST_STATUSES},
            order_by="due_date",
        ))
        return [DataSubjectRequest.from_row(r) for r in rows]

    async def get_overdue_requests(self) -> List[DataSubjectRequest]:
        rows = await self._store.select(REQUESTS_TABLE, RecordFilter(
            any_of={"status": OPEN_REQUEST_STATUSES},
            lt={"due_date": self._clock.now()},
            order_by="due_date",
        ))
        return [DataSubjectRequest.from_row(r) for r in rows]

    async def fulfil_request(
        self,
        request_id: str,
        processed_by: Optional[str] = None,
        anonymize: bool = False,
    ) -> Dict[str, Any]:
        """
        Answer a verified access, portability or erasure request.

        Returns:
            The export for access and portability requests,
            ``{"erased": bool}`` for erasure

        Raises:
            DataSubjectRequestError: not verified, no linked subject,
                or a request type that needs manual handling
        """
        record = await self.get_request(request_id)
        if record.status != DataSubjectRequestStatus.IN_PROGRESS:
            raise DataSubjectRequestError(request_id, "must be verified before it is fulfilled", record.status.value)
        if not (record.user_id or record.patient_id):
            raise DataSubjectRequestError(request_id, "no user or patient is linked", record.status.value)

        if record.request_type in EXPORT_REQUEST_TYPES:
            result = await self.export_data(record.user_id, record.patient_id, anonymize=anonymize, exported_by=processed_by)
            summary = {"record_counts": _record_counts(result), "anonymized": anonymize}
        elif record.request_type == DataSubjectRequestType.ERASURE:
            result = {"erased": await self.delete_data(record.user_id, record.patient_id, deleted_by=processed_by)}
            summary = dict(result)
        else:
            raise DataSubjectRequestError(
                request_id,
                f"{record.request_type.value} requests are handled manually",
                record.status.value,
            )

        await self._transition(record, DataSubjectRequestStatus.COMPLETED, processed_by, response_data=summary)
        return result

    async def complete_request(
        self,
        request_id: str,
        processed_by: Optional[str] = None,
        notes: Optional[str] = None,
        response_data: Optional[Dict[str, Any]] = None,
    ) -> DataSubjectRequest:
        """Close a request handled outside this service (rectification, restriction)."""
        record = await self.get_request(request_id)
        return await self._transition(record, DataSubjectRequestStatus.COMPLETED, processed_by, notes, response_data)

    async def reject_request(
        self,
        request_id: str,
        notes: str,
        processed_by: Optional[str] = None,
    ) -> DataSubjectRequest:
        record = await self.get_request(request_id)
        return await self._transition(record, DataSubjectRequestStatus.REJECTED, processed_by, notes)

    async def _transition(
        self,
        record: DataSubjectRequest,
        status: DataSubjectRequestStatus,
        processed_by: Optional[str],
        notes: Optional[str] = None,
        response_data: Optional[Dict[str, Any]] = None,
    ) -> DataSubjectRequest:
        if not record.can_transition_to(status):
            raise DataSubjectRequestError(
                record.request_id,
                f"cannot move from {record.status.value} to {status.value}",
                record.status.value,
            )

        now = self._clock.now()
        patch: Dict[str, Any] = {
            "status": status.value,
            "processed_by": processed_by,
            "processed_at": now,
            "updated_at": now,
        }
        if notes is not None:
            patch["notes"] = notes
        if response_data is not None:
            patch["response_data"] = response_data

        affected = await self._store.update(
            REQUESTS_TABLE,
            RecordFilter(eq={"id": record.request_id, "status": record.status.value}),
            patch,
        )
        if affected == 0:
            raise DataSubjectRequestError(record.request_id, "was changed concurrently", record.status.value)

        action = "complete" if status == DataSubjectRequestStatus.COMPLETED else "reject"
        await self._audit.log(
            f"{action}_data_subject_request",
            "data_subject_request",
            record.request_id,
            user_id=processed_by,
            old_data={"status": record.status.value},
            new_data={"status": status.value, "notes": notes},
            compliance_flags=DSR_AUDIT_FLAGS,
        )

        logger.info(f"Data subject request {record.request_id}: {record.status.value} -> {status.value}")
        return await self.get_request(record.request_id)

    # --------------------------------------------------------
    # EXPORT AND ERASURE
    # --------------------------------------------------------

    async def export_data(
        self,
        user_id: Optional[str] = None,
        patient_id: Optional[str] = None,
        anonymize: bool = False,
        include_metadata: bool = True,
        exported_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Collect every row held about one subject.

        Sections: the subject row, its related rows and its
        consent history. With ``anonymize`` every row goes
        through the anonymization engine and the subject id in
        the metadata is pseudonymized.

        Raises:
            ValidationError: not exactly one subject id
            RecordNotFoundError: no such user or patient
            AuditWriteError: the export could not be audited;
                nothing is returned
        """
        subject = resolve_subject(user_id, patient_id)

        row = await self._store.get(subject.table, subject.subject_id)
        if row is None:
            raise RecordNotFoundError(self._store.name, subject.table, subject.subject_id)

        sections: List[Tuple[str, EntityType, List[Dict[str, Any]]]] = []
        for section in subject.sections:
            rows = await self._store.select(section.table, RecordFilter(eq={section.column: subject.subject_id}))
            sections.append((section.name, section.entity_type, rows))

        consents = await self._store.select(CONSENT_TABLE, RecordFilter(
            eq=subject.consent_filter,
            order_by="created_at",
            descending=True,
        ))
        sections.append(("consents", EntityType.CONSENT, consents))

        if anonymize:
            # same pseudonym the consent rows carry for this subject
            reference = self._engine.pseudonymize(subject.subject_id, subject.reference_field)
            anonymized_row = self._engine.anonymize(subject.entity_type, row)
            anonymized_row["id"] = reference
            export: Dict[str, Any] = {subject.kind: anonymized_row}
            for name, entity_type, rows in sections:
                export[name] = [self._engine.anonymize(entity_type, r) for r in rows]
        else:
            export = {subject.kind: row}
            for name, _, rows in sections:
                export[name] = rows

        counts = _record_counts(export)
        if include_metadata:
            export["metadata"] = {
                "export_date": self._clock.now().isoformat(),
                "anonymized": anonymize,
                "data_subject": subject.kind,
                "subject_id": reference if anonymize else subject.subject_id,
                "salt_epoch": self._engine.salt_epoch if anonymize else None,
            }

        await self._audit.log(
            "export",
            subject.kind,
            subject.subject_id,
            user_id=exported_by,
            new_data={"anonymized": anonymize, "record_counts": counts},
            compliance_flags=DSR_AUDIT_FLAGS,
        )

        logger.info(f"Data exported for {subject.kind} {subject.subject_id} (anonymized={anonymize}, counts={counts})")
        return export

    async def delete_data(
        self,
        user_id: Optional[str] = None,
        patient_id: Optional[str] = None,
        deleted_by: Optional[str] = None,
    ) -> bool:
        """
        Erase one subject by anonymizing its row in place.

        Related rows keep their (now pseudonymous) reference.

        Returns:
            True if the row was erased, False if it already was

        Raises:
            ValidationError: not exactly one subject id
            RecordNotFoundError: no such user or patient
            UnsupportedTableError: the subject table has no anonymized_at column
            AuditWriteError: the erasure could not be audited
        """
        subject = resolve_subject(user_id, patient_id)

        columns = self._store.columns(subject.table)
        if columns is not None and "anonymized_at" not in columns:
            raise UnsupportedTableError(subject.table, "erase", reason="no anonymized_at column")

        row = await self._store.get(subject.table, subject.subject_id)
        if row is None:
            raise RecordNotFoundError(self._store.name, subject.table, subject.subject_id)
        if row.get("anonymized_at") is not None:
            logger.info(f"{subject.kind} {subject.subject_id} already erased")
            return False

        now = self._clock.now()
        anonymized = self._engine.anonymize(subject.entity_type, row)
        patch = anonymized_patch(row, anonymized, {"id", "created_at"}, columns)
        patch["anonymized_at"] = now
        if columns is None or "updated_at" in columns:
            patch["updated_at"] = now

        affected = await self._store.update(
            subject.table,
            RecordFilter(eq={"id": subject.subject_id}, is_null={"anonymized_at": True}),
            patch,
        )
        if affected == 0:
            return False

        await self._audit.log(
            "delete",
            subject.kind,
            subject.subject_id,
            user_id=deleted_by,
            new_data={"anonymized": True, "salt_epoch": self._engine.salt_epoch},
            compliance_flags=DSR_AUDIT_FLAGS,
        )

        logger.info(f"Data erased for {subject.kind} {subject.subject_id}")
        return True

    # --------------------------------------------------------
    # PRIVACY SETTINGS
    # --------------------------------------------------------

    async def get_privacy_settings(
        self,
        user_id: Optional[str] = None,
        patient_id: Optional[str] = None,
    ) -> Optional[PrivacySettings]:
        subject = resolve_subject(user_id, patient_id)
        rows = await self._store.select(PRIVACY_SETTINGS_TABLE, RecordFilter(eq=subject.consent_filter, limit=1))
        return PrivacySettings.from_row(rows[0]) if rows else None

    async def update_privacy_settings(
        self,
        settings: Union[PrivacySettingsUpdate, Dict[str, Any]],
        user_id: Optional[str] = None,
        patient_id: Optional[str] = None,
        updated_by: Optional[str] = None,
    ) -> PrivacySettings:
        """
        Apply the given settings, creating the subject's row on first use.

        Raises:
            ValidationError: unknown field, bad value or not exactly one subject id
        """
        changes = parse_input(PrivacySettingsUpdate, settings).model_dump(exclude_none=True)
        existing = await self.get_privacy_settings(user_id, patient_id)
        now = self._clock.now()

        if existing is None:
            current = PrivacySettings(
                settings_id=new_id(),
                user_id=user_id,
                patient_id=patient_id,
                created_at=now,
                updated_at=now,
            )
            for key, value in changes.items():
                setattr(current, key, value)
            await self._store.insert(PRIVACY_SETTINGS_TABLE, current.to_row())
            old_data = None
        else:
            if not changes:
                return existing
            before = existing.to_row()
            old_data = {key: before[key] for key in changes}
            current = existing
            for key, value in changes.items():
                setattr(current, key, value)
            current.updated_at = now
            await self._store.update(
                PRIVACY_SETTINGS_TABLE,
                RecordFilter(eq={"id": current.settings_id}),
                {**changes, "updated_at": now},
            )

        await self._audit.log(
            "update_privacy_settings",
            "privacy_settings",
            current.settings_id,
            user_id=updated_by or user_id,
            old_data=old_data,
            new_data=changes,
            compliance_flags=DSR_AUDIT_FLAGS,
        )

        logger.info(f"Privacy settings updated for {subject_key(user_id, patient_id)}: {sorted(changes)}")
        return current


def _record_counts(export: Dict[str, Any]) -> Dict[str, int]:
    return {
        name: len(value) if isinstance(value, list) else 1
        for name, value in export.items()
        if name != "metadata"
    }
