"""
Consent Service.

============================================================
PURPOSE
============================================================
Per-subject consent state.

- Every decision is appended as a new consent row, so the
  history of a (subject, consent type) pair is reconstructible
- The latest row of a type decides whether consent holds
- Rows are never updated; a withdrawal or denial supersedes an
  earlier grant only by being the newer row
- Preferences are cached per subject; every write for that
  subject invalidates the cache
- Every decision is audited (gdpr, consent_management)

============================================================
"""

import logging
from collections import Counter
from typing import Any, Dict, List, Optional, Union

from .audit import AuditService
from .clock import ClockProtocol, SystemClock
from .exceptions import ValidationError
from .models import (
    ComplianceFlag,
    ConsentPreferences,
    ConsentRecord,
    ConsentStatus,
    ConsentType,
    RiskLevel,
    new_id,
)
from .schemas import ConsentRequest, parse_input
from .store import RecordFilter, RecordStore


logger = logging.getLogger(__name__)


CONSENT_TABLE = "consent_records"

CONSENT_AUDIT_FLAGS = [ComplianceFlag.GDPR.value, ComplianceFlag.CONSENT_MANAGEMENT.value]
RECENT_CONSENTS_LIMIT = 10


def subject_key(user_id: Optional[str] = None, patient_id: Optional[str] = None) -> str:
    """Cache and log key of a consent subject. Exactly one id must be given."""
    if bool(user_id) == bool(patient_id):
        raise ValidationError("Exactly one of user_id or patient_id is required")
    return f"user:{user_id}" if user_id else f"patient:{patient_id}"


def _subject_filter(user_id: Optional[str], patient_id: Optional[str]) -> Dict[str, Any]:
    subject_key(user_id, patient_id)
    return {"user_id": user_id} if user_id else {"patient_id": patient_id}


class ConsentService:
    """
    Records and answers consent decisions.

    Usage:
        consent = ConsentService(store, audit)
        await consent.record_consent({
            "user_id": user_id,
            "consent_type": "marketing",
            "status": "granted",
        })
        allowed = await consent.has_consent(ConsentType.MARKETING, user_id=user_id)
    """

    def __init__(
        self,
        store: RecordStore,
        audit: AuditService,
        clock: Optional[ClockProtocol] = None,
    ):
        self._store = store
        self._audit = audit
        self._clock = clock or SystemClock()
        self._cache: Dict[str, ConsentPreferences] = {}

    # --------------------------------------------------------
    # WRITES
    # --------------------------------------------------------

    async def record_consent(self, request: Union[ConsentRequest, Dict[str, Any]]) -> str:
        """
        Append one consent decision.

        Returns:
            The new consent record id
        """
        request = parse_input(ConsentRequest, request)
        now = self._clock.now()

        record = ConsentRecord(
            consent_id=new_id(),
            consent_type=request.consent_type,
            status=request.status,
            user_id=request.user_id,
            patient_id=request.patient_id,
            version=request.version,
            granted_at=now if request.status == ConsentStatus.GRANTED else None,
            withdrawn_at=now if request.status == ConsentStatus.WITHDRAWN else None,
            expires_at=request.expires_at,
            ip_address=request.ip_address,
            user_agent=request.user_agent,
            consent_text=request.consent_text,
            metadata=dict(request.metadata),
            created_at=now,
            updated_at=now,
        )
        await self._store.insert(CONSENT_TABLE, record.to_row())
        self._cache.pop(record.subject_ref, None)

        await self._audit.log(
            f"consent_{request.status.value}",
            "consent",
            record.consent_id,
            user_id=request.user_id,
            new_data={
                "consent_type": request.consent_type.value,
                "status": request.status.value,
                "version": request.version,
            },
            ip_address=request.ip_address,
            user_agent=request.user_agent,
            compliance_flags=CONSENT_AUDIT_FLAGS,
            risk_level=RiskLevel.MEDIUM if request.status == ConsentStatus.WITHDRAWN else RiskLevel.LOW,
        )

        logger.info(
            f"Consent recorded: {record.consent_id} "
            f"({request.consent_type.value}={request.status.value} for {record.subject_ref})"
        )
        return record.consent_id

    async def update_consent_preferences(
        self,
        preferences: Dict[str, bool],
        user_id: Optional[str] = None,
        patient_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> List[str]:
        """Record a grant or denial for every consent type present in ``preferences``."""
        unknown = [name for name in preferences if name not in ConsentType._value2member_map_]
        if unknown:
            raise ValidationError(f"Unknown consent types: {', '.join(sorted(unknown))}")

        consent_ids = []
        for consent_type in ConsentType:
            if consent_type.value not in preferences:
                continue
            granted = bool(preferences[consent_type.value])
            consent_ids.append(await self.record_consent({
                "user_id": user_id,
                "patient_id": patient_id,
                "consent_type": consent_type,
                "status": ConsentStatus.GRANTED if granted else ConsentStatus.DENIED,
                "ip_address": ip_address,
                "user_agent": user_agent,
            }))

        logger.info(f"Consent preferences updated for {subject_key(user_id, patient_id)}: {preferences}")
        return consent_ids

    async def withdraw_all_consents(
        self,
        user_id: Optional[str] = None,
        patient_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> List[str]:
        consent_ids = [
            await self.record_consent({
                "user_id": user_id,
                "patient_id": patient_id,
                "consent_type": consent_type,
                "status": ConsentStatus.WITHDRAWN,
                "ip_address": ip_address,
                "user_agent": user_agent,
            })
            for consent_type in ConsentType
        ]
        logger.info(f"All consents withdrawn for {subject_key(user_id, patient_id)}")
        return consent_ids

    # --------------------------------------------------------
    # READS
    # --------------------------------------------------------

    async def get_latest_consent(
        self,
        consent_type: ConsentType,
        user_id: Optional[str] = None,
        patient_id: Optional[str] = None,
    ) -> Optional[ConsentRecord]:
        """The decision currently in force for a (subject, consent type) pair."""
        rows = await self._store.select(CONSENT_TABLE, RecordFilter(
            eq={**_subject_filter(user_id, patient_id), "consent_type": consent_type.value},
            order_by="created_at",
        ))
        return ConsentRecord.from_row(rows[-1]) if rows else None

    async def has_consent(
        self,
        consent_type: ConsentType,
        user_id: Optional[str] = None,
        patient_id: Optional[str] = None,
    ) -> bool:
        """True when the latest decision is an unexpired, unwithdrawn grant."""
        latest = await self.get_latest_consent(ConsentType(consent_type), user_id, patient_id)
        if latest is None or latest.status != ConsentStatus.GRANTED or latest.withdrawn_at is not None:
            return False
        return latest.expires_at is None or latest.expires_at > self._clock.now()

    async def get_consent_preferences(
        self,
        user_id: Optional[str] = None,
        patient_id: Optional[str] = None,
    ) -> ConsentPreferences:
        key = subject_key(user_id, patient_id)
        cached = self._cache.get(key)
        if cached is not None:
            return ConsentPreferences(**cached.to_dict())

        preferences = ConsentPreferences()
        for consent_type in ConsentType:
            preferences.set(consent_type, await self.has_consent(consent_type, user_id, patient_id))

        self._cache[key] = preferences
        return ConsentPreferences(**preferences.to_dict())

    async def get_consent_history(
        self,
        user_id: Optional[str] = None,
        patient_id: Optional[str] = None,
    ) -> List[ConsentRecord]:
        rows = await self._store.select(CONSENT_TABLE, RecordFilter(
            eq=_subject_filter(user_id, patient_id),
            order_by="created_at",
            descending=True,
        ))
        return [ConsentRecord.from_row(r) for r in rows]

    async def should_show_consent_banner(
        self,
        user_id: Optional[str] = None,
        patient_id: Optional[str] = None,
    ) -> bool:
        """Show the banner to anonymous visitors and to subjects with no consent history."""
        if not user_id and not patient_id:
            return True
        count = await self._store.count(CONSENT_TABLE, RecordFilter(eq=_subject_filter(user_id, patient_id)))
        return count == 0

    async def get_consent_statistics(self) -> Dict[str, Any]:
        rows = await self._store.select(CONSENT_TABLE, RecordFilter(order_by="created_at", descending=True))
        records = [ConsentRecord.from_row(r) for r in rows]

        by_type = Counter({t.value: 0 for t in ConsentType})
        by_type.update(r.consent_type.value for r in records)
        by_status = Counter({s.value: 0 for s in ConsentStatus})
        by_status.update(r.status.value for r in records)

        return {
            "total_consents": len(records),
            "consents_by_type": dict(by_type),
            "consents_by_status": dict(by_status),
            "recent_consents": [r.to_dict() for r in records[:RECENT_CONSENTS_LIMIT]],
        }

    def clear_cache(self) -> None:
        self._cache.clear()
