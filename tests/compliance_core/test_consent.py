"""
Tests for the Consent Service.

============================================================
PURPOSE
============================================================
1. Append-only consent decisions and supersession
2. Consent checks with expiry
3. Cached preferences and invalidation
4. History, banner decision and statistics

============================================================
"""

import pytest
from datetime import datetime, timedelta, timezone


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def clock():
    from compliance_core.clock import MockClock

    return MockClock(datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def store():
    from compliance_core.store import InMemoryRecordStore

    return InMemoryRecordStore()


@pytest.fixture
def audit(store, clock):
    from compliance_core.audit import AuditService

    return AuditService(store, clock=clock)


@pytest.fixture
def consent(store, audit, clock):
    from compliance_core.consent import ConsentService

    return ConsentService(store, audit, clock=clock)


def grant(user_id="u-1", consent_type="marketing", **fields):
    return {"user_id": user_id, "consent_type": consent_type, "status": "granted", **fields}


# ============================================================
# DECISIONS
# ============================================================

class TestRecordConsent:
    """Tests for recording consent decisions."""

    @pytest.mark.asyncio
    async def test_grant(self, consent, store, clock):
        from compliance_core.models import ConsentType

        consent_id = await consent.record_consent(grant(ip_address="10.0.0.1"))
        row = await store.get("consent_records", consent_id)

        assert row["status"] == "granted"
        assert row["granted_at"] == clock.now()
        assert row["withdrawn_at"] is None
        assert await consent.has_consent(ConsentType.MARKETING, user_id="u-1")

    @pytest.mark.asyncio
    async def test_decision_is_audited(self, consent, audit):
        consent_id = await consent.record_consent(grant())

        logs = await audit.search_logs({"action": "consent_granted"})

        event = logs.logs[0]
        assert event.resource_type == "consent"
        assert event.resource_id == consent_id
        assert event.risk_level.value == "low"
        assert "consent_management" in event.compliance_flags
        assert "gdpr" in event.compliance_flags

    @pytest.mark.asyncio
    async def test_withdrawal_supersedes_grant(self, consent, store, audit, clock):
        from compliance_core.models import ConsentType

        grant_id = await consent.record_consent(grant())
        granted_row = await store.get("consent_records", grant_id)
        clock.advance(days=1)
        withdrawal_id = await consent.record_consent(grant(status="withdrawn"))

        withdrawal = await store.get("consent_records", withdrawal_id)

        assert await store.get("consent_records", grant_id) == granted_row
        assert withdrawal["withdrawn_at"] == clock.now()
        assert not await consent.has_consent(ConsentType.MARKETING, user_id="u-1")

        logs = await audit.search_logs({"action": "consent_withdrawn"})
        assert logs.logs[0].risk_level.value == "medium"

    @pytest.mark.asyncio
    async def test_denial_supersedes_grant(self, consent, store, clock):
        from compliance_core.models import ConsentType

        grant_id = await consent.record_consent(grant())
        clock.advance(minutes=5)
        denial_id = await consent.record_consent(grant(status="denied"))

        original = await store.get("consent_records", grant_id)
        assert original["withdrawn_at"] is None
        assert original["updated_at"] == clock.now() - timedelta(minutes=5)
        assert (await store.get("consent_records", denial_id))["withdrawn_at"] is None
        assert not await consent.has_consent(ConsentType.MARKETING, user_id="u-1")

    @pytest.mark.asyncio
    async def test_decisions_only_append(self, consent, store, clock):
        from unittest.mock import AsyncMock

        store.update = AsyncMock(side_effect=AssertionError("consent rows must not be updated"))

        await consent.record_consent(grant())
        clock.advance(minutes=1)
        await consent.record_consent(grant(status="withdrawn"))
        clock.advance(minutes=1)
        await consent.record_consent(grant(status="denied"))

        assert await store.count("consent_records") == 3
        store.update.assert_not_called()

    @pytest.mark.asyncio
    async def test_latest_consent(self, consent, clock):
        from compliance_core.models import ConsentStatus, ConsentType

        assert await consent.get_latest_consent(ConsentType.MARKETING, user_id="u-1") is None

        await consent.record_consent(grant())
        clock.advance(minutes=1)
        withdrawal_id = await consent.record_consent(grant(status="withdrawn"))

        latest = await consent.get_latest_consent(ConsentType.MARKETING, user_id="u-1")

        assert latest.consent_id == withdrawal_id
        assert latest.status == ConsentStatus.WITHDRAWN

    @pytest.mark.asyncio
    async def test_other_types_untouched(self, consent, store):
        from compliance_core.models import ConsentType

        await consent.record_consent(grant(consent_type="analytics"))
        await consent.record_consent(grant(status="withdrawn"))

        assert await consent.has_consent(ConsentType.ANALYTICS, user_id="u-1")

    @pytest.mark.asyncio
    async def test_regrant_after_withdrawal(self, consent, clock):
        from compliance_core.models import ConsentType

        await consent.record_consent(grant())
        clock.advance(minutes=1)
        await consent.record_consent(grant(status="withdrawn"))
        clock.advance(minutes=1)
        await consent.record_consent(grant())

        assert await consent.has_consent(ConsentType.MARKETING, user_id="u-1")

    @pytest.mark.asyncio
    async def test_expired_grant(self, consent, clock):
        from compliance_core.models import ConsentType

        await consent.record_consent(grant(expires_at=clock.now() + timedelta(days=30)))

        assert await consent.has_consent(ConsentType.MARKETING, user_id="u-1")
        clock.advance(days=31)
        assert not await consent.has_consent(ConsentType.MARKETING, user_id="u-1")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("subject", [
        {},
        {"user_id": "u-1", "patient_id": "p-1"},
    ])
    async def test_exactly_one_subject(self, consent, store, subject):
        from compliance_core.exceptions import ValidationError

        with pytest.raises(ValidationError):
            await consent.record_consent({"consent_type": "cookies", "status": "granted", **subject})

        assert await store.count("consent_records") == 0

    @pytest.mark.asyncio
    async def test_patient_subject(self, consent):
        from compliance_core.models import ConsentType

        await consent.record_consent({"patient_id": "p-1", "consent_type": "data_processing", "status": "granted"})

        assert await consent.has_consent(ConsentType.DATA_PROCESSING, patient_id="p-1")
        assert not await consent.has_consent(ConsentType.DATA_PROCESSING, user_id="p-1")


# ============================================================
# PREFERENCES
# ============================================================

class TestPreferences:
    """Tests for cached preferences."""

    @pytest.mark.asyncio
    async def test_defaults_to_no_consent(self, consent):
        preferences = await consent.get_consent_preferences(user_id="u-1")

        assert not any(preferences.to_dict().values())

    @pytest.mark.asyncio
    async def test_update_preferences(self, consent):
        ids = await consent.update_consent_preferences(
            {"marketing": True, "analytics": False},
            user_id="u-1",
        )

        preferences = await consent.get_consent_preferences(user_id="u-1")

        assert len(ids) == 2
        assert preferences.marketing is True
        assert preferences.analytics is False
        assert preferences.cookies is False

    @pytest.mark.asyncio
    async def test_unknown_preference_rejected(self, consent, store):
        from compliance_core.exceptions import ValidationError

        with pytest.raises(ValidationError):
            await consent.update_consent_preferences({"telepathy": True}, user_id="u-1")

        assert await store.count("consent_records") == 0

    @pytest.mark.asyncio
    async def test_cache_is_invalidated_by_writes(self, consent):
        assert (await consent.get_consent_preferences(user_id="u-1")).marketing is False

        await consent.record_consent(grant())

        assert (await consent.get_consent_preferences(user_id="u-1")).marketing is True

    @pytest.mark.asyncio
    async def test_cache_serves_repeated_reads(self, consent, store, clock):
        await consent.get_consent_preferences(user_id="u-1")
        store.seed("consent_records", [{
            "user_id": "u-1",
            "consent_type": "cookies",
            "status": "granted",
            "created_at": clock.now(),
        }])

        cached = await consent.get_consent_preferences(user_id="u-1")
        consent.clear_cache()
        fresh = await consent.get_consent_preferences(user_id="u-1")

        assert cached.cookies is False
        assert fresh.cookies is True

    @pytest.mark.asyncio
    async def test_returned_preferences_are_copies(self, consent):
        first = await consent.get_consent_preferences(user_id="u-1")
        first.marketing = True

        assert (await consent.get_consent_preferences(user_id="u-1")).marketing is False

    @pytest.mark.asyncio
    async def test_withdraw_all(self, consent):
        from compliance_core.models import ConsentType

        await consent.update_consent_preferences({t.value: True for t in ConsentType}, user_id="u-1")

        ids = await consent.withdraw_all_consents(user_id="u-1")
        preferences = await consent.get_consent_preferences(user_id="u-1")

        assert len(ids) == len(ConsentType)
        assert not any(preferences.to_dict().values())


# ============================================================
# READS
# ============================================================

class TestHistoryAndStatistics:
    """Tests for history, banner decision and statistics."""

    @pytest.mark.asyncio
    async def test_history_newest_first(self, consent, clock):
        await consent.record_consent(grant(consent_type="cookies"))
        clock.advance(minutes=1)
        await consent.record_consent(grant(consent_type="analytics"))
        await consent.record_consent(grant(user_id="u-2"))

        history = await consent.get_consent_history(user_id="u-1")

        assert [r.consent_type.value for r in history] == ["analytics", "cookies"]

    @pytest.mark.asyncio
    async def test_banner(self, consent):
        assert await consent.should_show_consent_banner()
        assert await consent.should_show_consent_banner(user_id="u-1")

        await consent.record_consent(grant(status="denied"))

        assert not await consent.should_show_consent_banner(user_id="u-1")

    @pytest.mark.asyncio
    async def test_statistics(self, consent):
        await consent.record_consent(grant())
        await consent.record_consent(grant(user_id="u-2", consent_type="cookies"))
        await consent.record_consent(grant(status="withdrawn"))

        stats = await consent.get_consent_statistics()

        assert stats["total_consents"] == 3
        assert stats["consents_by_type"]["marketing"] == 2
        assert stats["consents_by_type"]["third_party_sharing"] == 0
        assert stats["consents_by_status"] == {"granted": 2, "denied": 0, "pending": 0, "withdrawn": 1}
        assert len(stats["recent_consents"]) == 3

    def test_subject_key(self):
        from compliance_core.consent import subject_key
        from compliance_core.exceptions import ValidationError

        assert subject_key(user_id="u-1") == "user:u-1"
        assert subject_key(patient_id="p-1") == "patient:p-1"
        with pytest.raises(ValidationError):
            subject_key()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
