"""
Tests for consent emails and email senders.
"""

import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import aiohttp


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def formatter():
    from compliance_core.notifications import PrivacyEmailFormatter

    return PrivacyEmailFormatter("https://clinic.example/privacy", product_name="Smile Clinic")


def mock_session(status=202, headers=None, body=""):
    """aiohttp session whose post() yields a canned response."""
    response = MagicMock()
    response.status = status
    response.headers = headers or {}
    response.text = AsyncMock(return_value=body)

    session = MagicMock()
    session.closed = False
    session.close = AsyncMock()
    session.post.return_value.__aenter__ = AsyncMock(return_value=response)
    session.post.return_value.__aexit__ = AsyncMock(return_value=False)
    return session


# ============================================================
# FORMATTER
# ============================================================

class TestPrivacyEmailFormatter:
    """Tests for the consent and data subject email bodies."""

    def test_expiration_reminder(self, formatter):
        from compliance_core.models import ConsentType

        message = formatter.expiration_reminder(
            "ann@example.com", "c-1", ConsentType.THIRD_PARTY_SHARING,
            datetime(2026, 7, 1, tzinfo=timezone.utc),
        )

        assert message.to == "ann@example.com"
        assert message.subject == "Consent Expiration Reminder - Smile Clinic"
        assert "third party sharing" in message.text
        assert "2026-07-01" in message.html
        assert message.metadata == {"consent_id": "c-1", "consent_type": "third_party_sharing"}

    def test_renewal_escapes_names(self, formatter):
        from compliance_core.models import ConsentType

        message = formatter.renewal_request(
            "x@example.com", "u-1", "<b>Eve</b>", [ConsentType.MARKETING, ConsentType.COOKIES],
        )

        assert "&lt;b&gt;Eve&lt;/b&gt;" in message.html
        assert "<b>Eve</b>" not in message.html
        assert "<li>marketing</li><li>cookies</li>" in message.html
        assert "marketing, cookies" in message.text
        assert message.tags == ["consent-renewal"]

    def test_default_greetings(self, formatter):
        from compliance_core.models import ConsentType

        renewal = formatter.renewal_request("x@example.com", "u-1", None, [ConsentType.ANALYTICS])
        welcome = formatter.new_user_welcome("x@example.com", "u-1", None, [ConsentType.ANALYTICS])

        assert "Hello Valued User" in renewal.text
        assert "Hello New User" in welcome.html
        assert "Welcome to Smile Clinic!" in welcome.html

    def test_withdrawal_without_date(self, formatter):
        from compliance_core.models import ConsentType

        message = formatter.withdrawal_confirmation("x@example.com", "c-9", ConsentType.ANALYTICS, None)

        assert "withdrawn on today" in message.text
        assert message.tags == ["consent-withdrawal"]

    def test_data_subject_verification_links_token(self, formatter):
        from compliance_core.models import DataSubjectRequestType

        message = formatter.data_subject_verification(
            "pat@example.com", "r-1", DataSubjectRequestType.ERASURE, "tok_abc-123",
            datetime(2026, 7, 1, tzinfo=timezone.utc),
        )

        link = "https://clinic.example/privacy/requests/verify?token=tok_abc-123"
        assert message.subject == "Confirm Your Data Request - Smile Clinic"
        assert f'href="{link}"' in message.html
        assert link in message.text
        assert "2026-07-01" in message.text
        assert message.metadata == {"request_id": "r-1", "request_type": "erasure"}
        assert message.tags == ["data-subject-verification"]


# ============================================================
# SENDERS
# ============================================================

class TestLoggingEmailSender:
    """Tests for the dry-run sender."""

    @pytest.mark.asyncio
    async def test_records_and_succeeds(self, formatter):
        from compliance_core.models import ConsentType
        from compliance_core.notifications import LoggingEmailSender

        sender = LoggingEmailSender()
        result = await sender.send(formatter.expiration_reminder("a@example.com", "c-1", ConsentType.COOKIES, None))

        assert result.success
        assert result.message_id.startswith("dry-run-")
        assert len(sender.sent) == 1
        assert sender.sent[0].tags == ["consent-expiration"]


class TestSendGridEmailSender:
    """Tests for the SendGrid sender with a mocked HTTP session."""

    def test_requires_api_key(self):
        from compliance_core.notifications import SendGridEmailSender

        with pytest.raises(ValueError):
            SendGridEmailSender("", "privacy@clinic.example")

    def test_payload(self):
        from compliance_core.notifications import SendGridEmailSender

        sender = SendGridEmailSender("key", "privacy@clinic.example")
        payload = sender._payload("a@example.com", "Subject", "<p>hi</p>", "hi", ["t"], {"n": 1})

        assert payload["personalizations"] == [{"to": [{"email": "a@example.com"}]}]
        assert payload["from"] == {"email": "privacy@clinic.example"}
        assert payload["content"][0] == {"type": "text/plain", "value": "hi"}
        assert payload["categories"] == ["t"]
        assert payload["custom_args"] == {"n": "1"}

    @pytest.mark.asyncio
    async def test_accepted(self):
        from compliance_core.notifications import SendGridEmailSender

        sender = SendGridEmailSender("key", "privacy@clinic.example")
        session = mock_session(status=202, headers={"X-Message-Id": "sg-123"})
        sender._session = session

        result = await sender.send_email("a@example.com", "Subject", "<p>hi</p>", "hi")

        assert result.success
        assert result.message_id == "sg-123"
        url = session.post.call_args[0][0]
        assert url == SendGridEmailSender.BASE_URL

    @pytest.mark.asyncio
    async def test_rejected(self):
        from compliance_core.notifications import SendGridEmailSender

        sender = SendGridEmailSender("key", "privacy@clinic.example")
        sender._session = mock_session(status=400, body='{"errors": []}')

        result = await sender.send_email("a@example.com", "Subject", "<p>hi</p>", "hi")

        assert not result.success
        assert result.error == "SendGrid API error 400"

    @pytest.mark.asyncio
    async def test_transport_error(self):
        from compliance_core.notifications import SendGridEmailSender

        sender = SendGridEmailSender("key", "privacy@clinic.example")
        session = mock_session()
        session.post.side_effect = aiohttp.ClientError("connection reset")
        sender._session = session

        result = await sender.send_email("a@example.com", "Subject", "<p>hi</p>", "hi")

        assert not result.success
        assert "connection reset" in result.error

    @pytest.mark.asyncio
    async def test_close(self):
        from compliance_core.notifications import SendGridEmailSender

        sender = SendGridEmailSender("key", "privacy@clinic.example")
        session = mock_session()
        sender._session = session

        await sender.close()

        session.close.assert_awaited_once()
        assert sender._session is None


class TestCreateEmailSender:
    """Tests for sender selection from configuration."""

    def test_dry_run_without_key(self):
        from compliance_core.config import ComplianceConfig
        from compliance_core.notifications import LoggingEmailSender, create_email_sender

        assert isinstance(create_email_sender(ComplianceConfig()), LoggingEmailSender)

    def test_sendgrid_with_key(self):
        from compliance_core.config import ComplianceConfig
        from compliance_core.notifications import SendGridEmailSender, create_email_sender

        sender = create_email_sender(ComplianceConfig(sendgrid_api_key="key"))

        assert isinstance(sender, SendGridEmailSender)
        assert sender.name == "sendgrid"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
