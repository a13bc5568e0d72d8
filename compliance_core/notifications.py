"""
Email Notification Senders.

============================================================
PURPOSE
============================================================
Outbound email for consent workflows and data subject requests.

PRINCIPLES:
- Fire-and-log: a failed send is reported, never retried here
- Senders return a result, they do not raise on delivery errors
- No recipient addresses in log messages

============================================================
"""

import html
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import aiohttp

from .config import ComplianceConfig
from .models import ConsentType, DataSubjectRequestType


logger = logging.getLogger(__name__)


@dataclass
class EmailMessage:
    to: str
    subject: str
    html: str
    text: str
    tags: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class EmailResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message_id": self.message_id,
            "error": self.error,
        }


# ============================================================
# PRIVACY EMAIL FORMATTER
# ============================================================

class PrivacyEmailFormatter:
    """
    Builds the consent workflow and data subject request emails.

    HTML bodies escape every interpolated value.
    """

    BUTTON_STYLE = "background: #2563eb; color: white; padding: 12px 24px; text-decoration: none; border-radius: 6px;"

    def __init__(self, privacy_center_url: str, product_name: str = "Clinic"):
        self._url = privacy_center_url
        self._product = product_name

    def _wrap(self, title: str, paragraphs: List[str], button: str, href: Optional[str] = None) -> str:
        body = "\n".join(f"<p>{p}</p>" for p in paragraphs)
        return (
            '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">\n'
            f'<h2 style="color: #2563eb;">{html.escape(title)}</h2>\n'
            f"{body}\n"
            f'<p><a href="{html.escape(href or self._url)}" style="{self.BUTTON_STYLE}">{html.escape(button)}</a></p>\n'
            f"<p>Best regards,<br>{html.escape(self._product)} Team</p>\n"
            "</div>"
        )

    @staticmethod
    def _type_list(consent_types: List[ConsentType]) -> str:
        return "<ul>" + "".join(f"<li>{html.escape(t.label)}</li>" for t in consent_types) + "</ul>"

    def expiration_reminder(
        self,
        to: str,
        consent_id: str,
        consent_type: ConsentType,
        expires_at: Optional[datetime],
    ) -> EmailMessage:
        expiry = expires_at.strftime("%Y-%m-%d") if expires_at else "soon"
        label = consent_type.label
        return EmailMessage(
            to=to,
            subject=f"Consent Expiration Reminder - {self._product}",
            html=self._wrap(
                "Consent Expiration Reminder",
                [
                    f"Your consent for <strong>{html.escape(label)}</strong> will expire on <strong>{expiry}</strong>.",
                    "To continue receiving our services, please renew your consent.",
                ],
                "Renew Consent",
            ),
            text=f"Your consent for {label} will expire on {expiry}. Please visit {self._url} to renew your consent.",
            tags=["consent-expiration"],
            metadata={"consent_id": consent_id, "consent_type": consent_type.value},
        )

    def renewal_request(
        self,
        to: str,
        user_id: str,
        first_name: Optional[str],
        consent_types: List[ConsentType],
    ) -> EmailMessage:
        name = first_name or "Valued User"
        labels = ", ".join(t.label for t in consent_types)
        return EmailMessage(
            to=to,
            subject=f"Consent Renewal Request - {self._product}",
            html=self._wrap(
                "Consent Renewal Request",
                [
                    f"Hello {html.escape(name)},",
                    "We would like to request your renewed consent for the following data processing activities:",
                    self._type_list(consent_types),
                    "Your privacy is important to us. Please review and update your consent preferences.",
                ],
                "Update Consent Preferences",
            ),
            text=(
                f"Hello {name}, we would like to request your renewed consent for: {labels}. "
                f"Please visit {self._url} to update your preferences."
            ),
            tags=["consent-renewal"],
            metadata={"user_id": user_id, "consent_types": [t.value for t in consent_types]},
        )

    def new_user_welcome(
        self,
        to: str,
        user_id: str,
        first_name: Optional[str],
        consent_types: List[ConsentType],
    ) -> EmailMessage:
        name = first_name or "New User"
        labels = ", ".join(t.label for t in consent_types)
        return EmailMessage(
            to=to,
            subject=f"Welcome! Please Set Your Consent Preferences - {self._product}",
            html=self._wrap(
                f"Welcome to {self._product}!",
                [
                    f"Hello {html.escape(name)},",
                    "To complete your registration, please set your consent preferences for:",
                    self._type_list(consent_types),
                ],
                "Set Consent Preferences",
            ),
            text=f"Welcome! Please set your consent preferences for: {labels}. Visit {self._url} to get started.",
            tags=["new-user-consent"],
            metadata={"user_id": user_id, "consent_types": [t.value for t in consent_types]},
        )

    def withdrawal_confirmation(
        self,
        to: str,
        consent_id: str,
        consent_type: ConsentType,
        withdrawn_at: Optional[datetime],
    ) -> EmailMessage:
        when = withdrawn_at.strftime("%Y-%m-%d") if withdrawn_at else "today"
        label = consent_type.label
        return EmailMessage(
            to=to,
            subject=f"Consent Withdrawal Confirmation - {self._product}",
            html=self._wrap(
                "Consent Withdrawal Confirmation",
                [
                    f"This email confirms that your consent for <strong>{html.escape(label)}</strong> has been withdrawn.",
                    f"<strong>Withdrawal Date:</strong> {when}",
                    "We will no longer process your data for this purpose, except where required by law.",
                ],
                "Privacy Center",
            ),
            text=(
                f"This confirms that your consent for {label} has been withdrawn on {when}. "
                f"Visit {self._url} to manage your preferences."
            ),
            tags=["consent-withdrawal"],
            metadata={"consent_id": consent_id, "consent_type": consent_type.value},
        )

    def data_subject_verification(
        self,
        to: str,
        request_id: str,
        request_type: DataSubjectRequestType,
        token: str,
        due_date: Optional[datetime],
    ) -> EmailMessage:
        link = f"{self._url}/requests/verify?{urlencode({'token': token})}"
        label = request_type.value
        due = due_date.strftime("%Y-%m-%d") if due_date else "within one month"
        return EmailMessage(
            to=to,
            subject=f"Confirm Your Data Request - {self._product}",
            html=self._wrap(
                "Confirm Your Data Request",
                [
                    f"We received a <strong>{html.escape(label)}</strong> request for your personal data.",
                    "Please confirm the request so we can verify your identity and start processing it.",
                    f"<strong>Response due by:</strong> {due}",
                    "If you did not make this request, you can ignore this email.",
                ],
                "Confirm Request",
                href=link,
            ),
            text=(
                f"We received a {label} request for your personal data. "
                f"Confirm it at {link}. We will respond by {due}."
            ),
            tags=["data-subject-verification"],
            metadata={"request_id": request_id, "request_type": label},
        )


# ============================================================
# SENDERS
# ============================================================

class EmailSender(ABC):
    """Email collaborator consumed by the workflow scheduler and the data subject service."""

    name: str = "email"

    @abstractmethod
    async def send_email(
        self,
        to: str,
        subject: str,
        html: str,
        text: str,
        tags: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> EmailResult:
        ...

    async def send(self, message: EmailMessage) -> EmailResult:
        return await self.send_email(
            message.to,
            message.subject,
            message.html,
            message.text,
            tags=message.tags,
            metadata=message.metadata,
        )

    async def close(self) -> None:
        return None


class LoggingEmailSender(EmailSender):
    """
    Dry-run sender.

    Used when no provider is configured. Every message is logged
    and reported as sent.
    """

    name = "log"

    def __init__(self):
        self.sent: List[EmailMessage] = []

    async def send_email(
        self,
        to: str,
        subject: str,
        html: str,
        text: str,
        tags: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> EmailResult:
        self.sent.append(EmailMessage(to, subject, html, text, list(tags or []), dict(metadata or {})))
        message_id = f"dry-run-{uuid.uuid4().hex[:12]}"
        logger.info(f"[dry-run] Email not sent: {subject} (tags={tags or []}, id={message_id})")
        return EmailResult(success=True, message_id=message_id)


class SendGridEmailSender(EmailSender):
    """
    Sends email through the SendGrid v3 HTTP API.

    A non-2xx response or a transport error is logged and
    returned as a failed result.
    """

    name = "sendgrid"

    BASE_URL = "https://api.sendgrid.com/v3/mail/send"

    def __init__(
        self,
        api_key: str,
        from_email: str,
        timeout_seconds: float = 10.0,
    ):
        if not api_key:
            raise ValueError("SendGrid API key is required")

        self._api_key = api_key
        self._from_email = from_email
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session: Optional[aiohttp.ClientSession] = None

        logger.info("SendGridEmailSender initialized")

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self._timeout,
                headers={"Authorization": f"Bearer {self._api_key}"},
            )
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    def _payload(
        self,
        to: str,
        subject: str,
        html: str,
        text: str,
        tags: Optional[List[str]],
        metadata: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": self._from_email},
            "subject": subject,
            "content": [
                {"type": "text/plain", "value": text},
                {"type": "text/html", "value": html},
            ],
        }
        if tags:
            payload["categories"] = list(tags)
        if metadata:
            # custom_args values must be strings
            payload["custom_args"] = {k: str(v) for k, v in metadata.items()}
        return payload

    async def send_email(
        self,
        to: str,
        subject: str,
        html: str,
        text: str,
        tags: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> EmailResult:
        payload = self._payload(to, subject, html, text, tags, metadata)

        try:
            session = await self._get_session()

            async with session.post(self.BASE_URL, json=payload) as response:
                if 200 <= response.status < 300:
                    message_id = response.headers.get("X-Message-Id") or f"sg_{uuid.uuid4().hex[:12]}"
                    logger.info(f"Email sent via SendGrid: {subject} (id={message_id})")
                    return EmailResult(success=True, message_id=message_id)

                body = await response.text()
                logger.error(f"SendGrid API error: {response.status} - {body}")
                return EmailResult(success=False, error=f"SendGrid API error {response.status}")

        except Exception as e:
            logger.error(f"Error sending email via SendGrid: {e}")
            return EmailResult(success=False, error=str(e))


def create_email_sender(config: Optional[ComplianceConfig] = None) -> EmailSender:
    """SendGrid sender when an API key is configured, dry-run sender otherwise."""
    config = config or ComplianceConfig.from_env()
    if config.sendgrid_api_key:
        return SendGridEmailSender(config.sendgrid_api_key, config.email_from)

    logger.warning("SENDGRID_API_KEY not set - consent emails will only be logged")
    return LoggingEmailSender()
