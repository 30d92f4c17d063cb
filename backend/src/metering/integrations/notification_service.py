"""Outbound SMS and email delivery."""
from typing import Protocol
from uuid import uuid4

import httpx
import structlog

from metering.config import Settings, settings as default_settings
from metering.models.user import User
from metering.utils.client_cache import ClientCache, client_cache

logger = structlog.get_logger(__name__)

SENDGRID_SEND_URL = "https://api.sendgrid.com/v3/mail/send"


class NotificationChannel(Protocol):
    """Delivers a text (optionally with media) to a user."""

    async def send(self, user: User, text: str, media_ref: str | None = None) -> str:
        """Return the provider delivery id."""
        ...


class AdminChannel(Protocol):
    """Delivers an email to an operator."""

    async def send_email(self, to: str, subject: str, body: str) -> str:
        """Return the provider message id."""
        ...


class NotificationService:
    """
    Sends SMS through Twilio and email through SendGrid.

    In mock mode nothing leaves the process; sends are logged and a
    synthetic id is returned. Provider errors propagate as
    ``httpx.HTTPError`` so callers can decide whether to retry.
    """

    def __init__(self, settings: Settings | None = None, clients: ClientCache | None = None):
        """
        Initialize notification service.

        Args:
            settings: Application settings (defaults to the global settings)
            clients: HTTP client cache
        """
        self.settings = settings or default_settings
        self.clients = clients or client_cache

    def _client(self, key: str, **kwargs):
        return self.clients.client(
            key,
            lambda: httpx.AsyncClient(timeout=self.settings.http_timeout_seconds, **kwargs),
        )

    async def send(self, user: User, text: str, media_ref: str | None = None) -> str:
        """
        Send an SMS/MMS to the user's phone number.

        Args:
            user: Recipient
            text: Message body
            media_ref: Optional public media URL

        Returns:
            Twilio message SID
        """
        if self.settings.notification_mock_mode:
            message_id = f"mock_sms_{uuid4().hex[:16]}"
            logger.info(
                "sms_notification",
                to=user.phone_number,
                message_length=len(text),
                has_media=media_ref is not None,
                message_id=message_id,
                provider="mock",
            )
            return message_id

        form = {"To": user.phone_number, "Body": text}
        if self.settings.twilio_messaging_service_sid:
            form["MessagingServiceSid"] = self.settings.twilio_messaging_service_sid
        else:
            form["From"] = self.settings.twilio_from_number
        if media_ref:
            form["MediaUrl"] = media_ref

        async with self._client(
            f"twilio:{self.settings.twilio_account_sid}",
            auth=(self.settings.twilio_account_sid, self.settings.twilio_auth_token),
        ) as client:
            response = await client.post(
                f"{self.settings.twilio_api_base_url}/Accounts/{self.settings.twilio_account_sid}/Messages.json",
                data=form,
            )
        response.raise_for_status()
        message_id = response.json()["sid"]

        logger.info("sms_notification", to=user.phone_number, message_id=message_id, provider="twilio")
        return message_id

    async def send_email(self, to: str, subject: str, body: str) -> str:
        """
        Send a plain text email.

        Args:
            to: Recipient email address
            subject: Email subject
            body: Plain text body

        Returns:
            Provider message id
        """
        if self.settings.notification_mock_mode or not self.settings.sendgrid_api_key:
            message_id = f"mock_email_{uuid4().hex[:16]}"
            logger.info("email_notification", to=to, subject=subject, message_id=message_id, provider="mock")
            return message_id

        async with self._client(
            "sendgrid",
            headers={"Authorization": f"Bearer {self.settings.sendgrid_api_key}"},
        ) as client:
            response = await client.post(
                SENDGRID_SEND_URL,
                json={
                    "personalizations": [{"to": [{"email": to}]}],
                    "from": {"email": self.settings.alert_sender_email},
                    "subject": subject,
                    # CRLF line endings for mail transport
                    "content": [{"type": "text/plain", "value": body.replace("\n", "\r\n")}],
                },
            )
        response.raise_for_status()
        message_id = response.headers.get("X-Message-Id", "")

        logger.info("email_notification", to=to, subject=subject, message_id=message_id, provider="sendgrid")
        return message_id
