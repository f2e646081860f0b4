# provisioning/core/email.py
from __future__ import annotations

import asyncio
import logging
import smtplib
from email.message import EmailMessage
from typing import Optional

import httpx

from provisioning.core.config import Settings
from provisioning.core.errors import DeliveryError

logger = logging.getLogger("provisioning")

RESEND_API_URL = "https://api.resend.com/emails"


class EmailSender:
    """
    Unified email send.

    Provider selection (EMAIL_PROVIDER):
      - resend -> Resend REST API over httpx
      - smtp   -> SMTP using SMTP_* settings (blocking, pushed to a thread)
      - log    -> write the message to the log

    Unlike a best-effort notifier this raises DeliveryError on failure: the
    verification flow must tell the caller the secret never left the building.
    VERIFICATION_EMAIL_OVERRIDE redirects every message to one inbox.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ) -> None:
        self.settings = settings
        self.provider = (settings.email_provider or "log").strip().lower()
        self.override = settings.verification_email_override
        self._http_client = http_client
        self._timeout = timeout

    def _recipient(self, to_email: str) -> str:
        return self.override or to_email

    async def send_email(
        self,
        *,
        to_email: str,
        subject: str,
        text_body: str,
        html_body: Optional[str] = None,
    ) -> None:
        to_email = (to_email or "").strip()
        if not to_email:
            raise DeliveryError("email", "", "missing recipient")

        recipient = self._recipient(to_email)

        if self.provider == "resend":
            await self._send_resend(recipient, subject, text_body, html_body)
        elif self.provider == "smtp":
            await asyncio.to_thread(self._send_smtp, recipient, subject, text_body, html_body)
        else:
            self._log_email(recipient, subject, text_body, html_body)

    async def _send_resend(
        self,
        to_email: str,
        subject: str,
        text_body: str,
        html_body: Optional[str],
    ) -> None:
        api_key = self.settings.resend_api_key
        if not api_key:
            raise DeliveryError("email", to_email, "RESEND_API_KEY is not set")

        payload = {
            "from": self.settings.effective_email_from,
            "to": [to_email],
            "subject": subject,
            "text": text_body,
        }
        if html_body:
            payload["html"] = html_body

        headers = {"Authorization": f"Bearer {api_key}"}

        try:
            if self._http_client is not None:
                response = await self._http_client.post(RESEND_API_URL, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(RESEND_API_URL, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            logger.error("Resend request failed to=%s error=%s", to_email, exc)
            raise DeliveryError("email", to_email, "provider unreachable") from exc

        if response.status_code >= 400:
            logger.error("Resend HTTP error status=%s body=%s", response.status_code, response.text[:500])
            raise DeliveryError("email", to_email, f"provider returned {response.status_code}")

        logger.info("Email sent via Resend to=%s subject=%s", to_email, subject)

    def _send_smtp(
        self,
        to_email: str,
        subject: str,
        text_body: str,
        html_body: Optional[str],
    ) -> None:
        s = self.settings
        if not (s.smtp_host and s.smtp_user and s.smtp_password):
            raise DeliveryError("email", to_email, "SMTP_* settings are not fully configured")

        msg = EmailMessage()
        msg["From"] = s.email_from
        msg["To"] = to_email
        msg["Subject"] = subject
        msg.set_content(text_body)
        if html_body:
            msg.add_alternative(html_body, subtype="html")

        try:
            with smtplib.SMTP(s.smtp_host, s.smtp_port, timeout=self._timeout) as server:
                if s.smtp_use_tls:
                    server.starttls()
                server.login(s.smtp_user, s.smtp_password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("SMTP send failed to=%s error=%s", to_email, exc)
            raise DeliveryError("email", to_email, "smtp failure") from exc

        logger.info("Email sent via SMTP to=%s subject=%s", to_email, subject)

    def _log_email(
        self,
        to_email: str,
        subject: str,
        text_body: str,
        html_body: Optional[str],
    ) -> None:
        logger.info("EMAIL (log mode) to=%s subject=%s\n%s", to_email, subject, text_body)
        if html_body:
            logger.debug("EMAIL (log mode) html=%s", html_body)
