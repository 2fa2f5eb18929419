"""
Email service for invitation mail.

Delivery goes through one process-wide ``MailTransportHandle``:
1. Gmail OAuth2 (XOAUTH2) - set GMAIL_CLIENT_ID, GMAIL_CLIENT_SECRET, GMAIL_REFRESH_TOKEN
2. SMTP password login - set SMTP_HOST, SMTP_USERNAME, SMTP_PASSWORD
3. Console logging (development) - when SMTP_HOST is not set

The handle caches the resolved transport (including the OAuth access token)
for EMAIL_TRANSPORT_TTL_SECONDS and drops it on authentication errors.
"""

import asyncio
import base64
import logging
import smtplib
import time
from dataclasses import dataclass
from datetime import datetime
from email.message import EmailMessage
from functools import lru_cache
from html import escape
from typing import Callable, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from leaselogix.core.config import Settings, get_settings
from leaselogix.core.errors import TransportError

logger = logging.getLogger(__name__)

ROLE_LABELS = {
    "landlord": "Landlord",
    "property_manager": "Property Manager",
    "tenant": "Tenant",
    "vendor_access": "Vendor",
    "admin_access": "Administrator",
}

# Errors worth another attempt; TransportError("invalid_grant") is not one of them
RETRYABLE_ERRORS = (smtplib.SMTPException, OSError, httpx.HTTPError)


@dataclass
class MailTransport:
    host: str
    port: int
    username: Optional[str]
    use_tls: bool
    # "xoauth2" | "password"
    auth_mode: str
    secret: Optional[str]
    expires_at: float


class MailTransportHandle:
    """Process-wide SMTP transport, cached with a TTL and invalidated on auth errors."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or get_settings()
        self._clock = clock
        self._transport: Optional[MailTransport] = None
        self._lock = asyncio.Lock()

    @property
    def configured(self) -> bool:
        return bool(self.settings.smtp_host)

    async def get(self) -> MailTransport:
        transport = self._transport
        if transport is not None and transport.expires_at > self._clock():
            return transport

        async with self._lock:
            transport = self._transport
            if transport is None or transport.expires_at <= self._clock():
                transport = await self._build()
                self._transport = transport
            return transport

    def invalidate(self, reason: str) -> None:
        if self._transport is not None:
            logger.warning("Mail transport invalidated: %s", reason)
        self._transport = None

    async def send(self, message: EmailMessage) -> None:
        transport = await self.get()
        try:
            await asyncio.to_thread(self._send_sync, transport, message)
        except smtplib.SMTPAuthenticationError as exc:
            self.invalidate(f"SMTP authentication failed ({exc.smtp_code})")
            raise

    async def _build(self) -> MailTransport:
        settings = self.settings
        ttl = float(settings.email_transport_ttl_seconds)

        if settings.gmail_oauth_enabled:
            access_token, expires_in = await self._fetch_access_token()
            # Expire the cached transport before Google expires the token
            ttl = min(ttl, max(float(expires_in) - 60.0, 0.0))
            return MailTransport(
                host=settings.smtp_host or "smtp.gmail.com",
                port=settings.smtp_port,
                username=settings.smtp_username or settings.email_from,
                use_tls=settings.smtp_use_tls,
                auth_mode="xoauth2",
                secret=access_token,
                expires_at=self._clock() + ttl,
            )

        return MailTransport(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_username,
            use_tls=settings.smtp_use_tls,
            auth_mode="password",
            secret=settings.smtp_password,
            expires_at=self._clock() + ttl,
        )

    async def _fetch_access_token(self) -> tuple[str, int]:
        settings = self.settings
        data = {
            "client_id": settings.gmail_client_id,
            "client_secret": settings.gmail_client_secret,
            "refresh_token": settings.gmail_refresh_token,
            "grant_type": "refresh_token",
        }
        async with httpx.AsyncClient() as client:
            response = await client.post(settings.gmail_token_url, data=data, timeout=10)

        if response.status_code == 200:
            payload = response.json()
            return payload["access_token"], int(payload.get("expires_in", 3600))

        error = ""
        try:
            error = response.json().get("error", "")
        except ValueError:
            pass
        if error == "invalid_grant":
            logger.error("Gmail refresh token was revoked or expired; email delivery is disabled until it is replaced")
            raise TransportError("Email credentials are no longer valid", code="invalid_grant")
        logger.error("Gmail token refresh failed", extra={"status": response.status_code, "body": response.text})
        raise httpx.HTTPStatusError(
            f"Token endpoint returned {response.status_code}", request=response.request, response=response
        )

    @staticmethod
    def _send_sync(transport: MailTransport, message: EmailMessage) -> None:
        with smtplib.SMTP(transport.host, transport.port, timeout=15) as server:
            if transport.use_tls:
                server.starttls()
            if transport.auth_mode == "xoauth2":
                auth_string = f"user={transport.username}\x01auth=Bearer {transport.secret}\x01\x01"
                server.ehlo()
                code, response = server.docmd(
                    "AUTH", "XOAUTH2 " + base64.b64encode(auth_string.encode()).decode()
                )
                if code != 235:
                    raise smtplib.SMTPAuthenticationError(code, response)
            elif transport.username and transport.secret:
                server.login(transport.username, transport.secret)
            server.send_message(message)


@lru_cache(maxsize=1)
def get_mail_transport() -> MailTransportHandle:
    return MailTransportHandle()


class EmailService:
    """Renders and delivers invitation mail with bounded retries."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[MailTransportHandle] = None,
    ):
        self.settings = settings or get_settings()
        self.transport = transport or get_mail_transport()

    async def send_invitation(
        self,
        email: str,
        token: str,
        roles: list[str],
        inviter_name: str,
        expires_at: datetime,
        property_name: Optional[str] = None,
        unit_name: Optional[str] = None,
        message: Optional[str] = None,
    ) -> bool:
        """
        Send an invitation email carrying the accept link.

        Returns:
            bool: True if the email was delivered (or logged in console mode)
        """
        invite_link = self.settings.invitation_link(token)
        role_text = ", ".join(ROLE_LABELS.get(role, role) for role in roles)
        place = property_name or "LeaseLogix"
        if unit_name:
            place = f"{place}, unit {unit_name}"
        expires_formatted = expires_at.strftime("%B %d, %Y at %I:%M %p UTC")

        subject = f"You're invited to {place} on LeaseLogix"

        message_text = ""
        message_section = ""
        if message:
            message_text = f'\nPersonal message from {inviter_name}:\n"{message}"\n'
            message_section = (
                '<div style="border-left: 4px solid #0f766e; padding: 12px; margin: 20px 0;">'
                f'<p style="margin: 0; font-style: italic;">"{escape(message)}"</p></div>'
            )

        text_content = f"""
{inviter_name} has invited you to join {place} on LeaseLogix as: {role_text}.
{message_text}
Accept the invitation:
{invite_link}

This invitation expires on {expires_formatted}.
If you were not expecting this invitation, you can ignore this email.
"""

        html_content = f"""
<!DOCTYPE html>
<html>
<body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
    <div style="max-width: 600px; margin: 0 auto; padding: 20px;">
        <h1 style="color: #0f766e;">You're invited to {escape(place)}</h1>
        <p>{escape(inviter_name)} has invited you to join LeaseLogix as <strong>{escape(role_text)}</strong>.</p>
        {message_section}
        <p style="text-align: center; margin: 30px 0;">
            <a href="{invite_link}" style="background-color: #0f766e; color: white; padding: 12px 24px; text-decoration: none; border-radius: 6px;">Accept invitation</a>
        </p>
        <p style="font-size: 12px; color: #6b7280;">This invitation expires on {expires_formatted}.
        If you were not expecting this invitation, you can ignore this email.</p>
    </div>
</body>
</html>
"""
        return await self.send(email, subject, html_content, text_content)

    async def send(
        self,
        to_email: str,
        subject: str,
        html_content: str,
        text_content: str,
    ) -> bool:
        """Deliver one message; failures after the last retry are logged, not raised."""
        if not self.transport.configured:
            return self._send_via_console(to_email, subject)

        message = EmailMessage()
        message["From"] = f"{self.settings.email_from_name} <{self.settings.email_from}>"
        message["To"] = to_email
        message["Subject"] = subject
        message.set_content(text_content)
        message.add_alternative(html_content, subtype="html")

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.settings.transport_max_attempts),
                wait=wait_exponential(multiplier=self.settings.transport_backoff_seconds, min=0.1, max=10),
                retry=retry_if_exception_type(RETRYABLE_ERRORS),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            ):
                with attempt:
                    await self.transport.send(message)
        except (TransportError, *RETRYABLE_ERRORS) as exc:
            logger.error("Email to %s failed after retries: %s", to_email, exc)
            return False

        logger.info("Email sent to %s: %s", to_email, subject)
        return True

    def _send_via_console(self, to_email: str, subject: str) -> bool:
        """Development mode. The body is not logged because it carries the invitation token."""
        logger.warning("Email logged to console (no provider configured): to=%s subject=%s", to_email, subject)
        return True
