from __future__ import annotations

import logging
from typing import Optional, Protocol

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from leaselogix.core.config import Settings, get_settings

logger = logging.getLogger(__name__)


class NotificationResult:
    def __init__(self, success: bool, detail: str = "") -> None:
        self.success = success
        self.detail = detail


class NotificationSender(Protocol):
    async def send(self, recipient: str, subject: str, body: str) -> NotificationResult:
        ...


class _RetryableStatus(Exception):
    """Twilio answered 429 or 5xx."""


class SMSSender:
    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    @property
    def configured(self) -> bool:
        s = self.settings
        return bool(s.sms_twilio_account_sid and s.sms_twilio_auth_token and s.sms_twilio_from_number)

    async def send(self, recipient: str, subject: str, body: str) -> NotificationResult:
        if not self.configured:
            return NotificationResult(False, "Twilio credentials not configured")

        settings = self.settings
        url = f"https://api.twilio.com/2010-04-01/Accounts/{settings.sms_twilio_account_sid}/Messages.json"
        data = {
            "To": recipient,
            "From": settings.sms_twilio_from_number,
            "Body": f"{subject}\n{body}".strip(),
        }

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(settings.transport_max_attempts),
                wait=wait_exponential(multiplier=settings.transport_backoff_seconds, min=0.1, max=10),
                retry=retry_if_exception_type((httpx.TransportError, _RetryableStatus)),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            ):
                with attempt:
                    response = await self._post(url, data)
        except (httpx.TransportError, _RetryableStatus) as exc:
            logger.error("Twilio SMS failed after retries", extra={"recipient": recipient, "error": str(exc)})
            return NotificationResult(False, f"Twilio failure: {exc}")

        if response.status_code in (200, 201):
            return NotificationResult(True, "SMS accepted by Twilio")
        logger.error("Twilio SMS failed", extra={"status": response.status_code, "body": response.text})
        return NotificationResult(False, f"Twilio failure: {response.text}")

    async def _post(self, url: str, data: dict) -> httpx.Response:
        settings = self.settings
        async with httpx.AsyncClient() as client:
            response = await client.post(
                url,
                data=data,
                auth=(settings.sms_twilio_account_sid, settings.sms_twilio_auth_token),
                timeout=10,
            )
        if response.status_code == 429 or response.status_code >= 500:
            raise _RetryableStatus(f"HTTP {response.status_code}")
        return response
