import logging
import smtplib
from datetime import datetime, timezone

import httpx
import pytest

from leaselogix.core.errors import TransportError
from leaselogix.services.email import EmailService, MailTransportHandle
from leaselogix.services.notifications import SMSSender, _RetryableStatus


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def smtp_settings(settings):
    return settings.model_copy(update={
        "smtp_host": "smtp.example.com",
        "smtp_username": "mailer",
        "smtp_password": "secret",
        "email_transport_ttl_seconds": 100,
    })


@pytest.fixture
def gmail_settings(smtp_settings):
    return smtp_settings.model_copy(update={
        "gmail_client_id": "client",
        "gmail_client_secret": "client-secret",
        "gmail_refresh_token": "refresh",
        "email_transport_ttl_seconds": 3000,
    })


async def test_transport_is_cached_until_ttl(smtp_settings):
    clock = FakeClock()
    handle = MailTransportHandle(smtp_settings, clock=clock)

    first = await handle.get()
    assert first.auth_mode == "password"
    assert await handle.get() is first

    clock.now += 99
    assert await handle.get() is first

    clock.now += 2
    assert await handle.get() is not first


async def test_invalidate_forces_rebuild(smtp_settings):
    handle = MailTransportHandle(smtp_settings, clock=FakeClock())

    first = await handle.get()
    handle.invalidate("test")
    assert await handle.get() is not first


async def test_gmail_token_ttl_caps_transport_lifetime(gmail_settings, monkeypatch):
    clock = FakeClock()
    handle = MailTransportHandle(gmail_settings, clock=clock)
    calls = []

    async def fake_fetch():
        calls.append(clock.now)
        return "access-token", 600

    monkeypatch.setattr(handle, "_fetch_access_token", fake_fetch)

    transport = await handle.get()
    await handle.get()

    assert transport.auth_mode == "xoauth2"
    assert transport.secret == "access-token"
    assert transport.expires_at == clock.now + 540
    assert len(calls) == 1


async def test_revoked_refresh_token_is_not_retried(gmail_settings, monkeypatch):
    real_client = httpx.AsyncClient

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": "invalid_grant"})

    monkeypatch.setattr(
        httpx, "AsyncClient", lambda *args, **kwargs: real_client(transport=httpx.MockTransport(handler))
    )
    handle = MailTransportHandle(gmail_settings, clock=FakeClock())

    with pytest.raises(TransportError) as exc:
        await handle.get()
    assert exc.value.code == "invalid_grant"

    service = EmailService(gmail_settings, transport=handle)
    assert await service.send("a@example.com", "Hi", "<p>Hi</p>", "Hi") is False


async def test_auth_failure_invalidates_transport(smtp_settings, monkeypatch):
    handle = MailTransportHandle(smtp_settings, clock=FakeClock())

    def reject(transport, message):
        raise smtplib.SMTPAuthenticationError(535, b"bad credentials")

    monkeypatch.setattr(handle, "_send_sync", reject)
    await handle.get()

    with pytest.raises(smtplib.SMTPAuthenticationError):
        await handle.send(object())
    assert handle._transport is None


class FlakyTransport:
    configured = True

    def __init__(self, failures: int):
        self.failures = failures
        self.attempts = 0

    async def send(self, message):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise smtplib.SMTPServerDisconnected("connection dropped")


async def test_send_retries_transient_failures(settings):
    transport = FlakyTransport(failures=1)
    service = EmailService(settings.model_copy(update={"transport_max_attempts": 3}), transport=transport)

    assert await service.send("a@example.com", "Hi", "<p>Hi</p>", "Hi") is True
    assert transport.attempts == 2


async def test_send_gives_up_after_max_attempts(settings):
    transport = FlakyTransport(failures=10)
    service = EmailService(settings.model_copy(update={"transport_max_attempts": 3}), transport=transport)

    assert await service.send("a@example.com", "Hi", "<p>Hi</p>", "Hi") is False
    assert transport.attempts == 3


async def test_console_mode_never_logs_the_token(settings, caplog):
    console_settings = settings.model_copy(update={"smtp_host": None})
    service = EmailService(console_settings, transport=MailTransportHandle(console_settings))

    with caplog.at_level(logging.INFO):
        sent = await service.send_invitation(
            email="tia@example.com",
            token="secret-token-value",
            roles=["tenant"],
            inviter_name="Owner Test",
            expires_at=datetime(2030, 1, 1, tzinfo=timezone.utc),
            property_name="Maple Court",
            unit_name="1A",
        )

    assert sent is True
    assert "tia@example.com" in caplog.text
    assert "secret-token-value" not in caplog.text


async def test_sms_without_credentials(settings):
    sender = SMSSender(settings.model_copy(update={"sms_twilio_account_sid": None}))

    result = await sender.send("+15550100", "Hello", "body")
    assert result.success is False


async def test_sms_retries_on_server_errors(settings, monkeypatch):
    sender = SMSSender(settings.model_copy(update={
        "sms_twilio_account_sid": "AC123",
        "sms_twilio_auth_token": "token",
        "sms_twilio_from_number": "+15550000",
    }))
    calls = []

    async def fake_post(url, data):
        calls.append(data)
        if len(calls) == 1:
            raise _RetryableStatus("HTTP 503")
        return httpx.Response(201, json={"sid": "SM1"})

    monkeypatch.setattr(sender, "_post", fake_post)

    result = await sender.send("+15550100", "Hello", "https://app.example/accept-invite/abc")
    assert result.success is True
    assert len(calls) == 2
    assert calls[0]["To"] == "+15550100"
    assert calls[0]["Body"] == "Hello\nhttps://app.example/accept-invite/abc"
