"""
Tests for email templates and delivery
"""
import json

import httpx
import pytest

from services import email_service
from services.email_service import EmailService, notify, render_template
from utils.errors import NotificationError


def test_render_template():
    subject, body = render_template("paymentReceipt", {
        "name": "Thandi",
        "amount": "R450.00",
        "planName": "MOMENTUM",
        "date": "2026-10-18",
        "transactionId": "adumo_txn_1",
    })
    assert subject == "Payment receipt for your Opian Lifestyle subscription"
    assert "R450.00" in body
    assert "adumo_txn_1" in body


def test_render_template_errors():
    with pytest.raises(NotificationError, match="not found"):
        render_template("newsletter", {})
    with pytest.raises(NotificationError, match="missing value"):
        render_template("welcome", {"name": "Thandi"})


@pytest.mark.asyncio
async def test_unconfigured_smtp_is_an_error():
    service = EmailService()
    service.smtp_user = None
    with pytest.raises(NotificationError, match="not configured"):
        await service.send("welcome", {"name": "Thandi", "loginUrl": "http://localhost:5000/auth"}, "t@example.com")


@pytest.mark.asyncio
async def test_sendgrid_delivery(monkeypatch):
    captured = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(202, headers={"X-Message-Id": "msg-1"})

    real_client = httpx.AsyncClient
    monkeypatch.setattr(
        email_service.httpx,
        "AsyncClient",
        lambda **kwargs: real_client(transport=httpx.MockTransport(handler), **kwargs),
    )

    service = EmailService()
    service.sendgrid_key = "SG.test"
    result = await service.send("welcome", {"name": "Thandi", "loginUrl": "http://localhost:5000/auth"}, "t@example.com")

    assert result == {"status": "sent", "message_id": "msg-1", "to": "t@example.com"}
    assert captured[0].headers["Authorization"] == "Bearer SG.test"
    payload = json.loads(captured[0].content)
    assert payload["personalizations"] == [{"to": [{"email": "t@example.com"}]}]
    assert payload["subject"] == "Welcome to Opian Lifestyle"


@pytest.mark.asyncio
async def test_notify_swallows_failures():
    class BrokenMailer:
        async def send(self, template_name, data, to):
            raise NotificationError("SMTP unavailable")

    assert await notify("welcome", {}, "t@example.com", BrokenMailer()) is False


def test_render_template_escapes_user_values():
    subject, body = render_template("welcome", {
        "name": '<script>alert("x")</script>',
        "loginUrl": "http://localhost:5000/auth?next=/dashboard&tab=plans",
    })
    assert "<script>" not in body
    assert "&lt;script&gt;alert(&quot;x&quot;)&lt;/script&gt;" in body
    assert "next=/dashboard&amp;tab=plans" in body
    assert "<p>" in body
