import asyncio

import httpx
import pytest

from signal_scan.backend.services import notifications
from signal_scan.backend.services.notifications import (
    NotificationError,
    ResendChannel,
    build_customer_email,
    build_owner_email,
    retry_completion_emails,
    send_completion_emails,
)
from signal_scan.database import crud


class FlakyChannel:
    """Fails every send whose recipient is listed in ``failing``."""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.sent = []

    async def send(self, to, subject, text):
        key = to if isinstance(to, str) else ",".join(to)
        if key in self.failing:
            raise RuntimeError(f"send to {key} failed")
        self.sent.append((key, subject, text))


@pytest.fixture
def completed_submission(db, pending_submission, scan_output):
    crud.finalize_submission(db, sub_id=pending_submission.id, status="complete", fields={"outputs": scan_output})
    return crud.get_submission(db, sub_id=pending_submission.id)


def test_customer_failure_is_retried_alone(db, completed_submission):
    channel = FlakyChannel(failing={"test@example.com"})
    status = asyncio.run(send_completion_emails(db, completed_submission, channel=channel))

    assert status.get("customer_sent_at") is None
    assert status["owner_sent_at"]
    assert "send to test@example.com failed" in status["last_error"]
    assert [key for key, _, _ in channel.sent] == ["owner@example.com,ops@example.com"]

    record = crud.get_submission(db, sub_id=completed_submission.id)
    owner_sent_at = record.email_status["owner_sent_at"]

    channel.failing.clear()
    channel.sent.clear()
    asyncio.run(send_completion_emails(db, record, channel=channel))

    record = crud.get_submission(db, sub_id=completed_submission.id)
    assert [key for key, _, _ in channel.sent] == ["test@example.com"]
    assert record.email_status["customer_sent_at"]
    assert record.email_status["owner_sent_at"] == owner_sent_at
    assert record.email_status["last_error"] is None


def test_both_failures_are_joined(db, completed_submission):
    channel = FlakyChannel(failing={"test@example.com", "owner@example.com,ops@example.com"})
    status = asyncio.run(send_completion_emails(db, completed_submission, channel=channel))
    assert " | " in status["last_error"]
    assert status.get("customer_sent_at") is None and status.get("owner_sent_at") is None


def test_missing_owner_recipients_only_fails_owner_channel(db, completed_submission, monkeypatch):
    monkeypatch.delenv("EMAIL_TO_OWNERS")
    channel = FlakyChannel()
    status = asyncio.run(send_completion_emails(db, completed_submission, channel=channel))
    assert status["customer_sent_at"]
    assert status["last_error"] == "EMAIL_TO_OWNERS is not set."


def test_fully_sent_submission_sends_nothing(db, completed_submission):
    crud.update_email_status(
        db, sub_id=completed_submission.id, email_status={"customer_sent_at": "t1", "owner_sent_at": "t2"}
    )
    record = crud.get_submission(db, sub_id=completed_submission.id)
    channel = FlakyChannel()
    status = asyncio.run(send_completion_emails(db, record, channel=channel))
    assert channel.sent == []
    assert status == {"customer_sent_at": "t1", "owner_sent_at": "t2", "last_error": None}


def test_email_contents(completed_submission):
    to, subject, text = build_customer_email(completed_submission)
    assert to == "test@example.com"
    assert subject == "HFRE Signal Scan - Acme Inc"
    assert text == "Customer report"

    owners, subject, text = build_owner_email(completed_submission, ["owner@example.com"])
    assert owners == ["owner@example.com"]
    assert subject == "New HFRE Signal Scan - Acme Inc"
    assert "Confidence Level: High" in text
    assert "Internal Report:\nInternal report" in text
    assert "Product Page URL: https://acme.example/widget" in text


def test_retry_skips_non_complete(db, pending_submission):
    channel = FlakyChannel()
    assert asyncio.run(retry_completion_emails(pending_submission.id, db=db, channel=channel)) is None
    assert channel.sent == []


def test_retry_sends_missing_channels(db, completed_submission):
    channel = FlakyChannel()
    status = asyncio.run(retry_completion_emails(completed_submission.id, db=db, channel=channel))
    assert status["customer_sent_at"] and status["owner_sent_at"]
    assert len(channel.sent) == 2


def test_resend_channel_posts_payload():
    captured = {}

    def handler(request):
        captured["auth"] = request.headers["Authorization"]
        captured["body"] = request.read()
        return httpx.Response(200, json={"id": "email_123"})

    async def send():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            channel = ResendChannel(api_key="re_test", from_address="scan@example.com", client=client)
            return await channel.send("a@example.com", "Subject", "Body")

    assert asyncio.run(send()) == {"id": "email_123"}
    assert captured["auth"] == "Bearer re_test"
    assert b'"to":["a@example.com"]' in captured["body"].replace(b" ", b"")


def test_resend_channel_raises_on_rejection():
    async def send():
        transport = httpx.MockTransport(lambda request: httpx.Response(422, json={"message": "invalid from"}))
        async with httpx.AsyncClient(transport=transport) as client:
            channel = ResendChannel(api_key="re_test", from_address="scan@example.com", client=client)
            await channel.send("a@example.com", "Subject", "Body")

    with pytest.raises(NotificationError, match="422"):
        asyncio.run(send())


def test_resend_channel_requires_configuration():
    channel = ResendChannel(api_key=None, from_address="scan@example.com")
    with pytest.raises(NotificationError, match="RESEND_API_KEY"):
        asyncio.run(channel.send("a@example.com", "s", "t"))


def test_default_channel_is_resend(db, completed_submission, monkeypatch):
    created = []

    class StubChannel(FlakyChannel):
        def __init__(self):
            super().__init__()
            created.append(self)

    monkeypatch.setattr(notifications, "ResendChannel", StubChannel)
    asyncio.run(send_completion_emails(db, completed_submission))
    assert len(created) == 1 and len(created[0].sent) == 2
