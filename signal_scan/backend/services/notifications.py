"""Completion emails: one to the submitter, one to the operators.

Each channel records its own ``*_sent_at`` timestamp in
``submission.email_status``; a channel with a timestamp is never sent
again, so the dispatcher can be re-run after a partial failure.
"""
import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import httpx
import structlog
from sqlalchemy.orm import Session

from signal_scan.backend.agents.security import scrub_error_message
from signal_scan.config import load_settings
from signal_scan.database import crud, models
from signal_scan.database.db import SessionLocal

log = structlog.get_logger()

RESEND_ENDPOINT = "https://api.resend.com/emails"

Recipients = Union[str, Sequence[str]]


class NotificationError(RuntimeError):
    pass


class NotificationChannel:
    name = "channel"

    async def send(self, to: Recipients, subject: str, text: str) -> Any:
        raise NotImplementedError


class ResendChannel(NotificationChannel):
    name = "resend"

    def __init__(
        self,
        api_key: Optional[str] = None,
        from_address: Optional[str] = None,
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        settings = load_settings()
        self.api_key = api_key or settings.resend_api_key
        self.from_address = from_address or settings.email_from
        self.timeout = timeout
        self.client = client

    async def send(self, to: Recipients, subject: str, text: str) -> Any:
        if not self.api_key:
            raise NotificationError("RESEND_API_KEY is not set.")
        if not self.from_address:
            raise NotificationError("EMAIL_FROM is not set.")
        payload = {
            "from": self.from_address,
            "to": [to] if isinstance(to, str) else list(to),
            "subject": subject,
            "text": text,
        }
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        if self.client is not None:
            res = await self.client.post(RESEND_ENDPOINT, headers=headers, json=payload)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                res = await client.post(RESEND_ENDPOINT, headers=headers, json=payload)
        if res.status_code >= 400:
            raise NotificationError(f"Email provider rejected message ({res.status_code}): {res.text[:200]}")
        return res.json()


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


# --- Messages ---

def build_customer_email(submission: models.Submission) -> Tuple[str, str, str]:
    inputs = submission.inputs or {}
    outputs = submission.outputs or {}
    subject = f"HFRE Signal Scan - {outputs.get('company') or 'Your report'}"
    return inputs.get("email") or "", subject, outputs.get("customer_report") or ""


def build_owner_email(submission: models.Submission, owners: List[str]) -> Tuple[List[str], str, str]:
    if not owners:
        raise NotificationError("EMAIL_TO_OWNERS is not set.")
    inputs = submission.inputs or {}
    outputs = submission.outputs or {}
    metadata = outputs.get("metadata") or {}
    subject = f"New HFRE Signal Scan - {inputs.get('company_name') or 'Submission'}"
    text = "\n".join(
        [
            f"Contact Name: {inputs.get('name') or ''}",
            f"Contact Email: {inputs.get('email') or ''}",
            f"Company Name: {inputs.get('company_name') or ''}",
            f"Homepage URL: {inputs.get('homepage_url') or ''}",
            f"Product Name: {inputs.get('product_name') or ''}",
            f"Product Page URL: {inputs.get('product_page_url') or ''}",
            f"Confidence Level: {metadata.get('confidence_level') or ''}",
            "",
            "Customer Report:",
            outputs.get("customer_report") or "",
            "",
            "Internal Report:",
            outputs.get("internal_report") or "",
        ]
    )
    return owners, subject, text


# --- Dispatch ---

async def send_completion_emails(
    db: Session,
    submission: models.Submission,
    channel: Optional[NotificationChannel] = None,
) -> Dict[str, Any]:
    """Send whichever of the two emails has not gone out yet and persist per-channel state."""
    channel = channel or ResendChannel()
    email_status: Dict[str, Any] = dict(submission.email_status or {})
    errors: List[str] = []

    if not email_status.get("customer_sent_at"):
        try:
            to, subject, text = build_customer_email(submission)
            await channel.send(to, subject, text)
            email_status["customer_sent_at"] = _iso_now()
            log.info("customer_email_sent", submission_id=submission.id)
        except Exception as exc:  # noqa: BLE001
            errors.append(scrub_error_message(exc) or "Customer email failed.")
            log.warning("customer_email_failed", submission_id=submission.id, error=scrub_error_message(exc))

    if not email_status.get("owner_sent_at"):
        try:
            to, subject, text = build_owner_email(submission, load_settings().email_to_owners)
            await channel.send(to, subject, text)
            email_status["owner_sent_at"] = _iso_now()
            log.info("owner_email_sent", submission_id=submission.id)
        except Exception as exc:  # noqa: BLE001
            errors.append(scrub_error_message(exc) or "Owner email failed.")
            log.warning("owner_email_failed", submission_id=submission.id, error=scrub_error_message(exc))

    email_status["last_error"] = " | ".join(errors) if errors else None
    await asyncio.to_thread(crud.update_email_status, db, sub_id=submission.id, email_status=email_status)
    return email_status


async def retry_completion_emails(
    sub_id: str,
    db: Optional[Session] = None,
    channel: Optional[NotificationChannel] = None,
) -> Optional[Dict[str, Any]]:
    """Re-run the dispatcher for a complete submission; other statuses are left alone."""
    owns_session = db is None
    db = db or SessionLocal()
    try:
        submission = await asyncio.to_thread(crud.get_submission, db, sub_id=sub_id)
        if not submission or submission.status != "complete":
            log.info("email_retry_skipped", submission_id=sub_id, status=getattr(submission, "status", None))
            return None
        return await send_completion_emails(db, submission, channel=channel)
    finally:
        if owns_session:
            await asyncio.to_thread(db.close)
