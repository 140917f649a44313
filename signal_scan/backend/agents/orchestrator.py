import asyncio
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.orm import Session

from signal_scan.backend.services.llm_config import get_llm_settings
from signal_scan.backend.services.notifications import NotificationChannel, send_completion_emails
from signal_scan.config import load_settings
from signal_scan.database import crud
from signal_scan.database.db import SessionLocal

from .compat import resolve_model_config
from .pipeline import ScanAgentResult, Stage, run_scan_agent
from .security import sanitize_for_logging, scrub_error_message

log = structlog.get_logger()

PROMPTS_MISSING_ERROR = "Active prompts not configured."
TIMEOUT_ERROR = "LLM request timed out."
MISSING_OUTPUT_ERROR = "LLM output missing or invalid."


class FailureKind(str, Enum):
    INPUT = "input"
    PROVIDER = "provider"
    TIMEOUT = "timeout"
    OUTPUT = "output"
    PROMPTS = "prompts"
    INTERNAL = "internal"
    NOTIFICATION = "notification"


STAGE_FAILURE_KINDS = {
    Stage.VALIDATE_INPUT.value: FailureKind.INPUT,
    Stage.INVOKE_LLM.value: FailureKind.PROVIDER,
    Stage.PARSE_OUTPUT.value: FailureKind.OUTPUT,
    Stage.VALIDATE_OUTPUT.value: FailureKind.OUTPUT,
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def _duration_since(created_at: Optional[datetime], completed: datetime) -> Optional[int]:
    if created_at is None:
        return None
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return int((completed - created_at).total_seconds() * 1000)


def llm_timeout_seconds() -> Optional[float]:
    timeout_ms = load_settings().llm_timeout_ms
    if timeout_ms <= 0:
        return None
    return timeout_ms / 1000.0


async def run_scan_agent_with_timeout(**params: Any) -> ScanAgentResult:
    """Bound the agent run; on timeout the task is cancelled, not abandoned."""
    timeout = llm_timeout_seconds()
    if timeout is None:
        return await run_scan_agent(**params)
    return await asyncio.wait_for(run_scan_agent(**params), timeout=timeout)


def _finalize(
    db: Session,
    *,
    sub_id: str,
    status: str,
    processing: Dict[str, Any],
    created_at: Optional[datetime],
    fields: Dict[str, Any],
) -> bool:
    completed = _now()
    processing["completed_at"] = completed.isoformat()
    processing["total_duration_ms"] = _duration_since(created_at, completed)
    finalized = crud.finalize_submission(
        db, sub_id=sub_id, status=status, fields={**fields, "processing": processing}
    )
    if not finalized:
        log.warning("submission_finalize_skipped", id=sub_id, status=status, reason="no_longer_pending")
    return finalized


def _fail(
    db: Session,
    *,
    sub_id: str,
    processing: Dict[str, Any],
    created_at: Optional[datetime],
    kind: FailureKind,
    message: str,
    raw_output: Optional[str] = None,
    stage: Optional[str] = None,
) -> bool:
    failure: Dict[str, Any] = {"message": message}
    if raw_output is not None:
        failure["raw_output"] = raw_output
    if stage:
        failure["stage"] = stage
    log.warning("submission_failed", id=sub_id, kind=kind.value, stage=stage, message=message)
    return _finalize(
        db,
        sub_id=sub_id,
        status="failed",
        processing=processing,
        created_at=created_at,
        fields={"outputs": None, "failure": failure},
    )


async def _process(db: Session, sub_id: str, channel: Optional[NotificationChannel]) -> None:
    record = await asyncio.to_thread(crud.get_submission, db, sub_id=sub_id)
    if not record:
        log.warning("submission_not_found", id=sub_id)
        return

    # Only pending submissions are ever processed; duplicate triggers stop here.
    if record.status != "pending":
        log.info("submission_already_processed", id=sub_id, status=record.status)
        return

    created_at = record.created_at
    inputs = dict(record.inputs or {})
    processing: Dict[str, Any] = dict(record.processing or {})
    processing.setdefault("started_at", _now().isoformat())
    started = await asyncio.to_thread(
        crud.update_submission_fields, db, sub_id=sub_id, fields={"processing": processing}, status="pending"
    )
    if not started:
        log.info("submission_already_processed", id=sub_id, status="not_pending")
        return

    try:
        system_prompt = await asyncio.to_thread(crud.get_active_prompt, db, prompt_type="system")
        user_prompt = await asyncio.to_thread(crud.get_active_prompt, db, prompt_type="user")
        if not system_prompt or not user_prompt or not system_prompt.content or not user_prompt.content:
            await asyncio.to_thread(
                _fail,
                db,
                sub_id=sub_id,
                processing=processing,
                created_at=created_at,
                kind=FailureKind.PROMPTS,
                message=PROMPTS_MISSING_ERROR,
            )
            return

        prompt_refs = {
            "system_prompt_id": system_prompt.id,
            "system_prompt_version": system_prompt.version,
            "user_prompt_id": user_prompt.id,
            "user_prompt_version": user_prompt.version,
        }
        llm_settings = await asyncio.to_thread(get_llm_settings, db)
        model_config = resolve_model_config(llm_settings, system_prompt.content, user_prompt.content, inputs)

        llm_start = time.monotonic()
        try:
            result = await run_scan_agent_with_timeout(
                system_prompt=system_prompt.content,
                user_prompt=user_prompt.content,
                form_inputs=inputs,
                llm_config=llm_settings,
                model_config=model_config,
            )
        except asyncio.TimeoutError:
            processing["llm_duration_ms"] = _elapsed_ms(llm_start)
            processing["llm_model"] = model_config.model_name
            processing["llm_temperature"] = model_config.temperature
            await asyncio.to_thread(
                _fail,
                db,
                sub_id=sub_id,
                processing=processing,
                created_at=created_at,
                kind=FailureKind.TIMEOUT,
                message=TIMEOUT_ERROR,
                stage=Stage.INVOKE_LLM.value,
            )
            return

        processing["llm_duration_ms"] = _elapsed_ms(llm_start)
        processing["llm_model"] = result.model_name if result else model_config.model_name
        processing["llm_temperature"] = result.temperature if result else model_config.temperature

        if not result or result.error or not result.output:
            stage = result.stage if result else None
            await asyncio.to_thread(
                _fail,
                db,
                sub_id=sub_id,
                processing=processing,
                created_at=created_at,
                kind=STAGE_FAILURE_KINDS.get(stage, FailureKind.INTERNAL),
                message=scrub_error_message(result.error) if result and result.error else MISSING_OUTPUT_ERROR,
                raw_output=result.raw_output if result else None,
                stage=stage,
            )
            return

        completed = await asyncio.to_thread(
            _finalize,
            db,
            sub_id=sub_id,
            status="complete",
            processing=processing,
            created_at=created_at,
            fields={
                "outputs": result.output,
                "usage": result.token_usage,
                "prompt_refs": prompt_refs,
                "failure": None,
            },
        )
    except Exception as exc:  # noqa: BLE001
        log.error("submission_processing_error", id=sub_id, error=sanitize_for_logging(str(exc)))
        await asyncio.to_thread(db.rollback)
        await asyncio.to_thread(
            _fail,
            db,
            sub_id=sub_id,
            processing=processing,
            created_at=created_at,
            kind=FailureKind.INTERNAL,
            message=scrub_error_message(exc),
        )
        return

    if not completed:
        return
    log.info("submission_completed", id=sub_id, model=result.model_name, llm_duration_ms=processing["llm_duration_ms"])

    # Email delivery never changes the submission status.
    try:
        record = await asyncio.to_thread(crud.get_submission, db, sub_id=sub_id)
        await send_completion_emails(db, record, channel=channel)
    except Exception as exc:  # noqa: BLE001
        log.error(
            "completion_emails_failed", id=sub_id, kind=FailureKind.NOTIFICATION.value, error=scrub_error_message(exc)
        )


async def process_submission(
    sub_id: str,
    db: Optional[Session] = None,
    channel: Optional[NotificationChannel] = None,
) -> None:
    """
    Drive one submission from pending to complete or failed, exactly once.

    Workflow:
    1. Re-check status (idempotency guard)
    2. Resolve active prompts and LLM settings
    3. Run the scan agent under the LLM timeout
    4. Persist outcome + telemetry in one conditional update
    5. Send completion emails (complete only)
    """
    owns_session = db is None
    db = db or SessionLocal()
    try:
        await _process(db, sub_id, channel)
    finally:
        if owns_session:
            await asyncio.to_thread(db.close)
