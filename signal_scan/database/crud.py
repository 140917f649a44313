from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from . import models


def create_submission(db: Session, *, inputs: Dict[str, Any], status: str = "pending") -> models.Submission:
    submission = models.Submission(inputs=dict(inputs), status=status, email_status={})
    db.add(submission)
    db.commit()
    db.refresh(submission)
    return submission


def get_submission(db: Session, *, sub_id: str) -> Optional[models.Submission]:
    return db.query(models.Submission).filter(models.Submission.id == sub_id).first()


def get_submission_by_public_id(db: Session, *, public_id: str) -> Optional[models.Submission]:
    return db.query(models.Submission).filter(models.Submission.public_id == public_id).first()


def update_submission_fields(
    db: Session, *, sub_id: str, fields: Dict[str, Any], status: Optional[str] = None
) -> int:
    """Write only the given columns of one submission, optionally only while it has ``status``."""
    query = db.query(models.Submission).filter(models.Submission.id == sub_id)
    if status is not None:
        query = query.filter(models.Submission.status == status)
    count = query.update(fields, synchronize_session=False)
    db.commit()
    db.expire_all()
    return count


def finalize_submission(db: Session, *, sub_id: str, status: str, fields: Dict[str, Any]) -> bool:
    """Move a pending submission to a terminal status in a single conditional UPDATE.

    Returns False when the row was no longer pending, in which case nothing is written.
    """
    if status not in ("complete", "failed"):
        raise ValueError(f"Not a terminal status: {status}")
    count = (
        db.query(models.Submission)
        .filter(models.Submission.id == sub_id, models.Submission.status == "pending")
        .update({**fields, "status": status}, synchronize_session=False)
    )
    db.commit()
    db.expire_all()
    return count == 1


def update_email_status(db: Session, *, sub_id: str, email_status: Dict[str, Any]) -> int:
    return update_submission_fields(db, sub_id=sub_id, fields={"email_status": dict(email_status)})


# --- Prompts ---

def get_active_prompt(db: Session, *, prompt_type: str) -> Optional[models.Prompt]:
    return (
        db.query(models.Prompt)
        .filter(models.Prompt.type == prompt_type, models.Prompt.active.is_(True))
        .order_by(models.Prompt.updated_at.desc())
        .first()
    )


def create_prompt(
    db: Session,
    *,
    prompt_type: str,
    name: str,
    content: str,
    version: Optional[float] = None,
    active: bool = False,
) -> models.Prompt:
    if prompt_type not in models.PROMPT_TYPES:
        raise ValueError(f"Unknown prompt type: {prompt_type}")
    if active:
        db.query(models.Prompt).filter(models.Prompt.type == prompt_type).update(
            {"active": False}, synchronize_session=False
        )
    prompt = models.Prompt(type=prompt_type, name=name, content=content, version=version, active=active)
    db.add(prompt)
    db.commit()
    db.refresh(prompt)
    return prompt


# --- LLM config ---

def get_llm_config(db: Session) -> Optional[models.LlmConfig]:
    return db.query(models.LlmConfig).filter(models.LlmConfig.key == "global").first()
