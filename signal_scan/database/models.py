import secrets
import uuid
from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Float, Index, JSON, String, Text

from .db import Base

SUBMISSION_STATUSES = ("pending", "complete", "failed")
PROMPT_TYPES = ("system", "user")


def generate_public_id() -> str:
    return secrets.token_hex(12)


class Submission(Base):
    __tablename__ = "submissions"

    id = Column(String(36), primary_key=True, index=True, default=lambda: str(uuid.uuid4()))
    public_id = Column(String(32), nullable=False, unique=True, index=True, default=generate_public_id)
    status = Column(String(20), nullable=False, default="pending", index=True)
    inputs = Column(JSON, nullable=False)
    outputs = Column(JSON, nullable=True)
    failure = Column(JSON, nullable=True)
    processing = Column(JSON, nullable=True)
    prompt_refs = Column(JSON, nullable=True)
    usage = Column(JSON, nullable=True)
    email_status = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Prompt(Base):
    __tablename__ = "prompts"

    id = Column(String(36), primary_key=True, index=True, default=lambda: str(uuid.uuid4()))
    type = Column(String(20), nullable=False)
    name = Column(String(256), nullable=False)
    content = Column(Text, nullable=False)
    active = Column(Boolean, nullable=False, default=False)
    version = Column(Float, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class LlmConfig(Base):
    __tablename__ = "llm_configs"

    key = Column(String(32), primary_key=True, default="global")
    model_fixed = Column(String(100), nullable=True)
    temperature = Column(Float, nullable=True)
    # NULL inherits LLM_REASONING_EFFORT; the literal "none" disables it.
    reasoning_effort = Column(String(20), nullable=True)
    updated_by = Column(String(320), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


Index("idx_submissions_created_at", Submission.created_at)
Index("idx_prompts_type_active", Prompt.type, Prompt.active)
