import os

os.environ.setdefault("DB_URL", "sqlite://")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from signal_scan.database import crud, models
from signal_scan.database.db import Base

LLM_ENV_VARS = [
    "LLM_MODEL",
    "LLM_MODEL_FIXED",
    "LLM_MODEL_SMALL",
    "LLM_MODEL_LARGE",
    "LLM_SIZE_THRESHOLD_CHARS",
    "LLM_TEMPERATURE",
    "LLM_REASONING_EFFORT",
    "LLM_VERBOSITY",
    "LLM_MAX_OUTPUT_TOKENS",
    "LLM_TIMEOUT_MS",
    "RESEND_API_KEY",
    "EMAIL_FROM",
    "EMAIL_TO_OWNERS",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep a developer's .env from leaking into tests."""
    for name in LLM_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("OPENAI_API_KEY", "test-openai-key")
    monkeypatch.setenv("EMAIL_TO_OWNERS", "owner@example.com, ops@example.com")


@pytest.fixture
def db():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(engine)
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    yield session
    session.close()
    Base.metadata.drop_all(engine)


@pytest.fixture
def scan_inputs():
    return {
        "name": "Test User",
        "email": "test@example.com",
        "company_name": "Acme Inc",
        "homepage_url": "https://acme.example",
        "product_name": "Widget",
        "product_page_url": "https://acme.example/widget",
    }


@pytest.fixture
def scan_output():
    return {
        "company": "Acme Inc",
        "internal_report": "Internal report",
        "customer_report": "Customer report",
        "metadata": {
            "confidence_level": "High",
            "source_scope": "Public website only",
            "shareability": {"customer_safe": True, "internal_only": True},
        },
    }


@pytest.fixture
def active_prompts(db):
    system = crud.create_prompt(db, prompt_type="system", name="System v1", content="You are a scanner.", version=1, active=True)
    user = crud.create_prompt(
        db,
        prompt_type="user",
        name="User v2",
        content="Company: {{ $form.company_name }} ({{ $form.homepage_url }})",
        version=2.5,
        active=True,
    )
    return system, user


@pytest.fixture
def pending_submission(db, scan_inputs) -> models.Submission:
    return crud.create_submission(db, inputs=scan_inputs)
