"""Pydantic models for scan inputs and the structured LLM output."""
from typing import Any, Dict, List, Literal, Optional

from pydantic import AnyUrl, BaseModel, ConfigDict, EmailStr, Field, StrictBool, TypeAdapter, field_validator

SOURCE_SCOPE = "Public website only"
CONFIDENCE_LEVELS = ("High", "Medium", "Low")

_URL_ADAPTER = TypeAdapter(AnyUrl)
_EMAIL_ADAPTER = TypeAdapter(EmailStr)


class ScanInputs(BaseModel):
    """Public scan form: six trimmed fields, nothing else."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    name: str = Field(..., min_length=2, max_length=256)
    email: str = Field(..., min_length=3, max_length=320)
    company_name: str = Field(..., min_length=2, max_length=256)
    homepage_url: str = Field(..., min_length=1, max_length=2048)
    product_name: str = Field(..., min_length=2, max_length=256)
    product_page_url: str = Field(..., min_length=1, max_length=2048)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        return str(_EMAIL_ADAPTER.validate_python(v))

    @field_validator("homepage_url", "product_page_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        url = _URL_ADAPTER.validate_python(v)
        if not url.host:
            raise ValueError("URL must include a host")
        return v


class Shareability(BaseModel):
    model_config = ConfigDict(extra="forbid")

    customer_safe: StrictBool
    internal_only: StrictBool


class ScanMetadata(BaseModel):
    model_config = ConfigDict(extra="forbid")

    confidence_level: Literal["High", "Medium", "Low"]
    source_scope: Literal["Public website only"]
    shareability: Shareability


class ScanOutput(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    company: str = Field(..., min_length=2, max_length=256)
    internal_report: str = Field(..., min_length=2, max_length=20000)
    customer_report: str = Field(..., min_length=2, max_length=20000)
    metadata: ScanMetadata


class TokenUsage(BaseModel):
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    total_tokens: Optional[int] = None


def format_validation_errors(errors: List[Dict[str, Any]]) -> List[Dict[str, str]]:
    return [
        {"path": ".".join(str(part) for part in err.get("loc", ())), "message": err.get("msg", "Invalid value")}
        for err in errors
    ]
