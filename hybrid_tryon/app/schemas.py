from __future__ import annotations

from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

METHOD_REMOTE = "remote"
METHOD_FALLBACK = "fallback"
METHOD_PLACEHOLDER = "placeholder"

CompositeMethod = Literal["remote", "fallback", "placeholder"]

# Ordered by fidelity; every remote result outranks every fallback result,
# which outranks every placeholder.
QUALITY_SCORES: Dict[str, float] = {
    METHOD_REMOTE: 9.5,
    METHOD_FALLBACK: 7.5,
    METHOD_PLACEHOLDER: 6.0,
}


class CompositeRequest(BaseModel):
    """Person and garment image references (URL, data URI, or local path)."""

    person_image: Optional[str] = Field(default=None)
    garment_image: Optional[str] = Field(default=None)

    @field_validator("person_image", "garment_image", mode="before")
    @classmethod
    def blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = str(value).strip()
        return value or None


class CompositeResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    result_image: str
    processing_time_ms: int
    success: bool = True
    error: Optional[str] = None
    method: CompositeMethod
    fallback_reason: Optional[str] = None
    preprocessing_applied: bool = Field(
        default=False,
        description="True when at least one input was preprocessed before the remote call.",
    )
    quality_score: float = Field(ge=0.0, le=10.0)
    improvements: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)


class CompositeResponse(CompositeResult):
    explanation: str
    suggestions: List[str]


class BreakerStatus(BaseModel):
    consecutive_failures: int
    last_attempt_at: Optional[float]
    open: bool
    threshold: int
    cooldown_seconds: float
