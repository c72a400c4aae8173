"""Pydantic models for coaching results: per-turn analysis and end-of-call summary."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_RESPONSE_CHARS = 200
ELLIPSIS = "..."


def cap_response(text: str, limit: int = MAX_RESPONSE_CHARS) -> str:
    """Hard-truncate to ``limit`` chars, ending with an ellipsis when cut."""
    if len(text) <= limit:
        return text
    return text[: limit - len(ELLIPSIS)] + ELLIPSIS


def _round_level(value):
    # Models sometimes answer "number" fields with 7.5
    if isinstance(value, float):
        return int(round(value))
    return value


class AnalysisResult(BaseModel):
    """Turn-level coaching suggestion."""

    model_config = ConfigDict(frozen=True)

    motivation_level: int = Field(ge=1, le=10)
    pain_points: list[str] = Field(default_factory=list)
    objection_detected: bool = False
    objection_type: Optional[str] = None
    suggested_response: str = Field(max_length=MAX_RESPONSE_CHARS)
    recommended_next_move: str
    error: Optional[str] = None

    @field_validator("motivation_level", mode="before")
    @classmethod
    def round_motivation(cls, value):
        return _round_level(value)

    @classmethod
    def fallback(cls, error: str) -> "AnalysisResult":
        """Generic rapport-building suggestion used whenever analysis fails."""
        return cls(
            motivation_level=5,
            pain_points=[],
            objection_detected=False,
            objection_type=None,
            suggested_response="Continue the conversation naturally.",
            recommended_next_move="Keep building rapport",
            error=error,
        )


class CallSummary(BaseModel):
    """End-of-call summary, produced exactly once per call."""

    model_config = ConfigDict(frozen=True)

    duration_seconds: int = Field(ge=0)
    final_motivation_level: int = Field(ge=1, le=10)
    pain_points: list[str] = Field(default_factory=list)
    objections: list[str] = Field(default_factory=list)
    summary: str
    next_steps: str
    error: Optional[str] = None

    @field_validator("final_motivation_level", mode="before")
    @classmethod
    def round_motivation(cls, value):
        return _round_level(value)

    @classmethod
    def fallback(cls, duration_seconds: int, error: str) -> "CallSummary":
        return cls(
            duration_seconds=duration_seconds,
            final_motivation_level=5,
            pain_points=[],
            objections=[],
            summary="Unable to generate summary.",
            next_steps="Follow up with the seller.",
            error=error,
        )

    @classmethod
    def empty(cls, duration_seconds: int) -> "CallSummary":
        """Summary for a call that ended before anyone spoke."""
        return cls(
            duration_seconds=duration_seconds,
            final_motivation_level=5,
            summary="No conversation recorded.",
            next_steps="Try making another call.",
        )
