"""Pydantic models for the running conversation log."""

from __future__ import annotations

import time
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


def _now_ms() -> int:
    return int(time.time() * 1000)


class TranscriptEntry(BaseModel):
    """One finalized turn.  Speaker is free-form ("seller", "user", a diarized label)."""

    model_config = ConfigDict(frozen=True)

    speaker: str
    text: str
    timestamp_ms: int = Field(default_factory=_now_ms)

    def as_line(self) -> str:
        """Render as a ``speaker: text`` prompt line."""
        return f"{self.speaker}: {self.text}"


class ConversationContext(BaseModel):
    """Bounded prompt context for one call session.

    While ``summary`` is None, ``recent_history`` holds every turn so far.
    Once a summary exists it covers the first ``summarized_turns`` turns
    and ``recent_history`` is capped to the most recent window.
    """

    summary: Optional[str] = None
    recent_history: list[TranscriptEntry] = Field(default_factory=list)
    summarized_turns: int = 0
