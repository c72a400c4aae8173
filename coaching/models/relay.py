"""Pydantic models for inbound relay messages and the summary API."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from coaching.models.transcript import TranscriptEntry


class RelayMessage(BaseModel):
    """Envelope for every client WebSocket message: ``{"event": ..., "data": {...}}``."""

    event: str
    data: dict[str, Any] = Field(default_factory=dict)


class RegisterCall(BaseModel):
    call_sid: str = Field(min_length=1)


class SimulateSpeech(BaseModel):
    speaker: str = Field(min_length=1)
    text: str = Field(min_length=1)


class InboundAudio(BaseModel):
    payload: str


class RunDemo(BaseModel):
    delay: float | None = Field(default=None, ge=0)


class EndCall(BaseModel):
    duration_seconds: int = Field(default=0, ge=0)


class SummaryRequest(BaseModel):
    """Body of ``POST /api/summary``."""

    transcript: list[TranscriptEntry]
    duration_seconds: int = Field(default=0, ge=0)
