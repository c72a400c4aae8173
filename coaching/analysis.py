"""Coaching model calls: live suggestions, turn analysis and the call-end summary.

Every call goes to Claude through ``anthropic.AsyncAnthropic``.  Structured
outputs use a forced tool call (``tool_choice``) and are validated with the
pydantic models in ``coaching.models``.

Failure policy:
  - ``analyze_turn`` and ``summarize_conversation`` never raise; they
    return the fixed fallback (or an empty string) and log the reason.
  - ``stream_suggested_response`` and ``generate_call_summary`` raise, and
    the caller picks the fallback.  The call summary is all-or-nothing:
    if either of its two concurrent requests fails, the whole summary fails.
  - Nothing is retried.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional, Sequence

import anthropic

from coaching import prompts
from coaching.config import settings
from coaching.models import (
    AnalysisResult,
    CallSummary,
    ConversationContext,
    TranscriptEntry,
    cap_response,
)

log = logging.getLogger("coaching.analysis")

TokenCallback = Callable[[str], None]
SignalCallback = Callable[[], None]


def _tool_input(response: Any, tool_name: str) -> dict[str, Any]:
    """Return the input of the named tool_use block, or raise."""
    for block in response.content:
        if getattr(block, "type", None) == "tool_use" and block.name == tool_name:
            return dict(block.input)
    raise ValueError(f"No {tool_name} result found in response")


def _text_content(response: Any) -> str:
    for block in response.content:
        if getattr(block, "type", None) == "text":
            return block.text
    return ""


class CoachingAnalyzer:
    """Runs every model request the coaching pipeline makes.

    The Anthropic client is created on first use so the analyzer can be
    constructed before the API key is validated; tests pass their own.
    """

    def __init__(self, client: Any = None, model: Optional[str] = None) -> None:
        self._client = client
        self.model = model or settings.anthropic_model

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = anthropic.AsyncAnthropic(api_key=settings.anthropic_api_key)
        return self._client

    # ── Rolling context summary ──────────────────────────────────────

    async def summarize_conversation(self, history: Sequence[TranscriptEntry]) -> str:
        """Condense older turns into 2-3 sentences.  Returns "" on any failure."""
        try:
            response = await self.client.messages.create(
                model=self.model,
                max_tokens=settings.context_summary_max_tokens,
                messages=[{
                    "role": "user",
                    "content": (
                        f"{prompts.CONTEXT_SUMMARY_PROMPT}\n\n"
                        f"{prompts.format_transcript(history)}"
                    ),
                }],
            )
            return _text_content(response).strip()
        except Exception as e:
            log.error("Failed to summarize conversation: %s", e)
            return ""

    # ── Turn level ───────────────────────────────────────────────────

    async def stream_suggested_response(
        self,
        history: Sequence[TranscriptEntry],
        latest_statement: str,
        on_token: TokenCallback,
        context: Optional[ConversationContext] = None,
    ) -> str:
        """Stream the words the operator should say next, token by token.

        Returns the full streamed text, stripped and capped.  Raises on
        failure so the caller can fall back to the structured analysis.
        """
        conversation = prompts.format_conversation(history, latest_statement, context)
        parts: list[str] = []

        async with self.client.messages.stream(
            model=self.model,
            max_tokens=settings.suggestion_max_tokens,
            messages=[{
                "role": "user",
                "content": f"{prompts.SUGGESTION_PROMPT}\n\n{conversation}",
            }],
        ) as stream:
            async for text in stream.text_stream:
                parts.append(text)
                on_token(text)

        return cap_response("".join(parts).strip(), settings.max_response_chars)

    async def analyze_turn(
        self,
        history: Sequence[TranscriptEntry],
        latest_statement: str,
        context: Optional[ConversationContext] = None,
    ) -> AnalysisResult:
        """Structured analysis of the latest turn.  Never raises."""
        try:
            conversation = prompts.format_conversation(history, latest_statement, context)
            response = await self.client.messages.create(
                model=self.model,
                max_tokens=settings.analysis_max_tokens,
                messages=[{
                    "role": "user",
                    "content": (
                        f"{prompts.ANALYSIS_PROMPT}\n\n"
                        f"{prompts.ANALYSIS_INSTRUCTION}\n\n{conversation}"
                    ),
                }],
                tools=[prompts.ANALYSIS_TOOL],
                tool_choice={"type": "tool", "name": prompts.ANALYSIS_TOOL_NAME},
            )
            data = _tool_input(response, prompts.ANALYSIS_TOOL_NAME)
            data.pop("error", None)

            # The cap holds whatever the model returns
            suggested = data.get("suggested_response")
            if isinstance(suggested, str):
                data["suggested_response"] = cap_response(suggested, settings.max_response_chars)

            return AnalysisResult.model_validate(data)
        except Exception as e:
            log.error("Turn analysis failed: %s", e)
            return AnalysisResult.fallback(str(e) or type(e).__name__)

    # ── Call end ─────────────────────────────────────────────────────

    async def generate_call_summary(
        self,
        history: Sequence[TranscriptEntry],
        duration_seconds: int,
        on_summary_start: Optional[SignalCallback] = None,
        on_summary_token: Optional[TokenCallback] = None,
        on_summary_end: Optional[SignalCallback] = None,
        on_structured_data: Optional[Callable[[dict], None]] = None,
    ) -> CallSummary:
        """Stream a narrative summary while extracting structured fields.

        Both requests run concurrently and must both succeed.  The
        streamed narrative becomes ``summary``; every other field comes
        from the extraction.  An empty transcript short-circuits to
        ``CallSummary.empty`` without calling the model.
        """
        if not history:
            return CallSummary.empty(duration_seconds)

        narrative_task = asyncio.create_task(
            self._stream_narrative_summary(
                history, duration_seconds, on_summary_start, on_summary_token, on_summary_end
            )
        )
        structured_task = asyncio.create_task(
            self._extract_call_summary(history, duration_seconds)
        )
        tasks = (narrative_task, structured_task)

        try:
            narrative, extracted = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        if on_structured_data is not None:
            on_structured_data(extracted.model_dump(exclude={"summary", "error"}))

        narrative = narrative.strip()
        if not narrative:
            log.warning("Narrative summary stream was empty; using extracted summary")
            return extracted
        return extracted.model_copy(update={"summary": narrative})

    async def _stream_narrative_summary(
        self,
        history: Sequence[TranscriptEntry],
        duration_seconds: int,
        on_start: Optional[SignalCallback],
        on_token: Optional[TokenCallback],
        on_end: Optional[SignalCallback],
    ) -> str:
        parts: list[str] = []
        async with self.client.messages.stream(
            model=self.model,
            max_tokens=settings.summary_max_tokens,
            messages=[{
                "role": "user",
                "content": (
                    f"{prompts.NARRATIVE_SUMMARY_PROMPT}\n\n"
                    f"{prompts.format_call_transcript(history, duration_seconds)}"
                ),
            }],
        ) as stream:
            if on_start is not None:
                on_start()
            async for text in stream.text_stream:
                parts.append(text)
                if on_token is not None:
                    on_token(text)
        if on_end is not None:
            on_end()
        return "".join(parts)

    async def _extract_call_summary(
        self,
        history: Sequence[TranscriptEntry],
        duration_seconds: int,
    ) -> CallSummary:
        response = await self.client.messages.create(
            model=self.model,
            max_tokens=settings.summary_max_tokens,
            messages=[{
                "role": "user",
                "content": (
                    f"{prompts.SUMMARY_PROMPT}\n\n"
                    f"{prompts.format_call_transcript(history, duration_seconds)}"
                ),
            }],
            tools=[prompts.SUMMARY_TOOL],
            tool_choice={"type": "tool", "name": prompts.SUMMARY_TOOL_NAME},
        )
        data = _tool_input(response, prompts.SUMMARY_TOOL_NAME)
        data.pop("error", None)
        data["duration_seconds"] = duration_seconds
        return CallSummary.model_validate(data)
