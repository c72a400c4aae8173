"""Per-session conversation context: a bounded recent window plus a rolling summary.

Every model prompt is built from the context rather than the full
transcript, so prompt size stays flat however long the call runs.  Once
the call reaches ``summarize_threshold`` turns, everything except the
last ``recent_turns_limit`` turns is folded into a natural-language
summary.  A new summary is only requested when it would cover more turns
than the current one.
"""

from __future__ import annotations

import itertools
import logging
from typing import Awaitable, Callable, Optional

from coaching.config import settings
from coaching.models import ConversationContext, TranscriptEntry

log = logging.getLogger("coaching.context")

Summarizer = Callable[[list[TranscriptEntry]], Awaitable[str]]


class ConversationContextManager:
    """Owns one ConversationContext per session ID."""

    def __init__(
        self,
        summarizer: Summarizer,
        recent_turns_limit: Optional[int] = None,
        summarize_threshold: Optional[int] = None,
    ) -> None:
        self._summarizer = summarizer
        self.recent_turns_limit = (
            settings.recent_turns_limit if recent_turns_limit is None else recent_turns_limit
        )
        self.summarize_threshold = (
            settings.summarize_threshold if summarize_threshold is None else summarize_threshold
        )
        self._contexts: dict[str, ConversationContext] = {}
        # Changes whenever a session's context is cleared and started afresh
        self._generations: dict[str, int] = {}
        self._next_generation = itertools.count(1)

    def get(self, session_id: str) -> ConversationContext:
        """Return the session's context, creating an empty one on first access."""
        context = self._contexts.get(session_id)
        if context is None:
            context = ConversationContext()
            self.set(session_id, context)
        return context

    def set(self, session_id: str, context: ConversationContext) -> None:
        if session_id not in self._generations:
            self._generations[session_id] = next(self._next_generation)
        self._contexts[session_id] = context

    def clear(self, session_id: str) -> None:
        self._contexts.pop(session_id, None)
        self._generations.pop(session_id, None)

    def append(self, session_id: str, entry: TranscriptEntry) -> ConversationContext:
        """Record a new turn.  Synchronous, so appends never interleave."""
        context = self.get(session_id)
        context.recent_history.append(entry)
        if context.summary is not None and len(context.recent_history) > self.recent_turns_limit:
            del context.recent_history[: len(context.recent_history) - self.recent_turns_limit]
        return context

    async def update_context(self, session_id: str, full_history: list[TranscriptEntry]) -> bool:
        """Refresh the rolling summary if enough new turns have aged out of the window.

        Returns True when a new summary was installed.  Summarizer
        failures leave the existing context untouched, and a session
        with no context (never started, or already cleared) is skipped
        rather than recreated.
        """
        if len(full_history) < self.summarize_threshold:
            return False

        current = self._contexts.get(session_id)
        if current is None:
            return False
        generation = self._generations.get(session_id)
        history_to_summarize = full_history[: max(0, len(full_history) - self.recent_turns_limit)]
        if len(history_to_summarize) <= current.summarized_turns:
            return False

        try:
            summary = await self._summarizer(history_to_summarize)
        except Exception as e:
            log.error("Conversation summarization failed for %s: %s", session_id, e)
            return False

        if not summary:
            log.warning("Empty conversation summary for %s; keeping previous context", session_id)
            return False

        latest = self._contexts.get(session_id)
        if latest is None or self._generations.get(session_id) != generation:
            # Session ended, or a new call started, while the summary was in flight
            return False
        if latest is not current and latest.summarized_turns >= len(history_to_summarize):
            return False

        # Turns appended while the summary was in flight are not in full_history
        known = {id(entry) for entry in full_history}
        arrived_since = [e for e in latest.recent_history if id(e) not in known]
        merged = list(full_history) + arrived_since
        recent = merged[max(0, len(merged) - self.recent_turns_limit):]

        self.set(session_id, ConversationContext(
            summary=summary,
            recent_history=recent,
            summarized_turns=len(history_to_summarize),
        ))
        log.info(
            "Updated conversation context for %s (%d turns summarized)",
            session_id,
            len(history_to_summarize),
        )
        return True
