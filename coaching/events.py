"""Per-session outward event broadcaster.

Each CoachingSession owns an EventBroadcaster.  Events (transcripts,
suggestion tokens, summaries, telephony and speech status) are pushed to
every subscriber's asyncio.Queue; the WebSocket handler drains its queue
onto the socket.  Emitting never blocks and never suspends, so the
pipeline can emit from token callbacks.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TypedDict

log = logging.getLogger("coaching.events")

SUBSCRIBER_QUEUE_SIZE = 500


class CoachingEvent(TypedDict):
    type: str          # transcript_update | ai_suggestion* | call_summary* | telephony_* | speech_* | error
    timestamp: float
    session_id: str
    data: dict


class EventBroadcaster:
    """Per-session event broadcaster using asyncio.Queue per subscriber."""

    def __init__(self, session_id: str) -> None:
        self._session_id = session_id
        self._subscribers: list[asyncio.Queue[CoachingEvent]] = []
        self._emitted = 0

    def subscribe(self) -> asyncio.Queue[CoachingEvent]:
        q: asyncio.Queue[CoachingEvent] = asyncio.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE)
        self._subscribers.append(q)
        log.info("Subscriber added for session %s (total: %d)",
                 self._session_id, len(self._subscribers))
        return q

    def unsubscribe(self, q: asyncio.Queue[CoachingEvent]) -> None:
        try:
            self._subscribers.remove(q)
        except ValueError:
            return
        log.info("Subscriber removed for session %s (total: %d)",
                 self._session_id, len(self._subscribers))

    def emit(self, event_type: str, data: dict | None = None) -> CoachingEvent:
        """Broadcast an event to all subscribers."""
        event: CoachingEvent = {
            "type": event_type,
            "timestamp": time.time(),
            "session_id": self._session_id,
            "data": data or {},
        }
        self._emitted += 1

        for q in self._subscribers:
            try:
                q.put_nowait(event)
            except asyncio.QueueFull:
                # Slow consumer: drop its oldest event to make room
                try:
                    q.get_nowait()
                    q.put_nowait(event)
                except (asyncio.QueueEmpty, asyncio.QueueFull):
                    pass
        return event

    @property
    def emitted_count(self) -> int:
        return self._emitted

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)


# ── Global broadcaster registry ──────────────────────────────────────

_broadcasters: dict[str, EventBroadcaster] = {}


def get_broadcaster(session_id: str) -> EventBroadcaster:
    """Get or create a broadcaster for a session."""
    if session_id not in _broadcasters:
        _broadcasters[session_id] = EventBroadcaster(session_id)
        log.info("EventBroadcaster created for session %s", session_id)
    return _broadcasters[session_id]


def remove_broadcaster(session_id: str) -> None:
    """Remove a broadcaster when the session ends."""
    if _broadcasters.pop(session_id, None) is not None:
        log.info("EventBroadcaster removed for session %s", session_id)
