"""Per-client coaching session: the relay between the call and the coach.

Each dashboard connection gets a CoachingSession that:
  1. Holds the running transcript for the current call
  2. Appends finalized turns (telephony transcripts or simulated speech)
     and re-emits them as ``transcript_update`` events
  3. For every seller turn, streams a live suggestion and runs the
     structured analysis, emitting exactly one ``ai_suggestion``
  4. Keeps the rolling conversation context up to date in the background
  5. At ``end_call``, emits exactly one ``call_summary`` and tears the
     telephony bridge down

Background work is tracked per session and cancelled by ``close()`` so
no suggestion outlives the connection that asked for it.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from typing import Any, Coroutine, Optional

from coaching.analysis import CoachingAnalyzer
from coaching.bridge import BridgeRegistry
from coaching.codec import AudioFormatError, telephony_frame_to_speech_frame
from coaching.config import settings
from coaching.context import ConversationContextManager
from coaching.events import EventBroadcaster, get_broadcaster, remove_broadcaster
from coaching.models import CallSummary, TranscriptEntry

log = logging.getLogger("coaching.session")

# Turns from this speaker get coaching; the operator's own turns do not
COACHED_SPEAKER = "seller"

DEMO_CONVERSATION: list[tuple[str, str]] = [
    ("seller", "Hi, I got your letter about buying my house. What exactly are you offering?"),
    ("user", "Thank you for reaching out! I specialize in helping homeowners who need to sell "
             "quickly. Can you tell me about your situation?"),
    ("seller", "We've been here 20 years but my wife's health is declining. We need to move "
               "closer to family soon."),
    ("user", "I understand completely. Family comes first. What's your ideal timeline for "
             "making this move?"),
    ("seller", "The house needs some work, I know. The roof is maybe 10 years old and the "
               "kitchen hasn't been updated."),
    ("user", "I appreciate your honesty. I work with properties in all conditions. Would you "
             "mind if I took a look to give you an accurate assessment?"),
    ("seller", "That seems pretty low compared to what Zillow says it's worth. Can you do better?"),
]


# ── Session registry ─────────────────────────────────────────────

_active_sessions: dict[str, "CoachingSession"] = {}


def register_session(session: "CoachingSession") -> str:
    """Register a session, attach its broadcaster and return its unique ID."""
    session_id = secrets.token_urlsafe(18)
    session._session_id = session_id
    session._started_at = time.time()
    session.attach_broadcaster(get_broadcaster(session_id))
    _active_sessions[session_id] = session
    log.info("Session registered: %s", session_id)
    return session_id


def unregister_session(session_id: str) -> None:
    _active_sessions.pop(session_id, None)
    remove_broadcaster(session_id)
    log.info("Session unregistered: %s", session_id)


def get_active_sessions() -> dict[str, "CoachingSession"]:
    return _active_sessions


def get_session(session_id: str) -> "CoachingSession | None":
    return _active_sessions.get(session_id)


def find_session_for_call(call_sid: str) -> "CoachingSession | None":
    """Resolve a telephony call SID to the session coaching it.

    Falls back to the only live session when no session registered the
    call and exactly one is connected.
    """
    for session in _active_sessions.values():
        if call_sid and session.call_sid == call_sid:
            return session
    if len(_active_sessions) == 1:
        session = next(iter(_active_sessions.values()))
        log.info("No session registered call %s; using the only live session %s",
                 call_sid, session.session_id)
        return session
    return None


class CoachingSession:
    """One dashboard connection's coaching pipeline.

    Typical lifecycle::

        session = CoachingSession(analyzer, contexts, bridges)
        register_session(session)
        queue = session.broadcaster.subscribe()

        session.start_call()
        await session.simulate_speech("seller", "What are you offering?")
        ...
        await session.end_call(duration_seconds=125)
        await session.close()
        unregister_session(session.session_id)
    """

    def __init__(
        self,
        analyzer: CoachingAnalyzer,
        contexts: ConversationContextManager,
        bridges: Optional[BridgeRegistry] = None,
    ) -> None:
        self._analyzer = analyzer
        self._contexts = contexts
        self._bridges = bridges or BridgeRegistry()

        # Registry metadata (set by register_session)
        self._session_id: str = ""
        self._started_at: float = 0.0

        self._history: list[TranscriptEntry] = []
        self._turn_counter = 0
        self._call_active = False
        self._summary_sent = False
        # Bumped whenever a call starts or ends; coaching work from an older call is dropped
        self._call_epoch = 0
        self._call_sid: str = ""
        self._stream_sid: str = ""

        self._tasks: set[asyncio.Task] = set()
        self._broadcaster: EventBroadcaster | None = None
        self._closed = False

    # ── Public API ────────────────────────────────────────────

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def call_sid(self) -> str:
        return self._call_sid

    @property
    def stream_sid(self) -> str:
        return self._stream_sid

    @property
    def history(self) -> list[TranscriptEntry]:
        return list(self._history)

    @property
    def is_call_active(self) -> bool:
        return self._call_active

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    @property
    def broadcaster(self) -> EventBroadcaster:
        if self._broadcaster is None:
            self._broadcaster = EventBroadcaster(self._session_id)
        return self._broadcaster

    def attach_broadcaster(self, broadcaster: EventBroadcaster) -> None:
        self._broadcaster = broadcaster

    def emit(self, event_type: str, data: dict | None = None) -> None:
        if self._closed:
            return
        self.broadcaster.emit(event_type, data)

    async def notify(self, event_type: str, data: dict) -> None:
        """Async adapter for speech-engine status callbacks."""
        self.emit(event_type, data)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self._session_id,
            "started_at": self._started_at,
            "call_active": self._call_active,
            "call_sid": self._call_sid,
            "stream_sid": self._stream_sid,
            "turns": len(self._history),
            "pending_tasks": len(self._tasks),
        }

    # ── Call lifecycle ────────────────────────────────────────

    def start_call(self) -> None:
        """Begin a new call: fresh transcript and context."""
        self._reset_call()
        log.info("Call started by session %s", self._session_id)
        self.emit("connection_ready", {"session_id": self._session_id})

    def _reset_call(self) -> None:
        self._history = []
        self._contexts.clear(self._session_id)
        self._call_active = True
        self._summary_sent = False
        self._call_epoch += 1

    def register_call(self, call_sid: str) -> None:
        """Announce which telephony call this session is coaching."""
        self._call_sid = call_sid
        log.info("Session %s registered call %s", self._session_id, call_sid)

    def bind_stream(self, stream_sid: str, call_sid: str) -> None:
        """Called when a telephony media stream for this session starts."""
        self._stream_sid = stream_sid
        if call_sid and not self._call_sid:
            self._call_sid = call_sid
        self.emit("telephony_stream_started", {"stream_sid": stream_sid, "call_sid": call_sid})

    def unbind_stream(self, stream_sid: str) -> None:
        if self._stream_sid != stream_sid:
            return
        self._stream_sid = ""
        self.emit("telephony_stream_stopped", {"stream_sid": stream_sid})

    async def end_call(self, duration_seconds: int) -> CallSummary | None:
        """Tear down the bridge and emit the call summary.

        Returns None when this call's summary was already sent.
        Suggestions still in flight finish, but their results are dropped.
        """
        if self._summary_sent:
            log.warning("Duplicate end_call for session %s ignored", self._session_id)
            return None
        self._summary_sent = True
        self._call_active = False
        self._call_epoch += 1

        if self._stream_sid:
            await self._bridges.remove(self._stream_sid)

        history = list(self._history)
        log.info("Generating call summary for %s (%d turns, %ds)",
                 self._session_id, len(history), duration_seconds)

        try:
            summary = await self._analyzer.generate_call_summary(
                history,
                duration_seconds,
                on_summary_start=lambda: self.emit("call_summary_start"),
                on_summary_token=lambda token: self.emit("call_summary_token", {"token": token}),
                on_summary_end=lambda: self.emit("call_summary_end"),
            )
        except Exception as e:
            log.error("Failed to generate call summary for %s: %s", self._session_id, e)
            summary = CallSummary.fallback(duration_seconds, str(e) or type(e).__name__)

        self.emit("call_summary", summary.model_dump())
        self._contexts.clear(self._session_id)
        return summary

    async def close(self) -> None:
        """Client disconnected: cancel background work and release the call."""
        if self._closed:
            return
        self._closed = True

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            log.info("Cancelled %d in-flight tasks for session %s", len(tasks), self._session_id)

        if self._stream_sid:
            await self._bridges.remove(self._stream_sid)
        self._contexts.clear(self._session_id)
        self._history = []

    # ── Transcripts ───────────────────────────────────────────

    def record_turn(self, speaker: str, text: str) -> TranscriptEntry:
        """Append a finalized turn.  Synchronous, so appends never interleave."""
        entry = TranscriptEntry(speaker=speaker, text=text)
        self._history.append(entry)
        self._contexts.append(self._session_id, entry)
        self._turn_counter += 1
        self.emit("transcript_update", {**entry.model_dump(), "turn_index": self._turn_counter})
        return entry

    async def process_transcript(self, speaker: str, text: str) -> None:
        """Record a turn and, for seller turns, wait for its coaching."""
        if self._closed:
            return
        entry = self.record_turn(speaker, text)
        if entry.speaker == COACHED_SPEAKER:
            await self._coach(entry, list(self._history), self._turn_counter, self._call_epoch)

    async def handle_transcript(self, text: str, is_final: bool) -> None:
        """Bridge callback for telephony transcripts.

        Interim text is ignored.  Coaching runs in a tracked background
        task so the speech receive loop is never held up by the model.
        """
        if not is_final or self._closed or not text.strip():
            return
        entry = self.record_turn(settings.telephony_speaker, text.strip())
        if entry.speaker == COACHED_SPEAKER:
            self.spawn(self._coach(entry, list(self._history), self._turn_counter, self._call_epoch))

    async def simulate_speech(self, speaker: str, text: str) -> None:
        """Inject a turn without audio (testing and demos)."""
        log.info("Simulated speech (%s): %s", speaker, text)
        await self.process_transcript(speaker, text)

    async def run_demo(self, delay: Optional[float] = None) -> None:
        """Replay the scripted seller/user conversation as a new call."""
        delay = settings.demo_turn_delay if delay is None else delay
        self._reset_call()
        call_epoch = self._call_epoch
        log.info("Demo call started by session %s", self._session_id)
        for index, (speaker, text) in enumerate(DEMO_CONVERSATION):
            if index > 0 and delay > 0:
                await asyncio.sleep(delay)
            if self._call_epoch != call_epoch:
                log.info("Demo for session %s stopped: call ended", self._session_id)
                return
            await self.process_transcript(speaker, text)

    async def handle_inbound_audio(self, payload: str) -> bool:
        """Forward one client-sent base64 mu-law frame to the bound speech leg."""
        if not self._stream_sid:
            log.debug("No telephony stream bound to %s; dropping audio", self._session_id)
            return False
        try:
            pcm_16k = telephony_frame_to_speech_frame(payload)
        except AudioFormatError as e:
            self.emit("error", {"message": f"Invalid audio frame: {e}"})
            return False
        return await self._bridges.forward_inbound_audio(self._stream_sid, pcm_16k)

    # ── Coaching pipeline ─────────────────────────────────────

    async def _coach(
        self,
        entry: TranscriptEntry,
        history: list[TranscriptEntry],
        turn_index: int,
        call_epoch: int,
    ) -> None:
        """Stream a suggestion for one seller turn, then emit the full analysis.

        The structured analysis runs concurrently with the stream.  The
        streamed text replaces the analysis' own suggestion when the
        stream succeeds.  Nothing is emitted or summarized for a turn whose
        call has ended in the meantime.
        """
        if self._call_epoch != call_epoch:
            log.info("Skipping coaching for turn %d of an ended call (%s)", turn_index, self._session_id)
            return

        context = self._contexts.get(self._session_id)
        analysis_task = asyncio.create_task(
            self._analyzer.analyze_turn(history, entry.text, context)
        )

        streamed = ""
        self.emit("ai_suggestion_start", {"turn_index": turn_index})
        try:
            streamed = await self._analyzer.stream_suggested_response(
                history,
                entry.text,
                lambda token: self.emit("ai_suggestion_token", {"turn_index": turn_index, "token": token}),
                context,
            )
        except asyncio.CancelledError:
            analysis_task.cancel()
            raise
        except Exception as e:
            log.error("Suggestion stream failed for %s: %s", self._session_id, e)
        self.emit("ai_suggestion_end", {"turn_index": turn_index, "suggested_response": streamed})

        result = await analysis_task
        if self._call_epoch != call_epoch:
            log.info("Dropping analysis for turn %d: call ended (%s)", turn_index, self._session_id)
            return
        if streamed:
            result = result.model_copy(update={"suggested_response": streamed})
        self.emit("ai_suggestion", {**result.model_dump(), "turn_index": turn_index})

        self.spawn(self._contexts.update_context(self._session_id, history))

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task | None:
        """Run a coroutine as a tracked background task of this session."""
        if self._closed:
            coro.close()
            return None
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("Background task failed for session %s: %s", self._session_id, exc,
                      exc_info=exc)
            self.emit("error", {"message": str(exc)})
