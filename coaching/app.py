"""FastAPI application: HTTP + WebSocket endpoints for live call coaching.

Endpoints:

  WS   /ws                Dashboard relay (start_call, simulate_speech, end_call, ...)
  WS   /twilio/stream     Twilio Media Stream WebSocket (mulaw 8kHz audio)
  POST /api/summary       Call summary streamed as Server-Sent Events
  GET  /api/sessions      Live relay sessions and bridges
  GET  /health            Health check

The telephony flow:
  1. The dashboard connects to /ws and sends register_call {call_sid}
  2. Twilio opens /twilio/stream; its callSid resolves to that session
  3. A bridge ties the stream to a Deepgram Flux socket
  4. Final transcripts go to the session, which emits coaching events
"""

from __future__ import annotations

from dotenv import load_dotenv
load_dotenv()

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Callable, Optional

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)-20s %(levelname)-7s %(message)s",
)

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from coaching.analysis import CoachingAnalyzer
from coaching.bridge import BridgeError, BridgeRegistry
from coaching.channels.twilio_channel import TwilioMediaStreamChannel
from coaching.config import settings
from coaching.context import ConversationContextManager
from coaching.events import CoachingEvent
from coaching.models.relay import (
    EndCall,
    InboundAudio,
    RegisterCall,
    RelayMessage,
    RunDemo,
    SimulateSpeech,
    SummaryRequest,
)
from coaching.session import (
    CoachingSession,
    find_session_for_call,
    get_active_sessions,
    register_session,
    unregister_session,
)
from coaching.speech import DeepgramFluxClient, StatusCallback, TranscriptEvent

log = logging.getLogger("coaching.app")

_START_TIME = time.time()

SpeechFactory = Callable[[Callable[[TranscriptEvent], Any], StatusCallback], Any]


def _default_speech_factory(on_transcript, on_status) -> DeepgramFluxClient:
    return DeepgramFluxClient(settings.deepgram_api_key, on_transcript, on_status=on_status)


def _sse(event: str, data: Any) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


def create_app(
    analyzer: Optional[CoachingAnalyzer] = None,
    bridges: Optional[BridgeRegistry] = None,
    speech_factory: Optional[SpeechFactory] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    analyzer = analyzer or CoachingAnalyzer()
    bridges = bridges or BridgeRegistry()
    speech_factory = speech_factory or _default_speech_factory
    contexts = ConversationContextManager(analyzer.summarize_conversation)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await bridges.close_all()

    app = FastAPI(
        title="Negotiation Coach",
        description="Real-time coaching for live seller calls",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.analyzer = analyzer
    app.state.bridges = bridges
    app.state.contexts = contexts

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url, "http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Health check ───────────────────────────────────────────

    @app.get("/health")
    async def health() -> JSONResponse:
        uptime = round(time.time() - _START_TIME, 1)
        return JSONResponse({"status": "ok", "uptime": uptime})

    @app.get("/api/sessions")
    async def list_sessions() -> JSONResponse:
        sessions = get_active_sessions()
        return JSONResponse({
            "sessions": [s.to_dict() for s in sessions.values()],
            "count": len(sessions),
            "bridges": len(bridges),
        })

    # ── Dashboard relay WebSocket ──────────────────────────────

    @app.websocket("/ws")
    async def relay(websocket: WebSocket) -> None:
        """One coaching session per dashboard connection."""
        await websocket.accept()

        session = CoachingSession(analyzer, contexts, bridges)
        sid = register_session(session)
        queue = session.broadcaster.subscribe()
        sender = asyncio.create_task(_pump_events(websocket, queue))
        log.info("Relay client connected: %s", sid)

        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    message = RelayMessage.model_validate_json(raw)
                except ValidationError as e:
                    session.emit("error", {"message": f"Invalid message: {e.errors()[0]['msg']}"})
                    continue
                await _dispatch(session, message)
        except WebSocketDisconnect:
            log.info("Relay client disconnected: %s", sid)
        except Exception as e:
            log.error("Relay error for %s: %s", sid, e)
        finally:
            sender.cancel()
            await session.close()
            session.broadcaster.unsubscribe(queue)
            unregister_session(sid)

    # ── Twilio Media Stream WebSocket ──────────────────────────

    @app.websocket("/twilio/stream")
    async def twilio_stream(websocket: WebSocket) -> None:
        """Bridge a Twilio Media Stream to the speech engine.

        Only the inbound track (the seller's voice) is transcribed.
        """
        await websocket.accept()
        log.info("Twilio Media Stream WebSocket connected")

        channel = TwilioMediaStreamChannel(websocket)
        stream_sid = ""
        session: CoachingSession | None = None
        speech_task: asyncio.Task | None = None

        try:
            await channel.initialize()
            stream_sid = channel.stream_sid

            session = find_session_for_call(channel.call_sid)
            if session is None:
                log.error("No coaching session for call %s; closing stream", channel.call_sid)
                return

            bridges.create(stream_sid, channel.call_sid, channel, session.handle_transcript)
            session.bind_stream(stream_sid, channel.call_sid)
            speech_task = asyncio.create_task(_connect_speech(stream_sid, session))

            async for frame in channel.receive_audio():
                if frame.track != "inbound":
                    continue
                await bridges.forward_inbound_audio(stream_sid, frame.samples)

        except ConnectionError as e:
            log.info("Twilio stream ended early: %s", e)
        except WebSocketDisconnect:
            log.info("Twilio WebSocket disconnected (stream_sid=%s)", stream_sid)
        except Exception as e:
            log.error("Twilio stream error: %s", e)
        finally:
            if speech_task is not None and not speech_task.done():
                speech_task.cancel()
            if stream_sid:
                await bridges.remove(stream_sid)
            if session is not None and stream_sid:
                session.unbind_stream(stream_sid)
            await channel.close()
            log.info("Twilio Media Stream ended")

    async def _connect_speech(stream_sid: str, session: CoachingSession) -> None:
        async def on_transcript(event: TranscriptEvent) -> None:
            bridge = bridges.get(stream_sid)
            if bridge is not None:
                await bridge.on_transcript(event.text, event.is_final)

        client = None
        try:
            client = speech_factory(on_transcript, session.notify)
            await client.connect()
        except asyncio.CancelledError:
            if client is not None:
                await client.close()
            raise
        except Exception as e:
            log.error("Speech engine unavailable for %s: %s", stream_sid, e)
            session.emit("speech_error", {"message": str(e), "stream_sid": stream_sid})
            return

        try:
            await bridges.attach_speech_socket(stream_sid, client)
        except BridgeError as e:
            # Stream ended while the handshake was in flight
            log.info("Discarding speech socket for %s: %s", stream_sid, e)
            await client.close()
            return
        session.emit("speech_connected", {"stream_sid": stream_sid})

    # ── Call summary over SSE ──────────────────────────────────

    @app.post("/api/summary")
    async def stream_summary(request: SummaryRequest) -> StreamingResponse:
        """Stream a call summary: summary_start/token/end, then done or error."""
        log.info("Generating call summary via SSE (%d entries)", len(request.transcript))
        events: asyncio.Queue[tuple[str, Any]] = asyncio.Queue()

        async def _run() -> None:
            try:
                summary = await analyzer.generate_call_summary(
                    request.transcript,
                    request.duration_seconds,
                    on_summary_start=lambda: events.put_nowait(("summary_start", {})),
                    on_summary_token=lambda token: events.put_nowait(("summary_token", token)),
                    on_summary_end=lambda: events.put_nowait(("summary_end", {})),
                    on_structured_data=lambda data: events.put_nowait(("structured_data", data)),
                )
                events.put_nowait(("done", summary.model_dump()))
            except Exception as e:
                log.error("Error generating summary: %s", e)
                events.put_nowait(("error", {"error": str(e) or "Failed to generate summary"}))

        async def _stream():
            task = asyncio.create_task(_run())
            try:
                while True:
                    name, data = await events.get()
                    yield _sse(name, data)
                    if name in ("done", "error"):
                        break
            finally:
                if not task.done():
                    task.cancel()

        return StreamingResponse(
            _stream(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    return app


async def _pump_events(websocket: WebSocket, queue: asyncio.Queue[CoachingEvent]) -> None:
    """Drain a session's event queue onto its WebSocket."""
    try:
        while True:
            event = await queue.get()
            await websocket.send_json(event)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        log.warning("Event stream to client stopped: %s", e)


async def _dispatch(session: CoachingSession, message: RelayMessage) -> None:
    """Route one inbound relay message to the session."""
    event, data = message.event, message.data
    try:
        if event == "start_call":
            session.start_call()
        elif event == "register_call":
            session.register_call(RegisterCall.model_validate(data).call_sid)
        elif event == "simulate_speech":
            speech = SimulateSpeech.model_validate(data)
            await session.simulate_speech(speech.speaker, speech.text)
        elif event == "run_demo":
            session.spawn(session.run_demo(RunDemo.model_validate(data).delay))
        elif event == "inbound_audio":
            await session.handle_inbound_audio(InboundAudio.model_validate(data).payload)
        elif event == "end_call":
            await session.end_call(EndCall.model_validate(data).duration_seconds)
        else:
            log.warning("Unknown relay event: %s", event)
            session.emit("error", {"message": f"Unknown event: {event}"})
    except ValidationError as e:
        session.emit("error", {"message": f"Invalid {event} data: {e.errors()[0]['msg']}"})


# ── Module-level app instance for uvicorn ──────────────────────

app = create_app()


if __name__ == "__main__":
    import uvicorn

    for warning in settings.validate_startup():
        log.warning(warning)

    log_config = uvicorn.config.LOGGING_CONFIG
    log_config["formatters"]["default"]["fmt"] = (
        "%(asctime)s %(name)-12s %(levelname)-8s %(message)s"
    )

    uvicorn.run(
        "coaching.app:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_config=log_config,
    )
