"""Deepgram Flux streaming speech-to-text client.

Pushes raw PCM16 16kHz audio over a WebSocket and turns Flux ``TurnInfo``
messages into transcript events.  Only ``EndOfTurn`` events are final;
everything else (``Update``, ``EagerEndOfTurn``, ...) is interim.

Unexpected disconnects during a live call are retried with capped
exponential backoff plus jitter.  Audio sent while reconnecting is held
in a bounded buffer and flushed once the socket is back.

References:
- https://developers.deepgram.com/docs/flux/quickstart
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from coaching.config import settings

log = logging.getLogger("coaching.speech")

MAX_BUFFERED_CHUNKS = 500

StatusCallback = Callable[[str, dict], Awaitable[None]]


@dataclass
class SpeechConfig:
    """Connection parameters for the Flux endpoint."""

    url: str = "wss://api.deepgram.com/v2/listen"
    model: str = "flux-general-en"
    encoding: str = "linear16"
    sample_rate: int = 16000
    eot_threshold: float = 0.7
    eot_timeout_ms: int = 5000
    reconnect_attempts: int = 5
    reconnect_base_delay: float = 1.0
    reconnect_max_delay: float = 30.0

    @classmethod
    def from_settings(cls) -> "SpeechConfig":
        return cls(
            url=settings.deepgram_url,
            model=settings.deepgram_model,
            eot_threshold=settings.deepgram_eot_threshold,
            eot_timeout_ms=settings.deepgram_eot_timeout_ms,
            reconnect_attempts=settings.speech_reconnect_attempts,
            reconnect_base_delay=settings.speech_reconnect_base_delay,
            reconnect_max_delay=settings.speech_reconnect_max_delay,
        )

    def listen_url(self) -> str:
        query = urlencode({
            "model": self.model,
            "encoding": self.encoding,
            "sample_rate": self.sample_rate,
            "eot_threshold": self.eot_threshold,
            "eot_timeout_ms": self.eot_timeout_ms,
        })
        return f"{self.url}?{query}"


@dataclass
class TranscriptEvent:
    """One transcript update from the speech engine."""

    text: str
    is_final: bool
    event: str = ""
    turn_index: Optional[int] = None
    end_of_turn_confidence: Optional[float] = None


def parse_flux_message(raw: str | bytes) -> Optional[TranscriptEvent]:
    """Parse a Flux message; returns None for anything without transcript text."""
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        log.warning("Invalid JSON from speech engine: %r", raw[:100])
        return None

    if not isinstance(data, dict) or data.get("type") != "TurnInfo":
        return None

    text = (data.get("transcript") or "").strip()
    if not text:
        return None

    event = data.get("event", "")
    return TranscriptEvent(
        text=text,
        is_final=event == "EndOfTurn",
        event=event,
        turn_index=data.get("turn_index"),
        end_of_turn_confidence=data.get("end_of_turn_confidence"),
    )


def backoff_delay(
    attempt: int,
    base: float,
    cap: float,
    jitter: Callable[[], float] = random.random,
) -> float:
    """Exponential backoff ``base * 2**attempt`` capped at ``cap``, plus up to 30% jitter."""
    delay = min(base * (2 ** attempt), cap)
    return delay + jitter() * 0.3 * delay


class DeepgramFluxClient:
    """Streaming speech recognition over one Flux WebSocket.

    Usage::

        async def on_transcript(event: TranscriptEvent):
            if event.is_final:
                ...

        client = DeepgramFluxClient(api_key, on_transcript)
        await client.connect()
        await client.send_audio(pcm_16k)
        ...
        await client.close()
    """

    def __init__(
        self,
        api_key: str,
        on_transcript: Callable[[TranscriptEvent], Awaitable[None]],
        config: Optional[SpeechConfig] = None,
        on_status: Optional[StatusCallback] = None,
        connector: Callable[..., Awaitable[Any]] = websockets.connect,
    ):
        if not api_key:
            raise ValueError("Deepgram API key not configured")

        self._api_key = api_key
        self._on_transcript = on_transcript
        self._on_status = on_status
        self._config = config or SpeechConfig.from_settings()
        self._connector = connector

        self._ws: Any = None
        self._receive_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._buffer: deque[bytes] = deque(maxlen=MAX_BUFFERED_CHUNKS)
        self._closing = False
        self._bytes_sent = 0
        self._finals_received = 0

    @property
    def is_connected(self) -> bool:
        if self._ws is None:
            return False
        try:
            return self._ws.state == State.OPEN
        except Exception:
            return False

    @property
    def is_reconnecting(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    async def connect(self) -> None:
        """Open the WebSocket and start the receive loop.  Raises on handshake failure."""
        url = self._config.listen_url()
        self._ws = await self._connector(
            url,
            additional_headers={"Authorization": f"token {self._api_key}"},
        )
        self._receive_task = asyncio.create_task(self._receive_loop(self._ws))
        log.info("Speech engine connected (model=%s)", self._config.model)
        await self._flush_buffer()

    async def send_audio(self, pcm_16k: bytes) -> None:
        """Send one PCM chunk; buffered while a reconnect is in progress."""
        if self._closing:
            return
        if not self.is_connected:
            if self.is_reconnecting:
                self._buffer.append(pcm_16k)
            return

        try:
            await self._ws.send(pcm_16k)
            self._bytes_sent += len(pcm_16k)
        except ConnectionClosed:
            log.warning("Speech connection closed while sending audio")
            self._buffer.append(pcm_16k)

    async def close(self) -> None:
        """Finalize the stream (CloseStream) and close the socket.  Idempotent."""
        if self._closing:
            return
        self._closing = True

        if self._reconnect_task and not self._reconnect_task.done():
            self._reconnect_task.cancel()

        ws = self._ws
        if ws is not None and self.is_connected:
            try:
                await ws.send(json.dumps({"type": "CloseStream"}))
                await ws.close()
            except Exception as e:
                log.warning("Error closing speech WebSocket: %s", e)

        if self._receive_task and not self._receive_task.done():
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass

        self._buffer.clear()
        log.info(
            "Speech engine closed (audio=%.1fKB, final turns=%d)",
            self._bytes_sent / 1024,
            self._finals_received,
        )

    # ── Internal ─────────────────────────────────────────────

    async def _flush_buffer(self) -> None:
        if not self._buffer:
            return
        log.info("Flushing %d buffered audio chunks to speech engine", len(self._buffer))
        while self._buffer and self.is_connected:
            await self._ws.send(self._buffer.popleft())

    async def _receive_loop(self, ws: Any) -> None:
        try:
            async for message in ws:
                event = parse_flux_message(message)
                if event is None:
                    continue
                if event.is_final:
                    self._finals_received += 1
                try:
                    await self._on_transcript(event)
                except Exception as e:
                    log.error("Transcript handler failed: %s", e, exc_info=True)
        except asyncio.CancelledError:
            return
        except ConnectionClosed as e:
            if not self._closing:
                log.warning("Speech connection closed unexpectedly: %s", e)
        except Exception as e:
            log.error("Error in speech receive loop: %s", e)

        if not self._closing:
            self._reconnect_task = asyncio.create_task(self._reconnect())

    async def _reconnect(self) -> None:
        cfg = self._config
        for attempt in range(cfg.reconnect_attempts):
            delay = backoff_delay(attempt, cfg.reconnect_base_delay, cfg.reconnect_max_delay)
            log.info(
                "Reconnecting speech engine, attempt %d/%d in %.1fs",
                attempt + 1,
                cfg.reconnect_attempts,
                delay,
            )
            await self._notify("speech_reconnecting", {"attempt": attempt + 1, "delay": delay})
            await asyncio.sleep(delay)
            if self._closing:
                return
            try:
                await self.connect()
            except Exception as e:
                log.warning("Speech reconnect attempt %d failed: %s", attempt + 1, e)
                continue
            await self._notify("speech_connected", {"reconnected": True})
            return

        log.error("Speech engine unavailable after %d attempts", cfg.reconnect_attempts)
        self._buffer.clear()
        await self._notify("speech_disconnected", {"attempts": cfg.reconnect_attempts})

    async def _notify(self, event_type: str, data: dict) -> None:
        if self._on_status is None:
            return
        try:
            await self._on_status(event_type, data)
        except Exception as e:
            log.warning("Speech status handler failed: %s", e)
