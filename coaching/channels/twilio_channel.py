"""Twilio Media Streams leg of a coaching bridge.

Twilio sends each call's audio as JSON text frames on a WebSocket: base64
mu-law at 8kHz, one frame per 20ms, tagged with the track it belongs to.
Inbound frames are converted to PCM 16kHz for the speech engine; outbound
payloads produced by the codec are written back unchanged.

  ← connected   {"event":"connected","protocol":"Call","version":"1.0.0"}
  ← start       {"event":"start","start":{"streamSid","callSid","tracks",
                 "mediaFormat","customParameters"}}
  ← media       {"event":"media","media":{"track","payload"}}
  ← stop        {"event":"stop"}
  → media       {"event":"media","streamSid":"...","media":{"payload":"..."}}

https://www.twilio.com/docs/voice/media-streams/websocket-messages
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from coaching.channels.base import AudioFrame, VoiceChannel
from coaching.codec import AudioFormatError, telephony_frame_to_speech_frame

log = logging.getLogger("coaching.twilio_channel")

# Media frames are counted, and logged once per this many
MEDIA_LOG_INTERVAL = 100


@dataclass
class StreamStart:
    """Fields of Twilio's ``start`` message that the coach cares about."""

    stream_sid: str
    call_sid: str
    tracks: list[str] = field(default_factory=list)
    media_format: dict[str, Any] = field(default_factory=dict)
    custom_parameters: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_message(cls, msg: dict[str, Any]) -> "StreamStart":
        start = msg.get("start") or {}
        return cls(
            stream_sid=start.get("streamSid", "") or msg.get("streamSid", ""),
            call_sid=start.get("callSid", ""),
            tracks=list(start.get("tracks") or []),
            media_format=dict(start.get("mediaFormat") or {}),
            custom_parameters=dict(start.get("customParameters") or {}),
        )


class TwilioMediaStreamChannel(VoiceChannel):
    """One Twilio Media Stream, seen as a VoiceChannel.

    ``initialize()`` consumes the handshake; ``receive_audio()`` then
    yields PCM frames until Twilio sends ``stop`` or the socket drops.
    """

    def __init__(self, websocket: WebSocket):
        self._ws = websocket
        self._start: Optional[StreamStart] = None
        self._protocol = ""
        self._stopped = False
        self._closed = False
        self._frames_in = 0
        self._frames_dropped = 0

    @property
    def stream_sid(self) -> str:
        return self._start.stream_sid if self._start else ""

    @property
    def call_sid(self) -> str:
        return self._start.call_sid if self._start else ""

    @property
    def is_open(self) -> bool:
        return not self._closed and all(
            state == WebSocketState.CONNECTED
            for state in (self._ws.client_state, self._ws.application_state)
        )

    async def initialize(self) -> StreamStart:
        """Read frames until ``start`` arrives.  ``stop`` first is a ConnectionError."""
        while self._start is None:
            msg = await self._next_message()
            if msg is None:
                continue
            kind = msg.get("event")
            if kind == "connected":
                self._protocol = f"{msg.get('protocol', '')}/{msg.get('version', '')}"
                log.info("Twilio media socket connected (%s)", self._protocol)
            elif kind == "start":
                self._start = StreamStart.from_message(msg)
                log.info(
                    "Twilio stream %s started for call %s (tracks=%s)",
                    self._start.stream_sid,
                    self._start.call_sid,
                    ",".join(self._start.tracks) or "inbound",
                )
            elif kind == "stop":
                raise ConnectionError("Twilio stream stopped before it started")
        return self._start

    async def receive_audio(self) -> AsyncIterator[AudioFrame]:
        """Yield PCM 16kHz frames; malformed media frames are skipped."""
        while not self._stopped:
            try:
                msg = await self._next_message()
            except Exception as e:
                log.info("Twilio socket for %s went away: %s", self.stream_sid, e)
                return

            if msg is None:
                continue
            kind = msg.get("event")
            if kind == "stop":
                self._stopped = True
                log.info(
                    "Twilio stream %s stopped (%d frames, %d dropped)",
                    self.stream_sid,
                    self._frames_in,
                    self._frames_dropped,
                )
                return
            if kind != "media":
                continue  # mark, dtmf

            frame = self._decode_media(msg.get("media") or {})
            if frame is not None:
                yield frame

    async def send_payload(self, payload: str) -> None:
        await self._ws.send_text(json.dumps({
            "event": "media",
            "streamSid": self.stream_sid,
            "media": {"payload": payload},
        }))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._stopped = True
        try:
            await self._ws.close()
        except Exception as e:
            log.debug("Twilio socket already closed: %s", e)
        log.info("Twilio channel for call %s closed", self.call_sid)

    # ── Internal ─────────────────────────────────────────────

    async def _next_message(self) -> Optional[dict[str, Any]]:
        raw = await self._ws.receive_text()
        try:
            msg = json.loads(raw)
        except json.JSONDecodeError as e:
            log.warning("Non-JSON frame from Twilio: %s", e)
            return None
        return msg if isinstance(msg, dict) else None

    def _decode_media(self, media: dict[str, Any]) -> Optional[AudioFrame]:
        payload = media.get("payload")
        if not payload:
            return None
        try:
            pcm_16k = telephony_frame_to_speech_frame(payload)
        except AudioFormatError as e:
            self._frames_dropped += 1
            log.warning("Dropping media frame on %s: %s", self.stream_sid, e)
            return None

        self._frames_in += 1
        if self._frames_in % MEDIA_LOG_INTERVAL == 0:
            log.debug("%d media frames received on %s", self._frames_in, self.stream_sid)
        track = "outbound" if media.get("track") == "outbound" else "inbound"
        return AudioFrame(samples=pcm_16k, track=track)
