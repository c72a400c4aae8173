"""Per-call audio bridge registry.

One AudioBridge per live call ties the Twilio media socket to the
speech-recognition socket.  The registry is the only owner of bridge
records; everything else looks them up by session ID.

Lifecycle::

    created ──attach_speech_socket──▶ speech_attached ──remove──▶ closed
       └──────────────────────remove─────────────────────────────▶ closed

``remove`` is idempotent because both legs (Twilio 'stop', WebSocket
disconnect, client end_call) race to tear the same call down.
"""

from __future__ import annotations

import enum
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from coaching.channels.base import VoiceChannel
from coaching.codec import speech_frame_to_telephony_frame

log = logging.getLogger("coaching.bridge")

# Inbound audio held while the speech handshake is in flight (~10s of 20ms frames)
MAX_PENDING_FRAMES = 500

TranscriptCallback = Callable[[str, bool], Awaitable[None]]


class BridgeError(RuntimeError):
    """Base class for bridge registry errors."""


class DuplicateBridgeError(BridgeError):
    """A live bridge already exists for this session ID."""


class BridgeNotFoundError(BridgeError):
    """No live bridge for this session ID (never created, or already removed)."""


class BridgeStateError(BridgeError):
    """Operation not valid in the bridge's current state."""


class BridgeState(str, enum.Enum):
    CREATED = "created"
    SPEECH_ATTACHED = "speech_attached"
    CLOSED = "closed"


@dataclass
class AudioBridge:
    """Live association between one telephony stream and one speech socket."""

    session_id: str
    call_id: str
    telephony_socket: VoiceChannel
    on_transcript: TranscriptCallback
    speech_socket: Optional[Any] = None
    state: BridgeState = BridgeState.CREATED
    created_at: float = field(default_factory=time.time)
    pending_audio: deque = field(default_factory=lambda: deque(maxlen=MAX_PENDING_FRAMES))


class BridgeRegistry:
    """Arena of live bridges keyed by session ID (the Twilio stream SID)."""

    def __init__(self) -> None:
        self._bridges: dict[str, AudioBridge] = {}

    def __len__(self) -> int:
        return len(self._bridges)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._bridges

    def create(
        self,
        session_id: str,
        call_id: str,
        telephony_socket: VoiceChannel,
        on_transcript: TranscriptCallback,
    ) -> AudioBridge:
        """Register a bridge for a newly accepted telephony stream."""
        if session_id in self._bridges:
            raise DuplicateBridgeError(f"Bridge already exists for session {session_id}")

        bridge = AudioBridge(
            session_id=session_id,
            call_id=call_id,
            telephony_socket=telephony_socket,
            on_transcript=on_transcript,
        )
        self._bridges[session_id] = bridge
        log.info("Bridge created: session=%s call=%s", session_id, call_id)
        return bridge

    def get(self, session_id: str) -> Optional[AudioBridge]:
        return self._bridges.get(session_id)

    async def attach_speech_socket(self, session_id: str, speech_socket: Any) -> AudioBridge:
        """Attach the speech socket once its handshake completes.

        Flushes any inbound audio that arrived before the attach.
        Re-attaching the same handle is a no-op.
        """
        bridge = self._bridges.get(session_id)
        if bridge is None:
            raise BridgeNotFoundError(f"No live bridge for session {session_id}")

        if bridge.state is BridgeState.SPEECH_ATTACHED:
            if bridge.speech_socket is speech_socket:
                return bridge
            raise BridgeStateError(
                f"Bridge {session_id} already has a different speech socket attached"
            )

        bridge.speech_socket = speech_socket
        bridge.state = BridgeState.SPEECH_ATTACHED
        log.info("Speech socket attached: session=%s", session_id)

        if bridge.pending_audio:
            log.info(
                "Flushing %d buffered audio frames to speech engine (session=%s)",
                len(bridge.pending_audio),
                session_id,
            )
            while bridge.pending_audio:
                await speech_socket.send_audio(bridge.pending_audio.popleft())
        return bridge

    async def forward_inbound_audio(self, session_id: str, pcm_16k: bytes) -> bool:
        """Push PCM 16kHz audio to the speech engine, buffering until attached.

        Returns False when there is no live bridge for the session.
        """
        bridge = self._bridges.get(session_id)
        if bridge is None:
            return False

        if bridge.speech_socket is None:
            if not bridge.pending_audio:
                log.info("Buffering audio for %s until speech engine connects", session_id)
            bridge.pending_audio.append(pcm_16k)
            return True

        await bridge.speech_socket.send_audio(pcm_16k)
        return True

    async def forward_outbound_audio(self, session_id: str, pcm_16k: bytes) -> bool:
        """Transcode PCM 16kHz to a Twilio payload and write it to the phone leg.

        Silently drops the frame when the bridge is gone or the telephony
        socket is no longer open (the caller may have hung up).
        """
        bridge = self._bridges.get(session_id)
        if bridge is None or not bridge.telephony_socket.is_open:
            return False

        payload = speech_frame_to_telephony_frame(pcm_16k)
        await bridge.telephony_socket.send_payload(payload)
        return True

    async def remove(self, session_id: str) -> None:
        """Close and release a bridge.  Unknown or already-removed IDs are a no-op."""
        bridge = self._bridges.pop(session_id, None)
        if bridge is None:
            return

        bridge.state = BridgeState.CLOSED
        bridge.pending_audio.clear()

        if bridge.speech_socket is not None:
            try:
                await bridge.speech_socket.close()
            except Exception as e:
                log.warning("Error closing speech socket for %s: %s", session_id, e)

        log.info(
            "Bridge removed: session=%s call=%s (%.1fs)",
            session_id,
            bridge.call_id,
            time.time() - bridge.created_at,
        )

    async def close_all(self) -> None:
        """Tear down every live bridge (server shutdown)."""
        for session_id in list(self._bridges):
            await self.remove(session_id)
