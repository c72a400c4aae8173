"""VoiceChannel ABC: the telephony leg as seen by the bridge registry.

A channel wraps one live telephony media socket and normalizes its audio
to PCM 16kHz mono, the format the speech engine consumes.  Implementors
handle the format conversion in both directions:

  inbound:  native format → PCM 16kHz (for speech recognition)
  outbound: PCM 16kHz → native format (for the caller)

The bridge registry only relies on ``is_open`` and ``send_payload`` to
push audio back to the phone leg.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator


@dataclass
class AudioFrame:
    """PCM16 little-endian mono audio, tagged with the call leg it came from."""

    samples: bytes
    track: str = "inbound"  # "inbound" is the far party, "outbound" our side
    sample_rate: int = 16000

    @property
    def num_samples(self) -> int:
        return len(self.samples) // 2

    @property
    def duration_ms(self) -> float:
        return 1000 * self.num_samples / self.sample_rate


class VoiceChannel(ABC):
    """Abstract telephony channel: one per live call leg."""

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """True while the underlying socket can still accept writes."""

    @abstractmethod
    async def receive_audio(self) -> AsyncIterator[AudioFrame]:
        """Yield normalized PCM 16kHz audio frames until the stream stops."""

    @abstractmethod
    async def send_payload(self, payload: str) -> None:
        """Write one already-encoded media payload to the telephony socket."""

    @abstractmethod
    async def close(self) -> None:
        """Tear down the channel connection.  Safe to call multiple times."""
