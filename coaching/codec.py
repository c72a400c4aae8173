"""G.711 mu-law <-> linear PCM codec and 8kHz/16kHz resamplers.

Twilio Media Streams carry base64 mu-law at 8kHz mono; the speech engine
wants little-endian int16 PCM at 16kHz.  This module converts in both
directions:

  inbound:  base64 mulaw 8kHz → PCM 8kHz → PCM 16kHz (duplicate + interpolate)
  outbound: PCM 16kHz → PCM 8kHz (decimate) → mulaw 8kHz → base64

The resamplers are deliberately naive: no band-limiting filter on either
side.  Speech recognition tolerates the aliasing and the per-chunk cost
stays trivial.

All functions are pure and synchronous.
"""

from __future__ import annotations

import base64
import binascii

import numpy as np

TELEPHONY_SAMPLE_RATE = 8000
SPEECH_SAMPLE_RATE = 16000
RESAMPLE_FACTOR = SPEECH_SAMPLE_RATE // TELEPHONY_SAMPLE_RATE  # 2

MULAW_BIAS = 0x84
MULAW_CLIP = 32635

_PCM16 = np.dtype("<i2")

# Standard G.711 mu-law expansion, indexed by the encoded byte.
MULAW_DECODE_TABLE = np.array([
    -32124, -31100, -30076, -29052, -28028, -27004, -25980, -24956,
    -23932, -22908, -21884, -20860, -19836, -18812, -17788, -16764,
    -15996, -15484, -14972, -14460, -13948, -13436, -12924, -12412,
    -11900, -11388, -10876, -10364, -9852, -9340, -8828, -8316,
    -7932, -7676, -7420, -7164, -6908, -6652, -6396, -6140,
    -5884, -5628, -5372, -5116, -4860, -4604, -4348, -4092,
    -3900, -3772, -3644, -3516, -3388, -3260, -3132, -3004,
    -2876, -2748, -2620, -2492, -2364, -2236, -2108, -1980,
    -1884, -1820, -1756, -1692, -1628, -1564, -1500, -1436,
    -1372, -1308, -1244, -1180, -1116, -1052, -988, -924,
    -876, -844, -812, -780, -748, -716, -684, -652,
    -620, -588, -556, -524, -492, -460, -428, -396,
    -372, -356, -340, -324, -308, -292, -276, -260,
    -244, -228, -212, -196, -180, -164, -148, -132,
    -120, -112, -104, -96, -88, -80, -72, -64,
    -56, -48, -40, -32, -24, -16, -8, 0,
    32124, 31100, 30076, 29052, 28028, 27004, 25980, 24956,
    23932, 22908, 21884, 20860, 19836, 18812, 17788, 16764,
    15996, 15484, 14972, 14460, 13948, 13436, 12924, 12412,
    11900, 11388, 10876, 10364, 9852, 9340, 8828, 8316,
    7932, 7676, 7420, 7164, 6908, 6652, 6396, 6140,
    5884, 5628, 5372, 5116, 4860, 4604, 4348, 4092,
    3900, 3772, 3644, 3516, 3388, 3260, 3132, 3004,
    2876, 2748, 2620, 2492, 2364, 2236, 2108, 1980,
    1884, 1820, 1756, 1692, 1628, 1564, 1500, 1436,
    1372, 1308, 1244, 1180, 1116, 1052, 988, 924,
    876, 844, 812, 780, 748, 716, 684, 652,
    620, 588, 556, 524, 492, 460, 428, 396,
    372, 356, 340, 324, 308, 292, 276, 260,
    244, 228, 212, 196, 180, 164, 148, 132,
    120, 112, 104, 96, 88, 80, 72, 64,
    56, 48, 40, 32, 24, 16, 8, 0,
], dtype=np.int16)


class AudioFormatError(ValueError):
    """Raised for buffers that are not well-formed for the requested conversion."""


def _pcm16_samples(pcm: bytes) -> np.ndarray:
    """View int16 LE PCM bytes as a sample array, rejecting partial samples."""
    if len(pcm) % 2:
        raise AudioFormatError(
            f"PCM16 buffer has odd length ({len(pcm)} bytes); expected whole 16-bit samples"
        )
    return np.frombuffer(pcm, dtype=_PCM16)


def decode_mulaw_to_linear16(mulaw: bytes) -> bytes:
    """Expand mu-law bytes to int16 LE PCM (one sample per input byte)."""
    indices = np.frombuffer(mulaw, dtype=np.uint8)
    return MULAW_DECODE_TABLE[indices].astype(_PCM16).tobytes()


def encode_linear16_to_mulaw(pcm: bytes) -> bytes:
    """Compress int16 LE PCM to mu-law bytes.

    Per sample: sign bit, clip the magnitude to ``MULAW_CLIP``, add
    ``MULAW_BIAS``, take the exponent from the highest set bit in
    positions 7..14 and the next four bits as mantissa, then invert the
    packed byte.
    """
    samples = _pcm16_samples(pcm).astype(np.int32)

    sign = np.where(samples < 0, 0x80, 0).astype(np.int32)
    magnitude = np.minimum(np.abs(samples), MULAW_CLIP) + MULAW_BIAS

    # Biased magnitude is in [0x84, 0x7FFF], so the leading bit sits at 7..14.
    _, bit_length = np.frexp(magnitude.astype(np.float64))
    exponent = np.clip(bit_length.astype(np.int32) - 8, 0, 7)
    mantissa = (magnitude >> (exponent + 3)) & 0x0F

    encoded = ~(sign | (exponent << 4) | mantissa) & 0xFF
    return encoded.astype(np.uint8).tobytes()


def upsample_8k_to_16k(pcm_8k: bytes) -> bytes:
    """Double the sample rate: each sample is followed by the mean of it and its successor.

    The final sample has no successor, so it is repeated.  Means round
    half up.
    """
    samples = _pcm16_samples(pcm_8k).astype(np.int32)
    if samples.size == 0:
        return b""

    following = np.append(samples[1:], samples[-1])
    interpolated = (samples + following + 1) >> 1

    out = np.empty(samples.size * RESAMPLE_FACTOR, dtype=np.int32)
    out[0::2] = samples
    out[1::2] = interpolated
    return out.astype(_PCM16).tobytes()


def downsample_16k_to_8k(pcm_16k: bytes) -> bytes:
    """Halve the sample rate by keeping every other sample (no anti-aliasing)."""
    samples = _pcm16_samples(pcm_16k)
    usable = samples.size - samples.size % RESAMPLE_FACTOR
    return samples[:usable:RESAMPLE_FACTOR].astype(_PCM16).tobytes()


def telephony_frame_to_speech_frame(payload_b64: str) -> bytes:
    """Twilio media payload (base64 mulaw 8kHz) → PCM16 16kHz for the speech engine."""
    try:
        mulaw = base64.b64decode(payload_b64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise AudioFormatError(f"Invalid base64 media payload: {e}") from e
    return upsample_8k_to_16k(decode_mulaw_to_linear16(mulaw))


def speech_frame_to_telephony_frame(pcm_16k: bytes) -> str:
    """PCM16 16kHz → base64 mulaw 8kHz, the payload shape Twilio expects."""
    mulaw = encode_linear16_to_mulaw(downsample_16k_to_8k(pcm_16k))
    return base64.b64encode(mulaw).decode("ascii")
