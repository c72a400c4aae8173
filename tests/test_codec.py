"""Tests for the mu-law / PCM codec and the 8k ↔ 16k resamplers."""

import base64
import struct

import numpy as np
import pytest

# Independent mu-law reference implementation
try:
    import audioop
except ImportError:
    import audioop_lts as audioop  # type: ignore[no-redef]

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from coaching.codec import (
    MULAW_DECODE_TABLE,
    AudioFormatError,
    decode_mulaw_to_linear16,
    downsample_16k_to_8k,
    encode_linear16_to_mulaw,
    speech_frame_to_telephony_frame,
    telephony_frame_to_speech_frame,
    upsample_8k_to_16k,
)


def _pcm(*samples: int) -> bytes:
    return struct.pack("<" + "h" * len(samples), *samples)


def _samples(pcm: bytes) -> list[int]:
    return np.frombuffer(pcm, dtype="<i2").tolist()


# ── mu-law decode ───────────────────────────────────────────────────


class TestMulawDecode:
    def test_table_matches_reference(self):
        """Every byte value expands to the standard G.711 mu-law sample."""
        all_bytes = bytes(range(256))
        assert decode_mulaw_to_linear16(all_bytes) == audioop.ulaw2lin(all_bytes, 2)

    def test_one_sample_per_byte(self):
        out = decode_mulaw_to_linear16(b"\x00\x7f\x80\xff")
        assert len(out) == 8

    def test_values_come_from_table(self):
        out = _samples(decode_mulaw_to_linear16(bytes(range(256))))
        assert out == MULAW_DECODE_TABLE.tolist()

    def test_known_values(self):
        assert _samples(decode_mulaw_to_linear16(b"\xff\x7f\x00\x80")) == [0, 0, -32124, 32124]

    def test_empty(self):
        assert decode_mulaw_to_linear16(b"") == b""


# ── mu-law encode ───────────────────────────────────────────────────


class TestMulawEncode:
    def test_matches_reference_for_non_negative_samples(self):
        samples = list(range(0, 32768, 3)) + [32635, 32636, 32767]
        pcm = _pcm(*samples)
        assert encode_linear16_to_mulaw(pcm) == audioop.lin2ulaw(pcm, 2)

    def test_silence_encodes_to_ff(self):
        assert encode_linear16_to_mulaw(_pcm(0, 0, 0)) == b"\xff\xff\xff"

    def test_sign_bit(self):
        pos, neg = encode_linear16_to_mulaw(_pcm(1000, -1000))
        # Inverted encoding: positive samples have the top bit set
        assert pos & 0x80
        assert not neg & 0x80

    def test_extremes_clip(self):
        out = encode_linear16_to_mulaw(_pcm(32767, -32768))
        assert out == b"\x80\x00"

    def test_odd_length_fails_fast(self):
        with pytest.raises(AudioFormatError):
            encode_linear16_to_mulaw(b"\x00\x00\x00")

    def test_roundtrip_within_quantization_error(self):
        """encode → decode reproduces every sample within half a mu-law step."""
        original = np.arange(-32768, 32768, 7, dtype=np.int32)
        decoded = np.frombuffer(
            decode_mulaw_to_linear16(encode_linear16_to_mulaw(original.astype("<i2").tobytes())),
            dtype="<i2",
        ).astype(np.int32)

        error = np.abs(decoded - original)
        bound = (np.abs(original) + 132) // 32 + 1
        assert np.all(error <= bound)

    def test_roundtrip_is_stable_on_decoded_values(self):
        """Re-encoding a decoded byte gives back the same byte (except -0)."""
        codes = bytes(b for b in range(256) if b != 0x7F)
        assert encode_linear16_to_mulaw(decode_mulaw_to_linear16(codes)) == codes


# ── Resamplers ──────────────────────────────────────────────────────


class TestResample:
    @pytest.mark.parametrize("n", [0, 1, 2, 7, 160])
    def test_upsample_doubles_length(self, n):
        out = upsample_8k_to_16k(_pcm(*range(n)))
        assert len(out) == 2 * n * 2

    @pytest.mark.parametrize("n", [0, 1, 2, 7, 320])
    def test_downsample_halves_length(self, n):
        out = downsample_16k_to_8k(_pcm(*range(n)))
        assert len(out) == (n // 2) * 2

    def test_upsample_interpolates(self):
        assert _samples(upsample_8k_to_16k(_pcm(0, 100, 200))) == [0, 50, 100, 150, 200, 200]

    def test_upsample_repeats_last_sample(self):
        assert _samples(upsample_8k_to_16k(_pcm(-5))) == [-5, -5]

    def test_upsample_rounds_half_up(self):
        assert _samples(upsample_8k_to_16k(_pcm(1, 2, -1, -2))) == [1, 2, 2, 1, -1, -1, -2, -2]

    def test_upsample_no_overflow(self):
        assert _samples(upsample_8k_to_16k(_pcm(32767, 32767))) == [32767] * 4

    def test_downsample_keeps_even_indices(self):
        assert _samples(downsample_16k_to_8k(_pcm(10, 11, 20, 21, 30))) == [10, 20]

    def test_down_after_up_is_identity(self):
        pcm = _pcm(5, -300, 12000, -32768, 32767)
        assert downsample_16k_to_8k(upsample_8k_to_16k(pcm)) == pcm

    def test_odd_length_fails_fast(self):
        with pytest.raises(AudioFormatError):
            upsample_8k_to_16k(b"\x01")
        with pytest.raises(AudioFormatError):
            downsample_16k_to_8k(b"\x01\x02\x03")


# ── Telephony framing ───────────────────────────────────────────────


class TestTelephonyFrames:
    def test_telephony_to_speech(self):
        """20ms of mu-law (160 bytes) becomes 320 PCM 16kHz samples."""
        payload = base64.b64encode(b"\xff" * 160).decode("ascii")
        pcm = telephony_frame_to_speech_frame(payload)
        assert len(pcm) == 640
        assert set(_samples(pcm)) == {0}

    def test_speech_to_telephony(self):
        payload = speech_frame_to_telephony_frame(b"\x00\x00" * 320)
        assert base64.b64decode(payload) == b"\xff" * 160

    def test_invalid_base64(self):
        with pytest.raises(AudioFormatError):
            telephony_frame_to_speech_frame("not base64!!")

    def test_sine_survives_roundtrip(self):
        t = np.arange(160) / 8000.0
        sine = (np.sin(2 * np.pi * 400 * t) * 10000).astype("<i2")
        payload = base64.b64encode(audioop.lin2ulaw(sine.tobytes(), 2)).decode("ascii")

        back = base64.b64decode(speech_frame_to_telephony_frame(telephony_frame_to_speech_frame(payload)))
        assert back == base64.b64decode(payload)
