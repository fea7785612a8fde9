import base64
import binascii
import logging

import numpy as np

logger = logging.getLogger(__name__)

INPUT_SAMPLE_RATE = 16000
OUTPUT_SAMPLE_RATE = 24000
INPUT_MIME_TYPE = f"audio/pcm;rate={INPUT_SAMPLE_RATE}"

# Wire format is always little-endian regardless of host byte order.
_PCM16_LE = np.dtype("<i2")


def _clamp_audio(samples) -> np.ndarray:
    audio = np.asarray(samples, dtype=np.float32).reshape(-1)
    audio = np.nan_to_num(audio, nan=0.0, posinf=0.0, neginf=0.0)
    return np.clip(audio, -1.0, 1.0)


def float_to_pcm16(samples) -> np.ndarray:
    """
    Convert float samples in [-1, 1] to signed 16-bit PCM.

    Negative samples scale by 0x8000 and non-negative ones by 0x7FFF so both
    ends of the range map exactly onto the int16 limits.
    """
    audio = _clamp_audio(samples)
    scaled = np.where(audio < 0, audio * 0x8000, audio * 0x7FFF)
    return scaled.astype(np.int16)


def pcm16_to_float(pcm) -> np.ndarray:
    data = np.asarray(pcm, dtype=np.int16).reshape(-1).astype(np.float32)
    return np.where(data < 0, data / 0x8000, data / 0x7FFF).astype(np.float32)


def pcm16_to_bytes(pcm) -> bytes:
    return np.asarray(pcm, dtype=np.int16).astype(_PCM16_LE, copy=False).tobytes()


def bytes_to_pcm16(raw: bytes) -> np.ndarray:
    usable = len(raw) - (len(raw) % 2)
    if usable <= 0:
        return np.zeros((0,), dtype=np.int16)
    return np.frombuffer(raw[:usable], dtype=_PCM16_LE).astype(np.int16)


def bytes_to_base64(raw: bytes) -> str:
    return base64.b64encode(bytes(raw)).decode("ascii")


def base64_to_bytes(text: str) -> bytes:
    try:
        return base64.b64decode(text or "", validate=False)
    except (binascii.Error, ValueError) as e:
        logger.warning(f"Audio: invalid base64 payload ({e})")
        return b""


def encode_audio_chunk(samples) -> str:
    """float samples -> PCM16 little-endian -> base64 text."""
    return bytes_to_base64(pcm16_to_bytes(float_to_pcm16(samples)))


def decode_audio_chunk(data: str) -> np.ndarray:
    """base64 text -> PCM16 little-endian -> float32 samples."""
    return pcm16_to_float(bytes_to_pcm16(base64_to_bytes(data)))


def is_pcm_mime_type(mime_type: str | None) -> bool:
    return str(mime_type or "").strip().lower().startswith("audio/pcm")
