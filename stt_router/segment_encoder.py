"""
Segment Encoder for STT Router Microservice

Converts a captured AudioSegment into the byte layout a backend expects.

Sample formats:
    FLOAT32: native 32-bit IEEE float (lossless)
    PCM16: 16-bit signed integer, clamped and rounded to nearest

Containers:
    RAW: little-endian samples, no header
    WAV: minimal RIFF/WAVE file written with soundfile
"""

import io
import logging
from dataclasses import dataclass
from enum import Enum

import numpy as np
import soundfile as sf

from .models import AudioSegment, EncodingFailed, CAPTURE_SAMPLE_RATE

logger = logging.getLogger(__name__)


class SampleFormat(Enum):
    FLOAT32 = "float32"
    PCM16 = "pcm16"


class Container(Enum):
    RAW = "raw"
    WAV = "wav"


@dataclass(frozen=True)
class TargetFormat:
    """Bit depth + container pair requested by a backend."""
    sample_format: SampleFormat
    container: Container

    @property
    def mime_type(self) -> str:
        return "audio/wav" if self.container is Container.WAV else "application/octet-stream"


FLOAT32_RAW = TargetFormat(SampleFormat.FLOAT32, Container.RAW)
FLOAT32_WAV = TargetFormat(SampleFormat.FLOAT32, Container.WAV)
PCM16_WAV = TargetFormat(SampleFormat.PCM16, Container.WAV)

# soundfile subtype per sample format
_WAV_SUBTYPES = {
    SampleFormat.FLOAT32: "FLOAT",
    SampleFormat.PCM16: "PCM_16",
}

_RAW_DTYPES = {
    SampleFormat.FLOAT32: np.dtype("<f4"),
    SampleFormat.PCM16: np.dtype("<i2"),
}


def quantize_pcm16(samples: np.ndarray) -> np.ndarray:
    """
    Linear float -> int16 quantization.

    Clamps to [-1.0, 1.0], scales positive samples by 32767 and negative
    samples by 32768, rounds to nearest.
    """
    clipped = np.clip(samples.astype(np.float64), -1.0, 1.0)
    scaled = np.where(clipped > 0, clipped * 32767.0, clipped * 32768.0)
    return np.clip(np.rint(scaled), -32768, 32767).astype(np.int16)


def _validate(segment: AudioSegment) -> np.ndarray:
    if segment.sample_rate != CAPTURE_SAMPLE_RATE:
        raise EncodingFailed(
            f"Segment {segment.segment_id} sample rate {segment.sample_rate}Hz "
            f"does not match capture rate {CAPTURE_SAMPLE_RATE}Hz"
        )

    samples = segment.samples
    if samples.size == 0:
        raise EncodingFailed(f"Segment {segment.segment_id} is empty")

    if not np.all(np.isfinite(samples)):
        raise EncodingFailed(f"Segment {segment.segment_id} contains non-finite samples")

    return samples


def encode(segment: AudioSegment, target_format: TargetFormat) -> bytes:
    """
    Encode a segment for a backend.

    Pure: same segment and format always yield the same bytes.

    Args:
        segment: Captured AudioSegment (16kHz mono float32)
        target_format: Sample format + container requested by the backend

    Returns:
        bytes: Encoded payload

    Raises:
        EncodingFailed: Empty buffer, non-finite samples or wrong sample rate
    """
    samples = _validate(segment)

    if target_format.sample_format is SampleFormat.PCM16:
        data = quantize_pcm16(samples)
    else:
        data = samples.astype(np.float32)

    if target_format.container is Container.RAW:
        return data.astype(_RAW_DTYPES[target_format.sample_format]).tobytes()

    buffer = io.BytesIO()
    sf.write(
        buffer,
        data,
        segment.sample_rate,
        format="WAV",
        subtype=_WAV_SUBTYPES[target_format.sample_format],
    )
    payload = buffer.getvalue()

    logger.debug(
        f"Encoded segment {segment.segment_id}: {len(samples)} samples -> "
        f"{len(payload)} bytes ({target_format.sample_format.value}/{target_format.container.value})"
    )
    return payload


def decode(data: bytes, target_format: TargetFormat) -> np.ndarray:
    """
    Inverse of encode().

    Returns float32 samples for FLOAT32 formats and int16 samples for PCM16.
    """
    dtype = "float32" if target_format.sample_format is SampleFormat.FLOAT32 else "int16"

    if target_format.container is Container.RAW:
        return np.frombuffer(data, dtype=_RAW_DTYPES[target_format.sample_format]).astype(dtype)

    samples, _ = sf.read(io.BytesIO(data), dtype=dtype)
    return samples
