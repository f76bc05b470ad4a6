"""
Utility Functions for STT Router Microservice

Functions:
    normalize_transcript: Clean backend output before it reaches the consumer
    validate_audio_chunk: Validate incoming 16-bit PCM chunks (server-side VAD)
    pcm16_to_float32: Convert 16-bit PCM bytes to float32 samples
    float32_from_base64: Decode base64 little-endian float32 samples
"""

import base64
import binascii
import re
import logging
from typing import Any, Dict, List

import numpy as np

logger = logging.getLogger(__name__)

# ============================================================================
# Transcript Normalization
# ============================================================================

# Non-speech annotations emitted by Whisper-family backends:
# [silence], [BLANK_AUDIO], (music), *laughs*, <|endoftext|>
ANNOTATION_PATTERNS = [
    r'\[[^\]]*\]',
    r'\([^)]*\)',
    r'\*[^*]+\*',
    r'<\|[^|>]*\|>',
    r'♪+',
]

# Whole-transcript hallucinations Whisper produces on silence
HALLUCINATION_PHRASES = {
    "thank you for watching",
    "thanks for watching",
    "please subscribe",
    "like and subscribe",
    "see you next time",
}


def normalize_transcript(text: str) -> str:
    """
    Normalize raw backend text.

    Steps:
    1. Strip surrounding whitespace
    2. Remove non-speech annotations ([silence], (music), *laughs*, ...)
    3. Drop known whole-transcript hallucinations
    4. Collapse whitespace and spaces before punctuation
    5. Return "" when nothing speakable remains

    Sentence punctuation and capitalization are preserved.

    Examples:
        >>> normalize_transcript("  Hello world. [noise] ")
        'Hello world.'

        >>> normalize_transcript("[silence]")
        ''
    """
    if not text:
        return ""

    text = text.strip()

    for pattern in ANNOTATION_PATTERNS:
        text = re.sub(pattern, ' ', text)

    text = " ".join(text.split())
    text = re.sub(r'\s+([.,!?;:])', r'\1', text)

    bare = re.sub(r'[^\w\s]', '', text).strip().lower()
    if not bare:
        return ""
    if bare in HALLUCINATION_PHRASES:
        logger.debug(f"Dropped hallucinated transcript: '{text}'")
        return ""

    return text


# ============================================================================
# Audio helpers
# ============================================================================

def validate_audio_chunk(audio_data: bytes) -> Dict[str, Any]:
    """
    Validate incoming 16-bit PCM audio chunks.

    Returns:
        dict: {"valid": bool, "errors": List[str], "warnings": List[str], "size_bytes": int}
    """
    errors: List[str] = []
    warnings: List[str] = []

    if not audio_data:
        errors.append("Audio data is empty")
        return {"valid": False, "errors": errors, "warnings": warnings, "size_bytes": 0}

    size_bytes = len(audio_data)
    max_size = 100 * 1024  # 100KB maximum per chunk

    if size_bytes % 2 != 0:
        errors.append(f"Audio chunk size {size_bytes} is not a multiple of 2 (16-bit PCM)")

    if size_bytes > max_size:
        errors.append(f"Audio chunk too large: {size_bytes} bytes (max: {max_size})")
    elif size_bytes < 1024:
        warnings.append(f"Small audio chunk: {size_bytes} bytes")

    return {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
        "size_bytes": size_bytes,
    }


def pcm16_to_float32(audio_data: bytes) -> np.ndarray:
    """Convert little-endian 16-bit PCM bytes to float32 samples in [-1, 1)."""
    return np.frombuffer(audio_data, dtype='<i2').astype(np.float32) / 32768.0


def float32_from_base64(encoded: str) -> np.ndarray:
    """
    Decode base64 little-endian float32 samples (browser Float32Array payloads).

    Raises:
        ValueError: Invalid base64 or byte length not a multiple of 4
    """
    try:
        raw = base64.b64decode(encoded, validate=True)
    except (binascii.Error, TypeError) as e:
        raise ValueError(f"Invalid base64 audio payload: {e}") from e

    if len(raw) % 4 != 0:
        raise ValueError(f"Audio payload length {len(raw)} is not a multiple of 4 (float32)")

    return np.frombuffer(raw, dtype='<f4').astype(np.float32)
