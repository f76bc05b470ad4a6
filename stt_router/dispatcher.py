"""
Transcription Dispatcher

Turns one AudioSegment into exactly one TranscriptionResult:
    resolve backend -> encode for that backend -> invoke (async) -> tag with segment_id

dispatch() returns an asyncio.Task that never raises; every failure path
resolves to a TranscriptionResult carrying an ErrorKind.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from .backend_registry import BackendRegistry
from .models import (
    AudioSegment,
    EncodingFailed,
    ErrorKind,
    TranscriptionRequest,
    TranscriptionResult,
)
from .segment_encoder import encode

logger = logging.getLogger(__name__)


class TranscriptionDispatcher:
    """
    Encode-and-invoke step for captured segments.

    Args:
        registry: BackendRegistry used to resolve the id frozen on each segment
        timeout_s: Optional upper bound on a single backend call
    """

    def __init__(self, registry: BackendRegistry, timeout_s: Optional[float] = None):
        self.registry = registry
        self.timeout_s = timeout_s
        self.stats = {
            "dispatched": 0,
            "succeeded": 0,
            "failed": {kind.value: 0 for kind in ErrorKind},
        }

    def dispatch(self, segment: AudioSegment, prompt: Optional[str] = None) -> "asyncio.Task[TranscriptionResult]":
        """
        Start transcription of one segment without blocking the caller.

        Must be called from a running event loop.
        """
        self.stats["dispatched"] += 1
        return asyncio.create_task(
            self._run(segment, prompt),
            name=f"transcribe_segment_{segment.segment_id}",
        )

    async def _run(self, segment: AudioSegment, prompt: Optional[str]) -> TranscriptionResult:
        descriptor = self.registry.resolve(segment.backend_id)
        if not descriptor.available:
            logger.warning(f"🚫 Segment {segment.segment_id}: backend '{segment.backend_id}' unavailable")
            return self._failure(segment, ErrorKind.BACKEND_UNAVAILABLE, f"backend '{segment.backend_id}' unavailable")

        try:
            payload = encode(segment, descriptor.target_format)
        except EncodingFailed as e:
            logger.error(f"❌ Segment {segment.segment_id}: encoding failed: {e}")
            return self._failure(segment, ErrorKind.ENCODING_FAILED, str(e))

        request = TranscriptionRequest(
            segment=segment,
            payload=payload,
            prompt=prompt if descriptor.accepts_prompt else None,
        )

        try:
            call = descriptor.invoke(request.payload, request.prompt)
            if self.timeout_s:
                text = await asyncio.wait_for(call, timeout=self.timeout_s)
            else:
                text = await call
        except asyncio.TimeoutError:
            detail = f"{descriptor.backend_id}: timed out after {self.timeout_s}s"
            logger.error(f"❌ Segment {segment.segment_id}: {detail}")
            return self._failure(segment, ErrorKind.BACKEND_INVOCATION_FAILED, detail)
        except Exception as e:
            logger.error(f"❌ Segment {segment.segment_id}: backend '{descriptor.backend_id}' failed: {e}")
            return self._failure(segment, ErrorKind.BACKEND_INVOCATION_FAILED, str(e))

        self.stats["succeeded"] += 1
        logger.debug(f"Segment {segment.segment_id} transcribed by {descriptor.backend_id}: {text!r}")
        return TranscriptionResult.success(segment.segment_id, segment.backend_id, text or "")

    def _failure(self, segment: AudioSegment, kind: ErrorKind, detail: str) -> TranscriptionResult:
        self.stats["failed"][kind.value] += 1
        return TranscriptionResult.failure(segment.segment_id, segment.backend_id, kind, detail)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "dispatched": self.stats["dispatched"],
            "succeeded": self.stats["succeeded"],
            "failed": dict(self.stats["failed"]),
        }
