"""
Transcription Backend Base Protocol

Defines the uniform async contract every backend implements so the
dispatcher never branches on backend identity.
"""

import time
from typing import Protocol, Dict, Any, Optional, Tuple
import logging

logger = logging.getLogger(__name__)


class TranscriptionBackend(Protocol):
    """
    Unified interface for transcription backends.

    Methods:
        invoke: One-shot transcription of an encoded segment
        validate_config: Check credentials / endpoints before first use
        get_stats: Request counters for /metrics
        aclose: Release network clients or model handles
    """

    async def invoke(self, audio: bytes, prompt: Optional[str] = None) -> str:
        """
        Transcribe one encoded segment.

        Args:
            audio: Payload in the format the registry declared for this backend
            prompt: Optional priming prompt (ignored by backends that do not support it)

        Returns:
            str: Raw transcript text (normalization happens downstream)

        Raises:
            BackendInvocationFailed: On network, process or model failure
        """
        ...

    def validate_config(self) -> Tuple[bool, Optional[str]]:
        """
        Returns:
            (True, None) if usable, (False, "reason") otherwise
        """
        ...

    def get_stats(self) -> Dict[str, Any]:
        ...

    async def aclose(self) -> None:
        ...


class BackendStats:
    """Request counters shared by the concrete backends."""

    def __init__(self):
        self._stats = {
            "total_requests": 0,
            "total_failures": 0,
            "total_latency_ms": 0.0,
            "last_latency_ms": 0.0,
            "last_status": "idle",
            "last_error": None,
        }

    def record_success(self, started: float) -> float:
        latency_ms = (time.perf_counter() - started) * 1000
        self._stats["total_requests"] += 1
        self._stats["total_latency_ms"] += latency_ms
        self._stats["last_latency_ms"] = latency_ms
        self._stats["last_status"] = "success"
        self._stats["last_error"] = None
        return latency_ms

    def record_failure(self, error: str) -> None:
        self._stats["total_requests"] += 1
        self._stats["total_failures"] += 1
        self._stats["last_status"] = "error"
        self._stats["last_error"] = error

    def as_dict(self) -> Dict[str, Any]:
        successes = self._stats["total_requests"] - self._stats["total_failures"]
        avg_latency = self._stats["total_latency_ms"] / successes if successes else 0.0
        return {
            "total_requests": self._stats["total_requests"],
            "total_failures": self._stats["total_failures"],
            "last_latency_ms": round(self._stats["last_latency_ms"], 2),
            "avg_latency_ms": round(avg_latency, 2),
            "last_status": self._stats["last_status"],
            "last_error": self._stats["last_error"],
        }
