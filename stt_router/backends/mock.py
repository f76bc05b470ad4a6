"""
Mock Transcription Backend

Returns a fixed transcript without touching any model or network.

Usage:
    - Unit tests without API costs
    - Development without a GPU or API key
    - Load testing (predictable latency)
"""

import asyncio
import time
import logging
from typing import Any, Dict, List, Optional, Tuple

from ..models import BackendInvocationFailed
from .base import BackendStats

logger = logging.getLogger(__name__)


class MockTranscriptionBackend:
    """
    Configurable fake backend.

    Args:
        transcript: Text returned by every invoke()
        delay_s: Simulated inference time
        fail_with: If set, every invoke() raises BackendInvocationFailed with this reason
    """

    def __init__(self, transcript: str = "Mock transcription.", delay_s: float = 0.0, fail_with: Optional[str] = None):
        self.transcript = transcript
        self.delay_s = delay_s
        self.fail_with = fail_with
        self.calls: List[Tuple[bytes, Optional[str]]] = []
        self._stats = BackendStats()
        logger.info(" Mock transcription backend initialized")

    async def invoke(self, audio: bytes, prompt: Optional[str] = None) -> str:
        self.calls.append((audio, prompt))
        started = time.perf_counter()

        if self.delay_s:
            await asyncio.sleep(self.delay_s)

        if self.fail_with:
            self._stats.record_failure(self.fail_with)
            raise BackendInvocationFailed(self.fail_with)

        self._stats.record_success(started)
        return self.transcript

    def validate_config(self) -> Tuple[bool, Optional[str]]:
        return True, None

    def get_stats(self) -> Dict[str, Any]:
        stats = self._stats.as_dict()
        stats["calls"] = len(self.calls)
        return stats

    async def aclose(self) -> None:
        pass
