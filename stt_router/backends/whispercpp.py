"""
whisper.cpp Native Engine Backend

Posts a 16-bit PCM WAV file to a running whisper.cpp server
(`whisper-server`, default endpoint http://127.0.0.1:8080/inference).
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional, Tuple

import httpx

from ..models import BackendInvocationFailed
from .base import BackendStats

logger = logging.getLogger(__name__)


class WhisperCppBackend:
    """Async client for the whisper.cpp server /inference endpoint."""

    def __init__(
        self,
        url: str = "http://127.0.0.1:8080/inference",
        *,
        timeout_seconds: float = 45.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not url:
            raise ValueError("whisper.cpp server URL not set (STT_ROUTER_WHISPERCPP_URL)")

        self.url = url
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds))
        self._stats = BackendStats()

        logger.info(f"🧩 whisper.cpp backend initialized (url: {url})")

    async def invoke(self, audio: bytes, prompt: Optional[str] = None) -> str:
        files = {"file": ("input.wav", audio, "audio/wav")}
        data = {"response_format": "json", "temperature": "0.0"}
        if prompt:
            data["prompt"] = prompt

        started = time.perf_counter()
        try:
            response = await self._client.post(self.url, data=data, files=files)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as http_err:
            detail = f"status={http_err.response.status_code} body={http_err.response.text[:200]}"
            self._stats.record_failure(detail)
            logger.error(f"whisper.cpp transcription failed | {detail}")
            raise BackendInvocationFailed(f"whispercpp: {detail}") from http_err
        except (httpx.HTTPError, ValueError) as exc:
            self._stats.record_failure(str(exc))
            logger.error(f"whisper.cpp request error: {exc}")
            raise BackendInvocationFailed(f"whispercpp: {exc}") from exc

        if "error" in payload:
            self._stats.record_failure(str(payload["error"]))
            raise BackendInvocationFailed(f"whispercpp: {payload['error']}")

        self._stats.record_success(started)
        return payload.get("text") or ""

    def validate_config(self) -> Tuple[bool, Optional[str]]:
        if not self.url.startswith(("http://", "https://")):
            return False, f"Invalid whisper.cpp URL: {self.url}"
        return True, None

    def get_stats(self) -> Dict[str, Any]:
        stats = self._stats.as_dict()
        stats["url"] = self.url
        return stats

    async def aclose(self) -> None:
        await self._client.aclose()
