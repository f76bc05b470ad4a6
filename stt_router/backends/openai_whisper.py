"""
OpenAI Whisper Remote Backend

Posts a float32 WAV file to an OpenAI-compatible /audio/transcriptions
endpoint. Any provider exposing that endpoint (OpenAI, Groq, a local proxy)
works by changing the base URL.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional, Tuple

import httpx

from ..models import BackendInvocationFailed
from .base import BackendStats

logger = logging.getLogger(__name__)


class OpenAIWhisperBackend:
    """
    Thin async wrapper around the OpenAI speech-to-text endpoint.

    Keeps basic request counters so /metrics can report backend status.
    """

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "whisper-1",
        *,
        base_url: str = "https://api.openai.com/v1",
        language: Optional[str] = None,
        timeout_seconds: float = 45.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not api_key:
            raise ValueError(
                "OpenAI API key not set. Set OPENAI_API_KEY environment variable "
                "or configure openai_api_key in STTRouterConfig."
            )

        self.api_key = api_key
        self.model = model
        self.language = language
        self.endpoint = f"{base_url.rstrip('/')}/audio/transcriptions"

        timeout = httpx.Timeout(timeout_seconds, read=timeout_seconds)
        limits = httpx.Limits(max_connections=20, max_keepalive_connections=10)
        self._client = client or httpx.AsyncClient(timeout=timeout, limits=limits)
        self._stats = BackendStats()

        logger.info(f"🌐 OpenAI Whisper backend initialized (model: {model}, endpoint: {self.endpoint})")

    async def invoke(self, audio: bytes, prompt: Optional[str] = None) -> str:
        """
        Send one float32 WAV segment for transcription.

        Args:
            audio: WAV file bytes
            prompt: Optional priming prompt forwarded as the `prompt` field
        """
        files = {"file": ("input.wav", audio, "audio/wav")}
        data = {"model": self.model, "response_format": "json"}
        if prompt:
            data["prompt"] = prompt
        if self.language:
            data["language"] = self.language
        headers = {"Authorization": f"Bearer {self.api_key}"}

        started = time.perf_counter()
        try:
            response = await self._client.post(self.endpoint, data=data, files=files, headers=headers)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as http_err:
            detail = f"status={http_err.response.status_code} body={http_err.response.text[:200]}"
            self._stats.record_failure(detail)
            logger.error(f"OpenAI transcription failed | {detail}")
            raise BackendInvocationFailed(f"whisper_openai: {detail}") from http_err
        except (httpx.HTTPError, ValueError) as exc:
            self._stats.record_failure(str(exc))
            logger.error(f"OpenAI transcription request error: {exc}")
            raise BackendInvocationFailed(f"whisper_openai: {exc}") from exc

        self._stats.record_success(started)
        return payload.get("text") or ""

    def validate_config(self) -> Tuple[bool, Optional[str]]:
        if not self.api_key:
            return False, "OPENAI_API_KEY is not set"
        return True, None

    def get_stats(self) -> Dict[str, Any]:
        stats = self._stats.as_dict()
        stats["model"] = self.model
        return stats

    async def aclose(self) -> None:
        await self._client.aclose()
