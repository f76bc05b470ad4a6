"""
Backend Registry for STT Router Microservice

Single place that knows which encoding each backend needs. Resolves a
backend id to a BackendDescriptor; unknown, disabled or misconfigured ids
resolve to NOOP_DESCRIPTOR, which disables capture upstream.

Backend objects are built lazily on first resolve. A backend whose
constructor fails (missing API key, missing package) is logged and
treated as unavailable.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .config import STTRouterConfig
from .models import BackendUnavailable
from .segment_encoder import TargetFormat, FLOAT32_RAW, FLOAT32_WAV, PCM16_WAV
from .backends.base import TranscriptionBackend

logger = logging.getLogger(__name__)


class BackendKind(Enum):
    LOCAL = "local"                  # In-process model, raw samples
    REMOTE = "remote"                # Network service, file container
    NATIVE_ENGINE = "native_engine"  # Local native engine, 16-bit container
    NONE = "none"                    # Capture disabled


@dataclass(frozen=True)
class BackendDescriptor:
    """Capability descriptor returned by BackendRegistry.resolve()."""
    backend_id: str
    kind: BackendKind
    target_format: Optional[TargetFormat]
    accepts_prompt: bool
    backend: Optional[TranscriptionBackend] = None

    @property
    def available(self) -> bool:
        return self.kind is not BackendKind.NONE and self.backend is not None

    async def invoke(self, audio: bytes, prompt: Optional[str] = None) -> str:
        """One-shot call; the prompt is dropped for backends that do not take one."""
        if not self.available:
            raise BackendUnavailable(f"Backend '{self.backend_id}' is not available")
        return await self.backend.invoke(audio, prompt if self.accepts_prompt else None)


NOOP_DESCRIPTOR = BackendDescriptor(
    backend_id="none",
    kind=BackendKind.NONE,
    target_format=None,
    accepts_prompt=False,
)


@dataclass
class _Registration:
    kind: BackendKind
    target_format: TargetFormat
    accepts_prompt: bool
    factory: Callable[[], TranscriptionBackend]
    instance: Optional[TranscriptionBackend] = None
    enabled: bool = True
    init_error: Optional[str] = None


class BackendRegistry:
    """Maps backend ids to descriptors."""

    def __init__(self):
        self._registrations: Dict[str, _Registration] = {}

    def register(
        self,
        backend_id: str,
        kind: BackendKind,
        target_format: TargetFormat,
        accepts_prompt: bool,
        factory: Callable[[], TranscriptionBackend],
    ) -> None:
        """
        Register a backend.

        Args:
            backend_id: Identifier stored in configuration (e.g. "whisper_openai")
            kind: Backend variant
            target_format: Encoding the backend requires
            accepts_prompt: Whether a priming prompt is forwarded
            factory: Zero-arg callable building the backend on first resolve
        """
        if kind is BackendKind.NONE:
            raise ValueError("BackendKind.NONE is reserved for the no-op descriptor")

        self._registrations[backend_id] = _Registration(
            kind=kind,
            target_format=target_format,
            accepts_prompt=accepts_prompt,
            factory=factory,
        )
        logger.debug(f"Registered backend '{backend_id}' ({kind.value}, {target_format.sample_format.value}/{target_format.container.value})")

    def register_instance(
        self,
        backend_id: str,
        kind: BackendKind,
        target_format: TargetFormat,
        accepts_prompt: bool,
        backend: TranscriptionBackend,
    ) -> None:
        """Register an already-built backend."""
        self.register(backend_id, kind, target_format, accepts_prompt, lambda: backend)

    def set_enabled(self, backend_id: str, enabled: bool) -> None:
        registration = self._registrations.get(backend_id)
        if registration is None:
            raise KeyError(backend_id)
        registration.enabled = enabled
        logger.info(f"{'✅ Enabled' if enabled else '🚫 Disabled'} backend '{backend_id}'")

    def resolve(self, backend_id: Optional[str]) -> BackendDescriptor:
        """
        Resolve a backend id.

        Returns:
            BackendDescriptor, or NOOP_DESCRIPTOR for unknown/disabled/broken ids
        """
        registration = self._registrations.get(backend_id or "")
        if registration is None:
            if backend_id not in (None, "", "none"):
                logger.warning(f"⚠️ Unknown backend '{backend_id}' - capture disabled")
            return NOOP_DESCRIPTOR

        if not registration.enabled or registration.init_error:
            return NOOP_DESCRIPTOR

        if registration.instance is None:
            try:
                instance = registration.factory()
            except Exception as e:
                registration.init_error = str(e)
                logger.warning(f"⚠️ Backend '{backend_id}' initialization failed: {e}")
                return NOOP_DESCRIPTOR

            is_valid, error = instance.validate_config()
            if not is_valid:
                registration.init_error = error or "invalid configuration"
                logger.warning(f"⚠️ Backend '{backend_id}' configuration invalid: {registration.init_error}")
                return NOOP_DESCRIPTOR

            registration.instance = instance
            logger.info(f"✅ Backend '{backend_id}' initialized")

        return BackendDescriptor(
            backend_id=backend_id,
            kind=registration.kind,
            target_format=registration.target_format,
            accepts_prompt=registration.accepts_prompt,
            backend=registration.instance,
        )

    def capture_enabled(self, backend_id: Optional[str]) -> bool:
        return self.resolve(backend_id).available

    @property
    def backend_ids(self) -> List[str]:
        return list(self._registrations.keys())

    def get_stats(self) -> Dict[str, Any]:
        stats = {}
        for backend_id, registration in self._registrations.items():
            entry: Dict[str, Any] = {
                "kind": registration.kind.value,
                "enabled": registration.enabled,
                "initialized": registration.instance is not None,
                "init_error": registration.init_error,
            }
            if registration.instance is not None:
                entry.update(registration.instance.get_stats())
            stats[backend_id] = entry
        return stats

    async def aclose(self) -> None:
        for backend_id, registration in self._registrations.items():
            if registration.instance is None:
                continue
            try:
                await registration.instance.aclose()
            except Exception as e:
                logger.warning(f"⚠️ Failed to close backend '{backend_id}': {e}")
            registration.instance = None

    @classmethod
    def from_config(cls, config: STTRouterConfig) -> "BackendRegistry":
        """Registry with the default backends wired to configuration."""
        from .backends.local_whisper import LocalWhisperBackend
        from .backends.openai_whisper import OpenAIWhisperBackend
        from .backends.whispercpp import WhisperCppBackend
        from .backends.mock import MockTranscriptionBackend

        registry = cls()

        # On-device model: samples go in as-is, no file conversion
        registry.register(
            "whisper_local",
            BackendKind.LOCAL,
            FLOAT32_RAW,
            accepts_prompt=True,
            factory=lambda: LocalWhisperBackend(config),
        )

        # Remote API: float32 WAV container
        registry.register(
            "whisper_openai",
            BackendKind.REMOTE,
            FLOAT32_WAV,
            accepts_prompt=True,
            factory=lambda: OpenAIWhisperBackend(
                config.openai_api_key,
                config.openai_model,
                base_url=config.openai_base_url,
                language=config.whisper_language,
                timeout_seconds=config.backend_timeout_s,
            ),
        )

        # Native engine: WAV downsampled to 16-bit PCM
        registry.register(
            "whispercpp",
            BackendKind.NATIVE_ENGINE,
            PCM16_WAV,
            accepts_prompt=True,
            factory=lambda: WhisperCppBackend(
                config.whispercpp_url,
                timeout_seconds=config.backend_timeout_s,
            ),
        )

        registry.register(
            "mock",
            BackendKind.LOCAL,
            FLOAT32_RAW,
            accepts_prompt=False,
            factory=lambda: MockTranscriptionBackend(config.mock_transcript),
        )

        logger.info(f"📋 Backend registry ready: {registry.backend_ids}")
        return registry
