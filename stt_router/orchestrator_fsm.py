"""
Speech Orchestrator FSM

Drives one capture session: IDLE → LISTENING → SPEECH_ACTIVE → SEGMENT_DISPATCHED → LISTENING

At most one segment is in flight. While a segment is being transcribed the
detector is paused, so the next speech segment can only start once the
previous result has been delivered (or the session was stopped).

Results are matched by segment_id; a result for anything other than the
current in-flight segment is dropped.
"""

import asyncio
import inspect
import itertools
import logging
import time
from enum import Enum
from typing import Any, Optional, Protocol, Sequence

from .backend_registry import BackendRegistry
from .config import ConfigStore, KEY_AUTOSEND, KEY_STT_BACKEND, KEY_STT_PROMPT, KEY_TTS_MUTED
from .dispatcher import TranscriptionDispatcher
from .latency_tracker import LatencyTracker, Phase
from .models import AudioSegment, ErrorKind, OrchestratorStatus, TranscriptionResult
from .structured_logger import StructuredLogger
from .utils import normalize_transcript
from .vad_detector import SpeechDetector

logger = logging.getLogger(__name__)


class State(Enum):
    """Capture session states"""
    IDLE = "idle"
    LISTENING = "listening"
    SPEECH_ACTIVE = "speech_active"
    SEGMENT_DISPATCHED = "segment_dispatched"


class TranscriptConsumer(Protocol):
    """Receives the outcome of every dispatched segment. Methods may be coroutines."""

    def on_transcript(self, text: str) -> Any:
        ...

    def on_transcription_failed(self, segment_id: int, error_kind: ErrorKind) -> Any:
        ...


class SpeechOrchestrator:
    """
    Segment lifecycle state machine.

    Args:
        config_store: Key/value configuration (backend id, prompt, mute, autosend)
        registry: BackendRegistry used for capture gating and dispatch
        detector: Upstream voice activity detector
        consumer: TranscriptConsumer notified of results
        dispatcher: Optional pre-built dispatcher (defaults to one over `registry`)
        latency_tracker: Optional tracker (defaults to a fresh one per session)
        backend_timeout_s: Upper bound on one backend call
        log_state_transitions: Emit INFO lines for every transition
    """

    def __init__(
        self,
        config_store: ConfigStore,
        registry: BackendRegistry,
        detector: SpeechDetector,
        consumer: Optional[TranscriptConsumer] = None,
        *,
        session_id: str = "default",
        dispatcher: Optional[TranscriptionDispatcher] = None,
        latency_tracker: Optional[LatencyTracker] = None,
        backend_timeout_s: Optional[float] = None,
        log_state_transitions: bool = True,
    ):
        self.session_id = session_id
        self.config_store = config_store
        self.registry = registry
        self.detector = detector
        self.consumer = consumer
        self.dispatcher = dispatcher or TranscriptionDispatcher(registry, timeout_s=backend_timeout_s)
        self.latency = latency_tracker or LatencyTracker(session_id)
        self.log_state_transitions = log_state_transitions
        self.structured_logger = StructuredLogger(logger)

        self.state = State.IDLE
        self._segment_ids = itertools.count(1)
        self._in_flight_segment_id: Optional[int] = None
        self._speech_started_at: Optional[float] = None
        self._watcher: Optional[asyncio.Task] = None

        self.valid_transitions = {
            State.IDLE: [State.LISTENING],
            State.LISTENING: [State.SPEECH_ACTIVE, State.IDLE],
            State.SPEECH_ACTIVE: [State.SEGMENT_DISPATCHED, State.LISTENING, State.IDLE],
            State.SEGMENT_DISPATCHED: [State.LISTENING, State.IDLE],
        }

        self.counters = {
            "segments_dispatched": 0,
            "transcripts_delivered": 0,
            "empty_transcripts": 0,
            "failures_delivered": 0,
            "stale_results_discarded": 0,
            "rejected_events": 0,
        }

    # ------------------------------------------------------------------ #
    # Transitions
    # ------------------------------------------------------------------ #

    def _transition(self, new_state: State, trigger: str, segment_id: Optional[int] = None) -> bool:
        old_state = self.state
        if new_state not in self.valid_transitions.get(old_state, []):
            logger.error(
                f"[{self.session_id}] ❌ INVALID TRANSITION: "
                f"{old_state.value.upper()} → {new_state.value.upper()} (trigger: {trigger})"
            )
            return False

        self.state = new_state
        if self.log_state_transitions:
            logger.info(
                f"[{self.session_id}] {old_state.value.upper()} → {new_state.value.upper()} ({trigger})"
            )
        self.structured_logger.state_transition(
            self.session_id, old_state.value, new_state.value, trigger, segment_id=segment_id
        )
        return True

    def _reject(self, event: str, reason: str) -> None:
        self.counters["rejected_events"] += 1
        logger.warning(f"[{self.session_id}] ⚠️ Ignoring {event} in {self.state.value.upper()}: {reason}")

    # ------------------------------------------------------------------ #
    # Session control
    # ------------------------------------------------------------------ #

    def start(self) -> bool:
        """
        Begin listening.

        Returns:
            True if the session is listening, False if capture is disabled
            (detector errored or the configured backend is unavailable)
        """
        if self.state is not State.IDLE:
            logger.debug(f"[{self.session_id}] start() ignored, already {self.state.value}")
            return True

        if self.detector.errored is not None:
            logger.warning(f"[{self.session_id}] 🚫 Cannot start: detector error: {self.detector.errored}")
            return False

        backend_id = self.config_store.get(KEY_STT_BACKEND)
        if not self.registry.capture_enabled(backend_id):
            logger.warning(f"[{self.session_id}] 🚫 Cannot start: backend '{backend_id or 'none'}' disabled")
            return False

        self._transition(State.LISTENING, "start")
        self.detector.start()
        logger.info(f"[{self.session_id}] 🎤 Listening (backend: {backend_id})")
        return True

    def stop(self) -> None:
        """
        Return to IDLE from any state.

        A pending backend call is not aborted; its result is discarded when
        it arrives.
        """
        if self.state is State.IDLE:
            return

        self.detector.pause()

        if self._watcher is not None and not self._watcher.done():
            self._watcher.cancel()
        self._watcher = None

        if self._in_flight_segment_id is not None:
            logger.info(f"[{self.session_id}] ⏹️ Stopped with segment {self._in_flight_segment_id} in flight, result will be discarded")
        self._in_flight_segment_id = None
        self._speech_started_at = None
        self.latency.discard(Phase.SPEECH)
        self.latency.discard(Phase.TRANSCRIBE)

        self._transition(State.IDLE, "stop")

    def on_detector_error(self, error: BaseException) -> None:
        """Detector became unusable mid-session; stop capturing."""
        logger.error(f"[{self.session_id}] ❌ Detector error: {error}")
        self.stop()

    # ------------------------------------------------------------------ #
    # Detector events
    # ------------------------------------------------------------------ #

    def on_speech_start(self) -> bool:
        if self.state is State.IDLE:
            self._reject("speech_start", "session not started")
            return False
        if self.state is State.SEGMENT_DISPATCHED:
            self._reject("speech_start", f"segment {self._in_flight_segment_id} still in flight")
            return False

        # Restart while already active overwrites the speech phase
        self.latency.mark_phase_start(Phase.SPEECH)
        self._speech_started_at = time.time()

        if self.state is State.LISTENING:
            self._transition(State.SPEECH_ACTIVE, "speech_start")
        return True

    def on_speech_end(self, samples: Sequence[float]) -> Optional[int]:
        """
        Commit a segment and dispatch it.

        Args:
            samples: Mono float32 samples at the capture rate

        Returns:
            The new segment id, or None if the event was rejected or the
            segment could not be scheduled
        """
        if self.state is not State.SPEECH_ACTIVE:
            reason = "no preceding speech_start"
            if self.state is State.SEGMENT_DISPATCHED:
                reason = f"segment {self._in_flight_segment_id} still in flight"
            elif self.state is State.IDLE:
                reason = "session not started"
            self._reject("speech_end", reason)
            return None

        segment_id = next(self._segment_ids)
        backend_id = self.config_store.get(KEY_STT_BACKEND)
        captured_at = self._speech_started_at or time.time()
        self._speech_started_at = None
        self.latency.mark_phase_end(Phase.SPEECH)

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._fail_unscheduled(segment_id, backend_id, "no running event loop")
            return None

        segment = None
        try:
            segment = AudioSegment(
                segment_id=segment_id,
                samples=samples,
                backend_id=backend_id,
                captured_at=captured_at,
            )
        except (TypeError, ValueError) as e:
            logger.error(f"[{self.session_id}] ❌ Segment {segment_id}: malformed sample buffer: {e}")
            task = loop.create_future()
            task.set_result(TranscriptionResult.failure(
                segment_id, backend_id or "", ErrorKind.ENCODING_FAILED, f"malformed sample buffer: {e}"
            ))
        else:
            task = self.dispatcher.dispatch(segment, self.config_store.get(KEY_STT_PROMPT) or None)

        self.latency.mark_phase_start(Phase.TRANSCRIBE)
        self.detector.pause()
        self._in_flight_segment_id = segment_id
        self._transition(State.SEGMENT_DISPATCHED, "speech_end", segment_id=segment_id)

        self._watcher = loop.create_task(
            self._await_result(segment_id, task),
            name=f"watch_segment_{segment_id}",
        )

        if segment is not None:
            self.counters["segments_dispatched"] += 1
            self.structured_logger.segment_dispatched(
                self.session_id, segment_id, segment.backend_id, segment.duration_s
            )
        return segment_id

    def _fail_unscheduled(self, segment_id: int, backend_id: Optional[str], detail: str) -> None:
        """Segment could not be handed to the dispatcher; report it and keep listening."""
        logger.error(f"[{self.session_id}] ❌ Segment {segment_id} not dispatched to '{backend_id or 'none'}': {detail}")
        self._transition(State.LISTENING, "dispatch_failed", segment_id=segment_id)
        self.counters["failures_delivered"] += 1
        self.structured_logger.segment_failed(
            self.session_id, segment_id, ErrorKind.BACKEND_INVOCATION_FAILED.value, detail
        )

        callback = getattr(self.consumer, "on_transcription_failed", None)
        if callback is not None:
            try:
                outcome = callback(segment_id, ErrorKind.BACKEND_INVOCATION_FAILED)
            except Exception as e:
                logger.error(f"[{self.session_id}] ❌ Consumer on_transcription_failed error: {e}", exc_info=True)
            else:
                if inspect.iscoroutine(outcome):
                    outcome.close()
                    logger.error(f"[{self.session_id}] ❌ Cannot await on_transcription_failed without an event loop")

    # ------------------------------------------------------------------ #
    # Result delivery
    # ------------------------------------------------------------------ #

    async def _await_result(self, segment_id: int, task: "asyncio.Future[TranscriptionResult]") -> None:
        # shield: cancelling the watcher on stop() must not cancel the backend call
        try:
            result = await asyncio.shield(task)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[{self.session_id}] ❌ Dispatch task for segment {segment_id} raised: {e}", exc_info=True)
            result = TranscriptionResult.failure(
                segment_id, "", ErrorKind.BACKEND_INVOCATION_FAILED, str(e)
            )
        await self._handle_result(result)

    async def _handle_result(self, result: TranscriptionResult) -> None:
        if result.segment_id != self._in_flight_segment_id:
            self.counters["stale_results_discarded"] += 1
            logger.info(
                f"[{self.session_id}] 🗑️ Discarding result for segment {result.segment_id} "
                f"(in flight: {self._in_flight_segment_id})"
            )
            return

        self.latency.mark_phase_end(Phase.TRANSCRIBE)
        self._in_flight_segment_id = None
        self._watcher = None
        self._transition(State.LISTENING, "result", segment_id=result.segment_id)
        self.detector.start()

        if result.ok:
            text = normalize_transcript(result.text or "")
            if text:
                self.counters["transcripts_delivered"] += 1
                logger.info(f"[{self.session_id}] 📝 Segment {result.segment_id}: {text}")
                await self._notify("on_transcript", text)
            else:
                self.counters["empty_transcripts"] += 1
                logger.info(f"[{self.session_id}] 🔇 Segment {result.segment_id}: empty transcript, nothing delivered")
        else:
            self.counters["failures_delivered"] += 1
            self.structured_logger.segment_failed(
                self.session_id, result.segment_id, result.error_kind.value, result.error_detail
            )
            await self._notify("on_transcription_failed", result.segment_id, result.error_kind)

    async def _notify(self, method: str, *args: Any) -> None:
        if self.consumer is None:
            return
        callback = getattr(self.consumer, method, None)
        if callback is None:
            return
        try:
            outcome = callback(*args)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.error(f"[{self.session_id}] ❌ Consumer {method} error: {e}", exc_info=True)

    async def join(self) -> None:
        """Wait until the current in-flight result (if any) has been handled."""
        watcher = self._watcher
        if watcher is not None and not watcher.done():
            await asyncio.wait({watcher})

    # ------------------------------------------------------------------ #
    # Configuration-backed flags
    # ------------------------------------------------------------------ #

    def toggle_mute(self) -> bool:
        muted = not self.config_store.get_bool(KEY_TTS_MUTED)
        self.config_store.set(KEY_TTS_MUTED, "true" if muted else "false")
        logger.info(f"[{self.session_id}] {'🔇 Muted' if muted else '🔊 Unmuted'} speech output")
        return muted

    @property
    def in_flight_segment_id(self) -> Optional[int]:
        return self._in_flight_segment_id

    def status(self) -> OrchestratorStatus:
        backend_id = self.config_store.get(KEY_STT_BACKEND)
        errored = self.detector.errored
        return OrchestratorStatus(
            state=self.state.value,
            listening=self.detector.listening,
            busy=self.state is State.SEGMENT_DISPATCHED,
            errored=str(errored) if errored is not None else None,
            capture_enabled=errored is None and self.registry.capture_enabled(backend_id),
            muted=self.config_store.get_bool(KEY_TTS_MUTED),
            autosend=self.config_store.get_bool(KEY_AUTOSEND),
            backend_id=backend_id or "none",
            in_flight_segment_id=self._in_flight_segment_id,
        )

    def get_stats(self):
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "counters": dict(self.counters),
            "latency": self.latency.get_stats(),
            "dispatcher": self.dispatcher.get_stats(),
        }
