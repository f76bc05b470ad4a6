"""
Per-session latency tracking.

Two phases are timed: speech (detector start -> end) and transcribe
(dispatch -> result). The tracker is owned by one orchestrator and passed
along explicitly; it never raises and never blocks the pipeline.
"""

import logging
import time
from enum import Enum
from typing import Dict, List, Optional, Union

from .structured_logger import StructuredLogger

logger = logging.getLogger(__name__)


class Phase(Enum):
    SPEECH = "speech"
    TRANSCRIBE = "transcribe"


class LatencyTracker:
    """Records stage-boundary timestamps and per-phase durations."""

    def __init__(self, session_id: str = "default", history_size: int = 100):
        self.session_id = session_id
        self.history_size = history_size
        self.structured_logger = StructuredLogger(logger)
        self._open: Dict[str, float] = {}
        self.latencies: Dict[str, List[float]] = {phase.value: [] for phase in Phase}

    @staticmethod
    def _key(phase: Union[Phase, str]) -> str:
        return phase.value if isinstance(phase, Phase) else str(phase)

    def mark_phase_start(self, phase: Union[Phase, str]) -> None:
        """Open a phase. A second start overwrites the first."""
        key = self._key(phase)
        if key in self._open:
            logger.debug(f"[{self.session_id}] Phase '{key}' restarted before it ended")
        self._open[key] = time.perf_counter()

    def mark_phase_end(self, phase: Union[Phase, str]) -> Optional[float]:
        """
        Close a phase.

        Returns:
            Duration in milliseconds, or None if the phase was not open
        """
        key = self._key(phase)
        started = self._open.pop(key, None)
        if started is None:
            logger.debug(f"[{self.session_id}] Phase '{key}' ended without a start")
            return None

        duration_ms = (time.perf_counter() - started) * 1000
        history = self.latencies.setdefault(key, [])
        history.append(duration_ms)
        if len(history) > self.history_size:
            del history[: len(history) - self.history_size]

        self.structured_logger.latency_recorded(self.session_id, key, duration_ms)
        return duration_ms

    def discard(self, phase: Union[Phase, str]) -> None:
        """Drop an open phase without recording it (session stopped mid-phase)."""
        self._open.pop(self._key(phase), None)

    def is_open(self, phase: Union[Phase, str]) -> bool:
        return self._key(phase) in self._open

    def get_stats(self) -> Dict[str, Dict[str, float]]:
        stats = {}
        for key, history in self.latencies.items():
            stats[key] = {
                "count": len(history),
                "avg_ms": round(sum(history) / len(history), 2) if history else 0.0,
                "last_ms": round(history[-1], 2) if history else 0.0,
            }
        return stats
