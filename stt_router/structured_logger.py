"""
JSON log lines for the segment pipeline: state transitions, dispatches,
failures and latency. Each line is tagged with session and segment id.
"""

import json
import logging
import time
from typing import Any, Dict, Optional


class StructuredLogger:
    """
    JSON log lines for the segment pipeline.

    Wraps a standard `logging.Logger` so handlers and formatters configured by
    the service still apply; every line carries the session and, where there
    is one, the segment id.
    """

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self.logger = logger or logging.getLogger(__name__)

    def _log(
        self,
        level: str,
        event_type: str,
        message: str,
        session_id: Optional[str] = None,
        segment_id: Optional[int] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        entry: Dict[str, Any] = {
            "timestamp": time.time(),
            "event_type": event_type,
            "message": message,
        }

        if session_id is not None:
            entry["session_id"] = session_id
        if segment_id is not None:
            entry["segment_id"] = segment_id

        if data:
            entry["data"] = dict(data)

        log_method = getattr(self.logger, level.lower(), self.logger.info)
        try:
            log_method(json.dumps(entry, default=str))
        except (TypeError, ValueError):
            log_method(f"[STRUCTURED_LOG_FALLBACK] {entry}")

    # ------------------------------------------------------------------ #
    # Public helpers
    # ------------------------------------------------------------------ #

    def state_transition(
        self,
        session_id: str,
        old_state: str,
        new_state: str,
        trigger: str,
        segment_id: Optional[int] = None,
    ) -> None:
        self._log(
            level="INFO",
            event_type="state_transition",
            message=f"{old_state} -> {new_state} ({trigger})",
            session_id=session_id,
            segment_id=segment_id,
            data={"old_state": old_state, "new_state": new_state, "trigger": trigger},
        )

    def segment_dispatched(
        self,
        session_id: str,
        segment_id: int,
        backend_id: str,
        duration_s: float,
    ) -> None:
        self._log(
            level="INFO",
            event_type="segment_dispatched",
            message=f"Segment {segment_id} -> {backend_id} ({duration_s:.2f}s audio)",
            session_id=session_id,
            segment_id=segment_id,
            data={"backend_id": backend_id, "duration_s": round(duration_s, 3)},
        )

    def segment_failed(
        self,
        session_id: str,
        segment_id: int,
        error_kind: str,
        detail: Optional[str] = None,
    ) -> None:
        self._log(
            level="WARNING",
            event_type="segment_failed",
            message=f"Segment {segment_id} failed: {error_kind}",
            session_id=session_id,
            segment_id=segment_id,
            data={"error_kind": error_kind, "detail": detail},
        )

    def latency_recorded(
        self,
        session_id: str,
        phase: str,
        duration_ms: float,
    ) -> None:
        self._log(
            level="INFO",
            event_type="latency",
            message=f"{phase} took {duration_ms:.0f}ms",
            session_id=session_id,
            data={"phase": phase, "duration_ms": duration_ms},
        )
