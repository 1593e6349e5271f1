"""
Structured telemetry for generation requests.

Tracks each generation as a timed span and keeps the per-message
generation durations shown next to finished messages. Spans are stored
locally as JSONL for inspection; durations are kept in a JSON map per
session.
"""

from __future__ import annotations

import json
import logging
import time
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class Span:
    """A timed span of execution (one generation request)."""

    def __init__(
        self,
        name: str,
        span_type: str,
        metadata: dict[str, Any] | None = None,
    ):
        self.name = name
        self.span_type = span_type
        self.metadata = metadata or {}
        self.start_time = time.monotonic()
        self.start_ts = datetime.now(UTC)
        self.end_time: float | None = None
        self.end_ts: datetime | None = None
        self.status: str = "running"
        self.error: str | None = None

    def finish(self, status: str = "ok", error: str | None = None) -> None:
        """Mark this span as complete."""
        self.end_time = time.monotonic()
        self.end_ts = datetime.now(UTC)
        self.status = status
        self.error = error

    @property
    def elapsed_seconds(self) -> float:
        end = self.end_time or time.monotonic()
        return end - self.start_time

    @property
    def duration_ms(self) -> float:
        """Duration in milliseconds."""
        return self.elapsed_seconds * 1000

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dict."""
        d: dict[str, Any] = {
            "name": self.name,
            "type": self.span_type,
            "status": self.status,
            "started_at": self.start_ts.isoformat(),
            "duration_ms": round(self.duration_ms, 1),
        }
        if self.metadata:
            d["metadata"] = self.metadata
        if self.error:
            d["error"] = self.error
        if self.end_ts:
            d["ended_at"] = self.end_ts.isoformat()
        return d


class TelemetryCollector:
    """
    Collects generation spans and per-message generation times.

    Files:
        .convoctl/telemetry/<session_id>.jsonl       # span events
        .convoctl/telemetry/<session_id>_times.json  # message id -> seconds
    """

    def __init__(self, base_dir: Path | None = None, enabled: bool = True):
        if base_dir is None:
            base_dir = Path(".convoctl/telemetry")
        self._base_dir = base_dir
        self.enabled = enabled
        self._times: dict[str, dict[str, float]] = {}

    def _log_path(self, session_id: str) -> Path:
        self._base_dir.mkdir(parents=True, exist_ok=True)
        return self._base_dir / f"{session_id}.jsonl"

    def _times_path(self, session_id: str) -> Path:
        self._base_dir.mkdir(parents=True, exist_ok=True)
        return self._base_dir / f"{session_id}_times.json"

    def _write_event(self, session_id: str, event: dict[str, Any]) -> None:
        """Append an event to the session's telemetry log."""
        if not self.enabled:
            return
        try:
            with open(self._log_path(session_id), "a") as f:
                f.write(json.dumps(event) + "\n")
        except OSError as e:
            logger.debug("Could not write telemetry event: %s", e)

    def start_generation(self, session_id: str, kind: str, message_id: str) -> Span:
        """Start tracking a generation request."""
        return Span(
            name=f"generation_{kind}",
            span_type="generation",
            metadata={"session": session_id, "kind": kind, "message_id": message_id},
        )

    def end_generation(self, span: Span, status: str = "ok", error: str | None = None) -> None:
        """End a generation span and persist it."""
        span.finish(status=status, error=error)
        self._write_event(span.metadata.get("session", "default"), span.to_dict())

    # -- per-message generation times ------------------------------------------

    def generation_times(self, session_id: str) -> dict[str, float]:
        """Map of message id to generation duration in seconds."""
        if session_id not in self._times:
            self._times[session_id] = self._load_times(session_id)
        return dict(self._times[session_id])

    def record_generation_time(self, session_id: str, message_id: str, seconds: float) -> None:
        times = self._ensure_times(session_id)
        times[message_id] = round(seconds, 3)
        self._save_times(session_id)

    def clear_generation_times(self, session_id: str, message_ids: list[str]) -> None:
        times = self._ensure_times(session_id)
        changed = False
        for message_id in message_ids:
            if times.pop(message_id, None) is not None:
                changed = True
        if changed:
            self._save_times(session_id)

    def _ensure_times(self, session_id: str) -> dict[str, float]:
        if session_id not in self._times:
            self._times[session_id] = self._load_times(session_id)
        return self._times[session_id]

    def _load_times(self, session_id: str) -> dict[str, float]:
        if not self.enabled:
            return {}
        path = self._times_path(session_id)
        if not path.exists():
            return {}
        try:
            with open(path) as f:
                return json.load(f)
        except (json.JSONDecodeError, OSError):
            return {}

    def _save_times(self, session_id: str) -> None:
        if not self.enabled:
            return
        try:
            with open(self._times_path(session_id), "w") as f:
                json.dump(self._times.get(session_id, {}), f, indent=2)
        except OSError as e:
            logger.debug("Could not save generation times: %s", e)

    def get_summary(self, session_id: str) -> dict[str, Any]:
        """Summarize the generation events recorded for a session."""
        counts = {"generations": 0, "ok": 0, "error": 0, "cancelled": 0}
        total_ms = 0.0
        if not self.enabled:
            return {**counts, "total_generation_ms": 0.0}
        log_path = self._log_path(session_id)
        if not log_path.exists():
            return {**counts, "total_generation_ms": 0.0}

        try:
            with open(log_path) as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    event = json.loads(line)
                    if event.get("type") != "generation":
                        continue
                    counts["generations"] += 1
                    status = event.get("status", "ok")
                    if status in counts:
                        counts[status] += 1
                    total_ms += event.get("duration_ms", 0)
        except (json.JSONDecodeError, OSError):
            pass

        return {**counts, "total_generation_ms": round(total_ms, 1)}
