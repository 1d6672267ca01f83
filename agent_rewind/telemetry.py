"""
Telemetry for checkpoint operations.

Commit and restore durations are recorded as events on a sink. The default
sink logs them; the in-memory sink keeps a bounded window for inspection.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class TelemetryEvent:
    """A single timed operation."""
    event_type: str  # 'checkpoint_commit', 'checkpoint_restore'
    task_id: str
    duration: float
    success: bool = True
    timestamp: datetime = field(default_factory=datetime.now)
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class TelemetrySink:
    """Receives telemetry events. The base sink logs at debug level."""

    def record(self, event: TelemetryEvent) -> None:
        logger.debug("%s task=%s duration=%.3fs success=%s",
                     event.event_type, event.task_id, event.duration, event.success)


class InMemoryTelemetrySink(TelemetrySink):
    """Keeps the most recent events in memory."""

    def __init__(self, max_events: int = 1000):
        self.events = deque(maxlen=max_events)
        self._lock = threading.Lock()

    def record(self, event: TelemetryEvent) -> None:
        super().record(event)
        with self._lock:
            self.events.append(event)

    def events_of(self, event_type: str) -> List[TelemetryEvent]:
        with self._lock:
            return [e for e in self.events if e.event_type == event_type]

    def summary(self) -> Dict[str, Dict[str, float]]:
        """Count, failures and average duration per event type."""
        with self._lock:
            events = list(self.events)
        summary: Dict[str, Dict[str, float]] = {}
        for event in events:
            stats = summary.setdefault(event.event_type,
                                       {"count": 0, "failures": 0, "average_duration": 0.0})
            stats["count"] += 1
            if not event.success:
                stats["failures"] += 1
            stats["average_duration"] += (event.duration - stats["average_duration"]) / stats["count"]
        return summary
