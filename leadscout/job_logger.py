"""
leadscout.job_logger

Per-job, in-memory, bounded log stream for live viewers.

- append-only ring buffer per job (oldest entries evicted past max_entries)
- synchronous fan-out to subscribers; a failing subscriber never affects
  the append or the other subscribers
- subscribe / unsubscribe are safe at any time, including before the job's
  buffer exists and after it has been removed
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)

LEVELS = ("info", "success", "warning", "error", "progress")

MAX_LOGS_PER_JOB = 500


@dataclass
class JobLogEntry:
    timestamp: datetime
    level: str
    message: str
    details: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level,
            "message": self.message,
        }
        if self.details:
            out["details"] = self.details
        return out


Listener = Callable[[JobLogEntry], None]


@dataclass
class _JobStream:
    entries: Deque[JobLogEntry]
    listeners: List[Listener] = field(default_factory=list)


class JobLogger:
    def __init__(self, max_entries: int = MAX_LOGS_PER_JOB):
        self.max_entries = max(1, int(max_entries))
        self._streams: Dict[str, _JobStream] = {}

    def _stream(self, job_id: str) -> _JobStream:
        stream = self._streams.get(job_id)
        if stream is None:
            stream = _JobStream(entries=deque(maxlen=self.max_entries))
            self._streams[job_id] = stream
        return stream

    def init(self, job_id: str) -> None:
        """Start a fresh buffer for a job run. Existing subscribers are kept."""
        stream = self._stream(job_id)
        stream.entries.clear()

    def append(
        self,
        job_id: str,
        level: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> JobLogEntry:
        if level not in LEVELS:
            logger.warning("JobLogger got unknown level=%r; recording as info", level)
            level = "info"

        entry = JobLogEntry(
            timestamp=datetime.now(tz=timezone.utc),
            level=level,
            message=message,
            details=details,
        )
        stream = self._stream(job_id)
        stream.entries.append(entry)

        # copy: listeners may unsubscribe themselves while being notified
        for listener in list(stream.listeners):
            try:
                listener(entry)
            except Exception:
                logger.debug("job log listener failed job_id=%s", job_id, exc_info=True)

        return entry

    def info(self, job_id: str, message: str, details: Optional[Dict[str, Any]] = None) -> JobLogEntry:
        return self.append(job_id, "info", message, details)

    def success(self, job_id: str, message: str, details: Optional[Dict[str, Any]] = None) -> JobLogEntry:
        return self.append(job_id, "success", message, details)

    def warning(self, job_id: str, message: str, details: Optional[Dict[str, Any]] = None) -> JobLogEntry:
        return self.append(job_id, "warning", message, details)

    def error(self, job_id: str, message: str, details: Optional[Dict[str, Any]] = None) -> JobLogEntry:
        return self.append(job_id, "error", message, details)

    def progress(self, job_id: str, message: str, details: Optional[Dict[str, Any]] = None) -> JobLogEntry:
        return self.append(job_id, "progress", message, details)

    def entries(self, job_id: str) -> List[JobLogEntry]:
        stream = self._streams.get(job_id)
        if stream is None:
            return []
        return list(stream.entries)

    def subscribe(self, job_id: str, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns an idempotent unsubscribe callable."""
        stream = self._stream(job_id)
        stream.listeners.append(listener)

        def _unsubscribe() -> None:
            current = self._streams.get(job_id)
            if current is None:
                return
            try:
                current.listeners.remove(listener)
            except ValueError:
                pass

        return _unsubscribe

    def clear(self, job_id: str) -> None:
        stream = self._streams.get(job_id)
        if stream is not None:
            stream.entries.clear()

    def remove(self, job_id: str) -> None:
        self._streams.pop(job_id, None)

    def has_logs(self, job_id: str) -> bool:
        stream = self._streams.get(job_id)
        return bool(stream and stream.entries)

    def listener_count(self, job_id: str) -> int:
        stream = self._streams.get(job_id)
        return len(stream.listeners) if stream else 0
