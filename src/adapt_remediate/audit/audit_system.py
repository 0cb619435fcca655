"""
Audit stream for ADAPT-Remediate.

Every attempt state transition produces exactly one TransitionEvent. Events
are appended to a pluggable backend (append-only) and fanned out to
subscriber queues, which is how reporting and notification collaborators
consume them.
"""

import json
import logging
import queue
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Union

logger = logging.getLogger(__name__)

# Tags for events that are not plain transitions
TAG_DUPLICATE_IGNORED = "duplicate-ignored"
TAG_BUDGET_EXHAUSTED = "budget-exhausted"
TAG_FILTERED = "filtered"
TAG_RECOVERED = "recovered"
TAG_CANCELLED = "cancelled"


@dataclass
class TransitionEvent:
    """
    One audit record.

    Attributes:
        attempt_id: Attempt the event belongs to (may be None for dropped detections)
        error_id: Detected error identifier
        from_state: State before the transition
        to_state: State after the transition
        timestamp: When the transition happened (ISO 8601)
        detail: Human-readable detail
        tag: Optional classification (e.g. duplicate-ignored)
        event_id: Unique event identifier
    """
    attempt_id: Optional[str]
    error_id: str
    from_state: Optional[str]
    to_state: Optional[str]
    detail: str = ""
    tag: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> Dict:
        """Convert to dictionary."""
        return asdict(self)

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict())


class AuditBackend(ABC):
    """Abstract base class for audit backends."""

    @abstractmethod
    def write_event(self, event: TransitionEvent) -> None:
        """Append an audit event."""
        pass

    @abstractmethod
    def query_events(
        self,
        attempt_id: Optional[str] = None,
        error_id: Optional[str] = None,
        tag: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[TransitionEvent]:
        """Query audit events in append order."""
        pass

    def close(self) -> None:
        """Close backend resources."""
        pass


def _matches(
    event: TransitionEvent,
    attempt_id: Optional[str],
    error_id: Optional[str],
    tag: Optional[str]
) -> bool:
    if attempt_id and event.attempt_id != attempt_id:
        return False
    if error_id and event.error_id != error_id:
        return False
    if tag and event.tag != tag:
        return False
    return True


class MemoryAuditBackend(AuditBackend):
    """In-process audit backend."""

    def __init__(self):
        self._events: List[TransitionEvent] = []
        self._lock = threading.Lock()

    def write_event(self, event: TransitionEvent) -> None:
        with self._lock:
            self._events.append(event)

    def query_events(self, attempt_id=None, error_id=None, tag=None, limit=None):
        with self._lock:
            events = [e for e in self._events if _matches(e, attempt_id, error_id, tag)]
        return events[-limit:] if limit else events


class FileAuditBackend(AuditBackend):
    """
    File-based audit backend.

    Stores audit events in JSONL format, one event per line, append-only.
    """

    def __init__(self, file_path: Union[str, Path] = "audit.jsonl"):
        """
        Initialize file backend.

        Args:
            file_path: Path to audit log file
        """
        self.file_path = Path(file_path)
        self._lock = threading.Lock()

        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        if not self.file_path.exists():
            self.file_path.touch()

        logger.debug(f"File audit backend initialized: {self.file_path}")

    def write_event(self, event: TransitionEvent) -> None:
        """
        Write an audit event to file.

        Args:
            event: Audit event to write
        """
        try:
            with self._lock, self.file_path.open("a", encoding="utf-8") as f:
                f.write(event.to_json() + "\n")
                f.flush()
        except OSError as e:
            logger.error(f"Failed to write audit event: {e}")
            raise

    def query_events(self, attempt_id=None, error_id=None, tag=None, limit=None):
        """
        Query audit events from file.

        Args:
            attempt_id: Filter by attempt
            error_id: Filter by detected error
            tag: Filter by tag
            limit: Return only the most recent ``limit`` matches

        Returns:
            List of matching audit events
        """
        events = []

        with self._lock, self.file_path.open("r", encoding="utf-8") as f:
            for line in f:
                if not line.strip():
                    continue

                try:
                    event = TransitionEvent(**json.loads(line))
                except (json.JSONDecodeError, TypeError) as e:
                    logger.warning(f"Skipping invalid audit event: {e}")
                    continue

                if _matches(event, attempt_id, error_id, tag):
                    events.append(event)

        return events[-limit:] if limit else events


class AuditStream:
    """
    Append-only stream of transition events.

    Example:
        >>> stream = AuditStream(FileAuditBackend(".remediation-state/audit.jsonl"))
        >>> events = stream.subscribe()
        >>> stream.emit(TransitionEvent("E1#1", "E1", "detected", "matching"))
        >>> events.get_nowait().to_state
        'matching'
    """

    def __init__(self, backend: Optional[AuditBackend] = None):
        self.backend = backend or MemoryAuditBackend()
        self._subscribers: List[queue.Queue] = []
        self._lock = threading.Lock()

    def emit(self, event: TransitionEvent) -> None:
        """Append an event and deliver it to every subscriber."""
        self.backend.write_event(event)

        with self._lock:
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            subscriber.put(event)

        logger.debug(
            f"Audit: {event.attempt_id or event.error_id} "
            f"{event.from_state} -> {event.to_state}"
            + (f" [{event.tag}]" if event.tag else "")
        )

    def subscribe(self, maxsize: int = 0) -> "queue.Queue[TransitionEvent]":
        """Return a queue that receives every future event."""
        subscriber: queue.Queue = queue.Queue(maxsize=maxsize)
        with self._lock:
            self._subscribers.append(subscriber)
        return subscriber

    def unsubscribe(self, subscriber: queue.Queue) -> None:
        with self._lock:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

    def query(
        self,
        attempt_id: Optional[str] = None,
        error_id: Optional[str] = None,
        tag: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[TransitionEvent]:
        """Read events back from the backend."""
        return self.backend.query_events(
            attempt_id=attempt_id, error_id=error_id, tag=tag, limit=limit
        )

    def close(self) -> None:
        self.backend.close()
