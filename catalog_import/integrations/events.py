"""
Typed progress events and the channel that delivers them.

Producers (batch processor, workflow orchestrator) publish ``WorkflowEvent``s
onto an ``EventChannel``. A single dispatcher thread drains the channel in
FIFO order, so events for a session reach every sink and subscriber in the
order they were published. Delivery is fire-and-forget: a failing sink is
logged and never affects processing.
"""
import logging
import queue
import threading
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol

from pydantic import BaseModel, Field

from catalog_import.domain.imports.models import utcnow
from catalog_import.utils.serialization import make_json_safe

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    PROGRESS = "progress"
    BATCH_COMPLETED = "batch_completed"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"
    ANALYSIS_COMPLETE = "analysis_complete"
    PREVIEW_GENERATION_STARTED = "preview_generation_started"
    PREVIEW_READY = "preview_ready"
    APPROVAL_REQUIRED = "approval_required"
    WORKFLOW_ERROR = "workflow_error"
    MAPPING_SUGGESTIONS = "mapping_suggestions"


class EventMetadata(BaseModel):
    confidence: Optional[float] = None
    auto_advance: bool = False
    expected_next_step: Optional[int] = None
    user_action: Optional[bool] = None

    def to_wire(self) -> Dict[str, Any]:
        wire: Dict[str, Any] = {"autoAdvance": self.auto_advance}
        if self.confidence is not None:
            wire["confidence"] = self.confidence
        if self.expected_next_step is not None:
            wire["expectedNextStep"] = self.expected_next_step
        if self.user_action is not None:
            wire["userAction"] = self.user_action
        return wire


class WorkflowEvent(BaseModel):
    session_id: str
    type: EventType
    payload: Dict[str, Any] = Field(default_factory=dict)
    metadata: EventMetadata = Field(default_factory=EventMetadata)
    timestamp: datetime = Field(default_factory=utcnow)

    def to_wire(self) -> Dict[str, Any]:
        """JSON-ready ``{type, payload, metadata, timestamp}`` body."""
        return {
            "type": self.type.value,
            "payload": make_json_safe(self.payload),
            "metadata": self.metadata.to_wire(),
            "timestamp": self.timestamp.isoformat(),
        }


class EventSink(Protocol):
    def emit(self, session_id: str, event: Dict[str, Any]) -> None:
        ...


class LoggingEventSink:
    """Writes every event to the log; the default sink when no transport is attached."""

    def __init__(self, level: int = logging.INFO):
        self.level = level

    def emit(self, session_id: str, event: Dict[str, Any]) -> None:
        logger.log(self.level, "event session=%s type=%s payload=%s", session_id, event["type"], event["payload"])


Subscriber = Callable[[WorkflowEvent], None]

_STOP = object()


class EventChannel:
    def __init__(self, sinks: Optional[List[EventSink]] = None, maxsize: int = 0):
        self._sinks: List[EventSink] = list(sinks or [])
        self._subscribers: List[Subscriber] = []
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=maxsize)
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def add_sink(self, sink: EventSink) -> None:
        with self._lock:
            self._sinks.append(sink)

    def subscribe(self, subscriber: Subscriber) -> None:
        """Register an in-process consumer that receives the typed event."""
        with self._lock:
            self._subscribers.append(subscriber)

    def start(self) -> None:
        with self._lock:
            if self.running:
                return
            self._thread = threading.Thread(target=self._dispatch_loop, name="event-dispatcher", daemon=True)
            self._thread.start()
        logger.debug("Event channel started")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Deliver everything already queued, then stop the dispatcher."""
        thread = self._thread
        if thread is None:
            return
        self._queue.put(_STOP)
        thread.join(timeout)
        self._thread = None
        logger.debug("Event channel stopped")

    def flush(self) -> None:
        """Block until every queued event was delivered (no-op when not started)."""
        if self.running:
            self._queue.join()

    def publish(self, event: WorkflowEvent) -> None:
        if self.running:
            self._queue.put(event)
        else:
            # Not started: deliver inline so nothing is silently lost
            self._deliver(event)

    def emit(
        self,
        session_id: str,
        event_type: EventType,
        payload: Optional[Dict[str, Any]] = None,
        **metadata: Any,
    ) -> WorkflowEvent:
        event = WorkflowEvent(
            session_id=session_id,
            type=event_type,
            payload=payload or {},
            metadata=EventMetadata(**metadata),
        )
        self.publish(event)
        return event

    def _dispatch_loop(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._deliver(item)
            finally:
                self._queue.task_done()

    def _deliver(self, event: WorkflowEvent) -> None:
        with self._lock:
            sinks = list(self._sinks)
            subscribers = list(self._subscribers)
        wire = event.to_wire()
        for sink in sinks:
            try:
                sink.emit(event.session_id, wire)
            except Exception as exc:
                logger.warning(
                    "Event sink %s failed for session %s (%s): %s",
                    type(sink).__name__,
                    event.session_id,
                    event.type.value,
                    exc,
                )
        for subscriber in subscribers:
            try:
                subscriber(event)
            except Exception:
                logger.exception("Event subscriber failed for session %s (%s)", event.session_id, event.type.value)
