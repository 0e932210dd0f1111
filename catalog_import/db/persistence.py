"""
Storage gateway used by the import pipeline.

The pipeline never talks to a database directly; it goes through
``ImportPersistence``. ``InMemoryPersistence`` backs tests and the console
runner's dry runs, ``SqlPersistence`` (see ``sql_persistence``) a real database.
"""
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from copy import deepcopy
from typing import Any, Dict, List, Optional

from catalog_import.core.exceptions import CatalogImportError
from catalog_import.domain.imports.models import (
    BatchError,
    BatchStatus,
    HistoryStatus,
    ImportBatch,
    ImportHistoryRecord,
    ImportSession,
    SessionStatus,
    can_transition,
    utcnow,
)

logger = logging.getLogger(__name__)


class PersistenceError(CatalogImportError):
    code = "persistence_error"


class StorageUnavailableError(PersistenceError):
    """The backing store cannot be reached; callers treat this as batch-fatal."""

    code = "storage_unavailable"


class SessionNotFoundError(PersistenceError):
    code = "session_not_found"


class ImportPersistence(ABC):
    # Entity records

    @abstractmethod
    def insert(self, entity_type: str, record: Dict[str, Any]) -> str:
        """Store a validated entity and return its id."""

    @abstractmethod
    def record_exists(self, entity_type: str, field: str, value: Any) -> bool:
        ...

    # Sessions

    @abstractmethod
    def create_session(self, session: ImportSession) -> ImportSession:
        ...

    @abstractmethod
    def get_session(self, session_id: str) -> Optional[ImportSession]:
        ...

    @abstractmethod
    def save_session(self, session: ImportSession) -> ImportSession:
        """Persist mapping/analysis fields of a session (status is left untouched)."""

    @abstractmethod
    def update_session_status(
        self,
        session_id: str,
        status: SessionStatus,
        error_message: Optional[str] = None,
    ) -> bool:
        """
        Move a session to ``status``. Returns False (and changes nothing) when
        the move would leave a terminal state.
        """

    @abstractmethod
    def update_session_metrics(self, session_id: str, metrics: Dict[str, Any]) -> None:
        ...

    # Batches

    @abstractmethod
    def create_batches(self, session_id: str, batches: List[ImportBatch]) -> None:
        ...

    @abstractmethod
    def update_batch_status(
        self,
        session_id: str,
        batch_number: int,
        status: BatchStatus,
        metrics: Optional[Dict[str, Any]] = None,
    ) -> None:
        ...

    @abstractmethod
    def list_batches(self, session_id: str) -> List[ImportBatch]:
        ...

    # History

    @abstractmethod
    def append_history(
        self,
        session_id: str,
        record_index: int,
        data: Dict[str, Any],
        status: HistoryStatus,
        errors: Optional[List[BatchError]] = None,
        entity_id: Optional[str] = None,
    ) -> None:
        ...

    @abstractmethod
    def list_history(self, session_id: str, status: Optional[HistoryStatus] = None) -> List[ImportHistoryRecord]:
        ...

    # Shared helpers

    def require_session(self, session_id: str) -> ImportSession:
        session = self.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(f"Import session {session_id} not found")
        return session

    def outstanding_failures(self, session_id: str) -> List[ImportHistoryRecord]:
        """
        Rows whose most recent history entry is ``failed``; a row that failed
        and later succeeded on retry is not outstanding.
        """
        latest: Dict[int, ImportHistoryRecord] = {}
        for entry in self.list_history(session_id):
            latest[entry.record_index] = entry
        return [
            entry
            for index, entry in sorted(latest.items())
            if entry.import_status == HistoryStatus.FAILED
        ]


BATCH_METRIC_FIELDS = ("success_count", "failure_count", "processing_time_ms", "error_message")
SESSION_METRIC_FIELDS = (
    "total_records",
    "processed_records",
    "successful_records",
    "failed_records",
    "processing_rate",
    "estimated_time_remaining",
    "retry_count",
)


class InMemoryPersistence(ImportPersistence):
    """Thread-safe dictionary-backed store."""

    def __init__(self):
        self._lock = threading.RLock()
        self._sessions: Dict[str, ImportSession] = {}
        self._batches: Dict[str, Dict[int, ImportBatch]] = {}
        self._history: Dict[str, List[ImportHistoryRecord]] = {}
        self.records: Dict[str, Dict[str, Dict[str, Any]]] = {}

    def insert(self, entity_type: str, record: Dict[str, Any]) -> str:
        entity_id = str(uuid.uuid4())
        with self._lock:
            self.records.setdefault(entity_type, {})[entity_id] = dict(record)
        return entity_id

    def record_exists(self, entity_type: str, field: str, value: Any) -> bool:
        with self._lock:
            return any(
                stored.get(field) == value for stored in self.records.get(entity_type, {}).values()
            )

    def create_session(self, session: ImportSession) -> ImportSession:
        with self._lock:
            if session.session_id in self._sessions:
                raise PersistenceError(f"Import session {session.session_id} already exists")
            self._sessions[session.session_id] = session.model_copy(deep=True)
        return session

    def get_session(self, session_id: str) -> Optional[ImportSession]:
        with self._lock:
            session = self._sessions.get(session_id)
            return session.model_copy(deep=True) if session else None

    def save_session(self, session: ImportSession) -> ImportSession:
        with self._lock:
            current = self._sessions.get(session.session_id)
            if current is None:
                raise SessionNotFoundError(f"Import session {session.session_id} not found")
            updated = session.model_copy(
                update={"status": current.status, "updated_at": utcnow()}, deep=True
            )
            self._sessions[session.session_id] = updated
        return updated

    def update_session_status(self, session_id, status, error_message=None) -> bool:
        status = SessionStatus(status)
        with self._lock:
            current = self._sessions.get(session_id)
            if current is None:
                raise SessionNotFoundError(f"Import session {session_id} not found")
            if not can_transition(current.status, status):
                logger.warning(
                    "Ignoring status change %s -> %s for terminal session %s",
                    current.status.value,
                    status.value,
                    session_id,
                )
                return False
            update: Dict[str, Any] = {"status": status, "updated_at": utcnow()}
            if error_message is not None:
                update["error_message"] = error_message
            if status.is_terminal:
                update["completed_at"] = utcnow()
            self._sessions[session_id] = current.model_copy(update=update)
        return True

    def update_session_metrics(self, session_id: str, metrics: Dict[str, Any]) -> None:
        with self._lock:
            current = self._sessions.get(session_id)
            if current is None:
                raise SessionNotFoundError(f"Import session {session_id} not found")
            update = {key: value for key, value in metrics.items() if key in SESSION_METRIC_FIELDS}
            update["updated_at"] = utcnow()
            self._sessions[session_id] = current.model_copy(update=update)

    def create_batches(self, session_id: str, batches: List[ImportBatch]) -> None:
        with self._lock:
            existing = self._batches.setdefault(session_id, {})
            for batch in batches:
                if batch.batch_number in existing:
                    raise PersistenceError(
                        f"Batch {batch.batch_number} already exists for session {session_id}"
                    )
                existing[batch.batch_number] = batch.model_copy()

    def update_batch_status(self, session_id, batch_number, status, metrics=None) -> None:
        with self._lock:
            batch = self._batches.get(session_id, {}).get(batch_number)
            if batch is None:
                raise PersistenceError(f"Batch {batch_number} not found for session {session_id}")
            update: Dict[str, Any] = {"status": BatchStatus(status)}
            for key, value in (metrics or {}).items():
                if key in BATCH_METRIC_FIELDS:
                    update[key] = value
            self._batches[session_id][batch_number] = batch.model_copy(update=update)

    def list_batches(self, session_id: str) -> List[ImportBatch]:
        with self._lock:
            batches = self._batches.get(session_id, {})
            return [batches[number].model_copy() for number in sorted(batches)]

    def append_history(self, session_id, record_index, data, status, errors=None, entity_id=None) -> None:
        entry = ImportHistoryRecord(
            session_id=session_id,
            record_index=record_index,
            record_data=deepcopy(dict(data)),
            import_status=HistoryStatus(status),
            entity_id=entity_id,
            validation_errors=list(errors or []),
        )
        with self._lock:
            self._history.setdefault(session_id, []).append(entry)

    def list_history(self, session_id, status=None) -> List[ImportHistoryRecord]:
        with self._lock:
            entries = list(self._history.get(session_id, []))
        if status is not None:
            entries = [entry for entry in entries if entry.import_status == HistoryStatus(status)]
        return [entry.model_copy(deep=True) for entry in entries]
