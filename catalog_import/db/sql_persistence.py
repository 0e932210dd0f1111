"""
SQLAlchemy implementation of the import persistence gateway.

Statements are plain SQL through ``text()`` and stick to the subset shared by
PostgreSQL and SQLite. JSON payloads are stored as text.
"""
import logging
import uuid
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from catalog_import.domain.imports.models import (
    TERMINAL_STATUSES,
    BatchError,
    BatchStatus,
    HistoryStatus,
    ImportBatch,
    ImportHistoryRecord,
    ImportSession,
    SessionStatus,
    utcnow,
)
from catalog_import.utils.serialization import dumps, loads

from .persistence import (
    BATCH_METRIC_FIELDS,
    SESSION_METRIC_FIELDS,
    ImportPersistence,
    PersistenceError,
    SessionNotFoundError,
    StorageUnavailableError,
)
from .session import get_engine

logger = logging.getLogger(__name__)

# Lookup columns kept outside the JSON payload so duplicate checks can use an index
INDEXED_RECORD_FIELDS = ("slug", "sku")

# Session attributes stored in the JSON ``details`` column
SESSION_DETAIL_FIELDS = (
    "field_mappings",
    "superseded_mappings",
    "mapping_confidence",
    "parse_strategy",
    "parse_confidence",
    "parse_issues",
    "filename",
    "fallback_action",
)


def _schema_statements(dialect: str) -> List[str]:
    serial = "SERIAL PRIMARY KEY" if dialect == "postgresql" else "INTEGER PRIMARY KEY AUTOINCREMENT"
    return [
        """
        CREATE TABLE IF NOT EXISTS import_sessions (
            session_id VARCHAR(64) PRIMARY KEY,
            entity_type VARCHAR(50) NOT NULL,
            status VARCHAR(50) NOT NULL,
            total_records INTEGER DEFAULT 0,
            processed_records INTEGER DEFAULT 0,
            successful_records INTEGER DEFAULT 0,
            failed_records INTEGER DEFAULT 0,
            processing_rate DOUBLE PRECISION DEFAULT 0,
            estimated_time_remaining DOUBLE PRECISION,
            retry_count INTEGER DEFAULT 0,
            error_message TEXT,
            details TEXT,
            created_at VARCHAR(40),
            updated_at VARCHAR(40),
            completed_at VARCHAR(40)
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS import_batches (
            session_id VARCHAR(64) NOT NULL,
            batch_number INTEGER NOT NULL,
            start_index INTEGER NOT NULL,
            end_index INTEGER NOT NULL,
            record_count INTEGER NOT NULL,
            status VARCHAR(20) NOT NULL,
            success_count INTEGER DEFAULT 0,
            failure_count INTEGER DEFAULT 0,
            processing_time_ms DOUBLE PRECISION,
            error_message TEXT,
            PRIMARY KEY (session_id, batch_number)
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS import_history (
            id {serial},
            session_id VARCHAR(64) NOT NULL,
            record_index INTEGER NOT NULL,
            record_data TEXT,
            import_status VARCHAR(20) NOT NULL,
            entity_id VARCHAR(64),
            validation_errors TEXT,
            created_at VARCHAR(40)
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_import_history_session ON import_history(session_id, record_index)",
        """
        CREATE TABLE IF NOT EXISTS catalog_records (
            id VARCHAR(36) PRIMARY KEY,
            entity_type VARCHAR(50) NOT NULL,
            slug VARCHAR(255),
            sku VARCHAR(255),
            payload TEXT NOT NULL,
            created_at VARCHAR(40)
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_catalog_records_slug ON catalog_records(entity_type, slug)",
        "CREATE INDEX IF NOT EXISTS idx_catalog_records_sku ON catalog_records(entity_type, sku)",
    ]


class SqlPersistence(ImportPersistence):
    def __init__(self, engine: Optional[Engine] = None, create_tables: bool = True):
        self.engine = engine or get_engine()
        if create_tables:
            self.create_tables()

    @contextmanager
    def _transaction(self):
        try:
            with self.engine.begin() as conn:
                yield conn
        except OperationalError as exc:
            logger.error("Import store unavailable: %s", exc)
            raise StorageUnavailableError(str(exc)) from exc
        except SQLAlchemyError as exc:
            logger.error("Import store error: %s", exc)
            raise PersistenceError(str(exc)) from exc

    def create_tables(self) -> None:
        with self._transaction() as conn:
            for statement in _schema_statements(self.engine.dialect.name):
                conn.execute(text(statement))

    # Entity records

    def insert(self, entity_type: str, record: Dict[str, Any]) -> str:
        entity_id = str(uuid.uuid4())
        with self._transaction() as conn:
            conn.execute(
                text(
                    """
                    INSERT INTO catalog_records (id, entity_type, slug, sku, payload, created_at)
                    VALUES (:id, :entity_type, :slug, :sku, :payload, :created_at)
                    """
                ),
                {
                    "id": entity_id,
                    "entity_type": entity_type,
                    "slug": record.get("slug"),
                    "sku": record.get("sku"),
                    "payload": dumps(record),
                    "created_at": utcnow().isoformat(),
                },
            )
        return entity_id

    def record_exists(self, entity_type: str, field: str, value: Any) -> bool:
        with self._transaction() as conn:
            if field in INDEXED_RECORD_FIELDS:
                row = conn.execute(
                    text(f"SELECT 1 FROM catalog_records WHERE entity_type = :entity_type AND {field} = :value"),
                    {"entity_type": entity_type, "value": value},
                ).first()
                return row is not None
            payloads = conn.execute(
                text("SELECT payload FROM catalog_records WHERE entity_type = :entity_type"),
                {"entity_type": entity_type},
            ).scalars()
            return any(loads(payload).get(field) == value for payload in payloads)

    # Sessions

    @staticmethod
    def _session_params(session: ImportSession) -> Dict[str, Any]:
        details = session.model_dump(mode="json", include=set(SESSION_DETAIL_FIELDS))
        return {
            "session_id": session.session_id,
            "entity_type": session.entity_type,
            "status": session.status.value,
            "total_records": session.total_records,
            "processed_records": session.processed_records,
            "successful_records": session.successful_records,
            "failed_records": session.failed_records,
            "processing_rate": session.processing_rate,
            "estimated_time_remaining": session.estimated_time_remaining,
            "retry_count": session.retry_count,
            "error_message": session.error_message,
            "details": dumps(details),
            "created_at": session.created_at.isoformat(),
            "updated_at": utcnow().isoformat(),
            "completed_at": session.completed_at.isoformat() if session.completed_at else None,
        }

    def create_session(self, session: ImportSession) -> ImportSession:
        params = self._session_params(session)
        with self._transaction() as conn:
            conn.execute(
                text(
                    """
                    INSERT INTO import_sessions (
                        session_id, entity_type, status, total_records, processed_records,
                        successful_records, failed_records, processing_rate, estimated_time_remaining,
                        retry_count, error_message, details, created_at, updated_at, completed_at
                    ) VALUES (
                        :session_id, :entity_type, :status, :total_records, :processed_records,
                        :successful_records, :failed_records, :processing_rate, :estimated_time_remaining,
                        :retry_count, :error_message, :details, :created_at, :updated_at, :completed_at
                    )
                    """
                ),
                params,
            )
        return session

    def get_session(self, session_id: str) -> Optional[ImportSession]:
        with self._transaction() as conn:
            row = conn.execute(
                text("SELECT * FROM import_sessions WHERE session_id = :session_id"),
                {"session_id": session_id},
            ).mappings().first()
        if row is None:
            return None
        data = {key: row[key] for key in row.keys() if key != "details"}
        data.update(loads(row["details"]) or {})
        return ImportSession.model_validate(data)

    def save_session(self, session: ImportSession) -> ImportSession:
        params = self._session_params(session)
        with self._transaction() as conn:
            result = conn.execute(
                text(
                    """
                    UPDATE import_sessions
                    SET entity_type = :entity_type, total_records = :total_records,
                        error_message = :error_message, details = :details, updated_at = :updated_at
                    WHERE session_id = :session_id
                    """
                ),
                params,
            )
            if result.rowcount == 0:
                raise SessionNotFoundError(f"Import session {session.session_id} not found")
        return session

    def update_session_status(self, session_id, status, error_message=None) -> bool:
        status = SessionStatus(status)
        terminal = [s.value for s in TERMINAL_STATUSES]
        params = {
            "session_id": session_id,
            "status": status.value,
            "error_message": error_message,
            "updated_at": utcnow().isoformat(),
            "completed_at": utcnow().isoformat() if status.is_terminal else None,
            "allow_exit": status in (SessionStatus.COMPLETED, SessionStatus.FAILED),
        }
        terminal_params = {f"t{index}": value for index, value in enumerate(terminal)}
        params.update(terminal_params)
        placeholders = ", ".join(f":{name}" for name in terminal_params)

        with self._transaction() as conn:
            result = conn.execute(
                text(
                    f"""
                    UPDATE import_sessions
                    SET status = :status,
                        error_message = COALESCE(:error_message, error_message),
                        updated_at = :updated_at,
                        completed_at = COALESCE(:completed_at, completed_at)
                    WHERE session_id = :session_id
                      AND (
                        status NOT IN ({placeholders})
                        OR status = :status
                        OR (status = 'completed_with_errors' AND :allow_exit)
                      )
                    """
                ),
                params,
            )
            if result.rowcount:
                return True
            exists = conn.execute(
                text("SELECT status FROM import_sessions WHERE session_id = :session_id"),
                {"session_id": session_id},
            ).scalar()
        if exists is None:
            raise SessionNotFoundError(f"Import session {session_id} not found")
        logger.warning(
            "Ignoring status change %s -> %s for terminal session %s", exists, status.value, session_id
        )
        return False

    def update_session_metrics(self, session_id: str, metrics: Dict[str, Any]) -> None:
        update_parts = []
        params: Dict[str, Any] = {"session_id": session_id, "updated_at": utcnow().isoformat()}
        for key, value in metrics.items():
            if key in SESSION_METRIC_FIELDS:
                update_parts.append(f"{key} = :{key}")
                params[key] = value
        update_parts.append("updated_at = :updated_at")
        with self._transaction() as conn:
            result = conn.execute(
                text(f"UPDATE import_sessions SET {', '.join(update_parts)} WHERE session_id = :session_id"),
                params,
            )
            if result.rowcount == 0:
                raise SessionNotFoundError(f"Import session {session_id} not found")

    # Batches

    def create_batches(self, session_id: str, batches: List[ImportBatch]) -> None:
        if not batches:
            return
        with self._transaction() as conn:
            conn.execute(
                text(
                    """
                    INSERT INTO import_batches (
                        session_id, batch_number, start_index, end_index, record_count, status
                    ) VALUES (
                        :session_id, :batch_number, :start_index, :end_index, :record_count, :status
                    )
                    """
                ),
                [
                    {
                        "session_id": session_id,
                        "batch_number": batch.batch_number,
                        "start_index": batch.start_index,
                        "end_index": batch.end_index,
                        "record_count": batch.record_count,
                        "status": batch.status.value,
                    }
                    for batch in batches
                ],
            )

    def update_batch_status(self, session_id, batch_number, status, metrics=None) -> None:
        update_parts = ["status = :status"]
        params: Dict[str, Any] = {
            "session_id": session_id,
            "batch_number": batch_number,
            "status": BatchStatus(status).value,
        }
        for key, value in (metrics or {}).items():
            if key in BATCH_METRIC_FIELDS:
                update_parts.append(f"{key} = :{key}")
                params[key] = value
        with self._transaction() as conn:
            result = conn.execute(
                text(
                    f"UPDATE import_batches SET {', '.join(update_parts)} "
                    "WHERE session_id = :session_id AND batch_number = :batch_number"
                ),
                params,
            )
            if result.rowcount == 0:
                raise PersistenceError(f"Batch {batch_number} not found for session {session_id}")

    def list_batches(self, session_id: str) -> List[ImportBatch]:
        with self._transaction() as conn:
            rows = conn.execute(
                text("SELECT * FROM import_batches WHERE session_id = :session_id ORDER BY batch_number"),
                {"session_id": session_id},
            ).mappings().all()
        return [ImportBatch.model_validate(dict(row)) for row in rows]

    # History

    def append_history(self, session_id, record_index, data, status, errors=None, entity_id=None) -> None:
        with self._transaction() as conn:
            conn.execute(
                text(
                    """
                    INSERT INTO import_history (
                        session_id, record_index, record_data, import_status,
                        entity_id, validation_errors, created_at
                    ) VALUES (
                        :session_id, :record_index, :record_data, :import_status,
                        :entity_id, :validation_errors, :created_at
                    )
                    """
                ),
                {
                    "session_id": session_id,
                    "record_index": record_index,
                    "record_data": dumps(data),
                    "import_status": HistoryStatus(status).value,
                    "entity_id": entity_id,
                    "validation_errors": dumps(errors or []),
                    "created_at": utcnow().isoformat(),
                },
            )

    def list_history(self, session_id, status=None) -> List[ImportHistoryRecord]:
        sql = "SELECT * FROM import_history WHERE session_id = :session_id"
        params: Dict[str, Any] = {"session_id": session_id}
        if status is not None:
            sql += " AND import_status = :status"
            params["status"] = HistoryStatus(status).value
        sql += " ORDER BY id"
        with self._transaction() as conn:
            rows = conn.execute(text(sql), params).mappings().all()
        return [
            ImportHistoryRecord(
                session_id=row["session_id"],
                record_index=row["record_index"],
                record_data=loads(row["record_data"]) or {},
                import_status=HistoryStatus(row["import_status"]),
                entity_id=row["entity_id"],
                validation_errors=[BatchError.model_validate(item) for item in loads(row["validation_errors"]) or []],
                created_at=row["created_at"],
            )
            for row in rows
        ]
