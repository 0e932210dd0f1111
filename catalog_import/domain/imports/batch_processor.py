"""
Concurrent batch processing of mapped import rows.

Rows are cut into fixed-size batches, each batch is processed end-to-end by
one worker of a bounded thread pool, and every record goes through
map -> validate -> duplicate check -> insert -> history. Session counters are
shared between workers and only updated under the session's metrics lock.
"""
import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from catalog_import.core.config import Settings, settings as default_settings
from catalog_import.core.exceptions import (
    ImportProcessingError,
    InvalidSessionStateError,
    RetryBudgetExhaustedError,
)
from catalog_import.db.persistence import ImportPersistence, PersistenceError, StorageUnavailableError
from catalog_import.domain.mapping.models import FieldMapping
from catalog_import.integrations.events import EventChannel, EventType
from catalog_import.utils.locks import EntityLockManager

from .models import (
    BatchError,
    BatchResult,
    BatchStatus,
    HistoryStatus,
    ImportBatch,
    SessionStatus,
    Severity,
    entity_payload,
)
from .validators import apply_field_mappings, dedupe_key, validate_record

logger = logging.getLogger(__name__)


class BatchTimeoutError(Exception):
    """A batch ran past its time budget; raised between records."""


def plan_batches(session_id: str, total_records: int, batch_size: int, first_number: int = 1) -> List[ImportBatch]:
    """Contiguous, non-overlapping ``[start, end)`` slices covering ``total_records`` rows."""
    batches = []
    for offset, start in enumerate(range(0, total_records, batch_size)):
        end = min(start + batch_size, total_records)
        batches.append(
            ImportBatch(
                session_id=session_id,
                batch_number=first_number + offset,
                start_index=start,
                end_index=end,
                record_count=end - start,
            )
        )
    return batches


class ProcessingMetrics:
    """
    Live counters for one processing run of a session.

    On a retry run the counters start from the session's stored totals; a row
    that now succeeds moves from failed to successful, so ``processed`` stays
    equal to ``successful + failed`` throughout.
    """

    def __init__(
        self,
        total_records: int,
        run_records: int,
        processed: int = 0,
        successful: int = 0,
        failed: int = 0,
        retry: bool = False,
    ):
        self._lock = threading.Lock()
        self.publish_lock = threading.Lock()
        self.total_records = total_records
        self.run_records = run_records
        self.processed = processed
        self.successful = successful
        self.failed = failed
        self.retry = retry
        self.run_done = 0
        self.latency_total = 0.0
        self.sequence = 0
        self.last_published = -1
        self.started_at = time.monotonic()

    def record_outcome(self, success: bool, latency_seconds: float = 0.0) -> Dict[str, Any]:
        with self._lock:
            self.run_done += 1
            self.latency_total += latency_seconds
            if self.retry:
                if success:
                    self.successful += 1
                    self.failed -= 1
            else:
                self.processed += 1
                if success:
                    self.successful += 1
                else:
                    self.failed += 1
            return self._snapshot_locked()

    def record_unprocessed(self, count: int) -> Dict[str, Any]:
        """Rows of a failed batch that never ran count as failures."""
        with self._lock:
            self.run_done += count
            if not self.retry:
                self.processed += count
                self.failed += count
            return self._snapshot_locked()

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return self._snapshot_locked()

    def _snapshot_locked(self) -> Dict[str, Any]:
        self.sequence += 1
        elapsed = max(time.monotonic() - self.started_at, 1e-6)
        throughput = self.run_done / elapsed
        remaining = max(self.run_records - self.run_done, 0)
        return {
            "sequence": self.sequence,
            "total_records": self.total_records,
            "processed_records": self.processed,
            "successful_records": self.successful,
            "failed_records": self.failed,
            "processing_rate": round(throughput, 3),
            "estimated_time_remaining": round(remaining / throughput, 3) if throughput > 0 else None,
            "average_latency_ms": round(self.latency_total / self.run_done * 1000, 3) if self.run_done else 0.0,
            "elapsed_seconds": round(elapsed, 3),
        }


def metrics_to_wire(snapshot: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "totalRecords": snapshot["total_records"],
        "processedRecords": snapshot["processed_records"],
        "successfulRecords": snapshot["successful_records"],
        "failedRecords": snapshot["failed_records"],
        "throughput": snapshot["processing_rate"],
        "estimatedTimeRemaining": snapshot["estimated_time_remaining"],
        "averageLatencyMs": snapshot["average_latency_ms"],
    }


class BatchProcessor:
    def __init__(
        self,
        persistence: ImportPersistence,
        channel: EventChannel,
        settings: Optional[Settings] = None,
    ):
        self.persistence = persistence
        self.channel = channel
        self.settings = settings or default_settings
        self._metrics: Dict[str, ProcessingMetrics] = {}
        self._active: Set[str] = set()
        self._cancelled: Set[str] = set()
        self._state_lock = threading.Lock()
        self._running = False

    # Lifecycle

    def start(self) -> None:
        self._running = True
        logger.info(
            "Batch processor started (batch_size=%d, max_concurrency=%d)",
            self.settings.batch_size,
            self.settings.max_concurrency,
        )

    def stop(self) -> None:
        """Stop accepting work; batches not yet dispatched are skipped."""
        self._running = False
        logger.info("Batch processor stopped")

    @property
    def running(self) -> bool:
        return self._running

    # Session control surface

    def process_bulk_import(
        self,
        session_id: str,
        rows: Sequence[Dict[str, Any]],
        mappings: Sequence[FieldMapping],
        entity_type: Optional[str] = None,
    ) -> None:
        """
        Validate and persist ``rows`` for a session.

        A session that already has batches is not processed again; the call is
        routed to ``retry_failed_records`` so only failed rows are touched.
        """
        with self._claim(session_id):
            session = self.persistence.require_session(session_id)
            if self.persistence.list_batches(session_id):
                logger.warning("Session %s was already processed; retrying failed records only", session_id)
                self._retry(session_id)
                return
            if session.status in (SessionStatus.CANCELLED, SessionStatus.FAILED):
                raise InvalidSessionStateError(f"Session {session_id} is {session.status.value}")

            self._run(
                session_id,
                list(rows),
                list(range(len(rows))),
                list(mappings),
                entity_type or session.entity_type,
                retry=False,
            )

    def retry_failed_records(self, session_id: str) -> int:
        """
        Re-run rows whose latest history entry is ``failed``. Returns the number
        of rows retried; zero failures is a no-op.
        """
        with self._claim(session_id):
            return self._retry(session_id)

    def _retry(self, session_id: str) -> int:
        session = self.persistence.require_session(session_id)
        if session.status in (SessionStatus.CANCELLED, SessionStatus.FAILED):
            raise InvalidSessionStateError(f"Cannot retry a {session.status.value} session")

        failures = self.persistence.outstanding_failures(session_id)
        if not failures:
            logger.info("No failed records to retry for session %s", session_id)
            return 0

        if session.retry_count >= self.settings.retry_attempts:
            message = f"Retry budget exhausted after {session.retry_count} attempts"
            logger.error("Session %s: %s", session_id, message)
            self.persistence.update_session_status(session_id, SessionStatus.FAILED, message)
            self.channel.emit(
                session_id,
                EventType.ERROR,
                {
                    "error": message,
                    "scope": "session",
                    "failedRecords": len(failures),
                    "fallbackAction": "manual_intervention_required",
                    "instruction": "Fix the failed rows in the source file and import them again",
                },
                user_action=True,
            )
            raise RetryBudgetExhaustedError(message)

        self.persistence.update_session_metrics(session_id, {"retry_count": session.retry_count + 1})
        logger.info(
            "Retrying %d failed records for session %s (attempt %d/%d)",
            len(failures),
            session_id,
            session.retry_count + 1,
            self.settings.retry_attempts,
        )
        self._run(
            session_id,
            [entry.record_data for entry in failures],
            [entry.record_index for entry in failures],
            list(session.field_mappings),
            session.entity_type,
            retry=True,
        )
        return len(failures)

    def cancel_processing(self, session_id: str) -> bool:
        with self._state_lock:
            self._cancelled.add(session_id)
            metrics = self._metrics.pop(session_id, None)
        changed = self.persistence.update_session_status(session_id, SessionStatus.CANCELLED)
        with self._state_lock:
            # Only a running import still needs to see the flag
            if not changed or session_id not in self._active:
                self._cancelled.discard(session_id)
        if not changed:
            logger.info("Session %s already finished; cancel ignored", session_id)
            return False

        logger.info("Cancelled processing for session %s", session_id)
        payload: Dict[str, Any] = {"message": "Import cancelled"}
        if metrics is not None:
            payload.update(metrics_to_wire(metrics.snapshot()))
        self.channel.emit(session_id, EventType.CANCELLED, payload, user_action=False)
        return True

    def get_processing_status(self, session_id: str) -> Optional[Dict[str, Any]]:
        session = self.persistence.get_session(session_id)
        if session is None:
            return None
        status: Dict[str, Any] = {
            "sessionId": session_id,
            "status": session.status.value,
            "live": False,
            **session.counters(),
        }
        with self._state_lock:
            metrics = self._metrics.get(session_id)
        if metrics is not None:
            status.update(metrics_to_wire(metrics.snapshot()))
            status["live"] = True
        status["batches"] = [
            {
                "batchNumber": batch.batch_number,
                "startIndex": batch.start_index,
                "endIndex": batch.end_index,
                "status": batch.status.value,
                "successCount": batch.success_count,
                "failureCount": batch.failure_count,
            }
            for batch in self.persistence.list_batches(session_id)
        ]
        return status

    def tracked_sessions(self) -> int:
        """Sessions the processor still holds state for."""
        with self._state_lock:
            return len(self._active | self._cancelled | set(self._metrics))

    # Internals

    @contextmanager
    def _claim(self, session_id: str):
        """One processing call per session at a time; a second caller is rejected."""
        with self._state_lock:
            if session_id in self._active:
                raise InvalidSessionStateError(f"Session {session_id} is still processing")
            self._active.add(session_id)
        try:
            yield
        finally:
            with self._state_lock:
                self._active.discard(session_id)
                self._cancelled.discard(session_id)

    def _is_cancelled(self, session_id: str) -> bool:
        with self._state_lock:
            return session_id in self._cancelled

    def _run(
        self,
        session_id: str,
        rows: List[Dict[str, Any]],
        record_indexes: List[int],
        mappings: List[FieldMapping],
        entity_type: str,
        retry: bool,
    ) -> None:
        if not self._running:
            raise ImportProcessingError("Batch processor is not running")

        if not retry and not self.persistence.update_session_status(session_id, SessionStatus.EXECUTING):
            raise InvalidSessionStateError(f"Session {session_id} can no longer be processed")

        try:
            session = self.persistence.require_session(session_id)
            existing = self.persistence.list_batches(session_id)
            first_number = existing[-1].batch_number + 1 if existing else 1
            batches = plan_batches(session_id, len(rows), self.settings.batch_size, first_number)
            self.persistence.create_batches(session_id, batches)

            if retry:
                metrics = ProcessingMetrics(
                    total_records=session.total_records,
                    run_records=len(rows),
                    processed=session.processed_records,
                    successful=session.successful_records,
                    failed=session.failed_records,
                    retry=True,
                )
            else:
                metrics = ProcessingMetrics(total_records=len(rows), run_records=len(rows))
                self.persistence.update_session_metrics(session_id, metrics.snapshot())

            with self._state_lock:
                self._metrics[session_id] = metrics

            logger.info(
                "Processing %d records for session %s in %d batches%s",
                len(rows),
                session_id,
                len(batches),
                " (retry)" if retry else "",
            )
            results = self._execute_batches(session_id, batches, rows, record_indexes, mappings, entity_type, metrics)
            self._finalize(session_id, metrics, results)
        except Exception as exc:
            with self._state_lock:
                self._metrics.pop(session_id, None)
                self._cancelled.discard(session_id)
            logger.exception("Import processing failed for session %s", session_id)
            try:
                self.persistence.update_session_status(session_id, SessionStatus.FAILED, str(exc))
            except PersistenceError as status_error:
                logger.error("Could not mark session %s failed: %s", session_id, status_error)
            self.channel.emit(
                session_id,
                EventType.ERROR,
                {
                    "error": str(exc),
                    "scope": "session",
                    "fallbackAction": "enable_manual_controls",
                    "instruction": "Processing stopped; review the import and start it again",
                },
                user_action=True,
            )
            raise ImportProcessingError(f"Import processing failed for session {session_id}: {exc}") from exc

    def _execute_batches(
        self,
        session_id: str,
        batches: List[ImportBatch],
        rows: List[Dict[str, Any]],
        record_indexes: List[int],
        mappings: List[FieldMapping],
        entity_type: str,
        metrics: ProcessingMetrics,
    ) -> List[BatchResult]:
        if not batches:
            return []

        results: Dict[int, BatchResult] = {}
        with ThreadPoolExecutor(
            max_workers=self.settings.max_concurrency,
            thread_name_prefix=f"import-{session_id[:8]}",
        ) as executor:
            future_to_batch = {}
            for batch in batches:
                future = executor.submit(
                    self._process_batch,
                    session_id,
                    batch,
                    rows[batch.start_index:batch.end_index],
                    record_indexes[batch.start_index:batch.end_index],
                    mappings,
                    entity_type,
                    metrics,
                )
                future_to_batch[future] = batch.batch_number
            pending_futures = set(future_to_batch)

            while pending_futures:
                done, pending_futures = wait(pending_futures, return_when=FIRST_COMPLETED)
                for future in done:
                    # _process_batch handles its own failures
                    result = future.result()
                    results[future_to_batch[future]] = result

        return [results[number] for number in sorted(results)]

    def _process_batch(
        self,
        session_id: str,
        batch: ImportBatch,
        rows: List[Dict[str, Any]],
        record_indexes: List[int],
        mappings: List[FieldMapping],
        entity_type: str,
        metrics: ProcessingMetrics,
    ) -> BatchResult:
        result = BatchResult(batch_number=batch.batch_number)
        if self._is_cancelled(session_id) or not self._running:
            logger.info("Skipping batch %d of session %s (not dispatched before stop)", batch.batch_number, session_id)
            result.discarded = True
            return result

        started = time.perf_counter()
        deadline = started + self.settings.timeout_ms / 1000
        logger.info("Processing batch %d (%d records)", batch.batch_number, len(rows))

        try:
            self.persistence.update_batch_status(session_id, batch.batch_number, BatchStatus.PROCESSING)
            for record_index, row in zip(record_indexes, rows):
                if time.perf_counter() > deadline:
                    raise BatchTimeoutError(
                        f"Batch {batch.batch_number} exceeded {self.settings.timeout_ms} ms"
                    )
                record_started = time.perf_counter()
                success, errors = self._process_record(session_id, record_index, row, mappings, entity_type)
                result.errors.extend(errors)
                if success:
                    result.success_count += 1
                else:
                    result.failure_count += 1
                snapshot = metrics.record_outcome(success, time.perf_counter() - record_started)
                self._publish_progress(session_id, metrics, snapshot)

            result.processing_time_ms = round((time.perf_counter() - started) * 1000, 3)
            self.persistence.update_batch_status(
                session_id,
                batch.batch_number,
                BatchStatus.COMPLETED,
                {
                    "success_count": result.success_count,
                    "failure_count": result.failure_count,
                    "processing_time_ms": result.processing_time_ms,
                },
            )
        except Exception as exc:
            return self._fail_batch(session_id, batch, result, record_indexes, rows, metrics, exc, started)

        seconds = result.processing_time_ms / 1000
        records_per_sec = len(rows) / seconds if seconds > 0 else 0
        logger.info(
            "Batch %d: %d ok, %d failed in %.2fs (%.0f rec/sec)",
            batch.batch_number,
            result.success_count,
            result.failure_count,
            seconds,
            records_per_sec,
        )

        if self._is_cancelled(session_id):
            result.discarded = True
            return result

        self.channel.emit(
            session_id,
            EventType.BATCH_COMPLETED,
            {
                "batchNumber": batch.batch_number,
                "successCount": result.success_count,
                "failureCount": result.failure_count,
                "processingTime": result.processing_time_ms,
                "errors": [error.model_dump(mode="json") for error in result.errors],
            },
        )
        return result

    def _fail_batch(
        self,
        session_id: str,
        batch: ImportBatch,
        result: BatchResult,
        record_indexes: List[int],
        rows: List[Dict[str, Any]],
        metrics: ProcessingMetrics,
        exc: Exception,
        started: float,
    ) -> BatchResult:
        handled = result.success_count + result.failure_count
        unprocessed = list(zip(record_indexes[handled:], rows[handled:]))
        message = f"Batch {batch.batch_number} failed: {exc}"
        logger.error("Session %s: %s", session_id, message)

        for record_index, row in unprocessed:
            error = BatchError(
                record_index=record_index,
                error=message,
                severity=Severity.ERROR,
                auto_fixable=False,
                suggestion="Retry failed records once the problem is resolved",
            )
            result.errors.append(error)
            try:
                self.persistence.append_history(session_id, record_index, row, HistoryStatus.FAILED, [error])
            except PersistenceError as history_error:
                logger.warning("Could not log unprocessed rows of batch %d: %s", batch.batch_number, history_error)
                break

        result.failure_count += len(unprocessed)
        result.processing_time_ms = round((time.perf_counter() - started) * 1000, 3)
        if unprocessed:
            snapshot = metrics.record_unprocessed(len(unprocessed))
            if not self._is_cancelled(session_id):
                try:
                    self._publish_progress(session_id, metrics, snapshot)
                except PersistenceError as publish_error:
                    logger.warning("Could not publish progress for session %s: %s", session_id, publish_error)

        try:
            self.persistence.update_batch_status(
                session_id,
                batch.batch_number,
                BatchStatus.FAILED,
                {
                    "success_count": result.success_count,
                    "failure_count": result.failure_count,
                    "processing_time_ms": result.processing_time_ms,
                    "error_message": str(exc),
                },
            )
        except PersistenceError as status_error:
            logger.error("Could not mark batch %d failed: %s", batch.batch_number, status_error)

        if self._is_cancelled(session_id):
            result.discarded = True
            return result

        self.channel.emit(
            session_id,
            EventType.ERROR,
            {
                "scope": "batch",
                "batchNumber": batch.batch_number,
                "error": str(exc),
                "failedRecords": result.failure_count,
            },
        )
        return result

    def _process_record(
        self,
        session_id: str,
        record_index: int,
        row: Dict[str, Any],
        mappings: List[FieldMapping],
        entity_type: str,
    ) -> Tuple[bool, List[BatchError]]:
        mapped = apply_field_mappings(row, mappings)
        outcome = validate_record(mapped, entity_type, record_index)
        if not outcome.is_valid:
            self.persistence.append_history(session_id, record_index, row, HistoryStatus.FAILED, outcome.errors)
            return False, outcome.errors

        record = outcome.record
        key = dedupe_key(record)
        entity_id = None
        insert_error = None
        # Duplicate check and insert must not interleave with other batches
        with EntityLockManager.acquire(entity_type):
            is_duplicate = bool(key) and self.persistence.record_exists(entity_type, key[0], key[1])
            if not is_duplicate:
                try:
                    entity_id = self.persistence.insert(entity_type, entity_payload(record))
                except StorageUnavailableError:
                    raise
                except PersistenceError as exc:
                    insert_error = exc

        if is_duplicate:
            duplicate = BatchError(
                record_index=record_index,
                error=f"Duplicate {entity_type}: {key[0]} '{key[1]}' already exists",
                severity=Severity.WARNING,
                auto_fixable=False,
                suggestion="Update the existing record instead of importing it again",
            )
            errors = outcome.errors + [duplicate]
            self.persistence.append_history(session_id, record_index, row, HistoryStatus.SKIPPED, errors)
            return False, errors

        if insert_error is not None:
            error = BatchError(
                record_index=record_index,
                error=f"Insert failed: {insert_error}",
                severity=Severity.ERROR,
                auto_fixable=False,
                suggestion="Check required fields and data formats",
            )
            errors = outcome.errors + [error]
            self.persistence.append_history(session_id, record_index, row, HistoryStatus.FAILED, errors)
            return False, errors

        self.persistence.append_history(
            session_id,
            record_index,
            row,
            HistoryStatus.SUCCESS,
            outcome.warnings,
            entity_id=entity_id,
        )
        return True, outcome.warnings

    def _publish_progress(self, session_id: str, metrics: ProcessingMetrics, snapshot: Dict[str, Any]) -> None:
        if self._is_cancelled(session_id):
            return
        with metrics.publish_lock:
            # A worker that lost the race publishes the current counters instead
            if snapshot["sequence"] <= metrics.last_published:
                snapshot = metrics.snapshot()
            metrics.last_published = snapshot["sequence"]
            self.persistence.update_session_metrics(session_id, snapshot)
            self.channel.emit(session_id, EventType.PROGRESS, metrics_to_wire(snapshot))

    def _finalize(self, session_id: str, metrics: ProcessingMetrics, results: List[BatchResult]) -> None:
        with self._state_lock:
            self._metrics.pop(session_id, None)
            cancelled = session_id in self._cancelled
            self._cancelled.discard(session_id)

        if cancelled:
            logger.info("Session %s was cancelled; discarding %d batch results", session_id, len(results))
            return
        if not self._running and any(result.discarded for result in results):
            logger.warning("Session %s left incomplete by processor shutdown", session_id)
            return

        final = metrics.snapshot()
        self.persistence.update_session_metrics(session_id, final)
        status = SessionStatus.COMPLETED if final["failed_records"] == 0 else SessionStatus.COMPLETED_WITH_ERRORS
        if not self.persistence.update_session_status(session_id, status):
            logger.info("Session %s was closed while finishing; no completion event", session_id)
            return

        payload = {
            "status": status.value,
            **metrics_to_wire(final),
            "batchCount": len(results),
            "durationSeconds": final["elapsed_seconds"],
        }
        if status == SessionStatus.COMPLETED_WITH_ERRORS:
            payload["fallbackAction"] = "retry_failed_records"
            payload["instruction"] = "Review failed rows, fix the source data and retry failed records"
        logger.info(
            "Session %s finished as %s (%d ok, %d failed)",
            session_id,
            status.value,
            final["successful_records"],
            final["failed_records"],
        )
        self.channel.emit(session_id, EventType.COMPLETED, payload)
