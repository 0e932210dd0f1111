import threading
import time

import pytest

from catalog_import.core.exceptions import (
    ImportProcessingError,
    InvalidSessionStateError,
    RetryBudgetExhaustedError,
)
from catalog_import.db.persistence import InMemoryPersistence, StorageUnavailableError
from catalog_import.domain.imports.batch_processor import BatchProcessor, ProcessingMetrics, plan_batches
from catalog_import.domain.imports.models import (
    BatchStatus,
    HistoryStatus,
    ImportSession,
    SessionStatus,
)
from catalog_import.domain.mapping.models import FieldMapping, MappingStrategy
from catalog_import.integrations.events import EventChannel

PRODUCT_MAPPINGS = [
    FieldMapping(source_field="Product Name", target_field="name", confidence=80, strategy=MappingStrategy.FUZZY),
    FieldMapping(source_field="SKU", target_field="sku", confidence=95, strategy=MappingStrategy.EXACT),
    FieldMapping(source_field="Price", target_field="price", confidence=95, strategy=MappingStrategy.EXACT),
    FieldMapping(source_field="Qty", target_field="stock", confidence=80, strategy=MappingStrategy.FUZZY),
]


class FlakyStorage(InMemoryPersistence):
    """Storage that drops out once for the listed SKUs."""

    def __init__(self, failing_skus, error=StorageUnavailableError, delay=0.0):
        super().__init__()
        self.failing_skus = set(failing_skus)
        self.error = error
        self.delay = delay

    def insert(self, entity_type, record):
        if self.delay:
            time.sleep(self.delay)
        if record.get("sku") in self.failing_skus:
            self.failing_skus.discard(record["sku"])
            raise self.error("connection reset by peer")
        return super().insert(entity_type, record)


@pytest.fixture
def processor(persistence, channel, settings):
    processor = BatchProcessor(persistence, channel, settings)
    processor.start()
    yield processor
    processor.stop()


def start_session(persistence, session_id="session-1"):
    return persistence.create_session(
        ImportSession(session_id=session_id, entity_type="product", field_mappings=PRODUCT_MAPPINGS)
    )


def test_plan_batches_is_contiguous():
    batches = plan_batches("s", 250, 100)

    assert [(batch.start_index, batch.end_index) for batch in batches] == [(0, 100), (100, 200), (200, 250)]
    assert [batch.batch_number for batch in batches] == [1, 2, 3]
    assert plan_batches("s", 0, 100) == []
    assert plan_batches("s", 10, 100, first_number=4)[0].batch_number == 4


def test_thousand_rows_in_ten_batches(processor, persistence, sink, product_rows):
    start_session(persistence)

    processor.process_bulk_import("session-1", product_rows(1000), PRODUCT_MAPPINGS)

    batches = persistence.list_batches("session-1")
    assert len(batches) == 10
    assert [(batch.start_index, batch.end_index) for batch in batches] == [
        (index * 100, index * 100 + 100) for index in range(10)
    ]
    assert all(batch.status == BatchStatus.COMPLETED for batch in batches)

    session = persistence.get_session("session-1")
    assert session.status == SessionStatus.COMPLETED
    assert (session.total_records, session.processed_records) == (1000, 1000)
    assert session.successful_records == 1000
    assert session.failed_records == 0

    assert len(sink.of_type("batch_completed")) == 10
    completed = sink.of_type("completed")
    assert len(completed) == 1
    assert completed[0]["payload"]["status"] == "completed"
    assert completed[0]["payload"]["batchCount"] == 10
    assert "fallbackAction" not in completed[0]["payload"]
    assert sink.types()[-1] == "completed"
    assert len(persistence.records["product"]) == 1000


def test_progress_is_monotonic_and_consistent(processor, persistence, sink, product_rows):
    start_session(persistence)
    processor.process_bulk_import("session-1", product_rows(300), PRODUCT_MAPPINGS)

    progress = [event["payload"] for event in sink.of_type("progress")]
    processed = [payload["processedRecords"] for payload in progress]
    assert len(progress) == 300
    assert processed == sorted(processed)
    assert processed[-1] == 300
    for payload in progress:
        assert payload["processedRecords"] == payload["successfulRecords"] + payload["failedRecords"]
        assert payload["totalRecords"] == 300


def test_invalid_rows_are_counted_as_failed(processor, persistence, sink, product_rows):
    start_session(persistence)
    rows = product_rows(20)
    rows[5]["Price"] = "cheap"
    rows[7]["Product Name"] = ""

    processor.process_bulk_import("session-1", rows, PRODUCT_MAPPINGS)

    session = persistence.get_session("session-1")
    assert session.status == SessionStatus.COMPLETED_WITH_ERRORS
    assert (session.successful_records, session.failed_records) == (18, 2)
    assert [entry.record_index for entry in persistence.outstanding_failures("session-1")] == [5, 7]

    completed = sink.of_type("completed")[0]["payload"]
    assert completed["fallbackAction"] == "retry_failed_records"
    batch_errors = sink.of_type("batch_completed")[0]["payload"]["errors"]
    assert {error["record_index"] for error in batch_errors} == {5, 7}


def test_duplicates_are_skipped(processor, persistence, product_rows):
    start_session(persistence)
    persistence.insert("product", {"name": "Existing", "slug": "existing", "sku": "W-00003"})

    processor.process_bulk_import("session-1", product_rows(10), PRODUCT_MAPPINGS)

    skipped = persistence.list_history("session-1", HistoryStatus.SKIPPED)
    assert [entry.record_index for entry in skipped] == [3]
    assert skipped[0].validation_errors[-1].error == "Duplicate product: sku 'W-00003' already exists"
    session = persistence.get_session("session-1")
    assert (session.successful_records, session.failed_records) == (9, 1)
    assert persistence.outstanding_failures("session-1") == []


def test_storage_outage_fails_only_its_batch(channel, settings, sink, product_rows):
    storage = FlakyStorage({"W-00150"})
    start_session(storage)
    processor = BatchProcessor(storage, channel, settings)
    processor.start()

    processor.process_bulk_import("session-1", product_rows(1000), PRODUCT_MAPPINGS)

    batches = storage.list_batches("session-1")
    assert [batch.batch_number for batch in batches if batch.status == BatchStatus.FAILED] == [2]
    assert batches[1].success_count == 50
    assert batches[1].failure_count == 50

    session = storage.get_session("session-1")
    assert session.status == SessionStatus.COMPLETED_WITH_ERRORS
    assert (session.processed_records, session.successful_records, session.failed_records) == (1000, 950, 50)

    batch_errors = [event for event in sink.of_type("error") if event["payload"]["scope"] == "batch"]
    assert len(batch_errors) == 1
    assert batch_errors[0]["payload"]["batchNumber"] == 2

    # The outage is over: a retry clears every failure
    assert processor.retry_failed_records("session-1") == 50

    session = storage.get_session("session-1")
    assert session.status == SessionStatus.COMPLETED
    assert session.retry_count == 1
    assert (session.processed_records, session.successful_records, session.failed_records) == (1000, 1000, 0)
    assert len(storage.list_batches("session-1")) == 11
    assert storage.outstanding_failures("session-1") == []
    processor.stop()


def test_slow_batch_times_out(channel, settings, sink, product_rows):
    storage = FlakyStorage(set(), delay=0.02)
    start_session(storage)
    processor = BatchProcessor(storage, channel, settings.model_copy(update={"timeout_ms": 5}))
    processor.start()

    processor.process_bulk_import("session-1", product_rows(10), PRODUCT_MAPPINGS)

    batch = storage.list_batches("session-1")[0]
    assert batch.status == BatchStatus.FAILED
    assert "exceeded 5 ms" in batch.error_message
    assert batch.success_count + batch.failure_count == 10
    assert storage.get_session("session-1").status == SessionStatus.COMPLETED_WITH_ERRORS
    processor.stop()


def test_retry_without_failures_is_noop(processor, persistence, product_rows):
    start_session(persistence)
    processor.process_bulk_import("session-1", product_rows(10), PRODUCT_MAPPINGS)

    assert processor.retry_failed_records("session-1") == 0
    assert len(persistence.list_batches("session-1")) == 1
    assert persistence.get_session("session-1").retry_count == 0


def test_retry_budget_exhausted(processor, persistence, sink, product_rows):
    start_session(persistence)
    rows = product_rows(5)
    rows[0]["Price"] = "cheap"
    processor.process_bulk_import("session-1", rows, PRODUCT_MAPPINGS)
    persistence.update_session_metrics("session-1", {"retry_count": 3})

    with pytest.raises(RetryBudgetExhaustedError):
        processor.retry_failed_records("session-1")

    assert persistence.get_session("session-1").status == SessionStatus.FAILED
    error = sink.of_type("error")[-1]
    assert error["payload"]["fallbackAction"] == "manual_intervention_required"
    assert error["metadata"]["userAction"] is True

    with pytest.raises(InvalidSessionStateError):
        processor.retry_failed_records("session-1")


def test_reprocessing_routes_to_retry(processor, persistence, product_rows):
    start_session(persistence)
    rows = product_rows(5)
    rows[2]["Price"] = "cheap"
    processor.process_bulk_import("session-1", rows, PRODUCT_MAPPINGS)

    processor.process_bulk_import("session-1", rows, PRODUCT_MAPPINGS)

    session = persistence.get_session("session-1")
    assert session.retry_count == 1
    assert session.processed_records == 5
    assert len(persistence.records["product"]) == 4


def test_cancel_before_processing(processor, persistence, sink, product_rows):
    start_session(persistence)

    assert processor.cancel_processing("session-1") is True
    assert sink.types() == ["cancelled"]

    with pytest.raises(InvalidSessionStateError):
        processor.process_bulk_import("session-1", product_rows(5), PRODUCT_MAPPINGS)


def test_cancel_during_processing(settings, sink, product_rows):
    class CancellingStorage(InMemoryPersistence):
        processor = None

        def insert(self, entity_type, record):
            if record.get("sku") == "W-00000":
                self.processor.cancel_processing("session-1")
            return super().insert(entity_type, record)

    storage = CancellingStorage()
    start_session(storage)
    processor = BatchProcessor(storage, EventChannel([sink]), settings.model_copy(update={"max_concurrency": 1}))
    storage.processor = processor
    processor.start()

    processor.process_bulk_import("session-1", product_rows(500), PRODUCT_MAPPINGS)

    assert storage.get_session("session-1").status == SessionStatus.CANCELLED
    assert "cancelled" in sink.types()
    assert "completed" not in sink.types()
    assert len(storage.records["product"]) < 500
    processor.stop()


def test_cancel_finished_session_is_ignored(processor, persistence, product_rows):
    start_session(persistence)
    processor.process_bulk_import("session-1", product_rows(3), PRODUCT_MAPPINGS)

    assert processor.cancel_processing("session-1") is False
    assert persistence.get_session("session-1").status == SessionStatus.COMPLETED


def test_processor_must_be_started(persistence, channel, settings, product_rows):
    start_session(persistence)
    processor = BatchProcessor(persistence, channel, settings)

    with pytest.raises(ImportProcessingError):
        processor.process_bulk_import("session-1", product_rows(3), PRODUCT_MAPPINGS)


def test_processing_status(processor, persistence, product_rows):
    start_session(persistence)
    processor.process_bulk_import("session-1", product_rows(150), PRODUCT_MAPPINGS)

    status = processor.get_processing_status("session-1")

    assert status["status"] == "completed"
    assert status["live"] is False
    assert status["processedRecords"] == 150
    assert [batch["batchNumber"] for batch in status["batches"]] == [1, 2]
    assert status["batches"][1]["successCount"] == 50
    assert processor.get_processing_status("missing") is None


def test_metrics_on_retry_keep_processed_fixed():
    metrics = ProcessingMetrics(total_records=10, run_records=2, processed=10, successful=8, failed=2, retry=True)

    metrics.record_outcome(True)
    snapshot = metrics.record_outcome(False)

    assert snapshot["processed_records"] == 10
    assert (snapshot["successful_records"], snapshot["failed_records"]) == (9, 1)
    assert snapshot["sequence"] == 2


def test_duplicates_across_concurrent_batches(channel, settings, product_rows):
    class SlowStorage(InMemoryPersistence):
        def insert(self, entity_type, record):
            time.sleep(0.05)
            return super().insert(entity_type, record)

    storage = SlowStorage()
    start_session(storage)
    processor = BatchProcessor(storage, channel, settings.model_copy(update={"batch_size": 1}))
    processor.start()
    rows = product_rows(5)
    for row in rows:
        row["SKU"] = "DUP-1"

    processor.process_bulk_import("session-1", rows, PRODUCT_MAPPINGS)

    assert len(storage.records["product"]) == 1
    assert len(storage.list_history("session-1", HistoryStatus.SUCCESS)) == 1
    assert len(storage.list_history("session-1", HistoryStatus.SKIPPED)) == 4
    session = storage.get_session("session-1")
    assert (session.successful_records, session.failed_records) == (1, 4)
    processor.stop()


def test_storage_outage_while_closing_a_batch(channel, settings, sink, product_rows):
    class FlakyBatchStorage(InMemoryPersistence):
        dropped = False

        def update_batch_status(self, session_id, batch_number, status, metrics=None):
            if batch_number == 2 and status == BatchStatus.COMPLETED and not self.dropped:
                self.dropped = True
                raise StorageUnavailableError("connection reset")
            return super().update_batch_status(session_id, batch_number, status, metrics)

    storage = FlakyBatchStorage()
    start_session(storage)
    processor = BatchProcessor(storage, channel, settings.model_copy(update={"batch_size": 10}))
    processor.start()

    processor.process_bulk_import("session-1", product_rows(30), PRODUCT_MAPPINGS)

    batches = storage.list_batches("session-1")
    assert [batch.status for batch in batches] == [BatchStatus.COMPLETED, BatchStatus.FAILED, BatchStatus.COMPLETED]
    assert batches[1].error_message == "connection reset"
    assert batches[1].success_count == 10

    session = storage.get_session("session-1")
    assert session.status == SessionStatus.COMPLETED
    assert session.successful_records == 30
    batch_errors = sink.of_type("error")
    assert [event["payload"]["batchNumber"] for event in batch_errors] == [2]
    assert len(sink.of_type("completed")) == 1
    processor.stop()


def test_second_call_while_processing_is_rejected(channel, sink, settings, product_rows):
    class BlockingStorage(InMemoryPersistence):
        def __init__(self):
            super().__init__()
            self.entered = threading.Event()
            self.release = threading.Event()

        def insert(self, entity_type, record):
            self.entered.set()
            self.release.wait(5)
            return super().insert(entity_type, record)

    storage = BlockingStorage()
    start_session(storage)
    processor = BatchProcessor(storage, channel, settings)
    processor.start()
    worker = threading.Thread(
        target=processor.process_bulk_import,
        args=("session-1", product_rows(3), PRODUCT_MAPPINGS),
    )
    worker.start()
    try:
        assert storage.entered.wait(2)
        with pytest.raises(InvalidSessionStateError, match="still processing"):
            processor.process_bulk_import("session-1", product_rows(3), PRODUCT_MAPPINGS)
        with pytest.raises(InvalidSessionStateError, match="still processing"):
            processor.retry_failed_records("session-1")
    finally:
        storage.release.set()
        worker.join(5)

    session = storage.get_session("session-1")
    assert session.status == SessionStatus.COMPLETED
    assert len(storage.list_batches("session-1")) == 1
    assert len(storage.records["product"]) == 3
    assert "error" not in sink.types()
    processor.stop()


def test_finished_sessions_leave_no_state(processor, persistence, make_session, product_rows):
    start_session(persistence)
    processor.process_bulk_import("session-1", product_rows(5), PRODUCT_MAPPINGS)
    make_session("session-2")
    processor.cancel_processing("session-2")
    processor.cancel_processing("session-1")

    assert processor.tracked_sessions() == 0
