import threading

import pytest

from catalog_import.core.exceptions import InvalidSessionStateError, WorkflowError
from catalog_import.domain.imports.batch_processor import BatchProcessor
from catalog_import.domain.imports.models import SessionStatus
from catalog_import.domain.mapping.history import MappingHistory
from catalog_import.domain.mapping.models import FieldMapping, MappingStrategy, MappingSuggestion
from catalog_import.domain.mapping.schema_mapper import FieldMappingEngine
from catalog_import.domain.parsing.types import ParseMetadata, ParseResult, RawBuffer
from catalog_import.domain.workflows.orchestrator import WorkflowOrchestrator

PRODUCT_MAPPINGS = [
    FieldMapping(source_field="Product Name", target_field="name", confidence=80, strategy=MappingStrategy.FUZZY),
    FieldMapping(source_field="SKU", target_field="sku", confidence=95, strategy=MappingStrategy.EXACT),
    FieldMapping(source_field="Price", target_field="price", confidence=95, strategy=MappingStrategy.EXACT),
    FieldMapping(source_field="Qty", target_field="stock", confidence=80, strategy=MappingStrategy.FUZZY),
]

WEAK_MAPPINGS = [
    FieldMapping(source_field="Product Name", target_field="name", confidence=55, strategy=MappingStrategy.FUZZY),
]


def build_orchestrator(persistence, channel, settings):
    processor = BatchProcessor(persistence, channel, settings)
    processor.start()
    orchestrator = WorkflowOrchestrator(
        persistence,
        channel,
        processor,
        mapping_engine=FieldMappingEngine(history=MappingHistory(), min_confidence=60, learn_confidence=70),
        settings=settings,
    )
    orchestrator.start()
    return orchestrator


@pytest.fixture
def orchestrator(persistence, channel, settings):
    orchestrator = build_orchestrator(persistence, channel, settings)
    yield orchestrator
    orchestrator.stop()
    orchestrator.processor.stop()


def finish_analysis(orchestrator, session_id, rows, mappings):
    assert orchestrator.begin_analysis(session_id) is True
    parse_result = ParseResult(
        success=True,
        rows=rows,
        confidence=90,
        strategy_name="standard_csv",
        metadata=ParseMetadata(column_names=list(rows[0]) if rows else []),
    )
    return orchestrator.complete_analysis(session_id, parse_result, MappingSuggestion(mappings=mappings))


def test_low_confidence_holds_for_mapping_review(orchestrator, persistence, sink, make_session, product_rows):
    make_session()

    assert finish_analysis(orchestrator, "session-1", product_rows(20), WEAK_MAPPINGS) is True

    assert persistence.get_session("session-1").status == SessionStatus.MAPPING_COMPLETE
    assert sink.types() == ["analysis_complete", "mapping_suggestions"]

    analysis = sink.of_type("analysis_complete")[0]
    assert analysis["payload"]["autoAdvanceReady"] is False
    assert analysis["metadata"]["expectedNextStep"] == 1

    review = sink.of_type("mapping_suggestions")[0]
    assert review["payload"]["requiresUserReview"] is True
    assert review["payload"]["message"] == "Field mapping requires your review"
    assert review["payload"]["confidence"] == 0.55
    assert review["metadata"]["autoAdvance"] is False

    status = orchestrator.get_workflow_status("session-1")
    assert status["state"] == "mapping_complete"
    assert status["canAutoAdvance"] is False
    assert status["nextAction"] == "review_mappings"
    assert status["fallbackAction"] == "manual_mapping_required"


def test_confident_session_runs_to_completion(orchestrator, persistence, sink, make_session, product_rows):
    make_session()

    finish_analysis(orchestrator, "session-1", product_rows(20), PRODUCT_MAPPINGS)
    assert orchestrator.wait_for_pending(5)

    assert persistence.get_session("session-1").status == SessionStatus.AWAITING_APPROVAL
    assert sink.types() == [
        "analysis_complete",
        "preview_generation_started",
        "preview_ready",
        "approval_required",
    ]
    preview = sink.of_type("preview_ready")[0]
    assert preview["payload"]["validCount"] == 10
    assert preview["metadata"]["expectedNextStep"] == 2
    approval = sink.of_type("approval_required")[0]
    assert approval["payload"]["requiresUserAction"] is True
    assert approval["metadata"]["expectedNextStep"] == 3

    execution = orchestrator.approve("session-1")
    execution.result(timeout=10)

    session = persistence.get_session("session-1")
    assert session.status == SessionStatus.COMPLETED
    assert session.successful_records == 20
    assert sink.types()[-1] == "completed"
    assert orchestrator.get_workflow_status("session-1")["nextAction"] == "workflow_complete"


def test_approval_guard(orchestrator, persistence, make_session, product_rows):
    make_session()
    finish_analysis(orchestrator, "session-1", product_rows(5), PRODUCT_MAPPINGS)
    orchestrator.wait_for_pending(5)

    assert orchestrator.execute_workflow("session-1", SessionStatus.AWAITING_APPROVAL) is False
    assert persistence.get_session("session-1").status == SessionStatus.AWAITING_APPROVAL

    assert orchestrator.execute_workflow("session-1", SessionStatus.AWAITING_APPROVAL, {"approved": True}) is True
    assert orchestrator.wait_for_pending(10)
    assert persistence.get_session("session-1").status == SessionStatus.COMPLETED


def test_approval_during_preview_delay(persistence, channel, settings, make_session, product_rows):
    orchestrator = build_orchestrator(persistence, channel, settings.model_copy(update={"preview_delay_seconds": 30}))
    try:
        make_session()
        finish_analysis(orchestrator, "session-1", product_rows(5), PRODUCT_MAPPINGS)
        assert persistence.get_session("session-1").status == SessionStatus.PREVIEW_READY

        orchestrator.approve("session-1").result(timeout=10)

        assert persistence.get_session("session-1").status == SessionStatus.COMPLETED
    finally:
        orchestrator.stop()
        orchestrator.processor.stop()


def test_approve_requires_waiting_session(orchestrator, make_session):
    make_session()
    with pytest.raises(InvalidSessionStateError):
        orchestrator.approve("session-1")


def test_failed_preview_is_recoverable(orchestrator, persistence, sink, make_session, product_rows):
    make_session()
    rows = product_rows(5)
    for row in rows:
        row["Price"] = "cheap"

    finish_analysis(orchestrator, "session-1", rows, PRODUCT_MAPPINGS)

    assert persistence.get_session("session-1").status == SessionStatus.GENERATING_PREVIEW
    error = sink.of_type("workflow_error")[0]
    assert error["payload"]["fallbackAction"] == "manual_preview_required"
    assert error["payload"]["recoverable"] is True
    assert error["payload"]["error"] == "None of the first 5 rows produced a valid product"

    status = orchestrator.get_workflow_status("session-1")
    assert status["nextAction"] == "wait_for_preview"
    assert status["fallbackAction"] == "manual_preview_required"

    # Fixed data: the manual trigger completes the preview and the workflow resumes
    orchestrator.get_context("session-1").rows = product_rows(5)
    preview = orchestrator.generate_preview("session-1")

    assert preview.success is True
    orchestrator.wait_for_pending(5)
    assert persistence.get_session("session-1").status == SessionStatus.AWAITING_APPROVAL


def test_action_error_fails_session(orchestrator, persistence, sink, make_session):
    make_session()

    finish_analysis(orchestrator, "session-1", [], PRODUCT_MAPPINGS)

    session = persistence.get_session("session-1")
    assert session.status == SessionStatus.FAILED
    error = sink.of_type("workflow_error")[0]["payload"]
    assert error["fallbackAction"] == "manual_preview_required"
    assert error["instruction"] == "Generate the preview manually to continue"
    assert error["recoverable"] is False

    status = orchestrator.get_workflow_status("session-1")
    assert status["nextAction"] == "manual_recovery_required"
    assert status["fallbackAction"] == "manual_preview_required"
    assert status["error"] == session.error_message


def test_stale_and_unknown_triggers_are_ignored(orchestrator, persistence, make_session, product_rows):
    make_session()
    finish_analysis(orchestrator, "session-1", product_rows(5), WEAK_MAPPINGS)

    assert orchestrator.execute_workflow("session-1", SessionStatus.ANALYZING) is False
    assert orchestrator.execute_workflow("session-1", SessionStatus.COMPLETED) is False
    assert orchestrator.execute_workflow("missing", SessionStatus.INITIATED) is False
    assert persistence.get_session("session-1").status == SessionStatus.MAPPING_COMPLETE


def test_manual_mappings_resume_workflow(orchestrator, persistence, sink, make_session, product_rows):
    make_session()
    finish_analysis(orchestrator, "session-1", product_rows(10), WEAK_MAPPINGS)

    moved = orchestrator.submit_manual_mappings("session-1", {
        "Product Name": "name",
        "SKU": "sku",
        "Price": "price",
        "Qty": "stock",
    })
    orchestrator.wait_for_pending(5)

    assert moved is True
    session = persistence.get_session("session-1")
    assert session.status == SessionStatus.AWAITING_APPROVAL
    assert session.mapping_confidence == 100
    assert all(mapping.strategy == MappingStrategy.MANUAL for mapping in session.field_mappings)
    assert session.superseded_mappings == WEAK_MAPPINGS
    assert orchestrator.mapping_engine.history.lookup("product", "Product Name") == [("name", 1.0)]
    assert "preview_ready" in sink.types()


def test_manual_mappings_are_validated(orchestrator, make_session, product_rows):
    make_session()
    with pytest.raises(InvalidSessionStateError):
        orchestrator.submit_manual_mappings("session-1", {"Product Name": "name"})

    finish_analysis(orchestrator, "session-1", product_rows(5), WEAK_MAPPINGS)
    with pytest.raises(WorkflowError, match="Unknown product field"):
        orchestrator.submit_manual_mappings("session-1", {"Product Name": "bogus"})
    with pytest.raises(WorkflowError, match="mapped once"):
        orchestrator.submit_manual_mappings("session-1", {"Product Name": "name", "SKU": "name"})


def test_unreadable_upload_fails_analysis(orchestrator, persistence, sink, make_session):
    make_session()

    assert orchestrator.analyze("session-1", RawBuffer.from_text("   \n\n  ")) is None

    assert persistence.get_session("session-1").status == SessionStatus.FAILED
    error = sink.of_type("error")[0]["payload"]
    assert error["code"] == "no-recoverable-data"
    assert error["fallbackAction"] == "manual_upload_review"
    assert error["instruction"] == "Check the file format and upload it again"

    with pytest.raises(InvalidSessionStateError):
        orchestrator.analyze("session-1", RawBuffer.from_text("a,b\n1,2"))


def test_handle_workflow_error(orchestrator, persistence, sink, make_session):
    make_session()

    orchestrator.handle_workflow_error("session-1", RuntimeError("boom"), "enable_manual_controls")

    assert persistence.get_session("session-1").status == SessionStatus.FAILED
    event = sink.of_type("workflow_error")[0]
    assert event["payload"]["instruction"] == "Continue using manual navigation controls"
    assert event["metadata"]["userAction"] is True


def test_status_for_unknown_session(orchestrator):
    status = orchestrator.get_workflow_status("missing")
    assert status["success"] is False
    assert status["nextAction"] == "session_not_found"


def test_concurrent_approvals_start_one_import(orchestrator, persistence, sink, make_session, product_rows):
    make_session()
    finish_analysis(orchestrator, "session-1", product_rows(20), PRODUCT_MAPPINGS)
    orchestrator.wait_for_pending(5)

    callers = 6
    barrier = threading.Barrier(callers)
    outcomes = []

    def approve():
        barrier.wait()
        outcomes.append(orchestrator.execute_workflow("session-1", SessionStatus.AWAITING_APPROVAL, {"approved": True}))

    threads = [threading.Thread(target=approve) for _ in range(callers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(10)
    assert orchestrator.wait_for_pending(10)

    assert outcomes.count(True) == 1
    assert persistence.get_session("session-1").status == SessionStatus.COMPLETED
    assert len(persistence.list_batches("session-1")) == 1
    assert len(persistence.records["product"]) == 20
    assert sink.types().count("completed") == 1
    assert "error" not in sink.types()


def test_finished_session_state_is_released(orchestrator, persistence, make_session, product_rows):
    make_session()
    finish_analysis(orchestrator, "session-1", product_rows(5), PRODUCT_MAPPINGS)
    orchestrator.wait_for_pending(5)
    assert orchestrator.is_tracking("session-1")

    orchestrator.approve("session-1").result(timeout=10)

    assert not orchestrator.is_tracking("session-1")
    assert orchestrator.processor.tracked_sessions() == 0
    # Late triggers for the finished session do not bring state back
    assert orchestrator.execute_workflow("session-1", SessionStatus.PREVIEW_READY) is False
    assert not orchestrator.is_tracking("session-1")


def test_failed_session_keeps_its_fallback(orchestrator, make_session):
    make_session()
    orchestrator.analyze("session-1", RawBuffer.from_text(""))

    assert not orchestrator.is_tracking("session-1")
    status = orchestrator.get_workflow_status("session-1")
    assert status["fallbackAction"] == "manual_upload_review"
    assert status["instruction"] == "Check the file format and upload it again"
