"""
Workflow state machine for import sessions.

Transitions are rows of ``TRANSITIONS``. Each row names the state it leaves,
the state it enters, the trigger, an optional guard, the action that runs once
the new state is stored and the fallback to offer if that action raises.
Triggers are serialized per session; a trigger whose ``from_state`` no longer
matches the stored status is stale and ignored.
"""
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from catalog_import.core.config import Settings, settings as default_settings
from catalog_import.core.exceptions import (
    CatalogImportError,
    ImportProcessingError,
    InvalidSessionStateError,
    NoRecoverableDataError,
    PreviewGenerationError,
    WorkflowError,
)
from catalog_import.db.persistence import ImportPersistence
from catalog_import.domain.imports.batch_processor import BatchProcessor
from catalog_import.domain.imports.models import ImportSession, SessionStatus
from catalog_import.domain.imports.preview import PreviewGenerator, PreviewResult
from catalog_import.domain.mapping.models import (
    FieldMapping,
    MappingStrategy,
    MappingSuggestion,
    aggregate_confidence,
)
from catalog_import.domain.mapping.schema_mapper import FieldMappingEngine
from catalog_import.domain.mapping.target_schema import target_field_names
from catalog_import.domain.parsing.selector import StrategySelector
from catalog_import.domain.parsing.types import ParseResult, RawBuffer
from catalog_import.integrations.events import EventChannel, EventType, WorkflowEvent
from catalog_import.utils.locks import SessionLockManager

logger = logging.getLogger(__name__)


FALLBACK_INSTRUCTIONS = {
    "manual_mapping_required": "Review and adjust field mappings before continuing",
    "manual_preview_required": "Generate the preview manually to continue",
    "enable_manual_controls": "Continue using manual navigation controls",
    "manual_upload_review": "Check the file format and upload it again",
    "retry_failed_records": "Review failed rows, fix the source data and retry failed records",
}

NEXT_ACTIONS = {
    SessionStatus.INITIATED: "upload_file",
    SessionStatus.ANALYZING: "wait_for_analysis",
    SessionStatus.GENERATING_PREVIEW: "wait_for_preview",
    SessionStatus.PREVIEW_READY: "advance_to_approval",
    SessionStatus.AWAITING_APPROVAL: "user_approval_required",
    SessionStatus.EXECUTING: "wait_for_import",
    SessionStatus.COMPLETED: "workflow_complete",
    SessionStatus.COMPLETED_WITH_ERRORS: "retry_failed_records",
    SessionStatus.FAILED: "manual_recovery_required",
    SessionStatus.CANCELLED: "workflow_cancelled",
}


@dataclass(frozen=True)
class Transition:
    from_state: SessionStatus
    to_state: SessionStatus
    trigger: str
    action: str
    guard: Optional[str] = None
    on_guard_failure: Optional[str] = None
    error_context: str = "enable_manual_controls"


TRANSITIONS = (
    Transition(
        SessionStatus.INITIATED,
        SessionStatus.ANALYZING,
        trigger="upload_received",
        action="_on_analysis_started",
        error_context="manual_upload_review",
    ),
    Transition(
        SessionStatus.ANALYZING,
        SessionStatus.MAPPING_COMPLETE,
        trigger="analysis_finished",
        action="_on_analysis_finished",
        error_context="manual_mapping_required",
    ),
    Transition(
        SessionStatus.MAPPING_COMPLETE,
        SessionStatus.GENERATING_PREVIEW,
        trigger="confidence_threshold",
        action="_on_generate_preview",
        guard="_confidence_meets_threshold",
        on_guard_failure="_request_mapping_review",
        error_context="manual_preview_required",
    ),
    Transition(
        SessionStatus.GENERATING_PREVIEW,
        SessionStatus.PREVIEW_READY,
        trigger="preview_generated",
        action="_on_preview_ready",
        error_context="manual_preview_required",
    ),
    Transition(
        SessionStatus.PREVIEW_READY,
        SessionStatus.AWAITING_APPROVAL,
        trigger="preview_delay_elapsed",
        action="_on_approval_required",
    ),
    Transition(
        SessionStatus.AWAITING_APPROVAL,
        SessionStatus.EXECUTING,
        trigger="user_approval",
        action="_on_execute",
        guard="_is_approved",
    ),
)

# Fields callers may set through ``execute_workflow(..., context=...)``
CONTEXT_OVERRIDES = ("approved", "manual_override", "auto_advance")


@dataclass
class WorkflowContext:
    """In-memory working state of one session between transitions."""

    session_id: str
    entity_type: str = "product"
    rows: List[Dict[str, Any]] = field(default_factory=list)
    source_fields: List[str] = field(default_factory=list)
    mappings: List[FieldMapping] = field(default_factory=list)
    unmapped_sources: List[str] = field(default_factory=list)
    missing_required: List[str] = field(default_factory=list)
    parse_result: Optional[ParseResult] = None
    preview: Optional[PreviewResult] = None
    confidence: float = 0.0  # 0-100
    manual_override: bool = False
    approved: bool = False
    auto_advance: bool = True
    fallback_action: Optional[str] = None
    execution: Optional[Future] = None


def _fraction(confidence: float) -> float:
    return round(confidence / 100, 4)


class WorkflowOrchestrator:
    def __init__(
        self,
        persistence: ImportPersistence,
        channel: EventChannel,
        processor: BatchProcessor,
        selector: Optional[StrategySelector] = None,
        mapping_engine: Optional[FieldMappingEngine] = None,
        preview_generator: Optional[PreviewGenerator] = None,
        settings: Optional[Settings] = None,
    ):
        self.persistence = persistence
        self.channel = channel
        self.processor = processor
        self.settings = settings or default_settings
        self.selector = selector or StrategySelector()
        self.mapping_engine = mapping_engine or FieldMappingEngine()
        self.preview_generator = preview_generator or PreviewGenerator(self.settings)

        self._transitions: Dict[SessionStatus, Transition] = {t.from_state: t for t in TRANSITIONS}
        self._locks = SessionLockManager()
        self._contexts: Dict[str, WorkflowContext] = {}
        self._contexts_lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._pending: Set[Future] = set()
        self._pending_lock = threading.Lock()
        self._stop_event = threading.Event()

        self.channel.subscribe(self._release_finished_session)

    # Lifecycle

    def start(self) -> None:
        if self._executor is not None:
            return
        self._stop_event.clear()
        self._executor = ThreadPoolExecutor(
            max_workers=self.settings.max_concurrency,
            thread_name_prefix="workflow",
        )
        logger.info("Workflow orchestrator started")

    def stop(self) -> None:
        """Cancel pending delays and wait for background work to finish."""
        self._stop_event.set()
        executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True)
        logger.info("Workflow orchestrator stopped")

    def wait_for_pending(self, timeout: Optional[float] = None) -> bool:
        """Block until background work (delays, imports) has drained."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._pending_lock:
                pending = set(self._pending)
            if not pending:
                return True
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                return False
            wait(pending, timeout=remaining)

    def _submit(self, fn, *args) -> Future:
        if self._executor is None:
            raise WorkflowError("Workflow orchestrator is not running")
        future = self._executor.submit(fn, *args)
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    def _forget(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    # Context handling

    def _context_for(self, session: ImportSession) -> WorkflowContext:
        with self._contexts_lock:
            ctx = self._contexts.get(session.session_id)
            if ctx is None:
                ctx = WorkflowContext(
                    session_id=session.session_id,
                    entity_type=session.entity_type,
                    mappings=list(session.field_mappings),
                    confidence=session.mapping_confidence,
                )
                self._contexts[session.session_id] = ctx
            return ctx

    def get_context(self, session_id: str) -> Optional[WorkflowContext]:
        with self._contexts_lock:
            return self._contexts.get(session_id)

    def is_tracking(self, session_id: str) -> bool:
        """Whether in-memory workflow state is still held for the session."""
        return self.get_context(session_id) is not None or session_id in self._locks

    def _release_finished_session(self, event: WorkflowEvent) -> None:
        finished = (
            event.type in (EventType.COMPLETED, EventType.CANCELLED)
            or (event.type == EventType.ERROR and event.payload.get("scope") == "session")
            or (event.type == EventType.WORKFLOW_ERROR and not event.payload.get("recoverable", False))
        )
        if not finished:
            return
        with self._contexts_lock:
            self._contexts.pop(event.session_id, None)
        self._locks.discard(event.session_id)
        logger.debug("Released workflow state for session %s", event.session_id)

    def _record_fallback(self, session_id: str, fallback_action: str) -> None:
        session = self.persistence.get_session(session_id)
        if session is None:
            return
        session.fallback_action = fallback_action
        self.persistence.save_session(session)

    # State machine core

    def execute_workflow(
        self,
        session_id: str,
        state: SessionStatus,
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Fire the transition leaving ``state``.

        Returns True when the session moved on. A missing session, a stale
        ``state``, a failing guard or an action error all return False; the
        latter two have already emitted their events.
        """
        state = SessionStatus(state)
        transition = self._transitions.get(state)
        if transition is None:
            logger.debug("No transition leaves %s", state.value)
            return False

        with self._locks.acquire(session_id):
            session = self.persistence.get_session(session_id)
            if session is None:
                logger.warning("Workflow trigger for unknown session %s", session_id)
                self._locks.discard(session_id)
                return False
            if session.status != state:
                logger.info(
                    "Ignoring stale %s trigger for session %s (state is %s)",
                    transition.trigger,
                    session_id,
                    session.status.value,
                )
                if session.is_terminal:
                    self._locks.discard(session_id)
                return False

            ctx = self._context_for(session)
            for key, value in (context or {}).items():
                if key in CONTEXT_OVERRIDES:
                    setattr(ctx, key, value)

            if transition.guard and not getattr(self, transition.guard)(ctx):
                logger.info("Guard %s blocked %s for session %s", transition.guard, transition.trigger, session_id)
                if transition.on_guard_failure:
                    getattr(self, transition.on_guard_failure)(ctx)
                return False

            try:
                if not self.persistence.update_session_status(session_id, transition.to_state):
                    return False
                logger.info(
                    "Session %s: %s -> %s (%s)",
                    session_id,
                    transition.from_state.value,
                    transition.to_state.value,
                    transition.trigger,
                )
                getattr(self, transition.action)(ctx)
            except Exception as exc:
                logger.exception("Workflow action %s failed for session %s", transition.action, session_id)
                self.handle_workflow_error(session_id, exc, transition.error_context)
                return False
            return True

    def handle_workflow_error(self, session_id: str, error: Exception, fallback_action: str) -> None:
        """Force the session to ``failed`` and tell observers what to do next."""
        with self._contexts_lock:
            ctx = self._contexts.get(session_id)
        if ctx is not None:
            ctx.auto_advance = False
            ctx.fallback_action = fallback_action

        try:
            self.persistence.update_session_status(session_id, SessionStatus.FAILED, str(error))
            self._record_fallback(session_id, fallback_action)
        except CatalogImportError as status_error:
            logger.error("Could not mark session %s failed: %s", session_id, status_error)

        self.channel.emit(
            session_id,
            EventType.WORKFLOW_ERROR,
            {
                "error": str(error),
                "context": fallback_action,
                "fallbackAction": fallback_action,
                "instruction": FALLBACK_INSTRUCTIONS.get(fallback_action, FALLBACK_INSTRUCTIONS["enable_manual_controls"]),
                "recoverable": False,
            },
            auto_advance=False,
            user_action=True,
        )

    # Guards

    def _confidence_meets_threshold(self, ctx: WorkflowContext) -> bool:
        return ctx.manual_override or _fraction(ctx.confidence) >= self.settings.confidence_threshold

    @staticmethod
    def _is_approved(ctx: WorkflowContext) -> bool:
        return ctx.approved

    # Transition actions

    def _on_analysis_started(self, ctx: WorkflowContext) -> None:
        logger.info("Analysing upload for session %s (%s)", ctx.session_id, ctx.entity_type)

    def _on_analysis_finished(self, ctx: WorkflowContext) -> None:
        ctx.confidence = aggregate_confidence(ctx.mappings)
        parse_result = ctx.parse_result

        session = self.persistence.require_session(ctx.session_id)
        session.field_mappings = list(ctx.mappings)
        session.mapping_confidence = ctx.confidence
        session.total_records = len(ctx.rows)
        if parse_result is not None:
            session.parse_strategy = parse_result.strategy_name
            session.parse_confidence = parse_result.confidence
            session.parse_issues = list(parse_result.metadata.issues)
        self.persistence.save_session(session)

        ready = self._confidence_meets_threshold(ctx)
        self.channel.emit(
            ctx.session_id,
            EventType.ANALYSIS_COMPLETE,
            {
                "suggestedMappings": [mapping.as_event_payload() for mapping in ctx.mappings],
                "confidence": _fraction(ctx.confidence),
                "autoAdvanceReady": ready,
                "parseIssues": list(parse_result.metadata.issues) if parse_result else [],
                "parseConfidence": parse_result.confidence if parse_result else None,
                "strategy": parse_result.strategy_name if parse_result else None,
                "totalRecords": len(ctx.rows),
                "unmappedSources": list(ctx.unmapped_sources),
                "missingRequired": list(ctx.missing_required),
            },
            confidence=_fraction(ctx.confidence),
            auto_advance=ready and ctx.auto_advance,
            expected_next_step=1,
        )
        if ctx.auto_advance:
            self.execute_workflow(ctx.session_id, SessionStatus.MAPPING_COMPLETE)

    def _request_mapping_review(self, ctx: WorkflowContext) -> None:
        ctx.auto_advance = False
        ctx.fallback_action = "manual_mapping_required"
        self.channel.emit(
            ctx.session_id,
            EventType.MAPPING_SUGGESTIONS,
            {
                "message": "Field mapping requires your review",
                "confidence": _fraction(ctx.confidence),
                "suggestedMappings": [mapping.as_event_payload() for mapping in ctx.mappings],
                "unmappedSources": list(ctx.unmapped_sources),
                "missingRequired": list(ctx.missing_required),
                "requiresUserReview": True,
                "fallbackAction": "manual_mapping_required",
                "instruction": FALLBACK_INSTRUCTIONS["manual_mapping_required"],
            },
            confidence=_fraction(ctx.confidence),
            auto_advance=False,
            user_action=True,
        )

    def _on_generate_preview(self, ctx: WorkflowContext) -> None:
        if not ctx.rows:
            raise PreviewGenerationError("Parsed rows are no longer available; upload the file again")

        self.channel.emit(
            ctx.session_id,
            EventType.PREVIEW_GENERATION_STARTED,
            {"rowLimit": self.settings.preview_row_limit, "totalRecords": len(ctx.rows)},
            confidence=_fraction(ctx.confidence),
            auto_advance=True,
        )
        preview = self.preview_generator.generate(ctx.rows, ctx.mappings, ctx.entity_type)
        ctx.preview = preview
        if not preview.success:
            # The session stays in generating_preview so the preview can be retried by hand
            ctx.auto_advance = False
            ctx.fallback_action = "manual_preview_required"
            logger.warning("Preview failed for session %s: %s", ctx.session_id, preview.error)
            self.channel.emit(
                ctx.session_id,
                EventType.WORKFLOW_ERROR,
                {
                    "error": preview.error,
                    "context": "preview_generation",
                    "fallbackAction": "manual_preview_required",
                    "instruction": FALLBACK_INSTRUCTIONS["manual_preview_required"],
                    "recoverable": True,
                    **preview.to_payload(),
                },
                confidence=_fraction(ctx.confidence),
                auto_advance=False,
                user_action=True,
            )
            return

        ctx.fallback_action = None
        self.execute_workflow(ctx.session_id, SessionStatus.GENERATING_PREVIEW)

    def _on_preview_ready(self, ctx: WorkflowContext) -> None:
        self.channel.emit(
            ctx.session_id,
            EventType.PREVIEW_READY,
            ctx.preview.to_payload() if ctx.preview else {},
            confidence=_fraction(ctx.confidence),
            auto_advance=True,
            expected_next_step=2,
        )
        self._submit(self._advance_after_delay, ctx.session_id)

    def _advance_after_delay(self, session_id: str) -> None:
        if self._stop_event.wait(self.settings.preview_delay_seconds):
            return
        self.execute_workflow(session_id, SessionStatus.PREVIEW_READY)

    def _on_approval_required(self, ctx: WorkflowContext) -> None:
        preview = ctx.preview
        self.channel.emit(
            ctx.session_id,
            EventType.APPROVAL_REQUIRED,
            {
                "message": "Review the preview and approve the import",
                "requiresUserAction": True,
                "totalRecords": len(ctx.rows),
                "validPreviewRecords": preview.valid_count if preview else 0,
                "invalidPreviewRecords": preview.invalid_count if preview else 0,
            },
            confidence=_fraction(ctx.confidence),
            auto_advance=False,
            expected_next_step=3,
            user_action=True,
        )

    def _on_execute(self, ctx: WorkflowContext) -> None:
        if not ctx.rows:
            raise WorkflowError("Parsed rows are no longer available; upload the file again")
        ctx.execution = self._submit(
            self._run_import,
            ctx.session_id,
            list(ctx.rows),
            list(ctx.mappings),
            ctx.entity_type,
        )

    def _run_import(self, session_id: str, rows, mappings, entity_type: str) -> None:
        try:
            self.processor.process_bulk_import(session_id, rows, mappings, entity_type)
        except ImportProcessingError as exc:
            # Already reported by the processor
            logger.error("Import for session %s failed: %s", session_id, exc)
        except CatalogImportError as exc:
            self.handle_workflow_error(session_id, exc, "enable_manual_controls")

    # Analysis entry points

    def begin_analysis(self, session_id: str) -> bool:
        return self.execute_workflow(session_id, SessionStatus.INITIATED)

    def analyze(self, session_id: str, buffer: RawBuffer) -> Optional[ParseResult]:
        """
        Parse ``buffer`` and suggest mappings for an ``initiated`` session.
        Returns the winning ParseResult, or None when analysis failed.
        """
        if not self.begin_analysis(session_id):
            session = self.persistence.require_session(session_id)
            raise InvalidSessionStateError(
                f"Session {session_id} is {session.status.value}; analysis needs an initiated session"
            )
        session = self.persistence.require_session(session_id)

        try:
            parse_result = self.selector.select(buffer)
        except NoRecoverableDataError as exc:
            self.fail_analysis(session_id, exc)
            return None

        try:
            source_fields = parse_result.metadata.column_names or (
                list(parse_result.rows[0].keys()) if parse_result.rows else []
            )
            suggestion = self.mapping_engine.suggest(source_fields, parse_result.rows, session.entity_type)
        except Exception as exc:
            logger.exception("Field mapping failed for session %s", session_id)
            self.handle_workflow_error(session_id, exc, "manual_mapping_required")
            return None

        self.complete_analysis(session_id, parse_result, suggestion, source_fields)
        return parse_result

    def complete_analysis(
        self,
        session_id: str,
        parse_result: ParseResult,
        suggestion: MappingSuggestion,
        source_fields: Optional[List[str]] = None,
    ) -> bool:
        with self._locks.acquire(session_id):
            session = self.persistence.require_session(session_id)
            ctx = self._context_for(session)
            ctx.parse_result = parse_result
            ctx.rows = list(parse_result.rows)
            ctx.source_fields = list(source_fields or parse_result.metadata.column_names)
            ctx.mappings = list(suggestion.mappings)
            ctx.unmapped_sources = list(suggestion.unmapped_sources)
            ctx.missing_required = list(suggestion.missing_required)
            return self.execute_workflow(session_id, SessionStatus.ANALYZING)

    def fail_analysis(self, session_id: str, error: NoRecoverableDataError) -> None:
        """Format recovery failed: the session cannot continue with this file."""
        with self._locks.acquire(session_id):
            session = self.persistence.require_session(session_id)
            ctx = self._context_for(session)
            ctx.auto_advance = False
            ctx.fallback_action = "manual_upload_review"
            logger.error("Analysis failed for session %s: %s", session_id, error)
            self.persistence.update_session_status(session_id, SessionStatus.FAILED, str(error))
            self._record_fallback(session_id, "manual_upload_review")
            self.channel.emit(
                session_id,
                EventType.ERROR,
                {
                    "error": str(error),
                    "code": error.code,
                    "scope": "session",
                    "context": "analysis",
                    "attempts": [attempt.summary() for attempt in error.attempts],
                    "fallbackAction": "manual_upload_review",
                    "instruction": FALLBACK_INSTRUCTIONS["manual_upload_review"],
                    "recoverable": False,
                },
                auto_advance=False,
                user_action=True,
            )

    # Manual controls

    def submit_manual_mappings(self, session_id: str, mappings: Dict[str, str]) -> bool:
        """
        Replace the session's mappings with ``{source_field: target_field}``
        chosen by a reviewer and continue the workflow from mapping review.
        Earlier mappings are kept as superseded, never deleted.
        """
        with self._locks.acquire(session_id):
            session = self.persistence.require_session(session_id)
            if session.status != SessionStatus.MAPPING_COMPLETE:
                raise InvalidSessionStateError(
                    f"Mappings can only be changed during mapping review (session is {session.status.value})"
                )
            known = set(target_field_names(session.entity_type))
            unknown = sorted(target for target in mappings.values() if target not in known)
            if unknown:
                raise WorkflowError(f"Unknown {session.entity_type} field(s): {', '.join(unknown)}")
            targets = list(mappings.values())
            duplicated = sorted({target for target in targets if targets.count(target) > 1})
            if duplicated:
                raise WorkflowError(f"Each field can only be mapped once: {', '.join(duplicated)}")

            manual = [
                FieldMapping(
                    source_field=source,
                    target_field=target,
                    confidence=100,
                    strategy=MappingStrategy.MANUAL,
                )
                for source, target in mappings.items()
            ]
            session.superseded_mappings = list(session.superseded_mappings) + list(session.field_mappings)
            session.field_mappings = manual
            session.mapping_confidence = aggregate_confidence(manual)
            self.persistence.save_session(session)
            self.mapping_engine.learn(session.entity_type, manual)

            ctx = self._context_for(session)
            ctx.mappings = manual
            ctx.confidence = session.mapping_confidence
            ctx.unmapped_sources = [source for source in ctx.source_fields if source not in mappings]
            ctx.missing_required = []
            ctx.manual_override = True
            ctx.auto_advance = True
            ctx.fallback_action = None
            logger.info("Session %s: %d manual mappings submitted", session_id, len(manual))
            return self.execute_workflow(session_id, SessionStatus.MAPPING_COMPLETE)

    def generate_preview(self, session_id: str) -> Optional[PreviewResult]:
        """Manual preview trigger, for sessions held at mapping review or after a failed preview."""
        with self._locks.acquire(session_id):
            session = self.persistence.require_session(session_id)
            if session.status not in (SessionStatus.MAPPING_COMPLETE, SessionStatus.GENERATING_PREVIEW):
                raise InvalidSessionStateError(
                    f"Preview cannot be generated while session is {session.status.value}"
                )
            ctx = self._context_for(session)
            ctx.auto_advance = True
            if session.status == SessionStatus.MAPPING_COMPLETE:
                ctx.manual_override = True
                self.execute_workflow(session_id, SessionStatus.MAPPING_COMPLETE)
            else:
                try:
                    self._on_generate_preview(ctx)
                except Exception as exc:
                    logger.exception("Manual preview failed for session %s", session_id)
                    self.handle_workflow_error(session_id, exc, "manual_preview_required")
            return ctx.preview

    def approve(self, session_id: str) -> Optional[Future]:
        """Approve the import; returns the future of the background run."""
        with self._locks.acquire(session_id):
            session = self.persistence.require_session(session_id)
            if session.status == SessionStatus.PREVIEW_READY:
                # Approval before the delay elapsed; the delayed trigger becomes stale
                self.execute_workflow(session_id, SessionStatus.PREVIEW_READY)
                session = self.persistence.require_session(session_id)
            if session.status != SessionStatus.AWAITING_APPROVAL:
                raise InvalidSessionStateError(
                    f"Session {session_id} is {session.status.value}, not awaiting approval"
                )
            ctx = self._context_for(session)
            ctx.approved = True
            if not self.execute_workflow(session_id, SessionStatus.AWAITING_APPROVAL):
                return None
            return ctx.execution

    def cancel(self, session_id: str) -> None:
        ctx = self.get_context(session_id)
        if ctx is not None:
            ctx.auto_advance = False

    # Status

    def get_workflow_status(self, session_id: str) -> Dict[str, Any]:
        session = self.persistence.get_session(session_id)
        if session is None:
            return {
                "success": False,
                "state": None,
                "canAutoAdvance": False,
                "confidence": 0.0,
                "nextAction": "session_not_found",
                "error": f"Import session {session_id} not found",
            }

        ctx = self.get_context(session_id)
        auto_enabled = ctx.auto_advance if ctx is not None else False
        manual_override = ctx.manual_override if ctx is not None else False
        meets_threshold = manual_override or _fraction(session.mapping_confidence) >= self.settings.confidence_threshold
        status: Dict[str, Any] = {
            "success": True,
            "state": session.status.value,
            "canAutoAdvance": auto_enabled and meets_threshold and not session.is_terminal,
            "confidence": _fraction(session.mapping_confidence),
        }

        fallback = ctx.fallback_action if ctx is not None else None
        if session.status == SessionStatus.MAPPING_COMPLETE:
            if meets_threshold and auto_enabled:
                status["nextAction"] = "auto_generate_preview"
            else:
                status["nextAction"] = "review_mappings"
                fallback = "manual_mapping_required"
        else:
            status["nextAction"] = NEXT_ACTIONS[session.status]

        if session.status == SessionStatus.COMPLETED_WITH_ERRORS:
            fallback = "retry_failed_records"
        elif session.status == SessionStatus.FAILED:
            fallback = fallback or session.fallback_action or "enable_manual_controls"
            status["error"] = session.error_message

        if fallback:
            status["fallbackAction"] = fallback
            status["instruction"] = FALLBACK_INSTRUCTIONS[fallback]
        return status
