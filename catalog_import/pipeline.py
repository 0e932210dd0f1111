"""
Session control surface of the import pipeline.

``ImportPipeline`` wires the event channel, batch processor, workflow
orchestrator, strategy selector and mapping engine together and exposes the
operations upstream callers use to drive an import session.
"""
import logging
import uuid
from concurrent.futures import Future
from typing import Any, Dict, List, Optional, Sequence

from catalog_import.core.config import Settings, settings as default_settings
from catalog_import.db.persistence import ImportPersistence, InMemoryPersistence
from catalog_import.domain.imports.batch_processor import BatchProcessor
from catalog_import.domain.imports.models import ImportSession, SessionStatus
from catalog_import.domain.imports.preview import PreviewGenerator, PreviewResult
from catalog_import.domain.mapping.history import MappingHistory
from catalog_import.domain.mapping.llm import LLMFieldSuggester
from catalog_import.domain.mapping.models import FieldMapping
from catalog_import.domain.mapping.schema_mapper import FieldMappingEngine
from catalog_import.domain.mapping.target_schema import EntityType
from catalog_import.domain.parsing.selector import StrategySelector
from catalog_import.domain.parsing.types import ParseResult, RawBuffer
from catalog_import.domain.workflows.orchestrator import WorkflowOrchestrator
from catalog_import.integrations.events import EventChannel, EventSink, LoggingEventSink

logger = logging.getLogger(__name__)


class ImportPipeline:
    def __init__(
        self,
        persistence: Optional[ImportPersistence] = None,
        settings: Optional[Settings] = None,
        sinks: Optional[List[EventSink]] = None,
        llm_suggester: Optional[LLMFieldSuggester] = None,
        mapping_history: Optional[MappingHistory] = None,
    ):
        self.settings = settings or default_settings
        self.persistence = persistence or InMemoryPersistence()
        self.channel = EventChannel(sinks if sinks is not None else [LoggingEventSink()])
        self.selector = StrategySelector(min_confidence=self.settings.min_parse_confidence)
        self.mapping_engine = FieldMappingEngine(
            history=mapping_history,
            llm_suggester=llm_suggester if llm_suggester is not None else LLMFieldSuggester.from_settings(),
            min_confidence=self.settings.mapping_min_confidence,
            learn_confidence=self.settings.mapping_learn_confidence,
        )
        self.processor = BatchProcessor(self.persistence, self.channel, self.settings)
        self.orchestrator = WorkflowOrchestrator(
            self.persistence,
            self.channel,
            self.processor,
            selector=self.selector,
            mapping_engine=self.mapping_engine,
            preview_generator=PreviewGenerator(self.settings),
            settings=self.settings,
        )

    # Lifecycle

    def start(self) -> None:
        self.channel.start()
        self.processor.start()
        self.orchestrator.start()
        logger.info("Import pipeline started")

    def stop(self) -> None:
        self.orchestrator.stop()
        self.processor.stop()
        self.channel.stop()
        logger.info("Import pipeline stopped")

    def __enter__(self) -> "ImportPipeline":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    # Analysis

    def create_session(
        self,
        entity_type: str = "product",
        session_id: Optional[str] = None,
        filename: Optional[str] = None,
    ) -> ImportSession:
        session = ImportSession(
            session_id=session_id or str(uuid.uuid4()),
            entity_type=EntityType(entity_type).value,
            filename=filename,
        )
        return self.persistence.create_session(session)

    def analyze_upload(
        self,
        buffer: RawBuffer,
        entity_type: str = "product",
        session_id: Optional[str] = None,
    ) -> ImportSession:
        """
        Start a session for an uploaded file and run analysis. The workflow
        continues on its own when the mapping confidence allows it.
        """
        session = self.create_session(entity_type, session_id, buffer.filename)
        logger.info(
            "Analysing %s (%d bytes) as %s import, session %s",
            buffer.filename or "upload",
            len(buffer),
            session.entity_type,
            session.session_id,
        )
        self.orchestrator.analyze(session.session_id, buffer)
        return self.persistence.require_session(session.session_id)

    def get_parse_result(self, session_id: str) -> Optional[ParseResult]:
        ctx = self.orchestrator.get_context(session_id)
        return ctx.parse_result if ctx is not None else None

    # Processing

    def process_bulk_import(
        self,
        session_id: str,
        rows: Sequence[Dict[str, Any]],
        mappings: Sequence[FieldMapping],
        entity_type: Optional[str] = None,
    ) -> None:
        self.processor.process_bulk_import(session_id, rows, mappings, entity_type)

    def retry_failed_records(self, session_id: str) -> int:
        return self.processor.retry_failed_records(session_id)

    def cancel_processing(self, session_id: str) -> bool:
        self.orchestrator.cancel(session_id)
        return self.processor.cancel_processing(session_id)

    def get_processing_status(self, session_id: str) -> Optional[Dict[str, Any]]:
        return self.processor.get_processing_status(session_id)

    # Workflow

    def execute_workflow(
        self,
        session_id: str,
        state: SessionStatus,
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        return self.orchestrator.execute_workflow(session_id, state, context)

    def get_workflow_status(self, session_id: str) -> Dict[str, Any]:
        return self.orchestrator.get_workflow_status(session_id)

    def submit_manual_mappings(self, session_id: str, mappings: Dict[str, str]) -> bool:
        return self.orchestrator.submit_manual_mappings(session_id, mappings)

    def generate_preview(self, session_id: str) -> Optional[PreviewResult]:
        return self.orchestrator.generate_preview(session_id)

    def approve(self, session_id: str) -> Optional[Future]:
        return self.orchestrator.approve(session_id)

    def wait_for_pending(self, timeout: Optional[float] = None) -> bool:
        """Wait for background workflow work, then for queued events."""
        done = self.orchestrator.wait_for_pending(timeout)
        self.channel.flush()
        return done
