"""
Pytest configuration and fixtures for the catalog import tests.

Everything runs against in-memory collaborators: settings are built per test,
persistence is the dictionary-backed store (or SQLite in memory where the SQL
layer itself is under test) and events are captured by a recording sink.
"""
import threading
from typing import Any, Dict, List

import pytest

from catalog_import.core.config import Settings
from catalog_import.db.persistence import InMemoryPersistence
from catalog_import.domain.imports.models import ImportSession
from catalog_import.integrations.events import EventChannel
from catalog_import.pipeline import ImportPipeline


class RecordingSink:
    """Collects every delivered event as its wire dict."""

    def __init__(self):
        self._lock = threading.Lock()
        self.events: List[Dict[str, Any]] = []

    def emit(self, session_id: str, event: Dict[str, Any]) -> None:
        with self._lock:
            self.events.append({"session_id": session_id, **event})

    def of_type(self, event_type: str, session_id: str = None) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                event
                for event in self.events
                if event["type"] == event_type and (session_id is None or event["session_id"] == session_id)
            ]

    def types(self, session_id: str = None) -> List[str]:
        with self._lock:
            return [event["type"] for event in self.events if session_id is None or event["session_id"] == session_id]


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        batch_size=100,
        max_concurrency=5,
        retry_attempts=3,
        timeout_ms=60000,
        confidence_threshold=0.70,
        preview_delay_seconds=0,
        llm_mapping_enabled=False,
        anthropic_api_key="",
    )


@pytest.fixture
def persistence():
    return InMemoryPersistence()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def channel(sink):
    # Not started: events are delivered inline, in order
    return EventChannel([sink])


@pytest.fixture
def make_session(persistence):
    def _make(session_id: str = "session-1", entity_type: str = "product", **fields) -> ImportSession:
        return persistence.create_session(ImportSession(session_id=session_id, entity_type=entity_type, **fields))

    return _make


@pytest.fixture
def pipeline(settings, persistence, sink):
    pipeline = ImportPipeline(persistence=persistence, settings=settings, sinks=[sink])
    pipeline.start()
    yield pipeline
    pipeline.stop()


@pytest.fixture
def product_rows():
    def _rows(count: int, start: int = 0) -> List[Dict[str, Any]]:
        return [
            {
                "Product Name": f"Widget {index}",
                "SKU": f"W-{index:05d}",
                "Price": 10 + index % 7,
                "Qty": index % 13,
            }
            for index in range(start, start + count)
        ]

    return _rows
