"""Exception hierarchy for the import pipeline."""
from typing import Optional


class CatalogImportError(Exception):
    """Base class; ``code`` is a stable machine-readable condition name."""

    code = "catalog_import_error"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class NoRecoverableDataError(CatalogImportError):
    """Raised when no parsing strategy produced usable rows."""

    code = "no-recoverable-data"

    def __init__(self, message: str = "No parsing strategy could recover data", attempts=None):
        super().__init__(message)
        self.attempts = list(attempts or [])


class ImportProcessingError(CatalogImportError):
    code = "import_processing_failed"


class RetryBudgetExhaustedError(ImportProcessingError):
    code = "retry_budget_exhausted"


class InvalidSessionStateError(CatalogImportError):
    code = "invalid_session_state"


class PreviewGenerationError(CatalogImportError):
    code = "preview_generation_failed"


class WorkflowError(CatalogImportError):
    code = "workflow_error"
