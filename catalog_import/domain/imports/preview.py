import logging
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from catalog_import.core.config import Settings, settings as default_settings
from catalog_import.domain.mapping.models import FieldMapping

from .models import BatchError, entity_payload
from .validators import apply_field_mappings, validate_record

logger = logging.getLogger(__name__)


class PreviewResult(BaseModel):
    success: bool
    records: List[Dict[str, Any]] = Field(default_factory=list)
    errors: List[BatchError] = Field(default_factory=list)
    valid_count: int = 0
    invalid_count: int = 0
    error: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "records": self.records,
            "validCount": self.valid_count,
            "invalidCount": self.invalid_count,
            "errors": [error.model_dump(mode="json") for error in self.errors],
        }


class PreviewGenerator:
    """Maps and validates the head of an upload without persisting anything."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings

    def generate(
        self,
        rows: Sequence[Dict[str, Any]],
        mappings: Sequence[FieldMapping],
        entity_type: str,
    ) -> PreviewResult:
        if not rows:
            return PreviewResult(success=False, error="No rows available for preview")
        if not mappings:
            return PreviewResult(success=False, error="No field mappings to preview")

        head = list(rows[: self.settings.preview_row_limit])
        result = PreviewResult(success=False)
        for index, row in enumerate(head):
            outcome = validate_record(apply_field_mappings(row, mappings), entity_type, index)
            result.errors.extend(outcome.errors)
            if outcome.is_valid:
                result.valid_count += 1
                result.records.append(entity_payload(outcome.record))
            else:
                result.invalid_count += 1

        if result.valid_count == 0:
            result.error = f"None of the first {len(head)} rows produced a valid {entity_type}"
            logger.info("Preview failed: %s", result.error)
            return result

        result.success = True
        logger.info(
            "Preview generated for %s: %d valid, %d invalid",
            entity_type,
            result.valid_count,
            result.invalid_count,
        )
        return result
