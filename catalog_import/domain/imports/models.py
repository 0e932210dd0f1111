"""
Import session aggregate, batches, history rows and typed entity records.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from catalog_import.domain.mapping.models import FieldMapping


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStatus(str, Enum):
    INITIATED = "initiated"
    ANALYZING = "analyzing"
    MAPPING_COMPLETE = "mapping_complete"
    GENERATING_PREVIEW = "generating_preview"
    PREVIEW_READY = "preview_ready"
    AWAITING_APPROVAL = "awaiting_approval"
    EXECUTING = "executing"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        SessionStatus.COMPLETED,
        SessionStatus.COMPLETED_WITH_ERRORS,
        SessionStatus.FAILED,
        SessionStatus.CANCELLED,
    }
)

# The only ways out of a terminal state: a retry that clears every failure,
# or a retry budget running out.
_TERMINAL_EXITS = {
    (SessionStatus.COMPLETED_WITH_ERRORS, SessionStatus.COMPLETED),
    (SessionStatus.COMPLETED_WITH_ERRORS, SessionStatus.FAILED),
}


def can_transition(current: SessionStatus, new: SessionStatus) -> bool:
    current, new = SessionStatus(current), SessionStatus(new)
    if current == new:
        return True
    if not current.is_terminal:
        return True
    return (current, new) in _TERMINAL_EXITS


class BatchStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class HistoryStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


class BatchError(BaseModel):
    record_index: int
    error: str
    severity: Severity = Severity.ERROR
    auto_fixable: bool = False
    suggestion: Optional[str] = None


class ImportSession(BaseModel):
    session_id: str
    entity_type: str = "product"
    status: SessionStatus = SessionStatus.INITIATED
    total_records: int = 0
    processed_records: int = 0
    successful_records: int = 0
    failed_records: int = 0
    field_mappings: List[FieldMapping] = Field(default_factory=list)
    superseded_mappings: List[FieldMapping] = Field(default_factory=list)
    processing_rate: float = 0.0
    estimated_time_remaining: Optional[float] = None
    mapping_confidence: float = 0.0
    parse_strategy: Optional[str] = None
    parse_confidence: Optional[float] = None
    parse_issues: List[str] = Field(default_factory=list)
    retry_count: int = 0
    error_message: Optional[str] = None
    filename: Optional[str] = None
    fallback_action: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def counters(self) -> Dict[str, Any]:
        return {
            "totalRecords": self.total_records,
            "processedRecords": self.processed_records,
            "successfulRecords": self.successful_records,
            "failedRecords": self.failed_records,
            "processingRate": self.processing_rate,
            "estimatedTimeRemaining": self.estimated_time_remaining,
        }


class ImportBatch(BaseModel):
    session_id: str
    batch_number: int
    start_index: int
    end_index: int
    record_count: int
    status: BatchStatus = BatchStatus.PENDING
    success_count: int = 0
    failure_count: int = 0
    processing_time_ms: Optional[float] = None
    error_message: Optional[str] = None


class ImportHistoryRecord(BaseModel):
    session_id: str
    record_index: int
    record_data: Dict[str, Any] = Field(default_factory=dict)
    import_status: HistoryStatus
    entity_id: Optional[str] = None
    validation_errors: List[BatchError] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)


class BatchResult(BaseModel):
    batch_number: int
    success_count: int = 0
    failure_count: int = 0
    processing_time_ms: float = 0.0
    errors: List[BatchError] = Field(default_factory=list)
    discarded: bool = False


# Typed entity records produced by validation


class ProductRecord(BaseModel):
    kind: Literal["product"] = "product"
    name: str
    slug: str
    sku: Optional[str] = None
    gtin: Optional[str] = None
    short_description: Optional[str] = None
    long_description: Optional[str] = None
    story: Optional[str] = None
    price: Optional[int] = None  # cents
    compare_at_price: Optional[int] = None  # cents
    stock: int = 0
    low_stock_threshold: Optional[int] = None
    brand_id: Optional[str] = None
    parent_id: Optional[str] = None
    status: Literal["draft", "review", "live", "archived"] = "draft"
    is_variant: bool = False


class BrandRecord(BaseModel):
    kind: Literal["brand"] = "brand"
    name: str
    slug: str
    description: Optional[str] = None
    story: Optional[str] = None
    website: Optional[str] = None
    logo_url: Optional[str] = None


class AttributeRecord(BaseModel):
    kind: Literal["attribute"] = "attribute"
    product_id: str
    attribute_name: str
    attribute_value: Optional[str] = None
    unit: Optional[str] = None


EntityRecord = Annotated[
    Union[ProductRecord, BrandRecord, AttributeRecord],
    Field(discriminator="kind"),
]


def entity_payload(record: Union[ProductRecord, BrandRecord, AttributeRecord]) -> Dict[str, Any]:
    """Column values handed to persistence (the discriminator is implied by entity type)."""
    return record.model_dump(exclude={"kind"}, exclude_none=True)
