"""
Value objects exchanged between the parsing strategies and the selector.
"""
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

CellValue = Union[str, int, float, bool, None]
Row = Dict[str, CellValue]


class RawBuffer(BaseModel):
    """Uploaded file bytes plus what the client declared about them."""

    model_config = ConfigDict(frozen=True)

    data: bytes
    filename: Optional[str] = None
    mime_type: Optional[str] = None

    @classmethod
    def from_path(cls, path: Union[str, Path], mime_type: Optional[str] = None) -> "RawBuffer":
        path = Path(path)
        return cls(data=path.read_bytes(), filename=path.name, mime_type=mime_type)

    @classmethod
    def from_text(cls, text: str, filename: Optional[str] = None) -> "RawBuffer":
        return cls(data=text.encode("utf-8"), filename=filename, mime_type="text/csv")

    @property
    def extension(self) -> Optional[str]:
        if not self.filename or "." not in self.filename:
            return None
        return self.filename.rsplit(".", 1)[1].lower()

    def __len__(self) -> int:
        return len(self.data)


class QualityMetrics(BaseModel):
    """Per-factor scores, each 0-100."""

    structural_consistency: float = 0.0
    data_completeness: float = 0.0
    type_consistency: float = 0.0
    delimiter_reliability: float = 0.0
    header_quality: float = 0.0
    data_variety: float = 0.0
    parse_efficiency: float = 0.0
    error_rate: float = 0.0


class ConfidenceBreakdown(BaseModel):
    score: int = 0
    metrics: QualityMetrics = Field(default_factory=QualityMetrics)
    factors: List[str] = Field(default_factory=list)
    issues: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)


class ParseMetadata(BaseModel):
    delimiter: str = ","
    has_headers: bool = False
    encoding: str = "utf-8"
    parse_time_ms: float = 0.0
    quality_score: float = 0.0
    issues: List[str] = Field(default_factory=list)
    column_names: List[str] = Field(default_factory=list)
    confidence_breakdown: Optional[ConfidenceBreakdown] = None


class ParseResult(BaseModel):
    success: bool
    rows: List[Dict[str, Any]] = Field(default_factory=list)
    confidence: float = 0.0
    strategy_name: str
    metadata: ParseMetadata = Field(default_factory=ParseMetadata)
    error: Optional[str] = None

    @field_validator("confidence")
    @classmethod
    def _clamp_confidence(cls, value: float) -> float:
        return round(max(0.0, min(100.0, float(value))), 2)

    @property
    def row_count(self) -> int:
        return len(self.rows)

    def summary(self) -> Dict[str, Any]:
        """Compact description used in logs and events (rows omitted)."""
        return {
            "strategy": self.strategy_name,
            "success": self.success,
            "confidence": self.confidence,
            "rows": self.row_count,
            "delimiter": self.metadata.delimiter,
            "hasHeaders": self.metadata.has_headers,
            "encoding": self.metadata.encoding,
            "qualityScore": self.metadata.quality_score,
            "issues": list(self.metadata.issues),
            "error": self.error,
            "confidenceBreakdown": (
                self.metadata.confidence_breakdown.model_dump() if self.metadata.confidence_breakdown else None
            ),
        }
