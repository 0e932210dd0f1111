from enum import Enum
from typing import List

from pydantic import BaseModel, Field, field_validator


class MappingStrategy(str, Enum):
    EXACT = "exact"
    FUZZY = "fuzzy"
    LLM = "llm"
    HISTORICAL = "historical"
    STATISTICAL = "statistical"
    MANUAL = "manual"


# Lower number wins when two candidates tie on confidence
STRATEGY_PRIORITY = {
    MappingStrategy.MANUAL: 0,
    MappingStrategy.EXACT: 1,
    MappingStrategy.FUZZY: 2,
    MappingStrategy.HISTORICAL: 3,
    MappingStrategy.STATISTICAL: 4,
    MappingStrategy.LLM: 5,
}


class FieldMapping(BaseModel):
    source_field: str
    target_field: str
    confidence: float
    strategy: MappingStrategy

    @field_validator("confidence")
    @classmethod
    def _clamp_confidence(cls, value: float) -> float:
        return round(max(0.0, min(100.0, float(value))), 2)

    def as_event_payload(self) -> dict:
        return {
            "sourceField": self.source_field,
            "targetField": self.target_field,
            "confidence": self.confidence,
            "strategy": self.strategy.value,
        }


def aggregate_confidence(mappings: List[FieldMapping]) -> float:
    """
    Session-level mapping confidence on the 0-100 scale: the plain arithmetic
    mean of the mapping confidences, 0 when nothing was mapped.
    """
    if not mappings:
        return 0.0
    return round(sum(mapping.confidence for mapping in mappings) / len(mappings), 2)


class MappingSuggestion(BaseModel):
    """Mappings proposed for one upload together with their aggregate confidence."""

    mappings: List[FieldMapping] = Field(default_factory=list)
    unmapped_sources: List[str] = Field(default_factory=list)
    missing_required: List[str] = Field(default_factory=list)

    @property
    def confidence(self) -> float:
        return aggregate_confidence(self.mappings)
