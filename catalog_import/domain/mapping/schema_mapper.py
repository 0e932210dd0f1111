"""
Field mapping for catalog imports.

Maps source columns from a parsed upload onto the target schema of an entity
type. Each mapping carries a 0-100 confidence and the strategy that produced
it. Strategies, strongest first:

1. exact: normalized column name equals the target field name
2. fuzzy: known synonym, or string similarity above 0.7
3. historical: a similar column was mapped before and the mapping was kept
4. statistical: the column's values look like what the target field holds
5. llm: optional model suggestion for columns nothing else could place
"""
import logging
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd

from catalog_import.core.config import settings

from .history import MappingHistory
from .llm import LLMFieldSuggester
from .models import STRATEGY_PRIORITY, FieldMapping, MappingStrategy, MappingSuggestion
from .normalize import calculate_similarity, normalize_column_name
from .target_schema import TargetField, get_target_fields

logger = logging.getLogger(__name__)

EXACT_CONFIDENCE = 95
SYNONYM_CONFIDENCE = 80
FUZZY_THRESHOLD = 0.7
FUZZY_SCALE = 85
HISTORICAL_THRESHOLD = 0.6
HISTORICAL_SCALE = 65
STATISTICAL_UNIQUE_CONFIDENCE = 65
STATISTICAL_SHARED_CONFIDENCE = 60

STATUS_VALUES = {"draft", "review", "live", "archived", "active", "inactive", "published"}
BOOLEAN_STRINGS = {"true", "false", "yes", "no", "y", "n"}
GTIN_LENGTHS = {8, 12, 13, 14}


def profile_values(values: Sequence[Any]) -> str:
    """
    Classify sample values into the ``value_kind`` vocabulary used by the
    target schema. Returns ``"text"`` when nothing more specific fits.
    """
    series = pd.Series([value for value in values if value is not None and value != ""], dtype="object")
    if series.empty:
        return "text"

    if series.map(lambda value: isinstance(value, bool)).all():
        return "boolean"
    text = series.astype(str).str.strip()
    lowered = text.str.lower()
    if lowered.isin(BOOLEAN_STRINGS).all():
        return "boolean"
    if lowered.isin(STATUS_VALUES).all():
        return "status"
    if text.str.fullmatch(r"\d+").all() and text.str.len().isin(GTIN_LENGTHS).all():
        return "gtin"
    if lowered.str.match(r"https?://").all():
        return "url"
    if text.str.fullmatch(r"[a-z0-9]+(?:-[a-z0-9]+)+").all():
        return "slug"

    numbers = pd.to_numeric(text, errors="coerce")
    if numbers.notna().all():
        if text.str.contains(".", regex=False).any():
            return "money"
        return "integer"

    identifier = text.str.fullmatch(r"[A-Za-z0-9][A-Za-z0-9\-_./]*")
    has_digit = text.str.contains(r"\d")
    has_alpha = text.str.contains(r"[A-Za-z]")
    if (identifier & has_digit & has_alpha).all() and text.is_unique:
        return "identifier"
    return "text"


def _better(candidate: FieldMapping, current: Optional[FieldMapping]) -> bool:
    if current is None:
        return True
    if candidate.confidence != current.confidence:
        return candidate.confidence > current.confidence
    return STRATEGY_PRIORITY[candidate.strategy] < STRATEGY_PRIORITY[current.strategy]


class FieldMappingEngine:
    """Suggests FieldMappings for an upload and learns from approved ones."""

    def __init__(
        self,
        history: Optional[MappingHistory] = None,
        llm_suggester: Optional[LLMFieldSuggester] = None,
        min_confidence: Optional[float] = None,
        learn_confidence: Optional[float] = None,
    ):
        self.history = history if history is not None else MappingHistory()
        self.llm_suggester = llm_suggester
        self.min_confidence = settings.mapping_min_confidence if min_confidence is None else min_confidence
        self.learn_confidence = (
            settings.mapping_learn_confidence if learn_confidence is None else learn_confidence
        )

    # Individual strategies

    @staticmethod
    def exact_match(source: str, targets: Sequence[TargetField]) -> Optional[FieldMapping]:
        normalized = normalize_column_name(source)
        for target in targets:
            if normalized == normalize_column_name(target.name):
                return FieldMapping(
                    source_field=source,
                    target_field=target.name,
                    confidence=EXACT_CONFIDENCE,
                    strategy=MappingStrategy.EXACT,
                )
        return None

    @staticmethod
    def fuzzy_match(source: str, targets: Sequence[TargetField]) -> Optional[FieldMapping]:
        normalized = normalize_column_name(source)
        best: Optional[FieldMapping] = None
        for target in targets:
            synonyms = [normalize_column_name(synonym) for synonym in target.synonyms]
            if normalized in synonyms:
                candidate = FieldMapping(
                    source_field=source,
                    target_field=target.name,
                    confidence=SYNONYM_CONFIDENCE,
                    strategy=MappingStrategy.FUZZY,
                )
            else:
                similarity = max(
                    calculate_similarity(normalized, name)
                    for name in [normalize_column_name(target.name)] + synonyms
                )
                if similarity <= FUZZY_THRESHOLD:
                    continue
                candidate = FieldMapping(
                    source_field=source,
                    target_field=target.name,
                    confidence=round(similarity * FUZZY_SCALE),
                    strategy=MappingStrategy.FUZZY,
                )
            if _better(candidate, best):
                best = candidate
        return best

    def historical_match(self, source: str, entity_type: str, targets: Sequence[TargetField]) -> Optional[FieldMapping]:
        valid = {target.name for target in targets}
        for target, similarity in self.history.lookup(entity_type, source, HISTORICAL_THRESHOLD):
            if target in valid:
                return FieldMapping(
                    source_field=source,
                    target_field=target,
                    confidence=round(similarity * HISTORICAL_SCALE),
                    strategy=MappingStrategy.HISTORICAL,
                )
        return None

    @staticmethod
    def statistical_match(source: str, values: Sequence[Any], targets: Sequence[TargetField]) -> Optional[FieldMapping]:
        kind = profile_values(values)
        if kind == "text":
            return None
        matching = [target for target in targets if target.value_kind == kind]
        if not matching:
            return None
        confidence = STATISTICAL_UNIQUE_CONFIDENCE if len(matching) == 1 else STATISTICAL_SHARED_CONFIDENCE
        return FieldMapping(
            source_field=source,
            target_field=matching[0].name,
            confidence=confidence,
            strategy=MappingStrategy.STATISTICAL,
        )

    # Aggregation

    def suggest(
        self,
        source_fields: Sequence[str],
        sample_rows: Sequence[Dict[str, Any]],
        entity_type: str,
    ) -> MappingSuggestion:
        targets = get_target_fields(entity_type)
        best_by_source: Dict[str, FieldMapping] = {}

        for source in source_fields:
            values = [row.get(source) for row in sample_rows[:50]]
            candidates = [
                self.exact_match(source, targets),
                self.fuzzy_match(source, targets),
                self.historical_match(source, entity_type, targets),
                self.statistical_match(source, values, targets),
            ]
            for candidate in candidates:
                if candidate is not None and _better(candidate, best_by_source.get(source)):
                    best_by_source[source] = candidate

        unresolved = [
            source
            for source in source_fields
            if source not in best_by_source or best_by_source[source].confidence < self.min_confidence
        ]
        if unresolved and self.llm_suggester is not None:
            for candidate in self.llm_suggester.suggest(entity_type, unresolved, sample_rows, targets):
                if _better(candidate, best_by_source.get(candidate.source_field)):
                    best_by_source[candidate.source_field] = candidate

        # One mapping per target field; the strongest source wins it.
        by_target: Dict[str, FieldMapping] = {}
        for source in source_fields:
            mapping = best_by_source.get(source)
            if mapping is None or mapping.confidence < self.min_confidence:
                continue
            if _better(mapping, by_target.get(mapping.target_field)):
                by_target[mapping.target_field] = mapping

        ordered = [by_target[target.name] for target in targets if target.name in by_target]
        mapped_sources = {mapping.source_field for mapping in ordered}
        suggestion = MappingSuggestion(
            mappings=ordered,
            unmapped_sources=[source for source in source_fields if source not in mapped_sources],
            missing_required=[target.name for target in targets if target.required and target.name not in by_target],
        )
        logger.info(
            "Mapped %d/%d columns for %s import (confidence %.2f)",
            len(ordered),
            len(source_fields),
            entity_type,
            suggestion.confidence,
        )
        return suggestion

    def learn(self, entity_type: str, mappings: List[FieldMapping]) -> int:
        return self.history.record(entity_type, mappings, self.learn_confidence)
