"""
In-memory learning cache of previously approved column mappings.
"""
import logging
import threading
from collections import defaultdict
from typing import Dict, List, Tuple

from .models import FieldMapping
from .normalize import calculate_similarity, normalize_column_name

logger = logging.getLogger(__name__)


class MappingHistory:
    """Remembers which target field each source column was mapped to, per entity type."""

    def __init__(self):
        self._lock = threading.Lock()
        # (entity_type, normalized source) -> {target_field: times used}
        self._entries: Dict[Tuple[str, str], Dict[str, int]] = defaultdict(dict)

    def record(self, entity_type: str, mappings: List[FieldMapping], min_confidence: float = 70) -> int:
        learned = 0
        with self._lock:
            for mapping in mappings:
                if mapping.confidence < min_confidence:
                    continue
                key = (str(entity_type), normalize_column_name(mapping.source_field))
                targets = self._entries[key]
                targets[mapping.target_field] = targets.get(mapping.target_field, 0) + 1
                learned += 1
        if learned:
            logger.debug("Learned %d mappings for %s imports", learned, entity_type)
        return learned

    def lookup(self, entity_type: str, source_field: str, min_similarity: float = 0.6) -> List[Tuple[str, float]]:
        """
        Return ``(target_field, similarity)`` pairs learned from similar source
        names, most similar (then most used) first.
        """
        normalized = normalize_column_name(source_field)
        matches: Dict[str, Tuple[float, int]] = {}
        with self._lock:
            for (known_entity, known_source), targets in self._entries.items():
                if known_entity != str(entity_type):
                    continue
                similarity = calculate_similarity(normalized, known_source)
                if similarity <= min_similarity:
                    continue
                for target, uses in targets.items():
                    current = matches.get(target)
                    if current is None or (similarity, uses) > current:
                        matches[target] = (similarity, uses)
        ranked = sorted(matches.items(), key=lambda item: item[1], reverse=True)
        return [(target, similarity) for target, (similarity, _) in ranked]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
