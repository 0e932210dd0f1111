import logging
import time
from typing import List, Tuple

from ..primitives import (
    build_rows,
    calculate_data_quality,
    confidence_bonus,
    is_empty,
    read_delimited,
    split_header,
)
from ..types import ParseResult, RawBuffer
from .base import ParsingStrategy, StrategyRejected

logger = logging.getLogger(__name__)

ALTERNATIVE_DELIMITERS = (";", "\t", "|", ":", "~", "#")

# Reliability bonus per delimiter; more common delimiters are less likely to be
# a coincidental character inside the data.
DELIMITER_BONUS = {";": 8, "\t": 7, "|": 6, ":": 4, "~": 2, "#": 1}

DELIMITER_LABELS = {"\t": "tab"}


def is_consistent(records: List[List[str]]) -> bool:
    """At least 80% of rows within ``max(1, round(mean * 0.1))`` fields of the mean."""
    if len(records) < 2:
        return True
    widths = [len(record) for record in records]
    average = sum(widths) / len(widths)
    allowance = max(1, round(average * 0.1))
    within = sum(1 for width in widths if abs(width - average) <= allowance)
    return within / len(widths) >= 0.8


class AlternativeDelimiterStrategy(ParsingStrategy):
    """Delimited text that uses something other than a comma."""

    name = "alternative_delimiter"
    priority = 90
    min_confidence = 65.0
    max_confidence = 90.0

    def can_handle(self, buffer: RawBuffer) -> bool:
        sample = self.sample_text(buffer)
        return any(delimiter in sample for delimiter in ALTERNATIVE_DELIMITERS)

    def _attempt(self, text: str, delimiter: str):
        records = read_delimited(text, delimiter)
        if not records:
            return None
        average_width = sum(len(record) for record in records) / len(records)
        if average_width <= 1:
            return None
        if not is_consistent(records):
            logger.debug("Delimiter %r rejected: inconsistent row widths", delimiter)
            return None

        column_names, data_records, header_found, from_labels = split_header(records)
        if not data_records:
            return None
        rows = build_rows(data_records, column_names)
        return {
            "delimiter": delimiter,
            "records": data_records,
            "rows": rows,
            "column_names": column_names,
            "has_headers": header_found,
            "from_labels": from_labels,
            "quality": calculate_data_quality(rows),
        }

    def parse(self, buffer: RawBuffer, started: float) -> ParseResult:
        text, encoding = self.decode(buffer)

        candidates = []
        for delimiter in ALTERNATIVE_DELIMITERS:
            if delimiter not in text:
                continue
            attempt = self._attempt(text, delimiter)
            if attempt:
                candidates.append(attempt)

        if not candidates:
            raise StrategyRejected("No alternative delimiter produced consistent rows")

        # sorted() is stable, so ties keep the delimiter preference order
        best = sorted(candidates, key=lambda item: item["quality"], reverse=True)[0]
        delimiter = best["delimiter"]
        rows = best["rows"]

        confidence = (
            80
            + DELIMITER_BONUS.get(delimiter, 0)
            + (best["quality"] - 50) * 0.15
            + confidence_bonus(rows)
        )
        elapsed = time.perf_counter() - started
        if elapsed > 5:
            confidence -= 7
        elif elapsed > 1:
            confidence -= 3

        issues = self._issues(best["records"], rows, delimiter)
        if best["from_labels"]:
            issues.append("Header row inferred from column labels")

        label = DELIMITER_LABELS.get(delimiter, delimiter)
        logger.debug("Alternative delimiter %r selected from %d candidates", label, len(candidates))

        return self.success(
            rows,
            confidence,
            started,
            delimiter=delimiter,
            has_headers=best["has_headers"],
            encoding=encoding,
            quality_score=best["quality"],
            issues=issues,
            column_names=best["column_names"],
        )

    @staticmethod
    def _issues(records: List[List[str]], rows, delimiter: str) -> List[str]:
        issues = []
        cells = [cell for record in records for cell in record]
        if delimiter == ";" and any("," in cell for cell in cells):
            issues.append("Contains commas in data - verify semicolon is correct delimiter")
        if delimiter == "\t" and any("  " in cell for cell in cells):
            issues.append("Contains multiple spaces - verify tab delimiter is correct")

        widths = {len(record) for record in records}
        if len(widths) > 3:
            issues.append(f"Highly variable column count ({len(widths)} different row lengths)")

        if rows:
            empty_shares: List[Tuple[int, int]] = [
                (sum(1 for value in row.values() if is_empty(value)), len(row)) for row in rows
            ]
            average_empty = sum(empty / total for empty, total in empty_shares if total) / len(rows)
            if average_empty > 0.3:
                issues.append(f"High percentage of empty fields: {round(average_empty * 100)}%")
        return issues
