import logging
import time

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


class StandardCSVStrategy(ParsingStrategy):
    """Well-formed comma separated text with RFC 4180 quoting."""

    name = "standard_csv"
    priority = 100
    min_confidence = 70.0
    max_confidence = 95.0

    def can_handle(self, buffer: RawBuffer) -> bool:
        sample = self.sample_text(buffer)
        commas = sample.count(",")
        if not commas:
            return False
        return commas >= sample.count(";") and commas >= sample.count("\t")

    def parse(self, buffer: RawBuffer, started: float) -> ParseResult:
        text, encoding = self.decode(buffer)
        records = read_delimited(text, ",", strict=True)
        if not records:
            raise StrategyRejected("No rows found")

        column_names, data_records, header_found, from_labels = split_header(records)
        if not data_records:
            raise StrategyRejected("Header row without data rows")

        rows = build_rows(data_records, column_names)
        quality = calculate_data_quality(rows)
        bonus = confidence_bonus(rows)

        confidence = 85 + (quality - 50) * 0.2 + bonus
        elapsed = time.perf_counter() - started
        if elapsed > 5:
            confidence -= 10
        elif elapsed > 1:
            confidence -= 5

        issues = []
        widths = [len(record) for record in data_records]
        if max(widths) - min(widths) > 1:
            issues.append("Inconsistent column count across rows")
        if '"' in text:
            issues.append("Contains quoted fields - verify embedded delimiters were handled")
        total_cells = sum(len(row) for row in rows)
        empty_cells = sum(1 for row in rows for value in row.values() if is_empty(value))
        if total_cells and empty_cells / total_cells > 0.25:
            issues.append(f"High percentage of empty cells: {round(empty_cells / total_cells * 100)}%")
        if from_labels:
            issues.append("Header row inferred from column labels")

        return self.success(
            rows,
            confidence,
            started,
            delimiter=",",
            has_headers=header_found,
            encoding=encoding,
            quality_score=quality,
            issues=issues,
            column_names=column_names,
        )
