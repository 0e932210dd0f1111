import logging
import re
import time
from typing import List, Optional

import pandas as pd

from ..primitives import (
    DEFAULT_DELIMITERS,
    build_rows,
    calculate_data_quality,
    confidence_bonus,
    is_empty,
    is_numeric,
    read_delimited,
    to_number,
)
from ..types import ParseResult, RawBuffer
from .base import ParsingStrategy, StrategyRejected

logger = logging.getLogger(__name__)

_SPLIT_RE = re.compile(r"[,;\t|]")
_HIGH_PRECISION_RE = re.compile(r"^\d+\.\d{6,}$")
_SCIENTIFIC_RE = re.compile(r"^[+-]?\d+\.?\d*[eE][+-]?\d+$")
_INTEGER_PATTERN = r"[+-]?\d+"
_DECIMAL_PATTERN = r"[+-]?\d*\.\d+"

TYPE_SAMPLE_SIZE = 20


def classify_column(values: List[str]) -> str:
    """
    Name a headerless column by what its first values look like:
    ``integer``, ``decimal``, ``numeric``, ``date`` or ``value``.
    """
    sample = pd.Series([value for value in values if not is_empty(value)][:TYPE_SAMPLE_SIZE], dtype="object")
    if sample.empty:
        return "column"

    text = sample.astype(str).str.strip()
    integers = text.str.fullmatch(_INTEGER_PATTERN)
    decimals = text.str.fullmatch(_DECIMAL_PATTERN)
    total = len(text)

    if integers.sum() / total > 0.8:
        return "integer"
    if decimals.sum() / total > 0.8:
        return "decimal"
    if (integers | decimals).sum() / total > 0.8:
        return "numeric"

    candidates = text[~(integers | decimals)]
    if not candidates.empty:
        try:
            parsed = pd.to_datetime(candidates, errors="coerce", format="mixed")
        except (ValueError, TypeError):
            parsed = None
        if parsed is not None and parsed.notna().sum() / total > 0.8:
            return "date"
    return "value"


def clean_numeric_value(value: str):
    text = value.strip()
    if not text:
        return None
    if is_numeric(text):
        return to_number(text)
    return text


class NumericHeaderlessStrategy(ParsingStrategy):
    """Mostly-numeric delimited data without a header row."""

    name = "numeric_headerless"
    priority = 70
    min_confidence = 60.0
    max_confidence = 85.0

    def can_handle(self, buffer: RawBuffer) -> bool:
        sample = self.sample_text(buffer)
        lines = [line for line in sample.splitlines() if line.strip()][:5]
        if len(lines) < 2:
            return False
        numeric_lines = 0
        for line in lines:
            fields = [field for field in _SPLIT_RE.split(line) if field.strip()]
            if fields and sum(1 for field in fields if is_numeric(field)) / len(fields) >= 0.6:
                numeric_lines += 1
        return numeric_lines >= min(2, len(lines))

    @staticmethod
    def _best_delimiter(text: str) -> str:
        lines = [line for line in text.splitlines() if line.strip()][:10]
        best, best_score = DEFAULT_DELIMITERS[0], -1
        for delimiter in DEFAULT_DELIMITERS:
            score = 0
            for line in lines:
                fields = line.split(delimiter)
                if len(fields) > 1:
                    score += sum(1 for field in fields if is_numeric(field))
            if score > best_score:
                best, best_score = delimiter, score
        return best

    @staticmethod
    def _validate(records: List[List[str]]) -> Optional[str]:
        if len(records) < 2:
            return "Insufficient data rows"

        first = records[0]
        if sum(1 for cell in first if is_numeric(cell)) / max(len(first), 1) < 0.5:
            return "First row appears to contain headers"

        cells = [cell for record in records for cell in record if cell.strip()]
        ratio = numeric_ratio(cells)
        if ratio < 0.6:
            return f"Low numeric content ratio: {round(ratio * 100)}%"

        widths = [len(record) for record in records]
        average = sum(widths) / len(widths)
        within = sum(1 for width in widths if abs(width - average) <= 1)
        if within / len(widths) < 0.8:
            return "Inconsistent column count across rows"
        return None

    def parse(self, buffer: RawBuffer, started: float) -> ParseResult:
        text, encoding = self.decode(buffer)
        delimiter = self._best_delimiter(text)
        records = read_delimited(text, delimiter)

        problem = self._validate(records)
        if problem:
            raise StrategyRejected(problem)

        width = len(records[0])
        column_names = []
        for index in range(width):
            values = [record[index] for record in records if index < len(record)]
            column_names.append(f"{classify_column(values)}_{index + 1}")

        rows = build_rows(records, column_names, coerce=clean_numeric_value)
        quality = calculate_data_quality(rows)
        cells = [cell for record in records for cell in record if cell.strip()]
        ratio = numeric_ratio(cells)

        confidence = (
            75
            + (ratio - 0.6) * 50
            + (quality - 50) * 0.1
            + confidence_bonus(rows) * 0.5
        )
        if time.perf_counter() - started < 0.5:
            confidence += 3

        issues = []
        if ratio < 0.8:
            issues.append("Mixed data types detected - some non-numeric values present")
        if any(_HIGH_PRECISION_RE.match(cell) for cell in cells):
            issues.append("High precision decimals detected - verify precision requirements")
        if any(_SCIENTIFIC_RE.match(cell) for cell in cells):
            issues.append("Scientific notation detected - values converted to decimal form")
        total = sum(len(row) for row in rows)
        nulls = sum(1 for row in rows for value in row.values() if value is None)
        if total and nulls / total > 0.15:
            issues.append(f"High null percentage: {round(nulls / total * 100)}%")

        return self.success(
            rows,
            confidence,
            started,
            delimiter=delimiter,
            has_headers=False,
            encoding=encoding,
            quality_score=quality,
            issues=issues,
            column_names=column_names,
        )


def numeric_ratio(cells: List[str]) -> float:
    if not cells:
        return 0.0
    numbers = pd.to_numeric(pd.Series(cells, dtype="object").str.strip(), errors="coerce")
    return float(numbers.notna().sum()) / len(cells)
