"""
Quoted exports whose cells hold delimiters, escaped quotes or line breaks.

Several quote/escape readings of the same text are tried and the one with the
best data quality wins.
"""
import csv
import io
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..primitives import (
    DEFAULT_DELIMITERS,
    build_rows,
    calculate_data_quality,
    confidence_bonus,
    detect_delimiter,
    split_header,
)
from ..types import ParseResult, RawBuffer
from .base import ParsingStrategy, StrategyRejected

logger = logging.getLogger(__name__)

_QUOTED_RE = re.compile(r'"[^"]*"')


@dataclass
class Complexity:
    delimiter: str = ","
    has_quoted_fields: bool = False
    has_embedded_delimiters: bool = False
    has_escaped_quotes: bool = False
    has_multiline_fields: bool = False
    has_variable_quoting: bool = False
    quoting_style: str = "rfc4180"
    score: int = 0


def analyze_complexity(text: str) -> Complexity:
    complexity = Complexity()
    # Delimiters inside quoted sections must not vote
    complexity.delimiter = detect_delimiter(_QUOTED_RE.sub("", text[:8192]))

    if _QUOTED_RE.search(text):
        complexity.has_quoted_fields = True
        complexity.score += 2
    if '""' in text:
        complexity.has_escaped_quotes = True
        complexity.score += 2
    if '\\"' in text:
        complexity.has_escaped_quotes = True
        complexity.quoting_style = "escaped"
        complexity.score += 3

    try:
        for record in csv.reader(io.StringIO(text), delimiter=complexity.delimiter):
            for cell in record:
                if not complexity.has_embedded_delimiters and any(d in cell for d in DEFAULT_DELIMITERS):
                    complexity.has_embedded_delimiters = True
                    complexity.score += 3
                if not complexity.has_multiline_fields and "\n" in cell:
                    complexity.has_multiline_fields = True
                    complexity.score += 4
    except csv.Error as exc:
        logger.debug("Complexity scan stopped early: %s", exc)

    for line in text.splitlines()[:10]:
        if '"' not in line:
            continue
        fields = line.split(complexity.delimiter)
        quoted = [field for field in fields if len(field) > 1 and field.startswith('"') and field.endswith('"')]
        if quoted and len(quoted) < len(fields):
            complexity.has_variable_quoting = True
            complexity.score += 2
            break

    return complexity


def extract_fields(line: str, delimiter: str) -> List[str]:
    """Character scan of one line: quotes toggle, doubled quotes inside quotes are literal."""
    fields = []
    current = []
    in_quotes = False
    index = 0
    while index < len(line):
        char = line[index]
        if char == '"':
            if in_quotes and index + 1 < len(line) and line[index + 1] == '"':
                current.append('"')
                index += 2
                continue
            in_quotes = not in_quotes
        elif char == delimiter and not in_quotes:
            fields.append("".join(current).strip())
            current = []
        else:
            current.append(char)
        index += 1
    if current or fields:
        fields.append("".join(current).strip())
    return fields


def clean_cell(value: Any) -> Any:
    if value is None:
        return None
    text = str(value)
    if len(text) >= 2 and text.startswith('"') and text.endswith('"'):
        text = text[1:-1].replace('""', '"')
    return text.replace('\\"', '"')


class ComplexFieldsStrategy(ParsingStrategy):
    """Quoted fields with embedded delimiters, escaped quotes or multiline values."""

    name = "complex_fields"
    priority = 60
    min_confidence = 60.0
    max_confidence = 90.0

    def can_handle(self, buffer: RawBuffer) -> bool:
        sample = self.sample_text(buffer)
        return bool(_QUOTED_RE.search(sample)) or '""' in sample or '\\"' in sample

    def _read_rfc4180(self, text: str, complexity: Complexity) -> List[List[str]]:
        return list(csv.reader(io.StringIO(text), delimiter=complexity.delimiter, quotechar='"', doublequote=True))

    def _read_escaped(self, text: str, complexity: Complexity) -> List[List[str]]:
        return list(
            csv.reader(
                io.StringIO(text),
                delimiter=complexity.delimiter,
                quotechar='"',
                escapechar="\\",
                doublequote=complexity.quoting_style != "escaped",
            )
        )

    def _read_manual(self, text: str, complexity: Complexity) -> List[List[str]]:
        return [extract_fields(line, complexity.delimiter) for line in text.splitlines() if line.strip()]

    def _attempt(self, method: str, records: List[List[str]], complexity: Complexity) -> Optional[Dict[str, Any]]:
        records = [[clean_cell(cell) for cell in record] for record in records]
        records = [record for record in records if any(str(cell).strip() for cell in record)]
        if not records:
            return None

        column_names, data_records, header_found, _ = split_header(records)
        if not data_records:
            return None
        rows = build_rows(data_records, column_names)

        issues = []
        if method == "manual_extraction":
            issues.append("Used manual field extraction - verify data accuracy")
            if complexity.has_multiline_fields:
                issues.append("Multiline fields detected but read line by line")
        if any(isinstance(value, str) and value.count('"') % 2 for row in rows for value in row.values()):
            issues.append("Potential quote parsing issues detected")
        if len({len(record) for record in records}) > 5:
            issues.append("Highly variable field count - complex structure may not be fully resolved")

        return {
            "method": method,
            "rows": rows,
            "column_names": column_names,
            "has_headers": header_found,
            "quality": calculate_data_quality(rows),
            "issues": issues,
        }

    def parse(self, buffer: RawBuffer, started: float) -> ParseResult:
        text, encoding = self.decode(buffer)
        if not text.strip():
            raise StrategyRejected("No rows found")

        complexity = analyze_complexity(text)
        readers = (
            ("rfc4180", self._read_rfc4180),
            ("escaped_quotes", self._read_escaped),
            ("manual_extraction", self._read_manual),
        )

        best = None
        for method, reader in readers:
            try:
                attempt = self._attempt(method, reader(text, complexity), complexity)
            except csv.Error as exc:
                logger.debug("%s reading failed: %s", method, exc)
                continue
            if attempt is None:
                continue
            logger.debug("%s reading scored %.2f", method, attempt["quality"])
            if best is None or attempt["quality"] > best["quality"]:
                best = attempt

        if best is None:
            raise StrategyRejected("No quoted-field reading produced rows")

        confidence = 80.0
        if complexity.score > 5:
            confidence += 5
        if complexity.score > 10:
            confidence += 5
        confidence += (best["quality"] - 50) * 0.15
        confidence += confidence_bonus(best["rows"])
        elapsed = time.perf_counter() - started
        if elapsed > 2:
            confidence -= 5
        if elapsed > 5:
            confidence -= 10

        return self.success(
            best["rows"],
            confidence,
            started,
            delimiter=complexity.delimiter,
            has_headers=best["has_headers"],
            encoding=encoding,
            quality_score=best["quality"],
            issues=best["issues"],
            column_names=best["column_names"],
        )
