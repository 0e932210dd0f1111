"""
Last-resort parser for damaged input.

The strategy measures how damaged the text is, then walks a ladder of
increasingly destructive clean-up passes until one produces usable rows.
Confidence is kept low on purpose and every result asks for a manual check.
"""
import logging
import re
import time
from collections import Counter
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

from ..primitives import (
    build_rows,
    clamp,
    coerce_cell_value,
    confidence_bonus,
    is_empty,
    split_header,
)
from ..types import ParseResult, RawBuffer
from .base import ParsingStrategy, StrategyRejected

logger = logging.getLogger(__name__)

RECOVERY_DELIMITERS = (",", ";", "\t", "|", ":", " ")
ROW_WIDTH_CANDIDATES = (3, 4, 5, 6, 8, 10, 12)
DEFAULT_ROW_WIDTH = 4

RUNG_PENALTY = {
    "basic": 0,
    "aggressive": -10,
    "line_by_line": -20,
    "desperate": -30,
}

RUNG_NOTES = {
    "basic": "Removed null bytes and normalized line endings",
    "aggressive": "Removed non-printable characters and collapsed repeated delimiters",
    "line_by_line": "Rebuilt rows line by line - column alignment may be off",
    "desperate": "Rows rebuilt from a flat token stream - column boundaries are estimated",
}

_BINARY_RE = re.compile(r"[\x01-\x08\x0b\x0c\x0e-\x1f\x7f]")
_GARBAGE_RE = re.compile(r"[\ufffd\x80-\x9f]")
_ANY_DELIMITER_RE = re.compile(r"[,;\t|]")
_TOKEN_SPLIT_RE = re.compile(r"[,;\t|\r\n]+")
_INTEGER_RE = re.compile(r"^[+-]?\d+$")
_DECIMAL_RE = re.compile(r"^[+-]?\d*\.\d+$")
_DATE_RE = re.compile(r"^\d{1,4}[-/.]\d{1,2}[-/.]\d{1,4}$")


@dataclass
class DamageReport:
    null_bytes: bool = False
    binary_data: bool = False
    mixed_line_endings: bool = False
    missing_delimiters: bool = False
    extra_delimiters: bool = False
    trailing_whitespace: bool = False
    garbage_characters: bool = False

    WEIGHTS = (
        ("null_bytes", 3, "null bytes"),
        ("binary_data", 2, "binary data"),
        ("mixed_line_endings", 1, "inconsistent line endings"),
        ("missing_delimiters", 2, "missing delimiters"),
        ("extra_delimiters", 1, "extra delimiters"),
        ("trailing_whitespace", 1, "trailing whitespace"),
        ("garbage_characters", 2, "garbage characters"),
    )

    @property
    def score(self) -> int:
        return sum(weight for field, weight, _ in self.WEIGHTS if getattr(self, field))

    def problems(self) -> List[str]:
        return [label for field, _, label in self.WEIGHTS if getattr(self, field)]


def _content_lines(text: str) -> List[str]:
    return [line for line in re.split(r"\r\n|\r|\n", text) if line.strip()]


def estimate_delimiter(text: str, candidates: Sequence[str] = RECOVERY_DELIMITERS) -> str:
    """Pick the delimiter with the highest ``mean * 10 - variance`` per line."""
    lines = _content_lines(text)[:20]
    best, best_score = ",", float("-inf")
    for candidate in candidates:
        counts = [line.count(candidate) for line in lines]
        if not counts:
            continue
        mean = sum(counts) / len(counts)
        if mean == 0:
            continue
        variance = sum((count - mean) ** 2 for count in counts) / len(counts)
        score = mean * 10 - variance
        if score > best_score:
            best, best_score = candidate, score
    return best


def analyze_damage(text: str, delimiter: str) -> DamageReport:
    report = DamageReport()
    report.null_bytes = "\x00" in text
    report.binary_data = bool(_BINARY_RE.search(text))
    report.garbage_characters = bool(_GARBAGE_RE.search(text))

    crlf = text.count("\r\n")
    bare_lf = text.count("\n") - crlf
    bare_cr = text.count("\r") - crlf
    report.mixed_line_endings = sum(1 for count in (crlf, bare_lf, bare_cr) if count) > 1

    lines = _content_lines(text)
    head = lines[:10]
    if head:
        missing = sum(1 for line in head if not _ANY_DELIMITER_RE.search(line))
        report.missing_delimiters = missing / len(head) > 0.3

        counts = [line.count(delimiter) for line in lines]
        modal = Counter(counts).most_common(1)[0][0]
        extra = sum(1 for count in counts if count > modal + 1)
        report.extra_delimiters = extra / len(counts) > 0.2

        raw_lines = [line for line in re.split(r"\r\n|\n", text) if line.strip()]
        trailing = sum(1 for line in raw_lines if line != line.rstrip())
        report.trailing_whitespace = bool(raw_lines) and trailing / len(raw_lines) > 0.5
    return report


def split_line(line: str, delimiter: str) -> List[str]:
    """Quote-aware split of a single line; a space delimiter splits on runs of whitespace."""
    if delimiter == " ":
        return line.split()
    cells, current, in_quotes = [], [], False
    for char in line:
        if char == '"':
            in_quotes = not in_quotes
            continue
        if char == delimiter and not in_quotes:
            cells.append("".join(current).strip())
            current = []
            continue
        current.append(char)
    cells.append("".join(current).strip())
    return cells


def parse_lines(text: str, delimiter: str) -> List[List[str]]:
    records = []
    for line in text.split("\n"):
        if not line.strip():
            continue
        cells = split_line(line, delimiter)
        if any(cells):
            records.append(cells)
    return records


def _is_clean_cell(cell: str) -> bool:
    return cell.isprintable() and "\ufffd" not in cell


def _printable_only(text: str, replacement: str = "") -> str:
    return "".join(
        char if (char in "\n\t" or (char.isprintable() and char != "\ufffd")) else replacement
        for char in text
    )


# Ladder rungs


def basic_cleanup(text: str) -> str:
    text = text.replace("\x00", "")
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    return "\n".join(line.rstrip() for line in text.split("\n"))


def aggressive_cleanup(text: str, delimiter: str) -> str:
    text = _printable_only(basic_cleanup(text))
    if delimiter == " ":
        text = re.sub(r" {2,}", " ", text)
    else:
        text = re.sub(f"{re.escape(delimiter)}{{2,}}", delimiter, text)
    return "\n".join(line for line in text.split("\n") if line.strip())


def line_by_line_recovery(text: str, delimiter: str) -> str:
    recovered = []
    for line in basic_cleanup(text).split("\n"):
        line = _printable_only(line, replacement=" ")
        if delimiter != "\t":
            line = line.replace("\t", " ")
        line = re.sub(r" {2,}", " ", line).strip()
        if not line:
            continue
        if delimiter != " " and delimiter not in line:
            line = re.sub(r"\s+", delimiter, line)
        recovered.append(line)
    return "\n".join(recovered)


def _token_type(token: str) -> str:
    if not token:
        return "empty"
    if _INTEGER_RE.match(token):
        return "integer"
    if _DECIMAL_RE.match(token):
        return "decimal"
    if _DATE_RE.match(token):
        return "date"
    if len(token) <= 10:
        return "short"
    return "text"


def estimate_row_width(tokens: Sequence[str]) -> int:
    """
    Try each candidate width and score how type-consistent the resulting
    columns are; a width needs at least two full rows to be considered.
    """
    best_width, best_score = DEFAULT_ROW_WIDTH, -1
    for width in ROW_WIDTH_CANDIDATES:
        full_rows = len(tokens) // width
        if full_rows < 2:
            continue
        score = 0
        for column in range(width):
            types = {_token_type(tokens[row * width + column]) for row in range(full_rows)}
            if len(types) == 1:
                score += 3
            elif len(types) <= 2:
                score += 1
        if score > best_score:
            best_width, best_score = width, score
    return best_width


def desperate_recovery(text: str) -> List[List[str]]:
    cleaned = _printable_only(text.replace("\x00", ""), replacement=" ")
    tokens = [token.strip() for token in _TOKEN_SPLIT_RE.split(cleaned) if token.strip()]
    if not tokens:
        return []
    width = estimate_row_width(tokens)
    return [tokens[start:start + width] for start in range(0, len(tokens), width)]


def is_usable(records: List[List[str]]) -> bool:
    """Clean cells only, and at least half the rows split into several fields."""
    if not records:
        return False
    if not all(_is_clean_cell(cell) for record in records for cell in record):
        return False
    multi = sum(1 for record in records if len(record) > 1)
    return multi / len(records) >= 0.5


class DirtyRecoveryStrategy(ParsingStrategy):
    name = "dirty_recovery"
    priority = 10
    min_confidence = 20.0
    max_confidence = 70.0

    def can_handle(self, buffer: RawBuffer) -> bool:
        text, _ = self.decode(buffer, errors="replace")
        return bool(text.replace("\x00", "").strip())

    def recover(self, text: str, delimiter: str) -> Optional[Tuple[str, List[List[str]]]]:
        ladder: List[Tuple[str, Callable[[], List[List[str]]], bool]] = [
            ("basic", lambda: parse_lines(basic_cleanup(text), delimiter), True),
            ("aggressive", lambda: parse_lines(aggressive_cleanup(text, delimiter), delimiter), True),
            ("line_by_line", lambda: parse_lines(line_by_line_recovery(text, delimiter), delimiter), True),
            ("desperate", lambda: desperate_recovery(text), False),
        ]
        for rung, attempt, needs_structure in ladder:
            records = attempt()
            if needs_structure and not is_usable(records):
                logger.debug("Recovery rung %s did not yield usable rows", rung)
                continue
            if records:
                return rung, records
        return None

    def parse(self, buffer: RawBuffer, started: float) -> ParseResult:
        text, encoding = self.decode(buffer, errors="replace")
        if not text.replace("\x00", "").strip():
            raise StrategyRejected("No recoverable content")

        delimiter = estimate_delimiter(text)
        damage = analyze_damage(text, delimiter)

        recovered = self.recover(text, delimiter)
        if not recovered:
            raise StrategyRejected("Recovery ladder exhausted without usable rows")
        rung, records = recovered

        column_names, data_records, header_found, _ = split_header(records)
        if not data_records:
            data_records, header_found = records, False
            column_names = [f"column_{index + 1}" for index in range(max(len(r) for r in records))]
        rows = build_rows(data_records, column_names, coerce=coerce_cell_value)

        widths = Counter(len(record) for record in data_records)
        consistency = widths.most_common(1)[0][1] / len(data_records)
        total = sum(len(row) for row in rows)
        completeness = 1 - (sum(1 for row in rows for v in row.values() if is_empty(v)) / total) if total else 0.0

        recovery_score = clamp(
            50 + RUNG_PENALTY[rung] + consistency * 20 + completeness * 15 - damage.score * 5,
            10,
            70,
        )
        confidence = (
            40
            + (recovery_score - 50) * 0.4
            - min(20, damage.score * 3)
            + confidence_bonus(rows) * 0.3
        )
        if time.perf_counter() - started < 1:
            confidence += 2

        issues = [f"Data recovered using {rung} method"]
        problems = damage.problems()
        if problems:
            issues.append("Original issues: " + ", ".join(problems))
        issues.append(RUNG_NOTES[rung])
        issues.append("Manual data verification recommended")

        logger.info(
            "Dirty recovery used %s rung (damage score %d, %d rows)",
            rung,
            damage.score,
            len(rows),
        )
        return self.success(
            rows,
            confidence,
            started,
            delimiter="," if rung == "desperate" else delimiter,
            has_headers=header_found,
            encoding=encoding,
            quality_score=round(recovery_score, 2),
            issues=issues,
            column_names=column_names,
        )
