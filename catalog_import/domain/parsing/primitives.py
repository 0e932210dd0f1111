"""
Shared helpers for the parsing strategies.

Everything here is a pure function over text, cell lists or row dicts so the
strategies can combine them freely: delimiter and encoding sniffing, the header
heuristic, cell coercion and the quality/confidence scoring used to rank
strategy results against each other.
"""
import csv
import io
import math
import re
from collections import Counter
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from .types import CellValue

DEFAULT_DELIMITERS = (",", ";", "\t", "|")

_NUMERIC_RE = re.compile(r"^[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?$")
_INTEGER_RE = re.compile(r"^[+-]?\d+$")
_TRUE_VALUES = {"true", "yes", "1"}
_FALSE_VALUES = {"false", "no", "0"}


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def detect_delimiter(sample: str, candidates: Sequence[str] = DEFAULT_DELIMITERS) -> str:
    """Return the candidate that occurs most often in ``sample`` (comma if none do)."""
    best = ","
    best_count = 0
    for candidate in candidates:
        count = sample.count(candidate)
        if count > best_count:
            best, best_count = candidate, count
    return best


def detect_encoding(data: bytes) -> str:
    """Sniff a byte-order mark; anything without one is treated as UTF-8."""
    if data.startswith(b"\xef\xbb\xbf"):
        return "utf-8-sig"
    if data.startswith(b"\xff\xfe"):
        return "utf-16-le"
    if data.startswith(b"\xfe\xff"):
        return "utf-16-be"
    return "utf-8"


def decode_buffer(data: bytes, encoding: Optional[str] = None, errors: str = "strict") -> str:
    """Decode bytes with the sniffed (or given) encoding, dropping any BOM."""
    encoding = encoding or detect_encoding(data)
    if encoding in ("utf-16-le", "utf-16-be") and data[:2] in (b"\xff\xfe", b"\xfe\xff"):
        data = data[2:]
    return data.decode(encoding, errors=errors)


def is_numeric(value: Any) -> bool:
    """True for finite decimal or exponent literals (and real numbers)."""
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return math.isfinite(value)
    if value is None:
        return False
    text = str(value).strip()
    if not text or not _NUMERIC_RE.match(text):
        return False
    return math.isfinite(float(text))


def is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def to_number(text: str):
    """Convert a numeric literal to ``int`` when integral in form, else ``float``."""
    text = text.strip()
    if _INTEGER_RE.match(text):
        return int(text)
    return float(text)


def has_headers(records: Sequence[Sequence[str]]) -> bool:
    """
    Row 1 is a header row when all of its cells are non-empty, non-numeric
    text and row 2 contains at least one numeric cell.
    """
    if len(records) < 2 or not records[0]:
        return False
    first, second = records[0], records[1]
    first_is_text = all(str(cell).strip() and not is_numeric(cell) for cell in first)
    second_has_number = any(is_numeric(cell) for cell in second)
    return first_is_text and second_has_number


def looks_like_label_row(records: Sequence[Sequence[str]], sample_size: int = 20) -> bool:
    """
    Secondary header check for all-text files: the first row holds unique,
    non-numeric labels that never reappear in their own column below.
    """
    if len(records) < 2 or not records[0]:
        return False
    first = [str(cell).strip() for cell in records[0]]
    if any(not cell or is_numeric(cell) for cell in first):
        return False
    if len({cell.lower() for cell in first}) != len(first):
        return False
    for index, label in enumerate(first):
        for record in records[1:sample_size + 1]:
            if index < len(record) and str(record[index]).strip().lower() == label.lower():
                return False
    return True


def coerce_cell_value(value: Any) -> CellValue:
    """
    Trim a raw cell and convert it to number or boolean when it clearly is one.

    The numeric check runs first, so ``"1"`` and ``"0"`` become numbers.
    """
    if value is None or isinstance(value, (bool, int, float)):
        return value
    text = str(value).strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in ('"', "'"):
        text = text[1:-1].strip()
    if not text:
        return None
    if is_numeric(text):
        return to_number(text)
    lowered = text.lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    return text


def row_width(row: Dict[str, Any]) -> int:
    """Populated width: position of the last non-empty cell."""
    width = 0
    for position, value in enumerate(row.values(), start=1):
        if not is_empty(value):
            width = position
    return width


def _empty_ratio(rows: Sequence[Dict[str, Any]]) -> float:
    total = sum(len(row) for row in rows)
    if not total:
        return 1.0
    empty = sum(1 for row in rows for value in row.values() if is_empty(value))
    return empty / total


def calculate_data_quality(rows: Sequence[Dict[str, Any]]) -> float:
    """
    Score 0-100: base 50, +25 for the share of rows at the modal width and +25
    for the share of non-empty cells.
    """
    if not rows:
        return 0.0
    widths = Counter(row_width(row) for row in rows)
    modal_count = widths.most_common(1)[0][1]
    consistency = modal_count / len(rows)
    completeness = 1.0 - _empty_ratio(rows)
    return round(clamp(50 + consistency * 25 + completeness * 25, 0, 100), 2)


def confidence_bonus(rows: Sequence[Dict[str, Any]]) -> float:
    """Structural adjustment in [-30, 50] that any strategy can add to its base."""
    if not rows:
        return -30.0

    bonus = 0.0
    if len({row_width(row) for row in rows}) == 1:
        bonus += 20

    sample = rows[:10]
    columns: List[str] = []
    for row in sample:
        for key in row:
            if key not in columns:
                columns.append(key)
    for column in columns:
        distinct = {str(row.get(column)) for row in sample if not is_empty(row.get(column))}
        if len(distinct) > 1:
            bonus += 15
            break

    empty_ratio = _empty_ratio(rows)
    if empty_ratio < 0.1:
        bonus += 15
    elif empty_ratio < 0.25:
        bonus += 10
    elif empty_ratio < 0.5:
        bonus += 5

    return clamp(bonus, -30, 50)


def generate_column_names(count: int, prefix: str = "column") -> List[str]:
    return [f"{prefix}_{index + 1}" for index in range(count)]


def sanitize_field_name(name: Any) -> str:
    text = re.sub(r"[^\w\s-]", "", str(name).strip())
    return re.sub(r"\s+", "_", text).lower()


def unique_column_names(names: Iterable[str], width: int) -> List[str]:
    """Fill blanks, de-duplicate and pad ``names`` to ``width`` columns."""
    result: List[str] = []
    seen: Dict[str, int] = {}
    names = list(names)
    for index in range(max(width, len(names))):
        name = names[index] if index < len(names) else ""
        name = name or f"column_{index + 1}"
        if name in seen:
            seen[name] += 1
            name = f"{name}_{seen[name]}"
        else:
            seen[name] = 1
        result.append(name)
    return result


def read_delimited(text: str, delimiter: str, strict: bool = False) -> List[List[str]]:
    """Split text into trimmed cell lists with the csv module, skipping blank lines."""
    reader = csv.reader(io.StringIO(text), delimiter=delimiter, quotechar='"', strict=strict)
    records = []
    for record in reader:
        cells = [cell.strip() for cell in record]
        if not any(cells):
            continue
        records.append(cells)
    return records


def build_rows(
    records: Sequence[Sequence[str]],
    column_names: Sequence[str],
    coerce: Callable[[Any], CellValue] = coerce_cell_value,
) -> List[Dict[str, CellValue]]:
    """Zip cell lists with column names; short rows are padded with ``None``."""
    rows = []
    for record in records:
        row = {}
        for index, name in enumerate(column_names):
            row[name] = coerce(record[index]) if index < len(record) else None
        rows.append(row)
    return rows


def split_header(records: List[List[str]]):
    """
    Decide whether the first record is a header and return
    ``(column_names, data_records, has_header, inferred_from_labels)``.
    """
    width = max((len(record) for record in records), default=0)
    if has_headers(records):
        names = [sanitize_field_name(cell) for cell in records[0]]
        return unique_column_names(names, width), records[1:], True, False
    if looks_like_label_row(records):
        names = [sanitize_field_name(cell) for cell in records[0]]
        return unique_column_names(names, width), records[1:], True, True
    return generate_column_names(width), records, False, False
