"""
Multi-factor confidence breakdown for a parse result.

Strategies rank themselves with their own confidence formulas; this module
explains a chosen result to the user. Eight factors are scored 0-100, combined
with fixed weights, and turned into positive factors, issues and
recommendations.
"""
import re
from collections import Counter
from typing import Any, Dict, List, Sequence

from .primitives import clamp, is_empty, row_width
from .types import ConfidenceBreakdown, ParseMetadata, QualityMetrics

WEIGHTS = {
    "structural_consistency": 0.25,
    "data_completeness": 0.20,
    "type_consistency": 0.15,
    "delimiter_reliability": 0.15,
    "header_quality": 0.10,
    "data_variety": 0.05,
    "parse_efficiency": 0.05,
    "error_rate": 0.05,
}

DELIMITER_RELIABILITY = {",": 90, ";": 85, "\t": 80, "|": 75, ":": 60}

_GENERIC_HEADER_RE = re.compile(r"^(column_\d+|field_\d+|col\d+|integer_\d+|decimal_\d+)$", re.IGNORECASE)
_INTEGER_STRING_RE = re.compile(r"^\d+$")
_DECIMAL_STRING_RE = re.compile(r"^\d+\.\d+$")
_DATE_STRING_RE = re.compile(r"^\d{4}-\d{2}-\d{2}")


def value_type(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    text = str(value)
    if text == "":
        return "empty"
    if _INTEGER_STRING_RE.match(text):
        return "integer_string"
    if _DECIMAL_STRING_RE.match(text):
        return "decimal_string"
    if _DATE_STRING_RE.match(text):
        return "date_string"
    return "string"


def _columns(rows: Sequence[Dict[str, Any]]) -> List[str]:
    return list(rows[0].keys()) if rows else []


def structural_consistency(rows: Sequence[Dict[str, Any]]) -> float:
    """70% share of rows at the modal populated width, 30% key overlap with row 1."""
    columns = _columns(rows)
    if not columns:
        return 0.0
    widths = Counter(row_width(row) for row in rows)
    width_share = widths.most_common(1)[0][1] / len(rows) * 100
    overlaps = [sum(1 for key in columns if key in row) / len(columns) for row in rows[1:]]
    key_share = sum(overlaps) / max(1, len(overlaps)) * 100 if overlaps else 100.0
    return width_share * 0.7 + key_share * 0.3


def data_completeness(rows: Sequence[Dict[str, Any]]) -> float:
    columns = _columns(rows)
    total = len(rows) * len(columns)
    if not total:
        return 0.0
    filled = sum(1 for row in rows for key in columns if not is_empty(row.get(key)))
    return filled / total * 100


def type_consistency(rows: Sequence[Dict[str, Any]]) -> float:
    """Mean share of the dominant value type per column; empty columns count as 0."""
    columns = _columns(rows)
    if not columns:
        return 0.0
    total = 0.0
    for key in columns:
        values = [row.get(key) for row in rows if not is_empty(row.get(key))]
        if not values:
            continue
        counts = Counter(value_type(value) for value in values)
        total += counts.most_common(1)[0][1] / len(values) * 100
    return total / len(columns)


def delimiter_reliability(metadata: ParseMetadata) -> float:
    if not metadata.delimiter:
        return 50.0
    base = DELIMITER_RELIABILITY.get(metadata.delimiter, 50)
    if metadata.quality_score:
        return min(95.0, base + (metadata.quality_score - 50) * 0.1)
    return float(base)


def header_quality(rows: Sequence[Dict[str, Any]], metadata: ParseMetadata) -> float:
    columns = _columns(rows)
    if not columns:
        return 0.0
    if not metadata.has_headers:
        return 25.0
    generic = sum(1 for key in columns if _GENERIC_HEADER_RE.match(key))
    descriptive = sum(1 for key in columns if len(key) > 3 and re.search(r"[a-zA-Z]", key))
    score = 30 + (len(columns) - generic) / len(columns) * 40 + descriptive / len(columns) * 30
    return min(100.0, score)


def data_variety(rows: Sequence[Dict[str, Any]], sample_size: int = 20) -> float:
    """Columns score best when 20-80% of their sampled values are distinct."""
    columns = _columns(rows)
    if not columns:
        return 0.0
    total = 0.0
    sample = rows[:sample_size]
    for key in columns:
        values = [row.get(key) for row in sample if not is_empty(row.get(key))]
        if not values:
            continue
        ratio = len({str(value) for value in values}) / len(values)
        if 0.2 <= ratio <= 0.8:
            total += 100
        elif ratio < 0.2:
            total += ratio * 500
        else:
            total += 100 - (ratio - 0.8) * 500
    return clamp(total / len(columns), 0, 100)


def parse_efficiency(parse_time_ms: float, record_count: int) -> float:
    if not record_count:
        return 0.0
    per_record = parse_time_ms / record_count
    if per_record < 1:
        return 95.0
    if per_record < 5:
        return 85.0
    if per_record < 20:
        return 70.0
    if per_record < 50:
        return 50.0
    return 30.0


def error_rate(issues: Sequence[str]) -> float:
    """100 without issues; each issue costs ``100 / max(10, 2 * count)`` points."""
    if not issues:
        return 100.0
    per_issue = 100 / max(10, len(issues) * 2)
    return max(0.0, 100 - len(issues) * per_issue)


def positive_factors(metrics: QualityMetrics) -> List[str]:
    factors = []
    if metrics.structural_consistency > 90:
        factors.append("Excellent structural consistency")
    if metrics.data_completeness > 85:
        factors.append("High data completeness")
    if metrics.type_consistency > 80:
        factors.append("Strong type consistency")
    if metrics.delimiter_reliability > 85:
        factors.append("Reliable delimiter detection")
    if metrics.header_quality > 75:
        factors.append("Quality column headers")
    if metrics.data_variety > 60:
        factors.append("Good data variety")
    if metrics.parse_efficiency > 80:
        factors.append("Fast parsing performance")
    if metrics.error_rate > 95:
        factors.append("Error-free parsing")
    return factors


def quality_issues(metrics: QualityMetrics) -> List[str]:
    issues = []
    if metrics.structural_consistency < 70:
        issues.append("Inconsistent data structure")
    if metrics.data_completeness < 60:
        issues.append("High percentage of missing data")
    if metrics.type_consistency < 60:
        issues.append("Mixed data types in columns")
    if metrics.delimiter_reliability < 60:
        issues.append("Uncertain delimiter choice")
    if metrics.header_quality < 50:
        issues.append("Poor or missing column headers")
    if metrics.data_variety < 30:
        issues.append("Limited data variety detected")
    if metrics.parse_efficiency < 50:
        issues.append("Slow parsing performance")
    if metrics.error_rate < 80:
        issues.append("Multiple parsing errors detected")
    return issues


def recommendations(metrics: QualityMetrics) -> List[str]:
    advice = []
    if metrics.structural_consistency < 70:
        advice.append("Consider data cleaning to standardize structure")
    if metrics.data_completeness < 60:
        advice.append("Review data source for completeness issues")
    if metrics.header_quality < 50:
        advice.append("Verify column headers or enable header detection")
    if metrics.delimiter_reliability < 60:
        advice.append("Try alternative delimiter detection strategies")
    return advice or ["Data quality is good - no specific recommendations"]


def score_confidence(rows: Sequence[Dict[str, Any]], metadata: ParseMetadata) -> ConfidenceBreakdown:
    """Break the quality of ``rows`` parsed with ``metadata`` down into weighted factors."""
    if not rows:
        return ConfidenceBreakdown(
            score=0,
            issues=["No data parsed"],
            recommendations=["Try alternative parsing strategies", "Verify file format and encoding"],
        )

    metrics = QualityMetrics(
        structural_consistency=round(structural_consistency(rows), 2),
        data_completeness=round(data_completeness(rows), 2),
        type_consistency=round(type_consistency(rows), 2),
        delimiter_reliability=round(delimiter_reliability(metadata), 2),
        header_quality=round(header_quality(rows, metadata), 2),
        data_variety=round(data_variety(rows), 2),
        parse_efficiency=parse_efficiency(metadata.parse_time_ms, len(rows)),
        error_rate=round(error_rate(metadata.issues), 2),
    )
    weighted = sum(getattr(metrics, name) * weight for name, weight in WEIGHTS.items())
    return ConfidenceBreakdown(
        score=round(clamp(weighted, 0, 100)),
        metrics=metrics,
        factors=positive_factors(metrics),
        issues=quality_issues(metrics),
        recommendations=recommendations(metrics),
    )
