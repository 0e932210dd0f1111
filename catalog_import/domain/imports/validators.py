"""
Entity validation and normalization for mapped import rows.

Each entity type has a validator that turns a mapped row (target field ->
raw value) into a typed record. Problems that can be fixed safely are fixed
and reported as warnings; anything else is an error and the row is rejected.
"""
import logging
import math
import re
import unicodedata
from dataclasses import dataclass, field
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from catalog_import.domain.mapping.models import FieldMapping
from catalog_import.domain.mapping.target_schema import EntityType

from .models import (
    AttributeRecord,
    BatchError,
    BrandRecord,
    ProductRecord,
    Severity,
)

logger = logging.getLogger(__name__)


PRESET_PATTERNS = {
    "sku": r"^[A-Za-z0-9\-_./]+$",
    "slug": r"^[a-z0-9]+(?:-[a-z0-9]+)*$",
    "gtin": r"^(?:\d{8}|\d{12}|\d{13}|\d{14})$",
    "url": r"^https?://[^\s/$.?#].[^\s]*$",
}

PRESET_DESCRIPTIONS = {
    "sku": "Product SKU (letters, digits, hyphens, underscores, dots, slashes)",
    "slug": "URL-safe slug (lowercase, hyphens)",
    "gtin": "GTIN-8, GTIN-12 (UPC), GTIN-13 (EAN) or GTIN-14",
    "url": "HTTP/HTTPS URL",
}

PRODUCT_STATUSES = ("draft", "review", "live", "archived")
DEFAULT_SUGGESTION = "Check required fields and data formats"

_TRUE_STRINGS = {"true", "yes", "y", "1"}
_FALSE_STRINGS = {"false", "no", "n", "0"}


def validate_with_preset(value: str, preset_name: str) -> Tuple[bool, Optional[str]]:
    """
    Validate a value against a preset pattern.

    Returns:
        Tuple of (is_valid, error_message)
    """
    if preset_name not in PRESET_PATTERNS:
        return False, f"Unknown preset: {preset_name}"
    if re.match(PRESET_PATTERNS[preset_name], value):
        return True, None
    description = PRESET_DESCRIPTIONS.get(preset_name, preset_name)
    return False, f"Value '{value}' does not match {description}"


def apply_field_mappings(row: Dict[str, Any], mappings: Sequence[FieldMapping]) -> Dict[str, Any]:
    """Copy mapped source values onto their target keys; unmapped columns are dropped."""
    mapped = {}
    for mapping in mappings:
        if mapping.source_field in row:
            mapped[mapping.target_field] = row[mapping.source_field]
    return mapped


def generate_slug(text: Any) -> str:
    normalized = unicodedata.normalize("NFKD", str(text)).encode("ascii", "ignore").decode("ascii")
    slug = normalized.lower().strip()
    slug = re.sub(r"[^a-z0-9\s-]", "", slug)
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    return text or None


def _decimal(value: Any) -> Optional[Decimal]:
    """Parse money-like input (numbers or strings such as ``"$1,299.50"``)."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return None
        return Decimal(str(value))
    text = re.sub(r"[\s$€£¥,]", "", str(value))
    if not text:
        return None
    try:
        number = Decimal(text)
    except InvalidOperation:
        return None
    return number if number.is_finite() else None


def _to_cents(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass
class ValidationOutcome:
    record: Optional[Any] = None
    errors: List[BatchError] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return self.record is not None and not any(e.severity == Severity.ERROR for e in self.errors)

    @property
    def warnings(self) -> List[BatchError]:
        return [e for e in self.errors if e.severity == Severity.WARNING]


class _Collector:
    def __init__(self, record_index: int):
        self.record_index = record_index
        self.errors: List[BatchError] = []

    def error(self, message: str, suggestion: str = DEFAULT_SUGGESTION) -> None:
        self.errors.append(
            BatchError(
                record_index=self.record_index,
                error=message,
                severity=Severity.ERROR,
                auto_fixable=False,
                suggestion=suggestion,
            )
        )

    def fixed(self, message: str) -> None:
        self.errors.append(
            BatchError(
                record_index=self.record_index,
                error=message,
                severity=Severity.WARNING,
                auto_fixable=True,
            )
        )

    @property
    def has_errors(self) -> bool:
        return any(e.severity == Severity.ERROR for e in self.errors)


def _money(value: Any, label: str, issues: _Collector, required_numeric: bool) -> Optional[int]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    amount = _decimal(value)
    if amount is None:
        if required_numeric:
            issues.error(f"Invalid {label}: {value!r} is not a number", "Use a plain number such as 19.99")
        else:
            issues.fixed(f"Invalid {label} {value!r} removed")
        return None
    if amount < 0:
        issues.fixed(f"Negative {label} converted to absolute value")
        amount = abs(amount)
    return _to_cents(amount)


def _count(value: Any, label: str, issues: _Collector, default: Optional[int]) -> Optional[int]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return default
    amount = _decimal(value)
    if amount is None:
        issues.fixed(f"Invalid {label} {value!r}, defaulted to {default if default is not None else 'empty'}")
        return default
    if amount < 0:
        issues.fixed(f"Negative {label} converted to absolute value")
        amount = abs(amount)
    return int(amount.to_integral_value(rounding=ROUND_FLOOR))


def _boolean(value: Any, label: str, issues: _Collector) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_STRINGS:
        return True
    if text in _FALSE_STRINGS or not text:
        return False
    issues.fixed(f"Invalid {label} {value!r}, defaulted to false")
    return False


def _slug(mapped: Dict[str, Any], issues: _Collector, fallback_prefix: str) -> str:
    provided = _text(mapped.get("slug"))
    if provided:
        slug = generate_slug(provided)
        if slug and slug != provided:
            issues.fixed(f"Slug normalized to '{slug}'")
    else:
        slug = generate_slug(mapped.get("name") or "")
    if not slug:
        slug = f"{fallback_prefix}-{issues.record_index + 1}"
        issues.fixed(f"Slug could not be derived, generated '{slug}'")
    return slug


def _url(value: Any, label: str, issues: _Collector) -> Optional[str]:
    text = _text(value)
    if not text:
        return None
    if not re.match(r"^https?://", text, re.IGNORECASE) and re.match(r"^[\w.-]+\.[a-z]{2,}", text, re.IGNORECASE):
        text = f"https://{text}"
        issues.fixed(f"Added https:// to {label}")
    valid, message = validate_with_preset(text, "url")
    if not valid:
        issues.fixed(f"Invalid {label} removed: {message}")
        return None
    return text


def validate_product(mapped: Dict[str, Any], issues: _Collector):
    name = _text(mapped.get("name"))
    if not name:
        issues.error("Product name is required")

    sku = _text(mapped.get("sku"))
    if sku:
        valid, message = validate_with_preset(sku, "sku")
        if not valid:
            issues.error(message, "SKUs may only contain letters, digits, hyphens, underscores, dots and slashes")

    gtin = _text(mapped.get("gtin"))
    if gtin:
        gtin = re.sub(r"[\s-]", "", gtin)
        valid, message = validate_with_preset(gtin, "gtin")
        if not valid:
            issues.fixed(f"Invalid GTIN removed: {message}")
            gtin = None

    price = _money(mapped.get("price"), "price", issues, required_numeric=True)
    compare_at_price = _money(mapped.get("compare_at_price"), "compare at price", issues, required_numeric=False)
    stock = _count(mapped.get("stock"), "stock", issues, default=0)
    low_stock_threshold = _count(mapped.get("low_stock_threshold"), "low stock threshold", issues, default=None)

    status = _text(mapped.get("status"))
    if status is None:
        status = "draft"
    elif status.lower() in PRODUCT_STATUSES:
        status = status.lower()
    else:
        issues.fixed("Invalid status, defaulted to draft")
        status = "draft"

    if issues.has_errors:
        return None
    return ProductRecord(
        name=name,
        slug=_slug(mapped, issues, "product"),
        sku=sku,
        gtin=gtin,
        short_description=_text(mapped.get("short_description")),
        long_description=_text(mapped.get("long_description")),
        story=_text(mapped.get("story")),
        price=price,
        compare_at_price=compare_at_price,
        stock=stock,
        low_stock_threshold=low_stock_threshold,
        brand_id=_text(mapped.get("brand_id")),
        parent_id=_text(mapped.get("parent_id")),
        status=status,
        is_variant=_boolean(mapped.get("is_variant"), "variant flag", issues),
    )


def validate_brand(mapped: Dict[str, Any], issues: _Collector):
    name = _text(mapped.get("name"))
    if not name:
        issues.error("Brand name is required")
        return None
    return BrandRecord(
        name=name,
        slug=_slug(mapped, issues, "brand"),
        description=_text(mapped.get("description")),
        story=_text(mapped.get("story")),
        website=_url(mapped.get("website"), "website", issues),
        logo_url=_url(mapped.get("logo_url"), "logo URL", issues),
    )


def validate_attribute(mapped: Dict[str, Any], issues: _Collector):
    product_id = _text(mapped.get("product_id"))
    attribute_name = _text(mapped.get("attribute_name"))
    if not product_id:
        issues.error("Product ID is required")
    if not attribute_name:
        issues.error("Attribute name is required")
    if issues.has_errors:
        return None
    return AttributeRecord(
        product_id=product_id,
        attribute_name=attribute_name,
        attribute_value=_text(mapped.get("attribute_value")),
        unit=_text(mapped.get("unit")),
    )


ENTITY_VALIDATORS: Dict[EntityType, Callable[[Dict[str, Any], _Collector], Any]] = {
    EntityType.PRODUCT: validate_product,
    EntityType.BRAND: validate_brand,
    EntityType.ATTRIBUTE: validate_attribute,
}


def validate_record(mapped: Dict[str, Any], entity_type: str, record_index: int) -> ValidationOutcome:
    """Validate and normalize one mapped row into a typed entity record."""
    issues = _Collector(record_index)
    validator = ENTITY_VALIDATORS[EntityType(entity_type)]
    try:
        record = validator(mapped, issues)
    except ValidationError as exc:
        logger.debug("Record %d failed model validation: %s", record_index, exc)
        issues.error(f"Record does not fit the {entity_type} schema: {exc.error_count()} problem(s)")
        record = None
    return ValidationOutcome(record=record, errors=issues.errors)


def dedupe_key(record) -> Optional[Tuple[str, str]]:
    """Field used to detect records that already exist in storage."""
    if isinstance(record, ProductRecord):
        return ("sku", record.sku) if record.sku else ("slug", record.slug)
    if isinstance(record, BrandRecord):
        return ("slug", record.slug)
    return None
