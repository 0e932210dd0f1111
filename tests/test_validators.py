import pytest

from catalog_import.domain.imports.models import (
    AttributeRecord,
    BrandRecord,
    ProductRecord,
    Severity,
    entity_payload,
)
from catalog_import.domain.imports.validators import (
    apply_field_mappings,
    dedupe_key,
    generate_slug,
    validate_record,
    validate_with_preset,
)
from catalog_import.domain.mapping.models import FieldMapping, MappingStrategy


def messages(outcome):
    return [error.error for error in outcome.errors]


def test_valid_product_is_normalized():
    outcome = validate_record({"name": "Blue Widget", "price": "19.99", "stock": "5"}, "product", 0)

    assert outcome.is_valid
    record = outcome.record
    assert isinstance(record, ProductRecord)
    assert record.price == 1999
    assert record.stock == 5
    assert record.slug == "blue-widget"
    assert record.status == "draft"
    assert outcome.errors == []


@pytest.mark.parametrize("raw, cents", [
    ("$1,299.50", 129950),
    (19.0, 1900),
    (7, 700),
    ("0.005", 1),
])
def test_price_stored_in_cents(raw, cents):
    outcome = validate_record({"name": "Widget", "price": raw}, "product", 0)
    assert outcome.record.price == cents


def test_negative_price_is_fixed_with_warning():
    outcome = validate_record({"name": "Widget", "price": -5}, "product", 3)

    assert outcome.is_valid
    assert outcome.record.price == 500
    assert len(outcome.warnings) == 1
    warning = outcome.warnings[0]
    assert warning.error == "Negative price converted to absolute value"
    assert warning.auto_fixable is True
    assert warning.record_index == 3


def test_invalid_status_defaults_to_draft():
    outcome = validate_record({"name": "Widget", "status": "Bogus"}, "product", 0)

    assert outcome.is_valid
    assert outcome.record.status == "draft"
    assert "Invalid status, defaulted to draft" in messages(outcome)


def test_status_is_case_insensitive():
    outcome = validate_record({"name": "Widget", "status": "LIVE"}, "product", 0)
    assert outcome.record.status == "live"
    assert outcome.warnings == []


def test_non_numeric_price_rejects_row():
    outcome = validate_record({"name": "Widget", "price": "cheap"}, "product", 0)

    assert not outcome.is_valid
    assert outcome.record is None
    assert outcome.errors[0].severity == Severity.ERROR
    assert outcome.errors[0].suggestion == "Use a plain number such as 19.99"


def test_missing_product_name_rejects_row():
    outcome = validate_record({"sku": "W-1", "price": 10}, "product", 0)

    assert not outcome.is_valid
    assert messages(outcome) == ["Product name is required"]


def test_invalid_sku_rejects_row():
    outcome = validate_record({"name": "Widget", "sku": "bad sku!"}, "product", 0)
    assert not outcome.is_valid


def test_gtin_cleanup():
    cleaned = validate_record({"name": "Widget", "gtin": "4006-3813-33931"}, "product", 0)
    assert cleaned.record.gtin == "4006381333931"

    dropped = validate_record({"name": "Widget", "gtin": "123"}, "product", 0)
    assert dropped.is_valid
    assert dropped.record.gtin is None
    assert len(dropped.warnings) == 1


def test_stock_and_variant_coercion():
    outcome = validate_record({"name": "Widget", "stock": "7.9", "is_variant": "yes"}, "product", 0)
    assert outcome.record.stock == 7
    assert outcome.record.is_variant is True

    defaulted = validate_record({"name": "Widget", "stock": "lots"}, "product", 0)
    assert defaulted.record.stock == 0
    assert len(defaulted.warnings) == 1


def test_slug_generated_when_name_has_no_slug_characters():
    outcome = validate_record({"name": "!!!"}, "product", 4)

    assert outcome.record.slug == "product-5"
    assert outcome.warnings


def test_brand_website_gets_scheme():
    outcome = validate_record({"name": "Acme", "website": "acme.com"}, "brand", 0)

    assert isinstance(outcome.record, BrandRecord)
    assert outcome.record.website == "https://acme.com"
    assert "Added https:// to website" in messages(outcome)


def test_brand_slug_is_normalized():
    outcome = validate_record({"name": "Acme", "slug": "Acme Co"}, "brand", 0)

    assert outcome.record.slug == "acme-co"
    assert "Slug normalized to 'acme-co'" in messages(outcome)


def test_brand_requires_name():
    outcome = validate_record({"website": "https://acme.com"}, "brand", 0)
    assert messages(outcome) == ["Brand name is required"]


def test_attribute_requires_product_and_name():
    outcome = validate_record({"attribute_value": "Red"}, "attribute", 0)
    assert messages(outcome) == ["Product ID is required", "Attribute name is required"]

    ok = validate_record({"product_id": "W-1", "attribute_name": "Colour", "attribute_value": "Red"}, "attribute", 0)
    assert isinstance(ok.record, AttributeRecord)


def test_dedupe_keys():
    with_sku = validate_record({"name": "Widget", "sku": "W-1"}, "product", 0).record
    without_sku = validate_record({"name": "Blue Widget"}, "product", 0).record
    brand = validate_record({"name": "Acme"}, "brand", 0).record
    attribute = validate_record({"product_id": "W-1", "attribute_name": "Colour"}, "attribute", 0).record

    assert dedupe_key(with_sku) == ("sku", "W-1")
    assert dedupe_key(without_sku) == ("slug", "blue-widget")
    assert dedupe_key(brand) == ("slug", "acme")
    assert dedupe_key(attribute) is None


def test_entity_payload_drops_discriminator_and_empty_fields():
    record = validate_record({"name": "Acme"}, "brand", 0).record
    assert entity_payload(record) == {"name": "Acme", "slug": "acme"}


@pytest.mark.parametrize("value, preset, valid", [
    ("W-100/a", "sku", True),
    ("W 100", "sku", False),
    ("blue-widget", "slug", True),
    ("Blue_Widget", "slug", False),
    ("12345678", "gtin", True),
    ("1234567", "gtin", False),
    ("https://acme.com/logo.png", "url", True),
    ("ftp://acme.com", "url", False),
])
def test_validate_with_preset(value, preset, valid):
    assert validate_with_preset(value, preset)[0] is valid


def test_validate_with_unknown_preset():
    assert validate_with_preset("x", "nope") == (False, "Unknown preset: nope")


def test_generate_slug_transliterates():
    assert generate_slug("Café Crème  Deluxe") == "cafe-creme-deluxe"


def test_apply_field_mappings_drops_unmapped_columns():
    mappings = [
        FieldMapping(source_field="Product Name", target_field="name", confidence=80, strategy=MappingStrategy.FUZZY),
        FieldMapping(source_field="Cost", target_field="price", confidence=80, strategy=MappingStrategy.FUZZY),
    ]
    row = {"Product Name": "Widget", "Cost": 5, "Internal": "x"}

    assert apply_field_mappings(row, mappings) == {"name": "Widget", "price": 5}
