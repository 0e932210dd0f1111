"""
Target fields for each importable entity type.

Each field lists the alternate column names it is commonly exported under so
the mapper can recognise them; ``value_kind`` drives statistical matching.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Tuple


class EntityType(str, Enum):
    PRODUCT = "product"
    BRAND = "brand"
    ATTRIBUTE = "attribute"


@dataclass(frozen=True)
class TargetField:
    name: str
    required: bool = False
    synonyms: Tuple[str, ...] = field(default_factory=tuple)
    value_kind: str = "text"  # text | money | integer | boolean | status | slug | url | gtin | identifier
    description: str = ""


PRODUCT_FIELDS: Tuple[TargetField, ...] = (
    TargetField("name", True, ("product_name", "title", "product_title", "item_name", "product"), "text",
                "Display name of the product"),
    TargetField("slug", False, ("handle", "url_key", "permalink"), "slug"),
    TargetField("sku", False, ("product_code", "item_code", "article_number", "part_number", "code", "item_number"),
                "identifier", "Stock keeping unit"),
    TargetField("gtin", False, ("barcode", "upc", "ean", "ean13", "isbn"), "gtin", "Global trade item number"),
    TargetField("short_description", False, ("description", "summary", "desc", "short_desc"), "text"),
    TargetField("long_description", False, ("long_desc", "details", "full_description", "body", "body_html"), "text"),
    TargetField("story", False, ("product_story", "narrative", "background"), "text"),
    TargetField("price", False, ("cost", "unit_price", "retail_price", "sale_price", "amount", "msrp"), "money"),
    TargetField("compare_at_price", False, ("compare_price", "original_price", "list_price", "was_price", "rrp"),
                "money"),
    TargetField("stock", False, ("qty", "quantity", "inventory", "stock_level", "on_hand", "stock_quantity"),
                "integer"),
    TargetField("low_stock_threshold", False, ("reorder_point", "reorder_level", "min_stock", "low_stock"),
                "integer"),
    TargetField("brand_id", False, ("brand", "brand_name", "manufacturer", "vendor"), "identifier"),
    TargetField("parent_id", False, ("parent", "parent_sku", "parent_product"), "identifier"),
    TargetField("status", False, ("state", "product_status", "visibility"), "status"),
    TargetField("is_variant", False, ("variant", "is_child", "variant_flag"), "boolean"),
)

BRAND_FIELDS: Tuple[TargetField, ...] = (
    TargetField("name", True, ("brand_name", "brand", "company", "manufacturer", "title"), "text"),
    TargetField("slug", False, ("handle", "url_key"), "slug"),
    TargetField("description", False, ("desc", "summary", "about"), "text"),
    TargetField("story", False, ("brand_story", "history", "background"), "text"),
    TargetField("website", False, ("url", "site", "homepage", "web"), "url"),
    TargetField("logo_url", False, ("logo", "image", "logo_image"), "url"),
)

ATTRIBUTE_FIELDS: Tuple[TargetField, ...] = (
    TargetField("product_id", True, ("product", "product_sku", "sku", "item_id"), "identifier"),
    TargetField("attribute_name", True, ("attribute", "name", "property", "key", "spec_name"), "text"),
    TargetField("attribute_value", False, ("value", "spec_value", "property_value"), "text"),
    TargetField("unit", False, ("units", "uom", "measure"), "text"),
)

TARGET_SCHEMAS: Dict[EntityType, Tuple[TargetField, ...]] = {
    EntityType.PRODUCT: PRODUCT_FIELDS,
    EntityType.BRAND: BRAND_FIELDS,
    EntityType.ATTRIBUTE: ATTRIBUTE_FIELDS,
}


def get_target_fields(entity_type) -> Tuple[TargetField, ...]:
    return TARGET_SCHEMAS[EntityType(entity_type)]


def target_field_names(entity_type) -> List[str]:
    return [target.name for target in get_target_fields(entity_type)]


def required_fields(entity_type) -> List[str]:
    return [target.name for target in get_target_fields(entity_type) if target.required]
