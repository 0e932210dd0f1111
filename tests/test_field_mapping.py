from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from langchain_core.messages import SystemMessage

from catalog_import.domain.mapping.history import MappingHistory
from catalog_import.domain.mapping.llm import LLMFieldSuggester, parse_llm_mappings
from catalog_import.domain.mapping.models import FieldMapping, MappingStrategy, aggregate_confidence
from catalog_import.domain.mapping.normalize import normalize_column_name
from catalog_import.domain.mapping.schema_mapper import FieldMappingEngine, profile_values
from catalog_import.domain.mapping.target_schema import get_target_fields, required_fields


@pytest.fixture
def engine():
    return FieldMappingEngine(history=MappingHistory(), min_confidence=60, learn_confidence=70)


def test_normalize_column_name():
    assert normalize_column_name("Product Name") == "productname"
    assert normalize_column_name("product_name") == "productname"
    assert normalize_column_name("Compare-At Price ($)") == "compareatprice"


def test_exact_match(engine):
    mapping = engine.exact_match("SKU", get_target_fields("product"))

    assert mapping.target_field == "sku"
    assert mapping.confidence == 95
    assert mapping.strategy == MappingStrategy.EXACT


def test_synonym_match(engine):
    mapping = engine.fuzzy_match("Qty", get_target_fields("product"))

    assert mapping.target_field == "stock"
    assert mapping.confidence == 80
    assert mapping.strategy == MappingStrategy.FUZZY


def test_fuzzy_similarity_match(engine):
    mapping = engine.fuzzy_match("Prices", get_target_fields("product"))

    # "prices" vs "price": ratio 10/11
    assert mapping.target_field == "price"
    assert mapping.confidence == 77


def test_statistical_match_unique_and_shared_kinds(engine):
    gtin = engine.statistical_match("col", ["4006381333931", "1234567890123"], get_target_fields("product"))
    assert (gtin.target_field, gtin.confidence) == ("gtin", 65)

    stock = engine.statistical_match("col", [1, 2, 3], get_target_fields("product"))
    assert (stock.target_field, stock.confidence) == ("stock", 60)
    assert stock.strategy == MappingStrategy.STATISTICAL

    website = engine.statistical_match("col", ["https://acme.com", "http://bolt.io"], get_target_fields("brand"))
    assert website.target_field == "website"

    assert engine.statistical_match("col", ["free text", "more text"], get_target_fields("product")) is None


@pytest.mark.parametrize("values, expected", [
    (["true", "no"], "boolean"),
    ([True, False], "boolean"),
    (["draft", "live"], "status"),
    (["blue-widget", "red-gadget"], "slug"),
    (["9.99", "12.50"], "money"),
    (["AB-100", "CD-200"], "identifier"),
    (["hello world"], "text"),
    ([None, ""], "text"),
])
def test_profile_values(values, expected):
    assert profile_values(values) == expected


def test_suggest_maps_common_product_export(engine, product_rows):
    suggestion = engine.suggest(["Product Name", "SKU", "Price", "Qty"], product_rows(5), "product")

    by_source = {mapping.source_field: mapping for mapping in suggestion.mappings}
    assert by_source["Product Name"].target_field == "name"
    assert by_source["SKU"].strategy == MappingStrategy.EXACT
    assert by_source["Price"].target_field == "price"
    assert by_source["Qty"].target_field == "stock"
    assert [mapping.target_field for mapping in suggestion.mappings] == ["name", "sku", "price", "stock"]
    assert suggestion.confidence == 87.5
    assert suggestion.unmapped_sources == []
    assert suggestion.missing_required == []


def test_suggest_assigns_each_target_once(engine):
    rows = [{"Name": "Widget", "Product Name": "Widget"}]
    suggestion = engine.suggest(["Name", "Product Name"], rows, "product")

    assert len(suggestion.mappings) == 1
    assert suggestion.mappings[0].source_field == "Name"
    assert suggestion.unmapped_sources == ["Product Name"]


def test_suggest_reports_missing_required_fields(engine):
    suggestion = engine.suggest(["SKU", "Zzz"], [{"SKU": "W-1", "Zzz": "some words"}], "product")

    assert suggestion.missing_required == required_fields("product")
    assert "Zzz" in suggestion.unmapped_sources


def test_suggest_uses_learned_mappings(engine):
    engine.learn("product", [
        FieldMapping(source_field="Zq Ident", target_field="sku", confidence=100, strategy=MappingStrategy.MANUAL),
    ])

    suggestion = engine.suggest(["Zq Ident"], [{"Zq Ident": "some words"}], "product")

    assert len(suggestion.mappings) == 1
    mapping = suggestion.mappings[0]
    assert mapping.target_field == "sku"
    assert mapping.strategy == MappingStrategy.HISTORICAL
    assert mapping.confidence == 65


def test_history_ignores_low_confidence_mappings():
    history = MappingHistory()
    weak = FieldMapping(source_field="X", target_field="sku", confidence=50, strategy=MappingStrategy.FUZZY)

    assert history.record("product", [weak], min_confidence=70) == 0
    assert len(history) == 0


def test_history_is_scoped_by_entity_type():
    history = MappingHistory()
    history.record("brand", [
        FieldMapping(source_field="Maker", target_field="name", confidence=90, strategy=MappingStrategy.MANUAL),
    ])

    assert history.lookup("brand", "maker") == [("name", 1.0)]
    assert history.lookup("product", "maker") == []

    history.clear()
    assert history.lookup("brand", "maker") == []


def test_aggregate_confidence_is_plain_mean():
    mappings = [
        FieldMapping(source_field="a", target_field="name", confidence=95, strategy=MappingStrategy.EXACT),
        FieldMapping(source_field="b", target_field="sku", confidence=80, strategy=MappingStrategy.FUZZY),
        FieldMapping(source_field="c", target_field="price", confidence=65, strategy=MappingStrategy.STATISTICAL),
    ]
    assert aggregate_confidence(mappings) == 80.0
    assert aggregate_confidence([]) == 0.0


def test_field_mapping_clamps_confidence():
    mapping = FieldMapping(source_field="a", target_field="b", confidence=140, strategy=MappingStrategy.LLM)
    assert mapping.confidence == 100.0
    assert mapping.as_event_payload() == {
        "sourceField": "a",
        "targetField": "b",
        "confidence": 100.0,
        "strategy": "llm",
    }


# LLM suggestions


def test_llm_suggestions_fill_unresolved_columns(product_rows):
    client = MagicMock()
    client.invoke.return_value = SimpleNamespace(content=(
        'Here is the mapping: {"mappings": ['
        '{"source": "Zzz", "target": "story", "confidence": 95}, '
        '{"source": "Other", "target": "bogus", "confidence": 50}]}'
    ))
    engine = FieldMappingEngine(
        history=MappingHistory(),
        llm_suggester=LLMFieldSuggester(client=client, api_key="test-key"),
        min_confidence=60,
    )

    rows = [{"Product Name": "Widget", "Zzz": "Once upon a time"}]
    suggestion = engine.suggest(["Product Name", "Zzz"], rows, "product")

    by_source = {mapping.source_field: mapping for mapping in suggestion.mappings}
    assert by_source["Zzz"].target_field == "story"
    assert by_source["Zzz"].strategy == MappingStrategy.LLM
    assert by_source["Zzz"].confidence == 89
    client.invoke.assert_called_once()
    messages = client.invoke.call_args.args[0]
    assert isinstance(messages[0], SystemMessage)
    assert "Zzz" in messages[1].content


def test_llm_failure_yields_no_suggestions():
    client = MagicMock()
    client.invoke.side_effect = RuntimeError("service unavailable")
    suggester = LLMFieldSuggester(client=client, api_key="test-key")

    assert suggester.suggest("product", ["Zzz"], [], get_target_fields("product")) == []


def test_llm_reply_with_content_blocks():
    client = MagicMock()
    client.invoke.return_value = SimpleNamespace(content=[
        {"type": "text", "text": '{"mappings": [{"source": "Maker", "target": "name", "confidence": "high"}]}'},
    ])
    suggester = LLMFieldSuggester(client=client, api_key="test-key")

    suggestions = suggester.suggest("brand", ["Maker"], [], get_target_fields("brand"))

    assert len(suggestions) == 1
    assert suggestions[0].confidence == 40


@pytest.mark.parametrize("text, expected", [
    ('{"mappings": [{"source": "a", "target": "b"}]}', [{"source": "a", "target": "b"}]),
    ("no json here", []),
    ("{not valid json}", []),
    ('{"mappings": "nope"}', []),
])
def test_parse_llm_mappings(text, expected):
    assert parse_llm_mappings(text) == expected
