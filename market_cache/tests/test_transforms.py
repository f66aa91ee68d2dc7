"""
Tests for widget field mappings and value transformations.
"""

import logging

import pytest
from pydantic import TypeAdapter, ValidationError

from market_cache.transforms import (
    Calculate,
    Direct,
    ExtractRegex,
    FieldMapping,
    FormatCurrency,
    FormatPercentage,
    Transformation,
    apply_mappings,
    apply_transformation,
    check_target_conflicts,
    format_currency,
    get_path,
    set_path,
)


# ---------------------------------------------------------------------------
# Currency formatting
# ---------------------------------------------------------------------------


def test_format_currency_usd() -> None:
    assert format_currency(1234.5) == "$1,234.50"


def test_format_currency_negative() -> None:
    assert format_currency(-12.5, "eur") == "-€12.50"


def test_format_currency_unknown_code() -> None:
    assert format_currency(99, "xyz") == "99.00 XYZ"


# ---------------------------------------------------------------------------
# Individual transformations
# ---------------------------------------------------------------------------


def test_no_rule_and_direct_pass_through() -> None:
    assert apply_transformation(5) == 5
    assert apply_transformation("abc", Direct()) == "abc"


def test_format_currency_rule() -> None:
    assert apply_transformation(875.42, FormatCurrency()) == "$875.42"
    assert apply_transformation("n/a", FormatCurrency()) == "n/a"


def test_format_percentage_rule() -> None:
    assert apply_transformation(0.0123, FormatPercentage()) == "1.23%"
    assert apply_transformation(None, FormatPercentage()) is None


@pytest.mark.parametrize(
    "op, operand, expected",
    [
        ("add", 2, 12),
        ("subtract", 2, 8),
        ("multiply", 2, 20),
        ("divide", 4, 2.5),
    ],
)
def test_calculate_rule(op: str, operand: float, expected: float) -> None:
    assert apply_transformation(10, Calculate(op=op, operand=operand)) == expected


def test_calculate_divide_by_zero_leaves_value(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.WARNING, logger="market_cache.transforms"):
        assert apply_transformation(10, Calculate(op="divide", operand=0)) == 10
    assert "value left unchanged" in caplog.text


def test_calculate_overflow_leaves_value() -> None:
    huge = 10**400
    assert apply_transformation(huge, Calculate(op="add", operand=1.0)) == huge


def test_calculate_ignores_booleans() -> None:
    assert apply_transformation(True, Calculate(op="add", operand=1)) is True


def test_extract_regex_rule() -> None:
    assert apply_transformation("NASDAQ:AAPL", ExtractRegex(pattern=r":(\w+)")) == "AAPL"
    assert apply_transformation("AAPL 190", ExtractRegex(pattern=r"\d+")) == "190"
    assert apply_transformation("none", ExtractRegex(pattern=r"\d+")) == "none"


def test_invalid_regex_rejected() -> None:
    with pytest.raises(ValidationError):
        ExtractRegex(pattern="(unclosed")


def test_unknown_kind_rejected() -> None:
    adapter = TypeAdapter(Transformation)
    with pytest.raises(ValidationError):
        adapter.validate_python({"kind": "eval", "code": "1 + 1"})


def test_discriminated_parsing() -> None:
    adapter = TypeAdapter(Transformation)
    rule = adapter.validate_python({"kind": "calculate", "op": "multiply", "operand": 100})
    assert isinstance(rule, Calculate)


# ---------------------------------------------------------------------------
# Paths and mappings
# ---------------------------------------------------------------------------


def test_get_and_set_path() -> None:
    payload = {"quote": {"price": 1.5}}
    assert get_path(payload, "quote.price") == 1.5
    assert get_path(payload, "quote.volume", "missing") == "missing"

    target: dict = {}
    set_path(target, "display.price", "$1.50")
    assert target == {"display": {"price": "$1.50"}}


def test_apply_mappings_builds_new_payload() -> None:
    payload = {"symbol": "AAPL", "price": 190.5, "change_percent": 0.0125}
    mappings = [
        FieldMapping(source_field="symbol", target_field="ticker"),
        FieldMapping(
            source_field="price",
            target_field="display.price",
            transformation=FormatCurrency(),
        ),
        FieldMapping(
            source_field="change_percent",
            target_field="display.change",
            transformation=FormatPercentage(),
        ),
        FieldMapping(source_field="volume", target_field="volume"),
    ]

    assert apply_mappings(payload, mappings) == {
        "ticker": "AAPL",
        "display": {"price": "$190.50", "change": "1.25%"},
    }


def test_field_mapping_from_json() -> None:
    mapping = FieldMapping.model_validate(
        {
            "source_field": "price",
            "target_field": "price_cents",
            "transformation": {"kind": "calculate", "op": "multiply", "operand": 100},
        }
    )
    assert apply_mappings({"price": 2.5}, [mapping]) == {"price_cents": 250.0}


def test_conflicting_target_paths_rejected() -> None:
    """A scalar target cannot also be the parent of a nested target."""
    mappings = [
        FieldMapping(source_field="price", target_field="display"),
        FieldMapping(source_field="symbol", target_field="display.symbol"),
    ]

    with pytest.raises(ValueError, match="conflicts with"):
        apply_mappings({"price": 1.5, "symbol": "AAPL"}, mappings)

    with pytest.raises(ValueError, match="conflicts with"):
        check_target_conflicts(list(reversed(mappings)))


def test_sibling_target_paths_allowed() -> None:
    mappings = [
        FieldMapping(source_field="price", target_field="display.price"),
        FieldMapping(source_field="symbol", target_field="display.symbol"),
    ]
    check_target_conflicts(mappings)
    assert apply_mappings({"price": 1.5, "symbol": "AAPL"}, mappings) == {
        "display": {"price": 1.5, "symbol": "AAPL"}
    }


def test_set_path_refuses_to_write_through_scalar() -> None:
    target = {"display": 1.5}
    with pytest.raises(ValueError, match="already holds a value"):
        set_path(target, "display.symbol", "AAPL")
    assert target == {"display": 1.5}
