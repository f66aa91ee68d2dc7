"""
Field mapping and value transformations for provider payloads.

Widgets map arbitrary provider fields onto their own display fields.  The
available transformations are a closed set of pydantic models discriminated
on ``kind``; each is dispatched statically, so mapping templates stored as
JSON can never execute code.

Input that a transformation does not apply to (a string given to a numeric
transformation, say) passes through unchanged.
"""

import logging
import operator
import re
from typing import Annotated, Any, Callable, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

_MISSING = object()

_OPERATORS: Dict[str, Callable[[float, float], float]] = {
    "add": operator.add,
    "subtract": operator.sub,
    "multiply": operator.mul,
    "divide": operator.truediv,
}

_CURRENCY_SYMBOLS: Dict[str, str] = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "JPY": "¥",
    "INR": "₹",
}


class Direct(BaseModel):
    kind: Literal["direct"] = "direct"


class FormatCurrency(BaseModel):
    kind: Literal["format_currency"] = "format_currency"
    currency: str = "USD"


class FormatPercentage(BaseModel):
    """Render a ratio (0.0123) as a percentage string ("1.23%")."""

    kind: Literal["format_percentage"] = "format_percentage"


class Calculate(BaseModel):
    kind: Literal["calculate"] = "calculate"
    op: Literal["add", "subtract", "multiply", "divide"]
    operand: float


class ExtractRegex(BaseModel):
    """Return the first capture group (or whole match) of *pattern*."""

    kind: Literal["extract_regex"] = "extract_regex"
    pattern: str

    @field_validator("pattern")
    @classmethod
    def validate_pattern(cls, v: str) -> str:
        try:
            re.compile(v)
        except re.error as exc:
            raise ValueError(f"invalid regular expression: {exc}") from exc
        return v


Transformation = Annotated[
    Union[Direct, FormatCurrency, FormatPercentage, Calculate, ExtractRegex],
    Field(discriminator="kind"),
]


class FieldMapping(BaseModel):
    """Copy ``source_field`` to ``target_field`` (dotted paths), transforming on the way."""

    source_field: str
    target_field: str
    transformation: Optional[Transformation] = None
    description: Optional[str] = None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def format_currency(value: float, currency: str = "USD") -> str:
    symbol = _CURRENCY_SYMBOLS.get(currency.upper())
    sign = "-" if value < 0 else ""
    if symbol is None:
        return f"{sign}{abs(value):,.2f} {currency.upper()}"
    return f"{sign}{symbol}{abs(value):,.2f}"


def apply_transformation(value: Any, rule: Optional[Transformation] = None) -> Any:
    """Apply *rule* to *value*; ``None`` or :class:`Direct` returns it as is."""
    if rule is None or isinstance(rule, Direct):
        return value

    if isinstance(rule, FormatCurrency):
        return format_currency(value, rule.currency) if _is_number(value) else value

    if isinstance(rule, FormatPercentage):
        return f"{value * 100:.2f}%" if _is_number(value) else value

    if isinstance(rule, Calculate):
        if not _is_number(value):
            return value
        try:
            return _OPERATORS[rule.op](value, rule.operand)
        except (ZeroDivisionError, OverflowError) as exc:
            logger.warning("Calculate transformation failed (%s); value left unchanged", exc)
            return value

    if isinstance(rule, ExtractRegex):
        if not isinstance(value, str):
            return value
        match = re.search(rule.pattern, value)
        if match is None:
            return value
        return match.group(1) if match.groups() else match.group(0)

    raise TypeError(f"Unknown transformation: {type(rule).__name__}")


def get_path(payload: Any, path: str, default: Any = None) -> Any:
    """Read a dotted *path* (``"quote.price"``) out of nested dicts."""
    current = payload
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current


def set_path(target: Dict[str, Any], path: str, value: Any) -> None:
    """Write *value* at a dotted *path*, creating intermediate dicts."""
    parts = path.split(".")
    current = target
    for part in parts[:-1]:
        current = current.setdefault(part, {})
        if not isinstance(current, dict):
            raise ValueError(f"Cannot write {path!r}: {part!r} already holds a value")
    current[parts[-1]] = value


def check_target_conflicts(mappings: List[FieldMapping]) -> None:
    """Reject mappings where one target path is a parent of another.

    Raises:
        ValueError: e.g. ``"display"`` and ``"display.symbol"`` in one list
    """
    targets = {tuple(m.target_field.split(".")) for m in mappings}
    for target in targets:
        for depth in range(1, len(target)):
            if target[:depth] in targets:
                raise ValueError(
                    f"Target field {'.'.join(target[:depth])!r} conflicts with "
                    f"{'.'.join(target)!r}"
                )


def apply_mappings(payload: Dict[str, Any], mappings: List[FieldMapping]) -> Dict[str, Any]:
    """Build a new dict from *payload* according to *mappings*.

    Source fields missing from the payload are skipped.

    Raises:
        ValueError: When target paths conflict (see :func:`check_target_conflicts`)
    """
    check_target_conflicts(mappings)
    result: Dict[str, Any] = {}
    for mapping in mappings:
        value = get_path(payload, mapping.source_field, _MISSING)
        if value is _MISSING:
            logger.debug("Mapping source field %r not present; skipped", mapping.source_field)
            continue
        set_path(result, mapping.target_field, apply_transformation(value, mapping.transformation))
    return result
