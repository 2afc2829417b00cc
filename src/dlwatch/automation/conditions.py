"""Rule condition trees.

Stored conditions are parsed once per evaluation pass into a small tagged
AST (one node type per column family plus AND/OR groups) and evaluated by a
single recursive visitor. Anything malformed becomes an ``InvalidPredicate``
that never matches, so one broken rule cannot abort the pass.

Accepted stored shapes::

    {"logicOperator": "and", "groups": [{"logicOperator": "or", "conditions": [...]}]}
    [{"type": "PROGRESS", "operator": "gte", "value": 100}, ...]     # legacy, AND
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import singledispatch
from typing import Any, Union

import structlog

from dlwatch.automation.speed import average_speed
from dlwatch.snapshots.manager import item_ratio
from dlwatch.snapshots.status import item_key, item_status
from dlwatch.snapshots.telemetry import parse_timestamp

logger = structlog.get_logger()

BYTES_PER_MB = 1024 * 1024
SECONDS_PER_HOUR = 3600
DEFAULT_AVG_SPEED_HOURS = 1.0

NUMERIC_OPERATORS = frozenset({"gt", "lt", "gte", "lte", "eq"})
TEXT_OPERATORS = frozenset(
    {"equals", "not_equals", "contains", "not_contains", "starts_with", "ends_with", "matches", "not_matches"}
)
BOOLEAN_OPERATORS = frozenset({"is_true", "is_false"})
MULTI_SELECT_OPERATORS = frozenset({"is_any_of", "is_none_of"})


# ---------------------------------------------------------------------------
# AST
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NumericPredicate:
    column: str
    operator: str
    value: float
    hours: float = DEFAULT_AVG_SPEED_HOURS


@dataclass(frozen=True)
class TextPredicate:
    column: str
    operator: str
    value: str
    pattern: re.Pattern[str] | None = None


@dataclass(frozen=True)
class TimePredicate:
    column: str
    operator: str
    value: float


@dataclass(frozen=True)
class TelemetryPredicate:
    column: str
    operator: str
    value: float


@dataclass(frozen=True)
class BooleanPredicate:
    column: str
    operator: str | None
    value: Any = None


@dataclass(frozen=True)
class MultiSelectPredicate:
    column: str
    operator: str
    values: frozenset[str]


@dataclass(frozen=True)
class InvalidPredicate:
    reason: str
    raw: Any = None


@dataclass(frozen=True)
class Group:
    operator: str
    children: tuple[Predicate, ...] = field(default_factory=tuple)
    # Legacy flat rules with no conditions match every item; an empty group matches none.
    match_empty: bool = False


Predicate = Union[
    NumericPredicate,
    TextPredicate,
    TimePredicate,
    TelemetryPredicate,
    BooleanPredicate,
    MultiSelectPredicate,
    InvalidPredicate,
    Group,
]


@dataclass
class EvaluationContext:
    """Per-pass inputs shared by every leaf."""

    now: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    speed_history: Mapping[str, Sequence[Any]] = field(default_factory=dict)
    # item key -> shadow row carrying the activity timers
    telemetry: Mapping[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Column catalog
# ---------------------------------------------------------------------------


def _num(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def _avg_speed(kind: str) -> Callable[[dict[str, Any], EvaluationContext, NumericPredicate], float]:
    field_name = "total_downloaded" if kind == "download" else "total_uploaded"

    def read(item: dict[str, Any], ctx: EvaluationContext, pred: NumericPredicate) -> float:
        samples = ctx.speed_history.get(item_key(item), ())
        return average_speed(samples, field_name, ctx.now, pred.hours) / BYTES_PER_MB

    return read


NumericReader = Callable[[dict[str, Any], EvaluationContext, NumericPredicate], float]

NUMERIC_COLUMNS: dict[str, NumericReader] = {
    # authored in percent, reported as a 0-1 ratio
    "PROGRESS": lambda item, ctx, p: _num(item.get("progress")) * 100,
    # authored in MB/s and MB, reported in bytes
    "DOWNLOAD_SPEED": lambda item, ctx, p: _num(item.get("download_speed")) / BYTES_PER_MB,
    "UPLOAD_SPEED": lambda item, ctx, p: _num(item.get("upload_speed")) / BYTES_PER_MB,
    "AVG_DOWNLOAD_SPEED": _avg_speed("download"),
    "AVG_UPLOAD_SPEED": _avg_speed("upload"),
    "TOTAL_DOWNLOADED": lambda item, ctx, p: _num(item.get("total_downloaded")) / BYTES_PER_MB,
    "TOTAL_UPLOADED": lambda item, ctx, p: _num(item.get("total_uploaded")) / BYTES_PER_MB,
    "FILE_SIZE": lambda item, ctx, p: _num(item.get("size")) / BYTES_PER_MB,
    # authored in minutes, reported in seconds
    "ETA": lambda item, ctx, p: _num(item.get("eta")) / 60,
    "SEEDS": lambda item, ctx, p: _num(item.get("seeds")),
    "PEERS": lambda item, ctx, p: _num(item.get("peers")),
    "RATIO": lambda item, ctx, p: item_ratio(item),
    "AVAILABILITY": lambda item, ctx, p: _num(item.get("availability")),
    "FILE_COUNT": lambda item, ctx, p: float(len(item.get("files") or ())),
}

# column -> (timestamp field, counts hours until the timestamp rather than since)
TIME_COLUMNS: dict[str, tuple[str, bool]] = {
    "AGE": ("created_at", False),
    "SEEDING_TIME": ("cached_at", False),
    "EXPIRES_AT": ("expires_at", True),
}

# column -> (shadow timer, an unrecorded timer counts as infinitely long ago); minutes since the timer
TELEMETRY_COLUMNS: dict[str, tuple[str, bool]] = {
    "LAST_DOWNLOAD_ACTIVITY_AT": ("last_download_activity_at", True),
    "LAST_UPLOAD_ACTIVITY_AT": ("last_upload_activity_at", True),
    "DOWNLOAD_STALLED_TIME": ("stalled_since", False),
    "UPLOAD_STALLED_TIME": ("upload_stalled_since", False),
}

TEXT_COLUMNS: dict[str, str] = {
    "NAME": "name",
    "TRACKER": "tracker",
}

BOOLEAN_COLUMNS: dict[str, str] = {
    "PRIVATE": "private",
    "CACHED": "cached",
    "ALLOW_ZIP": "allow_zipped",
    "IS_ACTIVE": "active",
    "SEEDING_ENABLED": "seed_torrent",
    "LONG_TERM_SEEDING": "long_term_seeding",
}

MULTI_SELECT_COLUMNS: dict[str, Callable[[dict[str, Any]], str]] = {
    "STATUS": item_status,
}


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _logic(raw: Any) -> str:
    return "or" if str(raw or "and").lower() == "or" else "and"


def _parse_number(raw: Any) -> float | None:
    if isinstance(raw, bool):
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None


def parse_leaf(raw: Any) -> Predicate:
    """Turn one stored condition into a typed predicate."""
    if not isinstance(raw, dict):
        return InvalidPredicate("condition is not an object", raw)
    column = str(raw.get("type") or "").upper()
    operator = raw.get("operator")

    if column in NUMERIC_COLUMNS:
        value = _parse_number(raw.get("value"))
        if operator not in NUMERIC_OPERATORS or value is None:
            return InvalidPredicate(f"{column}: bad operator or value", raw)
        hours = _parse_number(raw.get("hours")) or DEFAULT_AVG_SPEED_HOURS
        return NumericPredicate(column, operator, value, hours)

    if column in TIME_COLUMNS:
        value = _parse_number(raw.get("value"))
        if operator not in NUMERIC_OPERATORS or value is None:
            return InvalidPredicate(f"{column}: bad operator or value", raw)
        return TimePredicate(column, operator, value)

    if column in TELEMETRY_COLUMNS:
        value = _parse_number(raw.get("value"))
        if operator not in NUMERIC_OPERATORS or value is None:
            return InvalidPredicate(f"{column}: bad operator or value", raw)
        return TelemetryPredicate(column, operator, value)

    if column in TEXT_COLUMNS:
        operator = operator or "contains"
        if operator not in TEXT_OPERATORS:
            return InvalidPredicate(f"{column}: unknown text operator {operator!r}", raw)
        value = "" if raw.get("value") is None else str(raw.get("value"))
        pattern = None
        if operator in ("matches", "not_matches"):
            try:
                pattern = re.compile(value, re.IGNORECASE)
            except re.error as exc:
                return InvalidPredicate(f"{column}: invalid pattern ({exc})", raw)
        return TextPredicate(column, operator, value.lower(), pattern)

    if column in BOOLEAN_COLUMNS:
        if operator and operator not in BOOLEAN_OPERATORS and operator not in NUMERIC_OPERATORS:
            return InvalidPredicate(f"{column}: unknown boolean operator {operator!r}", raw)
        return BooleanPredicate(column, operator or None, raw.get("value"))

    if column in MULTI_SELECT_COLUMNS:
        operator = operator or "is_any_of"
        values = raw.get("value")
        if operator not in MULTI_SELECT_OPERATORS or not isinstance(values, list):
            return InvalidPredicate(f"{column}: expected a list with is_any_of/is_none_of", raw)
        return MultiSelectPredicate(column, operator, frozenset(str(v).lower() for v in values))

    return InvalidPredicate(f"unknown condition type {column!r}", raw)


def _parse_group(raw: Any) -> Predicate:
    if not isinstance(raw, dict):
        return InvalidPredicate("group is not an object", raw)
    if "groups" in raw:
        return Group(_logic(raw.get("logicOperator")), tuple(_parse_group(g) for g in raw.get("groups") or ()))
    return Group(_logic(raw.get("logicOperator")), tuple(parse_leaf(c) for c in raw.get("conditions") or ()))


def parse_conditions(raw: Any) -> Predicate:
    """Parse a rule's stored condition tree (group form or legacy flat list)."""
    if raw is None:
        return Group("and", (), match_empty=True)
    if isinstance(raw, list):
        return Group("and", tuple(parse_leaf(c) for c in raw), match_empty=True)
    if isinstance(raw, dict):
        if "groups" in raw:
            return _parse_group(raw)
        if "conditions" in raw:
            return Group(
                _logic(raw.get("logicOperator")),
                tuple(parse_leaf(c) for c in raw.get("conditions") or ()),
                match_empty=True,
            )
    return InvalidPredicate("unrecognised condition tree", raw)


def iter_leaves(node: Predicate) -> Iterator[Predicate]:
    if isinstance(node, Group):
        for child in node.children:
            yield from iter_leaves(child)
    else:
        yield node


def speed_window_hours(node: Predicate) -> float:
    """Longest average-speed window referenced by the tree, or 0 when none is."""
    hours = [
        leaf.hours
        for leaf in iter_leaves(node)
        if isinstance(leaf, NumericPredicate) and leaf.column.startswith("AVG_")
    ]
    return max(hours, default=0.0)


def uses_telemetry(node: Predicate) -> bool:
    return any(isinstance(leaf, TelemetryPredicate) for leaf in iter_leaves(node))


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


def compare(left: float, operator: str, right: float) -> bool:
    if operator == "gt":
        return left > right
    if operator == "lt":
        return left < right
    if operator == "gte":
        return left >= right
    if operator == "lte":
        return left <= right
    if operator == "eq":
        return left == right
    return False


def _as_bool(value: Any) -> bool:
    return value is True or value == 1 or (isinstance(value, str) and value.lower() == "true")


@singledispatch
def evaluate(node: Any, item: dict[str, Any], ctx: EvaluationContext) -> bool:
    raise TypeError(f"not a predicate node: {type(node).__name__}")


@evaluate.register
def _(node: Group, item: dict[str, Any], ctx: EvaluationContext) -> bool:
    if not node.children:
        return node.match_empty
    results = (evaluate(child, item, ctx) for child in node.children)
    return any(results) if node.operator == "or" else all(results)


@evaluate.register
def _(node: NumericPredicate, item: dict[str, Any], ctx: EvaluationContext) -> bool:
    return compare(NUMERIC_COLUMNS[node.column](item, ctx, node), node.operator, node.value)


@evaluate.register
def _(node: TimePredicate, item: dict[str, Any], ctx: EvaluationContext) -> bool:
    field_name, until = TIME_COLUMNS[node.column]
    ts = parse_timestamp(item.get(field_name))
    if ts is None:
        return False
    delta = (ts - ctx.now) if until else (ctx.now - ts)
    hours = delta.total_seconds() / SECONDS_PER_HOUR
    if until and hours < 0 and node.operator in ("gt", "gte"):
        return False
    return compare(hours, node.operator, node.value)


@evaluate.register
def _(node: TelemetryPredicate, item: dict[str, Any], ctx: EvaluationContext) -> bool:
    attr, unset_is_forever = TELEMETRY_COLUMNS[node.column]
    ts = parse_timestamp(getattr(ctx.telemetry.get(item_key(item)), attr, None))
    if ts is None:
        return unset_is_forever and node.operator in ("gt", "gte")
    minutes = (ctx.now - ts).total_seconds() / 60
    return compare(minutes, node.operator, node.value)


@evaluate.register
def _(node: TextPredicate, item: dict[str, Any], ctx: EvaluationContext) -> bool:
    text = str(item.get(TEXT_COLUMNS[node.column]) or "")
    if node.pattern is not None:
        found = node.pattern.search(text) is not None
        return found if node.operator == "matches" else not found
    text = text.lower()
    if node.operator == "equals":
        return text == node.value
    if node.operator == "not_equals":
        return text != node.value
    if node.operator == "contains":
        return node.value in text
    if node.operator == "not_contains":
        return node.value not in text
    if node.operator == "starts_with":
        return text.startswith(node.value)
    if node.operator == "ends_with":
        return text.endswith(node.value)
    return False


@evaluate.register
def _(node: BooleanPredicate, item: dict[str, Any], ctx: EvaluationContext) -> bool:
    flag = _as_bool(item.get(BOOLEAN_COLUMNS[node.column]))
    if node.operator == "is_true":
        return flag
    if node.operator == "is_false":
        return not flag
    if node.operator is not None:
        right = _parse_number(node.value)
        return right is not None and compare(1.0 if flag else 0.0, node.operator, right)
    return flag == _as_bool(node.value)


@evaluate.register
def _(node: MultiSelectPredicate, item: dict[str, Any], ctx: EvaluationContext) -> bool:
    label = MULTI_SELECT_COLUMNS[node.column](item)
    hit = label in node.values
    return hit if node.operator == "is_any_of" else not hit


@evaluate.register
def _(node: InvalidPredicate, item: dict[str, Any], ctx: EvaluationContext) -> bool:
    return False


def invalid_leaves(node: Predicate) -> list[InvalidPredicate]:
    return [leaf for leaf in iter_leaves(node) if isinstance(leaf, InvalidPredicate)]


def matching_items(
    node: Predicate, items: Sequence[dict[str, Any]], ctx: EvaluationContext
) -> list[dict[str, Any]]:
    return [item for item in items if evaluate(node, item, ctx)]
