"""Condition tree parsing and evaluation."""

from __future__ import annotations

from datetime import timedelta

import pytest

from dlwatch.automation.conditions import (
    BooleanPredicate,
    EvaluationContext,
    Group,
    InvalidPredicate,
    MultiSelectPredicate,
    NumericPredicate,
    TelemetryPredicate,
    TextPredicate,
    TimePredicate,
    evaluate,
    invalid_leaves,
    matching_items,
    parse_conditions,
    parse_leaf,
    speed_window_hours,
    uses_telemetry,
)
from dlwatch.db.models import ShadowState, SpeedSample
from helpers.fakes import T0, seeding, torrent

MB = 1024 * 1024


@pytest.fixture
def ctx() -> EvaluationContext:
    return EvaluationContext(now=T0)


def check(condition: dict, item: dict, ctx: EvaluationContext) -> bool:
    return evaluate(parse_leaf(condition), item, ctx)


class TestParseLeaf:
    def test_numeric_leaf(self):
        leaf = parse_leaf({"type": "progress", "operator": "gte", "value": "100"})
        assert leaf == NumericPredicate("PROGRESS", "gte", 100.0)

    def test_average_speed_window(self):
        leaf = parse_leaf({"type": "AVG_UPLOAD_SPEED", "operator": "lt", "value": 1, "hours": 6})
        assert isinstance(leaf, NumericPredicate)
        assert leaf.hours == 6.0

    def test_time_leaf(self):
        assert isinstance(parse_leaf({"type": "AGE", "operator": "gt", "value": 48}), TimePredicate)

    def test_text_operator_defaults_to_contains(self):
        leaf = parse_leaf({"type": "TRACKER", "value": "Example"})
        assert leaf == TextPredicate("TRACKER", "contains", "example")

    def test_boolean_leaf_without_operator(self):
        assert parse_leaf({"type": "PRIVATE", "value": True}) == BooleanPredicate("PRIVATE", None, True)

    def test_status_values_are_lowercased(self):
        leaf = parse_leaf({"type": "STATUS", "operator": "is_any_of", "value": ["Seeding", "COMPLETED"]})
        assert leaf == MultiSelectPredicate("STATUS", "is_any_of", frozenset({"seeding", "completed"}))

    @pytest.mark.parametrize(
        "raw",
        [
            "PROGRESS >= 100",
            {"type": "BOGUS", "operator": "gt", "value": 1},
            {"type": "PROGRESS", "operator": "between", "value": 1},
            {"type": "PROGRESS", "operator": "gt", "value": "lots"},
            {"type": "PROGRESS", "operator": "gt", "value": True},
            {"type": "AGE", "operator": "gt"},
            {"type": "NAME", "operator": "sounds_like", "value": "x"},
            {"type": "NAME", "operator": "matches", "value": "(unclosed"},
            {"type": "STATUS", "operator": "is_any_of", "value": "seeding"},
            {"type": "PRIVATE", "operator": "maybe"},
        ],
    )
    def test_malformed_conditions_become_invalid(self, raw):
        assert isinstance(parse_leaf(raw), InvalidPredicate)


class TestParseTree:
    def test_none_matches_everything(self, ctx):
        tree = parse_conditions(None)
        assert evaluate(tree, torrent(1), ctx) is True

    def test_empty_legacy_list_matches_everything(self, ctx):
        assert evaluate(parse_conditions([]), torrent(1), ctx) is True

    def test_empty_group_tree_matches_nothing(self, ctx):
        tree = parse_conditions({"logicOperator": "and", "groups": []})
        assert evaluate(tree, torrent(1), ctx) is False

    def test_group_tree_shape(self):
        tree = parse_conditions(
            {
                "logicOperator": "or",
                "groups": [
                    {"logicOperator": "and", "conditions": [{"type": "SEEDS", "operator": "lt", "value": 1}]},
                    {"conditions": [{"type": "RATIO", "operator": "gte", "value": 2}]},
                ],
            }
        )
        assert isinstance(tree, Group)
        assert tree.operator == "or"
        assert [child.operator for child in tree.children] == ["and", "and"]

    def test_unrecognised_tree_is_invalid(self, ctx):
        tree = parse_conditions("everything")
        assert isinstance(tree, InvalidPredicate)
        assert evaluate(tree, torrent(1), ctx) is False

    def test_invalid_leaves_are_collected(self):
        tree = parse_conditions(
            {"groups": [{"conditions": [{"type": "BOGUS"}, {"type": "SEEDS", "operator": "gt", "value": 0}]}]}
        )
        assert [leaf.raw for leaf in invalid_leaves(tree)] == [{"type": "BOGUS"}]


class TestNumeric:
    def test_progress_is_authored_in_percent(self, ctx):
        condition = {"type": "PROGRESS", "operator": "gte", "value": 100}
        assert check(condition, seeding(1), ctx) is True
        assert check(condition, torrent(2), ctx) is False

    def test_speed_is_authored_in_megabytes(self, ctx):
        assert check({"type": "DOWNLOAD_SPEED", "operator": "gt", "value": 1}, torrent(1), ctx) is True
        assert check({"type": "DOWNLOAD_SPEED", "operator": "gt", "value": 2}, torrent(1), ctx) is False

    def test_eta_is_authored_in_minutes(self, ctx):
        assert check({"type": "ETA", "operator": "lte", "value": 5}, torrent(1), ctx) is True

    def test_ratio_falls_back_to_byte_counters(self, ctx):
        item = seeding(1, ratio=None, total_downloaded=100, total_uploaded=250)
        assert check({"type": "RATIO", "operator": "gte", "value": 2.5}, item, ctx) is True

    def test_file_count(self, ctx):
        item = torrent(1, files=[{"id": 0}, {"id": 1}])
        assert check({"type": "FILE_COUNT", "operator": "eq", "value": 2}, item, ctx) is True

    def test_missing_field_reads_as_zero(self, ctx):
        assert check({"type": "AVAILABILITY", "operator": "eq", "value": 0}, torrent(1), ctx) is True


class TestAverageSpeed:
    def _history(self, *points):
        return [
            SpeedSample(item_id="1", timestamp=T0 - timedelta(minutes=ago), total_downloaded=down, total_uploaded=0)
            for ago, down in points
        ]

    def test_average_over_window(self):
        ctx = EvaluationContext(now=T0, speed_history={"1": self._history((30, 0), (0, 1800 * MB))})
        condition = {"type": "AVG_DOWNLOAD_SPEED", "operator": "gte", "value": 1}
        assert check(condition, torrent(1), ctx) is True

    def test_window_with_single_sample_reads_zero(self):
        ctx = EvaluationContext(now=T0, speed_history={"1": self._history((30, 0), (0, 1800 * MB))})
        condition = {"type": "AVG_DOWNLOAD_SPEED", "operator": "gt", "value": 0, "hours": 0.25}
        assert check(condition, torrent(1), ctx) is False

    def test_item_without_history_reads_zero(self, ctx):
        condition = {"type": "AVG_UPLOAD_SPEED", "operator": "lt", "value": 0.1}
        assert check(condition, seeding(7), ctx) is True

    def test_speed_window_hours(self):
        tree = parse_conditions(
            [
                {"type": "AVG_DOWNLOAD_SPEED", "operator": "lt", "value": 1, "hours": 2},
                {"type": "AVG_UPLOAD_SPEED", "operator": "lt", "value": 1, "hours": 6},
            ]
        )
        assert speed_window_hours(tree) == 6.0
        assert speed_window_hours(parse_conditions([{"type": "SEEDS", "operator": "gt", "value": 0}])) == 0.0


class TestTime:
    def test_age_in_hours(self, ctx):
        assert check({"type": "AGE", "operator": "gt", "value": 1}, torrent(1), ctx) is True
        assert check({"type": "AGE", "operator": "gt", "value": 3}, torrent(1), ctx) is False

    def test_seeding_time(self, ctx):
        assert check({"type": "SEEDING_TIME", "operator": "gte", "value": 24}, seeding(1), ctx) is True

    def test_missing_timestamp_never_matches(self, ctx):
        assert check({"type": "SEEDING_TIME", "operator": "lt", "value": 1000}, torrent(1), ctx) is False

    def test_unparseable_timestamp_never_matches(self, ctx):
        item = torrent(1, created_at="yesterday")
        assert check({"type": "AGE", "operator": "gt", "value": 0}, item, ctx) is False

    def test_expires_counts_hours_remaining(self, ctx):
        item = torrent(1, expires_at=(T0 + timedelta(hours=1)).isoformat())
        assert check({"type": "EXPIRES_AT", "operator": "lt", "value": 2}, item, ctx) is True

    def test_already_expired_does_not_satisfy_greater_than(self, ctx):
        item = torrent(1, expires_at=(T0 - timedelta(hours=5)).isoformat())
        assert check({"type": "EXPIRES_AT", "operator": "gt", "value": -10}, item, ctx) is False
        assert check({"type": "EXPIRES_AT", "operator": "lt", "value": 2}, item, ctx) is True


class TestTelemetry:
    def _ctx(self, **timers) -> EvaluationContext:
        shadow = ShadowState(item_id="1", account_id=1, last_state="downloading", updated_at=T0, **timers)
        return EvaluationContext(now=T0, telemetry={"1": shadow})

    def test_parses_to_telemetry_leaf(self):
        leaf = parse_leaf({"type": "download_stalled_time", "operator": "gt", "value": "30"})
        assert leaf == TelemetryPredicate("DOWNLOAD_STALLED_TIME", "gt", 30.0)
        assert uses_telemetry(parse_conditions([{"type": "UPLOAD_STALLED_TIME", "operator": "gt", "value": 1}]))
        assert not uses_telemetry(parse_conditions([{"type": "AGE", "operator": "gt", "value": 1}]))

    def test_stalled_time_in_minutes(self):
        ctx = self._ctx(stalled_since=T0 - timedelta(minutes=45))
        assert check({"type": "DOWNLOAD_STALLED_TIME", "operator": "gt", "value": 30}, torrent(1), ctx)
        assert not check({"type": "DOWNLOAD_STALLED_TIME", "operator": "gt", "value": 60}, torrent(1), ctx)

    def test_not_stalled_never_matches(self, ctx):
        for operator in ("gt", "lt", "eq"):
            assert not check({"type": "UPLOAD_STALLED_TIME", "operator": operator, "value": 0}, seeding(1), ctx)

    def test_last_activity_in_minutes(self):
        ctx = self._ctx(last_upload_activity_at=T0 - timedelta(minutes=90))
        assert check({"type": "LAST_UPLOAD_ACTIVITY_AT", "operator": "gte", "value": 90}, seeding(1), ctx)
        assert check({"type": "LAST_UPLOAD_ACTIVITY_AT", "operator": "lt", "value": 120}, seeding(1), ctx)

    def test_no_recorded_activity_counts_as_long_ago(self, ctx):
        condition = {"type": "LAST_DOWNLOAD_ACTIVITY_AT", "value": 60}
        assert check({**condition, "operator": "gt"}, torrent(1), ctx)
        assert check({**condition, "operator": "gte"}, torrent(1), ctx)
        assert not check({**condition, "operator": "lt"}, torrent(1), ctx)
        assert not check({**condition, "operator": "eq"}, torrent(1), ctx)


class TestText:
    def test_comparisons_ignore_case(self, ctx):
        item = torrent(1, name="Ubuntu-24.04-Desktop.iso")
        assert check({"type": "NAME", "operator": "contains", "value": "DESKTOP"}, item, ctx) is True
        assert check({"type": "NAME", "operator": "starts_with", "value": "ubuntu"}, item, ctx) is True
        assert check({"type": "NAME", "operator": "ends_with", "value": ".ISO"}, item, ctx) is True
        assert check({"type": "NAME", "operator": "equals", "value": "ubuntu-24.04-desktop.iso"}, item, ctx) is True
        assert check({"type": "NAME", "operator": "not_contains", "value": "server"}, item, ctx) is True
        assert check({"type": "NAME", "operator": "not_equals", "value": "other"}, item, ctx) is True

    def test_regex_operators(self, ctx):
        item = torrent(12)
        assert check({"type": "NAME", "operator": "matches", "value": r"distro-\d+\.ISO$"}, item, ctx) is True
        assert check({"type": "NAME", "operator": "not_matches", "value": r"^windows"}, item, ctx) is True

    def test_missing_text_reads_as_empty(self, ctx):
        item = torrent(1, tracker=None)
        assert check({"type": "TRACKER", "operator": "equals", "value": ""}, item, ctx) is True


class TestBooleanAndStatus:
    def test_is_true_and_is_false(self, ctx):
        item = torrent(1, private=True)
        assert check({"type": "PRIVATE", "operator": "is_true"}, item, ctx) is True
        assert check({"type": "CACHED", "operator": "is_false"}, item, ctx) is True

    def test_plain_value_comparison(self, ctx):
        assert check({"type": "IS_ACTIVE", "value": True}, torrent(1), ctx) is True
        assert check({"type": "IS_ACTIVE", "value": "false"}, torrent(1), ctx) is False

    def test_numeric_operator_against_flag(self, ctx):
        assert check({"type": "IS_ACTIVE", "operator": "eq", "value": 1}, torrent(1), ctx) is True

    def test_missing_flag_is_false(self, ctx):
        assert check({"type": "SEEDING_ENABLED", "operator": "is_true"}, torrent(1), ctx) is False

    def test_status_any_and_none_of(self, ctx):
        any_of = {"type": "STATUS", "operator": "is_any_of", "value": ["Seeding"]}
        none_of = {"type": "STATUS", "operator": "is_none_of", "value": ["seeding"]}
        assert check(any_of, seeding(1), ctx) is True
        assert check(any_of, torrent(2), ctx) is False
        assert check(none_of, torrent(2), ctx) is True


class TestGroups:
    def test_or_of_and_groups(self, ctx):
        tree = parse_conditions(
            {
                "logicOperator": "or",
                "groups": [
                    {
                        "logicOperator": "and",
                        "conditions": [
                            {"type": "PROGRESS", "operator": "gte", "value": 100},
                            {"type": "RATIO", "operator": "gte", "value": 2},
                        ],
                    },
                    {"conditions": [{"type": "SEEDS", "operator": "eq", "value": 0}]},
                ],
            }
        )
        assert evaluate(tree, seeding(1, ratio=2.5), ctx) is True
        assert evaluate(tree, seeding(2, ratio=1.0), ctx) is False
        assert evaluate(tree, torrent(3, seeds=0), ctx) is True

    def test_invalid_leaf_fails_and_but_not_or(self, ctx):
        leaves = [{"type": "BOGUS"}, {"type": "SEEDS", "operator": "gt", "value": 0}]
        and_tree = parse_conditions({"logicOperator": "and", "conditions": leaves})
        or_tree = parse_conditions({"logicOperator": "or", "conditions": leaves})
        assert evaluate(and_tree, torrent(1), ctx) is False
        assert evaluate(or_tree, torrent(1), ctx) is True

    def test_matching_items(self, ctx):
        tree = parse_conditions([{"type": "STATUS", "operator": "is_any_of", "value": ["seeding"]}])
        items = [torrent(1), seeding(2), seeding(3)]
        assert [item["id"] for item in matching_items(tree, items, ctx)] == [2, 3]

    def test_non_predicate_is_rejected(self, ctx):
        with pytest.raises(TypeError):
            evaluate(object(), torrent(1), ctx)
