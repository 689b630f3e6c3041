"""
Unit tests for changeaudit.core.rules.rule_base.

These tests validate ClassificationRule construction, matching and
occurrence building:
- validation of priorities, windows and match modes
- watch/match/kinds declarative matching and custom predicates
- default and custom occurrence variables
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, List

import pytest

from changeaudit.core.rules.rule_base import ClassificationRule, RuleContext, default_variables
from changeaudit.domain.models import ChangeKind, ChangeRecord


def _mk_change(key: str, old: Any = "a", new: Any = "b", kind: ChangeKind = ChangeKind.MODIFIED) -> ChangeRecord:
    return ChangeRecord(
        entity_type="order",
        entity_id="9",
        attribute_key=key,
        old_value=old,
        new_value=new,
        kind=kind,
    )


def _mk_ctx(**kwargs: Any) -> RuleContext:
    base = dict(now=datetime(2026, 1, 1, 10, 0, 0), entity_type="order", entity_id="9")
    base.update(kwargs)
    return RuleContext(**base)


@pytest.mark.parametrize(
    "kwargs",
    [
        dict(priority=-1, watch=("status",)),
        dict(priority=1, watch=("status",), coalesce_window_ms=-5),
        dict(priority=1, watch=("status",), match="some"),
        dict(priority=1),
        dict(priority=1, catch_all=True, on_create=True),
    ],
)
def test_invalid_rules_are_rejected(kwargs) -> None:
    with pytest.raises(ValueError):
        ClassificationRule(entity_type="order", code="9001", **kwargs)


def test_codes_are_normalized_to_strings() -> None:
    rule = ClassificationRule(entity_type="order", code=9001, priority=1, watch=["status"], suppressed_by=[9002])  # type: ignore[arg-type]
    assert rule.code == "9001"
    assert rule.suppressed_by == ("9002",)
    assert rule.name == "order:9001"


def test_match_any_and_all() -> None:
    changes = [_mk_change("status")]
    any_rule = ClassificationRule(entity_type="order", code="1", priority=1, watch=("status", "total"))
    all_rule = ClassificationRule(entity_type="order", code="2", priority=2, watch=("status", "total"), match="all")

    assert any_rule.matches(changes, _mk_ctx()) is True
    assert all_rule.matches(changes, _mk_ctx()) is False
    assert all_rule.matches(changes + [_mk_change("total")], _mk_ctx()) is True


def test_watch_covers_nested_paths() -> None:
    rule = ClassificationRule(entity_type="form", code="1", priority=1, watch=("fields",))
    assert rule.matches([_mk_change("fields[id=3].label")], _mk_ctx()) is True
    assert rule.matches([_mk_change("title")], _mk_ctx()) is False


def test_kinds_restrict_relevant_records() -> None:
    rule = ClassificationRule(entity_type="order", code="1", priority=1, watch=("notes",), kinds={ChangeKind.ADDED})

    assert rule.matches([_mk_change("notes[0]", kind=ChangeKind.REMOVED)], _mk_ctx()) is False
    assert rule.matches([_mk_change("notes[0]", kind=ChangeKind.ADDED)], _mk_ctx()) is True


def test_predicate_sees_full_change_set() -> None:
    seen: List[int] = []

    def pred(changes, ctx) -> bool:
        seen.append(len(changes))
        return any(c.new_value == "completed" for c in changes)

    rule = ClassificationRule(entity_type="order", code="1", priority=1, predicate=pred)
    changes = [_mk_change("status", "processing", "completed"), _mk_change("total", "1", "2")]

    assert rule.matches(changes, _mk_ctx()) is True
    assert seen == [2]


def test_catch_all_matches_any_non_empty_change_set() -> None:
    rule = ClassificationRule(entity_type="order", code="9", priority=99, catch_all=True)
    assert rule.matches([_mk_change("x")], _mk_ctx()) is True
    assert rule.matches([], _mk_ctx()) is False


def test_build_single_change_variables() -> None:
    rule = ClassificationRule(entity_type="order", code="9001", priority=1, watch=("status",))
    ctx = _mk_ctx(actor="admin", links={"EditUrl": "/orders/9/edit"})

    occ = rule.build([_mk_change("status", "processing", "completed"), _mk_change("total")], ctx)

    assert occ.code == "9001"
    assert occ.entity_type == "order"
    assert occ.entity_id == "9"
    assert occ.emitted_at == ctx.now
    assert dict(occ.variables) == {
        "EntityType": "order",
        "EntityId": "9",
        "Actor": "admin",
        "EditUrl": "/orders/9/edit",
        "AttributeKey": "status",
        "OldValue": "processing",
        "NewValue": "completed",
        "ChangeKind": "MODIFIED",
    }


def test_default_variables_for_several_changes() -> None:
    variables = default_variables([_mk_change("a"), _mk_change("b")], _mk_ctx())
    assert variables["ChangedKeys"] == "a, b"
    assert "AttributeKey" not in variables


def test_custom_variables_are_merged() -> None:
    rule = ClassificationRule(
        entity_type="order",
        code="9001",
        priority=1,
        watch=("status",),
        variables=lambda changes, ctx: {"Status": changes[0].new_value, "Empty": None},
    )
    occ = rule.build([_mk_change("status", "processing", "completed")], _mk_ctx())

    assert occ.variables["Status"] == "completed"
    assert occ.variables["Empty"] == ""
    assert occ.variables["AttributeKey"] == "status"


def test_deferred_rule() -> None:
    rule = ClassificationRule(entity_type="order", code="1", priority=1, watch=("x",), must_not_be_followed_by=("2",))
    assert rule.deferred is True
    assert ClassificationRule(entity_type="order", code="1", priority=1, watch=("x",)).deferred is False
