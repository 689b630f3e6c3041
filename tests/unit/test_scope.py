"""
Unit tests for changeaudit.core.scope.OperationScope.

These tests validate the scope lifecycle:
- lazy creation of the snapshot store and the registry
- close() resolving the deferred pipeline and dropping state
- close() logging the per-code firing summary
- discard() on error paths
- independence of two scopes sharing a sink
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Mapping

import pytest

from changeaudit.core.rules.rule_base import ClassificationRule
from changeaudit.core.scope import OperationScope
from changeaudit.domain.events import CommitOutcome
from changeaudit.domain.models import EventOccurrence


@dataclass
class FakeSink:
    """Event sink test double recording emitted codes."""

    codes: List[str] = field(default_factory=list)

    def emit(self, code: str, variables: Mapping[str, str]) -> None:
        self.codes.append(code)

    def has_fired(self, code: str) -> bool:
        return code in self.codes

    def fired_recently(self, code: str, window_ms: int) -> bool:
        return code in self.codes


def _mk_occ(code: str) -> EventOccurrence:
    return EventOccurrence(code=code, variables={}, emitted_at=datetime(2026, 1, 1), entity_type="order", entity_id="9")


def _mk_deferred_rule() -> ClassificationRule:
    return ClassificationRule(entity_type="order", code="9020", priority=1, watch=("x",), must_not_be_followed_by=("9030",))


def test_state_is_created_lazily() -> None:
    scope = OperationScope(sink=FakeSink())
    assert scope.started is False

    scope.snapshots.capture("order", 9, {"status": "processing"})

    assert scope.started is True
    assert scope.snapshots is scope.snapshots
    assert scope.registry is scope.registry


def test_close_flushes_deferred_and_is_idempotent() -> None:
    sink = FakeSink()
    scope = OperationScope(sink=sink)
    scope.registry.submit(_mk_occ("9020"), _mk_deferred_rule())

    assert scope.close() == [CommitOutcome.COMMITTED]
    assert sink.codes == ["9020"]
    assert scope.closed is True
    assert scope.started is False
    assert scope.close() == []


def test_context_manager_closes_on_success() -> None:
    sink = FakeSink()
    with OperationScope(sink=sink) as scope:
        scope.registry.submit(_mk_occ("9020"), _mk_deferred_rule())

    assert scope.closed is True
    assert sink.codes == ["9020"]


def test_context_manager_discards_on_error() -> None:
    """A failing operation must not commit its deferred occurrences."""
    sink = FakeSink()
    with pytest.raises(RuntimeError):
        with OperationScope(sink=sink) as scope:
            scope.registry.submit(_mk_occ("9020"), _mk_deferred_rule())
            raise RuntimeError("rollback")

    assert scope.closed is True
    assert sink.codes == []


def test_scopes_sharing_a_sink_are_independent() -> None:
    sink = FakeSink()
    a = OperationScope(sink=sink)
    b = OperationScope(sink=sink)

    a.registry.commit(_mk_occ("9010"))

    assert a.registry.has_fired("9010") is True
    assert b.registry.has_fired("9010") is False
    assert a.scope_id != b.scope_id


def test_close_logs_firings_per_code(caplog: pytest.LogCaptureFixture) -> None:
    scope = OperationScope(sink=FakeSink(), scope_id="req-1")
    scope.registry.commit(_mk_occ("9030"))
    scope.registry.commit(_mk_occ("9020"))
    scope.registry.commit(_mk_occ("9030"))

    with caplog.at_level(logging.DEBUG, logger="changeaudit.core.scope"):
        scope.close()

    assert "scope req-1 closed: 3 firing(s) {'9030': 2, '9020': 1}" in caplog.text
