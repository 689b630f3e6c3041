"""
Unit tests for changeaudit.core.correlation.registry.CorrelationRegistry.

These tests validate the per-scope correlation contract:
- commit forwards to the sink and records the firing
- suppression via suppressed_by / entity_suppressed_by and reservations
- coalescing windows with an injected clock
- catalog checks (disabled and unregistered codes)
- creation bookkeeping
- sink failures
- the deferred pipeline resolved by flush()
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Tuple

import pytest

from changeaudit.core.config.event_catalog import EventCatalog
from changeaudit.core.correlation.registry import CorrelationRegistry
from changeaudit.core.rules.rule_base import ClassificationRule
from changeaudit.domain.events import CommitOutcome
from changeaudit.domain.models import EventDefinition, EventOccurrence


class FakeClock:
    """Manually advanced clock."""

    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, 10, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += timedelta(milliseconds=ms)


@dataclass
class FakeSink:
    """Event sink test double with configurable history and failures."""

    emitted: List[Tuple[str, Dict[str, str]]] = field(default_factory=list)
    history: List[str] = field(default_factory=list)
    fail: bool = False

    def emit(self, code: str, variables: Mapping[str, str]) -> None:
        if self.fail:
            raise ConnectionError("sink down")
        self.emitted.append((code, dict(variables)))

    def has_fired(self, code: str) -> bool:
        return code in self.history

    def fired_recently(self, code: str, window_ms: int) -> bool:
        return code in self.history


def _mk_occ(code: str, entity_type: str = "order", entity_id: str = "9", **variables: Any) -> EventOccurrence:
    return EventOccurrence(
        code=code,
        variables=variables,
        emitted_at=datetime(2026, 1, 1, 10, 0, 0),
        entity_type=entity_type,
        entity_id=entity_id,
    )


def _mk_rule(code: str, priority: int = 1, **kwargs: Any) -> ClassificationRule:
    kwargs.setdefault("watch", ("x",))
    return ClassificationRule(entity_type="order", code=code, priority=priority, **kwargs)


def test_commit_forwards_to_sink_and_records() -> None:
    sink = FakeSink()
    registry = CorrelationRegistry(sink=sink)

    assert registry.commit(_mk_occ("9010", Foo="bar")) is True

    assert sink.emitted == [("9010", {"Foo": "bar"})]
    assert registry.has_fired("9010") is True
    assert registry.has_fired(9010) is True
    assert registry.has_fired("9011") is False
    assert registry.outcomes[-1][1] is CommitOutcome.COMMITTED


def test_reserved_higher_priority_code_suppresses() -> None:
    """Suppression is decided by reservations, before the winner commits."""
    sink = FakeSink()
    registry = CorrelationRegistry(sink=sink)
    registry.reserve("9001", priority=1)

    outcome = registry.commit_outcome(_mk_occ("9099"), _mk_rule("9099", priority=5, suppressed_by=("9001",)))

    assert outcome is CommitOutcome.SUPPRESSED
    assert sink.emitted == []
    assert registry.has_fired("9099") is False


def test_reservation_at_later_priority_does_not_suppress() -> None:
    registry = CorrelationRegistry(sink=FakeSink())
    registry.reserve("9005", priority=5)

    outcome = registry.commit_outcome(_mk_occ("9001"), _mk_rule("9001", priority=1, suppressed_by=("9005",)))

    assert outcome is CommitOutcome.COMMITTED


def test_release_reservations() -> None:
    registry = CorrelationRegistry(sink=FakeSink())
    registry.reserve("9001", priority=1)
    registry.release_reservations()

    assert registry.will_or_has_fired("9001") is False


def test_entity_suppression_only_counts_same_entity() -> None:
    registry = CorrelationRegistry(sink=FakeSink())
    registry.commit(_mk_occ("9001", entity_id="1"))

    rule = _mk_rule("9099", priority=99, entity_suppressed_by=("9001",))

    assert registry.commit_outcome(_mk_occ("9099", entity_id="2"), rule) is CommitOutcome.COMMITTED
    assert registry.commit_outcome(_mk_occ("9099", entity_id="1"), rule) is CommitOutcome.SUPPRESSED


def test_fired_recently_window() -> None:
    clock = FakeClock()
    registry = CorrelationRegistry(sink=FakeSink(), clock=clock)
    registry.commit(_mk_occ("9010"))

    clock.advance(5)
    assert registry.fired_recently("9010", 1000) is True
    assert registry.fired_recently("9010", 0) is False

    clock.advance(2000)
    assert registry.fired_recently("9010", 1000) is False


def test_same_code_within_window_is_coalesced() -> None:
    clock = FakeClock()
    sink = FakeSink()
    registry = CorrelationRegistry(sink=sink, clock=clock)
    rule = _mk_rule("9010", coalesce_window_ms=1000)

    assert registry.commit(_mk_occ("9010"), rule) is True
    clock.advance(5)
    assert registry.commit_outcome(_mk_occ("9010"), rule) is CommitOutcome.COALESCED
    clock.advance(1500)
    assert registry.commit(_mk_occ("9010"), rule) is True

    assert [c for c, _ in sink.emitted] == ["9010", "9010"]


def test_default_window_applies_to_direct_commits() -> None:
    clock = FakeClock()
    registry = CorrelationRegistry(sink=FakeSink(), clock=clock, default_window_ms=1000)

    assert registry.commit(_mk_occ("9010")) is True
    clock.advance(5)
    assert registry.commit(_mk_occ("9010")) is False


def test_rule_window_overrides_default() -> None:
    clock = FakeClock()
    registry = CorrelationRegistry(sink=FakeSink(), clock=clock, default_window_ms=1000)
    rule = _mk_rule("9010", coalesce_window_ms=0)

    assert registry.commit(_mk_occ("9010"), rule) is True
    clock.advance(5)
    assert registry.commit(_mk_occ("9010"), rule) is True


def test_disabled_code_is_not_committed() -> None:
    sink = FakeSink()
    registry = CorrelationRegistry(sink=sink, catalog=EventCatalog(disabled_codes=frozenset({"9010"})))

    assert registry.commit_outcome(_mk_occ("9010")) is CommitOutcome.DISABLED
    assert registry.has_fired("9010") is False
    assert sink.emitted == []


def test_unregistered_code_is_refused_by_non_empty_catalog() -> None:
    catalog = EventCatalog()
    catalog.register(EventDefinition(code="9000"))
    registry = CorrelationRegistry(sink=FakeSink(), catalog=catalog)

    assert registry.commit_outcome(_mk_occ("9010")) is CommitOutcome.UNREGISTERED
    assert registry.commit_outcome(_mk_occ("9000")) is CommitOutcome.COMMITTED


def test_empty_catalog_is_permissive() -> None:
    registry = CorrelationRegistry(sink=FakeSink(), catalog=EventCatalog())
    assert registry.commit(_mk_occ("1234")) is True


def test_creation_bookkeeping() -> None:
    registry = CorrelationRegistry(sink=FakeSink())
    created = _mk_rule("9000", priority=0, on_create=True)

    assert registry.mark_created(("order", "9")) is True
    assert registry.mark_created(("order", "9")) is False
    assert registry.commit_outcome(_mk_occ("9000"), created) is CommitOutcome.COMMITTED
    assert registry.commit_outcome(_mk_occ("9000"), created) is CommitOutcome.DUPLICATE_CREATION
    assert registry.commit_outcome(_mk_occ("9001"), _mk_rule("9001")) is CommitOutcome.SUPPRESSED


def test_created_entity_refuses_rule_less_commits() -> None:
    """Direct commits about a created entity are suppressed; other entities are untouched."""
    sink = FakeSink()
    registry = CorrelationRegistry(sink=sink)
    created = _mk_rule("9000", priority=0, on_create=True)

    assert registry.commit_outcome(_mk_occ("9000"), created) is CommitOutcome.COMMITTED
    assert registry.was_created(("order", "9")) is True
    assert registry.commit_outcome(_mk_occ("9001")) is CommitOutcome.SUPPRESSED
    assert registry.commit_outcome(_mk_occ("9001", entity_id="10")) is CommitOutcome.COMMITTED
    assert registry.commit(EventOccurrence(code="9300", variables={}, emitted_at=datetime(2026, 1, 1))) is True
    assert [c for c, _ in sink.emitted] == ["9000", "9001", "9300"]


def test_sink_failure_still_counts_as_fired(caplog: pytest.LogCaptureFixture) -> None:
    """A failed emit is lost, not retried, and later duplicates stay suppressed."""
    sink = FakeSink(fail=True)
    registry = CorrelationRegistry(sink=sink)

    with caplog.at_level("WARNING"):
        outcome = registry.commit_outcome(_mk_occ("9010"))

    assert outcome is CommitOutcome.SINK_FAILED
    assert registry.has_fired("9010") is True
    assert registry.log.records[0].error is not None
    assert "sink down" in caplog.text


def test_sink_history_is_ignored_unless_enabled() -> None:
    sink = FakeSink(history=["9010"])

    assert CorrelationRegistry(sink=sink).has_fired("9010") is False
    assert CorrelationRegistry(sink=sink).fired_recently("9010", 1000) is False
    assert CorrelationRegistry(sink=sink, consult_sink_history=True).has_fired("9010") is True
    assert CorrelationRegistry(sink=sink, consult_sink_history=True).fired_recently("9010", 1000) is True


def test_deferred_occurrence_commits_at_flush() -> None:
    sink = FakeSink()
    registry = CorrelationRegistry(sink=sink)
    rule = _mk_rule("9020", must_not_be_followed_by=("9030",))

    assert registry.submit(_mk_occ("9020"), rule) is CommitOutcome.DEFERRED
    assert sink.emitted == []
    assert registry.will_or_has_fired("9020") is True
    assert [o.code for o in registry.pending] == ["9020"]

    assert registry.flush() == [CommitOutcome.COMMITTED]
    assert [c for c, _ in sink.emitted] == ["9020"]
    assert registry.pending == []


def test_deferred_occurrence_dropped_when_followed() -> None:
    sink = FakeSink()
    registry = CorrelationRegistry(sink=sink)
    rule = _mk_rule("9020", must_not_be_followed_by=("9030",))

    registry.submit(_mk_occ("9020"), rule)
    registry.commit(_mk_occ("9030"))

    assert registry.flush() == [CommitOutcome.DROPPED]
    assert [c for c, _ in sink.emitted] == ["9030"]
    assert registry.has_fired("9020") is False
