"""
Unit tests for changeaudit.core.state.snapshot_store.SnapshotStore.

These tests validate the first-write-wins contract and NOT_FOUND lookups.
"""

from __future__ import annotations

from datetime import datetime

from changeaudit.core.state.snapshot_store import SnapshotStore
from changeaudit.domain.models import NOT_FOUND, EntitySnapshot


def _mk_store() -> SnapshotStore:
    return SnapshotStore(clock=lambda: datetime(2026, 1, 1, 10, 0, 0))


def test_get_without_capture_returns_not_found() -> None:
    store = _mk_store()
    assert store.get("product", 42) is NOT_FOUND


def test_first_capture_wins() -> None:
    """A second capture for the same entity is ignored."""
    store = _mk_store()

    assert store.capture("product", 42, {"price": "10"}) is True
    assert store.capture("product", 42, {"price": "99"}) is False

    snap = store.get("product", 42)
    assert isinstance(snap, EntitySnapshot)
    assert snap.attributes["price"] == "10"
    assert snap.captured_at == datetime(2026, 1, 1, 10, 0, 0)
    assert len(store) == 1


def test_entity_id_is_normalized_to_string() -> None:
    store = _mk_store()
    store.capture("product", 42, {"a": 1})

    assert store.get("product", "42") is not NOT_FOUND
    assert ("product", "42") in store


def test_entities_are_keyed_by_type_and_id() -> None:
    store = _mk_store()
    store.capture("product", 1, {"a": 1})
    store.capture("order", 1, {"a": 2})

    assert len(store) == 2
    assert store.get("order", 1).attributes["a"] == 2  # type: ignore[union-attr]
