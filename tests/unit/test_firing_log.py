"""
Unit tests for changeaudit.core.state.firing_log.FiringLog.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from changeaudit.core.state.firing_log import FiringLog
from changeaudit.domain.events import FiringRecord
from changeaudit.domain.models import EventOccurrence


def _mk_record(code: str, ts: datetime, entity_type: str = "product", entity_id: str = "42") -> FiringRecord:
    occ = EventOccurrence(code=code, variables={}, emitted_at=ts, entity_type=entity_type, entity_id=entity_id)
    return FiringRecord(code=code, fired_at=ts, occurrence=occ)


def test_append_tracks_counts_and_last_fired() -> None:
    t0 = datetime(2026, 1, 1, 10, 0, 0)
    log = FiringLog()

    log.append(_mk_record("9010", t0))
    log.append(_mk_record("9016", t0 + timedelta(seconds=1)))
    log.append(_mk_record("9010", t0 + timedelta(seconds=2)))

    assert len(log) == 3
    assert "9010" in log
    assert "9999" not in log
    assert log.last_fired_at("9010") == t0 + timedelta(seconds=2)
    assert log.last_fired_at("9999") is None
    assert log.counts_by_code() == {"9010": 2, "9016": 1}


def test_fired_for_is_entity_scoped() -> None:
    t0 = datetime(2026, 1, 1, 10, 0, 0)
    log = FiringLog()
    log.append(_mk_record("9000", t0, entity_id="1"))

    assert log.fired_for("9000", ("product", "1")) is True
    assert log.fired_for("9000", ("product", "2")) is False


def test_created_entities() -> None:
    log = FiringLog()
    log.mark_created(("form", "7"))

    assert log.was_created(("form", "7")) is True
    assert log.was_created(("form", "8")) is False
