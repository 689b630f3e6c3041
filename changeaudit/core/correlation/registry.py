"""
Correlation and suppression registry.

This module contains the scope-owned bookkeeping that decides which candidate
occurrences actually reach the event sink. Several uncoordinated callbacks may
each conclude "this action happened"; the registry resolves them with one
contract:

- ``has_fired(code)``: already committed in this scope
- ``will_or_has_fired(code, priority)``: committed, reserved by a rule evaluated
  no later than ``priority`` in the current pass, or waiting in the deferred pipeline
- ``fired_recently(code, window_ms)``: committed within the coalescing window
- ``commit(occurrence, rule)``: record as fired and forward to the sink, unless a
  suppression, coalescing, creation, catalog or disabled-code check refuses it

A registry is created per operation scope and must never be shared between
scopes; its "recently fired" state would otherwise suppress unrelated alerts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from changeaudit.core.config.event_catalog import EventCatalog
from changeaudit.core.rules.rule_base import ClassificationRule
from changeaudit.core.state.firing_log import FiringLog
from changeaudit.domain.events import CommitOutcome, FiringRecord
from changeaudit.domain.models import EntityKey, EventOccurrence
from changeaudit.notification.base import EventSink

logger = logging.getLogger(__name__)

Deferred = Tuple[EventOccurrence, ClassificationRule]


@dataclass
class CorrelationRegistry:
    """
    Per-scope firing history, reservations and deferred pipeline.

    Parameters
    ----------
    sink
        External delivery subsystem receiving committed occurrences.
    clock
        Callable returning "now"; injectable for deterministic windows.
    catalog
        Optional event catalog (disabled and unregistered codes are refused).
    default_window_ms
        Coalescing window for rules that do not configure their own (0 = off).
    consult_sink_history
        Also answer ``has_fired``/``fired_recently`` from the sink's own history.

    Attributes
    ----------
    log
        Append-only firing log of this scope.
    outcomes
        Every (occurrence, outcome) pair handled, in order.
    """

    sink: EventSink
    clock: Callable[[], datetime] = datetime.now
    catalog: Optional[EventCatalog] = None
    default_window_ms: int = 0
    consult_sink_history: bool = False

    log: FiringLog = field(default_factory=FiringLog)
    outcomes: List[Tuple[EventOccurrence, CommitOutcome]] = field(default_factory=list)
    _reservations: Dict[str, List[Tuple[int, Optional[EntityKey]]]] = field(default_factory=dict, repr=False)
    _pipeline: List[Deferred] = field(default_factory=list, repr=False)

    # --- Queries ---
    def has_fired(self, code: object, entity: Optional[EntityKey] = None) -> bool:
        """
        True if ``code`` was committed earlier in this scope.

        With ``entity``, only firings about that ``(entity_type, entity_id)`` count.
        """
        code = str(code)
        if entity is not None:
            return self.log.fired_for(code, entity)
        if code in self.log:
            return True
        return self.consult_sink_history and bool(self.sink.has_fired(code))

    def will_or_has_fired(self, code: object, priority: Optional[int] = None, entity: Optional[EntityKey] = None) -> bool:
        """
        True if ``code`` fired, is reserved, or waits in the deferred pipeline.

        Parameters
        ----------
        code
            Event code.
        priority
            Only reservations made at this priority number or lower count.
            None counts every reservation.
        entity
            Restrict the question to one ``(entity_type, entity_id)``.
        """
        code = str(code)
        if self.has_fired(code, entity):
            return True
        for p, key in self._reservations.get(code, []):
            if (priority is None or p <= priority) and (entity is None or key == entity):
                return True
        return any(
            occ.code == code and (entity is None or (occ.entity_type, occ.entity_id) == entity)
            for occ, _ in self._pipeline
        )

    def fired_recently(self, code: object, window_ms: int) -> bool:
        """
        True if ``code`` fired within ``window_ms`` of now in this scope.

        A window of 0 never matches.
        """
        if window_ms <= 0:
            return False
        code = str(code)
        last = self.log.last_fired_at(code)
        if last is not None and self.clock() - last < timedelta(milliseconds=window_ms):
            return True
        return self.consult_sink_history and bool(self.sink.fired_recently(code, window_ms))

    def mark_created(self, entity: EntityKey) -> bool:
        """
        Note that ``entity`` was created in this scope.

        Returns False if it was already noted; from then on every non-creation
        rule about the entity is suppressed.
        """
        if self.log.was_created(entity):
            return False
        self.log.mark_created(entity)
        return True

    def was_created(self, entity: EntityKey) -> bool:
        return self.log.was_created(entity)

    @property
    def pending(self) -> List[EventOccurrence]:
        return [occ for occ, _ in self._pipeline]

    # --- Reservations ---
    def reserve(self, code: object, priority: int = 0, entity: Optional[EntityKey] = None) -> None:
        """
        Announce that a rule matched and is about to commit ``code``.

        Reservations last until `release_reservations` ends the pass.
        """
        self._reservations.setdefault(str(code), []).append((priority, entity))

    def release_reservations(self) -> None:
        self._reservations.clear()

    # --- Commit ---
    def submit(self, occurrence: EventOccurrence, rule: ClassificationRule) -> CommitOutcome:
        """
        Commit now, or park the occurrence until `flush` if the rule is deferred.
        """
        if rule.deferred:
            self._pipeline.append((occurrence, rule))
            self.outcomes.append((occurrence, CommitOutcome.DEFERRED))
            logger.debug("deferred %s until scope close (must not be followed by %s)", rule.name, rule.must_not_be_followed_by)
            return CommitOutcome.DEFERRED
        return self.commit_outcome(occurrence, rule)

    def commit(self, occurrence: EventOccurrence, rule: Optional[ClassificationRule] = None) -> bool:
        """
        Record ``occurrence`` as fired and forward it to the sink.

        Returns
        -------
        bool
            False when the occurrence was refused (nothing forwarded).
        """
        return self.commit_outcome(occurrence, rule).fired

    def commit_outcome(self, occurrence: EventOccurrence, rule: Optional[ClassificationRule] = None) -> CommitOutcome:
        outcome = self._check(occurrence, rule)
        if outcome is not None:
            logger.debug("occurrence %s for %s#%s refused: %s", occurrence.code, occurrence.entity_type, occurrence.entity_id, outcome.value)
            self.outcomes.append((occurrence, outcome))
            return outcome

        fired_at = self.clock()
        if rule is not None and rule.on_create:
            self.log.mark_created((occurrence.entity_type, occurrence.entity_id))

        error: Optional[str] = None
        try:
            self.sink.emit(occurrence.code, dict(occurrence.variables))
        except Exception as e:
            # Counted as fired anyway so a recovered sink does not get a duplicate.
            error = repr(e)
            logger.warning("event sink failed to emit %s: %s", occurrence.code, error)

        outcome = CommitOutcome.SINK_FAILED if error else CommitOutcome.COMMITTED
        self.log.append(
            FiringRecord(code=occurrence.code, fired_at=fired_at, occurrence=occurrence, outcome=outcome, error=error)
        )
        self.outcomes.append((occurrence, outcome))
        return outcome

    def _check(self, occurrence: EventOccurrence, rule: Optional[ClassificationRule]) -> Optional[CommitOutcome]:
        code = occurrence.code

        if self.catalog is not None:
            if not self.catalog.is_enabled(code):
                return CommitOutcome.DISABLED
            if not self.catalog.accepts(code):
                logger.error("event code %s has not been registered", code)
                return CommitOutcome.UNREGISTERED

        if occurrence.entity_type:
            key = (occurrence.entity_type, occurrence.entity_id)
            creating = rule is not None and rule.on_create
            if creating and self.log.fired_for(code, key):
                return CommitOutcome.DUPLICATE_CREATION
            # direct triggers included: a created entity gets nothing but its creation event
            if not creating and self.log.was_created(key):
                return CommitOutcome.SUPPRESSED

        if rule is not None:
            for other in rule.suppressed_by:
                if other != code and self.will_or_has_fired(other, rule.priority):
                    return CommitOutcome.SUPPRESSED
            entity = (occurrence.entity_type, occurrence.entity_id)
            for other in rule.entity_suppressed_by:
                if other != code and self.will_or_has_fired(other, rule.priority, entity):
                    return CommitOutcome.SUPPRESSED

        window = self.default_window_ms
        if rule is not None and rule.coalesce_window_ms is not None:
            window = rule.coalesce_window_ms
        if self.fired_recently(code, window):
            return CommitOutcome.COALESCED

        return None

    def flush(self) -> List[CommitOutcome]:
        """
        Resolve the deferred pipeline at scope close.

        Each parked occurrence is dropped if one of its rule's
        ``must_not_be_followed_by`` codes will or has fired; otherwise it goes
        through `commit_outcome`. Items are resolved in the order they were parked.
        """
        results: List[CommitOutcome] = []
        while self._pipeline:
            occurrence, rule = self._pipeline.pop(0)
            blockers = [c for c in rule.must_not_be_followed_by if c != occurrence.code and self.will_or_has_fired(c)]
            if blockers:
                logger.debug("dropped deferred %s: followed by %s", rule.name, blockers)
                self.outcomes.append((occurrence, CommitOutcome.DROPPED))
                results.append(CommitOutcome.DROPPED)
                continue
            results.append(self.commit_outcome(occurrence, rule))
        return results
