"""
Change detection engine.

This module contains the pipeline that turns a "before"/"after" pair of entity
states into committed event occurrences:

1. the "before" snapshot is captured into the scope's `SnapshotStore`
2. once the "after" state is observable, the `DiffEngine` computes change records
   (or reports a creation when no "before" snapshot exists)
3. the `ClassificationRuleSet` evaluates the entity type's rules in priority order,
   reserving codes with the scope's `CorrelationRegistry`
4. candidates are submitted to the registry, which commits the survivors to the
   event sink (or parks deferred ones until the scope closes)

The engine itself is stateless between calls: everything that changes during an
operation lives in the `OperationScope` passed in, so one engine can serve any
number of concurrent scopes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional

from changeaudit.core.config.event_catalog import EventCatalog
from changeaudit.core.diff.diff_engine import DiffEngine, DiffResult, Normalizer, no_normalization, strip_whitespace
from changeaudit.core.rules.rule_base import RuleContext
from changeaudit.core.rules.rule_set import ClassificationRuleSet
from changeaudit.core.scope import OperationScope
from changeaudit.domain.models import EntitySnapshot, EventOccurrence
from changeaudit.notification.base import EventSink

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EntitySettings:
    """
    Per-entity-type diff settings.

    Parameters
    ----------
    ignored_keys
        Attribute paths/patterns that never produce change records
        (e.g., modification timestamps).
    strip_whitespace
        Trim incidental whitespace of string leaves before comparing.
    normalizer
        Custom scalar normalizer; overrides ``strip_whitespace`` when set.
    """

    ignored_keys: FrozenSet[str] = frozenset()
    strip_whitespace: bool = True
    normalizer: Optional[Normalizer] = None

    def resolve_normalizer(self) -> Normalizer:
        if self.normalizer is not None:
            return self.normalizer
        return strip_whitespace if self.strip_whitespace else no_normalization


@dataclass
class ChangeDetectionEngine:
    """
    Snapshot -> diff -> classify -> commit pipeline.

    Parameters
    ----------
    rules
        Classification rules of every monitored entity type.
    sink
        Event sink handed to the scopes this engine opens.
    diff_engine
        Structural comparator.
    entities
        Per-entity-type diff settings; unknown types use the defaults.
    catalog
        Optional event catalog handed to opened scopes.
    default_window_ms
        Default coalescing window of opened scopes.
    consult_sink_history
        Forwarded to opened scopes.
    clock
        Time source for snapshots, contexts and registries.
    """

    rules: ClassificationRuleSet
    sink: EventSink
    diff_engine: DiffEngine = field(default_factory=DiffEngine)
    entities: Dict[str, EntitySettings] = field(default_factory=dict)
    catalog: Optional[EventCatalog] = None
    default_window_ms: int = 0
    consult_sink_history: bool = False
    clock: Callable[[], datetime] = datetime.now

    def open_scope(self, scope_id: Optional[str] = None) -> OperationScope:
        """
        Create a fresh operation scope wired to this engine's sink and catalog.
        """
        kwargs: Dict[str, Any] = {}
        if scope_id is not None:
            kwargs["scope_id"] = scope_id
        return OperationScope(
            sink=self.sink,
            clock=self.clock,
            catalog=self.catalog,
            default_window_ms=self.default_window_ms,
            consult_sink_history=self.consult_sink_history,
            **kwargs,
        )

    def settings_for(self, entity_type: str) -> EntitySettings:
        return self.entities.get(entity_type) or EntitySettings()

    def capture_before(self, scope: OperationScope, entity_type: str, entity_id: Any, attributes: Mapping[str, Any]) -> bool:
        """
        Record the "before" state of an entity (first write wins).

        Returns
        -------
        bool
            True if this call stored the snapshot.
        """
        _ensure_open(scope)
        return scope.snapshots.capture(entity_type, entity_id, attributes)

    def diff(self, scope: OperationScope, entity_type: str, entity_id: Any, attributes: Mapping[str, Any]) -> DiffResult:
        """
        Diff the stored "before" snapshot against the given "after" attributes.
        """
        _ensure_open(scope)
        settings = self.settings_for(entity_type)
        after = EntitySnapshot(entity_type=entity_type, entity_id=str(entity_id), attributes=attributes, captured_at=self.clock())
        before = scope.snapshots.get(entity_type, entity_id)
        return self.diff_engine.diff(before, after, settings.ignored_keys, settings.resolve_normalizer())

    def process_after(
        self,
        scope: OperationScope,
        entity_type: str,
        entity_id: Any,
        attributes: Mapping[str, Any],
        actor: str = "",
        request: Optional[Mapping[str, Any]] = None,
        links: Optional[Mapping[str, str]] = None,
    ) -> List[EventOccurrence]:
        """
        Classify the "after" state of an entity and commit the resulting events.

        Parameters
        ----------
        scope
            Current operation scope.
        entity_type, entity_id
            Entity being observed.
        attributes
            "After" attributes.
        actor, request, links
            Ambient context used only for occurrence variables.

        Returns
        -------
        list of EventOccurrence
            Occurrences committed by this call (deferred ones are committed at
            scope close and are not included).
        """
        result = self.diff(scope, entity_type, entity_id, attributes)
        ctx = RuleContext(
            now=self.clock(),
            entity_type=entity_type,
            entity_id=str(entity_id),
            actor=actor,
            request=dict(request or {}),
            links=dict(links or {}),
        )
        registry = scope.registry
        key = (entity_type, str(entity_id))

        try:
            if result.created:
                if not registry.mark_created(key):
                    logger.debug("%s#%s already created in scope %s", entity_type, entity_id, scope.scope_id)
                    return []
                candidates = self.rules.classify_creation(entity_type, ctx, registry)
            elif registry.was_created(key):
                logger.debug("%s#%s created in this scope; modification rules skipped", entity_type, entity_id)
                return []
            else:
                candidates = self.rules.classify(entity_type, result.changes, ctx, registry)

            committed: List[EventOccurrence] = []
            for candidate in candidates:
                outcome = registry.submit(candidate.occurrence, candidate.rule)
                if outcome.fired:
                    committed.append(candidate.occurrence)
            return committed
        finally:
            registry.release_reservations()

    def trigger(
        self,
        scope: OperationScope,
        code: Any,
        variables: Optional[Mapping[str, Any]] = None,
        entity_type: str = "",
        entity_id: Any = "",
    ) -> bool:
        """
        Commit an occurrence whose code the call site already knows.

        The occurrence still goes through the registry (catalog, disabled codes,
        coalescing window). When it names an entity, the creation bookkeeping
        applies too: triggering the entity type's creation code counts as its
        "created" event, and once the entity was created in this scope every
        other code about it is refused.
        """
        _ensure_open(scope)
        occurrence = EventOccurrence(
            code=str(code),
            variables=dict(variables or {}),
            emitted_at=self.clock(),
            entity_type=entity_type,
            entity_id=str(entity_id),
        )
        rule = self.rules.creation_rule(entity_type) if entity_type else None
        if rule is not None and rule.code != occurrence.code:
            rule = None
        return scope.registry.commit(occurrence, rule)


def _ensure_open(scope: OperationScope) -> None:
    if scope.closed:
        raise RuntimeError(f"operation scope {scope.scope_id} is closed")
