"""
Classification contracts (context, rules, and candidates).

This module defines the core data structures that form the contract between:

- Classification rules (stateless predicates over a change set) producing -> class:`RuleCandidate`
- The correlation registry (scope-owned bookkeeping) deciding which candidates reach the sink

The objects here are immutable so one rule set can be shared by every
operation scope of a process.

Notes
-----

- A rule is identified by ``(entity_type, priority, code)``; rules of one entity type
  are evaluated in ascending ``priority`` (most specific first).
- Exactly one rule per entity type may be the catch-all "modified" rule and it must
  have the highest priority number.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Sequence, Tuple

from changeaudit.core.diff.diff_engine import KeyMatcher, as_text
from changeaudit.domain.models import ChangeKind, ChangeRecord, EventOccurrence

Predicate = Callable[[Sequence[ChangeRecord], "RuleContext"], bool]
VariablesBuilder = Callable[[Sequence[ChangeRecord], "RuleContext"], Mapping[str, Any]]


@dataclass(frozen=True)
class RuleContext:
    """
    Ambient context passed into classification.

    The context is only used to build occurrence variables, never for control
    flow. It provides a single source of truth for "now" during one
    classification pass.

    Parameters
    ----------
    now
        Timestamp of the classification pass.
    entity_type
        Type of the entity being classified.
    entity_id
        Identifier of the entity.
    actor
        Identity of the user performing the action.
    request
        Request metadata (client IP, user agent, job name, ...).
    links
        Entity links (edit URL, view URL, ...).
    """

    now: datetime
    entity_type: str = ""
    entity_id: str = ""
    actor: str = ""
    request: Mapping[str, Any] = field(default_factory=dict)
    links: Mapping[str, str] = field(default_factory=dict)


def default_variables(changes: Sequence[ChangeRecord], ctx: RuleContext) -> Dict[str, str]:
    """
    Variables every occurrence carries.

    A single change also exposes its key, old and new value; larger change sets
    expose the list of changed keys.
    """
    variables: Dict[str, str] = {
        "EntityType": ctx.entity_type,
        "EntityId": ctx.entity_id,
    }
    if ctx.actor:
        variables["Actor"] = ctx.actor
    for name, value in ctx.links.items():
        variables[str(name)] = str(value)

    if len(changes) == 1:
        c = changes[0]
        variables["AttributeKey"] = c.attribute_key
        variables["OldValue"] = as_text(c.old_value)
        variables["NewValue"] = as_text(c.new_value)
        variables["ChangeKind"] = c.kind.value
    elif changes:
        variables["ChangedKeys"] = ", ".join(c.attribute_key for c in changes)
    return variables


def _codes(values: Sequence[Any]) -> Tuple[str, ...]:
    return tuple(str(v) for v in values)


@dataclass(frozen=True)
class ClassificationRule:
    """
    Turns change records into an event occurrence.

    A rule matches in one of three ways:

    - ``on_create``: matches when the entity had no "before" snapshot
    - ``catch_all``: matches any non-empty change set no higher-priority rule consumed
    - otherwise ``predicate(changes, ctx)`` if given, else the ``watch``/``match``/``kinds``
      declaration: ``match="any"`` needs one relevant record, ``match="all"`` needs a
      relevant record for every watched key

    Invariants
    ----------
    - ``priority`` is non-negative; lower numbers are evaluated first.
    - ``coalesce_window_ms`` is None (use the engine default) or non-negative.
    - A plain rule declares ``watch`` keys or a ``predicate``.

    Parameters
    ----------
    entity_type
        Entity type this rule classifies.
    code
        Event code of the occurrence it builds.
    priority
        Evaluation order within the entity type.
    watch
        Attribute keys/patterns the rule is about (see `KeyMatcher`).
    match
        "any" or "all".
    kinds
        Restrict relevant records to these change kinds (empty = all kinds).
    predicate
        Custom match function over the full change set.
    variables
        Custom variables builder; merged over `default_variables`.
    suppressed_by
        Codes that, when they will or have fired, suppress this rule's occurrence.
    entity_suppressed_by
        Like ``suppressed_by`` but only counting occurrences about the same entity.
    must_not_be_followed_by
        Codes that, if they fire before the scope closes, drop this occurrence.
        Rules with such codes are committed at scope close.
    coalesce_window_ms
        Same-code occurrences within this window are merged into one.
    name
        Human-friendly rule name (for logs).
    """

    entity_type: str
    code: str
    priority: int
    watch: Tuple[str, ...] = ()
    match: str = "any"
    kinds: FrozenSet[ChangeKind] = frozenset()
    predicate: Optional[Predicate] = None
    variables: Optional[VariablesBuilder] = None
    suppressed_by: Tuple[str, ...] = ()
    entity_suppressed_by: Tuple[str, ...] = ()
    must_not_be_followed_by: Tuple[str, ...] = ()
    coalesce_window_ms: Optional[int] = None
    catch_all: bool = False
    on_create: bool = False
    name: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "code", str(self.code))
        object.__setattr__(self, "watch", tuple(str(w) for w in self.watch))
        object.__setattr__(self, "kinds", frozenset(ChangeKind(k) for k in self.kinds))
        object.__setattr__(self, "suppressed_by", _codes(self.suppressed_by))
        object.__setattr__(self, "entity_suppressed_by", _codes(self.entity_suppressed_by))
        object.__setattr__(self, "must_not_be_followed_by", _codes(self.must_not_be_followed_by))
        if not self.name:
            object.__setattr__(self, "name", f"{self.entity_type}:{self.code}")

        if self.priority < 0:
            raise ValueError(f"rule {self.name}: priority must be >= 0")
        if self.coalesce_window_ms is not None and self.coalesce_window_ms < 0:
            raise ValueError(f"rule {self.name}: coalesce_window_ms must be >= 0")
        if self.match not in ("any", "all"):
            raise ValueError(f"rule {self.name}: match must be 'any' or 'all'")
        if self.catch_all and self.on_create:
            raise ValueError(f"rule {self.name}: a rule cannot be both catch_all and on_create")
        if not (self.catch_all or self.on_create or self.watch or self.predicate):
            raise ValueError(f"rule {self.name}: declare watch keys or a predicate")

    @property
    def deferred(self) -> bool:
        return bool(self.must_not_be_followed_by)

    def relevant(self, changes: Sequence[ChangeRecord]) -> List[ChangeRecord]:
        """
        Records this rule is about (and consumes when it fires).

        Catch-all and predicate-only rules consider every record relevant.
        """
        out = [c for c in changes if not self.kinds or c.kind in self.kinds]
        if self.watch:
            matcher = KeyMatcher(self.watch)
            out = [c for c in out if matcher.matches(c.attribute_key)]
        return out

    def matches(self, changes: Sequence[ChangeRecord], ctx: RuleContext) -> bool:
        if self.on_create:
            return True
        if self.catch_all:
            return bool(changes)
        if self.predicate is not None:
            return bool(self.predicate(changes, ctx))

        relevant = self.relevant(changes)
        if not relevant:
            return False
        if self.match == "any":
            return True
        return all(any(KeyMatcher([w]).matches(c.attribute_key) for c in relevant) for w in self.watch)

    def build(self, changes: Sequence[ChangeRecord], ctx: RuleContext) -> EventOccurrence:
        """
        Build the occurrence for a matching change set.

        Parameters
        ----------
        changes
            Full change set of the pass (empty for creation).
        ctx
            Classification context.

        Returns
        -------
        EventOccurrence
            Candidate occurrence; not yet committed.
        """
        relevant = changes if (self.catch_all or self.predicate is not None) else self.relevant(changes)
        variables = default_variables(relevant, ctx)
        if self.variables is not None:
            variables.update({str(k): "" if v is None else str(v) for k, v in self.variables(changes, ctx).items()})
        return EventOccurrence(
            code=self.code,
            variables=variables,
            emitted_at=ctx.now,
            entity_type=ctx.entity_type or self.entity_type,
            entity_id=ctx.entity_id,
        )


@dataclass(frozen=True)
class RuleCandidate:
    """
    A matching rule together with the occurrence it built.

    Parameters
    ----------
    rule
        The rule that matched.
    occurrence
        The occurrence to hand to the correlation registry.
    consumed
        Attribute keys of the records this rule consumed.
    """

    rule: ClassificationRule
    occurrence: EventOccurrence
    consumed: Tuple[str, ...] = ()
