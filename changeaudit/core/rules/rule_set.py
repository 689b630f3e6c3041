from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional, Sequence

from changeaudit.core.correlation.registry import CorrelationRegistry
from changeaudit.core.rules.rule_base import ClassificationRule, RuleCandidate, RuleContext
from changeaudit.domain.models import ChangeRecord

logger = logging.getLogger(__name__)


@dataclass
class ClassificationRuleSet:
    """
    Ordered, per-entity-type classification rules.

    Rules of one entity type are kept sorted by ``priority`` and evaluated
    strictly in that order. A matching rule reserves its code with the
    scope's `CorrelationRegistry` before building its occurrence, so a
    lower-priority rule committed later in the same pass can see it through
    ``will_or_has_fired``.

    Notes
    -----
    - The catch-all rule of an entity type is evaluated last and only when no
      higher-priority rule consumed a change record. It is also implicitly
      suppressed by every other modification code of its entity type.
    - The creation rule (``on_create``) is evaluated only for creation passes.
    - Unknown entity types classify to an empty list.
    """

    _rules: Dict[str, List[ClassificationRule]] = field(default_factory=dict)

    def add(self, rule: ClassificationRule) -> None:
        """
        Register a rule.

        Raises
        ------
        ValueError
            If the entity type already has a catch-all or a creation rule and
            ``rule`` is another one, or if a plain rule is not ordered before
            the catch-all.
        """
        rules = self._rules.setdefault(rule.entity_type, [])
        for existing in rules:
            if rule.catch_all and existing.catch_all:
                raise ValueError(f"{rule.entity_type}: catch-all rule already registered ({existing.name})")
            if rule.on_create and existing.on_create:
                raise ValueError(f"{rule.entity_type}: creation rule already registered ({existing.name})")

        catch_all = next((r for r in rules + [rule] if r.catch_all), None)
        if catch_all is not None:
            for r in rules + [rule]:
                if not (r.catch_all or r.on_create) and r.priority >= catch_all.priority:
                    raise ValueError(
                        f"{rule.entity_type}: rule {r.name} (priority {r.priority}) must come before "
                        f"catch-all {catch_all.name} (priority {catch_all.priority})"
                    )

        rules.append(rule)
        rules.sort(key=lambda r: r.priority)

    def extend(self, rules: Iterable[ClassificationRule]) -> None:
        for rule in rules:
            self.add(rule)

    def rules_for(self, entity_type: str) -> List[ClassificationRule]:
        return list(self._rules.get(entity_type, []))

    def creation_rule(self, entity_type: str) -> Optional[ClassificationRule]:
        return next((r for r in self._rules.get(entity_type, []) if r.on_create), None)

    def entity_types(self) -> List[str]:
        return sorted(self._rules)

    def classify(
        self,
        entity_type: str,
        changes: Sequence[ChangeRecord],
        ctx: RuleContext,
        registry: CorrelationRegistry,
    ) -> List[RuleCandidate]:
        """
        Turn a modification change set into candidate occurrences.

        Parameters
        ----------
        entity_type
            Entity type whose rules are evaluated.
        changes
            Change records from the diff engine (never a creation pass).
        ctx
            Classification context.
        registry
            Registry of the current operation scope; receives reservations.

        Returns
        -------
        list of RuleCandidate
            Matching rules in evaluation order, not yet committed.
        """
        rules = self._rules.get(entity_type)
        if not rules:
            logger.debug("no rules registered for entity type %r", entity_type)
            return []
        if not changes:
            return []

        candidates: List[RuleCandidate] = []
        consumed: List[str] = []

        for rule in rules:
            if rule.on_create:
                continue
            if rule.catch_all:
                if consumed:
                    logger.debug("%s skipped: %d record(s) consumed by specific rules", rule.name, len(consumed))
                    continue
                rule = _with_implicit_suppression(rule, rules)

            if not rule.matches(changes, ctx):
                continue

            registry.reserve(rule.code, rule.priority, (entity_type, ctx.entity_id))
            keys = tuple(c.attribute_key for c in (changes if rule.catch_all else rule.relevant(changes)))
            consumed.extend(keys)
            candidates.append(RuleCandidate(rule=rule, occurrence=rule.build(changes, ctx), consumed=keys))

        return candidates

    def classify_creation(self, entity_type: str, ctx: RuleContext, registry: CorrelationRegistry) -> List[RuleCandidate]:
        """
        Candidate "created" occurrence for an entity without a before snapshot.
        """
        rule = self.creation_rule(entity_type)
        if rule is None:
            logger.debug("no creation rule registered for entity type %r", entity_type)
            return []
        registry.reserve(rule.code, rule.priority, (entity_type, ctx.entity_id))
        return [RuleCandidate(rule=rule, occurrence=rule.build([], ctx))]


def _with_implicit_suppression(catch_all: ClassificationRule, rules: Sequence[ClassificationRule]) -> ClassificationRule:
    specific = [r.code for r in rules if not (r.catch_all or r.on_create) and r.code not in catch_all.entity_suppressed_by]
    if not specific:
        return catch_all
    return replace(catch_all, entity_suppressed_by=catch_all.entity_suppressed_by + tuple(specific))
