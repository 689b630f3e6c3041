"""
Structural diff of two entity snapshots.

The diff engine reduces a "before" and an "after" `EntitySnapshot` to an
ordered list of field-level `ChangeRecord` objects:

- nested maps are compared key by key and produce one record per differing leaf
- lists are compared element by element; added and removed elements produce
  one record each (never a single "list changed" record)
- lists of maps carrying an identity key (``id`` by default) are matched by
  that key and the matched elements are compared recursively
- ignored keys (exact path, sub-path, index-free path or ``fnmatch`` pattern)
  never produce a record

A missing "before" snapshot is not a change set at all: the result carries an
empty change list and ``created=True`` and callers must branch on it.
"""

from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from typing import Any, Callable, FrozenSet, Iterable, Iterator, List, Mapping, Optional, Sequence, Union

from changeaudit.domain.models import (
    NOT_FOUND,
    ChangeKind,
    ChangeRecord,
    EntitySnapshot,
    NotFound,
    ValueKind,
    value_kind,
)

logger = logging.getLogger(__name__)

Normalizer = Callable[[Any], Any]

_INDEX_SEGMENT = re.compile(r"\[[^\]]*\]")
_WILDCARD_CHARS = ("*", "?")


def strip_whitespace(value: Any) -> Any:
    """Default scalar normalizer: trim incidental whitespace around strings."""
    if isinstance(value, str):
        return value.strip()
    return value


def no_normalization(value: Any) -> Any:
    return value


def as_text(value: Any) -> str:
    """
    Stable string form of any attribute value.

    Containers are rendered as sorted-key JSON so two equal structures always
    produce the same text.
    """
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, (list, tuple, Mapping)):
        return json.dumps(_plain(value), sort_keys=True, default=str)
    return str(value)


def _plain(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def _scalars_equal(a: Any, b: Any) -> bool:
    # bool is an int subclass; True must not equal 1 here.
    if isinstance(a, bool) or isinstance(b, bool):
        return type(a) is type(b) and a == b
    # NaN != NaN, but an unchanged NaN leaf is not a modification.
    if isinstance(a, float) and isinstance(b, float) and math.isnan(a) and math.isnan(b):
        return True
    return a == b


class KeyMatcher:
    """
    Decide whether an attribute path is covered by a set of keys.

    A path matches when one of the configured entries:
    - equals the path, or is a parent of it (``settings`` covers ``settings.color``)
    - equals the path with list index segments removed
      (``fields.updated`` covers ``fields[id=3].updated``)
    - is a shell-style pattern matching the path (``*_modified``, ``meta.*``)
    """

    def __init__(self, keys: Iterable[str] = ()):
        entries = [str(k) for k in keys]
        self._exact: FrozenSet[str] = frozenset(k for k in entries if not any(c in k for c in _WILDCARD_CHARS))
        self._patterns = tuple(k for k in entries if any(c in k for c in _WILDCARD_CHARS))

    def __bool__(self) -> bool:
        return bool(self._exact or self._patterns)

    def matches(self, path: str) -> bool:
        if not self:
            return False
        generic = _INDEX_SEGMENT.sub("", path)
        for candidate in (path, generic):
            if candidate in self._exact:
                return True
            for parent in _parents(candidate):
                if parent in self._exact:
                    return True
        return any(fnmatchcase(path, p) or fnmatchcase(generic, p) for p in self._patterns)


def _parents(path: str) -> Iterator[str]:
    for i, ch in enumerate(path):
        if ch in ".[" and i > 0:
            yield path[:i]


@dataclass(frozen=True)
class DiffResult:
    """
    Outcome of one diff.

    Parameters
    ----------
    changes
        Change records ordered by attribute key.
    created
        True when there was no "before" snapshot (entity creation).
    """

    changes: Sequence[ChangeRecord] = field(default_factory=tuple)
    created: bool = False

    def __iter__(self) -> Iterator[ChangeRecord]:
        return iter(self.changes)

    def __len__(self) -> int:
        return len(self.changes)

    def keys(self) -> List[str]:
        return [c.attribute_key for c in self.changes]


@dataclass(frozen=True)
class DiffEngine:
    """
    Structural, by-value comparator for entity snapshots.

    The engine is stateless and can be shared between operation scopes and
    threads.

    Parameters
    ----------
    normalizer
        Applied to scalar/string leaves before comparison. Reported values are
        the raw (un-normalized) ones.
    identity_key
        Key used to match list elements that are maps. Set to None to always
        compare lists by membership.
    """

    normalizer: Normalizer = strip_whitespace
    identity_key: Optional[str] = "id"

    def diff(
        self,
        before: Union[EntitySnapshot, NotFound, None],
        after: EntitySnapshot,
        ignored_keys: Iterable[str] = (),
        normalizer: Optional[Normalizer] = None,
    ) -> DiffResult:
        """
        Compare two snapshots of the same entity.

        Parameters
        ----------
        before
            Stored "before" snapshot, or ``NOT_FOUND`` when none was captured.
        after
            Snapshot taken after the mutation.
        ignored_keys
            Attribute paths/patterns that never produce change records.
        normalizer
            Overrides the engine normalizer for this call.

        Returns
        -------
        DiffResult
            ``created=True`` with no changes when ``before`` is missing,
            otherwise the change records sorted by attribute key.

        Raises
        ------
        ValueError
            If the snapshots describe different entities.
        """
        if before is NOT_FOUND or before is None:
            return DiffResult(changes=(), created=True)

        if before.key != after.key:
            raise ValueError(f"cannot diff {before.key} against {after.key}")

        ctx = _DiffPass(
            entity_type=after.entity_type,
            entity_id=after.entity_id,
            matcher=KeyMatcher(ignored_keys),
            normalizer=normalizer or self.normalizer,
            identity_key=self.identity_key,
        )
        ctx.compare_maps("", before.attributes, after.attributes)
        ctx.out.sort(key=lambda c: c.attribute_key)
        return DiffResult(changes=tuple(ctx.out), created=False)


@dataclass
class _DiffPass:
    entity_type: str
    entity_id: str
    matcher: KeyMatcher
    normalizer: Normalizer
    identity_key: Optional[str]
    out: List[ChangeRecord] = field(default_factory=list)

    def record(self, path: str, old: Any, new: Any, kind: ChangeKind) -> None:
        self.out.append(
            ChangeRecord(
                entity_type=self.entity_type,
                entity_id=self.entity_id,
                attribute_key=path,
                old_value=old,
                new_value=new,
                kind=kind,
            )
        )

    def compare(self, path: str, old: Any, new: Any) -> None:
        if self.matcher.matches(path):
            return
        try:
            self._compare(path, old, new)
        except (TypeError, ValueError, AttributeError) as e:
            logger.debug("uncomparable value at %s (%r); reporting as text", path, e)
            self._malformed(path, old, new)

    def _compare(self, path: str, old: Any, new: Any) -> None:
        k_old, k_new = value_kind(old), value_kind(new)

        if k_old is ValueKind.MAP and k_new is ValueKind.MAP:
            self.compare_maps(path, old, new)
            return
        if k_old is ValueKind.LIST and k_new is ValueKind.LIST:
            self.compare_lists(path, old, new)
            return

        # None is compatible with every kind (value cleared / first set).
        if old is not None and new is not None and k_old is not k_new:
            self._malformed(path, old, new)
            return

        if k_old in (ValueKind.MAP, ValueKind.LIST) or k_new in (ValueKind.MAP, ValueKind.LIST):
            # container <-> None
            self.record(path, old, new, ChangeKind.MODIFIED)
            return

        if not _scalars_equal(self.normalizer(old), self.normalizer(new)):
            self.record(path, old, new, ChangeKind.MODIFIED)

    def _malformed(self, path: str, old: Any, new: Any) -> None:
        self.record(path, as_text(old), as_text(new), ChangeKind.MODIFIED)

    def compare_maps(self, prefix: str, old: Mapping[str, Any], new: Mapping[str, Any]) -> None:
        for key in sorted(set(old) | set(new), key=str):
            path = f"{prefix}.{key}" if prefix else str(key)
            if self.matcher.matches(path):
                continue
            if key not in new:
                self.record(path, old[key], None, ChangeKind.REMOVED)
            elif key not in old:
                self.record(path, None, new[key], ChangeKind.ADDED)
            else:
                self.compare(path, old[key], new[key])

    def compare_lists(self, path: str, old: Sequence[Any], new: Sequence[Any]) -> None:
        if self._identity_matchable(old, new):
            self._compare_by_identity(path, old, new)
        else:
            self._compare_by_membership(path, old, new)

    def _identity_matchable(self, old: Sequence[Any], new: Sequence[Any]) -> bool:
        key = self.identity_key
        if key is None or not (old or new):
            return False
        items = list(old) + list(new)
        if not all(isinstance(i, Mapping) and key in i for i in items):
            return False
        # duplicated ids make identity ambiguous
        return len({as_text(i[key]) for i in old}) == len(old) and len({as_text(i[key]) for i in new}) == len(new)

    def _compare_by_identity(self, path: str, old: Sequence[Mapping[str, Any]], new: Sequence[Mapping[str, Any]]) -> None:
        key = self.identity_key
        old_by_id = {as_text(i[key]): i for i in old}
        new_by_id = {as_text(i[key]): i for i in new}

        for ident in sorted(set(old_by_id) | set(new_by_id)):
            item_path = f"{path}[{key}={ident}]"
            if self.matcher.matches(item_path):
                continue
            if ident not in new_by_id:
                self.record(item_path, old_by_id[ident], None, ChangeKind.REMOVED)
            elif ident not in old_by_id:
                self.record(item_path, None, new_by_id[ident], ChangeKind.ADDED)
            else:
                self.compare_maps(item_path, old_by_id[ident], new_by_id[ident])

    def _compare_by_membership(self, path: str, old: Sequence[Any], new: Sequence[Any]) -> None:
        unmatched_new = {j: self._fingerprint(v) for j, v in enumerate(new)}

        removed: List[int] = []
        for i, v in enumerate(old):
            fp = self._fingerprint(v)
            match = next((j for j, other in unmatched_new.items() if other == fp), None)
            if match is None:
                removed.append(i)
            else:
                del unmatched_new[match]

        for i in removed:
            item_path = f"{path}[{i}]"
            if not self.matcher.matches(item_path):
                self.record(item_path, old[i], None, ChangeKind.REMOVED)
        for j in sorted(unmatched_new):
            item_path = f"{path}[{j}]"
            if not self.matcher.matches(item_path):
                self.record(item_path, None, new[j], ChangeKind.ADDED)

    def _fingerprint(self, value: Any) -> str:
        kind = value_kind(value)
        if kind in (ValueKind.MAP, ValueKind.LIST):
            return "c:" + as_text(value)
        normalized = self.normalizer(value)
        return f"{type(normalized).__name__}:{as_text(normalized)}"
