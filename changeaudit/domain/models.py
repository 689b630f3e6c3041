"""
Domain models and enums.

This module defines the core domain-level types used across the engine:
- The tagged attribute ``Value`` union and its kind classifier
- Entity snapshots ("before"/"after" state of a monitored entity)
- Change records produced by the diff engine
- Event occurrences produced by classification rules
- Event definitions held by the event catalog

These are designed as immutable (frozen) dataclasses where appropriate so they
can be shared between the store, the registry and the sink without copies.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

Scalar = Union[None, bool, int, float]
Value = Union[Scalar, str, List[Any], Dict[str, Any]]

EntityKey = Tuple[str, str]


class ValueKind(str, Enum):
    """
    Tag of an attribute value.

    Members
    -------
    SCALAR : str
        None, bool, int or float.
    STRING : str
        Text value.
    LIST : str
        Ordered sequence (list or tuple).
    MAP : str
        Nested mapping with string keys.
    """

    SCALAR = "SCALAR"
    STRING = "STRING"
    LIST = "LIST"
    MAP = "MAP"


def value_kind(value: Any) -> ValueKind:
    """
    Classify an attribute value into its ``ValueKind``.

    Anything that is not a string, list/tuple or mapping is treated as a scalar.
    """
    if isinstance(value, str):
        return ValueKind.STRING
    if isinstance(value, (list, tuple)):
        return ValueKind.LIST
    if isinstance(value, Mapping):
        return ValueKind.MAP
    return ValueKind.SCALAR


class ChangeKind(str, Enum):
    """
    Kind of a field-level difference.

    Members
    -------
    ADDED : str
        Attribute (or list element) present only in the "after" snapshot.
    REMOVED : str
        Attribute (or list element) present only in the "before" snapshot.
    MODIFIED : str
        Attribute present in both snapshots with different values.
    """

    ADDED = "ADDED"
    REMOVED = "REMOVED"
    MODIFIED = "MODIFIED"


class EventSeverity(str, Enum):
    """Severity attached to an event code in the catalog."""

    INFO = "INFO"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class NotFound:
    """Sentinel type for "no prior snapshot"."""

    _instance: Optional["NotFound"] = None

    def __new__(cls) -> "NotFound":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "NOT_FOUND"

    def __bool__(self) -> bool:
        return False


NOT_FOUND = NotFound()


def _freeze(attributes: Mapping[str, Any]) -> Mapping[str, Any]:
    return MappingProxyType(copy.deepcopy(dict(attributes)))


@dataclass(frozen=True)
class EntitySnapshot:
    """
    Captured state of one entity at one point in time.

    The attribute mapping is deep-copied and wrapped in a read-only proxy on
    construction, so later mutation of the producer's dict (or of nested
    lists/maps inside it) never leaks into the snapshot.

    Parameters
    ----------
    entity_type
        Type of the monitored entity (e.g., "product", "form").
    entity_id
        Identifier of the entity within its type.
    attributes
        Attribute name -> ``Value``.
    captured_at
        Timestamp when the snapshot was taken.
    """

    entity_type: str
    entity_id: str
    attributes: Mapping[str, Any]
    captured_at: datetime

    def __post_init__(self) -> None:
        object.__setattr__(self, "entity_id", str(self.entity_id))
        object.__setattr__(self, "attributes", _freeze(self.attributes))

    @property
    def key(self) -> EntityKey:
        return (self.entity_type, self.entity_id)


@dataclass(frozen=True)
class ChangeRecord:
    """
    One field-level difference between two snapshots.

    Parameters
    ----------
    entity_type
        Type of the entity the change belongs to.
    entity_id
        Identifier of the entity.
    attribute_key
        Dotted/indexed path of the changed leaf (e.g., ``settings.color``,
        ``tags[2]``, ``fields[id=3].label``).
    old_value
        Value in the "before" snapshot (None for ADDED).
    new_value
        Value in the "after" snapshot (None for REMOVED).
    kind
        ADDED, REMOVED or MODIFIED.
    """

    entity_type: str
    entity_id: str
    attribute_key: str
    old_value: Any
    new_value: Any
    kind: ChangeKind


@dataclass(frozen=True)
class EventOccurrence:
    """
    Candidate or committed semantic alert.

    Parameters
    ----------
    code
        Event code (e.g., "9010").
    variables
        String variables used later by the message renderer.
    emitted_at
        Timestamp when the occurrence was built.
    entity_type
        Type of the entity the occurrence is about (empty for direct triggers).
    entity_id
        Identifier of the entity (empty for direct triggers).
    """

    code: str
    variables: Mapping[str, str]
    emitted_at: datetime
    entity_type: str = ""
    entity_id: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "code", str(self.code))
        object.__setattr__(
            self,
            "variables",
            MappingProxyType({str(k): "" if v is None else str(v) for k, v in self.variables.items()}),
        )


@dataclass(frozen=True)
class EventDefinition:
    """
    Catalog entry describing an event code.

    Parameters
    ----------
    code
        Unique event code.
    severity
        Severity level.
    description
        Short description of what the event means.
    object_name
        Object the event is about (e.g., "woocommerce-product").
    event_type
        Action verb (e.g., "created", "modified").
    """

    code: str
    severity: EventSeverity = EventSeverity.INFO
    description: str = ""
    object_name: str = ""
    event_type: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "code", str(self.code))
        object.__setattr__(self, "severity", EventSeverity(self.severity))
