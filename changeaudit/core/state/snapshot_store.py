from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Union

from changeaudit.domain.models import NOT_FOUND, EntityKey, EntitySnapshot, NotFound

logger = logging.getLogger(__name__)


@dataclass
class SnapshotStore:
    """
    In-memory store for "before" entity snapshots of one operation scope.

    This store keeps exactly one snapshot per ``(entity_type, entity_id)``:
    the first one captured. Later captures for the same key are ignored, so
    the earliest observable "before" state wins no matter how many callbacks
    try to record it.

    Notes
    -----
    - There is no update or delete API; snapshots are write-once, read-many.
    - This store is intentionally simple and not thread-safe. It is owned by
      exactly one `OperationScope` and never shared between scopes.

    Attributes
    ----------
    clock
        Callable returning the capture timestamp.
    """

    clock: Callable[[], datetime] = datetime.now
    _snapshots: Dict[EntityKey, EntitySnapshot] = field(default_factory=dict, repr=False)

    def capture(self, entity_type: str, entity_id: Any, attributes: Mapping[str, Any]) -> bool:
        """
        Store the "before" snapshot of an entity if none exists yet.

        Parameters
        ----------
        entity_type
            Type of the entity.
        entity_id
            Identifier of the entity (converted to ``str``).
        attributes
            Attribute mapping; deep-copied into the snapshot.

        Returns
        -------
        bool
            True if the snapshot was stored, False if one already existed.
        """
        key = (entity_type, str(entity_id))
        if key in self._snapshots:
            logger.debug("before snapshot for %s#%s already captured", entity_type, entity_id)
            return False
        self._snapshots[key] = EntitySnapshot(
            entity_type=entity_type,
            entity_id=str(entity_id),
            attributes=attributes,
            captured_at=self.clock(),
        )
        return True

    def get(self, entity_type: str, entity_id: Any) -> Union[EntitySnapshot, NotFound]:
        """
        Return the stored "before" snapshot, or ``NOT_FOUND``.

        ``NOT_FOUND`` means no prior state was observed in this scope and the
        entity must be treated as newly created.
        """
        return self._snapshots.get((entity_type, str(entity_id)), NOT_FOUND)

    def __contains__(self, key: object) -> bool:
        return key in self._snapshots

    def __len__(self) -> int:
        return len(self._snapshots)
