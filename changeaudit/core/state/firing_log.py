from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Set

from changeaudit.domain.events import FiringRecord
from changeaudit.domain.models import EntityKey


@dataclass
class FiringLog:
    """
    Append-only log of event codes fired in one operation scope.

    This store maintains:
    - the list of firing records in commit order
    - the last firing time per code (for coalescing windows)
    - the set of entities that already got their "created" event

    Notes
    -----
    - This store is intentionally simple and not thread-safe. It belongs to
      exactly one `CorrelationRegistry`, which belongs to one operation scope.
    - There is no removal API; a record stays for the lifetime of the scope.
    """

    records: List[FiringRecord] = field(default_factory=list)
    last_fired: Dict[str, datetime] = field(default_factory=dict)
    created_entities: Set[EntityKey] = field(default_factory=set)

    def append(self, record: FiringRecord) -> None:
        """
        Append a firing record.

        Parameters
        ----------
        record
            FiringRecord to add.
        """
        self.records.append(record)
        self.last_fired[record.code] = record.fired_at

    def mark_created(self, key: EntityKey) -> None:
        self.created_entities.add(key)

    def was_created(self, key: EntityKey) -> bool:
        return key in self.created_entities

    def fired_for(self, code: str, key: EntityKey) -> bool:
        return any(r.code == code and (r.occurrence.entity_type, r.occurrence.entity_id) == key for r in self.records)

    def last_fired_at(self, code: str) -> Optional[datetime]:
        return self.last_fired.get(code)

    def counts_by_code(self) -> Dict[str, int]:
        """Firings per code, in first-fired order."""
        return dict(Counter(r.code for r in self.records))

    def __contains__(self, code: object) -> bool:
        return code in self.last_fired

    def __len__(self) -> int:
        return len(self.records)
