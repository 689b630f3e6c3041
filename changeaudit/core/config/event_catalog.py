from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from changeaudit.domain.models import EventDefinition

logger = logging.getLogger(__name__)


@dataclass
class EventCatalog:
    """
    Registry of known event codes.

    This class maintains an in-memory mapping from event code to
    class: 'EventDefinition'. It is populated at startup from configuration
    and queried by the correlation registry before committing occurrences.

    Notes
    -----
    - Registration is first-wins: registering a code that already exists is
      rejected with a logged error and the original definition is kept.
    - An empty catalog accepts every code; once at least one definition is
      registered, unregistered codes are refused at commit time.

    Attributes
    ----------
    disabled_codes
        Codes that are never committed.
    """

    disabled_codes: FrozenSet[str] = frozenset()
    _definitions: Dict[str, EventDefinition] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.disabled_codes = frozenset(str(c) for c in self.disabled_codes)

    def register(self, definition: EventDefinition) -> bool:
        """
        Register one event definition.

        Parameters
        ----------
        definition
            Definition to add.

        Returns
        -------
        bool
            False if the code was already registered.
        """
        if definition.code in self._definitions:
            logger.error("event %s already registered; keeping the first definition", definition.code)
            return False
        self._definitions[definition.code] = definition
        return True

    def register_many(self, definitions: Iterable[EventDefinition]) -> int:
        """Register definitions and return how many were accepted."""
        return sum(1 for d in definitions if self.register(d))

    def get(self, code: Any) -> Optional[EventDefinition]:
        return self._definitions.get(str(code))

    def all(self) -> List[EventDefinition]:
        return list(self._definitions.values())

    def is_enabled(self, code: Any) -> bool:
        return str(code) not in self.disabled_codes

    def accepts(self, code: Any) -> bool:
        """
        Whether occurrences of ``code`` may be committed.

        Returns
        -------
        bool
            True if the code is enabled and either registered or the catalog is empty.
        """
        if not self.is_enabled(code):
            return False
        return not self._definitions or str(code) in self._definitions

    def __contains__(self, code: object) -> bool:
        return str(code) in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)
