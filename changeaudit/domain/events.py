"""
Commit outcome domain models.

This module defines the bookkeeping representation of what the correlation
registry did with an event occurrence. A `FiringRecord` represents *what was
fired* in the current operation scope, while `CommitOutcome` explains *why*
an occurrence did or did not reach the event sink.

Records are typically used for:
- suppression and coalescing checks inside one operation scope
- webhook payload totals
- debugging why an expected alert did not appear
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from changeaudit.domain.models import EventOccurrence


class CommitOutcome(str, Enum):
    """
    Result of handing an occurrence to the correlation registry.

    Members
    -------
    COMMITTED : str
        Occurrence recorded as fired and forwarded to the sink.
    SUPPRESSED : str
        A code in the rule's ``suppressed_by`` list will or has fired.
    COALESCED : str
        The same code fired within the rule's coalescing window.
    DUPLICATE_CREATION : str
        A "created" occurrence already fired for the entity in this scope.
    DISABLED : str
        The code is disabled by configuration.
    UNREGISTERED : str
        The code is not present in a non-empty event catalog.
    DEFERRED : str
        Occurrence parked in the pipeline until the scope closes.
    DROPPED : str
        A deferred occurrence whose ``must_not_be_followed_by`` code fired.
    SINK_FAILED : str
        Recorded as fired, but the sink raised while emitting.
    """

    COMMITTED = "COMMITTED"
    SUPPRESSED = "SUPPRESSED"
    COALESCED = "COALESCED"
    DUPLICATE_CREATION = "DUPLICATE_CREATION"
    DISABLED = "DISABLED"
    UNREGISTERED = "UNREGISTERED"
    DEFERRED = "DEFERRED"
    DROPPED = "DROPPED"
    SINK_FAILED = "SINK_FAILED"

    @property
    def fired(self) -> bool:
        return self in (CommitOutcome.COMMITTED, CommitOutcome.SINK_FAILED)


@dataclass(frozen=True)
class FiringRecord:
    """
    Entry of the append-only firing log of one operation scope.

    Parameters
    ----------
    code
        Event code that fired.
    fired_at
        Registry clock time of the commit.
    occurrence
        The committed occurrence.
    outcome
        COMMITTED, or SINK_FAILED when delivery raised.
    error
        ``repr`` of the sink exception, if any.
    """

    code: str
    fired_at: datetime
    occurrence: EventOccurrence
    outcome: CommitOutcome = CommitOutcome.COMMITTED
    error: Optional[str] = None
