from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from changeaudit.core.config.event_catalog import EventCatalog
from changeaudit.core.correlation.registry import CorrelationRegistry
from changeaudit.core.state.snapshot_store import SnapshotStore
from changeaudit.domain.events import CommitOutcome
from changeaudit.notification.base import EventSink

logger = logging.getLogger(__name__)


@dataclass
class OperationScope:
    """
    Lifetime of one logical user action (one request, one background job).

    The scope owns exactly one `SnapshotStore` and one `CorrelationRegistry`.
    Both are created lazily on first access and discarded with the scope;
    nothing is persisted and nothing is shared with other scopes, so
    concurrent requests never see each other's "recently fired" state.

    The scope is a context manager: leaving the ``with`` block closes it,
    which resolves the deferred pipeline.

    Parameters
    ----------
    sink
        Event sink the registry forwards committed occurrences to.
    clock
        Shared by the store and the registry.
    catalog
        Optional event catalog consulted at commit time.
    default_window_ms
        Default coalescing window for the registry.
    consult_sink_history
        Forwarded to the registry.
    scope_id
        Identifier used in logs.
    """

    sink: EventSink
    clock: Callable[[], datetime] = datetime.now
    catalog: Optional[EventCatalog] = None
    default_window_ms: int = 0
    consult_sink_history: bool = False
    scope_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    _snapshots: Optional[SnapshotStore] = field(default=None, init=False, repr=False)
    _registry: Optional[CorrelationRegistry] = field(default=None, init=False, repr=False)
    _closed: bool = field(default=False, init=False)

    @property
    def snapshots(self) -> SnapshotStore:
        if self._snapshots is None:
            self._snapshots = SnapshotStore(clock=self.clock)
        return self._snapshots

    @property
    def registry(self) -> CorrelationRegistry:
        if self._registry is None:
            self._registry = CorrelationRegistry(
                sink=self.sink,
                clock=self.clock,
                catalog=self.catalog,
                default_window_ms=self.default_window_ms,
                consult_sink_history=self.consult_sink_history,
            )
        return self._registry

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def started(self) -> bool:
        """Whether any engine state was created in this scope."""
        return self._snapshots is not None or self._registry is not None

    def close(self) -> List[CommitOutcome]:
        """
        End the scope: flush deferred occurrences and drop all state.

        Closing twice is a no-op.

        Returns
        -------
        list of CommitOutcome
            Outcomes of the deferred occurrences resolved at close.
        """
        if self._closed:
            return []
        self._closed = True
        outcomes: List[CommitOutcome] = []
        if self._registry is not None:
            outcomes = self._registry.flush()
            log = self._registry.log
            logger.debug("scope %s closed: %d firing(s) %s", self.scope_id, len(log), log.counts_by_code())
        self._snapshots = None
        self._registry = None
        return outcomes

    def discard(self) -> None:
        """
        Abandon the scope without flushing (e.g., the mutation was rolled back).
        """
        self._closed = True
        self._snapshots = None
        self._registry = None

    def __enter__(self) -> "OperationScope":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.close()
        else:
            self.discard()
