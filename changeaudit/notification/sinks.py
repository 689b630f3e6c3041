"""
Event sink implementations.

The correlation registry only knows the `EventSink` protocol. This module
provides the two implementations shipped with the engine:

- `InMemoryEventSink`: keeps delivered occurrences in memory (default sink and
  test double)
- `NotifyingEventSink`: records like the in-memory sink and additionally turns
  each delivery into a `NotificationEvent` for a `Notifier` (webhook, worker thread)
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Callable, List, Mapping, Optional, Tuple

from changeaudit.core.config.event_catalog import EventCatalog
from changeaudit.notification.base import NotificationEvent, Notifier
from changeaudit.notification.payload import build_occurrence_payload

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeliveredEvent:
    """One occurrence as received by a sink."""
    code: str
    variables: Mapping[str, str]
    delivered_at: datetime


class InMemoryEventSink:
    """
    Thread-safe in-memory event sink.

    One sink instance is typically shared by every operation scope of a
    process, so all access to the history goes through a lock.

    Parameters
    ----------
    clock
        Time source for delivery timestamps and ``fired_recently``.
    max_history
        Maximum number of delivered events kept (oldest dropped first).
    """

    def __init__(self, clock: Callable[[], datetime] = datetime.now, max_history: int = 10_000):
        self._clock = clock
        self._max_history = max_history
        self._lock = threading.RLock()
        self._history: List[DeliveredEvent] = []

    def emit(self, code: str, variables: Mapping[str, str]) -> None:
        self._record(code, variables)

    def _record(self, code: str, variables: Mapping[str, str]) -> Tuple[DeliveredEvent, List[DeliveredEvent]]:
        """Append one delivery; returns it with the history as of that append."""
        event = DeliveredEvent(
            code=str(code),
            variables=MappingProxyType(dict(variables)),
            delivered_at=self._clock(),
        )
        with self._lock:
            self._history.append(event)
            if len(self._history) > self._max_history:
                del self._history[: len(self._history) - self._max_history]
            return event, list(self._history)

    def has_fired(self, code: str) -> bool:
        code = str(code)
        with self._lock:
            return any(e.code == code for e in self._history)

    def fired_recently(self, code: str, window_ms: int) -> bool:
        if window_ms <= 0:
            return False
        code = str(code)
        cutoff = self._clock() - timedelta(milliseconds=window_ms)
        with self._lock:
            return any(e.code == code and e.delivered_at > cutoff for e in reversed(self._history))

    @property
    def history(self) -> List[DeliveredEvent]:
        """Copy of the delivered events, oldest first."""
        with self._lock:
            return list(self._history)

    def codes(self) -> List[str]:
        with self._lock:
            return [e.code for e in self._history]

    def clear(self) -> None:
        with self._lock:
            self._history.clear()


class NotifyingEventSink(InMemoryEventSink):
    """
    Sink that forwards every delivered occurrence to a notifier.

    The notifier is called synchronously from ``emit``. Pass a
    `NotificationWorkerThread` to move network I/O off the caller's thread;
    retries and backoff then happen in the worker.

    Parameters
    ----------
    notifier
        Delivery target (e.g., `WebhookNotifier` or `NotificationWorkerThread`).
    catalog
        Optional catalog used to enrich payloads with severity and description.
    clock
        Time source.
    max_history
        See `InMemoryEventSink`.
    """

    def __init__(
        self,
        notifier: Notifier,
        catalog: Optional[EventCatalog] = None,
        clock: Callable[[], datetime] = datetime.now,
        max_history: int = 10_000,
    ):
        super().__init__(clock=clock, max_history=max_history)
        self._notifier = notifier
        self._catalog = catalog

    def emit(self, code: str, variables: Mapping[str, str]) -> None:
        # history is snapshotted with the append; concurrent emits must not swap it
        delivered, history = self._record(code, variables)

        payload = build_occurrence_payload(delivered, history, self._catalog)
        event = NotificationEvent(
            type="audit_event",
            payload=payload,
            severity=payload["event"]["severity"],
            source=_source(delivered.variables),
            ts=payload["event"]["timestamp"],
        )
        logger.debug("notifying %s (%s)", delivered.code, event.source)
        self._notifier.notify(event)


def _source(variables: Mapping[str, str]) -> Optional[str]:
    entity_type = variables.get("EntityType")
    if not entity_type:
        return None
    entity_id = variables.get("EntityId", "")
    return f"{entity_type}#{entity_id}" if entity_id else entity_type
