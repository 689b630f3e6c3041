from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Protocol


class EventSink(Protocol):
    """
    Protocol interface for the alert-delivery subsystem.

    The correlation registry forwards committed occurrences through ``emit``
    and may query delivery history. The engine never retries or buffers on
    this boundary; if ``emit`` raises, the occurrence is lost for the scope.

    Methods
    -------
    emit(code, variables)
        Deliver one committed occurrence.
    has_fired(code)
        Whether ``code`` was ever delivered by this sink.
    fired_recently(code, window_ms)
        Whether ``code`` was delivered within the last ``window_ms`` milliseconds.
    """

    def emit(self, code: str, variables: Mapping[str, str]) -> None:
        ...

    def has_fired(self, code: str) -> bool:
        ...

    def fired_recently(self, code: str, window_ms: int) -> bool:
        ...


@dataclass(frozen=True)
class NotificationEvent:
    """
    Notification event contract used by the notification layer.

    A 'NotificationEvent' is a transport message that can be sent to
    one or more notifiers. It represents *what should be communicated*,
    not *how* it is delivered.

    Parameters
    ----------
    type
        Event type identifier (e.g., "audit_event").
    payload
        Structured JSON-serialisable payload.
    severity
        Optional severity label (e.g., "HIGH", "CRITICAL").
    source
        Optional source identifier (e.g., "product#42").
    ts
        Optional timestamp string describing when the event occurred.

    Notes
    -----
    The class is frozen (immutable) so events remain stable once created,
    supporting safe logging and auditability.
    """

    type: str
    payload: Dict[str, Any]
    severity: Optional[str] = None
    source: Optional[str] = None
    ts: Optional[str] = None


class Notifier(Protocol):
    """
    Protocol interface for notification delivery.

    Any notifier implementation can be used if it provides a 'notify(event)'
    method with the correct signature. This enables dependency inversion and
    makes notification dispatch easy to test with fakes/mocks.

    Methods
    -------
    notify(event)
        Deliver a notification event.
    """

    def notify(self, event: NotificationEvent) -> None:
        """
        Deliver a notification event.

        Parameters
        ----------
        event
            The notification event to deliver.
        """
        ...
