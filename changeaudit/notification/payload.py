from __future__ import annotations

from collections import Counter
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, Optional, Sequence

from changeaudit.core.config.event_catalog import EventCatalog
from changeaudit.domain.models import EventSeverity

if TYPE_CHECKING:
    from changeaudit.notification.sinks import DeliveredEvent


def _iso(ts: datetime) -> str:
    """
    Convert datetime to ISO-8601 string with second precision.

    Parameters
    ----------
    ts
        Timestamp to convert.

    Returns
    -------
    str
        ISO-8601 formatted timestamp (seconds precision).
    """
    return ts.isoformat(timespec="seconds")


def build_occurrence_payload(
    ev: "DeliveredEvent",
    history: Sequence["DeliveredEvent"],
    catalog: Optional[EventCatalog] = None,
) -> Dict[str, Any]:
    """
    Build a webhook payload for a delivered occurrence plus sink totals.

    The payload includes:
    - "event": the occurrence fields required by downstream consumers, enriched
      with the catalog definition when one is registered
    - "totals": counters computed from the sink's delivery history

    Parameters
    ----------
    ev
        Occurrence that triggered the notification.
    history
        Delivery history of the sink (including ``ev``).
    catalog
        Optional catalog used to resolve severity, description and object.

    Returns
    -------
    dict
        Webhook payload dictionary with keys: "type", "event", and "totals".
    """
    definition = catalog.get(ev.code) if catalog is not None else None

    def severity_of(code: str) -> str:
        d = catalog.get(code) if catalog is not None else None
        return d.severity.value if d is not None else EventSeverity.INFO.value

    event_payload = {
        "code": ev.code,
        "severity": severity_of(ev.code),
        "description": definition.description if definition else "",
        "object": definition.object_name if definition else "",
        "event_type": definition.event_type if definition else "",
        "timestamp": _iso(ev.delivered_at),
        "variables": dict(ev.variables),
    }

    by_code = Counter(e.code for e in history)
    by_severity = Counter(severity_of(e.code) for e in history)

    totals_payload = {
        "events_total": len(history),
        "event_counts_by_code": {str(k): int(v) for k, v in by_code.items()},
        "event_counts_by_severity": {str(k): int(v) for k, v in by_severity.items()},
    }

    return {
        "type": "audit_event",
        "event": event_payload,
        "totals": totals_payload,
    }
