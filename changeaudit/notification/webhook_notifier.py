"""
Webhook delivery of audit events.

Every committed occurrence reaching a `NotifyingEventSink` can be POSTed as
JSON to one HTTP endpoint. Besides the payload, the request carries routing
headers so the receiver can filter without parsing the body:

- ``X-Audit-Event``: event code
- ``X-Audit-Severity``: catalog severity (``INFO`` when unregistered)
- ``X-Audit-Source``: ``<entity_type>#<entity_id>`` when the occurrence names one
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

import requests

from changeaudit.notification.base import NotificationEvent

logger = logging.getLogger(__name__)

EVENT_HEADER = "X-Audit-Event"
SEVERITY_HEADER = "X-Audit-Severity"
SOURCE_HEADER = "X-Audit-Source"


class WebhookDeliveryError(requests.HTTPError):
    """The endpoint answered an audit event with an error status."""

    def __init__(self, code: str, status: int, url: str, response: Optional[requests.Response] = None):
        super().__init__(f"webhook {url} rejected audit event {code or '?'}: HTTP {status}", response=response)
        self.code = code
        self.status = status


@dataclass(frozen=True)
class WebhookConfig:
    """
    Audit webhook endpoint.

    Parameters
    ----------
    url
        Target webhook URL.
    timeout_s
        HTTP request timeout in seconds.
    verify_tls
        Whether to verify TLS certificates.
    auth_header
        Full Authorization header value (``Bearer <token>``).
    """

    url: str
    timeout_s: float = 2.0
    verify_tls: bool = True
    auth_header: Optional[str] = None


def _event_code(event: NotificationEvent) -> str:
    body = event.payload.get("event") if isinstance(event.payload, dict) else None
    if isinstance(body, dict) and body.get("code") is not None:
        return str(body["code"])
    return ""


class WebhookNotifier:
    """
    Delivers audit events to an HTTP endpoint.

    Performs network I/O on the caller's thread. A failed delivery raises;
    retrying is left to `NotificationWorkerThread`.
    """

    def __init__(self, cfg: WebhookConfig):
        self._cfg = cfg

    @property
    def url(self) -> str:
        return self._cfg.url

    def headers_for(self, event: NotificationEvent) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._cfg.auth_header:
            headers["Authorization"] = self._cfg.auth_header
        code = _event_code(event)
        if code:
            headers[EVENT_HEADER] = code
        if event.severity:
            headers[SEVERITY_HEADER] = str(event.severity)
        if event.source:
            headers[SOURCE_HEADER] = event.source
        return headers

    def notify(self, event: NotificationEvent) -> None:
        """
        POST one audit event.

        Parameters
        ----------
        event
            Notification built by the sink; its payload is sent as the JSON body.

        Raises
        ------
        WebhookDeliveryError
            If the endpoint answers with an error status (a ``requests.HTTPError``).
        requests.RequestException
            For network-related errors.
        """
        code = _event_code(event)
        r = requests.post(
            self._cfg.url,
            json=event.payload,
            headers=self.headers_for(event),
            timeout=self._cfg.timeout_s,
            verify=self._cfg.verify_tls,
        )
        try:
            r.raise_for_status()
        except requests.HTTPError as e:
            raise WebhookDeliveryError(code, r.status_code, self._cfg.url, response=r) from e
        logger.debug("webhook %s accepted audit event %s (%s)", self._cfg.url, code or event.type, r.status_code)
