from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import List

from changeaudit.notification.base import NotificationEvent, Notifier

logger = logging.getLogger(__name__)

_STOP = "__stop__"


@dataclass(frozen=True)
class NotificationThreadConfig:
    max_queue: int = 2000
    retry_count: int = 3
    retry_backoff_s: float = 0.5
    poll_timeout_s: float = 0.5


class NotificationWorkerThread:
    """
    Background delivery of notification events.

    Events are queued by `notify` and sent to every notifier by a daemon
    thread, with exponential backoff between retries. The worker itself
    satisfies the `Notifier` protocol, so it can sit between a
    `NotifyingEventSink` and slow notifiers.

    Notes
    -----
    When the queue is full the newest event is dropped and logged; the
    producer's request is never blocked by delivery.
    """

    def __init__(self, notifiers: List[Notifier], cfg: NotificationThreadConfig | None = None):
        self._notifiers = notifiers
        self._cfg = cfg or NotificationThreadConfig()
        self._q: "queue.Queue[NotificationEvent]" = queue.Queue(maxsize=self._cfg.max_queue)
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name="notification-worker", daemon=True)
        self.dropped = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return self._thread.is_alive()

    def start(self) -> None:
        if not self._thread.is_alive():
            self._thread.start()

    def stop(self, timeout_s: float = 2.0) -> None:
        self._stop.set()
        try:
            self._q.put_nowait(NotificationEvent(type=_STOP, payload={}))
        except queue.Full:
            logger.debug("notification queue full while stopping")
        if self._thread.is_alive():
            self._thread.join(timeout=timeout_s)

    def notify(self, event: NotificationEvent) -> None:
        try:
            self._q.put_nowait(event)
        except queue.Full:
            self.dropped += 1
            logger.warning("notification queue full; dropped %s event from %s", event.type, event.source)

    def drain(self) -> None:
        """Send every queued event on the calling thread (used at shutdown and in tests)."""
        while True:
            try:
                event = self._q.get_nowait()
            except queue.Empty:
                return
            if event.type != _STOP:
                self._dispatch(event)

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                event = self._q.get(timeout=self._cfg.poll_timeout_s)
            except queue.Empty:
                continue

            if event.type == _STOP:
                break

            self._dispatch(event)

    def _dispatch(self, event: NotificationEvent) -> None:
        for notifier in self._notifiers:
            self._send_with_retries(notifier, event)

    def _send_with_retries(self, notifier: Notifier, event: NotificationEvent) -> None:
        for attempt in range(self._cfg.retry_count + 1):
            try:
                notifier.notify(event)
                return
            except Exception as e:
                if attempt >= self._cfg.retry_count:
                    self.failed += 1
                    logger.error("giving up on %s event after %d attempt(s): %s", event.type, attempt + 1, e)
                    return
                logger.debug("notifier failed (attempt %d): %s", attempt + 1, e)
                time.sleep(self._cfg.retry_backoff_s * (2 ** attempt))
