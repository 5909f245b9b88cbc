"""
Mail-sync completion notifications.

The mail-account sync job publishes its status transitions here; the
owning service subscribes the dispatcher's callback at start-up. Nothing
depends on a storage engine's native triggers.
"""

import logging
import threading
from collections.abc import Callable

from receipt_search.schemas import MailSyncEvent

logger = logging.getLogger(__name__)

MailSyncListener = Callable[[MailSyncEvent], object]


class MailSyncNotifier:
    """Explicit subscription point for mail-sync status transitions."""

    def __init__(self) -> None:
        self._listeners: list[MailSyncListener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: MailSyncListener) -> Callable[[], None]:
        """Register a listener. Returns a function that unsubscribes it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def publish(self, event: MailSyncEvent, *, raise_errors: bool = False) -> list[object]:
        """
        Deliver an event to every listener, in subscription order.

        A failing listener is logged and does not stop the others; the
        mail-sync job's own status is never affected by its subscribers.
        With raise_errors the first listener error propagates instead, for
        callers that must report it (the HTTP endpoint).

        Returns:
            Listener return values (None for listeners that failed)
        """
        with self._lock:
            listeners = list(self._listeners)

        logger.debug(
            "Mail sync %s for user %s: %s -> %s (%d files)",
            event.sync_job_id,
            event.user_id,
            event.before_status,
            event.after_status,
            event.files_created,
        )

        results = []
        for listener in listeners:
            try:
                results.append(listener(event))
            except Exception:
                if raise_errors:
                    raise
                logger.exception("Mail sync listener %r failed", listener)
                results.append(None)
        return results
