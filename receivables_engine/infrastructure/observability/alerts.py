"""Operational alerting for gateway anomalies"""

import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Optional

from receivables_engine.config import settings
from receivables_engine.infrastructure.observability.metrics import (
    operational_alert_counter,
    unknown_payment_counter,
)

logger = logging.getLogger("receivables_engine.alerts")


class UnknownPaymentMonitor:
    """
    Tracks gateway notifications that reference payment ids this engine never issued.

    Every occurrence is counted and raised as an alert. When occurrences
    repeat `threshold` times within `window_seconds` the alert escalates to
    an error, which is what paging rules key on.
    """

    def __init__(
        self,
        threshold: Optional[int] = None,
        window_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.threshold = threshold or settings.unknown_payment_alert_threshold
        self.window_seconds = window_seconds or settings.unknown_payment_alert_window_seconds
        self.clock = clock
        self._occurrences: Deque[float] = deque()
        self._lock = threading.Lock()

    def report(self, payment_id: str, kind: str) -> bool:
        """Record an unknown payment id; returns True when the repeat threshold is reached"""
        now = self.clock()
        with self._lock:
            self._occurrences.append(now)
            while self._occurrences and now - self._occurrences[0] > self.window_seconds:
                self._occurrences.popleft()
            recent = len(self._occurrences)

        unknown_payment_counter.inc()
        operational_alert_counter.labels(alert="unknown_payment_id").inc()
        logger.warning(
            "Gateway notification for unknown payment discarded",
            extra={"payment_id": payment_id, "notification_kind": kind, "alert": "unknown_payment_id"},
        )

        if recent >= self.threshold:
            operational_alert_counter.labels(alert="repeated_unknown_payment_ids").inc()
            logger.error(
                "Repeated gateway notifications for unknown payments",
                extra={
                    "payment_id": payment_id,
                    "occurrences": recent,
                    "window_seconds": self.window_seconds,
                    "alert": "repeated_unknown_payment_ids",
                },
            )
            return True
        return False

    @property
    def recent_occurrences(self) -> int:
        with self._lock:
            return len(self._occurrences)


unknown_payment_monitor = UnknownPaymentMonitor()
