import logging
import time
from collections import deque
from threading import Lock
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SECONDS = 3600
DEFAULT_THRESHOLDS = {
    "EMAIL_INGEST_AUTH_INVALID": 5,
    "APPROVAL_TOKEN_REJECTED": 10,
    "RATE_LIMIT_BLOCKED": 20,
    "SMS_SEND_FAILED": 5,
}


class AuditAlertTracker:
    """Counts security-relevant audit actions in a sliding window and warns on spikes."""

    def __init__(self, window_seconds: int, thresholds: dict[str, int]) -> None:
        self._window_seconds = window_seconds
        self._thresholds = thresholds
        self._buckets: dict[str, deque[float]] = {}
        self._lock = Lock()

    def record(self, action: str, metadata: Optional[dict] = None) -> bool:
        """Returns True when this call crossed an alert threshold."""
        limit = self._thresholds.get(action)
        if not limit:
            return False
        now = time.monotonic()
        with self._lock:
            bucket = self._buckets.setdefault(action, deque())
            cutoff = now - self._window_seconds
            while bucket and bucket[0] <= cutoff:
                bucket.popleft()
            bucket.append(now)
            count = len(bucket)

        # Warn at the threshold and every multiple of it.
        if count % limit != 0:
            return False
        logger.warning(
            "ALERT audit_action=%s count=%s window_seconds=%s metadata=%s",
            action,
            count,
            self._window_seconds,
            metadata or {},
        )
        return True

    def count(self, action: str) -> int:
        with self._lock:
            bucket = self._buckets.get(action)
            return len(bucket) if bucket else 0

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()


alert_tracker = AuditAlertTracker(DEFAULT_WINDOW_SECONDS, DEFAULT_THRESHOLDS)
