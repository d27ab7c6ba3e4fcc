import logging
import threading
import time
from collections import deque
from typing import Deque, Dict

logger = logging.getLogger(__name__)


class CacheClient:
    """Process-local counters for request throttling."""

    def __init__(self) -> None:
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()
        self.connected = False

    def connect(self) -> None:
        self.connected = True
        logger.debug("Rate limit cache ready")

    def disconnect(self) -> None:
        self.reset()
        self.connected = False

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()

    def check_rate_limit(self, key: str, limit: int, window_seconds: int = 60) -> bool:
        if limit <= 0:
            return True
        now = time.monotonic()
        cutoff = now - window_seconds
        with self._lock:
            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= cutoff:
                hits.popleft()
            if len(hits) >= limit:
                return False
            hits.append(now)
            return True


cache_client = CacheClient()
