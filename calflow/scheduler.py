from __future__ import annotations

import logging
import threading
from typing import Optional

from calflow.source_cache import SourceCache

logger = logging.getLogger(__name__)


class CacheJanitor:
    def __init__(self, source_cache: SourceCache, interval_seconds: float) -> None:
        self.source_cache = source_cache
        self.interval_seconds = max(1.0, float(interval_seconds))
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="calflow-cache-janitor", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def is_running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def _loop(self) -> None:
        while not self._stop_event.wait(timeout=self.interval_seconds):
            try:
                self.source_cache.sweep()
            except Exception:
                logger.exception("cache sweep failed")
