from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable

import requests

from calflow.errors import MAX_CONTENT_LENGTH, ExceededContentLength, FetchFailed

logger = logging.getLogger(__name__)

Fetcher = Callable[[str], str]

_CHUNK_SIZE = 64 * 1024


@dataclass
class CacheEntry:
    body: str
    expires_at: float

    def expired(self, now: float) -> bool:
        return now >= self.expires_at


class HTTPSourceFetcher:
    def __init__(self, timeout: float = 30, max_content_length: int = MAX_CONTENT_LENGTH) -> None:
        self.timeout = timeout
        self.max_content_length = max_content_length

    def _declared_length(self, response: requests.Response) -> int | None:
        raw = response.headers.get("Content-Length")
        if raw is None:
            return None
        try:
            return int(raw)
        except ValueError:
            return None

    def __call__(self, url: str) -> str:
        try:
            with requests.get(url, stream=True, timeout=self.timeout) as response:
                declared = self._declared_length(response)
                if declared is not None and declared > self.max_content_length:
                    raise ExceededContentLength(self.max_content_length)
                response.raise_for_status()
                chunks: list[bytes] = []
                received = 0
                for chunk in response.iter_content(chunk_size=_CHUNK_SIZE):
                    received += len(chunk)
                    # servers may omit or understate Content-Length
                    if received > self.max_content_length:
                        raise ExceededContentLength(self.max_content_length)
                    chunks.append(chunk)
        except requests.RequestException as exc:
            raise FetchFailed(f"cannot request source ({exc})") from exc
        return b"".join(chunks).decode("utf-8", errors="replace")


class SourceCache:
    """Time-bounded cache of remote calendar bodies keyed by source URL.

    Concurrent misses for the same URL each perform their own fetch; the
    last writer wins. Entries are evicted lazily on lookup or by ``sweep``.
    """

    def __init__(self, fetcher: Fetcher, clock: Callable[[], float] = time.monotonic) -> None:
        self._fetcher = fetcher
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _lookup(self, url: str) -> str | None:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(url)
            if entry is None:
                return None
            if entry.expired(now):
                del self._entries[url]
                return None
            return entry.body

    def get(self, url: str, cache_duration: timedelta) -> str:
        body = self._lookup(url)
        if body is not None:
            logger.info("[%s] from cache", url)
            return body
        return self.refresh(url, cache_duration)

    def refresh(self, url: str, cache_duration: timedelta) -> str:
        body = self._fetcher(url)
        expires_at = self._clock() + cache_duration.total_seconds()
        with self._lock:
            self._entries[url] = CacheEntry(body=body, expires_at=expires_at)
        logger.info("[%s] from request", url)
        return body

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [url for url, entry in self._entries.items() if entry.expired(now)]
            for url in expired:
                del self._entries[url]
        if expired:
            logger.debug("evicted %d expired source(s)", len(expired))
        return len(expired)
