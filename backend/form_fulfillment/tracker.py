"""
Tracking-table client (Airtable-style REST API).

Each processed record gets its row patched with the uploaded link and a status
label. Calls are paced by a token bucket sized to the API's published limit,
and a 429 response backs off (honouring ``Retry-After``) before trying again.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

import requests

logger = logging.getLogger(__name__)


class TokenBucket:
    """Allow `rate` calls per second with bursts of up to `capacity`."""

    def __init__(
        self,
        rate: float,
        capacity: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if rate <= 0:
            raise ValueError("rate must be positive")
        self.rate = rate
        self.capacity = capacity if capacity is not None else max(1.0, rate)
        self.tokens = self.capacity
        self._clock = clock
        self._sleep = sleep
        self._updated = clock()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._updated
        self._updated = now
        self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)

    def acquire(self) -> float:
        """Block until a token is available; returns the time spent waiting."""
        waited = 0.0
        with self._lock:
            self._refill()
            while self.tokens < 1:
                delay = (1 - self.tokens) / self.rate
                self._sleep(delay)
                waited += delay
                self._refill()
            self.tokens -= 1
        return waited


def retry_after_seconds(response: requests.Response, attempt: int, base_delay: float = 1.0) -> float:
    header = response.headers.get("Retry-After")
    if header:
        try:
            return max(0.0, float(header))
        except ValueError:
            pass
    return base_delay * (2 ** attempt)


class TrackerClient:
    def __init__(
        self,
        base_id: str,
        table_name: str,
        token: str,
        api_url: str = "https://api.airtable.com/v0",
        link_field: str = "Application Form PDF",
        status_field: str = "Status",
        status_label: str = "Form Shared on Email",
        requests_per_second: float = 5.0,
        max_retries: int = 3,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        timeout: int = 15,
    ):
        self.base_id = base_id
        self.table_name = table_name
        self.api_url = api_url.rstrip("/")
        self.link_field = link_field
        self.status_field = status_field
        self.status_label = status_label
        self.max_retries = max_retries
        self.timeout = timeout
        self._sleep = sleep
        self.bucket = TokenBucket(requests_per_second, sleep=sleep)

        self.session = session or requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        })

    def record_url(self, record_id: str) -> str:
        return f"{self.api_url}/{self.base_id}/{self.table_name}/{record_id}"

    def update_record(self, record_id: Optional[str], link: Optional[str]) -> bool:
        """
        Patch the row for `record_id`. Never raises; returns True only when the
        API accepted the update.
        """
        if not record_id:
            logger.warning("Skipping tracker update: record has no recordId")
            return False

        body = {"fields": {self.link_field: link, self.status_field: self.status_label}}
        logger.info("Updating tracker record %s...", record_id)

        attempt = 0
        while True:
            self.bucket.acquire()
            try:
                r = self.session.patch(self.record_url(record_id), json=body, timeout=self.timeout)
            except requests.RequestException as exc:
                logger.error("Error updating tracker record %s: %s", record_id, exc)
                return False

            if r.status_code == 429 and attempt < self.max_retries:
                delay = retry_after_seconds(r, attempt)
                logger.warning(
                    "Tracker rate limit hit for %s; backing off %.1fs (attempt %d/%d)",
                    record_id, delay, attempt + 1, self.max_retries,
                )
                self._sleep(delay)
                attempt += 1
                continue

            if not r.ok:
                logger.error("Failed to update record %s: %s %s", record_id, r.status_code, r.text[:500])
                return False

            logger.info("Tracker record %s updated successfully", record_id)
            return True
