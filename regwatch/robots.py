"""robots.txt compliance with a per-origin cache.

A robots file that cannot be read (server error, timeout, anything but
200/404/410) does not block the crawl: the origin is treated as allowed and a
warning is logged.
"""

import logging
import threading
import time
from typing import Callable, Dict, Optional, Tuple
from urllib import robotparser
from urllib.parse import urlsplit

import httpx

logger = logging.getLogger("regwatch")

ALLOW_ALL = "allow_all"
FAIL_OPEN = "fail_open"


class RobotsGate:
    def __init__(self, client: httpx.Client, user_agent: str, ttl: Optional[float] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.client = client
        self.user_agent = user_agent
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        # origin -> (parser or policy marker, fetched_at)
        self._cache: Dict[str, Tuple[object, float]] = {}

    @staticmethod
    def origin_of(url: str) -> str:
        parts = urlsplit(url)
        return f"{parts.scheme}://{parts.netloc}"

    def is_allowed(self, url: str) -> bool:
        rules = self._rules_for(self.origin_of(url))
        if rules in (ALLOW_ALL, FAIL_OPEN):
            return True
        return rules.can_fetch(self.user_agent, url)

    def clear(self):
        with self._lock:
            self._cache.clear()

    def _rules_for(self, origin: str):
        with self._lock:
            cached = self._cache.get(origin)
            if cached is not None:
                rules, fetched_at = cached
                if self.ttl is None or self._clock() - fetched_at < self.ttl:
                    return rules

        rules = self._fetch(origin)
        with self._lock:
            self._cache[origin] = (rules, self._clock())
        return rules

    def _fetch(self, origin: str):
        robots_url = f"{origin}/robots.txt"
        try:
            resp = self.client.get(robots_url, headers={"User-Agent": self.user_agent})
        except httpx.HTTPError as e:
            logger.warning(f"[robots] Could not fetch {robots_url}: {e}; allowing {origin}")
            return FAIL_OPEN

        if resp.status_code == 200:
            rp = robotparser.RobotFileParser()
            rp.set_url(robots_url)
            rp.parse(resp.text.splitlines())
            return rp
        if resp.status_code in (404, 410):
            logger.debug(f"[robots] No robots.txt at {origin} ({resp.status_code})")
            return ALLOW_ALL

        logger.warning(f"[robots] {robots_url} returned {resp.status_code}; allowing {origin}")
        return FAIL_OPEN
