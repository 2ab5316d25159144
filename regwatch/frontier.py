"""Breadth-first traversal of a source's pages, bounded by max_depth and max_pages."""

import logging
from collections import deque
from typing import Callable, Optional, Set
from urllib.parse import urlsplit

from .acquisition import Acquirer, host_matches, rate_key
from .config import AppConfig, SourceConfig
from .errors import NetworkError, RobotsDisallowed
from .models import CrawlError, CrawlResult, HtmlPage, utcnow
from .pages import is_pdf_url
from .ratelimit import RateLimiter
from .robots import RobotsGate

logger = logging.getLogger("regwatch")


def in_allowlist(url: str, allowlist) -> bool:
    host = urlsplit(url).hostname or ""
    return any(host_matches(host, domain) for domain in allowlist)


class FrontierCrawler:
    """One crawler per run: the visited set and downloaded-URL set live here."""

    def __init__(self, config: AppConfig, session, limiter: RateLimiter,
                 robots: Optional[RobotsGate] = None):
        self.config = config
        self.session = session
        self.limiter = limiter
        self.robots = robots
        self.visited: Set[str] = set()
        self.downloaded: Set[str] = set()

    def crawl(self, source: SourceConfig, cancel_token: Callable[[], bool] = None) -> CrawlResult:
        self.visited = set()
        self.downloaded = set()
        acquirer = Acquirer(self.config, source, self.session, self.limiter)
        result = CrawlResult(source_id=source.id, start_url=source.start_url)

        queue = deque([(source.start_url, 0)])
        queued = {source.start_url}

        logger.info(f"[{source.id}] Crawling {source.start_url} "
                    f"(max_depth={source.max_depth}, max_pages={source.max_pages})")

        while queue and result.pages_visited < source.max_pages:
            if cancel_token is not None and cancel_token():
                logger.info(f"[{source.id}] Cancelled after {result.pages_visited} pages")
                result.cancelled = True
                break

            url, depth = queue.popleft()
            if url in self.visited or depth > source.max_depth:
                continue
            if not in_allowlist(url, source.domain_allowlist):
                result.pages_skipped += 1
                continue

            self.visited.add(url)
            result.visited.append(url)
            result.pages_visited += 1

            try:
                if self.robots is not None and not self.robots.is_allowed(url):
                    raise RobotsDisallowed(url)
                self.limiter.acquire(rate_key(url))
                page = acquirer.fetch_page(url)
            except RobotsDisallowed as e:
                logger.info(f"[{source.id}] {e}")
                result.pages_skipped += 1
                result.errors.append(CrawlError(url=url, error=str(e), kind="robots"))
                continue
            except NetworkError as e:
                logger.warning(f"[{source.id}] Failed {url}: {e}")
                result.pages_failed += 1
                result.errors.append(CrawlError(url=url, error=str(e), kind="page"))
                continue
            except Exception as e:
                logger.exception(f"[{source.id}] Unexpected error on {url}: {e}")
                result.pages_failed += 1
                result.errors.append(CrawlError(url=url, error=str(e), kind="page"))
                continue

            logger.info(f"[{source.id}] depth={depth} {url}: {len(page.links)} links, "
                        f"{len(page.pdf_links)} PDFs")

            if source.analyze_html and page.text:
                result.html_pages.append(HtmlPage(source_url=url, title=page.title, text=page.text))

            try:
                if depth + 1 <= source.max_depth:
                    self._enqueue_links(source, page, depth + 1, queue, queued)
                files, errors = acquirer.download_pdfs(page.pdf_links, self.downloaded)
                result.downloaded_files.extend(files)
                result.errors.extend(errors)
            except Exception as e:
                logger.exception(f"[{source.id}] Error handling links on {url}: {e}")
                result.errors.append(CrawlError(url=url, error=str(e), kind="page"))

        result.completed_at = utcnow()
        logger.info(f"[{source.id}] Crawl finished: {result.pages_visited} pages, "
                    f"{len(result.downloaded_files)} PDFs, {len(result.errors)} errors")
        return result

    def _enqueue_links(self, source: SourceConfig, page, depth: int, queue: deque, queued: Set[str]):
        pdf_urls = {u for u, _ in page.pdf_links}
        for link in page.links:
            if link in queued or link in self.visited or link in pdf_urls or is_pdf_url(link):
                continue
            if not in_allowlist(link, source.domain_allowlist):
                continue
            queued.add(link)
            queue.append((link, depth))
