"""Crawl job lifecycle: pending -> running -> done | failed."""

import logging
import uuid
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from .acquisition import open_session
from .config import AppConfig, SourceConfig
from .db import Database
from .errors import InvalidTransition, JobNotFound, SourceNotFound
from .frontier import FrontierCrawler
from .models import JOB_TRANSITIONS, CrawlJob, JobStatus, utcnow
from .pipeline import DocumentPipeline
from .ratelimit import RateLimiter
from .robots import RobotsGate

logger = logging.getLogger("regwatch")

MAX_LIST_LIMIT = 100

UPDATABLE_FIELDS = {
    "status", "items_crawled", "items_new", "items_updated", "items_unchanged",
    "pages_crawled", "pages_failed", "pages_skipped", "started_at", "completed_at",
    "error_message", "errors",
}


@dataclass
class Outcome:
    ok: bool
    value: Any = None
    error: Optional[Exception] = None


def best_effort(fn: Callable, *args, **kwargs) -> Outcome:
    """Run a compensating/terminal write; log and swallow any failure."""
    try:
        return Outcome(ok=True, value=fn(*args, **kwargs))
    except Exception as e:
        logger.error(f"{getattr(fn, '__name__', fn)} failed: {e}")
        return Outcome(ok=False, error=e)


class JobManager:
    def __init__(self, config: AppConfig, db: Database, pipeline: DocumentPipeline = None,
                 session_factory: Callable = open_session, limiter: RateLimiter = None,
                 robots: RobotsGate = None):
        self.config = config
        self.db = db
        self.pipeline = pipeline or DocumentPipeline(config, db)
        self.session_factory = session_factory
        self.limiter = limiter or RateLimiter(config.crawl.min_interval_ms / 1000.0)
        self._client: Optional[httpx.Client] = None
        self.robots = robots
        if self.robots is None and config.crawl.respect_robots:
            self._client = httpx.Client(
                timeout=httpx.Timeout(config.download.timeout, connect=30),
                follow_redirects=True,
            )
            self.robots = RobotsGate(self._client, config.download.user_agent,
                                     ttl=config.crawl.robots_ttl)

    def close(self):
        if self._client is not None and not self._client.is_closed:
            self._client.close()

    def sync_sources(self, sources: Dict[str, SourceConfig]):
        for src in sources.values():
            self.db.upsert_source(src)

    # ------------------------------------------------------------------
    # Job control
    # ------------------------------------------------------------------

    def create_job(self, source_id: str, options: dict = None) -> CrawlJob:
        source = self.db.get_source(source_id)
        if source is None:
            raise SourceNotFound(source_id)
        options = options or {}
        max_depth = options.get("max_depth", source.max_depth)
        max_pages = options.get("max_pages", source.max_pages)
        job = self.db.insert_job(uuid.uuid4().hex, source_id, max_depth, max_pages, options)
        logger.info(f"[{source_id}] Created crawl job {job.id}")
        return job

    def get_job(self, job_id: str) -> Optional[CrawlJob]:
        return self.db.get_job(job_id)

    def list_jobs(self, source_id: str = None, status: str = None,
                  limit: int = 20, offset: int = 0) -> Tuple[List[CrawlJob], int]:
        limit = max(1, min(limit, MAX_LIST_LIMIT))
        return self.db.list_jobs(source_id, status, limit, max(0, offset))

    def update_job(self, job_id: str, **fields) -> CrawlJob:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update job fields: {', '.join(sorted(unknown))}")

        job = self.db.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        if not fields:
            return job

        expected = None
        target = fields.get("status")
        if target is not None:
            allowed_from = JOB_TRANSITIONS.get(target, ())
            if job.status not in allowed_from:
                raise InvalidTransition(f"Cannot change job status from '{job.status}' to '{target}'")
            expected = allowed_from

        if not self.db.update_job(job_id, fields, expected_statuses=expected):
            current = self.db.get_job_status(job_id)
            raise InvalidTransition(f"Cannot change job status from '{current}' to '{target}'")
        return self.db.get_job(job_id)

    def start_job(self, job_id: str) -> CrawlJob:
        return self.update_job(job_id, status=JobStatus.RUNNING, started_at=utcnow())

    def complete_job(self, job_id: str, items_crawled: int, items_new: int, **counters) -> CrawlJob:
        return self.update_job(job_id, status=JobStatus.DONE, items_crawled=items_crawled,
                               items_new=items_new, completed_at=utcnow(), **counters)

    def fail_job(self, job_id: str, message: str) -> CrawlJob:
        return self.update_job(job_id, status=JobStatus.FAILED, error_message=message,
                               completed_at=utcnow())

    def cancel_job(self, job_id: str, reason: str = "Manually cancelled") -> CrawlJob:
        job = self.db.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        if job.is_terminal:
            raise InvalidTransition(f"Cannot cancel job with status '{job.status}'")

        updated = self.db.update_job(
            job_id,
            {"status": JobStatus.FAILED, "error_message": reason, "completed_at": utcnow()},
            expected_statuses=(JobStatus.PENDING, JobStatus.RUNNING),
        )
        if not updated:
            raise InvalidTransition(f"Cannot cancel job with status '{self.db.get_job_status(job_id)}'")
        logger.info(f"[{job.source_id}] Cancelled job {job_id}: {reason}")
        return self.db.get_job(job_id)

    def is_cancelled(self, job_id: str) -> bool:
        return self.db.get_job_status(job_id) == JobStatus.FAILED

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute_job(self, job_id: str) -> CrawlJob:
        job = self.db.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        if job.status != JobStatus.PENDING:
            logger.info(f"[{job.source_id}] Job {job_id} is {job.status}, not starting")
            return job

        source = self.db.get_source(job.source_id)
        if source is None:
            best_effort(self.fail_job, job_id, "Source not found")
            return self.db.get_job(job_id)
        source = replace(source, max_depth=job.max_depth, max_pages=job.max_pages)

        try:
            self.start_job(job_id)
            session = self.session_factory(self.config, source)
            try:
                crawler = FrontierCrawler(self.config, session, self.limiter, self.robots)
                result = crawler.crawl(source, cancel_token=lambda: self.is_cancelled(job_id))
            finally:
                session.close()

            stats = self.pipeline.ingest(source, result, job_id)

            counters = {
                "items_updated": stats.updated,
                "items_unchanged": stats.unchanged,
                "pages_crawled": result.pages_visited,
                "pages_failed": result.pages_failed,
                "pages_skipped": result.pages_skipped,
                "errors": [e.to_dict() for e in result.errors],
            }
            if result.cancelled:
                best_effort(self.update_job, job_id, items_crawled=stats.documents_seen,
                            items_new=stats.documents_inserted, **counters)
                logger.info(f"[{source.id}] Job {job_id} was cancelled during the crawl")
            else:
                outcome = best_effort(self.complete_job, job_id, stats.documents_seen,
                                      stats.documents_inserted, **counters)
                if outcome.ok:
                    best_effort(self.db.touch_source_crawled, source.id)
                    logger.info(f"[{source.id}] Job {job_id} done: {stats.documents_seen} documents, "
                                f"{stats.documents_inserted} new")
        except Exception as e:
            logger.exception(f"[{job.source_id}] Job {job_id} failed: {e}")
            best_effort(self.fail_job, job_id, str(e) or e.__class__.__name__)

        return self.db.get_job(job_id)
