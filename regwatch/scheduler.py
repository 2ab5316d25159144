"""Periodic crawl scheduling: enqueue jobs for active sources and run them in bounded batches."""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import List

from .config import SchedulerConfig
from .jobs import JobManager
from .models import CrawlJob

logger = logging.getLogger("regwatch")


class CrawlScheduler:
    def __init__(self, manager: JobManager, config: SchedulerConfig = None):
        self.manager = manager
        self.config = config or SchedulerConfig()
        self._stop = threading.Event()

    def enqueue_active_sources(self) -> List[CrawlJob]:
        created = []
        for source in self.manager.db.list_sources(active_only=True):
            if self.manager.db.has_open_job(source.id):
                logger.debug(f"[{source.id}] Already has a pending/running job")
                continue
            created.append(self.manager.create_job(source.id))
        return created

    def run_batch(self) -> List[CrawlJob]:
        """Execute up to batch_size pending jobs, oldest first."""
        pending = self.manager.db.pending_jobs(self.config.batch_size)
        if not pending:
            return []

        logger.info(f"Running {len(pending)} crawl job(s) with {self.config.max_workers} worker(s)")
        finished = []
        with ThreadPoolExecutor(max_workers=max(1, self.config.max_workers)) as pool:
            futures = {pool.submit(self.manager.execute_job, job.id): job for job in pending}
            for future in as_completed(futures):
                job = futures[future]
                try:
                    finished.append(future.result())
                except Exception as e:
                    logger.error(f"[{job.source_id}] Job {job.id} raised: {e}")
        return finished

    def run_forever(self):
        logger.info(f"Scheduler started (every {self.config.interval_seconds}s)")
        while not self._stop.is_set():
            self.enqueue_active_sources()
            self.run_batch()
            self._stop.wait(self.config.interval_seconds)
        logger.info("Scheduler stopped")

    def stop(self):
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()
