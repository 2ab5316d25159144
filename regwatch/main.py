"""CLI entry point and orchestrator."""

import argparse
import signal
import sys

from .changes import ChangeDetector
from .config import load_config
from .db import Database
from .errors import RegwatchError
from .jobs import JobManager
from .logger import setup_logger
from .scheduler import CrawlScheduler


def run_crawl(config, manager, source_id=None):
    """Create and execute one crawl job per selected source."""
    if source_id:
        if source_id not in config.sources:
            print(f"Unknown source: {source_id}")
            return 1
        source_ids = [source_id]
    else:
        source_ids = [sid for sid, src in config.sources.items() if src.active]

    failed = 0
    for sid in source_ids:
        print(f"\n{'='*60}")
        print(f"  Source: {sid}")
        print(f"{'='*60}")

        job = manager.create_job(sid)
        job = manager.execute_job(job.id)
        print(f"  Job {job.id}: {job.status}, {job.pages_crawled} pages, "
              f"{job.items_crawled} documents ({job.items_new} new, {job.items_updated} updated, "
              f"{job.items_unchanged} unchanged), {len(job.errors)} errors")
        if job.status != "done":
            failed += 1
            if job.error_message:
                print(f"  Error: {job.error_message}")
    return 1 if failed else 0


def show_stats(db):
    print("\n" + "=" * 78)
    print("  SOURCE STATISTICS")
    print("=" * 78)
    print(f"{'Source':<28} {'Documents':>10} {'Tracked':>8} {'Updates':>8}  {'Last crawled':<20}")
    print("-" * 78)
    for source_id, docs, tracked, updates, last_crawled in db.get_stats():
        print(f"{source_id:<28} {docs:>10} {tracked:>8} {updates:>8}  {(last_crawled or '-')[:19]:<20}")

    job_stats = db.get_job_stats()
    if job_stats:
        print("\n" + "=" * 78)
        print("  CRAWL JOBS")
        print("=" * 78)
        print(f"{'Source':<28} {'Status':<10} {'Jobs':>8} {'New items':>10}")
        print("-" * 78)
        for source_id, status, count, new_items in job_stats:
            print(f"{source_id:<28} {status:<10} {count:>8} {new_items:>10}")
    print()


def show_history(detector, source_id, url):
    history = detector.get_version_history(source_id, url)
    if not history:
        print(f"No versions recorded for {url}")
        return
    print(f"{'Ver':>4} {'Type':<10} {'Hash':<13} {'First seen':<20} {'Last seen':<20} Title")
    for v in history:
        marker = "*" if v["is_current"] else " "
        print(f"{v['version_number']:>3}{marker} {v['change_type']:<10} {v['hash']:<13} "
              f"{v['first_seen_at'][:19]:<20} {v['last_seen_at'][:19]:<20} {v['title']}")


def show_changes(changes):
    if not changes:
        print("No changes.")
        return
    for c in changes:
        score = c["significance_score"]
        score_str = f"{score:.2f}" if score is not None else "  - "
        flag = " REVIEW" if c["requires_review"] else ""
        print(f"{c['detected_at'][:19]}  [{c['source_id']}] {c['change_type']:<8} {score_str}{flag}  "
              f"{c['change_summary']}  {c['document_url']}")


def main():
    parser = argparse.ArgumentParser(description="Regulatory document crawler")
    parser.add_argument("--config", type=str, default="config.yaml",
                        help="Path to config file")
    parser.add_argument("--source", type=str, default=None,
                        help="Crawl a single source instead of all active ones")
    parser.add_argument("--stats", action="store_true",
                        help="Show document and job statistics")
    parser.add_argument("--cancel", type=str, metavar="JOB_ID",
                        help="Cancel a pending or running crawl job")
    parser.add_argument("--history", nargs=2, metavar=("SOURCE_ID", "URL"),
                        help="Show the version history of a document")
    parser.add_argument("--changes", type=str, metavar="SOURCE_ID",
                        help="Show recent changes for a source")
    parser.add_argument("--review", action="store_true",
                        help="Show changes that need review")
    parser.add_argument("--schedule", action="store_true",
                        help="Run the crawl scheduler until interrupted")
    args = parser.parse_args()

    config = load_config(args.config)
    logger = setup_logger(config.log_dir)
    db = Database(config.db_path)
    detector = ChangeDetector(db, config.extraction.review_threshold)

    if args.stats:
        show_stats(db)
        return 0
    if args.history:
        show_history(detector, *args.history)
        return 0
    if args.changes:
        show_changes(detector.get_recent_changes(args.changes))
        return 0
    if args.review:
        show_changes(detector.get_changes_for_review())
        return 0

    manager = JobManager(config, db)
    try:
        manager.sync_sources(config.sources)

        if args.cancel:
            try:
                job = manager.cancel_job(args.cancel)
            except RegwatchError as e:
                print(f"Error: {e}")
                return 1
            print(f"Job {job.id}: {job.status} ({job.error_message})")
            return 0

        if args.schedule:
            scheduler = CrawlScheduler(manager, config.scheduler)
            signal.signal(signal.SIGTERM, lambda *_: scheduler.stop())
            try:
                scheduler.run_forever()
            except KeyboardInterrupt:
                scheduler.stop()
            return 0

        logger.info(f"Database: {config.db_path}, data directory: {config.data_dir}")
        code = run_crawl(config, manager, args.source)
        show_stats(db)
        return code
    finally:
        manager.close()


if __name__ == "__main__":
    sys.exit(main())
