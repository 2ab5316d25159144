import pytest

from conftest import FakeSession, FakeTextExtractor, html_page
from regwatch.errors import InvalidTransition, JobNotFound, SourceNotFound
from regwatch.jobs import JobManager, Outcome, best_effort
from regwatch.models import JobStatus
from regwatch.pipeline import DocumentPipeline

BASE = "https://example.gov.ph"


@pytest.fixture
def source(make_source):
    return make_source("doe-test", max_depth=1, max_pages=10)


def make_manager(config, db, limiter, source, session_factory=None):
    pipeline = DocumentPipeline(config, db, text_extractor=FakeTextExtractor())
    manager = JobManager(config, db, pipeline=pipeline, limiter=limiter,
                         session_factory=session_factory or (lambda cfg, src: FakeSession()))
    manager.sync_sources({source.id: source})
    return manager


def test_create_job_defaults_from_source(config, db, limiter, source):
    manager = make_manager(config, db, limiter, source)
    job = manager.create_job(source.id)
    assert job.status == JobStatus.PENDING
    assert job.max_depth == 1
    assert job.max_pages == 10
    assert job.created_at is not None

    custom = manager.create_job(source.id, {"max_depth": 0, "max_pages": 1})
    assert (custom.max_depth, custom.max_pages) == (0, 1)


def test_create_job_unknown_source(config, db, limiter, source):
    manager = make_manager(config, db, limiter, source)
    with pytest.raises(SourceNotFound, match="Source not found"):
        manager.create_job("nope")


def test_lifecycle_transitions(config, db, limiter, source):
    manager = make_manager(config, db, limiter, source)
    job = manager.create_job(source.id)

    job = manager.start_job(job.id)
    assert job.status == JobStatus.RUNNING
    assert job.started_at is not None

    job = manager.complete_job(job.id, items_crawled=5, items_new=2)
    assert job.status == JobStatus.DONE
    assert (job.items_crawled, job.items_new) == (5, 2)
    assert job.completed_at is not None

    with pytest.raises(InvalidTransition):
        manager.fail_job(job.id, "late failure")
    with pytest.raises(InvalidTransition):
        manager.update_job(job.id, status=JobStatus.RUNNING)
    assert manager.get_job(job.id).status == JobStatus.DONE


def test_pending_cannot_jump_to_done(config, db, limiter, source):
    manager = make_manager(config, db, limiter, source)
    job = manager.create_job(source.id)
    with pytest.raises(InvalidTransition):
        manager.update_job(job.id, status=JobStatus.DONE)
    assert manager.get_job(job.id).status == JobStatus.PENDING


def test_update_unknown_job(config, db, limiter, source):
    manager = make_manager(config, db, limiter, source)
    with pytest.raises(JobNotFound, match="Crawl job not found"):
        manager.update_job("missing", items_crawled=1)


def test_progress_update_without_status_change(config, db, limiter, source):
    manager = make_manager(config, db, limiter, source)
    job = manager.create_job(source.id)
    manager.start_job(job.id)
    job = manager.update_job(job.id, pages_crawled=3, errors=[{"url": "u", "error": "e"}])
    assert job.status == JobStatus.RUNNING
    assert job.pages_crawled == 3
    assert job.errors == [{"url": "u", "error": "e"}]


def test_cancel_pending_and_running(config, db, limiter, source):
    manager = make_manager(config, db, limiter, source)
    pending = manager.create_job(source.id)
    cancelled = manager.cancel_job(pending.id)
    assert cancelled.status == JobStatus.FAILED
    assert cancelled.error_message == "Manually cancelled"
    assert cancelled.completed_at is not None

    running = manager.create_job(source.id)
    manager.start_job(running.id)
    cancelled = manager.cancel_job(running.id, reason="Operator stop")
    assert cancelled.status == JobStatus.FAILED
    assert cancelled.error_message == "Operator stop"


def test_cancel_terminal_job_raises_and_does_not_mutate(config, db, limiter, source):
    manager = make_manager(config, db, limiter, source)
    job = manager.create_job(source.id)
    manager.start_job(job.id)
    done = manager.complete_job(job.id, 1, 1)
    assert done.is_terminal

    with pytest.raises(InvalidTransition, match="Cannot cancel job with status 'done'"):
        manager.cancel_job(job.id)

    after = manager.get_job(job.id)
    assert after.status == JobStatus.DONE
    assert after.updated_at == done.updated_at
    assert after.error_message is None


def test_cancel_unknown_job(config, db, limiter, source):
    manager = make_manager(config, db, limiter, source)
    with pytest.raises(JobNotFound):
        manager.cancel_job("missing")


def test_list_jobs_filters_and_caps_limit(config, db, limiter, source):
    manager = make_manager(config, db, limiter, source)
    ids = [manager.create_job(source.id).id for _ in range(3)]
    manager.cancel_job(ids[0])

    jobs, total = manager.list_jobs(limit=1000)
    assert total == 3
    assert len(jobs) == 3

    jobs, total = manager.list_jobs(status=JobStatus.FAILED)
    assert total == 1
    assert jobs[0].id == ids[0]

    jobs, total = manager.list_jobs(source_id=source.id, limit=2, offset=0)
    assert total == 3
    assert len(jobs) == 2


def test_best_effort_swallows_and_reports():
    def broken():
        raise RuntimeError("db locked")

    outcome = best_effort(broken)
    assert isinstance(outcome, Outcome)
    assert outcome.ok is False
    assert str(outcome.error) == "db locked"
    assert best_effort(lambda: 42) == Outcome(ok=True, value=42)


def test_execute_job_success(config, db, limiter, source):
    pages = {
        f"{BASE}/": html_page("Department Circulars", "Latest circular issuances of the department",
                              links=[(f"{BASE}/advisories", "Advisories")]),
        f"{BASE}/advisories": html_page("Advisories", "Power supply advisory notice"),
    }
    sessions = []

    def factory(cfg, src):
        sessions.append(FakeSession(pages))
        return sessions[-1]

    manager = make_manager(config, db, limiter, source, factory)
    job = manager.execute_job(manager.create_job(source.id).id)

    assert job.status == JobStatus.DONE
    assert job.pages_crawled == 2
    assert job.items_crawled == 2
    assert job.items_new == 2
    assert job.errors == []
    assert sessions[0].closed is True


def test_execute_job_missing_source_fails_job(config, db, limiter, source):
    manager = make_manager(config, db, limiter, source)
    job = db.insert_job("orphan", "ghost-source", 1, 1)
    result = manager.execute_job(job.id)
    assert result.status == JobStatus.FAILED
    assert result.error_message == "Source not found"


def test_execute_job_unexpected_error_fails_job(config, db, limiter, source):
    def factory(cfg, src):
        raise RuntimeError("browser launch failed")

    manager = make_manager(config, db, limiter, source, factory)
    job = manager.execute_job(manager.create_job(source.id).id)
    assert job.status == JobStatus.FAILED
    assert job.error_message == "browser launch failed"


def test_execute_job_cancelled_mid_run_stays_failed(config, db, limiter, source):
    manager = None
    job_ids = []

    class CancellingSession(FakeSession):
        def load(self, url):
            html = super().load(url)
            manager.cancel_job(job_ids[0])
            return html

    pages = {
        f"{BASE}/": html_page("Home", "circular", links=[(f"{BASE}/next", "Next")]),
        f"{BASE}/next": html_page("Next", "notice"),
    }
    manager = make_manager(config, db, limiter, source, lambda cfg, src: CancellingSession(pages))
    job_ids.append(manager.create_job(source.id).id)

    job = manager.execute_job(job_ids[0])
    assert job.status == JobStatus.FAILED
    assert job.error_message == "Manually cancelled"
    assert job.pages_crawled == 1


def test_execute_non_pending_job_is_a_no_op(config, db, limiter, source):
    manager = make_manager(config, db, limiter, source)
    job = manager.create_job(source.id)
    manager.cancel_job(job.id)
    assert manager.execute_job(job.id).status == JobStatus.FAILED
