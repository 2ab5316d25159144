import os

import pytest

from conftest import FakeSession, FakeTextExtractor, html_page, pdf_bytes
from regwatch.hashing import compute_hash
from regwatch.jobs import JobManager
from regwatch.models import CrawlResult, DownloadedFile, HtmlPage, JobStatus
from regwatch.pipeline import DocumentPipeline, pdf_title

BASE = "https://example.gov.ph"

RATE_TEXT = (
    "Monetary Board decision, 18 November 2025. The Monetary Board decided to keep the "
    "policy rate at 6.25% while the overnight deposit rate stays at 5.75%. "
    "The decision takes effect immediately."
)

CIRCULAR_TEXT = (
    "Department Circular No. DC2025-01-0001 prescribes the guidelines for the competitive "
    "selection process of renewable energy contracts and supersedes prior issuances."
)


@pytest.fixture
def pipeline(config, db):
    return DocumentPipeline(config, db, text_extractor=FakeTextExtractor())


def write_pdf(tmp_path, name, text, link_text=""):
    path = tmp_path / name
    path.write_bytes(pdf_bytes(text))
    return DownloadedFile(
        source_url=f"{BASE}/files/{name}", file_path=str(path), file_name=name,
        file_size_bytes=os.path.getsize(path), link_text=link_text,
    )


def processed_at(db, content):
    doc_id = db.find_document_by_hash(compute_hash(content))
    return db._conn.execute("SELECT processed_at FROM documents WHERE id = ?", (doc_id,)).fetchone()[0]


def test_pdf_title_prefers_link_text():
    f = DownloadedFile(f"{BASE}/files/DC2025-01.pdf", "/tmp/x.pdf", "x.pdf", 1)
    assert pdf_title(f) == "DC2025-01"
    f.link_text = "Department Circular 2025-01"
    assert pdf_title(f) == "Department Circular 2025-01"


def test_ingest_counts_dedupes_and_extracts(tmp_path, db, pipeline, make_source):
    source = make_source()
    result = CrawlResult(source_id=source.id, start_url=source.start_url)
    result.downloaded_files = [
        write_pdf(tmp_path, "mb.pdf", RATE_TEXT, "MB decision"),
        write_pdf(tmp_path, "short.pdf", "too short"),
    ]
    result.html_pages = [
        HtmlPage(f"{BASE}/circulars", "Department Circulars", CIRCULAR_TEXT),
        HtmlPage(f"{BASE}/circulars?page=1", "Department Circulars", CIRCULAR_TEXT),
        HtmlPage(f"{BASE}/gallery", "Gallery", "Photos from the company outing"),
    ]

    stats = pipeline.ingest(source, result, "job-1")

    assert stats.documents_seen == 4
    assert stats.new == 4
    assert stats.documents_inserted == 3
    assert stats.duplicates == 1
    assert stats.datapoints == 2
    assert db.count_documents(source.id) == 3

    assert [e.kind for e in result.errors] == ["pdf_text"]
    assert result.errors[0].url == f"{BASE}/files/short.pdf"

    mb_id = db.find_document_by_hash(compute_hash(RATE_TEXT))
    keys = {d["indicator_key"] for d in db.get_datapoints(mb_id)}
    assert keys == {"RATE_POLICY_RATE", "RATE_OVERNIGHT"}

    assert processed_at(db, CIRCULAR_TEXT) is not None
    assert processed_at(db, "Photos from the company outing") is None


def test_second_identical_crawl_yields_no_new_documents(config, db, limiter, pipeline, make_source):
    source = make_source("doe-circulars", max_depth=0, max_pages=1)
    pages = {
        f"{BASE}/": html_page("Department Circulars", CIRCULAR_TEXT, links=[
            (f"{BASE}/files/mb.pdf", "MB decision"),
            (f"{BASE}/files/dc.pdf", "DC 2025-01"),
        ]),
    }
    pdfs = {
        f"{BASE}/files/mb.pdf": pdf_bytes(RATE_TEXT),
        f"{BASE}/files/dc.pdf": pdf_bytes(CIRCULAR_TEXT + " Annex A lists the qualified bidders."),
    }
    manager = JobManager(config, db, pipeline=pipeline, limiter=limiter,
                         session_factory=lambda cfg, src: FakeSession(pages, pdfs))
    manager.sync_sources({source.id: source})

    first = manager.execute_job(manager.create_job(source.id).id)
    assert first.status == JobStatus.DONE
    assert (first.items_crawled, first.items_new) == (3, 3)
    assert (first.items_updated, first.items_unchanged) == (0, 0)

    second = manager.execute_job(manager.create_job(source.id).id)
    assert second.status == JobStatus.DONE
    assert (second.items_crawled, second.items_new) == (3, 0)
    assert second.items_updated == 0
    assert second.items_unchanged == first.items_crawled

    changes = db.get_recent_changes(source.id, 50)
    assert [c["change_type"] for c in changes] == ["new", "new", "new"]
    assert db.count_documents(source.id) == 3


def test_changed_page_is_versioned(config, db, limiter, pipeline, make_source):
    source = make_source("doe-news", max_depth=0, max_pages=1)
    pages = {f"{BASE}/": html_page("Advisory", CIRCULAR_TEXT)}
    manager = JobManager(config, db, pipeline=pipeline, limiter=limiter,
                         session_factory=lambda cfg, src: FakeSession(pages))
    manager.sync_sources({source.id: source})

    manager.execute_job(manager.create_job(source.id).id)
    pages[f"{BASE}/"] = html_page("Advisory", CIRCULAR_TEXT + " Amended on 2 December 2025.")
    job = manager.execute_job(manager.create_job(source.id).id)

    assert job.items_new == 1
    assert (job.items_updated, job.items_unchanged) == (1, 0)
    history = pipeline.detector.get_version_history(source.id, f"{BASE}/")
    assert [v["version_number"] for v in history] == [1, 2]
    assert [v["change_type"] for v in history] == ["new", "updated"]
