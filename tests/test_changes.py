import sqlite3

import pytest

from regwatch.changes import ChangeDetector, detect_changes, significance
from regwatch.hashing import compute_hash
from regwatch.models import ChangeType, HtmlPage, PdfDocument

SRC = "doe-circulars"
URL = "https://legacy.doe.gov.ph/circulars/dc2024-01"


def page(text, title="DC 2024-01"):
    return HtmlPage(source_url=URL, title=title, text=text)


def test_first_sighting_is_new(db):
    detector = ChangeDetector(db)
    result = detector.process_document(SRC, page("Original circular text"))

    assert result.is_new is True
    assert result.has_changed is False
    assert result.change_type == ChangeType.NEW
    assert result.version_number == 1

    current = detector.get_current_version(SRC, URL)
    assert current["is_current"] == 1
    assert current["content_hash"] == compute_hash("Original circular text")


def test_unchanged_resighting_only_touches_last_seen(db):
    detector = ChangeDetector(db)
    detector.process_document(SRC, page("Original circular text"))
    before = detector.get_current_version(SRC, URL)

    result = detector.process_document(SRC, page("Original   circular\ntext"))

    assert result.is_new is False
    assert result.has_changed is False
    assert result.change_type == ChangeType.UNCHANGED
    assert result.version_number == 1
    after = detector.get_current_version(SRC, URL)
    assert after["id"] == before["id"]
    assert after["last_seen_at"] >= before["last_seen_at"]
    assert len(db.get_version_history(SRC, URL)) == 1


def test_new_unchanged_updated_sequence(db):
    detector = ChangeDetector(db)
    r1 = detector.process_document(SRC, page("Version one of the circular"))
    r2 = detector.process_document(SRC, page("Version one of the circular"))
    r3 = detector.process_document(SRC, page("Version two of the circular"))

    assert [r1.change_type, r2.change_type, r3.change_type] == ["new", "unchanged", "updated"]
    assert r3.version_number == 2
    assert r3.has_changed is True

    history = detector.get_version_history(SRC, URL)
    assert [v["version_number"] for v in history] == [1, 2]
    assert [v["is_current"] for v in history] == [False, True]
    assert all(len(v["hash"]) == 12 for v in history)
    assert history[1]["hash"] == compute_hash("Version two of the circular")[:12]


def test_exactly_one_current_version(db):
    detector = ChangeDetector(db)
    for i in range(4):
        detector.process_document(SRC, page(f"text revision {i}"))
    history = db.get_version_history(SRC, URL)
    assert len(history) == 4
    assert sum(v["is_current"] for v in history) == 1
    assert history[-1]["is_current"] == 1


def test_partial_unique_index_rejects_second_current_row(db):
    ChangeDetector(db).process_document(SRC, page("text"))
    with pytest.raises(sqlite3.IntegrityError):
        db._conn.execute(
            """INSERT INTO document_versions (source_id, document_key, document_url, version_number,
                   is_current, content_hash, change_type, first_seen_at, last_seen_at)
               VALUES (?, ?, ?, 2, 1, 'x', 'updated', 'now', 'now')""",
            (SRC, URL, URL),
        )
    db._conn.rollback()


def test_significance_scoring():
    assert significance({"content": {}}) == 0.4
    assert significance({"content": {}, "title": {}}) == 0.7
    assert significance({"content": {}, "title": {}, "length": {"old": 100, "new": 200, "diff": 100}}) == 0.9
    assert significance({"content": {}, "length": {"old": 100, "new": 110, "diff": 10}}) == 0.4


def test_detect_changes_reports_title_and_length():
    previous = {"content_hash": "aaa", "document_title": "Old title"}
    changes = detect_changes(previous, page("x" * 50, title="New title"), "bbb", 100)
    assert changes["content"] == {"old_hash": "aaa", "new_hash": "bbb"}
    assert changes["title"] == {"old": "Old title", "new": "New title"}
    assert changes["length"]["diff"] == -50


def test_updated_change_is_recorded_and_flagged_for_review(db):
    detector = ChangeDetector(db, review_threshold=0.7)
    detector.process_document(SRC, page("short text", title="DC 2024-01"), crawl_job_id="job1")
    result = detector.process_document(SRC, page("a much longer replacement body for the circular",
                                                 title="DC 2024-01 (amended)"), crawl_job_id="job2")

    assert result.significance_score == pytest.approx(0.9)
    changes = detector.get_recent_changes(SRC)
    assert [c["change_type"] for c in changes] == ["updated", "new"]
    updated = changes[0]
    assert updated["requires_review"] is True
    assert updated["crawl_job_id"] == "job2"
    assert set(updated["changes_detected"]) == {"content", "title", "length"}
    assert updated["change_summary"] == "Updated: content, title, length"

    review = detector.get_changes_for_review()
    assert [c["id"] for c in review] == [updated["id"]]


def test_content_only_update_is_not_flagged(db):
    detector = ChangeDetector(db)
    detector.process_document(SRC, page("Rate is 6.25 percent"))
    detector.process_document(SRC, page("Rate is 6.50 percent"))
    assert detector.get_changes_for_review(SRC) == []
    assert detector.get_recent_changes(SRC)[0]["significance_score"] == pytest.approx(0.4)


def test_recent_changes_limit_and_source_scoping(db):
    detector = ChangeDetector(db)
    for i in range(5):
        detector.process_document(SRC, HtmlPage(f"{URL}/{i}", f"T{i}", f"body {i}"))
    detector.process_document("other", page("elsewhere"))
    assert len(detector.get_recent_changes(SRC, limit=3)) == 3
    assert all(c["source_id"] == SRC for c in detector.get_recent_changes(SRC))


def test_pdf_versions_keep_file_metadata(db):
    detector = ChangeDetector(db)
    doc = PdfDocument(source_url="https://doe.gov.ph/dc.pdf", title="DC", text="pdf body",
                      file_path="/tmp/dc_1.pdf", file_size_bytes=1234, page_count=2)
    detector.process_document(SRC, doc)
    current = detector.get_current_version(SRC, "https://doe.gov.ph/dc.pdf")
    assert current["content_type"] == "pdf"
    assert current["file_size_bytes"] == 1234
