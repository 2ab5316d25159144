"""Data models shared by the crawler, the change detector and the job manager."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Union


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class JobStatus:
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"

    ALL = (PENDING, RUNNING, DONE, FAILED)
    TERMINAL = (DONE, FAILED)


# target status -> statuses it may be entered from
JOB_TRANSITIONS = {
    JobStatus.RUNNING: (JobStatus.PENDING,),
    JobStatus.DONE: (JobStatus.RUNNING,),
    JobStatus.FAILED: (JobStatus.PENDING, JobStatus.RUNNING),
}


class ChangeType:
    NEW = "new"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


@dataclass
class CrawlJob:
    id: str
    source_id: str
    status: str = JobStatus.PENDING
    items_crawled: int = 0
    items_new: int = 0
    items_updated: int = 0
    items_unchanged: int = 0
    pages_crawled: int = 0
    pages_failed: int = 0
    pages_skipped: int = 0
    max_depth: Optional[int] = None
    max_pages: Optional[int] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    error_message: Optional[str] = None
    errors: list = field(default_factory=list)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in JobStatus.TERMINAL


@dataclass
class CrawlError:
    url: str
    error: str
    kind: str = "page"  # page, robots, download, invalid_pdf, pdf_text
    timestamp: str = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {"url": self.url, "error": self.error, "kind": self.kind, "timestamp": self.timestamp}


@dataclass
class DownloadedFile:
    source_url: str
    file_path: str
    file_name: str
    file_size_bytes: int
    method: str = "http"  # download_event, direct_get, http
    link_text: str = ""
    downloaded_at: str = field(default_factory=utcnow)


@dataclass
class PdfDocument:
    source_url: str
    title: str
    text: str
    file_path: str = ""
    file_size_bytes: int = 0
    page_count: int = 0
    kind: str = "pdf"

    @property
    def document_key(self) -> str:
        return self.source_url


@dataclass
class HtmlPage:
    source_url: str
    title: str
    text: str
    kind: str = "html_page"

    @property
    def document_key(self) -> str:
        return self.source_url


ExtractedPayload = Union[PdfDocument, HtmlPage]


@dataclass
class CrawledDocument:
    id: int
    source_id: str
    url: str
    title: str
    content: str
    content_hash: str
    content_type: str = "html_page"
    crawl_job_id: Optional[str] = None
    crawled_at: Optional[str] = None


@dataclass
class ChangeResult:
    is_new: bool
    has_changed: bool
    change_type: str
    version_number: int
    version_id: int
    significance_score: Optional[float] = None


@dataclass
class Datapoint:
    indicator_key: str
    value: Union[str, float]
    unit: Optional[str] = None
    effective_date: Optional[str] = None
    confidence: float = 0.8
    description: str = ""
    source_url: str = ""
    document_id: Optional[int] = None

    def dedup_key(self) -> tuple:
        return self.indicator_key, str(self.value), self.effective_date or "null"


@dataclass
class CrawlResult:
    source_id: str
    start_url: str
    pages_visited: int = 0
    pages_failed: int = 0
    pages_skipped: int = 0
    downloaded_files: List[DownloadedFile] = field(default_factory=list)
    html_pages: List[HtmlPage] = field(default_factory=list)
    errors: List[CrawlError] = field(default_factory=list)
    visited: List[str] = field(default_factory=list)
    cancelled: bool = False
    started_at: str = field(default_factory=utcnow)
    completed_at: Optional[str] = None


@dataclass
class IngestStats:
    documents_seen: int = 0
    documents_inserted: int = 0
    duplicates: int = 0
    new: int = 0
    updated: int = 0
    unchanged: int = 0
    datapoints: int = 0
    failed: int = 0
