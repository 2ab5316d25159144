import os

import pytest

from regwatch.acquisition import PdfPayload
from regwatch.config import AppConfig, CrawlConfig, build_source
from regwatch.db import Database
from regwatch.errors import NetworkError
from regwatch.pdftext import PdfText
from regwatch.ratelimit import RateLimiter


class FakeSession:
    """In-memory stand-in for HttpSession/BrowserSession."""

    mode = "plain"

    def __init__(self, pages=None, pdfs=None):
        self.pages = dict(pages or {})
        self.pdfs = dict(pdfs or {})
        self.loaded = []
        self.fetched = []
        self.closed = False

    def load(self, url):
        self.loaded.append(url)
        page = self.pages.get(url)
        if page is None:
            raise NetworkError(url, "HTTP 404", 404)
        if isinstance(page, Exception):
            raise page
        return page

    def fetch_pdf(self, url):
        self.fetched.append(url)
        payload = self.pdfs.get(url)
        if payload is None:
            raise NetworkError(url, "HTTP 404", 404)
        if isinstance(payload, Exception):
            raise payload
        if isinstance(payload, bytes):
            return PdfPayload(payload, "application/pdf", "http")
        return payload

    def close(self):
        self.closed = True


class FakeTextExtractor:
    """Treats everything after the %PDF header line as the document text."""

    def extract(self, pdf_path, output_path=None):
        with open(pdf_path, "rb") as f:
            raw = f.read()
        text = raw.split(b"\n", 1)[1].decode("utf-8") if b"\n" in raw else ""
        return PdfText(text=text, page_count=1)


def pdf_bytes(text):
    return b"%PDF-1.4\n" + text.encode("utf-8")


def html_page(title, body="", links=()):
    anchors = "".join(f'<a href="{href}">{label}</a>' for href, label in links)
    return f"<html><head><title>{title}</title></head><body><main><p>{body}</p>{anchors}</main></body></html>"


@pytest.fixture
def config(tmp_path):
    cfg = AppConfig(
        data_dir=str(tmp_path / "data"),
        db_path=str(tmp_path / "test.db"),
        log_dir=str(tmp_path / "logs"),
        crawl=CrawlConfig(min_interval_ms=0, respect_robots=False),
    )
    return cfg


@pytest.fixture
def db(config):
    database = Database(config.db_path)
    yield database
    database.close()


@pytest.fixture
def limiter():
    return RateLimiter(0)


@pytest.fixture
def make_source(config):
    def _make(source_id="test-source", **overrides):
        raw = {
            "start_url": "https://example.gov.ph/",
            "domain_allowlist": ["example.gov.ph"],
            "render_mode": "plain",
            "download_dir": os.path.join(config.data_dir, "downloads", source_id),
        }
        raw.update(overrides)
        return build_source(source_id, raw, config.data_dir)
    return _make
