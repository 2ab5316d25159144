"""Page and PDF acquisition over plain HTTP (httpx) or a rendered browser (Playwright)."""

import logging
import os
import re
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Set, Tuple
from urllib.parse import unquote, urlsplit

import httpx

from .config import AppConfig, SourceConfig
from .errors import InvalidPdf, NetworkError, RegwatchError
from .models import CrawlError, DownloadedFile
from .pages import ParsedPage, parse_page
from .ratelimit import RateLimiter

logger = logging.getLogger("regwatch")

# Origins whose listings only appear after client-side rendering
JS_HEAVY_DOMAINS = (
    "wesm.ph",
    "sec.gov.ph",
    "doe.gov.ph",
    "bsp.gov.ph",
    "bir.gov.ph",
    "pemc.com.ph",
)

PDF_MAGIC = b"%PDF"

_CLICK_ANCHOR_JS = """(url) => {
    const a = document.createElement('a');
    a.href = url;
    a.target = '_blank';
    a.rel = 'noopener noreferrer';
    document.body.appendChild(a);
    a.click();
    document.body.removeChild(a);
}"""


@dataclass
class PdfPayload:
    content: bytes
    content_type: str = ""
    method: str = "http"


def rate_key(url: str) -> str:
    return urlsplit(url).netloc.lower()


def host_matches(host: str, domain: str) -> bool:
    host = (host or "").lower().rstrip(".")
    domain = (domain or "").lower().rstrip(".")
    return bool(domain) and (host == domain or host.endswith("." + domain))


def choose_render_mode(source: SourceConfig) -> str:
    if source.render_mode in ("plain", "rendered"):
        return source.render_mode
    host = urlsplit(source.start_url).hostname or ""
    if any(host_matches(host, d) for d in JS_HEAVY_DOMAINS):
        return "rendered"
    return "plain"


def validate_pdf_payload(url: str, content_type: str, content: bytes):
    """Raise InvalidPdf unless the payload looks like a real PDF."""
    if "text/html" in (content_type or "").lower():
        raise InvalidPdf(url, "Skipped: HTML page, not a PDF")
    if len(content) < 4 or content[:4] != PDF_MAGIC:
        raise InvalidPdf(url, "Skipped: Not a valid PDF (missing PDF header)")


def sanitize_filename(name: str) -> str:
    clean = re.sub(r"[^a-z0-9._-]", "_", name, flags=re.IGNORECASE)
    clean = re.sub(r"_+", "_", clean).lower()
    if not clean.endswith(".pdf"):
        clean += ".pdf"
    return clean


def build_pdf_path(dest_dir: str, link_text: str, url: str,
                   now_ms: Optional[int] = None) -> Tuple[str, str]:
    """Timestamped, sanitized (file_name, file_path) that does not exist yet."""
    basename = os.path.basename(unquote(urlsplit(url).path)) or "document"
    clean = sanitize_filename(link_text or basename)
    stem, ext = os.path.splitext(clean)
    ts = now_ms if now_ms is not None else int(time.time() * 1000)

    file_name = f"{stem}_{ts}{ext}"
    file_path = os.path.join(dest_dir, file_name)
    counter = 1
    while os.path.exists(file_path):
        file_name = f"{stem}_{ts}_{counter}{ext}"
        file_path = os.path.join(dest_dir, file_name)
        counter += 1
    return file_name, file_path


class HttpSession:
    """Plain-mode fetching with one httpx client (and cookie jar) per session."""

    mode = "plain"

    def __init__(self, config: AppConfig, client: httpx.Client = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self._sleep = sleep
        self._client = client

    @property
    def client(self) -> httpx.Client:
        if self._client is None or self._client.is_closed:
            self._client = httpx.Client(
                timeout=httpx.Timeout(self.config.download.timeout, connect=30),
                follow_redirects=True,
                headers={"User-Agent": self.config.download.user_agent},
            )
        return self._client

    def close(self):
        if self._client and not self._client.is_closed:
            self._client.close()

    def load(self, url: str) -> str:
        try:
            resp = self.client.get(url)
        except httpx.TimeoutException as e:
            raise NetworkError(url, f"Timeout fetching {url}: {e}") from e
        except httpx.HTTPError as e:
            raise NetworkError(url, f"Failed to fetch {url}: {e}") from e
        if not resp.is_success:
            raise NetworkError(url, f"HTTP {resp.status_code}", resp.status_code)
        return resp.text

    def fetch_pdf(self, url: str) -> PdfPayload:
        max_retries = max(1, self.config.download.max_retries)
        backoff = self.config.download.backoff_factor

        for attempt in range(max_retries):
            try:
                return self._stream_pdf(url)
            except httpx.TransportError as e:
                if attempt + 1 >= max_retries:
                    raise NetworkError(url, f"Failed to download {url}: {e}") from e
                wait = backoff ** attempt
                logger.warning(f"Retry {attempt + 1}/{max_retries} for {url}: {e} (wait {wait}s)")
                self._sleep(wait)
            except httpx.HTTPError as e:
                # only transport errors are retried
                raise NetworkError(url, f"Failed to download {url}: {e}") from e

    def _stream_pdf(self, url: str) -> PdfPayload:
        max_size = self.config.download.max_file_size
        chunks = []
        size = 0

        with self.client.stream("GET", url) as resp:
            if not resp.is_success:
                raise NetworkError(url, f"HTTP {resp.status_code}", resp.status_code)

            ct = resp.headers.get("content-type", "")
            if "text/html" in ct.lower():
                raise InvalidPdf(url, "Skipped: HTML page, not a PDF")

            content_length = resp.headers.get("content-length", "").strip()
            if content_length.isdigit() and int(content_length) > max_size:
                raise InvalidPdf(url, f"File too large: {content_length} bytes")

            for chunk in resp.iter_bytes(chunk_size=65536):
                chunks.append(chunk)
                size += len(chunk)
                if size > max_size:
                    raise InvalidPdf(url, f"File exceeded max size during download: {size} bytes")

        return PdfPayload(b"".join(chunks), ct, "http")


class BrowserSession:
    """Rendered-mode fetching through a headless Chromium page.

    PDFs are fetched two ways: first by clicking a synthesized anchor and
    waiting for the download event, then by a direct GET through the same
    browser context so cookies carry over.
    """

    mode = "rendered"

    def __init__(self, config: AppConfig, source: SourceConfig):
        from playwright.sync_api import sync_playwright

        self.config = config
        self.source = source
        self._pw = sync_playwright().start()
        self.browser = self._pw.chromium.launch(headless=source.headless)
        self.context = self.browser.new_context(
            user_agent=config.download.user_agent,
            accept_downloads=True,
        )
        self.page = self.context.new_page()

    def close(self):
        for closer in (self.context.close, self.browser.close, self._pw.stop):
            try:
                closer()
            except Exception as e:
                logger.debug(f"[browser] Close failed: {e}")

    def load(self, url: str) -> str:
        from playwright.sync_api import Error as PlaywrightError
        from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

        timeout = self.config.crawl.navigation_timeout_ms
        try:
            try:
                resp = self.page.goto(url, wait_until="networkidle", timeout=timeout)
            except PlaywrightTimeoutError:
                logger.debug(f"[browser] networkidle not reached for {url}, using domcontentloaded")
                resp = self.page.goto(url, wait_until="domcontentloaded", timeout=timeout)
        except PlaywrightError as e:
            raise NetworkError(url, f"Navigation failed for {url}: {e}") from e

        if resp is not None and resp.status >= 400:
            raise NetworkError(url, f"HTTP {resp.status}", resp.status)

        if self.source.scroll_to_bottom:
            self._scroll_to_bottom()
        self.page.wait_for_timeout(500)
        return self.page.content()

    def _scroll_to_bottom(self):
        crawl = self.config.crawl
        last_height = self.page.evaluate("document.body.scrollHeight")
        for _ in range(crawl.max_scroll_iterations):
            self.page.evaluate(f"window.scrollBy(0, {crawl.scroll_step_px})")
            self.page.wait_for_timeout(crawl.scroll_pause_ms)
            height = self.page.evaluate("document.body.scrollHeight")
            position = self.page.evaluate("window.scrollY + window.innerHeight")
            if position >= height and height == last_height:
                break
            last_height = height

    def fetch_pdf(self, url: str) -> PdfPayload:
        from playwright.sync_api import Error as PlaywrightError

        try:
            with self.page.expect_download(timeout=self.config.download.download_event_timeout_ms) as dl_info:
                self.page.evaluate(_CLICK_ANCHOR_JS, url)
            download = dl_info.value
            with open(download.path(), "rb") as f:
                return PdfPayload(f.read(), "", "download_event")
        except (PlaywrightError, OSError) as e:
            logger.debug(f"[browser] Download event failed for {url}: {e}; trying direct GET")

        try:
            resp = self.context.request.get(url, timeout=self.config.download.timeout * 1000)
        except PlaywrightError as e:
            raise NetworkError(url, f"Failed to download {url}: {e}") from e
        if not resp.ok:
            raise NetworkError(url, f"HTTP {resp.status}", resp.status)
        return PdfPayload(resp.body(), resp.headers.get("content-type", ""), "direct_get")


def open_session(config: AppConfig, source: SourceConfig, client: httpx.Client = None):
    if choose_render_mode(source) == "rendered":
        return BrowserSession(config, source)
    return HttpSession(config, client=client)


class Acquirer:
    """Fetches pages and the PDFs they link to for one source."""

    def __init__(self, config: AppConfig, source: SourceConfig, session, limiter: RateLimiter):
        self.config = config
        self.source = source
        self.session = session
        self.limiter = limiter

    def fetch_page(self, url: str) -> ParsedPage:
        html = self.session.load(url)
        return parse_page(html, url, self.source.pdf_link_selector_hints,
                          self.config.crawl.max_content_chars)

    def download_pdf(self, url: str, link_text: str = "") -> DownloadedFile:
        self.limiter.acquire(rate_key(url))
        payload = self.session.fetch_pdf(url)
        validate_pdf_payload(url, payload.content_type, payload.content)

        os.makedirs(self.source.download_dir, exist_ok=True)
        file_name, file_path = build_pdf_path(self.source.download_dir, link_text, url)
        with open(file_path, "wb") as f:
            f.write(payload.content)

        return DownloadedFile(
            source_url=url,
            file_path=file_path,
            file_name=file_name,
            file_size_bytes=len(payload.content),
            method=payload.method,
            link_text=link_text,
        )

    def download_pdfs(self, pdf_links: List[Tuple[str, str]],
                      seen: Set[str]) -> Tuple[List[DownloadedFile], List[CrawlError]]:
        """Download up to max_pdfs_per_page links not yet in seen; errors are collected."""
        limit = self.config.download.max_pdfs_per_page
        if len(pdf_links) > limit:
            logger.info(f"[{self.source.id}] Limiting to first {limit} of {len(pdf_links)} PDFs")

        files: List[DownloadedFile] = []
        errors: List[CrawlError] = []
        for url, text in pdf_links[:limit]:
            if url in seen:
                continue
            seen.add(url)
            try:
                f = self.download_pdf(url, text)
                files.append(f)
                logger.info(f"[{self.source.id}] Saved {f.file_name} ({f.file_size_bytes:,} bytes, {f.method})")
            except InvalidPdf as e:
                logger.warning(f"[{self.source.id}] {e}: {url}")
                errors.append(CrawlError(url=url, error=str(e), kind="invalid_pdf"))
            except (RegwatchError, OSError) as e:
                logger.warning(f"[{self.source.id}] Download failed for {url}: {e}")
                errors.append(CrawlError(url=url, error=str(e), kind="download"))
            except Exception as e:
                logger.exception(f"[{self.source.id}] Unexpected error downloading {url}: {e}")
                errors.append(CrawlError(url=url, error=str(e), kind="download"))
        return files, errors
