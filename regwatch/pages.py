"""HTML parsing: title, main text, outbound links and PDF links."""

import logging
from dataclasses import dataclass, field
from typing import List, Tuple
from urllib.parse import urldefrag, urljoin, urlsplit

from bs4 import BeautifulSoup
from soupsieve import SelectorSyntaxError

logger = logging.getLogger("regwatch")

NOISE_TAGS = ["script", "style", "nav", "footer", "header", "iframe", "noscript", "aside", "form"]

CONTENT_SELECTORS = [
    "main",
    "article",
    '[role="main"]',
    ".main-content",
    ".content",
    "#content",
]

MAX_CONTENT_CHARS = 50000


@dataclass
class ParsedPage:
    url: str
    title: str = "Untitled"
    text: str = ""
    links: List[str] = field(default_factory=list)
    # (absolute url, link text)
    pdf_links: List[Tuple[str, str]] = field(default_factory=list)


def is_pdf_url(url: str) -> bool:
    return urlsplit(url).path.lower().endswith(".pdf")


def normalize_link(href: str, base_url: str) -> str:
    """Absolute http(s) URL without fragment, or '' if the link is not crawlable."""
    href = (href or "").strip()
    if not href or href.startswith(("javascript:", "mailto:", "tel:", "data:")):
        return ""
    absolute, _ = urldefrag(urljoin(base_url, href))
    if urlsplit(absolute).scheme not in ("http", "https"):
        return ""
    return absolute


def _collapse(text: str) -> str:
    return " ".join(text.split())


def extract_title(soup: BeautifulSoup) -> str:
    if soup.title and soup.title.get_text(strip=True):
        return _collapse(soup.title.get_text())
    h1 = soup.find("h1")
    if h1 and h1.get_text(strip=True):
        return _collapse(h1.get_text())
    return "Untitled"


def extract_main_text(soup: BeautifulSoup, max_chars: int = MAX_CONTENT_CHARS) -> str:
    for tag in soup(NOISE_TAGS):
        tag.decompose()

    text = ""
    for selector in CONTENT_SELECTORS:
        el = soup.select_one(selector)
        if el is not None:
            text = _collapse(el.get_text(" "))
            if text:
                break

    if not text:
        paragraphs = [_collapse(p.get_text(" ")) for p in soup.find_all("p")]
        text = " ".join(p for p in paragraphs if p)

    if not text and soup.body is not None:
        text = _collapse(soup.body.get_text(" "))

    return text[:max_chars]


def extract_links(soup: BeautifulSoup, base_url: str) -> List[str]:
    seen = set()
    links = []
    for a in soup.find_all("a", href=True):
        url = normalize_link(a["href"], base_url)
        if url and url not in seen:
            seen.add(url)
            links.append(url)
    return links


def extract_pdf_links(soup: BeautifulSoup, base_url: str, hints: List[str]) -> List[Tuple[str, str]]:
    """Anchors matched by any selector hint, in document order, deduplicated."""
    matched = set()
    for hint in hints:
        try:
            for el in soup.select(hint):
                matched.add(id(el))
        except (SelectorSyntaxError, NotImplementedError) as e:
            logger.warning(f"[pages] Skipping unsupported PDF selector {hint!r}: {e}")

    seen = set()
    results = []
    for a in soup.find_all("a", href=True):
        if id(a) not in matched:
            continue
        url = normalize_link(a["href"], base_url)
        if url and url not in seen:
            seen.add(url)
            results.append((url, _collapse(a.get_text(" "))))
    return results


def parse_page(html: str, url: str, pdf_hints: List[str],
               max_chars: int = MAX_CONTENT_CHARS) -> ParsedPage:
    soup = BeautifulSoup(html or "", "lxml")
    page = ParsedPage(url=url, title=extract_title(soup))
    # links first: text extraction strips nav/header/footer
    page.links = extract_links(soup, url)
    page.pdf_links = extract_pdf_links(soup, url, pdf_hints)
    page.text = extract_main_text(soup, max_chars)
    return page
