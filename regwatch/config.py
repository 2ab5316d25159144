"""YAML config loader."""

import os
from dataclasses import dataclass, field
from typing import Dict, List
from urllib.parse import urlparse

import yaml
from dotenv import load_dotenv

DEFAULT_PDF_SELECTORS = ['a[href$=".pdf"]', 'a[href$=".PDF"]']


@dataclass
class DownloadConfig:
    timeout: int = 30
    max_retries: int = 3
    backoff_factor: int = 2
    user_agent: str = "RegwatchCrawler/1.0 (Policy monitoring bot)"
    max_file_size: int = 104857600
    max_pdfs_per_page: int = 10
    download_event_timeout_ms: int = 5000


@dataclass
class CrawlConfig:
    min_interval_ms: int = 1000
    respect_robots: bool = True
    robots_ttl: int = 3600
    navigation_timeout_ms: int = 60000
    scroll_step_px: int = 400
    scroll_pause_ms: int = 250
    max_scroll_iterations: int = 50
    max_content_chars: int = 50000


@dataclass
class ExtractionConfig:
    enabled: bool = True
    min_text_chars: int = 100
    min_chars_per_page: int = 50
    ocr_dpi: int = 300
    tesseract_lang: str = "eng"
    review_threshold: float = 0.7


@dataclass
class SchedulerConfig:
    interval_seconds: int = 3600
    batch_size: int = 4
    max_workers: int = 2


@dataclass
class SourceConfig:
    id: str = ""
    name: str = ""
    start_url: str = ""
    domain_allowlist: List[str] = field(default_factory=list)
    download_dir: str = ""
    max_depth: int = 2
    max_pages: int = 50
    pdf_link_selector_hints: List[str] = field(default_factory=lambda: list(DEFAULT_PDF_SELECTORS))
    scroll_to_bottom: bool = True
    headless: bool = True
    analyze_html: bool = True
    render_mode: str = "auto"  # auto, plain, rendered
    active: bool = True
    source_type: str = "policy"
    prompt_template: str = ""


@dataclass
class AppConfig:
    data_dir: str = "data"
    db_path: str = "regwatch.db"
    log_dir: str = "logs"
    download: DownloadConfig = field(default_factory=DownloadConfig)
    crawl: CrawlConfig = field(default_factory=CrawlConfig)
    extraction: ExtractionConfig = field(default_factory=ExtractionConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    sources: Dict[str, SourceConfig] = field(default_factory=dict)


def _pick(cls, raw: dict) -> dict:
    return {k: v for k, v in (raw or {}).items() if k in cls.__dataclass_fields__}


def build_source(source_id: str, raw: dict, data_dir: str = "data") -> SourceConfig:
    src = SourceConfig(**_pick(SourceConfig, raw))
    src.id = source_id
    src.name = src.name or source_id
    if not src.domain_allowlist and src.start_url:
        src.domain_allowlist = [urlparse(src.start_url).hostname or ""]
    if not src.download_dir:
        src.download_dir = os.path.join(data_dir, "downloads", source_id)
    return src


def load_config(config_path: str = "config.yaml") -> AppConfig:
    load_dotenv()

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    data_dir = os.environ.get("REGWATCH_DATA_DIR", raw.get("data_dir", "data"))

    sources = {}
    for source_id, src_raw in (raw.get("sources") or {}).items():
        sources[source_id] = build_source(source_id, src_raw, data_dir)

    return AppConfig(
        data_dir=data_dir,
        db_path=os.environ.get("REGWATCH_DB_PATH", raw.get("db_path", "regwatch.db")),
        log_dir=os.environ.get("REGWATCH_LOG_DIR", raw.get("log_dir", "logs")),
        download=DownloadConfig(**_pick(DownloadConfig, raw.get("download"))),
        crawl=CrawlConfig(**_pick(CrawlConfig, raw.get("crawl"))),
        extraction=ExtractionConfig(**_pick(ExtractionConfig, raw.get("extraction"))),
        scheduler=SchedulerConfig(**_pick(SchedulerConfig, raw.get("scheduler"))),
        sources=sources,
    )
