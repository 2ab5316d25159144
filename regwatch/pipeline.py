"""Turns a crawl result into stored documents, versions and datapoints."""

import logging
import os
from typing import List, Optional
from urllib.parse import unquote, urlsplit

from .changes import ChangeDetector
from .config import AppConfig, SourceConfig
from .db import Database
from .errors import PersistenceError
from .extraction import ExtractionAdapter, looks_regulatory
from .hashing import Deduplicator, compute_hash
from .models import (
    ChangeType, CrawlError, CrawlResult, CrawledDocument, DownloadedFile,
    ExtractedPayload, HtmlPage, IngestStats, PdfDocument,
)
from .pdftext import TextExtractor

logger = logging.getLogger("regwatch")


def pdf_title(f: DownloadedFile) -> str:
    if f.link_text:
        return f.link_text
    name = os.path.basename(unquote(urlsplit(f.source_url).path))
    return os.path.splitext(name)[0] or f.file_name


class DocumentPipeline:
    def __init__(self, config: AppConfig, db: Database,
                 text_extractor: TextExtractor = None,
                 adapter: ExtractionAdapter = None,
                 detector: ChangeDetector = None):
        self.config = config
        self.db = db
        self.text_extractor = text_extractor or TextExtractor(
            min_chars_per_page=config.extraction.min_chars_per_page,
            ocr_dpi=config.extraction.ocr_dpi,
            tesseract_lang=config.extraction.tesseract_lang,
        )
        self.adapter = adapter or ExtractionAdapter()
        self.detector = detector or ChangeDetector(db, config.extraction.review_threshold)
        self.dedup = Deduplicator(db)

    def pdf_payload(self, f: DownloadedFile, errors: List[CrawlError]) -> Optional[PdfDocument]:
        try:
            extracted = self.text_extractor.extract(f.file_path)
        except Exception as e:
            logger.warning(f"Text extraction failed for {f.file_path}: {e}")
            errors.append(CrawlError(url=f.source_url, error=f"Text extraction failed: {e}", kind="pdf_text"))
            return None

        min_chars = self.config.extraction.min_text_chars
        if extracted.char_count < min_chars:
            logger.info(f"Skipping {f.file_name}: only {extracted.char_count} chars of text")
            errors.append(CrawlError(url=f.source_url, kind="pdf_text",
                                     error=f"Skipped: extracted text shorter than {min_chars} chars"))
            return None

        return PdfDocument(
            source_url=f.source_url,
            title=pdf_title(f),
            text=extracted.text,
            file_path=f.file_path,
            file_size_bytes=f.file_size_bytes,
            page_count=extracted.page_count,
        )

    def payloads(self, source: SourceConfig, result: CrawlResult, job_id: Optional[str]) -> List[ExtractedPayload]:
        payloads: List[ExtractedPayload] = []
        for f in result.downloaded_files:
            try:
                self.db.insert_downloaded_file(source.id, job_id, f)
            except PersistenceError as e:
                logger.error(f"[{source.id}] Could not record download {f.source_url}: {e}")
            doc = self.pdf_payload(f, result.errors)
            if doc is not None:
                payloads.append(doc)
        payloads.extend(result.html_pages)
        return payloads

    def ingest(self, source: SourceConfig, result: CrawlResult, job_id: str = None) -> IngestStats:
        """Hash, dedupe, version and classify every unit of content in result.

        Every sighting goes through change detection; only content whose hash
        is not stored yet becomes a new document and is sent for extraction.
        """
        stats = IngestStats()
        to_extract: List[CrawledDocument] = []

        for payload in self.payloads(source, result, job_id):
            stats.documents_seen += 1
            content_hash = compute_hash(payload.text)
            try:
                change = self.detector.process_document(source.id, payload, content_hash, job_id)
                if change.change_type == ChangeType.NEW:
                    stats.new += 1
                elif change.change_type == ChangeType.UPDATED:
                    stats.updated += 1
                else:
                    stats.unchanged += 1

                if self.dedup.check_duplicate(content_hash):
                    stats.duplicates += 1
                    continue

                doc_id = self.db.insert_document(
                    source.id, payload.source_url, payload.title, payload.text,
                    content_hash, payload.kind, job_id,
                )
            except PersistenceError as e:
                logger.error(f"[{source.id}] Failed to store {payload.source_url}: {e}")
                stats.failed += 1
                result.errors.append(CrawlError(url=payload.source_url, error=str(e), kind="persistence"))
                continue

            if doc_id is None:
                stats.duplicates += 1
                continue
            stats.documents_inserted += 1

            if isinstance(payload, HtmlPage) and not looks_regulatory(payload.title, payload.text):
                continue
            to_extract.append(CrawledDocument(
                id=doc_id, source_id=source.id, url=payload.source_url, title=payload.title,
                content=payload.text, content_hash=content_hash, content_type=payload.kind,
                crawl_job_id=job_id,
            ))

        if self.config.extraction.enabled and to_extract:
            stats.datapoints = self.extract(source, to_extract)

        logger.info(f"[{source.id}] Ingested {stats.documents_seen} documents: {stats.new} new, "
                    f"{stats.updated} updated, {stats.unchanged} unchanged, {stats.duplicates} duplicate")
        return stats

    def extract(self, source: SourceConfig, docs: List[CrawledDocument]) -> int:
        stored = 0
        outcomes = self.adapter.process_batch(docs, source.prompt_template, source.source_type)
        for outcome in outcomes:
            try:
                stored += self.db.insert_datapoints(outcome.document_id, outcome.datapoints)
                if outcome.ok:
                    self.db.mark_document_processed(outcome.document_id, outcome.category, outcome.confidence)
            except PersistenceError as e:
                logger.error(f"[{source.id}] Could not store extraction for document {outcome.document_id}: {e}")
        return stored
