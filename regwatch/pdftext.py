"""Text extraction from downloaded PDFs: PyMuPDF native text + tesseract OCR fallback.

OCR is capped at MAX_OCR_PAGES per document so a large scanned circular
cannot stall a crawl job.
"""

import logging
import os
import subprocess
import tempfile
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger("regwatch")

MAX_OCR_PAGES = 50


@dataclass
class PdfText:
    text: str
    page_count: int
    ocr_pages: int = 0
    method: str = "pymupdf"

    @property
    def char_count(self) -> int:
        return len(self.text.strip())


class TextExtractor:
    def __init__(self, min_chars_per_page: int = 50, ocr_dpi: int = 300,
                 tesseract_lang: str = "eng"):
        self.min_chars = min_chars_per_page
        self.ocr_dpi = ocr_dpi
        self.tesseract_lang = tesseract_lang
        self._can_ocr = self._check_cmd("tesseract") and self._check_cmd("pdftoppm")
        if not self._can_ocr:
            logger.info("tesseract/pdftoppm not found, OCR fallback disabled")

    @staticmethod
    def _check_cmd(cmd: str) -> bool:
        try:
            subprocess.run([cmd, "--version"], capture_output=True, timeout=5)
            return True
        except (FileNotFoundError, subprocess.TimeoutExpired):
            return False

    def extract(self, pdf_path: str, output_path: Optional[str] = None) -> PdfText:
        """Extract page text, OCR-ing near-empty pages. Optionally writes the text to output_path."""
        import fitz  # PyMuPDF

        pages = []
        ocr_pages = 0
        method = "pymupdf"

        with fitz.open(pdf_path) as doc:
            page_count = len(doc)
            for page_num in range(page_count):
                text = doc[page_num].get_text().strip()

                if len(text) < self.min_chars and self._can_ocr and ocr_pages < MAX_OCR_PAGES:
                    ocr_text = self._ocr_page(pdf_path, page_num)
                    if ocr_text and len(ocr_text) > len(text):
                        text = ocr_text
                        ocr_pages += 1
                        method = "pymupdf+ocr"

                if text:
                    pages.append(text)

        if ocr_pages >= MAX_OCR_PAGES:
            logger.warning(f"OCR capped at {MAX_OCR_PAGES} pages for {pdf_path}")

        result = PdfText(text="\n\n".join(pages), page_count=page_count,
                         ocr_pages=ocr_pages, method=method)

        if output_path:
            os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
            with open(output_path, "w", encoding="utf-8") as f:
                f.write(result.text)

        return result

    def _ocr_page(self, pdf_path: str, page_num: int) -> str:
        p = str(page_num + 1)
        with tempfile.TemporaryDirectory() as tmpdir:
            prefix = os.path.join(tmpdir, "ocr")
            render = ["pdftoppm", "-f", p, "-l", p, "-r", str(self.ocr_dpi), "-png", "-singlefile",
                      pdf_path, prefix]
            recognize = ["tesseract", prefix + ".png", "stdout", "-l", self.tesseract_lang]
            try:
                subprocess.run(render, capture_output=True, timeout=60, check=True)
                out = subprocess.run(recognize, capture_output=True, text=True, timeout=120, check=True)
            except (subprocess.TimeoutExpired, subprocess.CalledProcessError, OSError) as e:
                logger.debug(f"OCR failed for {os.path.basename(pdf_path)} page {p}: {e}")
                return ""
        return out.stdout.strip()
