"""Classifier adapter: heuristic rate extraction, classifier call, datapoint normalization."""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, List, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from .errors import ExtractionFailure
from .models import CrawledDocument, Datapoint

logger = logging.getLogger("regwatch")

DEFAULT_CONFIDENCE = 0.8
HEURISTIC_CONFIDENCE = 0.95

RELEVANT_KEYWORDS = [
    "circular", "order", "resolution", "memorandum", "advisory",
    "regulation", "policy", "issuance", "directive", "guideline",
    "announcement", "notice", "press release", "bulletin",
    "tariff", "rate", "compliance", "requirement",
]

RATE_LABELS = [
    "policy rate", "interest rate", "overnight", "repurchase", "reverse repurchase",
    "deposit rate", "lending rate", "reference rate", "key rates", "key rate", "repo rate",
]

UNIT_ALIASES = {
    "%": "percent",
    "pct": "percent",
    "percentage": "percent",
    "php": "PHP",
    "peso": "PHP",
    "pesos": "PHP",
    "mw": "MW",
    "megawatt": "MW",
    "megawatts": "MW",
    "kwh": "kWh",
    "kilowatt-hour": "kWh",
}

_LABEL_PATTERN = "|".join(l.replace(" ", r"\s+") for l in RATE_LABELS)
_RATE_RE = re.compile(
    rf"(?P<label>{_LABEL_PATTERN})[^\n\r]{{0,60}}?(?P<value>[0-9]+(?:\.[0-9]+)?)\s*%",
    re.IGNORECASE,
)

MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}
_MONTH = r"(?:Jan(?:uary)?|Feb(?:ruary)?|Mar(?:ch)?|Apr(?:il)?|May|June?|July?|Aug(?:ust)?|Sep(?:t(?:ember)?)?|Oct(?:ober)?|Nov(?:ember)?|Dec(?:ember)?)\.?"

_ISO_RE = re.compile(r"\b(\d{4})-(\d{2})-(\d{2})\b")
_DAY_MONTH_RE = re.compile(rf"\b(\d{{1,2}})\s+({_MONTH}),?\s+(\d{{4}})\b", re.IGNORECASE)
_MONTH_DAY_RE = re.compile(rf"\b({_MONTH})\s+(\d{{1,2}}),?\s+(\d{{4}})\b", re.IGNORECASE)
_NUMERIC_RE = re.compile(r"\b(\d{1,2})[/-](\d{1,2})[/-](\d{2,4})\b")
_AS_OF_RE = re.compile(rf"as\s+of\s+({_MONTH})\s+(\d{{4}})\b", re.IGNORECASE)


# ----------------------------------------------------------------------
# Classifier contract
# ----------------------------------------------------------------------

class ExtractedEvent(BaseModel):
    title: str
    summary: str = ""
    category: str = "other"
    effective_date: Optional[str] = None


class ExtractedDatapoint(BaseModel):
    indicator_key: str
    value: Union[float, str]
    unit: Optional[str] = None
    effective_date: Optional[str] = None
    description: str = ""
    confidence: Optional[float] = Field(default=None, ge=0, le=1)


class ExtractionResult(BaseModel):
    is_relevant: bool
    category: str = "other"
    confidence: float = Field(default=0.0, ge=0, le=1)
    reasoning: str = ""
    events: List[ExtractedEvent] = []
    datapoints: List[ExtractedDatapoint] = []


class Classifier(ABC):
    """External document classifier (an LLM in production)."""

    @abstractmethod
    def classify(self, text: str, prompt_template: str, source_type: str) -> Union[ExtractionResult, dict]:
        ...


class NullClassifier(Classifier):
    def classify(self, text: str, prompt_template: str, source_type: str) -> ExtractionResult:
        return ExtractionResult(is_relevant=False, category="irrelevant", confidence=0.0)


# ----------------------------------------------------------------------
# Heuristics and normalization
# ----------------------------------------------------------------------

def looks_regulatory(title: str, text: str) -> bool:
    haystack = f"{title or ''} {(text or '')[:1000]}".lower()
    return any(k in haystack for k in RELEVANT_KEYWORDS)


def _safe_date(year: int, month: int, day: int) -> Optional[str]:
    try:
        return date(year, month, day).isoformat()
    except ValueError:
        return None


def _month_number(name: str) -> int:
    return MONTHS[name.strip(".").lower()[:3]]


def parse_date(text: str) -> Optional[str]:
    """First recognizable date in text as YYYY-MM-DD, or None."""
    if not text:
        return None

    m = _ISO_RE.search(text)
    if m:
        parsed = _safe_date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
        if parsed:
            return parsed

    m = _DAY_MONTH_RE.search(text)
    if m:
        parsed = _safe_date(int(m.group(3)), _month_number(m.group(2)), int(m.group(1)))
        if parsed:
            return parsed

    m = _MONTH_DAY_RE.search(text)
    if m:
        parsed = _safe_date(int(m.group(3)), _month_number(m.group(1)), int(m.group(2)))
        if parsed:
            return parsed

    # day-first, as published on PH government sites
    m = _NUMERIC_RE.search(text)
    if m:
        day, month, year = int(m.group(1)), int(m.group(2)), int(m.group(3))
        if year < 100:
            year += 2000
        if month > 12 and day <= 12:
            day, month = month, day
        parsed = _safe_date(year, month, day)
        if parsed:
            return parsed

    m = _AS_OF_RE.search(text)
    if m:
        return _safe_date(int(m.group(2)), _month_number(m.group(1)), 1)

    return None


def normalize_unit(unit: Optional[str]) -> Optional[str]:
    if not unit or not unit.strip():
        return None
    u = unit.strip().lower()
    return UNIT_ALIASES.get(u, u)


def normalize_datapoints(datapoints: Iterable[Datapoint]) -> List[Datapoint]:
    """Canonical dates and units, default confidence, duplicates dropped (first wins)."""
    seen = set()
    result = []
    for dp in datapoints:
        dp.effective_date = parse_date(dp.effective_date) if dp.effective_date else None
        dp.unit = normalize_unit(dp.unit)
        if dp.confidence is None:
            dp.confidence = DEFAULT_CONFIDENCE
        key = dp.dedup_key()
        if key in seen:
            continue
        seen.add(key)
        result.append(dp)
    return result


def extract_key_rates(text: str, source_url: str = "", document_id: int = None) -> List[Datapoint]:
    """Labelled percentages (policy rate, repo rate, ...) found directly in the text."""
    results = []
    if not text or len(text) < 20:
        return results

    for m in _RATE_RE.finditer(text):
        label = " ".join(m.group("label").split()).lower()
        start = m.start()
        nearby = text[max(0, start - 100):start + 100]
        results.append(Datapoint(
            indicator_key="RATE_" + re.sub(r"[^A-Za-z0-9]", "_", label).upper(),
            value=float(m.group("value")),
            unit="percent",
            effective_date=parse_date(nearby),
            confidence=HEURISTIC_CONFIDENCE,
            description=label,
            source_url=source_url,
            document_id=document_id,
        ))
    return results


# ----------------------------------------------------------------------
# Adapter
# ----------------------------------------------------------------------

@dataclass
class ExtractionOutcome:
    document_id: Optional[int]
    ok: bool = True
    is_relevant: bool = False
    category: str = "irrelevant"
    confidence: float = 0.0
    datapoints: List[Datapoint] = field(default_factory=list)
    events: List[ExtractedEvent] = field(default_factory=list)
    error: Optional[str] = None


class ExtractionAdapter:
    def __init__(self, classifier: Classifier = None):
        self.classifier = classifier or NullClassifier()

    def classify(self, text: str, prompt_template: str = "", source_type: str = "policy") -> ExtractionResult:
        try:
            raw = self.classifier.classify(text, prompt_template, source_type)
        except Exception as e:
            raise ExtractionFailure(f"Classifier failed: {e}") from e
        if isinstance(raw, ExtractionResult):
            return raw
        try:
            return ExtractionResult.model_validate(raw)
        except ValidationError as e:
            raise ExtractionFailure(f"Malformed classifier output: {e}") from e

    def process(self, doc: CrawledDocument, prompt_template: str = "",
                source_type: str = "policy") -> ExtractionOutcome:
        outcome = ExtractionOutcome(document_id=doc.id)
        heuristic = extract_key_rates(doc.content, doc.url, doc.id)

        try:
            result = self.classify(doc.content, prompt_template, source_type)
        except ExtractionFailure as e:
            logger.warning(f"[{doc.source_id}] Extraction failed for {doc.url}: {e}")
            outcome.ok = False
            outcome.error = str(e)
            outcome.datapoints = normalize_datapoints(heuristic)
            return outcome

        outcome.is_relevant = result.is_relevant
        outcome.category = result.category
        outcome.confidence = result.confidence

        extracted = []
        if result.is_relevant:
            outcome.events = list(result.events)
            extracted = [
                Datapoint(
                    indicator_key=dp.indicator_key,
                    value=dp.value,
                    unit=dp.unit,
                    effective_date=dp.effective_date,
                    confidence=dp.confidence,
                    description=dp.description,
                    source_url=doc.url,
                    document_id=doc.id,
                )
                for dp in result.datapoints
            ]
        outcome.datapoints = normalize_datapoints(heuristic + extracted)
        return outcome

    def process_batch(self, docs: Iterable[CrawledDocument], prompt_template: str = "",
                      source_type: str = "policy") -> List[ExtractionOutcome]:
        outcomes = []
        for doc in docs:
            try:
                outcomes.append(self.process(doc, prompt_template, source_type))
            except Exception as e:
                logger.exception(f"[{doc.source_id}] Unexpected extraction error for {doc.url}: {e}")
                outcomes.append(ExtractionOutcome(document_id=doc.id, ok=False, error=str(e)))
        return outcomes
