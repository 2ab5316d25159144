"""Content hashing and hash-based deduplication."""

import hashlib
import re

from .db import Database

_WS_RE = re.compile(r"\s+")


def canonicalize(text: str) -> str:
    return _WS_RE.sub(" ", text or "").strip()


def compute_hash(text: str) -> str:
    """SHA-256 hex digest of the whitespace-normalized text."""
    return hashlib.sha256(canonicalize(text).encode("utf-8")).hexdigest()


class Deduplicator:
    def __init__(self, db: Database):
        self.db = db

    def check_duplicate(self, content_hash: str) -> bool:
        return self.db.find_document_by_hash(content_hash) is not None
