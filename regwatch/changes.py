"""Version tracking for documents seen across crawl runs."""

import logging
from typing import List, Optional

from .db import Database
from .hashing import compute_hash
from .models import ChangeResult, ChangeType, ExtractedPayload, utcnow

logger = logging.getLogger("regwatch")

TITLE_WEIGHT = 0.3
CONTENT_WEIGHT = 0.4
LENGTH_WEIGHT = 0.2
LENGTH_CHANGE_RATIO = 0.2


def detect_changes(previous: dict, payload: ExtractedPayload, content_hash: str,
                   previous_length: Optional[int]) -> dict:
    changes = {}
    if previous["content_hash"] != content_hash:
        changes["content"] = {"old_hash": previous["content_hash"], "new_hash": content_hash}
    if (previous.get("document_title") or "") != (payload.title or ""):
        changes["title"] = {"old": previous.get("document_title"), "new": payload.title}
    if previous_length is not None:
        new_length = len(payload.text or "")
        changes["length"] = {"old": previous_length, "new": new_length,
                             "diff": new_length - previous_length}
    return changes


def length_changed(changes: dict) -> bool:
    length = changes.get("length")
    return bool(length and length["old"] and abs(length["diff"]) / length["old"] > LENGTH_CHANGE_RATIO)


def significance(changes: dict) -> float:
    """Weighted score in [0, 1] for a set of detected changes."""
    score = 0.0
    if "content" in changes:
        score += CONTENT_WEIGHT
    if "title" in changes:
        score += TITLE_WEIGHT
    if length_changed(changes):
        score += LENGTH_WEIGHT
    return round(min(score, 1.0), 4)


class ChangeDetector:
    def __init__(self, db: Database, review_threshold: float = 0.7):
        self.db = db
        self.review_threshold = review_threshold

    def process_document(self, source_id: str, payload: ExtractedPayload,
                         content_hash: str = None, crawl_job_id: str = None) -> ChangeResult:
        """Record a sighting of payload and classify it as new, unchanged or updated."""
        content_hash = content_hash or compute_hash(payload.text)
        key = payload.document_key
        now = utcnow()
        current = self.db.get_current_version(source_id, key)

        if current is None:
            version_id = self.db.add_version(
                self._version_row(source_id, payload, content_hash, 1, ChangeType.NEW, None, now),
                change=self._change_row(source_id, payload, ChangeType.NEW,
                                        f"New document: {payload.title}", {}, None, crawl_job_id, now),
            )
            logger.debug(f"[{source_id}] New document {key}")
            return ChangeResult(is_new=True, has_changed=False, change_type=ChangeType.NEW,
                                version_number=1, version_id=version_id)

        if current["content_hash"] == content_hash:
            self.db.touch_version(current["id"], now)
            return ChangeResult(is_new=False, has_changed=False, change_type=ChangeType.UNCHANGED,
                                version_number=current["version_number"], version_id=current["id"])

        changes = detect_changes(current, payload, content_hash, current.get("content_length"))
        score = significance(changes)
        version_number = current["version_number"] + 1
        fields = [k for k in ("content", "title") if k in changes]
        if length_changed(changes):
            fields.append("length")
        summary = f"Updated: {', '.join(fields)}"
        version_id = self.db.add_version(
            self._version_row(source_id, payload, content_hash, version_number,
                              ChangeType.UPDATED, score, now),
            previous_id=current["id"],
            change=self._change_row(source_id, payload, ChangeType.UPDATED, summary, changes,
                                    score, crawl_job_id, now),
        )
        logger.info(f"[{source_id}] Updated {key} -> v{version_number} (significance {score:.2f})")
        return ChangeResult(is_new=False, has_changed=True, change_type=ChangeType.UPDATED,
                            version_number=version_number, version_id=version_id,
                            significance_score=score)

    @staticmethod
    def _version_row(source_id, payload, content_hash, version_number, change_type, score, now) -> dict:
        return {
            "source_id": source_id,
            "document_key": payload.document_key,
            "document_url": payload.source_url,
            "document_title": payload.title,
            "content_type": payload.kind,
            "version_number": version_number,
            "content_hash": content_hash,
            "content_length": len(payload.text or ""),
            "change_type": change_type,
            "significance_score": score,
            "file_path": getattr(payload, "file_path", None) or None,
            "file_size_bytes": getattr(payload, "file_size_bytes", None) or None,
            "first_seen_at": now,
            "last_seen_at": now,
        }

    def _change_row(self, source_id, payload, change_type, summary, changes, score,
                    crawl_job_id, now) -> dict:
        return {
            "source_id": source_id,
            "document_key": payload.document_key,
            "document_url": payload.source_url,
            "change_type": change_type,
            "change_summary": summary,
            "changes_detected": changes,
            "significance_score": score,
            "requires_review": (score or 0) >= self.review_threshold,
            "crawl_job_id": crawl_job_id,
            "detected_at": now,
        }

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_recent_changes(self, source_id: str, limit: int = 50) -> List[dict]:
        return self.db.get_recent_changes(source_id, limit)

    def get_changes_for_review(self, source_id: str = None, threshold: float = None) -> List[dict]:
        if threshold is None:
            threshold = self.review_threshold
        return self.db.get_changes_for_review(source_id, threshold)

    def get_version_history(self, source_id: str, url: str) -> List[dict]:
        return [
            {
                "version_number": v["version_number"],
                "change_type": v["change_type"],
                "is_current": bool(v["is_current"]),
                "title": v["document_title"],
                "hash": v["content_hash"][:12],
                "significance_score": v["significance_score"],
                "first_seen_at": v["first_seen_at"],
                "last_seen_at": v["last_seen_at"],
            }
            for v in self.db.get_version_history(source_id, url)
        ]

    def get_current_version(self, source_id: str, url: str) -> Optional[dict]:
        return self.db.get_current_version(source_id, url)
