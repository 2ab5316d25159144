"""SQLite database for sources, crawl jobs, documents, versions, changes and datapoints."""

import json
import sqlite3
import threading
from contextlib import contextmanager
from typing import Dict, List, Optional, Sequence, Tuple

from .config import SourceConfig, build_source
from .errors import PersistenceError
from .models import CrawlJob, Datapoint, DownloadedFile, utcnow

JOB_COLUMNS = (
    "id", "source_id", "status", "items_crawled", "items_new", "items_updated",
    "items_unchanged", "pages_crawled", "pages_failed", "pages_skipped", "max_depth",
    "max_pages", "started_at", "completed_at", "error_message", "errors", "created_at", "updated_at",
)


class Database:
    def __init__(self, db_path: str = "regwatch.db"):
        self.db_path = db_path
        self._local = threading.local()
        self._init_db()

    @property
    def _conn(self) -> sqlite3.Connection:
        if not hasattr(self._local, "conn") or self._local.conn is None:
            self._local.conn = sqlite3.connect(self.db_path, timeout=30)
            self._local.conn.row_factory = sqlite3.Row
            self._local.conn.execute("PRAGMA journal_mode=WAL")
            self._local.conn.execute("PRAGMA foreign_keys=ON")
        return self._local.conn

    def close(self):
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    def _init_db(self):
        conn = self._conn
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS sources (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                url TEXT NOT NULL,
                active INTEGER DEFAULT 1,
                config TEXT DEFAULT '{}',
                last_crawled_at TIMESTAMP,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS crawl_jobs (
                id TEXT PRIMARY KEY,
                source_id TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending'
                    CHECK (status IN ('pending', 'running', 'done', 'failed')),
                items_crawled INTEGER DEFAULT 0,
                items_new INTEGER DEFAULT 0,
                items_updated INTEGER DEFAULT 0,
                items_unchanged INTEGER DEFAULT 0,
                pages_crawled INTEGER DEFAULT 0,
                pages_failed INTEGER DEFAULT 0,
                pages_skipped INTEGER DEFAULT 0,
                max_depth INTEGER,
                max_pages INTEGER,
                crawl_config TEXT DEFAULT '{}',
                started_at TIMESTAMP,
                completed_at TIMESTAMP,
                error_message TEXT,
                errors TEXT DEFAULT '[]',
                created_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_jobs_source_status ON crawl_jobs(source_id, status);
            CREATE INDEX IF NOT EXISTS idx_jobs_created ON crawl_jobs(created_at);

            CREATE TABLE IF NOT EXISTS documents (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                source_id TEXT NOT NULL,
                url TEXT NOT NULL,
                title TEXT DEFAULT '',
                content TEXT,
                content_hash TEXT NOT NULL,
                content_type TEXT DEFAULT 'html_page',
                crawl_job_id TEXT,
                classification TEXT,
                confidence REAL,
                processed_at TIMESTAMP,
                crawled_at TIMESTAMP NOT NULL,
                UNIQUE(content_hash)
            );

            CREATE INDEX IF NOT EXISTS idx_documents_source ON documents(source_id);
            CREATE INDEX IF NOT EXISTS idx_documents_job ON documents(crawl_job_id);

            CREATE TABLE IF NOT EXISTS document_versions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                source_id TEXT NOT NULL,
                document_key TEXT NOT NULL,
                document_url TEXT NOT NULL,
                document_title TEXT DEFAULT '',
                content_type TEXT DEFAULT 'pdf',
                version_number INTEGER NOT NULL,
                is_current INTEGER NOT NULL DEFAULT 1,
                content_hash TEXT NOT NULL,
                content_length INTEGER,
                change_type TEXT NOT NULL,
                significance_score REAL,
                file_path TEXT,
                file_size_bytes INTEGER,
                first_seen_at TIMESTAMP NOT NULL,
                last_seen_at TIMESTAMP NOT NULL,
                UNIQUE(source_id, document_key, version_number)
            );

            CREATE UNIQUE INDEX IF NOT EXISTS idx_versions_one_current
                ON document_versions(source_id, document_key) WHERE is_current = 1;
            CREATE INDEX IF NOT EXISTS idx_versions_hash ON document_versions(content_hash);

            CREATE TABLE IF NOT EXISTS document_changes (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                source_id TEXT NOT NULL,
                document_key TEXT NOT NULL,
                document_url TEXT NOT NULL,
                old_version_id INTEGER,
                new_version_id INTEGER NOT NULL,
                change_type TEXT NOT NULL,
                change_summary TEXT,
                changes_detected TEXT DEFAULT '{}',
                significance_score REAL,
                requires_review INTEGER DEFAULT 0,
                crawl_job_id TEXT,
                detected_at TIMESTAMP NOT NULL,
                FOREIGN KEY (new_version_id) REFERENCES document_versions(id)
            );

            CREATE INDEX IF NOT EXISTS idx_changes_source ON document_changes(source_id, detected_at);

            CREATE TABLE IF NOT EXISTS downloaded_files (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                source_id TEXT NOT NULL,
                crawl_job_id TEXT,
                source_url TEXT NOT NULL,
                file_path TEXT NOT NULL,
                file_size_bytes INTEGER,
                method TEXT,
                downloaded_at TIMESTAMP NOT NULL
            );

            CREATE TABLE IF NOT EXISTS datapoints (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                document_id INTEGER NOT NULL,
                indicator_key TEXT NOT NULL,
                value TEXT NOT NULL,
                unit TEXT,
                effective_date TEXT,
                confidence REAL DEFAULT 0.0,
                description TEXT,
                source_url TEXT,
                created_at TIMESTAMP NOT NULL,
                FOREIGN KEY (document_id) REFERENCES documents(id)
            );

            CREATE INDEX IF NOT EXISTS idx_datapoints_document ON datapoints(document_id);
            CREATE INDEX IF NOT EXISTS idx_datapoints_key ON datapoints(indicator_key);
        """)
        conn.commit()

    @contextmanager
    def transaction(self):
        """Commit on success, roll back and raise PersistenceError on a store failure."""
        conn = self._conn
        try:
            with conn:
                yield conn
        except sqlite3.Error as e:
            raise PersistenceError(str(e)) from e

    def _write(self, sql: str, params: Sequence = ()) -> sqlite3.Cursor:
        with self.transaction() as conn:
            return conn.execute(sql, params)

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    def upsert_source(self, src: SourceConfig):
        cfg = json.dumps({k: v for k, v in src.__dict__.items() if k != "id"})
        self._write(
            """INSERT INTO sources (id, name, url, active, config)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET name = excluded.name, url = excluded.url,
                   active = excluded.active, config = excluded.config,
                   updated_at = CURRENT_TIMESTAMP""",
            (src.id, src.name, src.start_url, int(src.active), cfg),
        )

    def get_source(self, source_id: str) -> Optional[SourceConfig]:
        row = self._conn.execute("SELECT * FROM sources WHERE id = ?", (source_id,)).fetchone()
        if not row:
            return None
        raw = json.loads(row["config"] or "{}")
        raw.setdefault("start_url", row["url"])
        raw["active"] = bool(row["active"])
        return build_source(row["id"], raw)

    def list_sources(self, active_only: bool = False) -> List[SourceConfig]:
        sql = "SELECT id FROM sources"
        if active_only:
            sql += " WHERE active = 1"
        rows = self._conn.execute(sql + " ORDER BY id").fetchall()
        return [self.get_source(r["id"]) for r in rows]

    def touch_source_crawled(self, source_id: str):
        self._write(
            "UPDATE sources SET last_crawled_at = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            (utcnow(), source_id),
        )

    # ------------------------------------------------------------------
    # Crawl jobs
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> CrawlJob:
        data = {k: row[k] for k in JOB_COLUMNS}
        data["errors"] = json.loads(data["errors"] or "[]")
        return CrawlJob(**data)

    def insert_job(self, job_id: str, source_id: str, max_depth: int, max_pages: int,
                   crawl_config: dict = None) -> CrawlJob:
        now = utcnow()
        self._write(
            """INSERT INTO crawl_jobs (id, source_id, status, max_depth, max_pages,
                   crawl_config, created_at, updated_at)
               VALUES (?, ?, 'pending', ?, ?, ?, ?, ?)""",
            (job_id, source_id, max_depth, max_pages, json.dumps(crawl_config or {}), now, now),
        )
        return self.get_job(job_id)

    def get_job(self, job_id: str) -> Optional[CrawlJob]:
        row = self._conn.execute("SELECT * FROM crawl_jobs WHERE id = ?", (job_id,)).fetchone()
        return self._row_to_job(row) if row else None

    def get_job_status(self, job_id: str) -> Optional[str]:
        row = self._conn.execute("SELECT status FROM crawl_jobs WHERE id = ?", (job_id,)).fetchone()
        return row["status"] if row else None

    def list_jobs(self, source_id: str = None, status: str = None,
                  limit: int = 20, offset: int = 0) -> Tuple[List[CrawlJob], int]:
        conditions = []
        params: list = []
        if source_id:
            conditions.append("source_id = ?")
            params.append(source_id)
        if status:
            conditions.append("status = ?")
            params.append(status)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        rows = self._conn.execute(
            f"SELECT * FROM crawl_jobs {where} ORDER BY created_at DESC LIMIT ? OFFSET ?",
            (*params, limit, offset),
        ).fetchall()
        total = self._conn.execute(
            f"SELECT COUNT(*) AS cnt FROM crawl_jobs {where}", params
        ).fetchone()["cnt"]
        return [self._row_to_job(r) for r in rows], total

    def pending_jobs(self, limit: int) -> List[CrawlJob]:
        rows = self._conn.execute(
            "SELECT * FROM crawl_jobs WHERE status = 'pending' ORDER BY created_at ASC LIMIT ?",
            (limit,),
        ).fetchall()
        return [self._row_to_job(r) for r in rows]

    def has_open_job(self, source_id: str) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM crawl_jobs WHERE source_id = ? AND status IN ('pending', 'running') LIMIT 1",
            (source_id,),
        ).fetchone()
        return row is not None

    def update_job(self, job_id: str, fields: Dict, expected_statuses: Sequence[str] = None) -> int:
        """Apply a partial update. With expected_statuses the write only lands
        while the job is still in one of them; returns the affected row count."""
        if not fields:
            return 0
        values = dict(fields)
        if "errors" in values:
            values["errors"] = json.dumps(values["errors"])
        values["updated_at"] = utcnow()

        assignments = ", ".join(f"{k} = ?" for k in values)
        params: list = list(values.values())
        sql = f"UPDATE crawl_jobs SET {assignments} WHERE id = ?"
        params.append(job_id)
        if expected_statuses:
            sql += f" AND status IN ({', '.join('?' for _ in expected_statuses)})"
            params.extend(expected_statuses)
        return self._write(sql, params).rowcount

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def find_document_by_hash(self, content_hash: str) -> Optional[int]:
        row = self._conn.execute(
            "SELECT id FROM documents WHERE content_hash = ? LIMIT 1", (content_hash,)
        ).fetchone()
        return row["id"] if row else None

    def insert_document(self, source_id: str, url: str, title: str, content: str,
                        content_hash: str, content_type: str, crawl_job_id: str = None) -> Optional[int]:
        """Insert a first-seen document. Returns None if the hash is already stored."""
        cur = self._write(
            """INSERT OR IGNORE INTO documents
               (source_id, url, title, content, content_hash, content_type, crawl_job_id, crawled_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (source_id, url, title, content, content_hash, content_type, crawl_job_id, utcnow()),
        )
        return cur.lastrowid if cur.rowcount else None

    def mark_document_processed(self, doc_id: int, classification: str = None,
                                confidence: float = None):
        self._write(
            """UPDATE documents SET processed_at = ?,
                   classification = COALESCE(?, classification),
                   confidence = COALESCE(?, confidence)
               WHERE id = ?""",
            (utcnow(), classification, confidence, doc_id),
        )

    def count_documents(self, source_id: str = None) -> int:
        if source_id:
            row = self._conn.execute(
                "SELECT COUNT(*) AS cnt FROM documents WHERE source_id = ?", (source_id,)
            ).fetchone()
        else:
            row = self._conn.execute("SELECT COUNT(*) AS cnt FROM documents").fetchone()
        return row["cnt"]

    # ------------------------------------------------------------------
    # Versions and changes
    # ------------------------------------------------------------------

    def get_current_version(self, source_id: str, document_key: str) -> Optional[dict]:
        row = self._conn.execute(
            """SELECT * FROM document_versions
               WHERE source_id = ? AND document_key = ? AND is_current = 1""",
            (source_id, document_key),
        ).fetchone()
        return dict(row) if row else None

    def touch_version(self, version_id: int, seen_at: str):
        self._write("UPDATE document_versions SET last_seen_at = ? WHERE id = ?", (seen_at, version_id))

    def add_version(self, version: dict, previous_id: int = None, change: dict = None) -> int:
        """Insert a version as current, retiring previous_id and recording the
        change in the same transaction."""
        with self.transaction() as conn:
            if previous_id is not None:
                conn.execute("UPDATE document_versions SET is_current = 0 WHERE id = ?", (previous_id,))
            cols = ", ".join(version)
            marks = ", ".join("?" for _ in version)
            cur = conn.execute(
                f"INSERT INTO document_versions ({cols}, is_current) VALUES ({marks}, 1)",
                tuple(version.values()),
            )
            version_id = cur.lastrowid
            if change is not None:
                row = dict(change, new_version_id=version_id, old_version_id=previous_id)
                row["changes_detected"] = json.dumps(row.get("changes_detected") or {})
                row["requires_review"] = int(bool(row.get("requires_review")))
                cols = ", ".join(row)
                marks = ", ".join("?" for _ in row)
                conn.execute(f"INSERT INTO document_changes ({cols}) VALUES ({marks})", tuple(row.values()))
        return version_id

    def get_version_history(self, source_id: str, document_key: str) -> List[dict]:
        rows = self._conn.execute(
            """SELECT * FROM document_versions
               WHERE source_id = ? AND document_key = ?
               ORDER BY version_number ASC""",
            (source_id, document_key),
        ).fetchall()
        return [dict(r) for r in rows]

    def get_recent_changes(self, source_id: str, limit: int = 50) -> List[dict]:
        rows = self._conn.execute(
            """SELECT c.*, v.document_title, v.version_number AS new_version_number
               FROM document_changes c
               JOIN document_versions v ON v.id = c.new_version_id
               WHERE c.source_id = ?
               ORDER BY c.detected_at DESC, c.id DESC LIMIT ?""",
            (source_id, limit),
        ).fetchall()
        return [self._change_row(r) for r in rows]

    def get_changes_for_review(self, source_id: str = None, threshold: float = 0.7) -> List[dict]:
        sql = """SELECT c.*, v.document_title, v.version_number AS new_version_number
                 FROM document_changes c
                 JOIN document_versions v ON v.id = c.new_version_id
                 WHERE (c.requires_review = 1 OR COALESCE(c.significance_score, 0) > ?)"""
        params: list = [threshold]
        if source_id:
            sql += " AND c.source_id = ?"
            params.append(source_id)
        sql += " ORDER BY COALESCE(c.significance_score, 0) DESC, c.detected_at DESC"
        return [self._change_row(r) for r in self._conn.execute(sql, params).fetchall()]

    @staticmethod
    def _change_row(row: sqlite3.Row) -> dict:
        d = dict(row)
        d["changes_detected"] = json.loads(d.get("changes_detected") or "{}")
        d["requires_review"] = bool(d.get("requires_review"))
        return d

    # ------------------------------------------------------------------
    # Files and datapoints
    # ------------------------------------------------------------------

    def insert_downloaded_file(self, source_id: str, crawl_job_id: Optional[str], f: DownloadedFile):
        self._write(
            """INSERT INTO downloaded_files
               (source_id, crawl_job_id, source_url, file_path, file_size_bytes, method, downloaded_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (source_id, crawl_job_id, f.source_url, f.file_path, f.file_size_bytes, f.method, f.downloaded_at),
        )

    def insert_datapoints(self, document_id: int, datapoints: List[Datapoint]) -> int:
        if not datapoints:
            return 0
        now = utcnow()
        with self.transaction() as conn:
            conn.executemany(
                """INSERT INTO datapoints
                   (document_id, indicator_key, value, unit, effective_date, confidence,
                    description, source_url, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                [
                    (document_id, dp.indicator_key, str(dp.value), dp.unit, dp.effective_date,
                     dp.confidence, dp.description, dp.source_url, now)
                    for dp in datapoints
                ],
            )
        return len(datapoints)

    def get_datapoints(self, document_id: int) -> List[dict]:
        rows = self._conn.execute(
            "SELECT * FROM datapoints WHERE document_id = ? ORDER BY id", (document_id,)
        ).fetchall()
        return [dict(r) for r in rows]

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def get_stats(self) -> List[Tuple]:
        rows = self._conn.execute(
            """SELECT s.id,
                      (SELECT COUNT(*) FROM documents d WHERE d.source_id = s.id) AS docs,
                      (SELECT COUNT(*) FROM document_versions v
                         WHERE v.source_id = s.id AND v.is_current = 1) AS tracked,
                      (SELECT COUNT(*) FROM document_changes c
                         WHERE c.source_id = s.id AND c.change_type = 'updated') AS updates,
                      s.last_crawled_at
               FROM sources s ORDER BY s.id"""
        ).fetchall()
        return [tuple(r) for r in rows]

    def get_job_stats(self) -> List[Tuple]:
        rows = self._conn.execute(
            """SELECT source_id, status, COUNT(*) AS cnt, COALESCE(SUM(items_new), 0) AS new_items
               FROM crawl_jobs GROUP BY source_id, status ORDER BY source_id, status"""
        ).fetchall()
        return [tuple(r) for r in rows]
