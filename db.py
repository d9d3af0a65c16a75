from __future__ import annotations

import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from models import (
    ALL_STATUSES,
    STATUS_DONE,
    STATUS_ERROR,
    STATUS_QUEUED,
    STATUS_RUNNING,
    AnalysisFacts,
    BrokenLink,
    CrawlJob,
    CrawlResult,
)


CLAIM_ATTEMPTS = 5

logger = logging.getLogger("store")


class SQLiteStore:
    """Job store shared by every worker.

    Each status change is a conditional UPDATE, so two workers (or a worker and
    a stop/delete command) can never both win the same transition, even across
    processes sharing the database file.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self._lock = threading.Lock()
        self._init_db()

    @contextmanager
    def _connect(self):
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS jobs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    url TEXT NOT NULL UNIQUE,
                    title TEXT NOT NULL DEFAULT '',
                    status TEXT NOT NULL,
                    error_message TEXT,
                    claim_token TEXT,
                    claimed_by TEXT,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS crawl_results (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_id INTEGER NOT NULL,
                    html_version TEXT NOT NULL,
                    title TEXT NOT NULL DEFAULT '',
                    h1_count INTEGER NOT NULL DEFAULT 0,
                    h2_count INTEGER NOT NULL DEFAULT 0,
                    h3_count INTEGER NOT NULL DEFAULT 0,
                    h4_count INTEGER NOT NULL DEFAULT 0,
                    h5_count INTEGER NOT NULL DEFAULT 0,
                    h6_count INTEGER NOT NULL DEFAULT 0,
                    internal_links INTEGER NOT NULL DEFAULT 0,
                    external_links INTEGER NOT NULL DEFAULT 0,
                    broken_links INTEGER NOT NULL DEFAULT 0,
                    has_login_form INTEGER NOT NULL DEFAULT 0,
                    error_message TEXT,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS broken_links (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    crawl_result_id INTEGER NOT NULL,
                    url TEXT NOT NULL,
                    status_code INTEGER NOT NULL,
                    error_message TEXT,
                    created_at INTEGER NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_status_updated ON jobs(status, updated_at, id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_crawl_results_job ON crawl_results(job_id, id DESC)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_broken_links_result ON broken_links(crawl_result_id)")

    def insert_job(self, url: str) -> Tuple[CrawlJob, bool]:
        now = int(time.time())
        with self._lock, self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO jobs(url,title,status,created_at,updated_at)
                VALUES(?,?,?,?,?)
                ON CONFLICT(url) DO NOTHING
                """,
                (url, "", STATUS_QUEUED, now, now),
            )
            created = int(cur.rowcount or 0) == 1
            row = conn.execute("SELECT * FROM jobs WHERE url = ?", (url,)).fetchone()
        return self._row_to_job(row), created

    def get(self, job_id: int) -> Optional[CrawlJob]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return self._row_to_job(row) if row is not None else None

    def claim_next_queued(self, owner: str, claim_token: str, exclude_ids: Iterable[int] = ()) -> Optional[CrawlJob]:
        """Atomically move the oldest queued job to ``running`` under ``claim_token``."""
        excluded = sorted({int(job_id) for job_id in exclude_ids})
        where_sql = "status = ?"
        params: List[Any] = [STATUS_QUEUED]
        if excluded:
            where_sql += f" AND id NOT IN ({','.join('?' for _ in excluded)})"
            params.extend(excluded)

        with self._lock, self._connect() as conn:
            for _ in range(CLAIM_ATTEMPTS):
                row = conn.execute(
                    f"SELECT id FROM jobs WHERE {where_sql} ORDER BY updated_at ASC, id ASC LIMIT 1",
                    tuple(params),
                ).fetchone()
                if row is None:
                    return None
                now = int(time.time())
                cur = conn.execute(
                    """
                    UPDATE jobs
                    SET status = ?, claim_token = ?, claimed_by = ?, attempts = attempts + 1,
                        error_message = NULL, updated_at = ?
                    WHERE id = ? AND status = ?
                    """,
                    (STATUS_RUNNING, claim_token, owner, now, int(row["id"]), STATUS_QUEUED),
                )
                if int(cur.rowcount or 0) == 1:
                    claimed = conn.execute("SELECT * FROM jobs WHERE id = ?", (int(row["id"]),)).fetchone()
                    return self._row_to_job(claimed)
                # another process won this row; try the next one
        return None

    def update_status(
        self,
        job_id: int,
        status: str,
        error_message: Optional[str] = None,
        expected: Optional[Sequence[str]] = None,
        claim_token: Optional[str] = None,
    ) -> bool:
        """Compare-and-set the job status; returns False when the guard did not match."""
        if status not in ALL_STATUSES:
            raise ValueError(f"Unknown job status: {status}")
        sets = ["status = ?", "error_message = ?", "updated_at = ?"]
        params: List[Any] = [status, error_message, int(time.time())]
        if status != STATUS_RUNNING:
            sets.append("claim_token = NULL")
            sets.append("claimed_by = NULL")
        where = ["id = ?"]
        params_where: List[Any] = [job_id]
        if expected:
            where.append(f"status IN ({','.join('?' for _ in expected)})")
            params_where.extend(expected)
        if claim_token is not None:
            where.append("claim_token = ?")
            params_where.append(claim_token)

        with self._lock, self._connect() as conn:
            cur = conn.execute(
                f"UPDATE jobs SET {', '.join(sets)} WHERE {' AND '.join(where)}",
                tuple(params + params_where),
            )
            changed = int(cur.rowcount or 0) == 1
        if changed:
            logger.info(f"Job {job_id} -> {status}" + (f" ({error_message})" if error_message else ""))
        return changed

    def write_result(
        self,
        job_id: int,
        facts: AnalysisFacts,
        broken_links: Sequence[BrokenLink],
        claim_token: Optional[str] = None,
    ) -> Optional[CrawlResult]:
        """Persist a finished run and mark the job ``done`` in one transaction.

        Previous results of the job and their broken links are replaced. Returns
        None, writing nothing, when the job is gone or no longer running under
        ``claim_token``.
        """
        known = set(facts.links)
        strays = [link.url for link in broken_links if link.url not in known]
        if strays:
            raise ValueError(f"Broken links not found on the page: {strays[:3]}")
        if len({link.url for link in broken_links}) != len(broken_links):
            raise ValueError("Broken links must be unique per result")

        now = int(time.time())
        where_sql = "id = ? AND status = ?"
        params: List[Any] = [job_id, STATUS_RUNNING]
        if claim_token is not None:
            where_sql += " AND claim_token = ?"
            params.append(claim_token)

        with self._lock, self._connect() as conn:
            cur = conn.execute(
                f"""
                UPDATE jobs
                SET status = ?, title = ?, error_message = NULL, claim_token = NULL, claimed_by = NULL, updated_at = ?
                WHERE {where_sql}
                """,
                (STATUS_DONE, facts.title, now, *params),
            )
            if int(cur.rowcount or 0) != 1:
                return None

            conn.execute(
                "DELETE FROM broken_links WHERE crawl_result_id IN (SELECT id FROM crawl_results WHERE job_id = ?)",
                (job_id,),
            )
            conn.execute("DELETE FROM crawl_results WHERE job_id = ?", (job_id,))
            cur = conn.execute(
                """
                INSERT INTO crawl_results(
                    job_id,html_version,title,h1_count,h2_count,h3_count,h4_count,h5_count,h6_count,
                    internal_links,external_links,broken_links,has_login_form,error_message,created_at,updated_at
                )
                VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    job_id,
                    facts.html_version,
                    facts.title,
                    *(facts.heading_count(level) for level in range(1, 7)),
                    len(facts.internal_links),
                    len(facts.external_links),
                    len(broken_links),
                    1 if facts.has_login_form else 0,
                    None,
                    now,
                    now,
                ),
            )
            result_id = int(cur.lastrowid)
            conn.executemany(
                """
                INSERT INTO broken_links(crawl_result_id,url,status_code,error_message,created_at)
                VALUES(?,?,?,?,?)
                """,
                [(result_id, link.url, int(link.status_code), link.error_message, now) for link in broken_links],
            )
            result = self._load_result(conn, result_id)
        logger.info(f"Job {job_id} -> {STATUS_DONE} (result {result_id}, {len(broken_links)} broken links)")
        return result

    def release_claim(self, job_id: int, claim_token: str, max_attempts: int, reason: str) -> Optional[str]:
        """Hand a job whose run crashed back to the queue, or park it as error once attempts run out."""
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT attempts FROM jobs WHERE id = ? AND status = ? AND claim_token = ?",
                (job_id, STATUS_RUNNING, claim_token),
            ).fetchone()
            if row is None:
                return None
            exhausted = int(row["attempts"] or 0) >= max(1, max_attempts)
            status = STATUS_ERROR if exhausted else STATUS_QUEUED
            message = f"Crawl failed repeatedly: {reason}" if exhausted else None
            conn.execute(
                """
                UPDATE jobs
                SET status = ?, error_message = ?, claim_token = NULL, claimed_by = NULL, updated_at = ?
                WHERE id = ? AND status = ? AND claim_token = ?
                """,
                (status, message, int(time.time()), job_id, STATUS_RUNNING, claim_token),
            )
        return status

    def reset_to_queued(self, job_id: int) -> bool:
        with self._lock, self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE jobs
                SET status = ?, error_message = NULL, claim_token = NULL, claimed_by = NULL,
                    attempts = 0, updated_at = ?
                WHERE id = ?
                """,
                (STATUS_QUEUED, int(time.time()), job_id),
            )
            return int(cur.rowcount or 0) == 1

    def delete(self, job_id: int) -> bool:
        with self._lock, self._connect() as conn:
            conn.execute(
                "DELETE FROM broken_links WHERE crawl_result_id IN (SELECT id FROM crawl_results WHERE job_id = ?)",
                (job_id,),
            )
            conn.execute("DELETE FROM crawl_results WHERE job_id = ?", (job_id,))
            cur = conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
            return int(cur.rowcount or 0) == 1

    def requeue_stale_running(self, older_than_seconds: float = 0) -> int:
        cutoff = int(time.time() - max(0.0, older_than_seconds))
        with self._lock, self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE jobs
                SET status = ?, claim_token = NULL, claimed_by = NULL, updated_at = ?
                WHERE status = ? AND updated_at <= ?
                """,
                (STATUS_QUEUED, int(time.time()), STATUS_RUNNING, cutoff),
            )
            return max(0, int(cur.rowcount or 0))

    def get_latest_result(self, job_id: int) -> Optional[CrawlResult]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id FROM crawl_results WHERE job_id = ? ORDER BY id DESC LIMIT 1",
                (job_id,),
            ).fetchone()
            if row is None:
                return None
            return self._load_result(conn, int(row["id"]))

    def list_jobs(self, limit: int = 20, offset: int = 0, search: str = "") -> Tuple[List[Dict[str, Any]], int]:
        where_sql = ""
        params: List[Any] = []
        search = (search or "").strip()
        if search:
            where_sql = "WHERE j.url LIKE ? OR j.title LIKE ?"
            params.extend([f"%{search}%", f"%{search}%"])

        with self._connect() as conn:
            total_row = conn.execute(f"SELECT COUNT(*) AS n FROM jobs j {where_sql}", tuple(params)).fetchone()
            rows = conn.execute(
                f"""
                SELECT j.id, j.url, j.title, j.status, j.error_message, j.created_at, j.updated_at,
                       COALESCE(cr.html_version, '') AS html_version,
                       COALESCE(cr.internal_links, 0) AS internal_links,
                       COALESCE(cr.external_links, 0) AS external_links,
                       COALESCE(cr.broken_links, 0) AS broken_links
                FROM jobs j
                LEFT JOIN crawl_results cr
                    ON cr.job_id = j.id
                   AND cr.id = (SELECT MAX(cr2.id) FROM crawl_results cr2 WHERE cr2.job_id = j.id)
                {where_sql}
                ORDER BY j.created_at DESC, j.id DESC
                LIMIT ? OFFSET ?
                """,
                tuple(params) + (max(1, limit), max(0, offset)),
            ).fetchall()
        return [dict(row) for row in rows], int(total_row["n"] or 0)

    def status_counts(self) -> Dict[str, int]:
        counts = {status: 0 for status in ALL_STATUSES}
        with self._connect() as conn:
            rows = conn.execute("SELECT status, COUNT(*) AS n FROM jobs GROUP BY status").fetchall()
        for row in rows:
            counts[str(row["status"])] = int(row["n"] or 0)
        return counts

    def _load_result(self, conn: sqlite3.Connection, result_id: int) -> Optional[CrawlResult]:
        row = conn.execute("SELECT * FROM crawl_results WHERE id = ?", (result_id,)).fetchone()
        if row is None:
            return None
        broken_rows = conn.execute(
            "SELECT * FROM broken_links WHERE crawl_result_id = ? ORDER BY id ASC",
            (result_id,),
        ).fetchall()
        return CrawlResult(
            id=int(row["id"]),
            job_id=int(row["job_id"]),
            html_version=str(row["html_version"] or ""),
            title=str(row["title"] or ""),
            h1_count=int(row["h1_count"] or 0),
            h2_count=int(row["h2_count"] or 0),
            h3_count=int(row["h3_count"] or 0),
            h4_count=int(row["h4_count"] or 0),
            h5_count=int(row["h5_count"] or 0),
            h6_count=int(row["h6_count"] or 0),
            internal_links=int(row["internal_links"] or 0),
            external_links=int(row["external_links"] or 0),
            broken_links=int(row["broken_links"] or 0),
            has_login_form=bool(row["has_login_form"]),
            error_message=row["error_message"],
            created_at=int(row["created_at"] or 0),
            updated_at=int(row["updated_at"] or 0),
            broken_urls=[
                BrokenLink(
                    id=int(item["id"]),
                    crawl_result_id=int(item["crawl_result_id"]),
                    url=str(item["url"]),
                    status_code=int(item["status_code"]),
                    error_message=item["error_message"],
                    created_at=int(item["created_at"] or 0),
                )
                for item in broken_rows
            ],
        )

    def _row_to_job(self, row: sqlite3.Row) -> CrawlJob:
        return CrawlJob(
            id=int(row["id"]),
            url=str(row["url"]),
            title=str(row["title"] or ""),
            status=str(row["status"]),
            error_message=row["error_message"],
            claim_token=row["claim_token"],
            attempts=int(row["attempts"] or 0),
            created_at=int(row["created_at"] or 0),
            updated_at=int(row["updated_at"] or 0),
        )
