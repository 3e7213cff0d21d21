from __future__ import annotations

import sqlite3
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

SUBMITTED = "submitted"
COMPLETED = "completed"
FAILED = "failed"


@dataclass(frozen=True)
class BatchJob:
    id: int
    tracking_id: str
    kind: str
    name: Optional[str]
    source_id: Optional[str]
    target_id: Optional[str]
    ad_account_id: Optional[str]
    status: str
    total_count: int
    success_count: int
    error_count: int
    result_id: Optional[str]
    error: Optional[str]
    created_at: str
    updated_at: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


JOB_COLUMNS = (
    "id, tracking_id, kind, name, source_id, target_id, ad_account_id, status, "
    "total_count, success_count, error_count, result_id, error, created_at, updated_at"
)


def _row_to_job(row) -> BatchJob:
    return BatchJob(
        id=int(row[0]),
        tracking_id=str(row[1]),
        kind=str(row[2]),
        name=row[3],
        source_id=row[4],
        target_id=row[5],
        ad_account_id=row[6],
        status=str(row[7]),
        total_count=int(row[8] or 0),
        success_count=int(row[9] or 0),
        error_count=int(row[10] or 0),
        result_id=row[11],
        error=row[12],
        created_at=str(row[13]),
        updated_at=str(row[14]),
    )


class BatchJobStore:
    """SQLite record of async batch requests submitted to Meta.

    One row per tracking id. Rows start as `submitted`; the worker (or a
    /batch-status call) moves them to `completed` or `failed`. Only ids and
    counts are kept here, never the duplication plan itself.
    """

    def __init__(self, db_path: str = ".batch_jobs.db"):
        self.db_path = db_path
        self._init()

    def _init(self) -> None:
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS batch_jobs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tracking_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    name TEXT,
                    source_id TEXT,
                    target_id TEXT,
                    ad_account_id TEXT,
                    status TEXT NOT NULL,
                    total_count INTEGER NOT NULL DEFAULT 0,
                    success_count INTEGER NOT NULL DEFAULT 0,
                    error_count INTEGER NOT NULL DEFAULT 0,
                    result_id TEXT,
                    error TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS uq_batch_jobs_tracking_id ON batch_jobs(tracking_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_batch_jobs_status ON batch_jobs(status, id)"
            )
            conn.commit()

    def record_submitted(
        self,
        tracking_id: str,
        *,
        kind: str,
        name: Optional[str] = None,
        source_id: Optional[str] = None,
        target_id: Optional[str] = None,
        ad_account_id: Optional[str] = None,
        total_count: int = 0,
    ) -> int:
        now = datetime.now(timezone.utc).isoformat()
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO batch_jobs
                  (tracking_id, kind, name, source_id, target_id, ad_account_id, status, total_count, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (str(tracking_id), kind, name, source_id, target_id, ad_account_id, SUBMITTED, int(total_count), now, now),
            )
            cur = conn.execute("SELECT id FROM batch_jobs WHERE tracking_id=?", (str(tracking_id),))
            row = cur.fetchone()
            conn.commit()
            return int(row[0])

    def get(self, tracking_id: str) -> Optional[BatchJob]:
        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute(
                f"SELECT {JOB_COLUMNS} FROM batch_jobs WHERE tracking_id=?",
                (str(tracking_id),),
            ).fetchone()
        return _row_to_job(row) if row else None

    def list_pending(self, limit: int = 50) -> List[BatchJob]:
        with sqlite3.connect(self.db_path) as conn:
            rows = conn.execute(
                f"SELECT {JOB_COLUMNS} FROM batch_jobs WHERE status=? ORDER BY id ASC LIMIT ?",
                (SUBMITTED, int(limit)),
            ).fetchall()
        return [_row_to_job(r) for r in rows]

    def list_jobs(self, *, status: Optional[str] = None, limit: int = 100) -> List[BatchJob]:
        with sqlite3.connect(self.db_path) as conn:
            if status:
                rows = conn.execute(
                    f"SELECT {JOB_COLUMNS} FROM batch_jobs WHERE status=? ORDER BY id DESC LIMIT ?",
                    (status, int(limit)),
                ).fetchall()
            else:
                rows = conn.execute(
                    f"SELECT {JOB_COLUMNS} FROM batch_jobs ORDER BY id DESC LIMIT ?",
                    (int(limit),),
                ).fetchall()
        return [_row_to_job(r) for r in rows]

    def update_status(
        self,
        tracking_id: str,
        *,
        status: str,
        total_count: Optional[int] = None,
        success_count: Optional[int] = None,
        error_count: Optional[int] = None,
        result_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> bool:
        now = datetime.now(timezone.utc).isoformat()
        with sqlite3.connect(self.db_path) as conn:
            cur = conn.execute(
                """
                UPDATE batch_jobs SET
                  status=?,
                  total_count=COALESCE(?, total_count),
                  success_count=COALESCE(?, success_count),
                  error_count=COALESCE(?, error_count),
                  result_id=COALESCE(?, result_id),
                  error=COALESCE(?, error),
                  updated_at=?
                WHERE tracking_id=?
                """,
                (status, total_count, success_count, error_count, result_id, error, now, str(tracking_id)),
            )
            conn.commit()
            return cur.rowcount > 0

    def purge_finished(self) -> int:
        with sqlite3.connect(self.db_path) as conn:
            cur = conn.execute("DELETE FROM batch_jobs WHERE status IN (?, ?)", (COMPLETED, FAILED))
            conn.commit()
            return int(cur.rowcount)
