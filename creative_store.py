"""creative_store.py

Content-addressed creative library + per-account upload ledger (SQLite).

Tables:
  - creatives          one row per distinct file (unique sha256 fingerprint)
  - creative_accounts  one row per (creative, ad account) the file was pushed to
  - creative_batches   optional named groups creatives can be filed under

A `creative_accounts` row is the only proof that a creative exists in an ad
account. It is written after Meta accepted the upload, never before.

For Postgres use CreativeStorePG (CREATIVE_STORE_SOURCE=db).
"""

from __future__ import annotations

import logging
import os
import sqlite3
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from library_files import (
    LibraryPaths,
    copy_into_library,
    discard,
    fingerprint,
    mime_class_for,
    move_into_library,
    remove_library_file,
)
from meta_client import strip_act_prefix

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Creative:
    id: int
    fingerprint: str
    original_name: str
    mime_class: str
    mime_type: Optional[str]
    byte_size: int
    file_path: str
    thumbnail_path: Optional[str] = None
    batch_id: Optional[int] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class UploadRecord:
    creative_id: int
    ad_account_id: str
    image_hash: Optional[str]
    video_id: Optional[str]
    uploaded_at: Optional[str] = None

    def facebook_ids(self) -> Dict[str, Optional[str]]:
        return {"image_hash": self.image_hash, "video_id": self.video_id}


class BatchNameTaken(ValueError):
    pass


CREATIVE_COLUMNS = (
    "id, fingerprint, original_name, mime_class, mime_type, byte_size, "
    "file_path, thumbnail_path, batch_id, created_at, updated_at"
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _row_to_creative(row: Sequence[Any]) -> Creative:
    return Creative(
        id=int(row[0]),
        fingerprint=str(row[1]),
        original_name=str(row[2] or ""),
        mime_class=str(row[3]),
        mime_type=row[4],
        byte_size=int(row[5] or 0),
        file_path=str(row[6]),
        thumbnail_path=row[7],
        batch_id=int(row[8]) if row[8] is not None else None,
        created_at=str(row[9]) if row[9] is not None else None,
        updated_at=str(row[10]) if row[10] is not None else None,
    )


def _describe_upload(temp_path: str | os.PathLike, original_name: str, mime_type: Optional[str], mime_class: Optional[str]) -> str:
    mc = mime_class or mime_class_for(mime_type, original_name or str(temp_path))
    if mc not in ("image", "video"):
        raise ValueError(f"Not an image or video: {original_name or temp_path} ({mime_type})")
    return mc


class CreativeStore:
    """SQLite-backed creative library and upload ledger.

    Every method opens its own connection, so one instance can be shared by
    worker threads (`asyncio.to_thread`).
    """

    def __init__(self, db_path: str | os.PathLike, library_dir: str | os.PathLike):
        self.db_path = Path(db_path)
        self.paths = LibraryPaths(library_dir)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_db(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.paths.ensure()
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS creative_batches (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL UNIQUE,
                    description TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS creatives (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    fingerprint TEXT NOT NULL UNIQUE,
                    original_name TEXT NOT NULL,
                    mime_class TEXT NOT NULL,
                    mime_type TEXT,
                    byte_size INTEGER NOT NULL,
                    file_path TEXT NOT NULL,
                    thumbnail_path TEXT,
                    batch_id INTEGER REFERENCES creative_batches(id) ON DELETE SET NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS creative_accounts (
                    creative_id INTEGER NOT NULL REFERENCES creatives(id) ON DELETE CASCADE,
                    ad_account_id TEXT NOT NULL,
                    image_hash TEXT,
                    video_id TEXT,
                    uploaded_at TEXT NOT NULL,
                    PRIMARY KEY (creative_id, ad_account_id)
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_creatives_batch ON creatives(batch_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_creative_accounts_account ON creative_accounts(ad_account_id)")
            conn.commit()

    # -----------------------------
    # Library
    # -----------------------------

    def find_by_fingerprint(self, fp: str) -> Optional[Creative]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {CREATIVE_COLUMNS} FROM creatives WHERE fingerprint=?",
                (fp,),
            ).fetchone()
        return _row_to_creative(row) if row else None

    def get(self, creative_id: int) -> Optional[Creative]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {CREATIVE_COLUMNS} FROM creatives WHERE id=?",
                (int(creative_id),),
            ).fetchone()
        return _row_to_creative(row) if row else None

    def list_creatives(
        self,
        *,
        limit: int = 100,
        offset: int = 0,
        query: Optional[str] = None,
        batch_id: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Library rows (newest first), each with the accounts it was pushed to."""
        where: List[str] = []
        args: List[Any] = []
        if query:
            where.append("original_name LIKE ?")
            args.append(f"%{query}%")
        if batch_id is not None:
            where.append("batch_id=?")
            args.append(int(batch_id))
        sql = f"SELECT {CREATIVE_COLUMNS} FROM creatives"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY id DESC LIMIT ? OFFSET ?"
        args.extend([int(limit), int(offset)])

        with self._connect() as conn:
            rows = conn.execute(sql, args).fetchall()
        creatives = [_row_to_creative(r) for r in rows]
        accounts = self._accounts_by_creative([c.id for c in creatives])

        out: List[Dict[str, Any]] = []
        for c in creatives:
            d = c.to_dict()
            d["accounts"] = accounts.get(c.id, [])
            out.append(d)
        return out

    def count_creatives(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(1) FROM creatives").fetchone()
        return int(row[0] or 0)

    def insert_new(
        self,
        temp_path: str | os.PathLike,
        *,
        original_name: str,
        mime_type: Optional[str] = None,
        mime_class: Optional[str] = None,
        fp: Optional[str] = None,
    ) -> Tuple[Creative, bool]:
        """Insert a creative and move its file into the library.

        Returns (creative, created). The row insert and the file move share
        one transaction: if the move fails the insert is rolled back. If a
        concurrent insert of the same fingerprint won, the temp file is
        discarded and (existing, False) is returned.
        """
        mc = _describe_upload(temp_path, original_name, mime_type, mime_class)
        fp = fp or fingerprint(temp_path)
        byte_size = os.path.getsize(temp_path)
        dest = self.paths.canonical_path(fp, mc, original_name)
        now = _now()

        conn = self._connect()
        try:
            try:
                cur = conn.execute(
                    """
                    INSERT INTO creatives
                      (fingerprint, original_name, mime_class, mime_type, byte_size, file_path, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (fp, original_name, mc, mime_type, int(byte_size), str(dest), now, now),
                )
            except sqlite3.IntegrityError:
                conn.rollback()
                existing = self.find_by_fingerprint(fp)
                if existing is None:
                    raise
                logger.info("Fingerprint %s inserted concurrently; reusing creative %s", fp[:12], existing.id)
                discard(temp_path)
                return existing, False

            try:
                move_into_library(temp_path, dest)
            except OSError:
                conn.rollback()
                raise
            conn.commit()
            creative_id = int(cur.lastrowid)
        finally:
            conn.close()

        created = self.get(creative_id)
        if created is None:
            raise RuntimeError(f"Creative {creative_id} vanished right after insert")
        logger.info("New creative %s (%s) -> %s", created.id, original_name, dest)
        return created, True

    def attach_thumbnail(self, creative_id: int, thumbnail_path: str | os.PathLike) -> Creative:
        creative = self.get(creative_id)
        if creative is None:
            raise KeyError(f"Creative {creative_id} not found")
        dest = copy_into_library(thumbnail_path, self.paths.thumbnail_path(creative.fingerprint))
        with self._connect() as conn:
            conn.execute(
                "UPDATE creatives SET thumbnail_path=?, updated_at=? WHERE id=?",
                (str(dest), _now(), int(creative_id)),
            )
            conn.commit()
        return self.get(creative_id)  # type: ignore[return-value]

    def delete(self, creative_id: int) -> bool:
        """Remove files, then the row. A failed file removal keeps the row."""
        creative = self.get(creative_id)
        if creative is None:
            return False
        remove_library_file(creative.file_path)
        remove_library_file(creative.thumbnail_path)
        with self._connect() as conn:
            conn.execute("DELETE FROM creatives WHERE id=?", (int(creative_id),))
            conn.commit()
        return True

    def delete_all(self) -> int:
        with self._connect() as conn:
            ids = [int(r[0]) for r in conn.execute("SELECT id FROM creatives").fetchall()]
        deleted = 0
        for cid in ids:
            if self.delete(cid):
                deleted += 1
        return deleted

    # -----------------------------
    # Upload ledger
    # -----------------------------

    def get_record(self, creative_id: int, ad_account_id: str) -> Optional[UploadRecord]:
        acct = strip_act_prefix(ad_account_id)
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT creative_id, ad_account_id, image_hash, video_id, uploaded_at
                FROM creative_accounts
                WHERE creative_id=? AND ad_account_id=?
                """,
                (int(creative_id), acct),
            ).fetchone()
        if not row:
            return None
        return UploadRecord(
            creative_id=int(row[0]),
            ad_account_id=str(row[1]),
            image_hash=row[2],
            video_id=row[3],
            uploaded_at=row[4],
        )

    def record_upload(
        self,
        creative_id: int,
        ad_account_id: str,
        *,
        image_hash: Optional[str] = None,
        video_id: Optional[str] = None,
    ) -> UploadRecord:
        if not image_hash and not video_id:
            raise ValueError("record_upload needs image_hash or video_id")
        acct = strip_act_prefix(ad_account_id)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO creative_accounts (creative_id, ad_account_id, image_hash, video_id, uploaded_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (creative_id, ad_account_id) DO UPDATE SET
                  image_hash=excluded.image_hash,
                  video_id=excluded.video_id,
                  uploaded_at=excluded.uploaded_at
                """,
                (int(creative_id), acct, image_hash, video_id, _now()),
            )
            conn.commit()
        return self.get_record(creative_id, acct)  # type: ignore[return-value]

    def is_uploaded(self, creative_id: int, ad_account_id: str) -> bool:
        return self.get_record(creative_id, ad_account_id) is not None

    def list_accounts(self, creative_id: int) -> List[Dict[str, Any]]:
        return self._accounts_by_creative([int(creative_id)]).get(int(creative_id), [])

    def _accounts_by_creative(self, creative_ids: Iterable[int]) -> Dict[int, List[Dict[str, Any]]]:
        ids = [int(i) for i in creative_ids]
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT creative_id, ad_account_id, image_hash, video_id, uploaded_at
                FROM creative_accounts
                WHERE creative_id IN ({placeholders})
                ORDER BY uploaded_at ASC
                """,
                ids,
            ).fetchall()
        out: Dict[int, List[Dict[str, Any]]] = {}
        for cid, acct, image_hash, video_id, uploaded_at in rows:
            out.setdefault(int(cid), []).append(
                {
                    "ad_account_id": str(acct),
                    "image_hash": image_hash,
                    "video_id": video_id,
                    "uploaded_at": uploaded_at,
                }
            )
        return out

    # -----------------------------
    # Batches (library organisation)
    # -----------------------------

    def create_batch(self, name: str, description: Optional[str] = None) -> Dict[str, Any]:
        name = (name or "").strip()
        if not name:
            raise ValueError("Batch name is required")
        now = _now()
        try:
            with self._connect() as conn:
                cur = conn.execute(
                    "INSERT INTO creative_batches (name, description, created_at, updated_at) VALUES (?, ?, ?, ?)",
                    (name, description, now, now),
                )
                conn.commit()
                batch_id = int(cur.lastrowid)
        except sqlite3.IntegrityError as e:
            raise BatchNameTaken(f"A batch named '{name}' already exists") from e
        return self.get_batch(batch_id)  # type: ignore[return-value]

    def get_batch(self, batch_id: int) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT b.id, b.name, b.description, b.created_at, b.updated_at, COUNT(c.id)
                FROM creative_batches b
                LEFT JOIN creatives c ON c.batch_id = b.id
                WHERE b.id=?
                GROUP BY b.id
                """,
                (int(batch_id),),
            ).fetchone()
        return _batch_row(row) if row else None

    def list_batches(self) -> List[Dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT b.id, b.name, b.description, b.created_at, b.updated_at, COUNT(c.id)
                FROM creative_batches b
                LEFT JOIN creatives c ON c.batch_id = b.id
                GROUP BY b.id
                ORDER BY b.created_at DESC
                """
            ).fetchall()
        return [_batch_row(r) for r in rows]

    def update_batch(self, batch_id: int, *, name: Optional[str] = None, description: Optional[str] = None) -> Optional[Dict[str, Any]]:
        current = self.get_batch(batch_id)
        if current is None:
            return None
        new_name = (name or "").strip() or current["name"]
        new_desc = description if description is not None else current["description"]
        try:
            with self._connect() as conn:
                conn.execute(
                    "UPDATE creative_batches SET name=?, description=?, updated_at=? WHERE id=?",
                    (new_name, new_desc, _now(), int(batch_id)),
                )
                conn.commit()
        except sqlite3.IntegrityError as e:
            raise BatchNameTaken(f"A batch named '{new_name}' already exists") from e
        return self.get_batch(batch_id)

    def delete_batch(self, batch_id: int) -> bool:
        with self._connect() as conn:
            conn.execute("UPDATE creatives SET batch_id=NULL WHERE batch_id=?", (int(batch_id),))
            cur = conn.execute("DELETE FROM creative_batches WHERE id=?", (int(batch_id),))
            conn.commit()
            return cur.rowcount > 0

    def assign_batch(self, creative_ids: Sequence[int], batch_id: Optional[int]) -> int:
        ids = [int(i) for i in creative_ids]
        if not ids:
            return 0
        if batch_id is not None and self.get_batch(batch_id) is None:
            raise KeyError(f"Batch {batch_id} not found")
        placeholders = ",".join("?" for _ in ids)
        with self._connect() as conn:
            cur = conn.execute(
                f"UPDATE creatives SET batch_id=?, updated_at=? WHERE id IN ({placeholders})",
                [batch_id, _now(), *ids],
            )
            conn.commit()
            return int(cur.rowcount)

    def list_batch_creatives(self, batch_id: int) -> List[Dict[str, Any]]:
        return self.list_creatives(limit=10_000, batch_id=batch_id)


def _batch_row(row: Sequence[Any]) -> Dict[str, Any]:
    return {
        "id": int(row[0]),
        "name": str(row[1]),
        "description": row[2],
        "created_at": str(row[3]) if row[3] is not None else None,
        "updated_at": str(row[4]) if row[4] is not None else None,
        "creative_count": int(row[5] or 0),
    }


def build_creative_store(db_path: str, library_dir: str):
    """Factory: SQLite (default) or Postgres.

    Enable Postgres store by setting:
      CREATIVE_STORE_SOURCE=db
      DATABASE_URL=...
    """
    source = (os.getenv("CREATIVE_STORE_SOURCE") or "").strip().lower()
    database_url = (os.getenv("DATABASE_URL") or "").strip()
    if source == "db" and database_url:
        from creative_store_pg import CreativeStorePG

        return CreativeStorePG(database_url, library_dir)
    return CreativeStore(db_path, library_dir)
