import logging
import os
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import psycopg
from psycopg import errors as pg_errors

from creative_store import (
    CREATIVE_COLUMNS,
    BatchNameTaken,
    Creative,
    UploadRecord,
    _batch_row,
    _describe_upload,
    _row_to_creative,
)
from library_files import (
    LibraryPaths,
    copy_into_library,
    discard,
    fingerprint,
    move_into_library,
    remove_library_file,
)
from meta_client import strip_act_prefix

logger = logging.getLogger(__name__)


class CreativeStorePG:
    """Postgres-backed creative library + upload ledger.

    Same interface as creative_store.CreativeStore. Files still live on the
    local library dir; only the rows move to Postgres.

    Tables:
      - creatives
      - creative_accounts
      - creative_batches
    """

    def __init__(self, database_url: str, library_dir: str, *, prefix: str = ""):
        self.database_url = database_url
        self.prefix = prefix.strip()
        self.paths = LibraryPaths(library_dir)
        self._init_db()

    def _conn(self):
        return psycopg.connect(self.database_url)

    def _t(self, name: str) -> str:
        return f"{self.prefix}{name}" if self.prefix else name

    def _init_db(self) -> None:
        self.paths.ensure()
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {self._t('creative_batches')} (
                      id BIGSERIAL PRIMARY KEY,
                      name TEXT NOT NULL UNIQUE,
                      description TEXT,
                      created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                      updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                    )
                    """
                )
                cur.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {self._t('creatives')} (
                      id BIGSERIAL PRIMARY KEY,
                      fingerprint TEXT NOT NULL UNIQUE,
                      original_name TEXT NOT NULL,
                      mime_class TEXT NOT NULL,
                      mime_type TEXT,
                      byte_size BIGINT NOT NULL,
                      file_path TEXT NOT NULL,
                      thumbnail_path TEXT,
                      batch_id BIGINT REFERENCES {self._t('creative_batches')}(id) ON DELETE SET NULL,
                      created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                      updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                    )
                    """
                )
                cur.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {self._t('creative_accounts')} (
                      creative_id BIGINT NOT NULL REFERENCES {self._t('creatives')}(id) ON DELETE CASCADE,
                      ad_account_id TEXT NOT NULL,
                      image_hash TEXT,
                      video_id TEXT,
                      uploaded_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                      PRIMARY KEY (creative_id, ad_account_id)
                    )
                    """
                )
            conn.commit()

    # -----------------------------
    # Library
    # -----------------------------

    def find_by_fingerprint(self, fp: str) -> Optional[Creative]:
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT {CREATIVE_COLUMNS} FROM {self._t('creatives')} WHERE fingerprint=%s", (fp,))
                row = cur.fetchone()
        return _row_to_creative(row) if row else None

    def get(self, creative_id: int) -> Optional[Creative]:
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT {CREATIVE_COLUMNS} FROM {self._t('creatives')} WHERE id=%s", (int(creative_id),))
                row = cur.fetchone()
        return _row_to_creative(row) if row else None

    def list_creatives(
        self,
        *,
        limit: int = 100,
        offset: int = 0,
        query: Optional[str] = None,
        batch_id: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        where: List[str] = []
        args: List[Any] = []
        if query:
            where.append("original_name ILIKE %s")
            args.append(f"%{query}%")
        if batch_id is not None:
            where.append("batch_id=%s")
            args.append(int(batch_id))
        sql = f"SELECT {CREATIVE_COLUMNS} FROM {self._t('creatives')}"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY id DESC LIMIT %s OFFSET %s"
        args.extend([int(limit), int(offset)])

        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, args)
                rows = cur.fetchall()
        creatives = [_row_to_creative(r) for r in rows]
        accounts = self._accounts_by_creative([c.id for c in creatives])
        out: List[Dict[str, Any]] = []
        for c in creatives:
            d = c.to_dict()
            d["accounts"] = accounts.get(c.id, [])
            out.append(d)
        return out

    def count_creatives(self) -> int:
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT COUNT(1) FROM {self._t('creatives')}")
                row = cur.fetchone()
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
        mc = _describe_upload(temp_path, original_name, mime_type, mime_class)
        fp = fp or fingerprint(temp_path)
        byte_size = os.path.getsize(temp_path)
        dest = self.paths.canonical_path(fp, mc, original_name)

        try:
            with self._conn() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        f"""
                        INSERT INTO {self._t('creatives')}
                          (fingerprint, original_name, mime_class, mime_type, byte_size, file_path)
                        VALUES (%s, %s, %s, %s, %s, %s)
                        RETURNING id
                        """,
                        (fp, original_name, mc, mime_type, int(byte_size), str(dest)),
                    )
                    creative_id = int(cur.fetchone()[0])
                # Raising here rolls the insert back when the context exits.
                move_into_library(temp_path, dest)
                conn.commit()
        except pg_errors.UniqueViolation:
            existing = self.find_by_fingerprint(fp)
            if existing is None:
                raise
            logger.info("Fingerprint %s inserted concurrently; reusing creative %s", fp[:12], existing.id)
            discard(temp_path)
            return existing, False

        created = self.get(creative_id)
        if created is None:
            raise RuntimeError(f"Creative {creative_id} vanished right after insert")
        return created, True

    def attach_thumbnail(self, creative_id: int, thumbnail_path: str | os.PathLike) -> Creative:
        creative = self.get(creative_id)
        if creative is None:
            raise KeyError(f"Creative {creative_id} not found")
        dest = copy_into_library(thumbnail_path, self.paths.thumbnail_path(creative.fingerprint))
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"UPDATE {self._t('creatives')} SET thumbnail_path=%s, updated_at=now() WHERE id=%s",
                    (str(dest), int(creative_id)),
                )
            conn.commit()
        return self.get(creative_id)  # type: ignore[return-value]

    def delete(self, creative_id: int) -> bool:
        creative = self.get(creative_id)
        if creative is None:
            return False
        remove_library_file(creative.file_path)
        remove_library_file(creative.thumbnail_path)
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(f"DELETE FROM {self._t('creatives')} WHERE id=%s", (int(creative_id),))
            conn.commit()
        return True

    def delete_all(self) -> int:
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT id FROM {self._t('creatives')}")
                ids = [int(r[0]) for r in cur.fetchall()]
        return sum(1 for cid in ids if self.delete(cid))

    # -----------------------------
    # Upload ledger
    # -----------------------------

    def get_record(self, creative_id: int, ad_account_id: str) -> Optional[UploadRecord]:
        acct = strip_act_prefix(ad_account_id)
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT creative_id, ad_account_id, image_hash, video_id, uploaded_at
                    FROM {self._t('creative_accounts')}
                    WHERE creative_id=%s AND ad_account_id=%s
                    """,
                    (int(creative_id), acct),
                )
                row = cur.fetchone()
        if not row:
            return None
        uploaded_at = row[4].isoformat() if hasattr(row[4], "isoformat") else row[4]
        return UploadRecord(
            creative_id=int(row[0]),
            ad_account_id=str(row[1]),
            image_hash=row[2],
            video_id=row[3],
            uploaded_at=uploaded_at,
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
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    INSERT INTO {self._t('creative_accounts')} (creative_id, ad_account_id, image_hash, video_id, uploaded_at)
                    VALUES (%s, %s, %s, %s, now())
                    ON CONFLICT (creative_id, ad_account_id) DO UPDATE SET
                      image_hash=EXCLUDED.image_hash,
                      video_id=EXCLUDED.video_id,
                      uploaded_at=now()
                    """,
                    (int(creative_id), acct, image_hash, video_id),
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
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT creative_id, ad_account_id, image_hash, video_id, uploaded_at
                    FROM {self._t('creative_accounts')}
                    WHERE creative_id = ANY(%s)
                    ORDER BY uploaded_at ASC
                    """,
                    (ids,),
                )
                rows = cur.fetchall()
        out: Dict[int, List[Dict[str, Any]]] = {}
        for cid, acct, image_hash, video_id, uploaded_at in rows:
            out.setdefault(int(cid), []).append(
                {
                    "ad_account_id": str(acct),
                    "image_hash": image_hash,
                    "video_id": video_id,
                    "uploaded_at": uploaded_at.isoformat() if hasattr(uploaded_at, "isoformat") else uploaded_at,
                }
            )
        return out

    # -----------------------------
    # Batches
    # -----------------------------

    def create_batch(self, name: str, description: Optional[str] = None) -> Dict[str, Any]:
        name = (name or "").strip()
        if not name:
            raise ValueError("Batch name is required")
        try:
            with self._conn() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        f"INSERT INTO {self._t('creative_batches')} (name, description) VALUES (%s, %s) RETURNING id",
                        (name, description),
                    )
                    batch_id = int(cur.fetchone()[0])
                conn.commit()
        except pg_errors.UniqueViolation as e:
            raise BatchNameTaken(f"A batch named '{name}' already exists") from e
        return self.get_batch(batch_id)  # type: ignore[return-value]

    def _select_batches(self, where: str = "", args: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT b.id, b.name, b.description, b.created_at, b.updated_at, COUNT(c.id)
                    FROM {self._t('creative_batches')} b
                    LEFT JOIN {self._t('creatives')} c ON c.batch_id = b.id
                    {where}
                    GROUP BY b.id
                    ORDER BY b.created_at DESC
                    """,
                    tuple(args),
                )
                rows = cur.fetchall()
        out = []
        for r in rows:
            d = _batch_row(r)
            d["created_at"] = r[3].isoformat() if hasattr(r[3], "isoformat") else d["created_at"]
            d["updated_at"] = r[4].isoformat() if hasattr(r[4], "isoformat") else d["updated_at"]
            out.append(d)
        return out

    def get_batch(self, batch_id: int) -> Optional[Dict[str, Any]]:
        rows = self._select_batches("WHERE b.id=%s", (int(batch_id),))
        return rows[0] if rows else None

    def list_batches(self) -> List[Dict[str, Any]]:
        return self._select_batches()

    def update_batch(self, batch_id: int, *, name: Optional[str] = None, description: Optional[str] = None) -> Optional[Dict[str, Any]]:
        current = self.get_batch(batch_id)
        if current is None:
            return None
        new_name = (name or "").strip() or current["name"]
        new_desc = description if description is not None else current["description"]
        try:
            with self._conn() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        f"UPDATE {self._t('creative_batches')} SET name=%s, description=%s, updated_at=now() WHERE id=%s",
                        (new_name, new_desc, int(batch_id)),
                    )
                conn.commit()
        except pg_errors.UniqueViolation as e:
            raise BatchNameTaken(f"A batch named '{new_name}' already exists") from e
        return self.get_batch(batch_id)

    def delete_batch(self, batch_id: int) -> bool:
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(f"DELETE FROM {self._t('creative_batches')} WHERE id=%s", (int(batch_id),))
                deleted = cur.rowcount > 0
            conn.commit()
        return deleted

    def assign_batch(self, creative_ids: Sequence[int], batch_id: Optional[int]) -> int:
        ids = [int(i) for i in creative_ids]
        if not ids:
            return 0
        if batch_id is not None and self.get_batch(batch_id) is None:
            raise KeyError(f"Batch {batch_id} not found")
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"UPDATE {self._t('creatives')} SET batch_id=%s, updated_at=now() WHERE id = ANY(%s)",
                    (batch_id, ids),
                )
                updated = int(cur.rowcount)
            conn.commit()
        return updated

    def list_batch_creatives(self, batch_id: int) -> List[Dict[str, Any]]:
        return self.list_creatives(limit=10_000, batch_id=batch_id)
