"""reconcile.py

Decides what an incoming upload means for a target ad account:

  unknown fingerprint                  -> new creative, file moved into the library, upload needed
  known, no ledger row for the account -> temp discarded, upload the library file
  known, ledger row present            -> temp discarded, reuse the stored Meta ids

Each call either moves the temp file into the library or discards it, never
both and never neither. Reconciles of the same fingerprint are serialised per
process; across processes the unique fingerprint constraint decides. A push to
an account holds the (fingerprint, account) lock until its ledger row exists.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

from creative_store import Creative
from library_files import discard, fingerprint
from meta_client import strip_act_prefix

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcileResult:
    creative: Creative
    is_new: bool
    is_duplicate: bool
    library_path: str
    facebook_ids: Optional[Dict[str, Optional[str]]] = None

    @property
    def needs_upload(self) -> bool:
        return not self.is_duplicate


class KeyedLocks:
    """One asyncio.Lock per key, dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] <= 0:
                self._users.pop(key, None)
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


class Reconciler:
    def __init__(self, store: Any, *, locks: Optional[KeyedLocks] = None):
        self.store = store
        self.locks = locks or KeyedLocks()

    def account_lock(self, fp: str, ad_account_id: str):
        """Held across ledger lookup, upload and ledger write for one creative in one account."""
        return self.locks.hold(f"{fp}@{strip_act_prefix(ad_account_id)}")

    async def reconcile(
        self,
        temp_path: str,
        ad_account_id: str,
        *,
        original_name: str,
        mime_type: Optional[str] = None,
        push: Optional[Callable[[Creative], Awaitable[Dict[str, Optional[str]]]]] = None,
    ) -> ReconcileResult:
        """Reconcile a temp file against the library and the account's ledger.

        When `push` is given it is awaited for a ledger miss while the
        account lock is still held, so a second copy of the same bytes for
        the same account waits and then finds the ledger row.
        """
        fp = await asyncio.to_thread(fingerprint, temp_path)

        async with self.account_lock(fp, ad_account_id):
            async with self.locks.hold(fp):
                creative = await asyncio.to_thread(self.store.find_by_fingerprint, fp)
                is_new = False

                if creative is None:
                    creative, is_new = await asyncio.to_thread(
                        self.store.insert_new,
                        temp_path,
                        original_name=original_name,
                        mime_type=mime_type,
                        fp=fp,
                    )
                    # On a lost insert race the store already discarded our temp file.
                else:
                    await asyncio.to_thread(discard, temp_path)

            record = None
            if not is_new:
                record = await asyncio.to_thread(self.store.get_record, creative.id, ad_account_id)

            if record is not None:
                logger.info("Creative %s already in account %s; skipping upload", creative.id, record.ad_account_id)
                return ReconcileResult(
                    creative=creative,
                    is_new=False,
                    is_duplicate=True,
                    library_path=creative.file_path,
                    facebook_ids=record.facebook_ids(),
                )

            if not is_new:
                logger.info("Creative %s known but not in account %s; uploading library copy", creative.id, ad_account_id)
            ids = await push(creative) if push is not None else None
            return ReconcileResult(
                creative=creative,
                is_new=is_new,
                is_duplicate=False,
                library_path=creative.file_path,
                facebook_ids=ids,
            )
