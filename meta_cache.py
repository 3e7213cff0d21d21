"""meta_cache.py

Local cache of Meta ad data (ad accounts, campaigns with their ad sets) so
read endpoints don't hit the Graph API.

Tables (SQLite, created automatically):
  - cached_ad_accounts(id, account_id, name, data, last_fetched)
  - cached_campaigns(id, account_id, name, data, last_fetched)   data holds adsets.data[]
  - cache_metadata(key, value, updated_at)

Entities created by duplication are appended right away; a full refresh
replaces everything.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from meta_client import strip_act_prefix

logger = logging.getLogger(__name__)

CAMPAIGN_FIELDS = "id,name,status,effective_status,objective,account_id,adsets.limit(200){id,name,status,effective_status}"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class MetaCache:
    def __init__(self, db_path: str = ".meta_cache.db"):
        self.db_path = Path(db_path)
        self._init_db()

    def _init_db(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS cached_ad_accounts (
                    id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    data TEXT NOT NULL,
                    last_fetched TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS cached_campaigns (
                    id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    data TEXT NOT NULL,
                    last_fetched TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS cache_metadata (
                    key TEXT PRIMARY KEY,
                    value TEXT,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_cached_campaigns_account ON cached_campaigns(account_id)")
            conn.commit()

    # -----------------------------
    # Ad accounts
    # -----------------------------

    def save_ad_accounts(self, accounts: List[Dict[str, Any]]) -> None:
        now = _now()
        with sqlite3.connect(self.db_path) as conn:
            for a in accounts:
                account_id = strip_act_prefix(a.get("account_id") or a.get("id") or "")
                if not account_id:
                    continue
                conn.execute(
                    "INSERT OR REPLACE INTO cached_ad_accounts (id, account_id, name, data, last_fetched) VALUES (?, ?, ?, ?, ?)",
                    (str(a.get("id") or f"act_{account_id}"), account_id, str(a.get("name") or ""), json.dumps(a), now),
                )
            conn.commit()

    def get_ad_accounts(self) -> List[Dict[str, Any]]:
        with sqlite3.connect(self.db_path) as conn:
            rows = conn.execute("SELECT data, last_fetched FROM cached_ad_accounts ORDER BY name").fetchall()
        return [{**json.loads(data), "last_fetched": fetched} for data, fetched in rows]

    # -----------------------------
    # Campaigns
    # -----------------------------

    def save_campaigns(self, campaigns: List[Dict[str, Any]]) -> None:
        now = _now()
        with sqlite3.connect(self.db_path) as conn:
            for c in campaigns:
                if not c.get("id"):
                    continue
                conn.execute(
                    "INSERT OR REPLACE INTO cached_campaigns (id, account_id, name, data, last_fetched) VALUES (?, ?, ?, ?, ?)",
                    (str(c["id"]), strip_act_prefix(c.get("account_id") or ""), str(c.get("name") or ""), json.dumps(c), now),
                )
            conn.commit()

    def get_campaigns(self, ad_account_id: Optional[str] = None) -> List[Dict[str, Any]]:
        with sqlite3.connect(self.db_path) as conn:
            if ad_account_id:
                rows = conn.execute(
                    "SELECT data, last_fetched FROM cached_campaigns WHERE account_id=? ORDER BY name",
                    (strip_act_prefix(ad_account_id),),
                ).fetchall()
            else:
                rows = conn.execute("SELECT data, last_fetched FROM cached_campaigns ORDER BY name").fetchall()
        return [{**json.loads(data), "last_fetched": fetched} for data, fetched in rows]

    def get_campaign(self, campaign_id: str) -> Optional[Dict[str, Any]]:
        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute("SELECT data FROM cached_campaigns WHERE id=?", (str(campaign_id),)).fetchone()
        return json.loads(row[0]) if row else None

    def add_campaign(self, campaign: Dict[str, Any]) -> None:
        self.save_campaigns([campaign])
        logger.info("Added campaign %s to cache", campaign.get("id"))

    def add_adset_to_campaign(self, campaign_id: str, adset: Dict[str, Any]) -> bool:
        campaign = self.get_campaign(campaign_id)
        if campaign is None:
            logger.info("Campaign %s not in cache; ad set %s not cached", campaign_id, adset.get("id"))
            return False
        adsets = campaign.setdefault("adsets", {"data": []})
        data = adsets.setdefault("data", [])
        if not any(str(a.get("id")) == str(adset.get("id")) for a in data):
            data.append(adset)
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                "UPDATE cached_campaigns SET data=?, last_fetched=? WHERE id=?",
                (json.dumps(campaign), _now(), str(campaign_id)),
            )
            conn.commit()
        logger.info("Added ad set %s to campaign %s in cache", adset.get("id"), campaign_id)
        return True

    # -----------------------------
    # Metadata / validity
    # -----------------------------

    def set_metadata(self, key: str, value: str) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                "INSERT OR REPLACE INTO cache_metadata (key, value, updated_at) VALUES (?, ?, ?)",
                (key, value, _now()),
            )
            conn.commit()

    def get_metadata(self, key: str) -> Optional[str]:
        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute("SELECT value FROM cache_metadata WHERE key=?", (key,)).fetchone()
        return row[0] if row else None

    def is_cache_valid(self, max_age_minutes: int = 60) -> bool:
        last = self.get_metadata("last_refresh")
        if not last:
            return False
        try:
            refreshed = datetime.fromisoformat(last)
        except ValueError:
            return False
        return datetime.now(timezone.utc) - refreshed < timedelta(minutes=max_age_minutes)

    def clear(self) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("DELETE FROM cached_ad_accounts")
            conn.execute("DELETE FROM cached_campaigns")
            conn.execute("DELETE FROM cache_metadata")
            conn.commit()

    def replace_all(self, accounts: List[Dict[str, Any]], campaigns: List[Dict[str, Any]]) -> None:
        self.clear()
        self.save_ad_accounts(accounts)
        self.save_campaigns(campaigns)
        self.set_metadata("last_refresh", _now())

    def summary(self) -> Dict[str, Any]:
        return {
            "ad_accounts": self.get_ad_accounts(),
            "campaigns": self.get_campaigns(),
            "last_refresh": self.get_metadata("last_refresh"),
            "valid": self.is_cache_valid(),
        }


async def refresh_meta_cache(cache: MetaCache, client: Any, guard: Any) -> Dict[str, int]:
    """Fetch accounts + campaigns from Meta and replace the cache contents."""
    accounts = await guard(client.list_adaccounts)
    campaigns: List[Dict[str, Any]] = []
    for a in accounts:
        acct = a.get("account_id") or a.get("id")
        if not acct:
            continue
        rows = await guard(client.list_campaigns, acct, fields=CAMPAIGN_FIELDS, ad_account_id=acct)
        for r in rows:
            r.setdefault("account_id", strip_act_prefix(acct))
        campaigns.extend(rows)
    await asyncio.to_thread(cache.replace_all, accounts, campaigns)
    logger.info("Meta cache refreshed: %s accounts, %s campaigns", len(accounts), len(campaigns))
    return {"ad_accounts": len(accounts), "campaigns": len(campaigns)}
