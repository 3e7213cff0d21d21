"""rate_limit.py

Tracks Meta's Business Use Case usage per ad account and recommends a delay
before the next call.

Meta reports usage in the `X-Business-Use-Case-Usage` response header:

  {"<account_id>": [{"type": "ads_management", "call_count": 28,
                     "total_cputime": 10, "total_time": 12,
                     "estimated_time_to_regain_access": 0,
                     "ads_api_access_tier": "development_access"}]}
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional

from meta_client import strip_act_prefix

logger = logging.getLogger(__name__)

USAGE_HEADER = "x-business-use-case-usage"

WARNING_CALL_COUNT = 25
CRITICAL_CALL_COUNT_DEV = 80
CRITICAL_CALL_COUNT_STANDARD = 160
CRITICAL_BACKOFF_S = 300.0
ETA_PADDING_S = 10.0
JITTER_MIN_S = 2.0
JITTER_SPAN_S = 3.0

# Usage is a rolling one-hour window on Meta's side.
STALE_AFTER_S = 3600.0


@dataclass
class AccountUsage:
    call_count: float = 0
    total_cputime: float = 0
    total_time: float = 0
    estimated_time_to_regain_access: float = 0
    access_tier: Optional[str] = None
    updated_at: float = 0.0


def _num(v: Any) -> float:
    try:
        return float(v or 0)
    except (TypeError, ValueError):
        return 0.0


class RateLimitTracker:
    def __init__(
        self,
        *,
        sleep: Callable[[float], Any] = asyncio.sleep,
        rand: Callable[[], float] = random.random,
        clock: Callable[[], float] = time.time,
    ):
        self._usage: Dict[str, AccountUsage] = {}
        self._lock = threading.Lock()
        self._sleep = sleep
        self._rand = rand
        self._clock = clock

    def track_headers(self, headers: Mapping[str, str]) -> List[str]:
        """Record usage from a Graph response's headers; returns the accounts updated."""
        raw = None
        for k, v in (headers or {}).items():
            if str(k).lower() == USAGE_HEADER:
                raw = v
                break
        if not raw:
            return []
        try:
            parsed = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Unparseable %s header: %r", USAGE_HEADER, raw)
            return []
        if not isinstance(parsed, dict):
            return []

        updated: List[str] = []
        for account_id, entries in parsed.items():
            if not isinstance(entries, list) or not entries or not isinstance(entries[0], dict):
                continue
            u = entries[0]
            usage = AccountUsage(
                call_count=_num(u.get("call_count")),
                total_cputime=_num(u.get("total_cputime")),
                total_time=_num(u.get("total_time")),
                estimated_time_to_regain_access=_num(u.get("estimated_time_to_regain_access")),
                access_tier=u.get("ads_api_access_tier"),
                updated_at=self._clock(),
            )
            acct = strip_act_prefix(account_id)
            with self._lock:
                self._usage[acct] = usage
            updated.append(acct)
            if self._is_critical(usage):
                logger.warning("Meta usage critical for account %s: %s", acct, asdict(usage))
        return updated

    def usage(self, ad_account_id: str) -> Optional[AccountUsage]:
        acct = strip_act_prefix(ad_account_id)
        with self._lock:
            usage = self._usage.get(acct)
        if usage is None or self._clock() - usage.updated_at > STALE_AFTER_S:
            return None
        return usage

    @staticmethod
    def _is_critical(usage: AccountUsage) -> bool:
        if usage.estimated_time_to_regain_access > 0:
            return True
        limit = CRITICAL_CALL_COUNT_DEV if usage.access_tier == "development_access" else CRITICAL_CALL_COUNT_STANDARD
        return usage.call_count >= limit

    def is_critical(self, ad_account_id: str) -> bool:
        usage = self.usage(ad_account_id)
        return bool(usage and self._is_critical(usage))

    def is_approaching(self, ad_account_id: str) -> bool:
        usage = self.usage(ad_account_id)
        return bool(usage and usage.call_count >= WARNING_CALL_COUNT)

    def recommended_delay(self, ad_account_id: str) -> float:
        """Seconds to wait before the next call against this account."""
        usage = self.usage(ad_account_id)
        if usage is None:
            return 0.0
        if usage.estimated_time_to_regain_access > 0:
            return usage.estimated_time_to_regain_access + ETA_PADDING_S
        if self._is_critical(usage):
            return CRITICAL_BACKOFF_S
        if usage.call_count >= WARNING_CALL_COUNT:
            return JITTER_MIN_S + self._rand() * JITTER_SPAN_S
        return 0.0

    async def enforce(self, ad_account_id: Optional[str]) -> float:
        if not ad_account_id:
            return 0.0
        delay = self.recommended_delay(ad_account_id)
        if delay > 0:
            logger.info("Rate limit: waiting %.1fs before next call for account %s", delay, strip_act_prefix(ad_account_id))
            await self._sleep(delay)
        return delay

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            items = list(self._usage.items())
        out: Dict[str, Dict[str, Any]] = {}
        for acct, usage in items:
            d = asdict(usage)
            d["critical"] = self._is_critical(usage)
            d["recommended_delay_s"] = round(self.recommended_delay(acct), 1)
            out[acct] = d
        return out
