"""Batch job poller.

Why this exists:
- Async batch requests submitted by the duplicator finish on Meta's side,
  minutes after the HTTP request that started them has returned.
- This worker polls every submitted tracking id until Meta reports it done
  and writes the final counts / created id into the batch job store.

Deploy as a separate service:
  Start command: python worker.py

Recommended env:
  BATCH_JOB_DB_PATH=... (shared with the API service)
  WORKER_POLL_SECONDS=10
  WORKER_BATCH_SCAN_LIMIT=50
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Any, Dict

from circuit_breaker import CircuitOpenError
from context import AppContext
from meta_client import MetaAPIError

logger = logging.getLogger("worker")

RATE_LIMIT_PHRASES = ("too many calls", "rate limit", "request limit")
RATE_LIMIT_SLEEP_S = 60


def _get_int_env(*names: str, default: int) -> int:
    for n in names:
        v = (os.getenv(n) or "").strip()
        if v:
            try:
                return int(v)
            except ValueError:
                logger.warning("Ignoring non-integer %s=%r", n, v)
    return int(default)


POLL_S = _get_int_env("WORKER_POLL_SECONDS", "WORKER_POLL_S", default=10)
SCAN_LIMIT = _get_int_env("WORKER_BATCH_SCAN_LIMIT", default=50)


def _is_rate_limited(exc: BaseException) -> bool:
    if isinstance(exc, MetaAPIError) and exc.is_rate_limit:
        return True
    return any(phrase in str(exc).lower() for phrase in RATE_LIMIT_PHRASES)


async def poll_once(ctx: AppContext, *, limit: int = SCAN_LIMIT) -> Dict[str, Any]:
    """Check every pending batch job once. Rate-limit errors propagate to the caller."""
    jobs = await asyncio.to_thread(ctx.job_store.list_pending, limit)
    completed = 0
    errors = 0
    for job in jobs:
        try:
            status = await ctx.duplicator.get_batch_status(job.tracking_id, fetch_results=True)
        except MetaAPIError as e:
            if _is_rate_limited(e):
                raise
            errors += 1
            logger.warning("Batch %s (%s) status check failed: %s", job.tracking_id, job.kind, e)
            continue
        if status.get("is_completed"):
            completed += 1
            logger.info(
                "Batch %s (%s) finished: %s/%s ok, result_id=%s",
                job.tracking_id,
                job.kind,
                status.get("success_count"),
                status.get("total_count"),
                status.get("result_id"),
            )
    return {"scanned": len(jobs), "completed": completed, "errors": errors}


def main() -> None:
    logging.basicConfig(
        level=(os.getenv("LOG_LEVEL") or "INFO").strip().upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx = AppContext.from_env()
    logger.info("Worker loop starting. POLL_S=%s SCAN_LIMIT=%s", POLL_S, SCAN_LIMIT)

    while True:
        try:
            out = asyncio.run(poll_once(ctx))
            if out["scanned"]:
                logger.info("Poll: %s", out)
        except CircuitOpenError as e:
            logger.warning("%s; waiting %.0fs", e, e.retry_in_s or POLL_S)
            time.sleep(max(POLL_S, e.retry_in_s or 0))
            continue
        except MetaAPIError as e:
            if _is_rate_limited(e):
                logger.warning("Rate limit hit, sleeping %ss before retry: %s", RATE_LIMIT_SLEEP_S, e)
                time.sleep(RATE_LIMIT_SLEEP_S)
            else:
                logger.exception("Worker iteration failed")
        except Exception:
            logger.exception("Worker iteration failed")

        time.sleep(POLL_S)


if __name__ == "__main__":
    main()
