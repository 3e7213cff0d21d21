"""meta_batch.py

Graph Batch API helpers.

- BatchOperation / build_operation: one call descriptor (method, relative_url, url-encoded body)
- chunk: split a list of operations into batches of at most BATCH_SIZE_LIMIT
- parse_batch_response: per-operation BatchResult from a synchronous batch reply
- extract_tracking_id: pull the async batch request id out of a submission reply

Meta limits modelled here:
  - a batch request holds at most 50 operations
  - a synchronous `copies` call handles at most 2 children for an ad set,
    3 for a campaign (ad sets + ads)
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar
from urllib.parse import urlencode

BATCH_SIZE_LIMIT = 50
ADSET_SYNC_COPY_MAX_CHILDREN = 2
CAMPAIGN_SYNC_COPY_MAX_CHILDREN = 3

COPIED_ID_KEYS = ("copied_adset_id", "copied_campaign_id", "copied_ad_id")

T = TypeVar("T")


@dataclass(frozen=True)
class BatchOperation:
    method: str
    relative_url: str
    body: Optional[str] = None
    name: Optional[str] = None

    def to_dict(self) -> Dict[str, str]:
        d = {"method": self.method, "relative_url": self.relative_url}
        if self.body:
            d["body"] = self.body
        if self.name:
            d["name"] = self.name
        return d

    def to_async_dict(self) -> Dict[str, str]:
        """Shape expected by act_<id>/async_batch_requests (method is implied)."""
        d = {"relative_url": self.relative_url}
        if self.body:
            d["body"] = self.body
        if self.name:
            d["name"] = self.name
        return d


def encode_body(body: Dict[str, Any]) -> str:
    pairs: List[Tuple[str, str]] = []
    for key, value in body.items():
        if value is None:
            continue
        if isinstance(value, bool):
            pairs.append((key, "true" if value else "false"))
        elif isinstance(value, (dict, list)):
            pairs.append((key, json.dumps(value, separators=(",", ":"))))
        else:
            pairs.append((key, str(value)))
    return urlencode(pairs)


def build_operation(
    method: str,
    relative_url: str,
    body: Optional[Dict[str, Any]] = None,
    name: Optional[str] = None,
) -> BatchOperation:
    method = (method or "").strip().upper()
    if method not in {"GET", "POST", "DELETE"}:
        raise ValueError(f"Unsupported batch method: {method!r}")
    relative_url = (relative_url or "").strip().lstrip("/")
    if not relative_url:
        raise ValueError("relative_url is required")
    return BatchOperation(
        method=method,
        relative_url=relative_url,
        body=encode_body(body) if body else None,
        name=name,
    )


def chunk(operations: Sequence[T], max_per_chunk: int = BATCH_SIZE_LIMIT) -> List[List[T]]:
    """Split into ceil(len/max_per_chunk) ordered chunks of at most max_per_chunk."""
    max_per_chunk = int(max_per_chunk)
    if max_per_chunk < 1 or max_per_chunk > BATCH_SIZE_LIMIT:
        raise ValueError(f"max_per_chunk must be between 1 and {BATCH_SIZE_LIMIT}, got {max_per_chunk}")
    ops = list(operations)
    return [ops[i : i + max_per_chunk] for i in range(0, len(ops), max_per_chunk)]


def chunk_count(n_operations: int, max_per_chunk: int = BATCH_SIZE_LIMIT) -> int:
    return math.ceil(n_operations / max_per_chunk) if n_operations else 0


# -----------------------------
# Copy operations
# -----------------------------

def adset_copy_operation(
    adset_id: str,
    *,
    campaign_id: Optional[str] = None,
    deep_copy: bool = False,
    status_option: str = "PAUSED",
    name: Optional[str] = None,
) -> BatchOperation:
    return build_operation(
        "POST",
        f"{adset_id}/copies",
        {"campaign_id": campaign_id, "deep_copy": deep_copy, "status_option": status_option},
        name=name,
    )


def ad_copy_operation(
    ad_id: str,
    *,
    adset_id: str,
    status_option: str = "PAUSED",
    name: Optional[str] = None,
) -> BatchOperation:
    return build_operation(
        "POST",
        f"{ad_id}/copies",
        {"adset_id": adset_id, "status_option": status_option},
        name=name,
    )


def campaign_copy_operation(
    campaign_id: str,
    *,
    deep_copy: bool = True,
    status_option: str = "PAUSED",
    rename_suffix: Optional[str] = " - Copy",
    name: Optional[str] = None,
) -> BatchOperation:
    body: Dict[str, Any] = {"deep_copy": deep_copy, "status_option": status_option}
    if rename_suffix:
        body["rename_options"] = {"rename_strategy": "ONLY_TOP_LEVEL_RENAME", "rename_suffix": rename_suffix}
    return build_operation("POST", f"{campaign_id}/copies", body, name=name)


# -----------------------------
# Responses
# -----------------------------

@dataclass(frozen=True)
class BatchResult:
    index: int
    success: bool
    status_code: Optional[int]
    id: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None
    timed_out: bool = False
    name: Optional[str] = None

    def error_message(self) -> Optional[str]:
        if self.timed_out:
            return "Operation timed out"
        if not self.error:
            return None if self.success else f"HTTP {self.status_code}"
        return str(self.error.get("error_user_msg") or self.error.get("message") or self.error)


def created_id(body: Dict[str, Any]) -> Optional[str]:
    """`id`, else the copied_*_id Meta returns from a copies call."""
    for key in ("id",) + COPIED_ID_KEYS:
        value = body.get(key)
        if value:
            return str(value)
    return None


def parse_batch_response(raw: Sequence[Any], operations: Optional[Sequence[BatchOperation]] = None) -> List[BatchResult]:
    out: List[BatchResult] = []
    for i, item in enumerate(raw or []):
        op_name = operations[i].name if operations and i < len(operations) else None

        # Meta returns null (or a null code) for operations it didn't finish in time.
        if item is None or not isinstance(item, dict) or item.get("code") is None:
            out.append(BatchResult(index=i, success=False, status_code=None, timed_out=True, name=op_name))
            continue

        code = int(item.get("code"))
        body_raw = item.get("body")
        body: Dict[str, Any]
        if isinstance(body_raw, str):
            try:
                parsed = json.loads(body_raw) if body_raw else {}
            except ValueError:
                parsed = {"raw": body_raw}
            body = parsed if isinstance(parsed, dict) else {"data": parsed}
        elif isinstance(body_raw, dict):
            body = body_raw
        else:
            body = {}

        error = body.get("error") if isinstance(body.get("error"), dict) else None
        success = 200 <= code < 300 and error is None
        out.append(
            BatchResult(
                index=i,
                success=success,
                status_code=code,
                id=created_id(body) if success else None,
                data=body,
                error=error,
                name=op_name,
            )
        )
    return out


# -----------------------------
# Async batch tracking ids
# -----------------------------

def _tracking_from_id(response: Dict[str, Any]) -> Optional[str]:
    value = response.get("id")
    return str(value) if value else None


def _tracking_from_alternate_keys(response: Dict[str, Any]) -> Optional[str]:
    for key in ("async_batch_request_id", "batch_id", "handle"):
        value = response.get(key)
        if value:
            return str(value)
    return None


def _tracking_from_nested_data(response: Dict[str, Any]) -> Optional[str]:
    data = response.get("data")
    if isinstance(data, list) and data and isinstance(data[0], dict):
        value = data[0].get("id")
        return str(value) if value else None
    if isinstance(data, dict):
        return _tracking_from_id(data) or _tracking_from_alternate_keys(data)
    return None


TRACKING_ID_STRATEGIES: Tuple[Callable[[Dict[str, Any]], Optional[str]], ...] = (
    _tracking_from_id,
    _tracking_from_alternate_keys,
    _tracking_from_nested_data,
)


def extract_tracking_id(response: Any) -> Optional[str]:
    """First strategy that yields an id, or None.

    The last-resort lookup (listing the account's async_batch_requests) needs
    the network and lives in duplication.Duplicator.
    """
    if isinstance(response, (str, int)) and str(response).strip():
        return str(response).strip()
    if not isinstance(response, dict):
        return None
    for strategy in TRACKING_ID_STRATEGIES:
        found = strategy(response)
        if found:
            return found
    return None
