"""
Meta Graph API client
=====================

Thin REST client (requests) around the parts of the Marketing API the
creative sync and duplication flows depend on:

- Diagnostics (whoami, ad accounts)
- Reads (objects, paged edges, ad sets of a campaign, ads of an ad set)
- Writes (rename / update, native `copies` edge, campaign re-creation)
- Batch API (synchronous `batch=` requests) and async batch requests
  (`act_<id>/async_batch_requests`) with their status/result edges
- Raw upload endpoints (adimages, advideos) used by `upload_gateway`

All methods are blocking; async callers run them with `asyncio.to_thread`
behind the circuit breaker (see `circuit_breaker.py`).
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests
from dotenv import load_dotenv

from token_store import get_valid_access_token

logger = logging.getLogger(__name__)

DEFAULT_API_VERSION = "v24.0"

GENERIC_ERROR_MESSAGE = "The request to Meta failed. Please try again later."


# -----------------------------
# Exceptions
# -----------------------------

class MetaAPIError(RuntimeError):
    def __init__(self, message: str, *, http_status: int | None = None, error: dict | None = None):
        super().__init__(message)
        self.http_status = http_status
        self.error = error or {}

    @property
    def code(self) -> Optional[int]:
        try:
            return int(self.error.get("code"))
        except (TypeError, ValueError):
            return None

    @property
    def is_rate_limit(self) -> bool:
        if self.http_status == 429:
            return True
        return self.code in {4, 17, 32, 613, 80004}


def user_message(exc: BaseException) -> str:
    """Message that is safe to show an end user.

    Prefers Meta's own user-facing text, then Meta's technical message, and
    falls back to a generic sentence. Never includes a traceback.
    """
    error = getattr(exc, "error", None)
    if isinstance(error, dict):
        for key in ("error_user_msg", "error_user_title", "message"):
            msg = (error.get(key) or "").strip() if isinstance(error.get(key), str) else ""
            if msg:
                return msg
    if isinstance(exc, MetaAPIError):
        return str(exc) or GENERIC_ERROR_MESSAGE
    return GENERIC_ERROR_MESSAGE


# -----------------------------
# Config
# -----------------------------

@dataclass(frozen=True)
class MetaConfig:
    access_token: str
    ad_account_id: str | None = None
    api_version: str = DEFAULT_API_VERSION
    app_secret: str | None = None
    timeout_s: int = 30
    batch_timeout_s: int = 30
    video_timeout_s: int = 120

    @staticmethod
    def from_env() -> "MetaConfig":
        """Loads config from environment variables (optionally via .env)."""
        load_dotenv(override=False)

        account_id = (os.getenv("META_AD_ACCOUNT_ID") or "").strip() or None
        api_version = (os.getenv("META_API_VERSION") or DEFAULT_API_VERSION).strip() or DEFAULT_API_VERSION
        app_secret = (os.getenv("META_APP_SECRET") or "").strip() or None

        token_source = (os.getenv("META_TOKEN_SOURCE") or "").strip().lower()
        database_url = (os.getenv("DATABASE_URL") or "").strip()

        if token_source == "db":
            if not database_url:
                raise ValueError("META_TOKEN_SOURCE=db but DATABASE_URL is not set.")
            user_id = (os.getenv("META_TOKEN_USER_ID") or "").strip() or None
            token = get_valid_access_token(database_url, user_id=user_id)
        else:
            token = (os.getenv("META_ACCESS_TOKEN") or "").strip()

        if not token:
            raise ValueError(
                "Missing access token. Set META_ACCESS_TOKEN or set META_TOKEN_SOURCE=db with a DB token row."
            )

        return MetaConfig(
            access_token=token,
            ad_account_id=account_id,
            api_version=api_version,
            app_secret=app_secret,
            timeout_s=_int_env("META_TIMEOUT_S", 30),
            batch_timeout_s=_int_env("META_BATCH_TIMEOUT_S", 30),
            video_timeout_s=_int_env("META_VIDEO_TIMEOUT_S", 120),
        )


def _int_env(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r", name, raw)
        return default


def normalize_ad_account_id(ad_account_id: str) -> str:
    """
    Meta endpoints use act_<AD_ACCOUNT_ID>.
    Accept either 'act_123' or '123' from the user.
    """
    ad_account_id = str(ad_account_id).strip()
    if ad_account_id.startswith("act_"):
        return ad_account_id
    if ad_account_id.isdigit():
        return f"act_{ad_account_id}"
    return ad_account_id


def strip_act_prefix(ad_account_id: str) -> str:
    """Storage form of an ad account id (no act_ prefix)."""
    value = str(ad_account_id or "").strip()
    return value[4:] if value.startswith("act_") else value


# -----------------------------
# Meta Client (REST via requests)
# -----------------------------

class MetaClient:
    def __init__(self, cfg: MetaConfig, *, rate_tracker: Any = None):
        self.cfg = cfg
        self.rate_tracker = rate_tracker
        self.session = requests.Session()
        self.base_url = f"https://graph.facebook.com/{cfg.api_version}"
        self.video_base_url = f"https://graph-video.facebook.com/{cfg.api_version}"

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict] = None,
        data: Optional[dict] = None,
        files: Optional[dict] = None,
        max_retries: int = 2,
        use_video: bool = False,
        timeout_s: Optional[int] = None,
        access_token: Optional[str] = None,
    ) -> Any:
        base = self.video_base_url if use_video else self.base_url
        url = base + "/" + path.lstrip("/")
        params = dict(params or {})
        data = dict(data or {})
        token = access_token or self.cfg.access_token

        # Graph API accepts access_token as query or form field.
        # Query for GET and multipart uploads, form field otherwise.
        if method.upper() == "GET" or files is not None:
            params.setdefault("access_token", token)
        else:
            data.setdefault("access_token", token)

        if self.cfg.app_secret:
            proof = hmac.new(
                self.cfg.app_secret.encode("utf-8"),
                token.encode("utf-8"),
                hashlib.sha256,
            ).hexdigest()
            if method.upper() == "GET" or files is not None:
                params.setdefault("appsecret_proof", proof)
            else:
                data.setdefault("appsecret_proof", proof)

        last_err: Optional[Exception] = None
        for attempt in range(max_retries + 1):
            try:
                resp = self.session.request(
                    method=method.upper(),
                    url=url,
                    params=params,
                    data=data,
                    files=files,
                    timeout=timeout_s or self.cfg.timeout_s,
                )
                if self.rate_tracker is not None:
                    self.rate_tracker.track_headers(resp.headers)

                # Meta often returns JSON even for errors.
                try:
                    payload = resp.json()
                except ValueError:
                    payload = {"raw": resp.text}

                if resp.status_code >= 400 or (isinstance(payload, dict) and "error" in payload):
                    error_obj = payload.get("error", {}) if isinstance(payload, dict) else {}
                    if not isinstance(error_obj, dict):
                        error_obj = {"message": str(error_obj)}
                    msg = error_obj.get("message") or (payload.get("raw") if isinstance(payload, dict) else None) or "Unknown Meta API error"
                    raise MetaAPIError(
                        f"Meta API error ({resp.status_code}): {msg}",
                        http_status=resp.status_code,
                        error=error_obj,
                    )
                return payload
            except MetaAPIError as e:
                # Retry only for transient-ish server errors/rate limits.
                last_err = e
                is_retryable = e.http_status in {500, 502, 503, 504, 429}
                if attempt < max_retries and is_retryable:
                    time.sleep(1.5 * (attempt + 1))
                    continue
                raise
            except requests.RequestException as e:
                last_err = e
                if attempt < max_retries:
                    time.sleep(1.5 * (attempt + 1))
                    continue
                raise MetaAPIError(f"Network error calling Meta API: {e}") from e

        raise MetaAPIError(f"Meta API request failed after retries: {last_err}")

    # -----------------------------
    # Diagnostics / discovery
    # -----------------------------

    def whoami(self) -> dict:
        return self._request("GET", "/me", params={"fields": "id,name"})

    def list_adaccounts(self, limit: int = 50) -> List[dict]:
        return self._get_all_pages(
            "/me/adaccounts",
            params={"fields": "id,account_id,name,account_status,currency,timezone_name", "limit": str(limit)},
        )

    def _get_all_pages(self, path: str, *, params: dict, max_pages: int = 8) -> List[dict]:
        """Collects up to `max_pages` pages for a Graph API edge."""
        out: List[dict] = []
        after: str | None = None
        for _ in range(max_pages):
            p = dict(params)
            if after:
                p["after"] = after
            payload = self._request("GET", path, params=p)
            data = payload.get("data") or []
            if isinstance(data, list):
                out.extend(data)
            cursors = ((payload.get("paging") or {}).get("cursors") or {})
            after = cursors.get("after")
            if not after or not (payload.get("paging") or {}).get("next"):
                break
        return out

    # -----------------------------
    # Reads
    # -----------------------------

    def get_object(self, object_id: str, fields: str) -> dict:
        return self._request("GET", f"/{object_id}", params={"fields": fields})

    def list_campaigns(self, ad_account_id: str, *, fields: str = "id,name,status,effective_status,objective", max_pages: int = 20) -> List[dict]:
        acct = normalize_ad_account_id(ad_account_id)
        return self._get_all_pages(f"/{acct}/campaigns", params={"fields": fields, "limit": "200"}, max_pages=max_pages)

    def list_adsets_in_campaign(self, campaign_id: str, *, fields: str = "id,name,status,effective_status", limit: int = 200, max_pages: int = 50) -> List[dict]:
        cid = (campaign_id or "").strip()
        if not cid:
            return []
        params = {"fields": fields, "limit": str(limit)}
        return self._get_all_pages(f"/{cid}/adsets", params=params, max_pages=max_pages)

    def list_ads_in_adset(self, adset_id: str, *, fields: str = "id,name", limit: int = 200, max_pages: int = 50) -> List[dict]:
        aid = (adset_id or "").strip()
        if not aid:
            return []
        params = {"fields": fields, "limit": str(limit)}
        return self._get_all_pages(f"/{aid}/ads", params=params, max_pages=max_pages)

    # -----------------------------
    # Writes
    # -----------------------------

    def update_object(self, object_id: str, data: Dict[str, Any]) -> dict:
        return self._request("POST", f"/{object_id}", data=_form_encode(data))

    def copy_object(self, object_id: str, data: Dict[str, Any], *, timeout_s: Optional[int] = None) -> dict:
        """POST {object_id}/copies (native copy edge)."""
        return self._request(
            "POST",
            f"/{object_id}/copies",
            data=_form_encode(data),
            max_retries=0,
            timeout_s=timeout_s or self.cfg.batch_timeout_s,
        )

    def create_campaign(self, ad_account_id: str, fields: Dict[str, Any]) -> str:
        acct = normalize_ad_account_id(ad_account_id)
        payload = self._request("POST", f"/{acct}/campaigns", data=_form_encode(fields), max_retries=0)
        campaign_id = str(payload.get("id") or "").strip()
        if not campaign_id:
            raise MetaAPIError(f"Campaign create did not return id. Response: {payload}")
        return campaign_id

    # -----------------------------
    # Batch API
    # -----------------------------

    def execute_batch(self, operations: List[dict], *, include_headers: bool = False) -> list:
        """Synchronous Graph batch (POST / with batch=[...]). Returns the raw list."""
        payload = self._request(
            "POST",
            "/",
            data={"batch": json.dumps(operations), "include_headers": "true" if include_headers else "false"},
            max_retries=0,
            timeout_s=self.cfg.batch_timeout_s,
        )
        if not isinstance(payload, list):
            raise MetaAPIError(f"Invalid batch response format: {payload}")
        return payload

    def submit_async_batch(self, ad_account_id: str, name: str, operations: List[dict]) -> dict:
        acct = normalize_ad_account_id(ad_account_id)
        return self._request(
            "POST",
            f"/{acct}/async_batch_requests",
            data={"name": name, "adbatch": json.dumps(operations)},
            max_retries=0,
            timeout_s=self.cfg.batch_timeout_s,
        )

    def list_async_batch_requests(self, ad_account_id: str, *, limit: int = 25) -> List[dict]:
        acct = normalize_ad_account_id(ad_account_id)
        payload = self._request(
            "GET",
            f"/{acct}/async_batch_requests",
            params={"fields": "id,name,is_completed,total_count,created_time", "limit": str(limit)},
        )
        data = payload.get("data") or []
        return data if isinstance(data, list) else []

    def get_async_batch(self, tracking_id: str) -> dict:
        return self._request(
            "GET",
            f"/{tracking_id}",
            params={"fields": "id,name,is_completed,total_count,initial_count,success_count,error_count,in_progress_count,canceled_count"},
        )

    def get_async_batch_results(self, tracking_id: str, *, limit: int = 50) -> List[dict]:
        return self._get_all_pages(
            f"/{tracking_id}/requests",
            params={"fields": "id,status,result,input", "limit": str(limit)},
        )

    # -----------------------------
    # Raw upload endpoints
    # -----------------------------

    def post_adimage(self, ad_account_id: str, files: dict, *, access_token: Optional[str] = None) -> dict:
        acct = normalize_ad_account_id(ad_account_id)
        return self._request("POST", f"/{acct}/adimages", files=files, data={}, max_retries=0, access_token=access_token)

    def post_advideo(
        self,
        ad_account_id: str,
        data: dict,
        *,
        files: Optional[dict] = None,
        access_token: Optional[str] = None,
    ) -> dict:
        acct = normalize_ad_account_id(ad_account_id)
        return self._request(
            "POST",
            f"/{acct}/advideos",
            data=data,
            files=files,
            use_video=True,
            max_retries=0,
            timeout_s=self.cfg.video_timeout_s,
            access_token=access_token,
        )


def _form_encode(data: Dict[str, Any]) -> Dict[str, str]:
    """Graph form encoding: nested values as JSON, booleans as 'true'/'false'."""
    out: Dict[str, str] = {}
    for key, value in data.items():
        if value is None:
            continue
        if isinstance(value, bool):
            out[key] = "true" if value else "false"
        elif isinstance(value, (dict, list)):
            out[key] = json.dumps(value)
        else:
            out[key] = str(value)
    return out
