"""api.py

FastAPI surface for the creative library, uploads and bulk duplication.

Endpoints
---------
- GET  /health, GET /                      -> health / root info
- POST /upload                             -> multipart files + account_id (+ session_id)
- POST /upload/google-drive                -> JSON: file_ids + account_id
- POST /upload/library                     -> JSON: creative_ids + account_id
- POST /upload-sessions                    -> create a progress session
- GET  /upload-sessions/{id}               -> session snapshot
- GET  /upload-sessions/{id}/events        -> SSE progress stream
- GET/DELETE /creative-library[/{id}]      -> browse / delete library creatives
- POST /creative-library/assign-batch      -> move creatives in/out of a batch
- /creative-batches[/{id}]                 -> batch CRUD
- POST /duplicate/ad-set, /duplicate/campaign, /bulk-copy-campaigns
- GET  /batch-status/{tracking_id}, GET /batch-jobs
- GET  /circuit-breakers, POST /circuit-breakers/reset, GET /rate-limits
- GET  /meta-cache, POST /meta-cache/refresh

Optional API Key
----------------
If you set SERVICE_API_KEY in the environment, requests must include:
  X-API-Key: <SERVICE_API_KEY>

Configuration lives in context.py (ServiceSettings) and meta_client.py (MetaConfig).
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import shutil
import time
import uuid
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from circuit_breaker import CircuitOpenError
from context import AppContext
from creative_store import BatchNameTaken
from duplication import DuplicationOptions, DuplicationStructureFetchError
from library_files import discard
from meta_cache import refresh_meta_cache
from meta_client import MetaAPIError, user_message
from uploads import IntakeFile, summarize

logger = logging.getLogger(__name__)

app = FastAPI(title="Meta Creative Sync API", version="2.0.0")

_context: Optional[AppContext] = None


def get_context() -> AppContext:
    """Process-wide AppContext, built from the environment on first use."""
    global _context
    if _context is None:
        try:
            _context = AppContext.from_env()
        except (RuntimeError, ValueError) as e:
            raise HTTPException(status_code=500, detail=f"Server misconfigured: {e}")
    return _context


# -----------------------------
# Request models
# -----------------------------

class DriveUploadRequest(BaseModel):
    file_ids: List[str] = Field(..., min_length=1)
    account_id: str = Field(..., min_length=1)
    session_id: Optional[str] = None


class LibraryUploadRequest(BaseModel):
    creative_ids: List[int] = Field(..., min_length=1)
    account_id: str = Field(..., min_length=1)
    session_id: Optional[str] = None


class SessionCreateRequest(BaseModel):
    total_files: int = Field(default=0, ge=0)


class BatchCreateRequest(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None


class BatchUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None


class AssignBatchRequest(BaseModel):
    creative_ids: List[int] = Field(..., min_length=1)
    batch_id: Optional[int] = Field(default=None, description="null removes the creatives from their batch.")


class DuplicateAdSetRequest(BaseModel):
    source_adset_id: str = Field(..., min_length=1)
    target_campaign_id: str = Field(..., min_length=1)
    deep_copy: bool = True
    status_option: str = "PAUSED"
    new_name: Optional[str] = None


class DuplicateCampaignRequest(BaseModel):
    source_campaign_id: str = Field(..., min_length=1)
    target_account_id: Optional[str] = Field(
        default=None,
        description="Defaults to the source campaign's own account.",
    )
    deep_copy: bool = True
    status_option: str = "PAUSED"
    new_name: Optional[str] = None


class BulkCopyRequest(BaseModel):
    campaign_ids: List[str] = Field(..., min_length=1)
    target_account_id: Optional[str] = None
    status_option: str = "PAUSED"


# -----------------------------
# Helpers
# -----------------------------

def _require_api_key(x_api_key: Optional[str]) -> None:
    expected = (os.getenv("SERVICE_API_KEY") or "").strip()
    if not expected:
        return
    if not x_api_key or x_api_key.strip() != expected:
        raise HTTPException(status_code=401, detail="Unauthorized")


def _http_error(e: Exception) -> HTTPException:
    """Map a domain exception to an HTTP error. Never leaks a traceback."""
    if isinstance(e, HTTPException):
        return e
    if isinstance(e, DuplicationStructureFetchError):
        return HTTPException(status_code=502, detail={"message": str(e), "source_id": e.source_id})
    if isinstance(e, MetaAPIError):
        return HTTPException(
            status_code=502,
            detail={
                "message": user_message(e),
                "http_status": e.http_status,
                "meta_error": e.error,
            },
        )
    if isinstance(e, CircuitOpenError):
        return HTTPException(
            status_code=503,
            detail={"message": str(e), "service": e.service, "retry_in_s": e.retry_in_s},
        )
    if isinstance(e, BatchNameTaken):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, KeyError):
        return HTTPException(status_code=404, detail=str(e.args[0]) if e.args else "Not found")
    if isinstance(e, ValueError):
        return HTTPException(status_code=422, detail=str(e))
    logger.exception("Unhandled error", exc_info=e)
    return HTTPException(status_code=500, detail="Internal server error")


def _safe_name(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]+", "_", name or "upload").strip("_") or "upload"


def _save_upload(upload: UploadFile, upload_dir: str) -> str:
    dest = os.path.join(upload_dir, f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}-{_safe_name(upload.filename or '')}")
    with open(dest, "wb") as out:
        shutil.copyfileobj(upload.file, out, length=1024 * 1024)
    return dest


def _sse(event: str, data: Dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


def _session_for(ctx: AppContext, session_id: Optional[str]):
    return ctx.sessions.create(session_id=session_id or None)


# -----------------------------
# Basics
# -----------------------------

@app.get("/")
def root() -> JSONResponse:
    return JSONResponse({"ok": True, "docs": "/docs", "health": "/health"})


@app.get("/health")
def health(ctx: AppContext = Depends(get_context)) -> Dict[str, Any]:
    return {
        "ok": True,
        "circuit_breakers": ctx.breakers.get_all_states(),
        "upload_sessions": len(ctx.sessions),
        "meta_cache_refreshing": ctx.cache_refresh.running,
    }


# -----------------------------
# Uploads
# -----------------------------

@app.post("/upload")
async def upload(
    account_id: str = Form(..., description="Target ad account (with or without act_ prefix)"),
    files: List[UploadFile] = File(..., description="Images and/or videos"),
    session_id: Optional[str] = Form(None),
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    ctx: AppContext = Depends(get_context),
) -> Dict[str, Any]:
    _require_api_key(x_api_key)
    if not account_id.strip():
        raise HTTPException(status_code=422, detail="account_id is required")

    items: List[IntakeFile] = []
    try:
        for f in files:
            path = await asyncio.to_thread(_save_upload, f, ctx.settings.upload_dir)
            items.append(IntakeFile(temp_path=path, original_name=f.filename or os.path.basename(path), mime_type=f.content_type))
    except OSError as e:
        for it in items:
            await asyncio.to_thread(discard, it.temp_path)
        raise HTTPException(status_code=500, detail=f"Could not store uploaded file: {e}")

    session = _session_for(ctx, session_id)
    results = await ctx.pipeline.process_files(items, account_id.strip(), ctx.access_token, session)
    return {
        "ok": True,
        "session_id": session.session_id,
        "account_id": account_id.strip(),
        "summary": summarize(results),
        "results": results,
    }


@app.post("/upload/google-drive")
async def upload_google_drive(
    req: DriveUploadRequest,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    ctx: AppContext = Depends(get_context),
) -> Dict[str, Any]:
    _require_api_key(x_api_key)
    try:
        drive = ctx.drive()
    except ValueError as e:
        raise HTTPException(status_code=500, detail=f"Server misconfigured: {e}")

    session = _session_for(ctx, req.session_id)
    results = await ctx.pipeline.process_drive_files(
        drive,
        ctx.google,
        req.file_ids,
        req.account_id,
        ctx.settings.upload_dir,
        ctx.access_token,
        session,
    )
    return {"ok": True, "session_id": session.session_id, "summary": summarize(results), "results": results}


@app.post("/upload/library")
async def upload_from_library(
    req: LibraryUploadRequest,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    ctx: AppContext = Depends(get_context),
) -> Dict[str, Any]:
    _require_api_key(x_api_key)
    session = _session_for(ctx, req.session_id)
    results = await ctx.pipeline.push_library(req.creative_ids, req.account_id, ctx.access_token, session)
    return {"ok": True, "session_id": session.session_id, "summary": summarize(results), "results": results}


@app.post("/upload-sessions")
def create_upload_session(
    req: Optional[SessionCreateRequest] = None,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    ctx: AppContext = Depends(get_context),
) -> Dict[str, Any]:
    _require_api_key(x_api_key)
    session = ctx.sessions.create(total_files=req.total_files if req else 0)
    return {"ok": True, "session_id": session.session_id}


@app.get("/upload-sessions/{session_id}")
def get_upload_session(
    session_id: str,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    ctx: AppContext = Depends(get_context),
) -> Dict[str, Any]:
    _require_api_key(x_api_key)
    session = ctx.sessions.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Upload session not found")
    return {"ok": True, "session": session.snapshot()}


@app.get("/upload-sessions/{session_id}/events")
async def upload_session_events(
    session_id: str,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    ctx: AppContext = Depends(get_context),
) -> StreamingResponse:
    """Server-sent events for one session. Reconnecting within the grace period keeps the session."""
    _require_api_key(x_api_key)
    session, sink = ctx.sessions.subscribe(session_id)

    async def stream():
        try:
            yield _sse("connected", session.snapshot())
            async for item in sink.events():
                if item is None:
                    yield ": keep-alive\n\n"
                    continue
                event, data = item
                yield _sse(event, data)
                if event == "session-complete":
                    break
        finally:
            ctx.sessions.unsubscribe(session_id, sink)

    return StreamingResponse(
        stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# -----------------------------
# Creative library
# -----------------------------

@app.get("/creative-library")
async def list_creative_library(
    limit: int = 100,
    offset: int = 0,
    q: Optional[str] = None,
    batch_id: Optional[int] = None,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    ctx: AppContext = Depends(get_context),
) -> Dict[str, Any]:
    _require_api_key(x_api_key)
    items = await asyncio.to_thread(ctx.store.list_creatives, limit=limit, offset=offset, query=q, batch_id=batch_id)
    total = await asyncio.to_thread(ctx.store.count_creatives)
    return {"ok": True, "total": total, "limit": limit, "offset": offset, "items": items}


@app.get("/creative-library/{creative_id}")
async def get_creative(
    creative_id: int,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    ctx: AppContext = Depends(get_context),
) -> Dict[str, Any]:
    _require_api_key(x_api_key)
    creative = await asyncio.to_thread(ctx.store.get, creative_id)
    if creative is None:
        raise HTTPException(status_code=404, detail="Creative not found")
    accounts = await asyncio.to_thread(ctx.store.list_accounts, creative_id)
    return {"ok": True, "creative": {**creative.to_dict(), "accounts": accounts}}


@app.delete("/creative-library/{creative_id}")
async def delete_creative(
    creative_id: int,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    ctx: AppContext = Depends(get_context),
) -> Dict[str, Any]:
    _require_api_key(x_api_key)
    try:
        deleted = await asyncio.to_thread(ctx.store.delete, creative_id)
    except OSError as e:
        logger.error("Could not remove files of creative %s: %s", creative_id, e)
        raise HTTPException(status_code=500, detail="Could not remove the creative's files; record kept")
    if not deleted:
        raise HTTPException(status_code=404, detail="Creative not found")
    return {"ok": True, "deleted": creative_id}


@app.delete("/creative-library")
async def delete_all_creatives(
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    ctx: AppContext = Depends(get_context),
) -> Dict[str, Any]:
    _require_api_key(x_api_key)
    try:
        deleted = await asyncio.to_thread(ctx.store.delete_all)
    except OSError as e:
        logger.error("Library wipe stopped on a file error: %s", e)
        raise HTTPException(status_code=500, detail="Could not remove some library files")
    return {"ok": True, "deleted": deleted}


@app.post("/creative-library/assign-batch")
async def assign_creatives_to_batch(
    req: AssignBatchRequest,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    ctx: AppContext = Depends(get_context),
) -> Dict[str, Any]:
    _require_api_key(x_api_key)
    try:
        updated = await asyncio.to_thread(ctx.store.assign_batch, req.creative_ids, req.batch_id)
    except KeyError as e:
        raise _http_error(e)
    return {"ok": True, "updated": updated, "batch_id": req.batch_id}


# -----------------------------
# Creative batches
# -----------------------------

@app.get("/creative-batches")
async def list_creative_batches(
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    ctx: AppContext = Depends(get_context),
) -> Dict[str, Any]:
    _require_api_key(x_api_key)
    return {"ok": True, "batches": await asyncio.to_thread(ctx.store.list_batches)}


@app.post("/creative-batches")
async def create_creative_batch(
    req: BatchCreateRequest,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    ctx: AppContext = Depends(get_context),
) -> Dict[str, Any]:
    _require_api_key(x_api_key)
    try:
        batch = await asyncio.to_thread(ctx.store.create_batch, req.name, req.description)
    except ValueError as e:
        raise _http_error(e)
    return {"ok": True, "batch": batch}


@app.get("/creative-batches/{batch_id}")
async def get_creative_batch(
    batch_id: int,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    ctx: AppContext = Depends(get_context),
) -> Dict[str, Any]:
    _require_api_key(x_api_key)
    batch = await asyncio.to_thread(ctx.store.get_batch, batch_id)
    if batch is None:
        raise HTTPException(status_code=404, detail="Batch not found")
    creatives = await asyncio.to_thread(ctx.store.list_batch_creatives, batch_id)
    return {"ok": True, "batch": batch, "creatives": creatives}


@app.patch("/creative-batches/{batch_id}")
async def update_creative_batch(
    batch_id: int,
    req: BatchUpdateRequest,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    ctx: AppContext = Depends(get_context),
) -> Dict[str, Any]:
    _require_api_key(x_api_key)
    try:
        batch = await asyncio.to_thread(ctx.store.update_batch, batch_id, name=req.name, description=req.description)
    except ValueError as e:
        raise _http_error(e)
    if batch is None:
        raise HTTPException(status_code=404, detail="Batch not found")
    return {"ok": True, "batch": batch}


@app.delete("/creative-batches/{batch_id}")
async def delete_creative_batch(
    batch_id: int,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    ctx: AppContext = Depends(get_context),
) -> Dict[str, Any]:
    _require_api_key(x_api_key)
    if not await asyncio.to_thread(ctx.store.delete_batch, batch_id):
        raise HTTPException(status_code=404, detail="Batch not found")
    return {"ok": True, "deleted": batch_id}


# -----------------------------
# Duplication
# -----------------------------

@app.post("/duplicate/ad-set")
async def duplicate_ad_set(
    req: DuplicateAdSetRequest,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    ctx: AppContext = Depends(get_context),
) -> Dict[str, Any]:
    _require_api_key(x_api_key)
    options = DuplicationOptions(deep_copy=req.deep_copy, status_option=req.status_option, new_name=req.new_name)
    try:
        result = await ctx.duplicator.duplicate_ad_set(req.source_adset_id, req.target_campaign_id, options)
    except Exception as e:
        raise _http_error(e)
    return {"ok": True, **result.to_dict()}


@app.post("/duplicate/campaign")
async def duplicate_campaign(
    req: DuplicateCampaignRequest,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    ctx: AppContext = Depends(get_context),
) -> Dict[str, Any]:
    _require_api_key(x_api_key)
    options = DuplicationOptions(deep_copy=req.deep_copy, status_option=req.status_option, new_name=req.new_name)
    try:
        result = await ctx.duplicator.duplicate_campaign(req.source_campaign_id, req.target_account_id, options)
    except Exception as e:
        raise _http_error(e)
    return {"ok": True, **result.to_dict()}


@app.post("/bulk-copy-campaigns")
async def bulk_copy_campaigns(
    req: BulkCopyRequest,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    ctx: AppContext = Depends(get_context),
) -> Dict[str, Any]:
    _require_api_key(x_api_key)
    try:
        out = await ctx.duplicator.bulk_copy_campaigns(
            req.campaign_ids, req.target_account_id, status_option=req.status_option
        )
    except Exception as e:
        raise _http_error(e)
    return {"ok": True, **out}


@app.get("/batch-status/{tracking_id}")
async def batch_status(
    tracking_id: str,
    fetch_results: bool = False,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    ctx: AppContext = Depends(get_context),
) -> Dict[str, Any]:
    _require_api_key(x_api_key)
    try:
        status = await ctx.duplicator.get_batch_status(tracking_id, fetch_results=fetch_results)
    except Exception as e:
        raise _http_error(e)
    return {"ok": True, "tracking_id": tracking_id, **status}


@app.get("/batch-jobs")
async def batch_jobs(
    status: Optional[str] = None,
    limit: int = 100,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    ctx: AppContext = Depends(get_context),
) -> Dict[str, Any]:
    """Debug endpoint: async batch requests submitted by the duplicator."""
    _require_api_key(x_api_key)
    jobs = await asyncio.to_thread(ctx.job_store.list_jobs, status=status, limit=limit)
    return {"ok": True, "jobs": [j.to_dict() for j in jobs]}


# -----------------------------
# Operations
# -----------------------------

@app.get("/circuit-breakers")
def circuit_breakers(
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    ctx: AppContext = Depends(get_context),
) -> Dict[str, Any]:
    _require_api_key(x_api_key)
    return {"ok": True, "breakers": ctx.breakers.get_all_states()}


@app.post("/circuit-breakers/reset")
def reset_circuit_breakers(
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    ctx: AppContext = Depends(get_context),
) -> Dict[str, Any]:
    _require_api_key(x_api_key)
    ctx.breakers.reset_all()
    logger.warning("All circuit breakers reset manually")
    return {"ok": True, "breakers": ctx.breakers.get_all_states()}


@app.get("/rate-limits")
def rate_limits(
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    ctx: AppContext = Depends(get_context),
) -> Dict[str, Any]:
    _require_api_key(x_api_key)
    return {"ok": True, "accounts": ctx.rate_tracker.snapshot()}


@app.get("/meta-cache")
async def meta_cache(
    account_id: Optional[str] = None,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    ctx: AppContext = Depends(get_context),
) -> Dict[str, Any]:
    _require_api_key(x_api_key)
    if account_id:
        campaigns = await asyncio.to_thread(ctx.meta_cache.get_campaigns, account_id)
        return {"ok": True, "account_id": account_id, "campaigns": campaigns, "refreshing": ctx.cache_refresh.running}
    summary = await asyncio.to_thread(ctx.meta_cache.summary)
    return {"ok": True, **summary, "refreshing": ctx.cache_refresh.running}


@app.post("/meta-cache/refresh")
async def refresh_cache(
    wait: bool = False,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    ctx: AppContext = Depends(get_context),
) -> Dict[str, Any]:
    """Refresh the Meta cache. Only one refresh runs at a time; later calls join or report it."""
    _require_api_key(x_api_key)

    def job():
        return refresh_meta_cache(ctx.meta_cache, ctx.client, ctx.facebook)

    if not wait:
        started = ctx.cache_refresh.start(job)
        return {"ok": True, "started": started, "in_progress": True}

    try:
        counts, started = await ctx.cache_refresh.run(job)
    except Exception as e:
        raise _http_error(e)
    return {"ok": True, "started": started, "in_progress": False, "counts": counts}
