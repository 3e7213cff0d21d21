"""uploads.py

Upload intake: takes files already written to the temp dir (multipart,
Google Drive, or creatives already in the library) and gets each one into
the target ad account exactly once.

Per file:
  reconcile -> (ledger hit: reuse stored ids) | (upload from library path -> record in ledger)

Files are processed in groups of UPLOAD_GROUP_SIZE (default 3). A failure is
reported on that file's result and never aborts the rest of the batch.
Library files are never deleted on failure; temp files always are.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from circuit_breaker import CircuitOpenError, GuardedCaller
from creative_store import Creative
from drive_source import DriveAPIError, DriveSource
from library_files import discard, mime_class_for
from meta_client import MetaAPIError, user_message
from reconcile import Reconciler
from thumbnails import extract_thumbnail
from upload_gateway import UploadGateway
from upload_sessions import UploadSession

logger = logging.getLogger(__name__)

SUCCESS = "success"
FAILED = "failed"
SKIPPED = "skipped"

DEFAULT_GROUP_SIZE = 3


@dataclass(frozen=True)
class IntakeFile:
    temp_path: str
    original_name: str
    mime_type: Optional[str] = None


def _error_text(exc: BaseException) -> str:
    if isinstance(exc, MetaAPIError):
        return user_message(exc)
    if isinstance(exc, (DriveAPIError, CircuitOpenError, OSError, ValueError, KeyError)):
        return str(exc)
    return "Unexpected error while processing the file."


def _result(
    file_name: str,
    status: str,
    *,
    mime_class: Optional[str] = None,
    creative: Optional[Creative] = None,
    remote_ids: Optional[Dict[str, Optional[str]]] = None,
    is_new: bool = False,
    is_duplicate: bool = False,
    error: Optional[str] = None,
) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "file": file_name,
        "status": status,
        "type": mime_class or (creative.mime_class if creative else None),
        "creative_id": creative.id if creative else None,
        "remote_ids": remote_ids or {},
        "is_new": is_new,
        "is_duplicate": is_duplicate,
    }
    if error:
        out["error"] = error
    return out


def summarize(results: Sequence[Dict[str, Any]]) -> Dict[str, int]:
    return {
        "total": len(results),
        "successful": sum(1 for r in results if r.get("status") == SUCCESS),
        "failed": sum(1 for r in results if r.get("status") == FAILED),
        "skipped": sum(1 for r in results if r.get("status") == SKIPPED),
        "duplicates": sum(1 for r in results if r.get("is_duplicate")),
    }


class UploadPipeline:
    def __init__(
        self,
        reconciler: Reconciler,
        gateway: UploadGateway,
        *,
        group_size: int = DEFAULT_GROUP_SIZE,
        thumbnail_fn: Callable[[str], Optional[str]] = extract_thumbnail,
    ):
        self.reconciler = reconciler
        self.store = reconciler.store
        self.gateway = gateway
        self.group_size = max(1, int(group_size))
        self.thumbnail_fn = thumbnail_fn

    async def _in_groups(self, items: Sequence[Any], fn: Callable[[Any], Awaitable[Dict[str, Any]]]) -> List[Dict[str, Any]]:
        results: List[Dict[str, Any]] = []
        for i in range(0, len(items), self.group_size):
            group = items[i : i + self.group_size]
            results.extend(await asyncio.gather(*(fn(item) for item in group)))
        return results

    # -----------------------------
    # Remote push
    # -----------------------------

    async def _ensure_thumbnail(self, creative: Creative) -> Creative:
        if creative.thumbnail_path:
            return creative
        thumb = await asyncio.to_thread(self.thumbnail_fn, creative.file_path)
        if not thumb:
            return creative
        try:
            return await asyncio.to_thread(self.store.attach_thumbnail, creative.id, thumb)
        finally:
            await asyncio.to_thread(discard, thumb)

    async def _push(
        self,
        creative: Creative,
        ad_account_id: str,
        token: Optional[str],
        session: Optional[UploadSession],
    ) -> Dict[str, Optional[str]]:
        """Upload the library copy of a creative and record it in the ledger."""
        progress = session.progress_fn(creative.original_name) if session else None

        if creative.mime_class == "image":
            if progress:
                await progress("uploading", 30)
            image_hash = await self.gateway.upload_image(
                creative.file_path, ad_account_id, token, filename=creative.original_name
            )
            video_id = None
        else:
            if progress:
                await progress("thumbnail", 10)
            creative = await self._ensure_thumbnail(creative)
            video_id = await self.gateway.upload_video(
                creative.file_path, ad_account_id, token, name=creative.original_name, progress=progress
            )
            image_hash = None
            if creative.thumbnail_path:
                try:
                    image_hash = await self.gateway.upload_thumbnail(creative.thumbnail_path, ad_account_id, token)
                except MetaAPIError as e:
                    logger.warning("Thumbnail upload for creative %s failed: %s", creative.id, user_message(e))

        record = await asyncio.to_thread(
            self.store.record_upload, creative.id, ad_account_id, image_hash=image_hash, video_id=video_id
        )
        if progress:
            await progress("done", 100)
        return record.facebook_ids()

    # -----------------------------
    # Intake
    # -----------------------------

    async def process_file(
        self,
        item: IntakeFile,
        ad_account_id: str,
        token: Optional[str] = None,
        session: Optional[UploadSession] = None,
    ) -> Dict[str, Any]:
        name = item.original_name
        if session:
            session.file_started(name)

        mime_class = mime_class_for(item.mime_type, name)
        if mime_class is None:
            await asyncio.to_thread(discard, item.temp_path)
            result = _result(name, SKIPPED, error="Not an image or video.")
            if session:
                session.file_completed(name, result)
            return result

        creative: Optional[Creative] = None

        async def push(c: Creative) -> Dict[str, Optional[str]]:
            nonlocal creative
            creative = c
            return await self._push(c, ad_account_id, token, session)

        try:
            rec = await self.reconciler.reconcile(
                item.temp_path, ad_account_id, original_name=name, mime_type=item.mime_type, push=push
            )
            creative = rec.creative
            result = _result(
                name,
                SUCCESS,
                creative=creative,
                remote_ids=rec.facebook_ids,
                is_new=rec.is_new,
                is_duplicate=rec.is_duplicate,
            )
        except Exception as e:
            if not isinstance(e, (MetaAPIError, CircuitOpenError, OSError, ValueError)):
                logger.exception("Unexpected failure processing %s", name)
            else:
                logger.warning("Upload of %s to %s failed: %s", name, ad_account_id, e)
            await asyncio.to_thread(discard, item.temp_path)
            error = _error_text(e)
            if session:
                session.file_failed(name, error)
            return _result(name, FAILED, mime_class=mime_class, creative=creative, error=error)

        if session:
            session.file_completed(name, result)
        return result

    async def process_files(
        self,
        items: Sequence[IntakeFile],
        ad_account_id: str,
        token: Optional[str] = None,
        session: Optional[UploadSession] = None,
    ) -> List[Dict[str, Any]]:
        if session:
            session.start(len(items))
        results = await self._in_groups(list(items), lambda it: self.process_file(it, ad_account_id, token, session))
        if session:
            session.complete(summarize(results))
        return results

    async def process_drive_files(
        self,
        drive: DriveSource,
        guard: GuardedCaller,
        file_ids: Sequence[str],
        ad_account_id: str,
        upload_dir: str,
        token: Optional[str] = None,
        session: Optional[UploadSession] = None,
    ) -> List[Dict[str, Any]]:
        """Fetch each Drive file through the Google breaker, then run it through intake."""

        async def one(file_id: str) -> Dict[str, Any]:
            try:
                meta = await guard(drive.get_metadata, file_id)
            except (DriveAPIError, CircuitOpenError) as e:
                logger.warning("Drive metadata for %s failed: %s", file_id, e)
                if session:
                    session.file_failed(file_id, str(e))
                return _result(file_id, FAILED, error=str(e))

            if meta.mime_class is None:
                result = _result(meta.name, SKIPPED, error=f"Unsupported Drive file type: {meta.mime_type or 'unknown'}")
                if session:
                    session.file_completed(meta.name, result)
                return result

            try:
                path = await guard(drive.download, meta, upload_dir)
            except (DriveAPIError, CircuitOpenError, OSError) as e:
                logger.warning("Drive download for %s failed: %s", file_id, e)
                if session:
                    session.file_failed(meta.name, str(e))
                return _result(meta.name, FAILED, mime_class=meta.mime_class, error=str(e))

            return await self.process_file(IntakeFile(path, meta.name, meta.mime_type), ad_account_id, token, session)

        if session:
            session.start(len(file_ids))
        results = await self._in_groups(list(file_ids), one)
        if session:
            session.complete(summarize(results))
        return results

    async def push_library(
        self,
        creative_ids: Sequence[int],
        ad_account_id: str,
        token: Optional[str] = None,
        session: Optional[UploadSession] = None,
    ) -> List[Dict[str, Any]]:
        """Send creatives that are already in the library to an ad account."""

        async def one(creative_id: int) -> Dict[str, Any]:
            creative = await asyncio.to_thread(self.store.get, creative_id)
            if creative is None:
                error = f"Creative {creative_id} not found"
                if session:
                    session.file_failed(str(creative_id), error)
                return _result(str(creative_id), FAILED, error=error)

            name = creative.original_name
            if session:
                session.file_started(name)
            try:
                async with self.reconciler.account_lock(creative.fingerprint, ad_account_id):
                    record = await asyncio.to_thread(self.store.get_record, creative.id, ad_account_id)
                    if record is not None:
                        result = _result(
                            name, SUCCESS, creative=creative, remote_ids=record.facebook_ids(), is_duplicate=True
                        )
                    else:
                        ids = await self._push(creative, ad_account_id, token, session)
                        result = _result(name, SUCCESS, creative=creative, remote_ids=ids)
            except (MetaAPIError, CircuitOpenError, OSError, ValueError) as e:
                logger.warning("Library push of creative %s to %s failed: %s", creative.id, ad_account_id, e)
                error = _error_text(e)
                if session:
                    session.file_failed(name, error)
                return _result(name, FAILED, creative=creative, error=error)

            if session:
                session.file_completed(name, result)
            return result

        if session:
            session.start(len(creative_ids))
        results = await self._in_groups(list(creative_ids), one)
        if session:
            session.complete(summarize(results))
        return results
