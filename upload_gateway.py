"""upload_gateway.py

Pushes library files to an ad account.

Images: one multipart POST to act_<id>/adimages, returns the image hash.

Videos (act_<id>/advideos on graph-video):

  DECIDE ── size <= 20 MiB ──> SIMPLE ───────────────────────────> DONE
     └──── size  > 20 MiB ──> START -> TRANSFER (4 MiB chunks)* -> FINISH -> DONE

A failed phase fails the whole upload with RemoteUploadError; nothing is
retried here and no offset is persisted (a restart uploads from zero).
"""

from __future__ import annotations

import asyncio
import io
import logging
import mimetypes
import os
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from PIL import Image, UnidentifiedImageError

from circuit_breaker import GuardedCaller
from meta_client import MetaAPIError, MetaClient, normalize_ad_account_id

logger = logging.getLogger(__name__)

SIMPLE_UPLOAD_MAX_BYTES = 20 * 1024 * 1024
CHUNK_SIZE = 4 * 1024 * 1024

DECIDE = "DECIDE"
SIMPLE = "SIMPLE"
START = "START"
TRANSFER = "TRANSFER"
FINISH = "FINISH"
DONE = "DONE"

# (stage, percent) -> awaitable
ProgressFn = Callable[[str, int], Awaitable[None]]


class RemoteUploadError(MetaAPIError):
    """Meta rejected an upload. `error` carries Meta's error payload."""

    @classmethod
    def wrap(cls, exc: MetaAPIError, phase: str) -> "RemoteUploadError":
        return cls(f"Upload failed during {phase}: {exc}", http_status=exc.http_status, error=exc.error)


def _read_bytes(path: str) -> bytes:
    return Path(path).read_bytes()


def _read_chunk(path: str, offset: int, size: int) -> bytes:
    with open(path, "rb") as f:
        f.seek(offset)
        return f.read(size)


def _normalize_to_jpeg_bytes(raw: bytes) -> bytes:
    """Re-encode any image bytes to a Meta-safe JPEG."""
    try:
        img = Image.open(io.BytesIO(raw))
        img = img.convert("RGB")
    except (UnidentifiedImageError, OSError) as e:
        raise ValueError(f"Thumbnail is not a valid image: {e}") from e

    out = io.BytesIO()
    img.save(out, format="JPEG", quality=92, optimize=True)
    jpeg_bytes = out.getvalue()
    if not jpeg_bytes:
        raise ValueError("JPEG re-encode produced no output")
    return jpeg_bytes


def _scale(window: Tuple[int, int], done: int, total: int) -> int:
    lo, hi = window
    if total <= 0:
        return hi
    return int(lo + (hi - lo) * min(done, total) / total)


def parse_image_hash(payload: Dict[str, Any]) -> str:
    images = payload.get("images") or {}
    if not images:
        raise RemoteUploadError(f"Upload did not return images. Response: {payload}")
    first_key = next(iter(images.keys()))
    img_obj = images[first_key] or {}
    image_hash = img_obj.get("hash") or first_key
    if not image_hash:
        raise RemoteUploadError(f"Could not parse image_hash from response: {payload}")
    return str(image_hash)


class UploadGateway:
    def __init__(
        self,
        client: MetaClient,
        guard: GuardedCaller,
        *,
        simple_max_bytes: int = SIMPLE_UPLOAD_MAX_BYTES,
        chunk_size: int = CHUNK_SIZE,
    ):
        self.client = client
        self.guard = guard
        self.simple_max_bytes = int(simple_max_bytes)
        self.chunk_size = int(chunk_size)

    async def _call(self, phase: str, ad_account_id: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Dict[str, Any]:
        try:
            payload = await self.guard(fn, *args, ad_account_id=ad_account_id, **kwargs)
        except RemoteUploadError:
            raise
        except MetaAPIError as e:
            raise RemoteUploadError.wrap(e, phase) from e
        return payload if isinstance(payload, dict) else {"raw": payload}

    # -----------------------------
    # Images
    # -----------------------------

    async def upload_image_bytes(
        self,
        image_bytes: bytes,
        ad_account_id: str,
        token: Optional[str] = None,
        *,
        filename: str = "image.jpg",
        mime_type: str = "image/jpeg",
    ) -> str:
        acct = normalize_ad_account_id(ad_account_id)
        files = {"filename": (filename, image_bytes, mime_type)}
        payload = await self._call("image upload", acct, self.client.post_adimage, acct, files, access_token=token)
        image_hash = parse_image_hash(payload)
        logger.info("Uploaded image %s to %s -> %s", filename, acct, image_hash)
        return image_hash

    async def upload_image(self, path: str, ad_account_id: str, token: Optional[str] = None, *, filename: Optional[str] = None) -> str:
        raw = await asyncio.to_thread(_read_bytes, path)
        name = filename or Path(path).name
        mime = mimetypes.guess_type(name)[0] or "image/jpeg"
        return await self.upload_image_bytes(raw, ad_account_id, token, filename=name, mime_type=mime)

    async def upload_thumbnail(self, path: str, ad_account_id: str, token: Optional[str] = None) -> str:
        """Re-encode a thumbnail to JPEG, then upload it as an ad image."""
        raw = await asyncio.to_thread(_read_bytes, path)
        jpeg_bytes = await asyncio.to_thread(_normalize_to_jpeg_bytes, raw)
        return await self.upload_image_bytes(jpeg_bytes, ad_account_id, token, filename=f"{Path(path).stem}.jpg")

    # -----------------------------
    # Videos
    # -----------------------------

    def _post_simple_video(self, acct: str, path: str, name: str, token: Optional[str]) -> Dict[str, Any]:
        mime = mimetypes.guess_type(path)[0] or "video/mp4"
        with open(path, "rb") as fh:
            files = {"source": (Path(path).name, fh, mime)}
            return self.client.post_advideo(acct, {"name": name}, files=files, access_token=token)

    async def upload_video(
        self,
        path: str,
        ad_account_id: str,
        token: Optional[str] = None,
        *,
        name: Optional[str] = None,
        progress: Optional[ProgressFn] = None,
        window: Tuple[int, int] = (30, 90),
    ) -> str:
        acct = normalize_ad_account_id(ad_account_id)
        total = os.path.getsize(path)
        title = name or Path(path).name

        async def emit(done: int) -> None:
            if progress is not None:
                await progress("uploading", _scale(window, done, total))

        state = DECIDE
        video_id = ""
        session_id = ""
        offset = 0

        while state != DONE:
            if state == DECIDE:
                state = SIMPLE if total <= self.simple_max_bytes else START
                logger.info("Video %s (%s bytes) -> %s upload", title, total, "simple" if state == SIMPLE else "resumable")

            elif state == SIMPLE:
                await emit(0)
                payload = await self._call("simple upload", acct, self._post_simple_video, acct, path, title, token)
                video_id = str(payload.get("id") or "").strip()
                if not video_id:
                    raise RemoteUploadError(f"Video upload did not return id. Response: {payload}")
                await emit(total)
                state = DONE

            elif state == START:
                payload = await self._call(
                    "upload start",
                    acct,
                    self.client.post_advideo,
                    acct,
                    {"upload_phase": "start", "file_size": str(total)},
                    access_token=token,
                )
                session_id = str(payload.get("upload_session_id") or "").strip()
                video_id = str(payload.get("video_id") or "").strip()
                if not session_id or not video_id:
                    raise RemoteUploadError(f"Resumable start returned no session/video id. Response: {payload}")
                offset = int(payload.get("start_offset") or 0)
                await emit(offset)
                state = TRANSFER

            elif state == TRANSFER:
                chunk = await asyncio.to_thread(_read_chunk, path, offset, self.chunk_size)
                payload = await self._call(
                    f"chunk transfer at offset {offset}",
                    acct,
                    self.client.post_advideo,
                    acct,
                    {"upload_phase": "transfer", "upload_session_id": session_id, "start_offset": str(offset)},
                    files={"video_file_chunk": ("chunk", chunk, "application/octet-stream")},
                    access_token=token,
                )
                next_offset = payload.get("start_offset")
                next_offset = int(next_offset) if next_offset not in (None, "") else offset + len(chunk)
                if next_offset <= offset:
                    raise RemoteUploadError(
                        f"Chunk transfer made no progress at offset {offset}. Response: {payload}",
                        error=payload if isinstance(payload, dict) else None,
                    )
                offset = next_offset
                await emit(offset)
                if offset >= total:
                    state = FINISH

            elif state == FINISH:
                payload = await self._call(
                    "upload finish",
                    acct,
                    self.client.post_advideo,
                    acct,
                    {"upload_phase": "finish", "upload_session_id": session_id, "title": title},
                    access_token=token,
                )
                if payload.get("success") is False:
                    raise RemoteUploadError(f"Resumable finish was not accepted. Response: {payload}")
                await emit(total)
                state = DONE

        logger.info("Uploaded video %s to %s -> %s", title, acct, video_id)
        return video_id
