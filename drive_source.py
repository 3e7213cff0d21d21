"""Google Drive source: fetch a file by id into the upload temp dir.

Drive v3 REST with a bearer token (GOOGLE_DRIVE_ACCESS_TOKEN). Only the
metadata read and the `alt=media` download are used.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import requests

from library_files import mime_class_for

logger = logging.getLogger(__name__)

DRIVE_FILES_URL = "https://www.googleapis.com/drive/v3/files"
DOWNLOAD_CHUNK = 1024 * 1024


class DriveAPIError(RuntimeError):
    def __init__(self, message: str, *, http_status: int | None = None, error: dict | None = None):
        super().__init__(message)
        self.http_status = http_status
        self.error = error or {}


@dataclass(frozen=True)
class DriveFile:
    id: str
    name: str
    mime_type: str
    size: Optional[int]

    @property
    def mime_class(self) -> Optional[str]:
        return mime_class_for(self.mime_type, self.name)


def _safe_name(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]+", "_", name or "file").strip("_") or "file"


class DriveSource:
    def __init__(self, access_token: str, *, timeout_s: int = 120):
        if not access_token:
            raise ValueError("Google Drive access token is not configured (GOOGLE_DRIVE_ACCESS_TOKEN).")
        self.timeout_s = timeout_s
        self.session = requests.Session()
        self.session.headers["Authorization"] = f"Bearer {access_token}"

    def _raise_for(self, resp: requests.Response, what: str) -> None:
        if resp.status_code < 400:
            return
        try:
            error = (resp.json() or {}).get("error") or {}
        except ValueError:
            error = {"message": resp.text[:500]}
        if not isinstance(error, dict):
            error = {"message": str(error)}
        raise DriveAPIError(
            f"Google Drive error ({resp.status_code}) during {what}: {error.get('message') or 'unknown error'}",
            http_status=resp.status_code,
            error=error,
        )

    def get_metadata(self, file_id: str) -> DriveFile:
        try:
            resp = self.session.get(
                f"{DRIVE_FILES_URL}/{file_id}",
                params={"fields": "id, name, mimeType, size", "supportsAllDrives": "true"},
                timeout=self.timeout_s,
            )
        except requests.RequestException as e:
            raise DriveAPIError(f"Network error calling Google Drive: {e}") from e
        self._raise_for(resp, "metadata read")
        data = resp.json()
        size = data.get("size")
        return DriveFile(
            id=str(data.get("id") or file_id),
            name=str(data.get("name") or file_id),
            mime_type=str(data.get("mimeType") or ""),
            size=int(size) if size not in (None, "") else None,
        )

    def download(self, drive_file: DriveFile, dest_dir: str) -> str:
        dest = Path(dest_dir) / f"{int(time.time() * 1000)}-{_safe_name(drive_file.name)}"
        dest.parent.mkdir(parents=True, exist_ok=True)
        try:
            with self.session.get(
                f"{DRIVE_FILES_URL}/{drive_file.id}",
                params={"alt": "media", "supportsAllDrives": "true"},
                stream=True,
                timeout=self.timeout_s,
            ) as resp:
                self._raise_for(resp, "download")
                with open(dest, "wb") as f:
                    for block in resp.iter_content(chunk_size=DOWNLOAD_CHUNK):
                        if block:
                            f.write(block)
        except requests.RequestException as e:
            dest.unlink(missing_ok=True)
            raise DriveAPIError(f"Network error downloading {drive_file.name} from Google Drive: {e}") from e
        except DriveAPIError:
            dest.unlink(missing_ok=True)
            raise
        logger.info("Downloaded Drive file %s (%s) -> %s", drive_file.id, drive_file.name, dest)
        return str(dest)
