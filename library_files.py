"""library_files.py

Filesystem side of the creative library.

Layout (under LIBRARY_DIR, default <DATA_DIR>/creative-library):
  images/<sha256><ext>
  videos/<sha256><ext>
  thumbnails/<sha256>_thumb.jpg

Files land here exactly once: they are moved (not copied) out of the upload
temp dir when a fingerprint is first seen.
"""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

HASH_BLOCK_SIZE = 1024 * 1024

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp"}
VIDEO_EXTENSIONS = {".mp4", ".mov", ".avi", ".m4v", ".webm", ".mkv"}


def fingerprint(path: str | os.PathLike) -> str:
    """SHA-256 hex digest of the file bytes (streamed).

    Raises OSError if the file can't be read.
    """
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(HASH_BLOCK_SIZE), b""):
            h.update(block)
    return h.hexdigest()


def mime_class_for(mime_type: Optional[str], filename: str = "") -> Optional[str]:
    """'image' | 'video' | None (not a creative)."""
    mt = (mime_type or "").strip().lower()
    if mt.startswith("image/"):
        return "image"
    if mt.startswith("video/"):
        return "video"
    ext = Path(filename or "").suffix.lower()
    if ext in IMAGE_EXTENSIONS:
        return "image"
    if ext in VIDEO_EXTENSIONS:
        return "video"
    return None


class LibraryPaths:
    def __init__(self, root: str | os.PathLike):
        self.root = Path(root)
        self.images = self.root / "images"
        self.videos = self.root / "videos"
        self.thumbnails = self.root / "thumbnails"

    def ensure(self) -> None:
        for d in (self.images, self.videos, self.thumbnails):
            d.mkdir(parents=True, exist_ok=True)

    def canonical_path(self, fp: str, mime_class: str, original_name: str) -> Path:
        ext = Path(original_name or "").suffix.lower()
        if not ext:
            ext = ".jpg" if mime_class == "image" else ".mp4"
        folder = self.images if mime_class == "image" else self.videos
        return folder / f"{fp}{ext}"

    def thumbnail_path(self, fp: str) -> Path:
        return self.thumbnails / f"{fp}_thumb.jpg"


def move_into_library(temp_path: str | os.PathLike, dest: str | os.PathLike) -> Path:
    """Move a temp upload to its canonical location (works across filesystems)."""
    dest = Path(dest)
    dest.parent.mkdir(parents=True, exist_ok=True)
    shutil.move(str(temp_path), str(dest))
    return dest


def copy_into_library(src: str | os.PathLike, dest: str | os.PathLike) -> Path:
    dest = Path(dest)
    dest.parent.mkdir(parents=True, exist_ok=True)
    if Path(src).resolve() != dest.resolve():
        shutil.copyfile(str(src), str(dest))
    return dest


def discard(path: str | os.PathLike | None) -> bool:
    """Delete a temp file; a file that is already gone is not an error."""
    if not path:
        return False
    try:
        os.remove(path)
        return True
    except FileNotFoundError:
        return False
    except OSError as e:
        logger.warning("Could not remove temp file %s: %s", path, e)
        return False


def remove_library_file(path: str | os.PathLike | None) -> None:
    """Delete a library file. Missing files are fine; other errors propagate."""
    if not path:
        return
    try:
        os.remove(path)
    except FileNotFoundError:
        logger.info("Library file already gone: %s", path)
