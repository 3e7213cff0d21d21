"""Video thumbnail extraction via the ffmpeg binary (optional dependency).

Returns None when ffmpeg isn't installed or extraction fails; uploads carry
on without a thumbnail in that case.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Optional

from PIL import Image

logger = logging.getLogger(__name__)

THUMBNAIL_MAX_WIDTH = 1280


def ffmpeg_available() -> bool:
    return shutil.which("ffmpeg") is not None


def extract_thumbnail(video_path: str, *, at_s: float = 1.0, out_dir: Optional[str] = None, timeout_s: int = 60) -> Optional[str]:
    """Grab one frame as JPEG. Returns the thumbnail path or None."""
    if not ffmpeg_available():
        logger.info("ffmpeg not found; skipping thumbnail for %s", video_path)
        return None

    out_dir = out_dir or tempfile.gettempdir()
    dst = Path(out_dir) / f"{Path(video_path).stem}_thumb.jpg"
    cmd = [
        "ffmpeg",
        "-ss",
        str(at_s),
        "-i",
        str(video_path),
        "-frames:v",
        "1",
        "-vf",
        f"scale='min({THUMBNAIL_MAX_WIDTH},iw)':-2",
        "-y",
        str(dst),
    ]
    try:
        subprocess.run(cmd, check=True, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, timeout=timeout_s)
        # Validate the frame actually decodes.
        with Image.open(dst) as img:
            img.verify()
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as exc:
        logger.warning("Thumbnail extraction failed for %s: %s", video_path, exc)
        return None
    return str(dst)
