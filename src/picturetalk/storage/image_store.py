"""One JPEG per scene under the app-private images directory."""

from __future__ import annotations

import io
import logging
from pathlib import Path

from PIL import Image, UnidentifiedImageError

from picturetalk import config

logger = logging.getLogger(__name__)

JPEG_QUALITY = 80


class ImageStore:
    def __init__(self, images_dir: Path | None = None) -> None:
        self._dir = images_dir or config.IMAGES_DIR

    @property
    def directory(self) -> Path:
        """The images directory, created on first use."""
        self._dir.mkdir(parents=True, exist_ok=True)
        return self._dir

    def path_for(self, scene_id: str) -> Path:
        return self._dir / f"{scene_id}.jpg"

    def save(self, scene_id: str, image: bytes) -> Path | None:
        """Re-encode ``image`` as JPEG and write it under the scene id.

        Returns the written path, or None when the bytes cannot be decoded
        or written. A missing image never blocks saving the scene itself.
        """
        path = self.directory / f"{scene_id}.jpg"
        try:
            with Image.open(io.BytesIO(image)) as img:
                buf = io.BytesIO()
                img.convert("RGB").save(buf, format="JPEG", quality=JPEG_QUALITY)
        except (UnidentifiedImageError, OSError) as e:
            logger.warning("Cannot encode image for scene %s: %s", scene_id, e)
            return None
        tmp = path.with_suffix(".jpg.tmp")
        try:
            tmp.write_bytes(buf.getvalue())
            tmp.replace(path)
        except OSError as e:
            logger.warning("Failed to save image for scene %s: %s", scene_id, e)
            return None
        logger.debug("Saved image for scene %s (%d bytes)", scene_id, buf.tell())
        return path

    def load(self, scene_id: str) -> bytes | None:
        path = self.path_for(scene_id)
        if not path.is_file():
            return None
        return path.read_bytes()

    def delete(self, scene_id: str) -> bool:
        path = self.path_for(scene_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True
