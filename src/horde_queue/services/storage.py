"""Persistent image storage service.

Local-disk backend; the interface is small enough to swap for object
storage later.

Images are stored at:   {base_path}/images/{image_uuid}.{ext}
Thumbnails are stored at: {base_path}/images/{image_uuid}_thumb.jpg
Records keep the file names relative to the images directory.
"""

import logging
from pathlib import Path

from horde_queue.config import settings

logger = logging.getLogger(__name__)


class StorageService:
    """Manages generated images and thumbnails on local disk."""

    def __init__(self, base_path: str | None = None) -> None:
        self._base = Path(base_path or settings.storage_path)

    @property
    def images_dir(self) -> Path:
        """Return (and create) the directory holding all images."""
        d = self._base / "images"
        d.mkdir(parents=True, exist_ok=True)
        return d

    def store_image(self, image_uuid: str, extension: str, data: bytes) -> str:
        """Write the primary image and return its relative file name."""
        filename = f"{image_uuid}.{extension}"
        return self._write(filename, data)

    def store_thumbnail(self, image_uuid: str, data: bytes, extension: str = "jpg") -> str:
        """Write a thumbnail and return its relative file name."""
        filename = f"{image_uuid}_thumb.{extension}"
        return self._write(filename, data)

    def _write(self, filename: str, data: bytes) -> str:
        dest = self.images_dir / filename
        dest.write_bytes(data)
        logger.debug("Stored %s bytes → %s", len(data), dest)
        return filename

    def delete(self, filename: str) -> None:
        """Remove a stored file; missing files are ignored."""
        path = self.images_dir / filename
        if path.exists():
            path.unlink()
            logger.info("Deleted stored file %s", filename)


# Module-level singleton, instantiated lazily so tests can override settings.
_storage: StorageService | None = None


def get_storage() -> StorageService:
    """Return the module-level StorageService singleton."""
    global _storage
    if _storage is None:
        _storage = StorageService()
    return _storage
