"""Local object storage for uploaded sample images.

Layout: <storage_dir>/<user_id>/<image_id>.jpg plus <image_id>_thumb.jpg.
Returned URLs are <base_url>/<user_id>/<file>, always with '/' separators.
"""

from __future__ import annotations

import io
import logging
import os
import uuid
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Protocol, Tuple

from PIL import Image, ImageOps

from parasitepro.shared.image_quality import flatten_to_rgb, open_image

LOGGER = logging.getLogger(__name__)

THUMBNAIL_SIZE = (400, 400)
THUMBNAIL_QUALITY = 80


@dataclass(frozen=True)
class StoredImage:
    url: str
    thumbnail_url: str
    # Backend-specific keys, used to discard the objects again.
    keys: Tuple[str, ...] = ()


class ImageStore(Protocol):
    def put(self, user_id: str, image_bytes: bytes) -> StoredImage:
        ...

    def discard(self, stored: StoredImage) -> None:
        ...


def make_thumbnail(image_bytes: bytes, size=THUMBNAIL_SIZE) -> bytes:
    img = flatten_to_rgb(ImageOps.exif_transpose(open_image(image_bytes)))
    thumb = ImageOps.fit(img, size, method=Image.LANCZOS)
    out = io.BytesIO()
    thumb.save(out, format="JPEG", quality=THUMBNAIL_QUALITY)
    return out.getvalue()


class LocalImageStore:
    def __init__(self, root: str, base_url: str = "/storage") -> None:
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")

    def _url(self, user_id: str, filename: str) -> str:
        return f"{self.base_url}/{PurePosixPath(str(user_id)) / filename}"

    def put(self, user_id: str, image_bytes: bytes) -> StoredImage:
        user_dir = self.root / str(user_id)
        os.makedirs(user_dir, exist_ok=True)

        image_id = str(uuid.uuid4())
        original = f"{image_id}.jpg"
        thumbnail = f"{image_id}_thumb.jpg"

        (user_dir / original).write_bytes(image_bytes)
        (user_dir / thumbnail).write_bytes(make_thumbnail(image_bytes))
        LOGGER.info("Stored image %s for user %s", image_id, user_id)

        return StoredImage(
            url=self._url(user_id, original),
            thumbnail_url=self._url(user_id, thumbnail),
            keys=(str(user_dir / original), str(user_dir / thumbnail)),
        )

    def discard(self, stored: StoredImage) -> None:
        """Remove the files of an upload that never became an analysis."""

        for key in stored.keys:
            Path(key).unlink(missing_ok=True)
        LOGGER.info("Discarded stored image %s", stored.url)
