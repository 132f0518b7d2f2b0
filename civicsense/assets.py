# Image asset store. Uploaded photos get a stable public URL under MEDIA_URL.

import asyncio
import logging
import mimetypes
import uuid
from pathlib import Path
from typing import Optional, Protocol

from .errors import AssetUploadError
from .models import ImageData

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_TYPES = {"image/jpeg", "image/png", "image/webp", "image/gif"}


class AssetStore(Protocol):
    async def upload(self, image: ImageData, folder: str = "issues") -> str:
        ...

    async def fetch(self, ref: str) -> Optional[ImageData]:
        ...

    async def delete(self, ref: str) -> None:
        ...


class LocalAssetStore:
    """Stores images on local disk; the app serves MEDIA_DIR at ``base_url``."""

    def __init__(self, root: Path, base_url: str = "/media"):
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")

    def _path_for(self, ref: str) -> Optional[Path]:
        prefix = self.base_url + "/"
        if not ref or not ref.startswith(prefix):
            return None
        candidate = (self.root / ref[len(prefix):]).resolve()
        if self.root.resolve() not in candidate.parents:
            return None
        return candidate

    async def upload(self, image: ImageData, folder: str = "issues") -> str:
        if image.mime_type not in ALLOWED_IMAGE_TYPES:
            raise AssetUploadError(f"Unsupported image type: {image.mime_type}")
        ext = mimetypes.guess_extension(image.mime_type) or ".jpg"
        name = f"{uuid.uuid4().hex}{ext}"

        def write():
            target = self.root / folder
            target.mkdir(parents=True, exist_ok=True)
            (target / name).write_bytes(image.content)

        try:
            await asyncio.get_running_loop().run_in_executor(None, write)
        except OSError as e:
            logger.error("Asset upload failed: %s", e)
            raise AssetUploadError() from e
        return f"{self.base_url}/{folder}/{name}"

    async def fetch(self, ref: str) -> Optional[ImageData]:
        path = self._path_for(ref)
        if path is None or not path.is_file():
            return None
        mime = mimetypes.guess_type(path.name)[0] or "image/jpeg"
        data = await asyncio.get_running_loop().run_in_executor(None, path.read_bytes)
        return ImageData(content=data, mime_type=mime, filename=path.name)

    async def delete(self, ref: str) -> None:
        path = self._path_for(ref)
        if path is not None and path.is_file():
            path.unlink()
