"""Local object store publishing artifacts under a public URL prefix."""

from __future__ import annotations

import logging
import mimetypes
import uuid
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

_EXTENSIONS = {
    "video/mp4": ".mp4",
    "audio/mpeg": ".mp3",
    "audio/mp3": ".mp3",
    "audio/wav": ".wav",
    "audio/x-wav": ".wav",
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "text/vtt": ".vtt",
    "application/x-subrip": ".srt",
}


class ObjectStoreError(RuntimeError):
    pass


def _extension_for(content_type: str) -> str:
    return _EXTENSIONS.get(content_type) or mimetypes.guess_extension(content_type) or ".bin"


class LocalObjectStore:
    """Writes objects below ``root`` and serves them at ``public_base_url``.

    The API mounts ``root`` as static files, so every returned URL is
    readable without credentials.
    """

    def __init__(self, root: Path, public_base_url: str) -> None:
        self.root = root
        self.public_base_url = public_base_url.rstrip("/")

    def _key(self, content_type: str, name: Optional[str], prefix: str) -> str:
        if name:
            safe = Path(name).name
            if not Path(safe).suffix:
                safe += _extension_for(content_type)
        else:
            safe = f"{uuid.uuid4().hex}{_extension_for(content_type)}"
        return f"{prefix.strip('/')}/{safe}" if prefix else safe

    def url_for(self, key: str) -> str:
        return f"{self.public_base_url}/{key}"

    def path_for(self, key: str) -> Path:
        root = self.root.resolve()
        path = (root / key).resolve()
        if not path.is_relative_to(root):
            raise ObjectStoreError(f"object key escapes the store: {key}")
        return path

    async def upload(
        self,
        data: bytes,
        content_type: str,
        *,
        name: Optional[str] = None,
        prefix: str = "",
    ) -> str:
        if not data:
            raise ObjectStoreError("refusing to publish an empty object")
        key = self._key(content_type, name, prefix)
        target = self.path_for(key)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as exc:
            raise ObjectStoreError(f"failed to write object {key}: {exc}") from exc
        logger.info("published %s (%s, %s bytes)", key, content_type, len(data))
        return self.url_for(key)

    async def upload_file(
        self,
        source: Path,
        content_type: str,
        *,
        name: Optional[str] = None,
        prefix: str = "",
    ) -> str:
        try:
            data = source.read_bytes()
        except OSError as exc:
            raise ObjectStoreError(f"failed to read {source}: {exc}") from exc
        return await self.upload(data, content_type, name=name or source.name, prefix=prefix)
