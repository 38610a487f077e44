# blob storage for chat media and order attachments
import asyncio
from pathlib import Path, PurePosixPath

from db.errors import StoreError, ValidationError
from utils.logger import get_logger

_logger = get_logger(__name__)


class FileBlobStorage:
    """
    Stores blobs under a root directory and hands out file:// URLs.
    Paths are relative, slash-separated keys such as ``chatImages/<id>.jpg``.
    """

    def __init__(self, root: str):
        self.root = Path(root)

    def _resolve(self, path: str) -> Path:
        key = PurePosixPath(path)
        if key.is_absolute() or ".." in key.parts or not key.parts:
            raise ValidationError(f"Invalid blob path: {path!r}")
        return self.root.joinpath(*key.parts)

    async def upload(self, path: str, data: bytes, content_type: str) -> str:
        """Write the blob and return its download URL."""
        if not data:
            raise ValidationError("Cannot upload an empty payload.")
        target = self._resolve(path)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        try:
            await asyncio.to_thread(_write)
        except OSError as exc:
            raise StoreError(f"Upload of {path} failed: {exc}") from exc
        _logger.info(f"Uploaded {path} ({len(data)} bytes, {content_type})")
        return await self.download_url(path)

    async def download_url(self, path: str) -> str:
        target = self._resolve(path)
        exists = await asyncio.to_thread(target.exists)
        if not exists:
            raise StoreError(f"No blob stored at {path}")
        return target.resolve().as_uri()
