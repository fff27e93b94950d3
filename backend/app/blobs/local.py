"""Local-disk blob store.

Objects are stored as files under a root directory at their key path:
``{root}/uploads/{owner_id}/{uuid}.{ext}``. Retrieval URLs point at the
``/api/files/blob/{key}`` route and carry an HMAC signature over the key and
expiry time, so they behave like S3 presigned URLs in development.
"""
import asyncio
import hashlib
import hmac
import logging
import time
from pathlib import Path
from typing import Optional
from urllib.parse import quote, urlencode

from app.errors import StoreFault

from .base import BlobStore

logger = logging.getLogger(__name__)


class LocalBlobStore(BlobStore):
    """BlobStore that keeps objects as files on local disk.

    Args:
        root_dir: Directory holding all objects.
        secret_key: Key used to sign retrieval URLs.
        url_prefix: Path (or absolute URL) of the signed download route.
    """

    def __init__(
        self,
        root_dir: str,
        secret_key: str,
        url_prefix: str = "/api/files/blob",
    ) -> None:
        self._root = Path(root_dir).resolve()
        self._root.mkdir(parents=True, exist_ok=True)
        self._secret = secret_key.encode("utf-8")
        self._url_prefix = url_prefix.rstrip("/")

    @property
    def name(self) -> str:
        return "local"

    def _path_for(self, key: str) -> Path:
        path = (self._root / key).resolve()
        if self._root not in path.parents:
            raise ValueError(f"Key escapes blob root: {key}")
        return path

    # -----------------------------------------------------------------------
    # BlobStore implementation
    # -----------------------------------------------------------------------

    async def put(self, key: str, data: bytes, content_type: str) -> None:
        def write() -> None:
            path = self._path_for(key)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        try:
            await asyncio.to_thread(write)
        except OSError as e:
            raise StoreFault("blob.put", key, e) from e
        logger.info("Saved blob: %s (%d bytes)", key, len(data))

    async def get(self, key: str) -> Optional[bytes]:
        path = self._path_for(key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StoreFault("blob.get", key, e) from e

    async def delete(self, key: str) -> None:
        path = self._path_for(key)
        try:
            await asyncio.to_thread(path.unlink, True)
        except OSError as e:
            raise StoreFault("blob.delete", key, e) from e
        logger.info("Deleted blob: %s", key)

    async def exists(self, key: str) -> bool:
        return self._path_for(key).is_file()

    async def retrieval_url(self, key: str, expires_in: int) -> str:
        expires = int(time.time()) + expires_in
        query = urlencode({"expires": expires, "signature": self.sign(key, expires)})
        return f"{self._url_prefix}/{quote(key)}?{query}"

    # -----------------------------------------------------------------------
    # Signed URLs
    # -----------------------------------------------------------------------

    def sign(self, key: str, expires: int) -> str:
        message = f"{key}:{expires}".encode("utf-8")
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def verify(self, key: str, expires: int, signature: str) -> bool:
        """Check a signature produced by ``retrieval_url`` and its expiry."""
        if expires < int(time.time()):
            return False
        return hmac.compare_digest(self.sign(key, expires), signature)
