"""Abstract BlobStore interface.

Every attachment back-end (S3-compatible object storage, local disk, …) must
implement this interface so the attachment manager stays storage-agnostic.
Implementations raise ``StoreFault`` when the underlying storage fails.
"""
from abc import ABC, abstractmethod
from typing import Optional


class BlobStore(ABC):
    """Key-addressed byte storage with time-limited retrieval URLs."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Short backend name used in logs."""

    @abstractmethod
    async def put(self, key: str, data: bytes, content_type: str) -> None:
        """Store ``data`` under ``key``, replacing any existing object."""

    @abstractmethod
    async def get(self, key: str) -> Optional[bytes]:
        """Return the object's bytes, or None if no object exists."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete the object. Deleting a missing key is a no-op."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        pass

    @abstractmethod
    async def retrieval_url(self, key: str, expires_in: int) -> str:
        """Return a URL that serves the object for ``expires_in`` seconds."""
