"""Blob storage for attachment bytes.

Provides a BlobStore abstraction with an S3-compatible implementation for
production and a local-disk implementation for development and tests.
"""
from .base import BlobStore
from .local import LocalBlobStore
from .s3 import S3BlobStore

__all__ = [
    "BlobStore",
    "LocalBlobStore",
    "S3BlobStore",
]
