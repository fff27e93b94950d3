"""S3-compatible blob store (AWS S3, Supabase Storage, MinIO, …).

Uses path-style addressing so custom ``endpoint_url`` values work for
S3-compatible services. boto3 is synchronous; every call runs in a worker
thread so the event loop keeps serving streams while bytes move.
"""
import asyncio
import logging
from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError

from app.errors import StoreFault

from .base import BlobStore

logger = logging.getLogger(__name__)

DEFAULT_REGION = "us-east-1"


class S3BlobStore(BlobStore):
    """BlobStore backed by an S3 bucket.

    Args:
        bucket:                Bucket name.
        region_name:           AWS region.  Defaults to ``us-east-1``.
        endpoint_url:          Custom endpoint for S3-compatible services.
        aws_access_key_id:     Access key.  ``None`` → default credential chain.
        aws_secret_access_key: Secret key.
    """

    def __init__(
        self,
        bucket: str,
        region_name: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        aws_access_key_id: Optional[str] = None,
        aws_secret_access_key: Optional[str] = None,
    ) -> None:
        self.bucket = bucket
        self._region = region_name or DEFAULT_REGION
        self._endpoint_url = endpoint_url
        self._access_key = aws_access_key_id
        self._secret_key = aws_secret_access_key
        self._client: Optional[object] = None

    @property
    def name(self) -> str:
        return "s3"

    def _get_client(self) -> object:
        """Return a cached boto3 S3 client."""
        if self._client is None:
            import boto3
            from botocore.config import Config

            kwargs: dict = {
                "region_name": self._region,
                "config": Config(s3={"addressing_style": "path"}),
            }
            if self._endpoint_url:
                kwargs["endpoint_url"] = self._endpoint_url
            if self._access_key and self._secret_key:
                kwargs["aws_access_key_id"]     = self._access_key
                kwargs["aws_secret_access_key"] = self._secret_key

            self._client = boto3.client("s3", **kwargs)

        return self._client

    async def _call(self, operation: str, key: str, method: str, **kwargs):
        client = self._get_client()
        try:
            return await asyncio.to_thread(getattr(client, method), **kwargs)
        except (BotoCoreError, ClientError) as e:
            logger.error("[S3BlobStore] %s failed for %s: %s", operation, key, e)
            raise StoreFault(operation, key, e) from e

    # -----------------------------------------------------------------------
    # BlobStore implementation
    # -----------------------------------------------------------------------

    async def put(self, key: str, data: bytes, content_type: str) -> None:
        await self._call(
            "blob.put", key, "put_object",
            Bucket=self.bucket, Key=key, Body=data, ContentType=content_type,
        )
        logger.info("Uploaded s3://%s/%s (%d bytes)", self.bucket, key, len(data))

    async def get(self, key: str) -> Optional[bytes]:
        client = self._get_client()
        try:
            response = await asyncio.to_thread(client.get_object, Bucket=self.bucket, Key=key)
            return await asyncio.to_thread(response["Body"].read)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                return None
            raise StoreFault("blob.get", key, e) from e
        except BotoCoreError as e:
            raise StoreFault("blob.get", key, e) from e

    async def delete(self, key: str) -> None:
        # S3 DeleteObject succeeds for missing keys.
        await self._call("blob.delete", key, "delete_object", Bucket=self.bucket, Key=key)
        logger.info("Deleted s3://%s/%s", self.bucket, key)

    async def exists(self, key: str) -> bool:
        client = self._get_client()
        try:
            await asyncio.to_thread(client.head_object, Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404", "NotFound"):
                return False
            raise StoreFault("blob.exists", key, e) from e

    async def retrieval_url(self, key: str, expires_in: int) -> str:
        return await self._call(
            "blob.presign", key, "generate_presigned_url",
            ClientMethod="get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expires_in,
        )
