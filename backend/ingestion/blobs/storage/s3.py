"""S3 blob storage: s3://<bucket>/blobs/<cid[0:2]>/<cid[2:4]>/<cid>."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ingestion.blobs.storage.base import BlobStorage, shard_prefix
from ingestion.core.errors import StorageError

logger = logging.getLogger(__name__)

KEY_PREFIX = "blobs"


def object_key(cid: str) -> str:
    first, second = shard_prefix(cid)
    return f"{KEY_PREFIX}/{first}/{second}/{cid}"


class S3BlobStorage(BlobStorage):
    def __init__(self, bucket: str, region: str, client: Optional[Any] = None) -> None:
        self.bucket = bucket
        self.region = region
        self._client = client or boto3.client("s3", region_name=region)
        logger.info(f"S3 blob storage: bucket={bucket} region={region}")

    async def store(self, cid: str, data: bytes, mimetype: Optional[str] = None) -> str:
        key = object_key(cid)
        extra = {"ContentType": mimetype} if mimetype else {}
        try:
            await asyncio.to_thread(self._client.put_object, Bucket=self.bucket, Key=key, Body=data, **extra)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to store blob {cid} in s3://{self.bucket}/{key}: {e}") from e
        logger.debug(f"Stored blob {cid} at s3://{self.bucket}/{key}")
        return f"s3://{self.bucket}/{key}"

    def _get(self, key: str) -> Optional[bytes]:
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("NoSuchKey", "404"):
                return None
            raise
        return response["Body"].read()

    async def retrieve(self, cid: str) -> Optional[bytes]:
        key = object_key(cid)
        try:
            data = await asyncio.to_thread(self._get, key)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to read s3://{self.bucket}/{key}: {e}") from e
        if data is None:
            logger.warning(f"Blob {cid} not found in s3://{self.bucket}")
        return data
