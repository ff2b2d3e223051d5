"""Storage backends selected by BLOB_STORAGE_TYPE."""

from __future__ import annotations

from ingestion.blobs.storage.base import BlobStorage
from ingestion.blobs.storage.local import LocalBlobStorage
from store.core.config import ConfigurationError, Settings


def create_storage(settings: Settings) -> BlobStorage:
    if settings.blob_storage_type == "s3":
        from ingestion.blobs.storage.s3 import S3BlobStorage

        if not settings.s3_bucket or not settings.s3_region:
            raise ConfigurationError("S3 storage requires S3_BUCKET and S3_REGION")
        return S3BlobStorage(settings.s3_bucket, settings.s3_region)
    return LocalBlobStorage(settings.blob_storage_path)


__all__ = ["BlobStorage", "LocalBlobStorage", "create_storage"]
