"""
Object storage client for raw uploads, transcoded renditions and thumbnails.
"""

import logging
from datetime import timedelta
from pathlib import Path

from minio import Minio
from minio.error import S3Error
from urllib3.exceptions import HTTPError

from clipstream import config
from clipstream.errors import PermanentError, TransientError

log = logging.getLogger("clipstream.storage")


class MinioStorage:
    def __init__(self, client: Minio = None, bucket: str = None):
        self.bucket = bucket or config.MINIO_BUCKET
        self.client = client or Minio(
            config.MINIO_ENDPOINT,
            access_key=config.MINIO_ACCESS,
            secret_key=config.MINIO_SECRET,
            secure=config.MINIO_SSL,
        )

    def ensure_bucket(self):
        if not self.client.bucket_exists(self.bucket):
            self.client.make_bucket(self.bucket)
            log.info(f"Created bucket {self.bucket}")

    def fetch(self, key: str, dest: Path) -> Path:
        """Download an object to a local path."""
        try:
            self.client.fget_object(self.bucket, key, str(dest))
        except S3Error as e:
            if e.code in ("NoSuchKey", "NoSuchObject"):
                raise PermanentError(f"object {key} does not exist") from e
            raise TransientError(f"storage fetch failed for {key}: {e}") from e
        except HTTPError as e:
            raise TransientError(f"storage unreachable fetching {key}: {e}") from e
        return dest

    def put(self, key: str, path: Path, content_type: str = "application/octet-stream"):
        try:
            self.client.fput_object(self.bucket, key, str(path), content_type=content_type)
        except (S3Error, HTTPError) as e:
            raise TransientError(f"storage upload failed for {key}: {e}") from e

    def remove(self, key: str):
        try:
            self.client.remove_object(self.bucket, key)
        except (S3Error, HTTPError) as e:
            log.warning(f"Failed to remove {key}: {e}")

    def presigned_get(self, key: str, expires_minutes: int = None) -> str:
        expires = timedelta(minutes=expires_minutes or config.PRESIGN_EXPIRY_MINUTES)
        return self.client.presigned_get_object(self.bucket, key, expires=expires)

    def presigned_put(self, key: str, expires_minutes: int = None) -> str:
        expires = timedelta(minutes=expires_minutes or config.PRESIGN_EXPIRY_MINUTES)
        return self.client.presigned_put_object(self.bucket, key, expires=expires)
