# services/account-api/app/adapters/storage.py
"""Storage adapter for user media blobs."""

import logging
import shutil
from abc import ABC, abstractmethod
from pathlib import Path

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionError as BotoConnectionError,
    ReadTimeoutError,
)

from ..config import get_settings
from ..services.deletion_errors import PermanentStoreError, TransientStoreError

logger = logging.getLogger(__name__)

# S3 DeleteObjects accepts at most 1000 keys per call
S3_DELETE_BATCH_SIZE = 1000

_TRANSIENT_S3_CODES = {
    "InternalError",
    "RequestTimeout",
    "RequestTimeTooSkewed",
    "ServiceUnavailable",
    "SlowDown",
    "Throttling",
    "ThrottlingException",
}


class StorageAdapter(ABC):
    """Abstract base class for storage adapters.

    Deletes are idempotent: removing a missing object is not an error.
    """

    @abstractmethod
    def file_exists(self, path: str) -> bool:
        """Check if a file exists at the given path."""
        pass

    @abstractmethod
    def delete_file(self, path: str) -> None:
        """Delete a file at the given path."""
        pass

    @abstractmethod
    def delete_prefix(self, prefix: str) -> int:
        """Delete every file under ``prefix``. Returns the number removed."""
        pass


class LocalStorageAdapter(StorageAdapter):
    """Storage adapter for local filesystem (development)."""

    def __init__(self, base_path: str):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        full_path = (self.base_path / path).resolve()
        if not full_path.is_relative_to(self.base_path.resolve()):
            raise PermanentStoreError(f"Path escapes media root: {path}", "storage")
        return full_path

    def file_exists(self, path: str) -> bool:
        """Check if file exists locally."""
        full_path = self._resolve(path)
        return full_path.exists() and full_path.is_file()

    def delete_file(self, path: str) -> None:
        """Delete file from local storage."""
        full_path = self._resolve(path)
        try:
            full_path.unlink(missing_ok=True)
        except IsADirectoryError as e:
            raise PermanentStoreError(f"Not a file: {path}", "storage.delete") from e
        except OSError as e:
            raise TransientStoreError(str(e), "storage.delete") from e
        logger.info("file.deleted", extra={"path": path})

    def delete_prefix(self, prefix: str) -> int:
        """Delete files under a key prefix from local storage."""
        if not prefix:
            return 0
        full_prefix = self._resolve(prefix)
        # A key prefix ending in "/" names a directory; otherwise it may
        # also match sibling files sharing the prefix
        if prefix.endswith("/"):
            candidates = [full_prefix] if full_prefix.is_dir() else []
        else:
            parent = full_prefix.parent
            if not parent.is_dir():
                return 0
            candidates = [
                c for c in parent.iterdir() if c.name.startswith(full_prefix.name)
            ]
        count = sum(self._remove(candidate, prefix) for candidate in candidates)
        logger.info("file.prefix_deleted", extra={"prefix": prefix, "count": count})
        return count

    @staticmethod
    def _remove(target: Path, prefix: str) -> int:
        """Remove a file or directory tree; a missing target counts as zero."""
        try:
            if target.is_dir():
                count = sum(1 for p in target.rglob("*") if p.is_file())
                shutil.rmtree(target)
                return count
            if target.exists():
                target.unlink()
                return 1
        except FileNotFoundError:
            return 0
        except OSError as e:
            raise TransientStoreError(f"{prefix}: {e}", "storage.delete_prefix") from e
        return 0


class S3StorageAdapter(StorageAdapter):
    """Storage adapter for AWS S3 (production)."""

    def __init__(self, bucket: str, region: str):
        self.bucket = bucket
        self.region = region
        self.client = boto3.client(
            "s3",
            region_name=region,
            config=BotoConfig(
                signature_version="s3v4",
                retries={"max_attempts": 2, "mode": "standard"},
            ),
        )

    def file_exists(self, path: str) -> bool:
        """Check if file exists in S3."""
        try:
            self.client.head_object(Bucket=self.bucket, Key=path)
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise _translate_s3_error(e, "s3.head_object") from e

    def delete_file(self, path: str) -> None:
        """Delete file from S3."""
        try:
            self.client.delete_object(Bucket=self.bucket, Key=path)
        except (ClientError, BotoCoreError) as e:
            raise _translate_s3_error(e, "s3.delete_object") from e
        logger.info("s3.file_deleted", extra={"path": path})

    def delete_prefix(self, prefix: str) -> int:
        """Delete every object under a key prefix from S3."""
        if not prefix:
            return 0
        deleted = 0
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            keys: list[str] = []
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                keys.extend(obj["Key"] for obj in page.get("Contents", []))
                while len(keys) >= S3_DELETE_BATCH_SIZE:
                    deleted += self._delete_keys(keys[:S3_DELETE_BATCH_SIZE])
                    keys = keys[S3_DELETE_BATCH_SIZE:]
            if keys:
                deleted += self._delete_keys(keys)
        except (ClientError, BotoCoreError) as e:
            raise _translate_s3_error(e, "s3.delete_prefix") from e
        logger.info("s3.prefix_deleted", extra={"prefix": prefix, "count": deleted})
        return deleted

    def _delete_keys(self, keys: list[str]) -> int:
        response = self.client.delete_objects(
            Bucket=self.bucket,
            Delete={"Objects": [{"Key": key} for key in keys], "Quiet": True},
        )
        errors = response.get("Errors", [])
        if errors:
            codes = {err.get("Code") for err in errors}
            message = f"{len(errors)} objects not deleted: {sorted(c for c in codes if c)}"
            if codes & _TRANSIENT_S3_CODES:
                raise TransientStoreError(message, "s3.delete_objects")
            raise PermanentStoreError(message, "s3.delete_objects")
        return len(keys)


def _translate_s3_error(
    error: Exception, operation: str
) -> TransientStoreError | PermanentStoreError:
    if isinstance(error, (BotoConnectionError, ReadTimeoutError)):
        return TransientStoreError(str(error), operation)
    if isinstance(error, ClientError):
        code = error.response.get("Error", {}).get("Code", "")
        status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        if code in _TRANSIENT_S3_CODES or status >= 500:
            return TransientStoreError(str(error), operation)
        return PermanentStoreError(str(error), operation)
    return TransientStoreError(str(error), operation)


def get_storage_adapter() -> StorageAdapter:
    """Get the configured storage adapter."""
    settings = get_settings()

    if settings.storage_backend == "s3":
        if not settings.s3_media_bucket:
            raise ValueError("S3_MEDIA_BUCKET required when STORAGE_BACKEND=s3")
        return S3StorageAdapter(
            bucket=settings.s3_media_bucket,
            region=settings.aws_region,
        )
    else:
        return LocalStorageAdapter(base_path=settings.local_media_path)
