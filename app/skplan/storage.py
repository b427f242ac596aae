"""
Blob storage for approval evidence.

Two backends: a directory on local disk (development and tests) and an
S3-compatible bucket (DigitalOcean Spaces in production). Both raise
StorageError for anything that went wrong on the storage side.
"""

from __future__ import annotations

import hashlib
import mimetypes
import os
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from app.skplan.errors import StorageError, ValidationError

MISSING_OBJECT_CODES = ("404", "NoSuchKey", "NotFound")


class Storage:
    def put_bytes(
        self, key: str, data: bytes, *, content_type: str | None = None, filename: str | None = None
    ) -> None:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def url_for(self, key: str) -> str:
        raise NotImplementedError


def _clean_key(key: str) -> str:
    parts = PurePosixPath(key.replace("\\", "/").lstrip("/")).parts
    if not parts or ".." in parts:
        raise ValidationError(f"Invalid storage key: {key!r}")
    return "/".join(parts)


@dataclass(frozen=True)
class LocalStorage(Storage):
    root: Path

    def put_bytes(
        self, key: str, data: bytes, *, content_type: str | None = None, filename: str | None = None
    ) -> None:
        target = self.root / _clean_key(key)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            raise StorageError(f"Local write failed for {key}: {e}") from e

    def exists(self, key: str) -> bool:
        return (self.root / _clean_key(key)).is_file()

    def url_for(self, key: str) -> str:
        return f"local://{_clean_key(key)}"


@contextmanager
def _s3_errors(action: str, key: str) -> Iterator[None]:
    try:
        yield
    except (BotoCoreError, ClientError) as e:
        raise StorageError(f"S3 {action} failed for {key}: {e}", key=key) from e


@dataclass(frozen=True)
class S3Storage(Storage):
    endpoint: str
    region: str
    bucket: str
    access_key_id: str
    secret_access_key: str
    timeout_seconds: int = 10

    def _client(self):
        # short timeouts and a single retry: a slow bucket must not hold a request thread
        config = Config(
            connect_timeout=self.timeout_seconds,
            read_timeout=self.timeout_seconds,
            retries={"max_attempts": 2, "mode": "standard"},
        )
        return boto3.client(
            "s3",
            endpoint_url=f"https://{self.endpoint}" if self.endpoint else None,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
            config=config,
        )

    def put_bytes(
        self, key: str, data: bytes, *, content_type: str | None = None, filename: str | None = None
    ) -> None:
        params: dict[str, object] = {"Bucket": self.bucket, "Key": _clean_key(key), "Body": data}
        if content_type:
            params["ContentType"] = content_type
        if filename:
            params["ContentDisposition"] = f'inline; filename="{filename}"'
        with _s3_errors("upload", key):
            self._client().put_object(**params)

    def exists(self, key: str) -> bool:
        with _s3_errors("head", key):
            try:
                self._client().head_object(Bucket=self.bucket, Key=_clean_key(key))
            except ClientError as e:
                if e.response.get("Error", {}).get("Code") in MISSING_OBJECT_CODES:
                    return False
                raise
        return True

    def url_for(self, key: str) -> str:
        host = self.endpoint or f"s3.{self.region}.amazonaws.com"
        return f"https://{self.bucket}.{host}/{_clean_key(key)}"


def storage_from_config(config: dict) -> Storage:
    if (config.get("STORAGE_BACKEND") or "local").strip().lower() != "s3":
        return LocalStorage(root=Path(os.getcwd()) / "storage")

    def opt(name: str, default: str = "") -> str:
        return str(config.get(name) or default).strip()

    return S3Storage(
        endpoint=opt("S3_ENDPOINT"),
        region=opt("S3_REGION", "nyc3"),
        bucket=opt("S3_BUCKET"),
        access_key_id=opt("S3_ACCESS_KEY_ID"),
        secret_access_key=opt("S3_SECRET_ACCESS_KEY"),
        timeout_seconds=int(config.get("S3_TIMEOUT_SECONDS") or 10),
    )


class BlobStore:
    """
    Content-addressed uploads of image evidence.

    Size and type limits are enforced here, at the boundary, before anything is written.
    """

    def __init__(self, storage: Storage, *, max_bytes: int) -> None:
        self.storage = storage
        self.max_bytes = max_bytes

    def validate(self, data: bytes | None, content_type: str | None) -> str:
        if not data:
            raise ValidationError("Evidence file is required.")
        if len(data) > self.max_bytes:
            raise ValidationError(
                f"Evidence file is too large ({len(data)} bytes; maximum {self.max_bytes}).",
                size_bytes=len(data),
            )
        ct = (content_type or "").split(";", 1)[0].strip().lower()
        if not ct.startswith("image/"):
            raise ValidationError(f"Evidence must be an image, got {ct or 'unknown type'}.")
        return ct

    def upload(
        self, data: bytes, content_type: str, *, key_prefix: str = "evidence", filename: str | None = None
    ) -> str:
        ct = self.validate(data, content_type)
        digest = hashlib.sha256(data).hexdigest()
        ext = mimetypes.guess_extension(ct) or ".bin"
        key = f"{key_prefix.strip('/')}/{digest}{ext}"
        # the same image uploaded twice is stored once
        if not self.storage.exists(key):
            self.storage.put_bytes(key, data, content_type=ct, filename=filename)
        return self.storage.url_for(key)


def blob_store_from_config(config: dict) -> BlobStore:
    return BlobStore(
        storage_from_config(config),
        max_bytes=int(config.get("EVIDENCE_MAX_BYTES") or 5 * 1024 * 1024),
    )
