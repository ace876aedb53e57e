from __future__ import annotations

import logging
import re
from functools import lru_cache
from pathlib import Path
from typing import Dict, Optional

import boto3
from botocore.exceptions import ClientError

from .settings import AppSettings, get_settings

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,127}$")


class BlobNotFoundError(RuntimeError):
    """Raised when a stored object is missing or empty."""


def is_safe_document_id(value: str) -> bool:
    return bool(value) and bool(_SAFE_ID.match(value))


def object_key(tenant_id: int, document_id: str) -> str:
    return f"uploads/{tenant_id}/{document_id}.pdf"


class LocalBlobStore:
    provider = "local"

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        target = (self.root / key).resolve()
        root = self.root.resolve()
        if root not in target.parents:
            raise ValueError(f"object key escapes upload root: {key}")
        return target

    def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> Dict[str, str]:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        logger.info("blob stored provider=local key=%s size=%s", key, len(data))
        return {"provider": self.provider, "key": key}

    def get(self, locator: Dict[str, str]) -> bytes:
        key = locator.get("key") or ""
        path = self._path(key)
        if not path.is_file():
            raise BlobNotFoundError(f"object not found: {key}")
        data = path.read_bytes()
        if not data:
            raise BlobNotFoundError(f"object is empty: {key}")
        return data


class S3BlobStore:
    provider = "s3"

    def __init__(self, bucket: str, *, region: Optional[str] = None, endpoint_url: Optional[str] = None, client=None):
        if not bucket:
            raise RuntimeError("S3_BUCKET_NAME is required when BLOB_STORAGE_PROVIDER=s3")
        self.bucket = bucket
        self.client = client or boto3.client("s3", region_name=region, endpoint_url=endpoint_url)

    def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> Dict[str, str]:
        extra = {"ContentType": content_type} if content_type else {}
        self.client.put_object(Bucket=self.bucket, Key=key, Body=data, **extra)
        logger.info("blob stored provider=s3 bucket=%s key=%s size=%s", self.bucket, key, len(data))
        return {"provider": self.provider, "key": key}

    def get(self, locator: Dict[str, str]) -> bytes:
        key = locator.get("key") or ""
        try:
            resp = self.client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            code = (exc.response.get("Error") or {}).get("Code")
            if code in {"NoSuchKey", "404", "NotFound"}:
                raise BlobNotFoundError(f"object not found: {key}") from exc
            raise
        data = resp["Body"].read()
        if not data:
            raise BlobNotFoundError(f"object is empty: {key}")
        return data


def build_blob_store(settings: Optional[AppSettings] = None):
    settings = settings or get_settings()
    if settings.blob_storage_provider == "s3":
        return S3BlobStore(
            settings.s3_bucket_name or "",
            region=settings.aws_region,
            endpoint_url=settings.s3_endpoint_url,
        )
    return LocalBlobStore(settings.local_upload_dir)


@lru_cache(maxsize=1)
def get_blob_store():
    return build_blob_store()
