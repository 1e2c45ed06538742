from __future__ import annotations

import hashlib
import hmac
import logging
import os
import tempfile
import time
from collections.abc import Iterator
from pathlib import Path
from typing import Protocol
from urllib.parse import quote, urlencode

from assetflow.core.config import settings
from assetflow.core.errors import BlobNotFoundError, BlobStoreUnavailableError

logger = logging.getLogger(__name__)

_MISSING_KEY_CODES = {"NoSuchKey", "404", "NotFound"}


class BlobStore(Protocol):
    def put(self, bucket: str, key: str, data: bytes, content_type: str) -> None: ...

    def get(self, bucket: str, key: str) -> bytes: ...

    def remove(self, bucket: str, key: str) -> None: ...

    def presign(self, bucket: str, key: str, ttl_seconds: int) -> str: ...

    def iter_keys(self, bucket: str) -> Iterator[str]: ...


def _validate_key(key: str) -> str:
    cleaned = str(key or "").strip().lstrip("/")
    parts = cleaned.split("/")
    if not cleaned or any(part in {"", ".", ".."} for part in parts):
        raise ValueError(f"Invalid blob key: {key!r}")
    return cleaned


def _sign(secret: str, bucket: str, key: str, exp: int) -> str:
    msg = f"{bucket}/{key}:{exp}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), msg, hashlib.sha256).hexdigest()


class LocalBlobStore:
    """Blob store on the local filesystem: <root>/<bucket>/<key>."""

    def __init__(self, root: str | Path, *, secret: str, base_url: str) -> None:
        self.root = Path(root).resolve()
        self.secret = secret
        self.base_url = base_url.rstrip("/")

    def _path(self, bucket: str, key: str) -> Path:
        bucket_root = (self.root / _validate_key(bucket)).resolve()
        path = (bucket_root / _validate_key(key)).resolve()
        try:
            path.relative_to(bucket_root)
        except ValueError:
            raise ValueError(f"Invalid blob key: {key!r}")
        return path

    def put(self, bucket: str, key: str, data: bytes, content_type: str) -> None:
        path = self._path(bucket, key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, temp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "wb") as fh:
                    fh.write(data)
                os.replace(temp_name, path)
            except BaseException:
                Path(temp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise BlobStoreUnavailableError(f"Failed to write {bucket}/{key}: {exc}") from exc

    def get(self, bucket: str, key: str) -> bytes:
        path = self._path(bucket, key)
        try:
            return path.read_bytes()
        except (FileNotFoundError, IsADirectoryError) as exc:
            raise BlobNotFoundError(bucket, key) from exc
        except OSError as exc:
            raise BlobStoreUnavailableError(f"Failed to read {bucket}/{key}: {exc}") from exc

    def remove(self, bucket: str, key: str) -> None:
        path = self._path(bucket, key)
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise BlobStoreUnavailableError(f"Failed to remove {bucket}/{key}: {exc}") from exc

    def presign(self, bucket: str, key: str, ttl_seconds: int) -> str:
        key = _validate_key(key)
        exp = int(time.time()) + max(1, int(ttl_seconds))
        query = urlencode({"exp": exp, "sig": _sign(self.secret, bucket, key, exp)})
        return f"{self.base_url}/{quote(bucket)}/{quote(key)}?{query}"

    def verify_presigned(self, bucket: str, key: str, *, exp: int | str, sig: str) -> bool:
        try:
            exp_ts = int(exp)
        except (TypeError, ValueError):
            return False
        if exp_ts < int(time.time()):
            return False
        expected = _sign(self.secret, bucket, _validate_key(key), exp_ts)
        return hmac.compare_digest(expected, str(sig or ""))

    def iter_keys(self, bucket: str) -> Iterator[str]:
        bucket_root = self.root / _validate_key(bucket)
        if not bucket_root.exists():
            return
        for path in sorted(bucket_root.rglob("*")):
            if path.is_file() and not path.name.endswith(".tmp"):
                yield path.relative_to(bucket_root).as_posix()


class S3BlobStore:
    """S3 / MinIO backed blob store."""

    def __init__(
        self,
        *,
        endpoint_url: str | None,
        access_key: str | None,
        secret_key: str | None,
        region: str,
        client=None,
    ) -> None:
        if client is None:
            import boto3
            from botocore.client import Config

            session = boto3.session.Session(
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
            )
            client = session.client("s3", endpoint_url=endpoint_url, config=Config(signature_version="s3v4"))
        self.s3 = client
        self.region = region

    def _translate(self, exc: Exception, *, bucket: str, key: str, action: str) -> Exception:
        from botocore.exceptions import BotoCoreError, ClientError

        if isinstance(exc, ClientError):
            error = exc.response.get("Error", {}) or {}
            code = str(error.get("Code") or "")
            status_code = int((exc.response.get("ResponseMetadata", {}) or {}).get("HTTPStatusCode") or 0)
            if code in _MISSING_KEY_CODES or status_code == 404:
                return BlobNotFoundError(bucket, key)
            if status_code >= 500 or code in {"SlowDown", "RequestTimeout", "ServiceUnavailable", "InternalError"}:
                return BlobStoreUnavailableError(f"S3 {action} failed for {bucket}/{key}: {code or status_code}")
            return exc
        if isinstance(exc, BotoCoreError):
            return BlobStoreUnavailableError(f"S3 {action} failed for {bucket}/{key}: {exc}")
        return exc

    def put(self, bucket: str, key: str, data: bytes, content_type: str) -> None:
        try:
            self.s3.put_object(Bucket=bucket, Key=key, Body=data, ContentType=content_type)
        except Exception as exc:
            translated = self._translate(exc, bucket=bucket, key=key, action="put")
            if translated is exc:
                raise
            raise translated from exc

    def get(self, bucket: str, key: str) -> bytes:
        try:
            response = self.s3.get_object(Bucket=bucket, Key=key)
            body = response["Body"]
            try:
                return body.read()
            finally:
                body.close()
        except Exception as exc:
            translated = self._translate(exc, bucket=bucket, key=key, action="get")
            if translated is exc:
                raise
            raise translated from exc

    def remove(self, bucket: str, key: str) -> None:
        try:
            self.s3.delete_object(Bucket=bucket, Key=key)
        except Exception as exc:
            translated = self._translate(exc, bucket=bucket, key=key, action="remove")
            if isinstance(translated, BlobNotFoundError):
                return
            if translated is exc:
                raise
            raise translated from exc

    def presign(self, bucket: str, key: str, ttl_seconds: int) -> str:
        return self.s3.generate_presigned_url(
            "get_object",
            Params={"Bucket": bucket, "Key": key},
            ExpiresIn=max(1, int(ttl_seconds)),
        )

    def iter_keys(self, bucket: str) -> Iterator[str]:
        paginator = self.s3.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=bucket):
            for item in page.get("Contents", []) or []:
                yield item["Key"]

    def ensure_bucket(self, bucket: str) -> bool:
        """Create the bucket when missing. Returns True if it was created."""
        from botocore.exceptions import ClientError

        try:
            self.s3.head_bucket(Bucket=bucket)
            return False
        except ClientError as exc:
            code = str((exc.response.get("Error", {}) or {}).get("Code") or "")
            if code not in {"404", "NoSuchBucket", "NotFound"}:
                raise
        if self.region == "us-east-1":
            self.s3.create_bucket(Bucket=bucket)
        else:
            self.s3.create_bucket(Bucket=bucket, CreateBucketConfiguration={"LocationConstraint": self.region})
        logger.info("blob_bucket_created", extra={"bucket": bucket})
        return True


def build_blob_store() -> BlobStore:
    backend = (settings.blob_store_backend or "local").strip().lower()
    if backend == "s3":
        return S3BlobStore(
            endpoint_url=settings.s3_endpoint_url,
            access_key=settings.s3_access_key,
            secret_key=settings.s3_secret_key,
            region=settings.s3_region,
        )
    if backend == "local":
        return LocalBlobStore(settings.blob_root, secret=settings.presign_secret, base_url=settings.presign_base_url)
    raise RuntimeError(f"Unknown blob store backend: {settings.blob_store_backend!r}")
