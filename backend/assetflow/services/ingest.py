from __future__ import annotations

import logging
import re
import secrets
import time
from functools import partial
from pathlib import PurePosixPath
from uuid import UUID

import anyio
from sqlalchemy.ext.asyncio import AsyncSession

from assetflow.core.config import settings
from assetflow.core.errors import AssetNotFoundError, InvalidTransitionError
from assetflow.models.asset import Asset, AssetStatus, MediaKind
from assetflow.models.job import ProcessingJob
from assetflow.services import job_queue, metadata_store
from assetflow.services.blob_store import BlobStore

logger = logging.getLogger(__name__)

_SAFE_SUFFIX_RE = re.compile(r"^\.[a-z0-9]{1,10}$")


def generate_primary_key(filename: str | None) -> str:
    suffix = PurePosixPath(str(filename or "")).suffix.lower()
    if not _SAFE_SUFFIX_RE.match(suffix):
        suffix = ".bin"
    return f"{int(time.time() * 1000)}-{secrets.token_hex(8)}{suffix}"


async def _remove_blob_quietly(blob_store: BlobStore, bucket: str, key: str) -> None:
    try:
        await anyio.to_thread.run_sync(blob_store.remove, bucket, key)
    except Exception:
        logger.exception("ingest_blob_rollback_failed", extra={"bucket": bucket, "key": key})


async def ingest_upload(
    session: AsyncSession,
    *,
    blob_store: BlobStore,
    bucket: str,
    data: bytes,
    filename: str | None,
    content_type: str | None,
    owner_id: str,
    redis=None,
) -> Asset:
    """Store the primary blob, record it as pending and enqueue its processing job."""
    kind = MediaKind.from_content_type(content_type, filename)
    key = generate_primary_key(filename)
    await anyio.to_thread.run_sync(
        partial(blob_store.put, bucket, key, data, content_type or "application/octet-stream")
    )
    try:
        asset = await metadata_store.create_pending(
            session,
            owner_id=owner_id,
            primary_key=key,
            mime_kind=kind,
            size_bytes=len(data),
            original_filename=PurePosixPath(str(filename or "")).name or None,
            content_type=content_type,
        )
        await session.commit()
    except Exception:
        await session.rollback()
        await _remove_blob_quietly(blob_store, bucket, key)
        raise

    asset_id = asset.id
    try:
        await job_queue.enqueue(session, asset_id=asset_id, blob_key=key, mime_kind=kind, redis=redis)
    except Exception:
        await session.rollback()
        await metadata_store.delete_by_id(session, asset_id)
        await _remove_blob_quietly(blob_store, bucket, key)
        raise

    logger.info(
        "ingest_accepted",
        extra={"asset_id": str(asset.id), "primary_key": key, "mime_kind": kind.value, "size": len(data)},
    )
    return asset


async def reprocess_asset(session: AsyncSession, asset_id: UUID, *, redis=None) -> ProcessingJob:
    asset = await metadata_store.find_by_id(session, asset_id)
    if asset is None:
        raise AssetNotFoundError(f"Asset not found: {asset_id}")
    if asset.status != AssetStatus.failed:
        raise InvalidTransitionError(f"Asset {asset_id} is {asset.status.value}; only failed assets can be reprocessed")
    existing = await job_queue.open_job_for_asset(session, asset_id)
    if existing is not None:
        return existing
    job = await job_queue.enqueue(
        session,
        asset_id=asset.id,
        blob_key=asset.primary_key,
        mime_kind=asset.mime_kind,
        redis=redis,
    )
    logger.info("ingest_reprocess_enqueued", extra={"asset_id": str(asset_id), "job_id": str(job.id)})
    return job


async def presign_asset_url(
    session: AsyncSession,
    *,
    blob_store: BlobStore,
    bucket: str,
    asset_id: UUID,
    variant: str = "original",
    ttl_seconds: int | None = None,
) -> str | None:
    asset = await metadata_store.find_by_id(session, asset_id)
    if asset is None:
        raise AssetNotFoundError(f"Asset not found: {asset_id}")
    if variant == "thumbnail":
        key = asset.thumbnail_key
    elif variant == "original":
        key = asset.primary_key
    else:
        raise ValueError(f"Unknown variant: {variant!r}")
    if not key:
        return None
    return blob_store.presign(bucket, key, int(ttl_seconds or settings.presign_ttl_seconds))
