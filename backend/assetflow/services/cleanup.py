from __future__ import annotations

import logging
from dataclasses import dataclass, field
from uuid import UUID

import anyio
from sqlalchemy.ext.asyncio import AsyncSession

from assetflow.core import metrics
from assetflow.services import metadata_store
from assetflow.services.blob_store import BlobStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CleanupReport:
    asset_id: UUID
    found: bool = True
    owner_id: str | None = None
    deleted_keys: list[str] = field(default_factory=list)
    failed_keys: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.found and not self.failed_keys


async def delete_asset(
    session: AsyncSession,
    *,
    blob_store: BlobStore,
    bucket: str,
    asset_id: UUID,
) -> CleanupReport:
    """Delete every blob of an asset, then its record.

    Blob deletions are best effort: a failure is logged and reported, and
    the record is removed after every blob has been attempted.
    """
    asset = await metadata_store.find_by_id(session, asset_id)
    if asset is None:
        logger.info("asset_cleanup_missing_asset", extra={"asset_id": str(asset_id)})
        return CleanupReport(asset_id=asset_id, found=False)

    keys = [asset.primary_key]
    if asset.thumbnail_key:
        keys.append(asset.thumbnail_key)
    keys.extend(entry.key for entry in metadata_store.list_resolutions(asset) if entry.key)

    report = CleanupReport(asset_id=asset_id, owner_id=asset.owner_id)
    for key in keys:
        try:
            await anyio.to_thread.run_sync(blob_store.remove, bucket, key)
            report.deleted_keys.append(key)
        except Exception as exc:
            report.failed_keys[key] = str(exc) or type(exc).__name__
            logger.warning(
                "asset_cleanup_blob_failed",
                extra={"asset_id": str(asset_id), "bucket": bucket, "key": key, "error": str(exc)},
            )

    await metadata_store.delete_by_id(session, asset_id)
    metrics.record_cleanup_blob_failures(len(report.failed_keys))
    logger.info(
        "asset_cleanup_completed",
        extra={
            "asset_id": str(asset_id),
            "deleted_count": len(report.deleted_keys),
            "failed_count": len(report.failed_keys),
        },
    )
    return report
