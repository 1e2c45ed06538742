from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from assetflow.models.asset import Asset
from assetflow.models.usage import OwnerStorageUsage

logger = logging.getLogger(__name__)


async def reconcile_owner_usage(session: AsyncSession, owner_id: str) -> OwnerStorageUsage:
    """Recompute an owner's storage totals from the asset table. Safe to repeat."""
    count, total = (
        await session.execute(
            select(func.count(Asset.id), func.coalesce(func.sum(Asset.size_bytes), 0)).where(
                Asset.owner_id == str(owner_id)
            )
        )
    ).one()
    usage = await session.get(OwnerStorageUsage, str(owner_id))
    if usage is None:
        usage = OwnerStorageUsage(owner_id=str(owner_id))
    usage.asset_count = int(count or 0)
    usage.total_bytes = int(total or 0)
    usage.reconciled_at = datetime.now(timezone.utc)
    session.add(usage)
    await session.commit()
    logger.info(
        "owner_usage_reconciled",
        extra={"owner_id": str(owner_id), "asset_count": usage.asset_count, "total_bytes": usage.total_bytes},
    )
    return usage
