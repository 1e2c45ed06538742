from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from assetflow.models.asset import Asset, AssetResolution, AssetStatus, MediaKind

CLAIMABLE_STATUSES = (AssetStatus.pending, AssetStatus.failed, AssetStatus.processing)


@dataclass(slots=True)
class ResolutionEntry:
    label: str
    key: str
    size: int | None = None


@dataclass(slots=True)
class DerivationResult:
    metadata: dict[str, Any]
    thumbnail_key: str | None = None
    resolutions: list[ResolutionEntry] = field(default_factory=list)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _dumps(value: dict[str, Any]) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, sort_keys=True)


def derived_metadata(asset: Asset) -> dict[str, Any]:
    try:
        return json.loads(asset.derived_metadata_json or "{}")
    except ValueError:
        return {}


def list_resolutions(asset: Asset) -> list[ResolutionEntry]:
    return [
        ResolutionEntry(label=row.label, key=row.storage_key, size=row.size_bytes)
        for row in sorted(asset.resolutions or [], key=lambda r: r.sort_order)
    ]


async def create_pending(
    session: AsyncSession,
    *,
    owner_id: str,
    primary_key: str,
    mime_kind: MediaKind,
    size_bytes: int,
    original_filename: str | None = None,
    content_type: str | None = None,
    asset_id: UUID | None = None,
) -> Asset:
    asset = Asset(
        owner_id=str(owner_id),
        primary_key=primary_key,
        mime_kind=mime_kind,
        size_bytes=int(size_bytes),
        original_filename=original_filename,
        content_type=content_type,
        status=AssetStatus.pending,
    )
    if asset_id is not None:
        asset.id = asset_id
    session.add(asset)
    await session.flush()
    return asset


async def find_by_id(session: AsyncSession, asset_id: UUID) -> Asset | None:
    return await session.scalar(
        select(Asset).where(Asset.id == asset_id).execution_options(populate_existing=True)
    )


async def delete_by_id(session: AsyncSession, asset_id: UUID) -> bool:
    await session.execute(delete(AssetResolution).where(AssetResolution.asset_id == asset_id))
    result = await session.execute(delete(Asset).where(Asset.id == asset_id))
    await session.commit()
    return bool(result.rowcount)


async def update_status(
    session: AsyncSession,
    asset_id: UUID,
    status: AssetStatus,
    fields: dict[str, Any] | None = None,
    *,
    expected: Iterable[AssetStatus] | None = None,
    lease_token: str | None = None,
) -> bool:
    """Conditionally write ``status`` plus ``fields``; returns False when the guard did not match."""
    stmt = update(Asset).where(Asset.id == asset_id)
    if expected is not None:
        stmt = stmt.where(Asset.status.in_(tuple(expected)))
    if lease_token is not None:
        stmt = stmt.where(Asset.lease_token == lease_token)
    stmt = stmt.values(status=status, **(fields or {})).execution_options(synchronize_session=False)
    result = await session.execute(stmt)
    return result.rowcount == 1


async def claim_for_processing(session: AsyncSession, asset_id: UUID, *, lease_token: str) -> bool:
    claimed = await update_status(
        session,
        asset_id,
        AssetStatus.processing,
        {"lease_token": lease_token, "failure_reason": None},
        expected=CLAIMABLE_STATUSES,
    )
    await session.commit()
    return claimed


async def mark_completed(
    session: AsyncSession,
    asset_id: UUID,
    *,
    lease_token: str,
    result: DerivationResult,
) -> bool:
    applied = await update_status(
        session,
        asset_id,
        AssetStatus.completed,
        {
            "derived_metadata_json": _dumps(result.metadata),
            "thumbnail_key": result.thumbnail_key,
            "failure_reason": None,
            "processed_at": _now(),
        },
        expected=(AssetStatus.processing,),
        lease_token=lease_token,
    )
    if not applied:
        await session.rollback()
        return False

    existing = {
        row.label: row
        for row in (
            await session.execute(select(AssetResolution).where(AssetResolution.asset_id == asset_id))
        ).scalars()
    }
    next_order = max((row.sort_order for row in existing.values()), default=-1) + 1
    for entry in result.resolutions:
        row = existing.get(entry.label)
        if row is None:
            row = AssetResolution(asset_id=asset_id, label=entry.label, sort_order=next_order)
            next_order += 1
            existing[entry.label] = row
        row.storage_key = entry.key
        row.size_bytes = entry.size
        session.add(row)
    await session.commit()
    return True


async def mark_failed(session: AsyncSession, asset_id: UUID, *, lease_token: str, reason: str) -> bool:
    applied = await update_status(
        session,
        asset_id,
        AssetStatus.failed,
        {"failure_reason": reason},
        expected=(AssetStatus.processing,),
        lease_token=lease_token,
    )
    await session.commit()
    return applied
