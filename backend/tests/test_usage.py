import pytest

from assetflow.models.asset import MediaKind
from assetflow.services import cleanup, metadata_store, usage

BUCKET = "assets"


async def _add_asset(session, owner_id: str, key: str, size: int):
    asset = await metadata_store.create_pending(
        session, owner_id=owner_id, primary_key=key, mime_kind=MediaKind.other, size_bytes=size
    )
    await session.commit()
    return asset.id


@pytest.mark.anyio
async def test_reconcile_owner_usage_is_idempotent(session_factory) -> None:
    async with session_factory() as session:
        await _add_asset(session, "owner-1", "1-a.bin", 100)
        await _add_asset(session, "owner-1", "2-b.bin", 250)
        await _add_asset(session, "owner-2", "3-c.bin", 999)

        first = await usage.reconcile_owner_usage(session, "owner-1")
        assert (first.asset_count, first.total_bytes) == (2, 350)
        second = await usage.reconcile_owner_usage(session, "owner-1")
        assert (second.asset_count, second.total_bytes) == (2, 350)

        empty = await usage.reconcile_owner_usage(session, "nobody")
        assert (empty.asset_count, empty.total_bytes) == (0, 0)


@pytest.mark.anyio
async def test_usage_follows_asset_deletion(session_factory, blob_store) -> None:
    async with session_factory() as session:
        keep = await _add_asset(session, "owner-1", "1-a.bin", 100)
        drop = await _add_asset(session, "owner-1", "2-b.bin", 250)
        await usage.reconcile_owner_usage(session, "owner-1")

        report = await cleanup.delete_asset(session, blob_store=blob_store, bucket=BUCKET, asset_id=drop)
        row = await usage.reconcile_owner_usage(session, report.owner_id)

    assert keep != drop
    assert (row.asset_count, row.total_bytes) == (1, 100)
