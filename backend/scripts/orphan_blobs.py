import argparse
import asyncio

from sqlalchemy import select

from assetflow.core.config import settings
from assetflow.db.session import SessionLocal
from assetflow.models.asset import Asset, AssetResolution
from assetflow.services.blob_store import BlobStore, build_blob_store


async def collect_references(session_factory=SessionLocal) -> set[str]:
    refs: set[str] = set()
    async with session_factory() as session:
        primary_keys = (await session.execute(select(Asset.primary_key))).scalars().all()
        thumbnail_keys = (await session.execute(select(Asset.thumbnail_key))).scalars().all()
        resolution_keys = (await session.execute(select(AssetResolution.storage_key))).scalars().all()
        for key in list(primary_keys) + list(thumbnail_keys) + list(resolution_keys):
            if key:
                refs.add(key)
    return refs


def walk_blobs(blob_store: BlobStore, bucket: str) -> set[str]:
    return set(blob_store.iter_keys(bucket))


async def main(delete: bool, *, session_factory=SessionLocal, blob_store: BlobStore | None = None) -> set[str]:
    store = blob_store or build_blob_store()
    bucket = settings.blob_bucket
    referenced = await collect_references(session_factory)
    existing = walk_blobs(store, bucket)
    orphans = existing - referenced
    if not orphans:
        print("No orphaned blobs found.")
        return orphans
    print(f"Found {len(orphans)} orphaned blobs in {bucket}:")
    for key in sorted(orphans):
        print(f" - {key}")
        if delete:
            store.remove(bucket, key)
    if delete:
        print("Deleted orphaned blobs.")
    return orphans


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Scan the blob bucket for blobs no asset references.")
    parser.add_argument("--delete", action="store_true", help="Delete orphaned blobs after listing")
    args = parser.parse_args()
    asyncio.run(main(args.delete))
