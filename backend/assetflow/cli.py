import argparse
import asyncio
import json
import mimetypes
import uuid
from pathlib import Path

from assetflow.core.config import settings
from assetflow.core.errors import AssetFlowError
from assetflow.core.redis_client import close_redis, get_redis
from assetflow.db.base import Base
from assetflow.db.session import SessionLocal, engine
from assetflow.services import cleanup, ingest, job_queue, usage
from assetflow.services.blob_store import build_blob_store
from assetflow.workers import asset_worker


def _parse_uuid(raw: str, *, label: str) -> uuid.UUID:
    try:
        return uuid.UUID(str(raw).strip())
    except ValueError:
        raise SystemExit(f"Invalid {label}: {raw!r}")


def _print_json(payload) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


async def init_db() -> None:
    import assetflow.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    print("Database tables created")


async def ingest_file(path: Path, *, owner_id: str, content_type: str | None) -> None:
    data = path.read_bytes()
    declared = content_type or mimetypes.guess_type(path.name)[0]
    try:
        async with SessionLocal() as session:
            asset = await ingest.ingest_upload(
                session,
                blob_store=build_blob_store(),
                bucket=settings.blob_bucket,
                data=data,
                filename=path.name,
                content_type=declared,
                owner_id=owner_id,
                redis=get_redis(),
            )
    finally:
        await close_redis()
    _print_json({"asset_id": str(asset.id), "primary_key": asset.primary_key, "status": asset.status.value})


async def reprocess(asset_id: uuid.UUID) -> None:
    try:
        async with SessionLocal() as session:
            job = await ingest.reprocess_asset(session, asset_id, redis=get_redis())
    finally:
        await close_redis()
    _print_json({"asset_id": str(asset_id), "job_id": str(job.id), "status": job.status.value})


async def presign(asset_id: uuid.UUID, *, variant: str, ttl_seconds: int | None) -> None:
    async with SessionLocal() as session:
        url = await ingest.presign_asset_url(
            session,
            blob_store=build_blob_store(),
            bucket=settings.blob_bucket,
            asset_id=asset_id,
            variant=variant,
            ttl_seconds=ttl_seconds,
        )
    if url is None:
        raise SystemExit(f"Asset {asset_id} has no {variant} blob")
    print(url)


async def delete_asset(asset_id: uuid.UUID) -> None:
    async with SessionLocal() as session:
        report = await cleanup.delete_asset(
            session,
            blob_store=build_blob_store(),
            bucket=settings.blob_bucket,
            asset_id=asset_id,
        )
        if not report.found:
            raise SystemExit(f"Asset not found: {asset_id}")
        owner_usage = await usage.reconcile_owner_usage(session, report.owner_id)
    _print_json(
        {
            "asset_id": str(asset_id),
            "ok": report.ok,
            "deleted_keys": report.deleted_keys,
            "failed_keys": report.failed_keys,
            "owner_asset_count": owner_usage.asset_count,
            "owner_total_bytes": owner_usage.total_bytes,
        }
    )


async def list_dead_letters(limit: int) -> None:
    async with SessionLocal() as session:
        jobs = await job_queue.list_dead_letters(session, limit=limit)
    _print_json(
        [
            {
                "job_id": str(job.id),
                "asset_id": str(job.asset_id),
                "attempt": job.attempt,
                "last_error": job.last_error,
                "dead_lettered_at": job.dead_lettered_at,
            }
            for job in jobs
        ]
    )


async def requeue(job_id: uuid.UUID) -> None:
    try:
        async with SessionLocal() as session:
            job = await job_queue.requeue_dead_letter(session, job_id, redis=get_redis())
    finally:
        await close_redis()
    if job is None:
        raise SystemExit(f"No dead-lettered job with id {job_id}")
    print(f"Requeued job {job_id}")


async def queue_stats() -> None:
    async with SessionLocal() as session:
        stats = await job_queue.queue_stats(session)
    _print_json(stats)


async def reconcile_usage(owner_id: str) -> None:
    async with SessionLocal() as session:
        row = await usage.reconcile_owner_usage(session, owner_id)
    _print_json({"owner_id": row.owner_id, "asset_count": row.asset_count, "total_bytes": row.total_bytes})


def _add_asset_commands(subparsers) -> None:
    ingest_cmd = subparsers.add_parser("ingest", help="Store a local file as a new asset and queue its processing")
    ingest_cmd.add_argument("--file", required=True, help="Path of the file to ingest")
    ingest_cmd.add_argument("--owner-id", required=True, help="Owner the asset is accounted to")
    ingest_cmd.add_argument("--content-type", help="Declared content type (guessed from the name when omitted)")

    reprocess_cmd = subparsers.add_parser("reprocess", help="Queue a failed asset for processing again")
    reprocess_cmd.add_argument("--asset-id", required=True, help="Asset id")

    presign_cmd = subparsers.add_parser("presign", help="Print a time-limited URL for an asset blob")
    presign_cmd.add_argument("--asset-id", required=True, help="Asset id")
    presign_cmd.add_argument("--thumbnail", action="store_true", help="Sign the thumbnail instead of the original")
    presign_cmd.add_argument("--ttl", type=int, help="URL lifetime in seconds")

    delete_cmd = subparsers.add_parser("delete-asset", help="Delete an asset, its blobs and refresh owner usage")
    delete_cmd.add_argument("--asset-id", required=True, help="Asset id")

    usage_cmd = subparsers.add_parser("reconcile-usage", help="Recompute an owner's storage usage")
    usage_cmd.add_argument("--owner-id", required=True, help="Owner id")


def _add_queue_commands(subparsers) -> None:
    dead = subparsers.add_parser("dead-letters", help="List dead-lettered jobs")
    dead.add_argument("--limit", type=int, default=50, help="Maximum number of jobs to list")

    requeue_cmd = subparsers.add_parser("requeue", help="Move a dead-lettered job back to the queue")
    requeue_cmd.add_argument("--job-id", required=True, help="Job id")

    subparsers.add_parser("queue-stats", help="Count jobs per status")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Asset processing pipeline utilities")
    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("worker", help="Run the asset worker pool until SIGTERM/SIGINT")
    subparsers.add_parser("init-db", help="Create the database tables")
    _add_asset_commands(subparsers)
    _add_queue_commands(subparsers)
    return parser


def _run_cli_command(args: argparse.Namespace) -> bool:
    if args.command == "worker":
        asset_worker.main()
        return True

    if args.command == "init-db":
        asyncio.run(init_db())
        return True

    if args.command == "ingest":
        path = Path(args.file)
        if not path.is_file():
            raise SystemExit(f"Input file not found: {path}")
        asyncio.run(ingest_file(path, owner_id=args.owner_id, content_type=args.content_type))
        return True

    if args.command == "reprocess":
        asyncio.run(reprocess(_parse_uuid(args.asset_id, label="asset id")))
        return True

    if args.command == "presign":
        variant = "thumbnail" if args.thumbnail else "original"
        asyncio.run(presign(_parse_uuid(args.asset_id, label="asset id"), variant=variant, ttl_seconds=args.ttl))
        return True

    if args.command == "delete-asset":
        asyncio.run(delete_asset(_parse_uuid(args.asset_id, label="asset id")))
        return True

    if args.command == "reconcile-usage":
        asyncio.run(reconcile_usage(args.owner_id))
        return True

    if args.command == "dead-letters":
        asyncio.run(list_dead_letters(args.limit))
        return True

    if args.command == "requeue":
        asyncio.run(requeue(_parse_uuid(args.job_id, label="job id")))
        return True

    if args.command == "queue-stats":
        asyncio.run(queue_stats())
        return True

    return False


def main(argv: list[str] | None = None):
    parser = _build_parser()
    args = parser.parse_args(argv)
    try:
        if not _run_cli_command(args):
            parser.print_help()
    except AssetFlowError as exc:
        raise SystemExit(str(exc))


if __name__ == "__main__":
    main()
