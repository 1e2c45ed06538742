import asyncio
import json
import threading
import time
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from assetflow.core import metrics
from assetflow.core.errors import BlobStoreUnavailableError, VideoProbeError
from assetflow.models.asset import Asset, AssetStatus, MediaKind
from assetflow.models.job import JobStatus, ProcessingJob
from assetflow.services import ingest, job_queue, metadata_store, video_probe
from assetflow.services.metadata_store import DerivationResult
from assetflow.workers import asset_worker

BUCKET = "assets"


class _RedisStub:
    def __init__(self) -> None:
        self.values: dict[str, tuple[str, int | None]] = {}
        self.pushed: list[str] = []

    async def set(self, key, value, ex=None):
        self.values[key] = (value, ex)
        return True

    async def rpush(self, _key, value):
        self.pushed.append(value)
        return len(self.pushed)

    async def blpop(self, _keys, timeout=0):
        await asyncio.sleep(0.01)
        return None


def _pool(session_factory, blob_store, **kwargs) -> asset_worker.AssetWorkerPool:
    options = {"concurrency": 2, "poll_interval": 0.05, "visibility_timeout": 30, "grace_period": 5, "worker_id": "test"}
    options.update(kwargs)
    return asset_worker.AssetWorkerPool(session_factory=session_factory, blob_store=blob_store, bucket=BUCKET, **options)


async def _ingest(session_factory, blob_store, data: bytes, *, filename: str, content_type: str):
    async with session_factory() as session:
        asset = await ingest.ingest_upload(
            session,
            blob_store=blob_store,
            bucket=BUCKET,
            data=data,
            filename=filename,
            content_type=content_type,
            owner_id="owner-1",
        )
        return asset.id, asset.primary_key


async def _lease(session_factory, worker_id: str = "w-1"):
    async with session_factory() as session:
        return await job_queue.lease(session, worker_id=worker_id, visibility_timeout=30)


async def _asset(session_factory, asset_id):
    async with session_factory() as session:
        return await metadata_store.find_by_id(session, asset_id)


async def _job(session_factory, job_id):
    async with session_factory() as session:
        return await job_queue.get_job(session, job_id)


@pytest.mark.anyio
async def test_image_upload_is_processed_to_completion(session_factory, blob_store, make_image) -> None:
    data = make_image(4000, 3000)
    asset_id, primary_key = await _ingest(
        session_factory, blob_store, data, filename="holiday.jpg", content_type="image/jpeg"
    )
    pending = await _asset(session_factory, asset_id)
    assert pending is not None and pending.status == AssetStatus.pending

    pool = _pool(session_factory, blob_store)
    seen_statuses = []
    original_derive = pool._derive

    async def _observing_derive(leased):
        current = await _asset(session_factory, leased.payload.asset_id)
        seen_statuses.append(current.status)
        return await original_derive(leased)

    pool._derive = _observing_derive

    leased = await _lease(session_factory)
    assert leased is not None
    assert await pool.process_leased_job(leased) == asset_worker.OUTCOME_COMPLETED

    assert seen_statuses == [AssetStatus.processing]
    done = await _asset(session_factory, asset_id)
    assert done is not None
    assert done.status == AssetStatus.completed
    metadata = metadata_store.derived_metadata(done)
    assert {key: metadata[key] for key in ("width", "height", "format", "size")} == {
        "width": 4000,
        "height": 3000,
        "format": "jpeg",
        "size": len(data),
    }
    assert metadata["thumbnail_width"] <= 300
    assert done.thumbnail_key == "thumbnails/" + primary_key + ".jpg"
    assert blob_store.get(BUCKET, done.thumbnail_key)

    job = await _job(session_factory, leased.job_id)
    assert job is not None and job.status == JobStatus.completed
    assert metrics.snapshot()["jobs_completed"] == 1


@pytest.mark.anyio
async def test_job_for_deleted_asset_is_acked_and_dropped(session_factory, blob_store, make_image) -> None:
    asset_id, _ = await _ingest(session_factory, blob_store, make_image(10, 10), filename="a.jpg", content_type="image/jpeg")
    async with session_factory() as session:
        await metadata_store.delete_by_id(session, asset_id)

    pool = _pool(session_factory, blob_store)
    leased = await _lease(session_factory)
    assert leased is not None
    assert await pool.process_leased_job(leased) == asset_worker.OUTCOME_DROPPED

    job = await _job(session_factory, leased.job_id)
    assert job is not None and job.status == JobStatus.completed
    async with session_factory() as session:
        assert (await session.execute(select(Asset))).scalars().all() == []
    assert metrics.snapshot()["jobs_dropped"] == 1


@pytest.mark.anyio
async def test_corrupt_video_completes_with_minimal_metadata(
    session_factory, blob_store, monkeypatch: pytest.MonkeyPatch
) -> None:
    def _broken_probe(data, **_kwargs):
        raise VideoProbeError("ffprobe exited with status 1")

    monkeypatch.setattr(video_probe, "probe_video", _broken_probe)
    data = b"not really a container"
    asset_id, _ = await _ingest(session_factory, blob_store, data, filename="clip.mp4", content_type="video/mp4")

    pool = _pool(session_factory, blob_store)
    leased = await _lease(session_factory)
    assert leased is not None
    assert leased.payload.mime_kind == MediaKind.video
    assert await pool.process_leased_job(leased) == asset_worker.OUTCOME_COMPLETED

    done = await _asset(session_factory, asset_id)
    assert done is not None
    assert done.status == AssetStatus.completed
    assert metadata_store.derived_metadata(done) == {"format": "video", "size": len(data)}
    assert done.thumbnail_key is None
    assert metadata_store.list_resolutions(done) == []


@pytest.mark.anyio
async def test_double_delivery_keeps_last_writer(session_factory, blob_store, make_image) -> None:
    asset_id, primary_key = await _ingest(
        session_factory, blob_store, make_image(640, 480), filename="race.jpg", content_type="image/jpeg"
    )
    pool = _pool(session_factory, blob_store)
    first = await _lease(session_factory, "w-1")
    assert first is not None

    outcomes = []
    original_derive = pool._derive

    async def _racing_derive(leased):
        if leased.lease_token != first.lease_token:
            return await original_derive(leased)
        # The first worker stalls long enough for its lease to lapse and the job to be redelivered.
        async with session_factory() as session:
            await session.execute(
                update(ProcessingJob)
                .where(ProcessingJob.id == leased.job_id)
                .values(lease_expires_at=datetime.now(timezone.utc) - timedelta(seconds=1))
            )
            await session.commit()
        second = await _lease(session_factory, "w-2")
        assert second is not None and second.stall_recovered
        outcomes.append(await pool.process_leased_job(second))
        return DerivationResult(metadata={"attempt": "first"}, thumbnail_key="thumbnails/stale.jpg")

    pool._derive = _racing_derive
    outcomes.append(await pool.process_leased_job(first))

    assert outcomes == [asset_worker.OUTCOME_COMPLETED, asset_worker.OUTCOME_STALE]
    done = await _asset(session_factory, asset_id)
    assert done is not None
    assert done.status == AssetStatus.completed
    metadata = metadata_store.derived_metadata(done)
    assert "attempt" not in metadata
    assert metadata["width"] == 640
    assert done.thumbnail_key == "thumbnails/" + primary_key + ".jpg"

    job = await _job(session_factory, first.job_id)
    assert job is not None and job.status == JobStatus.completed
    assert metrics.snapshot()["stale_writes_discarded"] == 1


@pytest.mark.anyio
async def test_redelivery_after_completion_is_a_noop(session_factory, blob_store, make_image) -> None:
    asset_id, primary_key = await _ingest(
        session_factory, blob_store, make_image(64, 64), filename="a.jpg", content_type="image/jpeg"
    )
    pool = _pool(session_factory, blob_store)
    leased = await _lease(session_factory)
    assert await pool.process_leased_job(leased) == asset_worker.OUTCOME_COMPLETED
    before = await _asset(session_factory, asset_id)

    async with session_factory() as session:
        await job_queue.enqueue(session, asset_id=asset_id, blob_key=primary_key, mime_kind=MediaKind.image)
    again = await _lease(session_factory)
    assert again is not None
    assert await pool.process_leased_job(again) == asset_worker.OUTCOME_NOOP

    after = await _asset(session_factory, asset_id)
    assert after.status == AssetStatus.completed
    assert after.derived_metadata_json == before.derived_metadata_json
    job = await _job(session_factory, again.job_id)
    assert job.status == JobStatus.completed


@pytest.mark.anyio
async def test_transient_failure_is_retried_then_completes(
    session_factory, blob_store, make_image, monkeypatch: pytest.MonkeyPatch
) -> None:
    asset_id, _ = await _ingest(session_factory, blob_store, make_image(32, 32), filename="a.jpg", content_type="image/jpeg")
    pool = _pool(session_factory, blob_store)
    real_get = blob_store.get

    def _unavailable(bucket, key):
        raise BlobStoreUnavailableError("connection reset")

    monkeypatch.setattr(blob_store, "get", _unavailable)
    leased = await _lease(session_factory)
    assert await pool.process_leased_job(leased) == asset_worker.OUTCOME_RETRY

    failed = await _asset(session_factory, asset_id)
    assert failed.status == AssetStatus.failed
    assert failed.failure_reason.startswith("BlobStoreUnavailableError")
    job = await _job(session_factory, leased.job_id)
    assert job.status == JobStatus.queued
    assert job.attempt == 1

    monkeypatch.setattr(blob_store, "get", real_get)
    seen: list[tuple[AssetStatus, str | None]] = []
    real_derive = pool._derive

    async def _observing_derive(job):
        current = await _asset(session_factory, asset_id)
        seen.append((current.status, current.failure_reason))
        return await real_derive(job)

    monkeypatch.setattr(pool, "_derive", _observing_derive)
    async with session_factory() as session:
        await session.execute(
            update(ProcessingJob)
            .where(ProcessingJob.id == leased.job_id)
            .values(available_at=datetime.now(timezone.utc) - timedelta(seconds=1))
        )
        await session.commit()
    retry = await _lease(session_factory)
    assert retry is not None and retry.attempt == 1
    assert await pool.process_leased_job(retry) == asset_worker.OUTCOME_COMPLETED
    assert seen == [(AssetStatus.processing, None)]

    done = await _asset(session_factory, asset_id)
    assert done.status == AssetStatus.completed
    assert done.failure_reason is None
    assert metrics.snapshot()["jobs_retried"] == 1


@pytest.mark.anyio
async def test_corrupt_image_is_dead_lettered(session_factory, blob_store) -> None:
    asset_id, _ = await _ingest(
        session_factory, blob_store, b"\xff\xd8 truncated", filename="broken.jpg", content_type="image/jpeg"
    )
    pool = _pool(session_factory, blob_store)
    leased = await _lease(session_factory)
    assert await pool.process_leased_job(leased) == asset_worker.OUTCOME_DEAD_LETTER

    failed = await _asset(session_factory, asset_id)
    assert failed.status == AssetStatus.failed
    assert failed.failure_reason.startswith("UnsupportedMediaError")
    assert failed.thumbnail_key is None
    job = await _job(session_factory, leased.job_id)
    assert job.status == JobStatus.dead_letter
    assert metrics.snapshot()["jobs_dead_lettered"] == 1


@pytest.mark.anyio
async def test_missing_primary_blob_is_dead_lettered(session_factory, blob_store, make_image) -> None:
    asset_id, primary_key = await _ingest(
        session_factory, blob_store, make_image(16, 16), filename="a.jpg", content_type="image/jpeg"
    )
    blob_store.remove(BUCKET, primary_key)
    pool = _pool(session_factory, blob_store)
    leased = await _lease(session_factory)
    assert await pool.process_leased_job(leased) == asset_worker.OUTCOME_DEAD_LETTER

    failed = await _asset(session_factory, asset_id)
    assert failed.failure_reason.startswith("BlobNotFoundError")


@pytest.mark.anyio
async def test_run_processes_jobs_until_shutdown(session_factory, blob_store, make_image) -> None:
    pool = _pool(session_factory, blob_store)
    runner = asyncio.create_task(pool.run())
    asset_id, _ = await _ingest(session_factory, blob_store, make_image(800, 600), filename="a.jpg", content_type="image/jpeg")

    status = None
    for _ in range(200):
        found = await _asset(session_factory, asset_id)
        status = found.status
        if status == AssetStatus.completed:
            break
        await asyncio.sleep(0.05)
    assert status == AssetStatus.completed

    await pool.shutdown()
    await asyncio.wait_for(runner, timeout=5)
    assert pool.stopping


@pytest.mark.anyio
async def test_shutdown_cancels_jobs_past_grace_period(session_factory, blob_store, make_image) -> None:
    pool = _pool(session_factory, blob_store, grace_period=0.1, concurrency=1)

    async def _hang(_leased):
        await asyncio.sleep(30)

    pool._derive = _hang
    runner = asyncio.create_task(pool.run())
    asset_id, _ = await _ingest(session_factory, blob_store, make_image(8, 8), filename="a.jpg", content_type="image/jpeg")
    for _ in range(200):
        if pool.in_flight:
            break
        await asyncio.sleep(0.02)
    assert pool.in_flight == 1

    await pool.shutdown()
    await asyncio.wait_for(runner, timeout=5)

    # The lease is left to lapse; the record stays in processing for the redelivery.
    stuck = await _asset(session_factory, asset_id)
    assert stuck.status == AssetStatus.processing
    async with session_factory() as session:
        job = (await session.execute(select(ProcessingJob))).scalars().one()
        assert job.status == JobStatus.leased


@pytest.mark.anyio
async def test_shutdown_does_not_wait_for_blocking_derivation(
    session_factory, blob_store, make_image, monkeypatch: pytest.MonkeyPatch
) -> None:
    release = threading.Event()

    def _stuck_decode(*_args, **_kwargs):
        release.wait(30)
        raise RuntimeError("released")

    monkeypatch.setattr(asset_worker.derivation, "derive", _stuck_decode)
    pool = _pool(session_factory, blob_store, grace_period=0.1, concurrency=1)
    runner = asyncio.create_task(pool.run())
    try:
        await _ingest(session_factory, blob_store, make_image(8, 8), filename="a.jpg", content_type="image/jpeg")
        for _ in range(200):
            if pool.in_flight:
                break
            await asyncio.sleep(0.02)
        assert pool.in_flight == 1

        started = time.monotonic()
        await pool.shutdown()
        await asyncio.wait_for(runner, timeout=5)
        assert time.monotonic() - started < 3
    finally:
        release.set()


@pytest.mark.anyio
async def test_heartbeat_is_published_with_ttl(session_factory, blob_store) -> None:
    redis = _RedisStub()
    pool = _pool(session_factory, blob_store, redis=redis, worker_id="worker-a")
    await pool.publish_heartbeat()

    key = f"{asset_worker.settings.worker_heartbeat_prefix}:worker-a"
    value, ttl = redis.values[key]
    assert json.loads(value)["worker_id"] == "worker-a"
    assert ttl == asset_worker.settings.worker_heartbeat_ttl_seconds


@pytest.mark.anyio
async def test_build_worker_pool_wires_ready_handles(session_factory, blob_store) -> None:
    redis = _RedisStub()
    pool = await asset_worker.build_worker_pool(session_factory=session_factory, blob_store=blob_store, redis=redis)
    assert pool.session_factory is session_factory
    assert pool.blob_store is blob_store
    assert pool.redis is redis
    assert pool.bucket == asset_worker.settings.blob_bucket


@pytest.mark.anyio
async def test_build_worker_pool_fails_fast_without_metadata_store(tmp_path, blob_store) -> None:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'nested' / 'db.sqlite'}")
    try:
        with pytest.raises(RuntimeError, match="cannot start"):
            await asset_worker.build_worker_pool(
                session_factory=async_sessionmaker(engine), blob_store=blob_store, redis=_RedisStub()
            )
    finally:
        await engine.dispose()


@pytest.mark.anyio
async def test_unknown_asset_id_job_never_creates_record(session_factory, blob_store) -> None:
    async with session_factory() as session:
        await job_queue.enqueue(session, asset_id=uuid4(), blob_key="ghost.jpg", mime_kind=MediaKind.image)
    pool = _pool(session_factory, blob_store)
    leased = await _lease(session_factory)
    assert await pool.process_leased_job(leased) == asset_worker.OUTCOME_DROPPED
    async with session_factory() as session:
        assert (await session.execute(select(Asset))).scalars().all() == []
