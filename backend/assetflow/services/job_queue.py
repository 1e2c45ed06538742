from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import UUID, uuid4

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from assetflow.core import metrics
from assetflow.core.config import settings
from assetflow.core.redis_client import await_if_needed
from assetflow.models.asset import Asset, AssetStatus, MediaKind
from assetflow.models.job import JobStatus, ProcessingJob

logger = logging.getLogger(__name__)

QUEUE_KEY = str(getattr(settings, "queue_key", "assetflow:jobs:queue") or "assetflow:jobs:queue")
OPEN_STATUSES = (JobStatus.queued, JobStatus.leased)


@dataclass(slots=True, frozen=True)
class JobPayload:
    asset_id: UUID
    blob_key: str
    mime_kind: MediaKind


@dataclass(slots=True, frozen=True)
class LeasedJob:
    job_id: UUID
    lease_token: str
    payload: JobPayload
    attempt: int
    max_attempts: int
    deliveries: int
    stall_recovered: bool = False


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _retry_delay_seconds(*, attempt: int, max_attempts: int, base_delay: int, max_delay: int) -> int | None:
    if attempt >= max_attempts:
        return None
    delay = max(1, int(base_delay)) * (2 ** max(0, int(attempt) - 1))
    return min(delay, max(1, int(max_delay)))


async def notify(redis, job_id: UUID) -> None:
    if redis is None:
        return
    try:
        await await_if_needed(redis.rpush(QUEUE_KEY, str(job_id)))
    except Exception:
        # The job row is already durable; workers still find it by polling.
        logger.warning("job_queue_notify_failed", extra={"job_id": str(job_id)}, exc_info=True)


async def enqueue(
    session: AsyncSession,
    *,
    asset_id: UUID,
    blob_key: str,
    mime_kind: MediaKind,
    max_attempts: int | None = None,
    redis=None,
) -> ProcessingJob:
    attempts = max(1, int(max_attempts or settings.job_max_attempts))
    job = ProcessingJob(
        id=uuid4(),
        asset_id=asset_id,
        blob_key=blob_key,
        mime_kind=mime_kind,
        status=JobStatus.queued,
        attempt=0,
        max_attempts=attempts,
        deliveries=0,
        available_at=_now(),
    )
    session.add(job)
    await session.commit()
    logger.info(
        "job_queue_enqueued",
        extra={"job_id": str(job.id), "asset_id": str(asset_id), "mime_kind": mime_kind.value},
    )
    await notify(redis, job.id)
    return job


def _leasable(now: datetime):
    return or_(
        and_(ProcessingJob.status == JobStatus.queued, ProcessingJob.available_at <= now),
        and_(ProcessingJob.status == JobStatus.leased, ProcessingJob.lease_expires_at <= now),
    )


def _assets_with_active_lease(now: datetime):
    return select(ProcessingJob.asset_id).where(
        ProcessingJob.status == JobStatus.leased,
        ProcessingJob.lease_expires_at > now,
    )


async def _dead_letter_stalled(session: AsyncSession, job: ProcessingJob, *, now: datetime) -> bool:
    """Dead-letter a job whose deliveries keep stalling; its asset is marked failed."""
    reason = f"Job stalled more than {int(settings.job_max_stalled_count)} time(s)"
    result = await session.execute(
        update(ProcessingJob)
        .where(ProcessingJob.id == job.id, ProcessingJob.deliveries == job.deliveries, _leasable(now))
        .values(
            status=JobStatus.dead_letter,
            attempt=int(job.attempt or 0) + 1,
            last_error=reason,
            dead_lettered_at=now,
            lease_owner=None,
            lease_token=None,
            lease_expires_at=None,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False
    # Only the stalled delivery's own claim (or a never-claimed record) is failed.
    await session.execute(
        update(Asset)
        .where(
            Asset.id == job.asset_id,
            or_(
                Asset.status == AssetStatus.pending,
                and_(Asset.status == AssetStatus.processing, Asset.lease_token == job.lease_token),
            ),
        )
        .values(status=AssetStatus.failed, failure_reason=reason)
        .execution_options(synchronize_session=False)
    )
    await _prune(session, status=JobStatus.dead_letter, keep=settings.job_retention_dead_letter)
    await session.commit()
    metrics.record_job_dead_lettered()
    logger.error(
        "job_queue_stalled_job_dead_lettered",
        extra={"job_id": str(job.id), "asset_id": str(job.asset_id), "stalls": int(job.stalls or 0)},
    )
    return True


async def lease(
    session: AsyncSession,
    *,
    worker_id: str,
    visibility_timeout: float | None = None,
    batch_size: int = 10,
) -> LeasedJob | None:
    """Claim the next leasable job, skipping assets that already have a live lease."""
    now = _now()
    timeout = float(visibility_timeout or settings.job_visibility_timeout_seconds)
    candidates = (
        (
            await session.execute(
                select(ProcessingJob)
                .where(_leasable(now), ProcessingJob.asset_id.not_in(_assets_with_active_lease(now)))
                .order_by(ProcessingJob.available_at.asc(), ProcessingJob.created_at.asc())
                .limit(max(1, int(batch_size)))
                .execution_options(populate_existing=True)
            )
        )
        .scalars()
        .all()
    )
    for job in candidates:
        token = uuid4().hex
        stalled = job.status == JobStatus.leased
        if stalled and int(job.stalls or 0) >= int(settings.job_max_stalled_count):
            await _dead_letter_stalled(session, job, now=now)
            continue
        result = await session.execute(
            update(ProcessingJob)
            .where(
                ProcessingJob.id == job.id,
                ProcessingJob.deliveries == job.deliveries,
                _leasable(now),
                ProcessingJob.asset_id.not_in(_assets_with_active_lease(now)),
            )
            .values(
                status=JobStatus.leased,
                lease_owner=worker_id[:120],
                lease_token=token,
                lease_expires_at=now + timedelta(seconds=timeout),
                deliveries=job.deliveries + 1,
                stalls=int(job.stalls or 0) + (1 if stalled else 0),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            continue
        await session.commit()
        metrics.record_job_leased()
        if stalled:
            metrics.record_stalled_lease_recovered()
            logger.warning(
                "job_queue_stalled_lease_recovered",
                extra={"job_id": str(job.id), "asset_id": str(job.asset_id), "previous_owner": job.lease_owner},
            )
        return LeasedJob(
            job_id=job.id,
            lease_token=token,
            payload=JobPayload(asset_id=job.asset_id, blob_key=job.blob_key, mime_kind=job.mime_kind),
            attempt=int(job.attempt or 0),
            max_attempts=int(job.max_attempts or settings.job_max_attempts),
            deliveries=int(job.deliveries or 0) + 1,
            stall_recovered=stalled,
        )
    await session.rollback()
    return None


async def extend_lease(
    session: AsyncSession,
    job_id: UUID,
    *,
    lease_token: str,
    visibility_timeout: float | None = None,
) -> bool:
    timeout = float(visibility_timeout or settings.job_visibility_timeout_seconds)
    result = await session.execute(
        update(ProcessingJob)
        .where(
            ProcessingJob.id == job_id,
            ProcessingJob.status == JobStatus.leased,
            ProcessingJob.lease_token == lease_token,
        )
        .values(lease_expires_at=_now() + timedelta(seconds=timeout))
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return result.rowcount == 1


async def _prune(session: AsyncSession, *, status: JobStatus, keep: int) -> None:
    order_col = ProcessingJob.completed_at if status == JobStatus.completed else ProcessingJob.dead_lettered_at
    newest = (
        select(ProcessingJob.id)
        .where(ProcessingJob.status == status)
        .order_by(order_col.desc(), ProcessingJob.created_at.desc())
        .limit(max(0, int(keep)))
    )
    await session.execute(
        delete(ProcessingJob)
        .where(ProcessingJob.status == status, ProcessingJob.id.not_in(newest))
        .execution_options(synchronize_session=False)
    )


async def ack(session: AsyncSession, job_id: UUID, *, lease_token: str, retention: int | None = None) -> bool:
    """Mark a leased job done. A caller that lost its lease cannot ack the redelivered job."""
    result = await session.execute(
        update(ProcessingJob)
        .where(
            ProcessingJob.id == job_id,
            ProcessingJob.status == JobStatus.leased,
            ProcessingJob.lease_token == lease_token,
        )
        .values(status=JobStatus.completed, completed_at=_now(), lease_expires_at=None)
        .execution_options(synchronize_session=False)
    )
    acked = result.rowcount == 1
    if acked:
        keep = settings.job_retention_completed if retention is None else retention
        await _prune(session, status=JobStatus.completed, keep=keep)
    await session.commit()
    if not acked:
        logger.warning("job_queue_ack_lease_lost", extra={"job_id": str(job_id)})
    return acked


async def fail(
    session: AsyncSession,
    job_id: UUID,
    *,
    lease_token: str,
    retryable: bool,
    error: str | None = None,
    retention: int | None = None,
) -> JobStatus | None:
    """Re-queue with backoff or dead-letter. Returns the new status, or None if the lease was lost."""
    job = await session.scalar(
        select(ProcessingJob)
        .where(
            ProcessingJob.id == job_id,
            ProcessingJob.status == JobStatus.leased,
            ProcessingJob.lease_token == lease_token,
        )
        .execution_options(populate_existing=True)
    )
    if job is None:
        await session.rollback()
        logger.warning("job_queue_fail_lease_lost", extra={"job_id": str(job_id)})
        return None

    now = _now()
    attempt = int(job.attempt or 0) + 1
    delay = None
    if retryable:
        delay = _retry_delay_seconds(
            attempt=attempt,
            max_attempts=int(job.max_attempts or settings.job_max_attempts),
            base_delay=settings.job_retry_base_delay_seconds,
            max_delay=settings.job_retry_max_delay_seconds,
        )
    values: dict[str, object] = {
        "attempt": attempt,
        "last_error": (error or "")[:4000] or None,
        "lease_owner": None,
        "lease_token": None,
        "lease_expires_at": None,
    }
    if delay is None:
        values.update(status=JobStatus.dead_letter, dead_lettered_at=now)
        new_status = JobStatus.dead_letter
    else:
        values.update(status=JobStatus.queued, available_at=now + timedelta(seconds=delay))
        new_status = JobStatus.queued
    result = await session.execute(
        update(ProcessingJob)
        .where(ProcessingJob.id == job_id, ProcessingJob.lease_token == lease_token)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await session.rollback()
        return None
    if new_status == JobStatus.dead_letter:
        keep = settings.job_retention_dead_letter if retention is None else retention
        await _prune(session, status=JobStatus.dead_letter, keep=keep)
    await session.commit()

    if new_status == JobStatus.dead_letter:
        metrics.record_job_dead_lettered()
        logger.error(
            "job_queue_dead_lettered",
            extra={"job_id": str(job_id), "asset_id": str(job.asset_id), "attempt": attempt, "retryable": retryable},
        )
    else:
        metrics.record_job_retried()
        logger.info(
            "job_queue_retry_scheduled",
            extra={"job_id": str(job_id), "asset_id": str(job.asset_id), "attempt": attempt, "retry_in_seconds": delay},
        )
    return new_status


async def get_job(session: AsyncSession, job_id: UUID) -> ProcessingJob | None:
    return await session.scalar(
        select(ProcessingJob).where(ProcessingJob.id == job_id).execution_options(populate_existing=True)
    )


async def open_job_for_asset(session: AsyncSession, asset_id: UUID) -> ProcessingJob | None:
    return await session.scalar(
        select(ProcessingJob)
        .where(ProcessingJob.asset_id == asset_id, ProcessingJob.status.in_(OPEN_STATUSES))
        .order_by(ProcessingJob.created_at.desc())
        .limit(1)
    )


async def list_dead_letters(session: AsyncSession, *, limit: int = 50) -> list[ProcessingJob]:
    rows = await session.execute(
        select(ProcessingJob)
        .where(ProcessingJob.status == JobStatus.dead_letter)
        .order_by(ProcessingJob.dead_lettered_at.desc(), ProcessingJob.created_at.desc())
        .limit(max(1, min(int(limit or 50), 500)))
    )
    return list(rows.scalars().all())


async def requeue_dead_letter(session: AsyncSession, job_id: UUID, *, redis=None) -> ProcessingJob | None:
    job = await get_job(session, job_id)
    if job is None or job.status != JobStatus.dead_letter:
        return None
    job.status = JobStatus.queued
    job.attempt = 0
    job.stalls = 0
    job.available_at = _now()
    job.dead_lettered_at = None
    job.lease_owner = None
    job.lease_token = None
    job.lease_expires_at = None
    session.add(job)
    await session.commit()
    logger.info("job_queue_dead_letter_requeued", extra={"job_id": str(job.id), "asset_id": str(job.asset_id)})
    await notify(redis, job.id)
    return job


async def queue_stats(session: AsyncSession) -> dict[str, int]:
    rows = await session.execute(
        select(ProcessingJob.status, func.count()).group_by(ProcessingJob.status)
    )
    stats = {status.value: 0 for status in JobStatus}
    for status, count in rows.all():
        stats[JobStatus(status).value] = int(count or 0)
    return stats
