from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import signal
import socket
from datetime import datetime, timezone
from functools import partial
from uuid import uuid4

import anyio
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from assetflow.core import metrics
from assetflow.core.config import settings
from assetflow.core.errors import MetadataStoreUnavailableError, failure_reason, is_retryable
from assetflow.core.logging_config import configure_logging, job_log_context
from assetflow.core.redis_client import await_if_needed, close_redis, get_redis
from assetflow.core.sentry import init_sentry, report_dead_letter
from assetflow.core.startup_checks import validate_settings
from assetflow.models.asset import AssetStatus
from assetflow.models.job import JobStatus
from assetflow.services import derivation, job_queue, metadata_store
from assetflow.services.blob_store import BlobStore, S3BlobStore, build_blob_store
from assetflow.services.job_queue import LeasedJob
from assetflow.services.metadata_store import DerivationResult

logger = logging.getLogger(__name__)

OUTCOME_COMPLETED = "completed"
OUTCOME_DROPPED = "dropped"
OUTCOME_NOOP = "noop"
OUTCOME_STALE = "stale"
OUTCOME_RETRY = "retry"
OUTCOME_DEAD_LETTER = "dead_letter"


def _worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid4().hex[:8]}"


class AssetWorkerPool:
    """Fixed-size pool of lease, process and ack loops sharing one job queue."""

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        blob_store: BlobStore,
        bucket: str,
        redis=None,
        concurrency: int | None = None,
        poll_interval: float | None = None,
        visibility_timeout: float | None = None,
        grace_period: float | None = None,
        worker_id: str | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.blob_store = blob_store
        self.bucket = bucket
        self.redis = redis
        self.concurrency = max(1, int(concurrency or settings.worker_concurrency))
        self.poll_interval = max(0.01, float(poll_interval or settings.worker_poll_interval_seconds))
        self.visibility_timeout = max(1.0, float(visibility_timeout or settings.job_visibility_timeout_seconds))
        self.grace_period = max(0.0, float(settings.worker_shutdown_grace_seconds if grace_period is None else grace_period))
        self.worker_id = worker_id or _worker_id()
        self.in_flight = 0
        self._stop = asyncio.Event()
        self._loops: list[asyncio.Task[None]] = []

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def request_stop(self) -> None:
        if not self._stop.is_set():
            logger.info("asset_worker_stop_requested", extra={"worker_id": self.worker_id, "in_flight": self.in_flight})
        self._stop.set()

    async def wait_for_stop_request(self) -> None:
        await self._stop.wait()

    async def run(self) -> None:
        logger.info(
            "asset_worker_started",
            extra={"worker_id": self.worker_id, "concurrency": self.concurrency, "redis": self.redis is not None},
        )
        self._loops = [
            asyncio.create_task(self._worker_loop(f"{self.worker_id}/{index}")) for index in range(self.concurrency)
        ]
        heartbeat = asyncio.create_task(self._heartbeat_loop()) if self.redis is not None else None
        try:
            await asyncio.gather(*self._loops, return_exceptions=True)
        finally:
            if heartbeat is not None:
                heartbeat.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await heartbeat
        logger.info("asset_worker_stopped", extra={"worker_id": self.worker_id})

    async def shutdown(self) -> None:
        """Stop leasing, let in-flight jobs finish within the grace period, then cancel the rest."""
        self.request_stop()
        if not self._loops:
            return
        _, pending = await asyncio.wait(self._loops, timeout=self.grace_period)
        if pending:
            logger.warning(
                "asset_worker_shutdown_grace_expired",
                extra={"worker_id": self.worker_id, "cancelled": len(pending)},
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    async def _sleep_unless_stopped(self, seconds: float) -> None:
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)

    async def _wait_for_work(self) -> None:
        if self.redis is None:
            await self._sleep_unless_stopped(self.poll_interval)
            return
        try:
            # Wake-up only; the job itself is always claimed through lease().
            await await_if_needed(self.redis.blpop([job_queue.QUEUE_KEY], timeout=max(1, int(self.poll_interval))))
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.warning("asset_worker_wakeup_failed", extra={"worker_id": self.worker_id}, exc_info=True)
            await self._sleep_unless_stopped(self.poll_interval)

    async def _worker_loop(self, loop_id: str) -> None:
        while not self._stop.is_set():
            try:
                async with self.session_factory() as session:
                    leased = await job_queue.lease(
                        session, worker_id=loop_id, visibility_timeout=self.visibility_timeout
                    )
                if leased is None:
                    await self._wait_for_work()
                    continue
                await self.process_leased_job(leased)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("asset_worker_loop_error", extra={"worker_id": loop_id})
                await self._sleep_unless_stopped(self.poll_interval)

    async def process_leased_job(self, leased: LeasedJob) -> str:
        self.in_flight += 1
        try:
            with job_log_context(str(leased.job_id), str(leased.payload.asset_id)):
                return await self._process(leased)
        finally:
            self.in_flight -= 1

    async def _process(self, leased: LeasedJob) -> str:
        payload = leased.payload
        extra = {"asset_id": str(payload.asset_id), "attempt": leased.attempt, "deliveries": leased.deliveries}
        async with self.session_factory() as session:
            asset = await metadata_store.find_by_id(session, payload.asset_id)
            if asset is None:
                await job_queue.ack(session, leased.job_id, lease_token=leased.lease_token)
                metrics.record_job_dropped()
                logger.info("asset_worker_asset_missing", extra=extra)
                return OUTCOME_DROPPED
            if asset.status == AssetStatus.completed:
                await job_queue.ack(session, leased.job_id, lease_token=leased.lease_token)
                logger.info("asset_worker_already_completed", extra=extra)
                return OUTCOME_NOOP
            if not await metadata_store.claim_for_processing(session, payload.asset_id, lease_token=leased.lease_token):
                await job_queue.ack(session, leased.job_id, lease_token=leased.lease_token)
                metrics.record_job_dropped()
                logger.info("asset_worker_claim_rejected", extra=extra)
                return OUTCOME_DROPPED

            logger.info("asset_worker_processing", extra={**extra, "mime_kind": payload.mime_kind.value})
            try:
                result = await self._derive_with_lease_renewal(leased)
            except Exception as exc:
                return await self._handle_failure(session, leased, exc)

            if not await metadata_store.mark_completed(
                session, payload.asset_id, lease_token=leased.lease_token, result=result
            ):
                await job_queue.ack(session, leased.job_id, lease_token=leased.lease_token)
                metrics.record_stale_write_discarded()
                logger.warning("asset_worker_stale_write_discarded", extra=extra)
                return OUTCOME_STALE
            await job_queue.ack(session, leased.job_id, lease_token=leased.lease_token)
            metrics.record_job_completed()
            logger.info(
                "asset_worker_completed",
                extra={**extra, "thumbnail_key": result.thumbnail_key, "resolutions": len(result.resolutions)},
            )
            return OUTCOME_COMPLETED

    async def _derive(self, leased: LeasedJob) -> DerivationResult:
        payload = leased.payload
        data = await anyio.to_thread.run_sync(self.blob_store.get, self.bucket, payload.blob_key, abandon_on_cancel=True)
        return await anyio.to_thread.run_sync(
            partial(
                derivation.derive,
                payload.mime_kind,
                data,
                primary_key=payload.blob_key,
                blob_store=self.blob_store,
                bucket=self.bucket,
            ),
            abandon_on_cancel=True,
        )

    async def _derive_with_lease_renewal(self, leased: LeasedJob) -> DerivationResult:
        renewal = asyncio.create_task(self._renew_lease(leased))
        try:
            return await self._derive(leased)
        finally:
            renewal.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await renewal

    async def _renew_lease(self, leased: LeasedJob) -> None:
        interval = max(0.5, self.visibility_timeout / 2.0)
        while True:
            await asyncio.sleep(interval)
            try:
                async with self.session_factory() as session:
                    extended = await job_queue.extend_lease(
                        session,
                        leased.job_id,
                        lease_token=leased.lease_token,
                        visibility_timeout=self.visibility_timeout,
                    )
            except Exception:
                logger.warning("asset_worker_lease_renewal_failed", extra={"job_id": str(leased.job_id)}, exc_info=True)
                continue
            if not extended:
                logger.warning("asset_worker_lease_lost", extra={"job_id": str(leased.job_id)})
                return

    async def _handle_failure(self, session: AsyncSession, leased: LeasedJob, exc: Exception) -> str:
        reason = failure_reason(exc)
        retryable = is_retryable(exc)
        await session.rollback()
        marked = await metadata_store.mark_failed(
            session, leased.payload.asset_id, lease_token=leased.lease_token, reason=reason
        )
        metrics.record_job_failed()
        status = await job_queue.fail(
            session, leased.job_id, lease_token=leased.lease_token, retryable=retryable, error=reason
        )
        logger.warning(
            "asset_worker_job_failed",
            extra={
                "asset_id": str(leased.payload.asset_id),
                "attempt": leased.attempt + 1,
                "retryable": retryable,
                "reason": reason,
                "asset_marked_failed": marked,
                "queue_status": status.value if status is not None else None,
            },
        )
        if status is None:
            return OUTCOME_STALE
        if status == JobStatus.dead_letter:
            report_dead_letter(
                exc, job_id=str(leased.job_id), asset_id=str(leased.payload.asset_id), attempt=leased.attempt + 1
            )
            return OUTCOME_DEAD_LETTER
        return OUTCOME_RETRY

    def _heartbeat_payload(self) -> dict[str, object]:
        return {
            "worker_id": self.worker_id,
            "hostname": socket.gethostname(),
            "pid": os.getpid(),
            "app_version": (settings.app_version or "").strip() or None,
            "concurrency": self.concurrency,
            "in_flight": self.in_flight,
            "last_seen_at": datetime.now(timezone.utc).isoformat(),
        }

    async def publish_heartbeat(self) -> None:
        if self.redis is None:
            return
        key = f"{settings.worker_heartbeat_prefix}:{self.worker_id}"
        await await_if_needed(
            self.redis.set(
                key,
                json.dumps(self._heartbeat_payload(), separators=(",", ":"), ensure_ascii=False),
                ex=max(10, int(settings.worker_heartbeat_ttl_seconds)),
            )
        )

    async def _heartbeat_loop(self) -> None:
        interval = max(1.0, float(settings.worker_heartbeat_ttl_seconds) / 2.0)
        while not self._stop.is_set():
            try:
                await self.publish_heartbeat()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("asset_worker_heartbeat_failed", extra={"worker_id": self.worker_id})
            await self._sleep_unless_stopped(interval)


async def check_metadata_store(session_factory: async_sessionmaker[AsyncSession]) -> None:
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
    except Exception as exc:
        raise MetadataStoreUnavailableError(f"Metadata store is unreachable: {exc}") from exc


async def build_worker_pool(
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    blob_store: BlobStore | None = None,
    redis=None,
) -> AssetWorkerPool:
    """Wire a pool from settings. Raises RuntimeError when a backing store cannot be reached."""
    validate_settings()
    if session_factory is None:
        from assetflow.db.session import SessionLocal

        session_factory = SessionLocal
    try:
        await check_metadata_store(session_factory)
    except MetadataStoreUnavailableError as exc:
        raise RuntimeError(f"Asset worker cannot start: {exc}") from exc

    store = blob_store or build_blob_store()
    if isinstance(store, S3BlobStore):
        await anyio.to_thread.run_sync(store.ensure_bucket, settings.blob_bucket)
    return AssetWorkerPool(
        session_factory=session_factory,
        blob_store=store,
        bucket=settings.blob_bucket,
        redis=redis if redis is not None else get_redis(),
    )


async def run_asset_worker() -> None:
    pool = await build_worker_pool()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, pool.request_stop)
    runner = asyncio.create_task(pool.run())
    try:
        await pool.wait_for_stop_request()
        await pool.shutdown()
        await runner
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)
        await close_redis()
        from assetflow.db.session import engine

        await engine.dispose()


def main() -> None:  # pragma: no cover
    configure_logging(json_logs=settings.json_logs, level=settings.log_level)
    init_sentry()
    asyncio.run(run_asset_worker())


if __name__ == "__main__":  # pragma: no cover
    main()
