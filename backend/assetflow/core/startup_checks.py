from __future__ import annotations

import logging

from assetflow.core.config import settings

logger = logging.getLogger(__name__)

_BLOB_BACKENDS = {"local", "s3"}


def _is_production() -> bool:
    env = (settings.environment or "").strip().lower()
    return env in {"prod", "production"}


def _append_if(problems: list[str], *, condition: bool, message: str) -> None:
    if condition:
        problems.append(message)


def _validate_worker_settings(problems: list[str]) -> None:
    _append_if(
        problems,
        condition=int(settings.worker_concurrency) < 1,
        message="WORKER_CONCURRENCY must be at least 1.",
    )
    _append_if(
        problems,
        condition=float(settings.worker_poll_interval_seconds) <= 0,
        message="WORKER_POLL_INTERVAL_SECONDS must be positive.",
    )
    _append_if(
        problems,
        condition=int(settings.job_visibility_timeout_seconds) < 5,
        message="JOB_VISIBILITY_TIMEOUT_SECONDS must be at least 5.",
    )
    _append_if(
        problems,
        condition=int(settings.job_max_attempts) < 1,
        message="JOB_MAX_ATTEMPTS must be at least 1.",
    )
    _append_if(
        problems,
        condition=int(settings.job_max_stalled_count) < 0,
        message="JOB_MAX_STALLED_COUNT must not be negative.",
    )
    _append_if(
        problems,
        condition=int(settings.job_retry_base_delay_seconds) > int(settings.job_retry_max_delay_seconds),
        message="JOB_RETRY_BASE_DELAY_SECONDS must not exceed JOB_RETRY_MAX_DELAY_SECONDS.",
    )


def _validate_blob_settings(problems: list[str]) -> None:
    backend = (settings.blob_store_backend or "").strip().lower()
    _append_if(
        problems,
        condition=backend not in _BLOB_BACKENDS,
        message="BLOB_STORE_BACKEND must be one of: local | s3.",
    )
    _append_if(
        problems,
        condition=not (settings.blob_bucket or "").strip(),
        message="BLOB_BUCKET must be set.",
    )
    _append_if(
        problems,
        condition=backend == "s3" and not (settings.s3_endpoint_url or "").strip(),
        message="S3_ENDPOINT_URL must be set when BLOB_STORE_BACKEND=s3.",
    )
    _append_if(
        problems,
        condition=not 1 <= int(settings.thumbnail_quality) <= 95,
        message="THUMBNAIL_QUALITY must be between 1 and 95.",
    )
    _append_if(
        problems,
        condition=int(settings.thumbnail_max_width) < 1,
        message="THUMBNAIL_MAX_WIDTH must be at least 1.",
    )


def _validate_production_settings(problems: list[str]) -> None:
    if not _is_production():
        return
    _append_if(
        problems,
        condition=(settings.presign_secret or "").strip() in {"", "dev-presign-secret"},
        message="PRESIGN_SECRET must be changed from the default in production.",
    )
    _append_if(
        problems,
        condition=not (settings.redis_url or "").strip(),
        message="REDIS_URL must be configured in production.",
    )


def validate_settings() -> None:
    """Fail fast on settings the worker pool cannot run with."""
    problems: list[str] = []
    _validate_worker_settings(problems)
    _validate_blob_settings(problems)
    _validate_production_settings(problems)

    if problems:
        raise RuntimeError("Configuration checks failed:\n- " + "\n- ".join(problems))
