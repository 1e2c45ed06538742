from __future__ import annotations

import logging

from assetflow.core.config import settings

_enabled = False


def init_sentry(component: str = "asset-worker") -> bool:
    global _enabled
    if not settings.sentry_dsn:
        return False

    import sentry_sdk
    from sentry_sdk.integrations import Integration
    from sentry_sdk.integrations.asyncio import AsyncioIntegration
    from sentry_sdk.integrations.logging import LoggingIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    integrations: list[Integration] = [AsyncioIntegration(), SqlalchemyIntegration()]
    if settings.sentry_enable_logs:
        level = getattr(logging, str(settings.sentry_log_level or "error").strip().upper(), logging.ERROR)
        integrations.append(LoggingIntegration(level=level, event_level=level))

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        release=settings.app_version,
        traces_sample_rate=settings.sentry_traces_sample_rate,
        integrations=integrations,
        send_default_pii=False,
    )
    sentry_sdk.set_tag("component", component)
    _enabled = True
    return True


def report_dead_letter(exc: BaseException, *, job_id: str, asset_id: str, attempt: int) -> bool:
    """Send a dead-lettered job's final error to Sentry, tagged with its job and asset."""
    if not _enabled:
        return False
    import sentry_sdk

    with sentry_sdk.new_scope() as scope:
        scope.set_tag("job_id", job_id)
        scope.set_tag("asset_id", asset_id)
        scope.set_context("job", {"attempt": attempt})
        sentry_sdk.capture_exception(exc)
    return True
