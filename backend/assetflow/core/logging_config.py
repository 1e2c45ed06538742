from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

job_id_ctx_var: ContextVar[str | None] = ContextVar("job_id", default=None)
asset_id_ctx_var: ContextVar[str | None] = ContextVar("asset_id", default=None)

# Attributes every LogRecord carries; anything else came in through extra={...}.
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}

_MAX_TEXT = 5000
_MAX_ITEMS = 100


@contextmanager
def job_log_context(job_id: str, asset_id: str | None = None) -> Iterator[None]:
    """Stamp records emitted inside the block with the job (and asset) being processed."""
    job_token = job_id_ctx_var.set(job_id)
    asset_token = asset_id_ctx_var.set(asset_id)
    try:
        yield
    finally:
        asset_id_ctx_var.reset(asset_token)
        job_id_ctx_var.reset(job_token)


class JobIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.job_id = job_id_ctx_var.get() or "-"
        if not hasattr(record, "asset_id"):
            asset_id = asset_id_ctx_var.get()
            if asset_id is not None:
                record.asset_id = asset_id
        return True


def _json_safe(value: Any) -> Any:
    if value is None or isinstance(value, (int, float, bool)):
        return value
    if isinstance(value, dict):
        items = list(value.items())
        safe = {str(key): _json_safe(item) for key, item in items[:_MAX_ITEMS]}
        if len(items) > _MAX_ITEMS:
            safe["..."] = "truncated"
        return safe
    if isinstance(value, (list, tuple, set, frozenset)):
        items = list(value)
        safe_items = [_json_safe(item) for item in items[:_MAX_ITEMS]]
        if len(items) > _MAX_ITEMS:
            safe_items.append("...truncated")
        return safe_items
    return str(value)[:_MAX_TEXT]


class JsonFormatter(logging.Formatter):
    """One JSON object per record: the event name plus its extras."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "job_id": getattr(record, "job_id", "-"),
        }
        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRS or key in payload or key.startswith("_"):
                continue
            payload[key] = _json_safe(value)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def configure_logging(json_logs: bool = False, level: str = "INFO") -> None:
    handler = logging.StreamHandler()
    handler.addFilter(JobIdFilter())
    if json_logs:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s [job=%(job_id)s] %(message)s"))

    log_level = getattr(logging, str(level or "INFO").strip().upper(), logging.INFO)
    logging.basicConfig(level=log_level, handlers=[handler], force=True)
