"""
ffprobe wrapper for video metadata.

Probing never decodes frames; it only reads container and stream headers.
Every failure mode surfaces as ``VideoProbeError``.
"""

from __future__ import annotations

import json
import math
import subprocess
import tempfile
from fractions import Fraction
from pathlib import Path
from typing import Any

from assetflow.core.config import settings
from assetflow.core.errors import VideoProbeError


def run_ffprobe(path: Path, *, ffprobe_path: str | None = None, timeout: float | None = None) -> dict[str, Any]:
    """Run ffprobe on a file and return its parsed JSON report."""
    try:
        result = subprocess.run(
            [
                ffprobe_path or settings.ffprobe_path,
                "-v",
                "quiet",
                "-print_format",
                "json",
                "-show_format",
                "-show_streams",
                str(path),
            ],
            capture_output=True,
            text=True,
            check=True,
            timeout=float(timeout or settings.ffprobe_timeout_seconds),
        )
    except FileNotFoundError as exc:
        raise VideoProbeError(f"ffprobe not available: {exc}") from exc
    except subprocess.TimeoutExpired as exc:
        raise VideoProbeError("ffprobe timed out") from exc
    except subprocess.CalledProcessError as exc:
        raise VideoProbeError(f"ffprobe exited with status {exc.returncode}") from exc
    except OSError as exc:
        raise VideoProbeError(f"ffprobe could not run: {exc}") from exc

    try:
        report = json.loads(result.stdout or "")
    except json.JSONDecodeError as exc:
        raise VideoProbeError("ffprobe returned invalid JSON") from exc
    if not isinstance(report, dict) or not report.get("streams"):
        raise VideoProbeError("ffprobe found no streams")
    return report


def _to_int(value: Any) -> int | None:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _to_float(value: Any) -> float | None:
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    return result if math.isfinite(result) else None


def _frame_rate(value: Any) -> float | None:
    try:
        rate = Fraction(str(value))
    except (ValueError, ZeroDivisionError):
        return None
    if rate <= 0:
        return None
    return round(float(rate), 3)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def metadata_from_report(report: dict[str, Any], *, size: int) -> dict[str, Any]:
    streams = report.get("streams") or []
    container = report.get("format") or {}
    video = next((s for s in streams if s.get("codec_type") == "video"), None)
    audio = next((s for s in streams if s.get("codec_type") == "audio"), None)

    metadata: dict[str, Any] = {"size": int(size)}
    if video is not None:
        duration = _to_float(video.get("duration")) or _to_float(container.get("duration")) or 0.0
        metadata.update(
            width=_to_int(video.get("width")),
            height=_to_int(video.get("height")),
            duration=_round_half_up(duration),
            format=video.get("codec_name"),
            bit_rate=_to_int(video.get("bit_rate")) or _to_int(container.get("bit_rate")),
            frame_rate=_frame_rate(video.get("r_frame_rate")),
        )
    if audio is not None:
        metadata.update(
            audio_codec=audio.get("codec_name"),
            audio_channels=_to_int(audio.get("channels")),
            audio_sample_rate=_to_int(audio.get("sample_rate")),
        )
    metadata["container"] = container.get("format_name")
    return {key: value for key, value in metadata.items() if value is not None}


def probe_video(
    data: bytes,
    *,
    suffix: str = "",
    ffprobe_path: str | None = None,
    timeout: float | None = None,
) -> dict[str, Any]:
    """Describe in-memory video bytes. Raises ``VideoProbeError`` on any failure."""
    with tempfile.TemporaryDirectory(prefix="assetflow-probe-") as tmp_dir:
        path = Path(tmp_dir) / f"input{suffix or '.bin'}"
        path.write_bytes(data)
        report = run_ffprobe(path, ffprobe_path=ffprobe_path, timeout=timeout)
    return metadata_from_report(report, size=len(data))
