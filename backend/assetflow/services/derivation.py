from __future__ import annotations

import logging
from io import BytesIO
from pathlib import PurePosixPath
from typing import Any

from PIL import Image, UnidentifiedImageError

from assetflow.core.config import settings
from assetflow.core.errors import UnsupportedMediaError, VideoProbeError
from assetflow.models.asset import MediaKind
from assetflow.services import video_probe
from assetflow.services.blob_store import BlobStore
from assetflow.services.metadata_store import DerivationResult

logger = logging.getLogger(__name__)

THUMBNAIL_CONTENT_TYPE = "image/jpeg"

_COLOR_SPACES = {
    "1": "b-w",
    "L": "b-w",
    "LA": "b-w",
    "I": "b-w",
    "I;16": "grey16",
    "F": "b-w",
    "P": "srgb",
    "PA": "srgb",
    "RGB": "srgb",
    "RGBA": "srgb",
    "RGBX": "srgb",
    "CMYK": "cmyk",
    "YCbCr": "ycbcr",
    "LAB": "lab",
    "HSV": "hsv",
}


def thumbnail_key_for(primary_key: str, *, namespace: str | None = None) -> str:
    """Deterministic preview key: the full primary key plus ".jpg", under the thumbnail namespace.

    The source extension stays in the name so "photo.png" and "photo.jpg" never share a preview.
    """
    prefix = (namespace or settings.thumbnail_namespace).strip("/")
    path = PurePosixPath(str(primary_key).lstrip("/"))
    return f"{prefix}/{path.as_posix()}.jpg"


def _render_preview(img: Image.Image, *, max_width: int, quality: int) -> tuple[bytes, int, int]:
    preview = img.convert("RGB")
    if preview.width > max_width:
        height = max(1, round(preview.height * max_width / preview.width))
        preview = preview.resize((max_width, height), Image.Resampling.LANCZOS)
    buf = BytesIO()
    preview.save(buf, format="JPEG", quality=quality, optimize=True)
    return buf.getvalue(), preview.width, preview.height


def derive_image(
    data: bytes,
    *,
    primary_key: str,
    blob_store: BlobStore,
    bucket: str,
    max_width: int | None = None,
    quality: int | None = None,
) -> DerivationResult:
    width_limit = max(1, int(max_width or settings.thumbnail_max_width))
    jpeg_quality = int(quality or settings.thumbnail_quality)
    try:
        with Image.open(BytesIO(data)) as img:
            img.load()
            width, height = img.size
            metadata: dict[str, Any] = {
                "width": int(width),
                "height": int(height),
                "format": (img.format or "unknown").lower(),
                "size": len(data),
                "channels": len(img.getbands()),
                "space": _COLOR_SPACES.get(img.mode, img.mode.lower()),
            }
            preview, preview_width, preview_height = _render_preview(img, max_width=width_limit, quality=jpeg_quality)
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
        raise UnsupportedMediaError(f"Cannot decode image {primary_key}: {exc}") from exc

    thumbnail_key = thumbnail_key_for(primary_key)
    blob_store.put(bucket, thumbnail_key, preview, THUMBNAIL_CONTENT_TYPE)
    metadata["thumbnail_width"] = preview_width
    metadata["thumbnail_height"] = preview_height
    return DerivationResult(metadata=metadata, thumbnail_key=thumbnail_key)


def derive_video(data: bytes, *, primary_key: str) -> DerivationResult:
    try:
        metadata = video_probe.probe_video(data, suffix=PurePosixPath(primary_key).suffix)
    except VideoProbeError as exc:
        logger.warning("derivation_video_probe_failed", extra={"primary_key": primary_key, "error": str(exc)})
        metadata = {"format": MediaKind.video.value, "size": len(data)}
    # Thumbnails and resolution ladders for video are not produced yet.
    return DerivationResult(metadata=metadata, thumbnail_key=None, resolutions=[])


def derive_minimal(data: bytes, *, kind: MediaKind) -> DerivationResult:
    return DerivationResult(metadata={"size": len(data), "format": kind.value})


def derive(
    kind: MediaKind,
    data: bytes,
    *,
    primary_key: str,
    blob_store: BlobStore,
    bucket: str,
) -> DerivationResult:
    """Compute metadata and derived artifacts for one primary blob. Blocking; run it in a worker thread."""
    match kind:
        case MediaKind.image:
            return derive_image(data, primary_key=primary_key, blob_store=blob_store, bucket=bucket)
        case MediaKind.video:
            return derive_video(data, primary_key=primary_key)
        case MediaKind.document | MediaKind.other:
            return derive_minimal(data, kind=kind)
    raise UnsupportedMediaError(f"Unsupported media kind: {kind!r}")
