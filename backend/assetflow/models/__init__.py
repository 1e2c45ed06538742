from assetflow.db.base import Base  # noqa: F401
from assetflow.models.asset import Asset, AssetResolution, AssetStatus, MediaKind  # noqa: F401
from assetflow.models.job import JobStatus, ProcessingJob  # noqa: F401
from assetflow.models.usage import OwnerStorageUsage  # noqa: F401

__all__ = [
    "Base",
    "Asset",
    "AssetResolution",
    "AssetStatus",
    "MediaKind",
    "JobStatus",
    "ProcessingJob",
    "OwnerStorageUsage",
]
