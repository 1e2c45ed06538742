from __future__ import annotations


class AssetFlowError(Exception):
    """Base class for pipeline errors."""


class TransientError(AssetFlowError):
    """Failure expected to go away on retry (network, store unavailable)."""


class PermanentError(AssetFlowError):
    """Failure that will repeat for the same input; never retried."""


class BlobStoreUnavailableError(TransientError):
    pass


class MetadataStoreUnavailableError(TransientError):
    pass


class BlobNotFoundError(PermanentError):
    def __init__(self, bucket: str, key: str) -> None:
        super().__init__(f"Blob not found: {bucket}/{key}")
        self.bucket = bucket
        self.key = key


class UnsupportedMediaError(PermanentError):
    pass


class VideoProbeError(AssetFlowError):
    """ffprobe could not describe the input; handled by the video deriver."""


class AssetNotFoundError(AssetFlowError):
    pass


class InvalidTransitionError(AssetFlowError):
    pass


def is_retryable(exc: BaseException) -> bool:
    # Unknown failures are retried until max_attempts, then dead-lettered.
    return not isinstance(exc, PermanentError)


def failure_reason(exc: BaseException) -> str:
    message = str(exc).strip()
    reason = f"{type(exc).__name__}: {message}" if message else type(exc).__name__
    return reason[:1000]
