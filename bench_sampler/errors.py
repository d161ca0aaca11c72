from __future__ import annotations


class SamplingError(RuntimeError):
    """Base class for run-fatal sampling failures surfaced to the caller."""


class MediaAccessError(SamplingError):
    """The source media could not be read or localized."""


class StorageExhaustedError(SamplingError):
    """Temporary storage is full; the user has to free space before retrying."""

    hint = "Your device is low on storage. Please free up space and try again."


class UnreadableMediaError(SamplingError):
    """Every extraction tier came back empty."""


class WorkerCrashError(SamplingError):
    """The offloaded sampling worker raised or died."""

    def __init__(self, message: str, *, error_type: str | None = None, details: str | None = None) -> None:
        super().__init__(message)
        self.error_type = error_type
        self.details = details


class SamplingCancelledError(SamplingError):
    """The run was cancelled through its cancellation token."""
