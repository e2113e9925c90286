"""Fetch-specific exceptions.

Every error carries a human-readable message plus a context dict naming the
package, source, or path involved. Errors are per-package: a batch keeps going
unless fail-fast is requested.
"""


class FetchError(Exception):
    """Base exception for resolution and fetch operations."""

    retryable = False

    def __init__(self, message: str, context: dict | None = None):
        """Initialize with message and optional context.

        Args:
            message: Human-readable error message
            context: Optional dict with additional context (package, source, paths)
        """
        super().__init__(message)
        self.message = message
        self.context = context or {}


# Caller errors (malformed input, never retried)


class InvalidSourceError(FetchError):
    """Source URL or path is malformed."""


class InvalidVersionError(FetchError):
    """Version string is not valid semver."""


class InvalidConstraintError(FetchError):
    """Version constraint uses unrecognized syntax."""


# Resolution failures (terminal for the package)


class PackageNotFoundError(FetchError):
    """Package name is unknown to the source."""


class ConstraintNotSatisfiedError(FetchError):
    """Package exists but no version satisfies the constraint."""


class RevisionNotFoundError(FetchError):
    """Git reference does not resolve to a commit."""


# Backend and environment failures


class SourceUnavailableError(FetchError):
    """Registry or repository could not be reached (transient)."""

    retryable = True


class FetchTimeoutError(SourceUnavailableError):
    """Per-package fetch deadline expired."""


class PathNotFoundError(FetchError):
    """Local path source does not exist."""


class InvalidPackageLayoutError(FetchError):
    """Package contents are missing a manifest or are otherwise malformed."""


class UnsupportedSourceError(FetchError):
    """No backend is configured for the source kind."""


class BackendError(FetchError):
    """Backend failed with an error outside the fetch taxonomy."""


# Cache and lifecycle


class CacheCorruptionError(FetchError):
    """Cache entry was corrupt and refetching it failed, or the cache root could not be written."""


class InitializationError(FetchError):
    """Fetcher could not be constructed (cache root unusable)."""


class BatchFetchError(FetchError):
    """One or more packages in a batch failed.

    The full per-package report is available as ``report``.
    """

    def __init__(self, message: str, report, context: dict | None = None):
        super().__init__(message, context)
        self.report = report
