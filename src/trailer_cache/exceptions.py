"""
Custom exceptions for the trailer cache system
"""
from typing import Optional


class CacheError(Exception):
    """
    Base exception for all cache-related errors.

    Intent:
    Provides a common base class for all cache-specific exceptions, enabling
    callers (the HTTP layer in particular) to catch cache failures distinctly
    from programming errors and map them onto user-facing responses.
    """
    pass


class CacheConfigurationError(CacheError):
    """
    Raised when cache configuration is invalid.

    Intent:
    Startup-time error. An unusable storage directory or contradictory limits
    should stop the process rather than surface on the first request.
    """
    pass


class CatalogError(CacheError):
    """
    Raised when a catalog (SQLite) operation fails.

    Common scenarios:
    - Database locked past the busy timeout
    - Disk full while writing the journal
    - Corrupted database file
    """
    pass


class InvalidContentIdError(CacheError):
    """
    Raised when a content id cannot be mapped safely onto a store path.

    Intent:
    Content ids become file names. Anything carrying path separators or
    traversal sequences is rejected before it reaches the filesystem.
    """
    pass


class ContentNotFoundError(CacheError):
    """
    Raised when requested content is neither cached nor fetchable.

    Carries a ``fallback`` hint so the caller can degrade gracefully (show a
    backdrop instead of a video, for example).
    """

    def __init__(self, message: str, content_id: Optional[str] = None, fallback: str = "backdrop"):
        super().__init__(message)
        self.content_id = content_id
        self.fallback = fallback


class NotAvailableError(ContentNotFoundError):
    """
    Raised when the source resolver has no remote locator for a content id.
    """
    pass


class AcquisitionFailedError(CacheError):
    """
    Raised when populating the cache for a miss fails.

    Intent:
    Wraps lower level failures (lock wait, download, commit) with the content
    id and operation so the request handler can decide between a retry hint
    and a fallback suggestion. The original exception is kept in ``cause``
    and chained via ``raise ... from``.
    """

    retryable = False

    def __init__(self, message: str, content_id: Optional[str] = None, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.content_id = content_id
        self.cause = cause


class LockTimeoutError(AcquisitionFailedError):
    """
    Raised when another acquisition held the content lock past the wait window.

    Retryable: the other acquisition is likely to finish shortly.
    """

    retryable = True


class FetchFailedError(AcquisitionFailedError):
    """
    Raised when the remote fetch fails (network error, remote 404, downloader
    process failure or timeout). Never retried automatically.
    """
    pass


class CommitFailedError(AcquisitionFailedError):
    """
    Raised when moving a download into the store or registering it fails.

    Any partially written file has been removed by the time this propagates.
    """
    pass


class RangeNotSatisfiableError(CacheError):
    """
    Raised when a byte-range request cannot be served for a file.
    """

    def __init__(self, message: str, file_size: int):
        super().__init__(message)
        self.file_size = file_size


class CacheRequestError(CacheError):
    """
    Handler-level failure with a fallback indicator.

    Intent:
    The cache request handler converts every acquisition failure into this
    error so HTTP callers get one shape: a message, a fallback presentation
    hint, and whether retrying makes sense.
    """

    def __init__(
        self,
        message: str,
        content_id: Optional[str] = None,
        fallback: str = "youtube",
        retryable: bool = False,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.content_id = content_id
        self.fallback = fallback
        self.retryable = retryable
        self.cause = cause
