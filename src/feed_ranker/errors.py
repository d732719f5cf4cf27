"""Error types raised and handled by the feed ranking pipeline."""


class FeedRankerError(Exception):
    """Base class for feed ranking errors."""


class RequestValidationError(FeedRankerError, ValueError):
    """Malformed feed request (unknown feed type, bad limit). Surfaced to the caller."""


class UpstreamUnavailable(FeedRankerError):
    """A collaborator (preferences, history, context, metrics) could not be reached."""

    def __init__(self, collaborator: str, cause: BaseException | None = None):
        self.collaborator = collaborator
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"{collaborator} unavailable{detail}")


class GenerationFailure(FeedRankerError):
    """Unexpected fault inside feed generation. Converted to an empty feed."""


class CacheError(FeedRankerError):
    """The backing key-value store failed. Treated as a cache miss."""
