"""Error taxonomy of the thumbnail pipeline.

``ValidationError`` maps to HTTP 400, everything else to HTTP 500.
``CacheWriteError`` never reaches the caller: the publisher logs it.
"""

from typing import Optional


class ThumbnailError(Exception):
    status_code = 500


class ConfigurationError(ThumbnailError):
    pass


class ValidationError(ThumbnailError):
    status_code = 400

    MISSING_KEY = "missing_key"
    BAD_TIME = "bad_time"
    BAD_DIMENSIONS = "bad_dimensions"
    BAD_FIT = "bad_fit"

    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason
        self.message = message


class ResolutionError(ThumbnailError):
    pass


class GenerationError(ThumbnailError):
    def __init__(self, message: str, diagnostic: Optional[str] = None):
        super().__init__(message)
        self.message = message
        # full stderr for operator logs, not for the HTTP body
        self.diagnostic = diagnostic


class CacheReadError(ThumbnailError):
    pass


class CacheWriteError(ThumbnailError):
    pass
