from __future__ import annotations

from typing import Any


class PicLibError(Exception):
    """Base class for errors surfaced by the library services.

    ``status_code`` and ``code`` are used by the HTTP layer to build the
    error response; services never look at them.
    """

    status_code = 500
    code = "internal_error"

    def __init__(self, detail: str = "", **context: Any) -> None:
        super().__init__(detail or self.code)
        self.detail = detail or self.code
        self.context = context


class ValidationError(PicLibError):
    status_code = 400
    code = "validation_error"


class UnsupportedFormat(ValidationError):
    code = "unsupported_format"


class NotFoundError(PicLibError):
    status_code = 404
    code = "not_found"


class BlobNotFoundError(NotFoundError):
    """A metadata row points at a blob the blob store does not hold."""


class UnrecognizedMedia(PicLibError):
    status_code = 400
    code = "unrecognized_media"


class StoreInconsistency(PicLibError):
    """One store mutation succeeded and the dependent one failed.

    Recorded in logs rather than raised once the primary mutation has
    already been committed.
    """

    code = "store_inconsistency"


class TransientInfrastructureError(PicLibError):
    status_code = 503
    code = "infrastructure_unavailable"


class TranscodeError(PicLibError):
    code = "transcode_failed"
