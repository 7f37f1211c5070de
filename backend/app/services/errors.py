"""Error taxonomy for the BaoGia quote service."""
from typing import Optional


class BaoGiaError(Exception):
    """Base class for every error raised by the service layer."""


class PersistenceError(BaoGiaError):
    """The document store failed to read or write. The operation was aborted as a whole."""


class RenderingError(BaoGiaError):
    """PDF rendering failed. Carries an HTTP-style status for the caller to display."""

    def __init__(self, message: str, status_code: int = 500, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.detail = detail or message


class ValidationRejection(BaoGiaError):
    """A user-facing check blocked an add/update. Raised only at the HTTP boundary."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message
