# services/api/core/errors.py
"""
Error taxonomy for the viewer and guest-session flows.

Every boundary either recovers (retry / fallback) or turns one of these into
a user-visible message; main.py maps them to HTTP responses.
"""
from __future__ import annotations

from typing import Optional


class PdfViewerError(Exception):
    """Base class for all domain errors raised by this service."""


class ValidationError(PdfViewerError):
    """Malformed or missing required input at a boundary. Never retried."""


class FetchError(PdfViewerError):
    """Document bytes could not be retrieved by any method."""

    TIMEOUT = "timeout"
    CONNECTION_REFUSED = "connection_refused"
    GENERIC = "generic"

    def __init__(self, message: str, *, kind: str = GENERIC):
        super().__init__(message)
        self.kind = kind

    @property
    def user_message(self) -> str:
        if self.kind == self.TIMEOUT:
            return "The document server took too long to respond. Please try again."
        if self.kind == self.CONNECTION_REFUSED:
            return "Could not connect to the document server. Please check your connection and try again."
        return "Unable to load the document. The server might be unavailable or not allowing access."


class RenderError(PdfViewerError):
    """Rasterization produced no usable output after all remediation attempts."""

    def __init__(self, message: str, *, page_number: Optional[int] = None, attempts: int = 0):
        super().__init__(message)
        self.page_number = page_number
        self.attempts = attempts


class PersistenceError(PdfViewerError):
    """Datastore read/write failure for session records."""


class NotificationError(PdfViewerError):
    """
    The outbound email failed after the session was persisted.
    The session still exists and is redeemable.
    """

    TIMEOUT = "timeout"
    CONNECTION_REFUSED = "connection_refused"
    AUTH_FAILED = "auth_failed"
    SOCKET = "socket"
    GENERIC = "generic"

    def __init__(
        self,
        message: str,
        *,
        kind: str = GENERIC,
        session_id: Optional[str] = None,
        viewing_url: Optional[str] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.session_id = session_id
        self.viewing_url = viewing_url


class ViewerBusyError(PdfViewerError):
    """A render is already in flight for this viewer; the request was dropped."""


class SessionUnavailable(PdfViewerError):
    """
    Guest session cannot be used. All subclasses share the same user-facing
    message; `reason` is for diagnostics only.
    """

    reason = "unavailable"
    user_message = "Unable to access this document. The link may be invalid or no longer active."

    def __init__(self, session_id: str, detail: str = ""):
        super().__init__(detail or f"Guest session {session_id} unavailable ({self.reason})")
        self.session_id = session_id


class SessionNotFound(SessionUnavailable):
    reason = "not_found"


class SessionExpired(SessionUnavailable):
    reason = "expired"


class SessionAccessExhausted(SessionUnavailable):
    reason = "access_exhausted"
