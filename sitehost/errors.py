"""Tagged error types for upload ingestion and site serving.

Each component raises a single exception class carrying a ``kind`` enum, so
callers switch on the kind instead of probing exception attributes. The HTTP
layer maps kinds to status codes through ``http_status``.
"""

from __future__ import annotations

from enum import Enum


class ExtractionErrorKind(str, Enum):
    """Why an uploaded bundle was refused."""

    MALICIOUS_ARCHIVE = "MALICIOUS_ARCHIVE"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    UNSUPPORTED_FORMAT = "UNSUPPORTED_FORMAT"


class ServeErrorKind(str, Enum):
    """Why a site request could not be answered with a file."""

    USER_NOT_FOUND = "USER_NOT_FOUND"
    PROJECT_NOT_FOUND = "PROJECT_NOT_FOUND"
    PROJECT_DISABLED = "PROJECT_DISABLED"
    ACCESS_DENIED = "ACCESS_DENIED"
    FILE_NOT_FOUND = "FILE_NOT_FOUND"


_EXTRACTION_STATUS: dict[ExtractionErrorKind, int] = {
    ExtractionErrorKind.MALICIOUS_ARCHIVE: 403,
    ExtractionErrorKind.QUOTA_EXCEEDED: 413,
    ExtractionErrorKind.UNSUPPORTED_FORMAT: 400,
}

_SERVE_STATUS: dict[ServeErrorKind, int] = {
    ServeErrorKind.USER_NOT_FOUND: 404,
    ServeErrorKind.PROJECT_NOT_FOUND: 404,
    ServeErrorKind.PROJECT_DISABLED: 403,
    ServeErrorKind.ACCESS_DENIED: 403,
    ServeErrorKind.FILE_NOT_FOUND: 404,
}

_SERVE_MESSAGES: dict[ServeErrorKind, str] = {
    ServeErrorKind.USER_NOT_FOUND: "User not found",
    ServeErrorKind.PROJECT_NOT_FOUND: "Project not found",
    ServeErrorKind.PROJECT_DISABLED: "Project has been disabled by admin",
    ServeErrorKind.ACCESS_DENIED: "Access denied",
    ServeErrorKind.FILE_NOT_FOUND: "File not found",
}


class ExtractionError(Exception):
    """Raised when an upload cannot be stored as a site.

    Attributes:
        kind: The failure category.
        detail: Human-readable description (safe to show to the uploader).
    """

    def __init__(self, kind: ExtractionErrorKind, detail: str) -> None:
        self.kind = kind
        self.detail = detail
        super().__init__(f"{kind.value}: {detail}")

    @property
    def http_status(self) -> int:
        return _EXTRACTION_STATUS.get(self.kind, 400)


class ServeError(Exception):
    """Raised when a site request resolves to an error outcome.

    Attributes:
        kind: The failure category.
        detail: Internal description for logs; visitors only see ``message``.
    """

    def __init__(self, kind: ServeErrorKind, detail: str = "") -> None:
        self.kind = kind
        self.detail = detail
        super().__init__(f"{kind.value}: {detail}" if detail else kind.value)

    @property
    def http_status(self) -> int:
        return _SERVE_STATUS.get(self.kind, 404)

    @property
    def message(self) -> str:
        """Short plain-text body shown to site visitors."""
        return _SERVE_MESSAGES.get(self.kind, "Not found")


class NameConflictError(Exception):
    """Raised when a username or project name is already taken."""
