"""Error taxonomy for feed imports and the service facade."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class FeedImportError(Exception):
    """Base error for the import pipeline."""

    message: str
    code: str = "import_error"

    def __str__(self) -> str:
        return self.message


@dataclass(slots=True)
class FatalImportError(FeedImportError):
    """Error that terminates the whole import run."""

    code: str = "fatal"


@dataclass(slots=True)
class FetchTimeoutError(FatalImportError):
    """Feed download did not finish before the hard deadline."""

    code: str = "timeout"
    url: str | None = None


@dataclass(slots=True)
class NetworkFailureError(FatalImportError):
    """Transport-level failure while downloading a feed."""

    code: str = "network"
    url: str | None = None


@dataclass(slots=True)
class NonSuccessStatusError(FatalImportError):
    """Feed URL answered with a non-2xx status."""

    code: str = "http_status"
    url: str | None = None
    status_code: int = 0


@dataclass(slots=True)
class EmptyFeedError(FatalImportError):
    """Feed URL answered 2xx with an empty body."""

    code: str = "empty_feed"
    url: str | None = None


@dataclass(slots=True)
class MalformedCsvError(FatalImportError):
    """Feed body could not be decoded as CSV."""

    code: str = "malformed_csv"
    line: int | None = None


@dataclass(slots=True)
class ImportStoppedError(FatalImportError):
    """Run aborted because a stop was requested."""

    message: str = "stopped by user"
    code: str = "stopped"


@dataclass(slots=True)
class RowValidationError(FeedImportError):
    """Feed row rejected before it reached the catalog."""

    code: str = "invalid_row"
    field: str | None = None


@dataclass(slots=True)
class ServiceError(FeedImportError):
    """Error surfaced to callers of the import service."""

    code: str = "service_error"


@dataclass(slots=True)
class NotFoundError(ServiceError):
    code: str = "not_found"


@dataclass(slots=True)
class ForbiddenError(ServiceError):
    code: str = "forbidden"


@dataclass(slots=True)
class InvalidStateError(ServiceError):
    code: str = "invalid_state"


@dataclass(slots=True)
class ConflictError(ServiceError):
    code: str = "conflict"
