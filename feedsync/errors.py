"""Error taxonomy for feed synchronization."""

from dataclasses import dataclass, field
from enum import Enum


class ErrorKind(str, Enum):
    """Closed set of reasons a synchronization can fail."""

    NETWORK_FAILURE = "network_failure"
    TIMEOUT = "timeout"
    ALL_ROUTES_FAILED = "all_routes_failed"
    PARSE_FAILURE = "parse_failure"
    NOT_FOUND = "not_found"
    STORE_READ_FAILURE = "store_read_failure"
    STORE_WRITE_FAILURE = "store_write_failure"
    AUTHENTICATION_FAILURE = "authentication_failure"
    AGGREGATE = "aggregate"
    UNEXPECTED = "unexpected"


@dataclass(frozen=True)
class SyncError:
    """Why a single feed (or a batch of feeds) failed to synchronize."""

    kind: ErrorKind
    message: str
    feed_id: str | None = None
    url: str | None = None
    reasons: tuple[str, ...] = ()
    failures: tuple["SyncError", ...] = field(default=())

    @classmethod
    def aggregate(cls, failures: list["SyncError"]) -> "SyncError":
        return cls(
            kind=ErrorKind.AGGREGATE,
            message=f"Errors occurred while synchronizing {len(failures)} feeds",
            failures=tuple(failures),
        )

    def to_dict(self) -> dict:
        data = {"kind": self.kind.value, "message": self.message}
        if self.feed_id is not None:
            data["feed_id"] = self.feed_id
        if self.url is not None:
            data["url"] = self.url
        if self.reasons:
            data["reasons"] = list(self.reasons)
        if self.failures:
            data["failures"] = [failure.to_dict() for failure in self.failures]
        return data


class FeedSyncError(Exception):
    """Base class for failures raised inside feedsync components."""

    kind = ErrorKind.UNEXPECTED

    def __init__(self, message: str, url: str | None = None):
        super().__init__(message)
        self.message = message
        self.url = url

    def to_sync_error(self, feed_id: str | None = None) -> SyncError:
        return SyncError(
            kind=self.kind, message=self.message, feed_id=feed_id, url=self.url
        )


class FetchFailure(FeedSyncError):
    kind = ErrorKind.NETWORK_FAILURE


class FetchTimeout(FetchFailure):
    kind = ErrorKind.TIMEOUT

    def __init__(self, url: str, timeout_ms: int):
        super().__init__(f"Request timeout after {timeout_ms}ms", url=url)
        self.timeout_ms = timeout_ms


class AllRetrievalRoutesFailed(FetchFailure):
    kind = ErrorKind.ALL_ROUTES_FAILED

    def __init__(self, url: str, reasons: list[str]):
        message = "All retrieval routes failed:\n" + "\n".join(reasons)
        super().__init__(message, url=url)
        self.reasons = list(reasons)

    def to_sync_error(self, feed_id: str | None = None) -> SyncError:
        return SyncError(
            kind=self.kind,
            message=self.message,
            feed_id=feed_id,
            url=self.url,
            reasons=tuple(self.reasons),
        )


class ParseFailure(FeedSyncError):
    kind = ErrorKind.PARSE_FAILURE


class InvalidScope(FeedSyncError):
    """A feed row owned by both (or neither of) a user and a group."""

    kind = ErrorKind.STORE_WRITE_FAILURE


class StoreError(FeedSyncError):
    """Base class for failures reported by a store backend."""


class NotFound(StoreError):
    kind = ErrorKind.NOT_FOUND


class StoreReadFailure(StoreError):
    kind = ErrorKind.STORE_READ_FAILURE


class StoreWriteFailure(StoreError):
    kind = ErrorKind.STORE_WRITE_FAILURE


class DuplicateKeyConflict(StoreWriteFailure):
    """Some rows of an insert already existed; the rest were written."""

    def __init__(self, inserted: list[dict], conflicting_ids: list[str]):
        super().__init__(
            f"Duplicate key conflict on {len(conflicting_ids)} rows"
        )
        self.inserted = list(inserted)
        self.conflicting_ids = list(conflicting_ids)


class FeedAlreadyRegistered(StoreWriteFailure):
    """The scope already subscribes to this URL."""


class PermissionDenied(StoreWriteFailure):
    """The store refused the write; rows written before the refusal are kept."""

    def __init__(self, message: str, inserted: list[dict] | None = None):
        super().__init__(message)
        self.inserted = list(inserted or [])


class AuthenticationFailure(StoreError):
    kind = ErrorKind.AUTHENTICATION_FAILURE

    def __init__(self, message: str = "User not authenticated"):
        super().__init__(message)
