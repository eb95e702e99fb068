"""Data models for feedsync."""

from dataclasses import asdict, dataclass, field

from .errors import InvalidScope, SyncError


@dataclass(frozen=True)
class PersonalScope:
    """Feeds owned by a single user."""

    user_id: str

    def predicate(self) -> dict:
        return {"owner_user_id": self.user_id}

    def ownership(self) -> dict:
        return {"owner_user_id": self.user_id, "group_id": None}


@dataclass(frozen=True)
class GroupScope:
    """Feeds shared by a group."""

    group_id: str

    def predicate(self) -> dict:
        return {"group_id": self.group_id}

    def ownership(self) -> dict:
        return {"owner_user_id": None, "group_id": self.group_id}


Scope = PersonalScope | GroupScope


@dataclass
class RawEntry:
    """One entry as found in a feed document, before normalization."""

    title: str | None = None
    link: str | None = None
    summary: str | None = None
    content: str | None = None
    published: str | None = None
    source_id: str | None = None
    position: int = 0


@dataclass
class FeedSource:
    """A registered feed subscription."""

    id: str
    url: str
    integration_name: str
    title: str = ""
    integration_alias: str | None = None
    last_fetched: str | None = None
    owner_user_id: str | None = None
    group_id: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def scope(self) -> Scope:
        """Ownership scope; exactly one of user or group must be set."""
        if self.owner_user_id and not self.group_id:
            return PersonalScope(self.owner_user_id)
        if self.group_id and not self.owner_user_id:
            return GroupScope(self.group_id)
        raise InvalidScope(
            f"Feed {self.id} must belong to exactly one of a user or a group",
            url=self.url,
        )

    @classmethod
    def from_row(cls, row: dict) -> "FeedSource":
        return cls(
            id=row["id"],
            url=row["url"],
            integration_name=row.get("integration_name") or "",
            title=row.get("title") or "",
            integration_alias=row.get("integration_alias"),
            last_fetched=row.get("last_fetched"),
            owner_user_id=row.get("owner_user_id"),
            group_id=row.get("group_id"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def to_row(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class FeedEntry:
    """A normalized, sanitized entry ready to be stored."""

    id: str
    feed_id: str | None
    title: str
    link: str
    content: str
    content_snippet: str
    pub_date: str
    integration_name: str
    created_at: str
    integration_alias: str | None = None
    owner_user_id: str | None = None
    group_id: str | None = None

    @classmethod
    def from_row(cls, row: dict) -> "FeedEntry":
        return cls(
            id=row["id"],
            feed_id=row.get("feed_id"),
            title=row.get("title") or "",
            link=row.get("link") or "",
            content=row.get("content") or "",
            content_snippet=row.get("content_snippet") or "",
            pub_date=row.get("pub_date") or "",
            integration_name=row.get("integration_name") or "",
            created_at=row.get("created_at") or "",
            integration_alias=row.get("integration_alias"),
            owner_user_id=row.get("owner_user_id"),
            group_id=row.get("group_id"),
        )

    def to_row(self) -> dict:
        return asdict(self)


@dataclass
class SyncResult:
    """Outcome of synchronizing one feed."""

    new_entries: list[FeedEntry] = field(default_factory=list)
    error: SyncError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class BatchSyncResult:
    """Outcome of synchronizing every feed in a scope.

    ``error`` is informational: partial results in ``per_feed_new_entries``
    stay valid even when some feeds failed.
    """

    per_feed_new_entries: dict[str, list[FeedEntry]] = field(default_factory=dict)
    error: SyncError | None = None
    feeds_processed: int = 0

    @property
    def total_new_entries(self) -> int:
        return sum(len(entries) for entries in self.per_feed_new_entries.values())

    @property
    def failed_feed_ids(self) -> list[str]:
        if self.error is None:
            return []
        return [f.feed_id for f in self.error.failures if f.feed_id is not None]
