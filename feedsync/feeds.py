"""Feed subscriptions and the unified entry listing."""

import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, datetime

from .errors import FeedAlreadyRegistered, NotFound
from .logging_config import create_execution_logger
from .models import FeedEntry, FeedSource, Scope, SyncResult
from .store import FEEDS_TABLE, ITEMS_TABLE, Store
from .sync import FeedUpdater


@dataclass
class EntryPage:
    entries: list[FeedEntry] = field(default_factory=list)
    total_count: int = 0
    limit: int = 20
    offset: int = 0

    @property
    def has_more(self) -> bool:
        return self.offset + self.limit < self.total_count


@dataclass(frozen=True)
class IntegrationCount:
    name: str
    display_name: str
    count: int


@dataclass(frozen=True)
class FeedStats:
    id: str
    name: str
    last_fetched: str | None
    item_count: int


class FeedRegistry:
    """Registers, renames and removes feeds, and lists their entries."""

    def __init__(self, store: Store, updater: FeedUpdater, execution_id: str | None = None):
        self.store = store
        self.updater = updater
        self.logger = create_execution_logger("registry", execution_id)

    async def add_feed(
        self,
        url: str,
        integration_name: str,
        scope: Scope,
        integration_alias: str | None = None,
    ) -> tuple[FeedSource, SyncResult]:
        """Validate and register a feed, then run its first synchronization.

        Raises:
            FeedAlreadyRegistered: If ``scope`` already subscribes to ``url``
            FeedSyncError: If the feed cannot be fetched or parsed
        """
        existing = await self.store.select_many(
            FEEDS_TABLE, {**scope.predicate(), "url": url}
        )
        if existing.rows:
            raise FeedAlreadyRegistered(f"Feed already registered: {url}", url=url)

        preview = await self.updater.preview_feed(url, integration_name, integration_alias)

        now = datetime.now(UTC).isoformat()
        feed = FeedSource(
            id=str(uuid.uuid4()),
            url=url,
            title=preview.title or integration_name,
            integration_name=integration_name,
            integration_alias=integration_alias,
            created_at=now,
            updated_at=now,
            **scope.ownership(),
        )
        await self.store.insert_many(FEEDS_TABLE, [feed.to_row()])
        self.logger.info(
            f"Registered feed {integration_name}",
            feed_id=feed.id,
            feed_url=url,
            previewed_entries=len(preview.entries),
        )

        result = await self.updater.sync_feed(feed.id)
        return feed, result

    async def rename_feed(
        self, feed_id: str, integration_name: str, integration_alias: str | None = None
    ) -> FeedSource:
        """Rename a feed; its stored entries carry the new names too."""
        row = await self.store.select_one(FEEDS_TABLE, {"id": feed_id})
        patch = {
            "integration_name": integration_name,
            "integration_alias": integration_alias,
        }
        await self.store.update(
            FEEDS_TABLE,
            {"id": feed_id},
            {**patch, "title": integration_name, "updated_at": datetime.now(UTC).isoformat()},
        )
        await self.store.update(ITEMS_TABLE, {"feed_id": feed_id}, patch)
        self.logger.info(f"Renamed feed to {integration_name}", feed_id=feed_id)
        return FeedSource.from_row({**row, **patch, "title": integration_name})

    async def delete_feed(self, feed_id: str) -> int:
        """Remove a feed and every entry it owns; returns the entries removed."""
        try:
            await self.store.select_one(FEEDS_TABLE, {"id": feed_id})
        except NotFound as e:
            raise NotFound(f"Feed {feed_id} not found") from e

        removed = await self.store.delete_many(ITEMS_TABLE, {"feed_id": feed_id})
        await self.store.delete_many(FEEDS_TABLE, {"id": feed_id})
        self.logger.info(f"Deleted feed and {removed} entries", feed_id=feed_id)
        return removed

    async def list_feeds(self, scope: Scope) -> list[FeedSource]:
        result = await self.store.select_many(
            FEEDS_TABLE, scope.predicate(), order_by="created_at", descending=True
        )
        return [FeedSource.from_row(row) for row in result.rows]

    async def list_entries(
        self,
        scope: Scope,
        limit: int = 20,
        offset: int = 0,
        integration: str | None = None,
    ) -> EntryPage:
        """One page of the unified feed, newest first."""
        predicate = scope.predicate()
        if integration:
            predicate["integration_name"] = integration
        result = await self.store.select_many(
            ITEMS_TABLE,
            predicate,
            order_by="pub_date",
            descending=True,
            limit=limit,
            offset=offset,
        )
        return EntryPage(
            entries=[FeedEntry.from_row(row) for row in result.rows],
            total_count=result.total_count,
            limit=limit,
            offset=offset,
        )

    async def integration_counts(self, scope: Scope) -> list[IntegrationCount]:
        """Stored entries per integration, sorted by display name.

        Entries are grouped on ``integration_name``. The display name is the
        alias of the first entry seen for that name, or the name itself.
        """
        result = await self.store.select_many(
            ITEMS_TABLE, scope.predicate(), order_by="integration_name"
        )
        display_names: dict[str, str] = {}
        counts: Counter[str] = Counter()
        for row in result.rows:
            name = row.get("integration_name") or ""
            display_names.setdefault(name, row.get("integration_alias") or name)
            counts[name] += 1

        return sorted(
            (
                IntegrationCount(name, display_names[name], count)
                for name, count in counts.items()
            ),
            key=lambda item: (item.display_name.casefold(), item.name),
        )

    async def feed_update_stats(self, scope: Scope) -> list[FeedStats]:
        """Freshness and stored entry count per feed, stalest first.

        Feeds that were never fetched come last; feeds with no stored
        entries are listed with a count of 0.
        """
        feeds = await self.store.select_many(
            FEEDS_TABLE, scope.predicate(), order_by="last_fetched"
        )
        items = await self.store.select_many(ITEMS_TABLE, scope.predicate())
        item_counts = Counter(row.get("feed_id") for row in items.rows)

        return [
            FeedStats(
                id=row["id"],
                name=row.get("integration_name") or "",
                last_fetched=row.get("last_fetched"),
                item_count=item_counts[row["id"]],
            )
            for row in feeds.rows
        ]
