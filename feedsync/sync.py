"""Per-feed synchronization: fetch, parse, diff against the store, commit."""

from dataclasses import dataclass, field
from datetime import UTC, datetime

from .errors import (
    DuplicateKeyConflict,
    ErrorKind,
    FeedSyncError,
    NotFound,
    PermissionDenied,
    StoreError,
    SyncError,
)
from .fetch import DocumentFetcher
from .logging_config import ExecutionLogger, create_execution_logger
from .models import FeedEntry, FeedSource, SyncResult
from .parser import FeedDocumentParser, to_feed_entries
from .store import FEEDS_TABLE, ITEMS_TABLE, Store


@dataclass
class FeedPreview:
    """A parsed feed that is not registered yet."""

    url: str
    title: str
    family: str
    entries: list[FeedEntry] = field(default_factory=list)


class FeedUpdater:
    """Synchronizes one feed at a time against the store.

    Safe to run repeatedly and concurrently for the same feed: identities
    are deterministic and insert conflicts are absorbed.
    """

    def __init__(
        self,
        store: Store,
        fetcher: DocumentFetcher,
        parser: FeedDocumentParser | None = None,
        execution_id: str | None = None,
    ):
        self.store = store
        self.fetcher = fetcher
        self.parser = parser or FeedDocumentParser(execution_id)
        self.logger = create_execution_logger("updater", execution_id)

    async def sync_feed(self, feed_id: str) -> SyncResult:
        """Fetch ``feed_id`` and store the entries not seen before.

        Never raises: failures come back in ``SyncResult.error``.
        """
        logger = self.logger.bind(feed_id=feed_id)
        logger.info(f"Processing feed: {feed_id}")
        try:
            new_entries = await self._sync(feed_id, logger)
        except FeedSyncError as e:
            error = e.to_sync_error(feed_id)
            logger.log_sync_result(feed_id, 0, error_kind=error.kind.value)
            return SyncResult(error=error)
        except Exception as e:
            logger.error(
                f"Unexpected error synchronizing feed {feed_id}: {e}", error=str(e)
            )
            return SyncResult(
                error=SyncError(
                    kind=ErrorKind.UNEXPECTED,
                    message=str(e) or type(e).__name__,
                    feed_id=feed_id,
                )
            )

        logger.log_sync_result(feed_id, len(new_entries))
        return SyncResult(new_entries=new_entries)

    async def preview_feed(
        self, url: str, integration_name: str, integration_alias: str | None = None
    ) -> FeedPreview:
        """Fetch and parse a feed that has no id yet, without storing anything.

        Raises:
            FeedSyncError: If the feed cannot be fetched or parsed
        """
        document = await self.fetcher.fetch_document(url)
        parsed = self.parser.parse_document(document, url)
        candidate = FeedSource(
            id="",
            url=url,
            integration_name=integration_name,
            integration_alias=integration_alias,
        )
        return FeedPreview(
            url=url,
            title=parsed.title,
            family=parsed.family,
            entries=to_feed_entries(parsed.entries, candidate, namespaced=False),
        )

    async def _sync(self, feed_id: str, logger: ExecutionLogger) -> list[FeedEntry]:
        feed = await self._load_feed(feed_id, logger)

        document = await self.fetcher.fetch_document(feed.url)
        raw_entries = self.parser.parse(document, feed.url)
        remote_entries = to_feed_entries(raw_entries, feed)

        existing = await self.store.select_many(ITEMS_TABLE, {"feed_id": feed_id})
        existing_ids = {row["id"] for row in existing.rows}

        delta = []
        for entry in remote_entries:
            if entry.id not in existing_ids:
                delta.append(entry)
                existing_ids.add(entry.id)

        committed = []
        if delta:
            logger.info(
                f"Found {len(delta)} new entries for feed {feed_id}",
                remote_entries=len(remote_entries),
            )
            committed = await self._commit(feed, delta, logger)

        await self._mark_fetched(feed, logger)
        return committed

    async def _load_feed(self, feed_id: str, logger: ExecutionLogger) -> FeedSource:
        try:
            row = await self.store.select_one(FEEDS_TABLE, {"id": feed_id})
        except NotFound as e:
            raise NotFound(f"Feed {feed_id} not found") from e
        feed = FeedSource.from_row(row)
        # Raises InvalidScope before any fetch when ownership is ambiguous
        scope = feed.scope
        logger.debug("Feed loaded", feed_url=feed.url, scope=repr(scope))
        return feed

    async def _commit(
        self, feed: FeedSource, delta: list[FeedEntry], logger: ExecutionLogger
    ) -> list[FeedEntry]:
        rows = [entry.to_row() for entry in delta]
        try:
            inserted = await self.store.insert_many(ITEMS_TABLE, rows)
        except DuplicateKeyConflict as e:
            logger.warning(
                f"{len(e.conflicting_ids)} entries were already stored by a concurrent sync",
                conflicting_ids=e.conflicting_ids,
            )
            inserted = e.inserted
        except PermissionDenied as e:
            # Usually a concurrent duplicate hidden by row-level security, but
            # a real authorization failure looks the same: keep it visible.
            logger.warning(
                f"Insert permission denied for feed {feed.id}: {e.message}",
                error_kind="insert_permission_denied",
                inserted=len(e.inserted),
            )
            inserted = e.inserted

        inserted_ids = {row["id"] for row in inserted}
        return [entry for entry in delta if entry.id in inserted_ids]

    async def _mark_fetched(self, feed: FeedSource, logger: ExecutionLogger) -> None:
        now = datetime.now(UTC).isoformat()
        try:
            await self.store.update(FEEDS_TABLE, {"id": feed.id}, {"last_fetched": now})
        except StoreError as e:
            logger.warning(
                f"Could not update freshness timestamp for feed {feed.id}: {e.message}"
            )
