"""Fan-out synchronization across many feeds."""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from .config import ScheduleConfig
from .errors import ErrorKind, FeedSyncError, SyncError
from .logging_config import create_execution_logger
from .models import BatchSyncResult, FeedEntry, PersonalScope, Scope, SyncResult
from .store import FEEDS_TABLE, Store
from .sync import FeedUpdater


@dataclass
class FeedOutcome:
    feed_id: str
    integration_name: str
    new_entries: int = 0
    error: SyncError | None = None

    @property
    def status(self) -> str:
        return "failed" if self.error else "success"

    def to_dict(self) -> dict:
        data = {
            "feed_id": self.feed_id,
            "integration_name": self.integration_name,
            "new_entries": self.new_entries,
            "status": self.status,
        }
        if self.error:
            data["error"] = self.error.to_dict()
        return data


@dataclass
class BatchReport:
    """Summary of a scheduled run over every registered feed."""

    timestamp: str
    total_feeds: int = 0
    outcomes: list[FeedOutcome] = field(default_factory=list)
    error: SyncError | None = None

    @property
    def total_new_entries(self) -> int:
        return sum(outcome.new_entries for outcome in self.outcomes)

    @property
    def total_errors(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.error)

    def to_dict(self) -> dict:
        data = {
            "timestamp": self.timestamp,
            "total_feeds": self.total_feeds,
            "total_new_entries": self.total_new_entries,
            "total_errors": self.total_errors,
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
        }
        if self.error:
            data["error"] = self.error.to_dict()
        return data


@dataclass
class ManualUpdateReport:
    success: bool
    message: str
    new_entries: int = 0
    error: SyncError | None = None


class SyncHandle:
    """Cancellation token for a periodic sync loop, owned by its caller."""

    def __init__(self):
        self._stop = asyncio.Event()
        self.task: asyncio.Task | None = None

    @property
    def cancelled(self) -> bool:
        return self._stop.is_set()

    def cancel(self) -> None:
        self._stop.set()

    async def sleep(self, seconds: float) -> bool:
        """Wait up to ``seconds``; return True if cancelled meanwhile."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except TimeoutError:
            return False
        return True

    async def join(self) -> None:
        if self.task is not None:
            await self.task


class FeedScheduler:
    """Runs the feed updater over every feed of a scope concurrently."""

    def __init__(
        self,
        store: Store,
        updater: FeedUpdater,
        config: ScheduleConfig | None = None,
        execution_id: str | None = None,
    ):
        self.store = store
        self.updater = updater
        self.config = config or ScheduleConfig()
        self.logger = create_execution_logger("scheduler", execution_id)

    async def sync_all(self, scope: Scope | None = None) -> BatchSyncResult:
        """Synchronize every feed in ``scope`` (the current user's by default).

        Feeds run concurrently and independently. Failures are collected into
        one aggregate error next to the successful partial results.
        """
        try:
            if scope is None:
                scope = PersonalScope(await self.store.get_current_principal())
            feeds = await self.store.select_many(FEEDS_TABLE, scope.predicate())
        except FeedSyncError as e:
            self.logger.error(f"Could not enumerate feeds: {e.message}", error_kind=e.kind.value)
            return BatchSyncResult(error=e.to_sync_error())

        feed_ids = [row["id"] for row in feeds.rows]
        self.logger.info(
            f"Processing {len(feed_ids)} {type(scope).__name__} feeds",
            feed_count=len(feed_ids),
        )

        results = await asyncio.gather(
            *(self.updater.sync_feed(feed_id) for feed_id in feed_ids),
            return_exceptions=True,
        )

        updates: dict[str, list[FeedEntry]] = {}
        failures: list[SyncError] = []
        for feed_id, result in zip(feed_ids, results):
            result = _as_sync_result(feed_id, result)
            if result.error:
                failures.append(result.error)
            elif result.new_entries:
                updates[feed_id] = result.new_entries

        batch = BatchSyncResult(
            per_feed_new_entries=updates,
            error=SyncError.aggregate(failures) if failures else None,
            feeds_processed=len(feed_ids),
        )
        self.logger.info(
            f"Found {batch.total_new_entries} new entries across {len(updates)} feeds",
            failed_feeds=len(failures),
        )
        return batch

    async def sync_everything(self) -> BatchReport:
        """Scheduled run over all feeds, least recently fetched first, in batches."""
        report = BatchReport(timestamp=datetime.now(UTC).isoformat())
        try:
            feeds = await self.store.select_many(FEEDS_TABLE, {}, order_by="last_fetched")
        except FeedSyncError as e:
            self.logger.error(f"Could not enumerate feeds: {e.message}", error_kind=e.kind.value)
            report.error = e.to_sync_error()
            return report

        # Never-fetched feeds sort last in the store but must go first
        rows = [row for row in feeds.rows if not row.get("last_fetched")] + [
            row for row in feeds.rows if row.get("last_fetched")
        ]
        report.total_feeds = len(rows)
        batch_size = max(self.config.batch_size, 1)

        for start in range(0, len(rows), batch_size):
            batch = rows[start : start + batch_size]
            results = await asyncio.gather(
                *(self.updater.sync_feed(row["id"]) for row in batch),
                return_exceptions=True,
            )
            for row, result in zip(batch, results):
                result = _as_sync_result(row["id"], result)
                report.outcomes.append(
                    FeedOutcome(
                        feed_id=row["id"],
                        integration_name=row.get("integration_name") or "",
                        new_entries=len(result.new_entries),
                        error=result.error,
                    )
                )

        self.logger.info(
            f"Update completed: {report.total_new_entries} new entries, "
            f"{report.total_errors} errors",
            total_feeds=report.total_feeds,
        )
        return report

    async def update_now(
        self, feed_id: str | None = None, scope: Scope | None = None
    ) -> ManualUpdateReport:
        """Manual refresh of one feed, or of every feed in ``scope``."""
        if feed_id:
            result = await self.updater.sync_feed(feed_id)
            if result.error:
                return ManualUpdateReport(
                    success=False,
                    message=f"Error updating feed: {result.error.message}",
                    error=result.error,
                )
            count = len(result.new_entries)
            message = (
                f"Feed updated: {count} new entries"
                if count
                else "Feed verified: no new entries"
            )
            return ManualUpdateReport(success=True, message=message, new_entries=count)

        batch = await self.sync_all(scope)
        if batch.error and batch.error.kind != ErrorKind.AGGREGATE:
            return ManualUpdateReport(
                success=False, message=batch.error.message, error=batch.error
            )

        count = batch.total_new_entries
        if count:
            message = (
                f"Update completed: {batch.feeds_processed} feeds processed, "
                f"{count} new entries found"
            )
        else:
            message = (
                f"Verification completed: {batch.feeds_processed} feeds verified, "
                "no new entries"
            )
        if batch.error:
            message += f" ({len(batch.error.failures)} feeds failed)"
        return ManualUpdateReport(
            success=True, message=message, new_entries=count, error=batch.error
        )

    def start_periodic_sync(
        self,
        on_update: Callable[[BatchSyncResult], None],
        scope: Scope | None = None,
        interval_seconds: float | None = None,
    ) -> SyncHandle:
        """Repeat ``sync_all`` until the returned handle is cancelled.

        Must be called from a running event loop. ``on_update`` receives each
        batch that produced new entries.
        """
        interval = interval_seconds or self.config.interval_seconds
        handle = SyncHandle()
        handle.task = asyncio.create_task(
            self._run_periodic(handle, on_update, scope, interval)
        )
        return handle

    async def _run_periodic(
        self,
        handle: SyncHandle,
        on_update: Callable[[BatchSyncResult], None],
        scope: Scope | None,
        interval: float,
    ) -> None:
        while not handle.cancelled:
            batch = await self.sync_all(scope)
            if batch.per_feed_new_entries and not handle.cancelled:
                try:
                    on_update(batch)
                except Exception as e:
                    self.logger.error(f"Update callback failed: {e}", error=str(e))
            if await handle.sleep(interval):
                break
        self.logger.info("Periodic sync stopped")


def _as_sync_result(feed_id: str, result: SyncResult | BaseException) -> SyncResult:
    if isinstance(result, BaseException):
        return SyncResult(
            error=SyncError(
                kind=ErrorKind.UNEXPECTED,
                message=str(result) or type(result).__name__,
                feed_id=feed_id,
            )
        )
    return result
