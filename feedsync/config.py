"""Configuration management for feedsync."""

import json
import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class Intermediary:
    """A relay that retrieves a feed on our behalf.

    The target URL is percent-encoded and appended to ``prefix``. Relays that
    answer with a JSON envelope name the field holding the document in
    ``envelope_field``.
    """

    name: str
    prefix: str
    envelope_field: str | None = None


DEFAULT_INTERMEDIARIES = (
    Intermediary("codetabs", "https://api.codetabs.com/v1/proxy?quest="),
    Intermediary("corsproxy", "https://corsproxy.io/?"),
    Intermediary(
        "allorigins", "https://api.allorigins.win/get?url=", envelope_field="contents"
    ),
)


@dataclass
class FetchConfig:
    """Configuration for feed document retrieval."""

    timeout_ms: int = 30000
    retry_delay_ms: int = 1000
    restricted_network: bool = False
    user_agent: str = "feedsync/1.0 (RSS/Atom aggregator)"
    intermediaries: tuple[Intermediary, ...] = DEFAULT_INTERMEDIARIES


@dataclass
class StoreConfig:
    """Configuration for the DynamoDB row store."""

    feeds_table: str = "feeds"
    items_table: str = "feed_items"
    region: str = "us-east-1"
    principal_id: str | None = None


@dataclass
class ScheduleConfig:
    """Configuration for batch and periodic synchronization."""

    interval_seconds: int = 4 * 60 * 60
    batch_size: int = 5


class Config:
    """Main configuration manager."""

    def __init__(self):
        """Initialize configuration from environment variables."""
        self.timeout_ms = int(os.getenv("FEEDSYNC_FETCH_TIMEOUT_MS", "30000"))
        self.retry_delay_ms = int(os.getenv("FEEDSYNC_RETRY_DELAY_MS", "1000"))
        self.restricted_network = _env_flag("FEEDSYNC_RESTRICTED_NETWORK")
        self.user_agent = os.getenv(
            "FEEDSYNC_USER_AGENT", "feedsync/1.0 (RSS/Atom aggregator)"
        )
        self.intermediaries_file = os.getenv("FEEDSYNC_INTERMEDIARIES_FILE", "")
        self.feeds_table = os.getenv("FEEDSYNC_FEEDS_TABLE", "feeds")
        self.items_table = os.getenv("FEEDSYNC_ITEMS_TABLE", "feed_items")
        self.aws_region = os.getenv(
            "CURRENT_AWS_REGION", os.getenv("AWS_DEFAULT_REGION", "us-east-1")
        )
        self.principal_id = os.getenv("FEEDSYNC_PRINCIPAL_ID") or None
        self.interval_seconds = int(
            os.getenv("FEEDSYNC_SYNC_INTERVAL_SECONDS", str(4 * 60 * 60))
        )
        self.batch_size = int(os.getenv("FEEDSYNC_BATCH_SIZE", "5"))

    def get_intermediaries(self) -> tuple[Intermediary, ...]:
        """Load intermediaries from the configured JSON file, or the defaults."""
        if not self.intermediaries_file:
            return DEFAULT_INTERMEDIARIES

        path = Path(self.intermediaries_file)
        if not path.exists():
            raise FileNotFoundError(f"Intermediaries file not found: {path}")

        try:
            with open(path, "r") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in intermediaries file: {e}") from e

        intermediaries = tuple(
            Intermediary(
                name=entry.get("name") or entry["prefix"],
                prefix=entry["prefix"],
                envelope_field=entry.get("envelope_field"),
            )
            for entry in data.get("intermediaries", [])
            if entry.get("enabled", True) and "prefix" in entry
        )
        if not intermediaries:
            raise ValueError("No enabled intermediaries found in intermediaries file")
        return intermediaries

    def get_fetch_config(self) -> FetchConfig:
        return FetchConfig(
            timeout_ms=self.timeout_ms,
            retry_delay_ms=self.retry_delay_ms,
            restricted_network=self.restricted_network,
            user_agent=self.user_agent,
            intermediaries=self.get_intermediaries(),
        )

    def get_store_config(self) -> StoreConfig:
        return StoreConfig(
            feeds_table=self.feeds_table,
            items_table=self.items_table,
            region=self.aws_region,
            principal_id=self.principal_id,
        )

    def get_schedule_config(self) -> ScheduleConfig:
        return ScheduleConfig(
            interval_seconds=self.interval_seconds, batch_size=self.batch_size
        )


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in ("1", "true", "yes", "on")
