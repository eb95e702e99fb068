"""RSS/Atom document parsing and entry normalization."""

import io
import xml.sax
from dataclasses import dataclass, field
from datetime import UTC, datetime

import feedparser
from dateutil import parser as date_parser

from .errors import ParseFailure
from .identity import derive_id
from .logging_config import create_execution_logger
from .models import FeedEntry, FeedSource, RawEntry
from .sanitize import sanitize

UNTITLED = "Untitled"


@dataclass
class ParsedDocument:
    """Entries of a feed document plus what was learned about the feed."""

    family: str
    title: str
    entries: list[RawEntry] = field(default_factory=list)


class FeedDocumentParser:
    """Turns RSS 2.0 / Atom 1.0 documents into normalized raw entries."""

    def __init__(self, execution_id: str | None = None):
        self.logger = create_execution_logger("parser", execution_id)

    def parse(self, document: str | bytes, feed_url: str) -> list[RawEntry]:
        """Parse ``document`` and return its entries.

        Raises:
            ParseFailure: If the document is not well-formed markup
        """
        return self.parse_document(document, feed_url).entries

    def parse_document(self, document: str | bytes, feed_url: str) -> ParsedDocument:
        if isinstance(document, str):
            document = document.encode("utf-8")

        if not document.strip():
            self.logger.error("Empty feed document", feed_url=feed_url)
            raise ParseFailure("Empty feed document", url=feed_url)

        # A stream keeps feedparser from treating the payload as a URL or path
        result = feedparser.parse(io.BytesIO(document))
        bozo_exception = result.get("bozo_exception")

        if result.bozo and not result.entries:
            if isinstance(bozo_exception, xml.sax.SAXException):
                self.logger.error(
                    f"Invalid XML format: {bozo_exception}",
                    feed_url=feed_url,
                    bozo_exception=str(bozo_exception),
                )
                raise ParseFailure(
                    f"Invalid XML format: {bozo_exception}", url=feed_url
                )

        if result.bozo and bozo_exception is not None:
            self.logger.warning(
                f"Feed parsing warning for {feed_url}: {bozo_exception}",
                feed_url=feed_url,
                bozo_exception=str(bozo_exception),
            )

        family = _document_family(result.get("version", ""))
        entries = [
            self._extract_entry(entry, position)
            for position, entry in enumerate(result.entries)
        ]

        self.logger.info(
            "Parsed feed document",
            feed_url=feed_url,
            family=family,
            entries_count=len(entries),
        )
        return ParsedDocument(
            family=family,
            title=sanitize(result.feed.get("title")),
            entries=entries,
        )

    def _extract_entry(self, entry, position: int) -> RawEntry:
        summary = entry.get("summary") or entry.get("description")

        content = None
        content_list = entry.get("content")
        if isinstance(content_list, list) and content_list:
            content = content_list[0].get("value")

        return RawEntry(
            title=sanitize(entry.get("title")) or None,
            link=_clean(entry.get("link")),
            summary=sanitize(summary) or None,
            content=sanitize(content) or None,
            published=_clean(entry.get("published")) or _clean(_updated(entry)),
            source_id=_verbatim(entry.get("id")),
            position=position,
        )


def to_feed_entries(
    raw_entries: list[RawEntry],
    feed: FeedSource,
    ingested_at: datetime | None = None,
    namespaced: bool = True,
) -> list[FeedEntry]:
    """Build storable entries for ``feed`` from parsed raw entries.

    With ``namespaced`` false the ids are left without the feed id prefix
    and no ownership is attached; used to preview an unregistered feed.
    """
    ingested_at = ingested_at or datetime.now(UTC)
    created_at = ingested_at.isoformat()
    ownership = feed.scope.ownership() if namespaced else {}

    entries = []
    for raw in raw_entries:
        entry_id = derive_id(
            raw,
            feed.url,
            feed_id=feed.id if namespaced else None,
            position_index=raw.position,
        )
        body = raw.content or raw.summary or ""
        entries.append(
            FeedEntry(
                id=entry_id,
                feed_id=feed.id if namespaced else None,
                title=raw.title or UNTITLED,
                link=raw.link or "",
                content=body,
                content_snippet=raw.summary or "",
                pub_date=normalize_pub_date(raw.published, created_at),
                integration_name=feed.integration_name,
                integration_alias=feed.integration_alias,
                created_at=created_at,
                **ownership,
            )
        )
    return entries


def normalize_pub_date(published: str | None, fallback: str) -> str:
    """ISO-8601 form of ``published``; the raw string if it does not parse."""
    if not published:
        return fallback
    try:
        parsed = date_parser.parse(published)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        # UTC throughout so stored dates sort lexically
        return parsed.astimezone(UTC).isoformat()
    except (ValueError, OverflowError):
        return published


def _document_family(version: str) -> str:
    if version.startswith("atom"):
        return "atom"
    if version.startswith("rss"):
        return "rss"
    return "unknown"


def _updated(entry) -> str | None:
    # FeedParserDict maps a missing "updated" onto "published" with a warning
    if "updated" in entry.keys():
        return entry.get("updated")
    return None


def _clean(value) -> str | None:
    if not isinstance(value, str):
        return None
    return value.strip() or None


def _verbatim(value) -> str | None:
    # Source ids are opaque keys; only an empty one is treated as absent
    if isinstance(value, str) and value:
        return value
    return None
