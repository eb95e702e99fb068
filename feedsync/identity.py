"""Stable identifiers for feed entries.

Identity is the deduplication key of the whole pipeline: the same logical
entry fetched twice from the same feed must map to the same id, so nothing
here may depend on randomness or on the current time.
"""

import re

from .models import RawEntry

_WHITESPACE_RE = re.compile(r"\s+")


def derive_id(
    raw_entry: RawEntry,
    feed_url: str,
    feed_id: str | None = None,
    position_index: int = 0,
) -> str:
    """Derive the identity of ``raw_entry``.

    Priority: the source-native guid/id, then a fingerprint of link,
    publish timestamp and title, then ``{feed_url}-{position_index}``.
    When ``feed_id`` is given the result is namespaced with it.
    """
    raw_identity = raw_entry.source_id or fingerprint(raw_entry)
    if not raw_identity:
        # Only unique within one parse pass: shifts in entry order or count
        # between fetches change these ids.
        raw_identity = f"{feed_url}-{position_index}"

    if feed_id:
        return namespace_id(feed_id, raw_identity)
    return raw_identity


def fingerprint(raw_entry: RawEntry) -> str:
    """Lower-cased, dash-joined token from link, timestamp and title.

    Missing parts keep their slot, so an entry without a link still yields
    "-{published}-{title}". Returns "" only when every part is blank.
    """
    parts = [raw_entry.link or "", raw_entry.published or "", raw_entry.title or ""]
    if not any(part.strip() for part in parts):
        return ""
    return _WHITESPACE_RE.sub("-", "-".join(parts)).lower()


def namespace_id(feed_id: str, raw_identity: str) -> str:
    return f"{feed_id}-{raw_identity}"
