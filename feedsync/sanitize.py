"""Conversion of feed-supplied HTML fragments into plain text."""

import html
import re

from bs4 import BeautifulSoup

_BLOCK_TAGS = ["p", "div", "h1", "h2", "h3", "h4", "h5", "h6", "ul", "ol", "br"]
_TAG_RE = re.compile(r"<[^>]*>")
_INLINE_SPACE_RE = re.compile(r"[^\S\n]+")


def sanitize(raw: str | None) -> str:
    """Strip markup from ``raw`` and return readable plain text.

    List items become bullet (or numbered) lines, block elements end a line,
    entities are decoded and whitespace is collapsed. The result never
    contains ``<`` or ``>``. Malformed markup degrades to a best-effort
    regex strip instead of raising.
    """
    if not raw:
        return ""

    if "<" not in raw and ">" not in raw and "&" not in raw:
        return _normalize_whitespace(raw)

    try:
        text = _markup_to_text(raw)
    except Exception:
        text = html.unescape(_TAG_RE.sub(" ", raw))

    # Entities such as &lt; decode to brackets; drop them like stray ones.
    text = text.replace("<", "").replace(">", "")
    return _normalize_whitespace(text)


def truncate_text(text: str | None, max_length: int) -> str:
    """Sanitize ``text`` and cut it to ``max_length`` characters."""
    sanitized = sanitize(text)
    if len(sanitized) <= max_length:
        return sanitized
    return sanitized[:max_length].strip() + "..."


def _markup_to_text(raw: str) -> str:
    soup = BeautifulSoup(raw, "html.parser")

    for element in soup(["script", "style"]):
        element.decompose()

    for ordered in soup.find_all("ol"):
        for number, item in enumerate(ordered.find_all("li", recursive=False), 1):
            item.insert(0, f"{number}. ")

    for item in soup.find_all("li"):
        if item.parent is None or item.parent.name != "ol":
            item.insert(0, "• ")
        item.insert_after("\n")

    for element in soup.find_all(_BLOCK_TAGS):
        element.insert_after("\n")

    return soup.get_text()


def _normalize_whitespace(text: str) -> str:
    lines = []
    previous_blank = True
    for line in text.splitlines():
        line = _INLINE_SPACE_RE.sub(" ", line).strip()
        if not line:
            # Keep at most one blank line between paragraphs
            if not previous_blank:
                lines.append("")
            previous_blank = True
            continue
        lines.append(line)
        previous_blank = False
    return "\n".join(lines).strip()
