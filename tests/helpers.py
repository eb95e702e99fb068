"""Shared builders for feedsync tests."""

from feedsync.models import FeedSource

FEED_URL = "https://example.com/feed.xml"


def rss_item(n: int) -> str:
    return (
        "<item>"
        f"<title>Post {n}</title>"
        f"<link>https://example.com/posts/{n}</link>"
        f'<guid isPermaLink="false">post-{n}</guid>'
        f"<description>&lt;p&gt;Body &amp;amp; text {n}&lt;/p&gt;</description>"
        f"<pubDate>Mon, {n:02d} Jan 2024 10:00:00 GMT</pubDate>"
        "</item>"
    )


def build_rss(*numbers: int, title: str = "Example Feed") -> str:
    items = "".join(rss_item(n) for n in numbers)
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<rss version="2.0"><channel>'
        f"<title>{title}</title>"
        "<link>https://example.com</link>"
        "<description>Example description</description>"
        f"{items}"
        "</channel></rss>"
    )


ATOM_DOCUMENT = """<?xml version="1.0" encoding="utf-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Atom Example</title>
  <id>urn:example:feed</id>
  <updated>2024-01-02T00:00:00Z</updated>
  <entry>
    <title>Atom One</title>
    <link href="https://example.org/one"/>
    <id>urn:uuid:1225c695-cfb8-4ebb-aaaa-80da344efa6a</id>
    <updated>2024-01-02T10:00:00Z</updated>
    <summary>Short one</summary>
    <content type="html">&lt;ul&gt;&lt;li&gt;First&lt;/li&gt;&lt;li&gt;Second&lt;/li&gt;&lt;/ul&gt;</content>
  </entry>
  <entry>
    <title>Atom Two</title>
    <link href="https://example.org/two"/>
    <id>urn:uuid:60a76c80-d399-11d9-b91c-0003939e0af6</id>
    <published>2024-01-03T08:00:00+02:00</published>
    <updated>2024-01-04T08:00:00Z</updated>
    <summary>Second summary</summary>
  </entry>
</feed>
"""


def feed_row(
    feed_id: str,
    url: str = FEED_URL,
    owner_user_id: str | None = "user-1",
    group_id: str | None = None,
    integration_name: str = "Example",
) -> dict:
    return FeedSource(
        id=feed_id,
        url=url,
        title=integration_name,
        integration_name=integration_name,
        owner_user_id=owner_user_id,
        group_id=group_id,
        created_at="2024-01-01T00:00:00+00:00",
        updated_at="2024-01-01T00:00:00+00:00",
    ).to_row()


class StubFetcher:
    """Serves canned documents (or raises canned errors) per URL."""

    def __init__(self, documents: dict):
        self.documents = documents
        self.calls: list[str] = []

    async def fetch_document(self, url: str, timeout_ms: int | None = None) -> str | bytes:
        self.calls.append(url)
        outcome = self.documents[url]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome
