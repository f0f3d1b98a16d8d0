"""Data models shared by discovery, traversal and the run orchestrator."""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, Optional, Tuple


@dataclass(frozen=True)
class SitemapDeclaration:
    """A `Sitemap:` directive found in a store's robots.txt."""

    source_url: str
    sitemap_url: str


@dataclass
class CrawlTarget:
    """A product URL ready to be handed to the crawling engine.

    `label` is either "JSON" (fetch the product JSON endpoint directly) or
    "HTML" (fetch the page first, then its JSON endpoint).
    """

    url: str
    label: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_request_options(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "user_data": {**self.metadata, "label": self.label},
        }


class FilteredUrlSet:
    """
    Insertion-ordered set of sitemap URLs carried across runs.

    Membership is exact on the URL string after stripping newlines and
    surrounding whitespace. The set is handed by reference to the SETUP hook;
    once traversal starts only `snapshot()` copies are read.
    """

    def __init__(self, urls: Optional[Iterable[str]] = None):
        self._urls: Dict[str, None] = {}
        for url in urls or []:
            self.add(url)

    @staticmethod
    def _clean(url: str) -> str:
        return f"{url}".replace("\n", "").replace("\r", "").strip()

    def add(self, url: str) -> None:
        cleaned = self._clean(url)
        if cleaned:
            self._urls[cleaned] = None

    def discard(self, url: str) -> None:
        self._urls.pop(self._clean(url), None)

    def snapshot(self) -> Tuple[str, ...]:
        return tuple(self._urls)

    def __contains__(self, url: object) -> bool:
        return isinstance(url, str) and self._clean(url) in self._urls

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._urls))

    def __len__(self) -> int:
        return len(self._urls)

    def __repr__(self) -> str:
        return f"FilteredUrlSet({list(self._urls)!r})"
