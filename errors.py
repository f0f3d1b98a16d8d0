"""
Exception hierarchy for the Shopify catalog crawler.

Configuration errors abort the run before crawling starts. Discovery, fetch,
normalization and hook errors are scoped to a single seed or request.
"""

from typing import Optional


class CrawlerError(Exception):
    """Base class for all crawler errors."""


class ConfigurationError(CrawlerError):
    """Invalid input: empty seed list, bad proxy settings, broken hooks."""


class HookCompileError(ConfigurationError):
    """A user-supplied hook could not be turned into a callable."""


class DiscoveryError(CrawlerError):
    """A seed's robots.txt could not be resolved to a sitemap URL."""


class NotTargetPlatform(DiscoveryError):
    """The robots.txt is missing, not a Shopify one, or declares no sitemap."""


class MalformedDeclaration(DiscoveryError):
    """A `Sitemap:` line exists but no URL could be extracted from it."""


class FetchError(CrawlerError):
    """Non-success status or transport failure on a fetch."""

    def __init__(self, message: str, url: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status = status


class NormalizationError(CrawlerError):
    """A raw product could not be normalized."""


class MissingCoreFields(NormalizationError):
    """Neither `product.title` nor `title` is present in the payload."""


class HookError(CrawlerError):
    """User-supplied hook code raised while processing a record."""
