"""
Run configuration for the Shopify catalog crawler.

Input is accepted either as a JSON document using the camelCase option names
(`startUrls`, `maxConcurrency`, ...) or built directly in Python.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union
from urllib.parse import urlparse

from errors import ConfigurationError

logger = logging.getLogger(__name__)

HookSource = Union[str, Callable, None]

# camelCase input key -> CrawlerInput attribute
INPUT_KEYS = {
    "startUrls": "start_urls",
    "maxConcurrency": "max_concurrency",
    "maxRequestsPerCrawl": "max_requests_per_crawl",
    "maxRequestRetries": "max_request_retries",
    "proxyConfig": "proxy_config",
    "debugLog": "debug_log",
    "fetchHtml": "fetch_html",
    "extendOutputFunction": "extend_output_function",
    "extendScraperFunction": "extend_scraper_function",
    "customData": "custom_data",
}


@dataclass
class CrawlerInput:
    """Recognized options for a crawl run."""

    start_urls: List[str] = field(default_factory=list)
    max_concurrency: int = 20
    max_requests_per_crawl: Optional[int] = None
    max_request_retries: int = 3
    proxy_config: Optional[Dict[str, Any]] = None
    debug_log: bool = False
    fetch_html: bool = False
    extend_output_function: HookSource = None
    extend_scraper_function: HookSource = None
    custom_data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CrawlerInput":
        """Build an input from a camelCase (or snake_case) mapping."""
        values: Dict[str, Any] = {}
        for key, value in (data or {}).items():
            attr = INPUT_KEYS.get(key, key)
            if attr in cls.__dataclass_fields__:
                values[attr] = value
            else:
                logger.debug(f"Ignoring unknown input option: {key}")

        values["start_urls"] = normalize_start_urls(values.get("start_urls") or [])

        max_requests = values.get("max_requests_per_crawl")
        if max_requests in ("", None):
            values["max_requests_per_crawl"] = None
        else:
            try:
                values["max_requests_per_crawl"] = int(max_requests)
            except (TypeError, ValueError):
                raise ConfigurationError(f"maxRequestsPerCrawl must be a number, got {max_requests!r}")

        for attr in ("max_concurrency", "max_request_retries"):
            if attr in values:
                try:
                    values[attr] = int(values[attr])
                except (TypeError, ValueError):
                    raise ConfigurationError(f"{attr} must be a number, got {values[attr]!r}")

        values["custom_data"] = values.get("custom_data") or {}
        return cls(**values)

    @property
    def request_limit(self) -> int:
        """Cap on accepted product URLs, 0 meaning unlimited."""
        if self.max_requests_per_crawl and self.max_requests_per_crawl > 0:
            return self.max_requests_per_crawl
        return 0

    def validate(self) -> None:
        if not self.start_urls:
            raise ConfigurationError('Missing "startUrls" input')
        if self.max_concurrency < 1:
            raise ConfigurationError(f"maxConcurrency must be at least 1, got {self.max_concurrency}")
        if self.max_request_retries < 0:
            raise ConfigurationError(f"maxRequestRetries cannot be negative, got {self.max_request_retries}")


def normalize_start_urls(start_urls: List[Any]) -> List[str]:
    """Flatten `["https://a", {"url": "https://b"}]` into plain URL strings."""
    urls = []
    for entry in start_urls:
        url = entry.get("url") if isinstance(entry, dict) else entry
        if not isinstance(url, str) or not url.strip():
            continue
        urls.append(url.strip())
    return urls


def load_input(path: str) -> CrawlerInput:
    """Read a JSON input file."""
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Unable to read input file {path}: {e}")

    if not isinstance(data, dict):
        raise ConfigurationError(f"Input file {path} must contain a JSON object")

    return CrawlerInput.from_dict(data)


@dataclass
class ProxyConfiguration:
    """Rotates over custom proxy URLs, keeping one proxy per session id."""

    proxy_urls: List[str]

    def __post_init__(self):
        self._sessions: Dict[str, str] = {}
        self._next = 0

    def new_url(self, session_id: Optional[str] = None) -> Optional[str]:
        if not self.proxy_urls:
            return None
        if session_id is not None and session_id in self._sessions:
            return self._sessions[session_id]

        url = self.proxy_urls[self._next % len(self.proxy_urls)]
        self._next += 1
        if session_id is not None:
            self._sessions[session_id] = url
        return url


def proxy_configuration(proxy_config: Optional[Dict[str, Any]], required: bool = False) -> Optional[ProxyConfiguration]:
    """
    Validate the opaque proxy settings and build a rotating configuration.

    Args:
        proxy_config: `{"proxyUrls": [...]}` or None
        required: Fail if no proxy URL is configured

    Returns:
        A ProxyConfiguration, or None when no proxies are configured
    """
    proxy_urls = (proxy_config or {}).get("proxyUrls") or []

    if not isinstance(proxy_urls, list):
        raise ConfigurationError("proxyConfig.proxyUrls must be a list of proxy URLs")

    for url in proxy_urls:
        if not isinstance(url, str) or urlparse(url).scheme not in ("http", "https"):
            raise ConfigurationError(f"Invalid proxy URL: {url!r}")

    if not proxy_urls:
        if required:
            raise ConfigurationError("You must provide custom proxy URLs in proxyConfig.proxyUrls")
        return None

    logger.info(f"Using {len(proxy_urls)} proxy URLs")
    return ProxyConfiguration(proxy_urls=list(proxy_urls))
