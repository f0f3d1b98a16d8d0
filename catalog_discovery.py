"""
Resolve seed store URLs to their sitemap index through robots.txt.

A seed only counts as a Shopify store when its robots.txt carries the
platform signature and declares a sitemap.
"""

import logging
import re
from typing import Iterable, List
from urllib.parse import urlparse, urlunparse

from crawl_engine import FetchEngine
from errors import DiscoveryError, FetchError, MalformedDeclaration, NotTargetPlatform
from models import FilteredUrlSet, SitemapDeclaration

logger = logging.getLogger(__name__)

PLATFORM_SIGNATURE = "Shopify"
SITEMAP_DIRECTIVE = "Sitemap: "
SITEMAP_LINE_PATTERN = re.compile(r'Sitemap: ([^\r\n]+?)\s*$', re.MULTILINE)

ROBOTS_RETRIES = 3
ROBOTS_TIMEOUT = 20


def robots_url_for(seed_url: str) -> str:
    """`https://shop.example/collections/x?ref=1` -> `https://shop.example/robots.txt`"""
    seed_url = seed_url.strip()
    if not seed_url.startswith(('http://', 'https://')):
        seed_url = 'https://' + seed_url
    parsed = urlparse(seed_url)
    return urlunparse((parsed.scheme, parsed.netloc, '/robots.txt', '', '', ''))


def parse_robots(seed_url: str, body: str) -> SitemapDeclaration:
    """
    Extract the sitemap declaration from a robots.txt body.

    Raises:
        NotTargetPlatform: empty body, no platform signature or no `Sitemap:` line
        MalformedDeclaration: a `Sitemap:` line without a usable URL
    """
    if not body:
        raise NotTargetPlatform(f"Empty robots.txt for {seed_url}")

    if PLATFORM_SIGNATURE not in body:
        raise NotTargetPlatform(f"Not a {PLATFORM_SIGNATURE} store: {seed_url}")

    if SITEMAP_DIRECTIVE not in body:
        raise NotTargetPlatform(f"No sitemap URL in robots.txt of {seed_url}")

    match = SITEMAP_LINE_PATTERN.search(body)
    if not match or not match.group(1).strip():
        raise MalformedDeclaration(f"Failed to find sitemap URL in robots.txt of {seed_url}")

    return SitemapDeclaration(source_url=seed_url, sitemap_url=match.group(1).strip())


async def resolve_sitemap(engine: FetchEngine, seed_url: str) -> SitemapDeclaration:
    """Fetch the seed's robots.txt and parse its sitemap declaration."""
    robots_url = robots_url_for(seed_url)
    logger.debug(f"Fetching {robots_url}")

    response = await engine.fetch(robots_url, retries=ROBOTS_RETRIES)
    return parse_robots(seed_url, response.body)


async def check_for_robots(engine: FetchEngine,
                           start_urls: Iterable[str],
                           filtered_sitemap_urls: FilteredUrlSet) -> List[SitemapDeclaration]:
    """
    Resolve every seed sequentially, adding found sitemaps to `filtered_sitemap_urls`.

    Failures are logged per seed and never abort the loop.

    Returns:
        The declarations that were found
    """
    declarations = []

    for seed_url in start_urls:
        if engine.aborted:
            logger.warning(f"Robots discovery aborted before {seed_url}")
            break

        try:
            declaration = await resolve_sitemap(engine, seed_url)
        except (DiscoveryError, FetchError) as e:
            logger.error(f"Error fetching robots on {seed_url}: {str(e)}")
            continue
        except Exception as e:
            logger.exception(f"Error fetching robots on {seed_url}: {str(e)}")
            continue

        logger.info(f"Found sitemap {declaration.sitemap_url} for {seed_url}")
        filtered_sitemap_urls.add(declaration.sitemap_url)
        declarations.append(declaration)

    return declarations
