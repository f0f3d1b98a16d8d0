"""
Expand sitemap indexes into a de-duplicated list of product crawl targets.

Sitemap roots are processed as requests of a FetchEngine; every accepted
`<sitemap><loc>` entry is enqueued for recursive expansion and every accepted
`<url><loc>` entry is mapped to a CrawlTarget.
"""

import logging
import re
import warnings
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, Union

from bs4 import BeautifulSoup, XMLParsedAsHTMLWarning

from crawl_engine import CrawlingContext, CrawlRequest, FetchEngine, RequestQueue, maybe_await
from models import CrawlTarget

logger = logging.getLogger(__name__)

PRODUCT_PATH_PATTERN = re.compile(r'/products/')
PRODUCT_SITEMAP_PATTERN = re.compile(r'sitemap_products_\d+')

UrlFilter = Callable[[str], Union[bool, Awaitable[bool]]]
UrlMapper = Callable[[str], CrawlTarget]

# Sitemap fetches are cheap, give them more attempts than product pages
SITEMAP_RETRIES = 5
SITEMAP_TIMEOUT = 300


def cleanup_url(url: str) -> str:
    """Remove newlines and surrounding whitespace from a `<loc>` value."""
    return f"{url}".replace('\n', '').replace('\r', '').strip()


def parse_sitemap(body: str) -> Tuple[List[str], List[str]]:
    """
    Split a sitemap document into leaf and index locations.

    Returns:
        (leaf URLs from `<url><loc>`, index URLs from `<sitemap><loc>`), in document order
    """
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", XMLParsedAsHTMLWarning)
        soup = BeautifulSoup(body or '', 'html.parser')
    leaves = [cleanup_url(el.get_text()) for el in soup.select('url loc')]
    indexes = [cleanup_url(el.get_text()) for el in soup.select('sitemap loc')]
    return [u for u in leaves if u], [u for u in indexes if u]


async def request_list_from_sitemaps(engine: FetchEngine,
                                     sitemap_urls: Iterable[str],
                                     filter: UrlFilter,
                                     map: UrlMapper,
                                     limit: int = 0) -> List[CrawlTarget]:
    """
    Crawl sitemaps recursively and collect the accepted leaves.

    Args:
        engine: Engine used to fetch sitemap documents
        sitemap_urls: Sitemap roots to start from
        filter: Decides whether a leaf is kept or an index is expanded
        map: Turns an accepted leaf URL into a CrawlTarget
        limit: Stop accepting leaves of a document once this many targets
            were collected (0 means unlimited). Documents processed
            concurrently may overshoot it slightly.

    Returns:
        Crawl targets, unique by URL, in discovery order
    """
    targets: Dict[str, CrawlTarget] = {}
    queue = RequestQueue(cleanup_url(url) for url in sitemap_urls)
    sitemap_count = queue.total_count

    async def handle_sitemap(context: CrawlingContext) -> None:
        nonlocal sitemap_count

        logger.debug(f"Parsing sitemap {context.request.url}")
        leaves, indexes = parse_sitemap(context.body)

        for url in leaves:
            logger.debug(f"Found sitemap url {url}")

            if await maybe_await(filter(url)):
                if limit > 0 and len(targets) >= limit:
                    break
                target = map(url)
                targets.setdefault(target.url, target)

        # recursive sitemap
        for url in indexes:
            if await maybe_await(filter(url)):
                logger.debug(f"Found subsitemap url {url}")
                if queue.add_request(url):
                    sitemap_count += 1

    async def handle_failed(request: CrawlRequest, error: Exception) -> None:
        logger.error(f"Failed to parse sitemap {request.url} after {request.retry_count} attempts: {str(error)}")

    await engine.run(queue, handle_sitemap, handle_failed, progress_desc="Sitemaps")

    logger.info(f"Found {len(targets)} URLs from {sitemap_count} sitemap URLs")
    return list(targets.values())


def make_sitemap_filter(extend_scraper: Optional[Callable[..., Awaitable[None]]] = None) -> UrlFilter:
    """
    Build the filter policy used for Shopify sitemaps.

    - `sitemap_products_N` indexes are always expanded
    - URLs containing `/products/` are accepted unless the scraper hook vetoes
      them at the FILTER_SITEMAP_URL phase
    - everything else is rejected
    """

    async def sitemap_filter(url: str) -> bool:
        is_product = bool(PRODUCT_PATH_PATTERN.search(url))
        is_sitemap = bool(PRODUCT_SITEMAP_PATTERN.search(url))

        if is_sitemap:
            return True

        if not is_product:
            return False

        filtered = is_product

        def accept(result: Any) -> None:
            nonlocal filtered
            filtered = filtered and bool(result)

        if extend_scraper is not None:
            await extend_scraper(
                None,
                url=url,
                filter=accept,
                is_sitemap=is_sitemap,
                is_product=is_product,
                label="FILTER_SITEMAP_URL",
            )

        return filtered

    return sitemap_filter


def make_target_mapper(fetch_html: bool = False) -> UrlMapper:
    """Map product page URLs to either HTML-first or direct JSON targets."""

    def map_url(url: str) -> CrawlTarget:
        return CrawlTarget(
            url=url if fetch_html else f"{url}.json",
            label="HTML" if fetch_html else "JSON",
            metadata={"url": url},
        )

    return map_url
