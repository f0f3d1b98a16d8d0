#!/usr/bin/env python3
"""
Shopify Product Catalog Crawler

This script discovers the complete product catalog of Shopify stores.
It locates each store's sitemap through robots.txt, expands the product
sitemaps into product URLs and fetches every product's JSON, producing one
normalized record per variant.
"""

import argparse
import asyncio
import json
import logging
import re
import signal
import sys
import time
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from bs4 import BeautifulSoup

import product_normalizer
from catalog_discovery import ROBOTS_TIMEOUT, check_for_robots
from config import CrawlerInput, load_input, proxy_configuration
from crawl_engine import CrawlingContext, CrawlRequest, FetchEngine, RequestQueue, create_request_debug_info
from errors import ConfigurationError, MissingCoreFields
from extension_hooks import ExtensionContext, Phase, extend_function
from models import CrawlTarget, FilteredUrlSet
from sitemap_traversal import (
    SITEMAP_RETRIES,
    SITEMAP_TIMEOUT,
    make_sitemap_filter,
    make_target_mapper,
    request_list_from_sitemaps,
)
from storage import open_storage

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)

FILTERED_KEY = "FILTERED"
STATS_KEY = "STATS"

PAGE_TIMEOUT = 60

# engine messages that only matter when debugging
NOISY_MESSAGES = ("Request handler failed",)


def quiet_log_filter(record: logging.LogRecord) -> bool:
    message = record.getMessage()
    return not any(noise in message for noise in NOISY_MESSAGES)


def debug_key_for_url(url: str) -> str:
    """Key-value store friendly name derived from the URL path."""
    return re.sub(r'[^a-z\-.0-9]', '', urlparse(url).path, flags=re.IGNORECASE)[:100] or "root"


class ShopifyCatalogCrawler:
    """
    Crawls Shopify stores through their sitemaps and outputs one record per
    product variant.

    Runs in phases: robots discovery, SETUP hook, sitemap traversal,
    product crawl, FINISHED hook. Sitemap URLs are persisted between runs.
    """

    def __init__(self,
                 crawler_input: CrawlerInput,
                 storage_dir: str = "storage",
                 engine_class: type = FetchEngine,
                 impersonate: Optional[str] = None,
                 show_progress: bool = True):
        """
        Initialize the crawler with a validated input.

        Args:
            crawler_input: Run options
            storage_dir: Root directory for the key-value store and dataset
            engine_class: Crawling engine implementation
            impersonate: curl_cffi browser profile to use for all fetches
            show_progress: Display progress bars
        """
        crawler_input.validate()

        self.input = crawler_input
        self.engine_class = engine_class
        self.impersonate = impersonate
        self.show_progress = show_progress

        if crawler_input.debug_log:
            logging.getLogger().setLevel(logging.DEBUG)

        self.proxy_configuration = proxy_configuration(crawler_input.proxy_config)
        self.store, self.dataset = open_storage(storage_dir)

        self.filtered_sitemap_urls = FilteredUrlSet(self.store.get_value(FILTERED_KEY) or [])
        self.targets: List[CrawlTarget] = []
        self.request_queue = RequestQueue()
        self.engine: Optional[FetchEngine] = None
        self.aborted = False

        helpers = {"fns": product_normalizer, "store": self.store, "dataset": self.dataset}

        # Compile both hooks up front, a broken hook must fail before any crawling
        self.extend_output = extend_function(
            "extendOutputFunction",
            crawler_input.extend_output_function,
            map=self._map_product,
            output=self._output,
            custom_data=crawler_input.custom_data,
            helpers=helpers,
        )
        self.extend_scraper = extend_function(
            "extendScraperFunction",
            crawler_input.extend_scraper_function,
            custom_data=crawler_input.custom_data,
            helpers=helpers,
        )

    def _new_engine(self, **kwargs: Any) -> FetchEngine:
        return self.engine_class(
            proxy_configuration=self.proxy_configuration,
            impersonate=self.impersonate,
            show_progress=self.show_progress,
            **kwargs,
        )

    async def _scraper_phase(self, label: str, **fields: Any) -> None:
        if label not in Phase.ALL:
            raise ValueError(f"Unknown scraper phase: {label}")
        await self.extend_scraper(None, label=label, **fields)

    def persist_state(self) -> None:
        self.store.set_value(FILTERED_KEY, list(self.filtered_sitemap_urls.snapshot()))

    def _handle_termination(self) -> None:
        logger.warning("Termination requested, persisting state")
        self.aborted = True
        self.persist_state()
        if self.engine is not None:
            self.engine.abort()

    def _install_signal_handlers(self) -> List[int]:
        loop = asyncio.get_event_loop()
        installed = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._handle_termination)
                installed.append(sig)
            except (NotImplementedError, RuntimeError, ValueError):
                # not available on this platform / outside the main thread
                pass
        return installed

    async def _map_product(self, data: Dict[str, Any], context: ExtensionContext) -> List[Dict[str, Any]]:
        return product_normalizer.normalize_product(data.get("product"), data["url"])

    async def _output(self, item: Dict[str, Any], context: ExtensionContext) -> None:
        self.dataset.push_data(item)

    async def discover(self) -> List[CrawlTarget]:
        """Resolve robots, run the SETUP hook and traverse the sitemaps."""
        async with self._new_engine(timeout=ROBOTS_TIMEOUT) as engine:
            self.engine = engine
            try:
                await check_for_robots(engine, self.input.start_urls, self.filtered_sitemap_urls)
            finally:
                self.engine = None

        if self.aborted:
            return self.targets

        await self._scraper_phase(
            Phase.SETUP,
            proxy_configuration=self.proxy_configuration,
            filtered_sitemap_urls=self.filtered_sitemap_urls,
            request_queue=self.request_queue,
        )

        if self.aborted:
            return self.targets

        sitemap_urls = self.filtered_sitemap_urls.snapshot()
        logger.info(f"Traversing {len(sitemap_urls)} sitemaps")

        async with self._new_engine(
            max_concurrency=self.input.max_concurrency,
            max_request_retries=SITEMAP_RETRIES,
            timeout=SITEMAP_TIMEOUT,
            log_filter=None if self.input.debug_log else quiet_log_filter,
        ) as engine:
            self.engine = engine
            try:
                self.targets = await request_list_from_sitemaps(
                    engine,
                    sitemap_urls,
                    filter=make_sitemap_filter(self.extend_scraper),
                    map=make_target_mapper(self.input.fetch_html),
                    limit=self.input.request_limit,
                )
            finally:
                self.engine = None

        self.store.set_value(STATS_KEY, {"count": len(self.targets)})
        return self.targets

    async def _handle_page(self, context: CrawlingContext) -> None:
        request = context.request
        logger.debug(f"Scraping {request.url}")

        if request.user_data.get("label") == "HTML":
            self.request_queue.add_request(CrawlRequest(
                url=f"{request.url}.json",
                user_data={**request.user_data, "label": "JSON", "body": context.body},
            ), forefront=True)
            return

        payload = context.json
        try:
            product = product_normalizer.extract_product(payload, context.response.status)
        except MissingCoreFields:
            if self.input.debug_log:
                self.store.set_value(debug_key_for_url(request.url), payload)
            raise

        if product is None:
            logger.debug(f"Product not found, skipping {request.url}")
            return

        if request.user_data.get("body"):
            context.soup = BeautifulSoup(request.user_data["body"], 'html.parser')

        url = request.url[:-len(".json")] if request.url.endswith(".json") else request.url

        images, images_without_variants = product_normalizer.index_product_images(product)

        await self.extend_output({
            "product": product,
            "variants": product_normalizer.map_ids_from_array(product.get("variants")),
            "images": images,
            "images_without_variants": images_without_variants,
            "url": url,
        }, context=context)

    async def _handle_failed(self, request: CrawlRequest, error: Exception) -> None:
        logger.error(f"Failed all retries for {request.url}: {str(error)}")
        self.dataset.push_data({"#failed": create_request_debug_info(request)})

    async def _pre_navigation(self, context: CrawlingContext) -> None:
        await self._scraper_phase(Phase.PRENAVIGATION, crawling_context=context)

    async def _post_navigation(self, context: CrawlingContext) -> None:
        await self._scraper_phase(Phase.POSTNAVIGATION, crawling_context=context)

    async def crawl_products(self) -> None:
        """Fetch every crawl target and push normalized records to the dataset."""
        for target in self.targets:
            self.request_queue.add_request(target.to_request_options())

        max_requests = None
        if self.input.request_limit:
            max_requests = self.input.request_limit * (2 if self.input.fetch_html else 1)

        async with self._new_engine(
            max_concurrency=self.input.max_concurrency,
            max_request_retries=self.input.max_request_retries,
            max_requests_per_crawl=max_requests,
            timeout=PAGE_TIMEOUT,
            pre_navigation_hooks=[self._pre_navigation],
            post_navigation_hooks=[self._post_navigation],
            log_filter=None if self.input.debug_log else quiet_log_filter,
        ) as engine:
            self.engine = engine
            try:
                await self._scraper_phase(Phase.RUN, crawler=engine, request_list=self.targets)
                await engine.run(
                    self.request_queue,
                    self._handle_page,
                    self._handle_failed,
                    pass_statuses=(404,),
                    progress_desc="Products",
                )
            finally:
                self.engine = None
            if not self.aborted:
                await self._scraper_phase(Phase.FINISHED, crawler=engine)

    async def crawl(self) -> None:
        """Run all phases, persisting the sitemap set on exit."""
        logger.info(f"Starting crawl of {len(self.input.start_urls)} stores")
        start_time = time.time()

        installed = self._install_signal_handlers()
        try:
            await self.discover()
            if not self.aborted:
                await self.crawl_products()
        finally:
            loop = asyncio.get_event_loop()
            for sig in installed:
                loop.remove_signal_handler(sig)
            self.persist_state()

        elapsed = time.time() - start_time
        logger.info(f"Crawl completed in {elapsed:.2f} seconds")
        logger.info(f"Pushed {self.dataset.count} records from {len(self.targets)} product URLs")


def build_input(args: argparse.Namespace) -> CrawlerInput:
    """Merge the optional input file with command line overrides."""
    data: Dict[str, Any] = {}
    if args.input:
        data = dict(vars(load_input(args.input)))

    overrides = {
        "start_urls": args.start_urls,
        "max_concurrency": args.concurrency,
        "max_requests_per_crawl": args.max_requests,
        "max_request_retries": args.max_retries,
        "extend_output_function": args.extend_output_function,
        "extend_scraper_function": args.extend_scraper_function,
    }
    for key, value in overrides.items():
        if value is not None:
            data[key] = value
    if args.proxy_urls:
        data["proxy_config"] = {"proxyUrls": args.proxy_urls}
    if args.fetch_html:
        data["fetch_html"] = True
    if args.debug:
        data["debug_log"] = True
    if args.custom_data:
        try:
            data["custom_data"] = json.loads(args.custom_data)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"--custom-data must be JSON: {e}")

    return CrawlerInput.from_dict(data)


def main():
    """Main function to run the crawler from command line."""
    parser = argparse.ArgumentParser(description='Shopify Product Catalog Crawler')
    parser.add_argument('--input',
                        help='JSON input file (startUrls, maxConcurrency, ...)')
    parser.add_argument('--start-urls', nargs='+',
                        help='Store URLs to crawl')
    parser.add_argument('--storage-dir', default='storage',
                        help='Directory for persisted state and the dataset (default: storage)')
    parser.add_argument('--concurrency', type=int,
                        help='Maximum concurrent requests (default: 20)')
    parser.add_argument('--max-requests', type=int,
                        help='Maximum number of product URLs to crawl')
    parser.add_argument('--max-retries', type=int,
                        help='Retries per product request (default: 3)')
    parser.add_argument('--proxy-urls', nargs='+',
                        help='Custom proxy URLs to rotate')
    parser.add_argument('--fetch-html', action='store_true',
                        help='Fetch product HTML pages before their JSON')
    parser.add_argument('--extend-output-function',
                        help='Output hook, as module:function or path/to/file.py:function')
    parser.add_argument('--extend-scraper-function',
                        help='Scraper hook, as module:function or path/to/file.py:function')
    parser.add_argument('--custom-data',
                        help='JSON object passed to hooks as custom_data')
    parser.add_argument('--impersonate',
                        help='curl_cffi browser profile, e.g. chrome120')
    parser.add_argument('--debug', action='store_true',
                        help='Enable debug logging')

    args = parser.parse_args()

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        crawler_input = build_input(args)
        crawler = ShopifyCatalogCrawler(
            crawler_input,
            storage_dir=args.storage_dir,
            impersonate=args.impersonate,
        )
        asyncio.run(crawler.crawl())
    except ConfigurationError as e:
        logger.error(str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
