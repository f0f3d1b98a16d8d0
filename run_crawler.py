#!/usr/bin/env python3
"""
Helper script to run the crawler against a fixed set of stores.
"""

import asyncio

from config import CrawlerInput
from shopify_crawler import ShopifyCatalogCrawler

# Stores to crawl
STORES = [
    "https://www.allbirds.com/",
    "https://www.gymshark.com/",
    "https://kith.com/",
    "https://www.tentree.com/",
]


async def main():
    # Create crawler instance
    crawler = ShopifyCatalogCrawler(
        CrawlerInput(
            start_urls=STORES,
            max_concurrency=10,        # Adjust based on your internet connection
            max_requests_per_crawl=50,  # Per run, adjust as needed
            max_request_retries=3,
        ),
        storage_dir="storage",
    )

    # Run the crawler
    await crawler.crawl()

    # Print summary
    print("\n=== Crawl Summary ===")
    print(f"Total stores: {len(STORES)}")
    print(f"Sitemaps known: {len(crawler.filtered_sitemap_urls)}")
    print(f"Product URLs crawled: {len(crawler.targets)}")
    print(f"Records written: {crawler.dataset.count} -> {crawler.dataset.path}")

if __name__ == "__main__":
    asyncio.run(main())
