#!/usr/bin/env python3
"""
Helper script to analyze the records produced by a crawl.
"""

import argparse
from collections import Counter
from typing import Any, Dict, Iterable
from urllib.parse import urlparse

from storage import Dataset


def summarize(records: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    """Aggregate dataset records into a report dictionary."""
    total = 0
    failed = []
    products_per_store: Counter = Counter()
    product_ids = set()
    availability: Counter = Counter()
    product_types: Counter = Counter()
    brands: Counter = Counter()
    sample_urls = []

    for record in records:
        if "#failed" in record:
            failed.append(record["#failed"].get("url"))
            continue

        total += 1
        store = urlparse(record.get("url") or "").netloc
        if (store, record.get("id")) not in product_ids:
            product_ids.add((store, record.get("id")))
            products_per_store[store] += 1
            if len(sample_urls) < 5:
                sample_urls.append(record.get("url"))

        availability[record.get("availability")] += 1
        if record.get("product_type"):
            product_types[record["product_type"]] += 1
        if record.get("brand"):
            brands[record["brand"]] += 1

    return {
        "records": total,
        "failed": failed,
        "products": len(product_ids),
        "products_per_store": dict(products_per_store),
        "availability": dict(availability),
        "top_product_types": product_types.most_common(5),
        "top_brands": brands.most_common(5),
        "sample_urls": sample_urls,
    }


def analyze_results(directory: str, name: str = "dataset"):
    """Print a report over the dataset."""
    report = summarize(Dataset(directory, name).iterate())

    print("=== Shopify Catalog Analysis ===\n")
    print(f"Variant records: {report['records']}")
    print(f"Distinct products: {report['products']}")
    print(f"Failed requests: {len(report['failed'])}\n")

    for store, count in report["products_per_store"].items():
        print(f"- {store}: {count} products")

    print("\nAvailability:")
    for status, count in report["availability"].items():
        share = count / report["records"] * 100 if report["records"] else 0
        print(f"  {status}: {count} ({share:.1f}%)")

    print("\nTop product types:")
    for product_type, count in report["top_product_types"]:
        print(f"  {product_type}: {count}")

    print("\nTop brands:")
    for brand, count in report["top_brands"]:
        print(f"  {brand}: {count}")

    if report["sample_urls"]:
        print("\nSample product URLs:")
        for url in report["sample_urls"]:
            print(f"  {url}")

    if report["failed"]:
        print("\nFailed URLs:")
        for url in report["failed"][:10]:
            print(f"  {url}")

    print("\n" + "-"*50)

def main():
    parser = argparse.ArgumentParser(description='Analyze crawl results')
    parser.add_argument('--dir', default='storage/datasets',
                      help='Dataset directory (default: storage/datasets)')
    parser.add_argument('--name', default='dataset',
                      help='Dataset name (default: dataset)')

    args = parser.parse_args()
    analyze_results(args.dir, args.name)

if __name__ == "__main__":
    main()
