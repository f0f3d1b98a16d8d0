"""
Normalize Shopify product JSON into one output record per variant.

Product payloads come in two naming conventions (`created_at` from the
storefront `.json` endpoints, `createdAt` from the GraphQL-style exports).
Every semantic field lists its candidate keys in FIELD_CONVENTIONS and is
resolved by taking the first non-null value.

This module is also exposed to user hooks as `context.fns`.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from bs4 import BeautifulSoup

from errors import MissingCoreFields

logger = logging.getLogger(__name__)

# semantic field -> candidate keys, highest priority first
FIELD_CONVENTIONS: Dict[str, Tuple[str, ...]] = {
    "created_at": ("created_at", "createdAt"),
    "updated_at": ("updated_at", "updatedAt"),
    "published_at": ("published_at", "publishedAt"),
    "product_type": ("product_type", "productType"),
    "description": ("body_html", "descriptionHtml", "description"),
    "stock_count": ("inventoryQuantity", "inventory_quantity"),
    "available_for_sale": ("availableForSale", "available_for_sale"),
    "weight_unit": ("weight_unit", "weightUnit"),
    "requires_shipping": ("requiresShipping", "requires_shipping"),
    "display_name": ("displayName", "display_name"),
}

DEFAULT_OPTION_PATTERN = re.compile(r'(Default|title)', re.IGNORECASE)
TRAILING_ID_PATTERN = re.compile(r'(\d+)$')
TAG_SEPARATOR = re.compile(r',\s*')
WHITESPACE = re.compile(r'\s+')

MAX_OPTIONS = 3

# option properties surfaced as top-level output fields
SURFACED_PROPS = ('color', 'size', 'material', 'created_at', 'updated_at', 'published_at')


def coalesce_props(sources: Iterable[Optional[Dict[str, Any]]], keys: Sequence[str]) -> Any:
    """Return the first non-null value of `keys`, probing each source in turn."""
    for source in sources:
        if not source:
            continue
        for key in keys:
            value = source.get(key)
            if value is not None:
                return value
    return None


def resolve_field(field: str, *sources: Optional[Dict[str, Any]]) -> Any:
    """Coalesce a semantic field using its naming conventions."""
    return coalesce_props(sources, FIELD_CONVENTIONS[field])


def remove_gid(value: Any) -> Optional[str]:
    """`gid://shopify/ProductVariant/123` -> `123`, plain ids unchanged."""
    if value is None:
        return None
    text = f"{value}"
    match = TRAILING_ID_PATTERN.search(text)
    return match.group(1) if match else text


def remove_url_query_string(url: str) -> str:
    return f"{url}".split('?', 1)[0]


def unique_non_empty(values: Iterable[Any]) -> List[Any]:
    """De-duplicate preserving first occurrence, dropping empty values."""
    seen = set()
    out = []
    for value in values:
        if not value or value in seen:
            continue
        seen.add(value)
        out.append(value)
    return out


def map_ids_from_array(items: Optional[Iterable[Optional[Dict[str, Any]]]]) -> Dict[Any, Dict[str, Any]]:
    """Index a list of objects by their `id`, skipping empty entries."""
    return {item.get("id"): item for item in (items or []) if item}


def safe_iso_date(value: Any) -> Optional[str]:
    """Parse a timestamp to ISO-8601 UTC (`2023-01-02T03:04:05.000Z`), None if unparseable."""
    if value is None or value == '':
        return None
    try:
        if isinstance(value, datetime):
            parsed = value
        elif isinstance(value, (int, float)):
            parsed = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        else:
            text = f"{value}".strip()
            if text.endswith('Z'):
                text = text[:-1] + '+00:00'
            parsed = datetime.fromisoformat(text)
    except (TypeError, ValueError, OverflowError, OSError):
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def strip_html(html: Optional[str]) -> Optional[str]:
    """Plain text of an HTML fragment with whitespace collapsed, None if empty."""
    if not html:
        return None
    text = BeautifulSoup(f"{html}", 'html.parser').get_text(' ')
    text = WHITESPACE.sub(' ', text).strip()
    return text or None


def split_tags(tags: Any) -> List[str]:
    if isinstance(tags, list):
        values = tags
    else:
        values = TAG_SEPARATOR.split(tags or '')
    return unique_non_empty(f"{tag}".strip() for tag in values if tag is not None)


def to_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def get_availability(stock_count: Any, available_for_sale: Any) -> str:
    """
    Stock count wins when it is a non-zero number; otherwise the
    availableForSale flag decides.
    """
    stock = to_number(stock_count)
    if stock:
        return 'in stock' if stock > 0 else 'out of stock'
    return 'in stock' if available_for_sale else 'out of stock'


def get_price(value: Any) -> Optional[float]:
    price = to_number(value)
    return price or None


def get_variant_attributes(variant: Dict[str, Any], product: Dict[str, Any]) -> Dict[str, Any]:
    """
    Describe a variant by its option values.

    Returns:
        {"name": "Color: Red / Size: M", "props": {"color": "Red", "size": "M"}},
        or {"name": "Default", "props": {}} for single-variant products
    """
    options = product.get("options") or []
    first_name = options[0].get("name") if options and isinstance(options[0], dict) else None

    if DEFAULT_OPTION_PATTERN.search(f"{first_name}"):
        return {"name": "Default", "props": {}}

    name = []
    props = {}

    for index, option in enumerate(options[:MAX_OPTIONS]):
        value = variant.get(f"option{index + 1}")
        option_name = (option or {}).get("name") if isinstance(option, dict) else option
        if value and option_name:
            props[f"{option_name}".lower()] = value
            name.append(f"{option_name}: {value}")

    return {"name": " / ".join(name), "props": props}


def get_variant_images(variant: Dict[str, Any],
                       images: Dict[Any, Dict[str, Any]],
                       images_without_variants: Sequence[str],
                       product: Dict[str, Any]) -> List[str]:
    """Variant image, then unlinked product images, then the default image."""
    linked = (images.get(variant.get("image_id")) or {}).get("src")
    default = (product.get("image") or {}).get("src")
    candidates = [linked, *images_without_variants, default]
    return unique_non_empty(remove_url_query_string(src) for src in candidates if src)


def extract_product(payload: Any, status_code: Optional[int] = None) -> Optional[Dict[str, Any]]:
    """
    Unwrap the product from a `{product: ...}` envelope or a bare product.

    Returns None when the resource explicitly does not exist (404).

    Raises:
        MissingCoreFields: no title under either envelope
    """
    payload = payload if isinstance(payload, dict) else {}
    product = payload.get("product") if isinstance(payload.get("product"), dict) else None

    if not (product or {}).get("title") and not payload.get("title"):
        if status_code == 404:
            return None
        raise MissingCoreFields("Missing product prop or title")

    return product if product and product.get("title") else payload


def index_product_images(product: Dict[str, Any]) -> Tuple[Dict[Any, Dict[str, Any]], List[str]]:
    """
    Returns:
        (images by id including the default image, srcs of images linked to no variant)
    """
    product_images = product.get("images") or []
    images = map_ids_from_array([*product_images, product.get("image")])
    images_without_variants = [
        image.get("src") for image in product_images
        if image and image.get("src") and not image.get("variant_ids")
    ]
    return images, images_without_variants


def normalize_variant(product: Dict[str, Any],
                      variant: Dict[str, Any],
                      url: str,
                      images: Dict[Any, Dict[str, Any]],
                      images_without_variants: Sequence[str],
                      scraped_at: Optional[str] = None) -> Dict[str, Any]:
    """Build the output record of one variant."""
    attributes = get_variant_attributes(variant, product)
    props = attributes["props"]

    stock_count = resolve_field("stock_count", variant)
    available_for_sale = resolve_field("available_for_sale", variant)
    weight_unit = resolve_field("weight_unit", variant)
    requires_shipping = resolve_field("requires_shipping", variant)
    display_name = resolve_field("display_name", variant)
    weight = variant.get("weight")

    extra_props = {prop: value for prop, value in props.items() if prop not in SURFACED_PROPS}

    return {
        "url": url,
        "title": product.get("title"),
        "id": remove_gid(product.get("id")),
        "sku": f"{variant.get('sku') or remove_gid(variant.get('id'))}",
        "description": strip_html(resolve_field("description", product)),
        "color": props.get("color"),
        "size": props.get("size"),
        "material": props.get("material"),
        "display_name": display_name,
        "availability": get_availability(stock_count, available_for_sale),
        "price": get_price(variant.get("price")),
        "currency": "USD",
        "product_type": resolve_field("product_type", product),
        "images_urls": get_variant_images(variant, images, images_without_variants, product),
        "brand": product.get("vendor"),
        "video_urls": [],
        "created_at": safe_iso_date(coalesce_props([props, product], FIELD_CONVENTIONS["created_at"])),
        "updated_at": safe_iso_date(coalesce_props([props, product], FIELD_CONVENTIONS["updated_at"])),
        "published_at": safe_iso_date(coalesce_props([props, product], FIELD_CONVENTIONS["published_at"])),
        "additional": {
            "variant_attributes": attributes["name"],
            "variant_title": variant.get("title"),
            "scraped_at": scraped_at or datetime.now(timezone.utc).isoformat(),
            "barcode": variant.get("barcode") or None,
            "taxcode": variant.get("taxcode") or None,
            "stock_count": stock_count,
            "tags": split_tags(product.get("tags")),
            "weight": f"{weight} {weight_unit}" if weight and weight_unit else (f"{weight}" if weight else None),
            "requires_shipping": requires_shipping or None,
            **extra_props,
        },
    }


def normalize_product(product: Optional[Dict[str, Any]], url: str) -> List[Dict[str, Any]]:
    """
    Explode a product into one output record per variant.

    Args:
        product: Raw product (already unwrapped by extract_product)
        url: Product page URL

    Returns:
        Output records in variant order; empty when there is no product
    """
    if not product:
        return []

    images, images_without_variants = index_product_images(product)
    scraped_at = datetime.now(timezone.utc).isoformat()

    records = [
        normalize_variant(product, variant, url, images, images_without_variants, scraped_at)
        for variant in (product.get("variants") or [])
        if variant
    ]
    logger.debug(f"Normalized {len(records)} variants of {url}")
    return records
