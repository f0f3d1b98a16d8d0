import pytest

from errors import MissingCoreFields
from product_normalizer import (
    coalesce_props,
    extract_product,
    get_availability,
    get_variant_attributes,
    get_variant_images,
    index_product_images,
    normalize_product,
    remove_gid,
    resolve_field,
    safe_iso_date,
    split_tags,
    strip_html,
)


def make_product(**overrides):
    product = {
        "id": 632910392,
        "title": "IPod Nano - 8GB",
        "body_html": "<p>It's the <strong>small</strong> iPod.</p>",
        "vendor": "Apple",
        "product_type": "Cult Products",
        "created_at": "2023-01-10T10:00:00-05:00",
        "updated_at": "2023-02-01T12:30:00-05:00",
        "published_at": None,
        "tags": "Emotive, Flash Memory, MP3, Emotive",
        "options": [{"name": "Color"}, {"name": "Size"}],
        "variants": [
            {
                "id": 808950810,
                "title": "Red / M",
                "sku": "IPOD-RED-M",
                "price": "199.00",
                "option1": "Red",
                "option2": "M",
                "inventory_quantity": 10,
                "image_id": 562641783,
                "weight": 1.25,
                "weight_unit": "lb",
                "requires_shipping": True,
                "barcode": "1234_pink",
            },
        ],
        "images": [
            {"id": 562641783, "src": "https://cdn.example/red.jpg?v=1", "variant_ids": [808950810]},
            {"id": 562641784, "src": "https://cdn.example/plain.jpg?v=2", "variant_ids": []},
        ],
        "image": {"id": 562641785, "src": "https://cdn.example/default.jpg?v=3"},
    }
    product.update(overrides)
    return product


def test_coalesce_prefers_declared_priority():
    record = {"created_at": "snake", "createdAt": "camel"}
    assert coalesce_props([record], ["created_at", "createdAt"]) == "snake"
    assert resolve_field("created_at", record) == "snake"


def test_coalesce_uses_the_only_convention_present():
    assert resolve_field("product_type", {"productType": "Shoes"}) == "Shoes"
    assert resolve_field("stock_count", {"inventory_quantity": 0}) == 0


def test_coalesce_missing_resolves_to_none():
    assert resolve_field("display_name", {}) is None
    assert resolve_field("display_name", None) is None
    assert coalesce_props([{"a": None}], ["a"]) is None


@pytest.mark.parametrize("stock, available, expected", [
    (5, None, "in stock"),
    ("5", None, "in stock"),
    (-2, True, "out of stock"),
    (0, None, "out of stock"),
    (None, True, "in stock"),
    (None, False, "out of stock"),
    (None, None, "out of stock"),
])
def test_availability(stock, available, expected):
    assert get_availability(stock, available) == expected


def test_remove_gid():
    assert remove_gid("gid://shopify/ProductVariant/39897499729985") == "39897499729985"
    assert remove_gid(632910392) == "632910392"
    assert remove_gid("632910392") == "632910392"
    assert remove_gid(None) is None


def test_default_variant_detection():
    product = {"options": [{"name": "Title", "values": ["Default Title"]}]}
    for variant in ({"option1": "Default Title"}, {"option1": "Other"}):
        assert get_variant_attributes(variant, product) == {"name": "Default", "props": {}}


def test_variant_attributes_from_options():
    product = {"options": [{"name": "Color"}, {"name": "Size"}]}
    attributes = get_variant_attributes({"option1": "Red", "option2": "M"}, product)
    assert attributes["name"] == "Color: Red / Size: M"
    assert attributes["props"] == {"color": "Red", "size": "M"}


def test_variant_attributes_skip_missing_slots():
    product = {"options": [{"name": "Color"}, {"name": "Size"}, {"name": "Fabric"}]}
    attributes = get_variant_attributes({"option1": "Blue", "option2": None, "option3": "Linen"}, product)
    assert attributes["name"] == "Color: Blue / Fabric: Linen"
    assert attributes["props"] == {"color": "Blue", "fabric": "Linen"}


def test_image_fallback_order():
    product = make_product()
    images, unlinked = index_product_images(product)

    linked_variant = {"image_id": 562641783}
    assert get_variant_images(linked_variant, images, unlinked, product) == [
        "https://cdn.example/red.jpg",
        "https://cdn.example/plain.jpg",
        "https://cdn.example/default.jpg",
    ]

    unlinked_variant = {"image_id": None}
    assert get_variant_images(unlinked_variant, images, unlinked, product)[0] == "https://cdn.example/plain.jpg"

    bare = make_product(images=[])
    images, unlinked = index_product_images(bare)
    assert get_variant_images({}, images, unlinked, bare) == ["https://cdn.example/default.jpg"]


def test_image_urls_deduplicated_after_query_strip():
    product = make_product(
        images=[
            {"id": 1, "src": "https://cdn.example/a.jpg?v=1", "variant_ids": [7]},
            {"id": 2, "src": "https://cdn.example/a.jpg?v=2"},
            {"id": 3, "src": ""},
        ],
        image={"id": 1, "src": "https://cdn.example/a.jpg?v=1"},
    )
    images, unlinked = index_product_images(product)
    assert get_variant_images({"image_id": 1}, images, unlinked, product) == ["https://cdn.example/a.jpg"]


def test_safe_iso_date():
    assert safe_iso_date("2023-01-10T10:00:00-05:00") == "2023-01-10T15:00:00.000Z"
    assert safe_iso_date("2023-01-10T10:00:00Z") == "2023-01-10T10:00:00.000Z"
    assert safe_iso_date("not a date") is None
    assert safe_iso_date(None) is None
    assert safe_iso_date("") is None


def test_split_tags():
    assert split_tags("a, b,c, a,, ") == ["a", "b", "c"]
    assert split_tags(["x", "y", "x", ""]) == ["x", "y"]
    assert split_tags(None) == []


def test_strip_html():
    assert strip_html("<p>Hello <b>world</b></p>\n<p>again</p>") == "Hello world again"
    assert strip_html("") is None
    assert strip_html("<p> </p>") is None


def test_extract_product_envelopes():
    wrapped = {"product": {"title": "Shirt"}}
    assert extract_product(wrapped) == {"title": "Shirt"}
    bare = {"title": "Shirt", "variants": []}
    assert extract_product(bare) is bare


def test_extract_product_missing_title():
    with pytest.raises(MissingCoreFields):
        extract_product({"product": {"id": 1}}, 200)
    with pytest.raises(MissingCoreFields):
        extract_product(None, 200)


def test_extract_product_not_found_is_skipped():
    assert extract_product({"errors": "Not Found"}, 404) is None


def test_normalize_product_record():
    records = normalize_product(make_product(), "https://shop.example/products/ipod-nano")
    assert len(records) == 1
    record = records[0]

    assert record["url"] == "https://shop.example/products/ipod-nano"
    assert record["id"] == "632910392"
    assert record["sku"] == "IPOD-RED-M"
    assert record["title"] == "IPod Nano - 8GB"
    assert record["description"] == "It's the small iPod."
    assert record["color"] == "Red"
    assert record["size"] == "M"
    assert record["material"] is None
    assert record["availability"] == "in stock"
    assert record["price"] == 199.0
    assert record["currency"] == "USD"
    assert record["product_type"] == "Cult Products"
    assert record["brand"] == "Apple"
    assert record["video_urls"] == []
    assert record["created_at"] == "2023-01-10T15:00:00.000Z"
    assert record["published_at"] is None
    assert record["images_urls"][0] == "https://cdn.example/red.jpg"

    additional = record["additional"]
    assert additional["variant_attributes"] == "Color: Red / Size: M"
    assert additional["variant_title"] == "Red / M"
    assert additional["barcode"] == "1234_pink"
    assert additional["taxcode"] is None
    assert additional["stock_count"] == 10
    assert additional["tags"] == ["Emotive", "Flash Memory", "MP3"]
    assert additional["weight"] == "1.25 lb"
    assert additional["requires_shipping"] is True
    assert additional["scraped_at"]


def test_normalize_product_camel_case_convention():
    product = {
        "id": "gid://shopify/Product/42",
        "title": "Hoodie",
        "descriptionHtml": "<p>Warm</p>",
        "productType": "Apparel",
        "createdAt": "2022-05-01T00:00:00Z",
        "tags": ["winter", "cotton"],
        "options": [{"name": "Material"}, {"name": "Fit"}],
        "variants": [
            {
                "id": "gid://shopify/ProductVariant/99",
                "option1": "Cotton",
                "option2": "Relaxed",
                "availableForSale": True,
                "displayName": "Hoodie - Cotton / Relaxed",
                "price": "0",
            },
        ],
    }
    record = normalize_product(product, "https://shop.example/products/hoodie")[0]

    assert record["id"] == "42"
    assert record["sku"] == "99"
    assert record["description"] == "Warm"
    assert record["product_type"] == "Apparel"
    assert record["material"] == "Cotton"
    assert record["display_name"] == "Hoodie - Cotton / Relaxed"
    assert record["availability"] == "in stock"
    assert record["price"] is None
    assert record["created_at"] == "2022-05-01T00:00:00.000Z"
    assert record["images_urls"] == []
    assert record["additional"]["fit"] == "Relaxed"
    assert "material" not in record["additional"]
    assert record["additional"]["weight"] is None


def test_normalize_product_one_record_per_variant():
    product = make_product(variants=[
        {"id": 1, "option1": "Red", "option2": "S"},
        {"id": 2, "option1": "Red", "option2": "M"},
        {"id": 3, "option1": "Blue", "option2": "M"},
    ])
    records = normalize_product(product, "https://shop.example/products/x")
    assert [r["sku"] for r in records] == ["1", "2", "3"]
    assert normalize_product(None, "https://shop.example/products/x") == []
