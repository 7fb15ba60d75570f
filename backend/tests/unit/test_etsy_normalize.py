"""
Unit tests for Etsy normalization.
Version: 1.0.0
"""
import pytest

from migration_hub.utils.etsy_normalize import (
    TRANSFORMERS,
    parse_price,
    source_reference,
    transform_listing,
    transform_section,
)


pytestmark = pytest.mark.unit


def _listing(**overrides):
    listing = {
        "listing_id": 1001,
        "title": "Hand&#39;made mug",
        "description": "Stoneware<br/>dishwasher safe",
        "state": "active",
        "quantity": 12,
        "price": {"amount": 2450, "divisor": 100, "currency_code": "USD"},
        "skus": ["MUG-1"],
        "tags": ["mug", "", "ceramic"],
        "images": [
            {"url_fullxfull": "https://i.etsystatic.com/1.jpg", "rank": 1, "alt_text": "front"},
            {"url_fullxfull": "https://i.etsystatic.com/2.jpg", "rank": 2},
        ],
    }
    listing.update(overrides)
    return listing


class TestParsePrice:

    def test_amount_over_divisor(self):
        assert parse_price({"amount": 1999, "divisor": 100}) == 19.99

    def test_missing_divisor_defaults_to_one(self):
        assert parse_price({"amount": 5}) == 5.0

    def test_plain_number(self):
        assert parse_price("3.50") == 3.5

    @pytest.mark.parametrize("value", [None, {"divisor": 100}, {"amount": 10, "divisor": -1}, "n/a"])
    def test_invalid(self, value):
        assert parse_price(value) is None


class TestTransformListing:

    def test_basic_listing(self):
        result = transform_listing(_listing())
        assert result.ok
        product = result.entity
        assert product.source_id == "1001"
        assert product.title == "Hand'made mug"
        assert product.description == "Stoneware dishwasher safe"
        assert product.price == 24.5
        assert product.sku == "MUG-1"
        assert product.quantity == 12
        assert product.tags == ["mug", "ceramic"]
        assert [i.position for i in product.images] == [1, 2]
        assert product.status == "active"
        assert product.variants == []

    def test_inactive_listing_is_draft(self):
        assert transform_listing(_listing(state="inactive")).entity.status == "draft"

    def test_invalid_price_fails(self):
        result = transform_listing(_listing(price={"amount": "abc", "divisor": 100}))
        assert not result.ok
        assert "price" in result.error.lower()

    def test_missing_id_fails(self):
        assert not transform_listing(_listing(listing_id=None)).ok

    def test_property_values_become_variants(self):
        listing = _listing(property_values=[
            {"property_name": "Color", "values": ["Blue", "Red"]},
            {"property_name": "Size", "values": ["S", "L"]},
        ])
        variants = transform_listing(listing).entity.variants
        assert len(variants) == 4
        assert variants[0].source_id == "1001_Blue_S"
        assert variants[0].options == {"color": "Blue", "size": "S"}
        assert all(v.quantity == 3 for v in variants)
        assert all(v.price == 24.5 for v in variants)

    def test_third_property_dropped_with_warning(self):
        listing = _listing(property_values=[
            {"property_name": "Color", "values": ["Blue"]},
            {"property_name": "Size", "values": ["S"]},
            {"property_name": "Glaze", "values": ["Matte"]},
        ])
        result = transform_listing(listing)
        assert set(result.entity.variants[0].options) == {"color", "size"}
        assert result.warnings


class TestTransformSection:

    def test_section_with_members(self):
        collection = transform_section({"shop_section_id": 5, "title": "Mugs", "listing_ids": [1001, 1002]}).entity
        assert collection.source_id == "5"
        assert collection.product_source_ids == ["1001", "1002"]

    def test_missing_title_placeholder(self):
        result = transform_section({"shop_section_id": 5, "title": ""})
        assert result.entity.title == "Untitled collection"
        assert result.warnings


class TestRegistry:

    def test_only_products_and_collections(self):
        assert set(TRANSFORMERS) == {"products", "collections"}

    def test_source_reference(self):
        assert source_reference(_listing()) == {"source_id": "1001", "source_title": "Hand&#39;made mug"}
        assert source_reference({"shop_section_id": 5, "title": "Mugs"})["source_id"] == "5"


class TestWrongTypedFields:

    def test_listing_with_junk_fields(self):
        result = transform_listing(_listing(
            title=2024,
            tags="mug",
            skus={"0": "MUG-1"},
            images=["https://i.etsystatic.com/1.jpg", {"url_fullxfull": 7}],
            property_values=[{"property_name": None, "values": "Blue"}, "junk"],
        ))
        assert result.ok
        product = result.entity
        assert product.title == "2024"
        assert product.tags == []
        assert product.sku is None
        assert [i.source_url for i in product.images] == ["7"]
        assert product.variants == []

    def test_numeric_property_values_rendered(self):
        result = transform_listing(_listing(property_values=[{"property_name": 3.5, "values": ["Blue", 9]}]))
        variants = result.entity.variants
        assert [v.title for v in variants] == ["Blue", "9"]
        assert variants[0].options == {"3.5": "Blue"}

    def test_section_with_junk_fields(self):
        result = transform_section({"shop_section_id": "5", "title": ["Mugs"], "listing_ids": "1001"})
        assert result.ok
        assert result.entity.title == "Untitled collection"
        assert result.entity.product_source_ids == []

    def test_source_reference_with_non_text_title(self):
        assert source_reference({"listing_id": 9, "title": None}) == {"source_id": "9", "source_title": None}
