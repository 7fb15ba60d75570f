"""
Etsy normalization — Open API v3 listings and shop sections to catalog entities.

Etsy prices are {amount, divisor}; listing property values become variants.
Fields of the wrong JSON type are treated as missing.
Version: 1.0.0
"""
from itertools import product as cartesian
from typing import Any, Dict, List, Optional

from migration_hub.schemas.catalog import (
    ImportedCollection,
    ImportedImage,
    ImportedProduct,
    ImportedVariant,
    TransformResult,
)
from migration_hub.utils.type_converters import (
    as_dict,
    as_list,
    non_negative_int,
    strip_html,
    text_list,
    to_float,
    to_int,
    to_optional_text,
    to_text,
)

UNTITLED_PRODUCT = "Untitled product"
MAX_VARIANT_DIMENSIONS = 2


def parse_price(price: Any) -> Optional[float]:
    """{'amount': 1999, 'divisor': 100} -> 19.99."""
    if isinstance(price, dict):
        amount = to_float(price.get("amount"))
        divisor = to_float(price.get("divisor")) or 1.0
        if amount is None or divisor <= 0:
            return None
        return round(amount / divisor, 2)
    return to_float(price)


def _variants(listing: Dict[str, Any], price: float, warnings: List[str]) -> List[ImportedVariant]:
    properties = []
    for prop in as_list(listing.get("property_values")):
        values = text_list(as_dict(prop).get("values"))
        if values:
            properties.append((to_text(prop.get("property_name")).strip(), values))
    if not properties:
        return []
    if len(properties) > MAX_VARIANT_DIMENSIONS:
        warnings.append(f"only the first {MAX_VARIANT_DIMENSIONS} variation properties imported")
        properties = properties[:MAX_VARIANT_DIMENSIONS]

    combos = list(cartesian(*[values for _, values in properties]))
    per_variant = non_negative_int(listing.get("quantity")) // max(1, len(combos))
    listing_id = str(to_int(listing.get("listing_id")))
    variants = []
    for combo in combos:
        variants.append(ImportedVariant(
            source_id="_".join([listing_id, *combo]),
            title=" / ".join(combo),
            price=price,
            quantity=per_variant,
            options={
                (name or f"option{idx + 1}").lower(): value
                for idx, ((name, _), value) in enumerate(zip(properties, combo))
            },
        ))
    return variants


def transform_listing(listing: Dict[str, Any]) -> TransformResult[ImportedProduct]:
    warnings: List[str] = []
    listing_id = to_int(listing.get("listing_id"))
    if listing_id is None:
        return TransformResult.failure("Listing has no id")

    price = parse_price(listing.get("price"))
    if price is None or price < 0:
        return TransformResult.failure(f"Invalid price {listing.get('price')!r}")

    title = strip_html(listing.get("title"))
    if not title:
        title = UNTITLED_PRODUCT
        warnings.append("missing title replaced with placeholder")

    images = []
    for idx, img in enumerate(as_dict(i) for i in as_list(listing.get("images"))):
        url = to_text(img.get("url_fullxfull")).strip()
        if url:
            images.append(ImportedImage(
                source_url=url,
                alt_text=to_optional_text(img.get("alt_text")),
                position=to_int(img.get("rank")) or idx,
            ))

    skus = text_list(listing.get("skus"))
    product = ImportedProduct(
        source_id=str(listing_id),
        title=title,
        description=strip_html(listing.get("description")),
        price=price,
        sku=skus[0] if skus else None,
        quantity=non_negative_int(listing.get("quantity")),
        tags=text_list(listing.get("tags")),
        images=images,
        variants=_variants(listing, price, warnings),
        status="active" if listing.get("state") == "active" else "draft",
    )
    return TransformResult(entity=product, warnings=warnings)


def transform_section(section: Dict[str, Any]) -> TransformResult[ImportedCollection]:
    """A shop section; ``listing_ids`` is attached by the connector."""
    section_id = to_int(section.get("shop_section_id"))
    if section_id is None:
        return TransformResult.failure("Section has no id")
    warnings: List[str] = []
    title = to_text(section.get("title")).strip()
    if not title:
        title = "Untitled collection"
        warnings.append("missing title replaced with placeholder")
    collection = ImportedCollection(
        source_id=str(section_id),
        title=title,
        product_source_ids=text_list(section.get("listing_ids")),
    )
    return TransformResult(entity=collection, warnings=warnings)


TRANSFORMERS = {
    "products": transform_listing,
    "collections": transform_section,
}


def source_reference(record: Dict[str, Any]) -> Dict[str, Optional[str]]:
    source_id = to_optional_text(record.get("listing_id")) or to_optional_text(record.get("shop_section_id"))
    return {"source_id": source_id, "source_title": to_optional_text(record.get("title"))}
