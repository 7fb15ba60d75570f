"""
Shopify normalization — GraphQL Admin API nodes to internal catalog entities.

Every transform is a pure function returning a TransformResult. Malformed
optional fields are coerced and reported as warnings; a record that cannot
be represented at all (no price, unsupported discount kind) comes back as
an error. Fields of the wrong JSON type are treated as missing. Nothing
here raises.
Version: 1.0.0
"""
from typing import Any, Dict, List, Optional

from migration_hub.core.constants.migration import IMPORTED_ORDER_PREFIX
from migration_hub.schemas.catalog import (
    ImportedAddress,
    ImportedCollection,
    ImportedCoupon,
    ImportedCustomer,
    ImportedImage,
    ImportedOrder,
    ImportedOrderItem,
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
    weight_to_grams,
)

UNTITLED_PRODUCT = "Untitled product"


def extract_gid(gid: Any) -> str:
    """'gid://shopify/Product/123' -> '123'."""
    return to_text(gid).strip().rstrip("/").split("/")[-1]


def _nodes(connection: Any) -> List[Dict[str, Any]]:
    """Flatten a GraphQL connection (edges or nodes form, or a bare list)."""
    if isinstance(connection, list):
        return [n for n in connection if isinstance(n, dict)]
    connection = as_dict(connection)
    if "nodes" in connection:
        return [n for n in as_list(connection["nodes"]) if isinstance(n, dict) and n]
    nodes = (as_dict(e).get("node") for e in as_list(connection.get("edges")))
    return [n for n in nodes if isinstance(n, dict) and n]


def _money(value: Any) -> Optional[float]:
    """Accepts '12.50', 12.5 or a MoneyBag {'shopMoney': {'amount': ..}}."""
    if isinstance(value, dict):
        value = as_dict(value.get("shopMoney") or value).get("amount")
    return to_float(value)


def _variant_weight(variant: Dict[str, Any]) -> Optional[float]:
    measurement = as_dict(as_dict(variant.get("inventoryItem")).get("measurement"))
    weight = as_dict(measurement.get("weight"))
    return weight_to_grams(weight.get("value"), weight.get("unit"))


def _title(node: Dict[str, Any], placeholder: str, warnings: List[str]) -> str:
    title = to_text(node.get("title")).strip()
    if not title:
        warnings.append("missing title replaced with placeholder")
        return placeholder
    return title


def _full_name(first: Any, last: Any) -> str:
    return " ".join(p for p in (to_text(first).strip(), to_text(last).strip()) if p)


# ============================================
# Products / collections
# ============================================
def transform_product(node: Dict[str, Any]) -> TransformResult[ImportedProduct]:
    warnings: List[str] = []
    source_id = extract_gid(node.get("id"))
    if not source_id:
        return TransformResult.failure("Product has no id")

    title = _title(node, UNTITLED_PRODUCT, warnings)

    variants = _nodes(node.get("variants"))
    if not variants:
        return TransformResult.failure("Product has no variants to take a price from")

    first = variants[0]
    price = to_float(first.get("price"))
    if price is None or price < 0:
        return TransformResult.failure(f"Invalid price {first.get('price')!r}")

    compare_at = to_float(first.get("compareAtPrice"))
    if first.get("compareAtPrice") not in (None, "") and compare_at is None:
        warnings.append("unparsable compare-at price dropped")

    imported_variants: List[ImportedVariant] = []
    if len(variants) > 1:
        for variant in variants:
            variant_price = to_float(variant.get("price"))
            if variant_price is None or variant_price < 0:
                warnings.append(f"variant {extract_gid(variant.get('id'))} skipped: invalid price")
                continue
            options = (as_dict(opt) for opt in as_list(variant.get("selectedOptions")))
            imported_variants.append(ImportedVariant(
                source_id=extract_gid(variant.get("id")),
                title=to_text(variant.get("title")).strip() or "Default",
                sku=to_optional_text(variant.get("sku")),
                price=variant_price,
                compare_at_price=to_float(variant.get("compareAtPrice")),
                quantity=non_negative_int(variant.get("inventoryQuantity")),
                options={
                    to_text(opt.get("name")).lower(): to_text(opt.get("value"))
                    for opt in options
                    if to_text(opt.get("name"))
                },
                weight_grams=_variant_weight(variant),
            ))

    images = [
        ImportedImage(
            source_url=to_text(img.get("url")),
            alt_text=to_optional_text(img.get("altText")),
            position=idx,
        )
        for idx, img in enumerate(_nodes(node.get("images")))
        if to_text(img.get("url"))
    ]

    product_type = to_text(node.get("productType")).strip()
    status = to_text(node.get("status")).upper()
    product = ImportedProduct(
        source_id=source_id,
        title=title,
        description=strip_html(node.get("descriptionHtml")),
        price=price,
        compare_at_price=compare_at,
        sku=to_optional_text(first.get("sku")),
        quantity=non_negative_int(first.get("inventoryQuantity")),
        weight_grams=_variant_weight(first),
        categories=[product_type] if product_type else [],
        tags=text_list(node.get("tags")),
        images=images,
        variants=imported_variants,
        # ARCHIVED is imported as draft rather than dropped
        status="active" if status == "ACTIVE" else "draft",
    )
    return TransformResult(entity=product, warnings=warnings)


def transform_collection(node: Dict[str, Any]) -> TransformResult[ImportedCollection]:
    source_id = extract_gid(node.get("id"))
    if not source_id:
        return TransformResult.failure("Collection has no id")
    warnings: List[str] = []
    collection = ImportedCollection(
        source_id=source_id,
        title=_title(node, "Untitled collection", warnings),
        description=strip_html(node.get("descriptionHtml")) or None,
        product_source_ids=[
            pid for pid in (extract_gid(p.get("id")) for p in _nodes(node.get("products"))) if pid
        ],
    )
    return TransformResult(entity=collection, warnings=warnings)


# ============================================
# Customers
# ============================================
def _address(node: Dict[str, Any], fallback_name: str, is_default: bool) -> Optional[ImportedAddress]:
    street = to_text(node.get("address1")).strip()
    if not street:
        return None
    return ImportedAddress(
        full_name=to_text(node.get("name")).strip() or fallback_name,
        phone=to_text(node.get("phone")),
        address_line1=street,
        address_line2=to_optional_text(node.get("address2")),
        city=to_text(node.get("city")),
        state=to_text(node.get("province")),
        pincode=to_text(node.get("zip")),
        country=to_text(node.get("country")),
        is_default=is_default,
    )


def transform_customer(node: Dict[str, Any]) -> TransformResult[ImportedCustomer]:
    source_id = extract_gid(node.get("id"))
    if not source_id:
        return TransformResult.failure("Customer has no id")
    email = to_text(node.get("email")).strip().lower()
    if not email:
        return TransformResult.failure("Customer has no email address")

    warnings: List[str] = []
    full_name = _full_name(node.get("firstName"), node.get("lastName")) or email.split("@")[0]

    addresses = []
    for idx, addr in enumerate(_nodes(node.get("addressesV2")) or _nodes(node.get("addresses"))):
        parsed = _address(addr, full_name, is_default=idx == 0)
        if parsed is None:
            warnings.append(f"address {idx} skipped: no street line")
            continue
        addresses.append(parsed)

    total_spent = _money(node.get("amountSpent"))
    if node.get("amountSpent") is not None and total_spent is None:
        warnings.append("unparsable amount spent set to 0")

    customer = ImportedCustomer(
        source_id=source_id,
        email=email,
        full_name=full_name,
        phone=to_optional_text(node.get("phone")),
        total_orders=non_negative_int(node.get("numberOfOrders")),
        total_spent=max(0.0, total_spent or 0.0),
        tags=text_list(node.get("tags")),
        addresses=addresses,
    )
    return TransformResult(entity=customer, warnings=warnings)


# ============================================
# Coupons
# ============================================
CODE_DISCOUNT_TYPES = ("DiscountCodeBasic", "DiscountCodeFreeShipping")


def _discount(node: Dict[str, Any]) -> Dict[str, Any]:
    return as_dict(node.get("codeDiscount") or node.get("discount"))


def transform_coupon(node: Dict[str, Any]) -> TransformResult[ImportedCoupon]:
    """Code discounts only: percentage, fixed amount and free shipping."""
    source_id = extract_gid(node.get("id"))
    if not source_id:
        return TransformResult.failure("Discount has no id")

    discount = _discount(node)
    typename = to_text(discount.get("__typename"))
    if typename not in CODE_DISCOUNT_TYPES:
        return TransformResult.failure(f"Unsupported discount type {typename or 'unknown'}")

    codes = _nodes(discount.get("codes"))
    code = to_text(codes[0].get("code")).strip() if codes else ""
    if not code:
        return TransformResult.failure("Discount has no redeemable code")

    if typename == "DiscountCodeFreeShipping":
        discount_type, value = "free_shipping", 0.0
    else:
        value_node = as_dict(as_dict(discount.get("customerGets")).get("value"))
        value_type = to_text(value_node.get("__typename"))
        percentage = to_float(value_node.get("percentage"))
        amount = _money(value_node.get("amount"))
        if value_type == "DiscountPercentage" and percentage is not None:
            # Shopify stores 10% as 0.1
            discount_type, value = "percentage", round(percentage * 100, 4)
        elif value_type == "DiscountAmount" and amount is not None:
            discount_type, value = "fixed_amount", amount
        else:
            return TransformResult.failure(f"Unsupported discount value {value_type or 'unknown'}")

    warnings: List[str] = []
    minimum = None
    requirement = as_dict(discount.get("minimumRequirement"))
    requirement_type = to_text(requirement.get("__typename"))
    if requirement_type == "DiscountMinimumSubtotal":
        minimum = _money(requirement.get("greaterThanOrEqualToSubtotal"))
    elif requirement_type:
        warnings.append(f"minimum requirement {requirement_type} not imported")

    coupon = ImportedCoupon(
        source_id=source_id,
        code=code.upper(),
        description=to_optional_text(discount.get("title")),
        discount_type=discount_type,
        discount_value=value,
        minimum_order_value=minimum,
        usage_limit=to_int(discount.get("usageLimit")),
        usage_count=non_negative_int(discount.get("asyncUsageCount")),
        starts_at=to_optional_text(discount.get("startsAt")),
        expires_at=to_optional_text(discount.get("endsAt")),
        active=to_text(discount.get("status")).upper() == "ACTIVE",
    )
    return TransformResult(entity=coupon, warnings=warnings)


# ============================================
# Orders
# ============================================
def map_payment_status(financial: Any) -> str:
    financial = to_text(financial).upper()
    if financial in ("PAID", "PARTIALLY_PAID"):
        return "paid"
    if financial in ("REFUNDED", "PARTIALLY_REFUNDED"):
        return "refunded"
    if financial == "VOIDED":
        return "failed"
    return "pending"


def map_order_status(fulfillment: Any, financial: Any) -> str:
    fulfillment = to_text(fulfillment).upper()
    financial = to_text(financial).upper()
    if financial == "REFUNDED":
        return "refunded"
    if financial == "VOIDED":
        return "cancelled"
    if fulfillment == "FULFILLED":
        return "delivered"
    if fulfillment in ("PARTIALLY_FULFILLED", "IN_PROGRESS"):
        return "shipped"
    if fulfillment in ("PENDING_FULFILLMENT", "OPEN"):
        return "processing"
    if fulfillment == "RESTOCKED":
        return "cancelled"
    return "confirmed" if financial == "PAID" else "pending"


def transform_order(node: Dict[str, Any]) -> TransformResult[ImportedOrder]:
    source_id = extract_gid(node.get("id"))
    if not source_id:
        return TransformResult.failure("Order has no id")

    total = _money(node.get("currentTotalPriceSet"))
    if total is None or total < 0:
        return TransformResult.failure("Order has no valid total")

    warnings: List[str] = []
    customer = as_dict(node.get("customer"))
    shipping = as_dict(node.get("shippingAddress"))
    shipping_name = to_text(shipping.get("name")).strip()
    customer_name = (
        _full_name(customer.get("firstName"), customer.get("lastName")) or shipping_name or "Unknown"
    )
    customer_phone = to_optional_text(customer.get("phone"))
    shipping_phone = to_optional_text(shipping.get("phone"))

    line_items: List[ImportedOrderItem] = []
    for item in _nodes(node.get("lineItems")):
        item_title = to_text(item.get("title")).strip()
        unit_price = _money(item.get("discountedUnitPriceSet"))
        quantity = non_negative_int(item.get("quantity"))
        if unit_price is None:
            warnings.append(f"line item {item_title!r} has no price, set to 0")
            unit_price = 0.0
        product = as_dict(item.get("product"))
        line_items.append(ImportedOrderItem(
            source_product_id=extract_gid(product.get("id")) or None,
            title=item_title or "Item",
            quantity=quantity,
            unit_price=unit_price,
            total_price=round(unit_price * quantity, 2),
        ))

    gateways = as_list(node.get("paymentGatewayNames"))
    gateway = to_text(gateways[0]).lower() if gateways else ""
    codes = text_list(node.get("discountCodes"))
    order_name = to_text(node.get("name")).strip() or source_id
    email = to_text(customer.get("email")).strip() or to_text(node.get("email")).strip()
    order = ImportedOrder(
        source_id=source_id,
        order_number=f"{IMPORTED_ORDER_PREFIX}{order_name.lstrip('#')}",
        customer_source_id=extract_gid(customer.get("id")) or None,
        customer_email=email.lower() or None,
        customer_name=customer_name,
        customer_phone=customer_phone or shipping_phone,
        shipping_address={
            "name": shipping_name or customer_name,
            "phone": shipping_phone or customer_phone or "",
            "address_line1": to_text(shipping.get("address1")).strip() or "N/A",
            "address_line2": to_optional_text(shipping.get("address2")),
            "city": to_text(shipping.get("city")),
            "state": to_text(shipping.get("province")),
            "pincode": to_text(shipping.get("zip")),
            "country": to_text(shipping.get("country")),
        },
        subtotal=_money(node.get("currentSubtotalPriceSet")) or 0.0,
        shipping_cost=_money(node.get("totalShippingPriceSet")) or 0.0,
        tax_amount=_money(node.get("currentTotalTaxSet")) or 0.0,
        discount_amount=_money(node.get("currentTotalDiscountsSet")) or 0.0,
        total_amount=total,
        payment_method=gateway or "other",
        payment_status=map_payment_status(node.get("displayFinancialStatus")),
        order_status=map_order_status(node.get("displayFulfillmentStatus"), node.get("displayFinancialStatus")),
        coupon_code=codes[0].upper() if codes else None,
        line_items=line_items,
        created_at=to_optional_text(node.get("createdAt")),
    )
    return TransformResult(entity=order, warnings=warnings)


TRANSFORMERS = {
    "products": transform_product,
    "collections": transform_collection,
    "customers": transform_customer,
    "coupons": transform_coupon,
    "orders": transform_order,
}


def source_reference(node: Dict[str, Any]) -> Dict[str, Optional[str]]:
    """Best-effort (source_id, source_title) for error reporting."""
    discount = _discount(node)
    title = next(
        (t for t in (to_optional_text(node.get(k)) for k in ("title", "name", "email")) if t),
        to_optional_text(discount.get("title")),
    )
    return {"source_id": extract_gid(node.get("id")) or None, "source_title": title}
