"""
Catalog store — writes imported entities into the merchant's store tables.

Every write is keyed by (store_id, platform, entity_type, source_id) through
the migration_entity_map table: a re-import updates the mapped row in place
instead of creating a duplicate. Child rows (variants, collection links,
addresses, order items) are replaced wholesale on each write.
Version: 1.0.0
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from migration_hub.core.constants.migration import (
    COLLECTIONS,
    COUPONS,
    CUSTOMERS,
    IMPORTED_ORDER_FALLBACK_EMAIL,
    ORDERS,
    PRODUCTS,
)
from migration_hub.db.base_store import BaseStore
from migration_hub.schemas.catalog import (
    ImportedCollection,
    ImportedCoupon,
    ImportedCustomer,
    ImportedOrder,
    ImportedProduct,
)
from migration_hub.utils.type_converters import slugify

logger = logging.getLogger("catalog_store")

ENTITY_MAP_TABLE = "migration_entity_map"

ENTITY_TABLES = {
    PRODUCTS: "products",
    COLLECTIONS: "collections",
    CUSTOMERS: "customers",
    COUPONS: "coupons",
    ORDERS: "orders",
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class CatalogStore(BaseStore):
    """Idempotent upserts of imported products, collections, customers, coupons and orders."""

    # -- Entity map ---------------------------------------------------------

    async def get_mapped_id(
        self, store_id: str, platform: str, entity: str, source_id: str
    ) -> Optional[str]:
        rows = await self._select(
            ENTITY_MAP_TABLE,
            columns="internal_id",
            filters={
                "store_id": store_id,
                "platform": platform,
                "entity_type": entity,
                "source_id": source_id,
            },
            limit=1,
        )
        return rows[0]["internal_id"] if rows else None

    async def get_mapped_ids(
        self, store_id: str, platform: str, entity: str, source_ids: Iterable[str]
    ) -> Dict[str, str]:
        source_ids = sorted({s for s in source_ids if s})
        if not source_ids:
            return {}
        rows = await self._select(
            ENTITY_MAP_TABLE,
            columns="source_id, internal_id",
            filters={"store_id": store_id, "platform": platform, "entity_type": entity},
            in_filters={"source_id": source_ids},
        )
        return {row["source_id"]: row["internal_id"] for row in rows}

    async def _remember(
        self, store_id: str, platform: str, entity: str, source_id: str, internal_id: str
    ) -> None:
        await self._upsert(
            ENTITY_MAP_TABLE,
            [{
                "store_id": store_id,
                "platform": platform,
                "entity_type": entity,
                "source_id": source_id,
                "internal_id": internal_id,
                "updated_at": _now(),
            }],
            on_conflict="store_id,platform,entity_type,source_id",
        )

    async def _write(
        self, store_id: str, platform: str, entity: str, source_id: str, row: Dict[str, Any]
    ) -> Tuple[str, bool]:
        """
        Update the mapped row or insert a new one.

        The map row is written before the entity row, with the id the entity
        will be inserted under. A failure between the two writes leaves a
        mapping without a row, which the next attempt fills in under the
        same id; never a row without a mapping.

        Returns (internal_id, created).
        """
        table = ENTITY_TABLES[entity]
        mapped_id = await self.get_mapped_id(store_id, platform, entity, source_id)
        if mapped_id:
            updated = await self._update(table, {"id": mapped_id, "store_id": store_id}, row)
            if updated:
                return mapped_id, False
            # Mapped row was deleted by the merchant, or its insert never landed
            logger.info(f"Mapped {entity} {mapped_id} missing, re-creating source_id={source_id}")
            internal_id = mapped_id
        else:
            internal_id = str(uuid.uuid4())
            await self._remember(store_id, platform, entity, source_id, internal_id)

        created = await self._insert_one(table, {"id": internal_id, "store_id": store_id, **row})
        return created["id"], True

    async def _replace_children(
        self, table: str, parent_column: str, parent_id: str, rows: List[Dict[str, Any]]
    ) -> None:
        await self._delete(table, filters={parent_column: parent_id})
        if rows:
            await self._insert(table, rows)

    # -- Products -----------------------------------------------------------

    async def remove_demo_products(self, store_id: str) -> int:
        """Delete the store's placeholder products (and their images)."""
        rows = await self._select(
            "products", columns="id", filters={"store_id": store_id, "is_demo": True}
        )
        demo_ids = [row["id"] for row in rows]
        if not demo_ids:
            return 0
        await self._delete("product_images", in_filters={"product_id": demo_ids})
        await self._delete("products", in_filters={"id": demo_ids})
        logger.info(f"Removed {len(demo_ids)} demo products store={store_id}")
        return len(demo_ids)

    async def upsert_product(
        self, store_id: str, platform: str, product: ImportedProduct, status: str
    ) -> str:
        row = {
            "title": product.title,
            "slug": slugify(product.title),
            "description": product.description,
            "price": product.price,
            "compare_at_price": product.compare_at_price,
            "sku": product.sku,
            "quantity": product.quantity,
            "track_quantity": product.track_quantity,
            "weight": product.weight_grams,
            "requires_shipping": True,
            "categories": product.categories,
            "tags": product.tags,
            "status": status,
            "featured": False,
            "updated_at": _now(),
        }
        product_id, created = await self._write(store_id, platform, PRODUCTS, product.source_id, row)

        variant_rows = [
            {
                "product_id": product_id,
                "title": variant.title,
                "sku": variant.sku,
                "price": variant.price,
                "compare_at_price": variant.compare_at_price,
                "quantity": variant.quantity,
                "options": variant.options,
                "weight": variant.weight_grams,
            }
            for variant in product.variants
        ]
        if created:
            await self._insert("product_variants", variant_rows)
        else:
            await self._replace_children("product_variants", "product_id", product_id, variant_rows)
        return product_id

    # -- Collections --------------------------------------------------------

    async def upsert_collection(
        self,
        store_id: str,
        platform: str,
        collection: ImportedCollection,
        product_ids: List[str],
    ) -> str:
        """Write a collection linked to already-imported product ids (internal)."""
        row = {
            "title": collection.title,
            "slug": slugify(collection.title),
            "description": collection.description,
            "updated_at": _now(),
        }
        collection_id, _ = await self._write(
            store_id, platform, COLLECTIONS, collection.source_id, row
        )
        links = [
            {"collection_id": collection_id, "product_id": product_id, "position": position}
            for position, product_id in enumerate(dict.fromkeys(product_ids))
        ]
        await self._replace_children("collection_products", "collection_id", collection_id, links)
        return collection_id

    # -- Customers ----------------------------------------------------------

    async def find_customer_by_email(self, store_id: str, email: str) -> Optional[str]:
        if not email:
            return None
        rows = await self._select(
            "customers", columns="id", filters={"store_id": store_id, "email": email.lower()}, limit=1
        )
        return rows[0]["id"] if rows else None

    async def upsert_customer(self, store_id: str, platform: str, customer: ImportedCustomer) -> str:
        row = {
            "email": customer.email.lower(),
            "full_name": customer.full_name,
            "phone": customer.phone,
            "total_orders": customer.total_orders,
            "total_spent": customer.total_spent,
            "tags": customer.tags,
            "updated_at": _now(),
        }
        customer_id, _ = await self._write(store_id, platform, CUSTOMERS, customer.source_id, row)
        addresses = [
            {"customer_id": customer_id, **address.model_dump()}
            for address in customer.addresses
        ]
        await self._replace_children("customer_addresses", "customer_id", customer_id, addresses)
        return customer_id

    # -- Coupons ------------------------------------------------------------

    async def upsert_coupon(self, store_id: str, platform: str, coupon: ImportedCoupon) -> str:
        row = {
            "code": coupon.code,
            "description": coupon.description,
            "discount_type": coupon.discount_type,
            "discount_value": 1 if coupon.discount_type == "free_shipping" else coupon.discount_value,
            "minimum_order_value": coupon.minimum_order_value,
            "usage_limit": coupon.usage_limit,
            "usage_count": coupon.usage_count,
            "starts_at": coupon.starts_at,
            "expires_at": coupon.expires_at,
            "active": coupon.active,
            "updated_at": _now(),
        }
        coupon_id, _ = await self._write(store_id, platform, COUPONS, coupon.source_id, row)
        return coupon_id

    # -- Orders -------------------------------------------------------------

    async def upsert_order(
        self,
        store_id: str,
        platform: str,
        order: ImportedOrder,
        customer_id: Optional[str],
        product_ids: Dict[str, str],
    ) -> str:
        """
        Write an order and its line items.

        Args:
            customer_id: internal customer id, if one was resolved
            product_ids: source product id -> internal product id
        """
        row = {
            "order_number": order.order_number,
            "customer_id": customer_id,
            "customer_name": order.customer_name,
            "customer_email": order.customer_email or IMPORTED_ORDER_FALLBACK_EMAIL,
            "customer_phone": order.customer_phone,
            "shipping_address": order.shipping_address,
            "subtotal": order.subtotal,
            "shipping_cost": order.shipping_cost,
            "tax_amount": order.tax_amount,
            "discount_amount": order.discount_amount,
            "total_amount": order.total_amount,
            "payment_method": order.payment_method,
            "payment_status": order.payment_status,
            "order_status": order.order_status,
            "coupon_code": order.coupon_code,
            "created_at": order.created_at or _now(),
            "updated_at": _now(),
        }
        if order.payment_status == "paid":
            row["paid_at"] = order.created_at or _now()

        order_id, _ = await self._write(store_id, platform, ORDERS, order.source_id, row)
        items = [
            {
                "order_id": order_id,
                "product_id": product_ids.get(item.source_product_id) if item.source_product_id else None,
                "product_title": item.title,
                "quantity": item.quantity,
                "unit_price": item.unit_price,
                "total_price": item.total_price,
            }
            for item in order.line_items
        ]
        await self._replace_children("order_items", "order_id", order_id, items)
        return order_id
