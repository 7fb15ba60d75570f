"""
Shopify connector — OAuth install flow, HMAC verification and Admin GraphQL reads.

Products, collections, customers, discount codes and orders are paged with
GraphQL cursors; counts come from the GraphQL count roots.
Version: 1.0.0
"""
import hashlib
import hmac
import logging
import re
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlencode

from migration_hub.clients.platform_connector import (
    AuthInit,
    Capability,
    Page,
    PlatformConnector,
    ShopInfo,
    TokenSet,
    register_connector,
)
from migration_hub.core.config import Settings
from migration_hub.core.exceptions import (
    ExternalAPIError,
    InvalidAuthState,
    RateLimitError,
    ValidationError,
)
from migration_hub.utils.oauth_state import generate_state

logger = logging.getLogger("shopify_client")

SHOP_DOMAIN_RE = re.compile(r"^[a-z0-9][a-z0-9-]*\.myshopify\.com$")

PAGE_INFO = "pageInfo { hasNextPage endCursor }"

PRODUCTS_QUERY = """
query GetProducts($first: Int!, $after: String) {
  products(first: $first, after: $after) {
    edges {
      node {
        id
        title
        descriptionHtml
        productType
        vendor
        tags
        status
        variants(first: 100) {
          edges {
            node {
              id
              title
              sku
              price
              compareAtPrice
              inventoryQuantity
              selectedOptions { name value }
              inventoryItem { measurement { weight { unit value } } }
            }
          }
        }
        images(first: 20) { edges { node { url altText } } }
      }
    }
    %s
  }
}
""" % PAGE_INFO

COLLECTIONS_QUERY = """
query GetCollections($first: Int!, $after: String) {
  collections(first: $first, after: $after) {
    edges {
      node {
        id
        title
        descriptionHtml
        products(first: 250) { edges { node { id } } }
      }
    }
    %s
  }
}
""" % PAGE_INFO

CUSTOMERS_QUERY = """
query GetCustomers($first: Int!, $after: String) {
  customers(first: $first, after: $after) {
    edges {
      node {
        id
        firstName
        lastName
        email
        phone
        numberOfOrders
        amountSpent { amount }
        tags
        addressesV2(first: 10) {
          edges { node { name phone address1 address2 city province zip country } }
        }
      }
    }
    %s
  }
}
""" % PAGE_INFO

DISCOUNT_FIELDS = """
  __typename
  title
  status
  startsAt
  endsAt
  usageLimit
  asyncUsageCount
  codes(first: 1) { edges { node { code } } }
  minimumRequirement {
    ... on DiscountMinimumSubtotal { __typename greaterThanOrEqualToSubtotal { amount } }
    ... on DiscountMinimumQuantity { __typename }
  }
"""

COUPONS_QUERY = """
query GetCodeDiscounts($first: Int!, $after: String) {
  codeDiscountNodes(first: $first, after: $after) {
    edges {
      node {
        id
        codeDiscount {
          __typename
          ... on DiscountCodeBasic {
            %s
            customerGets {
              value {
                ... on DiscountPercentage { __typename percentage }
                ... on DiscountAmount { __typename amount { amount } }
              }
            }
          }
          ... on DiscountCodeFreeShipping {
            %s
          }
        }
      }
    }
    %s
  }
}
""" % (DISCOUNT_FIELDS, DISCOUNT_FIELDS, PAGE_INFO)

ORDERS_QUERY = """
query GetOrders($first: Int!, $after: String) {
  orders(first: $first, after: $after) {
    edges {
      node {
        id
        name
        email
        createdAt
        displayFinancialStatus
        displayFulfillmentStatus
        discountCodes
        paymentGatewayNames
        customer { id email firstName lastName phone }
        shippingAddress { name phone address1 address2 city province zip country }
        currentTotalPriceSet { shopMoney { amount } }
        currentSubtotalPriceSet { shopMoney { amount } }
        totalShippingPriceSet { shopMoney { amount } }
        currentTotalTaxSet { shopMoney { amount } }
        currentTotalDiscountsSet { shopMoney { amount } }
        lineItems(first: 50) {
          edges {
            node {
              title
              quantity
              product { id }
              discountedUnitPriceSet { shopMoney { amount } }
            }
          }
        }
      }
    }
    %s
  }
}
""" % PAGE_INFO

COUNT_QUERIES = {
    "products": ("productsCount", "query { productsCount { count } }"),
    "collections": ("collectionsCount", "query { collectionsCount { count } }"),
    "customers": ("customersCount", "query { customersCount { count } }"),
    "orders": ("ordersCount", "query { ordersCount(limit: null) { count } }"),
    "coupons": ("discountNodesCount", 'query { discountNodesCount(query: "method:code", limit: null) { count } }'),
}

LIST_QUERIES = {
    "products": ("products", PRODUCTS_QUERY),
    "collections": ("collections", COLLECTIONS_QUERY),
    "customers": ("customers", CUSTOMERS_QUERY),
    "coupons": ("codeDiscountNodes", COUPONS_QUERY),
    "orders": ("orders", ORDERS_QUERY),
}


@register_connector
class ShopifyConnector(PlatformConnector):
    """Shopify Admin API connector (OAuth + GraphQL reads)."""

    platform = "shopify"
    capabilities = frozenset({
        Capability.AUTH_INIT,
        Capability.AUTH_EXCHANGE,
        Capability.FETCH_SHOP_INFO,
        Capability.LIST_PRODUCTS,
        Capability.LIST_COLLECTIONS,
        Capability.LIST_CUSTOMERS,
        Capability.LIST_COUPONS,
        Capability.LIST_ORDERS,
    })

    def __init__(self, settings: Settings) -> None:
        super().__init__(settings)
        self._client_id = settings.shopify_client_id
        self._client_secret = settings.shopify_client_secret
        self._api_version = settings.shopify_api_version
        self._scopes = settings.shopify_scopes
        self._page_size = settings.migration_page_size

    @staticmethod
    def normalize_shop_domain(domain: Optional[str]) -> str:
        """
        Normalize and validate a shop domain.

        - "my-store" -> "my-store.myshopify.com"
        - "https://My-Store.myshopify.com/" -> "my-store.myshopify.com"

        Raises:
            ValidationError: not a *.myshopify.com domain
        """
        if not domain:
            raise ValidationError("Shop domain is required")

        domain = domain.strip().lower()
        domain = domain.replace("https://", "").replace("http://", "")
        domain = domain.split("/")[0]

        if not domain.endswith(".myshopify.com"):
            domain = f"{domain}.myshopify.com"

        if not SHOP_DOMAIN_RE.match(domain):
            raise ValidationError(f"Invalid Shopify shop domain {domain!r}")
        return domain

    # -- Auth ---------------------------------------------------------------

    def auth_init(self, store_id: str, shop: Optional[str] = None) -> AuthInit:
        shop = self.normalize_shop_domain(shop)
        state = generate_state()
        query = urlencode({
            "client_id": self._client_id or "",
            "scope": self._scopes,
            "redirect_uri": self._settings.oauth_redirect_uri(self.platform),
            "state": state,
        })
        return AuthInit(
            auth_url=f"https://{shop}/admin/oauth/authorize?{query}",
            state=state,
            shop=shop,
        )

    def validate_callback_hmac(self, params: Mapping[str, str]) -> bool:
        """Verify the HMAC Shopify signs every OAuth callback with."""
        received = params.get("hmac")
        if not received or not self._client_secret:
            return False
        message = "&".join(
            f"{key}={value}"
            for key, value in sorted(params.items())
            if key not in ("hmac", "signature")
        )
        digest = hmac.new(
            self._client_secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256
        ).hexdigest()
        return hmac.compare_digest(digest, received)

    async def auth_exchange(
        self,
        code: str,
        expected_state: str,
        returned_state: str,
        verifier: Optional[str] = None,
        shop: Optional[str] = None,
    ) -> TokenSet:
        self.check_state(expected_state, returned_state)
        if not code or not shop:
            raise InvalidAuthState("missing_params")
        shop = self.normalize_shop_domain(shop)

        data = await self._request(
            "POST",
            f"https://{shop}/admin/oauth/access_token",
            json={
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "code": code,
            },
        )
        access_token = data.get("access_token")
        if not access_token:
            raise ExternalAPIError(self.platform, "token exchange returned no access_token")
        logger.info("shopify token exchanged shop=%s scope=%s", shop, data.get("scope"))
        # Offline tokens do not expire and have no refresh token
        return TokenSet(access_token=access_token)

    async def fetch_shop_info(self, access_token: str, shop_id: Optional[str] = None) -> ShopInfo:
        shop = self.normalize_shop_domain(shop_id)
        data = await self._request(
            "GET",
            f"https://{shop}/admin/api/{self._api_version}/shop.json",
            headers=self._headers(access_token),
        )
        info = data.get("shop") or {}
        return ShopInfo(
            shop_id=info.get("myshopify_domain") or shop,
            shop_name=info.get("name") or shop,
        )

    # -- Reads --------------------------------------------------------------

    def _headers(self, access_token: str) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "X-Shopify-Access-Token": access_token,
        }

    async def _call_shopify_graphql(
        self, shop: str, access_token: str, query: str, variables: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        body = await self._request(
            "POST",
            f"https://{shop}/admin/api/{self._api_version}/graphql.json",
            headers=self._headers(access_token),
            json={"query": query, "variables": variables or {}},
        )
        errors = body.get("errors")
        if errors:
            if any(((e or {}).get("extensions") or {}).get("code") == "THROTTLED" for e in errors):
                raise RateLimitError(self.platform, retry_after=2.0)
            messages = "; ".join(str((e or {}).get("message")) for e in errors)
            logger.info("shopify graphql errors shop=%s errors=%s", shop, messages)
            raise ExternalAPIError(self.platform, "GraphQL query failed", body=messages)
        return body.get("data") or {}

    async def _count(self, entity: str, access_token: str, shop_id: str) -> int:
        root, query = COUNT_QUERIES[entity]
        data = await self._call_shopify_graphql(shop_id, access_token, query)
        return int(((data.get(root) or {}).get("count")) or 0)

    async def _list(self, entity: str, access_token: str, shop_id: str, cursor: Optional[str]) -> Page:
        root, query = LIST_QUERIES[entity]
        data = await self._call_shopify_graphql(
            shop_id, access_token, query, {"first": self._page_size, "after": cursor}
        )
        connection = data.get(root) or {}
        items = [e["node"] for e in connection.get("edges") or [] if e and e.get("node")]
        page_info = connection.get("pageInfo") or {}
        next_cursor = page_info.get("endCursor") if page_info.get("hasNextPage") else None
        return Page(items=items, next_cursor=next_cursor)

    async def count_products(self, access_token: str, shop_id: str) -> int:
        return await self._count("products", access_token, shop_id)

    async def count_collections(self, access_token: str, shop_id: str) -> int:
        return await self._count("collections", access_token, shop_id)

    async def count_customers(self, access_token: str, shop_id: str) -> int:
        return await self._count("customers", access_token, shop_id)

    async def count_coupons(self, access_token: str, shop_id: str) -> int:
        return await self._count("coupons", access_token, shop_id)

    async def count_orders(self, access_token: str, shop_id: str) -> int:
        return await self._count("orders", access_token, shop_id)

    async def list_products(self, access_token: str, shop_id: str, cursor: Optional[str] = None) -> Page:
        return await self._list("products", access_token, shop_id, cursor)

    async def list_collections(self, access_token: str, shop_id: str, cursor: Optional[str] = None) -> Page:
        return await self._list("collections", access_token, shop_id, cursor)

    async def list_customers(self, access_token: str, shop_id: str, cursor: Optional[str] = None) -> Page:
        return await self._list("customers", access_token, shop_id, cursor)

    async def list_coupons(self, access_token: str, shop_id: str, cursor: Optional[str] = None) -> Page:
        return await self._list("coupons", access_token, shop_id, cursor)

    async def list_orders(self, access_token: str, shop_id: str, cursor: Optional[str] = None) -> Page:
        return await self._list("orders", access_token, shop_id, cursor)
