"""
Migration constants — platforms, statuses, phases, state machine.

Migration job constants.
Version: 1.0.0
"""

SHOPIFY: str = "shopify"
ETSY: str = "etsy"
PLATFORMS: tuple = (SHOPIFY, ETSY)

# Job statuses
STATUS_CONNECTED: str = "connected"
STATUS_RUNNING: str = "running"
STATUS_PAUSED: str = "paused"
STATUS_FAILED: str = "failed"
STATUS_CANCELLED: str = "cancelled"
STATUS_COMPLETED: str = "completed"

TERMINAL_STATUSES: frozenset = frozenset({STATUS_CANCELLED, STATUS_COMPLETED})

# target status -> statuses it may be entered from
ALLOWED_TRANSITIONS: dict[str, frozenset] = {
    STATUS_RUNNING: frozenset({STATUS_CONNECTED, STATUS_PAUSED, STATUS_FAILED}),
    STATUS_COMPLETED: frozenset({STATUS_RUNNING}),
    STATUS_FAILED: frozenset({STATUS_RUNNING}),
    STATUS_PAUSED: frozenset({STATUS_RUNNING}),
    STATUS_CANCELLED: frozenset({STATUS_RUNNING, STATUS_PAUSED}),
    STATUS_CONNECTED: frozenset({STATUS_FAILED, STATUS_COMPLETED, STATUS_CANCELLED}),
}

STARTABLE_STATUSES: frozenset = ALLOWED_TRANSITIONS[STATUS_RUNNING]
CANCELLABLE_STATUSES: frozenset = ALLOWED_TRANSITIONS[STATUS_CANCELLED]
RESETTABLE_STATUSES: frozenset = ALLOWED_TRANSITIONS[STATUS_CONNECTED]

# Entity types, in phase order
PRODUCTS: str = "products"
COLLECTIONS: str = "collections"
CUSTOMERS: str = "customers"
COUPONS: str = "coupons"
ORDERS: str = "orders"
IMAGES: str = "images"

PHASES: tuple = (PRODUCTS, COLLECTIONS, CUSTOMERS, COUPONS, ORDERS)
COUNTED_ENTITIES: tuple = PHASES + (IMAGES,)

# Phase -> MigrationConfig flag
PHASE_FLAGS: dict[str, str] = {
    PRODUCTS: "import_products",
    COLLECTIONS: "import_collections",
    CUSTOMERS: "import_customers",
    COUPONS: "import_coupons",
    ORDERS: "import_orders",
}

# Item ledger outcomes
OUTCOME_MIGRATED: str = "migrated"
OUTCOME_FAILED: str = "failed"

# record_item results
RECORDED: str = "recorded"
DUPLICATE: str = "duplicate"
OVER_TOTAL: str = "over_total"
NOT_OWNER: str = "not_owner"

# Error categories
CATEGORY_AUTH: str = "auth"
CATEGORY_RATE_LIMIT: str = "rate_limit"
CATEGORY_ITEM: str = "item"
CATEGORY_FATAL: str = "fatal"
CATEGORY_WARNING: str = "warning"

RECONNECT_REQUIRED_MESSAGE: str = "Source platform rejected the stored credentials; reconnect required"

# Imported order numbers are prefixed so they never collide with native orders
IMPORTED_ORDER_PREFIX: str = "IMP-"
IMPORTED_ORDER_FALLBACK_EMAIL: str = "unknown@import.storeforge"

# OAuth session cookie
OAUTH_COOKIE_NAME: str = "migration_oauth"
