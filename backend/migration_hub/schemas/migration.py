"""
Migration schemas — job config, OAuth session, request/response models.

Version: 1.0.0
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from migration_hub.core.constants.migration import PHASE_FLAGS


class MigrationConfig(BaseModel):
    """Which entity types a run imports, and the status given to imported products."""
    import_products: bool = True
    import_collections: bool = True
    import_customers: bool = False
    import_coupons: bool = False
    import_orders: bool = False
    product_status: Literal["draft", "active"] = "draft"

    def is_enabled(self, phase: str) -> bool:
        return bool(getattr(self, PHASE_FLAGS[phase]))


class OAuthSession(BaseModel):
    """Short-lived OAuth state carried in the encrypted callback cookie."""
    state: str
    store_id: str
    platform: str
    pkce_verifier: Optional[str] = None
    shop: Optional[str] = None
    expires_at: float


class MigrationError(BaseModel):
    entity_type: str
    source_id: Optional[str] = None
    source_title: Optional[str] = None
    category: str
    message: str
    timestamp: str


class EntityProgress(BaseModel):
    total: int = 0
    migrated: int = 0
    failed: int = 0


# ============================================
# Requests
# ============================================
class StartMigrationRequest(MigrationConfig):
    migration_id: str


class CancelMigrationRequest(BaseModel):
    migration_id: str


class ResetMigrationRequest(BaseModel):
    migration_id: str


class ShopifyConnectRequest(BaseModel):
    store_id: str
    shop_url: str = Field(..., min_length=1)
    access_token: str = Field(..., min_length=1)


# ============================================
# Responses
# ============================================
class MigrationStateResponse(BaseModel):
    migration_id: str
    status: str


class ConnectionResponse(BaseModel):
    migration_id: str
    platform: str
    source_shop_id: str
    source_shop_name: Optional[str] = None
    status: str


class MigrationStatusResponse(BaseModel):
    migration_id: str
    store_id: str
    platform: str
    status: str
    current_phase: str
    source_shop_name: Optional[str] = None
    products: EntityProgress
    collections: EntityProgress
    customers: EntityProgress
    coupons: EntityProgress
    orders: EntityProgress
    images: EntityProgress
    error_count: int = 0
    last_error_category: Optional[str] = None
    errors: Optional[List[MigrationError]] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class AuthUrlResponse(BaseModel):
    auth_url: str


def progress_from_row(row: Dict[str, Any], entity: str) -> EntityProgress:
    return EntityProgress(
        total=row.get(f"total_{entity}") or 0,
        migrated=row.get(f"migrated_{entity}") or 0,
        failed=row.get(f"failed_{entity}") or 0,
    )
