"""Pydantic schemas for API and CLI serialization."""

from pydantic import BaseModel
from typing import Optional, List
from datetime import datetime


# ---- RBAC ----
class PermissionOut(BaseModel):
    id: int
    name: str
    slug: str
    description: Optional[str] = None
    module: Optional[str] = None
    category: Optional[str] = None

    class Config:
        from_attributes = True

class RoleOut(BaseModel):
    id: int
    name: str
    slug: str
    description: Optional[str] = None
    is_system: bool = False
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class UserPermissionsOut(BaseModel):
    user_id: int
    roles: List[RoleOut] = []
    permissions: List[PermissionOut] = []


# ---- Cache ----
class CacheStatsOut(BaseModel):
    hits: int = 0
    misses: int = 0
    keys: int = 0
    evictions: int = 0
    errors: int = 0
    dropped: int = 0

    class Config:
        from_attributes = True


# ---- Health ----
class HealthOut(BaseModel):
    status: str
    database: str
    cache: str
