"""RBAC service: permission resolution, membership checks and role/permission assignment."""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set

from sqlalchemy import delete, insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from modcore.cache.base import Cache
from modcore.core.exceptions import (
    CacheError,
    KeyNotFoundError,
    ResourceConflictError,
    ResourceNotFoundError,
    ValidationError,
)
from modcore.models.assignment import UserPermission, UserRole
from modcore.models.role import Permission, Role, role_permissions

logger = logging.getLogger("modcore.rbac")

PERMISSIONS_CACHE_KEY = "rbac:user:{user_id}:permissions"
PERMISSIONS_CACHE_PATTERN = "rbac:user:*:permissions"

DEFAULT_ROLES: List[Dict[str, Any]] = [
    {
        "name": "Super Admin",
        "slug": "super-admin",
        "description": "Full system access",
        "is_system": True,
    },
    {
        "name": "Admin",
        "slug": "admin",
        "description": "Administrative access",
        "is_system": True,
    },
    {
        "name": "User",
        "slug": "user",
        "description": "Regular user access",
        "is_system": True,
    },
]


def _require_id(value: Any, field: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{field} must be a positive integer")


def _require_text(value: Any, field: str) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} must be a non-empty string")


class RBACService:
    """Answers "can user U do P?" and mutates the role/permission graph.

    Holds no state besides an optional cache of each user's effective
    permission slugs. Every method takes the caller's session; mutations
    commit it. Store errors propagate unchanged.
    """

    def __init__(self, cache: Optional[Cache] = None, cache_ttl: float = 0):
        self.cache = cache
        self.cache_ttl = cache_ttl

    # ---- cache bookkeeping ----

    def _invalidate_user(self, user_id: int) -> None:
        if self.cache is None:
            return
        try:
            self.cache.delete(PERMISSIONS_CACHE_KEY.format(user_id=user_id))
        except CacheError as exc:
            logger.warning("Failed to invalidate permission cache for user %s: %s", user_id, exc)

    def _invalidate_all_users(self) -> None:
        if self.cache is None:
            return
        try:
            keys = self.cache.keys(PERMISSIONS_CACHE_PATTERN)
            if keys:
                self.cache.delete_multi(keys)
        except CacheError as exc:
            logger.warning("Failed to invalidate permission cache: %s", exc)

    # ---- lookups ----

    @staticmethod
    def _active_role(db: Session, role_id: int) -> Role:
        role = db.query(Role).filter(Role.id == role_id, Role.deleted_at.is_(None)).first()
        if not role:
            raise ResourceNotFoundError(f"Role {role_id} not found")
        return role

    @staticmethod
    def _active_permission(db: Session, permission_id: int) -> Permission:
        permission = (
            db.query(Permission)
            .filter(Permission.id == permission_id, Permission.deleted_at.is_(None))
            .first()
        )
        if not permission:
            raise ResourceNotFoundError(f"Permission {permission_id} not found")
        return permission

    def get_role_by_slug(self, db: Session, slug: str) -> Role:
        """Get a role (with its permissions) by slug."""
        _require_text(slug, "slug")
        role = db.query(Role).filter(Role.slug == slug, Role.deleted_at.is_(None)).first()
        if not role:
            raise ResourceNotFoundError(f"Role '{slug}' not found")
        return role

    def get_permission_by_slug(self, db: Session, slug: str) -> Permission:
        _require_text(slug, "slug")
        permission = (
            db.query(Permission)
            .filter(Permission.slug == slug, Permission.deleted_at.is_(None))
            .first()
        )
        if not permission:
            raise ResourceNotFoundError(f"Permission '{slug}' not found")
        return permission

    def get_permissions_by_module(self, db: Session, module: str) -> List[Permission]:
        _require_text(module, "module")
        return (
            db.query(Permission)
            .filter(Permission.module == module, Permission.deleted_at.is_(None))
            .order_by(Permission.slug)
            .all()
        )

    # ---- resolution ----

    def get_user_roles(self, db: Session, user_id: int) -> List[Role]:
        _require_id(user_id, "user_id")
        return (
            db.query(Role)
            .join(UserRole, UserRole.role_id == Role.id)
            .filter(UserRole.user_id == user_id, Role.deleted_at.is_(None))
            .all()
        )

    def get_user_permissions(self, db: Session, user_id: int) -> List[Permission]:
        """Union of role-derived and direct permissions, deduplicated by id.

        Order is not meaningful.
        """
        _require_id(user_id, "user_id")
        permissions_map: Dict[int, Permission] = {}

        # 1. Permissions from the user's roles
        role_derived = (
            db.query(Permission)
            .join(role_permissions, role_permissions.c.permission_id == Permission.id)
            .join(UserRole, UserRole.role_id == role_permissions.c.role_id)
            .join(Role, Role.id == UserRole.role_id)
            .filter(
                UserRole.user_id == user_id,
                Role.deleted_at.is_(None),
                Permission.deleted_at.is_(None),
            )
            .distinct()
            .all()
        )
        for permission in role_derived:
            permissions_map[permission.id] = permission

        # 2. Direct grants
        direct = (
            db.query(Permission)
            .join(UserPermission, UserPermission.permission_id == Permission.id)
            .filter(UserPermission.user_id == user_id, Permission.deleted_at.is_(None))
            .all()
        )
        for permission in direct:
            permissions_map[permission.id] = permission

        return list(permissions_map.values())

    def get_user_permission_slugs(self, db: Session, user_id: int) -> Set[str]:
        """Effective permission slugs, read through the cache when one is configured."""
        _require_id(user_id, "user_id")
        key = PERMISSIONS_CACHE_KEY.format(user_id=user_id)

        if self.cache is not None:
            try:
                return set(self.cache.get(key))
            except KeyNotFoundError:
                pass
            except CacheError as exc:
                logger.warning("Permission cache read failed for user %s: %s", user_id, exc)

        slugs = {permission.slug for permission in self.get_user_permissions(db, user_id)}

        if self.cache is not None:
            try:
                self.cache.set(key, sorted(slugs), self.cache_ttl)
            except CacheError as exc:
                logger.warning("Permission cache write failed for user %s: %s", user_id, exc)
        return slugs

    # ---- membership checks ----

    def has_role(self, db: Session, user_id: int, slug: str) -> bool:
        _require_id(user_id, "user_id")
        _require_text(slug, "slug")
        query = (
            db.query(UserRole.id)
            .join(Role, Role.id == UserRole.role_id)
            .filter(UserRole.user_id == user_id, Role.slug == slug, Role.deleted_at.is_(None))
        )
        return bool(db.query(query.exists()).scalar())

    def _has_role_permission(self, db: Session, user_id: int, slug: str) -> bool:
        query = (
            db.query(role_permissions.c.permission_id)
            .join(Permission, Permission.id == role_permissions.c.permission_id)
            .join(UserRole, UserRole.role_id == role_permissions.c.role_id)
            .join(Role, Role.id == UserRole.role_id)
            .filter(
                UserRole.user_id == user_id,
                Permission.slug == slug,
                Permission.deleted_at.is_(None),
                Role.deleted_at.is_(None),
            )
        )
        return bool(db.query(query.exists()).scalar())

    def _has_direct_permission(self, db: Session, user_id: int, slug: str) -> bool:
        query = (
            db.query(UserPermission.id)
            .join(Permission, Permission.id == UserPermission.permission_id)
            .filter(
                UserPermission.user_id == user_id,
                Permission.slug == slug,
                Permission.deleted_at.is_(None),
            )
        )
        return bool(db.query(query.exists()).scalar())

    def has_permission(self, db: Session, user_id: int, slug: str) -> bool:
        """True if any of the user's roles, or a direct grant, carries ``slug``.

        Role-derived grants are checked first since most grants come from
        roles. With a cache configured the answer comes from the cached slug
        set instead; the result is the same.
        """
        _require_id(user_id, "user_id")
        _require_text(slug, "slug")

        if self.cache is not None:
            allowed = slug in self.get_user_permission_slugs(db, user_id)
        else:
            allowed = (
                self._has_role_permission(db, user_id, slug)
                or self._has_direct_permission(db, user_id, slug)
            )
        if not allowed:
            logger.debug("User %s lacks permission %s", user_id, slug)
        return allowed

    def has_any_permission(self, db: Session, user_id: int, slugs: Iterable[str]) -> bool:
        for slug in slugs:
            if self.has_permission(db, user_id, slug):
                return True
        return False

    def has_all_permissions(self, db: Session, user_id: int, slugs: Iterable[str]) -> bool:
        for slug in slugs:
            if not self.has_permission(db, user_id, slug):
                return False
        return True

    # ---- user assignments ----

    def assign_role(self, db: Session, user_id: int, role_id: int) -> UserRole:
        """Give a user a role. Assigning a role the user already holds is a no-op."""
        _require_id(user_id, "user_id")
        _require_id(role_id, "role_id")
        self._active_role(db, role_id)

        def _existing() -> Optional[UserRole]:
            return (
                db.query(UserRole)
                .filter(UserRole.user_id == user_id, UserRole.role_id == role_id)
                .first()
            )

        existing = _existing()
        if existing:
            return existing

        assignment = UserRole(user_id=user_id, role_id=role_id)
        db.add(assignment)
        try:
            db.commit()
        except IntegrityError:
            # A concurrent request inserted the same pair first
            db.rollback()
            existing = _existing()
            if existing is None:
                raise
            return existing

        logger.info("Assigned role %s to user %s", role_id, user_id)
        self._invalidate_user(user_id)
        return assignment

    def remove_role(self, db: Session, user_id: int, role_id: int) -> None:
        """Take a role away from a user. Missing assignments are ignored."""
        _require_id(user_id, "user_id")
        _require_id(role_id, "role_id")
        removed = (
            db.query(UserRole)
            .filter(UserRole.user_id == user_id, UserRole.role_id == role_id)
            .delete(synchronize_session=False)
        )
        db.commit()
        if removed:
            logger.info("Removed role %s from user %s", role_id, user_id)
            self._invalidate_user(user_id)

    def assign_permission(self, db: Session, user_id: int, permission_id: int) -> UserPermission:
        """Grant a permission directly to a user, bypassing roles."""
        _require_id(user_id, "user_id")
        _require_id(permission_id, "permission_id")
        self._active_permission(db, permission_id)

        def _existing() -> Optional[UserPermission]:
            return (
                db.query(UserPermission)
                .filter(UserPermission.user_id == user_id, UserPermission.permission_id == permission_id)
                .first()
            )

        existing = _existing()
        if existing:
            return existing

        grant = UserPermission(user_id=user_id, permission_id=permission_id)
        db.add(grant)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            existing = _existing()
            if existing is None:
                raise
            return existing

        logger.info("Granted permission %s to user %s", permission_id, user_id)
        self._invalidate_user(user_id)
        return grant

    def remove_permission(self, db: Session, user_id: int, permission_id: int) -> None:
        _require_id(user_id, "user_id")
        _require_id(permission_id, "permission_id")
        removed = (
            db.query(UserPermission)
            .filter(UserPermission.user_id == user_id, UserPermission.permission_id == permission_id)
            .delete(synchronize_session=False)
        )
        db.commit()
        if removed:
            logger.info("Revoked permission %s from user %s", permission_id, user_id)
            self._invalidate_user(user_id)

    # ---- role/permission graph ----

    def create_role(
        self,
        db: Session,
        name: str,
        slug: str,
        description: str = "",
        is_system: bool = False,
    ) -> Role:
        _require_text(name, "name")
        _require_text(slug, "slug")
        conflict = db.query(Role).filter((Role.slug == slug) | (Role.name == name)).first()
        if conflict:
            raise ResourceConflictError(f"Role '{slug}' already exists")

        role = Role(name=name, slug=slug, description=description, is_system=is_system)
        db.add(role)
        db.commit()
        db.refresh(role)
        logger.info("Created role %s", slug)
        return role

    def create_permission(
        self,
        db: Session,
        name: str,
        slug: str,
        description: str = "",
        module: str = "",
        category: str = "",
    ) -> Permission:
        _require_text(name, "name")
        _require_text(slug, "slug")
        conflict = (
            db.query(Permission)
            .filter((Permission.slug == slug) | (Permission.name == name))
            .first()
        )
        if conflict:
            raise ResourceConflictError(f"Permission '{slug}' already exists")

        permission = Permission(
            name=name,
            slug=slug,
            description=description,
            module=module,
            category=category,
        )
        db.add(permission)
        db.commit()
        db.refresh(permission)
        logger.info("Created permission %s", slug)
        return permission

    def attach_permission_to_role(self, db: Session, role_id: int, permission_id: int) -> None:
        _require_id(role_id, "role_id")
        _require_id(permission_id, "permission_id")
        self._active_role(db, role_id)
        self._active_permission(db, permission_id)

        exists = db.execute(
            role_permissions.select().where(
                role_permissions.c.role_id == role_id,
                role_permissions.c.permission_id == permission_id,
            )
        ).first()
        if exists:
            return

        db.execute(insert(role_permissions).values(role_id=role_id, permission_id=permission_id))
        db.commit()
        self._invalidate_all_users()

    def detach_permission_from_role(self, db: Session, role_id: int, permission_id: int) -> None:
        _require_id(role_id, "role_id")
        _require_id(permission_id, "permission_id")
        result = db.execute(
            delete(role_permissions).where(
                role_permissions.c.role_id == role_id,
                role_permissions.c.permission_id == permission_id,
            )
        )
        db.commit()
        if result.rowcount:
            self._invalidate_all_users()

    def sync_role_permissions(self, db: Session, role_id: int, permission_ids: Iterable[int]) -> None:
        """Replace a role's permission set atomically.

        All existing grants are deleted and the new ones inserted in one
        transaction; any failure rolls back to the previous set.
        """
        _require_id(role_id, "role_id")
        permission_ids = list(dict.fromkeys(permission_ids))
        for permission_id in permission_ids:
            _require_id(permission_id, "permission_id")
        self._active_role(db, role_id)
        if permission_ids:
            active = {
                pid for (pid,) in db.query(Permission.id).filter(
                    Permission.id.in_(permission_ids), Permission.deleted_at.is_(None)
                )
            }
            missing = [pid for pid in permission_ids if pid not in active]
            if missing:
                raise ResourceNotFoundError(
                    "Permission(s) not found: " + ", ".join(str(pid) for pid in missing)
                )

        try:
            db.execute(delete(role_permissions).where(role_permissions.c.role_id == role_id))
            for permission_id in permission_ids:
                db.execute(insert(role_permissions).values(role_id=role_id, permission_id=permission_id))
            db.commit()
        except Exception:
            db.rollback()
            logger.warning("Rolled back permission sync for role %s", role_id)
            raise

        logger.info("Synced %d permissions onto role %s", len(permission_ids), role_id)
        self._invalidate_all_users()

    def delete_role(self, db: Session, role_id: int) -> None:
        """Soft-delete a role. System roles cannot be deleted."""
        _require_id(role_id, "role_id")
        role = self._active_role(db, role_id)
        if role.is_system:
            raise ValidationError(f"System role '{role.slug}' cannot be deleted")
        role.deleted_at = datetime.now(timezone.utc)
        db.commit()
        logger.info("Deleted role %s", role.slug)
        self._invalidate_all_users()

    def delete_permission(self, db: Session, permission_id: int) -> None:
        _require_id(permission_id, "permission_id")
        permission = self._active_permission(db, permission_id)
        permission.deleted_at = datetime.now(timezone.utc)
        db.commit()
        logger.info("Deleted permission %s", permission.slug)
        self._invalidate_all_users()

    def seed_default_roles(self, db: Session) -> List[Role]:
        """Insert the system roles that don't already exist. Returns the new rows."""
        created: List[Role] = []
        for role_data in DEFAULT_ROLES:
            existing = db.query(Role).filter(Role.slug == role_data["slug"]).first()
            if not existing:
                role = Role(**role_data)
                db.add(role)
                created.append(role)
        db.commit()
        if created:
            logger.info("Seeded %d default roles", len(created))
        return created
