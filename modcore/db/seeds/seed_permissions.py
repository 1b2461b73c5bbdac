"""Seed the default module permissions and grant them to the system roles."""

from typing import Dict, List

from sqlalchemy.orm import Session

from modcore.core.exceptions import ResourceNotFoundError
from modcore.models.role import Permission
from modcore.services.rbac_service import RBACService

# module -> (slug suffix, name, description)
PERMISSION_CATALOG: Dict[str, List[tuple]] = {
    "users": [
        ("view", "View Users", "View user list and details"),
        ("create", "Create Users", "Create new users"),
        ("update", "Update Users", "Update existing users"),
        ("delete", "Delete Users", "Delete users"),
        ("manage-roles", "Manage User Roles", "Assign and remove roles from users"),
        ("manage-permissions", "Manage User Permissions", "Grant and revoke direct user permissions"),
    ],
    "products": [
        ("view", "View Products", "View product catalog"),
        ("create", "Create Products", "Create new products"),
        ("update", "Update Products", "Update existing products"),
        ("delete", "Delete Products", "Delete products"),
    ],
    "admin": [
        ("dashboard.view", "View Dashboard", "Access admin dashboard"),
        ("system.view", "View System Stats", "View system statistics and health"),
        ("system.manage", "Manage System", "Change system-level settings"),
        ("logs.view", "View Audit Logs", "View system audit logs"),
    ],
    "roles": [
        ("view", "View Roles", "View roles and their permissions"),
        ("manage", "Manage Roles", "Create, update and delete roles"),
    ],
    "cache": [
        ("view", "View Cache Stats", "View cache statistics"),
        ("clear", "Clear Cache", "Flush every cache tier"),
    ],
}


def _grants_for(role_slug: str, permission: Permission) -> bool:
    if role_slug == "super-admin":
        return True
    if role_slug == "admin":
        return not permission.slug.startswith("admin.system")
    if role_slug == "user":
        return permission.slug.endswith(".view") and permission.module in ("users", "products")
    return False


def seed_permissions(db: Session, rbac: RBACService) -> int:
    """Create missing catalog permissions and attach them to the system roles.

    Safe to run repeatedly: existing permissions and grants are left alone.
    """
    permissions: List[Permission] = []
    created = 0
    for module, entries in PERMISSION_CATALOG.items():
        for suffix, name, description in entries:
            slug = f"{module}.{suffix}"
            try:
                permission = rbac.get_permission_by_slug(db, slug)
            except ResourceNotFoundError:
                permission = rbac.create_permission(
                    db,
                    name=name,
                    slug=slug,
                    description=description,
                    module=module,
                    category=module,
                )
                created += 1
            permissions.append(permission)

    for role_slug in ("super-admin", "admin", "user"):
        try:
            role = rbac.get_role_by_slug(db, role_slug)
        except ResourceNotFoundError:
            print(f"⚠️  Role '{role_slug}' missing, run role seeding first")
            continue
        for permission in permissions:
            if _grants_for(role_slug, permission):
                rbac.attach_permission_to_role(db, role.id, permission.id)

    print(f"✅ Seeded {created} permissions")
    return created
