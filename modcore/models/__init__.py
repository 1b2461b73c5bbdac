"""Models package; importing it registers every table for create_all."""

from modcore.models.role import Role, Permission, role_permissions
from modcore.models.assignment import UserRole, UserPermission

__all__ = [
    "Role", "Permission", "role_permissions",
    "UserRole", "UserPermission",
]
