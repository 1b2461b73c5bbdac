"""Seed the system roles into the database."""

from sqlalchemy.orm import Session

from modcore.services.rbac_service import DEFAULT_ROLES, RBACService


def seed_roles(db: Session, rbac: RBACService) -> int:
    """Insert super-admin, admin and user if they don't already exist."""
    created = rbac.seed_default_roles(db)
    print(f"✅ Seeded {len(created)} of {len(DEFAULT_ROLES)} roles")
    return len(created)
