"""JWT authentication and RBAC authorization dependencies."""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from modcore.core.config import settings
from modcore.core.exceptions import CacheError, forbidden, service_unavailable, unauthorized
from modcore.db.session import get_db
from modcore.services.rbac_service import RBACService

logger = logging.getLogger("modcore.rbac")

# JWT bearer scheme
security_scheme = HTTPBearer(auto_error=False)


def create_access_token(user_id: int, expires_delta: Optional[timedelta] = None) -> str:
    """Create a JWT access token whose subject is the user id."""
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=60))
    to_encode = {"sub": str(user_id), "exp": expire, "type": "access"}
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> dict:
    """Decode and validate a JWT token."""
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        raise unauthorized("Invalid or expired token")


def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security_scheme),
) -> int:
    """Extract user_id from the JWT Bearer token."""
    if credentials is None:
        raise unauthorized()
    payload = decode_token(credentials.credentials)
    user_id = payload.get("sub")
    try:
        return int(user_id)
    except (TypeError, ValueError):
        raise unauthorized("Invalid token payload")


def get_rbac_service(request: Request) -> RBACService:
    """The RBAC service built by the app lifespan."""
    rbac = getattr(request.app.state, "rbac", None)
    if rbac is None:
        raise service_unavailable("RBAC service not initialised")
    return rbac


class _RBACCheck(ABC):
    """Base for authorization dependencies.

    Resolves the user and asks the RBAC service for a yes/no decision. A
    ``False`` decision is a 403; a store or cache failure is a 503 so that an
    outage never reads as either "allowed" or "denied".
    """

    def __init__(self, *slugs: str):
        if not slugs:
            raise ValueError("at least one slug is required")
        self.slugs: List[str] = list(slugs)

    @abstractmethod
    def decide(self, rbac: RBACService, db: Session, user_id: int) -> bool:
        """True when the user passes this check."""

    def __call__(
        self,
        user_id: int = Depends(get_current_user_id),
        rbac: RBACService = Depends(get_rbac_service),
        db: Session = Depends(get_db),
    ) -> int:
        try:
            allowed = self.decide(rbac, db, user_id)
        except (SQLAlchemyError, CacheError):
            logger.exception("Authorization check failed for user %s", user_id)
            raise service_unavailable()
        if not allowed:
            logger.debug("Denied user %s: requires %s", user_id, ", ".join(self.slugs))
            raise forbidden()
        return user_id


class RequirePermission(_RBACCheck):
    """Dependency that requires a single permission slug."""

    def __init__(self, slug: str):
        super().__init__(slug)

    def decide(self, rbac: RBACService, db: Session, user_id: int) -> bool:
        return rbac.has_permission(db, user_id, self.slugs[0])


class RequireRole(_RBACCheck):
    """Dependency that requires a role slug."""

    def __init__(self, slug: str):
        super().__init__(slug)

    def decide(self, rbac: RBACService, db: Session, user_id: int) -> bool:
        return rbac.has_role(db, user_id, self.slugs[0])


class RequireAnyPermission(_RBACCheck):
    def decide(self, rbac: RBACService, db: Session, user_id: int) -> bool:
        return rbac.has_any_permission(db, user_id, self.slugs)


class RequireAllPermissions(_RBACCheck):
    def decide(self, rbac: RBACService, db: Session, user_id: int) -> bool:
        return rbac.has_all_permissions(db, user_id, self.slugs)

