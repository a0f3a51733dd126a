"""
Request tenant context.

Sessions are authenticated upstream; the gateway forwards the resolved
organization, user and role as headers. Every service call takes the
organization id from here and filters on it.
"""
import enum
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header

from app.core.exceptions import AuthorizationError, TenantRequiredError

logger = logging.getLogger(__name__)


class UserRole(str, enum.Enum):
    ADMIN = "admin"
    SALESPERSON = "salesperson"


@dataclass(frozen=True)
class RequestContext:
    organization_id: str
    user_id: Optional[str] = None
    role: UserRole = UserRole.SALESPERSON

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    def visible_user_id(self) -> Optional[str]:
        """User filter for queries: None for admins, the caller for salespeople"""
        if self.is_admin:
            return None
        if not self.user_id:
            raise AuthorizationError("A user is required for this request")
        return self.user_id


def get_request_context(
    x_organization_id: Optional[str] = Header(None),
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> RequestContext:
    """Build the tenant context from gateway headers"""
    if not x_organization_id:
        raise TenantRequiredError()

    try:
        role = UserRole(x_user_role.lower()) if x_user_role else UserRole.SALESPERSON
    except ValueError:
        logger.warning(f"Unknown role header {x_user_role!r}, treating as salesperson")
        role = UserRole.SALESPERSON

    return RequestContext(organization_id=x_organization_id, user_id=x_user_id, role=role)


def get_admin_context(context: RequestContext = Depends(get_request_context)) -> RequestContext:
    """Same as get_request_context, restricted to administrators"""
    if not context.is_admin:
        raise AuthorizationError("Administrator role required")
    return context
