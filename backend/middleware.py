from fastapi import Request, HTTPException, status
from typing import Optional
import logging
from auth import decode_access_token
from models import UserRole

logger = logging.getLogger(__name__)

async def get_current_user(request: Request) -> Optional[dict]:
    """Extract and validate current user from JWT token."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None

    token = auth_header.split(" ")[1]
    payload = decode_access_token(token)

    if not payload:
        return None

    return payload

async def require_auth(request: Request) -> dict:
    """Require valid authentication."""
    user = await get_current_user(request)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )
    return user

async def require_role(request: Request, required_role: UserRole) -> dict:
    """Require specific role."""
    user = await require_auth(request)
    user_role = user.get("role")

    role_hierarchy = {
        UserRole.ROLE_ADMIN.value: 2,
        UserRole.ROLE_CUSTOMER.value: 1
    }

    if role_hierarchy.get(user_role, 0) < role_hierarchy.get(required_role.value, 0):
        await log_route_guard_redirect(user.get("user_id"), str(request.url.path), "INSUFFICIENT_ROLE")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions"
        )

    return user

async def require_admin(request: Request) -> dict:
    """Require admin role."""
    return await require_role(request, UserRole.ROLE_ADMIN)

async def admin_route_guard(request: Request) -> dict:
    """Guard for admin routes."""
    user = await require_admin(request)
    return user

async def log_route_guard_redirect(user_id: Optional[str], path: str, reason: str):
    """Log route guard rejection for audit."""
    from utils.audit import create_audit_log
    from models import AuditAction

    await create_audit_log(
        action=AuditAction.ROUTE_GUARD_REDIRECT,
        actor_id=user_id,
        metadata={
            "path": path,
            "reason": reason,
            "user_id": user_id
        }
    )
