import hmac
from collections.abc import Callable

from fastapi import Depends, Header, HTTPException, status

from app.core.config import settings
from app.core.security_current import UserAccess, get_current_access


def require_roles(*allowed_roles: str) -> Callable[[UserAccess], UserAccess]:
    normalized_allowed = {role.strip().upper() for role in allowed_roles if role.strip()}
    if not normalized_allowed:
        raise ValueError("At least one allowed role is required")

    def dependency(access: UserAccess = Depends(get_current_access)) -> UserAccess:
        if access.role not in normalized_allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient role for this action",
            )
        return access

    return dependency


def resolve_branch_id(access: UserAccess, requested_branch_id: str | None) -> str:
    """Branch a request acts on: BRANCH users are pinned to their own, ADMIN must name one."""
    requested = (requested_branch_id or "").strip() or None
    if not access.is_admin:
        if requested and requested != access.branch_id:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Branch is outside your scope")
        return str(access.branch_id)
    if not requested:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="branch_id is required for admin users")
    return requested


def require_worker_secret(authorization: str | None = Header(default=None)) -> None:
    scheme, _, token = (authorization or "").partition(" ")
    expected = settings.automation_callback_secret
    if scheme.lower() != "bearer" or not token or not expected:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing worker credentials")
    if not hmac.compare_digest(token.strip().encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid worker credentials")
