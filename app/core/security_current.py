from dataclasses import dataclass

from fastapi import Depends, HTTPException
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.deps import get_db
from app.core.security import TokenValidationError, decode_token
from app.models.user import User
from app.services.flow_filter_service import ROLE_ADMIN, ROLE_BRANCH, BranchScope

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token")


@dataclass(frozen=True)
class UserAccess:
    user: User
    role: str
    branch_id: str | None

    @property
    def scope(self) -> BranchScope:
        return BranchScope(role=self.role, branch_id=self.branch_id)

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


def get_current_user(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)) -> User:
    try:
        payload = decode_token(token, expected_type="access")
    except TokenValidationError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    user_id = payload.get("sub")
    user = db.execute(select(User).where(User.id == user_id)).scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    if not user.is_active:
        raise HTTPException(status_code=401, detail="User is inactive")
    return user


def get_current_access(user: User = Depends(get_current_user)) -> UserAccess:
    role = (user.role or "").strip().upper()
    if role not in {ROLE_ADMIN, ROLE_BRANCH}:
        raise HTTPException(status_code=403, detail="Unknown user role")
    if role == ROLE_BRANCH and not user.branch_id:
        # A branch account without a branch has no visible data.
        raise HTTPException(status_code=403, detail="Branch account is not assigned to a branch")
    return UserAccess(user=user, role=role, branch_id=user.branch_id)
