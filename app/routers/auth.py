from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.core.api_docs import error_responses
from app.core.config import settings
from app.core.deps import get_db
from app.core.rate_limit import LoginRateLimiter
from app.core.security import create_access_token, verify_password
from app.core.security_current import UserAccess, get_current_access
from app.models.branch import Branch
from app.models.user import User
from app.schemas.auth import LoginIn, TokenOut, UserProfileOut

router = APIRouter(prefix="/auth", tags=["auth"])
TOKEN_RESPONSE = {
    200: {
        "description": "Access token",
        "content": {
            "application/json": {
                "example": {
                    "access_token": "access-token",
                    "token_type": "bearer",
                }
            }
        },
    }
}

login_rate_limiter = LoginRateLimiter(
    max_attempts=settings.auth_rate_limit_max_attempts,
    window_seconds=settings.auth_rate_limit_window_seconds,
    lock_seconds=settings.auth_rate_limit_lock_seconds,
)


def _client_ip(request: Request) -> str:
    forwarded_for = request.headers.get("x-forwarded-for", "").strip()
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _enforce_rate_limit(username: str, client_ip: str) -> str:
    key = f"{username.strip().lower()}:{client_ip}"
    retry_after = login_rate_limiter.check(key)
    if retry_after > 0:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many failed attempts. Try again later.",
            headers={"Retry-After": str(retry_after)},
        )
    return key


def _authenticate_user(db: Session, username: str, password: str) -> User:
    user = db.execute(
        select(User).where(func.lower(User.username) == username.strip().lower())
    ).scalar_one_or_none()

    if not user or not user.is_active or not verify_password(password, user.hashed_password):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return user


def _login(db: Session, *, username: str, password: str, client_ip: str) -> TokenOut:
    key = _enforce_rate_limit(username, client_ip)
    try:
        user = _authenticate_user(db, username, password)
    except HTTPException as exc:
        if exc.status_code == 401:
            login_rate_limiter.register_failure(key)
        raise

    login_rate_limiter.register_success(key)
    return TokenOut(access_token=create_access_token(user.id, role=user.role, branch_id=user.branch_id))


@router.post(
    "/login",
    response_model=TokenOut,
    summary="Login with JSON",
    description="Authenticate with username and password.",
    responses={**TOKEN_RESPONSE, **error_responses(401, 422, 429, 500)},
)
def login(payload: LoginIn, request: Request, db: Session = Depends(get_db)):
    return _login(db, username=payload.username, password=payload.password, client_ip=_client_ip(request))


@router.post(
    "/token",
    response_model=TokenOut,
    summary="OAuth2 password token (Swagger Authorize)",
    description="Form-data login endpoint used by Swagger Authorize.",
    responses={**TOKEN_RESPONSE, **error_responses(401, 422, 429, 500)},
)
def login_for_swagger(
    request: Request,
    db: Session = Depends(get_db),
    form_data: OAuth2PasswordRequestForm = Depends(),
):
    return _login(db, username=form_data.username, password=form_data.password, client_ip=_client_ip(request))


@router.get(
    "/me",
    response_model=UserProfileOut,
    summary="Get current user profile",
    description="Returns the authenticated user with role and branch assignment.",
    responses=error_responses(401, 403, 500),
)
def get_my_profile(
    access: UserAccess = Depends(get_current_access),
    db: Session = Depends(get_db),
):
    branch_name = None
    if access.branch_id:
        branch_name = db.execute(select(Branch.name).where(Branch.id == access.branch_id)).scalar_one_or_none()
    user = access.user
    return UserProfileOut(
        id=user.id,
        username=user.username,
        full_name=user.full_name,
        role=access.role,
        branch_id=access.branch_id,
        branch_name=branch_name,
        created_at=user.created_at,
        updated_at=user.updated_at,
    )
