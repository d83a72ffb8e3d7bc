from datetime import datetime, timedelta, timezone
from uuid import uuid4

from jose import JWTError, jwt

from app.core.config import settings

import bcrypt

ALGORITHM = "HS256"


class TokenValidationError(ValueError):
    pass


def hash_password(password: str) -> str:
    # bcrypt hard limit is 72 bytes. We encode as utf-8.
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")

def verify_password(password: str, hashed: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))

def create_token(
    subject: str,
    expires_delta: timedelta,
    token_type: str,
    *,
    role: str | None = None,
    branch_id: str | None = None,
) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": subject,
        "type": token_type,
        "jti": str(uuid4()),
        "iat": int(now.timestamp()),
        "exp": int((now + expires_delta).timestamp()),
    }
    if role:
        payload["role"] = role
    if branch_id:
        payload["branch_id"] = branch_id
    return jwt.encode(payload, settings.secret_key, algorithm=ALGORITHM)


def decode_token(token: str, *, expected_type: str | None = None) -> dict:
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])
    except JWTError as exc:
        raise TokenValidationError("Invalid token") from exc

    subject = payload.get("sub")
    if not subject:
        raise TokenValidationError("Invalid token subject")

    token_type = payload.get("type")
    if expected_type and token_type != expected_type:
        raise TokenValidationError("Invalid token type")

    if not payload.get("jti"):
        raise TokenValidationError("Invalid token id")

    return payload


def create_access_token(user_id: str, *, role: str | None = None, branch_id: str | None = None) -> str:
    # role/branch claims are informational; authorization always re-reads the user row.
    return create_token(
        subject=user_id,
        expires_delta=timedelta(minutes=settings.access_token_expire_minutes),
        token_type="access",
        role=role,
        branch_id=branch_id,
    )
