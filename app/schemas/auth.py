from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, field_validator


class LoginIn(BaseModel):
    username: str
    password: str

    @field_validator("username")
    @classmethod
    def validate_username(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("username is required")
        return cleaned

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "username": "gangnam_manager",
                "password": "password123",
            }
        }
    )


class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"


class UserProfileOut(BaseModel):
    id: str
    username: str
    full_name: Optional[str] = None
    role: Literal["ADMIN", "BRANCH"]
    branch_id: Optional[str] = None
    branch_name: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "id": "abc123",
                "username": "gangnam_manager",
                "full_name": "Gangnam Manager",
                "role": "BRANCH",
                "branch_id": "0f8fad5b-d9cb-469f-a165-70867728950e",
                "branch_name": "Gangnam",
                "created_at": "2026-02-01T12:00:00Z",
                "updated_at": "2026-02-01T12:00:00Z",
            }
        }
    )
