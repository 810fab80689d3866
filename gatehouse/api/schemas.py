from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Usernames, emails and passwords are capped well above any real value
MAX_FIELD_LENGTH = 255
MAX_PASSWORD_LENGTH = 1024


def _strip(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return value.strip()


class ErrorBody(BaseModel):
    error: str
    code: str
    details: Optional[Any] = None


# Request fields are optional so that missing values reach the handlers and
# produce the field-by-field 400 body instead of a framework 422.


class RegisterRequest(BaseModel):
    username: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)
    email: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)
    password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_LENGTH)

    @field_validator("username", "email")
    @classmethod
    def _strip_identity(cls, value: Optional[str]) -> Optional[str]:
        return _strip(value)


class LoginRequest(BaseModel):
    username: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)
    password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_LENGTH)

    @field_validator("username")
    @classmethod
    def _strip_username(cls, value: Optional[str]) -> Optional[str]:
        return _strip(value)


class ChangePasswordRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    current_password: Optional[str] = Field(
        default=None, alias="currentPassword", max_length=MAX_PASSWORD_LENGTH
    )
    new_password: Optional[str] = Field(
        default=None, alias="newPassword", max_length=MAX_PASSWORD_LENGTH
    )


class CreateUserRequest(BaseModel):
    username: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)
    email: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)


class UserSummary(BaseModel):
    username: str
    email: Optional[str] = None


class AuthResponse(BaseModel):
    success: bool = True
    message: str
    user: UserSummary


class MeUser(BaseModel):
    username: str
    email: Optional[str] = None
    created_at: Optional[str] = None
    provider: Optional[str] = None


class MeResponse(BaseModel):
    success: bool
    authenticated: bool
    user: Optional[MeUser] = None


class MessageResponse(BaseModel):
    success: bool = True
    message: str


class RateLimitBody(BaseModel):
    remaining: int
    reset: int
    total: int


class HealthResponse(BaseModel):
    status: str
    rateLimit: RateLimitBody
    timestamp: str


class CheckoutResponse(BaseModel):
    url: str


class BalanceResponse(BaseModel):
    balance: float


class TransactionsResponse(BaseModel):
    transactions: List[Dict[str, Any]]


class SubscriptionResponse(BaseModel):
    tier: str
    subscription: Optional[Dict[str, Any]] = None


class UsersListResponse(BaseModel):
    users: List[Dict[str, Any]]


class CreateUserResponse(BaseModel):
    success: bool = True
    id: int
