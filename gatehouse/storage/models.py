from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Stored in password_hash for accounts created through an OAuth provider
OAUTH_PASSWORD_MARKER = "oauth_user"


@dataclass
class User:
    id: int
    username: str
    email: Optional[str] = None
    password_hash: str = ""
    provider: Optional[str] = None
    provider_id: Optional[str] = None
    subscription_tier: str = "free"
    failed_attempts: int = 0
    last_attempt: Optional[datetime] = None
    locked_until: Optional[datetime] = None
    balance: Decimal = Decimal("0")
    subscription_expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "User":
        known = {name for name in cls.__dataclass_fields__}
        values = {k: v for k, v in row.items() if k in known}
        if values.get("balance") is not None:
            values["balance"] = Decimal(str(values["balance"]))
        return cls(**values)

    def public_dict(self) -> Dict[str, Any]:
        """JSON-safe projection without credential material."""
        data = asdict(self)
        data.pop("password_hash", None)
        data["balance"] = float(self.balance)
        for key in ("created_at", "updated_at", "last_attempt", "locked_until", "subscription_expires_at"):
            if isinstance(data.get(key), datetime):
                data[key] = data[key].isoformat()
        return data


@dataclass
class UserPreferences:
    user_id: int
    theme: str = "dark"
    language: str = "en"


@dataclass
class Transaction:
    id: int
    user_id: int
    amount: Decimal
    type: str
    description: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "amount": float(self.amount),
            "type": self.type,
            "description": self.description,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class SubscriptionChange:
    id: int
    user_id: int
    old_tier: Optional[str]
    new_tier: str
    changed_at: datetime = field(default_factory=_utcnow)
