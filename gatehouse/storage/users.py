from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from gatehouse.logging import get_logger
from gatehouse.service.errors import InsufficientBalanceError, NotFoundError
from gatehouse.storage.database import Database
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.models import SubscriptionChange, Transaction, User, UserPreferences

SUBSCRIPTION_PERIOD = timedelta(days=30)
_UPDATABLE_FIELDS = ("username", "email", "password_hash")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _with_preferences(user: User, prefs: Optional[UserPreferences]) -> Dict[str, Any]:
    data = user.public_dict()
    data["preferences"] = {
        "theme": prefs.theme if prefs else "dark",
        "language": prefs.language if prefs else "en",
    }
    return data


class PostgresUserRepository:
    """User, preference, balance and subscription persistence on Postgres."""

    def __init__(self, db: Database) -> None:
        self.db = db
        self.logger = get_logger(__name__)

    # Lookups

    def find_by_id(self, user_id: int) -> Optional[User]:
        row = self.db.query_one("SELECT * FROM users WHERE id = %s", (user_id,))
        return User.from_row(row) if row else None

    def find_by_username_or_email(self, identifier: str) -> Optional[User]:
        row = self.db.query_one(
            "SELECT * FROM users WHERE username = %s OR email = %s LIMIT 1",
            (identifier, identifier),
        )
        return User.from_row(row) if row else None

    def find_by_email(self, email: str) -> Optional[User]:
        row = self.db.query_one("SELECT * FROM users WHERE email = %s LIMIT 1", (email,))
        return User.from_row(row) if row else None

    def find_by_provider(self, provider: str, provider_id: str) -> Optional[User]:
        row = self.db.query_one(
            "SELECT * FROM users WHERE provider = %s AND provider_id = %s LIMIT 1",
            (provider, provider_id),
        )
        return User.from_row(row) if row else None

    def username_exists(self, username: str) -> bool:
        row = self.db.query_one("SELECT 1 AS found FROM users WHERE username = %s", (username,))
        return row is not None

    def list_recent(self, limit: int = 10) -> List[User]:
        rows = self.db.query(
            "SELECT * FROM users ORDER BY created_at DESC LIMIT %s", (limit,)
        )
        return [User.from_row(row) for row in rows]

    # Mutations

    def create_user(
        self,
        *,
        username: str,
        email: Optional[str],
        password_hash: str,
        provider: Optional[str] = None,
        provider_id: Optional[str] = None,
    ) -> int:
        with self.db.transaction():
            row = self.db.query_one(
                """
                INSERT INTO users (username, email, password_hash, provider, provider_id)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING id
                """,
                (username, email, password_hash, provider, provider_id),
            )
        self.logger.info("user_created", user_id=row["id"], provider=provider)
        return row["id"]

    def update_user(self, user_id: int, updates: Dict[str, Any]) -> None:
        fields = [(name, updates[name]) for name in _UPDATABLE_FIELDS if updates.get(name)]
        if not fields:
            return
        assignments = ", ".join(f"{name} = %s" for name, _ in fields)
        self.db.execute(
            f"UPDATE users SET {assignments} WHERE id = %s",
            (*[value for _, value in fields], user_id),
        )

    def update_password(self, user_id: int, password_hash: str) -> None:
        self.db.execute(
            "UPDATE users SET password_hash = %s WHERE id = %s", (password_hash, user_id)
        )

    def update_preferences(self, user_id: int, updates: Dict[str, Any]) -> None:
        theme = updates.get("theme") or None
        language = updates.get("language") or None
        if not theme and not language:
            return
        self.db.execute(
            """
            INSERT INTO user_preferences (user_id, theme, language)
            VALUES (%s, COALESCE(%s, 'dark'), COALESCE(%s, 'en'))
            ON CONFLICT (user_id) DO UPDATE SET
                theme = COALESCE(%s, user_preferences.theme),
                language = COALESCE(%s, user_preferences.language)
            """,
            (user_id, theme, language, theme, language),
        )

    def delete_user(self, user_id: int) -> None:
        self.db.execute("DELETE FROM users WHERE id = %s", (user_id,))

    # Composite reads

    def get_user_with_preferences(self, user_id: int) -> Dict[str, Any]:
        with self.db.transaction():
            row = self.db.query_one("SELECT * FROM users WHERE id = %s", (user_id,))
            prefs = self.db.query_one(
                "SELECT user_id, theme, language FROM user_preferences WHERE user_id = %s",
                (user_id,),
            )
        if not row:
            raise NotFoundError("User not found", detail={"user_id": user_id})
        return _with_preferences(User.from_row(row), UserPreferences(**prefs) if prefs else None)

    def get_user_with_subscription(self, user_id: int) -> Dict[str, Any]:
        with self.db.transaction():
            row = self.db.query_one("SELECT * FROM users WHERE id = %s", (user_id,))
            counts = self.db.query_one(
                "SELECT COUNT(*) AS transaction_count FROM transactions WHERE user_id = %s",
                (user_id,),
            )
        if not row:
            raise NotFoundError("User not found", detail={"user_id": user_id})
        data = User.from_row(row).public_dict()
        data["transaction_count"] = int((counts or {}).get("transaction_count") or 0)
        return data

    # Failed-attempt bookkeeping, not enforced anywhere

    def increment_failed_attempt(self, user_id: int) -> None:
        self.db.execute(
            "UPDATE users SET failed_attempts = failed_attempts + 1, last_attempt = now() WHERE id = %s",
            (user_id,),
        )

    def reset_failed_attempts(self, user_id: int) -> None:
        self.db.execute("UPDATE users SET failed_attempts = 0 WHERE id = %s", (user_id,))

    # Subscription and balance

    def get_subscription_tier(self, user_id: int) -> str:
        row = self.db.query_one(
            "SELECT subscription_tier FROM users WHERE id = %s", (user_id,)
        )
        return (row or {}).get("subscription_tier") or "free"

    def change_subscription_tier(self, user_id: int, new_tier: str) -> None:
        with self.db.transaction():
            current = self.get_subscription_tier(user_id)
            self.db.execute(
                """
                UPDATE users
                SET subscription_tier = %s,
                    subscription_expires_at = now() + interval '30 days'
                WHERE id = %s
                """,
                (new_tier, user_id),
            )
            self.db.execute(
                "INSERT INTO subscription_history (user_id, old_tier, new_tier) VALUES (%s, %s, %s)",
                (user_id, current, new_tier),
            )

    def get_balance(self, user_id: int) -> Decimal:
        row = self.db.query_one("SELECT balance FROM users WHERE id = %s", (user_id,))
        return Decimal(str((row or {}).get("balance") or 0))

    def add_balance(self, user_id: int, amount: Decimal, description: str = "Deposit") -> Decimal:
        with self.db.transaction():
            self.db.execute(
                "UPDATE users SET balance = balance + %s WHERE id = %s", (amount, user_id)
            )
            self.db.execute(
                """
                INSERT INTO transactions (user_id, amount, type, description)
                VALUES (%s, %s, 'deposit', %s)
                """,
                (user_id, amount, description),
            )
            return self.get_balance(user_id)

    def deduct_balance(self, user_id: int, amount: Decimal, description: str = "Withdrawal") -> Decimal:
        with self.db.transaction():
            row = self.db.query_one(
                "SELECT balance FROM users WHERE id = %s FOR UPDATE", (user_id,)
            )
            current = Decimal(str((row or {}).get("balance") or 0))
            if current < amount:
                raise InsufficientBalanceError(
                    "Insufficient balance",
                    detail={"balance": float(current), "requested": float(amount)},
                )
            self.db.execute(
                "UPDATE users SET balance = balance - %s WHERE id = %s", (amount, user_id)
            )
            self.db.execute(
                """
                INSERT INTO transactions (user_id, amount, type, description)
                VALUES (%s, %s, 'withdrawal', %s)
                """,
                (user_id, amount, description),
            )
            return self.get_balance(user_id)

    def list_transactions(self, user_id: int, limit: int = 10) -> List[Transaction]:
        rows = self.db.query(
            """
            SELECT id, user_id, amount, type, description, created_at
            FROM transactions
            WHERE user_id = %s
            ORDER BY created_at DESC, id DESC
            LIMIT %s
            """,
            (user_id, limit),
        )
        return [
            Transaction(
                id=row["id"],
                user_id=row["user_id"],
                amount=Decimal(str(row["amount"])),
                type=row["type"],
                description=row.get("description"),
                created_at=row["created_at"],
            )
            for row in rows
        ]


class MemoryUserRepository:
    """In-process repository with the same contract, for tests and local runs."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self._lock = threading.RLock()
        self.users: Dict[int, User] = {}
        self.preferences: Dict[int, UserPreferences] = {}
        self.transactions: List[Transaction] = []
        self.subscription_history: List[SubscriptionChange] = []
        self._next_user_id = 1

    def _get(self, user_id: int) -> Optional[User]:
        return self.users.get(int(user_id))

    def find_by_id(self, user_id: int) -> Optional[User]:
        return self._get(user_id)

    def find_by_username_or_email(self, identifier: str) -> Optional[User]:
        for user in self.users.values():
            if user.username == identifier or (user.email and user.email == identifier):
                return user
        return None

    def find_by_email(self, email: str) -> Optional[User]:
        for user in self.users.values():
            if user.email and user.email == email:
                return user
        return None

    def find_by_provider(self, provider: str, provider_id: str) -> Optional[User]:
        for user in self.users.values():
            if user.provider == provider and user.provider_id == provider_id:
                return user
        return None

    def username_exists(self, username: str) -> bool:
        return any(user.username == username for user in self.users.values())

    def list_recent(self, limit: int = 10) -> List[User]:
        ordered = sorted(self.users.values(), key=lambda u: (u.created_at, u.id), reverse=True)
        return ordered[:limit]

    def create_user(
        self,
        *,
        username: str,
        email: Optional[str],
        password_hash: str,
        provider: Optional[str] = None,
        provider_id: Optional[str] = None,
    ) -> int:
        with self._lock:
            if self.username_exists(username):
                raise ConstraintViolation("unique constraint violated", {"constraint": "users_username_key"})
            if email and self.find_by_email(email):
                raise ConstraintViolation("unique constraint violated", {"constraint": "users_email_key"})
            if provider and provider_id and self.find_by_provider(provider, provider_id):
                raise ConstraintViolation(
                    "unique constraint violated", {"constraint": "users_provider_provider_id_key"}
                )
            user_id = self._next_user_id
            self._next_user_id += 1
            self.users[user_id] = User(
                id=user_id,
                username=username,
                email=email,
                password_hash=password_hash,
                provider=provider,
                provider_id=provider_id,
            )
        self.logger.info("user_created", user_id=user_id, provider=provider)
        return user_id

    def update_user(self, user_id: int, updates: Dict[str, Any]) -> None:
        with self._lock:
            user = self._get(user_id)
            if not user:
                return
            for name in _UPDATABLE_FIELDS:
                if updates.get(name):
                    setattr(user, name, updates[name])
            user.updated_at = _utcnow()

    def update_password(self, user_id: int, password_hash: str) -> None:
        self.update_user(user_id, {"password_hash": password_hash})

    def update_preferences(self, user_id: int, updates: Dict[str, Any]) -> None:
        with self._lock:
            prefs = self.preferences.setdefault(int(user_id), UserPreferences(user_id=int(user_id)))
            if updates.get("theme"):
                prefs.theme = updates["theme"]
            if updates.get("language"):
                prefs.language = updates["language"]

    def delete_user(self, user_id: int) -> None:
        with self._lock:
            self.users.pop(int(user_id), None)
            self.preferences.pop(int(user_id), None)
            self.transactions = [t for t in self.transactions if t.user_id != int(user_id)]
            self.subscription_history = [
                h for h in self.subscription_history if h.user_id != int(user_id)
            ]

    def get_user_with_preferences(self, user_id: int) -> Dict[str, Any]:
        user = self._get(user_id)
        if not user:
            raise NotFoundError("User not found", detail={"user_id": user_id})
        return _with_preferences(user, self.preferences.get(int(user_id)))

    def get_user_with_subscription(self, user_id: int) -> Dict[str, Any]:
        user = self._get(user_id)
        if not user:
            raise NotFoundError("User not found", detail={"user_id": user_id})
        data = user.public_dict()
        data["transaction_count"] = sum(1 for t in self.transactions if t.user_id == user.id)
        return data

    def increment_failed_attempt(self, user_id: int) -> None:
        with self._lock:
            user = self._get(user_id)
            if user:
                user.failed_attempts += 1
                user.last_attempt = _utcnow()

    def reset_failed_attempts(self, user_id: int) -> None:
        with self._lock:
            user = self._get(user_id)
            if user:
                user.failed_attempts = 0

    def get_subscription_tier(self, user_id: int) -> str:
        user = self._get(user_id)
        return user.subscription_tier if user else "free"

    def change_subscription_tier(self, user_id: int, new_tier: str) -> None:
        with self._lock:
            user = self._get(user_id)
            if not user:
                return
            self.subscription_history.append(
                SubscriptionChange(
                    id=len(self.subscription_history) + 1,
                    user_id=user.id,
                    old_tier=user.subscription_tier,
                    new_tier=new_tier,
                )
            )
            user.subscription_tier = new_tier
            user.subscription_expires_at = _utcnow() + SUBSCRIPTION_PERIOD

    def get_balance(self, user_id: int) -> Decimal:
        user = self._get(user_id)
        return user.balance if user else Decimal("0")

    def _record(self, user_id: int, amount: Decimal, kind: str, description: str) -> None:
        self.transactions.append(
            Transaction(
                id=len(self.transactions) + 1,
                user_id=int(user_id),
                amount=amount,
                type=kind,
                description=description,
            )
        )

    def add_balance(self, user_id: int, amount: Decimal, description: str = "Deposit") -> Decimal:
        with self._lock:
            user = self._get(user_id)
            if user:
                user.balance += amount
                self._record(user_id, amount, "deposit", description)
            return self.get_balance(user_id)

    def deduct_balance(self, user_id: int, amount: Decimal, description: str = "Withdrawal") -> Decimal:
        with self._lock:
            current = self.get_balance(user_id)
            if current < amount:
                raise InsufficientBalanceError(
                    "Insufficient balance",
                    detail={"balance": float(current), "requested": float(amount)},
                )
            user = self._get(user_id)
            user.balance -= amount
            self._record(user_id, amount, "withdrawal", description)
            return user.balance

    def list_transactions(self, user_id: int, limit: int = 10) -> List[Transaction]:
        own = [t for t in self.transactions if t.user_id == int(user_id)]
        own.sort(key=lambda t: (t.created_at, t.id), reverse=True)
        return own[:limit]
