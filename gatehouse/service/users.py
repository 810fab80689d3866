from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from gatehouse.logging import get_logger
from gatehouse.service.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ServerError,
    ValidationError,
)
from gatehouse.storage.cache import CacheService
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.models import OAUTH_PASSWORD_MARKER, User

MIN_PASSWORD_LENGTH = 6
USER_CACHE_TTL_SECONDS = 3600
RECENT_USERS_KEY = "users:recent:list"
MAX_USERNAME_ATTEMPTS = 100


class UserRepository(Protocol):
    def find_by_id(self, user_id: int) -> Optional[User]: ...

    def find_by_username_or_email(self, identifier: str) -> Optional[User]: ...

    def find_by_email(self, email: str) -> Optional[User]: ...

    def find_by_provider(self, provider: str, provider_id: str) -> Optional[User]: ...

    def username_exists(self, username: str) -> bool: ...

    def create_user(
        self,
        *,
        username: str,
        email: Optional[str],
        password_hash: str,
        provider: Optional[str] = None,
        provider_id: Optional[str] = None,
    ) -> int: ...

    def update_user(self, user_id: int, updates: Dict[str, Any]) -> None: ...

    def update_password(self, user_id: int, password_hash: str) -> None: ...

    def update_preferences(self, user_id: int, updates: Dict[str, Any]) -> None: ...

    def delete_user(self, user_id: int) -> None: ...

    def list_recent(self, limit: int = 10) -> List[User]: ...

    def get_user_with_preferences(self, user_id: int) -> Dict[str, Any]: ...

    def get_user_with_subscription(self, user_id: int) -> Dict[str, Any]: ...

    def increment_failed_attempt(self, user_id: int) -> None: ...

    def reset_failed_attempts(self, user_id: int) -> None: ...


def _missing_field_details(**fields: Optional[str]) -> Dict[str, Optional[str]]:
    return {
        name: None if value else f"{name.capitalize()} is required"
        for name, value in fields.items()
    }


class UserService:
    """Account lifecycle on top of a user repository and the JSON cache."""

    def __init__(self, repository: UserRepository, cache: CacheService) -> None:
        self.repository = repository
        self.cache = cache
        self.logger = get_logger(__name__)
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against when the account does not exist so timing stays uniform
        self._dummy_hash = self._pwd_hasher.hash("gatehouse-timing-equalizer")

    # Passwords

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, password_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    # Reads

    async def get(self, user_id: str | int) -> Dict[str, Any]:
        """Read-through lookup of the user projection with preferences."""
        cache_key = f"user:{user_id}"
        cached = await self.cache.get(cache_key)
        if cached:
            return cached
        user = self.repository.get_user_with_preferences(int(user_id))
        try:
            await self.cache.set(cache_key, user, ttl=USER_CACHE_TTL_SECONDS, tags=[cache_key])
        except Exception as exc:
            self.logger.warning("user_cache_fill_failed", user_id=str(user_id), error=str(exc))
        return user

    def find(self, user_id: str | int) -> Optional[User]:
        try:
            return self.repository.find_by_id(int(user_id))
        except (TypeError, ValueError):
            return None

    def get_with_subscription(self, user_id: str | int) -> Dict[str, Any]:
        return self.repository.get_user_with_subscription(int(user_id))

    async def list_recent(self, limit: int = 10) -> List[Dict[str, Any]]:
        cached = await self.cache.lrange(RECENT_USERS_KEY, 0, limit - 1)
        if cached:
            return cached
        users = [user.public_dict() for user in self.repository.list_recent(limit)]
        if users:
            try:
                # lpush reverses order; push oldest first so the newest lands at the head
                await self.cache.lpush(RECENT_USERS_KEY, *reversed(users))
                await self.cache.expire(RECENT_USERS_KEY, USER_CACHE_TTL_SECONDS)
            except Exception as exc:
                self.logger.warning("recent_users_cache_fill_failed", error=str(exc))
        return users

    # Writes

    async def register(
        self, username: Optional[str], email: Optional[str], password: Optional[str]
    ) -> User:
        if not username or not email or not password:
            raise ValidationError(
                "Missing fields",
                detail=_missing_field_details(username=username, email=email, password=password),
            )
        if self.repository.find_by_username_or_email(username) or self.repository.find_by_email(email):
            raise ConflictError("User already exists")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters long"
            )
        try:
            user_id = self.repository.create_user(
                username=username,
                email=email,
                password_hash=self.hash_password(password),
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration
            raise ConflictError("User already exists", detail=exc.detail) from exc
        await self._drop_recent()
        self.logger.info("user_registered", user_id=user_id)
        return self.repository.find_by_id(user_id)

    async def create(self, username: str, email: Optional[str]) -> int:
        """Create a password-less account; it cannot log in until a password is set."""
        if not username:
            raise ValidationError("Missing fields", detail=_missing_field_details(username=username))
        if self.repository.username_exists(username):
            raise ConflictError("Username already exists")
        try:
            user_id = self.repository.create_user(
                username=username, email=email or None, password_hash=""
            )
        except ConstraintViolation as exc:
            raise ConflictError("User already exists", detail=exc.detail) from exc
        await self._drop_recent()
        return user_id

    async def update(self, user_id: str | int, updates: Dict[str, Any]) -> None:
        if updates.get("username") or updates.get("email"):
            self.repository.update_user(
                int(user_id), {"username": updates.get("username"), "email": updates.get("email")}
            )
        if updates.get("theme") or updates.get("language"):
            self.repository.update_preferences(
                int(user_id), {"theme": updates.get("theme"), "language": updates.get("language")}
            )
        await self._invalidate(user_id)

    async def delete(self, user_id: str | int) -> None:
        self.repository.delete_user(int(user_id))
        await self._invalidate(user_id)
        await self._drop_recent()

    async def authenticate(self, identifier: str, password: str) -> User:
        """Return the matching user or raise one uniform authentication error."""
        user = self.repository.find_by_username_or_email(identifier)
        if not user:
            self.verify_password(self._dummy_hash, password)
            self.logger.warning("login_failed", reason="unknown_user")
            raise AuthenticationError("Invalid credentials")
        if not self.verify_password(user.password_hash, password):
            self.repository.increment_failed_attempt(user.id)
            self.logger.warning("login_failed", reason="bad_password", user_id=user.id)
            raise AuthenticationError("Invalid credentials")
        if user.failed_attempts:
            self.repository.reset_failed_attempts(user.id)
        return user

    async def change_password(
        self, user_id: str | int, current_password: str, new_password: str
    ) -> None:
        user = self.find(user_id)
        if not user:
            raise NotFoundError("User not found")
        if not self.verify_password(user.password_hash, current_password):
            raise AuthenticationError("Current password is incorrect")
        if len(new_password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters long"
            )
        self.repository.update_password(user.id, self.hash_password(new_password))
        await self._invalidate(user.id)
        self.logger.info("password_changed", user_id=user.id)

    async def find_or_create_oauth_user(
        self,
        *,
        provider: str,
        provider_id: str,
        email: Optional[str],
        login: Optional[str],
    ) -> User:
        """Resolve an OAuth identity to a local account, creating one on first sign-in.

        Existing accounts are matched by email first, then by provider id. New
        accounts get ``login`` as username, suffixed with a counter when taken.
        """
        existing = None
        if email:
            existing = self.repository.find_by_email(email)
        if not existing and provider_id:
            existing = self.repository.find_by_provider(provider, provider_id)
        if existing:
            return existing

        base = (login or (email or "").split("@")[0] or provider).strip() or provider
        username = self._unique_username(base)
        user_id = self.repository.create_user(
            username=username,
            email=email,
            password_hash=OAUTH_PASSWORD_MARKER,
            provider=provider,
            provider_id=provider_id,
        )
        await self._drop_recent()
        self.logger.info("oauth_user_created", provider=provider, user_id=user_id)
        return self.repository.find_by_id(user_id)

    def _unique_username(self, base: str) -> str:
        username = base
        counter = 1
        while self.repository.username_exists(username):
            if counter > MAX_USERNAME_ATTEMPTS:
                raise ServerError("Could not generate unique username")
            username = f"{base}{counter}"
            counter += 1
        return username

    async def _invalidate(self, user_id: str | int) -> None:
        try:
            await self.cache.invalidate_by_tag(f"user:{user_id}")
        except Exception as exc:
            self.logger.warning("user_cache_invalidate_failed", user_id=str(user_id), error=str(exc))

    async def _drop_recent(self) -> None:
        try:
            await self.cache.delete(RECENT_USERS_KEY)
        except Exception as exc:
            self.logger.warning("recent_users_cache_drop_failed", error=str(exc))
