from decimal import Decimal

import pytest

from gatehouse.service.errors import (
    AuthenticationError,
    ConflictError,
    InsufficientBalanceError,
    NotFoundError,
    ServerError,
    ValidationError,
)
from gatehouse.service.subscription import SubscriptionService
from gatehouse.service.users import RECENT_USERS_KEY, UserService
from gatehouse.storage.cache import CacheService
from gatehouse.storage.models import OAUTH_PASSWORD_MARKER
from gatehouse.storage.users import MemoryUserRepository


@pytest.fixture
def repository():
    return MemoryUserRepository()


@pytest.fixture
def cache(kv):
    return CacheService(kv)


@pytest.fixture
def users(repository, cache):
    return UserService(repository, cache)


@pytest.fixture
def subscriptions(repository):
    return SubscriptionService(repository)


class TestRegistration:
    async def test_register_hashes_password(self, users):
        user = await users.register("alice", "alice@example.com", "secret123")
        assert user.username == "alice"
        assert user.password_hash != "secret123"
        assert user.password_hash.startswith("$argon2id$")

    async def test_register_reports_each_missing_field(self, users):
        with pytest.raises(ValidationError) as excinfo:
            await users.register("alice", "", None)
        assert excinfo.value.message == "Missing fields"
        assert excinfo.value.detail == {
            "username": None,
            "email": "Email is required",
            "password": "Password is required",
        }

    async def test_duplicate_username_or_email_conflicts(self, users):
        await users.register("alice", "alice@example.com", "secret123")
        with pytest.raises(ConflictError):
            await users.register("alice", "other@example.com", "secret123")
        with pytest.raises(ConflictError):
            await users.register("bob", "alice@example.com", "secret123")

    async def test_short_password_rejected(self, users):
        with pytest.raises(ValidationError) as excinfo:
            await users.register("alice", "alice@example.com", "12345")
        assert excinfo.value.message == "Password must be at least 6 characters long"


class TestAuthentication:
    async def test_username_or_email_logs_in(self, users):
        await users.register("alice", "alice@example.com", "secret123")
        assert (await users.authenticate("alice", "secret123")).username == "alice"
        assert (await users.authenticate("alice@example.com", "secret123")).username == "alice"

    async def test_failures_are_indistinguishable(self, users):
        await users.register("alice", "alice@example.com", "secret123")
        with pytest.raises(AuthenticationError) as wrong_password:
            await users.authenticate("alice", "nope")
        with pytest.raises(AuthenticationError) as unknown_user:
            await users.authenticate("mallory", "nope")
        assert wrong_password.value.message == unknown_user.value.message == "Invalid credentials"

    async def test_failed_attempts_are_recorded_and_cleared(self, users, repository):
        user = await users.register("alice", "alice@example.com", "secret123")
        with pytest.raises(AuthenticationError):
            await users.authenticate("alice", "wrong-pass")
        assert repository.find_by_id(user.id).failed_attempts == 1
        await users.authenticate("alice", "secret123")
        assert repository.find_by_id(user.id).failed_attempts == 0

    async def test_oauth_marker_never_verifies(self, users):
        await users.find_or_create_oauth_user(
            provider="github", provider_id="9", email="gh@example.com", login="octo"
        )
        with pytest.raises(AuthenticationError):
            await users.authenticate("octo", OAUTH_PASSWORD_MARKER)


class TestPasswordChange:
    async def test_change_password(self, users):
        user = await users.register("alice", "alice@example.com", "secret123")
        await users.change_password(user.id, "secret123", "newsecret")
        assert (await users.authenticate("alice", "newsecret")).id == user.id

    async def test_wrong_current_password(self, users):
        user = await users.register("alice", "alice@example.com", "secret123")
        with pytest.raises(AuthenticationError) as excinfo:
            await users.change_password(user.id, "bad", "newsecret")
        assert excinfo.value.message == "Current password is incorrect"

    async def test_unknown_user(self, users):
        with pytest.raises(NotFoundError):
            await users.change_password(999, "a", "bcdefgh")

    async def test_short_new_password_keeps_old_one(self, users):
        user = await users.register("alice", "alice@example.com", "secret123")
        with pytest.raises(ValidationError) as excinfo:
            await users.change_password(user.id, "secret123", "12345")
        assert excinfo.value.message == "Password must be at least 6 characters long"
        assert (await users.authenticate("alice", "secret123")).id == user.id


class TestOAuthUsers:
    async def test_reuses_account_with_same_email(self, users):
        local = await users.register("alice", "alice@example.com", "secret123")
        linked = await users.find_or_create_oauth_user(
            provider="google", provider_id="g-1", email="alice@example.com", login="Alice"
        )
        assert linked.id == local.id

    async def test_reuses_account_with_same_provider_id(self, users):
        first = await users.find_or_create_oauth_user(
            provider="github", provider_id="42", email="one@example.com", login="octo"
        )
        again = await users.find_or_create_oauth_user(
            provider="github", provider_id="42", email=None, login="octo"
        )
        assert again.id == first.id

    async def test_username_collisions_get_a_counter(self, users):
        await users.register("octo", "octo@example.com", "secret123")
        await users.register("octo1", "octo1@example.com", "secret123")
        created = await users.find_or_create_oauth_user(
            provider="github", provider_id="7", email="new@example.com", login="octo"
        )
        assert created.username == "octo2"
        assert created.provider == "github"
        assert created.password_hash == OAUTH_PASSWORD_MARKER

    async def test_gives_up_after_too_many_collisions(self, users, repository, monkeypatch):
        monkeypatch.setattr(repository, "username_exists", lambda username: True)
        with pytest.raises(ServerError):
            await users.find_or_create_oauth_user(
                provider="github", provider_id="8", email="x@example.com", login="taken"
            )


class TestCachedReads:
    async def test_get_reads_through_cache(self, users, cache):
        user = await users.register("alice", "alice@example.com", "secret123")
        loaded = await users.get(user.id)
        assert loaded["username"] == "alice"
        assert "password_hash" not in loaded
        assert loaded["preferences"] == {"theme": "dark", "language": "en"}
        assert await cache.get(f"user:{user.id}") == loaded

    async def test_update_invalidates_cached_user(self, users, cache):
        user = await users.register("alice", "alice@example.com", "secret123")
        await users.get(user.id)
        await users.update(user.id, {"email": "new@example.com", "theme": "light"})
        assert await cache.get(f"user:{user.id}") is None
        refreshed = await users.get(user.id)
        assert refreshed["email"] == "new@example.com"
        assert refreshed["preferences"]["theme"] == "light"

    async def test_get_missing_user_raises(self, users):
        with pytest.raises(NotFoundError):
            await users.get(12345)

    async def test_recent_users_are_cached_newest_first(self, users, cache):
        await users.register("first", "first@example.com", "secret123")
        await users.register("second", "second@example.com", "secret123")
        recent = await users.list_recent()
        assert [u["username"] for u in recent] == ["second", "first"]
        cached = await cache.lrange(RECENT_USERS_KEY, 0, -1)
        assert [u["username"] for u in cached] == ["second", "first"]

    async def test_creating_a_user_drops_recent_list(self, users, cache):
        await users.register("first", "first@example.com", "secret123")
        await users.list_recent()
        await users.create("plain", None)
        assert await cache.lrange(RECENT_USERS_KEY, 0, -1) == []

    async def test_delete_removes_user(self, users, repository):
        user = await users.register("alice", "alice@example.com", "secret123")
        await users.delete(user.id)
        assert repository.find_by_id(user.id) is None


class TestSubscriptions:
    async def test_tier_upgrade_records_history(self, users, subscriptions, repository):
        user = await users.register("alice", "alice@example.com", "secret123")
        assert subscriptions.get_current_tier(user.id) == "free"
        subscriptions.upgrade_tier(user.id, "premium")
        assert subscriptions.get_current_tier(user.id) == "premium"
        change = repository.subscription_history[-1]
        assert (change.old_tier, change.new_tier) == ("free", "premium")
        assert repository.find_by_id(user.id).subscription_expires_at is not None

    def test_unknown_tier_rejected(self, subscriptions):
        with pytest.raises(ValidationError):
            subscriptions.upgrade_tier(1, "platinum")

    async def test_balance_moves_record_transactions(self, users, subscriptions):
        user = await users.register("alice", "alice@example.com", "secret123")
        assert subscriptions.add_balance(user.id, "10.50") == Decimal("10.50")
        assert subscriptions.deduct_balance(user.id, 4) == Decimal("6.50")
        history = subscriptions.get_transaction_history(user.id)
        assert sorted(t["type"] for t in history) == ["deposit", "withdrawal"]
        assert {t["amount"] for t in history} == {10.5, 4.0}

    async def test_failed_deduction_leaves_balance_unchanged(self, users, subscriptions):
        user = await users.register("alice", "alice@example.com", "secret123")
        subscriptions.add_balance(user.id, 5)
        with pytest.raises(InsufficientBalanceError):
            subscriptions.deduct_balance(user.id, "5.01")
        assert subscriptions.get_balance(user.id) == Decimal("5.00")
        assert len(subscriptions.get_transaction_history(user.id)) == 1

    @pytest.mark.parametrize("amount", [0, -1, "abc"])
    def test_non_positive_amounts_rejected(self, subscriptions, amount):
        with pytest.raises(ValidationError):
            subscriptions.add_balance(1, amount)
