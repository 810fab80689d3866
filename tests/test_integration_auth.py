"""End-to-end password authentication through the HTTP API.

Covers registration, login, the session check, password change, logout and
the login rate limits.
"""

import pytest

ALICE = {"username": "alice", "email": "a@x.io", "password": "secret1"}


def register(client, **overrides):
    return client.post("/api/auth/register", json={**ALICE, **overrides})


class TestRegistration:
    def test_register_sets_session_cookie(self, client):
        response = register(client)
        assert response.status_code == 201
        assert response.json() == {
            "success": True,
            "message": "Registration successful",
            "user": {"username": "alice", "email": "a@x.io"},
        }
        cookie = response.headers["set-cookie"]
        assert cookie.startswith("sid=")
        assert "HttpOnly" in cookie
        assert "Max-Age=86400" in cookie
        assert "Path=/" in cookie
        assert "samesite=lax" in cookie.lower()

    def test_second_register_conflicts(self, client):
        register(client)
        response = register(client)
        assert response.status_code == 409
        assert response.json()["error"] == "User already exists"

    def test_missing_fields_are_listed(self, client):
        response = client.post("/api/auth/register", json={"username": "alice"})
        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "Missing fields"
        assert body["details"] == {
            "username": None,
            "email": "Email is required",
            "password": "Password is required",
        }

    def test_short_password(self, client):
        response = register(client, password="12345")
        assert response.status_code == 400
        assert response.json()["error"] == "Password must be at least 6 characters long"

    def test_register_is_rate_limited_per_address(self, client):
        for i in range(5):
            register(client, username=f"user{i}", email=f"user{i}@x.io")
        response = register(client, username="user5", email="user5@x.io")
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "3600"


class TestLogin:
    def test_alice_end_to_end(self, client):
        assert register(client).status_code == 201
        client.cookies.clear()

        login = client.post("/api/auth/login", json={"username": "alice", "password": "secret1"})
        assert login.status_code == 200
        assert login.json()["message"] == "Login successful"
        assert "sid" in login.cookies

        me = client.get("/api/auth/me")
        assert me.json()["success"] is True
        assert me.json()["authenticated"] is True
        assert me.json()["user"]["username"] == "alice"
        assert me.json()["user"]["email"] == "a@x.io"

        logout = client.post("/api/auth/logout")
        assert logout.json() == {"success": True, "message": "Logged out successfully"}

        after = client.get("/api/auth/me").json()
        assert after == {"success": False, "authenticated": False}

    def test_login_with_email(self, client):
        register(client)
        response = client.post("/api/auth/login", json={"username": "a@x.io", "password": "secret1"})
        assert response.status_code == 200

    def test_failures_share_one_body(self, client):
        register(client)
        wrong_password = client.post(
            "/api/auth/login", json={"username": "alice", "password": "wrong!"}
        )
        unknown_user = client.post(
            "/api/auth/login", json={"username": "nobody", "password": "wrong!"}
        )
        assert wrong_password.status_code == unknown_user.status_code == 401
        assert wrong_password.json() == unknown_user.json() == {
            "error": "Invalid credentials",
            "code": "unauthorized",
        }

    def test_missing_credentials(self, client):
        response = client.post("/api/auth/login", json={"username": "alice"})
        assert response.status_code == 400
        assert response.json()["error"] == "Missing credentials"
        assert response.json()["details"]["password"] == "Password is required"

    def test_login_attempts_are_rate_limited(self, client):
        for _ in range(11):
            client.post("/api/auth/login", json={"username": "x", "password": "wrong!"})
        response = client.post("/api/auth/login", json={"username": "x", "password": "wrong!"})
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "300"

    def test_successful_login_clears_limits(self, client, kv):
        register(client)
        client.cookies.clear()
        for _ in range(3):
            client.post("/api/auth/login", json={"username": "alice", "password": "wrong!"})
        assert client.post(
            "/api/auth/login", json={"username": "alice", "password": "secret1"}
        ).status_code == 200
        assert not [key for key in kv._values if key.startswith("auth:login")]

    def test_me_without_session(self, client):
        assert client.get("/api/auth/me").json() == {"success": False, "authenticated": False}


class TestLogout:
    def test_logout_clears_cookies_without_session(self, client):
        response = client.post("/api/auth/logout")
        assert response.status_code == 200
        cookies = response.headers.get_list("set-cookie")
        assert any(c.startswith("sid=") for c in cookies)
        assert any(c.startswith("csrf_token=") for c in cookies)
        assert all("Max-Age=0" in c for c in cookies)

    def test_logout_destroys_session(self, client, kv):
        register(client)
        assert [k for k in kv._values if k.startswith("session:")]
        client.post("/api/auth/logout")
        assert not [k for k in kv._values if k.startswith("session:")]


class TestChangePassword:
    def test_change_password_flow(self, client):
        register(client)
        response = client.post(
            "/api/auth/change-password",
            json={"currentPassword": "secret1", "newPassword": "secret2"},
        )
        assert response.status_code == 200
        assert response.json()["message"] == "Password updated successfully"

        client.cookies.clear()
        old = client.post("/api/auth/login", json={"username": "alice", "password": "secret1"})
        assert old.status_code == 401
        new = client.post("/api/auth/login", json={"username": "alice", "password": "secret2"})
        assert new.status_code == 200

    def test_wrong_current_password(self, client):
        register(client)
        response = client.post(
            "/api/auth/change-password",
            json={"currentPassword": "nope", "newPassword": "secret2"},
        )
        assert response.status_code == 401
        assert response.json()["error"] == "Current password is incorrect"

    def test_missing_fields(self, client):
        register(client)
        response = client.post("/api/auth/change-password", json={"currentPassword": "secret1"})
        assert response.status_code == 400
        assert response.json()["error"] == "Missing password fields"

    def test_short_new_password(self, client):
        register(client)
        response = client.post(
            "/api/auth/change-password",
            json={"currentPassword": "secret1", "newPassword": "12345"},
        )
        assert response.status_code == 400
        assert response.json()["error"] == "Password must be at least 6 characters long"

    def test_requires_session(self, client):
        response = client.post(
            "/api/auth/change-password",
            json={"currentPassword": "a", "newPassword": "bbbbbb"},
        )
        assert response.status_code == 401
        assert response.json()["error"] == "Unauthorized"

    def test_session_for_deleted_user(self, client, runtime):
        register(client)
        user = runtime.repository.find_by_username_or_email("alice")
        runtime.repository.delete_user(user.id)
        response = client.post(
            "/api/auth/change-password",
            json={"currentPassword": "secret1", "newPassword": "secret2"},
        )
        assert response.status_code == 404


class TestAccountRoutes:
    def test_balance_transactions_and_subscription(self, client, runtime):
        register(client)
        user = runtime.repository.find_by_username_or_email("alice")
        runtime.subscriptions.add_balance(user.id, 20)
        runtime.subscriptions.deduct_balance(user.id, "7.25")

        assert client.get("/api/users/me/balance").json() == {"balance": 12.75}

        transactions = client.get("/api/users/me/transactions", params={"limit": 1}).json()
        assert len(transactions["transactions"]) == 1

        subscription = client.get("/api/users/me/subscription").json()
        assert subscription["tier"] == "free"
        assert subscription["subscription"]["transaction_count"] == 2

    def test_account_routes_require_session(self, client):
        assert client.get("/api/users/me/balance").status_code == 401

    def test_transaction_limit_is_bounded(self, client):
        register(client)
        assert client.get("/api/users/me/transactions", params={"limit": 500}).status_code == 400

    def test_list_and_create_users(self, client):
        register(client)
        created = client.post("/api/users", json={"username": "bob", "email": "bob@x.io"})
        assert created.status_code == 201
        assert created.json()["success"] is True

        users = client.get("/api/users/list").json()["users"]
        assert [u["username"] for u in users] == ["bob", "alice"]
        assert all("password_hash" not in u for u in users)

    def test_create_user_conflict(self, client):
        register(client)
        response = client.post("/api/users", json={"username": "alice"})
        assert response.status_code == 409

    def test_api_routes_report_rate_limit_headers(self, client):
        response = client.get("/api/users/list")
        assert response.headers["X-RateLimit-Limit"] == "1000"
        assert response.headers["X-RateLimit-Remaining"] == "999"


@pytest.mark.parametrize("path", ["/api/auth/me", "/api/auth/logout"])
def test_auth_routes_are_not_counted_by_api_limit(client, kv, path):
    client.request("GET" if path.endswith("me") else "POST", path)
    assert not [k for k in kv._values if k.startswith("rl:")]
