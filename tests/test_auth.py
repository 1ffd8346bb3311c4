"""Tests for provider authentication."""

from app.security_utils import AccountLockout

from .conftest import PROVIDER_PASSWORD

LOGIN_URL = "/api/provider/auth/login"


def login(client, email: str = "ada@example.com", password: str = PROVIDER_PASSWORD):
    return client.post(LOGIN_URL, json={"email": email, "password": password})


class TestLogin:
    """Tests for POST /api/provider/auth/login."""

    def test_success(self, client, provider) -> None:
        response = login(client, email="  ADA@example.com ")
        assert response.status_code == 200
        data = response.json()
        assert data["tokenType"] == "bearer"
        assert data["provider"]["email"] == "ada@example.com"
        assert data["provider"]["allowed_durations"] == [30, 60]

        me = client.get(
            "/api/provider/auth/me", headers={"Authorization": f"Bearer {data['accessToken']}"}
        )
        assert me.json()["name"] == "Dr. Ada Lovelace"

    def test_wrong_password_counts_down(self, client, provider) -> None:
        first = login(client, password="wrong")
        second = login(client, password="wrong")
        assert first.status_code == 401
        assert first.json()["detail"] == "Invalid credentials. 4 attempts remaining."
        assert second.json()["detail"] == "Invalid credentials. 3 attempts remaining."

    def test_unknown_email_looks_the_same(self, client, provider) -> None:
        response = login(client, email="nobody@example.com")
        assert response.status_code == 401
        assert response.json()["detail"].startswith("Invalid credentials.")

    def test_lockout(self, client, provider) -> None:
        """The fifth failure locks the account, even for the right password."""
        statuses = [login(client, password="wrong").status_code for _ in range(5)]
        assert statuses == [401, 401, 401, 401, 423]

        locked = login(client)
        assert locked.status_code == 423
        assert locked.json()["detail"].startswith("Account temporarily locked.")

    def test_success_resets_failures(self, client, provider) -> None:
        login(client, password="wrong")
        login(client)
        response = login(client, password="wrong")
        assert response.json()["detail"] == "Invalid credentials. 4 attempts remaining."

    def test_rate_limited(self, client, provider) -> None:
        for i in range(10):
            login(client, email=f"user{i}@example.com")
        response = login(client)
        assert response.status_code == 429
        assert response.headers["Retry-After"]

    def test_validation_error(self, client) -> None:
        response = client.post(LOGIN_URL, json={"email": "ada@example.com"})
        assert response.status_code == 422


class TestTokens:
    """Tests for refresh, logout and token checks."""

    def test_refresh_rotates(self, client, provider) -> None:
        tokens = login(client).json()
        refreshed = client.post("/api/provider/auth/refresh", json={"refreshToken": tokens["refreshToken"]})
        assert refreshed.status_code == 200
        assert refreshed.json()["refreshToken"] != tokens["refreshToken"]

        replayed = client.post("/api/provider/auth/refresh", json={"refreshToken": tokens["refreshToken"]})
        assert replayed.status_code == 401
        assert replayed.json()["detail"] == "Token has been revoked"

    def test_access_token_cannot_refresh(self, client, provider) -> None:
        tokens = login(client).json()
        response = client.post("/api/provider/auth/refresh", json={"refreshToken": tokens["accessToken"]})
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid token claims"

    def test_logout_revokes_tokens(self, client, provider) -> None:
        tokens = login(client).json()
        headers = {"Authorization": f"Bearer {tokens['accessToken']}"}

        response = client.post(
            "/api/provider/auth/logout", json={"refreshToken": tokens["refreshToken"]}, headers=headers
        )
        assert response.json() == {"message": "Logged out successfully"}

        assert client.get("/api/provider/auth/me", headers=headers).status_code == 401
        refreshed = client.post("/api/provider/auth/refresh", json={"refreshToken": tokens["refreshToken"]})
        assert refreshed.status_code == 401

    def test_logout_requires_token(self, client) -> None:
        response = client.post("/api/provider/auth/logout")
        assert response.status_code == 401

    def test_malformed_bearer(self, client) -> None:
        response = client.get("/api/provider/auth/me", headers={"Authorization": "Bearer abc"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid token format. Expected a valid JWT token."

    def test_inactive_provider(self, client, db_session, provider, access_token) -> None:
        provider.is_active = False
        db_session.commit()
        response = client.get("/api/provider/auth/me", headers={"Authorization": f"Bearer {access_token}"})
        assert response.status_code == 401


class TestAccountLockout:
    """Tests for AccountLockout on its own store."""

    def test_permanent_after_threshold(self, store) -> None:
        lockout = AccountLockout(store)
        for _ in range(10):
            lockout.record_failure("mallory@example.com")

        status = lockout.status("mallory@example.com")
        assert status == {"locked": True, "permanent": True, "unlock_at": None}

        lockout.record_success("mallory@example.com")
        assert lockout.status("mallory@example.com")["permanent"] is True
        assert lockout.remaining_attempts("mallory@example.com") == 0

    def test_identifiers_are_case_insensitive(self, store) -> None:
        lockout = AccountLockout(store)
        lockout.record_failure("Mallory@Example.com")
        assert lockout.remaining_attempts("mallory@example.com") == 4

    def test_manual_unlock(self, store) -> None:
        lockout = AccountLockout(store)
        for _ in range(5):
            lockout.record_failure("mallory@example.com")
        assert lockout.status("mallory@example.com")["locked"] is True

        lockout.unlock("mallory@example.com")
        assert lockout.status("mallory@example.com")["locked"] is False
