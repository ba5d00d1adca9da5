"""Tests for the authentication API endpoints."""

import pytest

from app.services.audit import AuditAction

from tests.conftest import TEST_ADMIN_PASSWORD, TEST_ADMIN_USERNAME

LOGIN_URL = "/api/v1/auth/login"


def _cookie_value(set_cookie: str) -> str:
    return set_cookie.split(";", 1)[0].split("=", 1)[1]


async def _login(client, username=TEST_ADMIN_USERNAME, password=TEST_ADMIN_PASSWORD, **kwargs):
    return await client.post(LOGIN_URL, json={"username": username, "password": password}, **kwargs)


class TestLogin:
    @pytest.mark.asyncio
    async def test_sets_hardened_session_cookie(self, async_client):
        response = await _login(async_client)

        assert response.status_code == 200
        cookie = response.headers["set-cookie"]
        assert cookie.startswith("admin_token=")
        assert "HttpOnly" in cookie
        assert "Secure" in cookie
        assert "samesite=strict" in cookie.lower()
        assert "Path=/" in cookie
        assert "Max-Age=86400" in cookie

    @pytest.mark.asyncio
    async def test_token_never_in_body(self, async_client):
        response = await _login(async_client)

        token = _cookie_value(response.headers["set-cookie"])
        body = response.json()
        assert body["success"] is True
        assert body["data"]["user"]["username"] == TEST_ADMIN_USERNAME
        assert body["data"]["expires_at"]
        assert token not in response.text
        assert "password" not in response.text

    @pytest.mark.asyncio
    async def test_wrong_password_is_generic_401(self, async_client):
        response = await _login(async_client, password="wrong-password")

        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid credentials"
        assert response.headers["www-authenticate"] == "Bearer"
        assert "set-cookie" not in response.headers

    @pytest.mark.asyncio
    async def test_unknown_user_same_as_wrong_password(self, async_client):
        unknown = await _login(async_client, username="ghost", password="whatever")
        wrong = await _login(async_client, password="wrong-password")

        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json() == wrong.json()

    @pytest.mark.asyncio
    async def test_empty_fields_rejected(self, async_client):
        response = await async_client.post(LOGIN_URL, json={"username": "", "password": ""})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_blocked_ip_gets_429_without_retry_after(self, app, async_client):
        await app.state.block_store.block("10.0.0.1", "manual")

        response = await _login(async_client, headers={"X-Forwarded-For": "10.0.0.1"})

        assert response.status_code == 429
        assert "retry-after" not in response.headers
        assert "temporarily blocked" in response.json()["detail"]

    @pytest.mark.asyncio
    async def test_rate_limited_gets_retry_after(self, app, async_client):
        limiter = app.state.rate_limiter
        for i in range(5):
            await limiter.record_failure(f"192.168.1.{i}", TEST_ADMIN_USERNAME)

        response = await _login(async_client)

        assert response.status_code == 429
        assert response.headers["retry-after"] == "900"

    @pytest.mark.asyncio
    async def test_five_failures_block_the_forwarded_ip(self, app, async_client, audit_sink):
        headers = {"X-Forwarded-For": "10.0.0.1, 172.16.0.1"}
        for _ in range(5):
            response = await _login(async_client, password="wrong-password", headers=headers)
            assert response.status_code == 401

        response = await _login(async_client, headers=headers)

        assert response.status_code == 429
        assert await app.state.block_store.is_blocked("10.0.0.1")
        assert not await app.state.block_store.is_blocked("172.16.0.1")
        await app.state.audit_service.drain()
        assert AuditAction.IP_AUTO_BLOCK.value in audit_sink.actions()


class TestSessionToken:
    @pytest.mark.asyncio
    async def test_me_with_bearer_header(self, async_client, admin_headers):
        response = await async_client.get("/api/v1/auth/me", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["username"] == TEST_ADMIN_USERNAME

    @pytest.mark.asyncio
    async def test_me_with_login_cookie(self, async_client):
        login = await _login(async_client)
        token = _cookie_value(login.headers["set-cookie"])

        response = await async_client.get(
            "/api/v1/auth/me", headers={"Cookie": f"admin_token={token}"}
        )

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_cookie_preferred_over_header(self, async_client, admin_token):
        good_cookie = await async_client.get(
            "/api/v1/auth/me",
            headers={"Cookie": f"admin_token={admin_token}", "Authorization": "Bearer garbage"},
        )
        bad_cookie = await async_client.get(
            "/api/v1/auth/me",
            headers={"Cookie": "admin_token=garbage", "Authorization": f"Bearer {admin_token}"},
        )

        assert good_cookie.status_code == 200
        assert bad_cookie.status_code == 401

    @pytest.mark.asyncio
    async def test_missing_token_is_401(self, async_client):
        response = await async_client.get("/api/v1/auth/me")

        assert response.status_code == 401
        assert response.headers["www-authenticate"] == "Bearer"

    @pytest.mark.asyncio
    async def test_invalid_token_message_is_generic(self, async_client):
        response = await async_client.get(
            "/api/v1/auth/me", headers={"Authorization": "Bearer not.a.token"}
        )

        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid or expired token"

    @pytest.mark.asyncio
    async def test_inactive_user_rejected(self, async_client, admin_user, admin_headers):
        admin_user.is_active = False

        response = await async_client.get("/api/v1/auth/me", headers=admin_headers)

        assert response.status_code == 401


class TestLogoutAndRefresh:
    @pytest.mark.asyncio
    async def test_logout_expires_cookie(self, async_client, admin_headers, app, audit_sink):
        response = await async_client.post("/api/v1/auth/logout", headers=admin_headers)

        assert response.status_code == 200
        cookie = response.headers["set-cookie"]
        assert cookie.startswith("admin_token=")
        assert "Max-Age=0" in cookie
        await app.state.audit_service.drain()
        assert audit_sink.actions() == [AuditAction.LOGOUT.value]

    @pytest.mark.asyncio
    async def test_logout_requires_session(self, async_client):
        response = await async_client.post("/api/v1/auth/logout")

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_refresh_reissues_cookie(self, async_client, admin_headers, app):
        response = await async_client.post("/api/v1/auth/refresh", headers=admin_headers)

        assert response.status_code == 200
        token = _cookie_value(response.headers["set-cookie"])
        claims = app.state.token_service.validate(token)
        assert claims.username == TEST_ADMIN_USERNAME
        assert response.json()["data"]["user"] is None
        assert token not in response.text

    @pytest.mark.asyncio
    async def test_refresh_rejected_for_deactivated_user(self, async_client, admin_user, admin_headers):
        admin_user.is_active = False

        response = await async_client.post("/api/v1/auth/refresh", headers=admin_headers)

        assert response.status_code == 401
        assert "set-cookie" not in response.headers

    @pytest.mark.asyncio
    async def test_refresh_rejected_for_deleted_user(self, async_client, verifier, admin_headers):
        verifier.users.clear()

        response = await async_client.post("/api/v1/auth/refresh", headers=admin_headers)

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_refresh_uses_current_user_row(self, async_client, admin_user, admin_headers, app):
        admin_user.role = "editor"

        response = await async_client.post("/api/v1/auth/refresh", headers=admin_headers)

        token = _cookie_value(response.headers["set-cookie"])
        assert app.state.token_service.validate(token).role == "editor"

    @pytest.mark.asyncio
    async def test_refresh_rejects_bad_token(self, async_client):
        response = await async_client.post(
            "/api/v1/auth/refresh", headers={"Authorization": "Bearer garbage"}
        )

        assert response.status_code == 401


CHANGE_PASSWORD_URL = "/api/v1/auth/change-password"
PROFILE_URL = "/api/v1/auth/profile"
NEW_PASSWORD = "N3w-passphrase"


class TestChangePassword:
    @pytest.mark.asyncio
    async def test_change_password_clears_cookie(self, async_client, admin_headers, app, audit_sink):
        response = await async_client.put(
            CHANGE_PASSWORD_URL,
            headers=admin_headers,
            json={"current_password": TEST_ADMIN_PASSWORD, "new_password": NEW_PASSWORD},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["requires_reauth"] is True
        cookie = response.headers["set-cookie"]
        assert cookie.startswith("admin_token=")
        assert "Max-Age=0" in cookie
        await app.state.audit_service.drain()
        assert audit_sink.actions() == [AuditAction.PASSWORD_CHANGE.value]
        assert audit_sink.entries[0]["success"] is True

    @pytest.mark.asyncio
    async def test_new_password_works_for_login(self, async_client, admin_headers):
        await async_client.put(
            CHANGE_PASSWORD_URL,
            headers=admin_headers,
            json={"current_password": TEST_ADMIN_PASSWORD, "new_password": NEW_PASSWORD},
        )

        old = await _login(async_client)
        new = await _login(async_client, password=NEW_PASSWORD)

        assert old.status_code == 401
        assert new.status_code == 200

    @pytest.mark.asyncio
    async def test_wrong_current_password(self, async_client, admin_headers, app, audit_sink):
        response = await async_client.put(
            CHANGE_PASSWORD_URL,
            headers=admin_headers,
            json={"current_password": "wrongpassword123", "new_password": NEW_PASSWORD},
        )

        assert response.status_code == 400
        assert "incorrect" in response.json()["detail"].lower()
        assert "set-cookie" not in response.headers
        await app.state.audit_service.drain()
        assert audit_sink.entries[0]["success"] is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("new_password", ["short1A", "alllowercaseletters", "12345678901"])
    async def test_weak_password_rejected(self, async_client, admin_headers, new_password):
        response = await async_client.put(
            CHANGE_PASSWORD_URL,
            headers=admin_headers,
            json={"current_password": TEST_ADMIN_PASSWORD, "new_password": new_password},
        )

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_requires_session(self, async_client):
        response = await async_client.put(
            CHANGE_PASSWORD_URL,
            json={"current_password": TEST_ADMIN_PASSWORD, "new_password": NEW_PASSWORD},
        )

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_deactivated_user_rejected(self, async_client, admin_user, admin_headers):
        admin_user.is_active = False

        response = await async_client.put(
            CHANGE_PASSWORD_URL,
            headers=admin_headers,
            json={"current_password": TEST_ADMIN_PASSWORD, "new_password": NEW_PASSWORD},
        )

        assert response.status_code == 401


class TestUpdateProfile:
    @pytest.mark.asyncio
    async def test_update_profile(self, async_client, admin_headers, app, audit_sink):
        response = await async_client.put(
            PROFILE_URL,
            headers=admin_headers,
            json={"full_name": "Site Owner", "username": "owner", "email": "owner@example.com"},
        )

        assert response.status_code == 200
        user = response.json()["data"]["user"]
        assert user["username"] == "owner"
        assert user["full_name"] == "Site Owner"
        assert user["email"] == "owner@example.com"
        await app.state.audit_service.drain()
        assert audit_sink.actions() == [AuditAction.PROFILE_UPDATE.value]

    @pytest.mark.asyncio
    async def test_username_taken_is_conflict(self, async_client, admin_headers):
        response = await async_client.put(
            PROFILE_URL,
            headers=admin_headers,
            json={"full_name": "Admin", "username": "editor", "email": "admin@example.com"},
        )

        assert response.status_code == 409
        assert response.json()["detail"] == "Username already exists"

    @pytest.mark.asyncio
    async def test_invalid_email_rejected(self, async_client, admin_headers):
        response = await async_client.put(
            PROFILE_URL,
            headers=admin_headers,
            json={"full_name": "Admin", "username": "testadmin", "email": "not-an-email"},
        )

        assert response.status_code == 422


class TestSecurityHeaders:
    @pytest.mark.asyncio
    async def test_auth_responses_not_cacheable(self, async_client):
        response = await _login(async_client)

        assert response.headers["cache-control"] == "no-store"
        assert response.headers["x-content-type-options"] == "nosniff"
        assert response.headers["x-frame-options"] == "DENY"
