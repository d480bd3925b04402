"""Integration tests for authentication flow.

Tests the complete auth flow including:
- Student signup
- Login with password or OTP
- Forgot password and OTP verification
- Password set and reset
- Token refresh
- Logout
"""

import pytest
from fastapi.testclient import TestClient

from learnhub import app as app_module
from learnhub.service import messages
from learnhub.service.runtime import get_runtime

STUDENT_EMAIL = "asha@example.com"
STUDENT_PASSWORD = "Student123"


@pytest.fixture
def client():
    """Create a test client for the API with lifespan events."""
    with TestClient(app_module.app) as test_client:
        yield test_client


def _signup(client, email=STUDENT_EMAIL, password=STUDENT_PASSWORD, **overrides):
    payload = {
        "firstName": "Asha",
        "lastName": "Rao",
        "email": email,
        "mobileNo": "9876543210",
        "gender": "female",
        "password": password,
        "confirmPassword": password,
    }
    payload.update(overrides)
    return client.post("/api/auth/signup/student", json=payload)


def _latest_otp(email):
    return get_runtime().store.list_otps(email=email)[0].otp


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


def _set_cookie_attributes(response):
    """Map each Set-Cookie name to its lower-cased attributes; flags map to True."""
    parsed = {}
    for raw in response.headers.get_list("set-cookie"):
        name_value, *attributes = [part.strip() for part in raw.split(";")]
        attrs = {}
        for attribute in attributes:
            key, sep, value = attribute.partition("=")
            attrs[key.lower()] = value.lower() if sep else True
        parsed[name_value.split("=", 1)[0]] = attrs
    return parsed


def _assert_error(response, status, code, message=None):
    assert response.status_code == status
    body = response.json()
    assert body["success"] is False
    assert body["data"] is None
    assert body["error"]["code"] == code
    if message is not None:
        assert body["error"]["message"] == message


class TestSignupFlow:
    """Tests for student registration."""

    def test_signup_creates_student(self, client):
        response = _signup(client)

        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        assert body["error"] is None
        data = body["data"]
        assert data["accessToken"] and data["refreshToken"]
        assert data["user"]["email"] == STUDENT_EMAIL
        assert data["user"]["role"] == "student"
        assert data["message"] == messages.SIGNUP_SUCCESS
        assert "password" not in data["user"]
        assert response.cookies.get("accessToken") == data["accessToken"]
        assert response.cookies.get("refreshToken") == data["refreshToken"]

    def test_legacy_signup_path(self, client):
        payload = {
            "firstName": "Asha",
            "lastName": "Rao",
            "email": STUDENT_EMAIL,
            "mobileNo": "9876543210",
            "gender": "female",
            "password": STUDENT_PASSWORD,
            "confirmPassword": STUDENT_PASSWORD,
        }

        response = client.post("/api/auth/signup", json=payload)

        assert response.status_code == 201

    def test_signup_rejects_duplicate_email(self, client):
        _signup(client)

        response = _signup(client, email="ASHA@example.com")

        _assert_error(response, 400, "duplicate_key", messages.EMAIL_EXISTS)

    def test_signup_validates_email_format(self, client):
        response = _signup(client, email="invalid-email")

        _assert_error(response, 400, "validation_error", "Please provide a valid email")

    def test_signup_validates_password_strength(self, client):
        response = _signup(client, password="weakpass")

        _assert_error(response, 400, "validation_error")
        assert "uppercase" in response.json()["error"]["message"]

    def test_signup_rejects_password_mismatch(self, client):
        response = _signup(client, confirmPassword="Other1234")

        _assert_error(response, 400, "validation_error", messages.PASSWORDS_NOT_MATCH)

    def test_signup_reports_missing_field(self, client):
        payload = {
            "firstName": "Asha",
            "lastName": "Rao",
            "email": STUDENT_EMAIL,
            "gender": "female",
            "password": STUDENT_PASSWORD,
            "confirmPassword": STUDENT_PASSWORD,
        }

        response = client.post("/api/auth/signup/student", json=payload)

        _assert_error(response, 400, "validation_error", "mobileNo is required")

    def test_signup_rate_limited_per_email(self, client):
        statuses = [_signup(client).status_code for _ in range(6)]

        assert statuses[0] == 201
        assert statuses[-1] == 429


class TestLoginFlow:
    """Tests for password and OTP login."""

    def test_login_with_password(self, client):
        _signup(client)
        client.cookies.clear()

        response = client.post(
            "/api/auth/login", json={"email": STUDENT_EMAIL, "password": STUDENT_PASSWORD}
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["user"]["lastLogin"] is not None
        assert data["message"] == messages.LOGIN_SUCCESS
        assert data["requiresPasswordChange"] is False
        assert data["isFirstLogin"] is False
        assert response.cookies.get("accessToken")

    def test_login_rejects_wrong_password(self, client):
        _signup(client)

        response = client.post(
            "/api/auth/login", json={"email": STUDENT_EMAIL, "password": "Wrong1234"}
        )

        _assert_error(response, 401, "unauthorized", messages.INVALID_CREDENTIALS)

    def test_login_unknown_email_same_message(self, client):
        response = client.post(
            "/api/auth/login", json={"email": "ghost@example.com", "password": "Wrong1234"}
        )

        _assert_error(response, 401, "unauthorized", messages.INVALID_CREDENTIALS)

    def test_login_requires_password_or_otp(self, client):
        response = client.post("/api/auth/login", json={"email": STUDENT_EMAIL})

        _assert_error(response, 400, "validation_error", "Password or OTP is required")

    def test_login_with_otp(self, client):
        _signup(client)
        client.post("/api/auth/forgot-password", json={"email": STUDENT_EMAIL})

        response = client.post(
            "/api/auth/login", json={"email": STUDENT_EMAIL, "otp": _latest_otp(STUDENT_EMAIL)}
        )

        assert response.status_code == 200
        assert response.json()["data"]["user"]["email"] == STUDENT_EMAIL

    def test_admin_login_path(self, client):
        get_runtime().auth.seed_admin("admin@example.com", "Admin12345")

        response = client.post(
            "/api/auth/admin/login", json={"email": "admin@example.com", "password": "Admin12345"}
        )

        assert response.status_code == 200
        assert response.json()["data"]["user"]["role"] == "admin"

    def test_deactivated_user_cannot_login(self, client):
        user_id = _signup(client).json()["data"]["user"]["id"]
        get_runtime().store.update_user(user_id, is_active=False)

        response = client.post(
            "/api/auth/login", json={"email": STUDENT_EMAIL, "password": STUDENT_PASSWORD}
        )

        _assert_error(response, 401, "unauthorized", messages.USER_DEACTIVATED)


class TestPasswordRecovery:
    """Tests for forgot password, OTP verification and reset."""

    def test_forgot_password_same_answer_for_unknown_email(self, client):
        _signup(client)

        known = client.post("/api/auth/forgot-password", json={"email": STUDENT_EMAIL})
        unknown = client.post("/api/auth/forgot-password", json={"email": "ghost@example.com"})

        assert known.status_code == unknown.status_code == 200
        assert known.json() == unknown.json()
        assert known.json()["data"]["message"] == messages.OTP_SENT

    def test_full_recovery_flow(self, client):
        _signup(client)
        client.cookies.clear()
        client.post("/api/auth/forgot-password", json={"email": STUDENT_EMAIL})

        verified = client.post(
            "/api/auth/verify-otp-login",
            json={"email": STUDENT_EMAIL, "otp": _latest_otp(STUDENT_EMAIL)},
        )
        assert verified.status_code == 200
        data = verified.json()["data"]
        assert data["requiresPasswordReset"] is True
        assert data["message"] == messages.OTP_LOGIN_SUCCESS

        reset = client.post(
            "/api/auth/reset-password-forgot",
            json={"newPassword": "Recovered1", "confirmPassword": "Recovered1"},
            headers=_bearer(data["accessToken"]),
        )
        assert reset.status_code == 200
        assert reset.json()["data"]["message"] == messages.PASSWORD_RESET

        relogin = client.post(
            "/api/auth/login", json={"email": STUDENT_EMAIL, "password": "Recovered1"}
        )
        assert relogin.status_code == 200

    def test_verify_rejects_wrong_code(self, client):
        _signup(client)
        client.post("/api/auth/forgot-password", json={"email": STUDENT_EMAIL})

        response = client.post(
            "/api/auth/verify-otp-login", json={"email": STUDENT_EMAIL, "otp": "abcdef"}
        )

        _assert_error(response, 401, "unauthorized", messages.INVALID_OTP)

    def test_verify_code_only_once(self, client):
        _signup(client)
        client.post("/api/auth/forgot-password", json={"email": STUDENT_EMAIL})
        code = _latest_otp(STUDENT_EMAIL)

        first = client.post("/api/auth/verify-otp-login", json={"email": STUDENT_EMAIL, "otp": code})
        second = client.post("/api/auth/verify-otp-login", json={"email": STUDENT_EMAIL, "otp": code})

        assert first.status_code == 200
        _assert_error(second, 401, "unauthorized", messages.OTP_USED)

    def test_wrong_codes_exhaust_attempts(self, client):
        _signup(client)
        client.post("/api/auth/forgot-password", json={"email": STUDENT_EMAIL})

        responses = [
            client.post(
                "/api/auth/verify-otp-login", json={"email": STUDENT_EMAIL, "otp": "abcdef"}
            )
            for _ in range(5)
        ]

        assert [r.status_code for r in responses[:4]] == [401] * 4
        _assert_error(responses[4], 429, "rate_limited", messages.MAX_ATTEMPTS_EXCEEDED)

    def test_reset_password_requires_current(self, client):
        _signup(client)

        wrong = client.post(
            "/api/auth/reset-password",
            json={
                "currentPassword": "Wrong1234",
                "newPassword": "Newpass12",
                "confirmPassword": "Newpass12",
            },
        )
        right = client.post(
            "/api/auth/reset-password",
            json={
                "currentPassword": STUDENT_PASSWORD,
                "newPassword": "Newpass12",
                "confirmPassword": "Newpass12",
            },
        )

        _assert_error(wrong, 401, "unauthorized", messages.INVALID_PASSWORD)
        assert right.status_code == 200

    def test_set_password_is_instructor_only(self, client):
        _signup(client)

        response = client.post(
            "/api/auth/set-password",
            json={"newPassword": "Chosen123", "confirmPassword": "Chosen123"},
        )

        _assert_error(response, 403, "forbidden", messages.INSTRUCTOR_REQUIRED)


class TestSessionManagement:
    """Tests for the access gate, refresh and logout."""

    def test_me_with_cookie(self, client):
        _signup(client)

        response = client.get("/api/auth/me")

        assert response.status_code == 200
        assert response.json()["data"]["email"] == STUDENT_EMAIL

    def test_me_with_bearer_token(self, client):
        token = _signup(client).json()["data"]["accessToken"]
        client.cookies.clear()

        response = client.get("/api/auth/me", headers=_bearer(token))

        assert response.status_code == 200

    def test_me_without_token(self, client):
        response = client.get("/api/auth/me")

        _assert_error(response, 401, "unauthorized", messages.UNAUTHORIZED)

    def test_me_with_garbage_token(self, client):
        response = client.get("/api/auth/me", headers=_bearer("not.a.jwt"))

        _assert_error(response, 401, "unauthorized", messages.TOKEN_REVOKED)

    def test_refresh_with_cookie(self, client):
        original = _signup(client).json()["data"]

        response = client.post("/api/auth/refresh-token")

        assert response.status_code == 200
        data = response.json()["data"]
        assert set(data) == {"accessToken"}
        assert data["accessToken"] != original["accessToken"]
        assert response.cookies.get("refreshToken") != original["refreshToken"]

    def test_refresh_old_token_rejected(self, client):
        original = _signup(client).json()["data"]
        client.cookies.clear()

        first = client.post("/api/auth/refresh-token", json={"refreshToken": original["refreshToken"]})
        client.cookies.clear()
        replay = client.post("/api/auth/refresh-token", json={"refreshToken": original["refreshToken"]})

        assert first.status_code == 200
        _assert_error(replay, 401, "unauthorized", messages.TOKEN_NOT_FOUND)

    def test_refresh_requires_token(self, client):
        response = client.post("/api/auth/refresh-token")

        _assert_error(response, 401, "unauthorized", messages.REFRESH_TOKEN_REQUIRED)

    def test_logout_revokes_session(self, client):
        tokens = _signup(client).json()["data"]

        response = client.post("/api/auth/logout")

        assert response.status_code == 200
        assert response.json()["data"]["message"] == messages.LOGOUT_SUCCESS
        assert "accessToken" not in client.cookies
        after = client.get("/api/auth/me", headers=_bearer(tokens["accessToken"]))
        _assert_error(after, 401, "unauthorized", messages.TOKEN_REVOKED)

    def test_me_with_non_ascii_signature(self, client):
        token = _signup(client).json()["data"]["accessToken"]
        client.cookies.clear()
        header, payload, _ = token.split(".")

        # Raw latin-1 bytes; the server decodes header values as latin-1
        raw = f"Bearer {header}.{payload}.\xe9\xe9\xe9".encode("latin-1")
        response = client.get("/api/auth/me", headers={"Authorization": raw})

        _assert_error(response, 401, "unauthorized", messages.TOKEN_REVOKED)

    def test_logout_clears_cookies_with_login_attributes(self, client):
        _signup(client)
        login = client.post(
            "/api/auth/login", json={"email": STUDENT_EMAIL, "password": STUDENT_PASSWORD}
        )

        logout = client.post("/api/auth/logout")

        set_attrs = _set_cookie_attributes(login)
        cleared_attrs = _set_cookie_attributes(logout)
        for name in ("accessToken", "refreshToken"):
            assert set_attrs[name]["max-age"] != "0"
            assert cleared_attrs[name]["max-age"] == "0"
            for attr in ("path", "samesite", "secure", "httponly"):
                assert cleared_attrs[name].get(attr) == set_attrs[name].get(attr), (name, attr)
        assert set_attrs["accessToken"]["path"] == "/"
        assert set_attrs["accessToken"]["samesite"] == "lax"
        assert set_attrs["accessToken"]["httponly"] is True
        assert "secure" not in set_attrs["accessToken"]

    def test_logout_requires_authentication(self, client):
        response = client.post("/api/auth/logout")

        _assert_error(response, 401, "unauthorized")

    def test_complete_profile(self, client):
        _signup(client)

        response = client.put(
            "/api/auth/complete-profile",
            json={
                "address": {"city": "Pune", "zipCode": "411001"},
                "education": {"qualification": "BSc", "yearOfCompletion": 2020},
                "bio": "Learning every day",
            },
        )

        assert response.status_code == 200
        user = response.json()["data"]
        assert user["address"] == {"city": "Pune", "zipCode": "411001"}
        assert user["education"] == {"qualification": "BSc", "yearOfCompletion": 2020}
        assert user["bio"] == "Learning every day"

    def test_enrollments_and_payment_key(self, client):
        _signup(client)

        enrollments = client.get("/api/enrollments/me")
        key = client.get("/api/payments/key")

        assert enrollments.status_code == 200
        assert enrollments.json()["data"] == []
        assert key.status_code == 200
        assert "key" in key.json()["data"]


class TestPlatform:
    def test_healthz(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "memory"
        assert body["checks"]["redis"]["status"] == "not_configured"

    def test_request_id_and_security_headers(self, client):
        response = client.get("/api/auth/me", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert "no-store" in response.headers["Cache-Control"]
