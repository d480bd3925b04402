from learnhub.logging import (
    _scrub_sensitive_fields,
    get_correlation_id,
    hash_email,
    sanitize_error_message,
    set_correlation_id,
)


def test_email_fields_are_hashed():
    event = _scrub_sensitive_fields(None, "info", {"event": "x", "email": "Asha@Example.com"})

    assert event["email"] == hash_email("asha@example.com")


def test_secret_fields_are_blanked():
    event = _scrub_sensitive_fields(
        None,
        "info",
        {"event": "x", "password": "hunter22", "refresh_token": "abc.def.ghi", "otp": "123456"},
    )

    assert event["password"] == "[redacted]"
    assert event["refresh_token"] == "[redacted]"
    assert event["otp"] == "[redacted]"


def test_hashed_and_masked_fields_pass_through():
    event = _scrub_sensitive_fields(
        None, "info", {"event": "x", "email_hash": "abcd1234", "otp_masked": "12****"}
    )

    assert event["email_hash"] == "abcd1234"
    assert event["otp_masked"] == "12****"


def test_correlation_id_generated_when_absent():
    generated = set_correlation_id(None)

    assert get_correlation_id() == generated
    assert set_correlation_id("req-1") == "req-1"


def test_sanitize_error_message():
    message = sanitize_error_message("insert into app_user failed at /srv/app/db.py password=hunter2")

    assert "app_user" not in message
    assert "/srv/app" not in message
    assert "hunter2" not in message
    assert sanitize_error_message("") == "An error occurred"
    assert len(sanitize_error_message("x" * 1000)) == 300
