from datetime import timedelta

import pytest

from learnhub.storage.errors import ConstraintViolation, DuplicateEmail, MissingUser
from learnhub.storage.memory import MemoryStore
from learnhub.storage.models import (
    Enrollment,
    LessonProgress,
    OtpRecord,
    TokenRecord,
    User,
    utcnow,
)


def _student(email="persist@example.com"):
    return User.new_student(
        first_name="Asha",
        last_name="Rao",
        email=email,
        mobile_no="9876543210",
        gender="female",
    )


def test_memory_store_persists_users_and_ledgers(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user(_student(), "hash-value", "argon2id")
    store.update_user(
        user.id,
        last_login=utcnow(),
        address={"city": "Pune"},
        education={"qualification": "BSc"},
    )
    token = store.create_token(TokenRecord.new(user.id, "access-1", "refresh-1"))
    otp = store.replace_otp(OtpRecord.new(user.email, "123456"))
    store.record_failed_otp_attempt(user.email)
    store.create_enrollment(
        Enrollment(
            id="enr-1",
            user_id=user.id,
            course_id="course-1",
            progress=[LessonProgress(lesson_id="l1", watched_sec=30, completed=True)],
        )
    )

    reloaded = MemoryStore(fs_root=str(tmp_path))

    reloaded_user = reloaded.get_user(user.id)
    assert reloaded_user.email == "persist@example.com"
    assert reloaded_user.role == "student"
    assert reloaded_user.address == {"city": "Pune"}
    assert reloaded_user.last_login is not None
    assert reloaded.get_password_record(user.id) == ("hash-value", "argon2id")

    reloaded_token = reloaded.get_token_by_refresh("refresh-1")
    assert reloaded_token.id == token.id
    assert reloaded_token.expires_at == token.expires_at

    reloaded_otp = reloaded.get_otp(otp.id)
    assert reloaded_otp.attempts == 1
    assert reloaded_otp.otp == "123456"

    enrollments = reloaded.list_enrollments(user.id)
    assert enrollments[0].progress[0].watched_sec == 30


def test_returned_records_are_copies(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user(_student(), "hash", "argon2id")

    fetched = store.get_user(user.id)
    fetched.role = "admin"

    assert store.get_user(user.id).role == "student"


def test_email_uniqueness_on_create_and_update(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    first = store.create_user(_student("one@example.com"), "hash", "argon2id")
    store.create_user(_student("two@example.com"), "hash", "argon2id")

    with pytest.raises(DuplicateEmail):
        store.create_user(_student("one@example.com"), "hash", "argon2id")
    with pytest.raises(ConstraintViolation):
        store.update_user(first.id, email="TWO@example.com")
    assert store.update_user(first.id, email="One@Example.com").email == "one@example.com"


def test_update_user_rejects_unknown_fields(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user(_student(), "hash", "argon2id")

    with pytest.raises(ValueError):
        store.update_user(user.id, password_hash="nope")


def test_delete_user_cascades(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user(_student(), "hash", "argon2id")
    store.create_token(TokenRecord.new(user.id, "access-1", "refresh-1"))

    assert store.delete_user(user.id) is True
    assert store.delete_user(user.id) is False
    assert store.get_password_record(user.id) is None
    assert store.get_token_by_refresh("refresh-1") is None


def test_token_requires_existing_user(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))

    with pytest.raises(MissingUser) as exc:
        store.create_token(TokenRecord.new("missing-user", "a", "r"))
    assert exc.value.detail == {"user_id": "missing-user"}


def test_failed_attempt_targets_newest_live_code(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    record = OtpRecord.new("asha@example.com", "111111")
    record.expires_at = utcnow() - timedelta(seconds=1)
    store.replace_otp(record)

    assert store.record_failed_otp_attempt("asha@example.com") is None
    assert store.consume_otp(record.id) is None
