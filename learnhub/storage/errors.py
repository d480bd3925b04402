from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A write broke a uniqueness or referential rule of the store."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class DuplicateEmail(ConstraintViolation):
    def __init__(self) -> None:
        super().__init__("email already exists", {"field": "email"})


class MissingUser(ConstraintViolation):
    """The referenced user row is gone (deleted or never created)."""

    def __init__(self, user_id: str) -> None:
        super().__init__("user does not exist", {"user_id": user_id})


class DuplicateEnrollment(ConstraintViolation):
    def __init__(self, course_id: str) -> None:
        super().__init__("already enrolled", {"course_id": course_id})


__all__ = ["ConstraintViolation", "DuplicateEmail", "DuplicateEnrollment", "MissingUser"]
