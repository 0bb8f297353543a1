from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A uniqueness or foreign-key rule rejected a write.

    Raised for duplicate emails, usernames and refresh-token digests, and for
    sessions that point at a user that no longer exists.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailable(Exception):
    """The backing database could not be reached or is missing its schema."""


__all__ = ["ConstraintViolation", "StoreUnavailable"]
