from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ConstraintTag(str, Enum):
    """Closed set of storage constraint failures the API layer understands."""

    DUPLICATE_EMAIL = "duplicate_email"
    MISSING_DEPARTMENT = "missing_department"


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or integrity constraint is violated."""

    def __init__(
        self,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        *,
        tag: ConstraintTag,
    ):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}
        self.tag = tag


class WriteOutcome(str, Enum):
    """Result of a conditional (compare-and-swap) write."""

    APPLIED = "applied"
    # the record exists but the expected value had already changed
    STALE = "stale"
    # the account or session no longer exists
    MISSING = "missing"


__all__ = ["ConstraintTag", "ConstraintViolation", "WriteOutcome"]
