from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A write broke a table invariant; ``detail`` names the offending field."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class DuplicateEmail(ConstraintViolation):
    def __init__(self) -> None:
        super().__init__("email already exists", {"field": "email"})


class UnknownPrincipal(ConstraintViolation):
    """A device session referenced a principal that does not exist."""

    def __init__(self, principal_id: str) -> None:
        super().__init__("principal not found", {"principal_id": principal_id})


__all__ = ["ConstraintViolation", "DuplicateEmail", "UnknownPrincipal"]
