"""Common storage utilities shared between memory and postgres implementations."""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from ipaddress import ip_address
from typing import Any, Dict, Optional

from authsync.storage.models import (
    PRINCIPAL_ROLES,
    PRINCIPAL_STATUSES,
    Principal,
)
from authsync.storage.errors import ConstraintViolation


# ============================================================================
# PRINCIPAL HELPERS
# ============================================================================

def normalize_email(email: str) -> str:
    """Lookup form of an email address: surrounding whitespace removed, lower-cased."""
    return (email or "").strip().lower()


def validate_principal_fields(principal: Principal) -> None:
    """Reject role/status values outside the account state machine.

    Raises:
        ConstraintViolation: If role or status is unknown
    """
    if principal.role not in PRINCIPAL_ROLES:
        raise ConstraintViolation("unknown role", {"role": principal.role})
    if principal.status not in PRINCIPAL_STATUSES:
        raise ConstraintViolation("unknown status", {"status": principal.status})


# ============================================================================
# PARSING
# ============================================================================

def parse_ip_address(raw_ip: Any) -> Optional[Any]:
    """Parse IP address from various formats.

    Args:
        raw_ip: Raw IP address value (string, object, or None)

    Returns:
        Parsed IP address object or None

    Raises:
        ValueError: If a non-empty string is not an IP address
    """
    if isinstance(raw_ip, str):
        stripped = raw_ip.strip()
        if stripped:
            return ip_address(stripped)
        return None
    return raw_ip


def parse_json_payload(raw: Any) -> Dict[str, Any]:
    """Parse a JSONB column that may arrive as text or an already-decoded dict."""
    if isinstance(raw, str):
        try:
            decoded = json.loads(raw)
        except ValueError:
            return {}
        return decoded if isinstance(decoded, dict) else {}
    if isinstance(raw, dict):
        return raw
    return {}


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive timestamps coming back from the database."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ============================================================================
# UTILITY FUNCTIONS
# ============================================================================

def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Safely extract value from row dict or object.

    Works with both dict-like objects and objects with attribute access.
    """
    if hasattr(row, "get"):
        return row.get(key, default)
    try:
        return row[key]
    except (KeyError, TypeError, AttributeError):
        return default


def generate_uuid() -> str:
    return str(uuid.uuid4())
