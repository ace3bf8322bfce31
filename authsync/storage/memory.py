from __future__ import annotations

import copy
import threading
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from authsync.logging import get_logger
from authsync.storage.common import (
    generate_uuid,
    normalize_email,
    validate_principal_fields,
)
from authsync.storage.errors import DuplicateEmail, UnknownPrincipal
from authsync.storage.models import (
    STATUS_ACTIVE,
    STATUS_PENDING,
    CacheEntry,
    DeviceSession,
    Principal,
    Profile,
    utcnow,
)

CacheKey = Tuple[str, str, str, str]


class MemoryStore:
    """In-process backing store for tests and single-process development.

    Records are handed out as copies so callers cannot mutate stored state
    without going through a store method, matching the row semantics of
    :class:`~authsync.storage.postgres.PostgresStore`.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.principals: Dict[str, Principal] = {}
        self._email_index: Dict[str, str] = {}
        self.device_sessions: Dict[Tuple[str, str], DeviceSession] = {}
        self.cache_entries: Dict[CacheKey, CacheEntry] = {}
        # RLock so compound operations can call the single-record helpers
        self._data_lock = threading.RLock()

    # principals
    def create_principal(
        self,
        email: str,
        password_hash: str,
        *,
        role: str = "user",
        status: str = STATUS_PENDING,
        profile: Optional[Profile] = None,
    ) -> Principal:
        normalized = normalize_email(email)
        with self._data_lock:
            if normalized in self._email_index:
                self.logger.warning("principal_email_conflict")
                raise DuplicateEmail()
            principal = Principal(
                id=generate_uuid(),
                email=normalized,
                password_hash=password_hash,
                role=role,
                status=status,
                profile=profile or Profile(),
            )
            validate_principal_fields(principal)
            self.principals[principal.id] = principal
            self._email_index[normalized] = principal.id
            return copy.deepcopy(principal)

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            return copy.deepcopy(principal) if principal else None

    def get_principal_by_email(self, email: str) -> Optional[Principal]:
        with self._data_lock:
            principal_id = self._email_index.get(normalize_email(email))
            return self.get_principal(principal_id) if principal_id else None

    def _update_principal(self, principal_id: str, **updates) -> Optional[Principal]:
        with self._data_lock:
            existing = self.principals.get(principal_id)
            if not existing:
                return None
            principal = copy.deepcopy(existing)
            for name, value in updates.items():
                setattr(principal, name, value)
            validate_principal_fields(principal)
            principal.updated_at = utcnow()
            self.principals[principal_id] = principal
            return copy.deepcopy(principal)

    def set_principal_status(self, principal_id: str, status: str) -> Optional[Principal]:
        return self._update_principal(principal_id, status=status)

    def set_principal_role(self, principal_id: str, role: str) -> Optional[Principal]:
        return self._update_principal(principal_id, role=role)

    def set_otp(
        self, principal_id: str, code: str, expires_at: datetime
    ) -> Optional[Principal]:
        return self._update_principal(
            principal_id, otp_code=code, otp_expires_at=expires_at, status=STATUS_PENDING
        )

    def mark_otp_verified(
        self, principal_id: str, verified_at: datetime
    ) -> Optional[Principal]:
        return self._update_principal(
            principal_id,
            otp_code=None,
            otp_expires_at=None,
            otp_verified_at=verified_at,
            status=STATUS_ACTIVE,
        )

    def set_reset_code(
        self, principal_id: str, code: Optional[str], expires_at: Optional[datetime]
    ) -> Optional[Principal]:
        return self._update_principal(
            principal_id, reset_code=code, reset_expires_at=expires_at
        )

    def save_password(
        self, principal_id: str, password_hash: str, *, revoke_refresh: bool = False
    ) -> Optional[Principal]:
        updates = {"password_hash": password_hash, "reset_code": None, "reset_expires_at": None}
        if revoke_refresh:
            updates["refresh_token_fingerprint"] = None
        return self._update_principal(principal_id, **updates)

    def set_refresh_fingerprint(
        self, principal_id: str, fingerprint: Optional[str]
    ) -> Optional[Principal]:
        return self._update_principal(principal_id, refresh_token_fingerprint=fingerprint)

    def swap_refresh_fingerprint(
        self, principal_id: str, expected: str, fingerprint: str
    ) -> bool:
        """Replace the fingerprint only if it still equals ``expected``."""
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal or principal.refresh_token_fingerprint != expected:
                return False
            self._update_principal(principal_id, refresh_token_fingerprint=fingerprint)
            return True

    def touch_last_login(self, principal_id: str, at: datetime) -> Optional[Principal]:
        return self._update_principal(principal_id, last_login_at=at)

    # device sessions
    def upsert_device_session(self, session: DeviceSession) -> DeviceSession:
        with self._data_lock:
            if session.principal_id not in self.principals:
                self.logger.warning("device_session_orphaned", principal_id=session.principal_id)
                raise UnknownPrincipal(session.principal_id)
            stored = copy.deepcopy(session)
            self.device_sessions[(session.principal_id, session.device_id)] = stored
            return copy.deepcopy(stored)

    def get_device_session(
        self, principal_id: str, device_id: str
    ) -> Optional[DeviceSession]:
        with self._data_lock:
            session = self.device_sessions.get((principal_id, device_id))
            return copy.deepcopy(session) if session else None

    def list_device_sessions(self, principal_id: str) -> List[DeviceSession]:
        with self._data_lock:
            sessions = [
                copy.deepcopy(s)
                for (owner, _), s in self.device_sessions.items()
                if owner == principal_id
            ]
        return sorted(sessions, key=lambda s: s.last_active_at, reverse=True)

    # offline cache
    def get_cache_entry(
        self, principal_id: str, device_id: str, entity: str, key: str
    ) -> Optional[CacheEntry]:
        with self._data_lock:
            entry = self.cache_entries.get((principal_id, device_id, entity, key))
            return copy.deepcopy(entry) if entry else None

    def list_cache_entries(
        self, principal_id: str, device_id: str, entity: Optional[str] = None
    ) -> List[CacheEntry]:
        with self._data_lock:
            entries = [
                copy.deepcopy(e)
                for (owner, device, kind, _), e in self.cache_entries.items()
                if owner == principal_id
                and device == device_id
                and (entity is None or kind == entity)
            ]
        return sorted(entries, key=lambda e: (e.updated_at, e.version), reverse=True)

    def replace_cache_entry(
        self, entry: CacheEntry, expected_version: Optional[int]
    ) -> bool:
        """Write ``entry`` only if the stored version is still ``expected_version``.

        ``expected_version=None`` means the key must still be absent.
        """
        with self._data_lock:
            current = self.cache_entries.get(entry.cache_key)
            current_version = current.version if current else None
            if current_version != expected_version:
                return False
            stored = copy.deepcopy(entry)
            if current:
                stored.created_at = current.created_at
            self.cache_entries[entry.cache_key] = stored
            return True

    def delete_cache_entry(
        self, principal_id: str, device_id: str, entity: str, key: str
    ) -> bool:
        with self._data_lock:
            return (
                self.cache_entries.pop((principal_id, device_id, entity, key), None)
                is not None
            )
