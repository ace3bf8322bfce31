from __future__ import annotations

import hashlib
import json
from datetime import datetime
from typing import Any, Callable, List, Mapping, Optional, Protocol

from authsync.config import Settings
from authsync.logging import get_logger
from authsync.service.errors import ConflictError, ValidationError
from authsync.storage.common import as_utc
from authsync.storage.models import CacheEntry, utcnow

logger = get_logger(__name__)


class CacheStore(Protocol):
    def get_cache_entry(
        self, principal_id: str, device_id: str, entity: str, key: str
    ) -> Optional[CacheEntry]: ...

    def list_cache_entries(
        self, principal_id: str, device_id: str, entity: Optional[str] = None
    ) -> List[CacheEntry]: ...

    def replace_cache_entry(
        self, entry: CacheEntry, expected_version: Optional[int]
    ) -> bool: ...

    def delete_cache_entry(
        self, principal_id: str, device_id: str, entity: str, key: str
    ) -> bool: ...


def compute_checksum(payload: Mapping[str, Any]) -> str:
    """SHA-256 over canonical JSON so key order never changes the digest."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class OfflineCacheService:
    """Versioned, checksummed blobs scoped to (principal, device, entity, key)."""

    def __init__(
        self,
        store: CacheStore,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock or utcnow

    def now(self) -> datetime:
        return self._clock()

    def save(
        self,
        principal_id: str,
        device_id: str,
        entity: str,
        key: str,
        payload: Mapping[str, Any],
        expires_at: Optional[datetime] = None,
        *,
        version: Optional[int] = None,
    ) -> CacheEntry:
        self._validate_key(device_id, entity, key)
        attempts = max(1, self.settings.sync_max_retries)
        for _ in range(attempts):
            current = self.store.get_cache_entry(principal_id, device_id, entity, key)
            saved = self.save_if_unchanged(
                current,
                principal_id,
                device_id,
                entity,
                key,
                payload,
                expires_at,
                version=version,
            )
            if saved is not None:
                return saved
        logger.warning(
            "cache_save_contention",
            principal_id=principal_id,
            device_id=device_id,
            entity=entity,
            key=key,
            attempts=attempts,
        )
        raise ConflictError(
            "cache entry changed concurrently",
            detail={"entity": entity, "key": key},
        )

    def save_if_unchanged(
        self,
        current: Optional[CacheEntry],
        principal_id: str,
        device_id: str,
        entity: str,
        key: str,
        payload: Mapping[str, Any],
        expires_at: Optional[datetime] = None,
        *,
        version: Optional[int] = None,
    ) -> Optional[CacheEntry]:
        """Write only if the stored entry is still ``current``; ``None`` if it moved."""
        now = self.now()
        previous = current.version if current else None
        if version is None:
            version = self._next_version(now, previous)
        entry = CacheEntry(
            principal_id=principal_id,
            device_id=device_id,
            entity=entity,
            key=key,
            payload=dict(payload),
            version=int(version),
            checksum=compute_checksum(payload),
            expires_at=as_utc(expires_at),
            created_at=current.created_at if current else now,
            updated_at=now,
        )
        if not self.store.replace_cache_entry(entry, previous):
            return None
        logger.info(
            "cache_entry_saved",
            principal_id=principal_id,
            device_id=device_id,
            entity=entity,
            key=key,
            version=entry.version,
        )
        return entry

    def get(
        self, principal_id: str, device_id: str, entity: str, key: str
    ) -> Optional[CacheEntry]:
        return self.store.get_cache_entry(principal_id, device_id, entity, key)

    def get_all(
        self, principal_id: str, device_id: str, entity: Optional[str] = None
    ) -> List[CacheEntry]:
        return self.store.list_cache_entries(principal_id, device_id, entity)

    def delete(self, principal_id: str, device_id: str, entity: str, key: str) -> None:
        removed = self.store.delete_cache_entry(principal_id, device_id, entity, key)
        logger.info(
            "cache_entry_deleted",
            principal_id=principal_id,
            device_id=device_id,
            entity=entity,
            key=key,
            removed=removed,
        )

    @staticmethod
    def _next_version(now: datetime, previous: Optional[int]) -> int:
        now_ms = int(now.timestamp() * 1000)
        if previous is None:
            return now_ms
        return max(now_ms, previous + 1)

    @staticmethod
    def _validate_key(device_id: str, entity: str, key: str) -> None:
        for name, value in (("device_id", device_id), ("entity", entity), ("key", key)):
            if not isinstance(value, str) or not value:
                raise ValidationError(f"{name} is required", detail={"field": name})
