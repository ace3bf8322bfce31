from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol

from authsync.config import Settings
from authsync.logging import get_logger
from authsync.service.errors import ConflictError, ValidationError
from authsync.service.offline_cache import OfflineCacheService, compute_checksum
from authsync.storage.models import CacheEntry

logger = get_logger(__name__)


@dataclass(frozen=True)
class SyncItem:
    entity: str
    key: str
    payload: Dict[str, Any]
    version: int

    @property
    def checksum(self) -> str:
        return compute_checksum(self.payload)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "SyncItem":
        if not isinstance(data, Mapping):
            raise ValidationError("sync item must be an object")
        for name in ("entity", "key"):
            value = data.get(name)
            if not isinstance(value, str) or not value:
                raise ValidationError(f"{name} is required", detail={"field": name})
        payload = data.get("payload")
        if not isinstance(payload, Mapping):
            raise ValidationError("payload must be an object", detail={"field": "payload"})
        version = data.get("version")
        # bool is an int subclass
        if isinstance(version, bool) or not isinstance(version, int) or version < 0:
            raise ValidationError(
                "version must be a non-negative integer", detail={"field": "version"}
            )
        return cls(
            entity=data["entity"], key=data["key"], payload=dict(payload), version=version
        )


@dataclass
class SyncConflict:
    entity: str
    key: str
    server_version: int
    client_version: int


@dataclass
class SyncUpdate:
    entity: str
    key: str


@dataclass
class SyncResult:
    conflicts: List[SyncConflict] = field(default_factory=list)
    updated: List[SyncUpdate] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "conflicts": [asdict(c) for c in self.conflicts],
            "updated": [asdict(u) for u in self.updated],
        }


class Outcome(str, enum.Enum):
    CREATE = "create"
    CLIENT_NEWER = "client_newer"
    SERVER_NEWER = "server_newer"
    IN_SYNC = "in_sync"
    CONFLICT = "conflict"


def classify(item: SyncItem, server: Optional[CacheEntry]) -> Outcome:
    """Compare one client item with the live server entry (``None`` if absent)."""
    if server is None:
        return Outcome.CREATE
    if server.version > item.version:
        return Outcome.SERVER_NEWER
    if server.version < item.version:
        return Outcome.CLIENT_NEWER
    if server.checksum == item.checksum:
        return Outcome.IN_SYNC
    return Outcome.CONFLICT


class ConflictResolver(Protocol):
    def resolve(self, item: SyncItem, server: CacheEntry) -> Optional[Dict[str, Any]]:
        """Return the payload to store, or ``None`` to report the conflict."""
        ...


class ServerWins:
    """Keep the server payload; the rewrite bumps its version so the client refetches."""

    def resolve(self, item: SyncItem, server: CacheEntry) -> Optional[Dict[str, Any]]:
        return dict(server.payload)


class ClientWins:
    def resolve(self, item: SyncItem, server: CacheEntry) -> Optional[Dict[str, Any]]:
        return dict(item.payload)


class SyncReconciler:
    """Reconciles a device's offline write buffer against the cache store.

    Items are handled one at a time with no batch transaction. Each item's
    read-compare-write goes through a conditional write; when another writer
    moves the entry in between, the item is re-read and classified again.
    """

    def __init__(
        self,
        cache: OfflineCacheService,
        settings: Settings,
        resolver: Optional[ConflictResolver] = None,
    ) -> None:
        self.cache = cache
        self.settings = settings
        self.resolver = resolver

    def reconcile(
        self,
        principal_id: str,
        device_id: str,
        items: Iterable[SyncItem | Mapping[str, Any]],
    ) -> SyncResult:
        if not device_id:
            raise ValidationError("device_id is required", detail={"field": "device_id"})
        parsed = [i if isinstance(i, SyncItem) else SyncItem.from_mapping(i) for i in items]
        result = SyncResult()
        for item in parsed:
            self._reconcile_item(principal_id, device_id, item, result)
        logger.info(
            "sync_reconciled",
            principal_id=principal_id,
            device_id=device_id,
            items=len(parsed),
            conflicts=len(result.conflicts),
            updated=len(result.updated),
        )
        return result

    def _reconcile_item(
        self, principal_id: str, device_id: str, item: SyncItem, result: SyncResult
    ) -> None:
        attempts = max(1, self.settings.sync_max_retries)
        for _ in range(attempts):
            current = self.cache.get(principal_id, device_id, item.entity, item.key)
            live = current if current and not current.is_expired(self._now()) else None
            outcome = classify(item, live)

            if outcome is Outcome.IN_SYNC:
                return
            if outcome is Outcome.SERVER_NEWER:
                result.updated.append(SyncUpdate(entity=item.entity, key=item.key))
                return

            payload: Optional[Dict[str, Any]] = item.payload
            version: Optional[int] = None
            if outcome is Outcome.CREATE:
                version = item.version
            elif outcome is Outcome.CONFLICT:
                payload = self.resolver.resolve(item, live) if self.resolver else None
                if payload is None:
                    logger.warning(
                        "sync_conflict",
                        principal_id=principal_id,
                        device_id=device_id,
                        entity=item.entity,
                        key=item.key,
                        server_version=live.version,
                        client_version=item.version,
                    )
                    result.conflicts.append(
                        SyncConflict(
                            entity=item.entity,
                            key=item.key,
                            server_version=live.version,
                            client_version=item.version,
                        )
                    )
                    return

            saved = self.cache.save_if_unchanged(
                current,
                principal_id,
                device_id,
                item.entity,
                item.key,
                payload,
                version=version,
            )
            if saved is None:
                logger.info(
                    "sync_write_retry",
                    principal_id=principal_id,
                    entity=item.entity,
                    key=item.key,
                )
                continue
            if outcome is Outcome.CONFLICT:
                logger.info(
                    "sync_conflict_resolved",
                    principal_id=principal_id,
                    entity=item.entity,
                    key=item.key,
                    resolver=type(self.resolver).__name__,
                )
                if saved.checksum != item.checksum:
                    result.updated.append(SyncUpdate(entity=item.entity, key=item.key))
            return

        logger.warning(
            "sync_contention",
            principal_id=principal_id,
            device_id=device_id,
            entity=item.entity,
            key=item.key,
            attempts=attempts,
        )
        raise ConflictError(
            "cache entry changed concurrently",
            detail={"entity": item.entity, "key": item.key},
        )

    def _now(self) -> datetime:
        return self.cache.now()
