from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, List, Mapping, Optional, Protocol

from authsync.logging import get_logger
from authsync.service.errors import ValidationError
from authsync.storage.common import parse_ip_address
from authsync.storage.models import DeviceSession, utcnow

logger = get_logger(__name__)


class DeviceStore(Protocol):
    def upsert_device_session(self, session: DeviceSession) -> DeviceSession: ...

    def list_device_sessions(self, principal_id: str) -> List[DeviceSession]: ...


@dataclass(frozen=True)
class DeviceContext:
    """Client-generated device identity resent on every auth call."""

    device_id: str
    device_name: Optional[str] = None
    device_platform: Optional[str] = None
    app_version: Optional[str] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "DeviceContext":
        device_id = data.get("device_id") or data.get("deviceId")
        if not isinstance(device_id, str) or not device_id.strip():
            raise ValidationError("device_id is required", detail={"field": "device_id"})
        return cls(
            device_id=device_id.strip(),
            device_name=data.get("device_name") or data.get("deviceName"),
            device_platform=data.get("device_platform") or data.get("devicePlatform"),
            app_version=data.get("app_version") or data.get("appVersion"),
        )


class DeviceSessionTracker:
    """Last-seen presence per (principal, device); last write wins."""

    def __init__(
        self,
        store: DeviceStore,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self._clock = clock or utcnow

    def record_device(
        self,
        principal_id: str,
        device: DeviceContext | Mapping[str, Any],
        ip: Optional[str] = None,
    ) -> DeviceSession:
        if not isinstance(device, DeviceContext):
            device = DeviceContext.from_mapping(device)
        session = DeviceSession(
            principal_id=principal_id,
            device_id=device.device_id,
            device_name=device.device_name,
            device_platform=device.device_platform,
            app_version=device.app_version,
            last_ip=self._normalize_ip(ip),
            last_active_at=self._clock(),
        )
        stored = self.store.upsert_device_session(session)
        logger.info(
            "device_session_recorded",
            principal_id=principal_id,
            device_id=device.device_id,
            platform=device.device_platform,
        )
        return stored

    def list_devices(self, principal_id: str) -> List[DeviceSession]:
        return self.store.list_device_sessions(principal_id)

    def _normalize_ip(self, ip: Optional[str]) -> Optional[str]:
        try:
            parsed = parse_ip_address(ip)
        except ValueError:
            logger.warning("device_ip_invalid", ip=ip)
            return None
        return str(parsed) if parsed is not None else None
