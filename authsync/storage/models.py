from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Dict, Optional

ROLE_USER = "user"
ROLE_PUBLISHER = "publisher"
ROLE_ADMIN = "admin"
ROLE_GUEST = "guest"
PRINCIPAL_ROLES = frozenset({ROLE_USER, ROLE_PUBLISHER, ROLE_ADMIN})

STATUS_PENDING = "pending"
STATUS_ACTIVE = "active"
STATUS_SUSPENDED = "suspended"
PRINCIPAL_STATUSES = frozenset({STATUS_PENDING, STATUS_ACTIVE, STATUS_SUSPENDED})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Profile:
    """Display and contact data shared by every role."""

    name: Optional[str] = None
    phone: Optional[str] = None
    bio: Optional[str] = None
    avatar_url: Optional[str] = None
    language: Optional[str] = None
    region: Optional[str] = None

    kind = "basic"

    def to_dict(self) -> Dict[str, Any]:
        data = {k: v for k, v in asdict(self).items() if v is not None}
        data["kind"] = self.kind
        return data


@dataclass
class PublisherProfile(Profile):
    organization: Optional[str] = None
    website: Optional[str] = None

    kind = "publisher"


def profile_for_role(role: str, **values: Any) -> Profile:
    """Build the profile shape for ``role``, ignoring fields it does not carry."""

    cls = PublisherProfile if role == ROLE_PUBLISHER else Profile
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in values.items() if k in known})


def profile_from_dict(role: str, data: Optional[Dict[str, Any]]) -> Profile:
    values = dict(data or {})
    values.pop("kind", None)
    return profile_for_role(role, **values)


@dataclass
class Principal:
    id: str
    email: str
    password_hash: str
    role: str = ROLE_USER
    status: str = STATUS_PENDING
    profile: Profile = field(default_factory=Profile)
    otp_code: Optional[str] = None
    otp_expires_at: Optional[datetime] = None
    otp_verified_at: Optional[datetime] = None
    reset_code: Optional[str] = None
    reset_expires_at: Optional[datetime] = None
    refresh_token_fingerprint: Optional[str] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def name(self) -> Optional[str]:
        return self.profile.name

    @property
    def otp_pending(self) -> bool:
        return bool(self.otp_code)

    def public_view(self) -> Dict[str, Any]:
        """Fields safe to hand back to a client; never credentials or codes."""

        return {
            "id": self.id,
            "email": self.email,
            "role": self.role,
            "status": self.status,
            "profile": self.profile.to_dict(),
            "last_login_at": self.last_login_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class DeviceSession:
    principal_id: str
    device_id: str
    device_name: Optional[str] = None
    device_platform: Optional[str] = None
    app_version: Optional[str] = None
    last_ip: Optional[str] = None
    last_active_at: datetime = field(default_factory=utcnow)


@dataclass
class CacheEntry:
    principal_id: str
    device_id: str
    entity: str
    key: str
    payload: Dict[str, Any]
    version: int
    checksum: str
    expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def cache_key(self) -> tuple[str, str, str, str]:
        return (self.principal_id, self.device_id, self.entity, self.key)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or utcnow())
