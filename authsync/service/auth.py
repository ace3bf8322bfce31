from __future__ import annotations

import hmac
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Mapping, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from authsync.config import Settings
from authsync.logging import get_logger, hash_email
from authsync.service.devices import DeviceContext, DeviceSessionTracker
from authsync.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    NotFoundError,
    OtpPendingError,
    ValidationError,
)
from authsync.service.tokens import ACCESS, REFRESH, TokenBundle, TokenIssuer
from authsync.storage.common import normalize_email
from authsync.storage.errors import DuplicateEmail
from authsync.storage.models import (
    PRINCIPAL_ROLES,
    ROLE_GUEST,
    ROLE_USER,
    STATUS_ACTIVE,
    STATUS_PENDING,
    STATUS_SUSPENDED,
    DeviceSession,
    Principal,
    Profile,
    profile_for_role,
)

logger = get_logger(__name__)

PURPOSE_REGISTRATION = "registration"
PURPOSE_PASSWORD_RESET = "password_reset"


class CredentialStore(Protocol):
    def create_principal(
        self,
        email: str,
        password_hash: str,
        *,
        role: str = "user",
        status: str = STATUS_PENDING,
        profile: Optional[Profile] = None,
    ) -> Principal: ...

    def get_principal(self, principal_id: str) -> Optional[Principal]: ...

    def get_principal_by_email(self, email: str) -> Optional[Principal]: ...

    def set_principal_status(self, principal_id: str, status: str) -> Optional[Principal]: ...

    def set_otp(
        self, principal_id: str, code: str, expires_at: datetime
    ) -> Optional[Principal]: ...

    def mark_otp_verified(
        self, principal_id: str, verified_at: datetime
    ) -> Optional[Principal]: ...

    def set_reset_code(
        self, principal_id: str, code: Optional[str], expires_at: Optional[datetime]
    ) -> Optional[Principal]: ...

    def save_password(
        self, principal_id: str, password_hash: str, *, revoke_refresh: bool = False
    ) -> Optional[Principal]: ...

    def set_refresh_fingerprint(
        self, principal_id: str, fingerprint: Optional[str]
    ) -> Optional[Principal]: ...

    def swap_refresh_fingerprint(
        self, principal_id: str, expected: str, fingerprint: str
    ) -> bool: ...

    def touch_last_login(self, principal_id: str, at: datetime) -> Optional[Principal]: ...


# Receives (principal, code, purpose); delivery channel is the caller's concern
CodeSink = Callable[[Principal, str, str], None]


@dataclass
class AuthResult:
    principal: Optional[Principal]
    tokens: TokenBundle
    otp_required: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "user": self.principal.public_view() if self.principal else None,
            "tokens": self.tokens.to_dict(),
            "otp_required": self.otp_required,
        }


@dataclass
class AuthContext:
    principal_id: str
    role: str
    email: Optional[str] = None
    guest: bool = False
    claims: dict[str, Any] = field(default_factory=dict, repr=False)


class AuthService:
    """Registration, OTP, login, refresh rotation, reset and guest sessions.

    Only the most recently issued refresh token of a principal is accepted:
    its SHA-256 fingerprint is stored on the principal and overwritten on
    every issuance, so logging in on one device ends refresh on the others.
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        issuer: Optional[TokenIssuer] = None,
        devices: Optional[DeviceSessionTracker] = None,
        code_sink: Optional[CodeSink] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.issuer = issuer or TokenIssuer(settings, clock=self._clock)
        self.devices = devices or DeviceSessionTracker(store, clock=self._clock)
        self.code_sink = code_sink
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    # registration
    def register(
        self,
        name: str,
        email: str,
        password: str,
        phone: Optional[str] = None,
        role: Optional[str] = None,
        require_otp: Optional[bool] = None,
        device: DeviceContext | Mapping[str, Any] | None = None,
    ) -> AuthResult:
        normalized = normalize_email(email)
        if not normalized or "@" not in normalized:
            raise ValidationError("a valid email is required", detail={"field": "email"})
        if not password:
            raise ValidationError("password is required", detail={"field": "password"})
        role = role or ROLE_USER
        if role not in PRINCIPAL_ROLES:
            raise ValidationError("unknown role", detail={"role": role})
        device = self._device_context(device)
        if self.store.get_principal_by_email(normalized):
            self.logger.warning("register_duplicate_email", email_hash=hash_email(normalized))
            raise ConflictError("email already registered")

        try:
            principal = self.store.create_principal(
                normalized,
                self._hash_password(password),
                role=role,
                status=STATUS_PENDING,
                profile=profile_for_role(role, name=name, phone=phone),
            )
        except DuplicateEmail as exc:
            raise ConflictError.from_violation("email already registered", exc) from exc

        otp_required = self.settings.require_otp if require_otp is None else require_otp
        if otp_required:
            principal = self._issue_code(principal, PURPOSE_REGISTRATION)
            self.logger.info(
                "principal_registered", principal_id=principal.id, otp_required=True
            )
            return AuthResult(principal=principal, tokens=TokenBundle.empty(), otp_required=True)

        principal = self.store.set_principal_status(principal.id, STATUS_ACTIVE) or principal
        if device is not None:
            self.devices.record_device(principal.id, device)
        tokens = self._issue_for(principal)
        self.logger.info(
            "principal_registered", principal_id=principal.id, otp_required=False
        )
        return AuthResult(principal=principal, tokens=tokens)

    def verify_otp(self, email: str, code: str) -> Principal:
        principal = self.store.get_principal_by_email(email)
        if not principal or not principal.otp_code or not principal.otp_expires_at:
            self.logger.warning("otp_not_pending", email_hash=hash_email(email))
            raise BadRequestError("no OTP pending verification")
        if principal.otp_expires_at < self._now():
            self.logger.warning("otp_expired", principal_id=principal.id)
            raise BadRequestError("OTP expired")
        if not self._codes_match(principal.otp_code, code):
            self.logger.warning("otp_mismatch", principal_id=principal.id)
            raise BadRequestError("invalid OTP")
        verified = self.store.mark_otp_verified(principal.id, self._now())
        self.logger.info("otp_verified", principal_id=principal.id)
        return verified or principal

    def resend_otp(self, email: str) -> None:
        """Issue a fresh registration code; silent for unknown or verified accounts."""
        principal = self.store.get_principal_by_email(email)
        if not principal or principal.status != STATUS_PENDING:
            self.logger.info("otp_resend_ignored", email_hash=hash_email(email))
            return
        self._issue_code(principal, PURPOSE_REGISTRATION)

    # sessions
    def login(
        self,
        email: str,
        password: str,
        ip: Optional[str] = None,
        device: DeviceContext | Mapping[str, Any] | None = None,
    ) -> AuthResult:
        device = self._device_context(device)
        principal = self.store.get_principal_by_email(email)
        if not principal or not self._verify_password(principal, password):
            self.logger.warning("login_failed", email_hash=hash_email(email))
            raise AuthenticationError("invalid credentials")
        if principal.otp_pending or principal.status == STATUS_PENDING:
            raise OtpPendingError("OTP verification pending")
        if principal.status == STATUS_SUSPENDED:
            self.logger.warning("login_suspended", principal_id=principal.id)
            raise AuthenticationError("account suspended")

        tokens = self._issue_for(principal)
        principal = self.store.touch_last_login(principal.id, self._now()) or principal
        if device is not None:
            self.devices.record_device(principal.id, device, ip=ip)
        self.logger.info("login_succeeded", principal_id=principal.id)
        return AuthResult(principal=principal, tokens=tokens)

    def refresh(self, refresh_token: str) -> AuthResult:
        payload = self.issuer.verify(refresh_token, REFRESH)
        subject = payload["sub"]
        if payload.get("guest"):
            tokens = self.issuer.issue(subject, ROLE_GUEST, payload.get("email"), guest=True)
            return AuthResult(principal=None, tokens=tokens)

        principal = self.store.get_principal(subject)
        if not principal or not principal.refresh_token_fingerprint:
            self.logger.warning("refresh_rejected", principal_id=subject, reason="no_fingerprint")
            raise AuthenticationError("refresh not allowed")
        if principal.status == STATUS_SUSPENDED:
            self.logger.warning("refresh_rejected", principal_id=subject, reason="suspended")
            raise AuthenticationError("account suspended")
        current = principal.refresh_token_fingerprint
        if not self.issuer.fingerprint_matches(refresh_token, current):
            self.logger.warning("refresh_rejected", principal_id=subject, reason="stale_token")
            raise AuthenticationError("invalid refresh token")

        tokens = self.issuer.issue(principal.id, principal.role, principal.email)
        rotated = self.store.swap_refresh_fingerprint(
            principal.id, current, self.issuer.fingerprint(tokens.refresh_token)
        )
        if not rotated:
            # A concurrent refresh with the same token won the swap
            self.logger.warning("refresh_rejected", principal_id=subject, reason="lost_race")
            raise AuthenticationError("invalid refresh token")
        self.logger.info("refresh_rotated", principal_id=principal.id)
        return AuthResult(principal=principal, tokens=tokens)

    def logout(self, principal_id: str) -> None:
        updated = self.store.set_refresh_fingerprint(principal_id, None)
        self.logger.info("logout", principal_id=principal_id, found=updated is not None)

    def guest_session(self) -> AuthResult:
        guest_id = f"guest_{uuid.uuid4().hex}"
        tokens = self.issuer.issue(guest_id, ROLE_GUEST, guest=True)
        self.logger.info("guest_session_issued", subject=guest_id)
        return AuthResult(principal=None, tokens=tokens)

    # password reset
    def forgot_password(self, email: str) -> None:
        principal = self.store.get_principal_by_email(email)
        if not principal:
            # Same outcome as a known account so callers cannot enumerate emails
            self.logger.info("password_reset_unknown_email", email_hash=hash_email(email))
            return
        self._issue_code(principal, PURPOSE_PASSWORD_RESET)

    def reset_password(self, email: str, code: str, new_password: str) -> None:
        if not new_password:
            raise ValidationError("password is required", detail={"field": "new_password"})
        principal = self.store.get_principal_by_email(email)
        if not principal or not principal.reset_code:
            self.logger.warning("password_reset_not_requested", email_hash=hash_email(email))
            raise BadRequestError("reset not requested")
        if not self._codes_match(principal.reset_code, code):
            self.logger.warning("password_reset_code_mismatch", principal_id=principal.id)
            raise BadRequestError("invalid code")
        if principal.reset_expires_at and principal.reset_expires_at < self._now():
            self.logger.warning("password_reset_code_expired", principal_id=principal.id)
            raise BadRequestError("code expired")
        self.store.save_password(
            principal.id, self._hash_password(new_password), revoke_refresh=True
        )
        self.logger.info("password_reset_completed", principal_id=principal.id)

    # administration
    def suspend(self, principal_id: str) -> Principal:
        principal = self._require_principal(principal_id)
        updated = self.store.set_principal_status(principal.id, STATUS_SUSPENDED)
        self.store.set_refresh_fingerprint(principal.id, None)
        self.logger.info("principal_suspended", principal_id=principal.id)
        return updated or principal

    def reactivate(self, principal_id: str) -> Principal:
        principal = self._require_principal(principal_id)
        if principal.status != STATUS_SUSPENDED:
            self.logger.warning(
                "reactivate_rejected", principal_id=principal.id, status=principal.status
            )
            raise BadRequestError(
                "only suspended principals can be reactivated",
                detail={"status": principal.status},
            )
        updated = self.store.set_principal_status(principal.id, STATUS_ACTIVE)
        self.logger.info("principal_reactivated", principal_id=principal.id)
        return updated or principal

    def list_devices(self, principal_id: str) -> List[DeviceSession]:
        return self.devices.list_devices(principal_id)

    # downstream authorization
    def authenticate(
        self, authorization_header: Optional[str] = None, *, token: Optional[str] = None
    ) -> AuthContext:
        """Map a bearer access token to the caller's identity without a store lookup."""
        raw = token or self._extract_bearer(authorization_header)
        if not raw:
            raise AuthenticationError("missing bearer token")
        payload = self.issuer.verify(raw, ACCESS)
        return AuthContext(
            principal_id=payload["sub"],
            role=payload.get("role", ROLE_USER),
            email=payload.get("email"),
            guest=bool(payload.get("guest")),
            claims=payload,
        )

    # helpers
    @staticmethod
    def _device_context(
        device: DeviceContext | Mapping[str, Any] | None,
    ) -> Optional[DeviceContext]:
        # Checked before any write so a bad device leaves no partial state
        if device is None or isinstance(device, DeviceContext):
            return device
        return DeviceContext.from_mapping(device)

    def _issue_for(self, principal: Principal) -> TokenBundle:
        tokens = self.issuer.issue(principal.id, principal.role, principal.email)
        self.store.set_refresh_fingerprint(
            principal.id, self.issuer.fingerprint(tokens.refresh_token)
        )
        return tokens

    def _issue_code(self, principal: Principal, purpose: str) -> Principal:
        code = self._generate_code()
        if purpose == PURPOSE_PASSWORD_RESET:
            expires_at = self._now() + timedelta(minutes=self.settings.reset_code_ttl_minutes)
            updated = self.store.set_reset_code(principal.id, code, expires_at)
        else:
            expires_at = self._now() + timedelta(minutes=self.settings.otp_ttl_minutes)
            updated = self.store.set_otp(principal.id, code, expires_at)
        principal = updated or principal
        if self.code_sink:
            self.code_sink(principal, code, purpose)
        self.logger.info(
            "one_time_code_issued",
            principal_id=principal.id,
            purpose=purpose,
            expires_at=expires_at.isoformat(),
        )
        return principal

    def _require_principal(self, principal_id: str) -> Principal:
        principal = self.store.get_principal(principal_id)
        if not principal:
            self.logger.warning("principal_not_found", principal_id=principal_id)
            raise NotFoundError("principal not found", detail={"principal_id": principal_id})
        return principal

    @staticmethod
    def _generate_code() -> str:
        return str(secrets.randbelow(900000) + 100000)

    @staticmethod
    def _codes_match(expected: str, supplied: Optional[str]) -> bool:
        if not supplied:
            return False
        return hmac.compare_digest(expected.encode(), str(supplied).strip().encode())

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _verify_password(self, principal: Principal, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(principal.password_hash, password)
        except (InvalidHash, VerificationError):
            return False

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None
