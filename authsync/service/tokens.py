from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from authsync.config import Settings
from authsync.logging import get_logger
from authsync.service.errors import AuthenticationError
from authsync.storage.models import ROLE_GUEST

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass
class TokenBundle:
    access_token: str
    refresh_token: str
    access_expires_in_seconds: int
    refresh_expires_in_seconds: int
    guest: bool = False

    @classmethod
    def empty(cls) -> "TokenBundle":
        """Placeholder returned while registration waits on a one-time code."""
        return cls(
            access_token="",
            refresh_token="",
            access_expires_in_seconds=0,
            refresh_expires_in_seconds=0,
        )

    @property
    def is_empty(self) -> bool:
        return not self.access_token and not self.refresh_token

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class TokenIssuer:
    """Signs and verifies HS256 access/refresh token pairs.

    Access and refresh tokens share one claim set and one secret; only
    ``exp`` and ``token_type`` differ. Verification is pure computation.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self._secret = settings.jwt_secret.encode()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._leeway = timedelta(seconds=settings.token_leeway_seconds)

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.refresh_token_ttl_minutes)

    def issue(
        self,
        subject: str,
        role: str,
        email: Optional[str] = None,
        guest: bool = False,
    ) -> TokenBundle:
        now = self._clock()
        claims: dict[str, Any] = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": subject,
            "role": ROLE_GUEST if guest else role,
            "guest": guest,
            "iat": int(now.timestamp()),
        }
        if email:
            claims["email"] = email
        access_token = self._encode_jwt(
            {
                **claims,
                "token_type": ACCESS,
                "jti": str(uuid.uuid4()),
                "exp": int((now + self.access_ttl).timestamp()),
            }
        )
        refresh_token = self._encode_jwt(
            {
                **claims,
                "token_type": REFRESH,
                "jti": str(uuid.uuid4()),
                "exp": int((now + self.refresh_ttl).timestamp()),
            }
        )
        return TokenBundle(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_in_seconds=int(self.access_ttl.total_seconds()),
            refresh_expires_in_seconds=int(self.refresh_ttl.total_seconds()),
            guest=guest,
        )

    def verify(self, token: str, token_type: str) -> dict[str, Any]:
        payload = self.decode(token)
        if not payload:
            logger.warning("token_rejected", expected=token_type)
            raise AuthenticationError("invalid or expired token")
        if payload.get("token_type") != token_type:
            logger.warning(
                "token_type_mismatch",
                expected=token_type,
                actual=payload.get("token_type"),
            )
            raise AuthenticationError("invalid or expired token")
        if not payload.get("sub"):
            raise AuthenticationError("invalid or expired token")
        return payload

    def decode(self, token: str) -> Optional[dict[str, Any]]:
        if not token or not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
            if header.get("alg") != "HS256":
                logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
                return None
        except (ValueError, AttributeError):
            logger.warning("jwt_header_decode_failed")
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None
        if exp_ts <= (self._clock() - self._leeway).timestamp():
            return None
        return payload

    @staticmethod
    def fingerprint(token: str) -> str:
        """One-way digest of a token; the raw refresh token is never stored."""
        return hashlib.sha256(token.encode()).hexdigest()

    def fingerprint_matches(self, token: str, fingerprint: Optional[str]) -> bool:
        if not fingerprint:
            return False
        return hmac.compare_digest(self.fingerprint(token), fingerprint)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return f"{signing_input}.{self._encode_segment(signature)}"
