"""Unit tests for the session lifecycle service.

Tests for:
- Password hashing and verification
- Registration with and without OTP gating
- Login, refresh rotation and logout
- Password reset flow
- Guest sessions
- Suspension and bearer authentication
"""

import pytest

from authsync.service.auth import PURPOSE_PASSWORD_RESET, PURPOSE_REGISTRATION, AuthService
from authsync.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    NotFoundError,
    OtpPendingError,
    ValidationError,
)
from authsync.storage.models import (
    ROLE_GUEST,
    ROLE_PUBLISHER,
    STATUS_ACTIVE,
    STATUS_PENDING,
    STATUS_SUSPENDED,
)

PASSWORD = "TestPassword123!"


@pytest.fixture
def issued_codes():
    return []


@pytest.fixture
def auth_service(memory_store, settings, clock, issued_codes):
    """Create auth service for testing."""
    return AuthService(
        memory_store,
        settings,
        clock=clock,
        code_sink=lambda principal, code, purpose: issued_codes.append(
            (principal.email, code, purpose)
        ),
    )


@pytest.fixture
def active_user(auth_service):
    """Register an active user without OTP."""
    result = auth_service.register("Test User", "test@example.com", PASSWORD, require_otp=False)
    return result.principal


@pytest.fixture
def pending_user(auth_service):
    result = auth_service.register("Pending", "pending@example.com", PASSWORD, require_otp=True)
    return result.principal


class TestPasswordHashing:
    """Tests for password hashing."""

    def test_password_hash_is_argon2id(self, auth_service):
        pwd_hash = auth_service._hash_password(PASSWORD)

        assert pwd_hash.startswith("$argon2id$")
        assert PASSWORD not in pwd_hash

    def test_same_password_produces_different_hashes(self, auth_service):
        """Salting yields a different hash for each call."""
        assert auth_service._hash_password(PASSWORD) != auth_service._hash_password(PASSWORD)

    def test_verify_rejects_wrong_and_garbage_hashes(self, auth_service, active_user, memory_store):
        assert auth_service._verify_password(active_user, PASSWORD) is True
        assert auth_service._verify_password(active_user, "wrong-password") is False

        memory_store._update_principal(active_user.id, password_hash="not-a-hash")
        broken = memory_store.get_principal(active_user.id)
        assert auth_service._verify_password(broken, PASSWORD) is False


class TestRegistration:
    """Tests for register."""

    def test_register_without_otp_issues_tokens(self, auth_service, memory_store):
        result = auth_service.register("Ada", "Ada@Example.com ", PASSWORD, require_otp=False)

        assert result.otp_required is False
        assert result.tokens.access_token
        assert result.tokens.refresh_token
        assert result.principal.email == "ada@example.com"
        assert result.principal.name == "Ada"
        stored = memory_store.get_principal(result.principal.id)
        assert stored.status == STATUS_ACTIVE
        assert stored.refresh_token_fingerprint == auth_service.issuer.fingerprint(
            result.tokens.refresh_token
        )

    def test_register_with_otp_returns_empty_bundle(self, auth_service, memory_store, issued_codes):
        result = auth_service.register("Ada", "ada@example.com", PASSWORD, require_otp=True)

        assert result.otp_required is True
        assert result.tokens.is_empty
        stored = memory_store.get_principal(result.principal.id)
        assert stored.status == STATUS_PENDING
        assert stored.otp_code is not None
        assert len(stored.otp_code) == 6 and stored.otp_code.isdigit()
        assert stored.refresh_token_fingerprint is None
        assert issued_codes == [("ada@example.com", stored.otp_code, PURPOSE_REGISTRATION)]

    def test_register_uses_settings_default_for_otp(self, memory_store, settings, clock):
        gated = AuthService(
            memory_store, settings.model_copy(update={"require_otp": True}), clock=clock
        )
        result = gated.register("Ada", "ada@example.com", PASSWORD)

        assert result.otp_required is True

    def test_duplicate_email_conflicts(self, auth_service, active_user):
        with pytest.raises(ConflictError) as exc_info:
            auth_service.register("Other", "TEST@example.com", PASSWORD)

        assert exc_info.value.status_code == 409

    def test_publisher_role_gets_publisher_profile(self, auth_service):
        result = auth_service.register(
            "Pub", "pub@example.com", PASSWORD, role=ROLE_PUBLISHER, require_otp=False
        )

        assert result.principal.role == ROLE_PUBLISHER
        assert result.principal.profile.kind == "publisher"

    def test_register_rejects_unknown_role_and_bad_email(self, auth_service):
        with pytest.raises(ValidationError):
            auth_service.register("X", "x@example.com", PASSWORD, role="root")
        with pytest.raises(ValidationError):
            auth_service.register("X", "not-an-email", PASSWORD)

    def test_register_records_device(self, auth_service, memory_store):
        result = auth_service.register(
            "Ada",
            "ada@example.com",
            PASSWORD,
            require_otp=False,
            device={"deviceId": "phone-1", "devicePlatform": "ios"},
        )

        session = memory_store.get_device_session(result.principal.id, "phone-1")
        assert session is not None
        assert session.device_platform == "ios"

    def test_malformed_device_leaves_no_account(self, auth_service, memory_store):
        with pytest.raises(ValidationError):
            auth_service.register(
                "Ada", "ada@example.com", PASSWORD, require_otp=False, device={"name": "x"}
            )

        assert memory_store.get_principal_by_email("ada@example.com") is None
        retry = auth_service.register(
            "Ada", "ada@example.com", PASSWORD, require_otp=False, device={"device_id": "d1"}
        )
        assert retry.principal.status == STATUS_ACTIVE
        assert retry.tokens.refresh_token


class TestOtpVerification:
    """Tests for verify_otp and resend_otp."""

    def test_verify_otp_activates_principal(self, auth_service, pending_user, memory_store, clock):
        code = memory_store.get_principal(pending_user.id).otp_code

        verified = auth_service.verify_otp("pending@example.com", code)

        assert verified.status == STATUS_ACTIVE
        assert verified.otp_code is None
        assert verified.otp_expires_at is None
        assert verified.otp_verified_at == clock.now

    def test_verify_otp_issues_no_tokens(self, auth_service, pending_user, memory_store):
        code = memory_store.get_principal(pending_user.id).otp_code
        auth_service.verify_otp("pending@example.com", code)

        assert memory_store.get_principal(pending_user.id).refresh_token_fingerprint is None

    def test_wrong_code_is_rejected(self, auth_service, pending_user, memory_store):
        code = memory_store.get_principal(pending_user.id).otp_code
        wrong = "000000" if code != "000000" else "111111"

        with pytest.raises(BadRequestError):
            auth_service.verify_otp("pending@example.com", wrong)
        assert memory_store.get_principal(pending_user.id).status == STATUS_PENDING

    def test_expired_code_is_rejected(self, auth_service, pending_user, memory_store, clock):
        code = memory_store.get_principal(pending_user.id).otp_code
        clock.advance(minutes=11)

        with pytest.raises(BadRequestError):
            auth_service.verify_otp("pending@example.com", code)

    def test_no_pending_otp(self, auth_service, active_user):
        with pytest.raises(BadRequestError):
            auth_service.verify_otp("test@example.com", "123456")
        with pytest.raises(BadRequestError):
            auth_service.verify_otp("nobody@example.com", "123456")

    def test_resend_replaces_expired_code(self, auth_service, pending_user, memory_store, clock):
        clock.advance(minutes=11)
        auth_service.resend_otp("pending@example.com")
        code = memory_store.get_principal(pending_user.id).otp_code

        assert auth_service.verify_otp("pending@example.com", code).status == STATUS_ACTIVE

    def test_resend_is_silent_for_active_or_unknown(self, auth_service, active_user, issued_codes):
        auth_service.resend_otp("test@example.com")
        auth_service.resend_otp("nobody@example.com")

        assert issued_codes == []


class TestLogin:
    """Tests for login."""

    def test_login_success(self, auth_service, active_user, memory_store, clock):
        result = auth_service.login("test@example.com", PASSWORD)

        assert result.tokens.access_token
        stored = memory_store.get_principal(active_user.id)
        assert stored.last_login_at == clock.now
        assert stored.refresh_token_fingerprint == auth_service.issuer.fingerprint(
            result.tokens.refresh_token
        )

    def test_login_returns_different_access_token_than_register(self, auth_service):
        registered = auth_service.register("Ada", "ada@example.com", PASSWORD, require_otp=False)
        logged_in = auth_service.login("ada@example.com", PASSWORD)

        assert logged_in.tokens.access_token != registered.tokens.access_token

    def test_wrong_password_and_unknown_email(self, auth_service, active_user):
        with pytest.raises(AuthenticationError):
            auth_service.login("test@example.com", "WrongPassword1!")
        with pytest.raises(AuthenticationError):
            auth_service.login("nobody@example.com", PASSWORD)

    def test_pending_otp_blocks_login(self, auth_service, pending_user):
        with pytest.raises(OtpPendingError) as exc_info:
            auth_service.login("pending@example.com", PASSWORD)

        assert exc_info.value.error_code == "otp_pending"
        assert isinstance(exc_info.value, BadRequestError)

    def test_login_records_device_with_ip(self, auth_service, active_user, memory_store):
        auth_service.login(
            "test@example.com",
            PASSWORD,
            ip="203.0.113.7",
            device={"device_id": "tablet", "device_name": "Living room"},
        )

        session = memory_store.get_device_session(active_user.id, "tablet")
        assert session.last_ip == "203.0.113.7"
        assert session.device_name == "Living room"

    def test_malformed_device_keeps_current_refresh_token(self, auth_service, active_user):
        first = auth_service.login("test@example.com", PASSWORD)

        with pytest.raises(ValidationError):
            auth_service.login("test@example.com", PASSWORD, device={"deviceName": "x"})

        assert auth_service.refresh(first.tokens.refresh_token).tokens.access_token

    def test_second_login_ends_refresh_for_first_device(self, auth_service, active_user):
        first = auth_service.login("test@example.com", PASSWORD)
        auth_service.login("test@example.com", PASSWORD)

        with pytest.raises(AuthenticationError):
            auth_service.refresh(first.tokens.refresh_token)


class TestRefresh:
    """Tests for refresh rotation."""

    def test_refresh_rotates_and_rejects_previous(self, auth_service, active_user):
        login = auth_service.login("test@example.com", PASSWORD)

        rotated = auth_service.refresh(login.tokens.refresh_token)

        assert rotated.tokens.refresh_token != login.tokens.refresh_token
        with pytest.raises(AuthenticationError):
            auth_service.refresh(login.tokens.refresh_token)
        # the rotated token still works
        assert auth_service.refresh(rotated.tokens.refresh_token).tokens.access_token

    def test_logout_then_refresh_fails(self, auth_service, active_user):
        login = auth_service.login("test@example.com", PASSWORD)

        auth_service.logout(active_user.id)

        with pytest.raises(AuthenticationError):
            auth_service.refresh(login.tokens.refresh_token)

    def test_access_token_cannot_refresh(self, auth_service, active_user):
        login = auth_service.login("test@example.com", PASSWORD)

        with pytest.raises(AuthenticationError):
            auth_service.refresh(login.tokens.access_token)

    def test_expired_refresh_token_rejected(self, auth_service, active_user, clock):
        login = auth_service.login("test@example.com", PASSWORD)
        clock.advance(days=2)

        with pytest.raises(AuthenticationError):
            auth_service.refresh(login.tokens.refresh_token)

    def test_lost_compare_and_swap_is_rejected(self, auth_service, active_user, memory_store):
        login = auth_service.login("test@example.com", PASSWORD)
        memory_store.swap_refresh_fingerprint = lambda *args, **kwargs: False

        with pytest.raises(AuthenticationError):
            auth_service.refresh(login.tokens.refresh_token)

    def test_guest_refresh_keeps_subject(self, auth_service):
        guest = auth_service.guest_session()
        subject = auth_service.authenticate(token=guest.tokens.access_token).principal_id

        refreshed = auth_service.refresh(guest.tokens.refresh_token)

        assert refreshed.principal is None
        assert refreshed.tokens.guest is True
        context = auth_service.authenticate(token=refreshed.tokens.access_token)
        assert context.principal_id == subject
        assert context.role == ROLE_GUEST


class TestPasswordReset:
    """Tests for forgot/reset password."""

    def test_forgot_password_unknown_email_is_silent(self, auth_service, issued_codes):
        assert auth_service.forgot_password("nobody@example.com") is None
        assert issued_codes == []

    def test_reset_request_does_not_block_login(self, auth_service, active_user):
        auth_service.forgot_password("test@example.com")

        assert auth_service.login("test@example.com", PASSWORD).tokens.access_token

    def test_reset_password_flow(self, auth_service, active_user, issued_codes, memory_store):
        login = auth_service.login("test@example.com", PASSWORD)
        auth_service.forgot_password("test@example.com")
        _, code, purpose = issued_codes[-1]
        assert purpose == PURPOSE_PASSWORD_RESET

        auth_service.reset_password("test@example.com", code, "NewPassword456!")

        stored = memory_store.get_principal(active_user.id)
        assert stored.reset_code is None
        assert stored.refresh_token_fingerprint is None
        with pytest.raises(AuthenticationError):
            auth_service.refresh(login.tokens.refresh_token)
        with pytest.raises(AuthenticationError):
            auth_service.login("test@example.com", PASSWORD)
        assert auth_service.login("test@example.com", "NewPassword456!").tokens.access_token

    def test_reset_without_request(self, auth_service, active_user):
        with pytest.raises(BadRequestError):
            auth_service.reset_password("test@example.com", "123456", "NewPassword456!")

    def test_reset_with_wrong_code(self, auth_service, active_user, issued_codes):
        auth_service.forgot_password("test@example.com")
        code = issued_codes[-1][1]
        wrong = "000000" if code != "000000" else "111111"

        with pytest.raises(BadRequestError):
            auth_service.reset_password("test@example.com", wrong, "NewPassword456!")

    def test_reset_with_expired_code(self, auth_service, active_user, issued_codes, clock):
        auth_service.forgot_password("test@example.com")
        code = issued_codes[-1][1]
        clock.advance(minutes=11)

        with pytest.raises(BadRequestError):
            auth_service.reset_password("test@example.com", code, "NewPassword456!")


class TestGuestSessions:
    """Tests for guest sessions."""

    def test_guest_sessions_have_distinct_subjects(self, auth_service, memory_store):
        first = auth_service.guest_session()
        second = auth_service.guest_session()

        assert first.tokens.guest and second.tokens.guest
        first_ctx = auth_service.authenticate(token=first.tokens.access_token)
        second_ctx = auth_service.authenticate(token=second.tokens.access_token)
        assert first_ctx.principal_id != second_ctx.principal_id
        assert first_ctx.principal_id.startswith("guest_")
        assert first_ctx.guest is True
        assert memory_store.principals == {}


class TestSuspension:
    """Tests for suspend/reactivate."""

    def test_suspended_cannot_login_or_refresh(self, auth_service, active_user):
        login = auth_service.login("test@example.com", PASSWORD)

        suspended = auth_service.suspend(active_user.id)

        assert suspended.status == STATUS_SUSPENDED
        with pytest.raises(AuthenticationError):
            auth_service.login("test@example.com", PASSWORD)
        with pytest.raises(AuthenticationError):
            auth_service.refresh(login.tokens.refresh_token)

    def test_reactivate_restores_login(self, auth_service, active_user):
        auth_service.suspend(active_user.id)

        assert auth_service.reactivate(active_user.id).status == STATUS_ACTIVE
        assert auth_service.login("test@example.com", PASSWORD).tokens.access_token

    def test_reactivate_requires_suspended(self, auth_service, active_user):
        with pytest.raises(BadRequestError):
            auth_service.reactivate(active_user.id)

    def test_unknown_principal(self, auth_service):
        with pytest.raises(NotFoundError):
            auth_service.suspend("missing")


class TestAuthenticate:
    """Tests for bearer authentication."""

    def test_bearer_header(self, auth_service, active_user):
        login = auth_service.login("test@example.com", PASSWORD)

        context = auth_service.authenticate(f"Bearer {login.tokens.access_token}")

        assert context.principal_id == active_user.id
        assert context.role == "user"
        assert context.email == "test@example.com"
        assert context.guest is False

    def test_missing_or_malformed_header(self, auth_service):
        with pytest.raises(AuthenticationError):
            auth_service.authenticate(None)
        with pytest.raises(AuthenticationError):
            auth_service.authenticate("Basic abc")
        with pytest.raises(AuthenticationError):
            auth_service.authenticate("Bearer not.a.token")

    def test_non_ascii_signature_is_unauthorized(self, auth_service, active_user):
        login = auth_service.login("test@example.com", PASSWORD)
        header, payload, _ = login.tokens.refresh_token.split(".")
        access_header, access_payload, _ = login.tokens.access_token.split(".")

        with pytest.raises(AuthenticationError):
            auth_service.refresh(f"{header}.{payload}.ééé")
        with pytest.raises(AuthenticationError):
            auth_service.authenticate(f"Bearer {access_header}.{access_payload}.ééé")

    def test_refresh_token_is_not_an_access_token(self, auth_service, active_user):
        login = auth_service.login("test@example.com", PASSWORD)

        with pytest.raises(AuthenticationError):
            auth_service.authenticate(token=login.tokens.refresh_token)

    def test_list_devices_newest_first(self, auth_service, active_user, clock):
        auth_service.login("test@example.com", PASSWORD, device={"device_id": "old"})
        clock.advance(minutes=5)
        auth_service.login("test@example.com", PASSWORD, device={"device_id": "new"})

        assert [d.device_id for d in auth_service.list_devices(active_user.id)] == ["new", "old"]
