"""Unit tests for the auth service.

Tests for:
- Registration and login, including remember-me lifetimes
- Refresh token rotation and reuse
- Brute-force lockout
- Password reset and email verification flows
- Logout and bearer authentication
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from personachat.config import Settings
from personachat.service.auth import AuthService
from personachat.service.errors import (
    AccountLockedError,
    AuthenticationError,
    EmailAlreadyVerifiedError,
    InvalidCredentialsError,
    InvalidOrExpiredTokenError,
    InvalidRefreshTokenError,
    RefreshTokenExpiredError,
    UserAlreadyExistsError,
)
from personachat.storage.memory import MemoryStore

PASSWORD = "Passw0rd!"


class Clock:
    def __init__(self):
        self.now = datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def settings(tmp_path):
    """Create test settings."""
    return Settings(
        data_dir=str(tmp_path),
        jwt_secret="Test-Access-Secret_for-Automation-Only-987654321!",
        jwt_refresh_secret="Test-Refresh-Secret_for-Automation-Only-123456789!",
        password_hash_time_cost=1,
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(tmp_path)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def auth_service(memory_store, settings, clock):
    return AuthService(memory_store, settings, clock=clock)


async def _register(auth_service, email="alice@example.com", password=PASSWORD):
    return await auth_service.register(email, password, "Alice")


class TestRegistration:
    async def test_register_returns_unverified_user_and_tokens(self, auth_service, memory_store):
        result = await _register(auth_service)

        assert result.user["email"] == "alice@example.com"
        assert result.user["email_verified"] is False
        assert "password_hash" not in result.user
        assert result.tokens.access_token
        assert result.tokens.refresh_token
        assert result.tokens.expires_in == 15 * 60
        assert result.verification_token
        assert memory_store.find_active_email_verification_token(result.verification_token)

    async def test_password_is_hashed(self, auth_service, memory_store):
        await _register(auth_service)

        stored = memory_store.get_user_by_email("alice@example.com")
        assert stored.password_hash != PASSWORD
        assert stored.password_hash.startswith("$argon2id$")

    async def test_register_duplicate_email(self, auth_service):
        await _register(auth_service)

        with pytest.raises(UserAlreadyExistsError):
            await _register(auth_service, email="ALICE@example.com")

    async def test_concurrent_registrations_create_one_user(self, auth_service, memory_store):
        results = await asyncio.gather(
            _register(auth_service), _register(auth_service), return_exceptions=True
        )

        created = [r for r in results if not isinstance(r, Exception)]
        failed = [r for r in results if isinstance(r, Exception)]
        assert len(created) == 1
        assert len(failed) == 1
        assert isinstance(failed[0], UserAlreadyExistsError)
        assert len(memory_store.list_users()) == 1


class TestLogin:
    async def test_login_success(self, auth_service, memory_store):
        await _register(auth_service)

        result = await auth_service.login("Alice@Example.com", PASSWORD)

        assert result.user["email"] == "alice@example.com"
        assert result.user["last_login_at"] is not None
        assert auth_service.codec.verify(result.tokens.access_token, "access") is not None

    async def test_login_unknown_email(self, auth_service):
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("nobody@example.com", PASSWORD)

    async def test_remember_me_lifetimes(self, auth_service, memory_store):
        await _register(auth_service)

        short = await auth_service.login("alice@example.com", PASSWORD)
        long = await auth_service.login("alice@example.com", PASSWORD, remember_me=True)

        short_access = auth_service.codec.verify(short.tokens.access_token, "access")
        long_access = auth_service.codec.verify(long.tokens.access_token, "access")
        assert short_access.expires_at - short_access.issued_at == 15 * 60
        assert long_access.expires_at - long_access.issued_at == 7 * 24 * 3600
        assert long.tokens.expires_in == 7 * 24 * 3600
        for result in (short, long):
            refresh = auth_service.codec.verify(result.tokens.refresh_token, "refresh")
            assert refresh.expires_at - refresh.issued_at == 30 * 24 * 3600
            record = memory_store.find_refresh_token(result.tokens.refresh_token)
            assert record.expires_at == refresh.expires_at_datetime

    async def test_five_failures_lock_account(self, auth_service, memory_store):
        await _register(auth_service)

        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await auth_service.login("alice@example.com", "wrong-password")

        with pytest.raises(AccountLockedError) as excinfo:
            await auth_service.login("alice@example.com", PASSWORD)
        assert "locked_until" in excinfo.value.detail

        security = memory_store.get_user_by_email("alice@example.com").security
        assert security.failed_login_attempts == 5

    async def test_lock_expires_after_twelve_hours(self, auth_service, clock, memory_store):
        await _register(auth_service)
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await auth_service.login("alice@example.com", "wrong-password")

        clock.advance(hours=12, seconds=1)
        result = await auth_service.login("alice@example.com", PASSWORD)

        assert result.tokens.access_token
        security = memory_store.get_user_by_email("alice@example.com").security
        assert security.failed_login_attempts == 0
        assert security.locked_until is None

    async def test_success_resets_failure_counter(self, auth_service, memory_store):
        await _register(auth_service)
        for _ in range(4):
            with pytest.raises(InvalidCredentialsError):
                await auth_service.login("alice@example.com", "wrong-password")

        await auth_service.login("alice@example.com", PASSWORD)

        for _ in range(4):
            with pytest.raises(InvalidCredentialsError):
                await auth_service.login("alice@example.com", "wrong-password")
        result = await auth_service.login("alice@example.com", PASSWORD)
        assert result.tokens.access_token

    async def test_concurrent_failures_are_all_counted(self, auth_service, memory_store):
        await _register(auth_service)

        results = await asyncio.gather(
            *(auth_service.login("alice@example.com", "wrong-password") for _ in range(5)),
            return_exceptions=True,
        )

        assert all(isinstance(r, InvalidCredentialsError) for r in results)
        security = memory_store.get_user_by_email("alice@example.com").security
        assert security.failed_login_attempts == 5
        assert security.locked_until is not None


class TestRefresh:
    async def test_refresh_rotates_and_old_token_fails(self, auth_service):
        registered = await _register(auth_service)

        rotated = await auth_service.refresh_tokens(registered.tokens.refresh_token)

        assert rotated.refresh_token != registered.tokens.refresh_token
        assert rotated.expires_in == 15 * 60
        with pytest.raises(InvalidRefreshTokenError):
            await auth_service.refresh_tokens(registered.tokens.refresh_token)
        again = await auth_service.refresh_tokens(rotated.refresh_token)
        assert again.access_token

    async def test_concurrent_refresh_only_one_wins(self, auth_service):
        registered = await _register(auth_service)
        token = registered.tokens.refresh_token

        results = await asyncio.gather(
            auth_service.refresh_tokens(token),
            auth_service.refresh_tokens(token),
            return_exceptions=True,
        )

        assert sum(1 for r in results if isinstance(r, InvalidRefreshTokenError)) == 1
        assert sum(1 for r in results if not isinstance(r, Exception)) == 1

    async def test_rotation_after_remember_me_is_short_lived(self, auth_service):
        await _register(auth_service)
        login = await auth_service.login("alice@example.com", PASSWORD, remember_me=True)

        rotated = await auth_service.refresh_tokens(login.tokens.refresh_token)

        assert rotated.expires_in == 15 * 60

    async def test_access_token_cannot_refresh(self, auth_service):
        registered = await _register(auth_service)

        with pytest.raises(InvalidRefreshTokenError):
            await auth_service.refresh_tokens(registered.tokens.access_token)

    async def test_unstored_but_validly_signed_token_rejected(self, auth_service, memory_store):
        registered = await _register(auth_service)
        user_id = registered.user["id"]
        forged = auth_service.codec.issue(user_id, "alice@example.com", "refresh", 3600)

        with pytest.raises(InvalidRefreshTokenError):
            await auth_service.refresh_tokens(forged)

    async def test_expired_jwt_is_invalid(self, auth_service, clock):
        registered = await _register(auth_service)

        clock.advance(days=31)

        with pytest.raises(InvalidRefreshTokenError):
            await auth_service.refresh_tokens(registered.tokens.refresh_token)

    async def test_expired_record_is_revoked(self, auth_service, memory_store, clock):
        registered = await _register(auth_service)
        token = registered.tokens.refresh_token
        record = memory_store.find_refresh_token(token)
        record.expires_at = clock.now - timedelta(seconds=1)

        with pytest.raises(RefreshTokenExpiredError):
            await auth_service.refresh_tokens(token)

        assert memory_store.find_refresh_token(token) is None
        assert memory_store.find_refresh_token(token, include_revoked=True).is_revoked

    async def test_refresh_for_deactivated_user(self, auth_service, memory_store):
        registered = await _register(auth_service)
        memory_store.deactivate_user(registered.user["id"])

        with pytest.raises(InvalidRefreshTokenError):
            await auth_service.refresh_tokens(registered.tokens.refresh_token)


class TestLogout:
    async def test_logout_twice_is_harmless(self, auth_service, memory_store):
        registered = await _register(auth_service)
        token = registered.tokens.refresh_token

        await auth_service.logout(token)
        revoked_at = memory_store.find_refresh_token(token, include_revoked=True).revoked_at
        await auth_service.logout(token)

        record = memory_store.find_refresh_token(token, include_revoked=True)
        assert record.is_revoked is True
        assert record.revoked_at == revoked_at
        with pytest.raises(InvalidRefreshTokenError):
            await auth_service.refresh_tokens(token)

    async def test_logout_unknown_token(self, auth_service):
        await auth_service.logout("not-a-real-token")

    async def test_logout_by_user_revokes_all(self, auth_service, memory_store):
        registered = await _register(auth_service)
        await auth_service.login("alice@example.com", PASSWORD)

        await auth_service.logout(user_id=registered.user["id"])

        assert all(t.is_revoked for t in memory_store.list_refresh_tokens(registered.user["id"]))


class TestPasswordReset:
    async def test_reset_changes_password_once(self, auth_service):
        await _register(auth_service)
        token = await auth_service.generate_password_reset_token("alice@example.com")

        assert auth_service.verify_password_reset_token(token) is not None
        await auth_service.use_password_reset_token(token, "N3w-Passw0rd!")

        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("alice@example.com", PASSWORD)
        result = await auth_service.login("alice@example.com", "N3w-Passw0rd!")
        assert result.tokens.access_token
        with pytest.raises(InvalidOrExpiredTokenError):
            await auth_service.use_password_reset_token(token, "Other-Passw0rd!")

    async def test_unknown_email_gets_unusable_placeholder(self, auth_service, memory_store):
        token = await auth_service.generate_password_reset_token("ghost@example.com")

        assert token
        assert memory_store.password_reset_tokens == []
        with pytest.raises(InvalidOrExpiredTokenError):
            await auth_service.use_password_reset_token(token, "N3w-Passw0rd!")

    async def test_reset_token_expires_after_a_day(self, auth_service, clock):
        await _register(auth_service)
        token = await auth_service.generate_password_reset_token("alice@example.com")

        clock.advance(hours=24, seconds=1)

        assert auth_service.verify_password_reset_token(token) is None
        with pytest.raises(InvalidOrExpiredTokenError):
            await auth_service.use_password_reset_token(token, "N3w-Passw0rd!")

    async def test_reset_keeps_sessions_by_default(self, auth_service):
        registered = await _register(auth_service)
        token = await auth_service.generate_password_reset_token("alice@example.com")

        await auth_service.use_password_reset_token(token, "N3w-Passw0rd!")

        rotated = await auth_service.refresh_tokens(registered.tokens.refresh_token)
        assert rotated.access_token

    async def test_reset_can_revoke_sessions(self, memory_store, settings, clock):
        settings.revoke_sessions_on_password_reset = True
        service = AuthService(memory_store, settings, clock=clock)
        registered = await _register(service)
        token = await service.generate_password_reset_token("alice@example.com")

        await service.use_password_reset_token(token, "N3w-Passw0rd!")

        with pytest.raises(InvalidRefreshTokenError):
            await service.refresh_tokens(registered.tokens.refresh_token)

    async def test_reset_does_not_clear_lockout(self, auth_service):
        await _register(auth_service)
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await auth_service.login("alice@example.com", "wrong-password")
        token = await auth_service.generate_password_reset_token("alice@example.com")

        await auth_service.use_password_reset_token(token, "N3w-Passw0rd!")

        with pytest.raises(AccountLockedError):
            await auth_service.login("alice@example.com", "N3w-Passw0rd!")


class TestEmailVerification:
    async def test_verification_marks_user_once(self, auth_service, memory_store):
        registered = await _register(auth_service)
        token = registered.verification_token

        assert auth_service.verify_email_token(token) == registered.user["id"]
        await auth_service.use_email_verification_token(token)

        assert memory_store.get_user(registered.user["id"]).email_verified is True
        with pytest.raises(InvalidOrExpiredTokenError):
            await auth_service.use_email_verification_token(token)

    async def test_verification_token_expires_after_seven_days(self, auth_service, clock):
        registered = await _register(auth_service)

        clock.advance(days=7, seconds=1)

        with pytest.raises(InvalidOrExpiredTokenError):
            await auth_service.use_email_verification_token(registered.verification_token)

    async def test_resend(self, auth_service):
        registered = await _register(auth_service)

        issued = await auth_service.resend_email_verification("alice@example.com")

        assert issued is not None
        user, token = issued
        assert user.id == registered.user["id"]
        assert token != registered.verification_token
        assert await auth_service.resend_email_verification("ghost@example.com") is None

        await auth_service.use_email_verification_token(token)
        with pytest.raises(EmailAlreadyVerifiedError):
            await auth_service.resend_email_verification("alice@example.com")


class TestAuthenticate:
    async def test_valid_bearer(self, auth_service):
        registered = await _register(auth_service)

        context = auth_service.authenticate(f"Bearer {registered.tokens.access_token}")

        assert context.user_id == registered.user["id"]
        assert context.email == "alice@example.com"

    async def test_missing_and_invalid_tokens(self, auth_service):
        registered = await _register(auth_service)

        with pytest.raises(AuthenticationError) as missing:
            auth_service.authenticate(None)
        assert missing.value.error_code == "missing_token"
        with pytest.raises(AuthenticationError) as wrong_type:
            auth_service.authenticate(f"Bearer {registered.tokens.refresh_token}")
        assert wrong_type.value.error_code == "invalid_token"

    async def test_locked_user_cannot_use_access_token(self, auth_service):
        registered = await _register(auth_service)
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await auth_service.login("alice@example.com", "wrong-password")

        with pytest.raises(AccountLockedError):
            auth_service.authenticate(f"Bearer {registered.tokens.access_token}")


class TestChangePassword:
    async def test_change_password_requires_current(self, auth_service):
        registered = await _register(auth_service)
        user_id = registered.user["id"]

        with pytest.raises(InvalidCredentialsError):
            await auth_service.change_password(user_id, "wrong", "N3w-Passw0rd!")

        await auth_service.change_password(user_id, PASSWORD, "N3w-Passw0rd!")
        result = await auth_service.login("alice@example.com", "N3w-Passw0rd!")
        assert result.tokens.access_token


class TestCleanup:
    async def test_cleanup_uses_service_clock(self, auth_service, clock, memory_store):
        registered = await _register(auth_service)
        await auth_service.generate_password_reset_token("alice@example.com")
        await auth_service.logout(registered.tokens.refresh_token)

        report = auth_service.cleanup_expired_tokens()
        assert report.refresh_tokens == 1
        assert report.password_reset_tokens == 0

        clock.advance(days=8)
        report = auth_service.cleanup_expired_tokens()
        assert report.password_reset_tokens == 1
        assert report.email_verification_tokens == 1
