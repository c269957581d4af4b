from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from personachat.config import Settings
from personachat.logging import get_logger, hash_email
from personachat.service.account_security import LockoutPolicy
from personachat.service.errors import (
    AccountLockedError,
    AuthenticationError,
    EmailAlreadyVerifiedError,
    InvalidCredentialsError,
    InvalidOrExpiredTokenError,
    InvalidRefreshTokenError,
    NotFoundError,
    RefreshTokenExpiredError,
    ServerError,
    UserAlreadyExistsError,
)
from personachat.service.tokens import TokenCodec, generate_secure_token
from personachat.storage.errors import ConstraintViolation
from personachat.storage.models import (
    CleanupReport,
    EmailVerificationToken,
    PasswordResetToken,
    RefreshToken,
    User,
    UserSecurity,
)

logger = get_logger(__name__)


class SessionStore(Protocol):
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        name: str = "",
        avatar: Optional[str] = None,
        bio: Optional[str] = None,
    ) -> User: ...

    def get_user(self, user_id: str, *, include_inactive: bool = False) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def save_password_hash(self, user_id: str, password_hash: str) -> User: ...

    def mark_last_login(self, user_id: str) -> User: ...

    def update_security(
        self, user_id: str, mutate: Callable[[UserSecurity], None]
    ) -> UserSecurity: ...

    def add_refresh_token(
        self,
        user_id: str,
        token: str,
        expires_at: datetime,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> RefreshToken: ...

    def find_refresh_token(
        self, token: str, *, user_id: Optional[str] = None, include_revoked: bool = False
    ) -> Optional[RefreshToken]: ...

    def revoke_refresh_token(self, token: str) -> bool: ...

    def rotate_refresh_token(
        self,
        old_token: str,
        user_id: str,
        new_token: str,
        expires_at: datetime,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Optional[RefreshToken]: ...

    def revoke_user_refresh_tokens(self, user_id: str) -> int: ...

    def add_password_reset_token(
        self, user_id: str, token: str, expires_at: datetime, *, ip_address: Optional[str] = None
    ) -> PasswordResetToken: ...

    def find_active_password_reset_token(
        self, token: str, now: Optional[datetime] = None
    ) -> Optional[PasswordResetToken]: ...

    def consume_password_reset_token(
        self, token: str, password_hash: str, now: Optional[datetime] = None
    ) -> Optional[User]: ...

    def add_email_verification_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> EmailVerificationToken: ...

    def find_active_email_verification_token(
        self, token: str, now: Optional[datetime] = None
    ) -> Optional[EmailVerificationToken]: ...

    def consume_email_verification_token(
        self, token: str, now: Optional[datetime] = None
    ) -> Optional[User]: ...

    def cleanup_expired_tokens(self, now: Optional[datetime] = None) -> CleanupReport: ...


@dataclass
class AuthContext:
    user_id: str
    email: str


@dataclass
class AuthTokens:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"

    def as_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_in": self.expires_in,
            "token_type": self.token_type,
        }


@dataclass
class LoginResult:
    user: dict[str, Any]
    tokens: AuthTokens


@dataclass
class RegistrationResult:
    user: dict[str, Any]
    tokens: AuthTokens
    verification_token: str = field(repr=False, default="")


class AuthService:
    """Login, registration, token rotation and one-shot token flows.

    Password hashing and every store write run in a worker thread so the
    event loop is free while they block; the store serializes writers.
    """

    def __init__(
        self,
        store: SessionStore,
        settings: Settings,
        *,
        codec: Optional[TokenCodec] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.codec = codec or TokenCodec(
            settings.jwt_secret, settings.jwt_refresh_secret, clock=self._clock
        )
        self.lockout = LockoutPolicy(
            max_attempts=settings.max_failed_login_attempts,
            lockout=timedelta(hours=settings.lockout_hours),
        )
        self._pwd_hasher = PasswordHasher(
            time_cost=settings.password_hash_time_cost, type=Type.ID
        )
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    # passwords
    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _check_password(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            self.logger.warning("password_hash_unverifiable")
            return False

    async def hash_password(self, password: str) -> str:
        return await asyncio.to_thread(self._hash_password, password)

    async def verify_password(self, stored_hash: str, password: str) -> bool:
        return await asyncio.to_thread(self._check_password, stored_hash, password)

    # tokens
    def _access_ttl(self, remember_me: bool) -> int:
        if remember_me:
            return self.settings.remember_me_access_token_ttl_seconds
        return self.settings.access_token_ttl_seconds

    def _mint_pair(self, user: User, *, remember_me: bool) -> tuple[AuthTokens, datetime]:
        access_ttl = self._access_ttl(remember_me)
        access_token = self.codec.issue(user.id, user.email, "access", access_ttl)
        refresh_token = self.codec.issue(
            user.id, user.email, "refresh", self.settings.refresh_token_ttl_seconds
        )
        # Stored expiry mirrors the signed exp claim
        payload = self.codec.verify(refresh_token, "refresh")
        if payload is None:
            raise ServerError("failed to issue refresh token")
        tokens = AuthTokens(
            access_token=access_token, refresh_token=refresh_token, expires_in=access_ttl
        )
        return tokens, payload.expires_at_datetime

    async def _issue_tokens(
        self,
        user: User,
        *,
        remember_me: bool = False,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> AuthTokens:
        tokens, refresh_expires_at = self._mint_pair(user, remember_me=remember_me)
        await asyncio.to_thread(
            self.store.add_refresh_token,
            user.id,
            tokens.refresh_token,
            refresh_expires_at,
            user_agent=user_agent,
            ip_address=ip_address,
        )
        return tokens

    # flows
    async def login(
        self,
        email: str,
        password: str,
        *,
        remember_me: bool = False,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> LoginResult:
        user = self.store.get_user_by_email(email)
        if not user:
            self.logger.info("login_unknown_email", email_hash=hash_email(email))
            raise InvalidCredentialsError()
        if self.lockout.is_locked(user.security, self._now()):
            self.logger.warning("login_rejected_locked", user_id=user.id)
            raise AccountLockedError(
                detail={"locked_until": user.security.locked_until.isoformat()}
            )

        if not await self.verify_password(user.password_hash, password):
            now = self._now()
            security = await asyncio.to_thread(
                self.store.update_security,
                user.id,
                lambda sec: self.lockout.register_failure(sec, now),
            )
            self.logger.warning(
                "login_failed",
                user_id=user.id,
                failed_attempts=security.failed_login_attempts,
            )
            if self.lockout.is_locked(security, now):
                self.logger.warning(
                    "account_locked",
                    user_id=user.id,
                    locked_until=security.locked_until.isoformat(),
                )
            raise InvalidCredentialsError()

        await asyncio.to_thread(
            self.store.update_security, user.id, self.lockout.register_success
        )
        user = await asyncio.to_thread(self.store.mark_last_login, user.id)
        tokens = await self._issue_tokens(
            user, remember_me=remember_me, user_agent=user_agent, ip_address=ip_address
        )
        self.logger.info("login_succeeded", user_id=user.id, remember_me=remember_me)
        return LoginResult(user=user.public_dict(), tokens=tokens)

    async def register(
        self,
        email: str,
        password: str,
        name: Optional[str] = None,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> RegistrationResult:
        if self.store.get_user_by_email(email):
            raise UserAlreadyExistsError()
        password_hash = await self.hash_password(password)
        try:
            user = await asyncio.to_thread(
                self.store.create_user, email, password_hash, name=name or ""
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration for the same address
            raise UserAlreadyExistsError(detail=exc.detail) from exc
        tokens = await self._issue_tokens(user, user_agent=user_agent, ip_address=ip_address)
        verification_token = await self.generate_email_verification_token(user.id)
        self.logger.info("user_registered", user_id=user.id)
        return RegistrationResult(
            user=user.public_dict(), tokens=tokens, verification_token=verification_token
        )

    async def refresh_tokens(
        self,
        refresh_token: str,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> AuthTokens:
        payload = self.codec.verify(refresh_token, "refresh")
        if payload is None:
            raise InvalidRefreshTokenError()
        record = self.store.find_refresh_token(refresh_token, user_id=payload.subject_id)
        if record is None:
            # Forged, already rotated, revoked, or never issued
            self.logger.warning("refresh_token_not_found", user_id=payload.subject_id)
            raise InvalidRefreshTokenError()
        if record.expires_at < self._now():
            await asyncio.to_thread(self.store.revoke_refresh_token, refresh_token)
            self.logger.info("refresh_token_expired", user_id=record.user_id)
            raise RefreshTokenExpiredError()
        user = self.store.get_user(payload.subject_id)
        if not user:
            raise InvalidRefreshTokenError()

        # Rotated sessions are always short-lived access tokens
        tokens, refresh_expires_at = self._mint_pair(user, remember_me=False)
        rotated = await asyncio.to_thread(
            self.store.rotate_refresh_token,
            refresh_token,
            user.id,
            tokens.refresh_token,
            refresh_expires_at,
            user_agent=user_agent,
            ip_address=ip_address,
        )
        if rotated is None:
            raise InvalidRefreshTokenError()
        self.logger.info("refresh_token_rotated", user_id=user.id)
        return tokens

    async def logout(
        self, refresh_token: Optional[str] = None, user_id: Optional[str] = None
    ) -> None:
        """Revoke one refresh token, or every token of ``user_id`` as a fallback.

        Unknown or already revoked tokens are not an error.
        """
        if refresh_token:
            revoked = await asyncio.to_thread(self.store.revoke_refresh_token, refresh_token)
            self.logger.info("logout", scope="token", revoked=revoked)
        elif user_id:
            count = await asyncio.to_thread(self.store.revoke_user_refresh_tokens, user_id)
            self.logger.info("logout", scope="user", user_id=user_id, revoked=count)

    async def generate_password_reset_token(
        self, email: str, ip_address: Optional[str] = None
    ) -> str:
        token = generate_secure_token()
        user = self.store.get_user_by_email(email)
        if not user:
            # Same shape as a real token, never stored
            self.logger.info("password_reset_unknown_email", email_hash=hash_email(email))
            return token
        expires_at = self._now() + timedelta(hours=self.settings.password_reset_ttl_hours)
        await asyncio.to_thread(
            self.store.add_password_reset_token,
            user.id,
            token,
            expires_at,
            ip_address=ip_address,
        )
        self.logger.info("password_reset_requested", user_id=user.id)
        return token

    def verify_password_reset_token(self, token: str) -> Optional[str]:
        record = self.store.find_active_password_reset_token(token, self._now())
        return record.user_id if record else None

    async def use_password_reset_token(self, token: str, new_password: str) -> None:
        if self.store.find_active_password_reset_token(token, self._now()) is None:
            self.logger.warning("password_reset_invalid_token", token_prefix=token[:8])
            raise InvalidOrExpiredTokenError()
        password_hash = await self.hash_password(new_password)
        user = await asyncio.to_thread(
            self.store.consume_password_reset_token, token, password_hash, self._now()
        )
        if user is None:
            # Consumed or expired while the new password was being hashed
            self.logger.warning("password_reset_invalid_token", token_prefix=token[:8])
            raise InvalidOrExpiredTokenError()
        if self.settings.revoke_sessions_on_password_reset:
            count = await asyncio.to_thread(self.store.revoke_user_refresh_tokens, user.id)
            self.logger.info("sessions_revoked_after_reset", user_id=user.id, revoked=count)
        self.logger.info("password_reset_completed", user_id=user.id)

    async def generate_email_verification_token(self, user_id: str) -> str:
        token = generate_secure_token()
        expires_at = self._now() + timedelta(days=self.settings.email_verification_ttl_days)
        try:
            await asyncio.to_thread(
                self.store.add_email_verification_token, user_id, token, expires_at
            )
        except ConstraintViolation as exc:
            raise NotFoundError("user not found", detail=exc.detail) from exc
        self.logger.info("email_verification_requested", user_id=user_id)
        return token

    def verify_email_token(self, token: str) -> Optional[str]:
        record = self.store.find_active_email_verification_token(token, self._now())
        return record.user_id if record else None

    async def use_email_verification_token(self, token: str) -> None:
        user = await asyncio.to_thread(
            self.store.consume_email_verification_token, token, self._now()
        )
        if user is None:
            self.logger.warning("email_verification_invalid_token", token_prefix=token[:8])
            raise InvalidOrExpiredTokenError()
        self.logger.info("email_verified", user_id=user.id)

    async def resend_email_verification(self, email: str) -> Optional[tuple[User, str]]:
        user = self.store.get_user_by_email(email)
        if not user:
            return None
        if user.email_verified:
            raise EmailAlreadyVerifiedError()
        token = await self.generate_email_verification_token(user.id)
        return user, token

    def cleanup_expired_tokens(self) -> CleanupReport:
        report = self.store.cleanup_expired_tokens(self._now())
        if report.total:
            self.logger.info(
                "expired_tokens_cleaned",
                refresh_tokens=report.refresh_tokens,
                password_reset_tokens=report.password_reset_tokens,
                email_verification_tokens=report.email_verification_tokens,
            )
        return report

    # account
    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> None:
        user = self.get_current_user(user_id)
        if not await self.verify_password(user.password_hash, current_password):
            raise InvalidCredentialsError("Current password is incorrect")
        password_hash = await self.hash_password(new_password)
        await asyncio.to_thread(self.store.save_password_hash, user.id, password_hash)
        self.logger.info("password_changed", user_id=user.id)

    def get_current_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        return user

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        token = header.split(" ", 1)[1].strip()
        return token or None

    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError("Access token required", error_code="missing_token")
        payload = self.codec.verify(token, "access")
        if payload is None:
            raise AuthenticationError("Invalid or expired access token", error_code="invalid_token")
        user = self.store.get_user(payload.subject_id)
        if not user:
            raise AuthenticationError("User not found or inactive", error_code="invalid_token")
        if self.lockout.is_locked(user.security, self._now()):
            raise AccountLockedError()
        return AuthContext(user_id=user.id, email=user.email)
