from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def normalize_email(email: str) -> str:
    return email.strip().lower()


@dataclass
class NotificationPreferences:
    email: bool = True
    push: bool = True


@dataclass
class UserPreferences:
    theme: str = "system"
    language: str = "ko"
    notifications: NotificationPreferences = field(default_factory=NotificationPreferences)


@dataclass
class UserProfile:
    name: str = ""
    avatar: Optional[str] = None
    bio: Optional[str] = None
    preferences: UserPreferences = field(default_factory=UserPreferences)


@dataclass
class UserSecurity:
    """Brute-force counters; ``locked_until`` in the future means locked."""

    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    two_factor_enabled: bool = False
    last_password_change: Optional[datetime] = None


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    profile: UserProfile = field(default_factory=UserProfile)
    security: UserSecurity = field(default_factory=UserSecurity)
    is_active: bool = True
    email_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None

    def public_dict(self) -> Dict[str, Any]:
        """User as exposed to clients: everything except the password hash."""
        profile = asdict(self.profile)
        return {
            "id": self.id,
            "email": self.email,
            "profile": profile,
            "is_active": self.is_active,
            "email_verified": self.email_verified,
            "two_factor_enabled": self.security.two_factor_enabled,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "last_login_at": self.last_login_at.isoformat() if self.last_login_at else None,
        }


@dataclass
class RefreshToken:
    id: str
    user_id: str
    token: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    is_revoked: bool = False
    revoked_at: Optional[datetime] = None


@dataclass
class PasswordResetToken:
    id: str
    user_id: str
    token: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    used_at: Optional[datetime] = None
    ip_address: Optional[str] = None


@dataclass
class EmailVerificationToken:
    id: str
    user_id: str
    token: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    verified_at: Optional[datetime] = None


@dataclass
class StoreMetadata:
    version: str = "1.0.0"
    last_migration: datetime = field(default_factory=utcnow)


@dataclass
class UserStats:
    total: int = 0
    active: int = 0
    verified: int = 0
    locked: int = 0


@dataclass
class CleanupReport:
    refresh_tokens: int = 0
    password_reset_tokens: int = 0
    email_verification_tokens: int = 0

    @property
    def total(self) -> int:
        return self.refresh_tokens + self.password_reset_tokens + self.email_verification_tokens
