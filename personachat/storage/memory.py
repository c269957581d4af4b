from __future__ import annotations

import json
import os
import shutil
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional

from personachat.logging import get_logger
from personachat.storage.errors import ConstraintViolation, StoreCorruptedError
from personachat.storage.models import (
    CleanupReport,
    EmailVerificationToken,
    NotificationPreferences,
    PasswordResetToken,
    RefreshToken,
    StoreMetadata,
    User,
    UserPreferences,
    UserProfile,
    UserSecurity,
    UserStats,
    new_id,
    normalize_email,
    utcnow,
)


class MemoryStore:
    """In-memory record tree mirrored to a single JSON document.

    Every mutation rewrites the whole file before returning. Lookups by
    email or token string are linear scans. All read-modify-write sequences
    hold ``_data_lock`` so request threads never interleave inside one.
    """

    def __init__(self, data_dir: str | Path = "./data", db_filename: str = "db.json") -> None:
        self.logger = get_logger(__name__)
        self.data_dir = Path(data_dir)
        self.db_filename = db_filename
        # RLock so compound operations can call other locked methods
        self._data_lock = threading.RLock()
        self.users: Dict[str, User] = {}
        self.refresh_tokens: List[RefreshToken] = []
        self.password_reset_tokens: List[PasswordResetToken] = []
        self.email_verification_tokens: List[EmailVerificationToken] = []
        self.metadata = StoreMetadata()
        self.load()

    @property
    def path(self) -> Path:
        return self.data_dir / self.db_filename

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt is not None else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        if not raw:
            return None
        # Z suffix is what JavaScript's toISOString emits
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        parsed = datetime.fromisoformat(raw)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    # lifecycle
    def load(self) -> None:
        """Read the document into memory, creating it if absent."""
        with self._data_lock:
            if self._load_state():
                self.logger.info(
                    "store_loaded",
                    path=str(self.path),
                    users=len(self.users),
                    refresh_tokens=len(self.refresh_tokens),
                )
                return
            self.users = {}
            self.refresh_tokens = []
            self.password_reset_tokens = []
            self.email_verification_tokens = []
            self.metadata = StoreMetadata()
            self.flush()
            self.logger.info("store_initialized", path=str(self.path))

    def flush(self) -> None:
        """Serialize the full tree and atomically replace the file."""
        with self._data_lock:
            self._persist_state()

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "refreshTokens": [self._serialize_refresh_token(t) for t in self.refresh_tokens],
            "passwordResetTokens": [
                self._serialize_password_reset_token(t) for t in self.password_reset_tokens
            ],
            "emailVerificationTokens": [
                self._serialize_email_verification_token(t)
                for t in self.email_verification_tokens
            ],
            "metadata": {
                "version": self.metadata.version,
                "lastMigration": self._serialize_datetime(self.metadata.last_migration),
            },
        }
        tmp_path = None
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=str(self.data_dir), prefix=f".{self.db_filename}.", suffix=".tmp"
            )
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(state, handle, indent=2)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise RuntimeError(f"failed to persist store state: {exc}") from exc

    def _parse_state(self, raw: str, origin: Path) -> tuple:
        """Decode a document into fresh collections without touching ``self``."""
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise StoreCorruptedError(str(origin), str(exc)) from exc
        if not isinstance(data, dict):
            raise StoreCorruptedError(str(origin), "top-level value is not an object")
        try:
            users = [self._deserialize_user(u) for u in data.get("users", [])]
            refresh_tokens = [
                self._deserialize_refresh_token(t) for t in data.get("refreshTokens", [])
            ]
            password_reset_tokens = [
                self._deserialize_password_reset_token(t)
                for t in data.get("passwordResetTokens", [])
            ]
            email_verification_tokens = [
                self._deserialize_email_verification_token(t)
                for t in data.get("emailVerificationTokens", [])
            ]
            meta = data.get("metadata") or {}
            metadata = StoreMetadata(
                version=meta.get("version", "1.0.0"),
                last_migration=self._deserialize_datetime(meta.get("lastMigration")) or utcnow(),
            )
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise StoreCorruptedError(str(origin), f"malformed record: {exc}") from exc
        return (
            {u.id: u for u in users},
            refresh_tokens,
            password_reset_tokens,
            email_verification_tokens,
            metadata,
        )

    def _apply_state(self, state: tuple) -> None:
        (
            self.users,
            self.refresh_tokens,
            self.password_reset_tokens,
            self.email_verification_tokens,
            self.metadata,
        ) = state

    def _load_state(self) -> bool:
        path = self.path
        # try/except instead of exists() to avoid a TOCTOU race
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return False
        self._apply_state(self._parse_state(raw, path))
        return True

    def backup(self, backup_dir: str | Path) -> Path:
        """Copy the current document to ``db-backup-<timestamp>.json``."""
        with self._data_lock:
            self._persist_state()
            target_dir = Path(backup_dir)
            target_dir.mkdir(parents=True, exist_ok=True)
            stamp = utcnow().strftime("%Y-%m-%dT%H-%M-%S-%fZ")
            target = target_dir / f"db-backup-{stamp}.json"
            shutil.copy2(self.path, target)
            self.logger.info("store_backup_created", path=str(target))
            return target

    def restore(self, backup_path: str | Path) -> None:
        """Replace the document with a backup and reload memory from it."""
        source = Path(backup_path)
        with self._data_lock:
            # Every record must parse before memory or the live file changes
            state = self._parse_state(source.read_text(encoding="utf-8"), source)
            self._apply_state(state)
            self.data_dir.mkdir(parents=True, exist_ok=True)
            self._persist_state()
            self.logger.info("store_restored", source=str(source))

    # users
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        name: str = "",
        avatar: Optional[str] = None,
        bio: Optional[str] = None,
    ) -> User:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(u.is_active and u.email == normalized for u in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = utcnow()
            user = User(
                id=new_id(),
                email=normalized,
                password_hash=password_hash,
                profile=UserProfile(name=name, avatar=avatar, bio=bio),
                security=UserSecurity(),
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str, *, include_inactive: bool = False) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if user and (user.is_active or include_inactive):
                return user
            return None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.is_active and u.email == normalized),
                None,
            )

    def list_users(self, *, include_inactive: bool = False) -> List[User]:
        with self._data_lock:
            results = [u for u in self.users.values() if u.is_active or include_inactive]
            return sorted(results, key=lambda u: u.created_at, reverse=True)

    def _require_user(self, user_id: str) -> User:
        user = self.users.get(user_id)
        if not user:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        return user

    def save_password_hash(self, user_id: str, password_hash: str) -> User:
        with self._data_lock:
            user = self._require_user(user_id)
            now = utcnow()
            user.password_hash = password_hash
            user.security.last_password_change = now
            user.updated_at = now
            self._persist_state()
            return user

    def mark_last_login(self, user_id: str) -> User:
        with self._data_lock:
            user = self._require_user(user_id)
            now = utcnow()
            user.last_login_at = now
            user.updated_at = now
            self._persist_state()
            return user

    def update_security(
        self, user_id: str, mutate: Callable[[UserSecurity], None]
    ) -> UserSecurity:
        """Apply ``mutate`` to the stored security block as one atomic step.

        The counters are read and written under the store lock, so two
        concurrent failed logins both count.
        """
        with self._data_lock:
            user = self._require_user(user_id)
            mutate(user.security)
            user.updated_at = utcnow()
            self._persist_state()
            return user.security

    def deactivate_user(self, user_id: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or not user.is_active:
                return False
            user.is_active = False
            user.updated_at = utcnow()
            self._persist_state()
            return True

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            self.refresh_tokens = [t for t in self.refresh_tokens if t.user_id != user_id]
            self.password_reset_tokens = [
                t for t in self.password_reset_tokens if t.user_id != user_id
            ]
            self.email_verification_tokens = [
                t for t in self.email_verification_tokens if t.user_id != user_id
            ]
            self._persist_state()
            return True

    def user_stats(self, now: Optional[datetime] = None) -> UserStats:
        now = now or utcnow()
        with self._data_lock:
            users = list(self.users.values())
            return UserStats(
                total=len(users),
                active=sum(1 for u in users if u.is_active),
                verified=sum(1 for u in users if u.email_verified),
                locked=sum(
                    1
                    for u in users
                    if u.security.locked_until is not None and u.security.locked_until > now
                ),
            )

    # refresh tokens
    def add_refresh_token(
        self,
        user_id: str,
        token: str,
        expires_at: datetime,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> RefreshToken:
        with self._data_lock:
            self._require_user(user_id)
            record = RefreshToken(
                id=new_id(),
                user_id=user_id,
                token=token,
                expires_at=expires_at,
                user_agent=user_agent,
                ip_address=ip_address,
            )
            self.refresh_tokens.append(record)
            self._persist_state()
            return record

    def find_refresh_token(
        self,
        token: str,
        *,
        user_id: Optional[str] = None,
        include_revoked: bool = False,
    ) -> Optional[RefreshToken]:
        with self._data_lock:
            for record in self.refresh_tokens:
                if record.token != token:
                    continue
                if user_id is not None and record.user_id != user_id:
                    continue
                if record.is_revoked and not include_revoked:
                    continue
                return record
            return None

    def list_refresh_tokens(self, user_id: str) -> List[RefreshToken]:
        with self._data_lock:
            return [t for t in self.refresh_tokens if t.user_id == user_id]

    def revoke_refresh_token(self, token: str) -> bool:
        """Mark the active record for ``token`` revoked. Already revoked stays as is."""
        with self._data_lock:
            record = self.find_refresh_token(token)
            if record is None:
                return False
            record.is_revoked = True
            record.revoked_at = utcnow()
            self._persist_state()
            return True

    def rotate_refresh_token(
        self,
        old_token: str,
        user_id: str,
        new_token: str,
        expires_at: datetime,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Optional[RefreshToken]:
        """Revoke ``old_token`` and store ``new_token`` in one write.

        Returns None when ``old_token`` is no longer active, so two
        concurrent refreshes of the same token cannot both succeed.
        """
        with self._data_lock:
            old = self.find_refresh_token(old_token, user_id=user_id)
            if old is None:
                return None
            now = utcnow()
            old.is_revoked = True
            old.revoked_at = now
            record = RefreshToken(
                id=new_id(),
                user_id=user_id,
                token=new_token,
                expires_at=expires_at,
                created_at=now,
                user_agent=user_agent,
                ip_address=ip_address,
            )
            self.refresh_tokens.append(record)
            self._persist_state()
            return record

    def revoke_user_refresh_tokens(self, user_id: str) -> int:
        with self._data_lock:
            now = utcnow()
            count = 0
            for record in self.refresh_tokens:
                if record.user_id == user_id and not record.is_revoked:
                    record.is_revoked = True
                    record.revoked_at = now
                    count += 1
            if count:
                self._persist_state()
            return count

    # password reset tokens
    def add_password_reset_token(
        self,
        user_id: str,
        token: str,
        expires_at: datetime,
        *,
        ip_address: Optional[str] = None,
    ) -> PasswordResetToken:
        with self._data_lock:
            self._require_user(user_id)
            record = PasswordResetToken(
                id=new_id(),
                user_id=user_id,
                token=token,
                expires_at=expires_at,
                ip_address=ip_address,
            )
            self.password_reset_tokens.append(record)
            self._persist_state()
            return record

    def find_active_password_reset_token(
        self, token: str, now: Optional[datetime] = None
    ) -> Optional[PasswordResetToken]:
        now = now or utcnow()
        with self._data_lock:
            return next(
                (
                    t
                    for t in self.password_reset_tokens
                    if t.token == token and t.used_at is None and t.expires_at > now
                ),
                None,
            )

    def consume_password_reset_token(
        self, token: str, password_hash: str, now: Optional[datetime] = None
    ) -> Optional[User]:
        """Apply ``password_hash`` and mark the token used, or return None.

        The active check and the consumption happen under one lock so a
        token cannot be redeemed twice by racing requests.
        """
        now = now or utcnow()
        with self._data_lock:
            record = self.find_active_password_reset_token(token, now)
            if record is None:
                return None
            user = self.users.get(record.user_id)
            if user is None:
                return None
            user.password_hash = password_hash
            user.security.last_password_change = now
            user.updated_at = now
            record.used_at = now
            self._persist_state()
            return user

    # email verification tokens
    def add_email_verification_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> EmailVerificationToken:
        with self._data_lock:
            self._require_user(user_id)
            record = EmailVerificationToken(
                id=new_id(), user_id=user_id, token=token, expires_at=expires_at
            )
            self.email_verification_tokens.append(record)
            self._persist_state()
            return record

    def find_active_email_verification_token(
        self, token: str, now: Optional[datetime] = None
    ) -> Optional[EmailVerificationToken]:
        now = now or utcnow()
        with self._data_lock:
            return next(
                (
                    t
                    for t in self.email_verification_tokens
                    if t.token == token and t.verified_at is None and t.expires_at > now
                ),
                None,
            )

    def consume_email_verification_token(
        self, token: str, now: Optional[datetime] = None
    ) -> Optional[User]:
        now = now or utcnow()
        with self._data_lock:
            record = self.find_active_email_verification_token(token, now)
            if record is None:
                return None
            user = self.users.get(record.user_id)
            if user is None:
                return None
            user.email_verified = True
            user.updated_at = now
            record.verified_at = now
            self._persist_state()
            return user

    # housekeeping
    def cleanup_expired_tokens(self, now: Optional[datetime] = None) -> CleanupReport:
        """Drop expired or consumed one-shot tokens and dead refresh tokens."""
        now = now or utcnow()
        with self._data_lock:
            before = (
                len(self.refresh_tokens),
                len(self.password_reset_tokens),
                len(self.email_verification_tokens),
            )
            self.refresh_tokens = [
                t for t in self.refresh_tokens if t.expires_at > now and not t.is_revoked
            ]
            self.password_reset_tokens = [
                t for t in self.password_reset_tokens if t.expires_at > now and t.used_at is None
            ]
            self.email_verification_tokens = [
                t
                for t in self.email_verification_tokens
                if t.expires_at > now and t.verified_at is None
            ]
            report = CleanupReport(
                refresh_tokens=before[0] - len(self.refresh_tokens),
                password_reset_tokens=before[1] - len(self.password_reset_tokens),
                email_verification_tokens=before[2] - len(self.email_verification_tokens),
            )
            if report.total:
                self._persist_state()
            return report

    # serialization
    def _serialize_user(self, user: User) -> dict:
        prefs = user.profile.preferences
        return {
            "id": user.id,
            "email": user.email,
            "passwordHash": user.password_hash,
            "profile": {
                "name": user.profile.name,
                "avatar": user.profile.avatar,
                "bio": user.profile.bio,
                "preferences": {
                    "theme": prefs.theme,
                    "language": prefs.language,
                    "notifications": {
                        "email": prefs.notifications.email,
                        "push": prefs.notifications.push,
                    },
                },
            },
            "security": {
                "failedLoginAttempts": user.security.failed_login_attempts,
                "lockedUntil": self._serialize_datetime(user.security.locked_until),
                "twoFactorEnabled": user.security.two_factor_enabled,
                "lastPasswordChange": self._serialize_datetime(
                    user.security.last_password_change
                ),
            },
            "isActive": user.is_active,
            "emailVerified": user.email_verified,
            "createdAt": self._serialize_datetime(user.created_at),
            "updatedAt": self._serialize_datetime(user.updated_at),
            "lastLoginAt": self._serialize_datetime(user.last_login_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        profile = data.get("profile") or {}
        prefs = profile.get("preferences") or {}
        notifications = prefs.get("notifications") or {}
        security = data.get("security") or {}
        created_at = self._deserialize_datetime(data.get("createdAt")) or utcnow()
        return User(
            id=str(data["id"]),
            email=normalize_email(data["email"]),
            password_hash=data["passwordHash"],
            profile=UserProfile(
                name=profile.get("name", ""),
                avatar=profile.get("avatar"),
                bio=profile.get("bio"),
                preferences=UserPreferences(
                    theme=prefs.get("theme", "system"),
                    language=prefs.get("language", "ko"),
                    notifications=NotificationPreferences(
                        email=notifications.get("email", True),
                        push=notifications.get("push", True),
                    ),
                ),
            ),
            security=UserSecurity(
                failed_login_attempts=int(security.get("failedLoginAttempts", 0)),
                locked_until=self._deserialize_datetime(security.get("lockedUntil")),
                two_factor_enabled=security.get("twoFactorEnabled", False),
                last_password_change=self._deserialize_datetime(
                    security.get("lastPasswordChange")
                ),
            ),
            is_active=data.get("isActive", True),
            email_verified=data.get("emailVerified", False),
            created_at=created_at,
            updated_at=self._deserialize_datetime(data.get("updatedAt")) or created_at,
            last_login_at=self._deserialize_datetime(data.get("lastLoginAt")),
        )

    def _serialize_refresh_token(self, record: RefreshToken) -> dict:
        return {
            "id": record.id,
            "userId": record.user_id,
            "token": record.token,
            "expiresAt": self._serialize_datetime(record.expires_at),
            "createdAt": self._serialize_datetime(record.created_at),
            "userAgent": record.user_agent,
            "ipAddress": record.ip_address,
            "isRevoked": record.is_revoked,
            "revokedAt": self._serialize_datetime(record.revoked_at),
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshToken:
        return RefreshToken(
            id=str(data["id"]),
            user_id=str(data["userId"]),
            token=data["token"],
            expires_at=self._deserialize_datetime(data["expiresAt"]),
            created_at=self._deserialize_datetime(data.get("createdAt")) or utcnow(),
            user_agent=data.get("userAgent"),
            ip_address=data.get("ipAddress"),
            is_revoked=data.get("isRevoked", False),
            revoked_at=self._deserialize_datetime(data.get("revokedAt")),
        )

    def _serialize_password_reset_token(self, record: PasswordResetToken) -> dict:
        return {
            "id": record.id,
            "userId": record.user_id,
            "token": record.token,
            "expiresAt": self._serialize_datetime(record.expires_at),
            "createdAt": self._serialize_datetime(record.created_at),
            "usedAt": self._serialize_datetime(record.used_at),
            "ipAddress": record.ip_address,
        }

    def _deserialize_password_reset_token(self, data: dict) -> PasswordResetToken:
        return PasswordResetToken(
            id=str(data["id"]),
            user_id=str(data["userId"]),
            token=data["token"],
            expires_at=self._deserialize_datetime(data["expiresAt"]),
            created_at=self._deserialize_datetime(data.get("createdAt")) or utcnow(),
            used_at=self._deserialize_datetime(data.get("usedAt")),
            ip_address=data.get("ipAddress"),
        )

    def _serialize_email_verification_token(self, record: EmailVerificationToken) -> dict:
        return {
            "id": record.id,
            "userId": record.user_id,
            "token": record.token,
            "expiresAt": self._serialize_datetime(record.expires_at),
            "createdAt": self._serialize_datetime(record.created_at),
            "verifiedAt": self._serialize_datetime(record.verified_at),
        }

    def _deserialize_email_verification_token(self, data: dict) -> EmailVerificationToken:
        return EmailVerificationToken(
            id=str(data["id"]),
            user_id=str(data["userId"]),
            token=data["token"],
            expires_at=self._deserialize_datetime(data["expiresAt"]),
            created_at=self._deserialize_datetime(data.get("createdAt")) or utcnow(),
            verified_at=self._deserialize_datetime(data.get("verifiedAt")),
        )
