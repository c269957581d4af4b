from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from personachat.storage.models import UserSecurity


@dataclass(frozen=True)
class LockoutPolicy:
    """Brute-force lockout rules applied to a user's security block.

    The counter keeps growing while an account is locked; only
    ``locked_until`` decides whether a login is refused.
    """

    max_attempts: int = 5
    lockout: timedelta = timedelta(hours=12)

    def is_locked(self, security: UserSecurity, now: datetime) -> bool:
        return security.locked_until is not None and security.locked_until > now

    def register_failure(self, security: UserSecurity, now: datetime) -> None:
        security.failed_login_attempts += 1
        if security.failed_login_attempts >= self.max_attempts:
            security.locked_until = now + self.lockout

    def register_success(self, security: UserSecurity) -> None:
        security.failed_login_attempts = 0
        security.locked_until = None

    def remaining_attempts(self, security: UserSecurity) -> int:
        return max(self.max_attempts - security.failed_login_attempts, 0)
