from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Literal, Optional

from personachat.logging import get_logger

logger = get_logger(__name__)

TokenType = Literal["access", "refresh"]
TOKEN_TYPES = ("access", "refresh")

MIN_SECURE_TOKEN_BYTES = 32


@dataclass(frozen=True)
class TokenPayload:
    subject_id: str
    email: str
    issued_at: int
    expires_at: int
    token_type: str
    jti: str

    @property
    def expires_at_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.expires_at, tz=timezone.utc)


def generate_secure_token(nbytes: int = MIN_SECURE_TOKEN_BYTES) -> str:
    """Opaque URL-safe token for one-shot flows (reset, verification).

    The value carries no payload; it is only ever matched by equality
    against a stored record.
    """
    if nbytes < MIN_SECURE_TOKEN_BYTES:
        raise ValueError(f"secure tokens need at least {MIN_SECURE_TOKEN_BYTES} random bytes")
    return secrets.token_urlsafe(nbytes)


class TokenCodec:
    """HS256 signer for access and refresh bearer tokens.

    Each token type has its own secret, so a token of one type never
    verifies as the other even before the ``type`` claim is checked.
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if not access_secret or not refresh_secret:
            raise ValueError("both access and refresh secrets are required")
        if access_secret == refresh_secret:
            raise ValueError("access and refresh secrets must differ")
        self._secrets = {
            "access": access_secret.encode("utf-8"),
            "refresh": refresh_secret.encode("utf-8"),
        }
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now_ts(self) -> int:
        return int(self._clock().timestamp())

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, token_type: str, signing_input: str) -> str:
        digest = hmac.new(
            self._secrets[token_type], signing_input.encode("utf-8"), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def issue(self, subject_id: str, email: str, token_type: TokenType, ttl_seconds: int) -> str:
        if token_type not in TOKEN_TYPES:
            raise ValueError(f"unknown token type: {token_type}")
        issued_at = self._now_ts()
        payload: dict[str, Any] = {
            "sub": subject_id,
            "email": email,
            "iat": issued_at,
            "exp": issued_at + int(ttl_seconds),
            "type": token_type,
            # Distinguishes tokens minted for the same user within one second
            "jti": str(uuid.uuid4()),
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(token_type, signing_input)}"

    def verify(self, token: str, expected_type: TokenType) -> Optional[TokenPayload]:
        """Return the payload, or None on any structural or cryptographic failure."""
        if expected_type not in TOKEN_TYPES or not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Only HS256 is accepted; rejects alg=none and algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        # compare_digest raises TypeError on non-ASCII str input
        if not sig_b64.isascii():
            return None
        expected_sig = self._sign(expected_type, f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("type") != expected_type:
            return None
        sub = payload.get("sub")
        exp = payload.get("exp")
        iat = payload.get("iat")
        if not isinstance(sub, str) or not sub:
            return None
        try:
            exp_ts = int(exp)
            iat_ts = int(iat)
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._now_ts():
            return None
        return TokenPayload(
            subject_id=sub,
            email=str(payload.get("email", "")),
            issued_at=iat_ts,
            expires_at=exp_ts,
            token_type=expected_type,
            jti=str(payload.get("jti", "")),
        )
