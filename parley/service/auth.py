from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from parley.config import Settings
from parley.logging import get_logger
from parley.service.crypto import SecretBox
from parley.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    ServerError,
    ValidationError,
)
from parley.storage.errors import ConstraintViolation
from parley.storage.models import User

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        handle: Optional[str] = None,
        *,
        role: str = "user",
        daily_limit: Optional[int] = None,
    ) -> User: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def set_user_model_key(self, user_id: str, cipher: Optional[str]) -> Optional[User]: ...


@dataclass
class AuthContext:
    user_id: str
    role: str


class AuthService:
    """Password accounts, bearer tokens and personal model keys."""

    def __init__(self, store: AuthStore, settings: Settings) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._secrets = SecretBox(settings.user_key_encryption_key)
        self.logger = logger
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=120)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def signup(
        self, email: str, password: str, handle: Optional[str] = None
    ) -> tuple[User, str]:
        if not self.settings.allow_signup:
            raise ForbiddenError("signup is disabled")
        try:
            user = self.store.create_user(email=email.strip().lower(), handle=handle)
        except ConstraintViolation as exc:
            raise ConflictError("email already exists", detail=exc.detail) from exc
        self.save_password(user.id, password)
        self.logger.info("user_signed_up", user_id=user.id)
        return user, self.issue_token(user)

    async def login(self, email: str, password: str) -> tuple[User, str]:
        user = self.store.get_user_by_email(email.strip().lower())
        if not user or not self.verify_password(user.id, password):
            raise AuthenticationError("invalid credentials")
        if user.is_blocked:
            raise ForbiddenError("account is blocked")
        return user, self.issue_token(user)

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), "argon2id"

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            self.logger.warning("password_verification_failed", user_id=user_id)
            return False

    def save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    # tokens
    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            return None
        # reject anything but HS256 to avoid algorithm confusion
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None
        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        return payload

    def issue_token(self, user: User) -> str:
        now = self._now()
        expires = now + timedelta(minutes=self.settings.access_token_ttl_minutes)
        return self._encode_jwt(
            {
                "iss": self.settings.jwt_issuer,
                "aud": self.settings.jwt_audience,
                "sub": user.id,
                "role": user.role,
                "iat": int(now.timestamp()),
                "exp": int(expires.timestamp()),
            }
        )

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None

    def authenticate(self, authorization: Optional[str]) -> Optional[AuthContext]:
        """Resolve the caller from an ``Authorization: Bearer`` header, or None."""
        token = self._extract_bearer(authorization)
        if not token:
            return None
        payload = self._decode_jwt(token)
        if not payload:
            return None
        user = self.store.get_user(payload.get("sub") or "")
        if not user:
            return None
        # a role change invalidates tokens minted under the old role
        if payload.get("role") != user.role:
            return None
        return AuthContext(user_id=user.id, role=user.role)

    # personal model keys
    def set_model_key(self, user_id: str, api_key: str) -> User:
        api_key = api_key.strip()
        if not api_key:
            raise ValidationError("API key is required")
        if not self._secrets.is_configured:
            raise ServerError("personal keys are not enabled on this server")
        user = self.store.set_user_model_key(user_id, self._secrets.encrypt(api_key))
        if not user:
            raise AuthenticationError("user not found")
        self.logger.info("model_key_saved", user_id=user_id)
        return user

    def clear_model_key(self, user_id: str) -> User:
        user = self.store.set_user_model_key(user_id, None)
        if not user:
            raise AuthenticationError("user not found")
        self.logger.info("model_key_cleared", user_id=user_id)
        return user

    def resolve_model_key(self, user: User) -> Optional[str]:
        """Plaintext personal key, or None when unset or undecryptable."""
        return self._secrets.decrypt(user.model_key_cipher)
