from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from taskflow.config import Settings
from taskflow.logging import get_logger
from taskflow.service.errors import AuthenticationError, ConflictError
from taskflow.service.orchestrator import Orchestrator
from taskflow.service.result import Err, Ok, Result
from taskflow.service.validation import Check, is_valid_email, is_valid_password
from taskflow.storage.errors import ConstraintViolation
from taskflow.storage.models import User
from taskflow.storage.repositories import UserRepository

logger = get_logger(__name__)

INVALID_CREDENTIALS = "Invalid email or password"


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None


@dataclass
class TokenGrant:
    access_token: str
    user_id: str
    expires_in: int
    token_type: str = "bearer"


def normalize_email(email: Any) -> Any:
    if isinstance(email, str):
        return email.strip().lower()
    return email


class AuthService:
    """Password accounts and HS256 access tokens."""

    def __init__(
        self,
        users: UserRepository,
        orchestrator: Orchestrator,
        settings: Settings,
    ) -> None:
        self.users = users
        self.orchestrator = orchestrator
        self.settings = settings
        self.logger = logger
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._clock_skew_leeway = timedelta(seconds=120)

    # -- accounts ---------------------------------------------------------

    async def signup(
        self, email: Any, password: Any, client_id: Optional[str] = None
    ) -> Result[TokenGrant]:
        email = normalize_email(email)

        def checks() -> List[Check]:
            return [
                ("email", is_valid_email(email), "Email address is invalid"),
                ("password", is_valid_password(password), "Password must be at least 8 characters"),
            ]

        def action() -> Result[TokenGrant]:
            if self.users.get_by_email(email) is not None:
                return Err(ConflictError("email already registered", detail={"field": "email"}))
            pwd_hash, algo = self._hash_password(password)
            try:
                user = self.users.create(email, pwd_hash, algo)
            except ConstraintViolation:
                return Err(ConflictError("email already registered", detail={"field": "email"}))
            self.logger.info("user_signed_up", user_id=user.id)
            return Ok(self._issue_token(user))

        return await self.orchestrator.admit_anonymous(
            "signup", client_id or str(email), checks, action
        )

    async def login(
        self, email: Any, password: Any, client_id: Optional[str] = None
    ) -> Result[TokenGrant]:
        email = normalize_email(email)

        def checks() -> List[Check]:
            return [
                ("email", is_valid_email(email), "Email address is invalid"),
                ("password", isinstance(password, str) and bool(password), "Password is required"),
            ]

        def action() -> Result[TokenGrant]:
            user = self.users.get_by_email(email)
            if user is None or not self.verify_password(user, password):
                return Err(AuthenticationError(INVALID_CREDENTIALS))
            self.logger.info("user_logged_in", user_id=user.id)
            return Ok(self._issue_token(user))

        return await self.orchestrator.admit_anonymous(
            "login", client_id or str(email), checks, action
        )

    def _hash_password(self, password: str) -> tuple[str, str]:
        algo = "argon2id"
        digest = self._pwd_hasher.hash(password)
        return digest, algo

    def verify_password(self, user: User, password: str) -> bool:
        if user.password_algo != "argon2id":
            self.logger.warning("password_algo_mismatch", user_id=user.id, algo=user.password_algo)
            return False
        try:
            return self._pwd_hasher.verify(user.password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            self.logger.warning("password_verification_failed", user_id=user.id)
            return False

    # -- tokens -----------------------------------------------------------

    def authenticate(self, authorization: Optional[str]) -> Optional[AuthContext]:
        """Resolve a ``Bearer`` header to the caller, or ``None``."""
        token = self._extract_bearer(authorization)
        if not token:
            return None
        payload = self._decode_jwt(token)
        if not payload or payload.get("token_type") != "access":
            return None
        sub = payload.get("sub")
        if not isinstance(sub, str) or not sub:
            return None
        return AuthContext(user_id=sub)

    def _issue_token(self, user: User) -> TokenGrant:
        ttl_seconds = self.settings.access_token_ttl_minutes * 60
        now = int(time.time())
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + ttl_seconds,
            "token_type": "access",
        }
        return TokenGrant(
            access_token=self._encode_jwt(payload),
            user_id=user.id,
            expires_in=ttl_seconds,
        )

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None

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

        # Pin the algorithm so a forged header cannot downgrade verification
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not sig_b64.isascii() or not hmac.compare_digest(expected_sig, sig_b64):
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
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        return payload
