from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from ticketdesk.config import Settings
from ticketdesk.logging import get_logger
from ticketdesk.service.errors import TokenExpiredError, TokenInvalidError
from ticketdesk.storage.models import Role

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_token_expiry: datetime
    refresh_token_expiry: datetime


@dataclass
class TokenClaims:
    account_id: str
    email: str
    role: Role
    token_type: str
    expires_at: datetime
    session_id: Optional[str] = None
    remember_me: bool = False
    jti: Optional[str] = None


class TokenService:
    """Mints and verifies stateless HS256 access/refresh token pairs.

    Access and refresh tokens are signed with different secrets, so one kind
    can never pass verification as the other.
    """

    def __init__(self, settings: Settings) -> None:
        if not settings.access_token_secret or not settings.refresh_token_secret:
            raise RuntimeError("token signing secrets are not configured")
        self.settings = settings
        self._secrets = {
            ACCESS: settings.access_token_secret.encode(),
            REFRESH: settings.refresh_token_secret.encode(),
        }
        self._clock_skew_leeway = timedelta(seconds=settings.clock_skew_leeway_seconds)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def refresh_ttl(self, remember_me: bool) -> timedelta:
        minutes = (
            self.settings.remember_me_refresh_token_ttl_minutes
            if remember_me
            else self.settings.refresh_token_ttl_minutes
        )
        return timedelta(minutes=minutes)

    def issue(
        self,
        payload: dict[str, Any],
        *,
        remember_me: bool = False,
        session_id: Optional[str] = None,
    ) -> TokenPair:
        """Mint a fresh pair for ``payload`` (``sub``, ``email``, ``role``)."""
        now = self._now()
        access_exp = now + timedelta(minutes=self.settings.access_token_ttl_minutes)
        refresh_exp = now + self.refresh_ttl(remember_me)
        base = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": payload["sub"],
            "email": payload.get("email", ""),
            "role": Role(payload["role"]).value,
            "iat": int(now.timestamp()),
        }
        if session_id:
            base["sid"] = session_id
        access_token = self._encode_jwt(
            {
                **base,
                "token_type": ACCESS,
                "jti": uuid.uuid4().hex,
                "exp": int(access_exp.timestamp()),
            },
            ACCESS,
        )
        refresh_token = self._encode_jwt(
            {
                **base,
                "token_type": REFRESH,
                "remember_me": bool(remember_me),
                "jti": uuid.uuid4().hex,
                "exp": int(refresh_exp.timestamp()),
            },
            REFRESH,
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_token_expiry=datetime.fromtimestamp(int(access_exp.timestamp()), timezone.utc),
            refresh_token_expiry=datetime.fromtimestamp(int(refresh_exp.timestamp()), timezone.utc),
        )

    def verify_access(self, token: str) -> TokenClaims:
        return self._verify(token, ACCESS)

    def verify_refresh(self, token: str) -> TokenClaims:
        return self._verify(token, REFRESH)

    def _verify(self, token: str, token_type: str) -> TokenClaims:
        payload = self._decode_jwt(token, token_type)
        if payload.get("token_type") != token_type:
            raise TokenInvalidError("Token type mismatch")
        try:
            claims = TokenClaims(
                account_id=str(payload["sub"]),
                email=str(payload.get("email", "")),
                role=Role(payload["role"]),
                token_type=token_type,
                expires_at=datetime.fromtimestamp(float(payload["exp"]), timezone.utc),
                session_id=payload.get("sid"),
                remember_me=bool(payload.get("remember_me", False)),
                jti=payload.get("jti"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenInvalidError("Token payload is incomplete") from exc
        return claims

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, token_type: str) -> str:
        return self._encode_segment(
            hmac.new(
                self._secrets[token_type], signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any], token_type: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, token_type)}"

    def _decode_jwt(self, token: str, token_type: str) -> dict[str, Any]:
        if not isinstance(token, str) or not token:
            raise TokenInvalidError("Token is empty")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError as exc:
            raise TokenInvalidError("Malformed token") from exc

        # Reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.info("jwt_header_decode_failed", kind=token_type)
            raise TokenInvalidError("Malformed token header") from exc
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise TokenInvalidError("Unsupported token algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", token_type)
        if not hmac.compare_digest(
            expected_sig.encode("ascii"), sig_b64.encode("utf-8", "surrogatepass")
        ):
            raise TokenInvalidError("Invalid token signature")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalidError("Malformed token payload") from exc
        if not isinstance(payload, dict):
            raise TokenInvalidError("Malformed token payload")

        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenInvalidError("Unexpected token issuer")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise TokenInvalidError("Unexpected token audience")

        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenInvalidError("Token has no expiry") from exc
        if exp_ts <= self._now().timestamp() - self._clock_skew_leeway.total_seconds():
            raise TokenExpiredError()
        return payload
