from __future__ import annotations

import base64
import enum
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any

from authcore.logging import get_logger

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"

_REQUIRED_CLAIMS = ("sub", "email", "token_version", "token_type", "exp")


class TokenFailure(str, enum.Enum):
    EXPIRED = "expired"
    INVALID_SIGNATURE = "invalid_signature"
    MALFORMED = "malformed"


class TokenError(Exception):
    """Raised by :class:`TokenCodec` when a token cannot be trusted."""

    def __init__(self, reason: TokenFailure) -> None:
        super().__init__(reason.value)
        self.reason = reason


@dataclass(frozen=True)
class TokenClaims:
    sub: str
    email: str
    token_version: int
    token_type: str
    exp: int
    iat: int | None = None
    jti: str | None = None


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: int
    refresh_expires_at: int


class TokenCodec:
    """HS256 compact tokens for access and refresh, each with its own secret.

    Holding two secrets means a leaked access secret cannot mint refresh
    tokens and vice versa. Every token carries a random ``jti`` so two tokens
    issued for the same user in the same second still differ.
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        *,
        issuer: str,
        audience: str,
        access_ttl: int,
        refresh_ttl: int,
        leeway_seconds: int = 0,
    ) -> None:
        if not access_secret or not refresh_secret:
            raise ValueError("token secrets must be non-empty")
        self._access_secret = access_secret.encode()
        self._refresh_secret = refresh_secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.leeway_seconds = leeway_seconds

    def _now(self) -> float:
        return time.time()

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, secret: bytes) -> str:
        digest = hmac.new(secret, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def _encode(self, payload: dict[str, Any], secret: bytes) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, secret)}"

    def _issue(
        self, user_id: str, email: str, token_version: int, token_type: str
    ) -> tuple[str, int]:
        now = int(self._now())
        ttl = self.access_ttl if token_type == ACCESS else self.refresh_ttl
        secret = self._access_secret if token_type == ACCESS else self._refresh_secret
        exp = now + ttl
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": user_id,
            "email": email,
            "token_version": token_version,
            "token_type": token_type,
            "iat": now,
            "exp": exp,
            "jti": str(uuid.uuid4()),
        }
        return self._encode(payload, secret), exp

    def issue_access(self, user_id: str, email: str, token_version: int) -> str:
        return self._issue(user_id, email, token_version, ACCESS)[0]

    def issue_refresh(self, user_id: str, email: str, token_version: int) -> str:
        return self._issue(user_id, email, token_version, REFRESH)[0]

    def issue_pair(self, user_id: str, email: str, token_version: int) -> TokenPair:
        access, access_exp = self._issue(user_id, email, token_version, ACCESS)
        refresh, refresh_exp = self._issue(user_id, email, token_version, REFRESH)
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )

    def verify(self, token: str, secret: bytes, token_type: str) -> TokenClaims:
        """Check signature, audience, type and expiry; return the claims.

        Signature is checked before expiry so a forged token never reports
        itself as merely expired.
        """
        if not token or not isinstance(token, str):
            raise TokenError(TokenFailure.MALFORMED)
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenError(TokenFailure.MALFORMED) from None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenError(TokenFailure.MALFORMED) from None
        if not isinstance(header, dict):
            raise TokenError(TokenFailure.MALFORMED)
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise TokenError(TokenFailure.INVALID_SIGNATURE)

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", secret)
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise TokenError(TokenFailure.INVALID_SIGNATURE)

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenError(TokenFailure.MALFORMED) from None
        if not isinstance(payload, dict) or any(
            payload.get(claim) is None for claim in _REQUIRED_CLAIMS
        ):
            raise TokenError(TokenFailure.MALFORMED)

        if payload.get("iss") != self.issuer:
            raise TokenError(TokenFailure.INVALID_SIGNATURE)
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud or payload.get("token_type") != token_type:
            raise TokenError(TokenFailure.INVALID_SIGNATURE)

        try:
            exp_ts = int(payload["exp"])
            token_version = int(payload["token_version"])
        except (TypeError, ValueError):
            raise TokenError(TokenFailure.MALFORMED) from None
        if exp_ts <= self._now() - self.leeway_seconds:
            raise TokenError(TokenFailure.EXPIRED)

        return TokenClaims(
            sub=str(payload["sub"]),
            email=str(payload["email"]),
            token_version=token_version,
            token_type=str(payload["token_type"]),
            exp=exp_ts,
            iat=payload.get("iat"),
            jti=payload.get("jti"),
        )

    def verify_access(self, token: str) -> TokenClaims:
        return self.verify(token, self._access_secret, ACCESS)

    def verify_refresh(self, token: str) -> TokenClaims:
        return self.verify(token, self._refresh_secret, REFRESH)
