from __future__ import annotations

import math
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Protocol

from authcore.logging import get_logger, hash_email
from authcore.service.errors import (
    ChallengeExpiredError,
    CooldownActiveError,
    InvalidCodeError,
    NotRequestedError,
)
from authcore.service.hashing import SecretHasher
from authcore.storage.redis_cache import RedisCache

logger = get_logger(__name__)

# How long an expired challenge is kept so a late verify reports "expired"
# rather than "not requested".
DEFAULT_RETENTION_SECONDS = 600


@dataclass
class OtpChallenge:
    email: str
    code_hash: str
    expires_at: datetime
    last_sent_at: datetime
    display_name: Optional[str] = None


class ChallengeStore(Protocol):
    def get(self, email: str) -> Optional[OtpChallenge]: ...

    def put(self, challenge: OtpChallenge) -> None: ...

    def delete(self, email: str) -> None: ...

    def consume(self, email: str, code_hash: str) -> bool: ...


class MemoryChallengeStore:
    """Process-local challenge map, purged lazily."""

    def __init__(self, retention_seconds: int = DEFAULT_RETENTION_SECONDS) -> None:
        self.retention = timedelta(seconds=retention_seconds)
        self._entries: Dict[str, OtpChallenge] = {}
        self._lock = threading.Lock()

    def get(self, email: str) -> Optional[OtpChallenge]:
        with self._lock:
            return self._entries.get(email)

    def put(self, challenge: OtpChallenge) -> None:
        with self._lock:
            self._entries[challenge.email] = challenge

    def delete(self, email: str) -> None:
        with self._lock:
            self._entries.pop(email, None)

    def consume(self, email: str, code_hash: str) -> bool:
        with self._lock:
            challenge = self._entries.get(email)
            if challenge is None or challenge.code_hash != code_hash:
                return False
            del self._entries[email]
            return True

    def purge(self, now: datetime) -> int:
        with self._lock:
            stale = [
                email
                for email, challenge in self._entries.items()
                if challenge.expires_at + self.retention <= now
            ]
            for email in stale:
                self._entries.pop(email, None)
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RedisChallengeStore:
    """Challenges shared across workers through Redis, expired by key TTL."""

    def __init__(
        self,
        cache: RedisCache,
        purpose: str,
        *,
        ttl_seconds: int,
        retention_seconds: int = DEFAULT_RETENTION_SECONDS,
    ) -> None:
        self.cache = cache
        self.purpose = purpose
        self.key_ttl = ttl_seconds + retention_seconds

    def get(self, email: str) -> Optional[OtpChallenge]:
        payload = self.cache.get_otp_challenge(self.purpose, email)
        if not payload:
            return None
        try:
            return OtpChallenge(
                email=payload["email"],
                code_hash=payload["code_hash"],
                expires_at=datetime.fromisoformat(payload["expires_at"]),
                last_sent_at=datetime.fromisoformat(payload["last_sent_at"]),
                display_name=payload.get("display_name"),
            )
        except (KeyError, TypeError, ValueError):
            logger.warning("otp_challenge_unreadable", purpose=self.purpose)
            return None

    def put(self, challenge: OtpChallenge) -> None:
        payload = {
            "email": challenge.email,
            "code_hash": challenge.code_hash,
            "expires_at": challenge.expires_at.isoformat(),
            "last_sent_at": challenge.last_sent_at.isoformat(),
            "display_name": challenge.display_name,
        }
        self.cache.set_otp_challenge(self.purpose, challenge.email, payload, self.key_ttl)

    def delete(self, email: str) -> None:
        self.cache.delete_otp_challenge(self.purpose, email)

    def consume(self, email: str, code_hash: str) -> bool:
        return self.cache.consume_otp_challenge(self.purpose, email, code_hash)


class UserRowChallengeStore:
    """Reset challenges kept on the user row itself."""

    def __init__(self, store) -> None:
        self.store = store

    def get(self, email: str) -> Optional[OtpChallenge]:
        user = self.store.get_user_by_email(email)
        if not user or not user.reset_challenge_hash:
            return None
        if not user.reset_challenge_expires_at or not user.reset_challenge_last_sent_at:
            return None
        return OtpChallenge(
            email=user.email,
            code_hash=user.reset_challenge_hash,
            expires_at=user.reset_challenge_expires_at,
            last_sent_at=user.reset_challenge_last_sent_at,
        )

    def put(self, challenge: OtpChallenge) -> None:
        user = self.store.get_user_by_email(challenge.email)
        if not user:
            logger.warning("reset_challenge_user_missing")
            return
        self.store.set_reset_challenge(
            user.id,
            challenge.code_hash,
            challenge.expires_at,
            challenge.last_sent_at,
        )

    def delete(self, email: str) -> None:
        user = self.store.get_user_by_email(email)
        if user:
            self.store.clear_reset_challenge(user.id)

    def consume(self, email: str, code_hash: str) -> bool:
        user = self.store.get_user_by_email(email)
        if not user:
            return False
        return self.store.consume_reset_challenge(user.id, code_hash)


def generate_code() -> str:
    """Uniform six-digit code with no leading zero."""
    return str(secrets.randbelow(900000) + 100000)


class OtpService:
    """Issue and check one pending code per email.

    A re-request inside the cooldown window is refused; once it elapses the
    new code overwrites the old one. The lock serializes read-modify-write
    on the backing store within this process.
    """

    def __init__(
        self,
        store: ChallengeStore,
        *,
        ttl_seconds: int,
        cooldown_seconds: int,
        purpose: str = "signup",
        hasher: Optional[SecretHasher] = None,
        cleanup_interval_seconds: int = 60,
    ) -> None:
        self.store = store
        self.ttl = timedelta(seconds=ttl_seconds)
        self.cooldown = timedelta(seconds=cooldown_seconds)
        self.purpose = purpose
        self.hasher = hasher or SecretHasher()
        self._lock = threading.Lock()
        self._cleanup_interval = timedelta(seconds=cleanup_interval_seconds)
        self._last_cleanup = self._now()

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def maybe_cleanup(self) -> None:
        purge = getattr(self.store, "purge", None)
        if purge is None:
            return
        now = self._now()
        if now - self._last_cleanup < self._cleanup_interval:
            return
        self._last_cleanup = now
        removed = purge(now)
        if removed:
            logger.debug("otp_challenges_purged", purpose=self.purpose, removed=removed)

    def issue(self, email: str, display_name: Optional[str] = None) -> str:
        """Create a fresh challenge and return the plaintext code."""
        self.maybe_cleanup()
        with self._lock:
            now = self._now()
            existing = self.store.get(email)
            if existing is not None:
                ready_at = existing.last_sent_at + self.cooldown
                if now < ready_at:
                    retry_after = math.ceil((ready_at - now).total_seconds())
                    logger.info(
                        "otp_cooldown_active",
                        purpose=self.purpose,
                        email_hash=hash_email(email),
                        retry_after=retry_after,
                    )
                    raise CooldownActiveError(retry_after)
            code = generate_code()
            self.store.put(
                OtpChallenge(
                    email=email,
                    code_hash=self.hasher.hash(code),
                    expires_at=now + self.ttl,
                    last_sent_at=now,
                    display_name=display_name,
                )
            )
        logger.info("otp_issued", purpose=self.purpose, email_hash=hash_email(email))
        return code

    def verify(self, email: str, code: str) -> OtpChallenge:
        """Check a code without spending it."""
        with self._lock:
            challenge = self.store.get(email)
            if challenge is None:
                raise NotRequestedError()
            if self._now() >= challenge.expires_at:
                self.store.delete(email)
                raise ChallengeExpiredError()
            if not self.hasher.verify(challenge.code_hash, code):
                logger.info(
                    "otp_code_mismatch",
                    purpose=self.purpose,
                    email_hash=hash_email(email),
                )
                raise InvalidCodeError()
            return challenge

    def consume(self, email: str, code: str) -> OtpChallenge:
        """Verify a code and spend it in one conditional store write.

        Two workers holding the same valid code race on the delete; only
        the winner gets the challenge back, the other sees not-requested.
        """
        challenge = self.verify(email, code)
        with self._lock:
            spent = self.store.consume(email, challenge.code_hash)
        if not spent:
            logger.info(
                "otp_already_consumed",
                purpose=self.purpose,
                email_hash=hash_email(email),
            )
            raise NotRequestedError()
        return challenge

    def discard(self, email: str) -> None:
        with self._lock:
            self.store.delete(email)
