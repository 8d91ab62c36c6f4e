from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import quote

DEFAULT_AVATAR_BASE = "https://api.dicebear.com/7.x/avataaars/svg?seed="


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    display_name: str
    password_hash: Optional[str] = None
    identity_provider_id: Optional[str] = None
    avatar_url: Optional[str] = None
    token_version: int = 1
    reset_challenge_hash: Optional[str] = None
    reset_challenge_expires_at: Optional[datetime] = None
    reset_challenge_last_sent_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    last_login_at: Optional[datetime] = None

    @property
    def profile_picture(self) -> str:
        """Avatar URL, falling back to a generated one seeded by email."""
        if self.avatar_url:
            return self.avatar_url
        return DEFAULT_AVATAR_BASE + quote(self.email, safe="")

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)


@dataclass
class Session:
    id: str
    user_id: str
    refresh_token_hash: str
    token_version_snapshot: int
    created_at: datetime
    expires_at: datetime
    last_used_at: Optional[datetime] = None
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        refresh_token_hash: str,
        token_version: int,
        ttl_days: int = 30,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        now: Optional[datetime] = None,
    ) -> "Session":
        now = now or _utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            refresh_token_hash=refresh_token_hash,
            token_version_snapshot=token_version,
            created_at=now,
            expires_at=now + timedelta(days=ttl_days),
            last_used_at=now,
            user_agent=user_agent,
            ip_addr=ip_addr,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or _utcnow()) >= self.expires_at
