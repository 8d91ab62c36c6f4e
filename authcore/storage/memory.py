from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from authcore.logging import get_logger
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import Session, User


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryStore:
    """In-process user and session store persisted to a JSON snapshot.

    Records are handed out as copies so callers observe the same
    read-then-write semantics they would get from a database row.
    """

    def __init__(self, fs_root: str = "/tmp/authcore", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        # RLock so helpers can re-enter from within a locked mutation
        self._data_lock = threading.RLock()
        self.persist = persist
        self.fs_root = Path(fs_root)
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt is not None else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        if not raw:
            return None
        parsed = datetime.fromisoformat(raw)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    # -- users -------------------------------------------------------------

    def create_user(
        self,
        email: str,
        display_name: str,
        *,
        password_hash: Optional[str] = None,
        identity_provider_id: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> User:
        if not password_hash and not identity_provider_id:
            raise ConstraintViolation(
                "user requires a password or identity provider",
                {"field": "password_hash"},
            )
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if identity_provider_id and any(
                existing.identity_provider_id == identity_provider_id
                for existing in self.users.values()
            ):
                raise ConstraintViolation(
                    "identity already linked", {"field": "identity_provider_id"}
                )
            now = _utcnow()
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                display_name=display_name,
                password_hash=password_hash,
                identity_provider_id=identity_provider_id,
                avatar_url=avatar_url,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def get_user_by_provider(self, identity_provider_id: str) -> Optional[User]:
        with self._data_lock:
            user = next(
                (
                    u
                    for u in self.users.values()
                    if u.identity_provider_id == identity_provider_id
                ),
                None,
            )
            return replace(user) if user else None

    def _mutate_user(self, user_id: str, **changes) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            updated = replace(user, updated_at=_utcnow(), **changes)
            self.users[user_id] = updated
            self._persist_state()
            return replace(updated)

    def update_password(self, user_id: str, password_hash: str) -> Optional[User]:
        return self._mutate_user(user_id, password_hash=password_hash)

    def update_profile(
        self,
        user_id: str,
        *,
        display_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> Optional[User]:
        changes: dict = {}
        if display_name is not None:
            changes["display_name"] = display_name
        if avatar_url is not None:
            changes["avatar_url"] = avatar_url
        return self._mutate_user(user_id, **changes)

    def bump_token_version(self, user_id: str) -> Optional[int]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            updated = self._mutate_user(user_id, token_version=user.token_version + 1)
            return updated.token_version if updated else None

    def set_reset_challenge(
        self,
        user_id: str,
        code_hash: str,
        expires_at: datetime,
        last_sent_at: datetime,
    ) -> None:
        self._mutate_user(
            user_id,
            reset_challenge_hash=code_hash,
            reset_challenge_expires_at=expires_at,
            reset_challenge_last_sent_at=last_sent_at,
        )

    def clear_reset_challenge(self, user_id: str) -> None:
        self._mutate_user(
            user_id,
            reset_challenge_hash=None,
            reset_challenge_expires_at=None,
            reset_challenge_last_sent_at=None,
        )

    def consume_reset_challenge(self, user_id: str, code_hash: str) -> bool:
        """Clear the reset challenge only if it still holds ``code_hash``."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.reset_challenge_hash != code_hash:
                return False
            self.users[user_id] = replace(
                user,
                reset_challenge_hash=None,
                reset_challenge_expires_at=None,
                reset_challenge_last_sent_at=None,
                updated_at=_utcnow(),
            )
            self._persist_state()
            return True

    def record_login(
        self, user_id: str, *, avatar_url: Optional[str] = None
    ) -> Optional[User]:
        """Stamp the login; a provider avatar only fills an empty slot."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            changes: dict = {"last_login_at": _utcnow()}
            if avatar_url and not user.avatar_url:
                changes["avatar_url"] = avatar_url
            return self._mutate_user(user_id, **changes)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            for sess_id, sess in list(self.sessions.items()):
                if sess.user_id == user_id:
                    self.sessions.pop(sess_id, None)
            self._persist_state()
            return True

    # -- sessions ----------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation(
                    "user does not exist", {"user_id": session.user_id}
                )
            if any(
                s.refresh_token_hash == session.refresh_token_hash
                for s in self.sessions.values()
            ):
                raise ConstraintViolation(
                    "refresh token already bound", {"field": "refresh_token_hash"}
                )
            self.sessions[session.id] = replace(session)
            self._persist_state()
            return replace(session)

    def get_session_by_refresh_hash(self, refresh_token_hash: str) -> Optional[Session]:
        with self._data_lock:
            sess = next(
                (
                    s
                    for s in self.sessions.values()
                    if s.refresh_token_hash == refresh_token_hash
                ),
                None,
            )
            return replace(sess) if sess else None

    def rotate_session(
        self,
        session_id: str,
        refresh_token_hash: str,
        *,
        expires_at: datetime,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> Optional[Session]:
        """Rebind a session to a new refresh hash. Last write wins."""
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return None
            updated = replace(
                sess,
                refresh_token_hash=refresh_token_hash,
                expires_at=expires_at,
                last_used_at=_utcnow(),
                user_agent=user_agent or sess.user_agent,
                ip_addr=ip_addr or sess.ip_addr,
            )
            self.sessions[session_id] = updated
            self._persist_state()
            return replace(updated)

    def delete_session_by_refresh_hash(self, refresh_token_hash: str) -> bool:
        with self._data_lock:
            stale = [
                sid
                for sid, sess in self.sessions.items()
                if sess.refresh_token_hash == refresh_token_hash
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return bool(stale)

    def delete_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            stale = [
                sid
                for sid, sess in self.sessions.items()
                if sess.user_id == user_id and sid != except_session_id
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            return [
                replace(s) for s in self.sessions.values() if s.user_id == user_id
            ]

    # -- persistence -------------------------------------------------------

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.warning("memory_state_corrupt", path=str(path), error=str(exc))
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "display_name": user.display_name,
            "password_hash": user.password_hash,
            "identity_provider_id": user.identity_provider_id,
            "avatar_url": user.avatar_url,
            "token_version": user.token_version,
            "reset_challenge_hash": user.reset_challenge_hash,
            "reset_challenge_expires_at": self._serialize_datetime(
                user.reset_challenge_expires_at
            ),
            "reset_challenge_last_sent_at": self._serialize_datetime(
                user.reset_challenge_last_sent_at
            ),
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
            "last_login_at": self._serialize_datetime(user.last_login_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            display_name=data.get("display_name") or data["email"].split("@")[0],
            password_hash=data.get("password_hash"),
            identity_provider_id=data.get("identity_provider_id"),
            avatar_url=data.get("avatar_url"),
            token_version=int(data.get("token_version", 1)),
            reset_challenge_hash=data.get("reset_challenge_hash"),
            reset_challenge_expires_at=self._deserialize_datetime(
                data.get("reset_challenge_expires_at")
            ),
            reset_challenge_last_sent_at=self._deserialize_datetime(
                data.get("reset_challenge_last_sent_at")
            ),
            created_at=self._deserialize_datetime(data.get("created_at")) or _utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or _utcnow(),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "refresh_token_hash": session.refresh_token_hash,
            "token_version_snapshot": session.token_version_snapshot,
            "created_at": self._serialize_datetime(session.created_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "last_used_at": self._serialize_datetime(session.last_used_at),
            "user_agent": session.user_agent,
            "ip_addr": session.ip_addr,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            refresh_token_hash=data["refresh_token_hash"],
            token_version_snapshot=int(data.get("token_version_snapshot", 1)),
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            last_used_at=self._deserialize_datetime(data.get("last_used_at")),
            user_agent=data.get("user_agent"),
            ip_addr=data.get("ip_addr"),
        )
