from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Protocol, Tuple

from authcore.config import Settings
from authcore.logging import get_logger, hash_email
from authcore.service.email import EmailService
from authcore.service.errors import (
    ConflictError,
    InvalidCredentialsError,
    NoCredentialsError,
    SessionExpiredError,
    SessionInvalidatedError,
    SessionRevokedError,
    UpstreamUnavailableError,
    UserNotFoundError,
    ValidationError,
)
from authcore.service.hashing import SecretHasher, hash_refresh_token
from authcore.service.identity import GoogleIdentityVerifier
from authcore.service.otp import (
    ChallengeStore,
    MemoryChallengeStore,
    OtpService,
    RedisChallengeStore,
    UserRowChallengeStore,
)
from authcore.service.tokens import TokenClaims, TokenCodec, TokenError, TokenFailure, TokenPair
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import Session, User
from authcore.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        display_name: str,
        *,
        password_hash: Optional[str] = None,
        identity_provider_id: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_provider(self, identity_provider_id: str) -> Optional[User]: ...

    def update_password(self, user_id: str, password_hash: str) -> Optional[User]: ...

    def update_profile(
        self,
        user_id: str,
        *,
        display_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> Optional[User]: ...

    def bump_token_version(self, user_id: str) -> Optional[int]: ...

    def set_reset_challenge(
        self,
        user_id: str,
        code_hash: str,
        expires_at: datetime,
        last_sent_at: datetime,
    ) -> None: ...

    def clear_reset_challenge(self, user_id: str) -> None: ...

    def consume_reset_challenge(self, user_id: str, code_hash: str) -> bool: ...

    def record_login(
        self, user_id: str, *, avatar_url: Optional[str] = None
    ) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> bool: ...

    def create_session(self, session: Session) -> Session: ...

    def get_session_by_refresh_hash(self, refresh_token_hash: str) -> Optional[Session]: ...

    def rotate_session(
        self,
        session_id: str,
        refresh_token_hash: str,
        *,
        expires_at: datetime,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> Optional[Session]: ...

    def delete_session_by_refresh_hash(self, refresh_token_hash: str) -> bool: ...

    def delete_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int: ...

    def list_user_sessions(self, user_id: str) -> List[Session]: ...


@dataclass
class AuthContext:
    user_id: str
    email: str
    display_name: str
    avatar_url: str
    token_version: int
    # Set when the request was authenticated through the refresh token
    rotated: Optional[TokenPair] = None


class AuthService:
    """Sessions, token rotation and OTP-gated account flows."""

    def __init__(
        self,
        store: AuthStore,
        cache: Optional[RedisCache],
        settings: Settings,
        *,
        email: Optional[EmailService] = None,
        identity: Optional[GoogleIdentityVerifier] = None,
    ) -> None:
        self.store: AuthStore = store
        self.cache = cache
        self.settings = settings
        self.email = email or EmailService()
        self.identity = identity or GoogleIdentityVerifier(
            settings.google_client_id,
            timeout_seconds=settings.identity_timeout_seconds,
        )
        self.hasher = SecretHasher()
        self.codec = TokenCodec(
            settings.jwt_secret,
            settings.jwt_refresh_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl=settings.access_token_ttl_minutes * 60,
            refresh_ttl=settings.refresh_token_ttl_days * 86400,
            leeway_seconds=settings.jwt_leeway_seconds,
        )
        signup_store: ChallengeStore
        if cache is not None:
            signup_store = RedisChallengeStore(
                cache, "signup", ttl_seconds=settings.signup_otp_ttl_seconds
            )
        else:
            signup_store = MemoryChallengeStore()
        self.signup_otp = OtpService(
            signup_store,
            ttl_seconds=settings.signup_otp_ttl_seconds,
            cooldown_seconds=settings.otp_resend_cooldown_seconds,
            purpose="signup",
            hasher=self.hasher,
        )
        self.reset_otp = OtpService(
            UserRowChallengeStore(store),
            ttl_seconds=settings.reset_otp_ttl_seconds,
            cooldown_seconds=settings.otp_resend_cooldown_seconds,
            purpose="reset",
            hasher=self.hasher,
        )
        self.logger = logger

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(days=self.settings.refresh_token_ttl_days)

    # -- session primitives -------------------------------------------------

    def _start_session(
        self,
        user: User,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> Tuple[Session, TokenPair]:
        tokens = self.codec.issue_pair(user.id, user.email, user.token_version)
        session = Session.new(
            user.id,
            hash_refresh_token(tokens.refresh_token),
            user.token_version,
            ttl_days=self.settings.refresh_token_ttl_days,
            user_agent=user_agent,
            ip_addr=ip_addr,
            now=self._now(),
        )
        session = self.store.create_session(session)
        self.logger.info("session_created", user_id=user.id, session_id=session.id)
        return session, tokens

    def _context(self, user: User, rotated: Optional[TokenPair] = None) -> AuthContext:
        return AuthContext(
            user_id=user.id,
            email=user.email,
            display_name=user.display_name,
            avatar_url=user.profile_picture,
            token_version=user.token_version,
            rotated=rotated,
        )

    def _rotate(
        self,
        refresh_token: str,
        *,
        user_agent: Optional[str],
        ip_addr: Optional[str],
    ) -> Tuple[TokenClaims, TokenPair]:
        try:
            claims = self.codec.verify_refresh(refresh_token)
        except TokenError as exc:
            self.logger.info("refresh_token_rejected", reason=exc.reason.value)
            raise SessionExpiredError() from exc

        session = self.store.get_session_by_refresh_hash(
            hash_refresh_token(refresh_token)
        )
        if session is None or session.user_id != claims.sub:
            self.logger.info("refresh_session_missing", user_id=claims.sub)
            raise SessionRevokedError()
        if session.is_expired(self._now()):
            self.store.delete_session_by_refresh_hash(session.refresh_token_hash)
            raise SessionExpiredError()

        user = self.store.get_user(claims.sub)
        if user is None:
            raise UserNotFoundError()
        if user.token_version != claims.token_version:
            self.logger.info(
                "refresh_token_version_mismatch",
                user_id=user.id,
                session_id=session.id,
            )
            raise SessionInvalidatedError()

        tokens = self.codec.issue_pair(user.id, user.email, user.token_version)
        rotated = self.store.rotate_session(
            session.id,
            hash_refresh_token(tokens.refresh_token),
            expires_at=self._now() + self.refresh_ttl,
            user_agent=user_agent,
            ip_addr=ip_addr,
        )
        if rotated is None:
            # Deleted between lookup and update (concurrent logout)
            raise SessionRevokedError()
        self.logger.info("session_rotated", user_id=user.id, session_id=session.id)
        return claims, tokens

    async def authenticate(
        self,
        access_token: Optional[str],
        refresh_token: Optional[str],
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> AuthContext:
        """Resolve the caller from an access token, falling back to refresh.

        A tampered access token is rejected outright; only an expired one
        falls through to the refresh token. Refresh rotates the session in
        place, so the presented refresh token is single-use.
        """
        if not access_token and not refresh_token:
            raise NoCredentialsError()

        claims: Optional[TokenClaims] = None
        rotated: Optional[TokenPair] = None
        if access_token:
            try:
                claims = self.codec.verify_access(access_token)
            except TokenError as exc:
                if exc.reason is not TokenFailure.EXPIRED:
                    self.logger.info("access_token_rejected", reason=exc.reason.value)
                    raise InvalidCredentialsError() from exc

        if claims is None:
            if not refresh_token:
                raise SessionExpiredError()
            claims, rotated = self._rotate(
                refresh_token, user_agent=user_agent, ip_addr=ip_addr
            )

        user = self.store.get_user(claims.sub)
        if user is None:
            raise UserNotFoundError()
        if user.token_version != claims.token_version:
            raise SessionInvalidatedError()
        return self._context(user, rotated)

    async def refresh(
        self,
        refresh_token: Optional[str],
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> AuthContext:
        if not refresh_token:
            raise NoCredentialsError()
        return await self.authenticate(
            None, refresh_token, user_agent=user_agent, ip_addr=ip_addr
        )

    # -- login / logout -----------------------------------------------------

    async def login(
        self,
        email: str,
        password: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> Tuple[User, Session, TokenPair]:
        email = normalize_email(email)
        user = self.store.get_user_by_email(email)
        if user is None or not user.password_hash:
            verified = self.hasher.verify_missing(password)
        else:
            verified = self.hasher.verify(user.password_hash, password)
        if user is None or not verified:
            self.logger.info("login_failed", email_hash=hash_email(email))
            raise InvalidCredentialsError()
        user = self.store.record_login(user.id) or user
        session, tokens = self._start_session(user, user_agent=user_agent, ip_addr=ip_addr)
        self.logger.info("login_succeeded", user_id=user.id)
        return user, session, tokens

    async def logout(self, refresh_token: Optional[str]) -> bool:
        """Drop the session bound to this refresh token; absent is fine."""
        if not refresh_token:
            return False
        removed = self.store.delete_session_by_refresh_hash(
            hash_refresh_token(refresh_token)
        )
        self.logger.info("logout", session_removed=removed)
        return removed

    async def logout_all(self, user_id: str) -> int:
        """Bump token_version and delete every session of the user."""
        new_version = self.store.bump_token_version(user_id)
        if new_version is None:
            raise UserNotFoundError()
        removed = self.store.delete_user_sessions(user_id)
        self.logger.info(
            "logout_all", user_id=user_id, token_version=new_version, sessions=removed
        )
        return removed

    # -- signup -------------------------------------------------------------

    async def _send(self, sender, to_email: str, code: str) -> None:
        try:
            sent = await asyncio.wait_for(
                asyncio.to_thread(sender, to_email, code),
                timeout=self.settings.email_timeout_seconds,
            )
        except asyncio.TimeoutError:
            self.logger.error("otp_email_timeout", email_hash=hash_email(to_email))
            sent = False
        if not sent:
            raise UpstreamUnavailableError("Could not send verification code")

    async def request_signup_otp(self, email: str, name: Optional[str] = None) -> None:
        email = normalize_email(email)
        if self.store.get_user_by_email(email):
            raise ConflictError("User already exists")
        code = self.signup_otp.issue(email, display_name=(name or "").strip() or None)
        try:
            await self._send(self.email.send_signup_otp, email, code)
        except UpstreamUnavailableError:
            self.signup_otp.discard(email)
            raise

    async def signup(
        self,
        email: str,
        password: str,
        otp: str,
        name: Optional[str] = None,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> Tuple[User, Session, TokenPair]:
        email = normalize_email(email)
        challenge = self.signup_otp.consume(email, otp)
        if self.store.get_user_by_email(email):
            raise ConflictError("User already exists")
        display_name = (
            (name or "").strip() or challenge.display_name or email.split("@")[0]
        )
        try:
            user = self.store.create_user(
                email, display_name, password_hash=self.hasher.hash(password)
            )
        except ConstraintViolation as exc:
            raise ConflictError("User already exists", detail=exc.detail) from exc
        session, tokens = self._start_session(user, user_agent=user_agent, ip_addr=ip_addr)
        self.logger.info("signup_completed", user_id=user.id)
        return user, session, tokens

    # -- identity provider --------------------------------------------------

    async def google_login(
        self,
        credential: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> Tuple[User, Session, TokenPair]:
        claims = await self.identity.verify(credential)
        user = self.store.get_user_by_provider(claims.subject)
        if user is None:
            email = normalize_email(claims.email)
            if self.store.get_user_by_email(email):
                # Subject is the durable key; never merge on email alone
                self.logger.info("google_email_conflict", email_hash=hash_email(email))
                raise ConflictError("An account with this email already exists")
            try:
                user = self.store.create_user(
                    email,
                    claims.name or email.split("@")[0],
                    identity_provider_id=claims.subject,
                    avatar_url=claims.picture,
                )
            except ConstraintViolation as exc:
                raise ConflictError(
                    "An account with this email already exists", detail=exc.detail
                ) from exc
            self.logger.info("google_user_created", user_id=user.id)
        user = self.store.record_login(user.id, avatar_url=claims.picture) or user
        session, tokens = self._start_session(user, user_agent=user_agent, ip_addr=ip_addr)
        return user, session, tokens

    # -- password reset -----------------------------------------------------

    async def request_password_reset(self, email: str) -> None:
        """Send a reset code. Unknown and Google-only accounts succeed silently."""
        email = normalize_email(email)
        user = self.store.get_user_by_email(email)
        if user is None or not user.password_hash:
            self.logger.info("password_reset_unknown", email_hash=hash_email(email))
            return
        code = self.reset_otp.issue(email)
        try:
            await self._send(self.email.send_reset_otp, email, code)
        except UpstreamUnavailableError:
            self.reset_otp.discard(email)
            raise

    async def reset_password(self, email: str, otp: str, new_password: str) -> None:
        email = normalize_email(email)
        self.reset_otp.consume(email, otp)
        user = self.store.get_user_by_email(email)
        if user is None:
            raise UserNotFoundError()
        self.store.update_password(user.id, self.hasher.hash(new_password))
        await self.logout_all(user.id)
        self.logger.info("password_reset_completed", user_id=user.id)

    # -- account management -------------------------------------------------

    async def get_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise UserNotFoundError()
        return user

    async def update_profile(
        self,
        user_id: str,
        *,
        display_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> User:
        if display_name is not None:
            display_name = display_name.strip()
            if not display_name:
                raise ValidationError("Name cannot be empty")
        user = self.store.update_profile(
            user_id, display_name=display_name, avatar_url=avatar_url
        )
        if user is None:
            raise UserNotFoundError()
        return user

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        *,
        refresh_token: Optional[str] = None,
    ) -> int:
        """Replace the password and end every other session of the user."""
        user = await self.get_user(user_id)
        if not user.password_hash or not self.hasher.verify(
            user.password_hash, current_password
        ):
            raise InvalidCredentialsError()
        self.store.update_password(user.id, self.hasher.hash(new_password))
        keep: Optional[str] = None
        if refresh_token:
            current = self.store.get_session_by_refresh_hash(
                hash_refresh_token(refresh_token)
            )
            if current is not None and current.user_id == user.id:
                keep = current.id
        removed = self.store.delete_user_sessions(user.id, except_session_id=keep)
        self.logger.info("password_changed", user_id=user.id, sessions_removed=removed)
        return removed

    async def delete_account(self, user_id: str) -> None:
        if not self.store.delete_user(user_id):
            raise UserNotFoundError()
        self.logger.info("account_deleted", user_id=user_id)

