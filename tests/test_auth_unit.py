"""Session manager state machine and account flows, exercised without HTTP."""

import time
from datetime import datetime, timedelta, timezone

import pytest
from argon2 import PasswordHasher, Type

from authcore.service.errors import (
    ChallengeExpiredError,
    ConflictError,
    CooldownActiveError,
    InvalidAssertionError,
    InvalidCodeError,
    InvalidCredentialsError,
    NoCredentialsError,
    NotRequestedError,
    SessionExpiredError,
    SessionInvalidatedError,
    SessionRevokedError,
    UpstreamUnavailableError,
    UserNotFoundError,
    ValidationError,
)
from authcore.service.hashing import hash_refresh_token
from authcore.service.identity import IdentityClaims
from authcore.service.otp import MemoryChallengeStore


@pytest.fixture
def auth(reset_runtime_state, outbox):
    service = reset_runtime_state.auth
    # Cheap argon2 parameters; the hasher object is shared with both OTP services
    service.hasher._hasher = PasswordHasher(
        time_cost=1, memory_cost=8, parallelism=1, type=Type.ID
    )
    return service


def _skip_access_lifetime(auth, monkeypatch, minutes: int = 16):
    future = time.time() + minutes * 60
    monkeypatch.setattr(auth.codec, "_now", lambda: future)


async def _signup(auth, outbox, email="a@x.com", password="secret1", name="Ann"):
    await auth.request_signup_otp(email, name)
    code = outbox.last_code("signup", email)
    return await auth.signup(email, password, code)


class FakeIdentity:
    def __init__(self, claims=None, error=None):
        self.claims = claims
        self.error = error

    async def verify(self, credential):
        if self.error is not None:
            raise self.error
        return self.claims


class TestSignup:
    async def test_signup_creates_user_and_session(self, auth, outbox):
        user, session, tokens = await _signup(auth, outbox)

        assert user.email == "a@x.com"
        assert user.display_name == "Ann"
        assert user.token_version == 1
        assert session.refresh_token_hash == hash_refresh_token(tokens.refresh_token)
        assert auth.store.get_session_by_refresh_hash(session.refresh_token_hash)

    async def test_email_is_normalized(self, auth, outbox):
        await auth.request_signup_otp("  A@X.com ", None)
        code = outbox.last_code("signup", "a@x.com")
        user, _, _ = await auth.signup("A@x.COM", "secret1", code)

        assert user.email == "a@x.com"
        assert user.display_name == "a"

    async def test_body_name_wins_over_staged_name(self, auth, outbox):
        await auth.request_signup_otp("a@x.com", "Staged")
        code = outbox.last_code("signup", "a@x.com")
        user, _, _ = await auth.signup("a@x.com", "secret1", code, name="Given")

        assert user.display_name == "Given"

    async def test_code_cannot_be_replayed(self, auth, outbox):
        await auth.request_signup_otp("a@x.com", "Ann")
        code = outbox.last_code("signup", "a@x.com")
        await auth.signup("a@x.com", "secret1", code)

        with pytest.raises(NotRequestedError):
            await auth.signup("a@x.com", "secret1", code)

    async def test_wrong_code(self, auth, outbox):
        await auth.request_signup_otp("a@x.com", "Ann")
        code = outbox.last_code("signup", "a@x.com")
        wrong = "999999" if code != "999999" else "999998"

        with pytest.raises(InvalidCodeError):
            await auth.signup("a@x.com", "secret1", wrong)
        assert auth.store.get_user_by_email("a@x.com") is None

    async def test_signup_without_request(self, auth):
        with pytest.raises(NotRequestedError):
            await auth.signup("a@x.com", "secret1", "123456")

    async def test_expired_code_fails_even_when_correct(self, auth, outbox, monkeypatch):
        await auth.request_signup_otp("a@x.com", "Ann")
        code = outbox.last_code("signup", "a@x.com")
        later = datetime.now(timezone.utc) + timedelta(minutes=5, seconds=1)
        monkeypatch.setattr(auth.signup_otp, "_now", lambda: later)

        with pytest.raises(ChallengeExpiredError):
            await auth.signup("a@x.com", "secret1", code)

    async def test_existing_email_cannot_request_code(self, auth, outbox):
        await _signup(auth, outbox)

        with pytest.raises(ConflictError):
            await auth.request_signup_otp("a@x.com", "Again")

    async def test_second_request_inside_cooldown(self, auth, outbox):
        await auth.request_signup_otp("a@x.com", "Ann")

        with pytest.raises(CooldownActiveError) as exc:
            await auth.request_signup_otp("a@x.com", "Ann")
        assert 0 < exc.value.retry_after <= 60
        assert len(outbox.sent) == 1

    async def test_send_failure_discards_challenge(self, auth, outbox):
        outbox.fail = True
        with pytest.raises(UpstreamUnavailableError):
            await auth.request_signup_otp("a@x.com", "Ann")

        # No cooldown is left behind by a code that never went out
        outbox.fail = False
        await auth.request_signup_otp("a@x.com", "Ann")
        assert outbox.last_code("signup", "a@x.com")

    async def test_signup_uses_in_process_store_without_redis(self, auth):
        assert isinstance(auth.signup_otp.store, MemoryChallengeStore)


class TestLogin:
    async def test_access_token_embeds_current_version(self, auth, outbox):
        user, _, _ = await _signup(auth, outbox)
        auth.store.bump_token_version(user.id)

        _, _, tokens = await auth.login("a@x.com", "secret1")

        claims = auth.codec.verify_access(tokens.access_token)
        assert claims.token_version == 2
        assert claims.token_version == auth.store.get_user(user.id).token_version

    async def test_wrong_password_creates_no_session(self, auth, outbox):
        user, _, _ = await _signup(auth, outbox)

        with pytest.raises(InvalidCredentialsError) as exc:
            await auth.login("a@x.com", "wrong-password")
        assert exc.value.message == "Invalid credentials"
        assert len(auth.store.list_user_sessions(user.id)) == 1

    async def test_unknown_email_same_error(self, auth):
        with pytest.raises(InvalidCredentialsError) as exc:
            await auth.login("nobody@x.com", "secret1")
        assert exc.value.message == "Invalid credentials"

    async def test_unknown_email_still_runs_argon2(self, auth, monkeypatch):
        calls = []
        real_verify = auth.hasher.verify

        def counting_verify(stored_hash, secret):
            calls.append(stored_hash)
            return real_verify(stored_hash, secret)

        monkeypatch.setattr(auth.hasher, "verify", counting_verify)

        with pytest.raises(InvalidCredentialsError):
            await auth.login("nobody@x.com", "secret1")
        with pytest.raises(InvalidCredentialsError):
            await auth.login("nobody@x.com", "secret1")

        assert len(calls) == 2
        assert calls[0].startswith("$argon2id$")
        assert calls[0] == calls[1]

    async def test_google_only_account_same_error(self, auth):
        auth.store.create_user("g@x.com", "Gee", identity_provider_id="sub-1")

        with pytest.raises(InvalidCredentialsError) as exc:
            await auth.login("g@x.com", "anything")
        assert exc.value.message == "Invalid credentials"

    async def test_each_login_is_its_own_session(self, auth, outbox):
        user, _, _ = await _signup(auth, outbox)
        await auth.login("a@x.com", "secret1", user_agent="phone", ip_addr="10.0.0.2")

        sessions = auth.store.list_user_sessions(user.id)
        assert len(sessions) == 2
        assert {s.user_agent for s in sessions} == {None, "phone"}


class TestAuthenticate:
    async def test_no_credentials(self, auth):
        with pytest.raises(NoCredentialsError):
            await auth.authenticate(None, None)

    async def test_valid_access_token(self, auth, outbox):
        user, _, tokens = await _signup(auth, outbox)

        ctx = await auth.authenticate(tokens.access_token, tokens.refresh_token)

        assert ctx.user_id == user.id
        assert ctx.display_name == "Ann"
        assert ctx.rotated is None

    async def test_tampered_access_token_does_not_fall_back(self, auth, outbox):
        _, _, tokens = await _signup(auth, outbox)
        tampered = tokens.access_token[:-2] + ("AA" if not tokens.access_token.endswith("AA") else "BB")

        with pytest.raises(InvalidCredentialsError):
            await auth.authenticate(tampered, tokens.refresh_token)

    async def test_refresh_token_in_access_slot_rejected(self, auth, outbox):
        _, _, tokens = await _signup(auth, outbox)

        with pytest.raises(InvalidCredentialsError):
            await auth.authenticate(tokens.refresh_token, None)

    async def test_expired_access_without_refresh(self, auth, outbox, monkeypatch):
        _, _, tokens = await _signup(auth, outbox)
        _skip_access_lifetime(auth, monkeypatch)

        with pytest.raises(SessionExpiredError):
            await auth.authenticate(tokens.access_token, None)

    async def test_expired_access_rotates_through_refresh(self, auth, outbox, monkeypatch):
        user, session, tokens = await _signup(auth, outbox)
        _skip_access_lifetime(auth, monkeypatch)

        ctx = await auth.authenticate(tokens.access_token, tokens.refresh_token)

        assert ctx.user_id == user.id
        assert ctx.rotated is not None
        assert ctx.rotated.refresh_token != tokens.refresh_token
        stored = auth.store.get_session_by_refresh_hash(
            hash_refresh_token(ctx.rotated.refresh_token)
        )
        assert stored.id == session.id
        assert auth.store.get_session_by_refresh_hash(session.refresh_token_hash) is None

    async def test_rotation_refreshes_metadata_and_expiry(self, auth, outbox, monkeypatch):
        _, session, tokens = await _signup(auth, outbox)
        later = session.created_at + timedelta(days=10)
        monkeypatch.setattr(auth, "_now", lambda: later)

        ctx = await auth.refresh(
            tokens.refresh_token, user_agent="laptop", ip_addr="10.0.0.9"
        )

        stored = auth.store.get_session_by_refresh_hash(
            hash_refresh_token(ctx.rotated.refresh_token)
        )
        assert stored.user_agent == "laptop"
        assert stored.ip_addr == "10.0.0.9"
        assert stored.expires_at == later + timedelta(days=30)

    async def test_refresh_is_single_use(self, auth, outbox):
        _, _, tokens = await _signup(auth, outbox)

        first = await auth.refresh(tokens.refresh_token)
        assert first.rotated is not None

        with pytest.raises(SessionRevokedError):
            await auth.refresh(tokens.refresh_token)
        # The winner of the rotation keeps working
        assert (await auth.refresh(first.rotated.refresh_token)).rotated

    async def test_garbage_refresh_token(self, auth):
        with pytest.raises(SessionExpiredError):
            await auth.refresh("not-a-token")

    async def test_access_token_in_refresh_slot(self, auth, outbox):
        _, _, tokens = await _signup(auth, outbox)

        with pytest.raises(SessionExpiredError):
            await auth.refresh(tokens.access_token)

    async def test_refresh_requires_token(self, auth):
        with pytest.raises(NoCredentialsError):
            await auth.refresh(None)

    async def test_expired_session_row_is_removed(self, auth, outbox, monkeypatch):
        _, session, tokens = await _signup(auth, outbox)
        monkeypatch.setattr(auth, "_now", lambda: session.expires_at)

        with pytest.raises(SessionExpiredError):
            await auth.refresh(tokens.refresh_token)
        assert auth.store.get_session_by_refresh_hash(session.refresh_token_hash) is None

    async def test_deleted_user(self, auth, outbox):
        user, _, tokens = await _signup(auth, outbox)
        auth.store.users.pop(user.id)

        with pytest.raises(UserNotFoundError):
            await auth.authenticate(tokens.access_token, None)


class TestLogout:
    async def test_logout_one_session_only(self, auth, outbox):
        _, _, first = await _signup(auth, outbox)
        _, _, second = await auth.login("a@x.com", "secret1")

        assert await auth.logout(first.refresh_token)
        with pytest.raises(SessionRevokedError):
            await auth.refresh(first.refresh_token)
        assert (await auth.refresh(second.refresh_token)).rotated

    async def test_logout_is_idempotent(self, auth, outbox):
        _, _, tokens = await _signup(auth, outbox)

        assert await auth.logout(tokens.refresh_token)
        assert not await auth.logout(tokens.refresh_token)
        assert not await auth.logout(None)

    async def test_logout_all_voids_every_token(self, auth, outbox):
        user, _, first = await _signup(auth, outbox)
        _, _, second = await auth.login("a@x.com", "secret1")

        await auth.logout_all(user.id)

        assert auth.store.list_user_sessions(user.id) == []
        assert auth.store.get_user(user.id).token_version == 2
        for pair in (first, second):
            with pytest.raises(SessionInvalidatedError):
                await auth.authenticate(pair.access_token, None)
            with pytest.raises(SessionRevokedError):
                await auth.refresh(pair.refresh_token)

    async def test_version_mismatch_with_live_session(self, auth, outbox):
        user, _, tokens = await _signup(auth, outbox)
        # Version bumped but the session row survived
        auth.store.bump_token_version(user.id)

        with pytest.raises(SessionInvalidatedError):
            await auth.refresh(tokens.refresh_token)

    async def test_logout_all_unknown_user(self, auth):
        with pytest.raises(UserNotFoundError):
            await auth.logout_all("missing")


class TestPasswordReset:
    async def test_reset_flow(self, auth, outbox):
        user, _, tokens = await _signup(auth, outbox)
        await auth.request_password_reset("a@x.com")
        code = outbox.last_code("reset", "a@x.com")

        await auth.reset_password("a@x.com", code, "new-secret")

        row = auth.store.get_user(user.id)
        assert row.reset_challenge_hash is None
        assert row.token_version == 2
        assert auth.store.list_user_sessions(user.id) == []
        with pytest.raises(InvalidCredentialsError):
            await auth.login("a@x.com", "secret1")
        assert await auth.login("a@x.com", "new-secret")
        with pytest.raises(SessionInvalidatedError):
            await auth.authenticate(tokens.access_token, None)

    async def test_reset_code_cannot_be_replayed(self, auth, outbox):
        await _signup(auth, outbox)
        await auth.request_password_reset("a@x.com")
        code = outbox.last_code("reset", "a@x.com")
        await auth.reset_password("a@x.com", code, "new-secret")

        with pytest.raises(NotRequestedError):
            await auth.reset_password("a@x.com", code, "other-secret")

    async def test_concurrent_reset_with_same_code_succeeds_once(self, auth, outbox, monkeypatch):
        await _signup(auth, outbox)
        await auth.request_password_reset("a@x.com")
        code = outbox.last_code("reset", "a@x.com")
        # Another worker verified the same code and spent it first
        real_verify = auth.reset_otp.verify

        def verify_then_lose_race(email, otp):
            challenge = real_verify(email, otp)
            auth.reset_otp.store.consume(email, challenge.code_hash)
            return challenge

        monkeypatch.setattr(auth.reset_otp, "verify", verify_then_lose_race)

        with pytest.raises(NotRequestedError):
            await auth.reset_password("a@x.com", code, "other-secret")
        assert await auth.login("a@x.com", "secret1")

    async def test_reset_code_expires_after_two_minutes(self, auth, outbox, monkeypatch):
        await _signup(auth, outbox)
        await auth.request_password_reset("a@x.com")
        code = outbox.last_code("reset", "a@x.com")
        later = datetime.now(timezone.utc) + timedelta(minutes=2, seconds=1)
        monkeypatch.setattr(auth.reset_otp, "_now", lambda: later)

        with pytest.raises(ChallengeExpiredError):
            await auth.reset_password("a@x.com", code, "new-secret")

    async def test_unknown_and_google_accounts_are_silent(self, auth, outbox):
        auth.store.create_user("g@x.com", "Gee", identity_provider_id="sub-1")

        assert await auth.request_password_reset("nobody@x.com") is None
        assert await auth.request_password_reset("g@x.com") is None
        assert outbox.sent == []

    async def test_reset_cooldown(self, auth, outbox):
        await _signup(auth, outbox)
        await auth.request_password_reset("a@x.com")

        with pytest.raises(CooldownActiveError):
            await auth.request_password_reset("a@x.com")

    async def test_reset_not_requested(self, auth, outbox):
        await _signup(auth, outbox)

        with pytest.raises(NotRequestedError):
            await auth.reset_password("a@x.com", "123456", "new-secret")


class TestGoogleLogin:
    def _claims(self, **overrides):
        data = {
            "subject": "sub-1",
            "email": "G@x.com",
            "name": "Gee",
            "picture": "https://img/g.png",
        }
        data.update(overrides)
        return IdentityClaims(**data)

    async def test_first_login_creates_passwordless_user(self, auth):
        auth.identity = FakeIdentity(self._claims())

        user, session, _ = await auth.google_login("cred")

        assert user.email == "g@x.com"
        assert user.password_hash is None
        assert user.identity_provider_id == "sub-1"
        assert user.token_version == 1
        assert user.profile_picture == "https://img/g.png"
        assert session.user_id == user.id

    async def test_returning_user_matched_by_subject(self, auth):
        auth.identity = FakeIdentity(self._claims())
        first, _, _ = await auth.google_login("cred")
        auth.identity = FakeIdentity(
            self._claims(email="changed@x.com", picture="https://img/new.png")
        )

        again, _, _ = await auth.google_login("cred")

        assert again.id == first.id
        assert again.avatar_url == "https://img/g.png"

    async def test_google_login_keeps_avatar_set_by_user(self, auth):
        auth.identity = FakeIdentity(self._claims())
        user, _, _ = await auth.google_login("cred")
        await auth.update_profile(user.id, avatar_url="https://img/mine.png")

        again, _, _ = await auth.google_login("cred")

        assert again.avatar_url == "https://img/mine.png"

    async def test_google_login_fills_empty_avatar(self, auth):
        auth.identity = FakeIdentity(self._claims(picture=None))
        first, _, _ = await auth.google_login("cred")
        assert first.avatar_url is None
        auth.identity = FakeIdentity(self._claims())

        again, _, _ = await auth.google_login("cred")

        assert again.avatar_url == "https://img/g.png"

    async def test_email_owned_by_password_account_conflicts(self, auth, outbox):
        await _signup(auth, outbox, email="g@x.com")
        auth.identity = FakeIdentity(self._claims())

        with pytest.raises(ConflictError):
            await auth.google_login("cred")

    async def test_invalid_assertion_propagates(self, auth):
        auth.identity = FakeIdentity(error=InvalidAssertionError())

        with pytest.raises(InvalidAssertionError):
            await auth.google_login("cred")


class TestAccountManagement:
    async def test_update_profile(self, auth, outbox):
        user, _, _ = await _signup(auth, outbox)

        updated = await auth.update_profile(
            user.id, display_name="  Annie ", avatar_url="https://img/a.png"
        )

        assert updated.display_name == "Annie"
        assert updated.profile_picture == "https://img/a.png"

    async def test_blank_name_rejected(self, auth, outbox):
        user, _, _ = await _signup(auth, outbox)

        with pytest.raises(ValidationError):
            await auth.update_profile(user.id, display_name="   ")

    async def test_change_password_keeps_current_session(self, auth, outbox):
        user, _, current = await _signup(auth, outbox)
        _, _, other = await auth.login("a@x.com", "secret1")

        removed = await auth.change_password(
            user.id, "secret1", "secret2", refresh_token=current.refresh_token
        )

        assert removed == 1
        assert (await auth.refresh(current.refresh_token)).rotated
        with pytest.raises(SessionRevokedError):
            await auth.refresh(other.refresh_token)
        assert await auth.login("a@x.com", "secret2")

    async def test_change_password_checks_current(self, auth, outbox):
        user, _, _ = await _signup(auth, outbox)

        with pytest.raises(InvalidCredentialsError):
            await auth.change_password(user.id, "wrong", "secret2")

    async def test_delete_account(self, auth, outbox):
        user, _, tokens = await _signup(auth, outbox)

        await auth.delete_account(user.id)

        assert auth.store.get_user(user.id) is None
        with pytest.raises(SessionRevokedError):
            await auth.refresh(tokens.refresh_token)
        with pytest.raises(UserNotFoundError):
            await auth.delete_account(user.id)
