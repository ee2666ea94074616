"""Tests for local registration, login and OAuth account resolution."""
import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.context import AppContext
from app.core.exceptions import (
    AlreadyExists,
    IncorrectPassword,
    InvalidCredentials,
    OAuthAccountOnly,
    PasswordChangeNotAllowed,
    ProfileConflict,
)
from app.core.oauth import OAuthProfile
from app.models.session import Session
from app.models.user import AuthProvider, User
from app.services.identity_service import (
    DEFAULT_FIRST_NAME,
    DEFAULT_LAST_NAME,
    DEFAULT_OAUTH_AGE,
    IdentityService,
    LocalLogin,
    placeholder_email,
)


PASSWORD = "Secur3!@#"


async def _register(
    context: AppContext,
    db_session: AsyncSession,
    username: str = "jdoe",
    email: str = "j@x.com",
    password: str = PASSWORD,
) -> User:
    return await context.identity.register_local(
        username=username,
        first_name="John",
        last_name="Doe",
        email=email,
        age=30,
        password=password,
        db=db_session,
    )


async def _count_users(db_session: AsyncSession) -> int:
    result = await db_session.execute(select(func.count()).select_from(User))
    return result.scalar_one()


def _google_profile(**overrides) -> OAuthProfile:
    values = {
        "provider": AuthProvider.GOOGLE,
        "external_id": "google-123",
        "emails": ["jane@example.com"],
        "given_name": "Jane",
        "family_name": "Smith",
        "display_name": "Jane Smith",
    }
    values.update(overrides)
    return OAuthProfile(**values)


class TestRegisterLocal:
    """Tests for local account registration."""

    async def test__register_local__stores_hash_not_plaintext(
        self, context: AppContext, db_session: AsyncSession,
    ) -> None:
        user = await _register(context, db_session)

        assert user.id is not None
        assert user.provider == AuthProvider.LOCAL
        assert user.password != PASSWORD
        assert context.password_hasher.verify(PASSWORD, user.password)

    async def test__register_local__duplicate_email_reports_email(
        self, context: AppContext, db_session: AsyncSession,
    ) -> None:
        await _register(context, db_session)

        with pytest.raises(AlreadyExists) as exc_info:
            await _register(context, db_session, username="someone_else")

        assert exc_info.value.field == "email"
        assert exc_info.value.message == AlreadyExists.EMAIL_MESSAGE

    async def test__register_local__duplicate_username_reports_username(
        self, context: AppContext, db_session: AsyncSession,
    ) -> None:
        await _register(context, db_session)

        with pytest.raises(AlreadyExists) as exc_info:
            await _register(context, db_session, email="other@x.com")

        assert exc_info.value.field == "username"
        assert exc_info.value.message == AlreadyExists.USERNAME_MESSAGE

    async def test__register_local__both_colliding_reports_email(
        self, context: AppContext, db_session: AsyncSession,
    ) -> None:
        await _register(context, db_session, username="first", email="first@x.com")
        await _register(context, db_session, username="second", email="second@x.com")

        with pytest.raises(AlreadyExists) as exc_info:
            await _register(context, db_session, username="second", email="first@x.com")

        assert exc_info.value.field == "email"

    async def test__register_local__lost_race_still_reports_already_exists(
        self, context: AppContext, db_session: AsyncSession, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        await _register(context, db_session)

        original = context.identity._collision_field
        calls = []

        async def skip_first_check(db, email, username):
            calls.append(email)
            if len(calls) == 1:
                return None
            return await original(db, email, username)

        monkeypatch.setattr(context.identity, "_collision_field", skip_first_check)

        with pytest.raises(AlreadyExists) as exc_info:
            await _register(context, db_session, username="racer")

        assert exc_info.value.field == "email"
        assert len(calls) == 2
        assert await _count_users(db_session) == 1


class TestLoginLocal:
    """Tests for email and password login."""

    async def test__login_local__returns_registered_user(
        self, context: AppContext, db_session: AsyncSession,
    ) -> None:
        registered = await _register(context, db_session)

        user = await context.identity.login_local("j@x.com", PASSWORD, db_session)

        assert user.id == registered.id

    async def test__login_local__unknown_email_and_wrong_password_look_the_same(
        self, context: AppContext, db_session: AsyncSession,
    ) -> None:
        await _register(context, db_session)

        with pytest.raises(InvalidCredentials) as unknown:
            await context.identity.login_local("nobody@x.com", PASSWORD, db_session)
        with pytest.raises(InvalidCredentials) as wrong:
            await context.identity.login_local("j@x.com", "Wr0ng!pass", db_session)

        assert unknown.value.message == wrong.value.message

    async def test__login_local__unknown_email_still_runs_a_verification(
        self, context: AppContext, db_session: AsyncSession, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        hasher = context.password_hasher
        original_verify = hasher.verify
        verified = []

        def spy_verify(plaintext, digest):
            verified.append(digest)
            return original_verify(plaintext, digest)

        monkeypatch.setattr(hasher, "verify", spy_verify)

        with pytest.raises(InvalidCredentials):
            await context.identity.login_local("nobody@x.com", PASSWORD, db_session)

        assert verified == [hasher.dummy_digest]

    async def test__login_local__oauth_only_account_is_refused(
        self, context: AppContext, db_session: AsyncSession,
    ) -> None:
        await context.identity.resolve_oauth(_google_profile(), db_session)

        with pytest.raises(OAuthAccountOnly):
            await context.identity.login_local("jane@example.com", "anything", db_session)

    async def test__resolve__dispatches_local_login(
        self, context: AppContext, db_session: AsyncSession,
    ) -> None:
        registered = await _register(context, db_session)

        user = await context.identity.resolve(LocalLogin("j@x.com", PASSWORD), db_session)

        assert user.id == registered.id

    async def test__resolve__rejects_unknown_credential_types(
        self, context: AppContext, db_session: AsyncSession,
    ) -> None:
        with pytest.raises(TypeError):
            await context.identity.resolve(("j@x.com", PASSWORD), db_session)


class TestResolveOAuth:
    """Tests for finding, linking and creating OAuth users."""

    async def test__resolve_oauth__creates_user_with_defaults(
        self, context: AppContext, db_session: AsyncSession,
    ) -> None:
        profile = _google_profile(given_name=None, family_name=None, refresh_token="refresh-1")

        user = await context.identity.resolve_oauth(profile, db_session)

        assert user.provider == AuthProvider.GOOGLE
        assert user.provider_id == "google-123"
        assert user.email == "jane@example.com"
        assert user.first_name == DEFAULT_FIRST_NAME
        assert user.last_name == DEFAULT_LAST_NAME
        assert user.age == DEFAULT_OAUTH_AGE
        assert user.password is None
        assert user.refresh_token == "refresh-1"
        assert user.username.startswith("jane_")

    async def test__resolve_oauth__is_idempotent(
        self, context: AppContext, db_session: AsyncSession,
    ) -> None:
        first = await context.identity.resolve_oauth(_google_profile(), db_session)
        second = await context.identity.resolve(_google_profile(), db_session)

        assert first.id == second.id
        assert await _count_users(db_session) == 1

    async def test__resolve_oauth__links_existing_local_account_by_email(
        self, context: AppContext, db_session: AsyncSession,
    ) -> None:
        local = await _register(context, db_session, email="jane@example.com")

        user = await context.identity.resolve_oauth(_google_profile(), db_session)

        assert user.id == local.id
        assert user.provider == AuthProvider.GOOGLE
        assert user.provider_id == "google-123"
        assert await _count_users(db_session) == 1

    async def test__resolve_oauth__linked_account_keeps_local_password(
        self, context: AppContext, db_session: AsyncSession,
    ) -> None:
        local = await _register(context, db_session, email="jane@example.com")
        await context.identity.resolve_oauth(_google_profile(), db_session)

        user = await context.identity.login_local("jane@example.com", PASSWORD, db_session)

        assert user.id == local.id

    async def test__resolve_oauth__linking_disabled_refuses_email_match(
        self, context: AppContext, db_session: AsyncSession,
    ) -> None:
        await _register(context, db_session, email="jane@example.com")
        identity = IdentityService(context.password_hasher, context.sessions, link_by_email=False)

        with pytest.raises(AlreadyExists) as exc_info:
            await identity.resolve_oauth(_google_profile(), db_session)

        assert exc_info.value.field == "email"

    async def test__resolve_oauth__linking_disabled_still_finds_linked_account(
        self, context: AppContext, db_session: AsyncSession,
    ) -> None:
        created = await context.identity.resolve_oauth(_google_profile(), db_session)
        identity = IdentityService(context.password_hasher, context.sessions, link_by_email=False)

        user = await identity.resolve_oauth(_google_profile(), db_session)

        assert user.id == created.id

    async def test__resolve_oauth__provider_id_match_beats_email_match(
        self, context: AppContext, db_session: AsyncSession,
    ) -> None:
        linked = await context.identity.resolve_oauth(_google_profile(), db_session)
        await _register(context, db_session, email="other@example.com")

        user = await context.identity.resolve_oauth(
            _google_profile(emails=["other@example.com"]), db_session
        )

        assert user.id == linked.id
        assert user.email == "jane@example.com"

    async def test__resolve_oauth__keeps_refresh_token_when_provider_omits_it(
        self, context: AppContext, db_session: AsyncSession,
    ) -> None:
        await context.identity.resolve_oauth(_google_profile(refresh_token="refresh-1"), db_session)

        user = await context.identity.resolve_oauth(_google_profile(refresh_token=None), db_session)

        assert user.refresh_token == "refresh-1"

    async def test__resolve_oauth__github_without_email_gets_placeholder(
        self, context: AppContext, db_session: AsyncSession,
    ) -> None:
        profile = OAuthProfile(
            provider=AuthProvider.GITHUB,
            external_id="42",
            emails=[],
            username="octocat",
        )

        first = await context.identity.resolve_oauth(profile, db_session)
        second = await context.identity.resolve_oauth(profile, db_session)

        assert first.email == placeholder_email(AuthProvider.GITHUB, "octocat")
        assert first.email == "octocat@github.local"
        assert first.id == second.id

    async def test__resolve_oauth__rejects_local_provider(
        self, context: AppContext, db_session: AsyncSession,
    ) -> None:
        with pytest.raises(ValueError):
            await context.identity.resolve_oauth(
                _google_profile(provider=AuthProvider.LOCAL), db_session
            )


class TestProfileLifecycle:
    """Tests for profile updates, password changes and account deletion."""

    async def test__update_profile__changes_only_supplied_fields(
        self, context: AppContext, db_session: AsyncSession,
    ) -> None:
        user = await _register(context, db_session)

        updated = await context.identity.update_profile(user, db_session, first_name="Johnny", age=31)

        assert updated.first_name == "Johnny"
        assert updated.age == 31
        assert updated.last_name == "Doe"
        assert updated.username == "jdoe"

    async def test__update_profile__taken_username_conflicts(
        self, context: AppContext, db_session: AsyncSession,
    ) -> None:
        await _register(context, db_session, username="alice", email="alice@x.com")
        bob = await _register(context, db_session, username="bob", email="bob@x.com")

        with pytest.raises(ProfileConflict) as exc_info:
            await context.identity.update_profile(bob, db_session, username="alice")

        assert exc_info.value.field == "username"

    async def test__update_profile__taken_email_conflicts(
        self, context: AppContext, db_session: AsyncSession,
    ) -> None:
        await _register(context, db_session, username="alice", email="alice@x.com")
        bob = await _register(context, db_session, username="bob", email="bob@x.com")

        with pytest.raises(ProfileConflict) as exc_info:
            await context.identity.update_profile(bob, db_session, email="alice@x.com")

        assert exc_info.value.field == "email"
        assert exc_info.value.message == "Email is already in use"

    async def test__update_profile__lost_race_reports_the_colliding_field(
        self, context: AppContext, db_session: AsyncSession, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        await _register(context, db_session, username="alice", email="alice@x.com")
        bob = await _register(context, db_session, username="bob", email="bob@x.com")

        original = context.identity._profile_conflict_field
        calls = []

        async def skip_first_check(db, user_id, username, email):
            calls.append(username)
            if len(calls) == 1:
                return None
            return await original(db, user_id, username, email)

        monkeypatch.setattr(context.identity, "_profile_conflict_field", skip_first_check)

        with pytest.raises(ProfileConflict) as exc_info:
            await context.identity.update_profile(
                bob, db_session, username="bobby", email="alice@x.com"
            )

        assert exc_info.value.field == "email"
        assert len(calls) == 2

    async def test__update_profile__own_values_do_not_conflict(
        self, context: AppContext, db_session: AsyncSession,
    ) -> None:
        user = await _register(context, db_session)

        updated = await context.identity.update_profile(
            user, db_session, username="jdoe", email="j@x.com"
        )

        assert updated.username == "jdoe"

    async def test__change_password__replaces_hash(
        self, context: AppContext, db_session: AsyncSession,
    ) -> None:
        user = await _register(context, db_session)

        await context.identity.change_password(user, PASSWORD, "N3w!passw0rd", db_session)

        assert (await context.identity.login_local("j@x.com", "N3w!passw0rd", db_session)).id == user.id
        with pytest.raises(InvalidCredentials):
            await context.identity.login_local("j@x.com", PASSWORD, db_session)

    async def test__change_password__wrong_current_password(
        self, context: AppContext, db_session: AsyncSession,
    ) -> None:
        user = await _register(context, db_session)

        with pytest.raises(IncorrectPassword):
            await context.identity.change_password(user, "Wr0ng!pass", "N3w!passw0rd", db_session)

    async def test__change_password__not_allowed_for_oauth_only_account(
        self, context: AppContext, db_session: AsyncSession,
    ) -> None:
        user = await context.identity.resolve_oauth(_google_profile(), db_session)

        with pytest.raises(PasswordChangeNotAllowed):
            await context.identity.change_password(user, "anything", "N3w!passw0rd", db_session)

    async def test__delete_account__removes_user_and_sessions(
        self, context: AppContext, db_session: AsyncSession,
    ) -> None:
        user = await _register(context, db_session)
        user_id = user.id
        await context.sessions.create(user_id, db_session)
        await context.sessions.create(user_id, db_session)

        await context.identity.delete_account(user, db_session)

        assert await db_session.get(User, user_id) is None
        result = await db_session.execute(select(func.count()).select_from(Session))
        assert result.scalar_one() == 0
