"""Unit tests for login, refresh-token rotation and logout.

Covers:
- Credential checks and portal gating order
- The five-session cap
- Single-use refresh tokens and the compare-and-swap race
- Accounts still holding a legacy single refresh token
- Logout scopes
"""

import asyncio
import copy
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from conftest import TEST_PASSWORD
from ticketdesk.service.auth import RequestContext
from ticketdesk.service.errors import (
    AccountNotApprovedError,
    AccountRejectedError,
    ErrorCode,
    InvalidCredentialsError,
    MissingTokenError,
    RefreshConflictError,
    TokenExpiredError,
    TokenInvalidError,
    WrongPortalError,
)
from ticketdesk.service.roles import ADMIN_PORTAL, DEPARTMENT_PORTAL, USER_PORTAL
from ticketdesk.storage.models import ApprovalStatus, Role

FIREFOX = "Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0"


@pytest.fixture
def auth(runtime):
    return runtime.auth


def _give_legacy_token(runtime, account):
    """Mint a refresh token the way pre-session accounts stored it."""
    pair = runtime.tokens.issue(
        {"sub": account.id, "email": account.email, "role": account.role}
    )

    def _set(stored):
        stored.legacy_refresh_token = pair.refresh_token

    runtime.store.update_account(account.id, _set)
    return pair.refresh_token


class TestLogin:
    @pytest.mark.asyncio
    async def test_login_example(self, auth, create_account, store):
        account = create_account("u@x.com")
        before = datetime.now(timezone.utc)

        result = await auth.perform_login(
            store.get_account_by_email("u@x.com"),
            TEST_PASSWORD,
            remember_me=False,
            context=RequestContext(user_agent=FIREFOX, ip_address="10.0.0.5"),
            portal=USER_PORTAL,
        )

        access_ttl = result.tokens.access_token_expiry - before
        refresh_ttl = result.tokens.refresh_token_expiry - before
        assert timedelta(minutes=14) < access_ttl <= timedelta(minutes=15, seconds=1)
        assert timedelta(hours=23) < refresh_ttl <= timedelta(hours=24, seconds=1)

        stored = store.get_account(account.id)
        assert len(stored.sessions) == 1
        session = stored.sessions[0]
        assert session.remember_me is False
        assert session.refresh_token == result.tokens.refresh_token
        assert session.device.browser == "Firefox"
        assert session.device.ip_address == "10.0.0.5"

    @pytest.mark.asyncio
    async def test_remember_me_uses_long_refresh_tier(self, auth, create_account, store):
        create_account("u@x.com")
        before = datetime.now(timezone.utc)
        result = await auth.perform_login(
            store.get_account_by_email("u@x.com"), TEST_PASSWORD, remember_me=True
        )
        assert result.tokens.refresh_token_expiry - before > timedelta(days=29)
        assert result.session.remember_me is True

    @pytest.mark.asyncio
    async def test_unknown_account_and_wrong_password_look_the_same(self, auth, create_account, store):
        create_account("u@x.com")

        with pytest.raises(InvalidCredentialsError) as unknown:
            await auth.perform_login(None, TEST_PASSWORD)
        with pytest.raises(InvalidCredentialsError) as wrong:
            await auth.perform_login(store.get_account_by_email("u@x.com"), "wrong-password")

        assert unknown.value.message == wrong.value.message
        assert unknown.value.status_code == wrong.value.status_code == 401

    @pytest.mark.asyncio
    async def test_pending_account_not_approved_with_correct_password(self, auth, create_account, store):
        create_account("d@x.com", Role.DEPARTMENT_USER, approval_status=ApprovalStatus.PENDING)
        with pytest.raises(AccountNotApprovedError) as excinfo:
            await auth.perform_login(
                store.get_account_by_email("d@x.com"), TEST_PASSWORD, portal=DEPARTMENT_PORTAL
            )
        assert excinfo.value.error_code == ErrorCode.ACCOUNT_NOT_APPROVED
        assert store.get_account_by_email("d@x.com").sessions == []

    @pytest.mark.asyncio
    async def test_wrong_password_hides_approval_state(self, auth, create_account, store):
        create_account("d@x.com", Role.DEPARTMENT_USER, approval_status=ApprovalStatus.PENDING)
        with pytest.raises(InvalidCredentialsError):
            await auth.perform_login(
                store.get_account_by_email("d@x.com"), "wrong-password", portal=DEPARTMENT_PORTAL
            )

    @pytest.mark.asyncio
    async def test_rejected_account(self, auth, create_account, store, runtime):
        account = create_account(
            "e@x.com", Role.DEPARTMENT_USER, approval_status=ApprovalStatus.PENDING
        )
        runtime.accounts.reject(account.id, "admin-1", "Unknown department head")
        with pytest.raises(AccountRejectedError) as excinfo:
            await auth.perform_login(
                store.get_account(account.id), TEST_PASSWORD, portal=DEPARTMENT_PORTAL
            )
        assert excinfo.value.detail == {"reason": "Unknown department head"}

    @pytest.mark.asyncio
    async def test_user_cannot_log_in_through_admin_portal(self, auth, create_account, store):
        create_account("u@x.com")
        with pytest.raises(WrongPortalError):
            await auth.perform_login(
                store.get_account_by_email("u@x.com"), TEST_PASSWORD, portal=ADMIN_PORTAL
            )


class TestSessionCap:
    @pytest.mark.asyncio
    async def test_sixth_login_evicts_oldest_session(self, auth, create_account, store):
        account = create_account("u@x.com")
        results = []
        for _ in range(6):
            results.append(
                await auth.perform_login(store.get_account(account.id), TEST_PASSWORD)
            )

        stored = store.get_account(account.id)
        session_ids = [s.id for s in stored.sessions]
        assert len(session_ids) == 5
        assert results[0].session.id not in session_ids
        assert results[5].evicted_session_ids == [results[0].session.id]
        assert all(r.session.id in session_ids for r in results[1:])

    @pytest.mark.asyncio
    async def test_evicted_session_cannot_refresh(self, auth, create_account, store):
        account = create_account("u@x.com")
        first = await auth.perform_login(store.get_account(account.id), TEST_PASSWORD)
        for _ in range(5):
            await auth.perform_login(store.get_account(account.id), TEST_PASSWORD)
        with pytest.raises(TokenInvalidError):
            await auth.perform_refresh(first.tokens.refresh_token, Role.USER)

    @pytest.mark.asyncio
    async def test_login_prunes_expired_sessions(self, auth, create_account, store):
        account = create_account("u@x.com")
        stale = await auth.perform_login(store.get_account(account.id), TEST_PASSWORD)

        def _expire(stored):
            stored.sessions[0].expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)

        store.update_account(account.id, _expire)
        await auth.perform_login(store.get_account(account.id), TEST_PASSWORD)

        assert stale.session.id not in [s.id for s in store.get_account(account.id).sessions]


class TestRefresh:
    @pytest.mark.asyncio
    async def test_rotation_issues_new_token_for_same_session(self, auth, create_account, store):
        account = create_account("u@x.com")
        login = await auth.perform_login(
            store.get_account(account.id), TEST_PASSWORD, remember_me=True
        )

        refreshed = await auth.perform_refresh(login.tokens.refresh_token, Role.USER)

        assert refreshed.tokens.refresh_token != login.tokens.refresh_token
        assert refreshed.session_id == login.session.id
        assert refreshed.remember_me is True
        stored = store.get_account(account.id).sessions[0]
        assert stored.refresh_token == refreshed.tokens.refresh_token
        assert stored.expires_at == refreshed.tokens.refresh_token_expiry

    @pytest.mark.asyncio
    async def test_every_rotation_yields_a_distinct_token(self, auth, create_account, store):
        account = create_account("u@x.com")
        login = await auth.perform_login(store.get_account(account.id), TEST_PASSWORD)
        seen = {login.tokens.refresh_token}
        token = login.tokens.refresh_token
        for _ in range(4):
            token = (await auth.perform_refresh(token, Role.USER)).tokens.refresh_token
            assert token not in seen
            seen.add(token)

    @pytest.mark.asyncio
    async def test_replayed_token_rejected(self, auth, create_account, store):
        account = create_account("u@x.com")
        login = await auth.perform_login(store.get_account(account.id), TEST_PASSWORD)
        await auth.perform_refresh(login.tokens.refresh_token, Role.USER)

        with pytest.raises(TokenInvalidError):
            await auth.perform_refresh(login.tokens.refresh_token, Role.USER)

    @pytest.mark.asyncio
    async def test_department_token_forbidden_on_admin_refresh(self, auth, create_account, store):
        account = create_account("d@x.com", Role.DEPARTMENT_USER)
        login = await auth.perform_login(
            store.get_account(account.id), TEST_PASSWORD, portal=DEPARTMENT_PORTAL
        )

        with pytest.raises(WrongPortalError) as excinfo:
            await auth.perform_refresh(login.tokens.refresh_token, ADMIN_PORTAL.roles)
        assert excinfo.value.status_code == 403
        # the rejected attempt did not consume the token
        await auth.perform_refresh(login.tokens.refresh_token, DEPARTMENT_PORTAL.roles)

    @pytest.mark.asyncio
    async def test_expired_session_not_rotated(self, auth, create_account, store):
        account = create_account("u@x.com")
        login = await auth.perform_login(store.get_account(account.id), TEST_PASSWORD)

        def _expire(stored):
            stored.sessions[0].expires_at = datetime.now(timezone.utc) - timedelta(seconds=5)

        store.update_account(account.id, _expire)

        with pytest.raises(TokenExpiredError):
            await auth.perform_refresh(login.tokens.refresh_token, Role.USER)
        assert store.get_account(account.id).sessions[0].refresh_token == login.tokens.refresh_token

    @pytest.mark.asyncio
    async def test_access_token_is_not_accepted_for_refresh(self, auth, create_account, store):
        account = create_account("u@x.com")
        login = await auth.perform_login(store.get_account(account.id), TEST_PASSWORD)
        with pytest.raises(TokenInvalidError):
            await auth.perform_refresh(login.tokens.access_token, Role.USER)

    @pytest.mark.asyncio
    async def test_losing_racer_gets_conflict(self, auth, create_account, store, monkeypatch):
        """A refresh that read the session before a concurrent rotation loses the swap."""
        account = create_account("u@x.com")
        login = await auth.perform_login(store.get_account(account.id), TEST_PASSWORD)
        snapshot = store.get_account(account.id)

        await auth.perform_refresh(login.tokens.refresh_token, Role.USER)

        monkeypatch.setattr(store, "get_account", lambda account_id: copy.deepcopy(snapshot))
        with pytest.raises(RefreshConflictError) as excinfo:
            await auth.perform_refresh(login.tokens.refresh_token, Role.USER)
        assert excinfo.value.status_code == 409
        assert excinfo.value.error_code == ErrorCode.REFRESH_CONFLICT

    def test_concurrent_refreshes_have_one_winner(self, auth, create_account, store):
        account = create_account("u@x.com")
        login = asyncio.run(auth.perform_login(store.get_account(account.id), TEST_PASSWORD))
        token = login.tokens.refresh_token

        def _refresh():
            try:
                asyncio.run(auth.perform_refresh(token, Role.USER))
                return "ok"
            except (RefreshConflictError, TokenInvalidError) as exc:
                return type(exc).__name__

        with ThreadPoolExecutor(max_workers=8) as pool:
            outcomes = list(pool.map(lambda _: _refresh(), range(8)))

        assert outcomes.count("ok") == 1


class TestLegacyRefreshToken:
    @pytest.mark.asyncio
    async def test_legacy_token_migrates_into_session(self, auth, runtime, create_account, store):
        account = create_account("u@x.com")
        legacy = _give_legacy_token(runtime, account)

        refreshed = await auth.perform_refresh(legacy, Role.USER)

        stored = store.get_account(account.id)
        assert stored.legacy_refresh_token is None
        assert [s.id for s in stored.sessions] == [refreshed.session_id]
        assert stored.sessions[0].refresh_token == refreshed.tokens.refresh_token
        # migrated tokens rotate like any other
        with pytest.raises(TokenInvalidError):
            await auth.perform_refresh(legacy, Role.USER)
        await auth.perform_refresh(refreshed.tokens.refresh_token, Role.USER)

    @pytest.mark.asyncio
    async def test_sessions_take_precedence_over_legacy_field(
        self, auth, runtime, create_account, store
    ):
        account = create_account("u@x.com")
        legacy = _give_legacy_token(runtime, account)
        login = await auth.perform_login(store.get_account(account.id), TEST_PASSWORD)

        assert store.get_account(account.id).legacy_refresh_token is None
        with pytest.raises(TokenInvalidError):
            await auth.perform_refresh(legacy, Role.USER)
        await auth.perform_refresh(login.tokens.refresh_token, Role.USER)

    @pytest.mark.asyncio
    async def test_legacy_field_ignored_once_sessions_exist(
        self, auth, runtime, create_account, store
    ):
        account = create_account("u@x.com")
        login = await auth.perform_login(store.get_account(account.id), TEST_PASSWORD)
        legacy = _give_legacy_token(runtime, account)

        with pytest.raises(TokenInvalidError):
            await auth.perform_refresh(legacy, Role.USER)
        stored = store.get_account(account.id)
        assert [s.id for s in stored.sessions] == [login.session.id]

    @pytest.mark.asyncio
    async def test_logout_clears_legacy_token(self, auth, runtime, create_account, store):
        account = create_account("u@x.com")
        legacy = _give_legacy_token(runtime, account)

        removed = await auth.perform_logout(account.id, Role.USER, refresh_token=legacy)

        assert removed == 1
        assert store.get_account(account.id).legacy_refresh_token is None


class TestLogout:
    @pytest.mark.asyncio
    async def test_all_devices_then_again(self, auth, create_account, store):
        account = create_account("u@x.com")
        for _ in range(3):
            await auth.perform_login(store.get_account(account.id), TEST_PASSWORD)

        first = await auth.perform_logout(account.id, Role.USER, all_devices=True)
        second = await auth.perform_logout(account.id, Role.USER, all_devices=True)

        assert (first, second) == (3, 0)
        assert store.get_account(account.id).sessions == []

    @pytest.mark.asyncio
    async def test_current_session_only(self, auth, create_account, store):
        account = create_account("u@x.com")
        kept = await auth.perform_login(store.get_account(account.id), TEST_PASSWORD)
        current = await auth.perform_login(store.get_account(account.id), TEST_PASSWORD)

        removed = await auth.perform_logout(
            account.id, Role.USER, current_session_id=current.session.id
        )

        assert removed == 1
        assert [s.id for s in store.get_account(account.id).sessions] == [kept.session.id]

    @pytest.mark.asyncio
    async def test_named_session_and_repeat(self, auth, create_account, store):
        account = create_account("u@x.com")
        login = await auth.perform_login(store.get_account(account.id), TEST_PASSWORD)

        assert await auth.perform_logout(account.id, Role.USER, session_id=login.session.id) == 1
        assert await auth.perform_logout(account.id, Role.USER, session_id=login.session.id) == 0

        with pytest.raises(TokenInvalidError):
            await auth.perform_refresh(login.tokens.refresh_token, Role.USER)

    @pytest.mark.asyncio
    async def test_logout_by_refresh_token(self, auth, create_account, store):
        account = create_account("u@x.com")
        login = await auth.perform_login(store.get_account(account.id), TEST_PASSWORD)
        removed = await auth.perform_logout(
            account.id, Role.USER, refresh_token=login.tokens.refresh_token
        )
        assert removed == 1

    @pytest.mark.asyncio
    async def test_access_token_outlives_logout(self, auth, create_account, store):
        """Access tokens are stateless and stay valid until they expire."""
        account = create_account("u@x.com")
        login = await auth.perform_login(store.get_account(account.id), TEST_PASSWORD)
        await auth.perform_logout(account.id, Role.USER, all_devices=True)

        principal = auth.authenticate(f"Bearer {login.tokens.access_token}", Role.USER)
        assert principal.account_id == account.id


class TestBearerAuthentication:
    @pytest.mark.asyncio
    async def test_principal_from_header(self, auth, create_account, store):
        account = create_account("u@x.com")
        login = await auth.perform_login(store.get_account(account.id), TEST_PASSWORD)

        principal = auth.authenticate(f"Bearer {login.tokens.access_token}", USER_PORTAL.roles)

        assert principal.account_id == account.id
        assert principal.session_id == login.session.id
        assert principal.role == Role.USER

    @pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer   "])
    def test_missing_bearer_token(self, auth, header):
        with pytest.raises(MissingTokenError):
            auth.authenticate(header, Role.USER)

    @pytest.mark.asyncio
    async def test_wrong_portal(self, auth, create_account, store):
        account = create_account("u@x.com")
        login = await auth.perform_login(store.get_account(account.id), TEST_PASSWORD)
        with pytest.raises(WrongPortalError):
            auth.authenticate(f"Bearer {login.tokens.access_token}", ADMIN_PORTAL.roles)

    @pytest.mark.asyncio
    async def test_session_listing_marks_current(self, auth, create_account, store):
        account = create_account("u@x.com")
        await auth.perform_login(store.get_account(account.id), TEST_PASSWORD)
        current = await auth.perform_login(store.get_account(account.id), TEST_PASSWORD)

        views = await auth.list_sessions(account.id, Role.USER, current.session.id)

        assert len(views) == 2
        assert [v.id for v in views if v.is_current] == [current.session.id]
