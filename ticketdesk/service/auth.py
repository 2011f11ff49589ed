from __future__ import annotations

import hmac
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional, Protocol, Tuple, TypeVar

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from ticketdesk.logging import get_logger
from ticketdesk.service.errors import (
    InvalidCredentialsError,
    MissingTokenError,
    RefreshConflictError,
    TokenExpiredError,
    TokenInvalidError,
)
from ticketdesk.service.roles import Portal, RoleSpec, RoleValidator
from ticketdesk.service.sessions import SessionStore, SessionView, parse_user_agent
from ticketdesk.service.tokens import TokenPair, TokenService
from ticketdesk.storage.errors import WriteOutcome
from ticketdesk.storage.models import Account, Role, Session, new_session_id

logger = get_logger(__name__)

T = TypeVar("T")


class AccountStore(Protocol):
    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def update_account(
        self, account_id: str, mutate: Callable[[Account], T]
    ) -> Tuple[WriteOutcome, Optional[T]]: ...

    def swap_session_token(
        self,
        account_id: str,
        session_id: str,
        expected_token: str,
        new_token: str,
        *,
        last_used_at: datetime,
        expires_at: datetime,
    ) -> WriteOutcome: ...

    def migrate_legacy_token(
        self, account_id: str, expected_token: str, session: Session
    ) -> WriteOutcome: ...


@dataclass
class RequestContext:
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None


@dataclass
class Principal:
    """Identity carried by a verified access token."""

    account_id: str
    email: str
    role: Role
    session_id: Optional[str] = None


@dataclass
class LoginResult:
    account: Account
    tokens: TokenPair
    session: Session
    evicted_session_ids: List[str] = field(default_factory=list)


@dataclass
class RefreshResult:
    tokens: TokenPair
    session_id: str
    remember_me: bool


class AuthenticationService:
    """Login, refresh-token rotation and logout shared by every portal."""

    def __init__(
        self,
        store: AccountStore,
        tokens: TokenService,
        sessions: SessionStore,
        *,
        password_hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.sessions = sessions
        self._pwd_hasher = password_hasher or PasswordHasher(type=Type.ID)
        # Verified against when the account is unknown so both paths cost the same
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # -- passwords ---------------------------------------------------------

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    # -- login -------------------------------------------------------------

    async def perform_login(
        self,
        account: Optional[Account],
        raw_password: str,
        remember_me: bool = False,
        context: Optional[RequestContext] = None,
        *,
        portal: Optional[Portal] = None,
    ) -> LoginResult:
        """Verify credentials and open a new device session.

        The password is checked before any portal gate, so role and approval
        state are only revealed to callers who already know the password.

        Raises:
            InvalidCredentialsError: unknown account or wrong password
            WrongPortalError / AccountNotApprovedError / AccountRejectedError:
                when ``portal`` gating fails
        """
        if account is None:
            self.verify_password(self._dummy_hash, raw_password)
            self.logger.info("login_failed", reason="unknown_account")
            raise InvalidCredentialsError()
        if not self.verify_password(account.password_hash, raw_password):
            self.logger.info("login_failed", reason="password_mismatch", account_id=account.id)
            raise InvalidCredentialsError()
        if portal is not None:
            portal.gate(account)

        ctx = context or RequestContext()
        session_id = new_session_id()
        pair = self.tokens.issue(
            {"sub": account.id, "email": account.email, "role": account.role},
            remember_me=remember_me,
            session_id=session_id,
        )
        session = self.sessions.create(
            pair.refresh_token,
            remember_me,
            parse_user_agent(ctx.user_agent, ctx.ip_address),
            session_id=session_id,
            expires_at=pair.refresh_token_expiry,
        )

        def _open_session(stored: Account) -> Tuple[Account, int, Optional[Session]]:
            pruned = self.sessions.prune_expired(stored)
            evicted = self.sessions.append(stored, session)
            # first session-tracked login retires the legacy single-token path
            stored.legacy_refresh_token = None
            return stored, pruned, evicted

        outcome, result = self.store.update_account(account.id, _open_session)
        if outcome is not WriteOutcome.APPLIED or result is None:
            self.logger.info("login_failed", reason="account_missing", account_id=account.id)
            raise InvalidCredentialsError()
        updated, pruned, evicted = result
        self.logger.info(
            "login_succeeded",
            account_id=account.id,
            role=account.role.value,
            session_id=session.id,
            remember_me=remember_me,
            pruned_sessions=pruned,
            evicted_session_id=evicted.id if evicted else None,
        )
        return LoginResult(
            account=updated,
            tokens=pair,
            session=session,
            evicted_session_ids=[evicted.id] if evicted else [],
        )

    # -- refresh -----------------------------------------------------------

    async def perform_refresh(
        self,
        refresh_token: str,
        expected_role: RoleSpec,
        *,
        context: Optional[RequestContext] = None,
    ) -> RefreshResult:
        """Rotate a refresh token and mint a new pair for the same session.

        Raises:
            TokenExpiredError: token signature valid but expired
            TokenInvalidError: malformed, forged, rotated or revoked token
            WrongPortalError: account role does not belong to this portal
            RefreshConflictError: a concurrent refresh rotated the token first
        """
        claims = self.tokens.verify_refresh(refresh_token)
        account = self.store.get_account(claims.account_id)
        if account is None:
            raise TokenInvalidError("Account no longer exists")
        RoleValidator.role_matches(account, expected_role)

        payload = {"sub": account.id, "email": account.email, "role": account.role}
        session = self.sessions.find_by_token(account, refresh_token)
        if session is not None:
            # Verification tolerates clock skew, the session row does not
            if session.is_expired(self._now()):
                self.logger.info(
                    "refresh_session_expired", account_id=account.id, session_id=session.id
                )
                raise TokenExpiredError()
            pair = self.tokens.issue(
                payload, remember_me=session.remember_me, session_id=session.id
            )
            outcome = self.store.swap_session_token(
                account.id,
                session.id,
                refresh_token,
                pair.refresh_token,
                last_used_at=self._now(),
                expires_at=pair.refresh_token_expiry,
            )
            self._raise_for_outcome(outcome, account.id, session.id)
            self.logger.info("refresh_rotated", account_id=account.id, session_id=session.id)
            return RefreshResult(pair, session.id, session.remember_me)

        # Legacy single-token accounts are only honored until they own a session
        legacy = account.legacy_refresh_token
        if not account.sessions and legacy and hmac.compare_digest(legacy, refresh_token):
            ctx = context or RequestContext()
            session_id = new_session_id()
            pair = self.tokens.issue(
                payload, remember_me=claims.remember_me, session_id=session_id
            )
            migrated = self.sessions.create(
                pair.refresh_token,
                claims.remember_me,
                parse_user_agent(ctx.user_agent, ctx.ip_address),
                session_id=session_id,
                expires_at=pair.refresh_token_expiry,
            )
            outcome = self.store.migrate_legacy_token(account.id, refresh_token, migrated)
            self._raise_for_outcome(outcome, account.id, None)
            self.logger.info(
                "legacy_refresh_migrated", account_id=account.id, session_id=session_id
            )
            return RefreshResult(pair, session_id, claims.remember_me)

        self.logger.warning(
            "refresh_token_not_recognized",
            account_id=account.id,
            session_id=claims.session_id,
        )
        raise TokenInvalidError("Refresh token has been rotated or revoked")

    def _raise_for_outcome(
        self, outcome: WriteOutcome, account_id: str, session_id: Optional[str]
    ) -> None:
        if outcome is WriteOutcome.APPLIED:
            return
        if outcome is WriteOutcome.STALE:
            self.logger.info("refresh_conflict", account_id=account_id, session_id=session_id)
            raise RefreshConflictError()
        raise TokenInvalidError("Session no longer exists")

    # -- logout ------------------------------------------------------------

    async def perform_logout(
        self,
        account_id: str,
        expected_role: RoleSpec,
        *,
        session_id: Optional[str] = None,
        all_devices: bool = False,
        refresh_token: Optional[str] = None,
        current_session_id: Optional[str] = None,
    ) -> int:
        """Remove one, all, or the legacy session and return how many went away.

        Removing something already gone returns 0.
        """
        account = self.store.get_account(account_id)
        if account is None:
            raise TokenInvalidError("Account no longer exists")
        RoleValidator.role_matches(account, expected_role)

        def _remove(stored: Account) -> int:
            if all_devices:
                removed = self.sessions.remove_all(stored)
                if stored.legacy_refresh_token:
                    removed += 1
                stored.legacy_refresh_token = None
                return removed
            if session_id:
                return self.sessions.remove(stored, session_id)
            if refresh_token:
                match = self.sessions.find_by_token(stored, refresh_token)
                if match is not None:
                    return self.sessions.remove(stored, match.id)
                legacy = stored.legacy_refresh_token
                if legacy and hmac.compare_digest(legacy, refresh_token):
                    stored.legacy_refresh_token = None
                    return 1
                return 0
            if current_session_id:
                return self.sessions.remove(stored, current_session_id)
            removed = 1 if stored.legacy_refresh_token else 0
            stored.legacy_refresh_token = None
            return removed

        outcome, removed = self.store.update_account(account_id, _remove)
        if outcome is not WriteOutcome.APPLIED or removed is None:
            removed = 0
        self.logger.info(
            "logout_completed",
            account_id=account_id,
            all_devices=all_devices,
            sessions_removed=removed,
        )
        return removed

    # -- session listing and bearer auth ---------------------------------

    async def list_sessions(
        self,
        account_id: str,
        expected_role: RoleSpec,
        current_session_id: Optional[str] = None,
    ) -> List[SessionView]:
        account = self.store.get_account(account_id)
        if account is None:
            raise TokenInvalidError("Account no longer exists")
        RoleValidator.role_matches(account, expected_role)
        return self.sessions.active_sessions(account, current_session_id)

    @staticmethod
    def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
        if not authorization:
            return None
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    def authenticate(self, authorization: Optional[str], expected_role: RoleSpec) -> Principal:
        """Resolve an ``Authorization: Bearer`` header into a principal.

        Access tokens are stateless; the role check uses the signed claim.
        """
        token = self._extract_bearer(authorization)
        if token is None:
            raise MissingTokenError()
        claims = self.tokens.verify_access(token)
        principal = Principal(
            account_id=claims.account_id,
            email=claims.email,
            role=claims.role,
            session_id=claims.session_id,
        )
        RoleValidator.role_matches(principal, expected_role)
        return principal
