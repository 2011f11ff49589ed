from __future__ import annotations

from typing import Callable, Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request, Response

from ticketdesk.api.schemas import (
    AccountResponse,
    Envelope,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    LogoutResponse,
    RefreshResponse,
    RegisterRequest,
    RegistrationStatusResponse,
    RejectRequest,
    SessionEntry,
    SessionList,
    TokenRefreshRequest,
    UserSummary,
)
from ticketdesk.service.accounts import REGISTRATION_STATUS_MESSAGES
from ticketdesk.service.auth import Principal, RequestContext
from ticketdesk.service.rate_limit import RateLimitTicket
from ticketdesk.service.roles import ADMIN_PORTAL, PORTALS, Portal
from ticketdesk.service.runtime import Runtime
from ticketdesk.storage.models import Account, ApprovalStatus, Role


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def client_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _request_context(request: Request) -> RequestContext:
    return RequestContext(
        user_agent=request.headers.get("user-agent"),
        ip_address=request.client.host if request.client else None,
    )


def apply_rate_limit_headers(response: Response, ticket: Optional[RateLimitTicket]) -> None:
    if ticket is None:
        return
    response.headers["X-RateLimit-Limit"] = str(ticket.policy.max_requests)
    response.headers["X-RateLimit-Remaining"] = str(ticket.remaining)
    response.headers["X-RateLimit-Reset"] = str(ticket.reset_seconds)


def _user_summary(account: Account) -> UserSummary:
    department_scoped = account.role in (Role.DEPARTMENT_USER, Role.EMPLOYEE)
    return UserSummary(
        id=account.id,
        name=account.name,
        email=account.email,
        role=account.role,
        department=account.department if department_scoped else None,
        is_head=account.is_head if account.role == Role.DEPARTMENT_USER else None,
    )


def _account_response(account: Account) -> AccountResponse:
    summary = _user_summary(account)
    return AccountResponse(
        **summary.model_dump(),
        approval_status=account.approval_status,
        rejection_reason=account.rejection_reason,
        approved_by=account.approved_by,
        approved_at=account.approved_at,
        created_at=account.created_at,
    )


def principal_dependency(portal: Portal) -> Callable[..., Principal]:
    """Build a dependency that resolves the bearer token for ``portal``."""

    async def current_principal(
        authorization: Optional[str] = Header(None),
        runtime: Runtime = Depends(get_runtime),
    ) -> Principal:
        return runtime.auth.authenticate(authorization, portal.roles)

    return current_principal


def build_portal_router(portal: Portal) -> APIRouter:
    """Login, refresh, logout and session endpoints for one portal."""
    router = APIRouter(prefix=portal.prefix, tags=[portal.name])
    current_principal = principal_dependency(portal)

    @router.post("/login", response_model=Envelope)
    async def login(
        body: LoginRequest,
        request: Request,
        response: Response,
        runtime: Runtime = Depends(get_runtime),
    ):
        """Authenticate with email and password and open a device session.

        Raises:
            401: invalid credentials
            403: wrong portal for this account, or approval pending/rejected
            429: too many failed login attempts from this client
        """
        async with runtime.rate_limiter.guard("login", client_key(request)) as guard:
            account = runtime.store.get_account_by_email(body.email)
            result = await runtime.auth.perform_login(
                account,
                body.password,
                body.remember_me,
                _request_context(request),
                portal=portal,
            )
        apply_rate_limit_headers(response, guard.ticket)
        data = LoginResponse(
            access_token=result.tokens.access_token,
            refresh_token=result.tokens.refresh_token,
            access_token_expiry=result.tokens.access_token_expiry,
            refresh_token_expiry=result.tokens.refresh_token_expiry,
            session_id=result.session.id,
            remember_me=result.session.remember_me,
            user=_user_summary(result.account),
        )
        return Envelope(success=True, message="Login successful", data=data.to_wire())

    @router.post("/refresh-token", response_model=Envelope)
    async def refresh_token(
        body: TokenRefreshRequest,
        request: Request,
        response: Response,
        runtime: Runtime = Depends(get_runtime),
    ):
        """Rotate a refresh token and return a new pair.

        Raises:
            401: expired, invalid, rotated or revoked refresh token
            403: token belongs to an account of another portal
            409: the same refresh token was rotated by a concurrent request
        """
        async with runtime.rate_limiter.guard("auth", client_key(request)) as guard:
            result = await runtime.auth.perform_refresh(
                body.refresh_token, portal.roles, context=_request_context(request)
            )
        apply_rate_limit_headers(response, guard.ticket)
        data = RefreshResponse(
            access_token=result.tokens.access_token,
            refresh_token=result.tokens.refresh_token,
            access_token_expiry=result.tokens.access_token_expiry,
            refresh_token_expiry=result.tokens.refresh_token_expiry,
            session_id=result.session_id,
        )
        return Envelope(success=True, message="Token refreshed successfully", data=data.to_wire())

    @router.post("/logout", response_model=Envelope)
    async def logout(
        body: Optional[LogoutRequest] = None,
        principal: Principal = Depends(current_principal),
        runtime: Runtime = Depends(get_runtime),
    ):
        """End the current session, a named session, or every session."""
        body = body or LogoutRequest()
        removed = await runtime.auth.perform_logout(
            principal.account_id,
            portal.roles,
            session_id=body.session_id,
            all_devices=body.all_devices,
            refresh_token=body.refresh_token,
            current_session_id=principal.session_id,
        )
        message = "Logged out from all devices" if body.all_devices else "Logout successful"
        return Envelope(
            success=True,
            message=message,
            data=LogoutResponse(sessions_removed=removed).to_wire(),
        )

    @router.get("/sessions", response_model=Envelope)
    async def list_sessions(
        principal: Principal = Depends(current_principal),
        runtime: Runtime = Depends(get_runtime),
    ):
        views = await runtime.auth.list_sessions(
            principal.account_id, portal.roles, principal.session_id
        )
        entries = [SessionEntry(**vars(view)) for view in views]
        return Envelope(
            success=True,
            message="Active sessions retrieved",
            data=SessionList(sessions=entries, total=len(entries)).to_wire(),
        )

    @router.delete("/sessions/{session_id}", response_model=Envelope)
    async def revoke_session(
        session_id: str = Path(..., max_length=64),
        principal: Principal = Depends(current_principal),
        runtime: Runtime = Depends(get_runtime),
    ):
        removed = await runtime.auth.perform_logout(
            principal.account_id, portal.roles, session_id=session_id
        )
        return Envelope(
            success=True,
            message="Session revoked" if removed else "Session already ended",
            data=LogoutResponse(sessions_removed=removed).to_wire(),
        )

    # self-service portals serve exactly one role
    role = min(portal.roles, key=lambda r: r.value)

    if portal.self_registration:

        @router.post("/register", response_model=Envelope, status_code=201)
        async def register(
            body: RegisterRequest,
            request: Request,
            response: Response,
            runtime: Runtime = Depends(get_runtime),
        ):
            """Create an account for this portal.

            Department and employee accounts start out pending approval.

            Raises:
                400: missing department for a department-scoped role
                409: email already registered
            """
            async with runtime.rate_limiter.guard("auth", client_key(request)) as guard:
                account = runtime.accounts.register(
                    body.name,
                    body.email,
                    body.password,
                    role,
                    department=body.department,
                    is_head=body.is_head,
                )
            apply_rate_limit_headers(response, guard.ticket)
            if account.approval_status == ApprovalStatus.PENDING:
                message = "Registration submitted. Your account is awaiting approval."
            else:
                message = "Registration successful. You can now log in."
            return Envelope(success=True, message=message, data=_account_response(account).to_wire())

    if portal.requires_approval:

        @router.get("/status", response_model=Envelope)
        async def registration_status(
            email: str = Query(..., max_length=254),
            runtime: Runtime = Depends(get_runtime),
        ):
            account = runtime.accounts.registration_status(email, role)
            data = RegistrationStatusResponse(
                approval_status=account.approval_status,
                rejection_reason=account.rejection_reason,
                message=REGISTRATION_STATUS_MESSAGES[account.approval_status],
            )
            return Envelope(success=True, data=data.to_wire())

    return router


def build_admin_router() -> APIRouter:
    """Administrative approval of department and employee registrations."""
    router = APIRouter(prefix="/api/admin/accounts", tags=["admin"])
    current_admin = principal_dependency(ADMIN_PORTAL)

    @router.get("/pending", response_model=Envelope)
    async def pending_accounts(
        role: Optional[Role] = Query(None),
        admin: Principal = Depends(current_admin),
        runtime: Runtime = Depends(get_runtime),
    ):
        accounts = runtime.accounts.pending_accounts(role)
        return Envelope(
            success=True,
            data=[_account_response(account).to_wire() for account in accounts],
        )

    @router.post("/{account_id}/approve", response_model=Envelope)
    async def approve_account(
        account_id: str = Path(..., max_length=64),
        admin: Principal = Depends(current_admin),
        runtime: Runtime = Depends(get_runtime),
    ):
        """Approve a pending (or previously rejected) registration.

        Raises:
            404: unknown account
            409: account is already approved
        """
        account = runtime.accounts.approve(account_id, admin.account_id)
        return Envelope(
            success=True,
            message="Account approved",
            data=_account_response(account).to_wire(),
        )

    @router.post("/{account_id}/reject", response_model=Envelope)
    async def reject_account(
        body: RejectRequest,
        account_id: str = Path(..., max_length=64),
        admin: Principal = Depends(current_admin),
        runtime: Runtime = Depends(get_runtime),
    ):
        account = runtime.accounts.reject(account_id, admin.account_id, body.reason)
        return Envelope(
            success=True,
            message="Account rejected",
            data=_account_response(account).to_wire(),
        )

    return router


def build_routers() -> list[APIRouter]:
    return [build_portal_router(portal) for portal in PORTALS] + [build_admin_router()]
