from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, List, Optional, Protocol, Tuple, TypeVar

from ticketdesk.logging import get_logger
from ticketdesk.service.auth import AuthenticationService
from ticketdesk.service.errors import (
    ErrorCode,
    ForbiddenError,
    InvalidStatusTransitionError,
    NotFoundError,
    ValidationError,
)
from ticketdesk.storage.errors import WriteOutcome
from ticketdesk.storage.models import (
    ADMIN_ROLES,
    DEPARTMENT_ROLES,
    Account,
    ApprovalStatus,
    Department,
    Role,
)

logger = get_logger(__name__)

T = TypeVar("T")

# Administrative approval moves; REJECTED -> APPROVED is a reconsideration
APPROVAL_TRANSITIONS: dict[ApprovalStatus, frozenset[ApprovalStatus]] = {
    ApprovalStatus.PENDING: frozenset({ApprovalStatus.APPROVED, ApprovalStatus.REJECTED}),
    ApprovalStatus.REJECTED: frozenset({ApprovalStatus.APPROVED}),
    ApprovalStatus.APPROVED: frozenset(),
}

REGISTRATION_STATUS_MESSAGES = {
    ApprovalStatus.PENDING: "Your registration is awaiting administrator approval.",
    ApprovalStatus.APPROVED: "Your account has been approved. You can now log in.",
    ApprovalStatus.REJECTED: "Your registration was rejected.",
}


class AccountRecordStore(Protocol):
    def create_account(
        self,
        name: str,
        email: str,
        password_hash: str,
        role: Role,
        *,
        department: Optional[Department] = None,
        is_head: bool = False,
        approval_status: ApprovalStatus = ApprovalStatus.APPROVED,
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def list_accounts(
        self,
        *,
        role: Optional[Role] = None,
        approval_status: Optional[ApprovalStatus] = None,
    ) -> List[Account]: ...

    def update_account(
        self, account_id: str, mutate: Callable[[Account], T]
    ) -> Tuple[WriteOutcome, Optional[T]]: ...


class AccountService:
    """Self-registration and the administrative approval workflow."""

    def __init__(self, store: AccountRecordStore, auth: AuthenticationService) -> None:
        self.store = store
        self.auth = auth

    def register(
        self,
        name: str,
        email: str,
        password: str,
        role: Role,
        *,
        department: Optional[Department] = None,
        is_head: bool = False,
    ) -> Account:
        if role in ADMIN_ROLES:
            raise ForbiddenError("Administrator accounts cannot self-register")
        if role in DEPARTMENT_ROLES:
            if department is None:
                raise ValidationError(
                    "department is required",
                    error_code=ErrorCode.MISSING_REQUIRED_FIELD,
                    detail={"field": "department"},
                )
            status = ApprovalStatus.PENDING
        else:
            department = None
            is_head = False
            status = ApprovalStatus.APPROVED
        account = self.store.create_account(
            name,
            email,
            self.auth.hash_password(password),
            role,
            department=department,
            is_head=is_head if role == Role.DEPARTMENT_USER else False,
            approval_status=status,
        )
        logger.info(
            "account_registered",
            account_id=account.id,
            role=role.value,
            approval_status=status.value,
        )
        return account

    def registration_status(self, email: str, role: Optional[Role] = None) -> Account:
        account = self.store.get_account_by_email(email)
        if account is None or (role is not None and account.role != role):
            raise NotFoundError("Account not found", error_code=ErrorCode.USER_NOT_FOUND)
        return account

    def pending_accounts(self, role: Optional[Role] = None) -> List[Account]:
        return self.store.list_accounts(role=role, approval_status=ApprovalStatus.PENDING)

    def _transition(
        self,
        account_id: str,
        target: ApprovalStatus,
        admin_id: str,
        reason: Optional[str] = None,
    ) -> Account:
        def _apply(stored: Account) -> Account:
            allowed = APPROVAL_TRANSITIONS.get(stored.approval_status, frozenset())
            if target not in allowed:
                raise InvalidStatusTransitionError(
                    f"Cannot move account from {stored.approval_status.value} to {target.value}",
                    detail={"from": stored.approval_status.value, "to": target.value},
                )
            stored.approval_status = target
            if target == ApprovalStatus.APPROVED:
                stored.approved_by = admin_id
                stored.approved_at = datetime.now(timezone.utc)
                stored.rejection_reason = None
            else:
                stored.rejection_reason = reason
                stored.approved_by = None
                stored.approved_at = None
            return stored

        outcome, account = self.store.update_account(account_id, _apply)
        if outcome is not WriteOutcome.APPLIED or account is None:
            raise NotFoundError("Account not found", error_code=ErrorCode.USER_NOT_FOUND)
        logger.info(
            "approval_status_changed",
            account_id=account_id,
            admin_id=admin_id,
            approval_status=target.value,
        )
        return account

    def approve(self, account_id: str, admin_id: str) -> Account:
        return self._transition(account_id, ApprovalStatus.APPROVED, admin_id)

    def reject(self, account_id: str, admin_id: str, reason: str) -> Account:
        if not reason or not reason.strip():
            raise ValidationError(
                "A rejection reason is required",
                error_code=ErrorCode.MISSING_REQUIRED_FIELD,
                detail={"field": "reason"},
            )
        return self._transition(account_id, ApprovalStatus.REJECTED, admin_id, reason.strip())
