from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Union

from ticketdesk.service.errors import (
    AccountNotApprovedError,
    AccountRejectedError,
    InvalidCredentialsError,
    WrongPortalError,
)
from ticketdesk.storage.models import ADMIN_ROLES, Account, ApprovalStatus, Role

RoleSpec = Union[Role, Iterable[Role]]


def as_role_set(expected: RoleSpec) -> frozenset[Role]:
    if isinstance(expected, Role):
        return frozenset({expected})
    return frozenset(expected)


class RoleValidator:
    """Gating predicates; each raises its own taxonomy error or returns the account."""

    @staticmethod
    def account_exists(account: Optional[Account]) -> Account:
        if account is None:
            raise InvalidCredentialsError()
        return account

    @staticmethod
    def approval_status(account: Account) -> Account:
        if account.approval_status == ApprovalStatus.PENDING:
            raise AccountNotApprovedError()
        if account.approval_status == ApprovalStatus.REJECTED:
            raise AccountRejectedError(account.rejection_reason)
        return account

    @staticmethod
    def role_matches(account: Account, expected: RoleSpec) -> Account:
        if account.role not in as_role_set(expected):
            raise WrongPortalError()
        return account


@dataclass(frozen=True)
class Portal:
    """One login surface and the checks it composes."""

    name: str
    prefix: str
    roles: frozenset[Role]
    requires_approval: bool = False
    self_registration: bool = False

    def gate(self, account: Optional[Account]) -> Account:
        account = RoleValidator.account_exists(account)
        RoleValidator.role_matches(account, self.roles)
        if self.requires_approval:
            RoleValidator.approval_status(account)
        return account


USER_PORTAL = Portal("user", "/api/auth", frozenset({Role.USER}), self_registration=True)
DEPARTMENT_PORTAL = Portal(
    "department",
    "/api/department-auth",
    frozenset({Role.DEPARTMENT_USER}),
    requires_approval=True,
    self_registration=True,
)
EMPLOYEE_PORTAL = Portal(
    "employee",
    "/api/employee-auth",
    frozenset({Role.EMPLOYEE}),
    requires_approval=True,
    self_registration=True,
)
# Admins are approved by construction
ADMIN_PORTAL = Portal("admin", "/api/admin-auth", ADMIN_ROLES)

PORTALS = (USER_PORTAL, DEPARTMENT_PORTAL, EMPLOYEE_PORTAL, ADMIN_PORTAL)
