"""Tests for self-registration and the approval workflow."""

import pytest

from conftest import TEST_PASSWORD
from ticketdesk.service.accounts import APPROVAL_TRANSITIONS
from ticketdesk.service.errors import (
    ErrorCode,
    ForbiddenError,
    InvalidStatusTransitionError,
    NotFoundError,
    ValidationError,
)
from ticketdesk.storage.errors import ConstraintTag, ConstraintViolation
from ticketdesk.storage.models import ApprovalStatus, Department, Role


@pytest.fixture
def accounts(runtime):
    return runtime.accounts


def _register_staff(accounts, email="d@x.com", role=Role.DEPARTMENT_USER):
    return accounts.register(
        "Dana", email, TEST_PASSWORD, role, department=Department.PLACEMENT, is_head=True
    )


class TestRegistration:
    def test_end_user_is_approved_immediately(self, accounts, runtime):
        account = accounts.register("Uma", "u@x.com", TEST_PASSWORD, Role.USER)
        assert account.approval_status == ApprovalStatus.APPROVED
        assert account.department is None
        assert runtime.auth.verify_password(account.password_hash, TEST_PASSWORD)

    def test_department_roles_start_pending(self, accounts):
        staff = _register_staff(accounts)
        employee = _register_staff(accounts, "e@x.com", Role.EMPLOYEE)
        assert staff.approval_status == ApprovalStatus.PENDING
        assert staff.is_head is True
        assert employee.approval_status == ApprovalStatus.PENDING
        assert employee.is_head is False

    def test_department_required(self, accounts):
        with pytest.raises(ValidationError) as excinfo:
            accounts.register("Dana", "d@x.com", TEST_PASSWORD, Role.EMPLOYEE)
        assert excinfo.value.error_code == ErrorCode.MISSING_REQUIRED_FIELD

    @pytest.mark.parametrize("role", [Role.ADMIN, Role.SUPER_ADMIN])
    def test_admins_cannot_self_register(self, accounts, role):
        with pytest.raises(ForbiddenError):
            accounts.register("Root", "root@x.com", TEST_PASSWORD, role)

    def test_duplicate_email_is_tagged(self, accounts):
        accounts.register("Uma", "u@x.com", TEST_PASSWORD, Role.USER)
        with pytest.raises(ConstraintViolation) as excinfo:
            accounts.register("Uma", "U@X.COM", TEST_PASSWORD, Role.USER)
        assert excinfo.value.tag is ConstraintTag.DUPLICATE_EMAIL

    def test_registration_status(self, accounts):
        _register_staff(accounts)
        assert accounts.registration_status("d@x.com", Role.DEPARTMENT_USER).approval_status == (
            ApprovalStatus.PENDING
        )
        with pytest.raises(NotFoundError) as excinfo:
            accounts.registration_status("d@x.com", Role.EMPLOYEE)
        assert excinfo.value.error_code == ErrorCode.USER_NOT_FOUND


class TestApprovalTransitions:
    def test_transition_table(self):
        assert APPROVAL_TRANSITIONS[ApprovalStatus.APPROVED] == frozenset()
        assert ApprovalStatus.APPROVED in APPROVAL_TRANSITIONS[ApprovalStatus.REJECTED]

    def test_approve_pending(self, accounts):
        account = _register_staff(accounts)
        approved = accounts.approve(account.id, "admin-1")
        assert approved.approval_status == ApprovalStatus.APPROVED
        assert approved.approved_by == "admin-1"
        assert approved.approved_at is not None
        assert accounts.pending_accounts() == []

    def test_reject_requires_reason(self, accounts):
        account = _register_staff(accounts)
        with pytest.raises(ValidationError):
            accounts.reject(account.id, "admin-1", "   ")
        assert accounts.pending_accounts()[0].id == account.id

    def test_rejected_can_be_reconsidered(self, accounts):
        account = _register_staff(accounts)
        rejected = accounts.reject(account.id, "admin-1", " Incomplete details ")
        assert rejected.rejection_reason == "Incomplete details"

        approved = accounts.approve(account.id, "admin-2")
        assert approved.approval_status == ApprovalStatus.APPROVED
        assert approved.rejection_reason is None

    @pytest.mark.parametrize("action", ["approve", "reject"])
    def test_approved_is_final(self, accounts, action):
        account = _register_staff(accounts)
        accounts.approve(account.id, "admin-1")
        with pytest.raises(InvalidStatusTransitionError) as excinfo:
            if action == "approve":
                accounts.approve(account.id, "admin-1")
            else:
                accounts.reject(account.id, "admin-1", "changed my mind")
        assert excinfo.value.status_code == 409
        assert excinfo.value.detail["from"] == "APPROVED"

    def test_rejecting_twice_is_invalid(self, accounts):
        account = _register_staff(accounts)
        accounts.reject(account.id, "admin-1", "No")
        with pytest.raises(InvalidStatusTransitionError):
            accounts.reject(account.id, "admin-1", "Still no")

    def test_unknown_account(self, accounts):
        with pytest.raises(NotFoundError):
            accounts.approve("missing", "admin-1")

    def test_pending_filter_by_role(self, accounts):
        _register_staff(accounts)
        employee = _register_staff(accounts, "e@x.com", Role.EMPLOYEE)
        assert [a.id for a in accounts.pending_accounts(Role.EMPLOYEE)] == [employee.id]
