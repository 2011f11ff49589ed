from __future__ import annotations

import copy
import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, TypeVar

from ticketdesk.logging import get_logger
from ticketdesk.storage.errors import ConstraintTag, ConstraintViolation, WriteOutcome
from ticketdesk.storage.models import (
    DEPARTMENT_ROLES,
    Account,
    ApprovalStatus,
    Department,
    DeviceInfo,
    Role,
    Session,
    utcnow,
)

T = TypeVar("T")


class MemoryStore:
    """In-process account store with optional JSON snapshot persistence.

    Every read returns a deep copy and every mutation runs under one lock, so
    callers work on snapshots and conditional writes are atomic.
    """

    def __init__(self, state_path: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self._email_index: Dict[str, str] = {}
        # RLock so mutators may call back into read helpers
        self._data_lock = threading.RLock()
        self._state_file = Path(state_path) if state_path else None
        if self._state_file is not None:
            self._load_state()

    @staticmethod
    def _serialize_datetime(dt: datetime | None) -> str | None:
        return dt.isoformat() if dt is not None else None

    @staticmethod
    def _deserialize_datetime(raw: str | None) -> datetime | None:
        return datetime.fromisoformat(raw) if raw else None

    # -- accounts ---------------------------------------------------------

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
        legacy_refresh_token: Optional[str] = None,
    ) -> Account:
        normalized = email.strip().lower()
        if role in DEPARTMENT_ROLES and department is None:
            raise ConstraintViolation(
                "department is required for this role",
                {"field": "department", "role": role.value},
                tag=ConstraintTag.MISSING_DEPARTMENT,
            )
        with self._data_lock:
            if normalized in self._email_index:
                raise ConstraintViolation(
                    "email already exists",
                    {"field": "email"},
                    tag=ConstraintTag.DUPLICATE_EMAIL,
                )
            account = Account(
                id=str(uuid.uuid4()),
                name=name,
                email=normalized,
                password_hash=password_hash,
                role=role,
                department=department,
                is_head=is_head,
                approval_status=approval_status,
                legacy_refresh_token=legacy_refresh_token,
            )
            self.accounts[account.id] = account
            self._email_index[normalized] = account.id
            self._persist_state()
            return copy.deepcopy(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return copy.deepcopy(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            account_id = self._email_index.get(email.strip().lower())
            if account_id is None:
                return None
            return copy.deepcopy(self.accounts[account_id])

    def list_accounts(
        self,
        *,
        role: Optional[Role] = None,
        approval_status: Optional[ApprovalStatus] = None,
    ) -> List[Account]:
        with self._data_lock:
            found = [
                copy.deepcopy(account)
                for account in self.accounts.values()
                if (role is None or account.role == role)
                and (approval_status is None or account.approval_status == approval_status)
            ]
        return sorted(found, key=lambda a: a.created_at)

    def update_account(
        self, account_id: str, mutate: Callable[[Account], T]
    ) -> Tuple[WriteOutcome, Optional[T]]:
        """Apply ``mutate`` to the stored record atomically and persist once.

        If ``mutate`` raises, the stored record is left untouched.
        """
        with self._data_lock:
            current = self.accounts.get(account_id)
            if current is None:
                return WriteOutcome.MISSING, None
            working = copy.deepcopy(current)
            result = mutate(working)
            if working.id != current.id or working.role != current.role:
                raise ValueError("account id and role are immutable")
            # mutate may have attached caller-owned objects to the working copy
            self.accounts[account_id] = copy.deepcopy(working)
            self._persist_state()
            return WriteOutcome.APPLIED, result

    # -- conditional session writes ----------------------------------------

    def swap_session_token(
        self,
        account_id: str,
        session_id: str,
        expected_token: str,
        new_token: str,
        *,
        last_used_at: datetime,
        expires_at: datetime,
    ) -> WriteOutcome:
        """Replace a session's refresh token only if it still holds ``expected_token``."""
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account is None:
                return WriteOutcome.MISSING
            session = next((s for s in account.sessions if s.id == session_id), None)
            if session is None:
                return WriteOutcome.MISSING
            if session.refresh_token != expected_token:
                return WriteOutcome.STALE
            session.refresh_token = new_token
            session.last_used_at = last_used_at
            session.expires_at = expires_at
            self._persist_state()
            return WriteOutcome.APPLIED

    def migrate_legacy_token(
        self, account_id: str, expected_token: str, session: Session
    ) -> WriteOutcome:
        """Move a pre-session-tracking refresh token into the session list.

        Applies only while the account still holds ``expected_token`` in its
        legacy field and has no tracked sessions.
        """
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account is None:
                return WriteOutcome.MISSING
            if account.sessions or account.legacy_refresh_token != expected_token:
                return WriteOutcome.STALE
            account.legacy_refresh_token = None
            account.sessions.append(copy.deepcopy(session))
            self._persist_state()
            return WriteOutcome.APPLIED

    # -- snapshot persistence -----------------------------------------------

    def _persist_state(self) -> None:
        if self._state_file is None:
            return
        state = {"accounts": [self._serialize_account(a) for a in self.accounts.values()]}
        try:
            self._state_file.parent.mkdir(parents=True, exist_ok=True)
            self._state_file.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist account state: {exc}") from exc

    def _load_state(self) -> bool:
        try:
            data = json.loads(self._state_file.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self._email_index = {a.email: a.id for a in self.accounts.values()}
        self.logger.info("account_state_loaded", accounts=len(self.accounts))
        return True

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "refresh_token": session.refresh_token,
            "device": {
                "user_agent": session.device.user_agent,
                "browser": session.device.browser,
                "os": session.device.os,
                "device_type": session.device.device_type,
                "ip_address": session.device.ip_address,
            },
            "remember_me": session.remember_me,
            "created_at": self._serialize_datetime(session.created_at),
            "last_used_at": self._serialize_datetime(session.last_used_at),
            "expires_at": self._serialize_datetime(session.expires_at),
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            refresh_token=data["refresh_token"],
            device=DeviceInfo(**data.get("device", {})),
            remember_me=data.get("remember_me", False),
            created_at=self._deserialize_datetime(data["created_at"]),
            last_used_at=self._deserialize_datetime(data["last_used_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
        )

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "name": account.name,
            "email": account.email,
            "password_hash": account.password_hash,
            "role": account.role.value,
            "department": account.department.value if account.department else None,
            "is_head": account.is_head,
            "approval_status": account.approval_status.value,
            "rejection_reason": account.rejection_reason,
            "approved_by": account.approved_by,
            "approved_at": self._serialize_datetime(account.approved_at),
            "sessions": [self._serialize_session(s) for s in account.sessions],
            "legacy_refresh_token": account.legacy_refresh_token,
            "created_at": self._serialize_datetime(account.created_at),
        }

    def _deserialize_account(self, data: dict) -> Account:
        department = data.get("department")
        return Account(
            id=data["id"],
            name=data.get("name", ""),
            email=data["email"],
            password_hash=data["password_hash"],
            role=Role(data["role"]),
            department=Department(department) if department else None,
            is_head=data.get("is_head", False),
            approval_status=ApprovalStatus(data.get("approval_status", "APPROVED")),
            rejection_reason=data.get("rejection_reason"),
            approved_by=data.get("approved_by"),
            approved_at=self._deserialize_datetime(data.get("approved_at")),
            sessions=[self._deserialize_session(s) for s in data.get("sessions", [])],
            legacy_refresh_token=data.get("legacy_refresh_token"),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )
