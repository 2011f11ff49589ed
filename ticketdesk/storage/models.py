from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_session_id() -> str:
    return uuid.uuid4().hex


class Role(str, Enum):
    """Account classes; each one logs in through its own portal."""

    USER = "USER"
    DEPARTMENT_USER = "DEPARTMENT_USER"
    EMPLOYEE = "EMPLOYEE"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"


class Department(str, Enum):
    PLACEMENT = "PLACEMENT"
    OPERATIONS = "OPERATIONS"
    TRAINING = "TRAINING"
    FINANCE = "FINANCE"
    TECHNICAL_SUPPORT = "TECHNICAL_SUPPORT"
    HR = "HR"


class ApprovalStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


# Roles whose accounts must belong to a department
DEPARTMENT_ROLES = frozenset({Role.DEPARTMENT_USER, Role.EMPLOYEE})
ADMIN_ROLES = frozenset({Role.ADMIN, Role.SUPER_ADMIN})


@dataclass
class DeviceInfo:
    user_agent: str = ""
    browser: str = "Unknown"
    os: str = "Unknown"
    device_type: str = "Desktop"
    ip_address: Optional[str] = None


@dataclass
class Session:
    id: str
    refresh_token: str
    device: DeviceInfo
    remember_me: bool
    created_at: datetime
    last_used_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class Account:
    id: str
    name: str
    email: str
    password_hash: str
    role: Role
    department: Optional[Department] = None
    is_head: bool = False
    approval_status: ApprovalStatus = ApprovalStatus.APPROVED
    rejection_reason: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    sessions: List[Session] = field(default_factory=list)
    # Single refresh token kept by accounts created before session tracking
    legacy_refresh_token: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
