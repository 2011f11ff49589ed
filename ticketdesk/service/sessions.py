from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from ipaddress import IPv4Address, ip_address
from typing import List, Optional

from ticketdesk.config import Settings
from ticketdesk.storage.models import Account, DeviceInfo, Session, new_session_id

# Order matters: Edge and Opera user agents also advertise Chrome and Safari
_BROWSER_PATTERNS = (
    ("Firefox", re.compile(r"Firefox/", re.I)),
    ("Edge", re.compile(r"Edg(e|A|iOS)?/", re.I)),
    ("Opera", re.compile(r"(OPR|Opera)/", re.I)),
    ("Chrome", re.compile(r"(Chrome|CriOS)/", re.I)),
    ("Safari", re.compile(r"Safari/", re.I)),
)
_OS_PATTERNS = (
    ("Windows", re.compile(r"Windows", re.I)),
    ("Android", re.compile(r"Android", re.I)),
    ("iOS", re.compile(r"iPhone|iPad|iPod", re.I)),
    ("macOS", re.compile(r"Mac OS X|Macintosh", re.I)),
    ("Linux", re.compile(r"Linux", re.I)),
)
_TABLET = re.compile(r"iPad|Tablet", re.I)
_MOBILE = re.compile(r"Mobile|iPhone|iPod|Android", re.I)


def parse_user_agent(user_agent: Optional[str], ip: Optional[str] = None) -> DeviceInfo:
    """Derive coarse browser/OS/device labels from a User-Agent header."""
    ua = user_agent or ""
    browser = next((name for name, pattern in _BROWSER_PATTERNS if pattern.search(ua)), "Unknown")
    os_name = next((name for name, pattern in _OS_PATTERNS if pattern.search(ua)), "Unknown")
    if _TABLET.search(ua) or ("Android" in ua and "Mobile" not in ua):
        device_type = "Tablet"
    elif _MOBILE.search(ua):
        device_type = "Mobile"
    else:
        device_type = "Desktop"
    return DeviceInfo(
        user_agent=ua,
        browser=browser,
        os=os_name,
        device_type=device_type,
        ip_address=ip,
    )


def mask_ip(ip: Optional[str]) -> str:
    if not ip:
        return "Unknown"
    try:
        parsed = ip_address(ip)
    except ValueError:
        parsed = None
    if isinstance(parsed, IPv4Address):
        first, second, _, _ = str(parsed).split(".")
        return f"{first}.{second}.xxx.xxx"
    return ip[:8] + "..."


@dataclass
class SessionView:
    """Listing entry shown to the account owner."""

    id: str
    browser: str
    os: str
    device_type: str
    ip_address: str
    remember_me: bool
    created_at: datetime
    last_used_at: datetime
    expires_at: datetime
    is_current: bool


class SessionStore:
    """Bounded per-account session list operations.

    All methods mutate the ``Account`` passed in; persisting the result is
    the caller's job, so a whole login lands in a single store write.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.max_sessions = settings.max_sessions_per_account

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def expiry_for(self, remember_me: bool, *, start: Optional[datetime] = None) -> datetime:
        minutes = (
            self.settings.remember_me_refresh_token_ttl_minutes
            if remember_me
            else self.settings.refresh_token_ttl_minutes
        )
        return (start or self._now()) + timedelta(minutes=minutes)

    def create(
        self,
        refresh_token: str,
        remember_me: bool,
        device_info: DeviceInfo,
        *,
        session_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> Session:
        now = self._now()
        return Session(
            id=session_id or new_session_id(),
            refresh_token=refresh_token,
            device=device_info,
            remember_me=remember_me,
            created_at=now,
            last_used_at=now,
            expires_at=expires_at or self.expiry_for(remember_me, start=now),
        )

    def append(self, account: Account, session: Session) -> Optional[Session]:
        """Append ``session``, evicting the oldest-created one when full.

        Returns the evicted session, if any.
        """
        evicted = None
        if len(account.sessions) >= self.max_sessions:
            evicted = min(account.sessions, key=lambda s: s.created_at)
            account.sessions = [s for s in account.sessions if s.id != evicted.id]
        account.sessions.append(session)
        return evicted

    def find_by_token(self, account: Account, token: str) -> Optional[Session]:
        return next((s for s in account.sessions if s.refresh_token == token), None)

    def find_by_id(self, account: Account, session_id: str) -> Optional[Session]:
        return next((s for s in account.sessions if s.id == session_id), None)

    def remove(self, account: Account, session_id: str) -> int:
        before = len(account.sessions)
        account.sessions = [s for s in account.sessions if s.id != session_id]
        return before - len(account.sessions)

    def remove_others(self, account: Account, keep_session_id: str) -> int:
        before = len(account.sessions)
        account.sessions = [s for s in account.sessions if s.id == keep_session_id]
        return before - len(account.sessions)

    def remove_all(self, account: Account) -> int:
        removed = len(account.sessions)
        account.sessions = []
        return removed

    def prune_expired(self, account: Account, *, now: Optional[datetime] = None) -> int:
        moment = now or self._now()
        before = len(account.sessions)
        account.sessions = [s for s in account.sessions if not s.is_expired(moment)]
        return before - len(account.sessions)

    def active_sessions(
        self, account: Account, current_session_id: Optional[str] = None
    ) -> List[SessionView]:
        now = self._now()
        views = [
            SessionView(
                id=s.id,
                browser=s.device.browser,
                os=s.device.os,
                device_type=s.device.device_type,
                ip_address=mask_ip(s.device.ip_address),
                remember_me=s.remember_me,
                created_at=s.created_at,
                last_used_at=s.last_used_at,
                expires_at=s.expires_at,
                is_current=s.id == current_session_id,
            )
            for s in account.sessions
            if not s.is_expired(now)
        ]
        return sorted(views, key=lambda v: v.last_used_at, reverse=True)
