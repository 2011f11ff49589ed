from __future__ import annotations

import math
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Deque, Dict, Optional, Protocol, Tuple

from ticketdesk.config import RATE_LIMIT_CLASSES, Settings
from ticketdesk.logging import get_logger
from ticketdesk.service.errors import RateLimitExceededError

logger = get_logger(__name__)

# Credential limiters only count failures
_SKIP_SUCCESSFUL = frozenset({"auth", "login"})

_SUBJECT_LABELS = {
    "global": "requests",
    "auth": "authentication attempts",
    "login": "login attempts",
    "public_ticket": "ticket submissions",
}


class RateLimitBackend(Protocol):
    async def record_hit(
        self, key: str, window_seconds: int, now: float
    ) -> Tuple[int, float, str]: ...

    async def release_hit(self, key: str, hit_id: str) -> None: ...

    async def reset(self, key: Optional[str] = None) -> None: ...


class MemoryRateLimitBackend:
    """Sliding-window hit log kept in process memory."""

    # Full scan for idle keys once per this many recorded hits
    sweep_interval = 1024

    def __init__(self) -> None:
        self._hits: Dict[str, Deque[Tuple[float, str]]] = {}
        self._windows: Dict[str, int] = {}
        self._recorded = 0
        self._lock = threading.Lock()

    def _sweep_idle(self, now: float) -> None:
        for key in [
            k for k, hits in self._hits.items() if hits[-1][0] <= now - self._windows[k]
        ]:
            del self._hits[key]
            del self._windows[key]

    async def record_hit(
        self, key: str, window_seconds: int, now: float
    ) -> Tuple[int, float, str]:
        hit_id = uuid.uuid4().hex
        cutoff = now - window_seconds
        with self._lock:
            self._recorded += 1
            if self._recorded % self.sweep_interval == 0:
                self._sweep_idle(now)
            self._windows[key] = window_seconds
            hits = self._hits.setdefault(key, deque())
            while hits and hits[0][0] <= cutoff:
                hits.popleft()
            hits.append((now, hit_id))
            return len(hits), hits[0][0], hit_id

    async def release_hit(self, key: str, hit_id: str) -> None:
        with self._lock:
            hits = self._hits.get(key)
            if not hits:
                return
            remaining = deque(h for h in hits if h[1] != hit_id)
            if remaining:
                self._hits[key] = remaining
            else:
                del self._hits[key]
                self._windows.pop(key, None)

    async def reset(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._hits.clear()
                self._windows.clear()
            else:
                self._hits.pop(key, None)
                self._windows.pop(key, None)


@dataclass(frozen=True)
class RateLimitPolicy:
    endpoint_class: str
    max_requests: int
    window_seconds: int
    skip_successful_requests: bool = False


@dataclass
class RateLimitTicket:
    """One recorded hit, returned so a successful request can give it back."""

    key: str
    hit_id: str
    policy: RateLimitPolicy
    count: int
    reset_at: float

    @property
    def remaining(self) -> int:
        return max(0, self.policy.max_requests - self.count)

    @property
    def reset_seconds(self) -> int:
        return max(0, math.ceil(self.reset_at - time.time()))


def humanize_wait(seconds: int) -> str:
    if seconds < 60:
        value, unit = max(1, seconds), "second"
    elif seconds < 3600:
        value, unit = math.ceil(seconds / 60), "minute"
    else:
        value, unit = math.ceil(seconds / 3600), "hour"
    return f"{value} {unit}{'' if value == 1 else 's'}"


class RateLimiter:
    """Per-endpoint-class request budgets over an injected counter backend."""

    def __init__(self, backend: RateLimitBackend, policies: Dict[str, RateLimitPolicy]) -> None:
        self.backend = backend
        self.policies = dict(policies)

    @classmethod
    def from_settings(cls, settings: Settings, backend: RateLimitBackend) -> "RateLimiter":
        policies = {}
        for endpoint_class in RATE_LIMIT_CLASSES:
            max_requests, window_seconds = settings.rate_limit_policy(endpoint_class)
            if window_seconds <= 0:
                logger.warning(
                    "rate_limit_invalid_window",
                    endpoint_class=endpoint_class,
                    window_seconds=window_seconds,
                    message="Invalid rate limit window; defaulting to 60 seconds",
                )
                window_seconds = 60
            policies[endpoint_class] = RateLimitPolicy(
                endpoint_class=endpoint_class,
                max_requests=max_requests,
                window_seconds=window_seconds,
                skip_successful_requests=endpoint_class in _SKIP_SUCCESSFUL,
            )
        return cls(backend, policies)

    def policy(self, endpoint_class: str) -> RateLimitPolicy:
        try:
            return self.policies[endpoint_class]
        except KeyError as exc:
            raise KeyError(f"unknown rate limit class: {endpoint_class}") from exc

    def _now(self) -> float:
        return time.time()

    async def hit(self, endpoint_class: str, client: str) -> Optional[RateLimitTicket]:
        """Record a hit for ``client`` and raise once the budget is exhausted.

        Returns None when the class is disabled (max <= 0).
        """
        policy = self.policy(endpoint_class)
        if policy.max_requests <= 0:
            return None
        key = f"{endpoint_class}:{client}"
        now = self._now()
        count, oldest, hit_id = await self.backend.record_hit(key, policy.window_seconds, now)
        reset_at = oldest + policy.window_seconds
        if count > policy.max_requests:
            retry_after_seconds = max(1, math.ceil(reset_at - now))
            logger.warning(
                "rate_limit_exceeded",
                endpoint_class=endpoint_class,
                client=client,
                hits=count,
                limit=policy.max_requests,
                retry_after_seconds=retry_after_seconds,
            )
            raise RateLimitExceededError(
                endpoint_class=endpoint_class,
                retry_after=datetime.fromtimestamp(reset_at, timezone.utc),
                retry_after_seconds=retry_after_seconds,
                limit=policy.max_requests,
                window_seconds=policy.window_seconds,
                user_message=(
                    f"Too many {_SUBJECT_LABELS.get(endpoint_class, 'requests')}. "
                    f"Please try again in {humanize_wait(retry_after_seconds)}."
                ),
            )
        return RateLimitTicket(key, hit_id, policy, count, reset_at)

    async def release(self, ticket: Optional[RateLimitTicket]) -> None:
        if ticket is not None:
            await self.backend.release_hit(ticket.key, ticket.hit_id)

    def guard(self, endpoint_class: str, client: str) -> "RateLimitGuard":
        return RateLimitGuard(self, endpoint_class, client)

    async def reset(self) -> None:
        await self.backend.reset()


class RateLimitGuard:
    """Counts a request on entry; gives the hit back after success when the class skips successes."""

    def __init__(self, limiter: RateLimiter, endpoint_class: str, client: str) -> None:
        self.limiter = limiter
        self.endpoint_class = endpoint_class
        self.client = client
        self.ticket: Optional[RateLimitTicket] = None

    async def __aenter__(self) -> "RateLimitGuard":
        self.ticket = await self.limiter.hit(self.endpoint_class, self.client)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        ticket = self.ticket
        if exc_type is None and ticket is not None and ticket.policy.skip_successful_requests:
            await self.limiter.release(ticket)
            ticket.count -= 1
        return False
