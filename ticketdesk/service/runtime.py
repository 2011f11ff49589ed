from __future__ import annotations

from typing import Optional
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from ticketdesk.config import Settings, get_settings
from ticketdesk.logging import get_logger
from ticketdesk.service.accounts import AccountService
from ticketdesk.service.auth import AuthenticationService
from ticketdesk.service.rate_limit import (
    MemoryRateLimitBackend,
    RateLimitBackend,
    RateLimiter,
)
from ticketdesk.service.sessions import SessionStore
from ticketdesk.service.tokens import TokenService
from ticketdesk.storage.memory import MemoryStore
from ticketdesk.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Service graph for one application instance.

    Collaborators can be injected; anything omitted is built from settings.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[MemoryStore] = None,
        rate_limit_backend: Optional[RateLimitBackend] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info("runtime_init_started", test_mode=self.settings.test_mode)

        self.store = store or MemoryStore(state_path=self.settings.state_path)
        self.cache: Optional[RedisCache] = None
        if rate_limit_backend is None:
            rate_limit_backend = self._build_rate_limit_backend()
        self.rate_limiter = RateLimiter.from_settings(self.settings, rate_limit_backend)

        self.tokens = TokenService(self.settings)
        self.sessions = SessionStore(self.settings)
        self.auth = AuthenticationService(self.store, self.tokens, self.sessions)
        self.accounts = AccountService(self.store, self.auth)

    def _build_rate_limit_backend(self) -> RateLimitBackend:
        if not self.settings.redis_url:
            logger.info("rate_limit_backend_memory", reason="redis_url_missing")
            return MemoryRateLimitBackend()
        redis_error: Exception | None = None
        try:
            cache = RedisCache(self.settings.redis_url)
            cache.verify_connection()
            self.cache = cache
            return cache
        except (RedisError, OSError) as exc:
            redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is configured but unreachable; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for in-memory rate limits."
            ) from redis_error
        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error),
            message=(
                f"Running without Redis under {fallback_mode}; rate-limit counters "
                "are local to this process."
            ),
            mode=fallback_mode,
        )
        return MemoryRateLimitBackend()

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
            self.cache = None
