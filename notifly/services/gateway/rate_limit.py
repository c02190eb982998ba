"""Per-tenant admission control backed by Redis.

Fixed-window counter: the first request of a window creates the key with a
TTL equal to the window, every request attempt increments it, and expiry
resets it. Increment and expiry run in one MULTI/EXEC so concurrent gateway
replicas never read-modify-write the counter.
"""

from sqlalchemy import select

from notifly.common.config import settings
from notifly.common.errors import RateLimitExceeded
from notifly.common.logging import logger
from notifly.common.models import RateLimitConfig


class RateLimiter:
    """Counts request attempts per tenant, including ones later rejected."""

    def __init__(
        self,
        rdb,
        session_factory=None,
        default_limit: int | None = None,
        window_seconds: int | None = None,
    ) -> None:
        self.rdb = rdb
        self.session_factory = session_factory
        self.default_limit = default_limit if default_limit is not None else settings.rate_limit_per_minute
        self.window_seconds = window_seconds if window_seconds is not None else settings.rate_limit_window_seconds

    @staticmethod
    def counter_key(tenant_id: str) -> str:
        return f"ratelimit:{tenant_id}"

    def limit_for(self, tenant_id: str) -> int:
        """Tenant override from `rate_limit_configs`, else the global default."""

        if self.session_factory is None:
            return self.default_limit
        with self.session_factory() as db:
            override = db.execute(
                select(RateLimitConfig.requests_per_minute).where(RateLimitConfig.tenant_id == tenant_id)
            ).scalar_one_or_none()
        return override if override is not None else self.default_limit

    def hit(self, tenant_id: str) -> tuple[int, int]:
        """Atomically count one attempt; returns (count, seconds until reset)."""

        key = self.counter_key(tenant_id)
        pipe = self.rdb.pipeline(transaction=True)
        pipe.incr(key)
        pipe.expire(key, self.window_seconds, nx=True)
        pipe.ttl(key)
        count, _, ttl = pipe.execute()
        return int(count), int(ttl) if ttl and ttl > 0 else self.window_seconds

    def check(self, tenant_id: str) -> None:
        """Raise `RateLimitExceeded` once the tenant passes its window limit."""

        limit = self.limit_for(tenant_id)
        count, reset_in = self.hit(tenant_id)
        if count > limit:
            logger.warning(
                "rate_limit_exceeded tenant_id=%s count=%s limit=%s window_s=%s",
                tenant_id,
                count,
                limit,
                self.window_seconds,
            )
            raise RateLimitExceeded(
                f"Rate limit exceeded. Max {limit} requests per {self.window_seconds}s",
                retry_after_seconds=reset_in,
            )
