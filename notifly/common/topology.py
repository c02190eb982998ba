"""Retry tier topology.

Retries travel through a fixed, ordered list of topics instead of per-message
timers. Tier 0 is the immediate `notifications` topic, each later tier is a
`notifications.retry.<N>s` topic whose consumer holds a message until its
delay has elapsed, and the last entry is always the DLQ topic. The table is
built once from `RETRY_TIER_DELAYS`; attempt numbers past the table or past
the retry budget map to the DLQ tier.
"""

from dataclasses import dataclass

from notifly.common.config import settings


MAIN_TOPIC = "notifications"
RETRY_TOPIC_PREFIX = "notifications.retry"
DLQ_TOPIC = "notifications.dlq"


@dataclass(frozen=True)
class RetryTier:
    index: int
    topic: str
    delay_seconds: int
    is_dlq: bool = False

    @property
    def consumer_group(self) -> str:
        return f"notifly-worker-{self.topic.replace('.', '-')}"


def retry_topic_name(delay_seconds: int) -> str:
    return f"{RETRY_TOPIC_PREFIX}.{delay_seconds}s"


def build_tiers(delays: list[int]) -> list[RetryTier]:
    """Build the tier table; the first delay is the immediate tier."""

    if not delays:
        raise ValueError("at least one retry tier delay is required")
    if delays[0] != 0:
        raise ValueError("tier 0 must have zero delay")
    if any(later <= earlier for earlier, later in zip(delays, delays[1:])):
        raise ValueError("retry tier delays must be strictly increasing")
    tiers = [RetryTier(index=0, topic=MAIN_TOPIC, delay_seconds=0)]
    for index, delay in enumerate(delays[1:], start=1):
        tiers.append(RetryTier(index=index, topic=retry_topic_name(delay), delay_seconds=delay))
    tiers.append(RetryTier(index=len(delays), topic=DLQ_TOPIC, delay_seconds=0, is_dlq=True))
    return tiers


class RetryTopology:
    """Fixed lookup from attempt number to delivery tier."""

    def __init__(self, delays: list[int] | None = None) -> None:
        self.tiers = build_tiers(settings.tier_delays if delays is None else delays)
        self._by_topic = {tier.topic: tier for tier in self.tiers}

    @property
    def dlq(self) -> RetryTier:
        return self.tiers[-1]

    @property
    def delivery_tiers(self) -> list[RetryTier]:
        return self.tiers[:-1]

    def tier(self, attempt_number: int, max_attempts: int) -> RetryTier:
        """Return the tier that processes `attempt_number` (0-based)."""

        if attempt_number < 0:
            raise ValueError("attempt number must be non-negative")
        if attempt_number > max_attempts or attempt_number >= len(self.delivery_tiers):
            return self.dlq
        return self.tiers[attempt_number]

    def by_topic(self, topic: str) -> RetryTier:
        try:
            return self._by_topic[topic]
        except KeyError:
            raise ValueError(f"unknown tier topic: {topic}") from None
